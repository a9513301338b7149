"""Configuration management with validation.

All settings come from environment variables and are validated at load
time so a misconfigured manager fails before touching the cloud.
"""

from __future__ import annotations

import importlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from .client import ClientFactory


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 5
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_RETRY_SECONDS = 30
DEFAULT_RECONCILE_TIMEOUT_SECONDS = 300
MAX_RECONCILE_TIMEOUT_SECONDS = 3600

RETRY_BACKOFF_BASE_SECONDS = 5

DEFAULT_MAX_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES = 16

# Manifest files larger than this are refused
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
CLIENT_FACTORY_PATTERN = r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$"


@dataclass(frozen=True)
class Config:
    """Manager configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required
    client_factory: str

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("/specs"))
    status_dir: Path | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    default_retry_seconds: int = DEFAULT_RETRY_SECONDS
    reconcile_timeout_seconds: int = DEFAULT_RECONCILE_TIMEOUT_SECONDS

    # Behavior
    log_level: str = "INFO"
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    def __post_init__(self) -> None:
        import re

        errors: list[str] = []

        if not self.client_factory:
            errors.append("CLIENT_FACTORY is required")
        elif not re.match(CLIENT_FACTORY_PATTERN, self.client_factory):
            errors.append(
                f"CLIENT_FACTORY must have the form module:callable: {self.client_factory}"
            )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.default_retry_seconds < 1:
            errors.append("DEFAULT_RETRY_SECONDS must be at least 1")

        if not (1 <= self.reconcile_timeout_seconds <= MAX_RECONCILE_TIMEOUT_SECONDS):
            errors.append(
                f"RECONCILE_TIMEOUT must be between 1 and {MAX_RECONCILE_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if self.status_dir is not None and self.status_dir.exists() and not self.status_dir.is_dir():
            errors.append(f"Status path is not a directory: {self.status_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CLIENT_FACTORY: module:callable building a cloud client (required)
            SPECS_DIR: Directory of YAML manifests (default: /specs)
            STATUS_DIR: Directory receiving status snapshots (default: unset)
            RECONCILE_INTERVAL: Seconds between full passes (default: 60)
            DEFAULT_RETRY_SECONDS: Delay while deletion waits on dependents (default: 30)
            RECONCILE_TIMEOUT: Deadline of one reconciliation in seconds (default: 300)
            LOG_LEVEL: Logging level (default: INFO)
            MAX_CONCURRENT_RECONCILES: Reconciliations run at once (default: 1)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        return cls(
            client_factory=os.environ.get("CLIENT_FACTORY", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "/specs")),
            status_dir=get_path("STATUS_DIR"),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            default_retry_seconds=get_int("DEFAULT_RETRY_SECONDS", DEFAULT_RETRY_SECONDS),
            reconcile_timeout_seconds=get_int(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
        )


def load_client_factory(path: str) -> ClientFactory:
    """Resolve a ``module:callable`` reference to a client factory.

    Raises:
        ConfigurationError: If the module or attribute cannot be loaded or
            is not callable.
    """
    module_name, _, attr = path.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import client factory module {module_name}: {e}") from e

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"Client factory {path} is not a callable")
    return factory
