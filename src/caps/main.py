"""Main entry point for the Scaleway infrastructure controller manager.

The manager loads the desired objects from the manifest directory, then
repeatedly invokes the controller of every object in dependency order
(infrastructure clusters, control planes, then pools and machines) until a
shutdown signal is received. Each object carries its own next-run deadline
derived from the Result of its last reconciliation.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from collections.abc import Callable
from datetime import UTC

from .config import (
    RETRY_BACKOFF_BASE_SECONDS,
    Config,
    ConfigurationError,
    load_client_factory,
)
from .controllers import CONTROLLER_CLASSES, Controller, build_controllers
from .spec_loader import SpecLoadError, load_manifests
from .store import MemoryObjectStore

logger = logging.getLogger(__name__)

ObjectKey = tuple[str, str, str]


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _RESERVED_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class Manager:
    """Runs the controllers over the objects of a store until shutdown.

    Scheduling rules per object:
    - a Result with ``requeue_after`` runs the object again after that delay;
    - a Result without requeue runs it again after the reconcile interval;
    - an unclassified error or a timeout backs off exponentially from
      RETRY_BACKOFF_BASE_SECONDS, capped at the reconcile interval;
    - a terminal Result parks the object: it is skipped until its resource
      version in the store changes.

    Objects are visited kind by kind in CONTROLLER_CLASSES order. Up to
    ``max_concurrent_reconciles`` objects of the same kind run at once.
    """

    def __init__(
        self,
        config: Config,
        store: MemoryObjectStore,
        controllers: dict[str, Controller],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._controllers = controllers
        self._clock = clock
        self._next_run: dict[ObjectKey, float] = {}
        self._failures: dict[ObjectKey, int] = {}
        self._parked: dict[ObjectKey, int | None] = {}
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._shutdown_event = asyncio.Event()

    @property
    def next_run(self) -> dict[ObjectKey, float]:
        return dict(self._next_run)

    def failures(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    def is_parked(self, key: ObjectKey) -> bool:
        return key in self._parked

    async def run(self) -> None:
        """Run reconciliation passes until shutdown."""
        logger.info(
            "Starting manager",
            extra={
                "interval_seconds": self._config.reconcile_interval_seconds,
                "objects": len(self._store.keys()),
            },
        )

        while not self._shutdown_event.is_set():
            await self.reconcile_pass()

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._sleep_seconds())
            except TimeoutError:
                pass

        logger.info("Manager shutdown complete")

    def shutdown(self) -> None:
        """Signal the manager to stop after the current pass."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_pass(self) -> int:
        """Reconcile every object whose deadline has passed.

        Returns:
            The number of reconciliations run.
        """
        self._forget_removed()
        count = 0
        for kind in CONTROLLER_CLASSES:
            if self._shutdown_event.is_set():
                break
            controller = self._controllers.get(kind)
            if controller is None:
                continue
            now = self._clock()
            due = [
                key
                for key in sorted(self._store.keys())
                if key[0] == kind and self._is_due(key, now)
            ]
            await asyncio.gather(*(self._reconcile_object(controller, key) for key in due))
            count += len(due)
        return count

    async def _reconcile_object(self, controller: Controller, key: ObjectKey) -> None:
        kind, namespace, name = key
        async with self._semaphore:
            try:
                result = await asyncio.wait_for(
                    controller.reconcile(namespace, name),
                    timeout=self._config.reconcile_timeout_seconds,
                )
            except TimeoutError:
                self._schedule_backoff(key, "reconciliation timed out")
                return
            except Exception as e:
                self._schedule_backoff(key, str(e))
                return

        self._failures.pop(key, None)
        if result.terminal:
            self._park(key)
            return

        if result.requeue_after is not None:
            delay = result.requeue_after
        else:
            delay = self._config.reconcile_interval_seconds
        self._next_run[key] = self._clock() + delay
        logger.debug(
            "Reconciled object",
            extra={"kind": kind, "namespace": namespace, "object_name": name, "requeue_after": delay},
        )

    def _is_due(self, key: ObjectKey, now: float) -> bool:
        if key in self._parked:
            if self._store.resource_version(*key) == self._parked[key]:
                return False
            kind, namespace, name = key
            logger.info(
                "Parked object changed, resuming",
                extra={"kind": kind, "namespace": namespace, "object_name": name},
            )
            del self._parked[key]
            return True
        return self._next_run.get(key, 0) <= now

    def _park(self, key: ObjectKey) -> None:
        kind, namespace, name = key
        self._next_run.pop(key, None)
        self._parked[key] = self._store.resource_version(*key)
        logger.warning(
            "Reconciliation failed terminally, waiting for the object to change",
            extra={"kind": kind, "namespace": namespace, "object_name": name},
        )

    def _schedule_backoff(self, key: ObjectKey, error: str) -> None:
        kind, namespace, name = key
        attempt = self._failures.get(key, 0) + 1
        self._failures[key] = attempt
        backoff = min(
            RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)),
            self._config.reconcile_interval_seconds,
        )
        self._next_run[key] = self._clock() + backoff
        logger.error(
            "Reconciliation failed",
            extra={
                "kind": kind,
                "namespace": namespace,
                "object_name": name,
                "attempt": attempt,
                "backoff_seconds": backoff,
                "error": error,
            },
        )

    def _forget_removed(self) -> None:
        present = set(self._store.keys())
        for key in list(self._next_run):
            if key not in present:
                self._next_run.pop(key, None)
                self._failures.pop(key, None)
        for key in list(self._parked):
            if key not in present:
                del self._parked[key]

    def _sleep_seconds(self) -> float:
        interval = float(self._config.reconcile_interval_seconds)
        managed = [
            k for k in self._store.keys() if k[0] in CONTROLLER_CLASSES and k not in self._parked
        ]
        if not managed:
            return interval
        # objects never run yet are due immediately
        earliest = min(self._next_run.get(k, 0) for k in managed)
        return max(0.0, min(interval, earliest - self._clock()))


async def main() -> int:
    """Run the manager.

    Returns:
        Exit code: 0 on clean shutdown, 1 on configuration or manifest
        errors, 2 if the client factory cannot be loaded.
    """
    setup_logging()

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level_value)

    try:
        client_factory = load_client_factory(config.client_factory)
    except ConfigurationError as e:
        logger.critical("Failed to load client factory", extra={"error": str(e)})
        return 2

    try:
        objects = load_manifests(config.specs_dir)
    except SpecLoadError as e:
        logger.error(
            "Manifest loading failed",
            extra={"error": str(e), "specs_dir": str(config.specs_dir)},
        )
        return 1

    logger.info(
        "Starting Scaleway infrastructure controller",
        extra={
            "specs_dir": str(config.specs_dir),
            "status_dir": str(config.status_dir) if config.status_dir else None,
            "objects": len(objects),
        },
    )

    store = MemoryObjectStore(objects, status_dir=config.status_dir)
    controllers = build_controllers(store, client_factory, config.default_retry_seconds)
    manager = Manager(config, store, controllers)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Manager stopped")
    return 0


def run() -> None:
    """Entry point for the manager."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
