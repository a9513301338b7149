"""Manifest loading with validation.

All file operations enforce a size limit and every document is validated
with pydantic at the boundary, so the controllers only ever see well-formed
objects.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import KubeObject, get_model_class

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _format_validation_error(source: str, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def parse_object(document: dict[str, Any], source: str = "<document>") -> KubeObject:
    """Validate one manifest document into its model.

    Raises:
        SpecLoadError: If the kind is unknown or validation fails.
    """
    kind = document.get("kind")
    if not isinstance(kind, str) or not kind:
        raise SpecLoadError(f"Manifest is missing a kind: {source}")

    try:
        model = get_model_class(kind)
    except ValueError as e:
        raise SpecLoadError(f"{source}: {e}") from e

    try:
        return model.model_validate(document)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(f"{kind} in {source}", e)) from e


def load_manifest_file(path: Path) -> list[KubeObject]:
    """Load every document of a (multi-document) YAML file.

    Empty documents are skipped. A document may also be a ``List`` whose
    ``items`` are manifests.

    Raises:
        SpecLoadError: If the file cannot be read, parsed or validated.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    objects: list[KubeObject] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        source = f"{path}[{index}]"
        if not isinstance(document, dict):
            raise SpecLoadError(f"Manifest must be a YAML mapping: {source}")

        if document.get("kind") == "List":
            items = document.get("items") or []
            if not isinstance(items, list):
                raise SpecLoadError(f"List items must be a sequence: {source}")
            for item_index, item in enumerate(items):
                if not isinstance(item, dict):
                    raise SpecLoadError(
                        f"Manifest must be a YAML mapping: {source}.items[{item_index}]"
                    )
                objects.append(parse_object(item, f"{source}.items[{item_index}]"))
            continue

        objects.append(parse_object(document, source))
    return objects


def load_manifests(path: Path) -> list[KubeObject]:
    """Load all manifests from a file or a directory of YAML files.

    Raises:
        SpecLoadError: If the path does not exist, a file is invalid or two
            documents declare the same kind, namespace and name.
    """
    if not path.exists():
        raise SpecLoadError(f"Manifest path not found: {path}")

    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.is_file() and p.suffix in MANIFEST_SUFFIXES)
    else:
        files = [path]

    objects: list[KubeObject] = []
    seen: set[tuple[str, str, str]] = set()
    for file in files:
        for obj in load_manifest_file(file):
            if obj.key in seen:
                kind, namespace, name = obj.key
                raise SpecLoadError(f"Duplicate {kind} {namespace}/{name} in {file}")
            seen.add(obj.key)
            objects.append(obj)

    logger.info("Loaded manifests", extra={"path": str(path), "count": len(objects)})
    return objects
