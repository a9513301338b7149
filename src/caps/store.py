"""Object store: where desired objects come from and where status goes.

The orchestration framework owns persistence of the objects this controller
works on. ObjectStore is the narrow contract the controllers and scopes use;
MemoryObjectStore backs it with manifests loaded from disk and optionally
writes a YAML snapshot of every patched object to a status directory.
"""

from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path
from typing import Protocol

import yaml

from .models import KubeObject, Secret, dump_status

logger = logging.getLogger(__name__)

BOOTSTRAP_DATA_KEY = "value"


class ObjectNotFoundError(Exception):
    """Raised when a referenced object does not exist in the store."""

    pass


class ObjectStore(Protocol):
    async def get(self, kind: str, namespace: str, name: str) -> KubeObject | None: ...

    async def list(
        self, kind: str, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[KubeObject]: ...

    async def patch(self, obj: KubeObject) -> None: ...

    async def create(self, obj: KubeObject) -> None: ...
    async def get_secret_data(self, namespace: str, name: str) -> dict[str, bytes]: ...

    async def get_bootstrap_data(self, namespace: str, name: str) -> bytes: ...


def decode_secret_data(secret: Secret) -> dict[str, bytes]:
    """Merge base64 ``data`` and plain ``stringData`` of a secret.

    Raises:
        ValueError: If a data value is not valid base64.
    """
    out: dict[str, bytes] = {}
    for key, value in secret.data.items():
        try:
            out[key] = base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"secret {secret.name} key {key} is not valid base64: {e}") from e
    for key, value in secret.string_data.items():
        out[key] = value.encode()
    return out


class MemoryObjectStore:
    """In-memory ObjectStore.

    ``get`` and ``list`` hand out deep copies so a reconciliation only
    changes stored state through ``patch``. Patching an object that is being
    deleted and has no finalizers left removes it from the store.

    Every write bumps a per-object resource version, which lets callers tell
    whether an object changed since they last looked at it.
    """

    def __init__(self, objects: list[KubeObject] | None = None, status_dir: Path | None = None) -> None:
        self._objects: dict[tuple[str, str, str], KubeObject] = {}
        self._versions: dict[tuple[str, str, str], int] = {}
        self._next_version = 0
        self._status_dir = status_dir
        self.patch_count = 0
        for obj in objects or []:
            self.add(obj)

    def add(self, obj: KubeObject) -> None:
        """Insert or replace obj."""
        self._put(obj)

    def remove(self, kind: str, namespace: str, name: str) -> None:
        self._objects.pop((kind, namespace, name), None)
        self._versions.pop((kind, namespace, name), None)

    def resource_version(self, kind: str, namespace: str, name: str) -> int | None:
        """Version of the last write of an object, None if it does not exist."""
        return self._versions.get((kind, namespace, name))

    def keys(self) -> list[tuple[str, str, str]]:
        return list(self._objects)

    async def get(self, kind: str, namespace: str, name: str) -> KubeObject | None:
        obj = self._objects.get((kind, namespace, name))
        return obj.model_copy(deep=True) if obj is not None else None

    async def list(
        self, kind: str, namespace: str | None = None, labels: dict[str, str] | None = None
    ) -> list[KubeObject]:
        out = []
        for (obj_kind, obj_namespace, _), obj in sorted(self._objects.items()):
            if obj_kind != kind:
                continue
            if namespace is not None and obj_namespace != namespace:
                continue
            if labels and any(obj.metadata.labels.get(k) != v for k, v in labels.items()):
                continue
            out.append(obj.model_copy(deep=True))
        return out

    async def patch(self, obj: KubeObject) -> None:
        self.patch_count += 1

        if obj.is_deleting and not obj.metadata.finalizers:
            logger.info(
                "Object finalized",
                extra={"kind": obj.kind, "namespace": obj.namespace, "object_name": obj.name},
            )
            self.remove(*obj.key)
            self._remove_snapshot(obj)
            return

        self._put(obj)
        self._write_snapshot(obj)

    async def create(self, obj: KubeObject) -> None:
        """Insert obj.

        Raises:
            ValueError: If an object with the same key already exists.
        """
        if obj.key in self._objects:
            kind, namespace, name = obj.key
            raise ValueError(f"{kind} {namespace}/{name} already exists")
        self._put(obj)
        self._write_snapshot(obj)

    async def get_secret_data(self, namespace: str, name: str) -> dict[str, bytes]:
        secret = self._objects.get(("Secret", namespace, name))
        if not isinstance(secret, Secret):
            raise ObjectNotFoundError(f"secret {namespace}/{name} not found")
        return decode_secret_data(secret)

    async def get_bootstrap_data(self, namespace: str, name: str) -> bytes:
        try:
            data = await self.get_secret_data(namespace, name)
        except ObjectNotFoundError as e:
            raise ObjectNotFoundError(
                f"failed to retrieve bootstrap data secret {namespace}/{name}: {e}"
            ) from e

        if BOOTSTRAP_DATA_KEY not in data:
            raise ValueError("error retrieving bootstrap data: secret value key is missing")
        return data[BOOTSTRAP_DATA_KEY]

    def _put(self, obj: KubeObject) -> None:
        self._next_version += 1
        self._objects[obj.key] = obj.model_copy(deep=True)
        self._versions[obj.key] = self._next_version

    def _snapshot_path(self, obj: KubeObject) -> Path | None:
        if self._status_dir is None:
            return None
        return self._status_dir / obj.namespace / f"{obj.kind.lower()}-{obj.name}.yaml"

    def _write_snapshot(self, obj: KubeObject) -> None:
        path = self._snapshot_path(obj)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(dump_status(obj), sort_keys=False), encoding="utf-8")

    def _remove_snapshot(self, obj: KubeObject) -> None:
        path = self._snapshot_path(obj)
        if path is not None and path.exists():
            path.unlink()
