"""Ordered execution of the named sub-reconcilers of one owning object.

The list order is the creation dependency order: reconcile runs it front to
back, delete runs it back to front, and both stop at the first failure. A
failure is wrapped in ServiceError with the service name, keeping the cause
chained so a ReconcileError classification survives the wrap.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .client import CloudClient, get_control_plane_zones
from .errors import ServiceError, with_terminal_error

logger = logging.getLogger(__name__)


class ServiceReconciler(Protocol):
    name: str

    async def reconcile(self) -> None: ...

    async def delete(self) -> None: ...


class ServiceOrchestrator:
    """Runs a fixed list of sub-reconcilers for one owning object kind."""

    def __init__(self, kind: str, services: list[ServiceReconciler]) -> None:
        names = [s.name for s in services]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate service names for {kind}: {names}")
        self.kind = kind
        self.services = list(services)

    @property
    def service_names(self) -> list[str]:
        return [s.name for s in self.services]

    async def reconcile(self) -> None:
        for service in self.services:
            logger.debug("Reconciling service", extra={"kind": self.kind, "service": service.name})
            try:
                await service.reconcile()
            except Exception as e:
                raise ServiceError(service.name, f"reconcile {self.kind} service", e) from e

    async def delete(self) -> None:
        for service in reversed(self.services):
            logger.debug("Deleting service", extra={"kind": self.kind, "service": service.name})
            try:
                await service.delete()
            except Exception as e:
                raise ServiceError(service.name, f"delete {self.kind} service", e) from e


def select_failure_domains(client: CloudClient, requested: list[str]) -> list[str]:
    """Return the zones control plane machines may use.

    Without a request every control plane zone of the region is allowed.

    Raises:
        ReconcileError: (terminal) if a requested zone is not allowed.
    """
    allowed = get_control_plane_zones(client)
    if not requested:
        return allowed

    for zone in requested:
        if zone not in allowed:
            raise with_terminal_error(
                f"failureDomain {zone} is not allowed, you must use one of the "
                f"following: {', '.join(allowed)}"
            )
    return list(requested)
