"""Convergence engine for lists of tag-owned cloud resources.

Given an ordered list of desired descriptors and the resources discovered by
tag search, ResourceEnsurer decides in one pass which resources to keep
(optionally updating them in place), which to delete and which to create.

Matching is by (zone, generated name) equality only. Desired descriptors are
grouped per zone and the name of the i-th descriptor of a zone is generated
from i, so the provider may return resources in any order. A descriptor that
carries an explicit identity is adopted as-is and never created, updated or
deleted by the engine, even when it also carries the ownership tags.

A pass is fail-fast: the first create, update or delete error aborts it. The
next pass re-derives everything from live state and resumes where this one
stopped.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

D = TypeVar("D")
R = TypeVar("R")


class ResourceAdapter(ABC, Generic[D, R]):
    """Per-kind callbacks used by ResourceEnsurer."""

    @abstractmethod
    async def list_resources(self) -> list[R]:
        """List resources currently owned (by tags) for this kind."""

    @abstractmethod
    async def delete_resource(self, resource: R) -> None:
        """Delete a resource that matches no desired descriptor."""

    @abstractmethod
    async def update_resource(self, resource: R, desired: D) -> R:
        """Apply safely mutable changes to a kept resource."""

    @abstractmethod
    async def create_resource(self, zone: str, name: str, desired: D) -> R:
        """Create the resource for desired at zone under name."""

    @abstractmethod
    def get_resource_id(self, resource: R) -> str:
        """Provider identity of a resource."""

    @abstractmethod
    def get_resource_zone(self, resource: R) -> str:
        """Zone a resource lives in."""

    @abstractmethod
    def get_resource_name(self, resource: R) -> str:
        """Name a resource was created with."""

    @abstractmethod
    def get_desired_zone(self, desired: D) -> str:
        """Target zone of a descriptor (explicit hint or provider default)."""

    @abstractmethod
    def get_desired_resource_name(self, index: int) -> str:
        """Generated name for the descriptor at index within its zone."""

    @abstractmethod
    async def should_keep_resource(self, resource: R, desired: D) -> bool:
        """Return False to have a matching resource deleted and recreated."""

    async def adopt_resource(self, desired: D) -> R | None:
        """Return a user-managed resource for desired, or None if it has none."""
        return None


class ResourceEnsurer(Generic[D, R]):
    """Drive one resource kind toward a desired list.

    Example:
        ensurer = ResourceEnsurer(GatewayAdapter(scope))
        gateways = await ensurer.ensure(scope.public_gateways)
    """

    def __init__(self, adapter: ResourceAdapter[D, R]) -> None:
        self._adapter = adapter

    async def ensure(self, desired: list[D]) -> list[R]:
        """Converge and return the resulting resources in desired order.

        An empty desired list deletes every owned resource.
        """
        adapter = self._adapter

        # slot = (zone, name) for engine-managed descriptors, None for adopted
        slots: list[tuple[str, str] | None] = []
        adopted: dict[int, R] = {}
        by_zone: dict[str, list[tuple[str, D]]] = {}

        for position, d in enumerate(desired):
            resource = await adapter.adopt_resource(d)
            if resource is not None:
                adopted[position] = resource
                slots.append(None)
                continue

            zone = adapter.get_desired_zone(d)
            zone_list = by_zone.setdefault(zone, [])
            name = adapter.get_desired_resource_name(len(zone_list))
            zone_list.append((name, d))
            slots.append((zone, name))

        adopted_ids = {adapter.get_resource_id(r) for r in adopted.values()}
        kept = await self._ensure_existing(by_zone, adopted_ids)
        created = await self._create_missing(kept, by_zone)

        converged = {**kept, **created}
        result: list[R] = []
        for position, slot in enumerate(slots):
            result.append(adopted[position] if slot is None else converged[slot])
        return result

    async def _ensure_existing(
        self, by_zone: dict[str, list[tuple[str, D]]], adopted_ids: set[str]
    ) -> dict[tuple[str, str], R]:
        adapter = self._adapter
        kept: dict[tuple[str, str], R] = {}

        for resource in await adapter.list_resources():
            if adapter.get_resource_id(resource) in adopted_ids:
                continue

            zone = adapter.get_resource_zone(resource)
            name = adapter.get_resource_name(resource)
            keep = False

            for desired_name, d in by_zone.get(zone, []):
                if desired_name != name or (zone, name) in kept:
                    continue

                keep = await adapter.should_keep_resource(resource, d)
                if not keep:
                    continue

                try:
                    resource = await adapter.update_resource(resource, d)
                except Exception as e:
                    raise RuntimeError(f"failed to update resource: {e}") from e
                break

            if not keep:
                try:
                    await adapter.delete_resource(resource)
                except Exception as e:
                    raise RuntimeError(f"failed to delete resource: {e}") from e
                continue

            kept[(zone, name)] = resource

        return kept

    async def _create_missing(
        self,
        existing: dict[tuple[str, str], R],
        by_zone: dict[str, list[tuple[str, D]]],
    ) -> dict[tuple[str, str], R]:
        created: dict[tuple[str, str], R] = {}

        for zone, entries in by_zone.items():
            for name, d in entries:
                if (zone, name) in existing:
                    continue

                logger.debug("Creating missing resource", extra={"zone": zone, "resource_name": name})
                created[(zone, name)] = await self._adapter.create_resource(zone, name, d)

        return created
