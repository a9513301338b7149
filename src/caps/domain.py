"""Control plane DNS records service."""

from __future__ import annotations

import logging

from .client import is_forbidden_error, is_not_found_error
from .scope import ClusterScope

logger = logging.getLogger(__name__)


class DomainService:
    name = "domain"

    def __init__(self, scope: ClusterScope) -> None:
        self.scope = scope

    async def reconcile(self) -> None:
        if not self.scope.control_plane_dns_defined():
            return

        zone, name = self.scope.control_plane_dns_zone_and_name()
        records = await self.scope.client.list_dns_zone_records(zone, name)
        record_ips = sorted(record.data for record in records)

        control_plane_ips = self.scope.control_plane_load_balancer_ips()
        if not control_plane_ips:
            raise RuntimeError("no control plane ips found")

        if record_ips == control_plane_ips:
            return

        logger.info(
            "Updating zone records",
            extra={"domain": zone, "record_name": name, "control_plane_ips": control_plane_ips},
        )
        try:
            await self.scope.client.set_dns_zone_records(zone, name, control_plane_ips)
        except Exception as e:
            raise RuntimeError(f"failed to set dns records: {e}") from e

    async def delete(self) -> None:
        if not self.scope.control_plane_dns_defined():
            return

        zone, name = self.scope.control_plane_dns_zone_and_name()
        try:
            records = await self.scope.client.list_dns_zone_records(zone, name)
        except Exception as e:
            # the domain API answers forbidden for unknown zones
            if is_forbidden_error(e) or is_not_found_error(e):
                return
            raise

        if not records:
            return

        logger.info("Deleting zone records", extra={"domain": zone, "record_name": name})
        try:
            await self.scope.client.delete_dns_zone_records(zone, name)
        except Exception as e:
            raise RuntimeError(f"failed to delete dns records: {e}") from e
