"""Public gateway service.

Converges the public gateways declared on a cluster through the
ResourceEnsurer and attaches each of them to the cluster private network.
"""

from __future__ import annotations

import logging

from .client import Gateway, GatewayStatus, get_zone_or_default
from .ensurer import ResourceAdapter, ResourceEnsurer
from .errors import with_transient_error
from .models import (
    NO_PRIVATE_NETWORK_REASON,
    PRIVATE_NETWORK_ATTACHMENT_FAILED_REASON,
    PROVISIONED_REASON,
    PUBLIC_GATEWAYS_READY_CONDITION,
    RECONCILIATION_FAILED_REASON,
    PublicGateway,
)
from .scope import NetworkScope

logger = logging.getLogger(__name__)

# When set on a gateway, its IP is released on gateway deletion
CAPS_MANAGED_IP_TAG = "caps-vpcgw-ip=managed"

GATEWAY_NOT_READY_RETRY_SECONDS = 1


def can_upgrade_type(types: list[str], current: str, desired: str) -> bool:
    """Return True if desired comes strictly after current in the type ladder."""
    if current not in types or desired not in types:
        return False
    return types.index(desired) > types.index(current)


class GatewayAdapter(ResourceAdapter[PublicGateway, Gateway]):
    def __init__(self, scope: NetworkScope) -> None:
        self.scope = scope
        self._gateway_types_cache: dict[str, list[str]] = {}

    async def _can_upgrade_type(self, zone: str, current: str, desired: str) -> bool:
        types = self._gateway_types_cache.get(zone)
        if types is None:
            types = await self.scope.client.list_gateway_types(zone)
            self._gateway_types_cache[zone] = types
        return can_upgrade_type(types, current, desired)

    async def list_resources(self) -> list[Gateway]:
        return await self.scope.client.find_gateways(self.scope.resource_tags())

    async def delete_resource(self, resource: Gateway) -> None:
        logger.info("Deleting Gateway", extra={"gateway_name": resource.name, "zone": resource.zone})
        try:
            await self.scope.client.delete_gateway(
                resource.zone, resource.id, CAPS_MANAGED_IP_TAG in resource.tags
            )
        except Exception as e:
            raise RuntimeError(f"failed to delete Gateway: {e}") from e

    async def update_resource(self, resource: Gateway, desired: PublicGateway) -> Gateway:
        if desired.type and desired.type != resource.type:
            if await self._can_upgrade_type(resource.zone, resource.type, desired.type):
                logger.info(
                    "Upgrading Gateway",
                    extra={"gateway_name": resource.name, "zone": resource.zone, "type": desired.type},
                )
                return await self.scope.client.upgrade_gateway(resource.zone, resource.id, desired.type)
        return resource

    async def create_resource(self, zone: str, name: str, desired: PublicGateway) -> Gateway:
        client = self.scope.client
        tags = self.scope.resource_tags()
        ip_id = None

        if desired.ip:
            try:
                ip = await client.find_gateway_ip(zone, desired.ip)
            except Exception as e:
                raise RuntimeError(f"failed to find gateway ip: {e}") from e
            ip_id = ip.id
        else:
            tags.append(CAPS_MANAGED_IP_TAG)

        logger.info("Creating Gateway", extra={"gateway_name": name, "zone": zone})
        try:
            return await client.create_gateway(zone, name, desired.type or "", tags, ip_id)
        except Exception as e:
            raise RuntimeError(f"failed to create gateway: {e}") from e

    def get_resource_id(self, resource: Gateway) -> str:
        return resource.id

    def get_resource_zone(self, resource: Gateway) -> str:
        return resource.zone

    def get_resource_name(self, resource: Gateway) -> str:
        return resource.name

    def get_desired_zone(self, desired: PublicGateway) -> str:
        return get_zone_or_default(self.scope.client, desired.zone)

    def get_desired_resource_name(self, index: int) -> str:
        return self.scope.resource_name(str(index))

    async def should_keep_resource(self, resource: Gateway, desired: PublicGateway) -> bool:
        # A gateway without IPv4 is recreated
        if resource.ipv4 is None:
            return False

        if desired.type and desired.type != resource.type:
            if not await self._can_upgrade_type(resource.zone, resource.type, desired.type):
                return False

        if not desired.ip and CAPS_MANAGED_IP_TAG not in resource.tags:
            return False

        if desired.ip and resource.ipv4.address != desired.ip:
            return False

        return True


class VPCGWService:
    name = "vpcgw"

    def __init__(self, scope: NetworkScope) -> None:
        self.scope = scope

    async def _ensure_gateways(self, delete: bool) -> list[Gateway]:
        # An empty desired list removes every owned gateway
        desired = [] if delete else list(self.scope.public_gateways())
        return await ResourceEnsurer(GatewayAdapter(self.scope)).ensure(desired)

    async def _ensure_gateways_attachment(self, gateways: list[Gateway], pn_id: str) -> None:
        for gateway in gateways:
            if pn_id in gateway.private_network_ids:
                continue

            if gateway.status != GatewayStatus.RUNNING:
                raise with_transient_error(
                    f"gateway {gateway.id} is not yet ready: currently {gateway.status.value}",
                    GATEWAY_NOT_READY_RETRY_SECONDS,
                )

            logger.info(
                "Attaching Gateway to Private Network",
                extra={"gateway_id": gateway.id, "zone": gateway.zone, "private_network_id": pn_id},
            )
            try:
                await self.scope.client.create_gateway_network(gateway.zone, gateway.id, pn_id)
            except Exception as e:
                raise RuntimeError(
                    f"failed to create gateway network for gateway {gateway.id}: {e}"
                ) from e

    async def reconcile(self) -> None:
        if not self.scope.has_private_network():
            self.scope.set_condition(
                PUBLIC_GATEWAYS_READY_CONDITION, True, NO_PRIVATE_NETWORK_REASON
            )
            return

        try:
            gateways = await self._ensure_gateways(delete=False)
        except Exception as e:
            self.scope.set_condition(
                PUBLIC_GATEWAYS_READY_CONDITION, False, RECONCILIATION_FAILED_REASON, str(e)
            )
            raise

        pn_id = self.scope.private_network_id()

        try:
            await self._ensure_gateways_attachment(gateways, pn_id)
        except Exception as e:
            self.scope.set_condition(
                PUBLIC_GATEWAYS_READY_CONDITION,
                False,
                PRIVATE_NETWORK_ATTACHMENT_FAILED_REASON,
                str(e),
            )
            raise

        self.scope.set_condition(PUBLIC_GATEWAYS_READY_CONDITION, True, PROVISIONED_REASON)

    async def delete(self) -> None:
        if not self.scope.has_private_network():
            return
        await self._ensure_gateways(delete=True)
