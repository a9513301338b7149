"""Private network service.

Ensures the private network of a ScalewayCluster or ScalewayManagedCluster.
A network given by ID is adopted and never deleted; otherwise the network is
found by ownership tags and created when missing.
"""

from __future__ import annotations

import logging

from .client import PrivateNetwork, is_not_found_error, is_precondition_failed_error
from .errors import with_terminal_error, with_transient_error
from .scope import NetworkScope

logger = logging.getLogger(__name__)

# Resources may take a moment to leave the network before it can be deleted
PRIVATE_NETWORK_IN_USE_RETRY_SECONDS = 1


class VPCService:
    name = "vpc"

    def __init__(self, scope: NetworkScope) -> None:
        self.scope = scope

    def _should_manage_private_network(self) -> bool:
        return self.scope.has_private_network() and not self.scope.private_network_params().id

    async def reconcile(self) -> None:
        if not self.scope.has_private_network():
            return

        params = self.scope.private_network_params()
        if params.id:
            pn = await self.scope.client.get_private_network(params.id)
        else:
            try:
                pn = await self._get_or_create_private_network()
            except Exception as e:
                raise RuntimeError(f"failed to get or create Private Network: {e}") from e

        if not pn.dhcp_enabled:
            raise with_terminal_error(
                f"Private Network with ID {pn.id} is not supported: DHCP is not enabled"
            )

        self.scope.set_vpc_status(pn.id, pn.vpc_id)

    async def _get_or_create_private_network(self) -> PrivateNetwork:
        client = self.scope.client
        params = self.scope.private_network_params()

        try:
            return await client.find_private_network(self.scope.resource_tags(), params.vpc_id)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        name = self.scope.resource_name()
        logger.info("Creating Private Network", extra={"resource_name": name})
        return await client.create_private_network(
            name, params.vpc_id, params.subnet, self.scope.resource_tags()
        )

    async def delete(self) -> None:
        if not self._should_manage_private_network():
            return

        client = self.scope.client
        try:
            pn = await client.find_private_network(
                self.scope.resource_tags(), self.scope.private_network_params().vpc_id
            )
        except Exception as e:
            if is_not_found_error(e):
                return
            raise RuntimeError(f"failed to find Private Network: {e}") from e

        logger.info("Deleting Private Network", extra={"private_network_id": pn.id})
        try:
            await client.delete_private_network(pn.id)
        except Exception as e:
            if is_precondition_failed_error(e):
                raise with_transient_error(e, PRIVATE_NETWORK_IN_USE_RETRY_SECONDS) from e
            raise RuntimeError(f"failed to delete Private Network: {e}") from e
