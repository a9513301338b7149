"""Control plane load balancer service.

Owns the main load balancer of a ScalewayCluster (found by the
``caps-lb=main`` tag) and the extra load balancers converged through the
ResourceEnsurer (``caps-lb=extra``). Every load balancer forwards the
``kube-apiserver`` frontend to a backend on port 6443 and shares the same
ACLs as the main one.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

from .client import (
    ACL,
    IPAMIP,
    ACLAction,
    Backend,
    Frontend,
    LBStatus,
    LoadBalancer,
    get_zone_or_default,
    is_not_found_error,
)
from .ensurer import ResourceAdapter, ResourceEnsurer
from .errors import ReconcileError, with_terminal_error, with_transient_error
from .models import LoadBalancerSpec
from .scope import ClusterScope

logger = logging.getLogger(__name__)

# LB tags
CAPS_MAIN_LB_TAG = "caps-lb=main"
CAPS_EXTRA_LB_TAG = "caps-lb=extra"
CAPS_MANAGED_IP_TAG = "caps-lb-ip=managed"

LB_DEFAULT_TYPE = "LB-S"

# Must match the port of the apiservers
BACKEND_CONTROL_PLANE_PORT = 6443

BACKEND_NAME = "kube-apiserver"
FRONTEND_NAME = "kube-apiserver"

ACL_INDEX = 0
DENY_ALL_ACL_INDEX = 2**31 - 1

ALLOWED_RANGES_ACL_NAME = "allowed-ranges"
PUBLIC_GATEWAY_ACL_NAME = "public-gateway"
DENY_ALL_ACL_NAME = "deny-all"

LB_NOT_READY_RETRY_SECONDS = 5
LB_PRIVATE_IP_RETRY_SECONDS = 3


@dataclass
class LBWithPrivateIP:
    """A load balancer and its private IP.

    private_ip is the user-requested private IP, or the IP booked in IPAM once
    the load balancer is attached. It is meaningless without a private network.
    """

    lb: LoadBalancer
    private_ip: str | None = None


def lb_spec(client, spec: LoadBalancerSpec) -> tuple[str, str]:
    """Return the zone and type of a load balancer spec, applying defaults."""
    zone = get_zone_or_default(client, spec.zone)
    return zone, spec.type or LB_DEFAULT_TYPE


def ips_equal(a: list[str], b: list[str]) -> bool:
    """Compare two IP lists regardless of order."""
    return len(a) == len(b) and sorted(a) == sorted(b)


def acl_equal(a: list[ACL], b: list[ACL]) -> bool:
    """Compare two ACL lists by name, index, action and IPs regardless of order."""
    if len(a) != len(b):
        return False

    for x, y in zip(sorted(a, key=lambda acl: acl.name), sorted(b, key=lambda acl: acl.name)):
        if x.name != y.name or x.index != y.index or x.action != y.action:
            return False
        if not ips_equal(x.ips, y.ips):
            return False

    return True


def get_lb_ipv4(lb: LBWithPrivateIP, private: bool) -> str:
    if private:
        if lb.private_ip is None:
            raise RuntimeError(f"did not find private ipv4 for lb {lb.lb.id}")
        return lb.private_ip

    for ip in lb.lb.ips:
        if ipaddress.ip_address(ip.address).version == 4:
            return ip.address

    raise RuntimeError(f"did not find ipv4 for lb {lb.lb.id}")


def check_lbs_readiness(lbs: list[LBWithPrivateIP]) -> None:
    for item in lbs:
        if item.lb.status != LBStatus.READY:
            raise with_transient_error(
                f"lb {item.lb.id} is not yet ready: currently {item.lb.status.value}",
                LB_NOT_READY_RETRY_SECONDS,
            )


async def find_lb_ip(scope: ClusterScope, zone: str, address: str) -> str:
    try:
        ip = await scope.client.find_lb_ip(zone, address)
    except Exception as e:
        if is_not_found_error(e):
            raise with_terminal_error(f'failed to find IP "{address}": {e}') from e
        raise RuntimeError(f'failed to find IP "{address}": {e}') from e
    return ip.id


class ExtraLBAdapter(ResourceAdapter[LoadBalancerSpec, LBWithPrivateIP]):
    def __init__(self, scope: ClusterScope, pn_id: str | None) -> None:
        self.scope = scope
        self.pn_id = pn_id

    async def list_resources(self) -> list[LBWithPrivateIP]:
        lbs = await self.scope.client.find_lbs(self.scope.resource_tags(CAPS_EXTRA_LB_TAG))
        return [LBWithPrivateIP(lb) for lb in lbs]

    async def delete_resource(self, resource: LBWithPrivateIP) -> None:
        lb = resource.lb
        logger.info("Deleting extra LB", extra={"lb_name": lb.name, "zone": lb.zone})
        try:
            await self.scope.client.delete_lb(lb.zone, lb.id, CAPS_MANAGED_IP_TAG in lb.tags)
        except Exception as e:
            raise RuntimeError(f"failed to delete extra lb: {e}") from e

    def get_resource_id(self, resource: LBWithPrivateIP) -> str:
        return resource.lb.id

    def get_resource_zone(self, resource: LBWithPrivateIP) -> str:
        return resource.lb.zone

    def get_resource_name(self, resource: LBWithPrivateIP) -> str:
        return resource.lb.name

    def get_desired_zone(self, desired: LoadBalancerSpec) -> str:
        return get_zone_or_default(self.scope.client, desired.zone)

    def get_desired_resource_name(self, index: int) -> str:
        return self.scope.resource_name(str(index))

    async def should_keep_resource(
        self, resource: LBWithPrivateIP, desired: LoadBalancerSpec
    ) -> bool:
        lb = resource.lb
        if not self.scope.control_plane_load_balancer_private():
            # LB without public IP is recreated
            if not lb.ips:
                return False

            if desired.ip is None and CAPS_MANAGED_IP_TAG not in lb.tags:
                return False

            if desired.ip is not None and all(ip.address != desired.ip for ip in lb.ips):
                return False

        if desired.private_ip is not None and self.pn_id is not None:
            ips = await self.scope.client.find_lb_servers_ips(self.pn_id, [lb.id])
            # No IP yet means the private network is probably not attached
            if ips and all(ip.address != desired.private_ip for ip in ips):
                return False

        return True

    async def create_resource(
        self, zone: str, name: str, desired: LoadBalancerSpec
    ) -> LBWithPrivateIP:
        _, lb_type = lb_spec(self.scope.client, desired)
        tags = self.scope.resource_tags(CAPS_EXTRA_LB_TAG)

        ip_id = None
        if desired.ip is not None:
            ip_id = await find_lb_ip(self.scope, zone, desired.ip)
        else:
            tags.append(CAPS_MANAGED_IP_TAG)

        logger.info("Creating extra LB", extra={"lb_name": name, "zone": zone})
        lb = await self.scope.client.create_lb(
            zone, name, lb_type, ip_id, self.scope.control_plane_load_balancer_private(), tags
        )
        return LBWithPrivateIP(lb, desired.private_ip)

    async def update_resource(
        self, resource: LBWithPrivateIP, desired: LoadBalancerSpec
    ) -> LBWithPrivateIP:
        lb = resource.lb
        if desired.type and desired.type.lower() != lb.type.lower():
            logger.info(
                "Migrating extra LB",
                extra={"lb_name": lb.name, "zone": lb.zone, "type": desired.type},
            )
            resource.lb = await self.scope.client.migrate_lb(lb.zone, lb.id, desired.type)

        resource.private_ip = desired.private_ip
        return resource


class LBService:
    name = "lb"

    def __init__(self, scope: ClusterScope) -> None:
        self.scope = scope

    async def reconcile(self) -> None:
        main_lb = await self._ensure_lb()

        pn_id = self.scope.private_network_id() if self.scope.has_private_network() else None

        extra_lbs = await self._ensure_extra_lbs(pn_id, delete=False)
        all_lbs = [*extra_lbs, main_lb]

        check_lbs_readiness(all_lbs)
        await self._ensure_private_network(all_lbs, pn_id)

        try:
            backends = await self._ensure_backends(main_lb, extra_lbs)
        except Exception as e:
            raise RuntimeError(f"failed to ensure lb backend: {e}") from e

        try:
            frontend_by_lb = await self._ensure_frontends(backends)
        except Exception as e:
            raise RuntimeError(f"failed to ensure lb frontend: {e}") from e

        try:
            await self._ensure_acls(main_lb, frontend_by_lb, pn_id)
        except Exception as e:
            raise RuntimeError(f"failed to ensure ACLs: {e}") from e

        # Private IPs are only known once private networks are ensured
        private = self.scope.control_plane_load_balancer_private()
        self.scope.set_status_load_balancer_ip(get_lb_ipv4(main_lb, private))
        self.scope.set_status_extra_load_balancer_ips(
            [get_lb_ipv4(extra, private) for extra in extra_lbs]
        )

    async def delete(self) -> None:
        await self._ensure_delete_lb()
        await self._ensure_extra_lbs(None, delete=True)

    async def _ensure_lb(self) -> LBWithPrivateIP:
        client = self.scope.client
        spec = self.scope.control_plane_load_balancer()
        zone, lb_type = lb_spec(client, spec)
        tags = self.scope.resource_tags(CAPS_MAIN_LB_TAG)

        lb = None
        try:
            lb = await client.find_lb(zone, tags)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        if lb is not None and lb.type.lower() != lb_type.lower():
            logger.info("Migrating main LB", extra={"zone": zone, "type": lb_type})
            try:
                lb = await client.migrate_lb(zone, lb.id, lb_type)
            except Exception as e:
                raise RuntimeError(f"failed to migrate lb: {e}") from e
        elif lb is None:
            ip_id = await find_lb_ip(self.scope, zone, spec.ip) if spec.ip is not None else None

            logger.info("Creating main LB", extra={"zone": zone})
            lb = await client.create_lb(
                zone,
                self.scope.resource_name(),
                lb_type,
                ip_id,
                self.scope.control_plane_load_balancer_private(),
                tags,
            )

        return LBWithPrivateIP(lb, spec.private_ip)

    async def _ensure_delete_lb(self) -> None:
        client = self.scope.client
        spec = self.scope.control_plane_load_balancer()
        try:
            zone, _ = lb_spec(client, spec)
        except ReconcileError:
            # an invalid zone means nothing was ever created
            return

        try:
            lb = await client.find_lb(zone, self.scope.resource_tags(CAPS_MAIN_LB_TAG))
        except Exception as e:
            if is_not_found_error(e):
                return
            raise

        logger.info("Deleting main LB", extra={"zone": zone, "lb_id": lb.id})
        try:
            await client.delete_lb(zone, lb.id, spec.ip is None)
        except Exception as e:
            raise RuntimeError(f"failed to delete lb: {e}") from e

    async def _ensure_extra_lbs(self, pn_id: str | None, delete: bool) -> list[LBWithPrivateIP]:
        desired = [] if delete else list(self.scope.control_plane_extra_load_balancers())
        return await ResourceEnsurer(ExtraLBAdapter(self.scope, pn_id)).ensure(desired)

    async def _get_or_create_backend(
        self, item: LBWithPrivateIP, servers: list[str], update_servers: bool
    ) -> Backend:
        client = self.scope.client
        lb = item.lb
        servers = sorted(servers)

        backend = None
        try:
            backend = await client.find_backend(lb.zone, lb.id, BACKEND_NAME)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        if backend is None:
            logger.info("Creating LB backend", extra={"lb_id": lb.id, "zone": lb.zone})
            return await client.create_backend(
                lb.zone, lb.id, BACKEND_NAME, servers, BACKEND_CONTROL_PLANE_PORT
            )

        if update_servers and servers != sorted(backend.servers):
            logger.info("Updating LB backend servers", extra={"lb_id": lb.id, "zone": lb.zone})
            return await client.set_backend_servers(lb.zone, backend.id, servers)

        return backend

    async def _ensure_backends(
        self, main_lb: LBWithPrivateIP, extra_lbs: list[LBWithPrivateIP]
    ) -> list[tuple[LBWithPrivateIP, Backend]]:
        main_backend = await self._get_or_create_backend(main_lb, [], update_servers=False)
        backends = [(main_lb, main_backend)]

        # extra LBs mirror the servers of the main LB
        for extra in extra_lbs:
            backend = await self._get_or_create_backend(
                extra, main_backend.servers, update_servers=True
            )
            backends.append((extra, backend))

        return backends

    async def _ensure_frontends(
        self, backends: list[tuple[LBWithPrivateIP, Backend]]
    ) -> dict[str, Frontend]:
        client = self.scope.client
        frontend_by_lb: dict[str, Frontend] = {}

        for item, backend in backends:
            lb = item.lb
            frontend = None
            try:
                frontend = await client.find_frontend(lb.zone, lb.id, FRONTEND_NAME)
            except Exception as e:
                if not is_not_found_error(e):
                    raise

            if frontend is None:
                logger.info("Creating LB frontend", extra={"lb_id": lb.id, "zone": lb.zone})
                frontend = await client.create_frontend(
                    lb.zone,
                    lb.id,
                    FRONTEND_NAME,
                    backend.id,
                    self.scope.control_plane_load_balancer_port(),
                )

            frontend_by_lb[lb.id] = frontend

        return frontend_by_lb

    async def _ensure_private_network(
        self, lbs: list[LBWithPrivateIP], pn_id: str | None
    ) -> None:
        if pn_id is None:
            return

        client = self.scope.client
        available_ips: list[IPAMIP] = []  # lazy loaded
        lb_ids_with_missing_ip: list[str] = []

        for item in lbs:
            lb = item.lb
            lb_pn = None
            try:
                lb_pn = await client.find_lb_private_network(lb.zone, lb.id, pn_id)
            except Exception as e:
                if not is_not_found_error(e):
                    raise

            if lb_pn is None:
                ip_id = None

                if item.private_ip is not None:
                    if not available_ips:
                        try:
                            available_ips = await client.find_available_ips(pn_id)
                        except Exception as e:
                            raise RuntimeError(f"failed to list available IPs: {e}") from e

                    match = next((ip for ip in available_ips if ip.address == item.private_ip), None)
                    if match is None:
                        raise with_terminal_error(
                            f"did not find available IP with address {item.private_ip} in IPAM"
                        )
                    ip_id = match.id

                logger.info(
                    "Attaching LB to Private Network",
                    extra={"lb_id": lb.id, "zone": lb.zone, "private_network_id": pn_id},
                )
                await client.attach_lb_private_network(lb.zone, lb.id, pn_id, ip_id)

            if item.private_ip is None:
                lb_ids_with_missing_ip.append(lb.id)

        try:
            missing_ips = await client.find_lb_servers_ips(pn_id, lb_ids_with_missing_ip)
        except Exception as e:
            raise RuntimeError(f"failed to find lb missing IPs: {e}") from e

        for item in lbs:
            if item.private_ip is not None:
                continue

            match = next((ip for ip in missing_ips if ip.resource_id == item.lb.id), None)
            if match is None:
                raise with_transient_error(
                    f"private IP for lb {item.lb.name} is not yet available in IPAM",
                    LB_PRIVATE_IP_RETRY_SECONDS,
                )
            item.private_ip = match.address

    async def _ensure_acls(
        self,
        main_lb: LBWithPrivateIP,
        frontend_by_lb: dict[str, Frontend],
        pn_id: str | None,
    ) -> None:
        client = self.scope.client
        allowed_ranges = self.scope.control_plane_load_balancer_allowed_ranges()
        deny_all = ["0.0.0.0/0", "::/0"] if allowed_ranges else []

        public_gateway_ips: list[str] = []
        if pn_id is not None and self.scope.has_private_network():
            for gw in await client.find_gateways(self.scope.resource_tags()):
                if gw.ipv4 is not None:
                    public_gateway_ips.append(gw.ipv4.address)

        main_frontend = frontend_by_lb[main_lb.lb.id]

        for name, ips, deny, index in (
            (ALLOWED_RANGES_ACL_NAME, allowed_ranges, False, ACL_INDEX),
            (PUBLIC_GATEWAY_ACL_NAME, public_gateway_ips, False, ACL_INDEX),
            # not created (or removed) when there are no allowed ranges
            (DENY_ALL_ACL_NAME, deny_all, True, DENY_ALL_ACL_INDEX),
        ):
            try:
                await self._ensure_acl(main_frontend, name, ips, deny, index)
            except Exception as e:
                raise RuntimeError(f"failed to ensure {name} ACL: {e}") from e

        if len(frontend_by_lb) <= 1:
            return

        try:
            main_acls = await client.list_lb_acls(main_frontend.zone, main_frontend.id)
        except Exception as e:
            raise RuntimeError(f"failed to list ACLs: {e}") from e

        for lb_id, frontend in frontend_by_lb.items():
            if lb_id == main_lb.lb.id:
                continue

            try:
                extra_acls = await client.list_lb_acls(frontend.zone, frontend.id)
            except Exception as e:
                raise RuntimeError(f"failed to list ACLs for extra LB: {e}") from e

            if acl_equal(main_acls, extra_acls):
                continue

            logger.info("Copying main LB ACLs", extra={"lb_id": lb_id, "zone": frontend.zone})
            try:
                await client.set_lb_acls(frontend.zone, frontend.id, main_acls)
            except Exception as e:
                raise RuntimeError(f"failed to set acls: {e}") from e

    async def _ensure_acl(
        self, frontend: Frontend, name: str, ips: list[str], deny: bool, index: int
    ) -> None:
        """Ensure the named ACL exists with ips, or is absent when ips is empty."""
        client = self.scope.client

        acl = None
        try:
            acl = await client.find_lb_acl_by_name(frontend.zone, frontend.id, name)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        if not ips:
            if acl is not None:
                logger.info("Deleting LB ACL", extra={"acl_name": name, "zone": frontend.zone})
                await client.delete_lb_acl(frontend.zone, acl.id)
            return

        action = ACLAction.DENY if deny else ACLAction.ALLOW

        if acl is None:
            logger.info("Creating LB ACL", extra={"acl_name": name, "zone": frontend.zone})
            await client.create_lb_acl(frontend.zone, frontend.id, name, index, action, ips)
        elif not ips_equal(ips, acl.ips):
            logger.info("Updating LB ACL", extra={"acl_name": name, "zone": frontend.zone})
            await client.update_lb_acl(frontend.zone, acl.id, name, index, action, ips)
