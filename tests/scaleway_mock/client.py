"""In-memory CloudClient bound to a MockCloudState.

Behaves like the provider APIs closely enough for the services: resources
created through it carry CREATED_BY_TAG, tag searches require every tag,
single-result finds raise NotFoundError or TooManyItemsError, and every
returned object is a copy so callers cannot mutate state behind its back.
"""

from __future__ import annotations

import copy
from typing import Any, TypeVar

from caps.client import (
    ACL,
    CREATED_BY_TAG,
    IPAMIP,
    LBIP,
    ACLAction,
    Backend,
    ClusterACLRule,
    ClusterAutoscalerConfig,
    ClusterAutoUpgrade,
    ClusterOpenIDConnect,
    ClusterStatus,
    DNSRecord,
    ForbiddenError,
    Frontend,
    Gateway,
    GatewayIP,
    InstanceIP,
    IPType,
    K8sCluster,
    K8sNode,
    K8sPool,
    Kubeconfig,
    LBPrivateNetwork,
    LoadBalancer,
    NamedResource,
    NotFoundError,
    PoolStatus,
    PoolUpgradePolicy,
    PreconditionFailedError,
    PrivateNetwork,
    PrivateNIC,
    Server,
    ServerAction,
    ServerIP,
    ServerState,
    ServerVolume,
    TooManyItemsError,
    Volume,
    VolumeType,
    check_search_tags,
    match_tags,
)

from .state import MockCloudState

T = TypeVar("T")

DEFAULT_GATEWAY_TYPE = "VPC-GW-S"
DEFAULT_CNI = "cilium"
DEFAULT_SECRET_KEY = "secret-key"


def _one(items: list[T]) -> T:
    if not items:
        raise NotFoundError()
    if len(items) > 1:
        raise TooManyItemsError()
    return copy.deepcopy(items[0])


def _with_created_by(tags: list[str]) -> list[str]:
    return [*tags, CREATED_BY_TAG] if CREATED_BY_TAG not in tags else list(tags)


def _zone_region(zone: str) -> str:
    return zone.rsplit("-", 1)[0]


class MockCloudClient:
    """CloudClient implementation backed by shared in-memory state."""

    def __init__(
        self,
        state: MockCloudState,
        region: str,
        project_id: str,
        secret_key: str = DEFAULT_SECRET_KEY,
    ) -> None:
        self._state = state
        self._region = region
        self._project_id = project_id
        self._secret_key = secret_key

    @property
    def region(self) -> str:
        return self._region

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def secret_key(self) -> str:
        return self._secret_key

    def product_zones(self, product: str) -> list[str]:
        return list(self._state.product_zones.get(product, []))

    def _in_region(self, zone: str) -> bool:
        return _zone_region(zone) == self._region

    def _get(self, items: dict[str, T], item_id: str) -> T:
        if item_id not in items:
            raise NotFoundError(f"resource {item_id} not found")
        return items[item_id]

    # =========================================================================
    # VPC
    # =========================================================================

    async def get_private_network(self, private_network_id: str) -> PrivateNetwork:
        self._state.record("get_private_network", private_network_id=private_network_id)
        return copy.deepcopy(self._get(self._state.private_networks, private_network_id))

    async def find_private_network(self, tags: list[str], vpc_id: str | None) -> PrivateNetwork:
        self._state.record("find_private_network", tags=list(tags), vpc_id=vpc_id)
        check_search_tags(tags)
        return _one(
            [
                pn
                for pn in self._state.private_networks.values()
                if pn.region == self._region
                and match_tags(pn.tags, tags)
                and (vpc_id is None or pn.vpc_id == vpc_id)
            ]
        )

    async def create_private_network(
        self, name: str, vpc_id: str | None, subnet: str | None, tags: list[str]
    ) -> PrivateNetwork:
        self._state.record(
            "create_private_network", name=name, vpc_id=vpc_id, subnet=subnet, tags=list(tags)
        )
        pn = PrivateNetwork(
            id=self._state.next_id("pn"),
            name=name,
            vpc_id=vpc_id or f"vpc-{self._region}-default",
            region=self._region,
            tags=_with_created_by(tags),
            subnets=[subnet] if subnet else ["172.16.0.0/22"],
        )
        self._state.private_networks[pn.id] = pn
        return copy.deepcopy(pn)

    async def delete_private_network(self, private_network_id: str) -> None:
        self._state.record("delete_private_network", private_network_id=private_network_id)
        self._get(self._state.private_networks, private_network_id)

        in_use = (
            any(private_network_id in gw.private_network_ids for gw in self._state.gateways.values())
            or any(
                lb_pn.private_network_id == private_network_id
                for lb_pn in self._state.lb_private_networks
            )
            or any(
                nic.private_network_id == private_network_id
                for server in self._state.servers.values()
                for nic in server.private_nics
            )
        )
        if in_use:
            raise PreconditionFailedError("private network is still in use")

        del self._state.private_networks[private_network_id]
        for ip_id in [
            ip.id
            for ip in self._state.ipam_ips.values()
            if ip.private_network_id == private_network_id
        ]:
            del self._state.ipam_ips[ip_id]

    # =========================================================================
    # Public gateways
    # =========================================================================

    async def find_gateways(self, tags: list[str]) -> list[Gateway]:
        self._state.record("find_gateways", tags=list(tags))
        check_search_tags(tags)
        return [
            copy.deepcopy(gw)
            for gw in self._state.gateways.values()
            if self._in_region(gw.zone) and match_tags(gw.tags, tags)
        ]

    async def create_gateway(
        self, zone: str, name: str, gateway_type: str, tags: list[str], ip_id: str | None
    ) -> Gateway:
        self._state.record(
            "create_gateway",
            zone=zone,
            name=name,
            gateway_type=gateway_type,
            tags=list(tags),
            ip_id=ip_id,
        )
        gateway_id = self._state.next_id("gw")

        if ip_id is not None:
            ip = self._get(self._state.gateway_ips, ip_id)
            if ip.gateway_id is not None:
                raise PreconditionFailedError(f"ip {ip_id} is already attached")
        else:
            ip = self._state.add_gateway_ip(zone, self._state.next_public_address())
        ip.gateway_id = gateway_id

        gateway = Gateway(
            id=gateway_id,
            name=name,
            zone=zone,
            type=gateway_type or DEFAULT_GATEWAY_TYPE,
            status=self._state.gateway_create_status,
            tags=_with_created_by(tags),
            ipv4=copy.deepcopy(ip),
        )
        self._state.gateways[gateway.id] = gateway
        return copy.deepcopy(gateway)

    async def upgrade_gateway(self, zone: str, gateway_id: str, gateway_type: str) -> Gateway:
        self._state.record(
            "upgrade_gateway", zone=zone, gateway_id=gateway_id, gateway_type=gateway_type
        )
        gateway = self._get(self._state.gateways, gateway_id)
        gateway.type = gateway_type
        return copy.deepcopy(gateway)

    async def delete_gateway(self, zone: str, gateway_id: str, delete_ip: bool) -> None:
        self._state.record("delete_gateway", zone=zone, gateway_id=gateway_id, delete_ip=delete_ip)
        gateway = self._get(self._state.gateways, gateway_id)
        del self._state.gateways[gateway_id]

        if gateway.ipv4 is None or gateway.ipv4.id not in self._state.gateway_ips:
            return
        if delete_ip:
            del self._state.gateway_ips[gateway.ipv4.id]
        else:
            self._state.gateway_ips[gateway.ipv4.id].gateway_id = None

    async def list_gateway_types(self, zone: str) -> list[str]:
        self._state.record("list_gateway_types", zone=zone)
        return list(self._state.gateway_types)

    async def find_gateway_ip(self, zone: str, address: str) -> GatewayIP:
        self._state.record("find_gateway_ip", zone=zone, address=address)
        return _one(
            [
                ip
                for ip in self._state.gateway_ips.values()
                if ip.zone == zone and ip.address == address
            ]
        )

    async def create_gateway_network(
        self, zone: str, gateway_id: str, private_network_id: str
    ) -> None:
        self._state.record(
            "create_gateway_network",
            zone=zone,
            gateway_id=gateway_id,
            private_network_id=private_network_id,
        )
        gateway = self._get(self._state.gateways, gateway_id)
        self._get(self._state.private_networks, private_network_id)
        gateway.private_network_ids.append(private_network_id)

    # =========================================================================
    # Load balancers
    # =========================================================================

    async def find_lb(self, zone: str, tags: list[str]) -> LoadBalancer:
        self._state.record("find_lb", zone=zone, tags=list(tags))
        check_search_tags(tags)
        return _one(
            [
                lb
                for lb in self._state.lbs.values()
                if lb.zone == zone and match_tags(lb.tags, tags)
            ]
        )

    async def find_lbs(self, tags: list[str]) -> list[LoadBalancer]:
        self._state.record("find_lbs", tags=list(tags))
        check_search_tags(tags)
        return [
            copy.deepcopy(lb)
            for lb in self._state.lbs.values()
            if self._in_region(lb.zone) and match_tags(lb.tags, tags)
        ]

    async def create_lb(
        self,
        zone: str,
        name: str,
        lb_type: str,
        ip_id: str | None,
        private: bool,
        tags: list[str],
    ) -> LoadBalancer:
        self._state.record(
            "create_lb",
            zone=zone,
            name=name,
            lb_type=lb_type,
            ip_id=ip_id,
            private=private,
            tags=list(tags),
        )
        lb_id = self._state.next_id("lb")

        ips: list[LBIP] = []
        if not private:
            if ip_id is not None:
                ip = self._get(self._state.lb_ips, ip_id)
                if ip.lb_id is not None:
                    raise PreconditionFailedError(f"ip {ip_id} is already attached")
            else:
                ip = self._state.add_lb_ip(zone, self._state.next_public_address())
            ip.lb_id = lb_id
            ips.append(copy.deepcopy(ip))

        lb = LoadBalancer(
            id=lb_id,
            name=name,
            zone=zone,
            type=lb_type,
            status=self._state.lb_create_status,
            tags=_with_created_by(tags),
            ips=ips,
            private=private,
        )
        self._state.lbs[lb.id] = lb
        return copy.deepcopy(lb)

    async def migrate_lb(self, zone: str, lb_id: str, lb_type: str) -> LoadBalancer:
        self._state.record("migrate_lb", zone=zone, lb_id=lb_id, lb_type=lb_type)
        lb = self._get(self._state.lbs, lb_id)
        lb.type = lb_type
        return copy.deepcopy(lb)

    async def delete_lb(self, zone: str, lb_id: str, release_ip: bool) -> None:
        self._state.record("delete_lb", zone=zone, lb_id=lb_id, release_ip=release_ip)
        lb = self._get(self._state.lbs, lb_id)
        del self._state.lbs[lb_id]

        frontend_ids = {f.id for f in self._state.frontends.values() if f.lb_id == lb_id}
        self._state.acls = {
            k: acl for k, acl in self._state.acls.items() if acl.frontend_id not in frontend_ids
        }
        self._state.frontends = {
            k: f for k, f in self._state.frontends.items() if f.lb_id != lb_id
        }
        self._state.backends = {
            k: b for k, b in self._state.backends.items() if b.lb_id != lb_id
        }
        self._state.lb_private_networks = [
            lb_pn for lb_pn in self._state.lb_private_networks if lb_pn.lb_id != lb_id
        ]
        self._state.ipam_ips = {
            k: ip for k, ip in self._state.ipam_ips.items() if ip.resource_id != lb_id
        }

        for ip in lb.ips:
            if ip.id not in self._state.lb_ips:
                continue
            if release_ip:
                del self._state.lb_ips[ip.id]
            else:
                self._state.lb_ips[ip.id].lb_id = None

    async def find_lb_ip(self, zone: str, address: str) -> LBIP:
        self._state.record("find_lb_ip", zone=zone, address=address)
        return _one(
            [ip for ip in self._state.lb_ips.values() if ip.zone == zone and ip.address == address]
        )

    async def find_backend(self, zone: str, lb_id: str, name: str) -> Backend:
        self._state.record("find_backend", zone=zone, lb_id=lb_id, name=name)
        return _one(
            [b for b in self._state.backends.values() if b.lb_id == lb_id and b.name == name]
        )

    async def create_backend(
        self, zone: str, lb_id: str, name: str, servers: list[str], port: int
    ) -> Backend:
        self._state.record(
            "create_backend", zone=zone, lb_id=lb_id, name=name, servers=list(servers), port=port
        )
        self._get(self._state.lbs, lb_id)
        backend = Backend(
            id=self._state.next_id("backend"),
            name=name,
            lb_id=lb_id,
            zone=zone,
            servers=list(servers),
            port=port,
        )
        self._state.backends[backend.id] = backend
        return copy.deepcopy(backend)

    async def set_backend_servers(
        self, zone: str, backend_id: str, servers: list[str]
    ) -> Backend:
        self._state.record(
            "set_backend_servers", zone=zone, backend_id=backend_id, servers=list(servers)
        )
        backend = self._get(self._state.backends, backend_id)
        backend.servers = list(servers)
        return copy.deepcopy(backend)

    async def add_backend_server(self, zone: str, backend_id: str, ip: str) -> None:
        self._state.record("add_backend_server", zone=zone, backend_id=backend_id, ip=ip)
        backend = self._get(self._state.backends, backend_id)
        if ip not in backend.servers:
            backend.servers.append(ip)

    async def remove_backend_server(self, zone: str, backend_id: str, ip: str) -> None:
        self._state.record("remove_backend_server", zone=zone, backend_id=backend_id, ip=ip)
        backend = self._get(self._state.backends, backend_id)
        backend.servers = [s for s in backend.servers if s != ip]

    async def find_frontend(self, zone: str, lb_id: str, name: str) -> Frontend:
        self._state.record("find_frontend", zone=zone, lb_id=lb_id, name=name)
        return _one(
            [f for f in self._state.frontends.values() if f.lb_id == lb_id and f.name == name]
        )

    async def create_frontend(
        self, zone: str, lb_id: str, name: str, backend_id: str, port: int
    ) -> Frontend:
        self._state.record(
            "create_frontend", zone=zone, lb_id=lb_id, name=name, backend_id=backend_id, port=port
        )
        self._get(self._state.backends, backend_id)
        frontend = Frontend(
            id=self._state.next_id("frontend"),
            name=name,
            lb_id=lb_id,
            zone=zone,
            backend_id=backend_id,
            port=port,
        )
        self._state.frontends[frontend.id] = frontend
        return copy.deepcopy(frontend)

    async def find_lb_acl_by_name(self, zone: str, frontend_id: str, name: str) -> ACL:
        self._state.record("find_lb_acl_by_name", zone=zone, frontend_id=frontend_id, name=name)
        return _one(
            [
                acl
                for acl in self._state.acls.values()
                if acl.frontend_id == frontend_id and acl.name == name
            ]
        )

    async def list_lb_acls(self, zone: str, frontend_id: str) -> list[ACL]:
        self._state.record("list_lb_acls", zone=zone, frontend_id=frontend_id)
        return [
            copy.deepcopy(acl)
            for acl in self._state.acls.values()
            if acl.frontend_id == frontend_id
        ]

    def _add_acl(
        self, frontend_id: str, name: str, index: int, action: ACLAction, ips: list[str]
    ) -> ACL:
        acl = ACL(
            id=self._state.next_id("acl"),
            name=name,
            frontend_id=frontend_id,
            index=index,
            action=action,
            ips=list(ips),
        )
        self._state.acls[acl.id] = acl
        return acl

    async def create_lb_acl(
        self,
        zone: str,
        frontend_id: str,
        name: str,
        index: int,
        action: ACLAction,
        ips: list[str],
    ) -> None:
        self._state.record(
            "create_lb_acl",
            zone=zone,
            frontend_id=frontend_id,
            name=name,
            index=index,
            action=action,
            ips=list(ips),
        )
        self._get(self._state.frontends, frontend_id)
        self._add_acl(frontend_id, name, index, action, ips)

    async def update_lb_acl(
        self,
        zone: str,
        acl_id: str,
        name: str,
        index: int,
        action: ACLAction,
        ips: list[str],
    ) -> None:
        self._state.record(
            "update_lb_acl",
            zone=zone,
            acl_id=acl_id,
            name=name,
            index=index,
            action=action,
            ips=list(ips),
        )
        acl = self._get(self._state.acls, acl_id)
        acl.name = name
        acl.index = index
        acl.action = action
        acl.ips = list(ips)

    async def delete_lb_acl(self, zone: str, acl_id: str) -> None:
        self._state.record("delete_lb_acl", zone=zone, acl_id=acl_id)
        self._get(self._state.acls, acl_id)
        del self._state.acls[acl_id]

    async def set_lb_acls(self, zone: str, frontend_id: str, acls: list[ACL]) -> None:
        self._state.record(
            "set_lb_acls", zone=zone, frontend_id=frontend_id, acls=copy.deepcopy(acls)
        )
        self._get(self._state.frontends, frontend_id)
        self._state.acls = {
            k: acl for k, acl in self._state.acls.items() if acl.frontend_id != frontend_id
        }
        for acl in acls:
            self._add_acl(frontend_id, acl.name, acl.index, acl.action, acl.ips)

    async def find_lb_private_network(
        self, zone: str, lb_id: str, private_network_id: str
    ) -> LBPrivateNetwork:
        self._state.record(
            "find_lb_private_network",
            zone=zone,
            lb_id=lb_id,
            private_network_id=private_network_id,
        )
        return _one(
            [
                lb_pn
                for lb_pn in self._state.lb_private_networks
                if lb_pn.lb_id == lb_id and lb_pn.private_network_id == private_network_id
            ]
        )

    async def attach_lb_private_network(
        self, zone: str, lb_id: str, private_network_id: str, ip_id: str | None
    ) -> None:
        self._state.record(
            "attach_lb_private_network",
            zone=zone,
            lb_id=lb_id,
            private_network_id=private_network_id,
            ip_id=ip_id,
        )
        self._get(self._state.lbs, lb_id)
        self._get(self._state.private_networks, private_network_id)
        self._state.lb_private_networks.append(LBPrivateNetwork(lb_id, private_network_id))

        if ip_id is not None:
            self._get(self._state.ipam_ips, ip_id).resource_id = lb_id
        elif self._state.auto_ipam:
            self._state.add_ipam_ip(
                private_network_id, self._state.next_private_address(), resource_id=lb_id
            )

    # =========================================================================
    # IPAM
    # =========================================================================

    async def find_available_ips(self, private_network_id: str) -> list[IPAMIP]:
        self._state.record("find_available_ips", private_network_id=private_network_id)
        return [
            copy.deepcopy(ip)
            for ip in self._state.ipam_ips.values()
            if ip.private_network_id == private_network_id and ip.resource_id is None
        ]

    async def find_lb_servers_ips(
        self, private_network_id: str, lb_ids: list[str]
    ) -> list[IPAMIP]:
        self._state.record(
            "find_lb_servers_ips", private_network_id=private_network_id, lb_ids=list(lb_ids)
        )
        return [
            copy.deepcopy(ip)
            for ip in self._state.ipam_ips.values()
            if ip.private_network_id == private_network_id and ip.resource_id in lb_ids
        ]

    async def find_private_nic_ips(self, private_nic_id: str) -> list[IPAMIP]:
        self._state.record("find_private_nic_ips", private_nic_id=private_nic_id)
        return [
            copy.deepcopy(ip)
            for ip in self._state.ipam_ips.values()
            if ip.resource_id == private_nic_id
        ]

    # =========================================================================
    # Domain
    # =========================================================================

    def _check_dns_zone(self, zone: str) -> None:
        if zone in self._state.forbidden_dns_zones:
            raise ForbiddenError(f"insufficient permissions on dns zone {zone}")

    async def list_dns_zone_records(self, zone: str, name: str) -> list[DNSRecord]:
        self._state.record("list_dns_zone_records", zone=zone, name=name)
        self._check_dns_zone(zone)
        return copy.deepcopy(self._state.dns_records.get((zone, name), []))

    async def set_dns_zone_records(self, zone: str, name: str, ips: list[str]) -> None:
        self._state.record("set_dns_zone_records", zone=zone, name=name, ips=list(ips))
        self._check_dns_zone(zone)
        self._state.dns_records[(zone, name)] = [DNSRecord(name=name, data=ip) for ip in ips]

    async def delete_dns_zone_records(self, zone: str, name: str) -> None:
        self._state.record("delete_dns_zone_records", zone=zone, name=name)
        self._check_dns_zone(zone)
        self._state.dns_records.pop((zone, name), None)

    # =========================================================================
    # Kubernetes
    # =========================================================================

    async def find_cluster(self, name: str) -> K8sCluster:
        self._state.record("find_cluster", name=name)
        return _one(
            [
                c
                for c in self._state.clusters.values()
                if c.region == self._region and c.name == name
            ]
        )

    async def create_cluster(
        self,
        *,
        name: str,
        cluster_type: str,
        version: str,
        private_network_id: str | None,
        tags: list[str],
        feature_gates: list[str],
        admission_plugins: list[str],
        apiserver_cert_sans: list[str],
        cni: str,
        autoscaler: ClusterAutoscalerConfig,
        auto_upgrade: ClusterAutoUpgrade,
        open_id_connect: ClusterOpenIDConnect,
    ) -> K8sCluster:
        self._state.record(
            "create_cluster",
            name=name,
            cluster_type=cluster_type,
            version=version,
            private_network_id=private_network_id,
            tags=list(tags),
            cni=cni,
        )
        cluster_id = self._state.next_id("k8s")
        cluster = K8sCluster(
            id=cluster_id,
            name=name,
            region=self._region,
            type=cluster_type,
            version=version,
            status=self._state.cluster_create_status,
            tags=_with_created_by(tags),
            url=f"https://{cluster_id}.api.k8s.{self._region}.scw.cloud:6443",
            cni=cni or DEFAULT_CNI,
            private_network_id=private_network_id,
            feature_gates=list(feature_gates),
            admission_plugins=list(admission_plugins),
            apiserver_cert_sans=list(apiserver_cert_sans),
            autoscaler=copy.deepcopy(autoscaler),
            auto_upgrade=copy.deepcopy(auto_upgrade),
            open_id_connect=copy.deepcopy(open_id_connect),
        )
        self._state.clusters[cluster.id] = cluster
        # new clusters accept every source
        self._state.cluster_acl_rules[cluster.id] = [ClusterACLRule(ip="0.0.0.0/0")]
        return copy.deepcopy(cluster)

    async def delete_cluster(self, cluster_id: str, with_additional_resources: bool) -> None:
        self._state.record(
            "delete_cluster",
            cluster_id=cluster_id,
            with_additional_resources=with_additional_resources,
        )
        self._get(self._state.clusters, cluster_id)
        del self._state.clusters[cluster_id]
        self._state.cluster_acl_rules.pop(cluster_id, None)
        for pool_id in [p.id for p in self._state.pools.values() if p.cluster_id == cluster_id]:
            del self._state.pools[pool_id]
            self._state.nodes.pop(pool_id, None)

    async def set_cluster_type(self, cluster_id: str, cluster_type: str) -> None:
        self._state.record("set_cluster_type", cluster_id=cluster_id, cluster_type=cluster_type)
        self._get(self._state.clusters, cluster_id).type = cluster_type

    async def upgrade_cluster(self, cluster_id: str, version: str) -> None:
        self._state.record("upgrade_cluster", cluster_id=cluster_id, version=version)
        self._get(self._state.clusters, cluster_id).version = version

    async def update_cluster(self, cluster_id: str, **changes: Any) -> None:
        self._state.record("update_cluster", cluster_id=cluster_id, **copy.deepcopy(changes))
        cluster = self._get(self._state.clusters, cluster_id)
        for field_name, value in changes.items():
            if value is None:
                continue
            if field_name == "tags":
                value = _with_created_by(value)
            setattr(cluster, field_name, copy.deepcopy(value))

    async def list_cluster_acl_rules(self, cluster_id: str) -> list[ClusterACLRule]:
        self._state.record("list_cluster_acl_rules", cluster_id=cluster_id)
        self._get(self._state.clusters, cluster_id)
        return copy.deepcopy(self._state.cluster_acl_rules.get(cluster_id, []))

    async def set_cluster_acl_rules(self, cluster_id: str, rules: list[ClusterACLRule]) -> None:
        self._state.record(
            "set_cluster_acl_rules", cluster_id=cluster_id, rules=copy.deepcopy(rules)
        )
        self._get(self._state.clusters, cluster_id)
        self._state.cluster_acl_rules[cluster_id] = copy.deepcopy(rules)

    async def get_cluster_kubeconfig(self, cluster_id: str) -> Kubeconfig:
        self._state.record("get_cluster_kubeconfig", cluster_id=cluster_id)
        self._get(self._state.clusters, cluster_id)
        return Kubeconfig(certificate_authority_data=self._state.cluster_ca_data)

    async def find_pool(self, cluster_id: str, name: str) -> K8sPool:
        self._state.record("find_pool", cluster_id=cluster_id, name=name)
        return _one(
            [
                p
                for p in self._state.pools.values()
                if p.cluster_id == cluster_id and p.name == name
            ]
        )

    async def create_pool(
        self,
        *,
        cluster_id: str,
        zone: str,
        name: str,
        node_type: str,
        placement_group_id: str | None,
        security_group_id: str | None,
        autoscaling: bool,
        autohealing: bool,
        public_ip_disabled: bool,
        size: int,
        min_size: int,
        max_size: int,
        tags: list[str],
        kubelet_args: dict[str, str],
        root_volume_type: str | None,
        root_volume_size_gb: int | None,
        upgrade_policy: PoolUpgradePolicy,
    ) -> K8sPool:
        self._state.record(
            "create_pool",
            cluster_id=cluster_id,
            zone=zone,
            name=name,
            node_type=node_type,
            autoscaling=autoscaling,
            size=size,
            min_size=min_size,
            max_size=max_size,
            tags=list(tags),
        )
        cluster = self._get(self._state.clusters, cluster_id)
        pool_zone = zone or f"{self._region}-1"
        pool = K8sPool(
            id=self._state.next_id("pool"),
            name=name,
            cluster_id=cluster_id,
            zone=pool_zone,
            node_type=node_type,
            version=cluster.version,
            status=self._state.pool_create_status,
            tags=_with_created_by(tags),
            autoscaling=autoscaling,
            autohealing=autohealing,
            size=size,
            min_size=min_size,
            max_size=max_size,
            kubelet_args=dict(kubelet_args),
            upgrade_policy=copy.deepcopy(upgrade_policy),
            placement_group_id=placement_group_id,
            root_volume_type=root_volume_type,
            root_volume_size_gb=root_volume_size_gb,
            public_ip_disabled=public_ip_disabled,
            security_group_id=security_group_id,
        )
        self._state.pools[pool.id] = pool
        self._state.nodes[pool.id] = [
            K8sNode(
                id=f"{pool.id}-node-{i}",
                name=f"{name}-node-{i}",
                provider_id=f"scaleway://instance/{pool_zone}/{pool.id}-server-{i}",
            )
            for i in range(size)
        ]
        if cluster.status == ClusterStatus.POOL_REQUIRED:
            cluster.status = self._state.cluster_create_status
        return copy.deepcopy(pool)

    async def update_pool(self, pool_id: str, **changes: Any) -> None:
        self._state.record("update_pool", pool_id=pool_id, **copy.deepcopy(changes))
        pool = self._get(self._state.pools, pool_id)
        for field_name, value in changes.items():
            if value is None:
                continue
            if field_name == "tags":
                value = _with_created_by(value)
            setattr(pool, field_name, copy.deepcopy(value))

    async def upgrade_pool(self, pool_id: str, version: str) -> None:
        self._state.record("upgrade_pool", pool_id=pool_id, version=version)
        self._get(self._state.pools, pool_id).version = version

    async def delete_pool(self, pool_id: str) -> None:
        self._state.record("delete_pool", pool_id=pool_id)
        # deletion completes asynchronously, see MockCloudState.finish_deletions
        self._get(self._state.pools, pool_id).status = PoolStatus.DELETING

    async def list_nodes(self, cluster_id: str, pool_id: str) -> list[K8sNode]:
        self._state.record("list_nodes", cluster_id=cluster_id, pool_id=pool_id)
        return copy.deepcopy(self._state.nodes.get(pool_id, []))

    # =========================================================================
    # Instance
    # =========================================================================

    async def find_server(self, zone: str, tags: list[str]) -> Server:
        self._state.record("find_server", zone=zone, tags=list(tags))
        check_search_tags(tags)
        return _one(
            [
                s
                for s in self._state.servers.values()
                if s.zone == zone and match_tags(s.tags, tags)
            ]
        )

    async def create_server(
        self,
        *,
        zone: str,
        name: str,
        commercial_type: str,
        image_id: str,
        placement_group_id: str | None,
        security_group_id: str | None,
        root_volume_size_gb: int | None,
        root_volume_type: VolumeType,
        tags: list[str],
    ) -> Server:
        self._state.record(
            "create_server",
            zone=zone,
            name=name,
            commercial_type=commercial_type,
            image_id=image_id,
            placement_group_id=placement_group_id,
            security_group_id=security_group_id,
            root_volume_size_gb=root_volume_size_gb,
            root_volume_type=root_volume_type,
            tags=list(tags),
        )
        volume = Volume(
            id=self._state.next_id("vol"),
            zone=zone,
            volume_type=root_volume_type,
            status="in_use",
        )
        self._state.volumes[volume.id] = volume

        server = Server(
            id=self._state.next_id("srv"),
            name=name,
            zone=zone,
            commercial_type=commercial_type,
            state=ServerState.STOPPED,
            tags=_with_created_by(tags),
            hostname=name,
            volumes={"0": ServerVolume(id=volume.id, volume_type=root_volume_type, boot=True)},
        )
        self._state.servers[server.id] = server
        return copy.deepcopy(server)

    async def delete_server(self, zone: str, server_id: str) -> None:
        self._state.record("delete_server", zone=zone, server_id=server_id)
        server = self._get(self._state.servers, server_id)
        if server.state != ServerState.STOPPED:
            raise PreconditionFailedError(f"server {server_id} must be stopped to be deleted")
        del self._state.servers[server_id]
        self._state.user_data.pop(server_id, None)
        nic_ids = {nic.id for nic in server.private_nics}
        self._state.ipam_ips = {
            k: ip for k, ip in self._state.ipam_ips.items() if ip.resource_id not in nic_ids
        }

    async def server_action(self, zone: str, server_id: str, action: ServerAction) -> None:
        self._state.record("server_action", zone=zone, server_id=server_id, action=action)
        server = self._get(self._state.servers, server_id)
        if action == ServerAction.POWERON:
            server.state = ServerState.RUNNING
        elif action == ServerAction.POWEROFF:
            server.state = ServerState.STOPPED

    def _find_named(
        self, items: dict[tuple[str, str], NamedResource], zone: str, name: str
    ) -> NamedResource:
        if (zone, name) not in items:
            raise NotFoundError()
        return copy.deepcopy(items[(zone, name)])

    async def find_image(self, zone: str, name: str) -> NamedResource:
        self._state.record("find_image", zone=zone, name=name)
        return self._find_named(self._state.images, zone, name)

    async def find_placement_group(self, zone: str, name: str) -> NamedResource:
        self._state.record("find_placement_group", zone=zone, name=name)
        return self._find_named(self._state.placement_groups, zone, name)

    async def find_security_group(self, zone: str, name: str) -> NamedResource:
        self._state.record("find_security_group", zone=zone, name=name)
        return self._find_named(self._state.security_groups, zone, name)

    async def find_ips(self, zone: str, tags: list[str]) -> list[InstanceIP]:
        self._state.record("find_ips", zone=zone, tags=list(tags))
        check_search_tags(tags)
        return [
            copy.deepcopy(ip)
            for ip in self._state.instance_ips.values()
            if ip.zone == zone and match_tags(ip.tags, tags)
        ]

    async def create_ip(self, zone: str, ip_type: IPType, tags: list[str]) -> InstanceIP:
        self._state.record("create_ip", zone=zone, ip_type=ip_type, tags=list(tags))
        ip = InstanceIP(
            id=self._state.next_id("ip"),
            address=self._state.next_public_address(ipv6=ip_type == IPType.ROUTED_IPV6),
            zone=zone,
            type=ip_type,
            tags=_with_created_by(tags),
        )
        self._state.instance_ips[ip.id] = ip
        return copy.deepcopy(ip)

    async def delete_ip(self, zone: str, ip_id: str) -> None:
        self._state.record("delete_ip", zone=zone, ip_id=ip_id)
        self._get(self._state.instance_ips, ip_id)
        del self._state.instance_ips[ip_id]
        for server in self._state.servers.values():
            server.public_ips = [p for p in server.public_ips if p.id != ip_id]

    async def update_server_public_ips(
        self, zone: str, server_id: str, ip_ids: list[str]
    ) -> Server:
        self._state.record(
            "update_server_public_ips", zone=zone, server_id=server_id, ip_ids=list(ip_ids)
        )
        server = self._get(self._state.servers, server_id)

        for ip in self._state.instance_ips.values():
            if ip.server_id == server_id and ip.id not in ip_ids:
                ip.server_id = None

        public_ips = []
        for ip_id in ip_ids:
            ip = self._get(self._state.instance_ips, ip_id)
            ip.server_id = server_id
            family = "inet6" if ip.type == IPType.ROUTED_IPV6 else "inet"
            public_ips.append(ServerIP(id=ip.id, address=ip.address, family=family))
        server.public_ips = public_ips
        return copy.deepcopy(server)

    async def create_private_nic(
        self, zone: str, server_id: str, private_network_id: str
    ) -> PrivateNIC:
        self._state.record(
            "create_private_nic",
            zone=zone,
            server_id=server_id,
            private_network_id=private_network_id,
        )
        server = self._get(self._state.servers, server_id)
        self._get(self._state.private_networks, private_network_id)

        nic = PrivateNIC(id=self._state.next_id("pnic"), private_network_id=private_network_id)
        server.private_nics.append(nic)
        if self._state.auto_ipam:
            self._state.add_ipam_ip(
                private_network_id, self._state.next_private_address(), resource_id=nic.id
            )
        return copy.deepcopy(nic)

    async def get_all_server_user_data(self, zone: str, server_id: str) -> dict[str, bytes]:
        self._state.record("get_all_server_user_data", zone=zone, server_id=server_id)
        self._get(self._state.servers, server_id)
        return dict(self._state.user_data.get(server_id, {}))

    async def set_server_user_data(
        self, zone: str, server_id: str, key: str, content: str
    ) -> None:
        self._state.record("set_server_user_data", zone=zone, server_id=server_id, key=key)
        self._get(self._state.servers, server_id)
        self._state.user_data.setdefault(server_id, {})[key] = content.encode()

    async def delete_server_user_data(self, zone: str, server_id: str, key: str) -> None:
        self._state.record("delete_server_user_data", zone=zone, server_id=server_id, key=key)
        self._state.user_data.get(server_id, {}).pop(key, None)

    async def update_volume_iops(self, zone: str, volume_id: str, iops: int) -> None:
        self._state.record("update_volume_iops", zone=zone, volume_id=volume_id, iops=iops)
        self._get(self._state.volumes, volume_id)

    async def update_volume_tags(self, zone: str, volume_id: str, tags: list[str]) -> None:
        self._state.record("update_volume_tags", zone=zone, volume_id=volume_id, tags=list(tags))
        self._get(self._state.volumes, volume_id).tags = list(tags)

    async def detach_volume(self, zone: str, volume_id: str) -> None:
        self._state.record("detach_volume", zone=zone, volume_id=volume_id)
        volume = self._get(self._state.volumes, volume_id)
        for server in self._state.servers.values():
            server.volumes = {k: v for k, v in server.volumes.items() if v.id != volume_id}
        volume.status = self._state.detached_volume_status

    async def find_volume(self, zone: str, tags: list[str]) -> Volume:
        self._state.record("find_volume", zone=zone, tags=list(tags))
        check_search_tags(tags)
        return _one(
            [
                v
                for v in self._state.volumes.values()
                if v.zone == zone and match_tags(v.tags, tags)
            ]
        )

    async def delete_volume(self, zone: str, volume_id: str) -> None:
        self._state.record("delete_volume", zone=zone, volume_id=volume_id)
        self._get(self._state.volumes, volume_id)
        del self._state.volumes[volume_id]
