"""Cloud client contract and the observed resource types it returns.

The controller never talks to a cloud SDK directly. Everything it needs from
the provider is described by the CloudClient protocol below, so any binding
(HTTP client, SDK wrapper, in-memory fake) can be plugged in through the
CLIENT_FACTORY setting.

Ownership of cloud resources is established purely through tags: every
resource created by the controller carries CREATED_BY_TAG plus the ownership
tags computed by the owning scope, and is rediscovered by tag search.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, runtime_checkable

from .errors import iter_error_chain, with_terminal_error

CREATED_BY_TAG = "created-by=cluster-api-provider-scaleway"
CREATED_BY_DESCRIPTION = "Created by cluster-api-provider-scaleway"

VALID_REGION_PATTERN = r"^[a-z]{2}-[a-z]{3}$"
VALID_ZONE_PATTERN = r"^[a-z]{2}-[a-z]{3}-[0-9]+$"


# =============================================================================
# Errors
# =============================================================================


class CloudError(Exception):
    """Base class for errors reported by a cloud client."""

    pass


class NotFoundError(CloudError):
    """The requested resource does not exist (404 or empty search)."""

    def __init__(self, message: str = "no item found") -> None:
        super().__init__(message)


class TooManyItemsError(CloudError):
    """A search expected to return one resource returned several."""

    def __init__(self, message: str = "expected to find only one item") -> None:
        super().__init__(message)


class ForbiddenError(CloudError):
    """The credentials are not allowed to perform the call (HTTP 403)."""

    pass


class PreconditionFailedError(CloudError):
    """The resource is in a state that forbids the call, e.g. still in use."""

    pass


def is_not_found_error(err: BaseException | None) -> bool:
    return any(isinstance(e, NotFoundError) for e in iter_error_chain(err))


def is_forbidden_error(err: BaseException | None) -> bool:
    return any(isinstance(e, ForbiddenError) for e in iter_error_chain(err))


def is_precondition_failed_error(err: BaseException | None) -> bool:
    return any(isinstance(e, PreconditionFailedError) for e in iter_error_chain(err))


# =============================================================================
# Tags
# =============================================================================


def tags_without_created_by(tags: list[str]) -> list[str]:
    """Return tags without the tag the client adds to every resource."""
    return [t for t in tags if t != CREATED_BY_TAG]


def match_tags(tags: list[str], wanted: list[str]) -> bool:
    """Return True if every wanted tag is present in tags."""
    return all(t in tags for t in wanted)


def check_search_tags(tags: list[str]) -> None:
    """Refuse tag searches that would match every resource of a project."""
    if not tags:
        raise ValueError("tags cannot be empty")


# =============================================================================
# Observed resources
# =============================================================================


class GatewayStatus(str, Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    ALLOCATING = "allocating"
    CONFIGURING = "configuring"
    RUNNING = "running"
    FAILED = "failed"
    DELETING = "deleting"


class LBStatus(str, Enum):
    UNKNOWN = "unknown"
    PENDING = "pending"
    READY = "ready"
    MIGRATING = "migrating"
    ERROR = "error"
    DELETING = "deleting"


class ACLAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class ClusterStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    DELETING = "deleting"
    DELETED = "deleted"
    UPDATING = "updating"
    LOCKED = "locked"
    POOL_REQUIRED = "pool_required"


class PoolStatus(str, Enum):
    READY = "ready"
    DELETING = "deleting"
    DELETED = "deleted"
    SCALING = "scaling"
    WARNING = "warning"
    LOCKED = "locked"
    UPGRADING = "upgrading"


class ServerState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    STOPPED_IN_PLACE = "stopped in place"
    STARTING = "starting"
    STOPPING = "stopping"
    LOCKED = "locked"


class ServerAction(str, Enum):
    POWERON = "poweron"
    POWEROFF = "poweroff"


class VolumeType(str, Enum):
    SBS = "sbs_volume"
    LOCAL = "l_ssd"


class IPType(str, Enum):
    ROUTED_IPV4 = "routed_ipv4"
    ROUTED_IPV6 = "routed_ipv6"


@dataclass
class PrivateNetwork:
    id: str
    name: str
    vpc_id: str
    region: str
    tags: list[str] = field(default_factory=list)
    subnets: list[str] = field(default_factory=list)
    dhcp_enabled: bool = True


@dataclass
class GatewayIP:
    id: str
    address: str
    zone: str
    tags: list[str] = field(default_factory=list)
    gateway_id: str | None = None


@dataclass
class Gateway:
    id: str
    name: str
    zone: str
    type: str
    status: GatewayStatus = GatewayStatus.RUNNING
    tags: list[str] = field(default_factory=list)
    ipv4: GatewayIP | None = None
    private_network_ids: list[str] = field(default_factory=list)


@dataclass
class LBIP:
    id: str
    address: str
    zone: str
    tags: list[str] = field(default_factory=list)
    lb_id: str | None = None


@dataclass
class LoadBalancer:
    id: str
    name: str
    zone: str
    type: str
    status: LBStatus = LBStatus.READY
    tags: list[str] = field(default_factory=list)
    ips: list[LBIP] = field(default_factory=list)
    private: bool = False


@dataclass
class Backend:
    id: str
    name: str
    lb_id: str
    zone: str
    servers: list[str] = field(default_factory=list)
    port: int = 6443


@dataclass
class Frontend:
    id: str
    name: str
    lb_id: str
    zone: str
    backend_id: str
    port: int


@dataclass
class ACL:
    id: str
    name: str
    frontend_id: str
    index: int
    action: ACLAction
    ips: list[str] = field(default_factory=list)


@dataclass
class LBPrivateNetwork:
    lb_id: str
    private_network_id: str
    status: str = "ready"


@dataclass
class IPAMIP:
    id: str
    address: str
    private_network_id: str
    is_ipv6: bool = False
    resource_id: str | None = None


@dataclass
class DNSRecord:
    name: str
    data: str
    type: str = "A"
    ttl: int = 60


@dataclass
class ClusterAutoscalerConfig:
    scale_down_disabled: bool = False
    scale_down_delay_after_add: str = "10m"
    estimator: str = "binpacking"
    expander: str = "random"
    ignore_daemonsets_utilization: bool = False
    balance_similar_node_groups: bool = False
    expendable_pods_priority_cutoff: int = -10
    scale_down_unneeded_time: str = "10m"
    scale_down_utilization_threshold: float = 0.5
    max_graceful_termination_sec: int = 600


@dataclass
class ClusterAutoUpgrade:
    enabled: bool = False
    start_hour: int = 0
    day: str = "any"


@dataclass
class ClusterOpenIDConnect:
    issuer_url: str = ""
    client_id: str = ""
    username_claim: str = ""
    username_prefix: str = ""
    groups_claim: list[str] = field(default_factory=list)
    groups_prefix: str = ""
    required_claim: list[str] = field(default_factory=list)


@dataclass
class ClusterACLRule:
    ip: str | None = None
    scaleway_ranges: bool = False


@dataclass
class K8sCluster:
    id: str
    name: str
    region: str
    type: str
    version: str
    status: ClusterStatus = ClusterStatus.READY
    tags: list[str] = field(default_factory=list)
    url: str = ""
    cni: str = "cilium"
    private_network_id: str | None = None
    feature_gates: list[str] = field(default_factory=list)
    admission_plugins: list[str] = field(default_factory=list)
    apiserver_cert_sans: list[str] = field(default_factory=list)
    autoscaler: ClusterAutoscalerConfig = field(default_factory=ClusterAutoscalerConfig)
    auto_upgrade: ClusterAutoUpgrade = field(default_factory=ClusterAutoUpgrade)
    open_id_connect: ClusterOpenIDConnect = field(default_factory=ClusterOpenIDConnect)


@dataclass
class Kubeconfig:
    """Admin kubeconfig of a managed cluster, reduced to what the controller reads."""

    certificate_authority_data: str


@dataclass
class PoolUpgradePolicy:
    max_unavailable: int = 1
    max_surge: int = 0


@dataclass
class K8sPool:
    id: str
    name: str
    cluster_id: str
    zone: str
    node_type: str
    version: str
    status: PoolStatus = PoolStatus.READY
    tags: list[str] = field(default_factory=list)
    autoscaling: bool = False
    autohealing: bool = False
    size: int = 0
    min_size: int = 0
    max_size: int = 0
    kubelet_args: dict[str, str] = field(default_factory=dict)
    upgrade_policy: PoolUpgradePolicy = field(default_factory=PoolUpgradePolicy)
    placement_group_id: str | None = None
    root_volume_type: str | None = None
    root_volume_size_gb: int | None = None
    public_ip_disabled: bool = False
    security_group_id: str | None = None


@dataclass
class K8sNode:
    id: str
    name: str
    provider_id: str = ""


@dataclass
class ServerIP:
    id: str
    address: str
    family: str = "inet"


@dataclass
class PrivateNIC:
    id: str
    private_network_id: str


@dataclass
class ServerVolume:
    id: str
    volume_type: VolumeType
    boot: bool = False


@dataclass
class Server:
    id: str
    name: str
    zone: str
    commercial_type: str
    state: ServerState = ServerState.STOPPED
    tags: list[str] = field(default_factory=list)
    hostname: str = ""
    public_ips: list[ServerIP] = field(default_factory=list)
    private_nics: list[PrivateNIC] = field(default_factory=list)
    volumes: dict[str, ServerVolume] = field(default_factory=dict)


@dataclass
class InstanceIP:
    id: str
    address: str
    zone: str
    type: IPType
    tags: list[str] = field(default_factory=list)
    server_id: str | None = None


@dataclass
class Volume:
    id: str
    zone: str
    volume_type: VolumeType
    status: str = "available"
    tags: list[str] = field(default_factory=list)


@dataclass
class NamedResource:
    """Images, placement groups and security groups: only id and name matter."""

    id: str
    name: str


# =============================================================================
# Client protocol
# =============================================================================


@runtime_checkable
class CloudClient(Protocol):
    """Provider API scoped to one region and project.

    Find methods returning a single resource raise NotFoundError when nothing
    matches and TooManyItemsError when the match is ambiguous. Tag searches
    only return resources carrying every requested tag.
    """

    @property
    def region(self) -> str: ...

    @property
    def project_id(self) -> str: ...

    @property
    def secret_key(self) -> str: ...

    def product_zones(self, product: str) -> list[str]: ...

    # VPC
    async def get_private_network(self, private_network_id: str) -> PrivateNetwork: ...

    async def find_private_network(
        self, tags: list[str], vpc_id: str | None
    ) -> PrivateNetwork: ...

    async def create_private_network(
        self, name: str, vpc_id: str | None, subnet: str | None, tags: list[str]
    ) -> PrivateNetwork: ...

    async def delete_private_network(self, private_network_id: str) -> None: ...

    # Public gateways
    async def find_gateways(self, tags: list[str]) -> list[Gateway]: ...

    async def create_gateway(
        self, zone: str, name: str, gateway_type: str, tags: list[str], ip_id: str | None
    ) -> Gateway: ...

    async def upgrade_gateway(self, zone: str, gateway_id: str, gateway_type: str) -> Gateway: ...

    async def delete_gateway(self, zone: str, gateway_id: str, delete_ip: bool) -> None: ...

    async def list_gateway_types(self, zone: str) -> list[str]: ...

    async def find_gateway_ip(self, zone: str, address: str) -> GatewayIP: ...

    async def create_gateway_network(
        self, zone: str, gateway_id: str, private_network_id: str
    ) -> None: ...

    # Load balancers
    async def find_lb(self, zone: str, tags: list[str]) -> LoadBalancer: ...

    async def find_lbs(self, tags: list[str]) -> list[LoadBalancer]: ...

    async def create_lb(
        self,
        zone: str,
        name: str,
        lb_type: str,
        ip_id: str | None,
        private: bool,
        tags: list[str],
    ) -> LoadBalancer: ...

    async def migrate_lb(self, zone: str, lb_id: str, lb_type: str) -> LoadBalancer: ...

    async def delete_lb(self, zone: str, lb_id: str, release_ip: bool) -> None: ...

    async def find_lb_ip(self, zone: str, address: str) -> LBIP: ...

    async def find_backend(self, zone: str, lb_id: str, name: str) -> Backend: ...

    async def create_backend(
        self, zone: str, lb_id: str, name: str, servers: list[str], port: int
    ) -> Backend: ...

    async def set_backend_servers(
        self, zone: str, backend_id: str, servers: list[str]
    ) -> Backend: ...

    async def add_backend_server(self, zone: str, backend_id: str, ip: str) -> None: ...

    async def remove_backend_server(self, zone: str, backend_id: str, ip: str) -> None: ...

    async def find_frontend(self, zone: str, lb_id: str, name: str) -> Frontend: ...

    async def create_frontend(
        self, zone: str, lb_id: str, name: str, backend_id: str, port: int
    ) -> Frontend: ...

    async def find_lb_acl_by_name(self, zone: str, frontend_id: str, name: str) -> ACL: ...

    async def list_lb_acls(self, zone: str, frontend_id: str) -> list[ACL]: ...

    async def create_lb_acl(
        self,
        zone: str,
        frontend_id: str,
        name: str,
        index: int,
        action: ACLAction,
        ips: list[str],
    ) -> None: ...

    async def update_lb_acl(
        self,
        zone: str,
        acl_id: str,
        name: str,
        index: int,
        action: ACLAction,
        ips: list[str],
    ) -> None: ...

    async def delete_lb_acl(self, zone: str, acl_id: str) -> None: ...

    async def set_lb_acls(self, zone: str, frontend_id: str, acls: list[ACL]) -> None: ...

    async def find_lb_private_network(
        self, zone: str, lb_id: str, private_network_id: str
    ) -> LBPrivateNetwork: ...

    async def attach_lb_private_network(
        self, zone: str, lb_id: str, private_network_id: str, ip_id: str | None
    ) -> None: ...

    # IPAM
    async def find_available_ips(self, private_network_id: str) -> list[IPAMIP]: ...

    async def find_lb_servers_ips(
        self, private_network_id: str, lb_ids: list[str]
    ) -> list[IPAMIP]: ...

    async def find_private_nic_ips(self, private_nic_id: str) -> list[IPAMIP]: ...

    # Domain
    async def list_dns_zone_records(self, zone: str, name: str) -> list[DNSRecord]: ...

    async def set_dns_zone_records(self, zone: str, name: str, ips: list[str]) -> None: ...

    async def delete_dns_zone_records(self, zone: str, name: str) -> None: ...

    # Kubernetes
    async def find_cluster(self, name: str) -> K8sCluster: ...

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
    ) -> K8sCluster: ...

    async def delete_cluster(self, cluster_id: str, with_additional_resources: bool) -> None: ...

    async def set_cluster_type(self, cluster_id: str, cluster_type: str) -> None: ...

    async def upgrade_cluster(self, cluster_id: str, version: str) -> None: ...

    async def update_cluster(
        self,
        cluster_id: str,
        *,
        tags: list[str] | None = None,
        feature_gates: list[str] | None = None,
        admission_plugins: list[str] | None = None,
        apiserver_cert_sans: list[str] | None = None,
        autoscaler: ClusterAutoscalerConfig | None = None,
        auto_upgrade: ClusterAutoUpgrade | None = None,
        open_id_connect: ClusterOpenIDConnect | None = None,
    ) -> None: ...

    async def list_cluster_acl_rules(self, cluster_id: str) -> list[ClusterACLRule]: ...

    async def set_cluster_acl_rules(self, cluster_id: str, rules: list[ClusterACLRule]) -> None: ...

    async def get_cluster_kubeconfig(self, cluster_id: str) -> Kubeconfig: ...

    async def find_pool(self, cluster_id: str, name: str) -> K8sPool: ...

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
    ) -> K8sPool: ...

    async def update_pool(
        self,
        pool_id: str,
        *,
        autohealing: bool | None = None,
        autoscaling: bool | None = None,
        size: int | None = None,
        min_size: int | None = None,
        max_size: int | None = None,
        tags: list[str] | None = None,
        kubelet_args: dict[str, str] | None = None,
        upgrade_policy: PoolUpgradePolicy | None = None,
    ) -> None: ...

    async def upgrade_pool(self, pool_id: str, version: str) -> None: ...

    async def delete_pool(self, pool_id: str) -> None: ...

    async def list_nodes(self, cluster_id: str, pool_id: str) -> list[K8sNode]: ...

    # Instance
    async def find_server(self, zone: str, tags: list[str]) -> Server: ...

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
    ) -> Server: ...

    async def delete_server(self, zone: str, server_id: str) -> None: ...

    async def server_action(self, zone: str, server_id: str, action: ServerAction) -> None: ...

    async def find_image(self, zone: str, name: str) -> NamedResource: ...

    async def find_placement_group(self, zone: str, name: str) -> NamedResource: ...

    async def find_security_group(self, zone: str, name: str) -> NamedResource: ...

    async def find_ips(self, zone: str, tags: list[str]) -> list[InstanceIP]: ...

    async def create_ip(self, zone: str, ip_type: IPType, tags: list[str]) -> InstanceIP: ...

    async def delete_ip(self, zone: str, ip_id: str) -> None: ...

    async def update_server_public_ips(
        self, zone: str, server_id: str, ip_ids: list[str]
    ) -> Server: ...

    async def create_private_nic(
        self, zone: str, server_id: str, private_network_id: str
    ) -> PrivateNIC: ...

    async def get_all_server_user_data(self, zone: str, server_id: str) -> dict[str, bytes]: ...

    async def set_server_user_data(
        self, zone: str, server_id: str, key: str, content: str
    ) -> None: ...

    async def delete_server_user_data(self, zone: str, server_id: str, key: str) -> None: ...

    async def update_volume_iops(self, zone: str, volume_id: str, iops: int) -> None: ...

    async def update_volume_tags(self, zone: str, volume_id: str, tags: list[str]) -> None: ...

    async def detach_volume(self, zone: str, volume_id: str) -> None: ...

    async def find_volume(self, zone: str, tags: list[str]) -> Volume: ...

    async def delete_volume(self, zone: str, volume_id: str) -> None: ...


# =============================================================================
# Client construction
# =============================================================================

# Keys read from the credentials secret referenced by a cluster
SCW_ACCESS_KEY = "SCW_ACCESS_KEY"
SCW_SECRET_KEY = "SCW_SECRET_KEY"
SCW_API_URL = "SCW_API_URL"


class ClientFactory(Protocol):
    """Builds a client for one region and project from secret data."""

    def __call__(
        self, region: str, project_id: str, secret_data: dict[str, bytes]
    ) -> CloudClient: ...


def check_credentials(secret_data: dict[str, bytes]) -> None:
    """Raise ValueError if the credentials secret lacks a required key."""
    for key in (SCW_ACCESS_KEY, SCW_SECRET_KEY):
        if not secret_data.get(key):
            raise ValueError(f"field {key} is missing in secret")


# =============================================================================
# Zones
# =============================================================================


def default_zone(client: CloudClient) -> str:
    return f"{client.region}-1"


def get_zone_or_default(client: CloudClient, zone: str | None) -> str:
    """Return zone, or the region's first zone when unset.

    Raises:
        ReconcileError: (terminal) if zone is not a well-formed zone name.
    """
    if zone is None or zone == "":
        return default_zone(client)

    if not re.match(VALID_ZONE_PATTERN, zone):
        raise with_terminal_error(f"zone {zone} is not valid")

    return zone


def product_zones_in_region(client: CloudClient, product: str) -> list[str]:
    zones = [z for z in client.product_zones(product) if z.rsplit("-", 1)[0] == client.region]
    return zones or [default_zone(client)]


def validate_zone(client: CloudClient, product: str, zone: str) -> None:
    zones = product_zones_in_region(client, product)
    if zone not in zones:
        raise with_terminal_error(
            f"zone {zone} must be one of the following zones ({', '.join(zones)})"
        )


def get_control_plane_zones(client: CloudClient) -> list[str]:
    """Zones where control plane machines may be placed."""
    return product_zones_in_region(client, "instance")
