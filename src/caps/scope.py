"""Per-invocation working context for each owning object kind.

A scope bundles the desired object, the framework objects it depends on and
an authenticated cloud client. It provides the deterministic naming and
tagging functions used to create and rediscover cloud resources, plus the
status setters services write outcomes through.

Scopes are created once per reconciliation and must be closed in a
``finally`` block: ``close()`` persists finalizers, spec and status through
the object store whatever the outcome of the pass.
"""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Protocol

from .client import (
    ClusterAutoscalerConfig,
    ClusterAutoUpgrade,
    ClusterOpenIDConnect,
    CloudClient,
    K8sCluster,
    PoolUpgradePolicy,
    VolumeType,
    get_zone_or_default,
)
from .errors import with_terminal_error
from .models import (
    APIEndpoint,
    Cluster,
    FailureDomain,
    KubeObject,
    LoadBalancerSpec,
    Machine,
    MachineAddress,
    MachinePool,
    OwnerReference,
    PrivateNetworkParams,
    PublicGateway,
    ScalewayCluster,
    ScalewayMachine,
    ScalewayManagedCluster,
    ScalewayManagedControlPlane,
    ScalewayManagedMachinePool,
    Secret,
)

if TYPE_CHECKING:
    from .store import ObjectStore

logger = logging.getLogger(__name__)

MAX_RESOURCE_NAME_LENGTH = 128
MAX_CLUSTER_NAME_LENGTH = 100
RESOURCE_PREFIX = "caps-"
BASE36_SET = "0123456789abcdefghijklmnopqrstuvwxyz"

DEFAULT_FRONTEND_CONTROL_PLANE_PORT = 6443
DEFAULT_ROOT_VOLUME_SIZE_GB = 20
DEFAULT_ROOT_VOLUME_TYPE = VolumeType.SBS
VOLUME_TYPE_TO_INSTANCE_VOLUME_TYPE = {"local": VolumeType.LOCAL, "block": VolumeType.SBS}
DEFAULT_POOL_REPLICAS = 3


def truncate_name(name: str) -> str:
    """Shorten name to MAX_RESOURCE_NAME_LENGTH keeping both ends."""
    if len(name) <= MAX_RESOURCE_NAME_LENGTH:
        return name
    n = (MAX_RESOURCE_NAME_LENGTH - 1) // 2
    return name[:n] + "-" + name[len(name) - (MAX_RESOURCE_NAME_LENGTH - 1 - n) :]


def name_with_suffixes(name: str, *suffixes: str) -> str:
    return truncate_name("-".join([name, *suffixes]))


def base36_truncated_hash(value: str, hash_length: int) -> str:
    digest = hashlib.blake2b(value.encode(), digest_size=hash_length).digest()
    return "".join(BASE36_SET[b % 36] for b in digest)


def ownership_tags(obj: KubeObject, *additional: str) -> list[str]:
    """Tags identifying the cloud resources owned by obj."""
    return [f"caps-namespace={obj.namespace}", f"caps-{obj.kind.lower()}={obj.name}", *additional]


def generate_cluster_name(name: str, namespace: str) -> str:
    """Name of the managed Kubernetes cluster for a control plane.

    Raises:
        ValueError: If name or namespace is empty.
    """
    if not name or not namespace:
        raise ValueError("can't generate clusterName if name or namespace is not set")

    candidate = f"{namespace}-{name.replace('.', '-')}"
    if len(candidate) < MAX_CLUSTER_NAME_LENGTH:
        return candidate

    return RESOURCE_PREFIX + base36_truncated_hash(candidate, 64 - len(RESOURCE_PREFIX))


class NetworkScope(Protocol):
    """What the vpc and vpcgw services need from a scope."""

    client: CloudClient

    def resource_name(self, *suffixes: str) -> str: ...

    def resource_tags(self, *additional: str) -> list[str]: ...

    def has_private_network(self) -> bool: ...

    def private_network_params(self) -> PrivateNetworkParams: ...

    def private_network_id(self) -> str: ...

    def set_vpc_status(self, private_network_id: str, vpc_id: str) -> None: ...

    def public_gateways(self) -> list[PublicGateway]: ...

    def set_condition(
        self, condition_type: str, status: bool, reason: str, message: str = ""
    ) -> None: ...


class Scope:
    """Base scope: owns one object and flushes it on close."""

    def __init__(self, client: CloudClient, store: ObjectStore, obj: KubeObject) -> None:
        self.client = client
        self._store = store
        self._object = obj

    @property
    def object(self) -> KubeObject:
        return self._object

    def resource_name(self, *suffixes: str) -> str:
        return name_with_suffixes(self._object.name, *suffixes)

    def resource_tags(self, *additional: str) -> list[str]:
        raise NotImplementedError("Subclasses must implement resource_tags")

    def set_condition(
        self, condition_type: str, status: bool, reason: str, message: str = ""
    ) -> None:
        self._object.status.set_condition(condition_type, status, reason, message)

    async def patch_object(self) -> None:
        """Persist the owned object (finalizers, spec and status)."""
        await self._store.patch(self._object)

    async def close(self) -> None:
        await self.patch_object()


# =============================================================================
# ScalewayCluster
# =============================================================================


class ClusterScope(Scope):
    """Scope of a ScalewayCluster and its owner Cluster."""

    def __init__(
        self,
        client: CloudClient,
        store: ObjectStore,
        cluster: Cluster,
        scaleway_cluster: ScalewayCluster,
    ) -> None:
        super().__init__(client, store, scaleway_cluster)
        self.cluster = cluster
        self.scaleway_cluster = scaleway_cluster

    def resource_tags(self, *additional: str) -> list[str]:
        return ownership_tags(self.scaleway_cluster, *additional)

    def has_private_network(self) -> bool:
        return bool(self.scaleway_cluster.spec.network.private_network.enabled)

    def private_network_params(self) -> PrivateNetworkParams:
        return self.scaleway_cluster.spec.network.private_network

    def private_network_id(self) -> str:
        if not self.has_private_network():
            raise ValueError("cluster has no Private Network")

        pn_id = self.scaleway_cluster.status.network.private_network_id
        if not pn_id:
            raise ValueError("PrivateNetworkID not found in ScalewayCluster status")
        return pn_id

    def is_vpc_status_set(self) -> bool:
        network = self.scaleway_cluster.status.network
        return bool(network.private_network_id and network.vpc_id)

    def set_vpc_status(self, private_network_id: str, vpc_id: str) -> None:
        self.scaleway_cluster.status.network.private_network_id = private_network_id
        self.scaleway_cluster.status.network.vpc_id = vpc_id

    def public_gateways(self) -> list[PublicGateway]:
        return self.scaleway_cluster.spec.network.public_gateways

    def control_plane_load_balancer(self) -> LoadBalancerSpec:
        return self.scaleway_cluster.spec.network.control_plane_load_balancer

    def control_plane_extra_load_balancers(self) -> list[LoadBalancerSpec]:
        return self.scaleway_cluster.spec.network.control_plane_extra_load_balancers

    def control_plane_load_balancer_port(self) -> int:
        return self.cluster.spec.cluster_network.api_server_port or DEFAULT_FRONTEND_CONTROL_PLANE_PORT

    def control_plane_load_balancer_allowed_ranges(self) -> list[str]:
        return list(self.scaleway_cluster.spec.network.control_plane_load_balancer.allowed_ranges)

    def control_plane_load_balancer_private(self) -> bool:
        return self.has_private_network() and bool(
            self.scaleway_cluster.spec.network.control_plane_load_balancer.private
        )

    def control_plane_dns_defined(self) -> bool:
        return self.scaleway_cluster.spec.network.control_plane_dns.is_defined()

    def control_plane_dns_zone_and_name(self) -> tuple[str, str]:
        """Return the DNS zone and record name of the control plane.

        With a private load balancer the record lives in the private network
        DNS zone ``<pnID>.<vpcID>.<suffix>``.
        """
        dns = self.scaleway_cluster.spec.network.control_plane_dns
        if not dns.is_defined():
            raise ValueError("control plane has no zone or domain")

        if self.control_plane_load_balancer_private():
            network = self.scaleway_cluster.status.network
            if not network.vpc_id:
                raise ValueError("missing vpcID in status")
            if not network.private_network_id:
                raise ValueError("missing privateNetworkID in status")

            suffix = "privatedns"
            if dns.domain and "." not in dns.domain:
                suffix = dns.domain

            return f"{network.private_network_id}.{network.vpc_id}.{suffix}", dns.name

        return dns.domain, dns.name

    def control_plane_host(self) -> str:
        dns = self.scaleway_cluster.spec.network.control_plane_dns
        if dns.is_defined():
            if self.control_plane_load_balancer_private():
                pn_id = self.scaleway_cluster.status.network.private_network_id
                if not pn_id:
                    raise ValueError("missing privateNetworkID in status")
                return f"{dns.name}.{pn_id}.internal"
            return f"{dns.name}.{dns.domain}"

        ips = self.control_plane_load_balancer_ips()
        if ips:
            return ips[0]

        raise ValueError("unable to determine control plane host")

    def control_plane_load_balancer_ips(self) -> list[str]:
        network = self.scaleway_cluster.status.network
        ips = [network.load_balancer_ip] if network.load_balancer_ip else []
        ips.extend(network.extra_load_balancer_ips)
        return sorted(ips)

    def set_status_load_balancer_ip(self, ip: str) -> None:
        self.scaleway_cluster.status.network.load_balancer_ip = ip

    def set_status_extra_load_balancer_ips(self, ips: list[str]) -> None:
        self.scaleway_cluster.status.network.extra_load_balancer_ips = list(ips)

    def set_failure_domains(self, zones: list[str]) -> None:
        self.scaleway_cluster.status.failure_domains = [
            FailureDomain(name=zone, control_plane=True) for zone in zones
        ]

    def set_control_plane_endpoint(self, host: str, port: int) -> None:
        self.scaleway_cluster.spec.control_plane_endpoint = APIEndpoint(host=host, port=port)


# =============================================================================
# ScalewayManagedCluster
# =============================================================================


class ManagedClusterScope(Scope):
    """Scope of a ScalewayManagedCluster.

    The managed control plane may be missing, e.g. when the Cluster is being
    deleted.
    """

    def __init__(
        self,
        client: CloudClient,
        store: ObjectStore,
        managed_cluster: ScalewayManagedCluster,
        managed_control_plane: ScalewayManagedControlPlane | None,
    ) -> None:
        super().__init__(client, store, managed_cluster)
        self.managed_cluster = managed_cluster
        self.managed_control_plane = managed_control_plane

    def resource_tags(self, *additional: str) -> list[str]:
        return ownership_tags(self.managed_cluster, *additional)

    def has_private_network(self) -> bool:
        # multicloud clusters do not use a private network
        if self.managed_control_plane is None:
            return True
        return not self.managed_control_plane.spec.type.startswith("multicloud")

    def private_network_params(self) -> PrivateNetworkParams:
        return self.managed_cluster.spec.network.private_network

    def is_vpc_status_set(self) -> bool:
        return bool(self.managed_cluster.status.network.private_network_id)

    def set_vpc_status(self, private_network_id: str, vpc_id: str) -> None:
        self.managed_cluster.status.network.private_network_id = private_network_id

    def private_network_id(self) -> str:
        if not self.has_private_network():
            raise ValueError("cluster has no Private Network")

        pn_id = self.managed_cluster.status.network.private_network_id
        if not pn_id:
            raise ValueError("PrivateNetworkID not found in ScalewayManagedCluster status")
        return pn_id

    def public_gateways(self) -> list[PublicGateway]:
        return self.managed_cluster.spec.network.public_gateways


# =============================================================================
# ScalewayManagedControlPlane
# =============================================================================


class ManagedControlPlaneScope(Scope):
    def __init__(
        self,
        client: CloudClient,
        store: ObjectStore,
        cluster: Cluster,
        managed_cluster: ScalewayManagedCluster,
        managed_control_plane: ScalewayManagedControlPlane,
    ) -> None:
        super().__init__(client, store, managed_control_plane)
        self.cluster = cluster
        self.managed_cluster = managed_cluster
        self.managed_control_plane = managed_control_plane

    def resource_tags(self, *additional: str) -> list[str]:
        return ownership_tags(self.managed_control_plane, *additional)

    def private_network_id(self) -> str | None:
        return self.managed_cluster.status.network.private_network_id or None

    def delete_with_additional_resources(self) -> bool:
        return bool(self.managed_control_plane.spec.on_delete.with_additional_resources)

    def set_control_plane_endpoint(self, host: str, port: int) -> None:
        self.managed_control_plane.spec.control_plane_endpoint = APIEndpoint(host=host, port=port)

    def set_status_version(self, version: str) -> None:
        self.managed_control_plane.status.version = "v" + version

    def desired_version(self) -> str:
        return self.managed_control_plane.spec.version.removeprefix("v")

    def fixed_version(self) -> str:
        version = self.managed_control_plane.spec.version
        return version if version.startswith("v") else "v" + version

    def desired_tags(self) -> list[str]:
        return self.resource_tags(*self.managed_control_plane.spec.additional_tags)

    def desired_type(self) -> str:
        return self.managed_control_plane.spec.type

    def cluster_name(self) -> str:
        """Name of the managed cluster, generated and stored on first use."""
        spec = self.managed_control_plane.spec
        if not spec.cluster_name:
            spec.cluster_name = generate_cluster_name(
                self.managed_control_plane.name, self.managed_control_plane.namespace
            )
            logger.info(
                "Generated managed cluster name",
                extra={
                    "namespace": self.managed_control_plane.namespace,
                    "object_name": self.managed_control_plane.name,
                    "cluster_name": spec.cluster_name,
                },
            )
        return spec.cluster_name

    def enable_private_endpoint(self) -> bool:
        return bool(self.managed_control_plane.spec.enable_private_endpoint)

    def desired_cni(self) -> str:
        """Requested CNI, or an empty string for the provider default."""
        return self.managed_control_plane.spec.cni

    def desired_cluster_autoscaler_config(self) -> ClusterAutoscalerConfig:
        autoscaler = self.managed_control_plane.spec.autoscaler
        config = ClusterAutoscalerConfig(
            scale_down_disabled=bool(autoscaler.scale_down_disabled),
            ignore_daemonsets_utilization=bool(autoscaler.ignore_daemonsets_utilization),
            balance_similar_node_groups=bool(autoscaler.balance_similar_node_groups),
        )

        if autoscaler.expendable_pods_priority_cutoff is not None:
            config.expendable_pods_priority_cutoff = autoscaler.expendable_pods_priority_cutoff
        if autoscaler.scale_down_delay_after_add:
            config.scale_down_delay_after_add = autoscaler.scale_down_delay_after_add
        if autoscaler.estimator and autoscaler.estimator != "unknown_estimator":
            config.estimator = autoscaler.estimator
        if autoscaler.expander and autoscaler.expander != "unknown_expander":
            config.expander = autoscaler.expander
        if autoscaler.scale_down_unneeded_time:
            config.scale_down_unneeded_time = autoscaler.scale_down_unneeded_time
        if autoscaler.scale_down_utilization_threshold:
            try:
                config.scale_down_utilization_threshold = float(
                    autoscaler.scale_down_utilization_threshold
                )
            except ValueError as e:
                raise ValueError(
                    f"failed to parse scaleDownUtilizationThreshold as float: {e}"
                ) from e
        if autoscaler.max_graceful_termination_sec:
            config.max_graceful_termination_sec = autoscaler.max_graceful_termination_sec

        return config

    def desired_auto_upgrade(self) -> ClusterAutoUpgrade:
        auto_upgrade = self.managed_control_plane.spec.auto_upgrade
        window = auto_upgrade.maintenance_window
        return ClusterAutoUpgrade(
            enabled=bool(auto_upgrade.enabled),
            start_hour=window.start_hour or 0,
            day=window.day or "any",
        )

    def desired_open_id_connect(self) -> ClusterOpenIDConnect:
        oidc = self.managed_control_plane.spec.open_id_connect
        return ClusterOpenIDConnect(
            issuer_url=oidc.issuer_url,
            client_id=oidc.client_id,
            username_claim=oidc.username_claim,
            username_prefix=oidc.username_prefix,
            groups_claim=list(oidc.groups_claim),
            groups_prefix=oidc.groups_prefix,
            required_claim=list(oidc.required_claim),
        )

    def cluster_endpoint(self, cluster: K8sCluster) -> str:
        if self.enable_private_endpoint() and cluster.private_network_id:
            return f"https://{cluster.id}.{cluster.private_network_id}.internal:6443"
        return cluster.url

    def desired_allowed_ranges(self) -> list[str]:
        acl = self.managed_control_plane.spec.acl
        if acl is None:
            return ["0.0.0.0/0"]
        return list(acl.allowed_ranges)

    def kubeconfig_context_name(self) -> str:
        spec = self.managed_cluster.spec
        return f"scw_{spec.project_id}_{spec.region}_{self.cluster_name()}"

    def controller_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.managed_control_plane.api_version,
            kind=self.managed_control_plane.kind,
            name=self.managed_control_plane.name,
            controller=True,
        )

    async def get_secret(self, name: str) -> Secret | None:
        """Secret name in the namespace of the Cluster, None if it does not exist."""
        secret = await self._store.get("Secret", self.cluster.namespace, name)
        return secret if isinstance(secret, Secret) else None

    async def create_secret(self, secret: Secret) -> None:
        await self._store.create(secret)

    async def update_secret(self, secret: Secret) -> None:
        await self._store.patch(secret)


# =============================================================================
# ScalewayManagedMachinePool
# =============================================================================


class ManagedMachinePoolScope(Scope):
    def __init__(
        self,
        client: CloudClient,
        store: ObjectStore,
        cluster: Cluster,
        machine_pool: MachinePool,
        managed_cluster: ScalewayManagedCluster,
        managed_control_plane: ScalewayManagedControlPlane,
        managed_machine_pool: ScalewayManagedMachinePool,
    ) -> None:
        super().__init__(client, store, managed_machine_pool)
        self.cluster = cluster
        self.machine_pool = machine_pool
        self.managed_cluster = managed_cluster
        self.managed_control_plane = managed_control_plane
        self.managed_machine_pool = managed_machine_pool

    def resource_name(self, *suffixes: str) -> str:
        return "-".join([self.managed_machine_pool.name, *suffixes])

    def resource_tags(self, *additional: str) -> list[str]:
        return ownership_tags(self.managed_machine_pool, *additional)

    def cluster_name(self) -> str | None:
        return self.managed_control_plane.spec.cluster_name or None

    def replicas(self) -> int:
        replicas = self.machine_pool.spec.replicas
        return DEFAULT_POOL_REPLICAS if replicas is None else replicas

    def scaling(self) -> tuple[bool, int, int, int]:
        """Return (autoscaling, size, min_size, max_size).

        External pools are not scaled by the provider: everything is zero.
        """
        spec = self.managed_machine_pool.spec
        if spec.node_type == "external":
            return False, 0, 0, 0

        size = self.replicas()
        autoscaling = bool(spec.scaling.autoscaling)
        min_size = spec.scaling.min_size or 0
        max_size = spec.scaling.max_size or 0

        return autoscaling, size, min(min_size, size), max(max_size, size)

    def autohealing(self) -> bool:
        return bool(self.managed_machine_pool.spec.autohealing)

    def public_ip_disabled(self) -> bool:
        return bool(self.managed_machine_pool.spec.public_ip_disabled)

    def root_volume_type(self) -> str | None:
        """Requested root volume type, or None for the provider default."""
        return self.managed_machine_pool.spec.root_volume_type

    def root_volume_size_gb(self) -> int | None:
        return self.managed_machine_pool.spec.root_volume_size_gb

    def desired_pool_upgrade_policy(self) -> PoolUpgradePolicy:
        policy = self.managed_machine_pool.spec.upgrade_policy
        return PoolUpgradePolicy(
            max_unavailable=1 if policy.max_unavailable is None else policy.max_unavailable,
            max_surge=policy.max_surge or 0,
        )

    def set_provider_ids(self, provider_ids: list[str]) -> None:
        self.managed_machine_pool.spec.provider_id_list = [p for p in provider_ids if p]

    def set_status_replicas(self, replicas: int) -> None:
        self.managed_machine_pool.status.replicas = replicas

    def desired_tags(self) -> list[str]:
        return self.resource_tags(*self.managed_machine_pool.spec.additional_tags)

    def desired_version(self) -> str | None:
        version = self.machine_pool.spec.template.spec.version
        if version is None:
            return None
        return version.removeprefix("v")


# =============================================================================
# ScalewayMachine
# =============================================================================


class MachineScope(Scope):
    """Scope of a ScalewayMachine. Cluster-level helpers come from cluster_scope."""

    def __init__(
        self,
        client: CloudClient,
        store: ObjectStore,
        cluster_scope: ClusterScope,
        machine: Machine,
        scaleway_machine: ScalewayMachine,
    ) -> None:
        super().__init__(client, store, scaleway_machine)
        self.cluster_scope = cluster_scope
        self.machine = machine
        self.scaleway_machine = scaleway_machine

    def resource_name(self, *suffixes: str) -> str:
        return truncate_name("-".join(["caps", self.scaleway_machine.name, *suffixes]))

    def resource_tags(self, *additional: str) -> list[str]:
        return [
            *self.cluster_scope.resource_tags(),
            f"caps-scalewaymachine={self.scaleway_machine.name}",
            *additional,
        ]

    def has_private_network(self) -> bool:
        return self.cluster_scope.has_private_network()

    def private_network_id(self) -> str:
        return self.cluster_scope.private_network_id()

    def zone(self) -> str:
        return get_zone_or_default(self.client, self.machine.spec.failure_domain)

    def root_volume_type(self) -> VolumeType:
        volume_type = self.scaleway_machine.spec.root_volume.type
        if volume_type is None:
            return DEFAULT_ROOT_VOLUME_TYPE
        if volume_type not in VOLUME_TYPE_TO_INSTANCE_VOLUME_TYPE:
            raise with_terminal_error(f"unknown volume type {volume_type}")
        return VOLUME_TYPE_TO_INSTANCE_VOLUME_TYPE[volume_type]

    def root_volume_size_gb(self) -> int:
        return self.scaleway_machine.spec.root_volume.size or DEFAULT_ROOT_VOLUME_SIZE_GB

    def root_volume_iops(self) -> int | None:
        return self.scaleway_machine.spec.root_volume.iops

    def has_public_ipv4(self) -> bool:
        if not self.has_private_network():
            return True
        return bool(self.scaleway_machine.spec.public_network.enable_ipv4)

    def has_public_ipv6(self) -> bool:
        return bool(self.scaleway_machine.spec.public_network.enable_ipv6)

    def set_provider_id(self, provider_id: str) -> None:
        if self.scaleway_machine.spec.provider_id is None:
            self.scaleway_machine.spec.provider_id = provider_id

    def set_addresses(self, addresses: list[MachineAddress]) -> None:
        self.scaleway_machine.status.addresses = addresses

    def has_joined_cluster(self) -> bool:
        node_ref = self.machine.status.node_ref
        return node_ref is not None and node_ref.name != ""

    def is_control_plane(self) -> bool:
        return self.machine.is_control_plane

    async def get_bootstrap_data(self) -> bytes:
        secret_name = self.machine.spec.bootstrap.data_secret_name
        if secret_name is None:
            raise ValueError("missing bootstrap secret name in machine")
        return await self._store.get_bootstrap_data(self.machine.namespace, secret_name)
