"""Pydantic models for the desired-state objects the controller works on.

These models provide:
1. Type-safe parsing of YAML manifests (camelCase on the wire)
2. Validation at the boundary (zones, regions, IPs and CIDRs)
3. Mutable status sections the scopes write back on close

Five infrastructure kinds are owned by this controller (ScalewayCluster,
ScalewayMachine, ScalewayManagedCluster, ScalewayManagedControlPlane,
ScalewayManagedMachinePool). Cluster, Machine, MachinePool and Secret are
supplied by the orchestration framework and only read.
"""

from __future__ import annotations

import ipaddress
import re
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .client import VALID_REGION_PATTERN, VALID_ZONE_PATTERN

API_GROUP = "infrastructure.cluster.x-k8s.io"
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"
PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"

# Condition types and reasons
READY_CONDITION = "Ready"
PUBLIC_GATEWAYS_READY_CONDITION = "PublicGatewaysReady"
READY_REASON = "Ready"
NOT_READY_REASON = "NotReady"
PROVISIONED_REASON = "Provisioned"
NO_PRIVATE_NETWORK_REASON = "NoPrivateNetwork"
RECONCILIATION_FAILED_REASON = "ReconciliationFailed"
PRIVATE_NETWORK_ATTACHMENT_FAILED_REASON = "PrivateNetworkAttachmentFailed"
DELETING_REASON = "Deleting"


def _check_zone(v: str | None) -> str | None:
    if v is not None and not re.match(VALID_ZONE_PATTERN, v):
        raise ValueError(f"invalid zone: {v}")
    return v


def _check_ipv4(v: str | None) -> str | None:
    if v is not None:
        ipaddress.IPv4Address(v)
    return v


def _check_cidr(v: str) -> str:
    ipaddress.ip_network(v, strict=False)
    return v


# =============================================================================
# Base Models
# =============================================================================


class Model(BaseModel):
    """Base for every manifest section."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class OwnerReference(Model):
    api_version: str = Field("", alias="apiVersion")
    kind: str
    name: str
    controller: bool | None = None


class ObjectMeta(Model):
    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list, alias="ownerReferences")
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class Condition(Model):
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")


class APIEndpoint(Model):
    host: str = ""
    port: int = 0

    def is_valid(self) -> bool:
        return self.host != "" and self.port != 0


class ObjectReference(Model):
    kind: str = ""
    name: str = ""
    namespace: str | None = None


class KubeObject(Model):
    """An object with metadata, spec and status."""

    api_version: str = Field(f"{API_GROUP}/v1alpha2", alias="apiVersion")
    kind: str = ""
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind, self.metadata.namespace, self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def cluster_name(self) -> str | None:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL)

    def owner(self, kind: str) -> OwnerReference | None:
        for ref in self.metadata.owner_references:
            if ref.kind == kind:
                return ref
        return None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add finalizer, returning True if it was missing."""
        if finalizer in self.metadata.finalizers:
            return False
        self.metadata.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]


class ConditionedStatus(Model):
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self, condition_type: str, status: bool, reason: str, message: str = ""
    ) -> None:
        """Set a condition, keeping the transition time when the status is unchanged."""
        status_str = "True" if status else "False"
        existing = self.get_condition(condition_type)
        if existing is not None:
            if existing.status != status_str:
                existing.last_transition_time = datetime.now().astimezone()
            existing.status = status_str
            existing.reason = reason
            existing.message = message
            return

        self.conditions.append(
            Condition(
                type=condition_type,
                status=status_str,
                reason=reason,
                message=message,
                lastTransitionTime=datetime.now().astimezone(),
            )
        )


class InitializationStatus(Model):
    provisioned: bool | None = None


# =============================================================================
# Shared network specs
# =============================================================================


class PrivateNetworkParams(Model):
    """Existing private network to reuse, or parameters of the one to create."""

    id: str | None = None
    vpc_id: str | None = Field(None, alias="vpcID")
    subnet: str | None = None

    @field_validator("subnet")
    @classmethod
    def validate_subnet(cls, v: str | None) -> str | None:
        return _check_cidr(v) if v is not None else v


class PublicGateway(Model):
    type: str | None = None
    ip: str | None = None
    zone: str | None = None

    @field_validator("zone")
    @classmethod
    def validate_zone(cls, v: str | None) -> str | None:
        return _check_zone(v)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        return _check_ipv4(v)


# =============================================================================
# ScalewayCluster
# =============================================================================


class LoadBalancerSpec(Model):
    zone: str | None = None
    type: str | None = None
    ip: str | None = None
    private_ip: str | None = Field(None, alias="privateIP")

    @field_validator("zone")
    @classmethod
    def validate_zone(cls, v: str | None) -> str | None:
        return _check_zone(v)

    @field_validator("ip", "private_ip")
    @classmethod
    def validate_ips(cls, v: str | None) -> str | None:
        return _check_ipv4(v)


class ControlPlaneLoadBalancer(LoadBalancerSpec):
    allowed_ranges: list[str] = Field(default_factory=list, alias="allowedRanges")
    private: bool | None = None

    @field_validator("allowed_ranges")
    @classmethod
    def validate_ranges(cls, v: list[str]) -> list[str]:
        return [_check_cidr(r) for r in v]


class ControlPlaneDNS(Model):
    domain: str = ""
    name: str = ""

    def is_defined(self) -> bool:
        return self.name != "" or self.domain != ""


class PrivateNetworkSpec(PrivateNetworkParams):
    enabled: bool | None = None


class ScalewayClusterNetwork(Model):
    control_plane_load_balancer: ControlPlaneLoadBalancer = Field(
        default_factory=ControlPlaneLoadBalancer, alias="controlPlaneLoadBalancer"
    )
    control_plane_extra_load_balancers: list[LoadBalancerSpec] = Field(
        default_factory=list, alias="controlPlaneExtraLoadBalancers"
    )
    control_plane_dns: ControlPlaneDNS = Field(
        default_factory=ControlPlaneDNS, alias="controlPlaneDNS"
    )
    private_network: PrivateNetworkSpec = Field(
        default_factory=PrivateNetworkSpec, alias="privateNetwork"
    )
    public_gateways: list[PublicGateway] = Field(default_factory=list, alias="publicGateways")


class ScalewayClusterSpec(Model):
    project_id: str = Field("", alias="projectID")
    region: str
    scaleway_secret_name: str = Field("", alias="scalewaySecretName")
    failure_domains: list[str] = Field(default_factory=list, alias="failureDomains")
    network: ScalewayClusterNetwork = Field(default_factory=ScalewayClusterNetwork)
    control_plane_endpoint: APIEndpoint = Field(
        default_factory=APIEndpoint, alias="controlPlaneEndpoint"
    )

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        if not re.match(VALID_REGION_PATTERN, v):
            raise ValueError(f"invalid region: {v}")
        return v

    @field_validator("failure_domains")
    @classmethod
    def validate_failure_domains(cls, v: list[str]) -> list[str]:
        for zone in v:
            _check_zone(zone)
        return v


class FailureDomain(Model):
    name: str
    control_plane: bool = Field(False, alias="controlPlane")


class ScalewayClusterNetworkStatus(Model):
    vpc_id: str | None = Field(None, alias="vpcID")
    private_network_id: str | None = Field(None, alias="privateNetworkID")
    public_gateway_ids: list[str] = Field(default_factory=list, alias="publicGatewayIDs")
    load_balancer_ip: str | None = Field(None, alias="loadBalancerIP")
    extra_load_balancer_ips: list[str] = Field(default_factory=list, alias="extraLoadBalancerIPs")


class ScalewayClusterStatus(ConditionedStatus):
    failure_domains: list[FailureDomain] = Field(default_factory=list, alias="failureDomains")
    initialization: InitializationStatus = Field(default_factory=InitializationStatus)
    network: ScalewayClusterNetworkStatus = Field(default_factory=ScalewayClusterNetworkStatus)
    ready: bool | None = None


class ScalewayCluster(KubeObject):
    kind: str = "ScalewayCluster"
    spec: ScalewayClusterSpec
    status: ScalewayClusterStatus = Field(default_factory=ScalewayClusterStatus)


# =============================================================================
# ScalewayMachine
# =============================================================================


class IDOrName(Model):
    id: str | None = None
    name: str | None = None


class RootVolume(Model):
    size: int | None = Field(None, ge=1)
    type: str | None = None
    iops: int | None = Field(None, ge=1)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str | None) -> str | None:
        if v is not None and v not in ("local", "block"):
            raise ValueError("type must be one of ['local', 'block']")
        return v


class PublicNetwork(Model):
    enable_ipv4: bool | None = Field(None, alias="enableIPv4")
    enable_ipv6: bool | None = Field(None, alias="enableIPv6")


class ScalewayMachineSpec(Model):
    provider_id: str | None = Field(None, alias="providerID")
    commercial_type: str = Field(alias="commercialType")
    image: IDOrName = Field(default_factory=IDOrName)
    root_volume: RootVolume = Field(default_factory=RootVolume, alias="rootVolume")
    public_network: PublicNetwork = Field(default_factory=PublicNetwork, alias="publicNetwork")
    placement_group: IDOrName = Field(default_factory=IDOrName, alias="placementGroup")
    security_group: IDOrName = Field(default_factory=IDOrName, alias="securityGroup")


class MachineAddress(Model):
    type: str
    address: str


class ScalewayMachineStatus(ConditionedStatus):
    initialization: InitializationStatus = Field(default_factory=InitializationStatus)
    addresses: list[MachineAddress] = Field(default_factory=list)
    ready: bool | None = None


class ScalewayMachine(KubeObject):
    kind: str = "ScalewayMachine"
    spec: ScalewayMachineSpec
    status: ScalewayMachineStatus = Field(default_factory=ScalewayMachineStatus)


# =============================================================================
# ScalewayManagedCluster
# =============================================================================


class ScalewayManagedClusterNetwork(Model):
    private_network: PrivateNetworkParams = Field(
        default_factory=PrivateNetworkParams, alias="privateNetwork"
    )
    public_gateways: list[PublicGateway] = Field(default_factory=list, alias="publicGateways")


class ScalewayManagedClusterSpec(Model):
    region: str
    project_id: str = Field("", alias="projectID")
    scaleway_secret_name: str = Field("", alias="scalewaySecretName")
    network: ScalewayManagedClusterNetwork = Field(default_factory=ScalewayManagedClusterNetwork)
    control_plane_endpoint: APIEndpoint = Field(
        default_factory=APIEndpoint, alias="controlPlaneEndpoint"
    )

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        if not re.match(VALID_REGION_PATTERN, v):
            raise ValueError(f"invalid region: {v}")
        return v


class ScalewayManagedClusterNetworkStatus(Model):
    private_network_id: str | None = Field(None, alias="privateNetworkID")


class ScalewayManagedClusterStatus(ConditionedStatus):
    initialization: InitializationStatus = Field(default_factory=InitializationStatus)
    network: ScalewayManagedClusterNetworkStatus = Field(
        default_factory=ScalewayManagedClusterNetworkStatus
    )
    ready: bool | None = None


class ScalewayManagedCluster(KubeObject):
    kind: str = "ScalewayManagedCluster"
    spec: ScalewayManagedClusterSpec
    status: ScalewayManagedClusterStatus = Field(default_factory=ScalewayManagedClusterStatus)


# =============================================================================
# ScalewayManagedControlPlane
# =============================================================================


class Autoscaler(Model):
    scale_down_disabled: bool | None = Field(None, alias="scaleDownDisabled")
    scale_down_delay_after_add: str = Field("", alias="scaleDownDelayAfterAdd")
    estimator: str = ""
    expander: str = ""
    ignore_daemonsets_utilization: bool | None = Field(None, alias="ignoreDaemonsetsUtilization")
    balance_similar_node_groups: bool | None = Field(None, alias="balanceSimilarNodeGroups")
    expendable_pods_priority_cutoff: int | None = Field(None, alias="expendablePodsPriorityCutoff")
    scale_down_unneeded_time: str = Field("", alias="scaleDownUnneededTime")
    scale_down_utilization_threshold: str = Field("", alias="scaleDownUtilizationThreshold")
    max_graceful_termination_sec: int = Field(0, alias="maxGracefulTerminationSec")


class MaintenanceWindow(Model):
    start_hour: int | None = Field(None, ge=0, le=23, alias="startHour")
    day: str = ""


class AutoUpgrade(Model):
    enabled: bool | None = None
    maintenance_window: MaintenanceWindow = Field(
        default_factory=MaintenanceWindow, alias="maintenanceWindow"
    )


class OpenIDConnect(Model):
    issuer_url: str = Field("", alias="issuerURL")
    client_id: str = Field("", alias="clientID")
    username_claim: str = Field("", alias="usernameClaim")
    username_prefix: str = Field("", alias="usernamePrefix")
    groups_claim: list[str] = Field(default_factory=list, alias="groupsClaim")
    groups_prefix: str = Field("", alias="groupsPrefix")
    required_claim: list[str] = Field(default_factory=list, alias="requiredClaim")


class OnDelete(Model):
    with_additional_resources: bool | None = Field(None, alias="withAdditionalResources")


class ControlPlaneACL(Model):
    allowed_ranges: list[str] = Field(default_factory=list, alias="allowedRanges")

    @field_validator("allowed_ranges")
    @classmethod
    def validate_ranges(cls, v: list[str]) -> list[str]:
        return [_check_cidr(r) for r in v]


class ScalewayManagedControlPlaneSpec(Model):
    cluster_name: str | None = Field(None, alias="clusterName")
    type: str
    version: str
    cni: str = ""
    additional_tags: list[str] = Field(default_factory=list, alias="additionalTags")
    autoscaler: Autoscaler = Field(default_factory=Autoscaler)
    auto_upgrade: AutoUpgrade = Field(default_factory=AutoUpgrade, alias="autoUpgrade")
    feature_gates: list[str] = Field(default_factory=list, alias="featureGates")
    admission_plugins: list[str] = Field(default_factory=list, alias="admissionPlugins")
    open_id_connect: OpenIDConnect = Field(default_factory=OpenIDConnect, alias="openIDConnect")
    apiserver_cert_sans: list[str] = Field(default_factory=list, alias="apiServerCertSANs")
    on_delete: OnDelete = Field(default_factory=OnDelete, alias="onDelete")
    acl: ControlPlaneACL | None = None
    enable_private_endpoint: bool | None = Field(None, alias="enablePrivateEndpoint")
    control_plane_endpoint: APIEndpoint = Field(
        default_factory=APIEndpoint, alias="controlPlaneEndpoint"
    )


class ControlPlaneInitializationStatus(Model):
    control_plane_initialized: bool | None = Field(None, alias="controlPlaneInitialized")


class ScalewayManagedControlPlaneStatus(ConditionedStatus):
    version: str | None = None
    external_managed_control_plane: bool | None = Field(None, alias="externalManagedControlPlane")
    initialization: ControlPlaneInitializationStatus = Field(
        default_factory=ControlPlaneInitializationStatus
    )
    ready: bool | None = None


class ScalewayManagedControlPlane(KubeObject):
    kind: str = "ScalewayManagedControlPlane"
    spec: ScalewayManagedControlPlaneSpec
    status: ScalewayManagedControlPlaneStatus = Field(
        default_factory=ScalewayManagedControlPlaneStatus
    )


# =============================================================================
# ScalewayManagedMachinePool
# =============================================================================


class Scaling(Model):
    autoscaling: bool | None = None
    min_size: int | None = Field(None, ge=0, alias="minSize")
    max_size: int | None = Field(None, ge=0, alias="maxSize")


class UpgradePolicy(Model):
    max_unavailable: int | None = Field(None, ge=0, alias="maxUnavailable")
    max_surge: int | None = Field(None, ge=0, alias="maxSurge")


class ScalewayManagedMachinePoolSpec(Model):
    node_type: str = Field(alias="nodeType")
    zone: str | None = None
    placement_group_id: str | None = Field(None, alias="placementGroupID")
    scaling: Scaling = Field(default_factory=Scaling)
    autohealing: bool | None = None
    additional_tags: list[str] = Field(default_factory=list, alias="additionalTags")
    kubelet_args: dict[str, str] = Field(default_factory=dict, alias="kubeletArgs")
    upgrade_policy: UpgradePolicy = Field(default_factory=UpgradePolicy, alias="upgradePolicy")
    root_volume_type: str | None = Field(None, alias="rootVolumeType")
    root_volume_size_gb: int | None = Field(None, ge=1, alias="rootVolumeSizeGB")
    public_ip_disabled: bool | None = Field(None, alias="publicIPDisabled")
    security_group_id: str | None = Field(None, alias="securityGroupID")
    provider_id_list: list[str] = Field(default_factory=list, alias="providerIDList")

    @field_validator("zone")
    @classmethod
    def validate_zone(cls, v: str | None) -> str | None:
        return _check_zone(v)


class ScalewayManagedMachinePoolStatus(ConditionedStatus):
    ready: bool | None = None
    initialization: InitializationStatus = Field(default_factory=InitializationStatus)
    replicas: int | None = None


class ScalewayManagedMachinePool(KubeObject):
    kind: str = "ScalewayManagedMachinePool"
    spec: ScalewayManagedMachinePoolSpec
    status: ScalewayManagedMachinePoolStatus = Field(
        default_factory=ScalewayManagedMachinePoolStatus
    )


# =============================================================================
# Framework-owned objects (read only)
# =============================================================================


class ClusterNetwork(Model):
    api_server_port: int | None = Field(None, alias="apiServerPort")


class ClusterSpec(Model):
    paused: bool = False
    cluster_network: ClusterNetwork = Field(default_factory=ClusterNetwork, alias="clusterNetwork")
    infrastructure_ref: ObjectReference = Field(
        default_factory=ObjectReference, alias="infrastructureRef"
    )
    control_plane_ref: ObjectReference = Field(
        default_factory=ObjectReference, alias="controlPlaneRef"
    )


class ClusterStatus(Model):
    infrastructure_ready: bool = Field(False, alias="infrastructureReady")
    control_plane_ready: bool = Field(False, alias="controlPlaneReady")


class Cluster(KubeObject):
    api_version: str = Field("cluster.x-k8s.io/v1beta1", alias="apiVersion")
    kind: str = "Cluster"
    spec: ClusterSpec = Field(default_factory=ClusterSpec)
    status: ClusterStatus = Field(default_factory=ClusterStatus)


def is_paused(cluster: Cluster, obj: KubeObject) -> bool:
    """Return True if the cluster or obj is marked as paused."""
    return cluster.spec.paused or PAUSED_ANNOTATION in obj.metadata.annotations


class Bootstrap(Model):
    data_secret_name: str | None = Field(None, alias="dataSecretName")


class MachineSpec(Model):
    cluster_name: str = Field(alias="clusterName")
    bootstrap: Bootstrap = Field(default_factory=Bootstrap)
    version: str | None = None
    failure_domain: str | None = Field(None, alias="failureDomain")


class NodeReference(Model):
    name: str = ""


class MachineStatus(Model):
    node_ref: NodeReference | None = Field(None, alias="nodeRef")


class Machine(KubeObject):
    api_version: str = Field("cluster.x-k8s.io/v1beta1", alias="apiVersion")
    kind: str = "Machine"
    spec: MachineSpec
    status: MachineStatus = Field(default_factory=MachineStatus)

    @property
    def is_control_plane(self) -> bool:
        return CONTROL_PLANE_LABEL in self.metadata.labels


class MachineTemplateSpec(Model):
    version: str | None = None


class MachineTemplate(Model):
    spec: MachineTemplateSpec = Field(default_factory=MachineTemplateSpec)


class MachinePoolSpec(Model):
    cluster_name: str = Field(alias="clusterName")
    replicas: int | None = Field(None, ge=0)
    template: MachineTemplate = Field(default_factory=MachineTemplate)


class MachinePool(KubeObject):
    api_version: str = Field("cluster.x-k8s.io/v1beta1", alias="apiVersion")
    kind: str = "MachinePool"
    spec: MachinePoolSpec


class Secret(KubeObject):
    api_version: str = Field("v1", alias="apiVersion")
    kind: str = "Secret"
    type: str = ""
    data: dict[str, str] = Field(default_factory=dict)
    string_data: dict[str, str] = Field(default_factory=dict, alias="stringData")


# Map of kind name to model class
KIND_REGISTRY: dict[str, type[KubeObject]] = {
    "ScalewayCluster": ScalewayCluster,
    "ScalewayMachine": ScalewayMachine,
    "ScalewayManagedCluster": ScalewayManagedCluster,
    "ScalewayManagedControlPlane": ScalewayManagedControlPlane,
    "ScalewayManagedMachinePool": ScalewayManagedMachinePool,
    "Cluster": Cluster,
    "Machine": Machine,
    "MachinePool": MachinePool,
    "Secret": Secret,
}


def get_model_class(kind: str) -> type[KubeObject]:
    """Get the model class for a kind.

    Raises:
        ValueError: If kind is not known.
    """
    if kind not in KIND_REGISTRY:
        raise ValueError(f"Unknown kind: {kind}. Valid kinds: {list(KIND_REGISTRY.keys())}")
    return KIND_REGISTRY[kind]


def dump_status(obj: KubeObject) -> dict[str, Any]:
    """Serialize the mutable parts of obj (finalizers, spec and status).

    Secrets are written whole.
    """
    if isinstance(obj, Secret):
        return obj.model_dump(by_alias=True, exclude_none=True, mode="json")
    return {
        "apiVersion": obj.api_version,
        "kind": obj.kind,
        "metadata": {
            "name": obj.metadata.name,
            "namespace": obj.metadata.namespace,
            "finalizers": list(obj.metadata.finalizers),
        },
        "spec": obj.spec.model_dump(by_alias=True, exclude_none=True, mode="json")
        if hasattr(obj, "spec")
        else {},
        "status": obj.status.model_dump(by_alias=True, exclude_none=True, mode="json")
        if hasattr(obj, "status")
        else {},
    }
