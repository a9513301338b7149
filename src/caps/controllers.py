"""Reconciliation entry points, one controller per owning object kind.

A controller is invoked with the namespace and name of one object. It
fetches the object and the framework objects it depends on, builds a scope,
then runs the normal or the delete path:

- normal: add the finalizer, evaluate readiness gates, run the service
  orchestrator and mark the object ready;
- delete: defer while dependents exist, run the orchestrator in reverse and
  remove the finalizer so the store can finalize the object.

The scope is closed in a ``finally`` block so spec and status are persisted
whatever the outcome. Errors are translated into a Result here and nowhere
else: transient errors requeue after their delay, terminal errors surface a
Ready=False condition and stop, anything else propagates to the manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

from .client import ClientFactory, CloudClient, check_credentials
from .domain import DomainService
from .errors import find_reconcile_error
from .instance import InstanceService
from .k8s_cluster import K8sClusterService
from .k8s_pool import K8sPoolService
from .lb import LBService
from .models import (
    CLUSTER_NAME_LABEL,
    READY_CONDITION,
    READY_REASON,
    RECONCILIATION_FAILED_REASON,
    Cluster,
    KubeObject,
    Machine,
    MachinePool,
    ScalewayCluster,
    ScalewayMachine,
    ScalewayManagedCluster,
    ScalewayManagedControlPlane,
    ScalewayManagedMachinePool,
    is_paused,
)
from .orchestrator import ServiceOrchestrator, select_failure_domains
from .scope import (
    ClusterScope,
    MachineScope,
    ManagedClusterScope,
    ManagedControlPlaneScope,
    ManagedMachinePoolScope,
    Scope,
)
from .store import ObjectNotFoundError, ObjectStore
from .vpc import VPCService
from .vpcgw import VPCGWService

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Scope)
T = TypeVar("T", bound=KubeObject)

SCALEWAY_CLUSTER_FINALIZER = "scalewaycluster.infrastructure.cluster.x-k8s.io/sc-protection"
SCALEWAY_MACHINE_FINALIZER = "scalewaymachine.infrastructure.cluster.x-k8s.io/sm-protection"
SCALEWAY_MANAGED_CLUSTER_FINALIZER = (
    "scalewaymanagedcluster.infrastructure.cluster.x-k8s.io/smc-protection"
)
SCALEWAY_MANAGED_CONTROL_PLANE_FINALIZER = (
    "scalewaymanagedcontrolplane.infrastructure.cluster.x-k8s.io/smcp-protection"
)
SCALEWAY_MANAGED_MACHINE_POOL_FINALIZER = (
    "scalewaymanagedmachinepool.infrastructure.cluster.x-k8s.io/smmp-protection"
)

# Delay while an upstream dependency is not ready
DEPENDENCY_RETRY_SECONDS = 1
DEFAULT_RETRY_SECONDS = 30


@dataclass
class Result:
    """Scheduling decision of one reconciliation.

    ``requeue_after`` None means no early requeue. ``terminal`` marks a pass
    that failed in a way retrying cannot fix: the object is not run again
    until it changes.
    """

    requeue_after: float | None = None
    terminal: bool = False

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class Controller(Generic[S]):
    """Shared plumbing: object lookups, client construction, error mapping."""

    kind = ""
    finalizer = ""

    def __init__(
        self,
        store: ObjectStore,
        client_factory: ClientFactory,
        default_retry_seconds: float = DEFAULT_RETRY_SECONDS,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._default_retry_seconds = default_retry_seconds

    async def reconcile(self, namespace: str, name: str) -> Result:
        raise NotImplementedError("Subclasses must implement reconcile")

    def new_orchestrator(self, scope: S) -> ServiceOrchestrator:
        raise NotImplementedError("Subclasses must implement new_orchestrator")

    async def _get_owner_cluster(self, obj: KubeObject) -> Cluster | None:
        ref = obj.owner("Cluster")
        if ref is None:
            return None
        cluster = await self._store.get("Cluster", obj.namespace, ref.name)
        return cluster if isinstance(cluster, Cluster) else None

    async def _get_required(self, model: type[T], namespace: str, name: str) -> T:
        kind = model.__name__
        obj = await self._store.get(kind, namespace, name)
        if not isinstance(obj, model):
            raise ObjectNotFoundError(f"failed to get {kind} {namespace}/{name}")
        return obj

    async def _new_client(
        self, namespace: str, region: str, project_id: str, secret_name: str
    ) -> CloudClient:
        try:
            secret_data = await self._store.get_secret_data(namespace, secret_name)
            check_credentials(secret_data)
            return self._client_factory(region, project_id, secret_data)
        except Exception as e:
            raise RuntimeError(f"failed to create Scaleway client: {e}") from e

    async def _run_and_finalize(self, scope: S, deleting: bool) -> Result:
        try:
            if deleting:
                return await self._reconcile_delete(scope)
            return await self._reconcile_normal(scope)
        finally:
            await scope.close()

    async def _reconcile_normal(self, scope: S) -> Result:
        raise NotImplementedError("Subclasses must implement _reconcile_normal")

    async def _reconcile_delete(self, scope: S) -> Result:
        raise NotImplementedError("Subclasses must implement _reconcile_delete")

    async def _add_finalizer(self, scope: Scope) -> None:
        if scope.object.add_finalizer(self.finalizer):
            await scope.patch_object()

    def _handle_error(self, scope: Scope, err: Exception) -> Result:
        """Translate a failed pass into a Result, re-raising unclassified errors."""
        obj = scope.object
        reconcile_error = find_reconcile_error(err)
        if reconcile_error is None:
            raise err

        if reconcile_error.is_transient:
            logger.info(
                f"Transient failure to reconcile {self.kind}, retrying",
                extra={
                    "namespace": obj.namespace,
                    "object_name": obj.name,
                    "requeue_after": reconcile_error.requeue_after,
                    "error": str(err),
                },
            )
            return Result(requeue_after=reconcile_error.requeue_after)

        logger.error(
            f"Failed to reconcile {self.kind}",
            extra={"namespace": obj.namespace, "object_name": obj.name, "error": str(err)},
        )
        scope.set_condition(READY_CONDITION, False, RECONCILIATION_FAILED_REASON, str(err))
        return Result(terminal=True)

    async def _delete_services(self, scope: S) -> Result | None:
        """Run the orchestrator in reverse. Return a Result to stop early."""
        try:
            await self.new_orchestrator(scope).delete()
        except Exception as e:
            return self._handle_error(scope, e)
        scope.object.remove_finalizer(self.finalizer)
        return None

    def _log(self, message: str, obj: KubeObject, **extra: object) -> None:
        logger.info(
            message,
            extra={"kind": self.kind, "namespace": obj.namespace, "object_name": obj.name, **extra},
        )


# =============================================================================
# ScalewayCluster
# =============================================================================


class ClusterController(Controller[ClusterScope]):
    kind = "ScalewayCluster"
    finalizer = SCALEWAY_CLUSTER_FINALIZER

    def new_orchestrator(self, scope: ClusterScope) -> ServiceOrchestrator:
        return ServiceOrchestrator(
            self.kind,
            [VPCService(scope), VPCGWService(scope), LBService(scope), DomainService(scope)],
        )

    async def reconcile(self, namespace: str, name: str) -> Result:
        scaleway_cluster = await self._store.get(self.kind, namespace, name)
        if not isinstance(scaleway_cluster, ScalewayCluster):
            return Result()

        cluster = await self._get_owner_cluster(scaleway_cluster)
        if cluster is None:
            self._log("Cluster Controller has not yet set OwnerRef", scaleway_cluster)
            return Result()

        if is_paused(cluster, scaleway_cluster):
            self._log("ScalewayCluster or linked Cluster is marked as paused", scaleway_cluster)
            return Result()

        spec = scaleway_cluster.spec
        client = await self._new_client(
            namespace, spec.region, spec.project_id, spec.scaleway_secret_name
        )
        scope = ClusterScope(client, self._store, cluster, scaleway_cluster)
        return await self._run_and_finalize(scope, scaleway_cluster.is_deleting)

    async def _reconcile_normal(self, scope: ClusterScope) -> Result:
        scaleway_cluster = scope.scaleway_cluster
        self._log("Reconciling ScalewayCluster", scaleway_cluster)

        await self._add_finalizer(scope)

        try:
            scope.set_failure_domains(
                select_failure_domains(scope.client, scaleway_cluster.spec.failure_domains)
            )
            await self.new_orchestrator(scope).reconcile()
        except Exception as e:
            return self._handle_error(scope, e)

        endpoint = scaleway_cluster.spec.control_plane_endpoint
        if not endpoint.host:
            endpoint.host = scope.control_plane_host()
        if not endpoint.port:
            endpoint.port = scope.control_plane_load_balancer_port()

        scaleway_cluster.status.initialization.provisioned = True
        scaleway_cluster.status.ready = True
        scope.set_condition(READY_CONDITION, True, READY_REASON)
        return Result()

    async def _reconcile_delete(self, scope: ClusterScope) -> Result:
        self._log("Reconciling ScalewayCluster delete", scope.object)
        return await self._delete_services(scope) or Result()


# =============================================================================
# ScalewayMachine
# =============================================================================


class MachineController(Controller[MachineScope]):
    kind = "ScalewayMachine"
    finalizer = SCALEWAY_MACHINE_FINALIZER

    def new_orchestrator(self, scope: MachineScope) -> ServiceOrchestrator:
        return ServiceOrchestrator(self.kind, [InstanceService(scope)])

    async def reconcile(self, namespace: str, name: str) -> Result:
        scaleway_machine = await self._store.get(self.kind, namespace, name)
        if not isinstance(scaleway_machine, ScalewayMachine):
            return Result()

        ref = scaleway_machine.owner("Machine")
        machine = await self._store.get("Machine", namespace, ref.name) if ref else None
        if not isinstance(machine, Machine):
            self._log("Machine Controller has not yet set OwnerRef", scaleway_machine)
            return Result()

        cluster_name = machine.cluster_name or machine.spec.cluster_name
        cluster = await self._store.get("Cluster", namespace, cluster_name)
        if not isinstance(cluster, Cluster):
            self._log("Machine is missing cluster label or cluster does not exist", scaleway_machine)
            return Result()

        if is_paused(cluster, scaleway_machine):
            self._log("ScalewayMachine or linked Cluster is marked as paused", scaleway_machine)
            return Result()

        scaleway_cluster = await self._store.get(
            "ScalewayCluster", namespace, cluster.spec.infrastructure_ref.name
        )
        if not isinstance(scaleway_cluster, ScalewayCluster):
            self._log("ScalewayCluster is not available yet", scaleway_machine)
            return Result()

        spec = scaleway_cluster.spec
        client = await self._new_client(
            namespace, spec.region, spec.project_id, spec.scaleway_secret_name
        )
        cluster_scope = ClusterScope(client, self._store, cluster, scaleway_cluster)
        scope = MachineScope(client, self._store, cluster_scope, machine, scaleway_machine)
        return await self._run_and_finalize(scope, scaleway_machine.is_deleting)

    async def _reconcile_normal(self, scope: MachineScope) -> Result:
        scaleway_machine = scope.scaleway_machine
        self._log("Reconciling ScalewayMachine", scaleway_machine)

        await self._add_finalizer(scope)

        if not scope.cluster_scope.cluster.status.infrastructure_ready:
            self._log("Cluster infrastructure is not ready yet", scaleway_machine)
            return Result(requeue_after=DEPENDENCY_RETRY_SECONDS)

        if scope.machine.spec.bootstrap.data_secret_name is None:
            self._log("Bootstrap data secret reference is not yet available", scaleway_machine)
            return Result(requeue_after=DEPENDENCY_RETRY_SECONDS)

        try:
            await self.new_orchestrator(scope).reconcile()
        except Exception as e:
            return self._handle_error(scope, e)

        scaleway_machine.status.initialization.provisioned = True
        scaleway_machine.status.ready = True
        scope.set_condition(READY_CONDITION, True, READY_REASON)
        return Result()

    async def _reconcile_delete(self, scope: MachineScope) -> Result:
        self._log("Reconciling ScalewayMachine delete", scope.object)
        return await self._delete_services(scope) or Result()


# =============================================================================
# ScalewayManagedCluster
# =============================================================================


class ManagedClusterController(Controller[ManagedClusterScope]):
    kind = "ScalewayManagedCluster"
    finalizer = SCALEWAY_MANAGED_CLUSTER_FINALIZER

    def new_orchestrator(self, scope: ManagedClusterScope) -> ServiceOrchestrator:
        return ServiceOrchestrator(self.kind, [VPCService(scope), VPCGWService(scope)])

    async def reconcile(self, namespace: str, name: str) -> Result:
        managed_cluster = await self._store.get(self.kind, namespace, name)
        if not isinstance(managed_cluster, ScalewayManagedCluster):
            return Result()

        cluster = await self._get_owner_cluster(managed_cluster)
        if cluster is None:
            self._log("Cluster Controller has not yet set OwnerRef", managed_cluster)
            return Result()

        if is_paused(cluster, managed_cluster):
            self._log("ScalewayManagedCluster or linked Cluster is marked as paused", managed_cluster)
            return Result()

        control_plane_name = cluster.spec.control_plane_ref.name
        if not control_plane_name:
            raise ValueError("missing controlPlaneRef in cluster spec")

        # the control plane may already be gone while the cluster is deleted
        control_plane = await self._store.get(
            "ScalewayManagedControlPlane", namespace, control_plane_name
        )
        if not isinstance(control_plane, ScalewayManagedControlPlane):
            if not managed_cluster.is_deleting:
                raise ObjectNotFoundError(
                    f"failed to get control plane ref {namespace}/{control_plane_name}"
                )
            control_plane = None

        spec = managed_cluster.spec
        client = await self._new_client(
            namespace, spec.region, spec.project_id, spec.scaleway_secret_name
        )
        scope = ManagedClusterScope(client, self._store, managed_cluster, control_plane)
        return await self._run_and_finalize(scope, managed_cluster.is_deleting)

    async def _reconcile_normal(self, scope: ManagedClusterScope) -> Result:
        managed_cluster = scope.managed_cluster
        self._log("Reconciling ScalewayManagedCluster", managed_cluster)

        await self._add_finalizer(scope)

        try:
            await self.new_orchestrator(scope).reconcile()
        except Exception as e:
            return self._handle_error(scope, e)

        managed_cluster.status.initialization.provisioned = True
        managed_cluster.status.ready = True
        if scope.managed_control_plane is not None:
            managed_cluster.spec.control_plane_endpoint = (
                scope.managed_control_plane.spec.control_plane_endpoint.model_copy()
            )
        scope.set_condition(READY_CONDITION, True, READY_REASON)
        return Result()

    async def _reconcile_delete(self, scope: ManagedClusterScope) -> Result:
        managed_cluster = scope.managed_cluster
        self._log("Reconciling ScalewayManagedCluster delete", managed_cluster)

        dependencies = await self._dependency_count(managed_cluster)
        if dependencies > 0:
            self._log(
                "Scaleway managed cluster still has dependencies, requeue needed",
                managed_cluster,
                dependency_count=dependencies,
            )
            return Result(requeue_after=self._default_retry_seconds)

        if scope.managed_control_plane is not None:
            self._log("ScalewayManagedControlPlane not deleted yet, retry later", managed_cluster)
            return Result(requeue_after=self._default_retry_seconds)

        return await self._delete_services(scope) or Result()

    async def _dependency_count(self, managed_cluster: ScalewayManagedCluster) -> int:
        cluster_ref = managed_cluster.owner("Cluster")
        cluster_name = cluster_ref.name if cluster_ref else managed_cluster.name
        pools = await self._store.list(
            "ScalewayManagedMachinePool",
            namespace=managed_cluster.namespace,
            labels={CLUSTER_NAME_LABEL: cluster_name},
        )
        return len(pools)


# =============================================================================
# ScalewayManagedControlPlane
# =============================================================================


class ManagedControlPlaneController(Controller[ManagedControlPlaneScope]):
    kind = "ScalewayManagedControlPlane"
    finalizer = SCALEWAY_MANAGED_CONTROL_PLANE_FINALIZER

    def new_orchestrator(self, scope: ManagedControlPlaneScope) -> ServiceOrchestrator:
        return ServiceOrchestrator(self.kind, [K8sClusterService(scope)])

    async def reconcile(self, namespace: str, name: str) -> Result:
        control_plane = await self._store.get(self.kind, namespace, name)
        if not isinstance(control_plane, ScalewayManagedControlPlane):
            return Result()

        cluster = await self._get_owner_cluster(control_plane)
        if cluster is None:
            self._log("Cluster Controller has not yet set OwnerRef", control_plane)
            return Result()

        if is_paused(cluster, control_plane):
            self._log("Reconciliation is paused for this object", control_plane)
            return Result()

        managed_cluster = await self._get_required(
            ScalewayManagedCluster, namespace, cluster.spec.infrastructure_ref.name
        )

        spec = managed_cluster.spec
        client = await self._new_client(
            namespace, spec.region, spec.project_id, spec.scaleway_secret_name
        )
        scope = ManagedControlPlaneScope(
            client, self._store, cluster, managed_cluster, control_plane
        )
        return await self._run_and_finalize(scope, control_plane.is_deleting)

    async def _reconcile_normal(self, scope: ManagedControlPlaneScope) -> Result:
        control_plane = scope.managed_control_plane
        self._log("Reconciling ScalewayManagedControlPlane", control_plane)

        await self._add_finalizer(scope)

        if not scope.managed_cluster.status.initialization.provisioned:
            self._log("ScalewayManagedCluster not ready yet, retry later", control_plane)
            return Result(requeue_after=DEPENDENCY_RETRY_SECONDS)

        try:
            await self.new_orchestrator(scope).reconcile()
        except Exception as e:
            return self._handle_error(scope, e)

        control_plane.status.initialization.control_plane_initialized = True
        control_plane.status.ready = True
        control_plane.status.external_managed_control_plane = True
        control_plane.spec.version = scope.fixed_version()
        scope.set_condition(READY_CONDITION, True, READY_REASON)
        return Result()

    async def _reconcile_delete(self, scope: ManagedControlPlaneScope) -> Result:
        self._log("Reconciling ScalewayManagedControlPlane delete", scope.object)
        return await self._delete_services(scope) or Result()


# =============================================================================
# ScalewayManagedMachinePool
# =============================================================================


class ManagedMachinePoolController(Controller[ManagedMachinePoolScope]):
    kind = "ScalewayManagedMachinePool"
    finalizer = SCALEWAY_MANAGED_MACHINE_POOL_FINALIZER

    def new_orchestrator(self, scope: ManagedMachinePoolScope) -> ServiceOrchestrator:
        return ServiceOrchestrator(self.kind, [K8sPoolService(scope)])

    async def reconcile(self, namespace: str, name: str) -> Result:
        pool = await self._store.get(self.kind, namespace, name)
        if not isinstance(pool, ScalewayManagedMachinePool):
            return Result()

        ref = pool.owner("MachinePool")
        machine_pool = await self._store.get("MachinePool", namespace, ref.name) if ref else None
        if not isinstance(machine_pool, MachinePool):
            return Result()

        cluster = await self._get_required(
            Cluster, namespace, machine_pool.cluster_name or machine_pool.spec.cluster_name
        )

        if is_paused(cluster, pool):
            self._log("Reconciliation is paused for this object", pool)
            return Result()

        managed_cluster = await self._get_required(
            ScalewayManagedCluster, namespace, cluster.spec.infrastructure_ref.name
        )

        control_plane = await self._store.get(
            "ScalewayManagedControlPlane", namespace, cluster.spec.control_plane_ref.name
        )
        if not isinstance(control_plane, ScalewayManagedControlPlane):
            self._log("Failed to retrieve ManagedControlPlane from ManagedMachinePool", pool)
            return Result()

        spec = managed_cluster.spec
        client = await self._new_client(
            namespace, spec.region, spec.project_id, spec.scaleway_secret_name
        )
        scope = ManagedMachinePoolScope(
            client, self._store, cluster, machine_pool, managed_cluster, control_plane, pool
        )
        return await self._run_and_finalize(scope, pool.is_deleting)

    async def _reconcile_normal(self, scope: ManagedMachinePoolScope) -> Result:
        pool = scope.managed_machine_pool
        self._log("Reconciling ScalewayManagedMachinePool", pool)

        await self._add_finalizer(scope)

        if not scope.managed_cluster.status.initialization.provisioned:
            self._log("ScalewayManagedCluster not provisioned yet, retry later", pool)
            return Result(requeue_after=DEPENDENCY_RETRY_SECONDS)

        if scope.cluster_name() is None:
            self._log("Managed cluster name is not known yet, retry later", pool)
            return Result(requeue_after=DEPENDENCY_RETRY_SECONDS)

        try:
            await self.new_orchestrator(scope).reconcile()
        except Exception as e:
            return self._handle_error(scope, e)

        pool.status.initialization.provisioned = True
        pool.status.ready = True
        scope.set_condition(READY_CONDITION, True, READY_REASON)
        return Result()

    async def _reconcile_delete(self, scope: ManagedMachinePoolScope) -> Result:
        self._log("Reconciling ScalewayManagedMachinePool delete", scope.object)
        return await self._delete_services(scope) or Result()


# Kinds in dependency order: infrastructure before control planes before workers
CONTROLLER_CLASSES: dict[str, type[Controller]] = {
    "ScalewayCluster": ClusterController,
    "ScalewayManagedCluster": ManagedClusterController,
    "ScalewayManagedControlPlane": ManagedControlPlaneController,
    "ScalewayManagedMachinePool": ManagedMachinePoolController,
    "ScalewayMachine": MachineController,
}


def build_controllers(
    store: ObjectStore,
    client_factory: ClientFactory,
    default_retry_seconds: float = DEFAULT_RETRY_SECONDS,
) -> dict[str, Controller]:
    return {
        kind: cls(store, client_factory, default_retry_seconds)
        for kind, cls in CONTROLLER_CLASSES.items()
    }
