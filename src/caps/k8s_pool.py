"""Managed Kubernetes pool service."""

from __future__ import annotations

import logging

from .client import (
    ClusterStatus,
    K8sCluster,
    K8sPool,
    PoolStatus,
    PoolUpgradePolicy,
    is_not_found_error,
    tags_without_created_by,
)
from .errors import with_transient_error
from .k8s_cluster import is_up_to_date, slices_equal_ignore_order
from .scope import ManagedMachinePoolScope

logger = logging.getLogger(__name__)

POOL_RETRY_SECONDS = 30


def pool_upgrade_policy_matches_desired(
    current: PoolUpgradePolicy | None, desired: PoolUpgradePolicy | None
) -> bool:
    if current is None or desired is None:
        return True
    return current.max_surge == desired.max_surge and current.max_unavailable == desired.max_unavailable


class K8sPoolService:
    name = "k8s_pool"

    def __init__(self, scope: ManagedMachinePoolScope) -> None:
        self.scope = scope

    async def reconcile(self) -> None:
        client = self.scope.client

        cluster_name = self.scope.cluster_name()
        if cluster_name is None:
            raise with_transient_error("cluster name not set", POOL_RETRY_SECONDS)

        try:
            cluster = await client.find_cluster(cluster_name)
        except Exception as e:
            if is_not_found_error(e):
                raise with_transient_error("cluster does not exist yet", POOL_RETRY_SECONDS) from e
            raise

        if cluster.status not in (ClusterStatus.READY, ClusterStatus.POOL_REQUIRED):
            raise with_transient_error(
                f"cluster {cluster.id} is not yet ready: currently {cluster.status.value}",
                POOL_RETRY_SECONDS,
            )

        pool = await self._get_or_create_pool(cluster)

        if pool.status != PoolStatus.READY:
            raise with_transient_error(
                f"pool {pool.id} is not yet ready: currently {pool.status.value}",
                POOL_RETRY_SECONDS,
            )

        desired_version = self.scope.desired_version()
        if desired_version is not None and not is_up_to_date(pool.version, desired_version):
            logger.info("Upgrading pool", extra={"pool_id": pool.id, "version": desired_version})
            await client.upgrade_pool(pool.id, desired_version)
            raise with_transient_error(
                f"pool {pool.id} is upgrading to {desired_version}", POOL_RETRY_SECONDS
            )

        if await self._update_pool(pool):
            raise with_transient_error(f"pool {pool.id} is being updated", POOL_RETRY_SECONDS)

        nodes = await client.list_nodes(cluster.id, pool.id)
        self.scope.set_provider_ids([node.provider_id for node in nodes])
        self.scope.set_status_replicas(pool.size)

    async def delete(self) -> None:
        client = self.scope.client

        cluster_name = self.scope.cluster_name()
        if cluster_name is None:
            return

        try:
            cluster = await client.find_cluster(cluster_name)
            pool = await client.find_pool(cluster.id, self.scope.resource_name())
        except Exception as e:
            if is_not_found_error(e):
                return
            raise

        if pool.status != PoolStatus.DELETING:
            logger.info("Deleting pool", extra={"pool_id": pool.id, "pool_name": pool.name})
            await client.delete_pool(pool.id)

        raise with_transient_error("pool is being deleted", POOL_RETRY_SECONDS)

    async def _get_or_create_pool(self, cluster: K8sCluster) -> K8sPool:
        client = self.scope.client
        name = self.scope.resource_name()

        try:
            return await client.find_pool(cluster.id, name)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        spec = self.scope.managed_machine_pool.spec
        autoscaling, size, min_size, max_size = self.scope.scaling()

        logger.info(
            "Creating pool",
            extra={"pool_name": name, "cluster_id": cluster.id, "zone": spec.zone},
        )
        return await client.create_pool(
            cluster_id=cluster.id,
            zone=spec.zone or "",
            name=name,
            node_type=spec.node_type,
            placement_group_id=spec.placement_group_id,
            security_group_id=spec.security_group_id,
            autoscaling=autoscaling,
            autohealing=self.scope.autohealing(),
            public_ip_disabled=self.scope.public_ip_disabled(),
            size=size,
            min_size=min_size,
            max_size=max_size,
            tags=self.scope.desired_tags(),
            kubelet_args=dict(spec.kubelet_args),
            root_volume_type=self.scope.root_volume_type(),
            root_volume_size_gb=self.scope.root_volume_size_gb(),
            upgrade_policy=self.scope.desired_pool_upgrade_policy(),
        )

    async def _update_pool(self, pool: K8sPool) -> bool:
        """Send one update with every field that drifted. Return True if sent."""
        changes: dict = {}

        autohealing = self.scope.autohealing()
        if pool.autohealing != autohealing:
            changes["autohealing"] = autohealing

        if pool.node_type != "external":
            autoscaling, size, min_size, max_size = self.scope.scaling()

            if pool.autoscaling != autoscaling:
                changes["autoscaling"] = autoscaling

            # min and max only matter with autoscaling, size only without
            if autoscaling:
                if pool.min_size != min_size:
                    changes["min_size"] = min_size
                if pool.max_size != max_size:
                    changes["max_size"] = max_size
            elif pool.size != size:
                changes["size"] = size

        desired_tags = self.scope.desired_tags()
        if not slices_equal_ignore_order(tags_without_created_by(pool.tags), desired_tags):
            changes["tags"] = desired_tags

        kubelet_args = dict(self.scope.managed_machine_pool.spec.kubelet_args)
        if pool.kubelet_args != kubelet_args:
            changes["kubelet_args"] = kubelet_args

        upgrade_policy = self.scope.desired_pool_upgrade_policy()
        if not pool_upgrade_policy_matches_desired(pool.upgrade_policy, upgrade_policy):
            changes["upgrade_policy"] = upgrade_policy

        if not changes:
            return False

        logger.info("Updating pool", extra={"pool_id": pool.id, "fields": sorted(changes)})
        try:
            await self.scope.client.update_pool(pool.id, **changes)
        except Exception as e:
            raise RuntimeError(f"failed to update pool: {e}") from e
        return True
