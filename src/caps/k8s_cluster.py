"""Managed Kubernetes cluster service.

Drives the managed cluster of a ScalewayManagedControlPlane: creation, type
changes, version upgrades, mutable field updates, API server ACLs and the
kubeconfig secrets. Every provider mutation is followed by a transient error
so the next pass observes the result once the provider has applied it.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import urlparse

from .client import (
    ClusterACLRule,
    ClusterAutoscalerConfig,
    ClusterAutoUpgrade,
    ClusterOpenIDConnect,
    ClusterStatus,
    K8sCluster,
    Kubeconfig,
    is_not_found_error,
    tags_without_created_by,
)
from .errors import with_transient_error
from .kubeconfig import (
    KUBECONFIG_DATA_KEY,
    base_kubeconfig,
    dump_kubeconfig,
    find_user,
    kubeconfig_secret,
    kubeconfig_secret_name,
    load_kubeconfig,
    set_kubeconfig_data,
    user_kubeconfig_secret_name,
    with_exec_user,
    with_token_user,
)
from .scope import ManagedControlPlaneScope
from .store import decode_secret_data

logger = logging.getLogger(__name__)

KubeconfigGetter = Callable[[], Awaitable[Kubeconfig]]

CLUSTER_RETRY_SECONDS = 30

SEMVER_PATTERN = (
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

VersionKey = tuple[int, int, int, tuple]


def slices_equal_ignore_order(a: list[str], b: list[str]) -> bool:
    return len(a) == len(b) and sorted(a) == sorted(b)


def parse_version(version: str) -> VersionKey:
    """Parse a semantic version into a key ordered by version precedence.

    A leading v is accepted. Build metadata is ignored and a pre-release
    sorts before the release it precedes.

    Raises:
        ValueError: If version is not a valid semantic version.
    """
    match = re.fullmatch(SEMVER_PATTERN, version)
    if match is None:
        raise ValueError(f"invalid version: {version!r}")
    major, minor, patch, prerelease, _ = match.groups()

    if prerelease is None:
        return int(major), int(minor), int(patch), (1,)

    identifiers = []
    for identifier in prerelease.split("."):
        if identifier.isdigit():
            if len(identifier) > 1 and identifier.startswith("0"):
                raise ValueError(f"invalid version: {version!r}")
            identifiers.append((0, int(identifier), ""))
        else:
            identifiers.append((1, 0, identifier))
    return int(major), int(minor), int(patch), (0, tuple(identifiers))


def is_up_to_date(current: str, desired: str) -> bool:
    """Return True if current >= desired.

    Raises:
        ValueError: If either version is not a valid version string.
    """
    try:
        curr = parse_version(current)
    except ValueError as e:
        raise ValueError(f"failed to parse current version: {e}") from e
    try:
        desi = parse_version(desired)
    except ValueError as e:
        raise ValueError(f"failed to parse desired version: {e}") from e
    return curr >= desi


def url_to_host_port(url: str) -> tuple[str, int]:
    parsed = urlparse(url)
    if parsed.hostname is None or parsed.port is None:
        raise ValueError(f"failed to parse host and port from url {url!r}")
    return parsed.hostname, parsed.port


def autoscaler_config_matches_desired(
    current: ClusterAutoscalerConfig | None, desired: ClusterAutoscalerConfig | None
) -> bool:
    if current is None or desired is None:
        return True
    return current == desired


def auto_upgrade_matches_desired(
    current: ClusterAutoUpgrade | None, desired: ClusterAutoUpgrade | None
) -> bool:
    if current is None or desired is None:
        return True
    return (
        current.enabled == desired.enabled
        and current.day == desired.day
        and current.start_hour == desired.start_hour
    )


def open_id_connect_matches_desired(
    current: ClusterOpenIDConnect | None, desired: ClusterOpenIDConnect | None
) -> bool:
    if current is None or desired is None:
        return True
    return (
        current.issuer_url == desired.issuer_url
        and current.client_id == desired.client_id
        and current.username_claim == desired.username_claim
        and current.username_prefix == desired.username_prefix
        and slices_equal_ignore_order(current.groups_claim, desired.groups_claim)
        and current.groups_prefix == desired.groups_prefix
        and slices_equal_ignore_order(current.required_claim, desired.required_claim)
    )


def current_allowed_ranges(rules: list[ClusterACLRule]) -> tuple[list[str], bool]:
    """Split ACL rules into IP ranges and the "Scaleway ranges" flag."""
    ranges: list[str] = []
    scaleway_ranges = False
    for rule in rules:
        if rule.scaleway_ranges:
            scaleway_ranges = True
        elif rule.ip is not None:
            ranges.append(rule.ip)
    return ranges, scaleway_ranges


class K8sClusterService:
    name = "k8s_cluster"

    def __init__(self, scope: ManagedControlPlaneScope) -> None:
        self.scope = scope

    async def reconcile(self) -> None:
        client = self.scope.client
        cluster = await self._get_or_create_cluster()

        if cluster.status != ClusterStatus.READY:
            raise with_transient_error(
                f"cluster {cluster.id} is not yet ready: currently {cluster.status.value}",
                CLUSTER_RETRY_SECONDS,
            )

        desired_type = self.scope.desired_type()
        if desired_type != cluster.type:
            logger.info(
                "Changing cluster type", extra={"cluster_id": cluster.id, "type": desired_type}
            )
            await client.set_cluster_type(cluster.id, desired_type)
            raise with_transient_error(
                f"cluster {cluster.id} is changing type to {desired_type}", CLUSTER_RETRY_SECONDS
            )

        desired_version = self.scope.desired_version()
        if not is_up_to_date(cluster.version, desired_version):
            logger.info(
                "Upgrading cluster", extra={"cluster_id": cluster.id, "version": desired_version}
            )
            await client.upgrade_cluster(cluster.id, desired_version)
            raise with_transient_error(
                f"cluster {cluster.id} is upgrading to {desired_version}", CLUSTER_RETRY_SECONDS
            )

        if await self._update_cluster(cluster):
            raise with_transient_error(
                f"cluster {cluster.id} is being updated", CLUSTER_RETRY_SECONDS
            )

        if await self._update_cluster_acls(cluster):
            raise with_transient_error(
                f"cluster {cluster.id} is updating ACLs", CLUSTER_RETRY_SECONDS
            )

        await self._reconcile_kubeconfigs(cluster)

        host, port = url_to_host_port(self.scope.cluster_endpoint(cluster))
        self.scope.set_control_plane_endpoint(host, port)
        self.scope.set_status_version(cluster.version)

    async def delete(self) -> None:
        cluster_name = self.scope.managed_control_plane.spec.cluster_name
        if not cluster_name:
            return

        try:
            cluster = await self.scope.client.find_cluster(cluster_name)
        except Exception as e:
            if is_not_found_error(e):
                return
            raise

        logger.info("Deleting cluster", extra={"cluster_id": cluster.id, "cluster_name": cluster_name})
        await self.scope.client.delete_cluster(
            cluster.id, self.scope.delete_with_additional_resources()
        )

    async def _get_or_create_cluster(self) -> K8sCluster:
        client = self.scope.client
        name = self.scope.cluster_name()

        try:
            return await client.find_cluster(name)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        spec = self.scope.managed_control_plane.spec
        logger.info("Creating cluster", extra={"cluster_name": name, "type": spec.type})
        return await client.create_cluster(
            name=name,
            cluster_type=spec.type,
            version=self.scope.desired_version(),
            private_network_id=self.scope.private_network_id(),
            tags=self.scope.desired_tags(),
            feature_gates=list(spec.feature_gates),
            admission_plugins=list(spec.admission_plugins),
            apiserver_cert_sans=list(spec.apiserver_cert_sans),
            cni=self.scope.desired_cni(),
            autoscaler=self.scope.desired_cluster_autoscaler_config(),
            auto_upgrade=self.scope.desired_auto_upgrade(),
            open_id_connect=self.scope.desired_open_id_connect(),
        )

    async def _update_cluster(self, cluster: K8sCluster) -> bool:
        """Send one update with every field that drifted. Return True if sent."""
        spec = self.scope.managed_control_plane.spec
        changes: dict = {}

        desired_tags = self.scope.desired_tags()
        if not slices_equal_ignore_order(tags_without_created_by(cluster.tags), desired_tags):
            changes["tags"] = desired_tags

        if not slices_equal_ignore_order(cluster.feature_gates, spec.feature_gates):
            changes["feature_gates"] = list(spec.feature_gates)

        if not slices_equal_ignore_order(cluster.admission_plugins, spec.admission_plugins):
            changes["admission_plugins"] = list(spec.admission_plugins)

        if not slices_equal_ignore_order(cluster.apiserver_cert_sans, spec.apiserver_cert_sans):
            changes["apiserver_cert_sans"] = list(spec.apiserver_cert_sans)

        desired_autoscaler = self.scope.desired_cluster_autoscaler_config()
        if not autoscaler_config_matches_desired(cluster.autoscaler, desired_autoscaler):
            changes["autoscaler"] = desired_autoscaler

        desired_auto_upgrade = self.scope.desired_auto_upgrade()
        if not auto_upgrade_matches_desired(cluster.auto_upgrade, desired_auto_upgrade):
            changes["auto_upgrade"] = desired_auto_upgrade

        desired_oidc = self.scope.desired_open_id_connect()
        if not open_id_connect_matches_desired(cluster.open_id_connect, desired_oidc):
            changes["open_id_connect"] = desired_oidc

        if not changes:
            return False

        logger.info(
            "Updating cluster", extra={"cluster_id": cluster.id, "fields": sorted(changes)}
        )
        try:
            await self.scope.client.update_cluster(cluster.id, **changes)
        except Exception as e:
            raise RuntimeError(f"failed to update cluster: {e}") from e
        return True

    async def _update_cluster_acls(self, cluster: K8sCluster) -> bool:
        client = self.scope.client
        rules = await client.list_cluster_acl_rules(cluster.id)

        desired = self.scope.desired_allowed_ranges()
        current, scaleway_ranges = current_allowed_ranges(rules)

        if slices_equal_ignore_order(desired, current):
            return False

        request: list[ClusterACLRule] = []
        for cidr in desired:
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                raise ValueError(f"failed to parse range: {e}") from e
            request.append(ClusterACLRule(ip=str(network)))

        if scaleway_ranges:
            request.append(ClusterACLRule(scaleway_ranges=True))

        logger.info("Setting cluster ACLs", extra={"cluster_id": cluster.id, "ranges": desired})
        try:
            await client.set_cluster_acl_rules(cluster.id, request)
        except Exception as e:
            raise RuntimeError(f"failed to set ACLs: {e}") from e
        return True

    async def _reconcile_kubeconfigs(self, cluster: K8sCluster) -> None:
        kubeconfig: Kubeconfig | None = None

        async def get_kubeconfig() -> Kubeconfig:
            nonlocal kubeconfig
            if kubeconfig is None:
                kubeconfig = await self.scope.client.get_cluster_kubeconfig(cluster.id)
            return kubeconfig

        try:
            await self._reconcile_kubeconfig(cluster, get_kubeconfig)
        except Exception as e:
            raise RuntimeError(f"failed to reconcile kubeconfig secret: {e}") from e

        try:
            await self._reconcile_user_kubeconfig(cluster, get_kubeconfig)
        except Exception as e:
            raise RuntimeError(f"failed to reconcile user kubeconfig secret: {e}") from e

    async def _base_kubeconfig(
        self, cluster: K8sCluster, get_kubeconfig: KubeconfigGetter
    ) -> dict[str, Any]:
        kubeconfig = await get_kubeconfig()
        return base_kubeconfig(
            self.scope.kubeconfig_context_name(),
            self.scope.cluster_endpoint(cluster),
            kubeconfig.certificate_authority_data,
        )

    async def _reconcile_kubeconfig(
        self, cluster: K8sCluster, get_kubeconfig: KubeconfigGetter
    ) -> None:
        """Create the token kubeconfig secret, or rotate its token to the current secret key."""
        cluster_name = self.scope.cluster.name
        name = kubeconfig_secret_name(cluster_name)
        context_name = self.scope.kubeconfig_context_name()
        token = self.scope.client.secret_key

        secret = await self.scope.get_secret(name)
        if secret is None:
            config = with_token_user(
                await self._base_kubeconfig(cluster, get_kubeconfig), context_name, token
            )
            logger.info("Creating kubeconfig secret", extra={"secret_name": name})
            await self.scope.create_secret(
                kubeconfig_secret(
                    name,
                    self.scope.cluster.namespace,
                    cluster_name,
                    self.scope.controller_reference(),
                    dump_kubeconfig(config),
                )
            )
            return

        data = decode_secret_data(secret)
        if KUBECONFIG_DATA_KEY not in data:
            raise ValueError(f'missing key "{KUBECONFIG_DATA_KEY}" in secret data')

        config = load_kubeconfig(data[KUBECONFIG_DATA_KEY])
        user = find_user(config, context_name)
        if user is None or user.get("token") == token:
            return

        user["token"] = token
        secret.string_data.pop(KUBECONFIG_DATA_KEY, None)
        set_kubeconfig_data(secret, dump_kubeconfig(config))
        logger.info("Updating kubeconfig secret token", extra={"secret_name": name})
        await self.scope.update_secret(secret)

    async def _reconcile_user_kubeconfig(
        self, cluster: K8sCluster, get_kubeconfig: KubeconfigGetter
    ) -> None:
        cluster_name = self.scope.cluster.name
        name = user_kubeconfig_secret_name(cluster_name)
        if await self.scope.get_secret(name) is not None:
            return

        config = with_exec_user(
            await self._base_kubeconfig(cluster, get_kubeconfig),
            self.scope.kubeconfig_context_name(),
        )
        logger.info("Creating user kubeconfig secret", extra={"secret_name": name})
        await self.scope.create_secret(
            kubeconfig_secret(
                name,
                self.scope.cluster.namespace,
                cluster_name,
                self.scope.controller_reference(),
                dump_kubeconfig(config),
            )
        )
