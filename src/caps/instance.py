"""Instance server service for ScalewayMachine.

Provisions the server backing a machine and, until the node has joined the
cluster, keeps its network attachments, load balancer membership and
cloud-init user data in place. Deletion tears everything down in reverse,
stopping the server and releasing its boot volume before deleting it.
"""

from __future__ import annotations

import logging
import re

from .client import (
    IPAMIP,
    ACLAction,
    IPType,
    LBStatus,
    LoadBalancer,
    Server,
    ServerAction,
    ServerState,
    VolumeType,
    get_zone_or_default,
    is_not_found_error,
)
from .errors import ReconcileError, with_terminal_error, with_transient_error
from .lb import BACKEND_NAME, CAPS_EXTRA_LB_TAG, CAPS_MAIN_LB_TAG, FRONTEND_NAME, ips_equal
from .models import MachineAddress
from .scope import MachineScope

logger = logging.getLogger(__name__)

# Root block volumes created by the instance API start with this IOPS
DEFAULT_ROOT_VOLUME_IOPS = 5000

MACHINE_ACL_INDEX = 1

CLOUD_INIT_USER_DATA_KEY = "cloud-init"

NODE_IP_PLACEHOLDER = re.compile(r"\[\[\[\s*\.NodeIP\s*\]\]\]")

PRIVATE_IP_RETRY_SECONDS = 1
SERVER_STOP_RETRY_SECONDS = 10
BLOCK_VOLUME_RETRY_SECONDS = 2
LOCAL_VOLUME_RETRY_SECONDS = 1


def render_bootstrap_data(data: str, node_ip: str) -> str:
    """Substitute ``[[[ .NodeIP ]]]`` placeholders in cloud-init data."""
    return NODE_IP_PLACEHOLDER.sub(node_ip, data)


def provider_id(server: Server) -> str:
    return f"scaleway://instance/{server.zone}/{server.id}"


def node_ip(server: Server, private_ips: list[IPAMIP]) -> str:
    """Return the IP other nodes reach this server on, preferring private IPv4."""
    if private_ips:
        for ip in private_ips:
            if not ip.is_ipv6:
                return ip.address
        raise RuntimeError("did not find a Private IPv4")

    for public_ip in server.public_ips:
        if public_ip.family == "inet":
            return public_ip.address
    raise RuntimeError("did not find a Public IPv4")


def machine_addresses(server: Server, private_ips: list[IPAMIP]) -> list[MachineAddress]:
    addresses = [MachineAddress(type="Hostname", address=server.hostname)]

    for public_ip in server.public_ips:
        addresses.append(MachineAddress(type="ExternalIP", address=public_ip.address))

    if server.public_ips:
        addresses.append(
            MachineAddress(type="ExternalDNS", address=f"{server.id}.pub.instances.scw.cloud")
        )

    for private_ip in private_ips:
        addresses.append(MachineAddress(type="InternalIP", address=private_ip.address))

    return addresses


class InstanceService:
    name = "instance"

    def __init__(self, scope: MachineScope) -> None:
        self.scope = scope

    async def reconcile(self) -> None:
        try:
            server = await self._ensure_server()
        except Exception as e:
            raise RuntimeError(f"failed to ensure server: {e}") from e

        if self.scope.has_joined_cluster():
            # the node no longer needs its bootstrap data
            await self._ensure_no_cloud_init(server)
            return

        server = await self._ensure_public_ips(server)

        try:
            private_ips = await self._ensure_private_nic(server)
        except Exception as e:
            raise RuntimeError(f"failed to ensure private nic: {e}") from e

        lbs = await self._find_control_plane_lbs()
        ip = node_ip(server, private_ips)

        try:
            await self._ensure_control_plane_lbs(lbs, ip, deletion=False)
        except Exception as e:
            raise RuntimeError(f"failed to ensure control-plane lbs: {e}") from e

        try:
            await self._ensure_control_plane_lbs_acl(
                lbs, [public_ip.address for public_ip in server.public_ips], delete=False
            )
        except Exception as e:
            raise RuntimeError(f"failed to ensure control-plane lbs acls: {e}") from e

        try:
            await self._ensure_cloud_init(server, ip)
        except Exception as e:
            raise RuntimeError(f"failed to ensure cloud-init: {e}") from e

        self.scope.set_provider_id(provider_id(server))
        self.scope.set_addresses(machine_addresses(server, private_ips))

        try:
            await self._ensure_server_started(server)
        except Exception as e:
            raise RuntimeError(f"failed to ensure server started: {e}") from e

    async def delete(self) -> None:
        client = self.scope.client

        try:
            zone = self.scope.zone()
        except ReconcileError:
            # nothing can have been provisioned in an invalid zone
            return

        try:
            server = await client.find_server(zone, self.scope.resource_tags())
        except Exception as e:
            if is_not_found_error(e):
                return
            raise

        lbs: list[LoadBalancer] = []
        try:
            lbs = await self._find_control_plane_lbs()
        except Exception as e:
            if not is_not_found_error(e):
                raise

        try:
            await self._ensure_control_plane_lbs_acl(lbs, [], delete=True)
        except Exception as e:
            if not is_not_found_error(e):
                raise RuntimeError(f"failed to ensure control-plane lbs acls: {e}") from e

        if self.scope.is_control_plane():
            try:
                private_ips = await self._ensure_private_nic(server)
            except Exception as e:
                raise RuntimeError(f"failed to ensure private nic: {e}") from e

            try:
                ip = node_ip(server, private_ips)
            except RuntimeError:
                # the server no longer has an IP to remove
                ip = None

            if ip is not None:
                try:
                    await self._ensure_control_plane_lbs(lbs, ip, deletion=True)
                except Exception as e:
                    raise RuntimeError(f"failed to ensure control-plane lbs: {e}") from e

        await self._ensure_no_public_ips(server)
        await self._ensure_server_stopped(server)
        await self._ensure_boot_volume_deleted(server)

        logger.info("Deleting server", extra={"server_id": server.id, "zone": zone})
        await client.delete_server(zone, server.id)

    async def _ensure_server(self) -> Server:
        client = self.scope.client
        machine = self.scope.scaleway_machine
        zone = self.scope.zone()
        tags = self.scope.resource_tags()

        try:
            return await client.find_server(zone, tags)
        except Exception as e:
            if not is_not_found_error(e):
                raise

        # a set providerID means the server existed once
        if machine.spec.provider_id is not None:
            raise with_terminal_error(
                "providerID is already set on ScalewayMachine, but no existing server was found"
            )

        name = self.scope.resource_name()
        logger.info("Creating instance server", extra={"server_name": name, "zone": zone})

        volume_type = self.scope.root_volume_type()

        image = machine.spec.image
        image_id = None
        if image.id:
            image_id = image.id
        elif image.name:
            try:
                image_id = (await client.find_image(zone, image.name)).id
            except Exception as e:
                raise RuntimeError(
                    f"failed to find image by name, make sure it exists in zone {zone}: {e}"
                ) from e

        if not image_id:
            raise RuntimeError("unable to find a valid image in ScalewayMachine spec")

        placement_group_id = await self._placement_group_id(zone)
        security_group_id = await self._security_group_id(zone)

        server = await client.create_server(
            zone=zone,
            name=name,
            commercial_type=machine.spec.commercial_type,
            image_id=image_id,
            placement_group_id=placement_group_id,
            security_group_id=security_group_id,
            root_volume_size_gb=self.scope.root_volume_size_gb(),
            root_volume_type=volume_type,
            tags=tags,
        )

        root_volume = server.volumes.get("0")
        if root_volume is not None and root_volume.volume_type == VolumeType.SBS:
            iops = self.scope.root_volume_iops()
            if iops is not None and iops != DEFAULT_ROOT_VOLUME_IOPS:
                try:
                    await client.update_volume_iops(zone, root_volume.id, iops)
                except Exception as e:
                    raise RuntimeError(f"failed to update root volume iops: {e}") from e

        return server

    async def _placement_group_id(self, zone: str) -> str | None:
        ref = self.scope.scaleway_machine.spec.placement_group
        if ref.id:
            return ref.id
        if ref.name:
            try:
                return (await self.scope.client.find_placement_group(zone, ref.name)).id
            except Exception as e:
                raise RuntimeError(f"failed to find placement group: {e}") from e
        return None

    async def _security_group_id(self, zone: str) -> str | None:
        ref = self.scope.scaleway_machine.spec.security_group
        if ref.id:
            return ref.id
        if ref.name:
            try:
                return (await self.scope.client.find_security_group(zone, ref.name)).id
            except Exception as e:
                raise RuntimeError(f"failed to find security group: {e}") from e
        return None

    async def _ensure_public_ips(self, server: Server) -> Server:
        want_v4 = self.scope.has_public_ipv4()
        want_v6 = self.scope.has_public_ipv6()
        if not want_v4 and not want_v6:
            return server

        client = self.scope.client
        ips = await client.find_ips(server.zone, self.scope.resource_tags())

        public_ip_ids: list[str] = []
        update_server = False

        for ip_type, want in ((IPType.ROUTED_IPV4, want_v4), (IPType.ROUTED_IPV6, want_v6)):
            if not want:
                continue

            existing = next((ip for ip in ips if ip.type == ip_type), None)
            if existing is not None:
                if existing.server_id is None:
                    update_server = True
                elif existing.server_id != server.id:
                    raise RuntimeError(f"expected IP {existing.id} to be attached to {server.id}")
                public_ip_ids.append(existing.id)
                continue

            logger.info("Creating IP", extra={"ip_type": ip_type.value, "zone": server.zone})
            try:
                ip = await client.create_ip(server.zone, ip_type, self.scope.resource_tags())
            except Exception as e:
                raise RuntimeError(f"failed to create IP: {e}") from e
            public_ip_ids.append(ip.id)
            update_server = True

        if update_server:
            try:
                server = await client.update_server_public_ips(server.zone, server.id, public_ip_ids)
            except Exception as e:
                raise RuntimeError("failed to refresh server after updating IPs") from e

        return server

    async def _ensure_private_nic(self, server: Server) -> list[IPAMIP]:
        if not self.scope.has_private_network():
            return []

        client = self.scope.client
        pn_id = self.scope.private_network_id()

        pnic = next((nic for nic in server.private_nics if nic.private_network_id == pn_id), None)
        if pnic is None:
            logger.info(
                "Creating private NIC",
                extra={"server_id": server.id, "zone": server.zone, "private_network_id": pn_id},
            )
            pnic = await client.create_private_nic(server.zone, server.id, pn_id)

        private_ips = await client.find_private_nic_ips(pnic.id)
        if not private_ips:
            raise with_transient_error("no private IP available in IPAM yet", PRIVATE_IP_RETRY_SECONDS)

        return private_ips

    async def _find_control_plane_lbs(self) -> list[LoadBalancer]:
        client = self.scope.client
        cluster_scope = self.scope.cluster_scope
        spec = cluster_scope.control_plane_load_balancer()

        zone = get_zone_or_default(client, spec.zone)
        main_lb = await client.find_lb(zone, cluster_scope.resource_tags(CAPS_MAIN_LB_TAG))
        extra_lbs = await client.find_lbs(cluster_scope.resource_tags(CAPS_EXTRA_LB_TAG))

        return [*extra_lbs, main_lb]

    async def _ensure_control_plane_lbs(
        self, lbs: list[LoadBalancer], ip: str, deletion: bool
    ) -> None:
        if not self.scope.is_control_plane():
            return

        client = self.scope.client
        for lb in lbs:
            if lb.status == LBStatus.DELETING:
                continue

            backend = await client.find_backend(lb.zone, lb.id, BACKEND_NAME)

            if deletion and ip in backend.servers:
                logger.info("Removing node from LB backend", extra={"lb_id": lb.id, "node_ip": ip})
                await client.remove_backend_server(lb.zone, backend.id, ip)
            elif not deletion and ip not in backend.servers:
                logger.info("Adding node to LB backend", extra={"lb_id": lb.id, "node_ip": ip})
                await client.add_backend_server(lb.zone, backend.id, ip)

    async def _ensure_control_plane_lbs_acl(
        self, lbs: list[LoadBalancer], public_ips: list[str], delete: bool
    ) -> None:
        """Allow the machine public IPs on every LB frontend, or remove the rule."""
        client = self.scope.client
        acl_name = self.scope.resource_name()

        for lb in lbs:
            if lb.status == LBStatus.DELETING:
                continue

            try:
                frontend = await client.find_frontend(lb.zone, lb.id, FRONTEND_NAME)
            except Exception as e:
                if delete and is_not_found_error(e):
                    continue
                raise

            acl = None
            try:
                acl = await client.find_lb_acl_by_name(lb.zone, frontend.id, acl_name)
            except Exception as e:
                if not is_not_found_error(e):
                    raise

            if not public_ips:
                if acl is not None:
                    logger.info("Deleting machine ACL", extra={"acl_name": acl_name, "lb_id": lb.id})
                    await client.delete_lb_acl(lb.zone, acl.id)
                continue

            if acl is None:
                logger.info("Creating machine ACL", extra={"acl_name": acl_name, "lb_id": lb.id})
                await client.create_lb_acl(
                    lb.zone, frontend.id, acl_name, MACHINE_ACL_INDEX, ACLAction.ALLOW, public_ips
                )
            elif not ips_equal(acl.ips, public_ips):
                logger.info("Updating machine ACL", extra={"acl_name": acl_name, "lb_id": lb.id})
                await client.update_lb_acl(
                    lb.zone, acl.id, acl_name, MACHINE_ACL_INDEX, ACLAction.ALLOW, public_ips
                )

    async def _ensure_cloud_init(self, server: Server, ip: str) -> None:
        if server.state != ServerState.STOPPED:
            return

        client = self.scope.client
        user_data = await client.get_all_server_user_data(server.zone, server.id)
        if CLOUD_INIT_USER_DATA_KEY in user_data:
            return

        bootstrap_data = await self.scope.get_bootstrap_data()
        content = render_bootstrap_data(bootstrap_data.decode(), ip)

        logger.info("Setting cloud-init user data", extra={"server_id": server.id, "zone": server.zone})
        await client.set_server_user_data(server.zone, server.id, CLOUD_INIT_USER_DATA_KEY, content)

    async def _ensure_no_cloud_init(self, server: Server) -> None:
        client = self.scope.client
        user_data = await client.get_all_server_user_data(server.zone, server.id)
        if CLOUD_INIT_USER_DATA_KEY not in user_data:
            return

        logger.info("Removing cloud-init user data", extra={"server_id": server.id, "zone": server.zone})
        await client.delete_server_user_data(server.zone, server.id, CLOUD_INIT_USER_DATA_KEY)

    async def _ensure_server_started(self, server: Server) -> None:
        if server.state != ServerState.STOPPED:
            return

        logger.info("Powering on server", extra={"server_id": server.id, "zone": server.zone})
        await self.scope.client.server_action(server.zone, server.id, ServerAction.POWERON)

    async def _ensure_server_stopped(self, server: Server) -> None:
        if server.state == ServerState.STOPPED:
            return

        if server.state != ServerState.STOPPING:
            logger.info("Powering off server", extra={"server_id": server.id, "zone": server.zone})
            await self.scope.client.server_action(server.zone, server.id, ServerAction.POWEROFF)

        raise with_transient_error("server is not stopped yet", SERVER_STOP_RETRY_SECONDS)

    async def _ensure_no_public_ips(self, server: Server) -> None:
        client = self.scope.client
        for ip in await client.find_ips(server.zone, self.scope.resource_tags()):
            logger.info("Deleting IP", extra={"ip_id": ip.id, "zone": server.zone})
            await client.delete_ip(server.zone, ip.id)

    async def _ensure_boot_volume_deleted(self, server: Server) -> None:
        client = self.scope.client
        tags = self.scope.resource_tags()

        # tag the boot volume so it can be found once detached
        for volume in server.volumes.values():
            if not volume.boot:
                continue

            if volume.volume_type not in (VolumeType.SBS, VolumeType.LOCAL):
                raise with_terminal_error(
                    f"cannot detach unsupported boot volume with type {volume.volume_type}"
                )

            await client.update_volume_tags(server.zone, volume.id, tags)
            logger.info("Detaching boot volume", extra={"volume_id": volume.id, "zone": server.zone})
            await client.detach_volume(server.zone, volume.id)

        try:
            volume = await client.find_volume(server.zone, tags)
        except Exception as e:
            if is_not_found_error(e):
                return
            raise

        if volume.status != "available":
            delay = (
                BLOCK_VOLUME_RETRY_SECONDS
                if volume.volume_type == VolumeType.SBS
                else LOCAL_VOLUME_RETRY_SECONDS
            )
            raise with_transient_error(
                f"root volume is not yet ready to be deleted ({volume.status})", delay
            )

        logger.info("Deleting boot volume", extra={"volume_id": volume.id, "zone": server.zone})
        await client.delete_volume(server.zone, volume.id)
