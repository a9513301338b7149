"""Tests for the instance server service."""

import pytest

from caps.client import IPAMIP, Server, ServerIP, ServerState, VolumeType
from caps.errors import ReconcileError, is_terminal_error, is_transient_error
from caps.instance import (
    BLOCK_VOLUME_RETRY_SECONDS,
    CLOUD_INIT_USER_DATA_KEY,
    DEFAULT_ROOT_VOLUME_IOPS,
    MACHINE_ACL_INDEX,
    SERVER_STOP_RETRY_SECONDS,
    InstanceService,
    machine_addresses,
    node_ip,
    provider_id,
    render_bootstrap_data,
)
from caps.lb import LBService
from caps.scope import ClusterScope, MachineScope
from caps.store import MemoryObjectStore
from caps.vpc import VPCService
from scaleway_mock import MockScalewayContext
from scaleway_mock import objects

BOOTSTRAP = "#cloud-config\nruncmd:\n  - kubeadm join --node-ip=[[[ .NodeIP ]]]\n"


async def _machine_scope(
    ctx: MockScalewayContext,
    network: dict | None = None,
    spec: dict | None = None,
    control_plane: bool = True,
    node_ref: str | None = None,
    provision_lb: bool = True,
) -> MachineScope:
    store = MemoryObjectStore([objects.bootstrap_secret("test-cp-0-bootstrap", BOOTSTRAP)])
    cluster_scope = ClusterScope(
        ctx.client(), store, objects.cluster(), objects.scaleway_cluster(network=network)
    )
    await VPCService(cluster_scope).reconcile()
    if provision_lb:
        await LBService(cluster_scope).reconcile()

    return MachineScope(
        ctx.client(),
        store,
        cluster_scope,
        objects.machine(control_plane=control_plane, node_ref=node_ref),
        objects.scaleway_machine(spec=spec),
    )


def _only_server(ctx: MockScalewayContext):
    (server,) = ctx.state.servers.values()
    return server


def _main_backend(ctx: MockScalewayContext):
    (backend,) = ctx.state.backends.values()
    return backend


class TestHelpers:
    """Tests for pure helpers."""

    def test_render_bootstrap_data(self) -> None:
        """Test every node IP placeholder is substituted."""
        data = "a [[[ .NodeIP ]]] b [[[.NodeIP]]]"
        assert render_bootstrap_data(data, "10.0.0.1") == "a 10.0.0.1 b 10.0.0.1"

    def test_node_ip_prefers_private_ipv4(self) -> None:
        """Test private IPv4 wins over public addresses."""
        server = Server(
            id="s",
            name="s",
            zone="fr-par-1",
            commercial_type="PRO2-S",
            public_ips=[ServerIP(id="ip", address="51.15.0.1")],
        )
        private = [
            IPAMIP(id="6", address="fd00::1", private_network_id="pn", is_ipv6=True),
            IPAMIP(id="4", address="172.16.0.5", private_network_id="pn"),
        ]
        assert node_ip(server, private) == "172.16.0.5"
        assert node_ip(server, []) == "51.15.0.1"

    def test_node_ip_requires_ipv4(self) -> None:
        """Test a server with only IPv6 has no node IP."""
        server = Server(
            id="s",
            name="s",
            zone="fr-par-1",
            commercial_type="PRO2-S",
            public_ips=[ServerIP(id="ip", address="2001:bc8::1", family="inet6")],
        )
        with pytest.raises(RuntimeError, match="did not find a Public IPv4"):
            node_ip(server, [])

    def test_provider_id_and_addresses(self) -> None:
        """Test the provider ID and the address list of a server."""
        server = Server(
            id="srv-1",
            name="caps-m",
            zone="fr-par-2",
            commercial_type="PRO2-S",
            hostname="caps-m",
            public_ips=[ServerIP(id="ip", address="51.15.0.1")],
        )
        assert provider_id(server) == "scaleway://instance/fr-par-2/srv-1"
        assert [(a.type, a.address) for a in machine_addresses(server, [])] == [
            ("Hostname", "caps-m"),
            ("ExternalIP", "51.15.0.1"),
            ("ExternalDNS", "srv-1.pub.instances.scw.cloud"),
        ]


class TestInstanceReconcile:
    """Tests for InstanceService.reconcile()."""

    @pytest.mark.asyncio
    async def test_public_control_plane(self) -> None:
        """Test a public control plane gets an IP, joins the LB and boots with cloud-init."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx)

            await InstanceService(scope).reconcile()

            server = _only_server(ctx)
            assert server.name == "caps-test-cp-0"
            assert server.state == ServerState.RUNNING
            (public_ip,) = server.public_ips
            assert public_ip.family == "inet"

            assert _main_backend(ctx).servers == [public_ip.address]

            (acl,) = [a for a in ctx.state.acls.values() if a.name == "caps-test-cp-0"]
            assert acl.index == MACHINE_ACL_INDEX
            assert acl.ips == [public_ip.address]

            user_data = ctx.state.user_data[server.id][CLOUD_INIT_USER_DATA_KEY].decode()
            assert f"--node-ip={public_ip.address}" in user_data

            machine = scope.scaleway_machine
            assert machine.spec.provider_id == f"scaleway://instance/fr-par-1/{server.id}"
            assert [a.type for a in machine.status.addresses] == [
                "Hostname",
                "ExternalIP",
                "ExternalDNS",
            ]

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self) -> None:
        """Test a running, converged machine issues no mutating call."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx)
            await InstanceService(scope).reconcile()
            ctx.state.reset_calls()

            await InstanceService(scope).reconcile()

            assert ctx.state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_private_network_node(self) -> None:
        """Test a private machine uses its IPAM address everywhere."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, network={"privateNetwork": {"enabled": True}})

            await InstanceService(scope).reconcile()

            server = _only_server(ctx)
            assert server.public_ips == []
            (nic,) = server.private_nics
            (private_ip,) = [ip for ip in ctx.state.ipam_ips.values() if ip.resource_id == nic.id]

            assert private_ip.address in _main_backend(ctx).servers
            assert not any(a.name == "caps-test-cp-0" for a in ctx.state.acls.values())
            user_data = ctx.state.user_data[server.id][CLOUD_INIT_USER_DATA_KEY].decode()
            assert f"--node-ip={private_ip.address}" in user_data
            assert [(a.type, a.address) for a in scope.scaleway_machine.status.addresses] == [
                ("Hostname", "caps-test-cp-0"),
                ("InternalIP", private_ip.address),
            ]

    @pytest.mark.asyncio
    async def test_worker_is_not_added_to_lb(self) -> None:
        """Test only control plane machines join the LB backend."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, control_plane=False)

            await InstanceService(scope).reconcile()

            assert _main_backend(ctx).servers == []

    @pytest.mark.asyncio
    async def test_dual_stack_public_ips(self) -> None:
        """Test IPv6 is added when requested."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, spec={"publicNetwork": {"enableIPv6": True}})

            await InstanceService(scope).reconcile()

            families = sorted(ip.family for ip in _only_server(ctx).public_ips)
            assert families == ["inet", "inet6"]

    @pytest.mark.asyncio
    async def test_missing_private_ip_is_transient(self) -> None:
        """Test the pass waits for IPAM to book the NIC address."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, network={"privateNetwork": {"enabled": True}})
            ctx.state.auto_ipam = False

            with pytest.raises(RuntimeError) as exc_info:
                await InstanceService(scope).reconcile()

            assert is_transient_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_image_by_name(self) -> None:
        """Test an image given by name is resolved in the machine zone."""
        with MockScalewayContext() as ctx:
            image = ctx.state.add_image("fr-par-1", "ubuntu_noble")
            scope = await _machine_scope(ctx, spec={"image": {"name": "ubuntu_noble"}})

            await InstanceService(scope).reconcile()

            (create,) = ctx.state.calls_to("create_server")
            assert create.kwargs["image_id"] == image.id

    @pytest.mark.asyncio
    async def test_unknown_image_fails(self) -> None:
        """Test a missing image name aborts before creating anything."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, spec={"image": {"name": "missing"}})

            with pytest.raises(RuntimeError, match="failed to find image by name"):
                await InstanceService(scope).reconcile()

            assert ctx.state.servers == {}

    @pytest.mark.asyncio
    async def test_root_volume_iops(self) -> None:
        """Test a non-default IOPS value is applied to the block root volume."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, spec={"rootVolume": {"iops": 15000}})

            await InstanceService(scope).reconcile()

            (update,) = ctx.state.calls_to("update_volume_iops")
            assert update.kwargs["iops"] == 15000

    @pytest.mark.asyncio
    async def test_default_iops_not_sent(self) -> None:
        """Test the default IOPS value needs no update."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(
                ctx, spec={"rootVolume": {"iops": DEFAULT_ROOT_VOLUME_IOPS}}
            )

            await InstanceService(scope).reconcile()

            assert ctx.state.call_count("update_volume_iops") == 0

    @pytest.mark.asyncio
    async def test_lost_server_is_terminal(self) -> None:
        """Test a provider ID without server is never recreated."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(
                ctx, spec={"providerID": "scaleway://instance/fr-par-1/gone"}
            )

            with pytest.raises(RuntimeError) as exc_info:
                await InstanceService(scope).reconcile()

            assert is_terminal_error(exc_info.value)
            assert ctx.state.servers == {}

    @pytest.mark.asyncio
    async def test_joined_node_drops_cloud_init(self) -> None:
        """Test bootstrap data is removed once the node has joined."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx)
            await InstanceService(scope).reconcile()
            server_id = _only_server(ctx).id

            scope.machine.status = objects.machine(node_ref="node-0").status
            await InstanceService(scope).reconcile()

            assert CLOUD_INIT_USER_DATA_KEY not in ctx.state.user_data.get(server_id, {})


class TestInstanceDelete:
    """Tests for InstanceService.delete()."""

    @pytest.mark.asyncio
    async def test_delete_stops_then_cleans_up(self) -> None:
        """Test deletion powers off first, then removes IPs, volume and server."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx)
            await InstanceService(scope).reconcile()

            with pytest.raises(ReconcileError) as exc_info:
                await InstanceService(scope).delete()

            assert exc_info.value.is_transient
            assert exc_info.value.requeue_after == SERVER_STOP_RETRY_SECONDS
            assert _main_backend(ctx).servers == []
            assert not any(a.name == "caps-test-cp-0" for a in ctx.state.acls.values())
            assert ctx.state.instance_ips == {}

            await InstanceService(scope).delete()

            assert ctx.state.servers == {}
            assert ctx.state.volumes == {}

    @pytest.mark.asyncio
    async def test_delete_waits_for_volume(self) -> None:
        """Test a detaching block volume is retried before the server goes."""
        with MockScalewayContext() as ctx:
            ctx.state.detached_volume_status = "detaching"
            scope = await _machine_scope(ctx)
            await InstanceService(scope).reconcile()
            server = ctx.state.servers[_only_server(ctx).id]
            server.state = ServerState.STOPPED

            with pytest.raises(ReconcileError) as exc_info:
                await InstanceService(scope).delete()

            assert exc_info.value.requeue_after == BLOCK_VOLUME_RETRY_SECONDS
            assert len(ctx.state.servers) == 1

            (volume,) = ctx.state.volumes.values()
            assert volume.volume_type == VolumeType.SBS
            volume.status = "available"
            await InstanceService(scope).delete()

            assert ctx.state.servers == {}
            assert ctx.state.volumes == {}

    @pytest.mark.asyncio
    async def test_delete_missing_server(self) -> None:
        """Test a machine whose server is gone is done."""
        with MockScalewayContext() as ctx:
            scope = await _machine_scope(ctx, provision_lb=False)
            await InstanceService(scope).delete()
            assert ctx.state.mutating_calls() == []
