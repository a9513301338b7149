"""Scaleway infrastructure controller CLI (caps).

Operator tooling around the manifests the controller reconciles.

Usage:
    caps validate manifests/      # Load and validate manifests
    caps plan manifests/          # Show cloud resource names and tags
    caps run --client-factory mod:factory --specs-dir manifests/
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections import Counter
from pathlib import Path

import click

from .controllers import CONTROLLER_CLASSES
from .lb import CAPS_EXTRA_LB_TAG, CAPS_MAIN_LB_TAG
from .models import (
    Cluster,
    KubeObject,
    Machine,
    ScalewayCluster,
    ScalewayMachine,
    ScalewayManagedCluster,
    ScalewayManagedControlPlane,
    ScalewayManagedMachinePool,
)
from .scope import generate_cluster_name, name_with_suffixes, ownership_tags, truncate_name
from .spec_loader import SpecLoadError, load_manifests

ObjectIndex = dict[tuple[str, str, str], KubeObject]


def _load(path: Path) -> list[KubeObject]:
    try:
        return load_manifests(path)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e


def _echo_resource(kind: str, name: str, tags: list[str]) -> None:
    click.echo(f"  {kind}: {name}")
    click.echo(f"    tags: {', '.join(tags)}")


def _owner_scaleway_cluster(
    machine: ScalewayMachine, index: ObjectIndex
) -> ScalewayCluster | None:
    ref = machine.owner("Machine")
    owner = index.get(("Machine", machine.namespace, ref.name)) if ref else None
    if isinstance(owner, Machine):
        cluster_name = owner.cluster_name or owner.spec.cluster_name
    else:
        cluster_name = machine.cluster_name
    cluster = index.get(("Cluster", machine.namespace, cluster_name or ""))
    if not isinstance(cluster, Cluster):
        return None
    infra = index.get(("ScalewayCluster", machine.namespace, cluster.spec.infrastructure_ref.name))
    return infra if isinstance(infra, ScalewayCluster) else None


def plan_object(obj: KubeObject, index: ObjectIndex) -> None:
    """Print the cloud resources obj owns, without calling the cloud."""
    click.echo(f"{obj.kind} {obj.namespace}/{obj.name}")

    if isinstance(obj, ScalewayCluster):
        network = obj.spec.network
        tags = ownership_tags(obj)
        if network.private_network.enabled and not network.private_network.id:
            _echo_resource("private network", name_with_suffixes(obj.name), tags)
        for i, _ in enumerate(network.public_gateways):
            _echo_resource("public gateway", name_with_suffixes(obj.name, str(i)), tags)
        _echo_resource(
            "load balancer", name_with_suffixes(obj.name), ownership_tags(obj, CAPS_MAIN_LB_TAG)
        )
        for i, _ in enumerate(network.control_plane_extra_load_balancers):
            _echo_resource(
                "extra load balancer",
                name_with_suffixes(obj.name, str(i)),
                ownership_tags(obj, CAPS_EXTRA_LB_TAG),
            )
        dns = network.control_plane_dns
        if dns.is_defined():
            click.echo(f"  dns record: {dns.name} in zone {dns.domain}")

    elif isinstance(obj, ScalewayManagedCluster):
        network = obj.spec.network
        tags = ownership_tags(obj)
        if not network.private_network.id:
            _echo_resource("private network", name_with_suffixes(obj.name), tags)
        for i, _ in enumerate(network.public_gateways):
            _echo_resource("public gateway", name_with_suffixes(obj.name, str(i)), tags)

    elif isinstance(obj, ScalewayManagedControlPlane):
        cluster_name = obj.spec.cluster_name or generate_cluster_name(obj.name, obj.namespace)
        _echo_resource(
            "kubernetes cluster",
            cluster_name,
            ownership_tags(obj, *obj.spec.additional_tags),
        )

    elif isinstance(obj, ScalewayManagedMachinePool):
        _echo_resource("pool", obj.name, ownership_tags(obj, *obj.spec.additional_tags))

    elif isinstance(obj, ScalewayMachine):
        scaleway_cluster = _owner_scaleway_cluster(obj, index)
        if scaleway_cluster is None:
            click.echo("  server: unknown, owning ScalewayCluster not found")
            return
        tags = [*ownership_tags(scaleway_cluster), f"caps-scalewaymachine={obj.name}"]
        _echo_resource("server", truncate_name(f"caps-{obj.name}"), tags)


# =============================================================================
# CLI Groups
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="caps")
def cli() -> None:
    """Scaleway infrastructure controller CLI.

    \b
    Commands:
      validate  Load and validate manifests
      plan      Show the cloud resources each object owns
      run       Run the controller manager locally
    """
    pass


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def validate(path: Path) -> None:
    """Load and validate the manifests under PATH."""
    try:
        objects = load_manifests(path)
    except SpecLoadError as e:
        click.echo(f"Validation failed: {e}", err=True)
        sys.exit(1)

    counts = Counter(obj.kind for obj in objects)
    click.echo(f"{len(objects)} objects valid")
    for kind, count in sorted(counts.items()):
        click.echo(f"  {kind}: {count}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, path_type=Path))
def plan(path: Path) -> None:
    """Print generated resource names and ownership tags for PATH."""
    objects = _load(path)
    index: ObjectIndex = {obj.key: obj for obj in objects}

    order = list(CONTROLLER_CLASSES)
    owned = sorted(
        (obj for obj in objects if obj.kind in CONTROLLER_CLASSES),
        key=lambda o: (order.index(o.kind), o.namespace, o.name),
    )
    if not owned:
        click.echo("No Scaleway objects found")
        return

    for obj in owned:
        plan_object(obj, index)


@cli.command()
@click.option(
    "--client-factory",
    envvar="CLIENT_FACTORY",
    required=True,
    help="module:callable building a cloud client",
)
@click.option(
    "--specs-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default="specs",
    help="Manifest directory",
)
@click.option(
    "--status-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory receiving status snapshots",
)
@click.option("--interval", type=int, default=60, help="Seconds between passes")
@click.option("--log-level", default="INFO", help="Logging level")
def run(
    client_factory: str,
    specs_dir: Path,
    status_dir: Path | None,
    interval: int,
    log_level: str,
) -> None:
    """Run the controller manager locally."""
    from .main import main

    os.environ["CLIENT_FACTORY"] = client_factory
    os.environ["SPECS_DIR"] = str(specs_dir)
    os.environ["RECONCILE_INTERVAL"] = str(interval)
    os.environ["LOG_LEVEL"] = log_level
    if status_dir is not None:
        os.environ["STATUS_DIR"] = str(status_dir)

    click.echo(f"Running controller manager on {specs_dir}")
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
