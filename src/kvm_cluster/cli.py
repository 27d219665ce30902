#!/usr/bin/env python3
"""
Command-line interface for KVM cluster operations.

Every command builds a ``ClusterCoordinator`` from the loaded configuration
and runs one coroutine on it.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import click
import yaml

from kvm_cluster import ClusterCoordinator, ClusterStore, LibvirtDriver
from kvm_cluster.config import AppConfig, DEFAULT_CONFIG_PATHS, config_loader
from kvm_cluster.exceptions import ConfigurationError, KVMClusterError
from kvm_cluster.logging import logger
from kvm_cluster.models import (
    BackupManifest,
    Cluster,
    OperationOutcome,
    OperationReport,
    Template,
)

T = TypeVar("T")

ORDER_CHOICES = click.Choice(["sequential", "reverse"])

STATE_MARKS = {
    "running": "✓",
    "stopped": "○",
    "paused": "‖",
    "missing": "✗",
    "unknown": "?",
}


def setup_logging(verbose: bool = False, quiet: bool = False, log_level: str = "INFO") -> None:
    """Setup logging configuration."""
    if quiet:
        level = "ERROR"
    elif verbose:
        level = "DEBUG"
    else:
        level = log_level
    logger.set_level(level)


def load_config(config_path: Optional[str]) -> AppConfig:
    """Load configuration from file, falling back to defaults on errors."""
    try:
        return config_loader.load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Warning: {e}", err=True)
        return AppConfig()


def get_coordinator(ctx: Any) -> ClusterCoordinator:
    """The coordinator for this invocation, built on first use."""
    coordinator = ctx.obj.get("coordinator")
    if coordinator is None:
        app_config: AppConfig = ctx.obj["config"]
        store = ClusterStore(app_config.data_path)
        store.initialize()
        driver = LibvirtDriver(app_config.libvirt_uri, app_config.image_dir)
        ctx.find_root().call_on_close(driver.close)
        coordinator = ClusterCoordinator(store, driver, app_config)
        ctx.obj["coordinator"] = coordinator
    return coordinator


def run_command(func: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine function, turning cluster errors into exit code 1."""
    try:
        return asyncio.run(func())
    except KVMClusterError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(1)


def emit(ctx: Any, data: Any, text: Callable[[], None]) -> None:
    """Print ``data`` in the selected machine format, or call ``text``."""
    output_format = ctx.obj.get("output_format", "text")
    if output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        text()


def cluster_to_dict(cluster: Cluster) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "name": cluster.name,
        "description": cluster.description,
        "created": cluster.created_at.isoformat(),
        "members": cluster.members.to_list(),
        "vm_count": cluster.vm_count,
        "startup_order": cluster.startup_order.value,
        "startup_delay": cluster.startup_delay,
        "shutdown_order": cluster.shutdown_order.value,
        "shutdown_delay": cluster.shutdown_delay,
        "auto_start": cluster.auto_start,
        "template": cluster.template,
    }
    if cluster.vm_resources is not None:
        data["vm_resources"] = {
            "ram_mb": cluster.vm_resources.ram_mb,
            "vcpus": cluster.vm_resources.vcpus,
            "disk_gb": cluster.vm_resources.disk_gb,
        }
    return data


def template_to_dict(template: Template) -> Dict[str, Any]:
    return {
        "name": template.name,
        "description": template.description,
        "created": template.created_at.isoformat(),
        "member_count": template.member_count,
        "ram_mb": template.ram_mb,
        "vcpus": template.vcpus,
        "disk_gb": template.disk_gb,
        "os_variant": template.os_variant,
        "name_prefix": template.name_prefix,
        "startup_order": template.startup_order.value,
        "startup_delay": template.startup_delay,
        "shutdown_order": template.shutdown_order.value,
        "shutdown_delay": template.shutdown_delay,
        "auto_start": template.auto_start,
        "network": template.network,
        "storage_pool": template.storage_pool,
    }


def manifest_to_dict(manifest: BackupManifest) -> Dict[str, Any]:
    return {
        "cluster": manifest.cluster_name,
        "label": manifest.label,
        "created": manifest.created_at.isoformat(),
        "member_count": manifest.member_count,
        "captured_members": list(manifest.captured_members),
        "files": list(manifest.files),
        "path": manifest.path,
    }


def finish_report(ctx: Any, report: OperationReport, strict: bool = False) -> None:
    """Print a batch report and exit according to its outcome."""

    def text() -> None:
        for vm_name in report.succeeded:
            click.echo(f"  ✓ {vm_name}")
        for vm_name in report.skipped:
            click.echo(f"  - {vm_name} (already done)")
        for vm_name, reason in report.failed.items():
            click.echo(f"  ✗ {vm_name}: {reason}")

    emit(ctx, report.to_dict(), text)

    if report.outcome is OperationOutcome.FAILURE:
        click.echo(f"✗ Cluster {report.operation} failed for every member", err=True)
        sys.exit(1)
    if report.outcome is OperationOutcome.PARTIAL:
        click.echo(
            f"Warning: {report.failure_count} member(s) failed: "
            f"{', '.join(report.failed_members)}",
            err=True,
        )
        if strict:
            sys.exit(2)
    elif not ctx.obj.get("quiet"):
        click.echo(f"✓ Cluster {report.operation} completed", err=True)


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Output format",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="Log level (defaults to the configured level)",
)
@click.version_option(package_name="kvm-cluster")
@click.pass_context
def cli(
    ctx: Any, config: Any, verbose: bool, quiet: bool, output: str, log_level: Optional[str]
) -> None:
    """Manage clusters of KVM virtual machines."""
    ctx.ensure_object(dict)

    # Load configuration
    app_config = ctx.obj.get("config") or load_config(config)
    setup_logging(verbose, quiet, log_level or app_config.log_level)

    # Store in context
    ctx.obj["config"] = app_config
    ctx.obj["output_format"] = output
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


# -- cluster -------------------------------------------------------------


@cli.group()
def cluster() -> None:
    """Create, run and maintain clusters."""
    pass


@cluster.command("create")
@click.argument("name")
@click.option("--vm", "-m", "vms", multiple=True, required=True, help="Member VM (repeatable, in startup order)")
@click.option("--description", "-d", default="", help="Cluster description")
@click.option("--startup-order", type=ORDER_CHOICES, default="sequential")
@click.option("--startup-delay", type=int, default=5, help="Seconds between starts")
@click.option("--shutdown-order", type=ORDER_CHOICES, default="reverse")
@click.option("--shutdown-delay", type=int, default=10, help="Seconds between stops")
@click.option("--auto-start", is_flag=True, help="Mark the cluster for auto start")
@click.pass_context
def cluster_create(
    ctx: Any,
    name: str,
    vms: tuple,
    description: str,
    startup_order: str,
    startup_delay: int,
    shutdown_order: str,
    shutdown_delay: int,
    auto_start: bool,
) -> None:
    """Create a cluster from existing VMs."""
    coordinator = get_coordinator(ctx)

    async def run_create() -> Cluster:
        return await coordinator.create_cluster(
            name,
            description,
            list(vms),
            startup_order=startup_order,
            startup_delay=startup_delay,
            shutdown_order=shutdown_order,
            shutdown_delay=shutdown_delay,
            auto_start=auto_start,
        )

    created = run_command(run_create)
    emit(
        ctx,
        cluster_to_dict(created),
        lambda: click.echo(f"✓ Created cluster '{created.name}' with {created.vm_count} member(s)"),
    )


@cluster.command("start")
@click.argument("name")
@click.option("--parallel", "-p", is_flag=True, help="Start all members at once")
@click.option("--strict", is_flag=True, help="Exit with code 2 on partial success")
@click.pass_context
def cluster_start(ctx: Any, name: str, parallel: bool, strict: bool) -> None:
    """Start every member of a cluster."""
    coordinator = get_coordinator(ctx)
    if not ctx.obj["quiet"] and ctx.obj["output_format"] == "text":
        click.echo(f"Starting cluster '{name}'{' in parallel' if parallel else ''}...")
    report = run_command(lambda: coordinator.start_cluster(name, parallel=parallel))
    finish_report(ctx, report, strict)


@cluster.command("stop")
@click.argument("name")
@click.option("--timeout", "-t", type=int, default=None, help="Graceful shutdown timeout in seconds")
@click.option("--parallel", "-p", is_flag=True, help="Stop all members at once")
@click.option("--strict", is_flag=True, help="Exit with code 2 on partial success")
@click.pass_context
def cluster_stop(
    ctx: Any, name: str, timeout: Optional[int], parallel: bool, strict: bool
) -> None:
    """Gracefully stop every member of a cluster."""
    coordinator = get_coordinator(ctx)
    if not ctx.obj["quiet"] and ctx.obj["output_format"] == "text":
        click.echo(f"Stopping cluster '{name}'{' in parallel' if parallel else ''}...")
    report = run_command(
        lambda: coordinator.stop_cluster(name, timeout=timeout, parallel=parallel)
    )
    if report.failed and ctx.obj["output_format"] == "text":
        click.echo(f"Members left running can be powered off with 'cluster force-stop {name}'", err=True)
    finish_report(ctx, report, strict)


@cluster.command("force-stop")
@click.argument("name")
@click.option("--vm", "-m", "vms", multiple=True, help="Only these members (repeatable)")
@click.pass_context
def cluster_force_stop(ctx: Any, name: str, vms: tuple) -> None:
    """Power off running members immediately."""
    coordinator = get_coordinator(ctx)
    report = run_command(
        lambda: coordinator.force_stop_cluster(name, list(vms) if vms else None)
    )
    finish_report(ctx, report)


@cluster.command("info")
@click.argument("name")
@click.pass_context
def cluster_info(ctx: Any, name: str) -> None:
    """Show a cluster's configuration."""
    coordinator = get_coordinator(ctx)

    async def run_info() -> Cluster:
        return coordinator.get_cluster(name)

    info = run_command(run_info)

    def text() -> None:
        click.echo(f"Cluster: {info.name}")
        click.echo(f"  Description: {info.description}")
        click.echo(f"  Created: {info.created_at.isoformat()}")
        if info.template:
            click.echo(f"  Template: {info.template}")
        click.echo(f"  Startup: {info.startup_order.value}, {info.startup_delay}s delay")
        click.echo(f"  Shutdown: {info.shutdown_order.value}, {info.shutdown_delay}s delay")
        click.echo(f"  Auto start: {'yes' if info.auto_start else 'no'}")
        if info.vm_resources is not None:
            res = info.vm_resources
            click.echo(f"  VM size: {res.ram_mb} MB RAM, {res.vcpus} vCPUs, {res.disk_gb} GB disk")
        click.echo(f"  Members ({info.vm_count}):")
        for vm_name in info.members:
            click.echo(f"    {vm_name}")

    emit(ctx, cluster_to_dict(info), text)


@cluster.command("add")
@click.argument("name")
@click.argument("vm_name")
@click.pass_context
def cluster_add(ctx: Any, name: str, vm_name: str) -> None:
    """Add an existing VM to a cluster."""
    coordinator = get_coordinator(ctx)
    if run_command(lambda: coordinator.add_member(name, vm_name)):
        click.echo(f"✓ Added '{vm_name}' to cluster '{name}'")
    else:
        click.echo(f"Warning: '{vm_name}' is already a member of '{name}'", err=True)


@cluster.command("remove")
@click.argument("name")
@click.argument("vm_name")
@click.pass_context
def cluster_remove(ctx: Any, name: str, vm_name: str) -> None:
    """Remove a VM from a cluster (the VM itself is kept)."""
    coordinator = get_coordinator(ctx)
    if run_command(lambda: coordinator.remove_member(name, vm_name)):
        click.echo(f"✓ Removed '{vm_name}' from cluster '{name}'")
    else:
        click.echo(f"Warning: '{vm_name}' is not a member of '{name}'", err=True)


@cluster.command("delete")
@click.argument("name")
@click.option("--yes", "-y", "confirm", is_flag=True, help="Confirm deletion")
@click.option("--cascade", is_flag=True, help="Also delete member VMs and their storage")
@click.pass_context
def cluster_delete(ctx: Any, name: str, confirm: bool, cascade: bool) -> None:
    """Delete a cluster record, optionally with its VMs."""
    coordinator = get_coordinator(ctx)
    report = run_command(
        lambda: coordinator.delete_cluster(name, confirm=confirm, cascade=cascade)
    )
    if report.failed:
        for vm_name, reason in report.failed.items():
            click.echo(f"Warning: could not delete VM '{vm_name}': {reason}", err=True)
    click.echo(f"✓ Deleted cluster '{name}'")


@cluster.command("list")
@click.pass_context
def cluster_list(ctx: Any) -> None:
    """List clusters."""
    coordinator = get_coordinator(ctx)

    async def run_list() -> List[Cluster]:
        return coordinator.list_clusters()

    clusters = run_command(run_list)

    def text() -> None:
        if not clusters:
            click.echo("No clusters found")
            return
        click.echo(f"{'Name':<24} {'VMs':<5} {'Template':<16} Description")
        click.echo("-" * 70)
        for c in clusters:
            click.echo(f"{c.name:<24} {c.vm_count:<5} {c.template or '-':<16} {c.description}")

    emit(ctx, [cluster_to_dict(c) for c in clusters], text)


@cluster.command("dashboard")
@click.pass_context
def cluster_dashboard(ctx: Any) -> None:
    """Health overview of all clusters."""
    coordinator = get_coordinator(ctx)
    rows = run_command(coordinator.dashboard)

    def text() -> None:
        if not rows:
            click.echo("No clusters found")
            return
        click.echo(f"{'Name':<24} {'Running':<9} {'Score':<7} Status")
        click.echo("-" * 60)
        for row in rows:
            click.echo(
                f"{row.name:<24} {f'{row.running_count}/{row.member_count}':<9} "
                f"{f'{row.score}%':<7} {row.status.value}"
            )

    emit(
        ctx,
        [
            {
                "name": row.name,
                "member_count": row.member_count,
                "running": row.running_count,
                "score": row.score,
                "status": row.status.value,
                "template": row.template,
            }
            for row in rows
        ],
        text,
    )


@cluster.command("health")
@click.argument("name")
@click.option("--detailed", "-d", is_flag=True, help="Include CPU time and memory")
@click.pass_context
def cluster_health(ctx: Any, name: str, detailed: bool) -> None:
    """Check the health of a cluster."""
    coordinator = get_coordinator(ctx)
    report = run_command(lambda: coordinator.health_check(name, detailed=detailed))

    def text() -> None:
        click.echo(f"Cluster '{report.cluster_name}': {report.score}% ({report.status.value})")
        click.echo(f"  Running: {report.running_count}/{report.total}")
        for member in report.members:
            line = f"  {STATE_MARKS[member.state.value]} {member.name:<24} {member.state.value}"
            if member.cpu_time is not None:
                line += f"  cpu {member.cpu_time:.1f}s  mem {member.memory_mb} MB"
            click.echo(line)
        for issue in report.issues:
            click.echo(f"  Issue: {issue}")

    emit(ctx, report.to_dict(), text)


@cluster.command("scale")
@click.argument("name")
@click.argument("action", type=click.Choice(["add", "remove"]))
@click.argument("count", type=int)
@click.option("--create-vms", is_flag=True, help="Provision new VMs when adding")
@click.option("--delete-vms", is_flag=True, help="Delete removed VMs and their storage")
@click.option("--strict", is_flag=True, help="Exit with code 2 on partial success")
@click.pass_context
def cluster_scale(
    ctx: Any,
    name: str,
    action: str,
    count: int,
    create_vms: bool,
    delete_vms: bool,
    strict: bool,
) -> None:
    """Add or remove COUNT members."""
    coordinator = get_coordinator(ctx)
    report = run_command(
        lambda: coordinator.scale_cluster(
            name, action, count, create_vms=create_vms, delete_vms=delete_vms
        )
    )
    finish_report(ctx, report, strict)


@cluster.command("backup")
@click.argument("name")
@click.option("--label", "-l", default=None, help="Backup label (default: timestamp)")
@click.pass_context
def cluster_backup(ctx: Any, name: str, label: Optional[str]) -> None:
    """Back up a cluster's configuration and VM definitions."""
    coordinator = get_coordinator(ctx)
    manifest = run_command(lambda: coordinator.backup_cluster(name, label))

    def text() -> None:
        click.echo(f"✓ Backup '{manifest.label}' written to {manifest.path}")
        click.echo(
            f"  Captured {len(manifest.captured_members)} of {manifest.member_count} member(s)"
        )

    emit(ctx, manifest_to_dict(manifest), text)
    if len(manifest.captured_members) < manifest.member_count:
        click.echo("Warning: some members were not captured", err=True)


@cluster.command("backups")
@click.argument("name", required=False)
@click.pass_context
def cluster_backups(ctx: Any, name: Optional[str]) -> None:
    """List backups, optionally for one cluster."""
    coordinator = get_coordinator(ctx)

    async def run_list() -> List[BackupManifest]:
        return coordinator.list_backups(name)

    manifests = run_command(run_list)

    def text() -> None:
        if not manifests:
            click.echo("No backups found")
            return
        click.echo(f"{'Cluster':<20} {'Label':<20} {'Created':<20} Members")
        click.echo("-" * 70)
        for m in manifests:
            click.echo(
                f"{m.cluster_name:<20} {m.label:<20} {m.created_at.isoformat():<20} "
                f"{len(m.captured_members)}/{m.member_count}"
            )

    emit(ctx, [manifest_to_dict(m) for m in manifests], text)


@cluster.command("from-template")
@click.argument("name")
@click.argument("template_name")
@click.option("--create-vms", is_flag=True, help="Provision the member VMs")
@click.option("--description", "-d", default=None, help="Cluster description")
@click.pass_context
def cluster_from_template(
    ctx: Any, name: str, template_name: str, create_vms: bool, description: Optional[str]
) -> None:
    """Create a cluster from a template."""
    coordinator = get_coordinator(ctx)
    created = run_command(
        lambda: coordinator.create_cluster_from_template(
            name, template_name, create_vms=create_vms, description=description
        )
    )
    emit(
        ctx,
        cluster_to_dict(created),
        lambda: click.echo(
            f"✓ Created cluster '{created.name}' from template '{template_name}': "
            f"{', '.join(created.members) or 'no members'}"
        ),
    )


# -- template ------------------------------------------------------------


@cli.group()
def template() -> None:
    """Manage cluster templates."""
    pass


@template.command("create")
@click.argument("name")
@click.option("--ram", "ram_mb", type=int, default=2048, help="RAM per VM in MB")
@click.option("--vcpus", type=int, default=2, help="vCPUs per VM")
@click.option("--disk", "disk_gb", type=int, default=20, help="Disk per VM in GB")
@click.option("--count", "member_count", type=int, default=3, help="Number of VMs")
@click.option("--description", "-d", default="", help="Template description")
@click.option("--os-variant", default=None, help="virt-install OS variant")
@click.option("--prefix", "name_prefix", default=None, help="Member name prefix")
@click.option("--startup-order", type=ORDER_CHOICES, default="sequential")
@click.option("--startup-delay", type=int, default=5)
@click.option("--shutdown-order", type=ORDER_CHOICES, default="reverse")
@click.option("--shutdown-delay", type=int, default=10)
@click.option("--network", default=None, help="libvirt network")
@click.option("--storage-pool", default=None, help="libvirt storage pool")
@click.option("--auto-start", is_flag=True)
@click.pass_context
def template_create(
    ctx: Any,
    name: str,
    ram_mb: int,
    vcpus: int,
    disk_gb: int,
    member_count: int,
    description: str,
    os_variant: Optional[str],
    name_prefix: Optional[str],
    startup_order: str,
    startup_delay: int,
    shutdown_order: str,
    shutdown_delay: int,
    network: Optional[str],
    storage_pool: Optional[str],
    auto_start: bool,
) -> None:
    """Create a cluster template."""
    coordinator = get_coordinator(ctx)
    created = run_command(
        lambda: coordinator.create_template(
            name,
            description,
            ram_mb,
            vcpus,
            disk_gb,
            member_count,
            startup_order,
            startup_delay,
            shutdown_order,
            shutdown_delay,
            os_variant=os_variant,
            name_prefix=name_prefix,
            network=network,
            storage_pool=storage_pool,
            auto_start=auto_start,
        )
    )
    emit(
        ctx,
        template_to_dict(created),
        lambda: click.echo(f"✓ Created template '{created.name}' ({created.member_count} VMs)"),
    )


@template.command("list")
@click.pass_context
def template_list(ctx: Any) -> None:
    """List templates."""
    coordinator = get_coordinator(ctx)

    async def run_list() -> List[Template]:
        return coordinator.list_templates()

    templates = run_command(run_list)

    def text() -> None:
        if not templates:
            click.echo("No templates found")
            return
        click.echo(f"{'Name':<20} {'VMs':<5} {'RAM':<8} {'vCPUs':<6} {'Disk':<6} Description")
        click.echo("-" * 70)
        for t in templates:
            click.echo(
                f"{t.name:<20} {t.member_count:<5} {t.ram_mb:<8} {t.vcpus:<6} "
                f"{t.disk_gb:<6} {t.description}"
            )

    emit(ctx, [template_to_dict(t) for t in templates], text)


@template.command("show")
@click.argument("name")
@click.pass_context
def template_show(ctx: Any, name: str) -> None:
    """Show a template."""
    coordinator = get_coordinator(ctx)

    async def run_show() -> Template:
        return coordinator.get_template(name)

    found = run_command(run_show)

    def text() -> None:
        for key, value in template_to_dict(found).items():
            click.echo(f"{key}: {value}")
        click.echo(f"members: {', '.join(found.member_names())}")

    emit(ctx, template_to_dict(found), text)


# -- config --------------------------------------------------------------


@cli.group()
def config() -> None:
    """Manage configuration settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display current configuration."""
    app_config: AppConfig = ctx.obj["config"]
    data = app_config.model_dump()
    if ctx.obj["output_format"] == "json":
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False))


@config.command("init")
@click.option("--config-dir", default="~/.config/kvm-cluster", help="Configuration directory")
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing file")
def config_init(config_dir: str, force: bool) -> None:
    """Initialize default configuration."""
    config_path = Path(config_dir).expanduser()
    config_path.mkdir(parents=True, exist_ok=True)

    config_file = config_path / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"Configuration already exists at {config_file} (use --force)", err=True)
        sys.exit(1)

    with open(config_file, "w") as f:
        yaml.safe_dump(AppConfig().model_dump(), f, default_flow_style=False)

    click.echo(f"Configuration initialized at {config_file}")


@config.command("path")
def config_path() -> None:
    """Show the configuration file path being used."""
    click.echo("Configuration search paths (in order):")
    for i, path in enumerate(DEFAULT_CONFIG_PATHS, 1):
        exists = "✓" if os.path.exists(path) else "✗"
        click.echo(f"  {i}. {exists} {path}")

    # Find which one is actually being used
    for path in DEFAULT_CONFIG_PATHS:
        if os.path.exists(path):
            click.echo(f"\nCurrently using: {path}")
            return

    click.echo("\nNo configuration file found. Run 'kvm-cluster config init' to create one.")


# -- check ---------------------------------------------------------------


@cli.command()
@click.pass_context
def check(ctx: Any) -> None:
    """Check required tools and libvirt connectivity."""
    app_config: AppConfig = ctx.obj["config"]
    driver = LibvirtDriver(app_config.libvirt_uri, app_config.image_dir)
    ok = True

    for tool, location in driver.check_tools().items():
        if location:
            click.echo(f"✓ {tool}: {location}")
        else:
            click.echo(f"✗ {tool}: not found")
            ok = False

    try:
        hostname = asyncio.run(driver.ping())
        click.echo(f"✓ libvirt: connected to {app_config.libvirt_uri} ({hostname})")
    except KVMClusterError as e:
        click.echo(f"✗ libvirt: {e}")
        ok = False
    finally:
        driver.close()

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    cli()
