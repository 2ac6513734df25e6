#!/usr/bin/env python3
"""
Homelab installer CLI.

    homelab-installer install                 # install this node
    homelab-installer nodes list              # registered workers with liveness
    homelab-installer ssh-keys sync           # merge keys, push to workers

Configuration is read from ~/homelab/.env (or $HOMELAB_DIR/.env).
"""

import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from homelab_installer.config import InstallPaths, NodeRole, parse_bool
from homelab_installer.environment import EnvironmentResolver
from homelab_installer.exceptions import FetchError, InstallerError
from homelab_installer.installer import Installer
from homelab_installer.ledger import InstalledLedger
from homelab_installer.logs import setup_logging
from homelab_installer.nodes import NodeRegistry, register_with_master
from homelab_installer.pipeline import PipelineResult, StepStatus
from homelab_installer.ssh_keys import (
    MASTER_KEY,
    AuthorizedKeysSync,
    DistributionReport,
    KeyDistributor,
    KeyManager,
    default_authorized_keys,
    sync_and_distribute,
)
from homelab_installer.system import is_root

app = typer.Typer(
    name="homelab-installer",
    help="Homelab K3s cluster installer",
    add_completion=False
)
console = Console()
logger = logging.getLogger(__name__)

_options = {"debug": False}


class InstallInterrupted(Exception):
    """Raised from the SIGTERM handler so the run stops between lines."""

    def __init__(self, signum: int):
        super().__init__(f"signal {signum}")
        self.signum = signum


def _raise_interrupted(signum, frame) -> None:
    raise InstallInterrupted(signum)


def _paths(home: Optional[Path] = None) -> InstallPaths:
    return InstallPaths(home.expanduser()) if home else InstallPaths.from_environment()


def _init(paths: InstallPaths, debug: bool = False) -> None:
    """Create the home layout and attach console and daily-file logging."""
    EnvironmentResolver(paths).ensure_layout()
    debug = debug or _options["debug"] or parse_bool(os.environ.get("DEBUG"))
    setup_logging(paths.logs_dir, debug=debug)


def _fail(message: str) -> None:
    logger.error(message)
    raise typer.Exit(1)


def _print_distribution(report: DistributionReport) -> None:
    table = Table(title="Key Distribution")
    table.add_column("Node", style="cyan", no_wrap=True)
    table.add_column("Status", style="bold")
    table.add_column("Details")
    for host in report.succeeded:
        table.add_row(host, "[green]ok[/green]", "")
    for host, reason in report.failed.items():
        table.add_row(host, "[red]failed[/red]", reason)
    console.print(table)


def _print_summary(result: PipelineResult) -> None:
    styles = {
        StepStatus.COMPLETED: "green",
        StepStatus.SKIPPED: "yellow",
        StepStatus.FAILED: "red",
    }
    table = Table(title="Installation Summary")
    table.add_column("Step", style="cyan", no_wrap=True)
    table.add_column("Status", style="bold")
    table.add_column("Duration", justify="right")
    table.add_column("Notes")
    for outcome in result.outcomes:
        style = styles[outcome.status]
        duration = f"{outcome.duration:.1f}s" if outcome.status is not StepStatus.SKIPPED else ""
        table.add_row(outcome.name, f"[{style}]{outcome.status.value}[/{style}]", duration, outcome.reason)
    console.print(table)
    console.print(f"Logs: {result.log_dir}")


# === INSTALL ===

@app.command("install")
def install(
    home: Optional[Path] = typer.Option(None, "--home", help="Installation home (default: $HOMELAB_DIR or ~/homelab)"),
    scripts_dir: Optional[Path] = typer.Option(None, "--scripts-dir", help="Directory holding the step scripts"),
    auto_confirm: bool = typer.Option(False, "--auto-confirm", "-y", help="Never prompt; fail on missing values"),
    resume: bool = typer.Option(False, "--resume", help="Skip steps completed by the previous run"),
) -> None:
    """
    Install this node as master or worker.

    Resolves configuration, collects service credentials on the master,
    then runs every installation step in order, stopping at the first failure.
    """
    if is_root():
        console.print("[red]\\[ERROR][/red] This installer should not be run as root. Run it as a regular user with sudo.")
        raise typer.Exit(1)

    paths = _paths(home)
    _init(paths)
    scripts = scripts_dir.expanduser().resolve() if scripts_dir else None
    installer = Installer(
        paths,
        scripts_dir=scripts,
        installer_dir=scripts.parent if scripts else None,
        auto_confirm=auto_confirm,
    )

    previous = signal.signal(signal.SIGTERM, _raise_interrupted)
    try:
        result = installer.run(resume=resume)
    except (KeyboardInterrupt, InstallInterrupted) as e:
        signum = e.signum if isinstance(e, InstallInterrupted) else signal.SIGINT
        logger.error("Installation interrupted")
        raise typer.Exit(128 + int(signum))
    except InstallerError as e:
        _fail(str(e))
    finally:
        signal.signal(signal.SIGTERM, previous)

    if result is None:
        console.print("Installation cancelled")
        return

    _print_summary(result)
    if not result.ok:
        _fail(f"Installation failed at step {result.failed_step}: {result.reason}")


# === NODES ===

nodes_app = typer.Typer(help="Worker node registry")
app.add_typer(nodes_app, name="nodes")


def _registry(paths: InstallPaths) -> NodeRegistry:
    """Registry whose additions trigger key distribution on the master."""
    settings = EnvironmentResolver(paths).load()
    on_added = None
    if settings.role is NodeRole.MASTER:
        distributor = KeyDistributor(paths, default_authorized_keys(), ssh_user=settings.ssh_user)

        def on_added(address: str) -> None:
            report = distributor.distribute([address])
            if report.failed:
                logger.warning(f"Node {address} added but key distribution failed")

    return NodeRegistry(paths.nodes_list, on_added=on_added)


@nodes_app.command("add")
def nodes_add(ip: str = typer.Argument(..., help="Worker IP or hostname")) -> None:
    """Register a worker node."""
    paths = _paths()
    _init(paths)
    try:
        _registry(paths).add(ip)
    except InstallerError as e:
        _fail(str(e))


@nodes_app.command("remove")
def nodes_remove(ip: str = typer.Argument(..., help="Worker IP or hostname")) -> None:
    """Unregister a worker node."""
    paths = _paths()
    _init(paths)
    NodeRegistry(paths.nodes_list).remove(ip)


@nodes_app.command("list")
def nodes_list() -> None:
    """List registered workers with a fresh ping."""
    paths = _paths()
    _init(paths)
    entries = NodeRegistry(paths.nodes_list).list()
    if not entries:
        console.print("No worker nodes registered")
        return

    table = Table(title="Worker Nodes")
    table.add_column("Node", style="cyan", no_wrap=True)
    table.add_column("Status", style="bold")
    for address, alive in entries:
        table.add_row(address, "[green]online[/green]" if alive else "[red]offline[/red]")
    console.print(table)


@nodes_app.command("register")
def nodes_register(
    master_ip: Optional[str] = typer.Argument(None, help="Master IP (default: MASTER_IP)"),
    slave_ip: Optional[str] = typer.Argument(None, help="This node's IP (default: primary IP)"),
) -> None:
    """Register this worker with the master."""
    paths = _paths()
    _init(paths)
    settings = EnvironmentResolver(paths).load()
    master = master_ip or settings.master_ip
    if not master:
        _fail("Master IP not given and MASTER_IP is not configured")
    if not register_with_master(
        master,
        slave_ip,
        ssh_user=settings.ssh_user,
        key_filename=paths.ssh_keys_dir / MASTER_KEY,
    ):
        raise typer.Exit(1)


# === SSH KEYS ===

keys_app = typer.Typer(help="SSH key management")
app.add_typer(keys_app, name="ssh-keys")


@keys_app.command("setup")
def keys_setup() -> None:
    """Generate keys, write SSH config and schedule the daily sync."""
    paths = _paths()
    _init(paths)
    settings = EnvironmentResolver(paths).load()
    manager = KeyManager(paths, settings.github_keys_url, InstalledLedger(paths.installed_csv))
    sync = None
    hour = None
    if settings.ssh_key_sync_enabled:
        sync = AuthorizedKeysSync(default_authorized_keys(), backup_dir=paths.backups_dir)
        hour = settings.ssh_key_sync_hour
    try:
        keys = manager.setup(sync=sync, schedule_hour=hour)
    except (InstallerError, RuntimeError) as e:
        _fail(str(e))
    for name, path in keys.items():
        console.print(f"[green]{name}[/green]: {path}")


@keys_app.command("distribute")
def keys_distribute() -> None:
    """Push SSH keys to every registered worker."""
    paths = _paths()
    _init(paths)
    settings = EnvironmentResolver(paths).load()
    nodes = NodeRegistry(paths.nodes_list).entries()
    report = KeyDistributor(paths, default_authorized_keys(), ssh_user=settings.ssh_user).distribute(nodes)
    if nodes:
        _print_distribution(report)
    if not report.ok:
        raise typer.Exit(1)


@keys_app.command("sync")
def keys_sync() -> None:
    """Merge the remote key list; on the master, then push to workers."""
    paths = _paths()
    _init(paths)
    settings = EnvironmentResolver(paths).load()
    if not settings.ssh_key_sync_enabled:
        logger.info("SSH key sync disabled (ENABLE_SSH_KEY_SYNC=false)")
        return

    sync = AuthorizedKeysSync(default_authorized_keys(), backup_dir=paths.backups_dir)
    distributor = None
    nodes = []
    if settings.role is NodeRole.MASTER:
        distributor = KeyDistributor(paths, default_authorized_keys(), ssh_user=settings.ssh_user)
        nodes = NodeRegistry(paths.nodes_list).entries()

    try:
        result, report = sync_and_distribute(sync, settings.github_keys_url, distributor, nodes)
    except FetchError as e:
        _fail(str(e))

    console.print(f"Added {result.added} keys, {result.already_present} already present")
    if report is not None and nodes:
        _print_distribution(report)


# === MAIN ENTRY POINT ===

@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """
    Homelab Installer

    Installs and maintains a K3s homelab cluster: master and worker nodes,
    node registry and SSH key distribution.
    """
    _options["debug"] = debug or verbose


if __name__ == "__main__":
    app()
