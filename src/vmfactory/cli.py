#!/usr/bin/env python3
"""
Pal Forge IT VM factory CLI.

    vmfactory create-vm         # interactive cloud-init VM on this Proxmox node
    vmfactory install-nocodb    # NocoDB + Traefik stack inside a VM

Exit codes: 0 on success or when the operator aborts, 1 on any failure.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

import paramiko
import typer
from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn
from rich.table import Table

from vmfactory.collector import ParameterCollector, Prompter
from vmfactory.config import Config
from vmfactory.errors import AbortedByUser, PreconditionError, VMFactoryError
from vmfactory.hypervisor import QmClient
from vmfactory.image_cache import ImageCache, ProgressCallback, download_file
from vmfactory.models import VMSpec
from vmfactory.nocodb_installer import NocoDBInstaller
from vmfactory.provisioner import VMProvisioner
from vmfactory.runner import LocalRunner, SSHRunner

# Initialize CLI app and console
app = typer.Typer(
    name="vmfactory",
    help="Proxmox VM factory and NocoDB installer",
    add_completion=False,
)
console = Console()
err_console = Console(stderr=True)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def check_preconditions(runner: LocalRunner) -> None:
    """Root on a Proxmox node with qm and pvesm available."""
    if not runner.is_root():
        raise PreconditionError("This script must be run as root on a Proxmox node.")
    missing = [cmd for cmd in Config.required_commands() if not runner.which(cmd)]
    if missing:
        raise PreconditionError(
            f"Required command(s) {', '.join(repr(m) for m in missing)} not found. Please install first."
        )


def spec_table(spec: VMSpec, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    rows = [
        ("Host", spec.node),
        ("VM ID", str(spec.vmid)),
        ("Name", spec.name),
        ("Environment", spec.environment),
        ("Role", spec.role),
        ("Site", spec.site),
        ("OS", spec.image.name),
        ("CPU cores", str(spec.cores)),
        ("Memory", f"{spec.memory_gb} GB"),
        ("Disk", f"{spec.disk_gb} GB"),
        ("Storage", f"{spec.storage} ({spec.storage_type})"),
        ("Bridge", spec.bridge),
        ("Network", spec.network.description),
        ("Username", spec.user),
        ("Auth mode", spec.auth.label),
        ("Tags", ",".join(spec.tags)),
    ]
    for key, value in rows:
        table.add_row(key, value)
    return table


def download_with_progress(url: str, dest: Path, progress: Optional[ProgressCallback] = None) -> None:
    """Image downloader that shows a rich progress bar for the transfer only.

    The cache calls it on a miss, so a cache hit never draws a bar.
    """
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        console=console,
        transient=True,
    ) as bar:
        task = bar.add_task("Downloading image", total=None)

        def report(done: int, total: Optional[int]) -> None:
            bar.update(task, completed=done, total=total)
            if progress:
                progress(done, total)

        download_file(url, dest, progress=report, timeout=Config.DOWNLOAD_TIMEOUT)


def run_guarded(action: Callable[[], None]) -> None:
    """Map wizard errors to exit codes and a labelled error line."""
    try:
        action()
    except AbortedByUser as e:
        console.print(f"ℹ️  {e}")
        raise typer.Exit(0)
    except VMFactoryError as e:
        err_console.print(f"❌ ERROR: {e}", markup=False)
        raise typer.Exit(1)
    except (OSError, paramiko.SSHException) as e:
        logger.debug("Unexpected failure", exc_info=True)
        err_console.print(f"❌ ERROR: {e}", markup=False)
        raise typer.Exit(1)


@app.command("create-vm")
def create_vm(
    cache_dir: Path = typer.Option(Config.CACHE_DIR, "--cache-dir", help="Cloud image cache directory"),
    max_age_days: int = typer.Option(
        Config.CACHE_MAX_AGE_DAYS, "--max-age-days", min=0, help="Re-download cached images older than this"
    ),
) -> None:
    """Create a cloud-init Ubuntu VM on this Proxmox node."""

    def _create() -> None:
        runner = LocalRunner()
        check_preconditions(runner)

        console.print("=" * 42)
        console.print(" 🏭 Pal Forge IT - Proxmox VM Factory")
        console.print("=" * 42)

        client = QmClient(runner, nodes_dir=Config.NODES_DIR)
        prompter = Prompter(console)
        spec = ParameterCollector(client, prompter, runner).collect()

        console.print(spec_table(spec, "VM Creation Summary (Review Below)"))
        if not prompter.confirm("Proceed with VM creation?", True):
            raise AbortedByUser("Aborting by user request.")

        console.print(f"📀 Preparing cloud image (cache: {cache_dir}, max age: {max_age_days}d)...")
        cache = ImageCache(str(cache_dir), max_age_days, downloader=download_with_progress)
        VMProvisioner(client, cache).provision(spec)

        console.print(spec_table(spec, f"✅ VM {spec.vmid} ({spec.name}) created successfully"))
        console.print("You can connect after cloud-init finishes.")

    run_guarded(_create)


@app.command("install-nocodb")
def install_nocodb(
    host: Optional[str] = typer.Option(None, "--host", help="Install on this VM over SSH instead of locally"),
    ssh_user: str = typer.Option(Config.SSH_USER, "--ssh-user", help="SSH user for --host"),
    ssh_key: str = typer.Option(Config.SSH_KEY_PATH, "--ssh-key", help="SSH private key for --host"),
    base_dir: str = typer.Option(Config.NOCODB_BASE_DIR, "--base-dir", help="Installation directory"),
) -> None:
    """Install NocoDB + Postgres + Redis + Traefik with Docker Compose."""

    def _install() -> None:
        console.print("=" * 42)
        console.print(" 📦 Pal Forge IT - NocoDB + Traefik Installer")
        console.print("=" * 42)

        runner = SSHRunner(host, ssh_user, ssh_key) if host else LocalRunner()
        try:
            installer = NocoDBInstaller(
                runner,
                Prompter(console),
                base_dir=base_dir,
                default_domain=Config.NOCODB_DEFAULT_DOMAIN,
                http_host=host or "localhost",
                local=host is None,
            )
            settings = installer.install()
        finally:
            if host:
                runner.close()

        console.print("=" * 42)
        console.print(f"  NocoDB should be available at: {settings.public_url}")
        if settings.expose_dashboard:
            console.print(f"  Traefik dashboard: http://{host or '<VM-IP>'}:8080/dashboard/")
        if settings.cloudflare:
            console.print(f"  Ensure DNS for {settings.domain} points to the tunnel or VM")
        if settings.generated:
            # Shown once so the operator can record them; never logged
            console.print("  Generated credentials (also stored in docker-compose.yml):")
            if "admin" in settings.generated:
                console.print(f"    NocoDB admin password: {settings.admin_password.reveal()}")
            if "db" in settings.generated:
                console.print(f"    Postgres password:     {settings.db_password.reveal()}")
        console.print("=" * 42)

    run_guarded(_install)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
