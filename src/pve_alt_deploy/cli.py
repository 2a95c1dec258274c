#!/usr/bin/env python3
"""
Alt Workstation Proxmox Deployer.

    pve-alt-deploy                           # Deploy with default settings (local)
    pve-alt-deploy -i 200 -n alt-dev         # Deploy with custom ID and name
    pve-alt-deploy --remote root@192.168.1.10
    pve-alt-deploy --download-only
    pve-alt-deploy --setup-node
"""

import logging
import subprocess
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from pve_alt_deploy.config import Settings, load_config
from pve_alt_deploy.deployer import Deployer
from pve_alt_deploy.executor import select_executor
from pve_alt_deploy.models import DeployError

app = typer.Typer(
    name="pve-alt-deploy",
    help="Alt Workstation Proxmox Deployer",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()
# log records go to stderr; stdout carries only command output such as the --download-only path
log_console = Console(stderr=True)
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Route log records through rich so levels are colored."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%Y-%m-%d %H:%M:%S]",
        handlers=[RichHandler(console=log_console, show_path=False, markup=False)],
        force=True,
    )
    # paramiko is chatty at DEBUG
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def report_error(error: BaseException) -> None:
    console.print(f"[red]{escape('[ERROR]')}[/red] {escape(str(error))}", highlight=False)


def run_setup_node(script: str) -> int:
    """Hand node preparation over to the setup script and return its exit code."""
    script_path = Path(script)
    if not script_path.is_file():
        console.print(f"[red]❌ Setup script not found: {script_path}[/red]")
        return 1
    console.print(f"🛠️  Running node setup: {script_path}")
    return subprocess.run(["bash", str(script_path)]).returncode


@app.command()
def main(
    vm_id: Optional[str] = typer.Option(None, "--id", "-i", help="VM ID (default: 100)"),
    vm_name: Optional[str] = typer.Option(None, "--name", "-n", help="VM Name (default: alt-workstation)"),
    config_file: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Config file path (default: config/alt-workstation.conf)"
    ),
    remote: Optional[str] = typer.Option(None, "--remote", help="Deploy to remote Proxmox host (user@host)"),
    local: bool = typer.Option(False, "--local", help="Run qm commands locally without probing"),
    download_only: bool = typer.Option(False, "--download-only", help="Download image only, don't create VM"),
    setup_node: bool = typer.Option(False, "--setup-node", help="Setup Proxmox node requirements"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every executed command"),
) -> None:
    """Deploy an Alt Workstation VM onto a Proxmox node."""
    setup_logging(verbose)
    try:
        settings = Settings.from_env()
    except DeployError as e:
        report_error(e)
        raise typer.Exit(1)

    if setup_node:
        raise typer.Exit(run_setup_node(settings.setup_node_script))

    if remote and local:
        console.print("[red]❌ --remote and --local are mutually exclusive[/red]")
        raise typer.Exit(2)

    executor = None
    try:
        config = load_config(config_file or settings.config_path, vm_id=vm_id, vm_name=vm_name)
        executor = select_executor(settings, remote=remote, force_local=local, setup_access=bool(remote))
        deployer = Deployer(executor, settings)

        if download_only:
            path = deployer.download_only(config)
            typer.echo(path)
            return

        result = deployer.deploy(config)
        if not result.running:
            console.print(f"[yellow]⚠️  VM {result.vm_id} was started but is not reported running yet[/yellow]")

    except KeyboardInterrupt:
        console.print("\n\nOperation cancelled by user")
        raise typer.Exit(130)
    except DeployError as e:
        report_error(e)
        raise typer.Exit(1)
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        report_error(e)
        raise typer.Exit(1)
    finally:
        if executor is not None:
            executor.close()


if __name__ == "__main__":
    app()
