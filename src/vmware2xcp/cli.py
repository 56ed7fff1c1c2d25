"""CLI entry point for vmware2xcp."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from vmware2xcp import __version__
from vmware2xcp.config import AppConfig, VMMigrationPlan

console = Console()


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        return AppConfig.from_env_and_args()
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        console.print("Provide a --config file or set XAPI_URL / XAPI_PASSWORD (and ESXI_* for imports).")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="vmware2xcp")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
def main(log_level: str):
    """ESXi to XCP-ng migration tool.

    Import virtual machines, their disks and snapshot history from an ESXi
    host into an XCP-ng / XenServer pool, or move a pool VM to another SR
    with minimal downtime.
    """
    from vmware2xcp.utils.logging import set_log_level

    set_log_level(log_level)


@main.command()
@click.option("--host", required=True, help="ESXi hostname or IP")
@click.option("--username", default="root", help="ESXi username")
@click.option("--password-file", type=click.Path(exists=True), help="File containing the ESXi password")
@click.option("--password", help="ESXi password (prefer --password-file)")
@click.option("--insecure", is_flag=True, default=False, help="Skip SSL verification")
@click.option("--output", "-o", type=click.Path(), help="Output file (JSON)")
@click.option("--format", "fmt", type=click.Choice(["table", "json"]), default="table")
def inventory(host: str, username: str, password_file: str | None, password: str | None,
              insecure: bool, output: str | None, fmt: str):
    """List the VMs of an ESXi host with the id to pass to 'migrate'."""
    from vmware2xcp.vmware.client import VSphereClient
    from vmware2xcp.vmware.inventory import VMInventory

    if password_file:
        password = Path(password_file).read_text().strip()
    elif not password:
        password = click.prompt("ESXi password", hide_input=True)

    with console.status("[bold green]Connecting to ESXi..."):
        client = VSphereClient()
        client.connect(host, username, password, insecure=insecure)

    try:
        with console.status("[bold green]Collecting VM inventory..."):
            vms = VMInventory(client).list_vms()
    finally:
        client.disconnect()

    if fmt == "json":
        data = [vm.__dict__ for vm in vms]
        if output:
            Path(output).write_text(json.dumps(data, indent=2))
            console.print(f"[green]Inventory saved to {output}[/green]")
        else:
            console.print_json(json.dumps(data, indent=2))
        return

    table = Table(title=f"VM Inventory — {host}")
    table.add_column("Id", style="bold", no_wrap=True)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("State", style="green")
    table.add_column("CPU", justify="right")
    table.add_column("RAM (MB)", justify="right")
    table.add_column("Disks", justify="right")
    table.add_column("Snapshots", justify="right")

    for vm in vms:
        table.add_row(
            vm.id,
            vm.name,
            vm.power_state,
            str(vm.cpu),
            str(vm.memory_mb),
            str(vm.num_disks),
            str(vm.num_snapshots),
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(vms)} VMs[/dim]")


@main.command()
@click.option("--vm", "vm_id", required=True, help="ESXi VM id (see 'inventory')")
@click.option("--sr", required=True, help="Destination SR uuid")
@click.option("--network", required=True, help="Destination network uuid")
@click.option("--mode", type=click.Choice(["cold", "warm"]), default="cold", help="Transfer mode")
@click.option("--thin/--thick", default=None, help="Skip unallocated blocks (default from config)")
@click.option("--stop-source/--no-stop-source", default=None, help="Allow powering off the source VM")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--dry-run", is_flag=True, default=False, help="Show the disk chains without importing")
def migrate(vm_id: str, sr: str, network: str, mode: str, thin: bool | None,
            stop_source: bool | None, config_path: str | None, dry_run: bool):
    """Import a single VM from ESXi into the pool."""
    config = load_config(config_path)

    plan = VMMigrationPlan(
        vm_id=vm_id,
        sr=sr,
        network=network,
        mode=mode,
        thin=thin,
        stop_source=stop_source,
    )

    from vmware2xcp.pipeline.migration import MigrationPipeline

    pipeline = MigrationPipeline(config)

    if dry_run:
        console.print("[yellow]DRY RUN — No changes will be made[/yellow]")
        asyncio.run(pipeline.dry_run(plan))
        return

    result = pipeline.run_sync(plan)
    for warning in result.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")
    if result.success:
        console.print(f"\n[bold green]✅ Migration complete![/bold green]")
        console.print(f"  VM uuid: {result.vm_uuid}")
        console.print(f"  Duration: {result.duration}")
    else:
        console.print(f"\n[bold red]❌ Migration failed at stage '{result.failed_stage}'[/bold red]")
        console.print(f"  Error: {result.error}")
        if result.rollback_failures:
            console.print("  [red]Could not clean up:[/red]")
            for failure in result.rollback_failures:
                console.print(f"    - {failure}")
        console.print(f"  Run 'vmware2xcp status --migration-id {result.migration_id}' for details")
        sys.exit(1)


@main.command("warm-migrate")
@click.option("--vm", "vm_uuid", required=True, help="Pool VM uuid to move")
@click.option("--sr", required=True, help="Destination SR uuid")
@click.option("--no-start", is_flag=True, default=False, help="Leave the migrated VM halted")
@click.option("--delete-source", is_flag=True, default=False, help="Destroy the source once the copy started")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def warm_migrate(vm_uuid: str, sr: str, no_start: bool, delete_source: bool, config_path: str | None):
    """Move a pool VM to another SR through two replication passes."""
    config = load_config(config_path)

    from vmware2xcp.pipeline.cutover import ReplicationCutover
    from vmware2xcp.utils.tasks import MigrationContext
    from vmware2xcp.xapi.client import XapiClient

    cfg = config.xapi
    pw = cfg.password.get_secret_value() if cfg.password else ""
    context = MigrationContext(f"warm migration of {vm_uuid}")

    try:
        with XapiClient(cfg.url, cfg.username, pw, insecure=cfg.insecure) as xapi:
            cutover = ReplicationCutover(xapi, context)
            target = asyncio.run(cutover.warm_migrate(
                vm_uuid, sr, start_destination=not no_start, delete_source=delete_source,
            ))
    except Exception as e:
        console.print(f"\n[bold red]❌ Warm migration failed: {e}[/bold red]")
        sys.exit(1)

    for warning in context.warnings:
        console.print(f"[yellow]⚠️  {warning}[/yellow]")
    console.print(f"\n[bold green]✅ Warm migration complete![/bold green]")
    console.print(f"  VM uuid: {target}")


@main.command()
@click.option("--migration-id", help="Migration ID to check (default: list all)")
@click.option("--work-dir", type=click.Path(file_okay=False), default="/var/lib/vmware2xcp",
              help="Directory holding state files")
def status(migration_id: str | None, work_dir: str):
    """Check the status of past migrations."""
    from vmware2xcp.pipeline.state import MigrationStateStore

    store = MigrationStateStore(work_dir)

    if not migration_id:
        table = Table(title="Migrations")
        table.add_column("Id", style="cyan")
        table.add_column("VM")
        table.add_column("Mode")
        table.add_column("Stage")
        table.add_column("Result")
        table.add_column("Started")
        for state in store.list_all():
            if state.error:
                outcome = "[red]failed[/red]"
            elif state.finished_at:
                outcome = "[green]done[/green]"
            else:
                outcome = "[yellow]running[/yellow]"
            table.add_row(state.migration_id, state.vm_id, state.mode, state.current_stage,
                          outcome, str(state.started_at or ""))
        console.print(table)
        return

    state = store.load(migration_id)
    if not state:
        console.print(f"[red]Migration '{migration_id}' not found[/red]")
        sys.exit(1)

    console.print(f"\n[bold]Migration: {state.migration_id}[/bold]")
    console.print(f"  VM: {state.vm_id} ({state.mode})")
    console.print(f"  Stage: {state.current_stage}")
    console.print(f"  Started: {state.started_at}")
    console.print(f"  Completed stages: {', '.join(state.completed_stages)}")
    if state.artifacts.get("vm_uuid"):
        console.print(f"  Destination VM: {state.artifacts['vm_uuid']}")
    for warning in state.warnings:
        console.print(f"  [yellow]Warning: {warning}[/yellow]")
    if state.error:
        console.print(f"  [red]Error: {state.error}[/red]")
        if state.artifacts.get("rollback_failures"):
            console.print(f"  [red]Left behind: {', '.join(state.artifacts['rollback_failures'])}[/red]")


if __name__ == "__main__":
    main()
