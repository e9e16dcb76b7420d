"""Command-line interface for the RC Construções client core."""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .app import Application
from .config import Config, ensure_directories, load_config
from .db import CURRENT_VERSION, LocalStore
from .errors import (
    DemoDataRefused,
    RCClientError,
    RateLimitedError,
    UnauthenticatedError,
)
from .logging import configure_logging
from .models import SyncStatus
from .session import SessionGate, SessionStorage
from .sync import ACCEPT_SERVER, KEEP_LOCAL

# Create Typer app with subcommands
app = typer.Typer(
    name="rcclient",
    help="Offline-first client core for RC Construções: local store, migrations and sync.",
    no_args_is_help=True,
)

demo_app = typer.Typer(help="Populate or clear demo data.")
app.add_typer(demo_app, name="demo")

snapshot_app = typer.Typer(help="Create, list and restore local store snapshots.")
app.add_typer(snapshot_app, name="snapshot")

# Rich console for nice output
console = Console()

# Global options
ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file"),
]


def get_config(config_path: Path | None) -> Config:
    """Load configuration and set up logging."""
    config = load_config(config_path)
    configure_logging(config)
    return config


def get_store(config: Config, target_version: int | None = None) -> LocalStore:
    """Open the local store without a session (administrative access)."""
    ensure_directories(config)
    store = LocalStore(
        config.store.path,
        allow_fallback=False,
        backlog_soft_limit=config.store.backlog_soft_limit,
        snapshot_dir=config.store.snapshot_directory,
        max_snapshots=config.store.max_snapshots,
    )
    return store.open(target_version)


def get_gate(config: Config) -> SessionGate:
    """Session gate over the persisted session, without a network client."""
    from .remote import RemoteApi

    gate = SessionGate(
        RemoteApi(config.remote.base_url, verify=config.remote.verify_tls),
        SessionStorage(config.session.storage_path),
        storage_key=config.session.storage_key,
        lifetime_minutes=config.session.lifetime_minutes,
    )
    gate.restore()
    return gate


def _format_ms(value: int | None) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def version():
    """Show version information."""
    console.print(f"rcclient version {__version__} (schema v{CURRENT_VERSION})")


@app.command()
def init(config_path: ConfigOption = None):
    """Create the local store and bring it to the latest schema."""
    config = get_config(config_path)
    try:
        store = get_store(config)
    except RCClientError as e:
        console.print(f"[red]Cannot open local store: {e}[/red]")
        raise typer.Exit(1)

    try:
        if store.migration_error:
            console.print(f"[red]{store.migration_error}[/red]")
            raise typer.Exit(1)
        console.print(
            f"[green]Local store ready at {config.store.path} (schema v{store.schema_version})[/green]"
        )
    finally:
        store.close()


@app.command()
def status(config_path: ConfigOption = None):
    """Show store, session and sync state."""
    config = get_config(config_path)
    store = get_store(config)
    gate = get_gate(config)

    try:
        with store.engine.connect() as conn:
            last_sync = store.get_state(conn, "last_sync_at")

        table = Table(title="Client Status")
        table.add_column("Item", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Store", str(config.store.path))
        table.add_row("Schema version", f"{store.schema_version} / {CURRENT_VERSION}")
        table.add_row(
            "Mode",
            "[red]read-only (migration failed)[/red]" if store.read_only else "read-write",
        )
        principal = gate.principal
        table.add_row("Signed in as", principal.username if principal else "[yellow]nobody[/yellow]")
        table.add_row("Pending changes", str(store.pending_count()))
        table.add_row("Conflicts", str(len(store.conflicts())))
        table.add_row("Last sync", _format_ms(int(last_sync) if last_sync else None))

        console.print(table)
    finally:
        store.close()


@app.command()
def login(
    username: Annotated[str, typer.Argument(help="Username or e-mail")],
    password: Annotated[
        str,
        typer.Option("--password", "-p", prompt=True, hide_input=True, help="Password"),
    ],
    config_path: ConfigOption = None,
):
    """Sign in against the server and keep the session for later commands."""
    config = get_config(config_path)
    ensure_directories(config)
    gate = get_gate(config)

    try:
        principal = asyncio.run(gate.sign_in(username, password))
    except UnauthenticatedError:
        console.print("[red]Invalid username or password[/red]")
        raise typer.Exit(1)
    except RateLimitedError as e:
        console.print(f"[yellow]Too many attempts, try again in {e.retry_after:.0f}s[/yellow]")
        raise typer.Exit(1)
    except RCClientError as e:
        console.print(f"[red]Sign-in failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]Signed in as {principal.username} ({principal.role})[/green]")


@app.command()
def logout(config_path: ConfigOption = None):
    """End the current session. Pending changes are kept."""
    config = get_config(config_path)
    gate = get_gate(config)
    if gate.principal is None:
        console.print("[yellow]Not signed in[/yellow]")
        raise typer.Exit(0)
    gate.sign_out()
    console.print("[green]Signed out[/green]")


async def _sync(config: Config) -> Application:
    async with Application(config) as client:
        if not client.online:
            console.print(f"[red]Server at {config.remote.base_url} is unreachable[/red]")
            raise typer.Exit(1)
        if client.principal is None:
            console.print("[red]Sign in first (rcclient login)[/red]")
            raise typer.Exit(1)
        await client.engine.wait_idle()
        if client.engine.cycles == 0:
            await client.sync_now()
        return client


@app.command()
def sync(config_path: ConfigOption = None):
    """Run one sync cycle now."""
    config = get_config(config_path)
    ensure_directories(config)
    client = asyncio.run(_sync(config))

    if client.engine.last_error:
        console.print(f"[red]Sync failed: {client.engine.last_error}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Sync complete at {_format_ms(client.last_sync_at)}[/green]")


@app.command()
def conflicts(config_path: ConfigOption = None):
    """List records waiting for a conflict decision."""
    config = get_config(config_path)
    store = get_store(config)

    try:
        items = store.conflicts()
        if not items:
            console.print("[green]No conflicts[/green]")
            raise typer.Exit(0)

        table = Table(title="Conflicts")
        table.add_column("Entity", style="cyan")
        table.add_column("ID", justify="right")
        table.add_column("Operation")
        table.add_column("Reason", style="yellow")
        table.add_column("Server version", justify="right")

        for item in items:
            server = item["server"] or {}
            table.add_row(
                item["entity"],
                str(item["id"]),
                item["op"],
                item["reason"] or "",
                str(server.get("serverVersion", "")),
            )

        console.print(table)
    finally:
        store.close()


async def _resolve(config: Config, entity: str, record_id: int, choice: str):
    async with Application(config) as client:
        status = await client.resolve_conflict(entity, record_id, choice)
        await client.engine.wait_idle()
        return status


@app.command()
def resolve(
    entity: Annotated[str, typer.Argument(help="Entity (clients, budgets, ...)")],
    record_id: Annotated[int, typer.Argument(help="Record id")],
    accept_server: Annotated[
        bool,
        typer.Option("--accept-server/--keep-local", help="Take the server version or keep the local one"),
    ] = False,
    config_path: ConfigOption = None,
):
    """Resolve a sync conflict."""
    config = get_config(config_path)
    ensure_directories(config)
    choice = ACCEPT_SERVER if accept_server else KEEP_LOCAL

    try:
        status = asyncio.run(_resolve(config, entity, record_id, choice))
    except (RCClientError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if status is None:
        console.print(f"[green]{entity} {record_id} removed locally[/green]")
    else:
        console.print(f"[green]{entity} {record_id} is now {SyncStatus(status).name.lower()}[/green]")


@app.command()
def migrate(
    target: Annotated[
        Optional[int],
        typer.Option("--target", "-t", help="Schema version to migrate to (default: latest)"),
    ] = None,
    config_path: ConfigOption = None,
):
    """Upgrade the local store schema."""
    config = get_config(config_path)
    try:
        store = get_store(config, target)
    except RCClientError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    try:
        if store.migration_error:
            console.print(f"[red]{store.migration_error}[/red]")
            console.print("[yellow]The store stays read-only until the migration succeeds.[/yellow]")
            raise typer.Exit(1)
        console.print(f"[green]Schema at version {store.schema_version}[/green]")
    finally:
        store.close()


@demo_app.command("populate")
def demo_populate(
    clients: Annotated[int, typer.Option("--clients", help="Number of clients")] = 10,
    budgets: Annotated[int, typer.Option("--budgets", help="Budgets per client")] = 3,
    contracts: Annotated[int, typer.Option("--contracts", help="Contracts per client")] = 2,
    financial: Annotated[int, typer.Option("--financial", help="Financial entries")] = 50,
    seed: Annotated[Optional[int], typer.Option("--seed", help="Random seed")] = None,
    config_path: ConfigOption = None,
):
    """Fill the local store with demo records."""
    from .demo import demo_summary, populate_demo_data

    config = get_config(config_path)
    store = get_store(config)

    try:
        counts = populate_demo_data(
            store,
            clients=clients,
            budgets_per_client=budgets,
            contracts_per_client=contracts,
            financial_entries=financial,
            seed=seed,
        )
    except DemoDataRefused as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()

    console.print(f"[green]Created {demo_summary(counts)}[/green]")


@demo_app.command("clear")
def demo_clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    config_path: ConfigOption = None,
):
    """Remove all local records. Nothing is deleted on the server."""
    from .demo import clear_demo_data, demo_summary

    config = get_config(config_path)
    if not yes:
        typer.confirm("Remove all local records and pending changes?", abort=True)

    store = get_store(config)
    principal = get_gate(config).principal
    try:
        counts = clear_demo_data(store, keep_user=principal.username if principal else None)
    finally:
        store.close()

    console.print(f"[green]Removed {demo_summary(counts) or 'nothing'}[/green]")


def get_snapshots(store: LocalStore):
    """Snapshot manager of an open store, or exit when snapshots are unavailable."""
    if store.snapshots is None:
        console.print("[red]Snapshots need a file-backed store[/red]")
        raise typer.Exit(1)
    return store.snapshots


@snapshot_app.command("create")
def snapshot_create(
    label: Annotated[str, typer.Option("--label", "-l", help="Short label kept in the file name")] = "manual",
    config_path: ConfigOption = None,
):
    """Copy the local store into a new snapshot."""
    config = get_config(config_path)
    store = get_store(config)

    try:
        snapshot = get_snapshots(store).create(label)
    except RCClientError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()

    console.print(f"[green]Created snapshot {snapshot.name}[/green]")


@snapshot_app.command("list")
def snapshot_list(config_path: ConfigOption = None):
    """List snapshots, newest first."""
    config = get_config(config_path)
    store = get_store(config)

    try:
        snapshots = get_snapshots(store).list_snapshots()
    finally:
        store.close()

    if not snapshots:
        console.print("[yellow]No snapshots[/yellow]")
        return

    table = Table(title="Snapshots")
    table.add_column("Name", style="cyan")
    table.add_column("Created")
    table.add_column("Label")
    table.add_column("Schema", justify="right")

    for snapshot in snapshots:
        table.add_row(
            snapshot.name,
            _format_ms(snapshot.created_ms),
            snapshot.label,
            str(snapshot.schema_version),
        )

    console.print(table)


@snapshot_app.command("restore")
def snapshot_restore(
    name: Annotated[str, typer.Argument(help="Snapshot file name (see `snapshot list`)")],
    target: Annotated[
        Optional[int],
        typer.Option("--target", "-t", help="Schema version to reopen at (default: latest)"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
    config_path: ConfigOption = None,
):
    """Replace the local store with a snapshot. Unsynced changes made since are lost."""
    config = get_config(config_path)
    if not yes:
        typer.confirm(f"Replace the local store with {name}?", abort=True)

    store = get_store(config)
    try:
        get_snapshots(store).restore(name, target)
        if store.migration_error:
            console.print(f"[red]{store.migration_error}[/red]")
            console.print("[yellow]The store stays read-only until the migration succeeds.[/yellow]")
            raise typer.Exit(1)
    except RCClientError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()

    console.print(f"[green]Restored {name} (schema v{store.schema_version})[/green]")
