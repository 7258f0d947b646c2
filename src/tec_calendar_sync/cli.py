"""
Command-line interface for TEC Calendar Sync.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tec_calendar_sync.config import load_config
from tec_calendar_sync.config import resolve_factory
from tec_calendar_sync.db import StateDatabase
from tec_calendar_sync.models import DEFAULT_CONFIG
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import ConflictPolicy
from tec_calendar_sync.models import SyncConfig
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.registry import CalendarMappingRegistry
from tec_calendar_sync.sync import SyncEngine

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Bidirectional sync between local events and a remote multi-calendar service.",
)
mappings_app = typer.Typer(
    no_args_is_help=True,
    help="Manage remote calendar → category mappings.",
)
app.add_typer(mappings_app, name="mappings")

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path | None = None
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path | None,
        typer.Option("--state-db", help="State DB path (overrides config)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )


def _build_config() -> SyncConfig:
    try:
        return load_config(state.config_path, state_db_path=state.state_db, verbose=state.verbose)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None


@contextmanager
def _open_db(cfg: SyncConfig) -> Iterator[StateDatabase]:
    with StateDatabase(cfg.state_db_path) as state_db:
        yield state_db


@contextmanager
def _open_engine(require_mapping: bool = True) -> Iterator[SyncEngine]:
    """Run preflight checks, then yield an engine bound to the state DB."""
    from tec_calendar_sync.preflight import run_preflight_checks

    cfg = _build_config()
    client = run_preflight_checks(cfg, console, require_mapping=require_mapping)
    if client is None:
        raise typer.Exit(1)

    mapper = None
    if cfg.mapper_factory:
        try:
            mapper = resolve_factory(cfg.mapper_factory)()
        except CalendarSyncError as e:
            console.print(f"[bold red]Error:[/] {e}")
            raise typer.Exit(1) from None

    with _open_db(cfg) as state_db:
        yield SyncEngine(cfg, state_db, client, mapper=mapper)


def _fmt_time(value: datetime | None) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S") if value else "—"


_STATUS_STYLES = {
    SyncStatus.UNSYNCED: "dim",
    SyncStatus.PENDING: "yellow",
    SyncStatus.SYNCED: "green",
    SyncStatus.CONFLICT: "magenta",
    SyncStatus.ERROR: "red",
    SyncStatus.FAILED_PERMANENT: "bold red",
}


def _report_result(result, success_label: str) -> None:
    """Print an Ok/Err result; exit 1 on Err."""
    if result.ok:
        value = getattr(result.value, "value", result.value)
        console.print(f"[green]{success_label}:[/] {value}")
        return
    console.print(f"[bold red]Failed ({result.kind.value}):[/] {result.message}")
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration and per-status statistics."""
    cfg = _build_config()
    config_exists = state.config_path.exists()
    db_exists = cfg.state_db_path.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(cfg.state_db_path) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Client:   ", style="bold")
    cfg_info.append(cfg.client_factory or "(not configured)")
    cfg_info.append("\n  Policy:   ", style="bold")
    cfg_info.append(cfg.conflict_policy)

    console.print(Panel(cfg_info, title="[bold]TEC Calendar Sync — Status[/bold]"))

    if not db_exists:
        console.print(
            "[yellow]No state database yet — run[/] "
            "[cyan]tec-calendar-sync mappings add[/] "
            "[yellow]to create it.[/]"
        )
        return

    with _open_db(cfg) as state_db:
        stats = state_db.sync_statistics()
        mapping_stats = CalendarMappingRegistry(state_db).statistics()

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("Status")
    table.add_column("Events", justify="right")
    for sync_status in SyncStatus:
        count = getattr(stats, sync_status.value)
        table.add_row(Text(sync_status.value, style=_STATUS_STYLES[sync_status]), str(count))
    table.add_row(Text("total", style="bold"), str(stats.total))

    console.print(Panel(table, title="[bold]Events[/bold]", expand=False))
    console.print(
        f"  Mappings: {mapping_stats['enabled']} enabled, {mapping_stats['disabled']} disabled"
        f"  ·  Last sync: {_fmt_time(stats.last_sync_at)}"
    )


# ---------------------------------------------------------------------------
# Subcommands: mappings
# ---------------------------------------------------------------------------


@mappings_app.command("list")
def mappings_list() -> None:
    """List calendar mappings."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        mappings = CalendarMappingRegistry(state_db).all()

    if not mappings:
        console.print("[yellow]No mappings configured.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right")
    table.add_column("Calendar", overflow="fold")
    table.add_column("Category")
    table.add_column("Enabled")
    table.add_column("Window")
    table.add_column("Last sync")
    for mapping in mappings:
        name_cell = Text()
        name_cell.append(mapping.remote_calendar_name or mapping.remote_calendar_id, style="bold")
        name_cell.append("\n")
        name_cell.append(mapping.remote_calendar_id, style="dim")
        lookback = mapping.lookback_days
        lookahead = mapping.lookahead_days
        window = (
            f"-{lookback if lookback is not None else cfg.lookback_days}d"
            f" / +{lookahead if lookahead is not None else cfg.lookahead_days}d"
        )
        table.add_row(
            str(mapping.id),
            name_cell,
            mapping.local_category,
            Text("yes", style="green") if mapping.enabled else Text("no", style="yellow"),
            window,
            _fmt_time(mapping.last_sync_at),
        )
    console.print(table)


@mappings_app.command("add")
def mappings_add(
    calendar_id: Annotated[str, typer.Argument(help="Remote calendar id")],
    category: Annotated[str, typer.Argument(help="Local category events are filed under")],
    name: Annotated[str, typer.Option("--name", help="Display name of the calendar")] = "",
    disabled: Annotated[
        bool, typer.Option("--disabled", help="Create the mapping disabled")
    ] = False,
    lookback_days: Annotated[
        int | None, typer.Option("--lookback-days", help="Days before today to pull")
    ] = None,
    lookahead_days: Annotated[
        int | None, typer.Option("--lookahead-days", help="Days after today to pull")
    ] = None,
) -> None:
    """Map a remote calendar to a local category."""
    cfg = _build_config()
    try:
        with _open_db(cfg) as state_db:
            mapping = CalendarMappingRegistry(state_db).create(
                calendar_id,
                category,
                remote_calendar_name=name,
                enabled=not disabled,
                lookback_days=lookback_days,
                lookahead_days=lookahead_days,
            )
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    console.print(f"[green]Created mapping #{mapping.id}:[/] {calendar_id} → {category}")


def _toggle_mapping(calendar_id: str, enabled: bool) -> None:
    cfg = _build_config()
    try:
        with _open_db(cfg) as state_db:
            registry = CalendarMappingRegistry(state_db)
            if enabled:
                registry.enable(calendar_id)
            else:
                registry.disable(calendar_id)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    console.print(f"[green]{'Enabled' if enabled else 'Disabled'}:[/] {calendar_id}")


@mappings_app.command("enable")
def mappings_enable(calendar_id: Annotated[str, typer.Argument(help="Remote calendar id")]) -> None:
    """Enable a mapping."""
    _toggle_mapping(calendar_id, True)


@mappings_app.command("disable")
def mappings_disable(
    calendar_id: Annotated[str, typer.Argument(help="Remote calendar id")],
) -> None:
    """Disable a mapping (kept, but skipped by scheduled pulls)."""
    _toggle_mapping(calendar_id, False)


@mappings_app.command("remove")
def mappings_remove(
    mapping_id: Annotated[int, typer.Argument(help="Mapping number from 'mappings list'")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt")] = False,
) -> None:
    """Delete a mapping."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        registry = CalendarMappingRegistry(state_db)
        mapping = registry.get(mapping_id)
        if mapping is None:
            console.print(f"[bold red]Error:[/] No mapping #{mapping_id}")
            raise typer.Exit(1)
        if not yes:
            typer.confirm(
                f"Remove mapping #{mapping_id} ({mapping.remote_calendar_id})?", abort=True
            )
        registry.delete(mapping_id)
    console.print(f"[green]Removed mapping #{mapping_id}[/]")


# ---------------------------------------------------------------------------
# Subcommands: events / history
# ---------------------------------------------------------------------------


@app.command()
def events(
    status_filter: Annotated[
        SyncStatus | None,
        typer.Option("--status", "-s", help="Only show events in this sync status"),
    ] = None,
) -> None:
    """List local events with their sync state."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        if status_filter is None:
            rows = state_db.all_events()
        else:
            rows = state_db.events_by_status([status_filter])

    if not rows:
        console.print("[yellow]No events.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Event", overflow="fold")
    table.add_column("Start")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Remote", overflow="fold")
    table.add_column("Message", overflow="fold")
    for event in rows:
        title_cell = Text()
        title_cell.append(event.title, style="bold")
        title_cell.append("\n")
        title_cell.append(event.id, style="dim")
        remote = f"{event.remote_calendar_id}/{event.remote_id}" if event.remote_id else "—"
        table.add_row(
            title_cell,
            _fmt_time(event.start),
            Text(event.sync_status.value, style=_STATUS_STYLES[event.sync_status]),
            str(event.retry_count),
            remote,
            event.sync_message or "",
        )
    console.print(table)


@app.command()
def history(
    local_id: Annotated[str, typer.Argument(help="Local event id")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of entries")] = 10,
) -> None:
    """Show the sync history of one event."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        rows = state_db.get_sync_history(local_id, limit)

    if not rows:
        console.print(f"[yellow]No history for {local_id}.[/]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    table.add_column("When")
    table.add_column("Direction")
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Message", overflow="fold")
    for row in rows:
        when = datetime.fromtimestamp(row["created_at"]).strftime("%Y-%m-%d %H:%M:%S")
        message = row["message"] or ""
        if row["conflict_resolution"]:
            message = f"[{row['conflict_resolution']}] {message}".strip()
        table.add_row(when, row["direction"], row["action"], row["status"], message)
    console.print(Panel(table, title=f"[bold]History of {local_id}[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommands: admin actions
# ---------------------------------------------------------------------------


@app.command()
def reset(local_id: Annotated[str, typer.Argument(help="Local event id")]) -> None:
    """Clear retry/error/conflict state; the event is pushed again."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        result = SyncEngine(cfg, state_db, client=None).reset(local_id)
    if not result.ok:
        _report_result(result, "Reset")
    console.print(f"[green]Reset:[/] {local_id} is pending again")


@app.command()
def unlink(local_id: Annotated[str, typer.Argument(help="Local event id")]) -> None:
    """Break the sync link of one event; the remote copy is left in place."""
    cfg = _build_config()
    with _open_db(cfg) as state_db:
        result = SyncEngine(cfg, state_db, client=None).unlink(local_id)
    if not result.ok:
        _report_result(result, "Unlinked")
    console.print(f"[green]Unlinked:[/] {local_id}")


@app.command()
def resolve(
    local_id: Annotated[str, typer.Argument(help="Local event id")],
    policy: Annotated[
        ConflictPolicy,
        typer.Option("--policy", "-p", help="remote_wins or local_wins"),
    ] = ConflictPolicy.REMOTE_WINS,
) -> None:
    """Resolve an event parked in conflict."""
    with _open_engine(require_mapping=False) as engine:
        result = engine.resolve_conflict(local_id, policy)
    _report_result(result, "Resolved")


# ---------------------------------------------------------------------------
# Subcommands: engine operations
# ---------------------------------------------------------------------------


@app.command()
def pull() -> None:
    """Pull every enabled calendar into its local category."""
    try:
        with _open_engine() as engine:
            fan_out = engine.sync_all_enabled_calendars()
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None

    results = Table(show_header=True, header_style="bold cyan", box=None, padding=(0, 2))
    results.add_column("Calendar", overflow="fold")
    results.add_column("Synced", justify="right")
    results.add_column("Created", justify="right")
    results.add_column("Updated", justify="right")
    results.add_column("Skipped", justify="right")
    results.add_column("Errors", justify="right")
    for calendar in fan_out.calendars:
        error_val = Text(str(calendar.errors))
        if calendar.errors == 0:
            error_val.append(" ✓", style="green")
        else:
            error_val.stylize("bold red")
        results.add_row(
            calendar.calendar_id,
            str(calendar.events_synced),
            str(calendar.created),
            str(calendar.updated),
            str(calendar.skipped),
            error_val,
        )
    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if not fan_out.success:
        raise typer.Exit(1)


@app.command()
def push(local_id: Annotated[str, typer.Argument(help="Local event id")]) -> None:
    """Push one local event to its remote calendar."""
    with _open_engine(require_mapping=False) as engine:
        result = engine.push(local_id)
    _report_result(result, "Pushed")


@app.command("push-pending")
def push_pending(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum events to push")] = 50,
) -> None:
    """Push every unsynced event."""
    with _open_engine(require_mapping=False) as engine:
        stats = engine.push_pending(limit)

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Pushed", str(stats["pushed"]))
    results.add_row("Skipped", str(stats["skipped"]))
    error_val = Text(str(stats["failed"]))
    if stats["failed"] == 0:
        error_val.append(" ✓", style="green")
    else:
        error_val.stylize("bold red")
    results.add_row("Failed", error_val)
    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))

    if stats["failed"]:
        raise typer.Exit(1)


@app.command()
def retry(
    limit: Annotated[
        int | None, typer.Option("--limit", "-n", help="Maximum events to examine")
    ] = None,
) -> None:
    """Run one retry pass over failed events."""
    with _open_engine(require_mapping=False) as engine:
        stats = engine.retry_failed(limit)

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Processed", str(stats.processed))
    results.add_row("Succeeded", str(stats.succeeded))
    results.add_row("Skipped", str(stats.skipped))
    results.add_row("Failed", str(stats.failed))
    exhausted = Text(str(stats.exhausted))
    if stats.exhausted:
        exhausted.stylize("bold red")
    results.add_row("Exhausted", exhausted)
    console.print(Panel(results, title="[bold]Retry pass[/bold]", expand=False))

    if stats.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
