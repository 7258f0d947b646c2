"""
Preflight checks run before sync to catch common misconfigurations early.
"""

import logging
import sqlite3
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from tec_calendar_sync.config import resolve_factory
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import SyncConfig

logger = logging.getLogger(__name__)


def build_client(cfg: SyncConfig) -> Any:
    """Instantiate the remote client named by ``client_factory``."""
    if not cfg.client_factory:
        raise CalendarSyncError("No client_factory configured")
    return resolve_factory(cfg.client_factory)(cfg)


def run_preflight_checks(
    cfg: SyncConfig,
    console: Console,
    require_mapping: bool = True,
) -> Any | None:
    """Return the remote client if sync may proceed; print issues and return None otherwise."""
    issues: list[tuple[str, str, str]] = []  # (label, detail, hint)

    # 1. Client factory resolves and builds a client
    client = None
    try:
        client = build_client(cfg)
    except Exception as e:
        logger.error(f"Cannot build remote client: {e}")
        issues.append(
            (
                "Remote client",
                str(e),
                "Set client_factory = package.module:callable in the [calendar-sync] section",
            )
        )

    # 2. State DB parent dir writable + DB readable if it exists
    db_path = cfg.state_db_path
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Cannot create state DB directory {db_path.parent}: {e}")
        issues.append(
            (
                "State database",
                f"{db_path}: {e}",
                f"Check permissions on {db_path.parent}",
            )
        )
    else:
        if db_path.exists():
            try:
                conn = sqlite3.connect(db_path)
                conn.execute("SELECT 1")
                # BEGIN IMMEDIATE takes the write lock and needs a journal file
                # next to the DB.
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("ROLLBACK")
                conn.close()
            except sqlite3.Error as e:
                logger.error(f"State DB not readable/writable ({db_path}): {e}")
                issues.append(
                    (
                        "State database",
                        f"{db_path}: {e}",
                        f"Check permissions on {db_path.parent} "
                        f"(journal files must be creatable alongside the DB)",
                    )
                )

    # 3. At least one enabled mapping
    if not db_path.exists() or not _has_enabled_mapping(db_path):
        if require_mapping:
            issues.append(
                (
                    "Calendar mappings",
                    "No enabled mapping",
                    "Run: tec-calendar-sync mappings add CALENDAR_ID CATEGORY",
                )
            )
        else:
            logger.warning("No enabled calendar mapping; pushes rely on default_calendar_id")

    if issues:
        _print_issues(issues, console)
        return None

    return client


def _has_enabled_mapping(db_path) -> bool:
    try:
        conn = sqlite3.connect(db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM calendar_mappings WHERE enabled = 1"
            ).fetchone()
        finally:
            conn.close()
    except sqlite3.Error:
        return False
    return bool(row and row[0])


def _print_issues(issues: list[tuple[str, str, str]], console: Console) -> None:
    body = Text()
    for i, (label, detail, hint) in enumerate(issues):
        if i:
            body.append("\n")
        body.append(f"  ✗  {label}: ", style="bold red")
        body.append(detail, style="bold red")
        body.append(f"\n       → {hint}", style="yellow")

    console.print(Panel(body, title="[bold red]Preflight checks failed[/bold red]"))
