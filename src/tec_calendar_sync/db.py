"""
SQLite persistence for local events, calendar mappings and sync state.
"""

import sqlite3
import uuid
from collections.abc import Callable
from collections.abc import Iterable
from datetime import datetime
from datetime import timezone
from pathlib import Path

from tec_calendar_sync.models import CalendarMapping
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import RateLimiterState
from tec_calendar_sync.models import RetryState
from tec_calendar_sync.models import SyncStats
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.models import utcnow

# Columns written by save_event(); lock columns are owned by acquire/release_lock.
_EVENT_COLUMNS = (
    "id",
    "title",
    "description",
    "start_at",
    "end_at",
    "all_day",
    "timezone",
    "venue",
    "organizer",
    "category",
    "remote_id",
    "remote_calendar_id",
    "sync_status",
    "last_local_modified_at",
    "last_sync_at",
    "last_remote_modified_at",
    "retry_count",
    "last_attempt_at",
    "retry_terminal",
    "sync_message",
    "error_kind",
)

_SYNC_STATE_COLUMNS = (
    "remote_id",
    "remote_calendar_id",
    "sync_status",
    "last_sync_at",
    "last_remote_modified_at",
    "retry_count",
    "last_attempt_at",
    "retry_terminal",
    "sync_message",
    "error_kind",
)


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value is not None else None


class StateDatabase:
    """SQLite-backed local event store and sync-state database."""

    def __init__(self, db_path: Path, clock: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self.clock = clock
        self.conn: sqlite3.Connection | None = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def connect(self):
        """Initialize and connect to the state database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self._init_schema()

    def _init_schema(self):
        """Create tables and indexes if they don't exist."""
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS local_events (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                start_at REAL NOT NULL,
                end_at REAL NOT NULL,
                all_day INTEGER NOT NULL DEFAULT 0,
                timezone TEXT NOT NULL DEFAULT 'UTC',
                venue TEXT,
                organizer TEXT,
                category TEXT,
                remote_id TEXT,
                remote_calendar_id TEXT,
                sync_status TEXT NOT NULL DEFAULT 'unsynced',
                last_local_modified_at REAL,
                last_sync_at REAL,
                last_remote_modified_at REAL,
                retry_count INTEGER NOT NULL DEFAULT 0,
                last_attempt_at REAL,
                retry_terminal INTEGER NOT NULL DEFAULT 0,
                sync_message TEXT,
                error_kind TEXT,
                lock_owner TEXT,
                locked_until REAL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS ux_local_events_remote
                ON local_events (remote_calendar_id, remote_id);
            CREATE INDEX IF NOT EXISTS ix_local_events_status
                ON local_events (sync_status);

            CREATE TABLE IF NOT EXISTS calendar_mappings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                remote_calendar_id TEXT NOT NULL UNIQUE,
                remote_calendar_name TEXT NOT NULL DEFAULT '',
                local_category TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                last_sync_at REAL,
                lookback_days INTEGER,
                lookahead_days INTEGER
            );

            CREATE TABLE IF NOT EXISTS sync_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                local_event_id TEXT,
                remote_id TEXT,
                calendar_id TEXT,
                direction TEXT NOT NULL,
                action TEXT NOT NULL,
                status TEXT NOT NULL,
                message TEXT NOT NULL DEFAULT '',
                conflict_resolution TEXT,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS ix_sync_history_event
                ON sync_history (local_event_id, created_at);

            CREATE TABLE IF NOT EXISTS sync_kv (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Local events                                                         #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> LocalEvent:
        return LocalEvent(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            start=_dt(row["start_at"]),
            end=_dt(row["end_at"]),
            all_day=bool(row["all_day"]),
            timezone=row["timezone"],
            venue=row["venue"],
            organizer=row["organizer"],
            category=row["category"],
            remote_id=row["remote_id"],
            remote_calendar_id=row["remote_calendar_id"],
            sync_status=SyncStatus(row["sync_status"]),
            last_local_modified_at=_dt(row["last_local_modified_at"]),
            last_sync_at=_dt(row["last_sync_at"]),
            last_remote_modified_at=_dt(row["last_remote_modified_at"]),
            retry=RetryState(
                attempts=row["retry_count"],
                last_attempt_at=_dt(row["last_attempt_at"]),
                terminal=bool(row["retry_terminal"]),
            ),
            sync_message=row["sync_message"],
            error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        )

    @staticmethod
    def _event_values(event: LocalEvent) -> dict:
        return {
            "id": event.id,
            "title": event.title,
            "description": event.description,
            "start_at": _ts(event.start),
            "end_at": _ts(event.end),
            "all_day": int(event.all_day),
            "timezone": event.timezone,
            "venue": event.venue,
            "organizer": event.organizer,
            "category": event.category,
            "remote_id": event.remote_id,
            "remote_calendar_id": event.remote_calendar_id,
            "sync_status": SyncStatus(event.sync_status).value,
            "last_local_modified_at": _ts(event.last_local_modified_at),
            "last_sync_at": _ts(event.last_sync_at),
            "last_remote_modified_at": _ts(event.last_remote_modified_at),
            "retry_count": event.retry.attempts,
            "last_attempt_at": _ts(event.retry.last_attempt_at),
            "retry_terminal": int(event.retry.terminal),
            "sync_message": event.sync_message,
            "error_kind": event.error_kind.value if event.error_kind else None,
        }

    def get_event(self, local_id: str) -> LocalEvent | None:
        cursor = self.conn.execute("SELECT * FROM local_events WHERE id = ?", (local_id,))
        row = cursor.fetchone()
        return self._row_to_event(row) if row else None

    def insert_event(self, event: LocalEvent) -> LocalEvent:
        """Insert a new local event, assigning an id if it has none."""
        if not event.id:
            event.id = str(uuid.uuid4())
        if event.last_local_modified_at is None:
            event.last_local_modified_at = self.clock()
        values = self._event_values(event)
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        try:
            self.conn.execute(
                f"INSERT INTO local_events ({', '.join(_EVENT_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[c] for c in _EVENT_COLUMNS),
            )
        except sqlite3.IntegrityError as e:
            raise CalendarSyncError(f"Cannot insert local event {event.id}: {e}") from e
        return event

    def save_event(self, event: LocalEvent, touch_local: bool = True) -> LocalEvent:
        """Upsert the full event row.

        ``touch_local`` stamps ``last_local_modified_at``; writes coming from
        the pull direction pass False so they don't look like local edits.
        """
        if not event.id:
            return self.insert_event(event)
        if touch_local:
            event.last_local_modified_at = self.clock()
        values = self._event_values(event)
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _EVENT_COLUMNS if c != "id")
        try:
            self.conn.execute(
                f"INSERT INTO local_events ({', '.join(_EVENT_COLUMNS)}) "
                f"VALUES ({placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                tuple(values[c] for c in _EVENT_COLUMNS),
            )
        except sqlite3.IntegrityError as e:
            raise CalendarSyncError(f"Cannot save local event {event.id}: {e}") from e
        return event

    def save_sync_state(self, event: LocalEvent):
        """Persist only the sync-state columns of ``event``."""
        values = self._event_values(event)
        assignments = ", ".join(f"{c} = ?" for c in _SYNC_STATE_COLUMNS)
        try:
            self.conn.execute(
                f"UPDATE local_events SET {assignments} WHERE id = ?",
                tuple(values[c] for c in _SYNC_STATE_COLUMNS) + (event.id,),
            )
        except sqlite3.IntegrityError as e:
            raise CalendarSyncError(
                f"Remote event {event.remote_calendar_id}/{event.remote_id} "
                f"is already mirrored by another local event"
            ) from e

    def delete_event(self, local_id: str):
        self.conn.execute("DELETE FROM local_events WHERE id = ?", (local_id,))

    def assign_category(self, local_id: str, category: str):
        self.conn.execute(
            "UPDATE local_events SET category = ? WHERE id = ?",
            (category, local_id),
        )

    def find_by_remote(self, calendar_id: str, remote_id: str) -> LocalEvent | None:
        cursor = self.conn.execute(
            "SELECT * FROM local_events WHERE remote_calendar_id = ? AND remote_id = ? LIMIT 1",
            (calendar_id, remote_id),
        )
        row = cursor.fetchone()
        return self._row_to_event(row) if row else None

    def events_by_status(
        self, statuses: Iterable[SyncStatus], limit: int | None = None
    ) -> list[LocalEvent]:
        """Events in any of ``statuses``, oldest attempt first."""
        values = [SyncStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        sql = (
            f"SELECT * FROM local_events WHERE sync_status IN ({placeholders}) "
            f"ORDER BY COALESCE(last_attempt_at, 0), id"
        )
        params: list = list(values)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_event(row) for row in self.conn.execute(sql, params)]

    def events_for_retry(self, limit: int | None = None) -> list[LocalEvent]:
        """Candidates for the retry pass: retryable errors plus stale pending rows.

        Pending rows that were never attempted belong to the bulk push.
        """
        sql = (
            "SELECT * FROM local_events "
            "WHERE (sync_status = ? AND COALESCE(error_kind, '') != ?) "
            "OR (sync_status = ? AND last_attempt_at IS NOT NULL) "
            "ORDER BY COALESCE(last_attempt_at, 0), id"
        )
        params: list = [SyncStatus.ERROR.value, ErrorKind.MAPPING.value, SyncStatus.PENDING.value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_event(row) for row in self.conn.execute(sql, params)]

    def all_events(self) -> list[LocalEvent]:
        cursor = self.conn.execute("SELECT * FROM local_events ORDER BY start_at, id")
        return [self._row_to_event(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------ #
    # Per-entity lease lock                                                #
    # ------------------------------------------------------------------ #

    def acquire_lock(self, local_id: str, owner: str, now: datetime, ttl_seconds: int) -> bool:
        """Take the advisory lease on an event; True if we now hold it."""
        cursor = self.conn.execute(
            "UPDATE local_events SET lock_owner = ?, locked_until = ? "
            "WHERE id = ? AND (lock_owner IS NULL OR lock_owner = ? OR locked_until < ?)",
            (owner, now.timestamp() + ttl_seconds, local_id, owner, now.timestamp()),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def release_lock(self, local_id: str, owner: str):
        self.conn.execute(
            "UPDATE local_events SET lock_owner = NULL, locked_until = NULL "
            "WHERE id = ? AND lock_owner = ?",
            (local_id, owner),
        )
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Rate limiter state                                                   #
    # ------------------------------------------------------------------ #

    def _get_kv(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM sync_kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_kv(self, key: str, value: str | None):
        self.conn.execute(
            "INSERT INTO sync_kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def load_rate_limiter_state(self) -> RateLimiterState:
        until = self._get_kv("rate_limited_until")
        delay = self._get_kv("throttle_delay")
        return RateLimiterState(
            rate_limited_until=_dt(float(until)) if until else None,
            throttle_delay=float(delay) if delay else 0.0,
        )

    def save_rate_limiter_state(self, state: RateLimiterState):
        until = _ts(state.rate_limited_until)
        self._set_kv("rate_limited_until", repr(until) if until is not None else None)
        self._set_kv("throttle_delay", repr(float(state.throttle_delay)))
        self.conn.commit()

    # ------------------------------------------------------------------ #
    # Calendar mappings                                                    #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _row_to_mapping(row: sqlite3.Row) -> CalendarMapping:
        return CalendarMapping(
            id=row["id"],
            remote_calendar_id=row["remote_calendar_id"],
            remote_calendar_name=row["remote_calendar_name"],
            local_category=row["local_category"],
            enabled=bool(row["enabled"]),
            last_sync_at=_dt(row["last_sync_at"]),
            lookback_days=row["lookback_days"],
            lookahead_days=row["lookahead_days"],
        )

    def insert_mapping(self, mapping: CalendarMapping) -> CalendarMapping:
        try:
            cursor = self.conn.execute(
                "INSERT INTO calendar_mappings "
                "(remote_calendar_id, remote_calendar_name, local_category, enabled, "
                " last_sync_at, lookback_days, lookahead_days) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    mapping.remote_calendar_id,
                    mapping.remote_calendar_name,
                    mapping.local_category,
                    int(mapping.enabled),
                    _ts(mapping.last_sync_at),
                    mapping.lookback_days,
                    mapping.lookahead_days,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise CalendarSyncError(
                f"A mapping for calendar {mapping.remote_calendar_id} already exists"
            ) from e
        mapping.id = cursor.lastrowid
        return mapping

    def update_mapping(self, mapping: CalendarMapping):
        self.conn.execute(
            "UPDATE calendar_mappings SET remote_calendar_id = ?, remote_calendar_name = ?, "
            "local_category = ?, enabled = ?, last_sync_at = ?, "
            "lookback_days = ?, lookahead_days = ? WHERE id = ?",
            (
                mapping.remote_calendar_id,
                mapping.remote_calendar_name,
                mapping.local_category,
                int(mapping.enabled),
                _ts(mapping.last_sync_at),
                mapping.lookback_days,
                mapping.lookahead_days,
                mapping.id,
            ),
        )

    def get_mapping(self, mapping_id: int) -> CalendarMapping | None:
        row = self.conn.execute(
            "SELECT * FROM calendar_mappings WHERE id = ?", (mapping_id,)
        ).fetchone()
        return self._row_to_mapping(row) if row else None

    def get_mapping_by_calendar_id(self, calendar_id: str) -> CalendarMapping | None:
        row = self.conn.execute(
            "SELECT * FROM calendar_mappings WHERE remote_calendar_id = ?", (calendar_id,)
        ).fetchone()
        return self._row_to_mapping(row) if row else None

    def all_mappings(self) -> list[CalendarMapping]:
        cursor = self.conn.execute("SELECT * FROM calendar_mappings ORDER BY id")
        return [self._row_to_mapping(row) for row in cursor.fetchall()]

    def enabled_mappings(self) -> list[CalendarMapping]:
        cursor = self.conn.execute("SELECT * FROM calendar_mappings WHERE enabled = 1 ORDER BY id")
        return [self._row_to_mapping(row) for row in cursor.fetchall()]

    def delete_mapping(self, mapping_id: int):
        self.conn.execute("DELETE FROM calendar_mappings WHERE id = ?", (mapping_id,))

    def touch_mapping_last_sync(self, calendar_id: str, when: datetime):
        self.conn.execute(
            "UPDATE calendar_mappings SET last_sync_at = ? WHERE remote_calendar_id = ?",
            (_ts(when), calendar_id),
        )

    # ------------------------------------------------------------------ #
    # Sync history                                                         #
    # ------------------------------------------------------------------ #

    def record_history(
        self,
        local_event_id: str | None,
        remote_id: str | None,
        calendar_id: str | None,
        direction: str,
        action: str,
        status: str,
        message: str = "",
        conflict_resolution: str | None = None,
    ):
        self.conn.execute(
            "INSERT INTO sync_history "
            "(local_event_id, remote_id, calendar_id, direction, action, status, "
            " message, conflict_resolution, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                local_event_id,
                remote_id,
                calendar_id,
                direction,
                action,
                status,
                message,
                conflict_resolution,
                self.clock().timestamp(),
            ),
        )

    def get_sync_history(self, local_event_id: str, limit: int = 10) -> list[sqlite3.Row]:
        """Most recent history rows for one event, newest first."""
        cursor = self.conn.execute(
            "SELECT * FROM sync_history WHERE local_event_id = ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (local_event_id, limit),
        )
        return cursor.fetchall()

    def cleanup_history(self, older_than: datetime) -> int:
        """Delete history rows older than ``older_than``; returns rows removed."""
        cursor = self.conn.execute(
            "DELETE FROM sync_history WHERE created_at < ?", (older_than.timestamp(),)
        )
        self.conn.commit()
        return cursor.rowcount

    # ------------------------------------------------------------------ #
    # Reporting                                                            #
    # ------------------------------------------------------------------ #

    def sync_statistics(self) -> SyncStats:
        stats = SyncStats()
        cursor = self.conn.execute(
            "SELECT sync_status, COUNT(*) AS count FROM local_events GROUP BY sync_status"
        )
        for row in cursor.fetchall():
            setattr(stats, row["sync_status"], row["count"])
            stats.total += row["count"]
        last = self.conn.execute("SELECT MAX(last_sync_at) FROM local_events").fetchone()[0]
        stats.last_sync_at = _dt(last)
        return stats

    def commit(self):
        """Commit pending transactions."""
        if self.conn:
            self.conn.commit()

    def close(self):
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
