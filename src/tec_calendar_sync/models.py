"""
Pure data models; no sqlite or remote-client imports.
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import Generic
from typing import TypeVar

DEFAULT_STATE_DB = Path.home() / ".local/share/tec-calendar-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/tec-calendar-sync.conf"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class TransientRemoteError(CalendarSyncError):
    """Network failure or 5xx from the remote service; safe to retry later."""

    pass


class RateLimitError(CalendarSyncError):
    """The remote service asked us to back off for ``retry_after`` seconds."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MappingError(CalendarSyncError):
    """Event data cannot be mapped between local and remote representations."""

    pass


class ConflictError(CalendarSyncError):
    """The remote copy changed underneath an update."""

    pass


class PermanentFailure(CalendarSyncError):
    """Retries for an entity are exhausted."""

    pass


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class SyncStatus(str, enum.Enum):
    UNSYNCED = "unsynced"
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"
    FAILED_PERMANENT = "failed_permanent"


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    MAPPING = "mapping"
    CONFLICT = "conflict"
    PERMANENT = "permanent"
    CANCELLED = "cancelled"
    LOCKED = "locked"


class SyncOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    REMOTE_APPLIED = "remote_applied"
    CONFLICT = "conflict"
    DELETED = "deleted"


class ConflictPolicy(str, enum.Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    MANUAL = "manual"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False


Result = Ok[T] | Err


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class RetryState:
    """Retry bookkeeping embedded in a LocalEvent."""

    attempts: int = 0
    last_attempt_at: datetime | None = None
    terminal: bool = False


@dataclass
class LocalFieldSet:
    """Domain fields of a LocalEvent, as produced by the data mapper."""

    title: str
    start: datetime
    end: datetime
    description: str = ""
    all_day: bool = False
    timezone: str = "UTC"
    venue: str | None = None
    organizer: str | None = None


@dataclass
class LocalEvent:
    """The canonical local record plus its sync state."""

    id: str
    title: str
    start: datetime
    end: datetime
    description: str = ""
    all_day: bool = False
    timezone: str = "UTC"
    venue: str | None = None
    organizer: str | None = None
    category: str | None = None
    remote_id: str | None = None
    remote_calendar_id: str | None = None
    sync_status: SyncStatus = SyncStatus.UNSYNCED
    last_local_modified_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_remote_modified_at: datetime | None = None
    retry: RetryState = field(default_factory=RetryState)
    sync_message: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def retry_count(self) -> int:
        return self.retry.attempts

    @property
    def last_attempt_at(self) -> datetime | None:
        return self.retry.last_attempt_at

    def apply_fields(self, fields: LocalFieldSet):
        """Overwrite the domain fields with ``fields``."""
        self.title = fields.title
        self.description = fields.description
        self.start = fields.start
        self.end = fields.end
        self.all_day = fields.all_day
        self.timezone = fields.timezone
        self.venue = fields.venue
        self.organizer = fields.organizer


@dataclass
class RemoteEvent:
    """Transient event returned by the remote client for one calendar/window."""

    id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    last_modified: datetime
    body: str = ""
    timezone: str = "UTC"
    all_day: bool = False
    location: str | None = None
    organizer: str | None = None


RemotePayload = dict[str, Any]


@dataclass
class CalendarMapping:
    """Which remote calendar syncs into which local category."""

    remote_calendar_id: str
    local_category: str
    remote_calendar_name: str = ""
    enabled: bool = True
    last_sync_at: datetime | None = None
    lookback_days: int | None = None
    lookahead_days: int | None = None
    id: int | None = None


@dataclass
class RateLimiterState:
    rate_limited_until: datetime | None = None
    throttle_delay: float = 0.0


@dataclass
class RateLimitHints:
    """Rate-limit signals surfaced by the remote client after a call."""

    retry_after: float | None = None
    remaining: int | None = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    state_db_path: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    default_calendar_id: str | None = None
    conflict_policy: str = ConflictPolicy.REMOTE_WINS.value
    retry_base_delay_minutes: float = 5.0
    max_retries: int = 3
    rate_limit_threshold: int = 10
    max_throttle_delay: float = 60.0
    throttle_step: float = 5.0
    max_rate_limit_deferrals: int = 3
    lookback_days: int = 30
    lookahead_days: int = 365
    pull_limit: int | None = None
    lock_ttl_seconds: int = 300
    retry_batch_size: int = 50
    identity_context: str | None = None
    client_factory: str | None = None
    mapper_factory: str | None = None
    verbose: bool = False


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@dataclass
class CalendarSyncResult:
    """Outcome of pulling one calendar."""

    calendar_id: str
    events_synced: int = 0
    errors: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    error_message: str | None = None


@dataclass
class FanOutResult:
    """Aggregate outcome of pulling every enabled calendar."""

    calendars: list[CalendarSyncResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_calendars(self) -> int:
        return len(self.calendars)

    @property
    def total_events_synced(self) -> int:
        return sum(c.events_synced for c in self.calendars)

    @property
    def total_errors(self) -> int:
        return sum(c.errors for c in self.calendars)

    @property
    def success(self) -> bool:
        return self.total_errors == 0


@dataclass
class RetryPassResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    exhausted: int = 0


@dataclass
class SyncStats:
    """Per-status counts for reporting."""

    total: int = 0
    unsynced: int = 0
    pending: int = 0
    synced: int = 0
    conflict: int = 0
    error: int = 0
    failed_permanent: int = 0
    last_sync_at: datetime | None = None
