"""
Collaborator contracts consumed by the sync engine.

The remote calendar client, the data mapper and the local event store are
supplied by the host; these protocols are the whole of what the engine
relies on.
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol
from typing import runtime_checkable

from tec_calendar_sync.models import CalendarMapping
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import LocalFieldSet
from tec_calendar_sync.models import RateLimiterState
from tec_calendar_sync.models import RateLimitHints
from tec_calendar_sync.models import RemoteEvent
from tec_calendar_sync.models import RemotePayload
from tec_calendar_sync.models import SyncStatus


class RemoteCalendarClient(Protocol):
    """Remote multi-calendar service.

    Methods raise the exceptions from ``tec_calendar_sync.models``
    (``TransientRemoteError``, ``RateLimitError``, ``MappingError``,
    ``ConflictError``) or ``OSError`` for network failures.
    """

    def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        limit: int | None = None,
        force_refresh: bool = False,
        identity_context: str | None = None,
    ) -> list[RemoteEvent]: ...

    def create_event(self, calendar_id: str, payload: RemotePayload) -> str: ...

    def update_event(self, calendar_id: str, remote_id: str, payload: RemotePayload) -> bool: ...

    def delete_event(self, calendar_id: str, remote_id: str) -> bool: ...

    def last_response_hints(self) -> RateLimitHints | None:
        """Rate-limit signals reported by the most recent call, if any."""
        ...


class DataMapper(Protocol):
    """Pure field-level transform between local and remote events."""

    def to_remote_payload(self, event: LocalEvent) -> RemotePayload: ...

    def to_local_fields(self, remote: RemoteEvent) -> LocalFieldSet: ...


@runtime_checkable
class LocalEventStore(Protocol):
    """Persistent local events with their sync-state fields."""

    def get_event(self, local_id: str) -> LocalEvent | None: ...

    def insert_event(self, event: LocalEvent) -> LocalEvent: ...

    def save_event(self, event: LocalEvent, touch_local: bool = True) -> LocalEvent: ...

    def save_sync_state(self, event: LocalEvent): ...

    def delete_event(self, local_id: str): ...

    def assign_category(self, local_id: str, category: str): ...

    def find_by_remote(self, calendar_id: str, remote_id: str) -> LocalEvent | None: ...

    def events_by_status(
        self, statuses: Iterable[SyncStatus], limit: int | None = None
    ) -> list[LocalEvent]: ...

    def events_for_retry(self, limit: int | None = None) -> list[LocalEvent]: ...

    def acquire_lock(self, local_id: str, owner: str, now: datetime, ttl_seconds: int) -> bool: ...

    def release_lock(self, local_id: str, owner: str): ...

    def load_rate_limiter_state(self) -> RateLimiterState: ...

    def save_rate_limiter_state(self, state: RateLimiterState): ...

    def enabled_mappings(self) -> list[CalendarMapping]: ...

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
    ): ...

    def commit(self): ...
