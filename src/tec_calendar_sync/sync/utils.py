"""
Shared plumbing for the sync submodules: context, cancellation and history helpers.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta

from tec_calendar_sync.conflict import ConflictResolver
from tec_calendar_sync.identity import EventIdentityIndex
from tec_calendar_sync.interfaces import DataMapper
from tec_calendar_sync.interfaces import LocalEventStore
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import SyncConfig
from tec_calendar_sync.rate_limiter import RateLimiter
from tec_calendar_sync.registry import CalendarMappingRegistry
from tec_calendar_sync.retry import RetryScheduler
from tec_calendar_sync.sync.gateway import RemoteGateway

# Padding around an event's own time span when looking up its remote copy.
_LOOKUP_PADDING = timedelta(days=1)


class CancellationToken:
    """Cooperative cancellation, checked between events (never mid-call)."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class SyncContext:
    """Everything a sync operation needs, passed explicitly."""

    config: SyncConfig
    state_db: LocalEventStore
    registry: CalendarMappingRegistry
    index: EventIdentityIndex
    gateway: RemoteGateway
    limiter: RateLimiter
    scheduler: RetryScheduler
    resolver: ConflictResolver
    mapper: DataMapper
    clock: Callable[[], datetime]
    logger: logging.Logger
    owner: str = field(default_factory=lambda: f"sync-{uuid.uuid4()}")


def lookup_window(event: LocalEvent) -> tuple[datetime, datetime]:
    """Time window that should contain the remote copy of ``event``."""
    return event.start - _LOOKUP_PADDING, event.end + _LOOKUP_PADDING


def describe(event: LocalEvent) -> str:
    """Identifiers for log lines: local id, remote id and calendar id."""
    return (
        f"local={event.id} remote={event.remote_id or '-'} "
        f"calendar={event.remote_calendar_id or '-'}"
    )


def record(
    ctx: SyncContext,
    event: LocalEvent,
    direction: str,
    action: str,
    status: str,
    message: str = "",
    conflict_resolution: str | None = None,
):
    ctx.state_db.record_history(
        event.id,
        event.remote_id,
        event.remote_calendar_id,
        direction,
        action,
        status,
        message,
        conflict_resolution,
    )
