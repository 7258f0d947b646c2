"""
SyncEngine: thin orchestrator that delegates to sync submodules.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta

from tec_calendar_sync.conflict import ConflictResolver
from tec_calendar_sync.db import StateDatabase
from tec_calendar_sync.identity import EventIdentityIndex
from tec_calendar_sync.interfaces import DataMapper
from tec_calendar_sync.interfaces import RemoteCalendarClient
from tec_calendar_sync.mapper import FieldMapper
from tec_calendar_sync.models import CalendarSyncResult
from tec_calendar_sync.models import ConflictPolicy
from tec_calendar_sync.models import Err
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import FanOutResult
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import Ok
from tec_calendar_sync.models import Result
from tec_calendar_sync.models import RetryPassResult
from tec_calendar_sync.models import SyncConfig
from tec_calendar_sync.models import SyncOutcome
from tec_calendar_sync.models import SyncStats
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.models import utcnow
from tec_calendar_sync.rate_limiter import RateLimiter
from tec_calendar_sync.registry import CalendarMappingRegistry
from tec_calendar_sync.retry import RetryScheduler
from tec_calendar_sync.sync.gateway import RemoteGateway
from tec_calendar_sync.sync.pull import sync_all_enabled_calendars
from tec_calendar_sync.sync.pull import sync_single_calendar
from tec_calendar_sync.sync.push import delete_event
from tec_calendar_sync.sync.push import push_event
from tec_calendar_sync.sync.push import push_pending
from tec_calendar_sync.sync.push import resolve_conflict
from tec_calendar_sync.sync.retry_pass import retry_failed
from tec_calendar_sync.sync.utils import CancellationToken
from tec_calendar_sync.sync.utils import SyncContext
from tec_calendar_sync.sync.utils import record

__all__ = ["CancellationToken", "SyncEngine"]


class SyncEngine:
    """Main synchronization engine.

    Owns nothing but wiring: the state database is opened and closed by the
    caller, the remote client and mapper are injected. Without a client only
    the admin actions (reset, unlink) are useful; remote calls come back as
    ``Err(PERMANENT)``.
    """

    def __init__(
        self,
        config: SyncConfig,
        state_db: StateDatabase,
        client: RemoteCalendarClient | None,
        mapper: DataMapper | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.state_db = state_db
        self.registry = CalendarMappingRegistry(state_db)
        self.index = EventIdentityIndex(state_db)
        self.limiter = RateLimiter(
            state_db,
            clock=clock,
            sleep=sleep,
            threshold=config.rate_limit_threshold,
            max_throttle_delay=config.max_throttle_delay,
            throttle_step=config.throttle_step,
        )
        self.scheduler = RetryScheduler(
            base_delay=timedelta(minutes=config.retry_base_delay_minutes),
            max_retries=config.max_retries,
        )
        self.resolver = ConflictResolver(config.conflict_policy)
        self.ctx = SyncContext(
            config=config,
            state_db=state_db,
            registry=self.registry,
            index=self.index,
            gateway=RemoteGateway(client, self.limiter, config.max_rate_limit_deferrals),
            limiter=self.limiter,
            scheduler=self.scheduler,
            resolver=self.resolver,
            mapper=mapper or FieldMapper(),
            clock=clock,
            logger=self.logger,
        )

    # Push direction

    def push(
        self, local_event_id: str, token: CancellationToken | None = None
    ) -> Result[SyncOutcome]:
        return push_event(self.ctx, local_event_id, token)

    def push_pending(
        self, limit: int = 50, token: CancellationToken | None = None
    ) -> dict[str, int]:
        return push_pending(self.ctx, limit, token)

    def delete(self, local_event_id: str) -> Result[SyncOutcome]:
        return delete_event(self.ctx, local_event_id)

    def retry_failed(
        self, limit: int | None = None, token: CancellationToken | None = None
    ) -> RetryPassResult:
        return retry_failed(self.ctx, limit, token)

    # Pull direction

    def sync_single_calendar(
        self,
        calendar_id: str,
        category: str,
        window_start: datetime,
        window_end: datetime,
        token: CancellationToken | None = None,
    ) -> CalendarSyncResult:
        return sync_single_calendar(
            self.ctx, calendar_id, category, window_start, window_end, token
        )

    def sync_all_enabled_calendars(self, token: CancellationToken | None = None) -> FanOutResult:
        return sync_all_enabled_calendars(self.ctx, token)

    # Admin actions

    def reset(self, local_event_id: str) -> Result[LocalEvent]:
        """Clear retry, error and conflict state; the event goes back to pending."""
        event = self.state_db.get_event(local_event_id)
        if event is None:
            return Err(ErrorKind.PERMANENT, f"Local event {local_event_id} not found")
        self.scheduler.clear(event)
        event.sync_status = SyncStatus.PENDING
        event.sync_message = None
        self.state_db.save_sync_state(event)
        record(self.ctx, event, "push", "reset", "success")
        self.state_db.commit()
        self.logger.info(f"Reset sync state of local event {local_event_id}")
        return Ok(event)

    def unlink(self, local_event_id: str) -> Result[LocalEvent]:
        """Break the sync relationship; the remote copy is left alone."""
        event = self.index.unlink(local_event_id)
        if event is None:
            return Err(ErrorKind.PERMANENT, f"Local event {local_event_id} not found")
        return Ok(event)

    def resolve_conflict(
        self, local_event_id: str, policy: str | ConflictPolicy
    ) -> Result[SyncOutcome]:
        return resolve_conflict(self.ctx, local_event_id, policy)

    def statistics(self) -> SyncStats:
        return self.state_db.sync_statistics()
