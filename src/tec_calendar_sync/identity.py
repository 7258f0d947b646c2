"""
Remote id ⇄ local event resolution.
"""

import logging

from tec_calendar_sync.interfaces import LocalEventStore
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import SyncStatus

logger = logging.getLogger(__name__)


class EventIdentityIndex:
    """Resolves mirrors through the store on every call (no cache).

    The answer gates the create-vs-update decision and must reflect the
    latest committed state.
    """

    def __init__(self, state_db: LocalEventStore):
        self.state_db = state_db

    def find_local_by_remote(self, calendar_id: str, remote_id: str) -> LocalEvent | None:
        return self.state_db.find_by_remote(calendar_id, remote_id)

    def find_remote_of(self, local_event_id: str) -> tuple[str, str] | None:
        event = self.state_db.get_event(local_event_id)
        if event is None or not event.remote_id or not event.remote_calendar_id:
            return None
        return event.remote_calendar_id, event.remote_id

    def link(self, event: LocalEvent, calendar_id: str, remote_id: str):
        """Record ``event`` as the mirror of ``calendar_id``/``remote_id``."""
        holder = self.find_local_by_remote(calendar_id, remote_id)
        if holder is not None and holder.id != event.id:
            raise CalendarSyncError(
                f"Remote event {calendar_id}/{remote_id} is already mirrored by {holder.id}"
            )
        event.remote_calendar_id = calendar_id
        event.remote_id = remote_id
        self.state_db.save_sync_state(event)

    def unlink(self, local_event_id: str) -> LocalEvent | None:
        """Break the sync relationship of one local event."""
        event = self.state_db.get_event(local_event_id)
        if event is None:
            return None
        logger.info(
            f"Unlinking local event {event.id} from {event.remote_calendar_id}/{event.remote_id}"
        )
        event.remote_id = None
        event.remote_calendar_id = None
        event.sync_status = SyncStatus.UNSYNCED
        event.last_sync_at = None
        event.last_remote_modified_at = None
        event.sync_message = None
        event.error_kind = None
        event.retry.attempts = 0
        event.retry.last_attempt_at = None
        event.retry.terminal = False
        self.state_db.save_sync_state(event)
        self.state_db.commit()
        return event
