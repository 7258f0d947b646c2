"""
Named entry points the host wires its triggers to.
"""

import logging

from tec_calendar_sync.models import FanOutResult
from tec_calendar_sync.models import Result
from tec_calendar_sync.models import RetryPassResult
from tec_calendar_sync.models import SyncOutcome
from tec_calendar_sync.sync import CancellationToken
from tec_calendar_sync.sync import SyncEngine

logger = logging.getLogger(__name__)


class SyncDispatcher:
    """Routes host events (saves, deletes, scheduler ticks) to the engine.

    Nothing registers itself globally; the host calls these methods from its
    own save/delete handlers and scheduler. Every trigger runs with a fresh
    cancellation token; ``cancel()`` stops the pass currently running at its
    next event boundary and leaves later triggers unaffected.
    """

    def __init__(self, engine: SyncEngine):
        self.engine = engine
        self.token = CancellationToken()

    def _begin(self) -> CancellationToken:
        self.token = CancellationToken()
        return self.token

    def cancel(self):
        logger.info("Cancellation requested")
        self.token.cancel()

    def on_local_event_saved(self, local_event_id: str) -> Result[SyncOutcome]:
        result = self.engine.push(local_event_id, self._begin())
        if not result.ok:
            logger.warning(
                f"Push after save of {local_event_id} failed ({result.kind.value}): "
                f"{result.message}"
            )
        return result

    def on_local_event_deleted(self, local_event_id: str) -> Result[SyncOutcome]:
        return self.engine.delete(local_event_id)

    def on_scheduled_tick(self) -> FanOutResult:
        return self.engine.sync_all_enabled_calendars(self._begin())

    def on_scheduled_retry_tick(self) -> RetryPassResult:
        return self.engine.retry_failed(token=self._begin())
