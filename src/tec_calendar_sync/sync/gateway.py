"""
Every remote call goes through here: rate-limit wait, hint bookkeeping and
exception-to-Result translation.
"""

import logging
from datetime import datetime

from tec_calendar_sync.interfaces import RemoteCalendarClient
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import ConflictError
from tec_calendar_sync.models import Err
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import MappingError
from tec_calendar_sync.models import Ok
from tec_calendar_sync.models import PermanentFailure
from tec_calendar_sync.models import RateLimitError
from tec_calendar_sync.models import RateLimitHints
from tec_calendar_sync.models import RemoteEvent
from tec_calendar_sync.models import RemotePayload
from tec_calendar_sync.models import Result
from tec_calendar_sync.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

# Cooldown applied when the remote rate-limits us without saying for how long.
DEFAULT_RETRY_AFTER = 60.0


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a collaborator exception onto the sync error taxonomy."""
    if isinstance(exc, RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, MappingError):
        return ErrorKind.MAPPING
    if isinstance(exc, ConflictError):
        return ErrorKind.CONFLICT
    if isinstance(exc, PermanentFailure):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


class RemoteGateway:
    """Wraps a RemoteCalendarClient so callers only ever see Ok/Err.

    A rate-limited call records the cooldown and is retried after waiting it
    out, up to ``max_deferrals`` times; past that it comes back as
    ``Err(RATE_LIMITED)`` and the caller leaves the entity pending.
    """

    def __init__(
        self,
        client: RemoteCalendarClient | None,
        limiter: RateLimiter,
        max_deferrals: int = 3,
        default_retry_after: float = DEFAULT_RETRY_AFTER,
    ):
        self.client = client
        self.limiter = limiter
        self.max_deferrals = max_deferrals
        self.default_retry_after = default_retry_after

    def _client_hints(self) -> RateLimitHints | None:
        hints = getattr(self.client, "last_response_hints", None)
        return hints() if callable(hints) else None

    def _call(self, description: str, method: str, *args, **kwargs) -> Result:
        if self.client is None:
            return Err(ErrorKind.PERMANENT, f"{description}: no remote client configured")
        func = getattr(self.client, method)
        deferrals = 0
        while True:
            self.limiter.wait()
            try:
                value = func(*args, **kwargs)
            except RateLimitError as e:
                reported = self._client_hints() or RateLimitHints()
                retry_after = reported.retry_after or e.retry_after or self.default_retry_after
                self.limiter.record_response_hints(
                    RateLimitHints(retry_after=retry_after, remaining=reported.remaining)
                )
                deferrals += 1
                if deferrals > self.max_deferrals:
                    logger.warning(
                        f"{description}: still rate limited after {self.max_deferrals} deferrals"
                    )
                    return Err(ErrorKind.RATE_LIMITED, f"Rate limited: {e}")
                logger.info(f"{description}: rate limited, deferral {deferrals}")
                continue
            except (CalendarSyncError, OSError) as e:
                self.limiter.record_response_hints(self._client_hints())
                kind = classify_error(e)
                logger.debug(f"{description} failed ({kind.value}): {e}")
                return Err(kind, str(e))
            except Exception as e:
                # Client bugs and malformed responses are retried like outages.
                logger.exception(f"{description} raised unexpectedly: {e}")
                return Err(ErrorKind.TRANSIENT, str(e))

            self.limiter.record_response_hints(self._client_hints())
            return Ok(value)

    def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        limit: int | None = None,
        force_refresh: bool = False,
        identity_context: str | None = None,
    ) -> Result[list[RemoteEvent]]:
        return self._call(
            f"list_events({calendar_id})",
            "list_events",
            calendar_id,
            start,
            end,
            limit=limit,
            force_refresh=force_refresh,
            identity_context=identity_context,
        )

    def create_event(self, calendar_id: str, payload: RemotePayload) -> Result[str]:
        return self._call(
            f"create_event({calendar_id})", "create_event", calendar_id, payload
        )

    def update_event(
        self, calendar_id: str, remote_id: str, payload: RemotePayload
    ) -> Result[bool]:
        return self._call(
            f"update_event({calendar_id}/{remote_id})",
            "update_event",
            calendar_id,
            remote_id,
            payload,
        )

    def delete_event(self, calendar_id: str, remote_id: str) -> Result[bool]:
        return self._call(
            f"delete_event({calendar_id}/{remote_id})",
            "delete_event",
            calendar_id,
            remote_id,
        )
