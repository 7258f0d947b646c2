"""
Remote API backpressure: cooldown window plus a self-healing throttle delay.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from datetime import timedelta

from tec_calendar_sync.interfaces import LocalEventStore
from tec_calendar_sync.models import RateLimiterState
from tec_calendar_sync.models import RateLimitHints
from tec_calendar_sync.models import utcnow

logger = logging.getLogger(__name__)


class RateLimiter:
    """Tracks ``rate_limited_until`` and a decaying ``throttle_delay``.

    State lives in the store (``load_rate_limiter_state`` /
    ``save_rate_limiter_state``) so a restart resumes the same cooldown.
    ``wait()`` is blocking: callers must invoke it before every remote call.
    """

    def __init__(
        self,
        store: LocalEventStore,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        threshold: int = 10,
        max_throttle_delay: float = 60.0,
        throttle_step: float = 5.0,
    ):
        self.store = store
        self.clock = clock
        self.sleep = sleep
        self.threshold = threshold
        self.max_throttle_delay = max_throttle_delay
        self.throttle_step = throttle_step

    @property
    def state(self) -> RateLimiterState:
        return self.store.load_rate_limiter_state()

    def record_response_hints(self, hints: RateLimitHints | None) -> float:
        """Fold the remote's rate-limit signals into the persisted state.

        Returns the delay (seconds) implied by the hints, 0 if none.
        """
        if hints is None:
            return 0.0

        state = self.store.load_rate_limiter_state()

        if hints.retry_after is not None and hints.retry_after > 0:
            state.rate_limited_until = self.clock() + timedelta(seconds=hints.retry_after)
            self.store.save_rate_limiter_state(state)
            logger.warning(f"Rate limited by remote, cooling down for {hints.retry_after}s")
            return float(hints.retry_after)

        if hints.remaining is not None and hints.remaining < self.threshold:
            delay = min(self.max_throttle_delay, (self.threshold - hints.remaining) * 2)
            state.throttle_delay = float(delay)
            self.store.save_rate_limiter_state(state)
            logger.info(
                f"Low rate limit remaining ({hints.remaining}), throttling next call by {delay}s"
            )
            return float(delay)

        return 0.0

    def should_delay(self) -> float:
        """Seconds the caller must wait before the next remote call.

        Consulting the throttle decays it by ``throttle_step``.
        """
        state = self.store.load_rate_limiter_state()
        now = self.clock()

        if state.rate_limited_until is not None and now < state.rate_limited_until:
            return (state.rate_limited_until - now).total_seconds()

        if state.throttle_delay > 0:
            delay = state.throttle_delay
            state.throttle_delay = max(0.0, delay - self.throttle_step)
            self.store.save_rate_limiter_state(state)
            return delay

        return 0.0

    def wait(self) -> float:
        """Block until the next remote call is allowed; returns seconds slept."""
        delay = self.should_delay()
        if delay > 0:
            logger.debug(f"Delaying remote call by {delay:.1f}s")
            self.sleep(delay)
        return delay

    def reset(self):
        self.store.save_rate_limiter_state(RateLimiterState())
