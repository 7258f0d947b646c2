"""
RateLimiter tests: cooldowns from retry-after hints, the decaying throttle,
persistence across instances, and the gateway honouring both before calls.
"""

from datetime import timedelta

from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import RateLimitError
from tec_calendar_sync.models import RateLimitHints
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.rate_limiter import RateLimiter
from tests.conftest import BASE_TIME
from tests.conftest import make_local_event


def _limiter(state_db, clock, **kwargs) -> RateLimiter:
    return RateLimiter(state_db, clock=clock, sleep=clock.sleep, **kwargs)


class TestHints:
    def test_retry_after_sets_cooldown(self, state_db, clock):
        limiter = _limiter(state_db, clock)

        assert limiter.record_response_hints(RateLimitHints(retry_after=30)) == 30
        assert limiter.state.rate_limited_until == BASE_TIME + timedelta(seconds=30)
        assert limiter.should_delay() == 30

        clock.advance(seconds=10)
        assert limiter.should_delay() == 20

        clock.advance(seconds=20)
        assert limiter.should_delay() == 0

    def test_low_remaining_sets_throttle(self, state_db, clock):
        limiter = _limiter(state_db, clock)
        assert limiter.record_response_hints(RateLimitHints(remaining=5)) == 10
        assert limiter.state.throttle_delay == 10

    def test_throttle_is_capped(self, state_db, clock):
        limiter = _limiter(state_db, clock, threshold=50)
        assert limiter.record_response_hints(RateLimitHints(remaining=0)) == 60

    def test_healthy_remaining_changes_nothing(self, state_db, clock):
        limiter = _limiter(state_db, clock)
        assert limiter.record_response_hints(RateLimitHints(remaining=500)) == 0
        assert limiter.record_response_hints(None) == 0
        assert limiter.should_delay() == 0


class TestThrottleDecay:
    def test_throttle_decays_per_consultation(self, state_db, clock):
        limiter = _limiter(state_db, clock)
        limiter.record_response_hints(RateLimitHints(remaining=5))

        assert [limiter.should_delay() for _ in range(4)] == [10, 5, 0, 0]

    def test_state_is_shared_through_the_store(self, state_db, clock):
        _limiter(state_db, clock).record_response_hints(RateLimitHints(retry_after=45))

        # A fresh instance (e.g. after a restart) sees the same cooldown.
        assert _limiter(state_db, clock).should_delay() == 45

    def test_wait_sleeps_on_the_injected_clock(self, state_db, clock):
        limiter = _limiter(state_db, clock)
        limiter.record_response_hints(RateLimitHints(retry_after=12))

        assert limiter.wait() == 12
        assert clock.sleeps == [12]
        assert clock() == BASE_TIME + timedelta(seconds=12)

    def test_reset(self, state_db, clock):
        limiter = _limiter(state_db, clock)
        limiter.record_response_hints(RateLimitHints(retry_after=12))
        limiter.reset()
        assert limiter.should_delay() == 0


class TestGatewayBackpressure:
    def test_retry_after_delays_the_next_call(self, engine, remote, clock, saved_event):
        remote.fail_next("create_event", RateLimitError(retry_after=30))

        result = engine.push(saved_event.id)

        assert result.ok
        first, second = remote.call_times("create_event")
        assert second - first >= timedelta(seconds=30)
        assert len(remote.creates) == 1

    def test_client_hints_win_over_exception(self, engine, remote, clock, saved_event):
        remote.fail_next("create_event", RateLimitError(retry_after=5))
        remote.queue_hints(RateLimitHints(retry_after=90))

        engine.push(saved_event.id)

        first, second = remote.call_times("create_event")
        assert second - first >= timedelta(seconds=90)

    def test_missing_retry_after_uses_default(self, engine, remote, clock, saved_event):
        remote.fail_next("create_event", RateLimitError())

        engine.push(saved_event.id)

        assert clock.sleeps == [60]

    def test_deferrals_run_out(self, engine, remote, state_db, saved_event):
        remote.fail_next("create_event", RateLimitError(retry_after=10), times=4)

        result = engine.push(saved_event.id)

        assert result.kind == ErrorKind.RATE_LIMITED
        event = state_db.get_event(saved_event.id)
        assert event.sync_status == SyncStatus.PENDING
        assert event.sync_message == "Deferred: rate limited"
        assert event.retry_count == 0
        assert len(remote.call_times("create_event")) == 4

    def test_low_remaining_throttles_following_call(self, engine, remote, state_db, clock):
        first = state_db.insert_event(make_local_event("first"))
        second = state_db.insert_event(make_local_event("second"))
        state_db.commit()
        remote.queue_hints(RateLimitHints(remaining=7))

        engine.push(first.id)
        engine.push(second.id)

        assert clock.sleeps == [6]
        assert engine.limiter.state.throttle_delay == 1
