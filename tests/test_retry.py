"""
RetryScheduler unit tests plus the end-to-end backoff schedule driven through
SyncEngine.retry_failed() with a fake clock.
"""

from datetime import timedelta

from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import PermanentFailure
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.models import TransientRemoteError
from tec_calendar_sync.retry import RetryScheduler
from tec_calendar_sync.sync.gateway import classify_error
from tests.conftest import BASE_TIME
from tests.conftest import make_local_event


class TestScheduler:
    def test_delay_doubles(self):
        scheduler = RetryScheduler()
        assert [scheduler.delay_for(n) for n in range(3)] == [
            timedelta(minutes=5),
            timedelta(minutes=10),
            timedelta(minutes=20),
        ]

    def test_due_only_after_backoff(self):
        scheduler = RetryScheduler()
        event = make_local_event()
        event.retry.attempts = 1
        event.retry.last_attempt_at = BASE_TIME

        assert not scheduler.is_due(event, BASE_TIME + timedelta(minutes=9))
        assert scheduler.is_due(event, BASE_TIME + timedelta(minutes=10))
        assert scheduler.next_eligible_at(event) == BASE_TIME + timedelta(minutes=10)

    def test_never_attempted_is_due(self):
        assert RetryScheduler().is_due(make_local_event(), BASE_TIME)

    def test_failure_at_max_is_terminal(self):
        scheduler = RetryScheduler(max_retries=3)
        event = make_local_event()
        event.retry.attempts = 3

        status = scheduler.record_failure(event, ErrorKind.TRANSIENT, "503")

        assert status == SyncStatus.FAILED_PERMANENT
        assert event.error_kind == ErrorKind.PERMANENT
        assert event.retry.terminal
        assert scheduler.next_eligible_at(event) is None

    def test_mapping_failure_does_not_spend_retries(self):
        scheduler = RetryScheduler()
        event = make_local_event()

        status = scheduler.record_failure(event, ErrorKind.MAPPING, "bad timezone")

        assert status == SyncStatus.ERROR
        assert event.error_kind == ErrorKind.MAPPING
        assert event.retry.attempts == 0

    def test_exhaustion_reports_a_permanent_failure(self):
        event = make_local_event()
        event.remote_calendar_id = "cal-team"

        failure = RetryScheduler().mark_exhausted(event, "Max retries exceeded: 503")

        assert isinstance(failure, PermanentFailure)
        assert classify_error(failure) == ErrorKind.PERMANENT
        assert "Max retries exceeded: 503" in str(failure)
        assert f"local={event.id}" in str(failure)
        assert "calendar=cal-team" in str(failure)


class TestBackoffSchedule:
    def test_backoff_growth_then_terminal(self, engine, remote, state_db, clock, saved_event):
        remote.fail_next("create_event", TransientRemoteError("503 Service Unavailable"), times=10)
        scheduler = engine.scheduler

        # Initial push at t0 fails.
        assert engine.push(saved_event.id).kind == ErrorKind.TRANSIENT
        event = state_db.get_event(saved_event.id)
        assert event.sync_status == SyncStatus.ERROR
        assert scheduler.next_eligible_at(event) == BASE_TIME + timedelta(minutes=5)

        # Still inside the window: nothing happens.
        clock.advance(minutes=4)
        stats = engine.retry_failed()
        assert stats.processed == 0
        assert stats.skipped == 1
        assert len(remote.call_times("create_event")) == 1

        # t0+5m: retry #1 fails, next at t0+15m.
        clock.advance(minutes=1)
        assert engine.retry_failed().failed == 1
        event = state_db.get_event(saved_event.id)
        assert event.retry_count == 1
        assert scheduler.next_eligible_at(event) == BASE_TIME + timedelta(minutes=15)

        clock.advance(minutes=9)
        assert engine.retry_failed().processed == 0

        # t0+15m: retry #2 fails, next at t0+35m.
        clock.advance(minutes=1)
        engine.retry_failed()
        event = state_db.get_event(saved_event.id)
        assert event.retry_count == 2
        assert scheduler.next_eligible_at(event) == BASE_TIME + timedelta(minutes=35)

        # t0+35m: the fourth failure is terminal.
        clock.advance(minutes=20)
        stats = engine.retry_failed()
        assert stats.exhausted == 1
        event = state_db.get_event(saved_event.id)
        assert event.sync_status == SyncStatus.FAILED_PERMANENT
        assert event.error_kind == ErrorKind.PERMANENT

        # Terminal entities are never scanned again.
        clock.advance(minutes=120)
        assert engine.retry_failed().processed == 0
        assert len(remote.call_times("create_event")) == 4

    def test_retry_success_clears_state(self, engine, remote, state_db, clock, saved_event):
        remote.fail_next("create_event", TransientRemoteError("timeout"))
        engine.push(saved_event.id)

        clock.advance(minutes=5)
        stats = engine.retry_failed()

        assert stats.succeeded == 1
        event = state_db.get_event(saved_event.id)
        assert event.sync_status == SyncStatus.SYNCED
        assert event.retry_count == 0
        assert event.last_attempt_at is None
        assert event.remote_id

    def test_interrupted_attempt_is_picked_up(self, engine, remote, state_db, clock, saved_event):
        # A crash right after "pending + last_attempt_at" was committed.
        saved_event.sync_status = SyncStatus.PENDING
        saved_event.retry.last_attempt_at = BASE_TIME
        state_db.save_sync_state(saved_event)
        state_db.commit()

        assert engine.retry_failed().processed == 0
        clock.advance(minutes=5)
        assert engine.retry_failed().succeeded == 1
        assert len(remote.creates) == 1

    def test_reset_event_waits_for_the_bulk_push(self, engine, remote, state_db, saved_event):
        saved_event.sync_status = SyncStatus.FAILED_PERMANENT
        saved_event.retry.attempts = 3
        saved_event.retry.terminal = True
        state_db.save_sync_state(saved_event)
        state_db.commit()
        engine.reset(saved_event.id)

        assert engine.retry_failed().processed == 0
        assert state_db.get_event(saved_event.id).retry_count == 0
        assert remote.creates == []

    def test_os_errors_count_as_transient(self, engine, remote, state_db, saved_event):
        remote.fail_next("create_event", ConnectionResetError("reset by peer"))

        result = engine.push(saved_event.id)

        assert result.kind == ErrorKind.TRANSIENT
        assert state_db.get_event(saved_event.id).sync_status == SyncStatus.ERROR
