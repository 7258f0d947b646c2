"""
Unit tests for StateDatabase: event persistence, the remote-pair uniqueness
guarantee, retry candidate selection, lease locks and the key/value state.
"""

from datetime import timedelta

import pytest

from tec_calendar_sync.db import StateDatabase
from tec_calendar_sync.interfaces import LocalEventStore
from tec_calendar_sync.models import CalendarMapping
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import RateLimiterState
from tec_calendar_sync.models import SyncStatus
from tests.conftest import BASE_TIME
from tests.conftest import make_local_event


class TestEvents:
    def test_insert_assigns_id_and_local_timestamp(self, state_db):
        event = state_db.insert_event(make_local_event(venue="Room 4", category="Board"))
        state_db.commit()

        assert event.id
        loaded = state_db.get_event(event.id)
        assert loaded.title == "Board meeting"
        assert loaded.venue == "Room 4"
        assert loaded.category == "Board"
        assert loaded.start == event.start
        assert loaded.sync_status == SyncStatus.UNSYNCED
        assert loaded.last_local_modified_at == BASE_TIME

    def test_save_event_touches_local_modified_only_when_asked(self, state_db, clock):
        event = state_db.insert_event(make_local_event())
        clock.advance(minutes=10)

        state_db.save_event(event, touch_local=False)
        assert state_db.get_event(event.id).last_local_modified_at == BASE_TIME

        state_db.save_event(event)
        assert state_db.get_event(event.id).last_local_modified_at == BASE_TIME + timedelta(
            minutes=10
        )

    def test_retry_state_round_trips(self, state_db):
        event = state_db.insert_event(make_local_event())
        event.sync_status = SyncStatus.ERROR
        event.error_kind = ErrorKind.TRANSIENT
        event.retry.attempts = 2
        event.retry.last_attempt_at = BASE_TIME
        state_db.save_sync_state(event)
        state_db.commit()

        loaded = state_db.get_event(event.id)
        assert loaded.retry_count == 2
        assert loaded.last_attempt_at == BASE_TIME
        assert loaded.error_kind == ErrorKind.TRANSIENT
        assert loaded.sync_status == SyncStatus.ERROR

    def test_remote_pair_is_unique(self, state_db):
        first = state_db.insert_event(make_local_event("First"))
        second = state_db.insert_event(make_local_event("Second"))
        first.remote_calendar_id, first.remote_id = "cal", "r1"
        state_db.save_sync_state(first)

        second.remote_calendar_id, second.remote_id = "cal", "r1"
        with pytest.raises(CalendarSyncError, match="already mirrored"):
            state_db.save_sync_state(second)

    def test_find_by_remote(self, state_db):
        event = state_db.insert_event(make_local_event())
        event.remote_calendar_id, event.remote_id = "cal", "r1"
        state_db.save_sync_state(event)

        assert state_db.find_by_remote("cal", "r1").id == event.id
        assert state_db.find_by_remote("other-cal", "r1") is None

    def test_state_survives_reopen(self, db_path, clock):
        with StateDatabase(db_path, clock=clock) as db:
            event = db.insert_event(make_local_event())
            db.commit()

        with StateDatabase(db_path, clock=clock) as db:
            assert db.get_event(event.id).title == "Board meeting"

    def test_implements_local_event_store(self, state_db):
        assert isinstance(state_db, LocalEventStore)


class TestRetryCandidates:
    def _with_status(self, state_db, title, status, kind=None):
        event = state_db.insert_event(make_local_event(title))
        event.sync_status = status
        event.error_kind = kind
        state_db.save_sync_state(event)
        return event

    def test_mapping_errors_and_fresh_pending_are_not_retried(self, state_db):
        transient = self._with_status(state_db, "T", SyncStatus.ERROR, ErrorKind.TRANSIENT)
        self._with_status(state_db, "M", SyncStatus.ERROR, ErrorKind.MAPPING)
        pending = self._with_status(state_db, "P", SyncStatus.PENDING)
        pending.retry.last_attempt_at = BASE_TIME
        state_db.save_sync_state(pending)
        self._with_status(state_db, "never attempted", SyncStatus.PENDING)
        self._with_status(state_db, "F", SyncStatus.FAILED_PERMANENT, ErrorKind.PERMANENT)
        self._with_status(state_db, "S", SyncStatus.SYNCED)
        state_db.commit()

        ids = {e.id for e in state_db.events_for_retry()}
        assert ids == {transient.id, pending.id}

    def test_oldest_attempt_first(self, state_db):
        late = self._with_status(state_db, "late", SyncStatus.ERROR, ErrorKind.TRANSIENT)
        late.retry.last_attempt_at = BASE_TIME + timedelta(minutes=5)
        state_db.save_sync_state(late)
        early = self._with_status(state_db, "early", SyncStatus.ERROR, ErrorKind.TRANSIENT)
        early.retry.last_attempt_at = BASE_TIME
        state_db.save_sync_state(early)

        assert [e.id for e in state_db.events_for_retry(limit=1)] == [early.id]


class TestLeaseLock:
    def test_second_owner_is_refused_until_expiry(self, state_db):
        event = state_db.insert_event(make_local_event())
        state_db.commit()

        assert state_db.acquire_lock(event.id, "a", BASE_TIME, 300)
        assert not state_db.acquire_lock(event.id, "b", BASE_TIME + timedelta(seconds=10), 300)
        assert state_db.acquire_lock(event.id, "b", BASE_TIME + timedelta(seconds=301), 300)

    def test_release_lets_others_in(self, state_db):
        event = state_db.insert_event(make_local_event())
        state_db.commit()

        state_db.acquire_lock(event.id, "a", BASE_TIME, 300)
        state_db.release_lock(event.id, "a")
        assert state_db.acquire_lock(event.id, "b", BASE_TIME, 300)

    def test_missing_event_cannot_be_locked(self, state_db):
        assert not state_db.acquire_lock("nope", "a", BASE_TIME, 300)


class TestKeyValueState:
    def test_rate_limiter_state_round_trips(self, state_db):
        state_db.save_rate_limiter_state(
            RateLimiterState(rate_limited_until=BASE_TIME, throttle_delay=12.5)
        )
        loaded = state_db.load_rate_limiter_state()
        assert loaded.rate_limited_until == BASE_TIME
        assert loaded.throttle_delay == 12.5

    def test_defaults_when_empty(self, state_db):
        loaded = state_db.load_rate_limiter_state()
        assert loaded.rate_limited_until is None
        assert loaded.throttle_delay == 0.0


class TestMappingsAndHistory:
    def test_duplicate_calendar_mapping_raises(self, state_db):
        state_db.insert_mapping(CalendarMapping("cal", "Work"))
        with pytest.raises(CalendarSyncError):
            state_db.insert_mapping(CalendarMapping("cal", "Other"))

    def test_history_newest_first_and_cleanup(self, state_db, clock):
        state_db.record_history("e1", "r1", "cal", "push", "create", "success")
        clock.advance(minutes=1)
        state_db.record_history("e1", "r1", "cal", "push", "update", "success")
        state_db.commit()

        rows = state_db.get_sync_history("e1")
        assert [r["action"] for r in rows] == ["update", "create"]

        removed = state_db.cleanup_history(BASE_TIME + timedelta(seconds=30))
        assert removed == 1
        assert len(state_db.get_sync_history("e1")) == 1

    def test_statistics_count_per_status(self, state_db):
        synced = state_db.insert_event(make_local_event("a"))
        synced.sync_status = SyncStatus.SYNCED
        synced.last_sync_at = BASE_TIME
        state_db.save_sync_state(synced)
        state_db.insert_event(make_local_event("b"))
        state_db.commit()

        stats = state_db.sync_statistics()
        assert stats.total == 2
        assert stats.synced == 1
        assert stats.unsynced == 1
        assert stats.last_sync_at == BASE_TIME
