"""
Shared pytest fixtures and event helpers.
"""

import dataclasses
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from tec_calendar_sync.db import StateDatabase
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import SyncConfig
from tec_calendar_sync.sync import SyncEngine
from tests.fake_client import FakeClock
from tests.fake_client import FakeRemoteClient

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
CALENDAR_ID = "cal-default"
WINDOW_START = BASE_TIME - timedelta(days=30)
WINDOW_END = BASE_TIME + timedelta(days=365)


def make_local_event(
    title: str = "Board meeting",
    start: datetime | None = None,
    hours: float = 1,
    **kwargs,
) -> LocalEvent:
    """Return an unsaved LocalEvent starting a week after BASE_TIME."""
    start = start or BASE_TIME + timedelta(days=7)
    return LocalEvent(id="", title=title, start=start, end=start + timedelta(hours=hours), **kwargs)


@pytest.fixture
def clock():
    return FakeClock(BASE_TIME)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path, clock):
    with StateDatabase(db_path, clock=clock) as db:
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(state_db_path=db_path, default_calendar_id=CALENDAR_ID)


@pytest.fixture
def remote(clock):
    return FakeRemoteClient(clock)


@pytest.fixture
def make_engine(sync_config, state_db, remote, clock):
    """Build a SyncEngine over the shared DB/fake client with config overrides."""

    def _make(mapper=None, **overrides) -> SyncEngine:
        cfg = dataclasses.replace(sync_config, **overrides)
        return SyncEngine(cfg, state_db, remote, mapper=mapper, clock=clock, sleep=clock.sleep)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def saved_event(state_db):
    """A committed, never-synced local event."""
    event = state_db.insert_event(make_local_event())
    state_db.commit()
    return event
