"""
CalendarMappingRegistry and EventIdentityIndex tests.
"""

import pytest

from tec_calendar_sync.identity import EventIdentityIndex
from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.registry import CalendarMappingRegistry
from tests.conftest import make_local_event


@pytest.fixture
def registry(state_db):
    return CalendarMappingRegistry(state_db)


class TestRegistry:
    def test_create_defaults_name_to_id(self, registry):
        mapping = registry.create("cal-1", "Work")

        assert mapping.id is not None
        assert mapping.remote_calendar_name == "cal-1"
        assert registry.get(mapping.id).local_category == "Work"

    def test_create_requires_id_and_category(self, registry):
        with pytest.raises(CalendarSyncError):
            registry.create("", "Work")
        with pytest.raises(CalendarSyncError):
            registry.create("cal-1", "")

    def test_enable_disable(self, registry):
        registry.create("cal-1", "Work")
        registry.create("cal-2", "Home")

        registry.disable("cal-1")
        assert [m.remote_calendar_id for m in registry.enabled()] == ["cal-2"]
        assert registry.statistics() == {"total": 2, "enabled": 1, "disabled": 1}

        registry.enable("cal-1")
        assert [m.remote_calendar_id for m in registry.enabled()] == ["cal-1", "cal-2"]

    def test_toggle_unknown_calendar_raises(self, registry):
        with pytest.raises(CalendarSyncError, match="No mapping"):
            registry.disable("missing")

    def test_find_by_category_ignores_disabled(self, registry):
        registry.create("cal-old", "Team", enabled=False)
        registry.create("cal-new", "Team")

        assert registry.find_by_category("Team").remote_calendar_id == "cal-new"
        assert registry.find_by_category("Other") is None

    def test_sync_with_remote_calendars(self, registry):
        registry.create("cal-1", "Work", remote_calendar_name="Work (old)")

        stats = registry.sync_with_remote_calendars([("cal-1", "Work"), ("cal-2", "Holidays")])

        assert stats == {"created": 1, "updated": 1}
        assert registry.get_by_calendar_id("cal-1").remote_calendar_name == "Work"
        added = registry.get_by_calendar_id("cal-2")
        assert added.local_category == "Holidays"
        assert not added.enabled

    def test_delete(self, registry):
        mapping = registry.create("cal-1", "Work")
        registry.delete(mapping.id)
        assert registry.all() == []


class TestIdentityIndex:
    def test_link_and_lookup(self, state_db):
        index = EventIdentityIndex(state_db)
        event = state_db.insert_event(make_local_event())

        index.link(event, "cal", "r1")

        assert index.find_local_by_remote("cal", "r1").id == event.id
        assert index.find_remote_of(event.id) == ("cal", "r1")

    def test_second_mirror_is_refused(self, state_db):
        index = EventIdentityIndex(state_db)
        first = state_db.insert_event(make_local_event("First"))
        second = state_db.insert_event(make_local_event("Second"))
        index.link(first, "cal", "r1")

        with pytest.raises(CalendarSyncError, match="already mirrored"):
            index.link(second, "cal", "r1")

    def test_unlink_unknown_event(self, state_db):
        assert EventIdentityIndex(state_db).unlink("missing") is None
