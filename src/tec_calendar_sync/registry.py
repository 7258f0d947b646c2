"""
CRUD over remote-calendar → local-category mappings.
"""

import logging
from datetime import datetime

from tec_calendar_sync.db import StateDatabase
from tec_calendar_sync.models import CalendarMapping
from tec_calendar_sync.models import CalendarSyncError

logger = logging.getLogger(__name__)


class CalendarMappingRegistry:
    """Which remote calendars are synced, and into which local category.

    Mappings are disabled rather than deleted so their sync history stays
    meaningful; ``delete`` exists for administrative clean-up only.
    """

    def __init__(self, state_db: StateDatabase):
        self.state_db = state_db

    def create(
        self,
        remote_calendar_id: str,
        local_category: str,
        remote_calendar_name: str = "",
        enabled: bool = True,
        lookback_days: int | None = None,
        lookahead_days: int | None = None,
    ) -> CalendarMapping:
        if not remote_calendar_id or not local_category:
            raise CalendarSyncError("A mapping needs both a remote calendar id and a category")
        mapping = self.state_db.insert_mapping(
            CalendarMapping(
                remote_calendar_id=remote_calendar_id,
                remote_calendar_name=remote_calendar_name or remote_calendar_id,
                local_category=local_category,
                enabled=enabled,
                lookback_days=lookback_days,
                lookahead_days=lookahead_days,
            )
        )
        self.state_db.commit()
        logger.info(
            f"Created mapping {mapping.id}: {mapping.remote_calendar_name} -> {local_category}"
        )
        return mapping

    def get(self, mapping_id: int) -> CalendarMapping | None:
        return self.state_db.get_mapping(mapping_id)

    def get_by_calendar_id(self, remote_calendar_id: str) -> CalendarMapping | None:
        return self.state_db.get_mapping_by_calendar_id(remote_calendar_id)

    def all(self) -> list[CalendarMapping]:
        return self.state_db.all_mappings()

    def enabled(self) -> list[CalendarMapping]:
        """Active mappings, in stable (creation) order."""
        return self.state_db.enabled_mappings()

    def find_by_category(self, category: str) -> CalendarMapping | None:
        """First enabled mapping that feeds ``category``."""
        for mapping in self.enabled():
            if mapping.local_category == category:
                return mapping
        return None

    def update(self, mapping: CalendarMapping) -> CalendarMapping:
        if mapping.id is None:
            raise CalendarSyncError("Cannot update a mapping that was never stored")
        self.state_db.update_mapping(mapping)
        self.state_db.commit()
        return mapping

    def _set_enabled(self, remote_calendar_id: str, enabled: bool) -> CalendarMapping:
        mapping = self.get_by_calendar_id(remote_calendar_id)
        if mapping is None:
            raise CalendarSyncError(f"No mapping for calendar {remote_calendar_id}")
        mapping.enabled = enabled
        return self.update(mapping)

    def enable(self, remote_calendar_id: str) -> CalendarMapping:
        return self._set_enabled(remote_calendar_id, True)

    def disable(self, remote_calendar_id: str) -> CalendarMapping:
        return self._set_enabled(remote_calendar_id, False)

    def delete(self, mapping_id: int):
        self.state_db.delete_mapping(mapping_id)
        self.state_db.commit()
        logger.info(f"Deleted mapping {mapping_id}")

    def touch_last_sync(self, remote_calendar_id: str, when: datetime):
        self.state_db.touch_mapping_last_sync(remote_calendar_id, when)
        self.state_db.commit()

    def statistics(self) -> dict[str, int]:
        mappings = self.all()
        enabled = sum(1 for m in mappings if m.enabled)
        return {"total": len(mappings), "enabled": enabled, "disabled": len(mappings) - enabled}

    def sync_with_remote_calendars(self, calendars: list[tuple[str, str]]) -> dict[str, int]:
        """Reconcile mappings with the calendars the remote account exposes.

        ``calendars`` is a list of ``(calendar_id, name)``. New calendars get a
        disabled mapping whose category defaults to the calendar name;
        renamed calendars have their stored name refreshed.
        """
        stats = {"created": 0, "updated": 0}
        for calendar_id, name in calendars:
            existing = self.get_by_calendar_id(calendar_id)
            if existing is None:
                self.create(calendar_id, name, remote_calendar_name=name, enabled=False)
                stats["created"] += 1
            elif existing.remote_calendar_name != name:
                existing.remote_calendar_name = name
                self.update(existing)
                stats["updated"] += 1
        logger.info(
            f"Reconciled mappings with remote calendars - "
            f"created: {stats['created']}, updated: {stats['updated']}"
        )
        return stats
