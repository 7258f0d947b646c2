"""
Default field mapper between LocalEvent and the remote (Graph-style) payload.
"""

from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import LocalFieldSet
from tec_calendar_sync.models import MappingError
from tec_calendar_sync.models import RemoteEvent
from tec_calendar_sync.models import RemotePayload

_REMOTE_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise MappingError(f"Unknown timezone {name!r}") from e


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FieldMapper:
    """Pure, deterministic transform; raises MappingError on unmappable input."""

    def validate_local(self, event: LocalEvent):
        if not (event.title or "").strip():
            raise MappingError(f"Local event {event.id} has no title")
        if event.start is None or event.end is None:
            raise MappingError(f"Local event {event.id} has no start/end")
        if _as_aware(event.end) < _as_aware(event.start):
            raise MappingError(f"Local event {event.id} ends before it starts")

    def validate_remote(self, remote: RemoteEvent):
        if not remote.id:
            raise MappingError("Remote event has no id")
        if remote.start is None or remote.end is None:
            raise MappingError(f"Remote event {remote.id} has no start/end")
        if _as_aware(remote.end) < _as_aware(remote.start):
            raise MappingError(f"Remote event {remote.id} ends before it starts")

    def to_remote_payload(self, event: LocalEvent) -> RemotePayload:
        self.validate_local(event)
        zone = _zone(event.timezone)
        start = _as_aware(event.start).astimezone(zone)
        end = _as_aware(event.end).astimezone(zone)
        if event.all_day:
            start = start.replace(hour=0, minute=0, second=0, microsecond=0)
            end = end.replace(hour=0, minute=0, second=0, microsecond=0)
            if end <= start:
                end = start + timedelta(days=1)

        payload: RemotePayload = {
            "subject": event.title.strip(),
            "body": {"contentType": "HTML", "content": event.description or ""},
            "start": {"dateTime": start.strftime(_REMOTE_DATETIME_FORMAT), "timeZone": zone.key},
            "end": {"dateTime": end.strftime(_REMOTE_DATETIME_FORMAT), "timeZone": zone.key},
            "isAllDay": bool(event.all_day),
        }
        if event.venue:
            payload["location"] = {"displayName": event.venue}
        if event.category:
            payload["categories"] = [event.category]
        return payload

    def to_local_fields(self, remote: RemoteEvent) -> LocalFieldSet:
        self.validate_remote(remote)
        zone = _zone(remote.timezone)
        return LocalFieldSet(
            title=(remote.title or "").strip() or "(No title)",
            description=remote.body or "",
            start=_as_aware(remote.start).astimezone(timezone.utc),
            end=_as_aware(remote.end).astimezone(timezone.utc),
            all_day=bool(remote.all_day),
            timezone=zone.key,
            venue=remote.location or None,
            organizer=remote.organizer or None,
        )
