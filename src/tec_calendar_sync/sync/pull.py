"""
Remote → local direction: per-calendar pull and the enabled-calendar fan-out.
"""

from datetime import datetime
from datetime import timedelta

from tec_calendar_sync.models import CalendarMapping
from tec_calendar_sync.models import CalendarSyncResult
from tec_calendar_sync.models import Err
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import FanOutResult
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import LocalFieldSet
from tec_calendar_sync.models import MappingError
from tec_calendar_sync.models import Ok
from tec_calendar_sync.models import RemoteEvent
from tec_calendar_sync.models import Result
from tec_calendar_sync.models import SyncOutcome
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.sync.utils import CancellationToken
from tec_calendar_sync.sync.utils import SyncContext
from tec_calendar_sync.sync.utils import describe
from tec_calendar_sync.sync.utils import record

# Statuses automation must not overwrite from the remote side.
_FROZEN_STATUSES = (SyncStatus.CONFLICT, SyncStatus.FAILED_PERMANENT)


def _same_instant(a: datetime | None, b: datetime | None) -> bool:
    # Timestamps round-trip through REAL columns; allow sub-millisecond drift.
    if a is None or b is None:
        return False
    return abs((a - b).total_seconds()) < 0.001


def _remote_unchanged(existing: LocalEvent, remote: RemoteEvent) -> bool:
    """True when the remote copy has not moved since we last synced with it.

    Such mirrors are left alone so a local edit still waiting to be pushed
    is not overwritten.
    """
    if _same_instant(existing.last_remote_modified_at, remote.last_modified):
        return True
    return existing.last_sync_at is not None and remote.last_modified <= existing.last_sync_at


def mapping_window(ctx: SyncContext, mapping: CalendarMapping) -> tuple[datetime, datetime]:
    """Pull window for a mapping, falling back to the configured defaults."""
    now = ctx.clock()
    lookback = mapping.lookback_days
    if lookback is None:
        lookback = ctx.config.lookback_days
    lookahead = mapping.lookahead_days
    if lookahead is None:
        lookahead = ctx.config.lookahead_days
    return now - timedelta(days=lookback), now + timedelta(days=lookahead)


def _create_mirror(
    ctx: SyncContext, calendar_id: str, category: str, remote: RemoteEvent, fields: LocalFieldSet
) -> LocalEvent:
    now = ctx.clock()
    event = LocalEvent(
        id="",
        title=fields.title,
        start=fields.start,
        end=fields.end,
        remote_id=remote.id,
        remote_calendar_id=calendar_id,
        sync_status=SyncStatus.SYNCED,
        last_local_modified_at=now,
        last_sync_at=now,
        last_remote_modified_at=remote.last_modified,
    )
    event.apply_fields(fields)
    ctx.state_db.insert_event(event)
    ctx.state_db.assign_category(event.id, category)
    event.category = category
    record(ctx, event, "pull", "create", "success")
    ctx.state_db.commit()
    ctx.logger.debug(f"Created local mirror {describe(event)}")
    return event


def _update_mirror(
    ctx: SyncContext, existing: LocalEvent, remote: RemoteEvent, fields: LocalFieldSet
) -> bool:
    """Overwrite a mirror under its lease; False when another pass holds it."""
    now = ctx.clock()
    if not ctx.state_db.acquire_lock(existing.id, ctx.owner, now, ctx.config.lock_ttl_seconds):
        ctx.logger.info(f"Skipping locked mirror {describe(existing)}")
        return False
    try:
        event = ctx.state_db.get_event(existing.id) or existing
        event.apply_fields(fields)
        ctx.scheduler.clear(event)
        event.sync_status = SyncStatus.SYNCED
        event.sync_message = None
        event.last_sync_at = now
        event.last_remote_modified_at = remote.last_modified
        ctx.state_db.save_event(event, touch_local=False)
        record(ctx, event, "pull", "update", "success")
        ctx.state_db.commit()
        ctx.logger.debug(f"Updated local mirror {describe(event)}")
    finally:
        ctx.state_db.release_lock(existing.id, ctx.owner)
    return True


def _pull_one(
    ctx: SyncContext, calendar_id: str, category: str, remote: RemoteEvent
) -> Result[SyncOutcome | None]:
    """Reconcile one remote event; Ok(None) means skipped."""
    try:
        fields = ctx.mapper.to_local_fields(remote)
    except MappingError as e:
        return Err(ErrorKind.MAPPING, str(e))

    existing = ctx.index.find_local_by_remote(calendar_id, remote.id)
    if existing is None:
        _create_mirror(ctx, calendar_id, category, remote, fields)
        return Ok(SyncOutcome.CREATED)

    if existing.sync_status in _FROZEN_STATUSES:
        ctx.logger.debug(f"Leaving {existing.sync_status.value} mirror alone: {describe(existing)}")
        return Ok(None)

    if _remote_unchanged(existing, remote):
        return Ok(SyncOutcome.UNCHANGED)

    if not _update_mirror(ctx, existing, remote, fields):
        return Ok(None)
    return Ok(SyncOutcome.UPDATED)


def sync_single_calendar(
    ctx: SyncContext,
    calendar_id: str,
    category: str,
    window_start: datetime,
    window_end: datetime,
    token: CancellationToken | None = None,
) -> CalendarSyncResult:
    """Pull one remote calendar into ``category``. Never raises."""
    result = CalendarSyncResult(calendar_id=calendar_id)

    listed = ctx.gateway.list_events(
        calendar_id,
        window_start,
        window_end,
        limit=ctx.config.pull_limit,
        identity_context=ctx.config.identity_context,
    )
    if not listed.ok:
        ctx.logger.error(f"Failed to list events of calendar {calendar_id}: {listed.message}")
        result.errors += 1
        result.error_message = listed.message
        return result

    ctx.logger.info(f"Pulling {len(listed.value)} event(s) from calendar {calendar_id}")

    for remote in listed.value:
        if token is not None and token.cancelled:
            ctx.logger.info(f"Pull of calendar {calendar_id} cancelled")
            break
        try:
            outcome = _pull_one(ctx, calendar_id, category, remote)
        except Exception as e:
            ctx.logger.exception(f"Failed to pull remote event {calendar_id}/{remote.id}: {e}")
            result.errors += 1
            result.error_message = str(e)
            continue

        if not outcome.ok:
            ctx.logger.error(
                f"Cannot map remote event {calendar_id}/{remote.id}: {outcome.message}"
            )
            result.errors += 1
            result.error_message = outcome.message
        elif outcome.value is None:
            result.skipped += 1
        else:
            result.events_synced += 1
            if outcome.value == SyncOutcome.CREATED:
                result.created += 1
            elif outcome.value == SyncOutcome.UPDATED:
                result.updated += 1

    ctx.logger.info(
        f"Calendar {calendar_id} - synced: {result.events_synced} "
        f"(created {result.created}, updated {result.updated}), "
        f"skipped: {result.skipped}, errors: {result.errors}"
    )
    return result


def sync_all_enabled_calendars(
    ctx: SyncContext, token: CancellationToken | None = None
) -> FanOutResult:
    """Pull every enabled mapping in order; one calendar never aborts the rest."""
    fan_out = FanOutResult()
    mappings = ctx.registry.enabled()
    ctx.logger.info(f"Syncing {len(mappings)} enabled calendar(s)")

    for mapping in mappings:
        if token is not None and token.cancelled:
            fan_out.cancelled = True
            break

        calendar_id = mapping.remote_calendar_id
        window_start, window_end = mapping_window(ctx, mapping)
        try:
            result = sync_single_calendar(
                ctx, calendar_id, mapping.local_category, window_start, window_end, token
            )
        except Exception as e:
            ctx.logger.exception(f"Calendar {calendar_id} failed: {e}")
            result = CalendarSyncResult(calendar_id=calendar_id, errors=1, error_message=str(e))
        finally:
            ctx.registry.touch_last_sync(calendar_id, ctx.clock())
        fan_out.calendars.append(result)

    if token is not None and token.cancelled:
        fan_out.cancelled = True

    ctx.logger.info(
        f"Fan-out complete - calendars: {fan_out.total_calendars}, "
        f"events synced: {fan_out.total_events_synced}, errors: {fan_out.total_errors}"
    )
    return fan_out
