"""
Local → remote direction: push, conflict handling and delete propagation.
"""

from tec_calendar_sync.models import CalendarSyncError
from tec_calendar_sync.models import ConflictPolicy
from tec_calendar_sync.models import Err
from tec_calendar_sync.models import ErrorKind
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import MappingError
from tec_calendar_sync.models import Ok
from tec_calendar_sync.models import RemoteEvent
from tec_calendar_sync.models import RemotePayload
from tec_calendar_sync.models import Result
from tec_calendar_sync.models import SyncOutcome
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.retry import permanent_failure
from tec_calendar_sync.sync.gateway import classify_error
from tec_calendar_sync.sync.utils import CancellationToken
from tec_calendar_sync.sync.utils import SyncContext
from tec_calendar_sync.sync.utils import describe
from tec_calendar_sync.sync.utils import lookup_window
from tec_calendar_sync.sync.utils import record

RATE_LIMIT_DEFERRED_MESSAGE = "Deferred: rate limited"


def _target_calendar(ctx: SyncContext, event: LocalEvent) -> str:
    """Calendar an event is pushed to: its own, its category's, or the default."""
    if event.remote_calendar_id:
        return event.remote_calendar_id
    if event.category:
        mapping = ctx.registry.find_by_category(event.category)
        if mapping is not None:
            return mapping.remote_calendar_id
    if ctx.config.default_calendar_id:
        return ctx.config.default_calendar_id
    raise MappingError(
        f"No target calendar for local event {event.id} (category {event.category!r})"
    )


def _persist(ctx: SyncContext, event: LocalEvent):
    ctx.state_db.save_sync_state(event)
    ctx.state_db.commit()


def _mark_synced(ctx: SyncContext, event: LocalEvent, remote: RemoteEvent | None = None):
    ctx.scheduler.clear(event)
    event.sync_status = SyncStatus.SYNCED
    event.sync_message = None
    event.last_sync_at = ctx.clock()
    if remote is not None:
        event.last_remote_modified_at = remote.last_modified
    _persist(ctx, event)


def _fail(
    ctx: SyncContext, event: LocalEvent, kind: ErrorKind, message: str, is_retry: bool
) -> Err:
    """Record a failed push attempt and hand the error back to the caller."""
    if kind == ErrorKind.RATE_LIMITED:
        # Not the entity's fault: stays pending and keeps its retry budget.
        if is_retry and event.retry.attempts > 0:
            event.retry.attempts -= 1
        event.sync_status = SyncStatus.PENDING
        event.error_kind = ErrorKind.RATE_LIMITED
        event.sync_message = RATE_LIMIT_DEFERRED_MESSAGE
        _persist(ctx, event)
        ctx.logger.warning(f"Push deferred by rate limiting: {describe(event)}")
        record(ctx, event, "push", "sync", "deferred", message)
        ctx.state_db.commit()
        return Err(kind, message)

    status = ctx.scheduler.record_failure(event, kind, message)
    _persist(ctx, event)
    if status == SyncStatus.FAILED_PERMANENT:
        failure = permanent_failure(event)
        ctx.logger.error(f"Giving up: {failure}")
        record(ctx, event, "push", "sync", "failed_permanent", event.sync_message or "")
        ctx.state_db.commit()
        return Err(classify_error(failure), str(failure))

    ctx.logger.error(f"Push failed ({kind.value}) for {describe(event)}: {message}")
    record(ctx, event, "push", "sync", "error", message)
    ctx.state_db.commit()
    return Err(kind, message)


def _fetch_remote(ctx: SyncContext, event: LocalEvent) -> Result[RemoteEvent | None]:
    """Current remote copy of a linked event, found by listing its time window."""
    start, end = lookup_window(event)
    result = ctx.gateway.list_events(
        event.remote_calendar_id,
        start,
        end,
        force_refresh=True,
        identity_context=ctx.config.identity_context,
    )
    if not result.ok:
        return result
    for remote in result.value:
        if remote.id == event.remote_id:
            return Ok(remote)
    return Ok(None)


def _apply_remote(ctx: SyncContext, event: LocalEvent, remote: RemoteEvent) -> Result[SyncOutcome]:
    """Overwrite the local copy with ``remote`` (remote_wins)."""
    try:
        fields = ctx.mapper.to_local_fields(remote)
    except MappingError as e:
        return Err(ErrorKind.MAPPING, str(e))
    event.apply_fields(fields)
    ctx.state_db.save_event(event, touch_local=False)
    _mark_synced(ctx, event, remote)
    return Ok(SyncOutcome.REMOTE_APPLIED)


def _handle_conflict(
    ctx: SyncContext,
    event: LocalEvent,
    remote: RemoteEvent | None,
    policy: ConflictPolicy | None = None,
) -> Result[SyncOutcome] | None:
    """Apply the conflict policy.

    Returns the final result, or None when the push should go ahead
    (``local_wins``).
    """
    decision = ctx.resolver.decide(event, remote, policy)

    if decision.policy == ConflictPolicy.LOCAL_WINS:
        record(ctx, event, "push", "conflict", "resolved", decision.reason, "local_wins")
        return None

    if decision.policy == ConflictPolicy.MANUAL or remote is None:
        event.sync_status = SyncStatus.CONFLICT
        event.error_kind = ErrorKind.CONFLICT
        event.sync_message = decision.reason
        _persist(ctx, event)
        record(ctx, event, "push", "conflict", "conflict", decision.reason, "manual")
        ctx.state_db.commit()
        return Ok(SyncOutcome.CONFLICT)

    result = _apply_remote(ctx, event, remote)
    if not result.ok:
        # The remote copy cannot be mapped back; park it for an admin.
        return _handle_conflict(ctx, event, remote, ConflictPolicy.MANUAL)
    record(ctx, event, "pull", "conflict", "resolved", decision.reason, "remote_wins")
    ctx.state_db.commit()
    return result


def _create(
    ctx: SyncContext, event: LocalEvent, calendar_id: str, payload: RemotePayload, is_retry: bool
) -> Result[SyncOutcome]:
    result = ctx.gateway.create_event(calendar_id, payload)
    if not result.ok:
        return _fail(ctx, event, result.kind, result.message, is_retry)
    if not result.value:
        return _fail(ctx, event, ErrorKind.TRANSIENT, "Remote returned no event id", is_retry)

    try:
        ctx.index.link(event, calendar_id, result.value)
    except CalendarSyncError as e:
        return _fail(ctx, event, ErrorKind.MAPPING, str(e), is_retry)

    _mark_synced(ctx, event)
    ctx.logger.info(f"Created remote event for {describe(event)}")
    record(ctx, event, "push", "create", "success")
    ctx.state_db.commit()
    return Ok(SyncOutcome.CREATED)


def _update(
    ctx: SyncContext, event: LocalEvent, payload: RemotePayload, is_retry: bool
) -> Result[SyncOutcome]:
    # Double-edit check only makes sense for something synced before.
    if event.last_sync_at is not None:
        fetched = _fetch_remote(ctx, event)
        if not fetched.ok:
            return _fail(ctx, event, fetched.kind, fetched.message, is_retry)
        if ctx.resolver.has_conflict(event, fetched.value):
            outcome = _handle_conflict(ctx, event, fetched.value)
            if outcome is not None:
                return outcome

    result = ctx.gateway.update_event(event.remote_calendar_id, event.remote_id, payload)

    if not result.ok and result.kind == ErrorKind.CONFLICT:
        ctx.logger.warning(f"Remote rejected update as conflicting: {describe(event)}")
        fetched = _fetch_remote(ctx, event)
        remote = fetched.value if fetched.ok else None
        outcome = _handle_conflict(ctx, event, remote)
        if outcome is not None:
            return outcome
        result = ctx.gateway.update_event(event.remote_calendar_id, event.remote_id, payload)
        if not result.ok and result.kind == ErrorKind.CONFLICT:
            return _handle_conflict(ctx, event, remote, ConflictPolicy.MANUAL)

    if not result.ok:
        return _fail(ctx, event, result.kind, result.message, is_retry)

    _mark_synced(ctx, event)
    ctx.logger.info(f"Updated remote event for {describe(event)}")
    record(ctx, event, "push", "update", "success")
    ctx.state_db.commit()
    return Ok(SyncOutcome.UPDATED)


def push_locked(ctx: SyncContext, event: LocalEvent, is_retry: bool = False) -> Result[SyncOutcome]:
    """Push ``event``; the caller holds its lease.

    Retry attempts arrive with their attempt already counted and persisted.
    """
    if event.sync_status == SyncStatus.CONFLICT:
        return Err(ErrorKind.CONFLICT, f"Local event {event.id} is in conflict")

    if event.sync_status == SyncStatus.FAILED_PERMANENT:
        if is_retry:
            return Err(ErrorKind.PERMANENT, f"Local event {event.id} has exhausted its retries")
        # A fresh local save starts over.
        ctx.scheduler.clear(event)

    if not is_retry:
        event.retry.last_attempt_at = ctx.clock()
        event.sync_status = SyncStatus.PENDING
        _persist(ctx, event)

    try:
        calendar_id = _target_calendar(ctx, event)
        payload = ctx.mapper.to_remote_payload(event)
    except MappingError as e:
        return _fail(ctx, event, ErrorKind.MAPPING, str(e), is_retry)

    if event.remote_id:
        return _update(ctx, event, payload, is_retry)
    return _create(ctx, event, calendar_id, payload, is_retry)


def push_event(
    ctx: SyncContext, local_id: str, token: CancellationToken | None = None
) -> Result[SyncOutcome]:
    """Push one local event to its remote calendar under the entity lease."""
    if token is not None and token.cancelled:
        return Err(ErrorKind.CANCELLED, "Cancelled before push")

    if ctx.state_db.get_event(local_id) is None:
        return Err(ErrorKind.PERMANENT, f"Local event {local_id} not found")

    if not ctx.state_db.acquire_lock(local_id, ctx.owner, ctx.clock(), ctx.config.lock_ttl_seconds):
        ctx.logger.info(f"Local event {local_id} is locked by another sync pass")
        return Err(ErrorKind.LOCKED, f"Local event {local_id} is being synced elsewhere")

    try:
        # Re-read under the lease so we see the latest committed state.
        event = ctx.state_db.get_event(local_id)
        if event is None:
            return Err(ErrorKind.PERMANENT, f"Local event {local_id} not found")
        return push_locked(ctx, event)
    finally:
        ctx.state_db.release_lock(local_id, ctx.owner)


def push_pending(
    ctx: SyncContext, limit: int = 50, token: CancellationToken | None = None
) -> dict[str, int]:
    """Push unsynced events and pending ones that never had an attempt."""
    stats = {"pushed": 0, "failed": 0, "skipped": 0}
    candidates = ctx.state_db.events_by_status(
        [SyncStatus.UNSYNCED, SyncStatus.PENDING], limit=limit
    )
    for event in candidates:
        if token is not None and token.cancelled:
            ctx.logger.info("Bulk push cancelled")
            break
        if event.sync_status == SyncStatus.PENDING and event.retry.last_attempt_at is not None:
            # Owned by the retry scan.
            stats["skipped"] += 1
            continue
        result = push_event(ctx, event.id)
        if result.ok:
            stats["pushed"] += 1
        elif result.kind == ErrorKind.LOCKED:
            stats["skipped"] += 1
        else:
            stats["failed"] += 1
    ctx.logger.info(
        f"Bulk push - pushed: {stats['pushed']}, failed: {stats['failed']}, "
        f"skipped: {stats['skipped']}"
    )
    return stats


def resolve_conflict(
    ctx: SyncContext, local_id: str, policy: str | ConflictPolicy
) -> Result[SyncOutcome]:
    """Admin resolution of an entity parked in ``conflict``."""
    event = ctx.state_db.get_event(local_id)
    if event is None:
        return Err(ErrorKind.PERMANENT, f"Local event {local_id} not found")
    if event.sync_status != SyncStatus.CONFLICT:
        return Err(ErrorKind.CONFLICT, f"Local event {local_id} is not in conflict")

    try:
        chosen = ConflictPolicy(policy)
    except ValueError:
        return Err(ErrorKind.CONFLICT, f"Unknown conflict policy {policy!r}")
    if chosen == ConflictPolicy.MANUAL:
        return Err(ErrorKind.CONFLICT, "Choose remote_wins or local_wins to resolve a conflict")

    if not ctx.state_db.acquire_lock(local_id, ctx.owner, ctx.clock(), ctx.config.lock_ttl_seconds):
        return Err(ErrorKind.LOCKED, f"Local event {local_id} is being synced elsewhere")

    try:
        ctx.scheduler.clear(event)
        event.sync_message = None
        if chosen == ConflictPolicy.LOCAL_WINS:
            # Drop the conflict state and force the local copy out.
            event.sync_status = SyncStatus.PENDING
            event.last_sync_at = None
            _persist(ctx, event)
            record(ctx, event, "push", "resolve", "resolved", "", chosen.value)
            ctx.state_db.commit()
            return push_locked(ctx, event)

        fetched = _fetch_remote(ctx, event)
        if not fetched.ok:
            return fetched
        if fetched.value is None:
            return Err(ErrorKind.PERMANENT, f"Remote copy of {local_id} no longer exists")
        result = _apply_remote(ctx, event, fetched.value)
        if result.ok:
            record(ctx, event, "pull", "resolve", "resolved", "", chosen.value)
            ctx.state_db.commit()
        return result
    finally:
        ctx.state_db.release_lock(local_id, ctx.owner)


def delete_event(ctx: SyncContext, local_id: str) -> Result[SyncOutcome]:
    """Propagate a local delete to the remote, then drop the local record.

    The local record goes away even when the remote delete fails; the failure
    is logged and returned.
    """
    event = ctx.state_db.get_event(local_id)
    if event is None:
        return Err(ErrorKind.PERMANENT, f"Local event {local_id} not found")

    if not ctx.state_db.acquire_lock(local_id, ctx.owner, ctx.clock(), ctx.config.lock_ttl_seconds):
        return Err(ErrorKind.LOCKED, f"Local event {local_id} is being synced elsewhere")

    result: Result[SyncOutcome] = Ok(SyncOutcome.DELETED)
    try:
        if event.remote_id and event.remote_calendar_id:
            removed = ctx.gateway.delete_event(event.remote_calendar_id, event.remote_id)
            if removed.ok:
                ctx.logger.info(f"Deleted remote event for {describe(event)}")
                record(ctx, event, "push", "delete", "success")
            else:
                ctx.logger.error(f"Remote delete failed for {describe(event)}: {removed.message}")
                record(ctx, event, "push", "delete", "error", removed.message)
                result = removed
        ctx.state_db.delete_event(local_id)
        ctx.state_db.commit()
    finally:
        ctx.state_db.release_lock(local_id, ctx.owner)
    return result
