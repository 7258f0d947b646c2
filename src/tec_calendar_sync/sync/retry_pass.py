"""
Scheduled retry scan over failed and crash-interrupted pushes.
"""

from tec_calendar_sync.models import RetryPassResult
from tec_calendar_sync.models import SyncStatus
from tec_calendar_sync.sync.push import push_locked
from tec_calendar_sync.sync.utils import CancellationToken
from tec_calendar_sync.sync.utils import SyncContext
from tec_calendar_sync.sync.utils import describe
from tec_calendar_sync.sync.utils import record


def retry_failed(
    ctx: SyncContext, limit: int | None = None, token: CancellationToken | None = None
) -> RetryPassResult:
    """Run one retry pass.

    Exhausted entities become ``failed_permanent``; entities still inside
    their backoff window are skipped untouched; due entities get their
    attempt counted and committed before the remote call.
    """
    stats = RetryPassResult()
    limit = limit if limit is not None else ctx.config.retry_batch_size
    candidates = ctx.state_db.events_for_retry(limit)
    ctx.logger.info(f"Retry pass: {len(candidates)} candidate(s)")

    for candidate in candidates:
        if token is not None and token.cancelled:
            ctx.logger.info("Retry pass cancelled")
            break

        now = ctx.clock()
        if not ctx.state_db.acquire_lock(
            candidate.id, ctx.owner, now, ctx.config.lock_ttl_seconds
        ):
            stats.skipped += 1
            continue

        try:
            event = ctx.state_db.get_event(candidate.id)
            if event is None or event.sync_status not in (SyncStatus.ERROR, SyncStatus.PENDING):
                stats.skipped += 1
                continue

            if ctx.scheduler.is_exhausted(event):
                failure = ctx.scheduler.mark_exhausted(event)
                ctx.state_db.save_sync_state(event)
                record(ctx, event, "push", "retry", "failed_permanent", event.sync_message or "")
                ctx.state_db.commit()
                ctx.logger.error(f"Retries exhausted: {failure}")
                stats.exhausted += 1
                continue

            if not ctx.scheduler.is_due(event, now):
                stats.skipped += 1
                continue

            stats.processed += 1
            ctx.scheduler.begin_attempt(event, now)
            ctx.state_db.save_sync_state(event)
            ctx.state_db.commit()
            ctx.logger.debug(f"Retry attempt {event.retry.attempts} for {describe(event)}")

            result = push_locked(ctx, event, is_retry=True)
            if result.ok:
                stats.succeeded += 1
            else:
                stats.failed += 1
                if event.sync_status == SyncStatus.FAILED_PERMANENT:
                    stats.exhausted += 1
        finally:
            ctx.state_db.release_lock(candidate.id, ctx.owner)

    ctx.logger.info(
        f"Retry pass complete - processed: {stats.processed}, succeeded: {stats.succeeded}, "
        f"failed: {stats.failed}, skipped: {stats.skipped}, exhausted: {stats.exhausted}"
    )
    return stats
