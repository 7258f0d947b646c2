"""
Double-edit detection and policy-driven resolution.
"""

import logging
from dataclasses import dataclass

from tec_calendar_sync.models import ConflictPolicy
from tec_calendar_sync.models import LocalEvent
from tec_calendar_sync.models import RemoteEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictDecision:
    policy: ConflictPolicy
    reason: str


def parse_policy(value: str | ConflictPolicy | None) -> ConflictPolicy:
    """Map a configured policy name to a ConflictPolicy.

    Anything unrecognised falls back to ``remote_wins``.
    """
    if isinstance(value, ConflictPolicy):
        return value
    try:
        return ConflictPolicy((value or "").strip().lower())
    except ValueError:
        logger.warning(f"Unknown conflict policy {value!r}, falling back to remote_wins")
        return ConflictPolicy.REMOTE_WINS


class ConflictResolver:
    """Decides which side wins when both copies changed since the last sync."""

    def __init__(self, policy: str | ConflictPolicy | None = ConflictPolicy.REMOTE_WINS):
        self.policy = parse_policy(policy)

    @staticmethod
    def has_conflict(event: LocalEvent, remote: RemoteEvent | None) -> bool:
        """True only for a genuine double edit.

        Both ``last_local_modified_at`` and the remote ``last_modified`` must
        be newer than ``last_sync_at``. An event that was never synced cannot
        conflict.
        """
        if remote is None or event.last_sync_at is None:
            return False
        if event.last_local_modified_at is None:
            return False
        local_changed = event.last_local_modified_at > event.last_sync_at
        remote_changed = remote.last_modified > event.last_sync_at
        return local_changed and remote_changed

    def decide(
        self,
        event: LocalEvent,
        remote: RemoteEvent | None,
        policy: str | ConflictPolicy | None = None,
    ) -> ConflictDecision:
        chosen = parse_policy(policy) if policy is not None else self.policy
        last_sync = event.last_sync_at.isoformat() if event.last_sync_at else "never"
        local_modified = (
            event.last_local_modified_at.isoformat() if event.last_local_modified_at else "unknown"
        )
        remote_modified = remote.last_modified.isoformat() if remote else "unknown"
        reason = (
            f"Both copies changed since last sync at {last_sync} "
            f"(local {local_modified}, remote {remote_modified})"
        )
        logger.warning(
            f"Sync conflict on local event {event.id} "
            f"({event.remote_calendar_id}/{event.remote_id}), resolving with {chosen.value}"
        )
        return ConflictDecision(policy=chosen, reason=reason)
