"""
lifecycle.py — Broadcast status machine.

All status changes go through `transition()`, which re-reads the
broadcast and check-and-sets it by version. When several actors race
for the same move (two scheduler sweeps releasing one broadcast, a sweep
and an operator cancelling), exactly one sees `changed=True`; the others
find the broadcast already in the target status and get a no-op.

═══════════════════════════════════════════════════════════════════════════
ALLOWED TRANSITIONS
═══════════════════════════════════════════════════════════════════════════

    From          To
    ──────────    ──────────────────────────────────────────
    draft         scheduled, sending, cancelled, expired
    scheduled     sending, draft, cancelled, expired
    sending       sent, failed, expired
    sent          expired
    failed        (terminal)
    expired       (terminal)
    cancelled     (terminal)

Once a broadcast is `sending`, the only way it stops early is expiry;
cancellation is refused from then on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Dict, FrozenSet, Optional

from backend.app.broadcasts.models import Broadcast, BroadcastStatus
from backend.app.broadcasts.store import BroadcastStore
from backend.app.core.errors import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

S = BroadcastStatus

ALLOWED_TRANSITIONS: Dict[BroadcastStatus, FrozenSet[BroadcastStatus]] = {
    S.DRAFT:     frozenset({S.SCHEDULED, S.SENDING, S.CANCELLED, S.EXPIRED}),
    S.SCHEDULED: frozenset({S.SENDING, S.DRAFT, S.CANCELLED, S.EXPIRED}),
    S.SENDING:   frozenset({S.SENT, S.FAILED, S.EXPIRED}),
    S.SENT:      frozenset({S.EXPIRED}),
    S.FAILED:    frozenset(),
    S.EXPIRED:   frozenset(),
    S.CANCELLED: frozenset(),
}

# Content edits allowed per status
EDITABLE_FIELDS: Dict[BroadcastStatus, FrozenSet[str]] = {
    S.DRAFT: frozenset({
        "title", "body", "type", "priority", "audience", "channels",
        "requires_acknowledgment", "scheduled_for", "expires_at",
    }),
    S.SCHEDULED: frozenset({"title", "body"}),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransitionResult:
    broadcast: Broadcast
    changed: bool


class BroadcastLifecycleManager:
    """Enforces the broadcast status machine on top of a BroadcastStore."""

    MAX_CAS_ATTEMPTS = 32

    def __init__(self, store: BroadcastStore, clock: Clock = _utcnow):
        self._store = store
        self._clock = clock

    def get(self, broadcast_id: str) -> Broadcast:
        broadcast = self._store.get_broadcast(broadcast_id)
        if broadcast is None:
            raise NotFoundError("Broadcast", broadcast_id=broadcast_id)
        return broadcast

    def create(self, broadcast: Broadcast) -> Broadcast:
        if broadcast.status not in (S.DRAFT, S.SCHEDULED):
            raise InvalidStateError(
                "New broadcasts start as draft or scheduled",
                current_status=broadcast.status.value,
            )
        stored = self._store.insert_broadcast(broadcast)
        logger.info(
            "Broadcast %s created (%s, %s): %s",
            stored.broadcast_id, stored.type.value, stored.status.value, stored.title,
            extra={"broadcast_id": stored.broadcast_id, "status": stored.status.value},
        )
        return stored

    # ═══════════════════════════════════════════════════════════════════
    # Generic transition
    # ═══════════════════════════════════════════════════════════════════

    def transition(
        self,
        broadcast_id: str,
        target: BroadcastStatus,
        *,
        expected_from: Optional[Collection[BroadcastStatus]] = None,
        **changes: Any,
    ) -> TransitionResult:
        """
        Move a broadcast to `target`.

        Returns changed=False when it is already there. Raises
        InvalidStateError when the move is not allowed from the current
        status (or the current status is not in `expected_from`).
        """
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self.get(broadcast_id)
            if current.status is target:
                return TransitionResult(current, False)

            if expected_from is not None and current.status not in expected_from:
                raise InvalidStateError(
                    f"Broadcast {broadcast_id} is {current.status.value}; "
                    f"expected one of {sorted(s.value for s in expected_from)}",
                    current_status=current.status.value,
                )
            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidStateError(
                    f"Cannot move broadcast {broadcast_id} from "
                    f"{current.status.value} to {target.value}",
                    current_status=current.status.value,
                )

            updated = replace(current, status=target, **self._stamps(current, target), **changes)
            stored = self._store.compare_and_set_broadcast(updated)
            if stored is not None:
                logger.info(
                    "Broadcast %s: %s → %s",
                    broadcast_id, current.status.value, target.value,
                    extra={"broadcast_id": broadcast_id, "status": target.value},
                )
                return TransitionResult(stored, True)
        raise ConcurrencyError("Broadcast", broadcast_id, self.MAX_CAS_ATTEMPTS)

    def _stamps(self, current: Broadcast, target: BroadcastStatus) -> Dict[str, Any]:
        now = self._clock()
        if target is S.SENDING:
            return {"sent_at": now}
        if target in (S.SENT, S.FAILED):
            return {"completed_at": now}
        if target in (S.EXPIRED, S.CANCELLED) and current.completed_at is None:
            return {"completed_at": now}
        return {}

    # ═══════════════════════════════════════════════════════════════════
    # Named moves
    # ═══════════════════════════════════════════════════════════════════

    def schedule(self, broadcast_id: str) -> TransitionResult:
        return self.transition(broadcast_id, S.SCHEDULED, expected_from={S.DRAFT})

    def start_sending(
        self,
        broadcast_id: str,
        expected_from: Collection[BroadcastStatus] = (S.DRAFT, S.SCHEDULED),
    ) -> bool:
        """True only for the caller that actually moved the broadcast to sending."""
        return self.transition(broadcast_id, S.SENDING, expected_from=expected_from).changed

    def complete_dispatch(self, broadcast_id: str, accepted_any: bool) -> Broadcast:
        """
        Called once the dispatcher has a final outcome for every record.

        A broadcast that expired mid-dispatch stays expired.
        """
        current = self.get(broadcast_id)
        if current.status is not S.SENDING:
            logger.info(
                "Dispatch of %s finished while %s; status unchanged",
                broadcast_id, current.status.value,
                extra={"broadcast_id": broadcast_id, "status": current.status.value},
            )
            return current
        if accepted_any:
            return self._settle(broadcast_id, S.SENT)
        return self._settle(
            broadcast_id, S.FAILED,
            failure_reason="no channel accepted any delivery",
        )

    def _settle(self, broadcast_id: str, target: BroadcastStatus, **changes: Any) -> Broadcast:
        try:
            return self.transition(
                broadcast_id, target, expected_from={S.SENDING}, **changes,
            ).broadcast
        except InvalidStateError:
            # Expired between the status read and the write
            return self.get(broadcast_id)

    def fail(self, broadcast_id: str, reason: str) -> TransitionResult:
        return self.transition(
            broadcast_id, S.FAILED, expected_from={S.SENDING}, failure_reason=reason,
        )

    def expire(self, broadcast_id: str) -> TransitionResult:
        return self.transition(broadcast_id, S.EXPIRED)

    def cancel(
        self,
        broadcast_id: str,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        return self.transition(
            broadcast_id, S.CANCELLED,
            expected_from={S.DRAFT, S.SCHEDULED},
            cancelled_by=cancelled_by, cancel_reason=reason,
        )

    def unschedule(self, broadcast_id: str) -> TransitionResult:
        return self.transition(
            broadcast_id, S.DRAFT, expected_from={S.SCHEDULED}, scheduled_for=None,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Non-status updates
    # ═══════════════════════════════════════════════════════════════════

    def _update(self, broadcast_id: str, mutate: Callable[[Broadcast], Optional[Broadcast]]) -> Broadcast:
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self.get(broadcast_id)
            updated = mutate(current)
            if updated is None:
                return current
            stored = self._store.compare_and_set_broadcast(updated)
            if stored is not None:
                return stored
        raise ConcurrencyError("Broadcast", broadcast_id, self.MAX_CAS_ATTEMPTS)

    def update_content(self, broadcast_id: str, **fields: Any) -> Broadcast:
        """Edit a draft (any field) or a scheduled broadcast (title and body)."""

        def mutate(current: Broadcast) -> Broadcast:
            allowed = EDITABLE_FIELDS.get(current.status)
            if allowed is None:
                raise InvalidStateError(
                    f"Broadcast {broadcast_id} can no longer be edited",
                    current_status=current.status.value,
                )
            refused = sorted(set(fields) - allowed)
            if refused:
                raise InvalidStateError(
                    f"Fields {refused} cannot be edited while {current.status.value}",
                    current_status=current.status.value,
                )
            return replace(current, **fields)

        return self._update(broadcast_id, mutate)

    def record_target_count(self, broadcast_id: str, count: int) -> Broadcast:
        def mutate(current: Broadcast) -> Optional[Broadcast]:
            if current.target_count == count:
                return None
            return replace(current, target_count=count)

        return self._update(broadcast_id, mutate)
