"""
tracker.py — Delivery record state machine, receipts, acknowledgments, stats.

Every mutation of a DeliveryRecord goes through `_advance`, a
read → mutate → check-and-set loop on the record's version:

    ┌──────────────┐   mutate()    ┌──────────────┐   CAS ok    ┌─────────┐
    │ read record  │ ────────────► │ new value or │ ──────────► │ stored  │
    └──────▲───────┘               │ None (no-op) │             └─────────┘
           │        CAS lost       └──────┬───────┘
           └──────────────────────────────┘

A mutate function returns None when the requested move would not take
the record forward (replayed receipt, duplicate ack, late failure after
a receipt). That makes every operation idempotent and the record state
monotone no matter how dispatcher results, provider receipts and
acknowledgments interleave.

Stats are never stored: `stats()` folds the records, and the result is
cached per broadcast until the next write to one of its records.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from backend.app.broadcasts.models import (
    AttemptState,
    CHANNEL_ORDER,
    DeliveryChannel,
    DeliveryRecord,
    DeliveryStats,
    RecordKey,
    can_advance,
)
from backend.app.broadcasts.store import BroadcastStore
from backend.app.core.errors import (
    ConcurrencyError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

RECEIPT_STATES = (AttemptState.DELIVERED, AttemptState.READ)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp_progress(record: DeliveryRecord, target: AttemptState, now: datetime, **extra) -> DeliveryRecord:
    """Move `record` to `target`, filling any timestamps of states it skipped."""
    changes = {"state": target, "last_updated_at": now, **extra}
    if target.rank >= AttemptState.SENT.rank and record.sent_at is None:
        changes["sent_at"] = now
    if target.rank >= AttemptState.DELIVERED.rank and record.delivered_at is None:
        changes["delivered_at"] = now
    if target.rank >= AttemptState.READ.rank and record.read_at is None:
        changes["read_at"] = now
    if target is AttemptState.ACKNOWLEDGED and record.acknowledged_at is None:
        changes["acknowledged_at"] = now
    return replace(record, **changes)


class DeliveryTracker:
    """Owns every state change of DeliveryRecords after creation."""

    MAX_CAS_ATTEMPTS = 32

    def __init__(self, store: BroadcastStore, clock: Clock = _utcnow):
        self._store = store
        self._clock = clock
        self._generation: Dict[str, int] = {}
        self._stats_cache: Dict[str, Tuple[int, DeliveryStats]] = {}
        self._cache_lock = threading.Lock()

    # ═══════════════════════════════════════════════════════════════════
    # Core check-and-set loop
    # ═══════════════════════════════════════════════════════════════════

    def _advance(
        self,
        key: RecordKey,
        mutate: Callable[[DeliveryRecord], Optional[DeliveryRecord]],
    ) -> DeliveryRecord:
        for _ in range(self.MAX_CAS_ATTEMPTS):
            current = self._store.get_delivery_record(key)
            if current is None:
                raise NotFoundError(
                    "DeliveryRecord",
                    broadcast_id=key[0], recipient_id=key[1], channel=key[2].value,
                )
            updated = mutate(current)
            if updated is None:
                return current
            stored = self._store.compare_and_set_delivery_record(updated)
            if stored is not None:
                self._invalidate(key[0])
                return stored
        raise ConcurrencyError("DeliveryRecord", key, self.MAX_CAS_ATTEMPTS)

    def _invalidate(self, broadcast_id: str) -> None:
        with self._cache_lock:
            self._generation[broadcast_id] = self._generation.get(broadcast_id, 0) + 1
            self._stats_cache.pop(broadcast_id, None)

    # ═══════════════════════════════════════════════════════════════════
    # Dispatcher-driven transitions
    # ═══════════════════════════════════════════════════════════════════

    def mark_sent(self, key: RecordKey, provider_message_id: Optional[str] = None) -> DeliveryRecord:
        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if not can_advance(record.state, AttemptState.SENT):
                # A receipt or ack got here first; keep the id if we learnt one
                if provider_message_id and record.provider_message_id is None \
                        and record.state is not AttemptState.FAILED:
                    return replace(record, provider_message_id=provider_message_id)
                return None
            return _stamp_progress(
                record, AttemptState.SENT, now,
                provider_message_id=provider_message_id or record.provider_message_id,
            )

        return self._advance(key, mutate)

    def mark_failed(self, key: RecordKey, reason: str) -> DeliveryRecord:
        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if not can_advance(record.state, AttemptState.FAILED):
                return None
            return replace(
                record, state=AttemptState.FAILED,
                failure_reason=reason, last_updated_at=now,
            )

        stored = self._advance(key, mutate)
        if stored.state is AttemptState.FAILED:
            logger.info(
                "Delivery failed %s/%s via %s: %s",
                key[0], key[1], key[2].value, reason,
                extra={"broadcast_id": key[0], "recipient_id": key[1], "channel": key[2].value},
            )
        return stored

    def note_retry(self, key: RecordKey, reason: str) -> DeliveryRecord:
        """Count a transient failure; the record stays queued."""
        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if record.state is not AttemptState.QUEUED:
                return None
            return replace(
                record, retry_count=record.retry_count + 1,
                failure_reason=reason, last_updated_at=now,
            )

        return self._advance(key, mutate)

    def note_reminder(self, key: RecordKey) -> DeliveryRecord:
        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if record.state is AttemptState.ACKNOWLEDGED or record.state is AttemptState.FAILED:
                return None
            return replace(
                record, reminder_count=record.reminder_count + 1,
                last_reminded_at=now, last_updated_at=now,
            )

        return self._advance(key, mutate)

    # ═══════════════════════════════════════════════════════════════════
    # Provider receipts
    # ═══════════════════════════════════════════════════════════════════

    def report_receipt(
        self,
        broadcast_id: str,
        recipient_id: str,
        channel: DeliveryChannel,
        new_state: AttemptState,
        provider_timestamp: Optional[datetime] = None,
    ) -> DeliveryRecord:
        """
        Apply a provider receipt. Out-of-order and replayed receipts are
        no-ops; a receipt for a record the dispatcher has not yet marked
        sent implies the send happened and advances through it.
        """
        if new_state not in RECEIPT_STATES:
            raise ValidationError(
                f"Receipts may only report {[s.value for s in RECEIPT_STATES]}",
                field="new_state", value=new_state.value,
            )
        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if not can_advance(record.state, new_state):
                return None
            return _stamp_progress(
                record, new_state, now,
                provider_timestamp=provider_timestamp or record.provider_timestamp,
            )

        return self._advance((broadcast_id, recipient_id, channel), mutate)

    # ═══════════════════════════════════════════════════════════════════
    # Acknowledgment
    # ═══════════════════════════════════════════════════════════════════

    def acknowledge(
        self,
        broadcast_id: str,
        recipient_id: str,
        channel: Optional[DeliveryChannel] = None,
    ) -> DeliveryRecord:
        """
        Record the recipient's acknowledgment.

        Without a channel, the recipient's most advanced non-failed record
        takes the acknowledgment. Acknowledging twice returns the already
        acknowledged record unchanged.
        """
        if channel is not None:
            key = (broadcast_id, recipient_id, channel)
        else:
            key = self._ack_target(broadcast_id, recipient_id)

        now = self._clock()

        def mutate(record: DeliveryRecord) -> Optional[DeliveryRecord]:
            if record.state is AttemptState.FAILED:
                raise InvalidStateError(
                    f"Delivery to {recipient_id} via {record.channel.value} failed; "
                    "nothing to acknowledge",
                    current_status=record.state.value,
                )
            if not can_advance(record.state, AttemptState.ACKNOWLEDGED):
                return None
            return _stamp_progress(record, AttemptState.ACKNOWLEDGED, now)

        stored = self._advance(key, mutate)
        logger.info(
            "Acknowledgment %s ← %s via %s",
            broadcast_id, recipient_id, stored.channel.value,
            extra={"broadcast_id": broadcast_id, "recipient_id": recipient_id},
        )
        return stored

    def _ack_target(self, broadcast_id: str, recipient_id: str) -> RecordKey:
        records = self.records_for_recipient(broadcast_id, recipient_id)
        if not records:
            raise NotFoundError(
                "DeliveryRecord", broadcast_id=broadcast_id, recipient_id=recipient_id,
            )
        for record in records:
            if record.state is AttemptState.ACKNOWLEDGED:
                return record.key

        candidates = [r for r in records if r.state is not AttemptState.FAILED]
        if not candidates:
            raise InvalidStateError(
                f"Every delivery to {recipient_id} failed; nothing to acknowledge",
                current_status=AttemptState.FAILED.value,
            )
        best = max(
            candidates,
            key=lambda r: (r.state.rank, -CHANNEL_ORDER.index(r.channel)),
        )
        return best.key

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    def records(self, broadcast_id: str) -> List[DeliveryRecord]:
        return self._store.delivery_records(broadcast_id)

    def records_for_recipient(self, broadcast_id: str, recipient_id: str) -> List[DeliveryRecord]:
        return [r for r in self.records(broadcast_id) if r.recipient_id == recipient_id]

    def stats(self, broadcast_id: str) -> DeliveryStats:
        with self._cache_lock:
            generation = self._generation.get(broadcast_id, 0)
            cached = self._stats_cache.get(broadcast_id)
        if cached is not None and cached[0] == generation:
            return cached[1].copy()

        stats = DeliveryStats.from_records(self.records(broadcast_id))
        with self._cache_lock:
            # A write that landed while folding bumped the generation; skip caching then
            if self._generation.get(broadcast_id, 0) == generation:
                self._stats_cache[broadcast_id] = (generation, stats)
        return stats.copy()

    def awaiting_acknowledgment(self, broadcast_id: str) -> Dict[str, List[DeliveryRecord]]:
        """
        Recipients with a delivered record and no acknowledgment on any
        channel, mapped to those delivered records.
        """
        by_recipient: Dict[str, List[DeliveryRecord]] = {}
        acked = set()
        for record in self.records(broadcast_id):
            if record.state is AttemptState.ACKNOWLEDGED:
                acked.add(record.recipient_id)
            elif record.state in RECEIPT_STATES:
                by_recipient.setdefault(record.recipient_id, []).append(record)
        return {rid: recs for rid, recs in by_recipient.items() if rid not in acked}
