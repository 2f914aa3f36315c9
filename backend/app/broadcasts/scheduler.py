"""
scheduler.py — Periodic sweep over broadcasts with time-based work.

Each sweep, in order:

    1. Expire   — any broadcast whose expires_at ≤ now, unless it is already
                  failed, expired or cancelled
    2. Release  — scheduled broadcasts whose scheduled_for ≤ now are handed
                  to the release callback (which moves them to sending)
    3. Remind   — when re-notification is enabled, delivered-but-unacknowledged
                  recipients of sent broadcasts that require acknowledgment
                  are re-sent on their delivered channels
                  (push and SMS wait while the recipient is in quiet hours)

Expiry runs first so a broadcast that is both due and expired is never
sent. Several schedulers may sweep the same store at once: the release
callback only dispatches when its own scheduled → sending move won the
check-and-set, so a broadcast is released exactly once.

A failure on one broadcast is logged and counted; the sweep carries on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.app.broadcasts.audience import RecipientDirectory
from backend.app.broadcasts.dispatcher import DeliveryDispatcher
from backend.app.broadcasts.lifecycle import BroadcastLifecycleManager
from backend.app.broadcasts.models import (
    Broadcast,
    BroadcastStatus,
    BroadcastType,
    DeliveryRecord,
    INTRUSIVE_CHANNELS,
    Recipient,
)
from backend.app.broadcasts.store import BroadcastStore
from backend.app.broadcasts.tracker import DeliveryTracker
from backend.app.core.errors import BroadcastServiceError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_NOT_EXPIRABLE = (BroadcastStatus.FAILED, BroadcastStatus.EXPIRED, BroadcastStatus.CANCELLED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RenotifyPolicy:
    """Re-send to unacknowledged recipients every `interval` up to `max_attempts` times."""
    interval: Optional[timedelta] = None
    max_attempts: int = 0

    @property
    def enabled(self) -> bool:
        return self.interval is not None and self.interval.total_seconds() > 0 and self.max_attempts > 0

    @classmethod
    def from_seconds(cls, seconds: Optional[float], max_attempts: int) -> "RenotifyPolicy":
        if not seconds:
            return cls(None, max_attempts)
        return cls(timedelta(seconds=seconds), max_attempts)


@dataclass
class SweepReport:
    swept_at: datetime
    released: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)
    reminders: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swept_at": self.swept_at.isoformat(),
            "released": self.released,
            "expired": self.expired,
            "reminders": self.reminders,
            "errors": self.errors,
        }


class BroadcastScheduler:
    """
    Runs sweeps on demand (`sweep`) or on an asyncio loop (`start`/`stop`).

    `release` is called with a broadcast id and must return a truthy value
    only when it actually launched the broadcast.
    """

    def __init__(
        self,
        store: BroadcastStore,
        lifecycle: BroadcastLifecycleManager,
        release: Callable[[str], Any],
        *,
        tracker: Optional[DeliveryTracker] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
        directory: Optional[RecipientDirectory] = None,
        renotify: RenotifyPolicy = RenotifyPolicy(),
        interval_seconds: float = 15.0,
        clock: Clock = _utcnow,
    ):
        if renotify.enabled and (tracker is None or dispatcher is None or directory is None):
            raise ValueError("Re-notification needs a tracker, dispatcher and directory")
        self._store = store
        self._lifecycle = lifecycle
        self._release = release
        self._tracker = tracker
        self._dispatcher = dispatcher
        self._directory = directory
        self._renotify = renotify
        self._interval = interval_seconds
        self._clock = clock

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._running

    # ═══════════════════════════════════════════════════════════════════
    # Sweep
    # ═══════════════════════════════════════════════════════════════════

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or self._clock()
        report = SweepReport(swept_at=now)
        broadcasts = self._store.list_broadcasts()

        for broadcast in broadcasts:
            if broadcast.status in _NOT_EXPIRABLE or not broadcast.is_expired_at(now):
                continue
            if self._guard(report, broadcast, self._expire, broadcast):
                report.expired.append(broadcast.broadcast_id)

        for broadcast in broadcasts:
            if broadcast.status is not BroadcastStatus.SCHEDULED:
                continue
            if broadcast.scheduled_for is None or broadcast.scheduled_for > now:
                continue
            if broadcast.broadcast_id in report.expired:
                continue
            if self._guard(report, broadcast, self._release, broadcast.broadcast_id):
                report.released.append(broadcast.broadcast_id)

        if self._renotify.enabled:
            for broadcast in broadcasts:
                if broadcast.status is not BroadcastStatus.SENT or not broadcast.requires_acknowledgment:
                    continue
                if broadcast.is_expired_at(now):
                    continue
                sent = self._guard(report, broadcast, self._remind, broadcast, now)
                report.reminders += sent or 0

        if report.released or report.expired or report.reminders or report.errors:
            logger.info(
                "Sweep: %d released, %d expired, %d reminders, %d errors",
                len(report.released), len(report.expired), report.reminders, report.errors,
            )
        self.last_report = report
        return report

    def _guard(self, report: SweepReport, broadcast: Broadcast, action: Callable, *args: Any) -> Any:
        try:
            return action(*args)
        except BroadcastServiceError as exc:
            report.errors += 1
            logger.warning(
                "Sweep skipped %s: %s", broadcast.broadcast_id, exc.message,
                extra={"broadcast_id": broadcast.broadcast_id},
            )
        except Exception:
            report.errors += 1
            logger.exception(
                "Sweep failed on %s", broadcast.broadcast_id,
                extra={"broadcast_id": broadcast.broadcast_id},
            )
        return None

    def _expire(self, broadcast: Broadcast) -> bool:
        return self._lifecycle.expire(broadcast.broadcast_id).changed

    def _remind(self, broadcast: Broadcast, now: datetime) -> int:
        targets: List[Tuple[Recipient, DeliveryRecord]] = []
        awaiting = self._tracker.awaiting_acknowledgment(broadcast.broadcast_id)
        emergency = broadcast.type is BroadcastType.EMERGENCY
        for recipient_id, records in awaiting.items():
            recipient = self._directory.get(recipient_id)
            if recipient is None or not recipient.active:
                continue
            quiet = not emergency and recipient.is_quiet_at(now)
            for record in records:
                if record.reminder_count >= self._renotify.max_attempts:
                    continue
                if quiet and record.channel in INTRUSIVE_CHANNELS:
                    continue
                last_contact = record.last_reminded_at or record.delivered_at or record.sent_at
                if last_contact is not None and last_contact + self._renotify.interval > now:
                    continue
                targets.append((recipient, record))

        if targets:
            self._dispatcher.renotify(broadcast, targets)
            logger.info(
                "Re-notifying %d unacknowledged deliveries of %s",
                len(targets), broadcast.broadcast_id,
                extra={"broadcast_id": broadcast.broadcast_id, "record_count": len(targets)},
            )
        return len(targets)

    # ═══════════════════════════════════════════════════════════════════
    # Background loop
    # ═══════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_scheduler())
        logger.info("Broadcast scheduler started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Broadcast scheduler stopped")

    async def _run_scheduler(self) -> None:
        while self._running:
            try:
                await asyncio.to_thread(self.sweep)
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Scheduler error: %s", e)
                await asyncio.sleep(self._interval)
