"""
dispatcher.py — Concurrent fan-out of one broadcast to its recipients.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  RecipientSet       │  recipients × their channels
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  1. Create records  │  one queued DeliveryRecord per (recipient, channel)
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Submit tasks    │  one task per record, onto that channel's pool
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Send + retry    │  Accepted → sent, Rejected → failed,
    │     (worker thread) │  Unavailable → backoff and retry, then failed
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Countdown       │  every task arrives exactly once (finally);
    │                     │  the last one finalizes the broadcast
    └─────────────────────┘

Concurrency is bounded per channel and shared across every broadcast in
flight: each channel owns one ThreadPoolExecutor sized from
CHANNEL_CONCURRENCY. A slow email provider therefore never starves push.

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    delay(n) = min(base × 2^(n − 1), cap)         n = 1, 2, ...

    Defaults (base=1s, cap=30s, max_retries=3):
        Retry 1: 1s, Retry 2: 2s, Retry 3: 4s, then failed.

Only Unavailable outcomes are retried. An adapter that raises is treated
as Unavailable (ChannelRejectedError as Rejected) so one bad call can
never abort the fan-out.

═══════════════════════════════════════════════════════════════════════════
COMPLETION
═══════════════════════════════════════════════════════════════════════════

When the countdown reaches zero the lifecycle manager is told first and
the DispatchResult event is set second, so anyone waiting on the result
observes the final broadcast status. The broadcast is `sent` if at
least one record left the queue without failing, else `failed`.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from backend.app.broadcasts.channels.base import ChannelAdapter, DeliveryOutcome
from backend.app.broadcasts.lifecycle import BroadcastLifecycleManager
from backend.app.broadcasts.models import (
    AttemptState,
    Broadcast,
    DeliveryChannel,
    DeliveryRecord,
    Recipient,
    RecipientSet,
    RecordKey,
)
from backend.app.broadcasts.store import BroadcastStore
from backend.app.broadcasts.tracker import DeliveryTracker
from backend.app.core.config import settings
from backend.app.core.errors import ChannelError

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0

    def delay(self, retry_number: int) -> float:
        """Delay before retry `retry_number` (1-based)."""
        return min(self.backoff_base_seconds * (2 ** (retry_number - 1)), self.backoff_max_seconds)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.DELIVERY_MAX_RETRIES,
            backoff_base_seconds=settings.DELIVERY_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.DELIVERY_BACKOFF_MAX_SECONDS,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Completion tracking
# ═══════════════════════════════════════════════════════════════════════════

class CompletionBarrier:
    """Countdown over a broadcast's records; runs `on_complete` exactly once."""

    def __init__(self, count: int, on_complete: Callable[[], None]):
        self._remaining = count
        self._on_complete = on_complete
        self._lock = threading.Lock()
        self._event = threading.Event()
        if count == 0:
            self._fire()

    def arrive(self) -> None:
        with self._lock:
            self._remaining -= 1
            last = self._remaining == 0
        if last:
            self._fire()

    def _fire(self) -> None:
        try:
            self._on_complete()
        except Exception:
            logger.exception("Dispatch completion handler failed")
        finally:
            self._event.set()

    @property
    def remaining(self) -> int:
        return self._remaining

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    @property
    def done(self) -> bool:
        return self._event.is_set()


@dataclass
class DispatchResult:
    """Handle on an in-flight dispatch."""
    broadcast_id: str
    recipient_count: int
    record_count: int
    barrier: CompletionBarrier = field(repr=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def done(self) -> bool:
        return self.barrier.done

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every record has a final dispatch outcome."""
        return self.barrier.wait(timeout)

    def to_dict(self) -> dict:
        return {
            "broadcast_id": self.broadcast_id,
            "recipient_count": self.recipient_count,
            "record_count": self.record_count,
            "done": self.done,
            "started_at": self.started_at.isoformat(),
        }


def _log_reminder_failure(key: RecordKey) -> Callable[[Future], None]:
    def callback(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Reminder for %s/%s via %s failed: %s",
                key[0], key[1], key[2].value, exc,
                exc_info=exc,
                extra={"broadcast_id": key[0], "recipient_id": key[1], "channel": key[2].value},
            )
    return callback


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class DeliveryDispatcher:
    """Fans broadcasts out over per-channel worker pools."""

    def __init__(
        self,
        store: BroadcastStore,
        tracker: DeliveryTracker,
        lifecycle: BroadcastLifecycleManager,
        adapters: Mapping[DeliveryChannel, ChannelAdapter],
        *,
        concurrency: Optional[Mapping[str, int]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._tracker = tracker
        self._lifecycle = lifecycle
        self._adapters = dict(adapters)
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep

        limits = dict(settings.CHANNEL_CONCURRENCY)
        limits.update(concurrency or {})
        self._pools: Dict[DeliveryChannel, ThreadPoolExecutor] = {
            channel: ThreadPoolExecutor(
                max_workers=max(1, int(limits.get(channel.value, 4))),
                thread_name_prefix=f"dispatch-{channel.value}",
            )
            for channel in DeliveryChannel
        }
        self._lock = threading.Lock()
        self._in_flight: Dict[str, DispatchResult] = {}

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def adapters(self) -> Dict[DeliveryChannel, ChannelAdapter]:
        return dict(self._adapters)

    def in_flight(self) -> List[DispatchResult]:
        with self._lock:
            return [r for r in self._in_flight.values() if not r.done]

    def result_for(self, broadcast_id: str) -> Optional[DispatchResult]:
        with self._lock:
            return self._in_flight.get(broadcast_id)

    # ── Fan-out ──

    def dispatch(self, broadcast: Broadcast, recipients: RecipientSet) -> DispatchResult:
        """
        Create a queued record per (recipient, channel) and submit the sends.

        Returns immediately; the broadcast settles to sent/failed when the
        last record gets its outcome.
        """
        bid = broadcast.broadcast_id
        now = datetime.now(timezone.utc)

        work: List[Tuple[Recipient, RecordKey]] = []
        try:
            for entry in recipients.recipients:
                for channel in entry.channels:
                    record = DeliveryRecord(
                        broadcast_id=bid,
                        recipient_id=entry.recipient_id,
                        channel=channel,
                        created_at=now,
                        last_updated_at=now,
                    )
                    if self._store.add_delivery_record(record):
                        work.append((entry.recipient, record.key))
        except Exception as exc:
            # Records created so far will never be submitted
            for _, key in work:
                self._fail_quietly(key, f"dispatch aborted: {type(exc).__name__}: {exc}")
            raise

        barrier = CompletionBarrier(len(work), lambda: self._finalize(bid))
        result = DispatchResult(
            broadcast_id=bid,
            recipient_count=recipients.count,
            record_count=len(work),
            barrier=barrier,
        )
        with self._lock:
            self._in_flight[bid] = result

        logger.info(
            "Dispatching %s to %d recipients (%d deliveries)",
            bid, recipients.count, len(work),
            extra={"broadcast_id": bid, "record_count": len(work)},
        )

        for recipient, key in work:
            channel = key[2]
            try:
                self._pools[channel].submit(self._deliver, broadcast, recipient, key, barrier)
            except RuntimeError:
                # Pool shut down mid fan-out
                self._fail_quietly(key, "dispatcher shut down")
                barrier.arrive()
        return result

    def _finalize(self, broadcast_id: str) -> None:
        stats = self._tracker.stats(broadcast_id)
        accepted_any = stats.sent - stats.failed > 0
        final = self._lifecycle.complete_dispatch(broadcast_id, accepted_any)
        logger.info(
            "Dispatch of %s complete: %d sent, %d failed → %s",
            broadcast_id, stats.sent, stats.failed, final.status.value,
            extra={"broadcast_id": broadcast_id, "status": final.status.value},
        )

    # ── Per-record work (runs on a channel pool thread) ──

    def _deliver(
        self,
        broadcast: Broadcast,
        recipient: Recipient,
        key: RecordKey,
        barrier: CompletionBarrier,
    ) -> None:
        try:
            self._send_with_retry(broadcast, recipient, key)
        except Exception as exc:
            logger.exception(
                "Delivery task crashed for %s/%s via %s",
                key[0], key[1], key[2].value,
                extra={"broadcast_id": key[0], "recipient_id": key[1]},
            )
            self._fail_quietly(key, f"internal error: {exc}")
        finally:
            barrier.arrive()

    def _send_with_retry(self, broadcast: Broadcast, recipient: Recipient, key: RecordKey) -> None:
        channel = key[2]
        adapter = self._adapters.get(channel)
        if adapter is None:
            self._tracker.mark_failed(key, f"no adapter configured for {channel.value}")
            return

        retries = 0
        while True:
            outcome = self._invoke(adapter, recipient, broadcast)

            if outcome.is_accepted:
                self._tracker.mark_sent(key, outcome.provider_message_id)
                return
            if outcome.is_rejected:
                self._tracker.mark_failed(key, outcome.reason or "rejected by provider")
                return

            retries += 1
            if retries > self._retry.max_retries:
                self._tracker.mark_failed(
                    key, f"unavailable after {retries} attempts: {outcome.reason}",
                )
                return

            record = self._tracker.note_retry(key, outcome.reason or "provider unavailable")
            if record.state is not AttemptState.QUEUED:
                # A receipt or acknowledgment already proved delivery
                logger.info(
                    "Stopping retries for %s via %s: record is %s",
                    recipient.recipient_id, channel.value, record.state.value,
                    extra={"broadcast_id": key[0], "recipient_id": key[1], "channel": channel.value},
                )
                return
            delay = self._retry.delay(retries)
            logger.info(
                "Retry %d/%d for %s via %s in %.1fs (%s)",
                retries, self._retry.max_retries, recipient.recipient_id,
                channel.value, delay, outcome.reason,
                extra={"broadcast_id": key[0], "recipient_id": key[1], "channel": channel.value},
            )
            self._sleep(delay)

    @staticmethod
    def _invoke(adapter: ChannelAdapter, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        try:
            return adapter.send(recipient, broadcast)
        except ChannelError as exc:
            if exc.retryable:
                return DeliveryOutcome.unavailable(exc.reason)
            return DeliveryOutcome.rejected(exc.reason)
        except Exception as exc:
            logger.warning(
                "%s adapter raised %s: %s",
                adapter.channel.value, type(exc).__name__, exc,
            )
            return DeliveryOutcome.unavailable(f"{type(exc).__name__}: {exc}")

    def _fail_quietly(self, key: RecordKey, reason: str) -> None:
        try:
            self._tracker.mark_failed(key, reason)
        except Exception:
            logger.exception("Could not mark %s failed", key)

    # ── Re-notification ──

    def renotify(
        self,
        broadcast: Broadcast,
        targets: Sequence[Tuple[Recipient, DeliveryRecord]],
    ) -> List[Future]:
        """
        Resend to delivered-but-unacknowledged records.

        Reminders never change the record state; an accepted resend only
        bumps the record's reminder count.
        """
        futures = []
        for recipient, record in targets:
            future = self._pools[record.channel].submit(
                self._remind, broadcast, recipient, record.key,
            )
            future.add_done_callback(_log_reminder_failure(record.key))
            futures.append(future)
        return futures

    def _remind(self, broadcast: Broadcast, recipient: Recipient, key: RecordKey) -> bool:
        adapter = self._adapters.get(key[2])
        if adapter is None:
            return False
        outcome = self._invoke(adapter, recipient, broadcast)
        if not outcome.is_accepted:
            logger.info(
                "Reminder for %s/%s via %s not accepted: %s",
                key[0], key[1], key[2].value, outcome.reason,
            )
            return False
        self._tracker.note_reminder(key)
        return True

    # ── Shutdown ──

    def shutdown(self, wait: bool = True) -> None:
        for pool in self._pools.values():
            pool.shutdown(wait=wait)
        for adapter in self._adapters.values():
            adapter.close()
