"""
service.py — BroadcastService: the operations the dashboard and API call.

═══════════════════════════════════════════════════════════════════════════
WIRING
═══════════════════════════════════════════════════════════════════════════

    BroadcastService
        ├── store        BroadcastStore (memory | sql)
        ├── directory    RecipientDirectory
        ├── resolver     AudienceResolver(directory)
        ├── lifecycle    BroadcastLifecycleManager(store)
        ├── tracker      DeliveryTracker(store)
        ├── adapters     {push, email, sms, in_app} → receipts bound to tracker
        ├── dispatcher   DeliveryDispatcher(store, tracker, lifecycle, adapters)
        └── scheduler    BroadcastScheduler(release = _release_scheduled)

═══════════════════════════════════════════════════════════════════════════
OPERATIONS
═══════════════════════════════════════════════════════════════════════════

    Operation               Effect
    ─────────────────────   ─────────────────────────────────────────────
    create_broadcast        validate → store (draft | scheduled) → send now
                            when not a draft and not scheduled for later
    create_from_template    render a template, then create_broadcast
    update_broadcast        edit a draft, or title/body of a scheduled one
    publish_broadcast       draft → scheduled | sending
    get_broadcast           broadcast + live DeliveryStats
    list_broadcasts         filter by status / type / search text
    cancel_broadcast        draft | scheduled → cancelled
    unschedule_broadcast    scheduled → draft
    submit_acknowledgment   recipient confirms; refused once expired
    report_receipt          provider delivery / read callback
    delivery_records        per-record audit trail
    inbox_for               in-app items whose broadcast is still live

Validation happens before any state change, so a rejected request never
leaves a half-created broadcast behind.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional, Union

from backend.app.broadcasts.audience import (
    AudienceResolver,
    InMemoryRecipientDirectory,
    RecipientDirectory,
)
from backend.app.broadcasts.channels import (
    ChannelAdapter,
    EmailAdapter,
    InAppAdapter,
    InAppInbox,
    PushAdapter,
    SmsAdapter,
)
from backend.app.broadcasts.dispatcher import DeliveryDispatcher, DispatchResult, RetryPolicy
from backend.app.broadcasts.lifecycle import BroadcastLifecycleManager
from backend.app.broadcasts.models import (
    AttemptState,
    AudienceSpec,
    Broadcast,
    BroadcastPriority,
    BroadcastStatus,
    BroadcastType,
    DeliveryChannel,
    DeliveryRecord,
    DeliveryStats,
    ExplicitRecipients,
    LocationBased,
    Recipient,
    RoleBased,
)
from backend.app.broadcasts.scheduler import BroadcastScheduler, RenotifyPolicy, SweepReport
from backend.app.broadcasts.store import BroadcastStore, InMemoryBroadcastStore
from backend.app.broadcasts.templates import BUILTIN_TEMPLATES, BroadcastTemplate, get_template
from backend.app.broadcasts.tracker import DeliveryTracker
from backend.app.core.config import settings
from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Adapter wiring
# ═══════════════════════════════════════════════════════════════════════════

def build_default_adapters(inbox: InAppInbox) -> Dict[DeliveryChannel, ChannelAdapter]:
    """Adapters configured from settings (simulation providers by default)."""
    timeout = settings.PROVIDER_TIMEOUT_SECONDS
    return {
        DeliveryChannel.PUSH: PushAdapter(
            provider=settings.PUSH_PROVIDER,
            gateway_url=settings.PUSH_GATEWAY_URL,
            timeout_seconds=timeout,
        ),
        DeliveryChannel.SMS: SmsAdapter(
            provider=settings.SMS_PROVIDER,
            gateway_url=settings.SMS_GATEWAY_URL,
            api_key=settings.SMS_API_KEY,
            timeout_seconds=timeout,
        ),
        DeliveryChannel.EMAIL: EmailAdapter(
            provider=settings.EMAIL_PROVIDER,
            smtp_host=settings.SMTP_HOST,
            smtp_port=settings.SMTP_PORT,
            from_address=settings.EMAIL_FROM_ADDRESS,
            timeout_seconds=timeout,
        ),
        DeliveryChannel.IN_APP: InAppAdapter(inbox),
    }


# ═══════════════════════════════════════════════════════════════════════════
# Views
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class BroadcastView:
    broadcast: Broadcast
    stats: DeliveryStats

    def to_dict(self) -> Dict[str, Any]:
        return {**self.broadcast.to_dict(), "stats": self.stats.to_dict()}


# ═══════════════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════════════

class BroadcastService:
    """Facade over the broadcast components."""

    def __init__(
        self,
        *,
        store: Optional[BroadcastStore] = None,
        directory: Optional[RecipientDirectory] = None,
        adapters: Optional[Mapping[DeliveryChannel, ChannelAdapter]] = None,
        inbox: Optional[InAppInbox] = None,
        clock: Clock = _utcnow,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: Optional[Mapping[str, int]] = None,
        renotify: Optional[RenotifyPolicy] = None,
        templates: Optional[Mapping[str, BroadcastTemplate]] = None,
        sleep: Callable[[float], None] = time.sleep,
        scheduler_interval_seconds: Optional[float] = None,
    ):
        self._clock = clock
        self.store = store if store is not None else InMemoryBroadcastStore()
        self.directory = directory if directory is not None else InMemoryRecipientDirectory()
        self.inbox = inbox if inbox is not None else InAppInbox()
        self.templates: Dict[str, BroadcastTemplate] = dict(templates or BUILTIN_TEMPLATES)

        self.resolver = AudienceResolver(self.directory)
        self.lifecycle = BroadcastLifecycleManager(self.store, clock)
        self.tracker = DeliveryTracker(self.store, clock)

        self.adapters = dict(adapters) if adapters is not None else build_default_adapters(self.inbox)
        for adapter in self.adapters.values():
            adapter.bind_receipts(self._on_receipt)

        self.dispatcher = DeliveryDispatcher(
            self.store, self.tracker, self.lifecycle, self.adapters,
            concurrency=concurrency,
            retry_policy=retry_policy,
            sleep=sleep,
        )
        if renotify is None:
            renotify = RenotifyPolicy.from_seconds(
                settings.RENOTIFY_INTERVAL_SECONDS, settings.RENOTIFY_MAX_ATTEMPTS,
            )
        self.scheduler = BroadcastScheduler(
            self.store, self.lifecycle, self._release_scheduled,
            tracker=self.tracker,
            dispatcher=self.dispatcher,
            directory=self.directory,
            renotify=renotify,
            interval_seconds=scheduler_interval_seconds or settings.SCHEDULER_INTERVAL_SECONDS,
            clock=clock,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Validation
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def _parse_type(value: Union[str, BroadcastType]) -> BroadcastType:
        try:
            return BroadcastType(value)
        except ValueError:
            raise ValidationError(
                f"Invalid broadcast type '{value}'", field="type",
                allowed=[t.value for t in BroadcastType],
            ) from None

    @staticmethod
    def _parse_priority(value: Union[str, int, BroadcastPriority]) -> BroadcastPriority:
        try:
            return BroadcastPriority.parse(value)
        except ValueError as exc:
            raise ValidationError(str(exc), field="priority") from None

    @staticmethod
    def _parse_channel(value: Union[str, DeliveryChannel]) -> DeliveryChannel:
        try:
            return DeliveryChannel.parse(value)
        except ValueError as exc:
            raise ValidationError(str(exc), field="channel") from None

    @staticmethod
    def _parse_channels(values: Iterable[Union[str, DeliveryChannel]]) -> frozenset:
        try:
            channels = frozenset(DeliveryChannel.parse(v) for v in values)
        except ValueError as exc:
            raise ValidationError(str(exc), field="channels") from None
        if not channels:
            raise ValidationError("At least one delivery channel is required", field="channels")
        return channels

    @staticmethod
    def _check_text(title: str, body: str) -> None:
        if len((title or "").strip()) < settings.TITLE_MIN_LENGTH:
            raise ValidationError(
                f"Title must be at least {settings.TITLE_MIN_LENGTH} characters",
                field="title",
            )
        if len((body or "").strip()) < settings.BODY_MIN_LENGTH:
            raise ValidationError(
                f"Body must be at least {settings.BODY_MIN_LENGTH} characters",
                field="body",
            )

    @staticmethod
    def _check_audience(audience: AudienceSpec) -> None:
        if isinstance(audience, ExplicitRecipients) and not audience.ids:
            raise ValidationError("Explicit audience needs at least one recipient id", field="audience")
        if isinstance(audience, RoleBased) and not audience.roles:
            raise ValidationError("Role audience needs at least one role", field="audience")
        if isinstance(audience, LocationBased) and audience.radius_meters <= 0:
            raise ValidationError(
                "Location audience radius must be positive", field="audience",
                radius_meters=audience.radius_meters,
            )

    @staticmethod
    def _check_timing(
        scheduled_for: Optional[datetime],
        expires_at: Optional[datetime],
        now: datetime,
    ) -> None:
        if scheduled_for is not None and scheduled_for < now:
            raise ValidationError("scheduled_for is in the past", field="scheduled_for")
        if expires_at is not None:
            if expires_at <= now:
                raise ValidationError("expires_at is in the past", field="expires_at")
            if scheduled_for is not None and expires_at <= scheduled_for:
                raise ValidationError(
                    "expires_at must be after scheduled_for", field="expires_at",
                )

    # ═══════════════════════════════════════════════════════════════════
    # Create / edit / publish
    # ═══════════════════════════════════════════════════════════════════

    def create_broadcast(
        self,
        *,
        title: str,
        body: str,
        type: Union[str, BroadcastType],
        priority: Union[str, int, BroadcastPriority],
        audience: AudienceSpec,
        channels: Iterable[Union[str, DeliveryChannel]],
        requires_acknowledgment: bool = False,
        scheduled_for: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        created_by: str = "system",
        draft: bool = False,
        template_id: Optional[str] = None,
    ) -> str:
        """
        Validate and store a broadcast; returns its id.

        Non-draft broadcasts with no scheduled_for (or one equal to now)
        start sending immediately; later ones become scheduled.
        """
        now = self._clock()
        scheduled_for = _aware(scheduled_for)
        expires_at = _aware(expires_at)

        broadcast_type = self._parse_type(type)
        broadcast_priority = self._parse_priority(priority)
        channel_set = self._parse_channels(channels)
        self._check_text(title, body)
        self._check_audience(audience)
        self._check_timing(scheduled_for, expires_at, now)

        status = BroadcastStatus.DRAFT
        if not draft and scheduled_for is not None and scheduled_for > now:
            status = BroadcastStatus.SCHEDULED

        broadcast = Broadcast(
            title=title.strip(),
            body=body.strip(),
            type=broadcast_type,
            priority=broadcast_priority,
            audience=audience,
            channels=channel_set,
            requires_acknowledgment=requires_acknowledgment,
            created_by=created_by,
            created_at=now,
            scheduled_for=scheduled_for,
            expires_at=expires_at,
            status=status,
            template_id=template_id,
        )
        preview = self.resolver.resolve_for_broadcast(broadcast, now)
        broadcast = self.lifecycle.create(replace(broadcast, target_count=preview.count))

        if not draft and status is BroadcastStatus.DRAFT:
            self._launch(broadcast.broadcast_id, expected_from={BroadcastStatus.DRAFT})
        return broadcast.broadcast_id

    def create_from_template(
        self,
        template_id: str,
        variables: Mapping[str, object],
        *,
        audience: AudienceSpec,
        channels: Optional[Iterable[Union[str, DeliveryChannel]]] = None,
        priority: Optional[Union[str, BroadcastPriority]] = None,
        requires_acknowledgment: Optional[bool] = None,
        **kwargs: Any,
    ) -> str:
        template = get_template(template_id, self.templates)
        title, body = template.render(variables)
        return self.create_broadcast(
            title=title,
            body=body,
            type=template.type,
            priority=priority if priority is not None else template.priority,
            audience=audience,
            channels=channels if channels is not None else template.default_channels,
            requires_acknowledgment=(
                template.requires_acknowledgment
                if requires_acknowledgment is None else requires_acknowledgment
            ),
            template_id=template.template_id,
            **kwargs,
        )

    def update_broadcast(self, broadcast_id: str, **changes: Any) -> Broadcast:
        """
        Edit a draft (any field) or fix the text of a scheduled broadcast.

        Changed values are validated exactly as on create.
        """
        current = self.lifecycle.get(broadcast_id)
        now = self._clock()
        fields: Dict[str, Any] = {k: v for k, v in changes.items() if v is not None}

        if "type" in fields:
            fields["type"] = self._parse_type(fields["type"])
        if "priority" in fields:
            fields["priority"] = self._parse_priority(fields["priority"])
        if "channels" in fields:
            fields["channels"] = self._parse_channels(fields["channels"])
        for key in ("scheduled_for", "expires_at"):
            if key in fields:
                fields[key] = _aware(fields[key])
        for key in ("title", "body"):
            if key in fields:
                fields[key] = fields[key].strip()

        self._check_text(fields.get("title", current.title), fields.get("body", current.body))
        if "audience" in fields:
            self._check_audience(fields["audience"])
        if current.status is BroadcastStatus.DRAFT and ({"scheduled_for", "expires_at"} & set(fields)):
            self._check_timing(
                fields.get("scheduled_for", current.scheduled_for),
                fields.get("expires_at", current.expires_at),
                now,
            )

        updated = self.lifecycle.update_content(broadcast_id, **fields)
        if {"audience", "channels", "priority", "type"} & set(fields):
            preview = self.resolver.resolve_for_broadcast(updated, now)
            updated = self.lifecycle.record_target_count(broadcast_id, preview.count)
        logger.info(
            "Broadcast %s edited: %s", broadcast_id, sorted(fields),
            extra={"broadcast_id": broadcast_id},
        )
        return updated

    def publish_broadcast(self, broadcast_id: str) -> Broadcast:
        """Release a draft: schedule it, or start sending when it is due."""
        current = self.lifecycle.get(broadcast_id)
        if current.status is not BroadcastStatus.DRAFT:
            raise InvalidStateError(
                f"Only drafts can be published; broadcast is {current.status.value}",
                current_status=current.status.value,
            )
        now = self._clock()
        if current.is_expired_at(now):
            raise ValidationError("Broadcast expired before it was published", field="expires_at")

        if current.scheduled_for is not None and current.scheduled_for > now:
            return self.lifecycle.schedule(broadcast_id).broadcast

        self._launch(broadcast_id, expected_from={BroadcastStatus.DRAFT})
        return self.lifecycle.get(broadcast_id)

    # ═══════════════════════════════════════════════════════════════════
    # Release
    # ═══════════════════════════════════════════════════════════════════

    def _release_scheduled(self, broadcast_id: str) -> Optional[DispatchResult]:
        broadcast = self.lifecycle.get(broadcast_id)
        if broadcast.is_expired_at(self._clock()):
            self.lifecycle.expire(broadcast_id)
            return None
        return self._launch(broadcast_id, expected_from={BroadcastStatus.SCHEDULED})

    def _launch(
        self,
        broadcast_id: str,
        expected_from: Collection[BroadcastStatus],
    ) -> Optional[DispatchResult]:
        """Move to sending, resolve the audience and hand off to the dispatcher."""
        if not self.lifecycle.start_sending(broadcast_id, expected_from):
            # Another caller already released it
            return None

        try:
            broadcast = self.lifecycle.get(broadcast_id)
            recipients = self.resolver.resolve_for_broadcast(broadcast, self._clock())
            broadcast = self.lifecycle.record_target_count(broadcast_id, recipients.count)

            if recipients.delivery_count == 0:
                self.lifecycle.fail(broadcast_id, "audience resolved to no reachable recipients")
                logger.warning(
                    "Broadcast %s has no reachable recipients (%d skipped)",
                    broadcast_id, recipients.skipped,
                    extra={"broadcast_id": broadcast_id},
                )
                return None
            return self.dispatcher.dispatch(broadcast, recipients)
        except Exception as exc:
            # Nothing will settle a broadcast left in sending without a barrier
            logger.exception(
                "Launch of %s aborted", broadcast_id,
                extra={"broadcast_id": broadcast_id},
            )
            self._abort_launch(broadcast_id, f"dispatch aborted: {type(exc).__name__}: {exc}")
            raise

    def _abort_launch(self, broadcast_id: str, reason: str) -> None:
        try:
            self.lifecycle.fail(broadcast_id, reason)
        except Exception:
            logger.exception(
                "Could not mark %s failed after aborted launch", broadcast_id,
                extra={"broadcast_id": broadcast_id},
            )

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    def get_broadcast(self, broadcast_id: str) -> BroadcastView:
        broadcast = self.lifecycle.get(broadcast_id)
        return BroadcastView(broadcast, self.tracker.stats(broadcast_id))

    def list_broadcasts(
        self,
        status: Optional[Union[str, BroadcastStatus]] = None,
        type: Optional[Union[str, BroadcastType]] = None,
        search_text: Optional[str] = None,
    ) -> List[Broadcast]:
        statuses = None
        if status is not None:
            try:
                statuses = [BroadcastStatus(status)]
            except ValueError:
                raise ValidationError(f"Invalid status '{status}'", field="status") from None
        wanted_type = self._parse_type(type) if type is not None else None
        needle = search_text.strip().lower() if search_text else None

        results = []
        for broadcast in self.store.list_broadcasts(statuses):
            if wanted_type is not None and broadcast.type is not wanted_type:
                continue
            if needle and needle not in broadcast.title.lower() and needle not in broadcast.body.lower():
                continue
            results.append(broadcast)
        results.sort(key=lambda b: b.created_at, reverse=True)
        return results

    def delivery_records(
        self,
        broadcast_id: str,
        *,
        state: Optional[AttemptState] = None,
        channel: Optional[DeliveryChannel] = None,
    ) -> List[DeliveryRecord]:
        self.lifecycle.get(broadcast_id)
        records = self.tracker.records(broadcast_id)
        if state is not None:
            records = [r for r in records if r.state is state]
        if channel is not None:
            records = [r for r in records if r.channel is channel]
        return sorted(records, key=lambda r: (r.recipient_id, r.channel.value))

    def wait_for_dispatch(self, broadcast_id: str, timeout: Optional[float] = None) -> bool:
        result = self.dispatcher.result_for(broadcast_id)
        if result is None:
            return False
        return result.wait(timeout)

    # ═══════════════════════════════════════════════════════════════════
    # Cancel / unschedule
    # ═══════════════════════════════════════════════════════════════════

    def cancel_broadcast(
        self,
        broadcast_id: str,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Broadcast:
        """Discard a draft or scheduled broadcast; refused once sending."""
        return self.lifecycle.cancel(broadcast_id, cancelled_by, reason).broadcast

    def unschedule_broadcast(self, broadcast_id: str) -> Broadcast:
        return self.lifecycle.unschedule(broadcast_id).broadcast

    # ═══════════════════════════════════════════════════════════════════
    # Receipts and acknowledgments
    # ═══════════════════════════════════════════════════════════════════

    def submit_acknowledgment(
        self,
        broadcast_id: str,
        recipient_id: str,
        channel: Optional[Union[str, DeliveryChannel]] = None,
    ) -> DeliveryRecord:
        broadcast = self.lifecycle.get(broadcast_id)
        if broadcast.status is BroadcastStatus.EXPIRED or broadcast.is_expired_at(self._clock()):
            raise InvalidStateError(
                f"Broadcast {broadcast_id} has expired; acknowledgments are closed",
                current_status=BroadcastStatus.EXPIRED.value,
            )
        parsed = self._parse_channel(channel) if channel else None
        return self.tracker.acknowledge(broadcast_id, recipient_id, parsed)

    def report_receipt(
        self,
        broadcast_id: str,
        recipient_id: str,
        channel: Union[str, DeliveryChannel],
        new_state: Union[str, AttemptState],
        provider_timestamp: Optional[datetime] = None,
    ) -> DeliveryRecord:
        self.lifecycle.get(broadcast_id)
        try:
            state = AttemptState(new_state)
        except ValueError:
            raise ValidationError(f"Invalid receipt state '{new_state}'", field="new_state") from None
        parsed_channel = self._parse_channel(channel)
        return self.tracker.report_receipt(
            broadcast_id, recipient_id, parsed_channel, state, _aware(provider_timestamp),
        )

    def _on_receipt(
        self,
        broadcast_id: str,
        recipient_id: str,
        channel: DeliveryChannel,
        new_state: AttemptState,
        provider_timestamp: Optional[datetime],
    ) -> None:
        """Receipt sink bound to every adapter."""
        try:
            self.tracker.report_receipt(broadcast_id, recipient_id, channel, new_state, provider_timestamp)
        except NotFoundError:
            logger.warning(
                "Receipt for unknown delivery %s/%s via %s",
                broadcast_id, recipient_id, channel.value,
                extra={"broadcast_id": broadcast_id, "recipient_id": recipient_id},
            )

    # ═══════════════════════════════════════════════════════════════════
    # In-app inbox
    # ═══════════════════════════════════════════════════════════════════

    def inbox_for(self, recipient_id: str) -> List[Dict[str, Any]]:
        """In-app items whose broadcast is neither expired nor cancelled."""
        now = self._clock()
        items = []
        for item in self.inbox.items_for(recipient_id):
            broadcast = self.store.get_broadcast(item.broadcast_id)
            if broadcast is None or broadcast.status in (BroadcastStatus.EXPIRED, BroadcastStatus.CANCELLED):
                continue
            if broadcast.is_expired_at(now):
                continue
            record = self.store.get_delivery_record(
                (item.broadcast_id, recipient_id, DeliveryChannel.IN_APP)
            )
            entry = item.to_dict()
            entry["state"] = record.state.value if record else None
            items.append(entry)
        return items

    def mark_read(self, recipient_id: str, broadcast_id: str) -> DeliveryRecord:
        return self.report_receipt(broadcast_id, recipient_id, DeliveryChannel.IN_APP, AttemptState.READ)

    # ═══════════════════════════════════════════════════════════════════
    # Recipients
    # ═══════════════════════════════════════════════════════════════════

    def register_recipient(self, recipient: Recipient) -> Recipient:
        return self.directory.upsert(recipient)

    def update_recipient_position(self, recipient_id: str, position: Optional[Coordinate]) -> Recipient:
        return self.directory.update_position(recipient_id, position)

    def get_recipient(self, recipient_id: str) -> Recipient:
        recipient = self.directory.get(recipient_id)
        if recipient is None:
            raise NotFoundError("Recipient", recipient_id=recipient_id)
        return recipient

    # ═══════════════════════════════════════════════════════════════════
    # Housekeeping
    # ═══════════════════════════════════════════════════════════════════

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        return self.scheduler.sweep(now)

    def channel_catalogue(self) -> List[Dict[str, Any]]:
        return [
            {**self.adapters[c].describe(), "concurrency": settings.CHANNEL_CONCURRENCY.get(c.value)}
            for c in DeliveryChannel if c in self.adapters
        ]

    def shutdown(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self.store.close()


# ═══════════════════════════════════════════════════════════════════════════
# Global Instance
# ═══════════════════════════════════════════════════════════════════════════

_service: Optional[BroadcastService] = None
_service_lock = threading.Lock()


def _build_store() -> BroadcastStore:
    if settings.STORE_BACKEND == "sql":
        from backend.app.broadcasts.sql_store import SqlBroadcastStore
        from backend.app.core.database import create_db_engine, init_db

        engine = create_db_engine()
        init_db(engine)
        return SqlBroadcastStore(engine)
    if settings.STORE_BACKEND != "memory":
        raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")
    return InMemoryBroadcastStore()


def get_broadcast_service() -> BroadcastService:
    """Get or create the process-wide service."""
    global _service
    with _service_lock:
        if _service is None:
            _service = BroadcastService(store=_build_store())
        return _service
