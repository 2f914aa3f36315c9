"""
models.py — Shared data structures for the broadcast delivery system.

Defines:
    • BroadcastType / BroadcastPriority / BroadcastStatus
    • DeliveryChannel — push, email, SMS, in-app
    • AttemptState    — per (broadcast, recipient, channel) delivery state
    • AudienceSpec    — AllTourists | ExplicitRecipients | LocationBased | RoleBased
    • Recipient       — a person with contact points, position and preferences
    • RecipientSet    — the concrete, deduplicated result of audience resolution
    • Broadcast       — the authored message and its lifecycle fields
    • DeliveryRecord  — one delivery unit, also the audit trail
    • DeliveryStats   — pure fold over a broadcast's DeliveryRecords

═══════════════════════════════════════════════════════════════════════════
BROADCAST STATUS MACHINE
═══════════════════════════════════════════════════════════════════════════

    draft ──► scheduled ──► sending ──► sent ──► expired
      │  ▲        │            │
      │  └────────┤            └──► failed
      │           ├──► expired
      ├──► sending
      └──► cancelled ◄── scheduled

    scheduled → draft is the only backward edge (unschedule).
    failed, expired and cancelled are terminal.

═══════════════════════════════════════════════════════════════════════════
DELIVERY ATTEMPT STATES
═══════════════════════════════════════════════════════════════════════════

    queued ──► sent ──► delivered ──► read ──► acknowledged
       │         │           └──────────────────────▲
       └────┬────┘
            ▼
          failed      (terminal for this recipient+channel only)

    States only move forward. An acknowledgment is proof of delivery,
    so it may jump straight from queued/sent to acknowledged.

═══════════════════════════════════════════════════════════════════════════
DELIVERY STATS
═══════════════════════════════════════════════════════════════════════════

    sent         = records that left the queue (any outcome)
    delivered    = records at delivered or beyond
    read         = records at read or beyond
    acknowledged = records acknowledged
    failed       = records failed
    pending      = records accepted by a provider, no receipt yet

    sent == delivered + pending_delivery + failed
    acknowledged <= read <= delivered
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from enum import Enum, IntEnum
from typing import (
    Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union,
)

from backend.app.core.errors import ResolutionError
from backend.app.spatial.radius_utils import Coordinate, format_distance


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class BroadcastType(str, Enum):
    """What kind of message this is (drives styling and priority rules)."""
    EMERGENCY    = "emergency"
    ALERT        = "alert"
    WARNING      = "warning"
    INFO         = "info"
    ANNOUNCEMENT = "announcement"


class BroadcastPriority(IntEnum):
    """
    Delivery priority — integer ordering enables comparison against
    a recipient's minimum_priority preference.
    """
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[str, int, "BroadcastPriority"]) -> "BroadcastPriority":
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(
                f"Invalid priority '{value}'. Must be one of: "
                f"{[p.label for p in cls]}"
            ) from None


class BroadcastStatus(str, Enum):
    DRAFT     = "draft"
    SCHEDULED = "scheduled"
    SENDING   = "sending"
    SENT      = "sent"
    FAILED    = "failed"
    EXPIRED   = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[BroadcastStatus] = frozenset({
    BroadcastStatus.FAILED,
    BroadcastStatus.EXPIRED,
    BroadcastStatus.CANCELLED,
})


class DeliveryChannel(str, Enum):
    """Available delivery channels."""
    PUSH   = "push"
    EMAIL  = "email"
    SMS    = "sms"
    IN_APP = "in_app"

    @classmethod
    def parse(cls, value: Union[str, "DeliveryChannel"]) -> "DeliveryChannel":
        if isinstance(value, cls):
            return value
        normalised = str(value).strip()
        if normalised == "inApp":
            normalised = "in_app"
        try:
            return cls(normalised.lower())
        except ValueError:
            raise ValueError(
                f"Invalid channel '{value}'. Must be one of: {[c.value for c in cls]}"
            ) from None


# Fan-out order when a recipient is reached on several channels
CHANNEL_ORDER: Tuple[DeliveryChannel, ...] = (
    DeliveryChannel.IN_APP,
    DeliveryChannel.PUSH,
    DeliveryChannel.SMS,
    DeliveryChannel.EMAIL,
)

ALL_CHANNELS: FrozenSet[DeliveryChannel] = frozenset(DeliveryChannel)

# Channels that wake the device; held back during a recipient's quiet hours
INTRUSIVE_CHANNELS: FrozenSet[DeliveryChannel] = frozenset({
    DeliveryChannel.PUSH,
    DeliveryChannel.SMS,
})


def ordered_channels(channels: Iterable[DeliveryChannel]) -> List[DeliveryChannel]:
    wanted = set(channels)
    return [c for c in CHANNEL_ORDER if c in wanted]


class AttemptState(str, Enum):
    """Delivery state machine per recipient per channel."""
    QUEUED       = "queued"         # record created, adapter not yet called
    SENT         = "sent"           # provider accepted the message
    DELIVERED    = "delivered"      # provider receipt: reached the device
    READ         = "read"           # provider receipt: opened
    ACKNOWLEDGED = "acknowledged"   # recipient confirmed
    FAILED       = "failed"         # rejected, or retries exhausted

    @property
    def rank(self) -> int:
        return _ATTEMPT_RANK[self]

    @property
    def is_dispatch_terminal(self) -> bool:
        """True once the dispatcher has nothing left to do for this record."""
        return self is not AttemptState.QUEUED


_ATTEMPT_RANK: Dict[AttemptState, int] = {
    AttemptState.QUEUED: 0,
    AttemptState.SENT: 1,
    AttemptState.DELIVERED: 2,
    AttemptState.READ: 3,
    AttemptState.ACKNOWLEDGED: 4,
    AttemptState.FAILED: -1,
}

# States from which a provider or the dispatcher may still fail the record
_FAILABLE: FrozenSet[AttemptState] = frozenset({AttemptState.QUEUED, AttemptState.SENT})


def can_advance(current: AttemptState, target: AttemptState) -> bool:
    """
    Whether `current` → `target` moves a delivery record forward.

    Replays and regressions return False; callers treat that as a no-op.
    """
    if current is AttemptState.FAILED:
        return False
    if target is AttemptState.FAILED:
        return current in _FAILABLE
    return target.rank > current.rank


# ═══════════════════════════════════════════════════════════════════════════
# Audience Specification (tagged variants)
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AllTourists:
    """Every active recipient holding the tourist role, as of resolution time."""
    kind: ClassVar[str] = "all_tourists"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind}

    def describe(self) -> str:
        return "All Tourists"


@dataclass(frozen=True)
class ExplicitRecipients:
    """A fixed list of recipient ids — the only audience frozen at creation."""
    ids: FrozenSet[str]
    kind: ClassVar[str] = "explicit"

    def __post_init__(self) -> None:
        object.__setattr__(self, "ids", frozenset(self.ids))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "ids": sorted(self.ids)}

    def describe(self) -> str:
        return f"Specific Recipients ({len(self.ids)})"


@dataclass(frozen=True)
class LocationBased:
    """Recipients whose last-known position lies inside a circle."""
    center: Coordinate
    radius_meters: float
    kind: ClassVar[str] = "location"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "center": self.center.to_dict(),
            "radius_meters": self.radius_meters,
        }

    def describe(self) -> str:
        return (
            f"Location-Based ({format_distance(self.radius_meters)} around "
            f"{self.center.latitude:.4f}, {self.center.longitude:.4f})"
        )


@dataclass(frozen=True)
class RoleBased:
    """Recipients holding any of the given roles."""
    roles: FrozenSet[str]
    kind: ClassVar[str] = "role"

    def __post_init__(self) -> None:
        object.__setattr__(self, "roles", frozenset(self.roles))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind, "roles": sorted(self.roles)}

    def describe(self) -> str:
        return f"Role-Based ({', '.join(sorted(self.roles))})"


AudienceSpec = Union[AllTourists, ExplicitRecipients, LocationBased, RoleBased]


def audience_from_dict(data: Dict[str, Any]) -> AudienceSpec:
    """Inverse of AudienceSpec.to_dict()."""
    kind = data.get("type")
    if kind == AllTourists.kind:
        return AllTourists()
    if kind == ExplicitRecipients.kind:
        return ExplicitRecipients(ids=frozenset(data.get("ids", ())))
    if kind == LocationBased.kind:
        center = data["center"]
        return LocationBased(
            center=Coordinate(center["latitude"], center["longitude"]),
            radius_meters=float(data["radius_meters"]),
        )
    if kind == RoleBased.kind:
        return RoleBased(roles=frozenset(data.get("roles", ())))
    raise ValueError(f"Unknown audience type: {kind!r}")


# ═══════════════════════════════════════════════════════════════════════════
# Recipients
# ═══════════════════════════════════════════════════════════════════════════

TOURIST_ROLE = "tourist"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QuietHours:
    """
    Daily window in which a recipient does not want to be woken up.

    Times are wall-clock in the recipient's zone, given as a fixed UTC
    offset. A window whose start is after its end runs over midnight
    (22:00 → 06:00). Start is inclusive, end exclusive; start == end
    means an empty window.
    """
    start: time
    end: time
    utc_offset_minutes: int = 0

    def __post_init__(self) -> None:
        if not -14 * 60 <= self.utc_offset_minutes <= 14 * 60:
            raise ValueError(
                f"UTC offset must be within ±14h, got {self.utc_offset_minutes} minutes"
            )

    @classmethod
    def parse(cls, start: str, end: str, utc_offset_minutes: int = 0) -> "QuietHours":
        """Build from "HH:MM" strings."""
        try:
            return cls(
                start=time.fromisoformat(start),
                end=time.fromisoformat(end),
                utc_offset_minutes=utc_offset_minutes,
            )
        except (TypeError, ValueError):
            raise ValueError(
                f"Invalid quiet hours '{start}' to '{end}'. Use HH:MM"
            ) from None

    def contains(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        local = (moment.astimezone(timezone.utc) + timedelta(minutes=self.utc_offset_minutes)).time()
        if self.start <= self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "utc_offset_minutes": self.utc_offset_minutes,
        }


@dataclass(frozen=True)
class Recipient:
    """
    A person a broadcast can reach.

    Attributes
    ----------
    recipient_id : str
        Unique identifier.
    name : str
        Display name.
    roles : frozenset of str
        Role memberships (tourist, officer, guide, admin, ...).
    position : Coordinate | None
        Last-known position; None when never reported.
    phone : str | None
        E.164 phone number for SMS.
    email : str | None
        Email address.
    push_token : str | None
        Device push token.
    channel_opt_in : frozenset of DeliveryChannel
        Channels this person agreed to be reached on.
    minimum_priority : BroadcastPriority
        Broadcasts below this priority are not delivered (emergencies excepted).
    quiet_hours : QuietHours | None
        Window in which push and SMS are held back (emergencies excepted).
    active : bool
        False once the person has deregistered / checked out.
    """
    recipient_id: str
    name: str
    roles: FrozenSet[str] = frozenset({TOURIST_ROLE})
    position: Optional[Coordinate] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    push_token: Optional[str] = None
    channel_opt_in: FrozenSet[DeliveryChannel] = ALL_CHANNELS
    minimum_priority: BroadcastPriority = BroadcastPriority.LOW
    quiet_hours: Optional[QuietHours] = None
    active: bool = True

    @property
    def is_tourist(self) -> bool:
        return TOURIST_ROLE in self.roles

    def accepts_channel(self, channel: DeliveryChannel) -> bool:
        return channel in self.channel_opt_in

    def is_quiet_at(self, moment: datetime) -> bool:
        return self.quiet_hours is not None and self.quiet_hours.contains(moment)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "roles": sorted(self.roles),
            "position": self.position.to_dict() if self.position else None,
            "phone": self.phone,
            "email": self.email,
            "has_push_token": self.push_token is not None,
            "channel_opt_in": [c.value for c in ordered_channels(self.channel_opt_in)],
            "minimum_priority": self.minimum_priority.label,
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
            "active": self.active,
        }


@dataclass(frozen=True)
class ResolvedRecipient:
    """A recipient plus the channels this broadcast will use to reach them."""
    recipient: Recipient
    channels: Tuple[DeliveryChannel, ...]

    @property
    def recipient_id(self) -> str:
        return self.recipient.recipient_id


@dataclass
class RecipientSet:
    """Concrete, deduplicated output of audience resolution."""
    recipients: List[ResolvedRecipient] = field(default_factory=list)
    as_of: datetime = field(default_factory=_now)
    skipped: int = 0
    excluded_by_preference: int = 0
    errors: List[ResolutionError] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.recipients)

    @property
    def ids(self) -> List[str]:
        return [r.recipient_id for r in self.recipients]

    @property
    def delivery_count(self) -> int:
        """Number of (recipient, channel) pairs a dispatch will create."""
        return sum(len(r.channels) for r in self.recipients)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "delivery_count": self.delivery_count,
            "skipped": self.skipped,
            "excluded_by_preference": self.excluded_by_preference,
            "as_of": self.as_of.isoformat(),
            "errors": [e.message for e in self.errors],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Broadcast
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"BRC-{uuid.uuid4().hex[:12].upper()}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Broadcast:
    """
    An authored message and its lifecycle state.

    Frozen: every change is a new value written back through the
    store's version check-and-set. `version` belongs to the store.
    """
    title: str
    body: str
    type: BroadcastType
    priority: BroadcastPriority
    audience: AudienceSpec
    channels: FrozenSet[DeliveryChannel]
    requires_acknowledgment: bool = False
    created_by: str = "system"
    created_at: datetime = field(default_factory=_now)
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    broadcast_id: str = field(default_factory=_generate_id)
    status: BroadcastStatus = BroadcastStatus.DRAFT
    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    target_count: int = 0
    failure_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    template_id: Optional[str] = None
    version: int = 0

    @property
    def ordered_channels(self) -> List[DeliveryChannel]:
        return ordered_channels(self.channels)

    def is_expired_at(self, moment: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= moment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "broadcast_id": self.broadcast_id,
            "title": self.title,
            "body": self.body,
            "type": self.type.value,
            "priority": self.priority.label,
            "audience": self.audience.to_dict(),
            "audience_label": self.audience.describe(),
            "channels": [c.value for c in self.ordered_channels],
            "requires_acknowledgment": self.requires_acknowledgment,
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "scheduled_for": _iso(self.scheduled_for),
            "expires_at": _iso(self.expires_at),
            "sent_at": _iso(self.sent_at),
            "completed_at": _iso(self.completed_at),
            "target_count": self.target_count,
            "failure_reason": self.failure_reason,
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
            "template_id": self.template_id,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Records
# ═══════════════════════════════════════════════════════════════════════════

RecordKey = Tuple[str, str, DeliveryChannel]


@dataclass(frozen=True)
class DeliveryRecord:
    """
    One (broadcast, recipient, channel) delivery unit.

    Records are appended by the dispatcher and only ever advanced by the
    tracker; they are never deleted.
    """
    broadcast_id: str
    recipient_id: str
    channel: DeliveryChannel
    state: AttemptState = AttemptState.QUEUED
    created_at: datetime = field(default_factory=_now)
    last_updated_at: datetime = field(default_factory=_now)
    failure_reason: Optional[str] = None
    retry_count: int = 0
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    provider_timestamp: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    reminder_count: int = 0
    last_reminded_at: Optional[datetime] = None
    version: int = 0

    @property
    def key(self) -> RecordKey:
        return (self.broadcast_id, self.recipient_id, self.channel)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "broadcast_id": self.broadcast_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "read_at": _iso(self.read_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "provider_timestamp": _iso(self.provider_timestamp),
            "provider_message_id": self.provider_message_id,
            "reminder_count": self.reminder_count,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Delivery Stats
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelStats:
    sent: int = 0
    delivered: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "delivered": self.delivered, "failed": self.failed}


@dataclass
class DeliveryStats:
    """Derived counts; always recomputable from the records alone."""
    total: int = 0
    queued: int = 0
    sent: int = 0
    pending_delivery: int = 0
    delivered: int = 0
    read: int = 0
    acknowledged: int = 0
    failed: int = 0
    by_channel: Dict[str, ChannelStats] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: Iterable[DeliveryRecord]) -> "DeliveryStats":
        stats = cls()
        for record in records:
            stats.total += 1
            per_channel = stats.by_channel.setdefault(record.channel.value, ChannelStats())
            state = record.state
            if state is AttemptState.QUEUED:
                stats.queued += 1
                continue

            stats.sent += 1
            per_channel.sent += 1
            if state is AttemptState.FAILED:
                stats.failed += 1
                per_channel.failed += 1
            elif state is AttemptState.SENT:
                stats.pending_delivery += 1
            else:
                stats.delivered += 1
                per_channel.delivered += 1
                if state.rank >= AttemptState.READ.rank:
                    stats.read += 1
                if state is AttemptState.ACKNOWLEDGED:
                    stats.acknowledged += 1
        return stats

    def copy(self) -> "DeliveryStats":
        return replace(self, by_channel={k: replace(v) for k, v in self.by_channel.items()})

    @property
    def response_rate(self) -> float:
        if self.delivered == 0:
            return 0.0
        return self.acknowledged / self.delivered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "queued": self.queued,
            "sent": self.sent,
            "pending_delivery": self.pending_delivery,
            "delivered": self.delivered,
            "read": self.read,
            "acknowledged": self.acknowledged,
            "failed": self.failed,
            "response_rate": f"{self.response_rate:.1%}",
            "by_channel": {k: v.to_dict() for k, v in sorted(self.by_channel.items())},
        }
