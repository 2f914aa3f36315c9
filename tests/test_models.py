"""
test_models.py — Tests for the broadcast data structures.

Covers:
    • Enum parsing (priority labels, "inApp" channel alias)
    • Delivery state ordering and can_advance()
    • Audience variants and their dict round-trip
    • Recipient / RecipientSet helpers, quiet-hours windows
    • DeliveryStats fold and its invariants

Run with:
    pytest tests/test_models.py -v
"""

from __future__ import annotations

from datetime import datetime, time, timezone

import pytest

from backend.app.broadcasts.models import (
    ALL_CHANNELS,
    CHANNEL_ORDER,
    AllTourists,
    AttemptState,
    Broadcast,
    BroadcastPriority,
    BroadcastStatus,
    BroadcastType,
    DeliveryChannel,
    DeliveryRecord,
    DeliveryStats,
    ExplicitRecipients,
    LocationBased,
    QuietHours,
    Recipient,
    RecipientSet,
    ResolvedRecipient,
    RoleBased,
    audience_from_dict,
    can_advance,
    ordered_channels,
)
from backend.app.spatial.radius_utils import Coordinate

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _make_broadcast(**overrides) -> Broadcast:
    fields = dict(
        title="Beach closure",
        body="North Beach is closed due to high tide warnings.",
        type=BroadcastType.WARNING,
        priority=BroadcastPriority.HIGH,
        audience=AllTourists(),
        channels=frozenset({DeliveryChannel.PUSH, DeliveryChannel.SMS}),
        created_at=NOW,
    )
    fields.update(overrides)
    return Broadcast(**fields)


def _make_record(rid: str, channel: DeliveryChannel, state: AttemptState) -> DeliveryRecord:
    return DeliveryRecord(broadcast_id="BRC-1", recipient_id=rid, channel=channel, state=state)


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class TestBroadcastPriority:

    def test_ordering(self):
        assert BroadcastPriority.LOW < BroadcastPriority.MEDIUM < BroadcastPriority.HIGH
        assert BroadcastPriority.HIGH < BroadcastPriority.CRITICAL

    def test_parse_label(self):
        assert BroadcastPriority.parse("high") is BroadcastPriority.HIGH
        assert BroadcastPriority.parse("CRITICAL") is BroadcastPriority.CRITICAL

    def test_parse_int_and_member(self):
        assert BroadcastPriority.parse(2) is BroadcastPriority.MEDIUM
        assert BroadcastPriority.parse(BroadcastPriority.LOW) is BroadcastPriority.LOW

    def test_parse_invalid(self):
        with pytest.raises(ValueError, match="Invalid priority"):
            BroadcastPriority.parse("urgent")

    def test_label(self):
        assert BroadcastPriority.MEDIUM.label == "medium"


class TestDeliveryChannel:

    def test_parse_in_app_alias(self):
        assert DeliveryChannel.parse("inApp") is DeliveryChannel.IN_APP
        assert DeliveryChannel.parse("in_app") is DeliveryChannel.IN_APP

    def test_parse_case_insensitive(self):
        assert DeliveryChannel.parse("SMS") is DeliveryChannel.SMS

    def test_parse_invalid(self):
        with pytest.raises(ValueError, match="Invalid channel"):
            DeliveryChannel.parse("pager")

    def test_ordered_channels_follows_fan_out_order(self):
        assert ordered_channels({DeliveryChannel.EMAIL, DeliveryChannel.IN_APP, DeliveryChannel.SMS}) == [
            DeliveryChannel.IN_APP, DeliveryChannel.SMS, DeliveryChannel.EMAIL,
        ]
        assert len(CHANNEL_ORDER) == len(ALL_CHANNELS) == 4


class TestBroadcastStatus:

    def test_terminal_statuses(self):
        assert BroadcastStatus.FAILED.is_terminal
        assert BroadcastStatus.EXPIRED.is_terminal
        assert BroadcastStatus.CANCELLED.is_terminal
        assert not BroadcastStatus.SENT.is_terminal
        assert not BroadcastStatus.SENDING.is_terminal


# ═══════════════════════════════════════════════════════════════════════════
# Delivery state machine
# ═══════════════════════════════════════════════════════════════════════════

class TestCanAdvance:

    def test_forward_moves(self):
        assert can_advance(AttemptState.QUEUED, AttemptState.SENT)
        assert can_advance(AttemptState.SENT, AttemptState.DELIVERED)
        assert can_advance(AttemptState.DELIVERED, AttemptState.READ)
        assert can_advance(AttemptState.READ, AttemptState.ACKNOWLEDGED)

    def test_skips_forward(self):
        assert can_advance(AttemptState.QUEUED, AttemptState.ACKNOWLEDGED)
        assert can_advance(AttemptState.SENT, AttemptState.READ)

    def test_no_regression_or_replay(self):
        assert not can_advance(AttemptState.READ, AttemptState.DELIVERED)
        assert not can_advance(AttemptState.DELIVERED, AttemptState.DELIVERED)
        assert not can_advance(AttemptState.ACKNOWLEDGED, AttemptState.SENT)

    def test_failed_only_before_receipt(self):
        assert can_advance(AttemptState.QUEUED, AttemptState.FAILED)
        assert can_advance(AttemptState.SENT, AttemptState.FAILED)
        assert not can_advance(AttemptState.DELIVERED, AttemptState.FAILED)

    def test_failed_is_terminal(self):
        for target in AttemptState:
            assert not can_advance(AttemptState.FAILED, target)

    def test_dispatch_terminal(self):
        assert not AttemptState.QUEUED.is_dispatch_terminal
        assert AttemptState.SENT.is_dispatch_terminal
        assert AttemptState.FAILED.is_dispatch_terminal


# ═══════════════════════════════════════════════════════════════════════════
# Audience variants
# ═══════════════════════════════════════════════════════════════════════════

class TestAudienceSpec:

    @pytest.mark.parametrize("spec", [
        AllTourists(),
        ExplicitRecipients(ids=frozenset({"T-2", "T-1"})),
        LocationBased(center=Coordinate(15.5527, 73.7517), radius_meters=1500.0),
        RoleBased(roles=frozenset({"guide", "officer"})),
    ])
    def test_dict_round_trip(self, spec):
        assert audience_from_dict(spec.to_dict()) == spec

    def test_explicit_ids_sorted_in_dict(self):
        spec = ExplicitRecipients(ids={"T-9", "T-1"})
        assert spec.to_dict() == {"type": "explicit", "ids": ["T-1", "T-9"]}
        assert isinstance(spec.ids, frozenset)

    def test_describe(self):
        assert AllTourists().describe() == "All Tourists"
        assert RoleBased(roles={"officer"}).describe() == "Role-Based (officer)"
        assert "1.50 km around" in LocationBased(Coordinate(0, 0), 1500).describe()

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown audience type"):
            audience_from_dict({"type": "everyone"})


# ═══════════════════════════════════════════════════════════════════════════
# Recipients
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipient:

    def test_defaults(self):
        r = Recipient(recipient_id="T-1", name="Asha")
        assert r.is_tourist
        assert r.active
        assert r.channel_opt_in == ALL_CHANNELS
        assert r.minimum_priority is BroadcastPriority.LOW

    def test_accepts_channel(self):
        r = Recipient(recipient_id="T-1", name="Asha", channel_opt_in=frozenset({DeliveryChannel.SMS}))
        assert r.accepts_channel(DeliveryChannel.SMS)
        assert not r.accepts_channel(DeliveryChannel.EMAIL)

    def test_to_dict_hides_push_token(self):
        d = Recipient(recipient_id="T-1", name="Asha", push_token="secret").to_dict()
        assert d["has_push_token"] is True
        assert "secret" not in d.values()


class TestQuietHours:

    @pytest.mark.parametrize("hour, minute, expected", [
        (21, 59, False),
        (22, 0, True),   # start inclusive
        (23, 30, True),
        (3, 0, True),
        (5, 59, True),
        (6, 0, False),   # end exclusive
        (12, 0, False),
    ])
    def test_window_over_midnight(self, hour, minute, expected):
        quiet = QuietHours.parse("22:00", "06:00")
        assert quiet.contains(datetime(2026, 3, 1, hour, minute, tzinfo=timezone.utc)) is expected

    def test_same_day_window(self):
        quiet = QuietHours(start=time(13, 0), end=time(15, 0))
        assert quiet.contains(datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc))
        assert not quiet.contains(datetime(2026, 3, 1, 16, 0, tzinfo=timezone.utc))

    def test_empty_window(self):
        assert not QuietHours.parse("22:00", "22:00").contains(
            datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)
        )

    def test_utc_offset(self):
        # 17:00 UTC is 22:30 in India
        quiet = QuietHours.parse("22:00", "06:00", utc_offset_minutes=330)
        assert quiet.contains(datetime(2026, 3, 1, 17, 0, tzinfo=timezone.utc))
        assert not QuietHours.parse("22:00", "06:00").contains(
            datetime(2026, 3, 1, 17, 0, tzinfo=timezone.utc)
        )

    def test_naive_moment_is_utc(self):
        assert QuietHours.parse("22:00", "06:00").contains(datetime(2026, 3, 1, 23, 0))

    @pytest.mark.parametrize("start, end", [("late", "06:00"), ("22:00", "25:00")])
    def test_invalid_times(self, start, end):
        with pytest.raises(ValueError, match="Invalid quiet hours"):
            QuietHours.parse(start, end)

    def test_invalid_offset(self):
        with pytest.raises(ValueError, match="UTC offset"):
            QuietHours.parse("22:00", "06:00", utc_offset_minutes=15 * 60)

    def test_recipient_is_quiet_at(self):
        r = Recipient(recipient_id="T-1", name="Asha", quiet_hours=QuietHours.parse("22:00", "06:00"))
        assert r.is_quiet_at(datetime(2026, 3, 1, 23, 0, tzinfo=timezone.utc))
        assert not Recipient(recipient_id="T-2", name="Ben").is_quiet_at(NOW)
        assert r.to_dict()["quiet_hours"] == {"start": "22:00", "end": "06:00", "utc_offset_minutes": 0}


class TestRecipientSet:

    def test_counts(self):
        a = Recipient(recipient_id="A", name="A")
        b = Recipient(recipient_id="B", name="B")
        rs = RecipientSet(recipients=[
            ResolvedRecipient(a, (DeliveryChannel.PUSH, DeliveryChannel.SMS)),
            ResolvedRecipient(b, (DeliveryChannel.EMAIL,)),
        ])
        assert rs.count == 2
        assert rs.delivery_count == 3
        assert rs.ids == ["A", "B"]
        assert rs.to_dict()["delivery_count"] == 3


# ═══════════════════════════════════════════════════════════════════════════
# Broadcast
# ═══════════════════════════════════════════════════════════════════════════

class TestBroadcast:

    def test_generated_ids_unique(self):
        b1, b2 = _make_broadcast(), _make_broadcast()
        assert b1.broadcast_id != b2.broadcast_id
        assert b1.broadcast_id.startswith("BRC-")

    def test_defaults(self):
        b = _make_broadcast()
        assert b.status is BroadcastStatus.DRAFT
        assert b.version == 0

    def test_is_expired_at_boundary_inclusive(self):
        b = _make_broadcast(expires_at=NOW)
        assert b.is_expired_at(NOW)
        assert not _make_broadcast().is_expired_at(NOW)

    def test_to_dict(self):
        d = _make_broadcast().to_dict()
        assert d["channels"] == ["push", "sms"]
        assert d["priority"] == "high"
        assert d["audience"] == {"type": "all_tourists"}
        assert d["audience_label"] == "All Tourists"
        assert d["sent_at"] is None


# ═══════════════════════════════════════════════════════════════════════════
# Delivery stats
# ═══════════════════════════════════════════════════════════════════════════

class TestDeliveryStats:

    def test_fold(self):
        P, E = DeliveryChannel.PUSH, DeliveryChannel.EMAIL
        records = [
            _make_record("A", P, AttemptState.QUEUED),
            _make_record("B", P, AttemptState.SENT),
            _make_record("C", P, AttemptState.DELIVERED),
            _make_record("D", P, AttemptState.READ),
            _make_record("E", E, AttemptState.ACKNOWLEDGED),
            _make_record("F", E, AttemptState.FAILED),
        ]
        stats = DeliveryStats.from_records(records)
        assert stats.total == 6
        assert stats.queued == 1
        assert stats.sent == 5
        assert stats.pending_delivery == 1
        assert stats.delivered == 3
        assert stats.read == 2
        assert stats.acknowledged == 1
        assert stats.failed == 1
        assert stats.by_channel["push"].sent == 3
        assert stats.by_channel["email"].failed == 1

    def test_invariants(self):
        states = [AttemptState.SENT, AttemptState.DELIVERED, AttemptState.READ,
                  AttemptState.ACKNOWLEDGED, AttemptState.FAILED, AttemptState.DELIVERED]
        stats = DeliveryStats.from_records(
            _make_record(f"R{i}", DeliveryChannel.SMS, s) for i, s in enumerate(states)
        )
        assert stats.sent == stats.delivered + stats.pending_delivery + stats.failed
        assert stats.acknowledged <= stats.read <= stats.delivered

    def test_response_rate(self):
        stats = DeliveryStats(delivered=4, acknowledged=1)
        assert stats.response_rate == pytest.approx(0.25)
        assert DeliveryStats().response_rate == 0.0
        assert stats.to_dict()["response_rate"] == "25.0%"
