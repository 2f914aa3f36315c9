"""
test_broadcast_service.py — End-to-end tests through BroadcastService.

Covers:
    • Create: send now / schedule / draft, validation before any state change
    • Publish and scheduled release through the sweep
    • Mixed channel outcomes settle to the right stats and status
    • Acknowledgments, including after expiry
    • In-app inbox visibility and read receipts
    • Templates, listing filters, content edits
    • Re-notification of unacknowledged recipients, deferred by quiet hours
    • A store failure mid launch settles the broadcast to failed

Run with:
    pytest tests/test_broadcast_service.py -v
"""

from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.broadcasts.audience import InMemoryRecipientDirectory
from backend.app.broadcasts.channels import InAppAdapter, InAppInbox
from backend.app.broadcasts.channels.base import ChannelAdapter, DeliveryOutcome
from backend.app.broadcasts.dispatcher import RetryPolicy
from backend.app.broadcasts.models import (
    AllTourists,
    AttemptState,
    BroadcastStatus,
    DeliveryChannel,
    ExplicitRecipients,
    QuietHours,
    Recipient,
    RoleBased,
)
from backend.app.broadcasts.scheduler import RenotifyPolicy
from backend.app.broadcasts.service import BroadcastService
from backend.app.broadcasts.store import InMemoryBroadcastStore
from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
S = BroadcastStatus
PUSH = DeliveryChannel.PUSH
EMAIL = DeliveryChannel.EMAIL
IN_APP = DeliveryChannel.IN_APP


class _Clock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class _ScriptedAdapter(ChannelAdapter):
    """Per-recipient outcome lists; the last entry repeats."""

    def __init__(self, channel: DeliveryChannel, script=None):
        super().__init__()
        self.channel = channel
        self._script = {rid: list(v) for rid, v in (script or {}).items()}
        self._lock = threading.Lock()
        self.sent_to = []

    def send(self, recipient, broadcast):
        with self._lock:
            self.sent_to.append(recipient.recipient_id)
            outcomes = self._script.get(recipient.recipient_id)
            if not outcomes:
                return DeliveryOutcome.accepted(f"{self.channel.value}-{recipient.recipient_id}")
            return outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]


class _FlakyStore(InMemoryBroadcastStore):
    """Loses its connection after a number of delivery records."""

    def __init__(self, fail_after: int):
        super().__init__()
        self._remaining = fail_after

    def add_delivery_record(self, record):
        if self._remaining == 0:
            raise ConnectionError("database connection lost")
        self._remaining -= 1
        return super().add_delivery_record(record)


def _make_recipients(*ids, roles=frozenset({"tourist"})):
    return [
        Recipient(
            recipient_id=rid, name=rid, roles=roles,
            phone="+919800000000", email=f"{rid.lower()}@example.com", push_token=f"tok-{rid}",
        )
        for rid in ids
    ]


def _make_service(clock, recipients=(), push_script=None, email_script=None, renotify=None, store=None):
    inbox = InAppInbox()
    adapters = {
        PUSH: _ScriptedAdapter(PUSH, push_script),
        EMAIL: _ScriptedAdapter(EMAIL, email_script),
        IN_APP: InAppAdapter(inbox),
    }
    return BroadcastService(
        store=store,
        directory=InMemoryRecipientDirectory(recipients),
        adapters=adapters,
        inbox=inbox,
        clock=clock,
        retry_policy=RetryPolicy(max_retries=3, backoff_base_seconds=1.0, backoff_max_seconds=30.0),
        renotify=renotify or RenotifyPolicy(),
        sleep=lambda seconds: None,
    )


def _create(service, **overrides) -> str:
    fields = dict(
        title="Beach safety notice",
        body="Strong currents at Baga today. Swim only between the red flags.",
        type="warning",
        priority="high",
        audience=AllTourists(),
        channels=["in_app"],
    )
    fields.update(overrides)
    return service.create_broadcast(**fields)


def _send(service, **overrides) -> str:
    bid = _create(service, **overrides)
    assert service.wait_for_dispatch(bid, timeout=5)
    return bid


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def services():
    created = []
    yield created
    for service in created:
        service.shutdown()


@pytest.fixture
def service(clock, services) -> BroadcastService:
    svc = _make_service(clock, _make_recipients("T-1", "T-2", "T-3"))
    services.append(svc)
    return svc


# ═══════════════════════════════════════════════════════════════════════════
# Create
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    def test_send_now(self, service):
        bid = _send(service)
        view = service.get_broadcast(bid)
        assert view.broadcast.status is S.SENT
        assert view.broadcast.target_count == 3
        assert view.stats.total == 3
        assert view.stats.delivered == 3

    def test_future_schedule_waits(self, service, clock):
        bid = _create(service, scheduled_for=clock.now + timedelta(hours=1))
        broadcast = service.get_broadcast(bid).broadcast
        assert broadcast.status is S.SCHEDULED
        assert broadcast.target_count == 3
        assert service.wait_for_dispatch(bid, timeout=0.1) is False

    def test_scheduled_for_now_sends_immediately(self, service, clock):
        bid = _create(service, scheduled_for=clock.now)
        assert service.wait_for_dispatch(bid, timeout=5)
        assert service.get_broadcast(bid).broadcast.status is S.SENT

    def test_draft_not_dispatched(self, service):
        bid = _create(service, draft=True)
        assert service.get_broadcast(bid).broadcast.status is S.DRAFT
        assert service.delivery_records(bid) == []

    def test_naive_datetimes_treated_as_utc(self, service, clock):
        naive = (clock.now + timedelta(hours=2)).replace(tzinfo=None)
        bid = _create(service, scheduled_for=naive)
        assert service.get_broadcast(bid).broadcast.scheduled_for == clock.now + timedelta(hours=2)

    @pytest.mark.parametrize("overrides, field", [
        ({"type": "rumour"}, "type"),
        ({"priority": "urgent"}, "priority"),
        ({"channels": []}, "channels"),
        ({"channels": ["fax"]}, "channels"),
        ({"title": "Hi"}, "title"),
        ({"body": "Too short"}, "body"),
        ({"audience": ExplicitRecipients(frozenset())}, "audience"),
        ({"audience": RoleBased(frozenset())}, "audience"),
    ])
    def test_invalid_input_rejected(self, service, overrides, field):
        with pytest.raises(ValidationError) as exc:
            _create(service, **overrides)
        assert exc.value.details["field"] == field
        assert service.list_broadcasts() == []

    def test_past_schedule_rejected(self, service, clock):
        with pytest.raises(ValidationError):
            _create(service, scheduled_for=clock.now - timedelta(minutes=1))

    def test_expiry_must_follow_schedule(self, service, clock):
        with pytest.raises(ValidationError):
            _create(
                service,
                scheduled_for=clock.now + timedelta(hours=2),
                expires_at=clock.now + timedelta(hours=1),
            )

    def test_empty_audience_fails(self, service):
        bid = _create(service, audience=ExplicitRecipients(frozenset({"GHOST-1"})))
        broadcast = service.get_broadcast(bid).broadcast
        assert broadcast.status is S.FAILED
        assert broadcast.failure_reason == "audience resolved to no reachable recipients"


# ═══════════════════════════════════════════════════════════════════════════
# Publish / release / cancel
# ═══════════════════════════════════════════════════════════════════════════

class TestPublishAndRelease:

    def test_publish_due_draft_sends(self, service):
        bid = _create(service, draft=True)
        service.publish_broadcast(bid)
        assert service.wait_for_dispatch(bid, timeout=5)
        assert service.get_broadcast(bid).broadcast.status is S.SENT

    def test_publish_future_draft_schedules(self, service, clock):
        bid = _create(service, draft=True, scheduled_for=clock.now + timedelta(hours=1))
        assert service.publish_broadcast(bid).status is S.SCHEDULED

    def test_publish_non_draft_refused(self, service):
        bid = _send(service)
        with pytest.raises(InvalidStateError):
            service.publish_broadcast(bid)

    def test_publish_expired_draft_refused(self, service, clock):
        bid = _create(service, draft=True, expires_at=clock.now + timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(ValidationError):
            service.publish_broadcast(bid)

    def test_sweep_releases_due_broadcast(self, service, clock):
        bid = _create(service, scheduled_for=clock.now + timedelta(minutes=30))
        clock.advance(minutes=30)
        report = service.run_sweep()
        assert report.released == [bid]
        assert service.wait_for_dispatch(bid, timeout=5)
        assert service.get_broadcast(bid).broadcast.status is S.SENT

    def test_unschedule_then_cancel(self, service, clock):
        bid = _create(service, scheduled_for=clock.now + timedelta(hours=1))
        assert service.unschedule_broadcast(bid).status is S.DRAFT
        cancelled = service.cancel_broadcast(bid, "ops-desk", "superseded")
        assert cancelled.status is S.CANCELLED
        assert cancelled.cancel_reason == "superseded"

    def test_cancelled_schedule_never_dispatches(self, service, clock):
        bid = _create(service, scheduled_for=clock.now + timedelta(minutes=10), channels=["push", "in_app"])
        clock.advance(minutes=5)
        service.cancel_broadcast(bid, "ops-desk", "threat passed")

        clock.advance(minutes=5)
        report = service.run_sweep()
        assert report.released == []
        assert report.errors == 0
        assert service.get_broadcast(bid).broadcast.status is S.CANCELLED
        assert service.delivery_records(bid) == []
        assert service.adapters[PUSH].sent_to == []
        assert service.inbox_for("T-1") == []

    def test_cancel_sent_refused(self, service):
        bid = _send(service)
        with pytest.raises(InvalidStateError):
            service.cancel_broadcast(bid)

    def test_unknown_broadcast(self, service):
        with pytest.raises(NotFoundError):
            service.get_broadcast("BRC-NOPE")


class TestAbortedLaunch:

    @pytest.fixture
    def flaky(self, clock, services) -> BroadcastService:
        svc = _make_service(clock, _make_recipients("T-1", "T-2", "T-3"), store=_FlakyStore(fail_after=2))
        services.append(svc)
        return svc

    def test_publish_settles_to_failed(self, flaky):
        bid = _create(flaky, draft=True)
        with pytest.raises(ConnectionError):
            flaky.publish_broadcast(bid)

        broadcast = flaky.get_broadcast(bid).broadcast
        assert broadcast.status is S.FAILED
        assert "database connection lost" in broadcast.failure_reason
        records = flaky.delivery_records(bid)
        assert len(records) == 2
        assert {r.state for r in records} == {AttemptState.FAILED}
        assert flaky.inbox_for("T-1") == []

    def test_sweep_counts_error_and_settles(self, flaky, clock):
        bid = _create(flaky, scheduled_for=clock.now + timedelta(minutes=10))
        clock.advance(minutes=10)
        report = flaky.run_sweep()
        assert report.errors == 1
        assert report.released == []
        assert flaky.get_broadcast(bid).broadcast.status is S.FAILED


# ═══════════════════════════════════════════════════════════════════════════
# Mixed outcomes
# ═══════════════════════════════════════════════════════════════════════════

class TestMixedOutcomes:

    def test_push_and_email_partial_failure(self, clock, services):
        svc = _make_service(
            clock, _make_recipients("T-1", "T-2", "T-3"),
            push_script={"T-1": [DeliveryOutcome.rejected("invalid device token")]},
            email_script={"T-2": [DeliveryOutcome.unavailable("smtp busy"), DeliveryOutcome.accepted("m-2")]},
        )
        services.append(svc)
        bid = _send(svc, channels=["push", "email"])

        records = {(r.recipient_id, r.channel): r for r in svc.delivery_records(bid)}
        assert records[("T-1", PUSH)].state is AttemptState.FAILED
        assert records[("T-2", EMAIL)].retry_count == 1
        assert records[("T-2", EMAIL)].state is AttemptState.SENT

        for (rid, channel), record in records.items():
            if record.state is AttemptState.SENT:
                svc.report_receipt(bid, rid, channel.value, "delivered")

        view = svc.get_broadcast(bid)
        assert view.broadcast.status is S.SENT
        assert view.stats.sent == 6
        assert view.stats.failed == 1
        assert view.stats.delivered == 5
        assert view.stats.by_channel["push"].failed == 1

    def test_every_channel_rejecting_fails_broadcast(self, clock, services):
        rejected = [DeliveryOutcome.rejected("blocked")]
        svc = _make_service(
            clock, _make_recipients("T-1", "T-2"),
            push_script={"T-1": rejected, "T-2": rejected},
        )
        services.append(svc)
        bid = _send(svc, channels=["push"])
        broadcast = svc.get_broadcast(bid).broadcast
        assert broadcast.status is S.FAILED
        assert broadcast.failure_reason == "no channel accepted any delivery"

    def test_delivery_record_filters(self, clock, services):
        svc = _make_service(
            clock, _make_recipients("T-1", "T-2"),
            push_script={"T-1": [DeliveryOutcome.rejected("blocked")]},
        )
        services.append(svc)
        bid = _send(svc, channels=["push", "in_app"])
        failed = svc.delivery_records(bid, state=AttemptState.FAILED)
        assert [(r.recipient_id, r.channel) for r in failed] == [("T-1", PUSH)]
        assert len(svc.delivery_records(bid, channel=IN_APP)) == 2

    def test_receipt_validation(self, service):
        bid = _send(service)
        with pytest.raises(ValidationError):
            service.report_receipt(bid, "T-1", "in_app", "bounced")
        with pytest.raises(ValidationError):
            service.report_receipt(bid, "T-1", "in_app", "sent")
        with pytest.raises(NotFoundError):
            service.report_receipt(bid, "T-9", "in_app", "read")


# ═══════════════════════════════════════════════════════════════════════════
# Acknowledgments
# ═══════════════════════════════════════════════════════════════════════════

class TestAcknowledgment:

    def test_acknowledge_delivered(self, service):
        bid = _send(service, requires_acknowledgment=True)
        record = service.submit_acknowledgment(bid, "T-2")
        assert record.state is AttemptState.ACKNOWLEDGED
        stats = service.get_broadcast(bid).stats
        assert stats.acknowledged == 1
        assert stats.to_dict()["response_rate"] == "33.3%"

    def test_acknowledge_twice_is_idempotent(self, service):
        bid = _send(service, requires_acknowledgment=True)
        first = service.submit_acknowledgment(bid, "T-1", "in_app")
        second = service.submit_acknowledgment(bid, "T-1")
        assert second.acknowledged_at == first.acknowledged_at
        assert service.get_broadcast(bid).stats.acknowledged == 1

    def test_acknowledge_after_expiry_refused(self, service, clock):
        bid = _send(service, requires_acknowledgment=True, expires_at=clock.now + timedelta(hours=1))
        clock.advance(hours=2)
        with pytest.raises(InvalidStateError):
            service.submit_acknowledgment(bid, "T-1")

    def test_acknowledge_unknown_recipient(self, service):
        bid = _send(service)
        with pytest.raises(NotFoundError):
            service.submit_acknowledgment(bid, "T-404")


# ═══════════════════════════════════════════════════════════════════════════
# Inbox
# ═══════════════════════════════════════════════════════════════════════════

class TestInbox:

    def test_item_visible_and_read(self, service):
        bid = _send(service)
        items = service.inbox_for("T-1")
        assert [i["broadcast_id"] for i in items] == [bid]
        assert items[0]["state"] == "delivered"

        service.mark_read("T-1", bid)
        assert service.inbox_for("T-1")[0]["state"] == "read"

    def test_expired_broadcast_hidden(self, service, clock):
        _send(service, expires_at=clock.now + timedelta(hours=1))
        assert len(service.inbox_for("T-1")) == 1
        clock.advance(hours=1)
        assert service.inbox_for("T-1") == []

    def test_other_recipients_unaffected(self, service):
        _send(service, audience=ExplicitRecipients(frozenset({"T-3"})))
        assert service.inbox_for("T-1") == []
        assert len(service.inbox_for("T-3")) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Templates, listing, edits
# ═══════════════════════════════════════════════════════════════════════════

class TestTemplates:

    def test_create_from_template(self, service):
        bid = service.create_from_template(
            "closure",
            {"site": "Aguada Fort", "until": "Friday", "reason": "restoration work"},
            audience=AllTourists(),
            draft=True,
        )
        broadcast = service.get_broadcast(bid).broadcast
        assert broadcast.title == "Aguada Fort closed"
        assert broadcast.template_id == "closure"
        assert broadcast.channels == frozenset({PUSH, IN_APP})

    def test_template_overrides(self, service):
        bid = service.create_from_template(
            "closure",
            {"site": "Aguada Fort", "until": "Friday", "reason": "restoration work"},
            audience=AllTourists(), channels=["email"], priority="low", draft=True,
        )
        broadcast = service.get_broadcast(bid).broadcast
        assert broadcast.channels == frozenset({EMAIL})
        assert broadcast.priority.label == "low"

    def test_missing_variable(self, service):
        with pytest.raises(ValidationError):
            service.create_from_template("closure", {"site": "Aguada Fort"}, audience=AllTourists())

    def test_unknown_template(self, service):
        with pytest.raises(NotFoundError):
            service.create_from_template("parade", {}, audience=AllTourists())


class TestListAndEdit:

    def test_filters(self, service, clock):
        warning = _create(service, draft=True)
        clock.advance(minutes=1)
        info = _create(service, draft=True, type="info", title="Market hours", body="The night market opens at 7pm on Saturday.")
        assert [b.broadcast_id for b in service.list_broadcasts()] == [info, warning]
        assert [b.broadcast_id for b in service.list_broadcasts(type="info")] == [info]
        assert [b.broadcast_id for b in service.list_broadcasts(search_text="CURRENTS")] == [warning]
        assert service.list_broadcasts(status="sent") == []

    def test_invalid_status_filter(self, service):
        with pytest.raises(ValidationError):
            service.list_broadcasts(status="lost")

    def test_edit_draft(self, service):
        bid = _create(service, draft=True)
        updated = service.update_broadcast(bid, title="  Revised beach notice ", channels=["push", "in_app"])
        assert updated.title == "Revised beach notice"
        assert updated.channels == frozenset({PUSH, IN_APP})

    def test_edit_scheduled_text_only(self, service, clock):
        bid = _create(service, scheduled_for=clock.now + timedelta(hours=1))
        assert service.update_broadcast(bid, body="Currents eased; swimming allowed near lifeguards.").status is S.SCHEDULED
        with pytest.raises(InvalidStateError):
            service.update_broadcast(bid, channels=["sms"])

    def test_edit_validates(self, service):
        bid = _create(service, draft=True)
        with pytest.raises(ValidationError):
            service.update_broadcast(bid, title="x")


# ═══════════════════════════════════════════════════════════════════════════
# Re-notification
# ═══════════════════════════════════════════════════════════════════════════

def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestRenotify:

    @pytest.fixture
    def reminding(self, clock, services) -> BroadcastService:
        svc = _make_service(
            clock, _make_recipients("T-1", "T-2"),
            renotify=RenotifyPolicy.from_seconds(600, 2),
        )
        services.append(svc)
        return svc

    def _reminders(self, svc, bid):
        return {r.recipient_id: r.reminder_count for r in svc.delivery_records(bid)}

    def test_reminds_unacknowledged_only(self, reminding, clock):
        bid = _send(reminding, requires_acknowledgment=True)
        reminding.submit_acknowledgment(bid, "T-1")

        assert reminding.run_sweep().reminders == 0
        clock.advance(minutes=10)
        assert reminding.run_sweep().reminders == 1
        assert _wait_for(lambda: self._reminders(reminding, bid)["T-2"] == 1)
        assert self._reminders(reminding, bid)["T-1"] == 0

        record = reminding.delivery_records(bid, channel=IN_APP)[1]
        assert record.state is AttemptState.DELIVERED

    def test_stops_at_max_attempts(self, reminding, clock):
        bid = _send(reminding, requires_acknowledgment=True)
        for expected in (1, 2):
            clock.advance(minutes=10)
            reminding.run_sweep()
            assert _wait_for(lambda: set(self._reminders(reminding, bid).values()) == {expected})
        clock.advance(minutes=10)
        assert reminding.run_sweep().reminders == 0

    def test_no_reminders_without_acknowledgment_flag(self, reminding, clock):
        _send(reminding)
        clock.advance(hours=1)
        assert reminding.run_sweep().reminders == 0

    def test_quiet_hours_defer_push_reminders(self, clock, services):
        recipient = replace(_make_recipients("T-1")[0], quiet_hours=QuietHours.parse("09:05", "11:00"))
        svc = _make_service(clock, [recipient], renotify=RenotifyPolicy.from_seconds(600, 2))
        services.append(svc)
        bid = _send(svc, requires_acknowledgment=True, channels=["in_app", "push"])
        svc.report_receipt(bid, "T-1", "push", "delivered")

        def reminders():
            return {r.channel: r.reminder_count for r in svc.delivery_records(bid)}

        clock.advance(minutes=10)  # 09:10, inside quiet hours
        assert svc.run_sweep().reminders == 1
        assert _wait_for(lambda: reminders()[IN_APP] == 1)
        assert reminders()[PUSH] == 0

        clock.advance(hours=2)  # 11:10
        assert svc.run_sweep().reminders == 2
        assert _wait_for(lambda: reminders() == {IN_APP: 2, PUSH: 1})
