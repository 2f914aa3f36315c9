"""
test_api.py — HTTP tests for the broadcast, recipient and inbox routes.

Covers:
    • Create / publish / schedule / unschedule / cancel over HTTP
    • Error envelope for service errors and malformed bodies
    • Acknowledgments, receipts and delivery record filters
    • Recipient registration and location audiences
    • Inbox listing and read receipts
    • Health report aggregation

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.api.v1.broadcasts import inbox_router, recipients_router, router
from backend.app.broadcasts.audience import InMemoryRecipientDirectory
from backend.app.broadcasts.models import Recipient
from backend.app.broadcasts.scheduler import RenotifyPolicy
from backend.app.broadcasts.service import BroadcastService, get_broadcast_service
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check

BASE = "/api/v1/broadcasts"


def _payload(**overrides) -> dict:
    body = {
        "title": "Monsoon advisory",
        "body": "Heavy rain expected this evening. Avoid waterfalls and river crossings.",
        "type": "warning",
        "priority": "high",
        "audience": {"type": "all_tourists"},
        "channels": ["inApp"],
    }
    body.update(overrides)
    return body


@pytest.fixture
def service():
    svc = BroadcastService(
        directory=InMemoryRecipientDirectory([
            Recipient(recipient_id="T-1", name="Asha"),
            Recipient(recipient_id="T-2", name="Ben"),
            Recipient(recipient_id="G-1", name="Guide Ravi", roles=frozenset({"guide"})),
        ]),
        renotify=RenotifyPolicy(),
        sleep=lambda seconds: None,
    )
    yield svc
    svc.shutdown()


@pytest.fixture
def client(service) -> TestClient:
    app = FastAPI()
    register_error_handlers(app)
    app.include_router(router)
    app.include_router(recipients_router)
    app.include_router(inbox_router)
    app.dependency_overrides[get_broadcast_service] = lambda: service
    return TestClient(app)


def _create_sent(client, service, **overrides) -> str:
    response = client.post(BASE, json=_payload(**overrides))
    assert response.status_code == 201
    bid = response.json()["broadcast_id"]
    assert service.wait_for_dispatch(bid, timeout=5)
    return bid


# ═══════════════════════════════════════════════════════════════════════════
# Broadcast lifecycle over HTTP
# ═══════════════════════════════════════════════════════════════════════════

class TestBroadcastRoutes:

    def test_create_and_get(self, client, service):
        bid = _create_sent(client, service)
        data = client.get(f"{BASE}/{bid}").json()
        assert data["status"] == "sent"
        assert data["channels"] == ["in_app"]
        assert data["target_count"] == 2
        assert data["stats"]["delivered"] == 2

    def test_draft_then_publish(self, client, service):
        response = client.post(BASE, json=_payload(draft=True))
        assert response.json()["broadcast"]["status"] == "draft"
        bid = response.json()["broadcast_id"]

        assert client.post(f"{BASE}/{bid}/publish").status_code == 200
        assert service.wait_for_dispatch(bid, timeout=5)
        assert client.get(f"{BASE}/{bid}").json()["status"] == "sent"

    def test_schedule_unschedule_cancel(self, client):
        later = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        bid = client.post(BASE, json=_payload(scheduled_for=later)).json()["broadcast_id"]
        assert client.get(f"{BASE}/{bid}").json()["status"] == "scheduled"

        assert client.post(f"{BASE}/{bid}/unschedule").json()["status"] == "draft"
        cancelled = client.post(f"{BASE}/{bid}/cancel", json={"cancelled_by": "desk-2", "reason": "duplicate"})
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancel_reason"] == "duplicate"

    def test_cancel_without_body(self, client):
        bid = client.post(BASE, json=_payload(draft=True)).json()["broadcast_id"]
        assert client.post(f"{BASE}/{bid}/cancel").json()["status"] == "cancelled"

    def test_patch_draft(self, client):
        bid = client.post(BASE, json=_payload(draft=True)).json()["broadcast_id"]
        response = client.patch(f"{BASE}/{bid}", json={"title": "Monsoon advisory (updated)"})
        assert response.status_code == 200
        assert response.json()["title"] == "Monsoon advisory (updated)"
        assert response.json()["body"].startswith("Heavy rain")

    def test_list_filters(self, client):
        client.post(BASE, json=_payload(draft=True))
        client.post(BASE, json=_payload(draft=True, type="info", title="Market day", body="Saturday night market opens at 7pm."))
        assert client.get(BASE).json()["count"] == 2
        assert client.get(BASE, params={"type": "info"}).json()["count"] == 1
        assert client.get(BASE, params={"search": "waterfalls"}).json()["count"] == 1
        assert client.get(BASE, params={"status": "draft"}).json()["count"] == 2

    def test_from_template(self, client):
        response = client.post(f"{BASE}/from-template", json={
            "template_id": "closure",
            "variables": {"site": "Dudhsagar trail", "until": "Monday", "reason": "flooding"},
            "audience": {"type": "all_tourists"},
            "draft": True,
        })
        assert response.status_code == 201
        assert response.json()["broadcast"]["title"] == "Dudhsagar trail closed"

    def test_catalogues(self, client):
        templates = client.get(f"{BASE}/templates").json()["templates"]
        assert "severe-weather" in {t["template_id"] for t in templates}
        channels = client.get(f"{BASE}/channels").json()
        assert [c["channel"] for c in channels["channels"]] == ["push", "email", "sms", "in_app"]
        assert channels["priority_levels"][-1] == {"name": "critical", "value": 4}

    def test_sweep(self, client):
        report = client.post(f"{BASE}/sweep").json()
        assert report["released"] == []
        assert report["errors"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Error envelope
# ═══════════════════════════════════════════════════════════════════════════

class TestErrors:

    def test_service_validation(self, client):
        response = client.post(BASE, json=_payload(title="No"))
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "title"

    def test_malformed_body(self, client):
        response = client.post(BASE, json=_payload(audience={"type": "planet"}))
        assert response.status_code == 422
        error = response.json()["error"]
        assert error["message"] == "Request body failed validation"
        assert error["details"]["errors"]

    def test_not_found(self, client):
        response = client.get(f"{BASE}/BRC-UNKNOWN")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_invalid_state(self, client, service):
        bid = _create_sent(client, service)
        response = client.post(f"{BASE}/{bid}/cancel")
        assert response.status_code == 409
        assert response.json()["error"]["details"]["current_status"] == "sent"

    def test_bad_deliveries_filter(self, client, service):
        bid = _create_sent(client, service)
        assert client.get(f"{BASE}/{bid}/deliveries", params={"state": "lost"}).status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Tracking
# ═══════════════════════════════════════════════════════════════════════════

class TestTracking:

    def test_acknowledge(self, client, service):
        bid = _create_sent(client, service, requires_acknowledgment=True)
        response = client.post(f"{BASE}/{bid}/acknowledge", json={"recipient_id": "T-1"})
        assert response.status_code == 200
        assert response.json()["state"] == "acknowledged"
        assert client.get(f"{BASE}/{bid}").json()["stats"]["response_rate"] == "50.0%"

    def test_receipts(self, client, service):
        bid = _create_sent(client, service)
        response = client.post(f"{BASE}/{bid}/receipts", json={
            "recipient_id": "T-2", "channel": "in_app", "state": "read",
        })
        assert response.json()["state"] == "read"
        bad = client.post(f"{BASE}/{bid}/receipts", json={
            "recipient_id": "T-2", "channel": "in_app", "state": "bounced",
        })
        assert bad.status_code == 422

    def test_deliveries(self, client, service):
        bid = _create_sent(client, service)
        data = client.get(f"{BASE}/{bid}/deliveries", params={"channel": "inApp"}).json()
        assert data["count"] == 2
        assert {d["recipient_id"] for d in data["deliveries"]} == {"T-1", "T-2"}
        assert client.get(f"{BASE}/{bid}/deliveries", params={"state": "failed"}).json()["count"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Recipients and inbox
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipientsAndInbox:

    def test_register_and_fetch(self, client):
        response = client.put("/api/v1/recipients/T-9", json={
            "name": "Chen", "email": "chen@example.com", "channel_opt_in": ["email", "inApp"],
        })
        assert response.status_code == 200
        data = client.get("/api/v1/recipients/T-9").json()
        assert data["channel_opt_in"] == ["in_app", "email"]
        assert data["roles"] == ["tourist"]

    def test_quiet_hours(self, client):
        response = client.put("/api/v1/recipients/T-9", json={
            "name": "Chen", "quiet_hours": {"start": "22:00", "end": "06:30", "utc_offset_minutes": 330},
        })
        assert response.json()["quiet_hours"] == {"start": "22:00", "end": "06:30", "utc_offset_minutes": 330}
        bad = client.put("/api/v1/recipients/T-9", json={"name": "Chen", "quiet_hours": {"start": "10pm", "end": "06:00"}})
        assert bad.status_code == 422
        assert bad.json()["error"]["details"]["field"] == "quiet_hours"

    def test_unknown_recipient(self, client):
        assert client.get("/api/v1/recipients/NOBODY").status_code == 404

    def test_location_audience(self, client, service):
        client.put("/api/v1/recipients/T-1/position", json={"position": {"latitude": 15.5527, "longitude": 73.7517}})
        client.put("/api/v1/recipients/T-2/position", json={"position": {"latitude": 15.4909, "longitude": 73.8278}})
        bid = _create_sent(client, service, audience={
            "type": "location",
            "center": {"latitude": 15.5530, "longitude": 73.7520},
            "radius_meters": 1000,
        })
        deliveries = client.get(f"{BASE}/{bid}/deliveries").json()["deliveries"]
        assert [d["recipient_id"] for d in deliveries] == ["T-1"]

    def test_inbox_and_read(self, client, service):
        bid = _create_sent(client, service, audience={"type": "explicit", "ids": ["T-2"]})
        inbox = client.get("/api/v1/inbox/T-2").json()
        assert inbox["count"] == 1
        assert inbox["items"][0]["broadcast_id"] == bid

        assert client.post(f"/api/v1/inbox/T-2/{bid}/read").json()["state"] == "read"
        assert client.get("/api/v1/inbox/T-1").json()["count"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_components_reported(self, service):
        report = asyncio.run(run_health_check(service))
        names = [c.name for c in report.components]
        assert names == ["store", "scheduler", "channels", "dispatch"]
        store = report.components[0]
        assert store.status is HealthStatus.HEALTHY
        assert store.details["backend"] == "memory"

    def test_store_failure_is_unhealthy(self, service, monkeypatch):
        def broken_ping():
            raise ConnectionError("database unreachable")

        monkeypatch.setattr(service.store, "ping", broken_ping)
        report = asyncio.run(run_health_check(service))
        assert report.status is HealthStatus.UNHEALTHY
        assert report.to_dict()["components"][0]["message"] == "database unreachable"
