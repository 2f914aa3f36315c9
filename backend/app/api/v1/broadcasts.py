"""
FastAPI routes: broadcast authoring, delivery tracking and in-app inbox.

Provides endpoints to:
    POST  /api/v1/broadcasts                      — create (send now, schedule or draft)
    POST  /api/v1/broadcasts/from-template        — create from a template
    GET   /api/v1/broadcasts                      — list with filters
    GET   /api/v1/broadcasts/templates            — list templates
    GET   /api/v1/broadcasts/channels             — channel catalogue
    POST  /api/v1/broadcasts/sweep                — run one scheduler sweep now
    GET   /api/v1/broadcasts/{id}                 — broadcast + delivery stats
    PATCH /api/v1/broadcasts/{id}                 — edit draft / scheduled text
    POST  /api/v1/broadcasts/{id}/publish         — release a draft
    POST  /api/v1/broadcasts/{id}/cancel          — cancel draft / scheduled
    POST  /api/v1/broadcasts/{id}/unschedule      — scheduled → draft
    POST  /api/v1/broadcasts/{id}/acknowledge     — recipient acknowledgment
    POST  /api/v1/broadcasts/{id}/receipts        — provider delivery / read receipt
    GET   /api/v1/broadcasts/{id}/deliveries      — per-record audit trail
    PUT   /api/v1/recipients/{id}                 — register / update a recipient
    GET   /api/v1/recipients/{id}                 — fetch a recipient
    PUT   /api/v1/recipients/{id}/position        — report last-known position
    GET   /api/v1/inbox/{recipient_id}            — live in-app items
    POST  /api/v1/inbox/{recipient_id}/{id}/read  — mark an in-app item read
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.app.broadcasts.models import (
    ALL_CHANNELS,
    AllTourists,
    AttemptState,
    BroadcastPriority,
    DeliveryChannel,
    ExplicitRecipients,
    LocationBased,
    QuietHours,
    Recipient,
    RoleBased,
)
from backend.app.broadcasts.service import BroadcastService, get_broadcast_service
from backend.app.core.errors import ValidationError
from backend.app.spatial.radius_utils import Coordinate

router = APIRouter(prefix="/api/v1/broadcasts", tags=["broadcasts"])
recipients_router = APIRouter(prefix="/api/v1/recipients", tags=["recipients"])
inbox_router = APIRouter(prefix="/api/v1/inbox", tags=["inbox"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class CoordinateInput(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, examples=[15.5527])
    longitude: float = Field(..., ge=-180, le=180, examples=[73.7517])

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


class AllTouristsAudience(BaseModel):
    type: Literal["all_tourists"] = "all_tourists"

    def to_spec(self) -> AllTourists:
        return AllTourists()


class ExplicitAudience(BaseModel):
    type: Literal["explicit"] = "explicit"
    ids: List[str] = Field(default_factory=list, examples=[["T-1001", "T-1002"]])

    def to_spec(self) -> ExplicitRecipients:
        return ExplicitRecipients(ids=frozenset(self.ids))


class LocationAudience(BaseModel):
    type: Literal["location"] = "location"
    center: CoordinateInput
    radius_meters: float = Field(..., examples=[2000.0])

    def to_spec(self) -> LocationBased:
        return LocationBased(center=self.center.to_coordinate(), radius_meters=self.radius_meters)


class RoleAudience(BaseModel):
    type: Literal["role"] = "role"
    roles: List[str] = Field(default_factory=list, examples=[["officer", "guide"]])

    def to_spec(self) -> RoleBased:
        return RoleBased(roles=frozenset(self.roles))


AudienceInput = Annotated[
    Union[AllTouristsAudience, ExplicitAudience, LocationAudience, RoleAudience],
    Field(discriminator="type"),
]


class CreateBroadcastRequest(BaseModel):
    title: str = Field(..., examples=["Beach closure"])
    body: str = Field(..., examples=["North Beach is closed due to high tide warnings."])
    type: str = Field("info", examples=["warning"], description="emergency / alert / warning / info / announcement")
    priority: str = Field("medium", examples=["high"], description="low / medium / high / critical")
    audience: AudienceInput
    channels: List[str] = Field(..., examples=[["push", "sms", "inApp"]])
    requires_acknowledgment: bool = False
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_by: str = Field("dashboard", examples=["officer-17"])
    draft: bool = Field(False, description="Store as draft without sending")


class TemplateBroadcastRequest(BaseModel):
    template_id: str = Field(..., examples=["severe-weather"])
    variables: Dict[str, str] = Field(default_factory=dict)
    audience: AudienceInput
    channels: Optional[List[str]] = None
    priority: Optional[str] = None
    requires_acknowledgment: Optional[bool] = None
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_by: str = "dashboard"
    draft: bool = False


class UpdateBroadcastRequest(BaseModel):
    title: Optional[str] = None
    body: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    audience: Optional[AudienceInput] = None
    channels: Optional[List[str]] = None
    requires_acknowledgment: Optional[bool] = None
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None


class AcknowledgeRequest(BaseModel):
    recipient_id: str = Field(..., examples=["T-1001"])
    channel: Optional[str] = Field(None, examples=["sms"], description="Channel the ack arrived on")


class ReceiptRequest(BaseModel):
    recipient_id: str = Field(..., examples=["T-1001"])
    channel: str = Field(..., examples=["push"])
    state: Literal["delivered", "read"]
    provider_timestamp: Optional[datetime] = None


class QuietHoursInput(BaseModel):
    start: str = Field(..., examples=["22:00"])
    end: str = Field(..., examples=["06:00"])
    utc_offset_minutes: int = Field(0, ge=-14 * 60, le=14 * 60, examples=[330])


class RecipientInput(BaseModel):
    name: str = Field(..., examples=["Priya"])
    roles: List[str] = Field(default_factory=lambda: ["tourist"])
    position: Optional[CoordinateInput] = None
    phone: Optional[str] = Field(None, examples=["+919876543210"])
    email: Optional[str] = Field(None, examples=["priya@example.com"])
    push_token: Optional[str] = None
    channel_opt_in: Optional[List[str]] = Field(None, description="Defaults to every channel")
    minimum_priority: str = "low"
    quiet_hours: Optional[QuietHoursInput] = None
    active: bool = True


class PositionInput(BaseModel):
    position: Optional[CoordinateInput] = None


def _channels(values: List[str]) -> frozenset:
    try:
        return frozenset(DeliveryChannel.parse(v) for v in values)
    except ValueError as exc:
        raise ValidationError(str(exc), field="channels") from None


# ---------------------------------------------------------------------------
# Broadcast endpoints
# ---------------------------------------------------------------------------

@router.post(
    "",
    status_code=201,
    summary="Create a broadcast",
    description=(
        "Validates and stores a broadcast. Without scheduled_for it starts "
        "sending immediately; with a future scheduled_for it is scheduled; "
        "with draft=true it is stored without sending."
    ),
)
def create_broadcast(
    request: CreateBroadcastRequest,
    service: BroadcastService = Depends(get_broadcast_service),
):
    broadcast_id = service.create_broadcast(
        title=request.title,
        body=request.body,
        type=request.type,
        priority=request.priority,
        audience=request.audience.to_spec(),
        channels=request.channels,
        requires_acknowledgment=request.requires_acknowledgment,
        scheduled_for=request.scheduled_for,
        expires_at=request.expires_at,
        created_by=request.created_by,
        draft=request.draft,
    )
    return {"broadcast_id": broadcast_id, "broadcast": service.get_broadcast(broadcast_id).to_dict()}


@router.post("/from-template", status_code=201, summary="Create a broadcast from a template")
def create_from_template(
    request: TemplateBroadcastRequest,
    service: BroadcastService = Depends(get_broadcast_service),
):
    broadcast_id = service.create_from_template(
        request.template_id,
        request.variables,
        audience=request.audience.to_spec(),
        channels=request.channels,
        priority=request.priority,
        requires_acknowledgment=request.requires_acknowledgment,
        scheduled_for=request.scheduled_for,
        expires_at=request.expires_at,
        created_by=request.created_by,
        draft=request.draft,
    )
    return {"broadcast_id": broadcast_id, "broadcast": service.get_broadcast(broadcast_id).to_dict()}


@router.get("", summary="List broadcasts")
def list_broadcasts(
    status: Optional[str] = Query(None, examples=["sent"]),
    type: Optional[str] = Query(None, examples=["emergency"]),
    search: Optional[str] = Query(None, description="Case-insensitive title/body search"),
    service: BroadcastService = Depends(get_broadcast_service),
):
    broadcasts = service.list_broadcasts(status=status, type=type, search_text=search)
    return {"count": len(broadcasts), "broadcasts": [b.to_dict() for b in broadcasts]}


@router.get("/templates", summary="List message templates")
def list_templates(service: BroadcastService = Depends(get_broadcast_service)):
    return {"templates": [t.to_dict() for t in service.templates.values()]}


@router.get("/channels", summary="List delivery channels")
def list_channels(service: BroadcastService = Depends(get_broadcast_service)):
    return {
        "channels": service.channel_catalogue(),
        "priority_levels": [{"name": p.label, "value": int(p)} for p in BroadcastPriority],
    }


@router.post("/sweep", summary="Run one scheduler sweep now")
def run_sweep(service: BroadcastService = Depends(get_broadcast_service)):
    return service.run_sweep().to_dict()


@router.get("/{broadcast_id}", summary="Get a broadcast with delivery stats")
def get_broadcast(broadcast_id: str, service: BroadcastService = Depends(get_broadcast_service)):
    return service.get_broadcast(broadcast_id).to_dict()


@router.patch("/{broadcast_id}", summary="Edit a draft or scheduled broadcast")
def update_broadcast(
    broadcast_id: str,
    request: UpdateBroadcastRequest,
    service: BroadcastService = Depends(get_broadcast_service),
):
    changes: Dict[str, Any] = request.model_dump(exclude_unset=True, exclude={"audience"})
    if request.audience is not None:
        changes["audience"] = request.audience.to_spec()
    return service.update_broadcast(broadcast_id, **changes).to_dict()


@router.post("/{broadcast_id}/publish", summary="Publish a draft")
def publish_broadcast(broadcast_id: str, service: BroadcastService = Depends(get_broadcast_service)):
    return service.publish_broadcast(broadcast_id).to_dict()


@router.post("/{broadcast_id}/cancel", summary="Cancel a draft or scheduled broadcast")
def cancel_broadcast(
    broadcast_id: str,
    request: Optional[CancelRequest] = None,
    service: BroadcastService = Depends(get_broadcast_service),
):
    request = request or CancelRequest()
    return service.cancel_broadcast(broadcast_id, request.cancelled_by, request.reason).to_dict()


@router.post("/{broadcast_id}/unschedule", summary="Move a scheduled broadcast back to draft")
def unschedule_broadcast(broadcast_id: str, service: BroadcastService = Depends(get_broadcast_service)):
    return service.unschedule_broadcast(broadcast_id).to_dict()


@router.post("/{broadcast_id}/acknowledge", summary="Acknowledge a broadcast")
def acknowledge_broadcast(
    broadcast_id: str,
    request: AcknowledgeRequest,
    service: BroadcastService = Depends(get_broadcast_service),
):
    record = service.submit_acknowledgment(broadcast_id, request.recipient_id, request.channel)
    return record.to_dict()


@router.post("/{broadcast_id}/receipts", summary="Report a provider delivery receipt")
def report_receipt(
    broadcast_id: str,
    request: ReceiptRequest,
    service: BroadcastService = Depends(get_broadcast_service),
):
    record = service.report_receipt(
        broadcast_id, request.recipient_id, request.channel,
        request.state, request.provider_timestamp,
    )
    return record.to_dict()


@router.get("/{broadcast_id}/deliveries", summary="Per-recipient delivery records")
def list_deliveries(
    broadcast_id: str,
    state: Optional[str] = Query(None, examples=["failed"]),
    channel: Optional[str] = Query(None, examples=["sms"]),
    service: BroadcastService = Depends(get_broadcast_service),
):
    try:
        state_filter = AttemptState(state) if state else None
        channel_filter = DeliveryChannel.parse(channel) if channel else None
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    records = service.delivery_records(broadcast_id, state=state_filter, channel=channel_filter)
    return {"count": len(records), "deliveries": [r.to_dict() for r in records]}


# ---------------------------------------------------------------------------
# Recipient endpoints
# ---------------------------------------------------------------------------

@recipients_router.put("/{recipient_id}", summary="Register or update a recipient")
def upsert_recipient(
    recipient_id: str,
    request: RecipientInput,
    service: BroadcastService = Depends(get_broadcast_service),
):
    try:
        minimum_priority = BroadcastPriority.parse(request.minimum_priority)
    except ValueError as exc:
        raise ValidationError(str(exc), field="minimum_priority") from None
    quiet_hours = None
    if request.quiet_hours is not None:
        try:
            quiet_hours = QuietHours.parse(
                request.quiet_hours.start,
                request.quiet_hours.end,
                request.quiet_hours.utc_offset_minutes,
            )
        except ValueError as exc:
            raise ValidationError(str(exc), field="quiet_hours") from None
    recipient = Recipient(
        recipient_id=recipient_id,
        name=request.name,
        roles=frozenset(request.roles),
        position=request.position.to_coordinate() if request.position else None,
        phone=request.phone,
        email=request.email,
        push_token=request.push_token,
        channel_opt_in=(
            _channels(request.channel_opt_in)
            if request.channel_opt_in is not None else ALL_CHANNELS
        ),
        minimum_priority=minimum_priority,
        quiet_hours=quiet_hours,
        active=request.active,
    )
    return service.register_recipient(recipient).to_dict()


@recipients_router.get("/{recipient_id}", summary="Get a recipient")
def get_recipient(recipient_id: str, service: BroadcastService = Depends(get_broadcast_service)):
    return service.get_recipient(recipient_id).to_dict()


@recipients_router.put("/{recipient_id}/position", summary="Report last-known position")
def update_position(
    recipient_id: str,
    request: PositionInput,
    service: BroadcastService = Depends(get_broadcast_service),
):
    position = request.position.to_coordinate() if request.position else None
    return service.update_recipient_position(recipient_id, position).to_dict()


# ---------------------------------------------------------------------------
# In-app inbox endpoints
# ---------------------------------------------------------------------------

@inbox_router.get("/{recipient_id}", summary="Live in-app items for a recipient")
def get_inbox(recipient_id: str, service: BroadcastService = Depends(get_broadcast_service)):
    items = service.inbox_for(recipient_id)
    return {"recipient_id": recipient_id, "count": len(items), "items": items}


@inbox_router.post("/{recipient_id}/{broadcast_id}/read", summary="Mark an in-app item read")
def mark_read(
    recipient_id: str,
    broadcast_id: str,
    service: BroadcastService = Depends(get_broadcast_service),
):
    return service.mark_read(recipient_id, broadcast_id).to_dict()
