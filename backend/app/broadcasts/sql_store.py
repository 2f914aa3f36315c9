"""
sql_store.py — BroadcastStore persisted through SQLAlchemy.

Tables:

    broadcasts          one row per broadcast, `version` column for CAS
    delivery_records    PK (broadcast_id, recipient_id, channel), `version` column

Check-and-set is a conditional UPDATE:

    UPDATE broadcasts SET ..., version = :expected + 1
     WHERE broadcast_id = :id AND version = :expected

and the writer that sees rowcount == 1 won. Appending a record whose key
already exists hits the primary key and returns False.

SQLite drops tzinfo on DateTime columns; values are read back as UTC.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.broadcasts.models import (
    AttemptState,
    Broadcast,
    BroadcastPriority,
    BroadcastStatus,
    BroadcastType,
    DeliveryChannel,
    DeliveryRecord,
    RecordKey,
    audience_from_dict,
    ordered_channels,
)
from backend.app.broadcasts.store import BroadcastStore
from backend.app.core.database import Base, close_db, make_session_factory

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ORM rows
# ═══════════════════════════════════════════════════════════════════════════

class BroadcastRow(Base):
    __tablename__ = "broadcasts"

    broadcast_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str] = mapped_column(String(200))
    body: Mapped[str] = mapped_column(Text)
    type: Mapped[str] = mapped_column(String(20), index=True)
    priority: Mapped[int] = mapped_column(Integer)
    audience: Mapped[Dict[str, Any]] = mapped_column(JSON)
    channels: Mapped[List[str]] = mapped_column(JSON)
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    target_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    template_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


class DeliveryRecordRow(Base):
    __tablename__ = "delivery_records"

    broadcast_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("broadcasts.broadcast_id"), primary_key=True,
    )
    recipient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(10), primary_key=True)
    state: Mapped[str] = mapped_column(String(16), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0)
    last_reminded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ model mapping
# ═══════════════════════════════════════════════════════════════════════════

def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _broadcast_columns(b: Broadcast) -> Dict[str, Any]:
    return {
        "title": b.title,
        "body": b.body,
        "type": b.type.value,
        "priority": int(b.priority),
        "audience": b.audience.to_dict(),
        "channels": [c.value for c in ordered_channels(b.channels)],
        "requires_acknowledgment": b.requires_acknowledgment,
        "created_by": b.created_by,
        "created_at": b.created_at,
        "scheduled_for": b.scheduled_for,
        "expires_at": b.expires_at,
        "status": b.status.value,
        "sent_at": b.sent_at,
        "completed_at": b.completed_at,
        "target_count": b.target_count,
        "failure_reason": b.failure_reason,
        "cancelled_by": b.cancelled_by,
        "cancel_reason": b.cancel_reason,
        "template_id": b.template_id,
    }


def _broadcast_from_row(row: BroadcastRow) -> Broadcast:
    return Broadcast(
        broadcast_id=row.broadcast_id,
        title=row.title,
        body=row.body,
        type=BroadcastType(row.type),
        priority=BroadcastPriority(row.priority),
        audience=audience_from_dict(row.audience),
        channels=frozenset(DeliveryChannel(c) for c in row.channels),
        requires_acknowledgment=row.requires_acknowledgment,
        created_by=row.created_by,
        created_at=_utc(row.created_at),
        scheduled_for=_utc(row.scheduled_for),
        expires_at=_utc(row.expires_at),
        status=BroadcastStatus(row.status),
        sent_at=_utc(row.sent_at),
        completed_at=_utc(row.completed_at),
        target_count=row.target_count,
        failure_reason=row.failure_reason,
        cancelled_by=row.cancelled_by,
        cancel_reason=row.cancel_reason,
        template_id=row.template_id,
        version=row.version,
    )


_RECORD_TIMESTAMPS = (
    "created_at", "last_updated_at", "sent_at", "delivered_at", "read_at",
    "acknowledged_at", "provider_timestamp", "last_reminded_at",
)


def _record_columns(r: DeliveryRecord) -> Dict[str, Any]:
    columns = {name: getattr(r, name) for name in _RECORD_TIMESTAMPS}
    columns.update({
        "state": r.state.value,
        "failure_reason": r.failure_reason,
        "retry_count": r.retry_count,
        "provider_message_id": r.provider_message_id,
        "reminder_count": r.reminder_count,
    })
    return columns


def _record_from_row(row: DeliveryRecordRow) -> DeliveryRecord:
    return DeliveryRecord(
        broadcast_id=row.broadcast_id,
        recipient_id=row.recipient_id,
        channel=DeliveryChannel(row.channel),
        state=AttemptState(row.state),
        failure_reason=row.failure_reason,
        retry_count=row.retry_count,
        provider_message_id=row.provider_message_id,
        reminder_count=row.reminder_count,
        version=row.version,
        **{name: _utc(getattr(row, name)) for name in _RECORD_TIMESTAMPS},
    )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlBroadcastStore(BroadcastStore):
    backend_name = "sql"

    def __init__(self, engine: Engine):
        self._engine = engine
        self._sessions = make_session_factory(engine)

    # ── Broadcasts ──

    def insert_broadcast(self, broadcast: Broadcast) -> Broadcast:
        row = BroadcastRow(broadcast_id=broadcast.broadcast_id, version=1, **_broadcast_columns(broadcast))
        try:
            with self._sessions.begin() as session:
                session.add(row)
        except IntegrityError:
            raise ValueError(f"Broadcast {broadcast.broadcast_id} already exists") from None
        return replace(broadcast, version=1)

    def get_broadcast(self, broadcast_id: str) -> Optional[Broadcast]:
        with self._sessions() as session:
            row = session.get(BroadcastRow, broadcast_id)
            return _broadcast_from_row(row) if row else None

    def list_broadcasts(
        self, statuses: Optional[Iterable[BroadcastStatus]] = None,
    ) -> List[Broadcast]:
        query = select(BroadcastRow)
        if statuses is not None:
            query = query.where(BroadcastRow.status.in_([s.value for s in statuses]))
        with self._sessions() as session:
            return [_broadcast_from_row(row) for row in session.scalars(query)]

    def compare_and_set_broadcast(self, updated: Broadcast) -> Optional[Broadcast]:
        statement = (
            update(BroadcastRow)
            .where(
                BroadcastRow.broadcast_id == updated.broadcast_id,
                BroadcastRow.version == updated.version,
            )
            .values(version=updated.version + 1, **_broadcast_columns(updated))
            .execution_options(synchronize_session=False)
        )
        with self._sessions.begin() as session:
            result = session.execute(statement)
        if result.rowcount != 1:
            return None
        return replace(updated, version=updated.version + 1)

    # ── Delivery records ──

    def add_delivery_record(self, record: DeliveryRecord) -> bool:
        row = DeliveryRecordRow(
            broadcast_id=record.broadcast_id,
            recipient_id=record.recipient_id,
            channel=record.channel.value,
            version=1,
            **_record_columns(record),
        )
        try:
            with self._sessions.begin() as session:
                session.add(row)
        except IntegrityError:
            return False
        return True

    def get_delivery_record(self, key: RecordKey) -> Optional[DeliveryRecord]:
        broadcast_id, recipient_id, channel = key
        with self._sessions() as session:
            row = session.get(DeliveryRecordRow, (broadcast_id, recipient_id, channel.value))
            return _record_from_row(row) if row else None

    def delivery_records(self, broadcast_id: str) -> List[DeliveryRecord]:
        query = select(DeliveryRecordRow).where(DeliveryRecordRow.broadcast_id == broadcast_id)
        with self._sessions() as session:
            return [_record_from_row(row) for row in session.scalars(query)]

    def compare_and_set_delivery_record(
        self, updated: DeliveryRecord,
    ) -> Optional[DeliveryRecord]:
        statement = (
            update(DeliveryRecordRow)
            .where(
                DeliveryRecordRow.broadcast_id == updated.broadcast_id,
                DeliveryRecordRow.recipient_id == updated.recipient_id,
                DeliveryRecordRow.channel == updated.channel.value,
                DeliveryRecordRow.version == updated.version,
            )
            .values(version=updated.version + 1, **_record_columns(updated))
            .execution_options(synchronize_session=False)
        )
        with self._sessions.begin() as session:
            result = session.execute(statement)
        if result.rowcount != 1:
            return None
        return replace(updated, version=updated.version + 1)

    def ping(self) -> bool:
        with self._engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        close_db(self._engine)
