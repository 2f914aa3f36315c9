"""
in_app.py — In-app notification channel.

Delivery writes straight into the recipient's inbox, so acceptance and
delivery happen together: the adapter emits a `delivered` receipt on
every accepted send. Opening the item in the app reports `read`.

The inbox keeps every item it was handed; filtering out broadcasts that
have since expired or been cancelled happens at read time in the
service, because the inbox cannot see broadcast status.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List

from backend.app.broadcasts.channels.base import ChannelAdapter, DeliveryOutcome
from backend.app.broadcasts.models import Broadcast, DeliveryChannel, Recipient


@dataclass(frozen=True)
class InboxItem:
    broadcast_id: str
    title: str
    body: str
    type: str
    priority: str
    requires_acknowledgment: bool
    delivered_at: datetime

    def to_dict(self) -> dict:
        return {
            "broadcast_id": self.broadcast_id,
            "title": self.title,
            "body": self.body,
            "type": self.type,
            "priority": self.priority,
            "requires_acknowledgment": self.requires_acknowledgment,
            "delivered_at": self.delivered_at.isoformat(),
        }


class InAppInbox:
    """Per-recipient list of in-app items, newest first."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, InboxItem]] = {}
        self._lock = threading.Lock()

    def deliver(self, recipient_id: str, broadcast: Broadcast) -> InboxItem:
        item = InboxItem(
            broadcast_id=broadcast.broadcast_id,
            title=broadcast.title,
            body=broadcast.body,
            type=broadcast.type.value,
            priority=broadcast.priority.label,
            requires_acknowledgment=broadcast.requires_acknowledgment,
            delivered_at=datetime.now(timezone.utc),
        )
        with self._lock:
            # Re-delivery (reminders) keeps the original item
            items = self._items.setdefault(recipient_id, {})
            return items.setdefault(broadcast.broadcast_id, item)

    def items_for(self, recipient_id: str) -> List[InboxItem]:
        with self._lock:
            items = list(self._items.get(recipient_id, {}).values())
        return sorted(items, key=lambda i: i.delivered_at, reverse=True)

    def count(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._items.values())


class InAppAdapter(ChannelAdapter):
    channel = DeliveryChannel.IN_APP
    provider = "inbox"

    def __init__(self, inbox: InAppInbox):
        super().__init__()
        self.inbox = inbox

    def send(self, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        self.inbox.deliver(recipient.recipient_id, broadcast)
        self.emit_receipt(broadcast.broadcast_id, recipient.recipient_id)
        return DeliveryOutcome.accepted(f"inbox-{broadcast.broadcast_id}-{recipient.recipient_id}")
