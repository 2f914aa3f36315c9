"""
push.py — Mobile push notification channel.

Delivery mechanism:
    • Provider "http": JSON POST to a push gateway (FCM / APNs relay)
    • Provider "simulation": log the notification, accept it and emit a
      delivered receipt, for development and tests

A recipient without a registered device token is Rejected: retrying
cannot make a token appear.

Push payload:

    {
      "token": "...",
      "notification": {"title": ..., "body": ...},
      "data": {"broadcast_id", "type", "priority", "requires_acknowledgment"},
      "priority": "high" | "normal"
    }
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict

from backend.app.broadcasts.channels.base import DeliveryOutcome, HttpGatewayAdapter
from backend.app.broadcasts.models import (
    Broadcast,
    BroadcastPriority,
    DeliveryChannel,
    Recipient,
)

logger = logging.getLogger(__name__)


def build_push_payload(recipient: Recipient, broadcast: Broadcast) -> Dict[str, Any]:
    urgent = broadcast.priority >= BroadcastPriority.HIGH
    return {
        "token": recipient.push_token,
        "notification": {
            "title": broadcast.title,
            "body": broadcast.body,
            "tag": broadcast.broadcast_id,
        },
        "data": {
            "broadcast_id": broadcast.broadcast_id,
            "recipient_id": recipient.recipient_id,
            "type": broadcast.type.value,
            "priority": broadcast.priority.label,
            "requires_acknowledgment": broadcast.requires_acknowledgment,
        },
        "priority": "high" if urgent else "normal",
    }


class PushAdapter(HttpGatewayAdapter):
    channel = DeliveryChannel.PUSH

    def send(self, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        if not recipient.push_token:
            return DeliveryOutcome.rejected("no push token registered")

        payload = build_push_payload(recipient, broadcast)

        if self.provider == "simulation":
            logger.info(
                "[PUSH] Broadcast %s → %s (%s): %s",
                broadcast.broadcast_id, recipient.recipient_id,
                recipient.name, broadcast.title,
                extra={"broadcast_id": broadcast.broadcast_id, "channel": "push"},
            )
            self.emit_receipt(broadcast.broadcast_id, recipient.recipient_id)
            return DeliveryOutcome.accepted(f"sim-push-{uuid.uuid4().hex[:10]}")

        return self.post_to_gateway(payload)
