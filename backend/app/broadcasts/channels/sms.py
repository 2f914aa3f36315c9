"""
sms.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • Provider "http": JSON POST to an SMS gateway (Twilio / MSG91 relay)
    • Provider "simulation": log, accept and emit a delivered receipt
    • Payload: ≤160 chars (GSM 7-bit); longer bodies are truncated

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATING
═══════════════════════════════════════════════════════════════════════════

    "[{PRIORITY}] {title}: {body} Reply SAFE. Ref:{broadcast_ref}"

The "Reply SAFE" suffix is only added when the broadcast asks for an
acknowledgment; the gateway's inbound webhook turns the reply into an
acknowledgment for this recipient.
"""

from __future__ import annotations

import logging
import re
import uuid

from backend.app.broadcasts.channels.base import DeliveryOutcome, HttpGatewayAdapter
from backend.app.broadcasts.models import Broadcast, DeliveryChannel, Recipient

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")


def format_sms(broadcast: Broadcast) -> str:
    """Format the SMS body within the 160-char GSM limit."""
    prefix = f"[{broadcast.priority.name}] "
    suffix = f" Ref:{broadcast.broadcast_id[-6:]}"
    if broadcast.requires_acknowledgment:
        suffix = " Reply SAFE." + suffix

    body = f"{broadcast.title}: {broadcast.body}"
    available = SMS_MAX_GSM7 - len(prefix) - len(suffix)
    if len(body) > available:
        body = body[: available - 3] + "..."

    return f"{prefix}{body}{suffix}"


class SmsAdapter(HttpGatewayAdapter):
    channel = DeliveryChannel.SMS

    def send(self, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        if not recipient.phone:
            return DeliveryOutcome.rejected("no phone number on file")
        if not _E164.match(recipient.phone):
            return DeliveryOutcome.rejected(f"invalid phone number {recipient.phone!r}")

        text = format_sms(broadcast)

        if self.provider == "simulation":
            logger.info(
                "[SMS] Broadcast %s → %s (%s): %d chars",
                broadcast.broadcast_id, recipient.phone, recipient.name, len(text),
                extra={"broadcast_id": broadcast.broadcast_id, "channel": "sms"},
            )
            self.emit_receipt(broadcast.broadcast_id, recipient.recipient_id)
            return DeliveryOutcome.accepted(f"sim-sms-{uuid.uuid4().hex[:10]}")

        return self.post_to_gateway({
            "to": recipient.phone,
            "text": text,
            "reference": broadcast.broadcast_id,
            "recipient_id": recipient.recipient_id,
        })
