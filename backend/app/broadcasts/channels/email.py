"""
email.py — Email broadcast delivery channel.

Delivery mechanism:
    • Provider "smtp": multipart (plain + HTML) message over SMTP/STARTTLS
    • Provider "simulation": log, accept and emit a delivered receipt

Email is the slowest channel and is never relied on alone for
emergencies; it carries the full body with no length limit.

═══════════════════════════════════════════════════════════════════════════
EMAIL TEMPLATE STRUCTURE
═══════════════════════════════════════════════════════════════════════════

    Subject: 🚨 [PRIORITY] Emergency: {title}
    Body:
        ┌─────────────────────────────────────────┐
        │  {TYPE} — {priority}                     │
        ├─────────────────────────────────────────┤
        │  {title}                                 │
        │  {body}                                  │
        │                                          │
        │  [I'm Safe]           (if ack required)  │
        └─────────────────────────────────────────┘

SMTP errors classify as:
    SMTPRecipientsRefused               → Rejected
    other SMTPException, socket errors  → Unavailable
"""

from __future__ import annotations

import html
import logging
import smtplib
import uuid
from email.message import EmailMessage
from typing import Optional

from backend.app.broadcasts.channels.base import ChannelAdapter, DeliveryOutcome
from backend.app.broadcasts.models import (
    Broadcast,
    BroadcastPriority,
    DeliveryChannel,
    Recipient,
)

logger = logging.getLogger(__name__)

_PRIORITY_ICONS = {
    BroadcastPriority.LOW: "ℹ️",
    BroadcastPriority.MEDIUM: "⚠️",
    BroadcastPriority.HIGH: "🚨",
    BroadcastPriority.CRITICAL: "🆘",
}

_PRIORITY_COLOURS = {
    BroadcastPriority.LOW: "#4CAF50",
    BroadcastPriority.MEDIUM: "#FF9800",
    BroadcastPriority.HIGH: "#F44336",
    BroadcastPriority.CRITICAL: "#B71C1C",
}


def build_subject(broadcast: Broadcast) -> str:
    icon = _PRIORITY_ICONS.get(broadcast.priority, "⚠️")
    return (
        f"{icon} [{broadcast.priority.name}] "
        f"{broadcast.type.value.capitalize()}: {broadcast.title}"
    )


def build_html_body(broadcast: Broadcast) -> str:
    """Render a simple HTML email body."""
    colour = _PRIORITY_COLOURS.get(broadcast.priority, "#FF9800")
    ack_button = ""
    if broadcast.requires_acknowledgment:
        ack_button = f"""
        <div style="margin-top:16px;">
          <a href="/broadcasts/{broadcast.broadcast_id}/ack"
             style="background:{colour};color:white;padding:10px 20px;text-decoration:none;border-radius:4px;">
            I'm Safe
          </a>
        </div>"""

    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">
      <div style="background:{colour};color:white;padding:16px;border-radius:8px 8px 0 0;">
        <h2 style="margin:0;">{broadcast.type.value.upper()}</h2>
        <p style="margin:4px 0 0;">Priority: {broadcast.priority.name}</p>
      </div>
      <div style="border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;">
        <h3>{html.escape(broadcast.title)}</h3>
        <p>{html.escape(broadcast.body)}</p>
        <hr>
        <p><strong>Issued:</strong> {broadcast.created_at.strftime('%Y-%m-%d %H:%M UTC')}</p>{ack_button}
      </div>
    </div>
    """


def build_plain_body(broadcast: Broadcast) -> str:
    text = (
        f"{broadcast.type.value.upper()}\n"
        f"Priority: {broadcast.priority.name}\n\n"
        f"{broadcast.title}\n"
        f"{broadcast.body}\n\n"
        f"Issued: {broadcast.created_at.strftime('%Y-%m-%d %H:%M UTC')}\n"
    )
    if broadcast.requires_acknowledgment:
        text += "\nPlease confirm you are safe in the app or by replying SAFE.\n"
    return text


class EmailAdapter(ChannelAdapter):
    channel = DeliveryChannel.EMAIL

    def __init__(
        self,
        *,
        provider: str = "simulation",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        from_address: str = "broadcasts@tourist-safety.example",
        timeout_seconds: float = 20.0,
    ):
        super().__init__()
        if provider not in ("simulation", "smtp"):
            raise ValueError(f"Unknown email provider: {provider}")
        if provider == "smtp" and not smtp_host:
            raise ValueError("email provider 'smtp' needs SMTP_HOST")
        self.provider = provider
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._from_address = from_address
        self._timeout = timeout_seconds

    def build_message(self, recipient: Recipient, broadcast: Broadcast) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = build_subject(broadcast)
        message["From"] = self._from_address
        message["To"] = recipient.email
        message["X-Broadcast-Id"] = broadcast.broadcast_id
        message.set_content(build_plain_body(broadcast))
        message.add_alternative(build_html_body(broadcast), subtype="html")
        return message

    def send(self, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        if not recipient.email:
            return DeliveryOutcome.rejected("no email address on file")
        if "@" not in recipient.email:
            return DeliveryOutcome.rejected(f"invalid email address {recipient.email!r}")

        message = self.build_message(recipient, broadcast)

        if self.provider == "simulation":
            logger.info(
                "[EMAIL] Broadcast %s → %s (%s): %s",
                broadcast.broadcast_id, recipient.email, recipient.name,
                message["Subject"],
                extra={"broadcast_id": broadcast.broadcast_id, "channel": "email"},
            )
            self.emit_receipt(broadcast.broadcast_id, recipient.recipient_id)
            return DeliveryOutcome.accepted(f"sim-email-{uuid.uuid4().hex[:10]}")

        return self._send_smtp(message)

    def _send_smtp(self, message: EmailMessage) -> DeliveryOutcome:
        try:
            with smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=self._timeout) as smtp:
                smtp.starttls()
                smtp.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            return DeliveryOutcome.rejected(f"recipient refused: {exc.recipients}")
        except (smtplib.SMTPException, OSError) as exc:
            return DeliveryOutcome.unavailable(f"SMTP error: {exc}")
        return DeliveryOutcome.accepted(message.get("Message-ID"))

    def describe(self):
        info = super().describe()
        if self.provider == "smtp":
            info["smtp_host"] = self._smtp_host
        return info
