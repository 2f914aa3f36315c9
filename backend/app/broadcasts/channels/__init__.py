"""
channels — Per-channel delivery adapters.

Each adapter exposes:
    send(recipient, broadcast) → DeliveryOutcome   (Accepted | Rejected | Unavailable)

Adapters hold no broadcast state. Retry and backoff live in the
dispatcher; delivery receipts flow back through the tracker.
"""

from backend.app.broadcasts.channels.base import (
    ChannelAdapter,
    DeliveryOutcome,
    OutcomeKind,
    ReceiptSink,
)
from backend.app.broadcasts.channels.email import EmailAdapter
from backend.app.broadcasts.channels.in_app import InAppAdapter, InAppInbox, InboxItem
from backend.app.broadcasts.channels.push import PushAdapter
from backend.app.broadcasts.channels.sms import SmsAdapter

__all__ = [
    "ChannelAdapter",
    "DeliveryOutcome",
    "OutcomeKind",
    "ReceiptSink",
    "EmailAdapter",
    "InAppAdapter",
    "InAppInbox",
    "InboxItem",
    "PushAdapter",
    "SmsAdapter",
]
