"""
base.py — Channel adapter contract and shared HTTP gateway handling.

═══════════════════════════════════════════════════════════════════════════
OUTCOME CLASSIFICATION
═══════════════════════════════════════════════════════════════════════════

    Outcome        Meaning                              Dispatcher action
    ───────────    ─────────────────────────────────    ────────────────────
    Accepted       provider took the message            record → sent
    Rejected       permanent refusal (bad address)      record → failed
    Unavailable    transient (timeout, 5xx, throttled)  retry with backoff

HTTP gateways map onto these as:

    2xx              → Accepted   (provider message id read from JSON body)
    429, 5xx         → Unavailable
    other 4xx        → Rejected
    timeout / network error → Unavailable

═══════════════════════════════════════════════════════════════════════════
DELIVERY RECEIPTS
═══════════════════════════════════════════════════════════════════════════

Providers confirm delivery asynchronously. An adapter reports receipts
through the ReceiptSink bound by the service at wiring time; simulated
providers emit a `delivered` receipt as soon as they accept a message.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from backend.app.broadcasts.models import (
    AttemptState,
    Broadcast,
    DeliveryChannel,
    Recipient,
)

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    ACCEPTED    = "accepted"
    REJECTED    = "rejected"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one adapter call."""
    kind: OutcomeKind
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None

    @classmethod
    def accepted(cls, provider_message_id: Optional[str] = None) -> "DeliveryOutcome":
        return cls(OutcomeKind.ACCEPTED, provider_message_id=provider_message_id)

    @classmethod
    def rejected(cls, reason: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.REJECTED, reason=reason)

    @classmethod
    def unavailable(cls, reason: str = "provider unavailable") -> "DeliveryOutcome":
        return cls(OutcomeKind.UNAVAILABLE, reason=reason)

    @property
    def is_accepted(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED

    @property
    def is_rejected(self) -> bool:
        return self.kind is OutcomeKind.REJECTED


# (broadcast_id, recipient_id, channel, new_state, provider_timestamp)
ReceiptSink = Callable[[str, str, DeliveryChannel, AttemptState, Optional[datetime]], Any]


class ChannelAdapter(ABC):
    """One delivery channel. Implementations must be safe to call from many threads."""

    channel: DeliveryChannel
    provider: str = "simulation"

    def __init__(self) -> None:
        self._receipt_sink: Optional[ReceiptSink] = None

    def bind_receipts(self, sink: Optional[ReceiptSink]) -> None:
        self._receipt_sink = sink

    def emit_receipt(
        self,
        broadcast_id: str,
        recipient_id: str,
        state: AttemptState = AttemptState.DELIVERED,
        provider_timestamp: Optional[datetime] = None,
    ) -> None:
        """Forward a provider receipt to the tracker, if one is bound."""
        if self._receipt_sink is None:
            return
        self._receipt_sink(
            broadcast_id, recipient_id, self.channel, state,
            provider_timestamp or datetime.now(timezone.utc),
        )

    @abstractmethod
    def send(self, recipient: Recipient, broadcast: Broadcast) -> DeliveryOutcome:
        """Hand one message to the provider."""

    def describe(self) -> Dict[str, Any]:
        return {"channel": self.channel.value, "provider": self.provider}

    def close(self) -> None:
        """Release provider connections."""


class HttpGatewayAdapter(ChannelAdapter):
    """
    Adapter that posts JSON to an HTTP gateway when provider == "http".

    Subclasses build the payload; this class owns the client and maps
    responses onto DeliveryOutcome.
    """

    def __init__(
        self,
        *,
        provider: str = "simulation",
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__()
        if provider not in ("simulation", "http"):
            raise ValueError(f"Unknown {self.channel.value} provider: {provider}")
        if provider == "http" and not gateway_url:
            raise ValueError(f"{self.channel.value} provider 'http' needs a gateway URL")
        self.provider = provider
        self._gateway_url = gateway_url
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._client_lock = threading.Lock()

    def _http_client(self) -> httpx.Client:
        # Channel pool threads share one client
        with self._client_lock:
            if self._client is None:
                headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
                self._client = httpx.Client(timeout=self._timeout, headers=headers)
            return self._client

    def post_to_gateway(self, payload: Dict[str, Any]) -> DeliveryOutcome:
        try:
            response = self._http_client().post(self._gateway_url, json=payload)
        except httpx.TimeoutException:
            return DeliveryOutcome.unavailable("gateway timeout")
        except httpx.TransportError as exc:
            return DeliveryOutcome.unavailable(f"gateway unreachable: {exc}")

        status = response.status_code
        if 200 <= status < 300:
            message_id = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    message_id = body.get("message_id") or body.get("id")
            except ValueError:
                pass
            return DeliveryOutcome.accepted(message_id)
        if status == 429 or status >= 500:
            return DeliveryOutcome.unavailable(f"gateway returned HTTP {status}")
        return DeliveryOutcome.rejected(f"gateway returned HTTP {status}: {response.text[:200]}")

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        if self.provider == "http":
            info["gateway_url"] = self._gateway_url
        return info

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and self._owns_client:
                self._client.close()
                self._client = None
