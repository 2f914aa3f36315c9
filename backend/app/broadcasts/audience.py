"""
audience.py — Audience resolution: AudienceSpec → concrete RecipientSet.

Resolution is evaluated against the directory *as of* the moment it runs.
Only ExplicitRecipients is frozen at authoring time; the other variants
re-evaluate membership (and, for LocationBased, positions) every time.

═══════════════════════════════════════════════════════════════════════════
RESOLUTION STRATEGIES
═══════════════════════════════════════════════════════════════════════════

    Variant               Membership rule
    ────────────────────  ───────────────────────────────────────────────
    AllTourists           active recipients with the tourist role
    ExplicitRecipients    the listed ids; unknown / inactive ids skipped
    LocationBased         active recipients whose last-known position is
                          within radius (boundary inclusive); recipients
                          with no known position are excluded
    RoleBased             active recipients holding any listed role;
                          roles unknown to the directory are skipped

Skips never abort resolution — each one is counted on the RecipientSet
and recorded as a ResolutionError so operators can see why the target
count is smaller than expected.

Location matching uses the same two-step approach as the spatial module:

    Step 1 — Bounding box rejects distant recipients with float compares
    Step 2 — Haversine runs only on the candidates left inside the box

═══════════════════════════════════════════════════════════════════════════
PER-BROADCAST FILTERING
═══════════════════════════════════════════════════════════════════════════

resolve_for_broadcast() narrows a resolved audience to what one broadcast
will actually use:

    • channels = broadcast.channels ∩ recipient.channel_opt_in
    • recipients below their minimum_priority preference are dropped
      (EMERGENCY broadcasts ignore that preference)
    • push and SMS are held back while a recipient is inside their quiet
      hours, evaluated at resolution time (EMERGENCY broadcasts ignore it)
    • recipients left with no channel are dropped
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from backend.app.broadcasts.models import (
    AllTourists,
    AudienceSpec,
    Broadcast,
    BroadcastType,
    ExplicitRecipients,
    INTRUSIVE_CHANNELS,
    LocationBased,
    Recipient,
    RecipientSet,
    ResolvedRecipient,
    RoleBased,
    ordered_channels,
)
from backend.app.core.errors import NotFoundError, ResolutionError
from backend.app.spatial.radius_utils import (
    Coordinate,
    bounding_box,
    is_within_radius,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Recipient Directory
# ═══════════════════════════════════════════════════════════════════════════

class RecipientDirectory(ABC):
    """Source of truth for who exists, their roles and last-known positions."""

    @abstractmethod
    def get(self, recipient_id: str) -> Optional[Recipient]:
        ...

    @abstractmethod
    def all(self) -> List[Recipient]:
        ...

    @abstractmethod
    def known_roles(self) -> Set[str]:
        ...

    @abstractmethod
    def upsert(self, recipient: Recipient) -> Recipient:
        ...

    @abstractmethod
    def update_position(self, recipient_id: str, position: Optional[Coordinate]) -> Recipient:
        ...

    def tourists(self) -> List[Recipient]:
        return [r for r in self.all() if r.active and r.is_tourist]

    def with_any_role(self, roles: Iterable[str]) -> List[Recipient]:
        wanted = set(roles)
        return [r for r in self.all() if r.active and r.roles & wanted]


class InMemoryRecipientDirectory(RecipientDirectory):
    """
    Thread-safe in-memory directory.

    Roles registered through `define_role` stay known even when nobody
    currently holds them; a role is "unknown" only if it was never
    defined and nobody holds it.
    """

    def __init__(self, recipients: Iterable[Recipient] = ()):
        self._recipients: Dict[str, Recipient] = {}
        self._defined_roles: Set[str] = set()
        self._lock = threading.Lock()
        for recipient in recipients:
            self.upsert(recipient)

    def upsert(self, recipient: Recipient) -> Recipient:
        with self._lock:
            self._recipients[recipient.recipient_id] = recipient
        return recipient

    def remove(self, recipient_id: str) -> None:
        with self._lock:
            self._recipients.pop(recipient_id, None)

    def update_position(self, recipient_id: str, position: Optional[Coordinate]) -> Recipient:
        with self._lock:
            current = self._recipients.get(recipient_id)
            if current is None:
                raise NotFoundError("Recipient", recipient_id=recipient_id)
            updated = replace(current, position=position)
            self._recipients[recipient_id] = updated
        return updated

    def define_role(self, role: str) -> None:
        with self._lock:
            self._defined_roles.add(role)

    def get(self, recipient_id: str) -> Optional[Recipient]:
        return self._recipients.get(recipient_id)

    def all(self) -> List[Recipient]:
        with self._lock:
            return list(self._recipients.values())

    def known_roles(self) -> Set[str]:
        with self._lock:
            roles = set(self._defined_roles)
            for recipient in self._recipients.values():
                roles.update(recipient.roles)
        return roles


# ═══════════════════════════════════════════════════════════════════════════
# Audience Resolver
# ═══════════════════════════════════════════════════════════════════════════

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AudienceResolver:
    """Turns an AudienceSpec into a concrete, deduplicated RecipientSet."""

    def __init__(self, directory: RecipientDirectory):
        self._directory = directory
        self._strategies: Dict[type, Callable[[AudienceSpec, RecipientSet], List[Recipient]]] = {
            AllTourists: self._resolve_all_tourists,
            ExplicitRecipients: self._resolve_explicit,
            LocationBased: self._resolve_location,
            RoleBased: self._resolve_roles,
        }

    @property
    def directory(self) -> RecipientDirectory:
        return self._directory

    def resolve(self, spec: AudienceSpec, as_of: Optional[datetime] = None) -> RecipientSet:
        """
        Resolve `spec` against the directory as it stands now.

        Every matched recipient is returned with all channels; use
        resolve_for_broadcast() to apply channel and priority preferences.
        """
        strategy = self._strategies.get(type(spec))
        if strategy is None:
            raise TypeError(f"Unsupported audience spec: {type(spec).__name__}")

        result = RecipientSet(as_of=as_of or _utcnow())
        seen: Set[str] = set()
        for recipient in strategy(spec, result):
            if recipient.recipient_id in seen:
                continue
            seen.add(recipient.recipient_id)
            result.recipients.append(
                ResolvedRecipient(recipient, tuple(ordered_channels(recipient.channel_opt_in)))
            )

        if result.errors:
            logger.warning(
                "Audience %s resolved with %d skipped: %s",
                spec.describe(), result.skipped,
                "; ".join(e.message for e in result.errors[:5]),
            )
        logger.debug("Audience %s → %d recipients", spec.describe(), result.count)
        return result

    def resolve_for_broadcast(
        self, broadcast: Broadcast, as_of: Optional[datetime] = None,
    ) -> RecipientSet:
        """Resolve a broadcast's audience and apply per-recipient preferences."""
        resolved = self.resolve(broadcast.audience, as_of)
        emergency = broadcast.type is BroadcastType.EMERGENCY

        kept: List[ResolvedRecipient] = []
        for entry in resolved.recipients:
            recipient = entry.recipient
            if not emergency and broadcast.priority < recipient.minimum_priority:
                resolved.excluded_by_preference += 1
                continue
            channels = tuple(c for c in ordered_channels(broadcast.channels)
                             if recipient.accepts_channel(c))
            if not emergency and recipient.is_quiet_at(resolved.as_of):
                channels = tuple(c for c in channels if c not in INTRUSIVE_CHANNELS)
            if not channels:
                resolved.excluded_by_preference += 1
                continue
            kept.append(ResolvedRecipient(recipient, channels))

        resolved.recipients = kept
        return resolved

    # ── Strategies ──

    def _resolve_all_tourists(self, spec: AllTourists, result: RecipientSet) -> List[Recipient]:
        return self._directory.tourists()

    def _resolve_explicit(self, spec: ExplicitRecipients, result: RecipientSet) -> List[Recipient]:
        found: List[Recipient] = []
        for recipient_id in sorted(spec.ids):
            recipient = self._directory.get(recipient_id)
            if recipient is None or not recipient.active:
                result.skipped += 1
                result.errors.append(ResolutionError(
                    f"Recipient {recipient_id} no longer exists",
                    kind="recipient", reference=recipient_id,
                ))
                continue
            found.append(recipient)
        return found

    def _resolve_location(self, spec: LocationBased, result: RecipientSet) -> List[Recipient]:
        bbox = bounding_box(spec.center, spec.radius_meters)
        found: List[Recipient] = []
        for recipient in self._directory.all():
            if not recipient.active or recipient.position is None:
                continue
            if is_within_radius(spec.center, recipient.position, spec.radius_meters, bbox):
                found.append(recipient)
        return found

    def _resolve_roles(self, spec: RoleBased, result: RecipientSet) -> List[Recipient]:
        known = self._directory.known_roles()
        live_roles = set()
        for role in sorted(spec.roles):
            if role not in known:
                result.skipped += 1
                result.errors.append(ResolutionError(
                    f"Role '{role}' no longer exists",
                    kind="role", reference=role,
                ))
                continue
            live_roles.add(role)
        if not live_roles:
            return []
        return self._directory.with_any_role(live_roles)
