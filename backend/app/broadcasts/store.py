"""
store.py — Persistence contract for broadcasts and delivery records.

Every mutation is an optimistic check-and-set on the entity's `version`:

    current = store.get_broadcast(bid)             # version = 7
    updated = replace(current, status=SENDING)
    stored  = store.compare_and_set_broadcast(updated)
        → Broadcast(version=8)   if nobody wrote in between
        → None                   if the stored version is no longer 7

Callers re-read and retry on None. Writes to unrelated records never
contend; the in-memory implementation stripes its short critical
sections across a fixed pool of locks keyed by entity id.

Delivery records are append-only: a (broadcast, recipient, channel) key
is inserted exactly once and never removed.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from backend.app.broadcasts.models import (
    Broadcast,
    BroadcastStatus,
    DeliveryRecord,
    RecordKey,
)

logger = logging.getLogger(__name__)


class BroadcastStore(ABC):
    """Storage contract shared by the in-memory and SQL backends."""

    backend_name: str = "abstract"

    # ── Broadcasts ──

    @abstractmethod
    def insert_broadcast(self, broadcast: Broadcast) -> Broadcast:
        """Insert a new broadcast. Raises ValueError on a duplicate id."""

    @abstractmethod
    def get_broadcast(self, broadcast_id: str) -> Optional[Broadcast]:
        ...

    @abstractmethod
    def list_broadcasts(
        self, statuses: Optional[Iterable[BroadcastStatus]] = None,
    ) -> List[Broadcast]:
        ...

    @abstractmethod
    def compare_and_set_broadcast(self, updated: Broadcast) -> Optional[Broadcast]:
        """
        Store `updated` if the stored version still equals `updated.version`.

        Returns the stored copy (version bumped) or None on conflict.
        """

    # ── Delivery records ──

    @abstractmethod
    def add_delivery_record(self, record: DeliveryRecord) -> bool:
        """Append a record. Returns False if its key already exists."""

    @abstractmethod
    def get_delivery_record(self, key: RecordKey) -> Optional[DeliveryRecord]:
        ...

    @abstractmethod
    def delivery_records(self, broadcast_id: str) -> List[DeliveryRecord]:
        ...

    @abstractmethod
    def compare_and_set_delivery_record(
        self, updated: DeliveryRecord,
    ) -> Optional[DeliveryRecord]:
        ...

    def ping(self) -> bool:
        """Cheap liveness probe for health checks."""
        return True

    def close(self) -> None:
        """Release backend resources."""


class InMemoryBroadcastStore(BroadcastStore):
    """
    Thread-safe in-memory store.

    Values are frozen dataclasses, so handing out references never lets a
    caller mutate stored state; `replace()` is still used on the way in so
    the version bump never aliases the caller's object.
    """

    backend_name = "memory"
    _STRIPES = 64

    def __init__(self) -> None:
        self._broadcasts: Dict[str, Broadcast] = {}
        self._records: Dict[str, Dict[RecordKey, DeliveryRecord]] = {}
        self._locks = [threading.Lock() for _ in range(self._STRIPES)]

    def _lock_for(self, key: object) -> threading.Lock:
        return self._locks[hash(key) % self._STRIPES]

    # ── Broadcasts ──

    def insert_broadcast(self, broadcast: Broadcast) -> Broadcast:
        with self._lock_for(broadcast.broadcast_id):
            if broadcast.broadcast_id in self._broadcasts:
                raise ValueError(f"Broadcast {broadcast.broadcast_id} already exists")
            stored = replace(broadcast, version=1)
            self._broadcasts[broadcast.broadcast_id] = stored
            self._records.setdefault(broadcast.broadcast_id, {})
        return stored

    def get_broadcast(self, broadcast_id: str) -> Optional[Broadcast]:
        return self._broadcasts.get(broadcast_id)

    def list_broadcasts(
        self, statuses: Optional[Iterable[BroadcastStatus]] = None,
    ) -> List[Broadcast]:
        snapshot = list(self._broadcasts.values())
        if statuses is None:
            return snapshot
        wanted = set(statuses)
        return [b for b in snapshot if b.status in wanted]

    def compare_and_set_broadcast(self, updated: Broadcast) -> Optional[Broadcast]:
        with self._lock_for(updated.broadcast_id):
            current = self._broadcasts.get(updated.broadcast_id)
            if current is None or current.version != updated.version:
                return None
            stored = replace(updated, version=updated.version + 1)
            self._broadcasts[updated.broadcast_id] = stored
        return stored

    # ── Delivery records ──

    def add_delivery_record(self, record: DeliveryRecord) -> bool:
        with self._lock_for(record.key):
            by_key = self._records.setdefault(record.broadcast_id, {})
            if record.key in by_key:
                return False
            by_key[record.key] = replace(record, version=1)
        return True

    def get_delivery_record(self, key: RecordKey) -> Optional[DeliveryRecord]:
        return self._records.get(key[0], {}).get(key)

    def delivery_records(self, broadcast_id: str) -> List[DeliveryRecord]:
        return list(self._records.get(broadcast_id, {}).values())

    def compare_and_set_delivery_record(
        self, updated: DeliveryRecord,
    ) -> Optional[DeliveryRecord]:
        with self._lock_for(updated.key):
            by_key = self._records.get(updated.broadcast_id, {})
            current = by_key.get(updated.key)
            if current is None or current.version != updated.version:
                return None
            stored = replace(updated, version=updated.version + 1)
            by_key[updated.key] = stored
        return stored
