"""Repository interfaces for the shared pool and the weakness store."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .domain import CategoryKey, ContentItem, DeliveryRecord, KeyStats, WeaknessRecord
from .models import ContentPayload, PerformanceEvent


class ContentPoolRepository(ABC):
    """Persist pooled items and apply their state transitions atomically.

    Every ``compare_and_*`` method is a single conditional update; it returns
    ``True`` only when this call performed the transition.
    """

    @abstractmethod
    def insert_items(
        self, key: CategoryKey, entries: Iterable[Tuple[ContentPayload, str]], now: datetime
    ) -> int:
        """Insert ``(payload, content_hash)`` pairs as available, skipping known hashes."""

    @abstractmethod
    def get_item(self, item_id: str) -> ContentItem:
        """Return the item or raise ``UnknownItemError``."""

    @abstractmethod
    def candidate_ids(
        self,
        key: CategoryKey,
        limit: int,
        preferred_topics: Sequence[str] = (),
        exclude_delivered_to: Optional[str] = None,
        delivered_since: Optional[datetime] = None,
    ) -> List[str]:
        """Return available item ids for the key, preferred topics first."""

    @abstractmethod
    def compare_and_reserve(
        self,
        item_id: str,
        owner: str,
        lease_token: str,
        reserved_at: datetime,
        lease_expiry: datetime,
    ) -> bool:
        """available -> reserved under a fresh ``lease_token``."""

    @abstractmethod
    def compare_and_finalize(
        self, item_id: str, owner: str, lease_token: str, now: datetime
    ) -> bool:
        """reserved -> used when ``owner`` holds the lease ``lease_token``; records the delivery."""

    @abstractmethod
    def compare_and_release(self, item_id: str, owner: str, lease_token: str) -> bool:
        """reserved -> available when ``owner`` holds the lease ``lease_token``."""

    @abstractmethod
    def reclaim_expired(self, now: datetime) -> int:
        """reserved -> available for every lease that expired before ``now``."""

    @abstractmethod
    def count_available(self, key: CategoryKey) -> int:
        """Number of available items filed under the key."""

    @abstractmethod
    def hash_exists(self, key: CategoryKey, content_hash: str) -> bool:
        """Whether any item under the key, in any state, carries the hash."""

    @abstractmethod
    def stats(self) -> Dict[CategoryKey, KeyStats]:
        """Per-key counts of items by state."""

    @abstractmethod
    def purge_used(self, used_before: datetime) -> int:
        """Delete used items consumed before the cutoff."""


class DeliveryLedgerRepository(ABC):
    """Anti-repeat ledger of items delivered to users."""

    @abstractmethod
    def was_delivered(self, user_id: str, content_hash: str, since: datetime) -> bool:
        """Whether the user received the hash at or after ``since``."""

    @abstractmethod
    def delivered_recently(self, content_hash: str, since: datetime) -> bool:
        """Whether anyone received the hash at or after ``since``."""

    @abstractmethod
    def deliveries_for(self, user_id: str, since: datetime) -> List[DeliveryRecord]:
        """The user's deliveries at or after ``since``, newest first."""

    @abstractmethod
    def purge_deliveries(self, delivered_before: datetime) -> int:
        """Forget deliveries older than the cutoff."""


class WeaknessRepository(ABC):
    """Durable performance history and per-topic weakness counters."""

    @abstractmethod
    def record_event(self, event: PerformanceEvent, recorded_at: datetime) -> None:
        """Append the event to history and atomically bump the matching counters."""

    @abstractmethod
    def list_records(
        self, user_id: str, test_type: Optional[str] = None, section: Optional[str] = None
    ) -> List[WeaknessRecord]:
        """Return the user's counters, optionally narrowed by test type and section."""

    @abstractmethod
    def get_record(
        self, user_id: str, topic: str, section: str, test_type: str
    ) -> Optional[WeaknessRecord]:
        """Return a single record, if present."""

    @abstractmethod
    def recent_outcomes(self, user_id: str, limit: int) -> List[bool]:
        """Most recent answer outcomes for the user, newest first."""

    @abstractmethod
    def recent_topic_outcomes(
        self, user_id: str, topic: str, section: str, test_type: str, limit: int
    ) -> List[bool]:
        """Most recent outcomes for one topic, newest first."""


__all__ = [
    "ContentPoolRepository",
    "DeliveryLedgerRepository",
    "WeaknessRepository",
]
