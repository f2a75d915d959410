"""Pool, scoring and replenishment types shared across the coordinator."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .models import ContentPayload


class ItemState(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    USED = "used"


LEGAL_TRANSITIONS: Dict[ItemState, FrozenSet[ItemState]] = {
    ItemState.AVAILABLE: frozenset({ItemState.RESERVED}),
    ItemState.RESERVED: frozenset({ItemState.USED, ItemState.AVAILABLE}),
    ItemState.USED: frozenset(),
}


def is_legal_transition(current: ItemState, target: ItemState) -> bool:
    return target in LEGAL_TRANSITIONS[current]


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank means more urgent."""

        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.CRITICAL: 0, Priority.HIGH: 1, Priority.MEDIUM: 2, Priority.LOW: 3}


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE_GOOD = "stable_good"
    STABLE = "stable"
    DECLINING = "declining"


class StudentLevel(str, Enum):
    STRUGGLING = "struggling"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class PracticeContext(str, Enum):
    INITIAL_ASSESSMENT = "initial_assessment"
    WEAKNESS_TARGETING = "weakness_targeting"
    STRENGTH_BUILDING = "strength_building"
    DAILY_PRACTICE = "daily_practice"


@dataclass(frozen=True)
class CategoryKey:
    """Dimensions a pooled item is filed under."""

    test_type: str
    section: str
    difficulty: str
    track: str = "general"

    def as_tuple(self) -> Tuple[str, str, str, str]:
        return (self.test_type, self.section, self.difficulty, self.track)

    @property
    def label(self) -> str:
        return "/".join(self.as_tuple())

    @classmethod
    def from_label(cls, label: str) -> "CategoryKey":
        parts = label.split("/")
        if len(parts) not in (3, 4) or not all(parts):
            raise ValueError(f"Invalid category label: {label!r}")
        return cls(*parts)


@dataclass
class ContentItem:
    """A generated item living in the shared pool."""

    id: str
    key: CategoryKey
    payload: ContentPayload
    content_hash: str
    state: ItemState = ItemState.AVAILABLE
    reserved_by: Optional[str] = None
    lease_token: Optional[str] = None
    reserved_at: Optional[datetime] = None
    lease_expiry: Optional[datetime] = None
    created_at: Optional[datetime] = None
    used_at: Optional[datetime] = None

    @property
    def topic(self) -> str:
        return self.payload.topic

    def satisfies_lease_invariant(self) -> bool:
        if self.state is not ItemState.RESERVED:
            return True
        return (
            self.reserved_by is not None
            and self.lease_token is not None
            and self.reserved_at is not None
            and self.lease_expiry is not None
            and self.lease_expiry > self.reserved_at
        )


@dataclass(frozen=True)
class NotAvailable:
    """Returned by a reservation attempt that found nothing to lease."""

    retry_after_seconds: float
    reason: str = "pool_empty"


@dataclass(frozen=True)
class DeliveryRecord:
    user_id: str
    content_hash: str
    delivered_at: datetime


@dataclass
class KeyStats:
    available: int = 0
    reserved: int = 0
    used: int = 0


@dataclass
class WeaknessRecord:
    """Per-(user, topic, section, test type) counters with their derived scores.

    ``priority`` and ``trend`` are filled in by the aggregator from the configured
    bands; the rates are always derived from the counters.
    """

    user_id: str
    topic: str
    section: str
    test_type: str
    attempts: int
    correct_attempts: int
    total_time_seconds: float
    last_updated: datetime
    priority: Priority = Priority.LOW
    trend: Trend = Trend.STABLE

    @property
    def success_rate(self) -> float:
        if self.attempts <= 0:
            return 0.0
        return self.correct_attempts * 100.0 / self.attempts

    @property
    def weakness_score(self) -> float:
        return 100.0 - self.success_rate

    @property
    def avg_time_seconds(self) -> Optional[float]:
        if self.attempts <= 0:
            return None
        return self.total_time_seconds / self.attempts


@dataclass
class PersonalizationContext:
    """Ephemeral sampling plan for one request window."""

    user_id: str
    level: StudentLevel
    overall_success_rate: float
    total_attempts: int
    sample_temperature: float
    practice_context: PracticeContext = PracticeContext.DAILY_PRACTICE
    target_topics: List[WeaknessRecord] = field(default_factory=list)

    @property
    def target_topic_names(self) -> List[str]:
        return [record.topic for record in self.target_topics]


class ReplenishmentStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    SKIPPED = "skipped"
    THROTTLED = "throttled"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"


@dataclass
class ReplenishmentResult:
    key: CategoryKey
    status: ReplenishmentStatus
    requested: int = 0
    generated: int = 0
    inserted: int = 0
    duplicates: int = 0
    invalid: int = 0
    error: Optional[str] = None
    retry_after_seconds: Optional[float] = None


__all__ = [
    "CategoryKey",
    "ContentItem",
    "DeliveryRecord",
    "ItemState",
    "KeyStats",
    "LEGAL_TRANSITIONS",
    "NotAvailable",
    "PersonalizationContext",
    "Priority",
    "ReplenishmentResult",
    "ReplenishmentStatus",
    "StudentLevel",
    "PracticeContext",
    "Trend",
    "WeaknessRecord",
    "is_legal_transition",
]
