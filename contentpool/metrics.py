"""In-process counters for leases, generation and scoring."""
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class MetricsRegistry:
    """Lease, generation and ingestion counters served by the admin metrics route."""

    reservations_granted: int = 0
    reservation_misses: int = 0
    reservation_conflicts: int = 0
    finalizations: int = 0
    releases: int = 0
    stale_owner_rejections: int = 0
    leases_reclaimed: int = 0
    items_purged: int = 0
    generation_attempts: int = 0
    generation_successes: int = 0
    generation_failures: int = 0
    generation_failure_reasons: Counter = field(default_factory=Counter)
    generated_item_counts: List[int] = field(default_factory=list)
    candidates_inserted: int = 0
    duplicates_dropped: int = 0
    invalid_candidates: int = 0
    events_recorded: int = 0
    events_dropped: Counter = field(default_factory=Counter)
    storage_retries: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def _bump(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    # region Pool
    def record_reservation(self) -> None:
        self._bump("reservations_granted")

    def record_reservation_miss(self) -> None:
        self._bump("reservation_misses")

    def record_reservation_conflict(self) -> None:
        """A compare-and-set lost against a concurrent caller."""

        self._bump("reservation_conflicts")

    def record_finalization(self) -> None:
        self._bump("finalizations")

    def record_release(self) -> None:
        self._bump("releases")

    def record_stale_owner(self) -> None:
        self._bump("stale_owner_rejections")

    def record_reclaimed(self, count: int) -> None:
        self._bump("leases_reclaimed", count)

    def record_purged(self, count: int) -> None:
        self._bump("items_purged", count)

    # endregion

    # region Generation
    def record_generation_attempt(self) -> None:
        self._bump("generation_attempts")

    def record_generation_success(self, item_count: int) -> None:
        with self._lock:
            self.generation_successes += 1
            self.generated_item_counts.append(item_count)

    def record_generation_failure(self, reason: str) -> None:
        with self._lock:
            self.generation_failures += 1
            self.generation_failure_reasons[reason] += 1

    def record_candidates(self, inserted: int, duplicates: int, invalid: int) -> None:
        with self._lock:
            self.candidates_inserted += inserted
            self.duplicates_dropped += duplicates
            self.invalid_candidates += invalid

    # endregion

    # region Scoring
    def record_event(self) -> None:
        self._bump("events_recorded")

    def record_event_dropped(self, reason: str) -> None:
        with self._lock:
            self.events_dropped[reason] += 1

    def record_storage_retry(self) -> None:
        self._bump("storage_retries")

    # endregion

    @property
    def generation_success_rate(self) -> float:
        if self.generation_attempts == 0:
            return 0.0
        return self.generation_successes / self.generation_attempts

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "reservations_granted": self.reservations_granted,
                "reservation_misses": self.reservation_misses,
                "reservation_conflicts": self.reservation_conflicts,
                "finalizations": self.finalizations,
                "releases": self.releases,
                "stale_owner_rejections": self.stale_owner_rejections,
                "leases_reclaimed": self.leases_reclaimed,
                "items_purged": self.items_purged,
                "generation_attempts": self.generation_attempts,
                "generation_successes": self.generation_successes,
                "generation_failures": self.generation_failures,
                "generation_failure_reasons": dict(self.generation_failure_reasons),
                "candidates_inserted": self.candidates_inserted,
                "duplicates_dropped": self.duplicates_dropped,
                "invalid_candidates": self.invalid_candidates,
                "events_recorded": self.events_recorded,
                "events_dropped": dict(self.events_dropped),
                "storage_retries": self.storage_retries,
                "generation_success_rate": self.generation_success_rate,
            }


METRICS = MetricsRegistry()

__all__ = ["METRICS", "MetricsRegistry"]
