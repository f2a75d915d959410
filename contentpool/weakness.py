"""Weakness scoring pipeline fed by per-answer performance events."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .config import ScoringConfig
from .domain import Priority, Trend, WeaknessRecord
from .errors import TransientStorageError
from .metrics import METRICS, MetricsRegistry
from .models import PerformanceEvent, utcnow
from .repositories import WeaknessRepository


logger = logging.getLogger(__name__)

EventLike = Union[PerformanceEvent, Mapping[str, Any]]


def compute_scores(attempts: int, correct_attempts: int) -> Tuple[float, float]:
    """Return ``(success_rate, weakness_score)``, both on a 0-100 scale."""

    if attempts <= 0:
        return 0.0, 100.0
    success_rate = correct_attempts * 100.0 / attempts
    return success_rate, 100.0 - success_rate


def classify_priority(weakness_score: float, config: Optional[ScoringConfig] = None) -> Priority:
    config = config or ScoringConfig()
    if weakness_score >= config.priority_critical:
        return Priority.CRITICAL
    if weakness_score >= config.priority_high:
        return Priority.HIGH
    if weakness_score >= config.priority_medium:
        return Priority.MEDIUM
    return Priority.LOW


def classify_trend(success_rate: float, config: Optional[ScoringConfig] = None) -> Trend:
    config = config or ScoringConfig()
    if success_rate >= config.trend_improving:
        return Trend.IMPROVING
    if success_rate >= config.trend_stable_good:
        return Trend.STABLE_GOOD
    if success_rate >= config.trend_stable:
        return Trend.STABLE
    return Trend.DECLINING


class WeaknessAggregator:
    """Turns answer events into per-topic counters and derived priorities.

    Scoring is a side channel of answer submission: ``record`` and ``submit``
    never raise. Counter updates are single upserts in the store, so concurrent
    events for the same topic cannot lose increments.
    """

    def __init__(
        self,
        store: WeaknessRepository,
        config: Optional[ScoringConfig] = None,
        metrics: MetricsRegistry = METRICS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._config = config or ScoringConfig()
        self._metrics = metrics
        self._clock = clock

    @property
    def config(self) -> ScoringConfig:
        return self._config

    # region Ingestion
    def record(self, event: EventLike) -> bool:
        """Persist one event and bump its counters. Returns ``False`` when dropped."""

        try:
            parsed = event if isinstance(event, PerformanceEvent) else PerformanceEvent.model_validate(event)
        except (ValidationError, TypeError) as exc:
            logger.warning("Dropping malformed performance event: %s", exc)
            self._metrics.record_event_dropped("malformed")
            return False

        try:
            for attempt in self._config.storage_retry.retrying(TransientStorageError):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        self._metrics.record_storage_retry()
                    self._store.record_event(parsed, self._clock())
        except TransientStorageError as exc:
            logger.error(
                "Dropping performance event for user %s topic %s after retries: %s",
                parsed.user_id,
                parsed.topic,
                exc,
            )
            self._metrics.record_event_dropped("storage_unavailable")
            return False
        except Exception:
            logger.exception(
                "Dropping performance event for user %s topic %s", parsed.user_id, parsed.topic
            )
            self._metrics.record_event_dropped("storage_error")
            return False

        self._metrics.record_event()
        logger.debug(
            "Recorded %s answer for user %s on %s/%s/%s",
            "correct" if parsed.is_correct else "incorrect",
            parsed.user_id,
            parsed.test_type,
            parsed.section,
            parsed.topic,
        )
        return True

    async def submit(self, event: EventLike) -> bool:
        """Persist an event off the event loop; ``True`` means it is in the store.

        The history row and the counter upsert are committed before this returns.
        """

        return await asyncio.to_thread(self.record, event)

    def backfill(self, events: Iterable[EventLike]) -> int:
        """Record a historical batch through the same atomic path; returns recorded count."""

        recorded = sum(1 for event in events if self.record(event))
        logger.info("Backfilled %s performance events", recorded)
        return recorded

    # endregion

    # region Queries
    def _decorate(self, record: WeaknessRecord) -> WeaknessRecord:
        record.priority = classify_priority(record.weakness_score, self._config)
        trend_rate = record.success_rate
        if self._config.trend_mode == "recent":
            outcomes = self._store.recent_topic_outcomes(
                record.user_id,
                record.topic,
                record.section,
                record.test_type,
                self._config.trend_window,
            )
            if outcomes:
                trend_rate = sum(outcomes) * 100.0 / len(outcomes)
        record.trend = classify_trend(trend_rate, self._config)
        return record

    def get_records(
        self, user_id: str, test_type: Optional[str] = None, section: Optional[str] = None
    ) -> List[WeaknessRecord]:
        records = self._store.list_records(user_id, test_type=test_type, section=section)
        return [self._decorate(record) for record in records]

    def get_record(
        self, user_id: str, topic: str, section: str, test_type: str
    ) -> Optional[WeaknessRecord]:
        record = self._store.get_record(user_id, topic, section, test_type)
        return self._decorate(record) if record is not None else None

    def recent_accuracy(self, user_id: str, window: int) -> Tuple[Optional[float], int]:
        """Accuracy (0-1) over the user's last ``window`` answers and how many were found."""

        outcomes = self._store.recent_outcomes(user_id, window)
        if not outcomes:
            return None, 0
        return sum(outcomes) / len(outcomes), len(outcomes)

    # endregion


__all__ = [
    "WeaknessAggregator",
    "classify_priority",
    "classify_trend",
    "compute_scores",
]
