"""Tests for the weakness scoring pipeline."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from contentpool.config import ScoringConfig
from contentpool.domain import Priority, Trend
from contentpool.errors import TransientStorageError
from contentpool.models import PerformanceEvent
from contentpool.retry import BackoffPolicy
from contentpool.storage import SqliteWeaknessStore
from contentpool.weakness import (
    WeaknessAggregator,
    classify_priority,
    classify_trend,
    compute_scores,
)

from conftest import NO_WAIT

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _event(is_correct: bool, topic: str = "Algebra", minute: int = 0, user_id: str = "user-1") -> PerformanceEvent:
    return PerformanceEvent(
        user_id=user_id,
        topic=topic,
        section="math",
        test_type="SAT",
        is_correct=is_correct,
        time_spent_seconds=30.0,
        timestamp=START + timedelta(minutes=minute),
    )


class FlakyStore:
    """Wraps a store and fails ``record_event`` a fixed number of times."""

    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.calls = 0

    def record_event(self, event, recorded_at) -> None:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientStorageError("database is locked")
        self.inner.record_event(event, recorded_at)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestScoring:
    def test_compute_scores(self) -> None:
        assert compute_scores(4, 3) == (75.0, 25.0)
        assert compute_scores(0, 0) == (0.0, 100.0)

    @pytest.mark.parametrize(
        "score, expected",
        [
            (70.0, Priority.CRITICAL),
            (69.9, Priority.HIGH),
            (50.0, Priority.HIGH),
            (30.0, Priority.MEDIUM),
            (29.9, Priority.LOW),
        ],
    )
    def test_priority_bands(self, score, expected) -> None:
        assert classify_priority(score) is expected

    @pytest.mark.parametrize(
        "rate, expected",
        [
            (80.0, Trend.IMPROVING),
            (60.0, Trend.STABLE_GOOD),
            (40.0, Trend.STABLE),
            (39.9, Trend.DECLINING),
        ],
    )
    def test_trend_bands(self, rate, expected) -> None:
        assert classify_trend(rate) is expected

    def test_bands_are_configurable(self) -> None:
        config = ScoringConfig(priority_critical=90.0, priority_high=80.0, priority_medium=60.0)
        assert classify_priority(60.0, config) is Priority.MEDIUM

    def test_invalid_trend_mode(self) -> None:
        with pytest.raises(ValueError):
            ScoringConfig(trend_mode="weekly")


class TestRecord:
    def test_mostly_correct_topic_is_low_priority(self, aggregator) -> None:
        for minute, outcome in enumerate([True, True, False, True]):
            assert aggregator.record(_event(outcome, topic="T", minute=minute))

        record = aggregator.get_record("user-1", "T", "math", "SAT")

        assert record.attempts == 4
        assert record.correct_attempts == 3
        assert record.success_rate == 75.0
        assert record.weakness_score == 25.0
        assert record.priority is Priority.LOW
        assert record.avg_time_seconds == 30.0
        assert record.last_updated == START + timedelta(minutes=3)

    def test_forty_percent_topic_under_configured_bands(self, aggregator) -> None:
        outcomes = [True] * 8 + [False] * 12
        for minute, outcome in enumerate(outcomes):
            aggregator.record(_event(outcome, minute=minute))

        record = aggregator.get_record("user-1", "Algebra", "math", "SAT")

        assert record.attempts == 20
        assert record.success_rate == 40.0
        assert record.weakness_score == 60.0
        assert record.priority is Priority.HIGH
        assert record.trend is Trend.STABLE

    def test_recent_trend_mode_uses_latest_window(self, weakness_store, metrics) -> None:
        config = ScoringConfig(trend_mode="recent", trend_window=10, storage_retry=NO_WAIT)
        aggregator = WeaknessAggregator(weakness_store, config, metrics)
        outcomes = [True] * 8 + [False] * 12
        for minute, outcome in enumerate(outcomes):
            aggregator.record(_event(outcome, minute=minute))

        record = aggregator.get_record("user-1", "Algebra", "math", "SAT")

        assert record.success_rate == 40.0
        assert record.trend is Trend.DECLINING

    def test_concurrent_events_do_not_lose_increments(self, aggregator) -> None:
        def submit(worker: int) -> None:
            for n in range(25):
                aggregator.record(_event(n % 2 == 0, minute=worker * 100 + n))

        threads = [threading.Thread(target=submit, args=(worker,)) for worker in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = aggregator.get_record("user-1", "Algebra", "math", "SAT")
        assert record.attempts == 200
        assert record.correct_attempts == 8 * 13

    def test_malformed_event_is_dropped(self, aggregator, metrics) -> None:
        assert aggregator.record({"user_id": "user-1", "topic": ""}) is False
        assert aggregator.record({"user_id": " ", "topic": "x", "section": "s", "test_type": "t", "is_correct": True}) is False
        assert metrics.events_dropped["malformed"] == 2
        assert aggregator.get_records("user-1") == []

    def test_transient_storage_errors_are_retried(self, weakness_store, metrics) -> None:
        store = FlakyStore(weakness_store, failures=2)
        aggregator = WeaknessAggregator(store, ScoringConfig(storage_retry=NO_WAIT), metrics)

        assert aggregator.record(_event(True)) is True
        assert store.calls == 3
        assert metrics.storage_retries == 2
        assert aggregator.get_record("user-1", "Algebra", "math", "SAT").attempts == 1

    def test_exhausted_retries_drop_without_raising(self, weakness_store, metrics) -> None:
        store = FlakyStore(weakness_store, failures=5)
        policy = BackoffPolicy(max_attempts=2, initial_delay=0.0, max_delay=0.0)
        aggregator = WeaknessAggregator(store, ScoringConfig(storage_retry=policy), metrics)

        assert aggregator.record(_event(True)) is False
        assert store.calls == 2
        assert metrics.events_dropped["storage_unavailable"] == 1

    def test_records_are_filtered_by_section(self, aggregator) -> None:
        aggregator.record(_event(True))
        aggregator.record(
            PerformanceEvent(user_id="user-1", topic="Vocab", section="reading", test_type="SAT", is_correct=False)
        )

        assert [r.topic for r in aggregator.get_records("user-1", section="reading")] == ["Vocab"]
        assert len(aggregator.get_records("user-1", test_type="SAT")) == 2

    def test_backfill_counts_recorded_events(self, aggregator) -> None:
        events = [_event(True, minute=1), {"user_id": "user-1"}, _event(False, minute=2)]
        assert aggregator.backfill(events) == 2

    def test_recent_accuracy(self, aggregator) -> None:
        assert aggregator.recent_accuracy("user-1", 20) == (None, 0)
        for minute, outcome in enumerate([False, True, True, True]):
            aggregator.record(_event(outcome, minute=minute))
        assert aggregator.recent_accuracy("user-1", 2) == (1.0, 2)
        assert aggregator.recent_accuracy("user-1", 20) == (0.75, 4)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accepted_events_are_already_stored(self, aggregator, weakness_store, metrics) -> None:
        for minute in range(30):
            assert await aggregator.submit(_event(minute % 3 == 0, minute=minute)) is True

        record = weakness_store.get_record("user-1", "Algebra", "math", "SAT")
        assert (record.attempts, record.correct_attempts) == (30, 10)
        assert len(weakness_store.recent_outcomes("user-1", 100)) == 30
        assert metrics.events_recorded == 30

    @pytest.mark.asyncio
    async def test_accepted_events_survive_a_reopened_store(self, aggregator, weakness_store, tmp_path) -> None:
        assert await aggregator.submit(_event(False)) is True

        reopened = SqliteWeaknessStore(tmp_path / "weakness.db")
        try:
            assert reopened.get_record("user-1", "Algebra", "math", "SAT").attempts == 1
        finally:
            reopened.close()

    @pytest.mark.asyncio
    async def test_concurrent_submissions_keep_every_increment(self, aggregator) -> None:
        outcomes = await asyncio.gather(*(aggregator.submit(_event(True, minute=n)) for n in range(20)))

        assert all(outcomes)
        assert aggregator.get_record("user-1", "Algebra", "math", "SAT").attempts == 20

    @pytest.mark.asyncio
    async def test_malformed_submission_is_refused(self, aggregator, metrics) -> None:
        assert await aggregator.submit({"user_id": "user-1"}) is False
        assert metrics.events_dropped["malformed"] == 1
