"""Shared fixtures for the content pool test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from contentpool.config import PlannerConfig, PoolConfig, ScoringConfig
from contentpool.dedup import DeduplicationIndex, content_hash
from contentpool.domain import CategoryKey
from contentpool.metrics import MetricsRegistry
from contentpool.models import ContentPayload, GenerationCandidate
from contentpool.planner import PersonalizationPlanner
from contentpool.pool import ContentPool
from contentpool.replenishment import ReplenishmentCoordinator
from contentpool.retry import BackoffPolicy
from contentpool.services import ContentService
from contentpool.storage import SqliteContentStore, SqliteWeaknessStore
from contentpool.weakness import WeaknessAggregator

KEY = CategoryKey("SAT", "math", "medium")
OTHER_KEY = CategoryKey("SAT", "reading", "medium")

NO_WAIT = BackoffPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


def make_payload(index: int, topic: str = "algebra") -> ContentPayload:
    return ContentPayload(
        question_text=f"What is {index} + {index}?",
        options=[str(2 * index), str(2 * index + 1), str(2 * index + 2)],
        correct_answer=str(2 * index),
        explanation=f"Adding {index} to itself doubles it.",
        topic=topic,
    )


def make_candidate(index: int, topic: str = "algebra") -> GenerationCandidate:
    return GenerationCandidate(**make_payload(index, topic).model_dump())


def seed(store: SqliteContentStore, key: CategoryKey, count: int, topic: str = "algebra", start: int = 0) -> int:
    pairs = []
    for index in range(start, start + count):
        payload = make_payload(index, topic)
        pairs.append((payload, content_hash(payload.question_text, payload.options)))
    return store.insert_items(key, pairs, datetime.now(timezone.utc))


class FakeClock:
    """Settable clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeEngine:
    """Generation engine double producing fresh candidates on each call."""

    def __init__(self, delay: float = 0.0, topic: str = "algebra") -> None:
        self.delay = delay
        self.topic = topic
        self.calls: List[dict] = []
        self.errors: List[Exception] = []
        self.responses: List[List[GenerationCandidate]] = []
        self._next_index = 1000

    async def request_batch(self, key, count, prompt_context):
        self.calls.append({"key": key, "count": count, "prompt": prompt_context})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        if self.responses:
            return self.responses.pop(0)
        batch = [make_candidate(self._next_index + offset, self.topic) for offset in range(count)]
        self._next_index += count
        return batch


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def content_store(tmp_path):
    store = SqliteContentStore(tmp_path / "pool.db")
    yield store
    store.close()


@pytest.fixture
def weakness_store(tmp_path):
    store = SqliteWeaknessStore(tmp_path / "weakness.db")
    yield store
    store.close()


@pytest.fixture
def pool_config() -> PoolConfig:
    return PoolConfig(low_watermark=1, replenish_wait_seconds=2.0, retry_after_seconds=5.0)


@pytest.fixture
def pool(content_store, pool_config, metrics) -> ContentPool:
    return ContentPool(content_store, content_store, pool_config, metrics)


@pytest.fixture
def aggregator(weakness_store, metrics) -> WeaknessAggregator:
    return WeaknessAggregator(weakness_store, ScoringConfig(storage_retry=NO_WAIT), metrics)


@pytest.fixture
def planner(aggregator) -> PersonalizationPlanner:
    return PersonalizationPlanner(aggregator, PlannerConfig())


@pytest.fixture
def dedup(content_store) -> DeduplicationIndex:
    return DeduplicationIndex(content_store, content_store)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine(delay=0.05)


@pytest.fixture
def coordinator(pool, dedup, fake_engine, planner, pool_config, metrics) -> ReplenishmentCoordinator:
    return ReplenishmentCoordinator(
        pool,
        dedup,
        fake_engine,
        planner,
        config=pool_config,
        retry=NO_WAIT,
        metrics=metrics,
    )


@pytest.fixture
def service(pool, coordinator, planner, aggregator, pool_config) -> ContentService:
    return ContentService(pool, coordinator, planner, aggregator, pool_config)
