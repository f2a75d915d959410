"""Core service orchestrating delivery, scoring and pool administration."""
from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .config import PoolConfig
from .domain import (
    CategoryKey,
    ContentItem,
    KeyStats,
    PersonalizationContext,
    PracticeContext,
    ReplenishmentResult,
    WeaknessRecord,
)
from .models import (
    ContentResponse,
    DeliveredItem,
    DeliveryOut,
    FocusTopic,
    KeyStatsOut,
    PerformanceEvent,
    PersonalizationMeta,
    PrefillConfig,
    ReplenishmentOut,
    WeaknessRecordOut,
)
from .planner import PersonalizationPlanner
from .pool import ContentPool
from .replenishment import ReplenishmentCoordinator
from .weakness import WeaknessAggregator


logger = logging.getLogger(__name__)


def delivered_item(item: ContentItem) -> DeliveredItem:
    return DeliveredItem(
        item_id=item.id,
        lease_token=item.lease_token,
        content_hash=item.content_hash,
        lease_expiry=item.lease_expiry,
        payload=item.payload,
    )


def personalization_meta(plan: PersonalizationContext) -> PersonalizationMeta:
    return PersonalizationMeta(
        level=plan.level.value,
        overall_success_rate=round(plan.overall_success_rate, 4),
        sample_temperature=plan.sample_temperature,
        practice_context=plan.practice_context.value,
        focus_topics=[
            FocusTopic(
                topic=record.topic,
                weakness_score=round(record.weakness_score, 2),
                priority=record.priority.value,
                trend=record.trend.value,
            )
            for record in plan.target_topics
        ],
    )


def weakness_out(record: WeaknessRecord) -> WeaknessRecordOut:
    return WeaknessRecordOut(
        topic=record.topic,
        section=record.section,
        test_type=record.test_type,
        attempts=record.attempts,
        correct_attempts=record.correct_attempts,
        success_rate=round(record.success_rate, 2),
        weakness_score=round(record.weakness_score, 2),
        priority=record.priority.value,
        trend=record.trend.value,
        avg_time_seconds=record.avg_time_seconds,
        last_updated=record.last_updated,
    )


def replenishment_out(result: ReplenishmentResult) -> ReplenishmentOut:
    return ReplenishmentOut(
        key=result.key.label,
        status=result.status.value,
        requested=result.requested,
        generated=result.generated,
        inserted=result.inserted,
        duplicates=result.duplicates,
        invalid=result.invalid,
        error=result.error,
        retry_after_seconds=result.retry_after_seconds,
    )


def stats_out(stats: Dict[CategoryKey, KeyStats]) -> Dict[str, KeyStatsOut]:
    return {
        key.label: KeyStatsOut(available=entry.available, reserved=entry.reserved, used=entry.used)
        for key, entry in sorted(stats.items(), key=lambda pair: pair[0].label)
    }


class ContentService:
    """Serves personalised content from the pool and feeds the scoring pipeline."""

    def __init__(
        self,
        pool: ContentPool,
        coordinator: ReplenishmentCoordinator,
        planner: PersonalizationPlanner,
        aggregator: WeaknessAggregator,
        config: Optional[PoolConfig] = None,
    ) -> None:
        self._pool = pool
        self._coordinator = coordinator
        self._planner = planner
        self._aggregator = aggregator
        self._config = config or pool.config

    # region Delivery
    async def get_content(
        self,
        user_id: str,
        test_type: str,
        section: str,
        difficulty: str,
        count: int = 10,
        track: str = "general",
        practice_context: Union[str, PracticeContext] = PracticeContext.DAILY_PRACTICE,
    ) -> ContentResponse:
        """Lease up to ``count`` items, preferring the learner's weak topics.

        A shortfall triggers a replenishment with the learner's plan and waits a
        bounded time for it before reserving once more; anything still missing
        is reported through ``retry_after_seconds``.
        """

        if count < 1:
            raise ValueError("count must be at least 1")
        key = CategoryKey(test_type, section, difficulty, track)
        plan = await asyncio.to_thread(
            self._planner.plan, user_id, test_type, section, practice_context
        )
        preferred = plan.target_topic_names

        items = await self._reserve(key, user_id, count, preferred)
        retry_after: Optional[float] = None
        if len(items) < count:
            missing = count - len(items)
            self._coordinator.trigger(
                key, batch_size=max(self._config.default_batch_size, missing), plan=plan
            )
            await self._coordinator.wait_for(key, self._config.replenish_wait_seconds)
            items.extend(await self._reserve(key, user_id, missing, preferred))
            if len(items) < count:
                retry_after = max(
                    self._config.retry_after_seconds, self._coordinator.cooldown_remaining()
                )
                logger.info(
                    "Delivering %s of %s items for %s to %s; retry after %.1fs",
                    len(items),
                    count,
                    key.label,
                    user_id,
                    retry_after,
                )
        elif await asyncio.to_thread(self._pool.is_low, key):
            self._coordinator.trigger(key, plan=plan)

        return ContentResponse(
            items=[delivered_item(item) for item in items],
            personalization_meta=personalization_meta(plan),
            retry_after_seconds=retry_after,
        )

    async def _reserve(
        self, key: CategoryKey, user_id: str, count: int, preferred: Sequence[str]
    ) -> List[ContentItem]:
        return await asyncio.to_thread(
            self._pool.reserve_many,
            key,
            user_id,
            count,
            preferred_topics=preferred,
            notify=False,
        )

    def complete_delivery(self, item_id: str, user_id: str, lease_token: str) -> bool:
        return self._pool.finalize(item_id, user_id, lease_token)

    def cancel_delivery(self, item_id: str, user_id: str, lease_token: str) -> bool:
        return self._pool.release(item_id, user_id, lease_token)

    # endregion

    # region Learner data
    async def submit_performance(self, event: PerformanceEvent) -> bool:
        return await self._aggregator.submit(event)

    def list_weaknesses(
        self, user_id: str, test_type: Optional[str] = None, section: Optional[str] = None
    ) -> List[WeaknessRecordOut]:
        records = self._aggregator.get_records(user_id, test_type=test_type, section=section)
        records.sort(key=lambda record: (-record.weakness_score, record.priority.rank, record.topic))
        return [weakness_out(record) for record in records]

    def delivery_history(self, user_id: str) -> List[DeliveryOut]:
        return [
            DeliveryOut(content_hash=record.content_hash, delivered_at=record.delivered_at)
            for record in self._pool.delivery_history(user_id)
        ]

    def plan(
        self,
        user_id: str,
        test_type: str,
        section: str,
        practice_context: Union[str, PracticeContext] = PracticeContext.DAILY_PRACTICE,
    ) -> PersonalizationMeta:
        return personalization_meta(self._planner.plan(user_id, test_type, section, practice_context))

    # endregion

    # region Administration
    async def prefill_pool(self, configs: Sequence[PrefillConfig]) -> List[ReplenishmentOut]:
        """Warm the pool key by key; throttled or failed keys are reported, not raised."""

        results = []
        for config in configs:
            key = CategoryKey(config.test_type, config.section, config.difficulty, config.track)
            result = await self._coordinator.replenish(key, config.count, force=True)
            results.append(replenishment_out(result))
        return results

    async def refill_low_stock(self, keys: Optional[Iterable[CategoryKey]] = None) -> List[ReplenishmentOut]:
        candidates = list(keys) if keys is not None else list(self._pool.stats().keys())
        results = await self._coordinator.auto_refill(candidates)
        return [replenishment_out(result) for result in results]

    def clean_pool(self, max_age_days: Optional[int] = None) -> Dict[str, int]:
        purged_items, purged_deliveries = self._pool.clean(max_age_days)
        return {"purged_items": purged_items, "purged_deliveries": purged_deliveries}

    def pool_stats(self) -> Dict[str, KeyStatsOut]:
        return stats_out(self._pool.stats())

    def sweep(self) -> int:
        return self._pool.sweep_expired()

    def resume_generation(self) -> None:
        self._coordinator.resume()

    # endregion


__all__ = [
    "ContentService",
    "delivered_item",
    "personalization_meta",
    "replenishment_out",
    "stats_out",
    "weakness_out",
]
