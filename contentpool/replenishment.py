"""Single-flight replenishment of the pool from the generation engine."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .config import PoolConfig
from .dedup import DedupScope, DeduplicationIndex
from .domain import (
    CategoryKey,
    PersonalizationContext,
    ReplenishmentResult,
    ReplenishmentStatus,
)
from .errors import GenerationError, QuotaExceededError, RateLimitedError, TransientGenerationError
from .generation import GenerationEngine
from .metrics import METRICS, MetricsRegistry
from .models import GenerationCandidate
from .planner import PersonalizationPlanner, PromptContext
from .pool import ContentPool
from .retry import BackoffPolicy
from .validators import partition_valid


logger = logging.getLogger(__name__)


class ReplenishmentCoordinator:
    """Refills category keys through the generation engine.

    Concurrent triggers for one key share a single in-flight task, and a
    per-key lock serialises generation cycles, so a burst of pool misses
    produces exactly one outbound engine call.
    """

    def __init__(
        self,
        pool: ContentPool,
        dedup: DeduplicationIndex,
        engine: GenerationEngine,
        planner: PersonalizationPlanner,
        config: Optional[PoolConfig] = None,
        retry: Optional[BackoffPolicy] = None,
        metrics: MetricsRegistry = METRICS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool = pool
        self._dedup = dedup
        self._engine = engine
        self._planner = planner
        self._config = config or pool.config
        self._retry = retry or BackoffPolicy()
        self._metrics = metrics
        self._clock = clock
        self._inflight: Dict[CategoryKey, asyncio.Task] = {}
        self._locks: Dict[CategoryKey, asyncio.Lock] = {}
        self._cooldown_until = 0.0
        self._halted = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # region State
    @property
    def halted(self) -> bool:
        """True after the engine reported an exhausted quota, until ``resume``."""

        return self._halted

    def cooldown_remaining(self) -> float:
        return max(0.0, self._cooldown_until - self._clock())

    def resume(self) -> None:
        if self._halted or self._cooldown_until:
            logger.info("Generation resumed by operator")
        self._halted = False
        self._cooldown_until = 0.0

    def in_flight(self, key: CategoryKey) -> Optional[asyncio.Task]:
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return task
        return None

    def _lock_for(self, key: CategoryKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # endregion

    # region Triggers
    def trigger(
        self,
        key: CategoryKey,
        batch_size: Optional[int] = None,
        plan: Optional[PersonalizationContext] = None,
        *,
        force: bool = False,
    ) -> asyncio.Task:
        """Start a replenishment for ``key`` or join the one already in flight."""

        self._loop = asyncio.get_running_loop()
        existing = self.in_flight(key)
        if existing is not None:
            logger.debug("Joining in-flight replenishment for %s", key.label)
            return existing
        task = asyncio.create_task(self._run(key, batch_size, plan, force))
        self._inflight[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def _forget(self, key: CategoryKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def replenish(
        self,
        key: CategoryKey,
        batch_size: Optional[int] = None,
        plan: Optional[PersonalizationContext] = None,
        *,
        force: bool = False,
    ) -> ReplenishmentResult:
        return await self.trigger(key, batch_size, plan, force=force)

    async def wait_for(self, key: CategoryKey, timeout: float) -> Optional[ReplenishmentResult]:
        """Await the in-flight replenishment for ``key``; ``None`` if absent or too slow."""

        task = self.in_flight(key)
        if task is None:
            return None
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.info("Replenishment for %s still running after %.1fs", key.label, timeout)
            return None

    def on_low_stock(self, key: CategoryKey, user_id: Optional[str] = None) -> None:
        """Pool hook: schedule an automatic refill without blocking the caller."""

        if self._halted or self.cooldown_remaining() > 0:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is not None and self._loop.is_running():
                self._loop.call_soon_threadsafe(self.trigger, key)
            else:
                logger.debug("No event loop for low-stock signal on %s", key.label)
            return
        self.trigger(key)

    async def auto_refill(self, keys: Iterable[CategoryKey]) -> List[ReplenishmentResult]:
        """Refill the emptiest keys below the low watermark, a few per run."""

        if self._halted:
            logger.warning("Automatic refill skipped: generation halted until resumed")
            return []
        counts = [(self._pool.available_count(key), key) for key in keys]
        low = sorted(
            ((count, key) for count, key in counts if count < self._config.low_watermark),
            key=lambda entry: entry[0],
        )
        selected = low[: self._config.max_keys_per_refill_run]
        results = []
        for count, key in selected:
            logger.info("Auto-refilling %s (available=%s)", key.label, count)
            results.append(await self.replenish(key))
        return results

    # endregion

    # region Cycle
    async def _run(
        self,
        key: CategoryKey,
        batch_size: Optional[int],
        plan: Optional[PersonalizationContext],
        force: bool,
    ) -> ReplenishmentResult:
        try:
            return await self._cycle(key, batch_size, plan, force)
        except Exception as exc:
            logger.exception("Replenishment for %s failed unexpectedly", key.label)
            return ReplenishmentResult(key=key, status=ReplenishmentStatus.FAILED, error=str(exc))

    async def _request(
        self, key: CategoryKey, count: int, prompt: PromptContext
    ) -> List[GenerationCandidate]:
        async for attempt in self._retry.async_retrying(TransientGenerationError):
            with attempt:
                return await self._engine.request_batch(key, count, prompt)
        return []

    async def _cycle(
        self,
        key: CategoryKey,
        batch_size: Optional[int],
        plan: Optional[PersonalizationContext],
        force: bool,
    ) -> ReplenishmentResult:
        size = min(batch_size or self._config.default_batch_size, self._config.max_batch_size)
        async with self._lock_for(key):
            if self._halted and not force:
                return ReplenishmentResult(
                    key=key,
                    status=ReplenishmentStatus.SKIPPED,
                    requested=size,
                    error="generation halted after quota exhaustion",
                )
            remaining = self.cooldown_remaining()
            if remaining > 0:
                status = ReplenishmentStatus.THROTTLED if force else ReplenishmentStatus.SKIPPED
                return ReplenishmentResult(
                    key=key,
                    status=status,
                    requested=size,
                    error="generation engine cool-down in effect",
                    retry_after_seconds=round(remaining, 2),
                )

            prompt = self._planner.build_prompt_context(plan or self._planner.default_plan(), key, size)
            self._metrics.record_generation_attempt()
            logger.info(
                "Requesting %s items for %s (temperature=%.2f, targets=%s)",
                size,
                key.label,
                prompt.temperature,
                prompt.target_topic_names,
            )
            try:
                candidates = await self._request(key, size, prompt)
            except RateLimitedError as exc:
                cooldown = exc.retry_after or self._config.rate_limit_cooldown_seconds
                self._cooldown_until = self._clock() + cooldown
                self._metrics.record_generation_failure(exc.reason)
                logger.warning("Engine rate limited on %s; cooling down for %.1fs", key.label, cooldown)
                return ReplenishmentResult(
                    key=key,
                    status=ReplenishmentStatus.THROTTLED,
                    requested=size,
                    error=str(exc),
                    retry_after_seconds=cooldown,
                )
            except QuotaExceededError as exc:
                self._halted = True
                self._metrics.record_generation_failure(exc.reason)
                logger.error(
                    "Engine quota exhausted on %s; automatic replenishment halted: %s", key.label, exc
                )
                return ReplenishmentResult(
                    key=key, status=ReplenishmentStatus.QUOTA_EXCEEDED, requested=size, error=str(exc)
                )
            except GenerationError as exc:
                self._metrics.record_generation_failure(exc.reason)
                logger.error("Replenishment for %s failed: %s", key.label, exc)
                return ReplenishmentResult(
                    key=key, status=ReplenishmentStatus.FAILED, requested=size, error=str(exc)
                )

            self._metrics.record_generation_success(len(candidates))
            valid, invalid = partition_valid(candidates)
            valid = [payload.model_copy(update={"difficulty": key.difficulty}) for payload in valid]
            scope = DedupScope(key, window=timedelta(days=self._config.delivery_window_days))
            unique, duplicates = self._dedup.filter_unique(valid, scope)
            inserted = self._pool.insert_candidates(key, unique)
            duplicates += len(unique) - inserted
            self._metrics.record_candidates(inserted, duplicates, invalid)

            status = ReplenishmentStatus.COMPLETED if inserted >= size else ReplenishmentStatus.PARTIAL
            logger.info(
                "Replenished %s: generated=%s inserted=%s duplicates=%s invalid=%s",
                key.label,
                len(candidates),
                inserted,
                duplicates,
                invalid,
            )
            return ReplenishmentResult(
                key=key,
                status=status,
                requested=size,
                generated=len(candidates),
                inserted=inserted,
                duplicates=duplicates,
                invalid=invalid,
            )

    # endregion


__all__ = ["ReplenishmentCoordinator"]
