"""Shared content pool with lease-based reservation."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
from uuid import uuid4

from .config import PoolConfig
from .domain import CategoryKey, ContentItem, DeliveryRecord, ItemState, KeyStats, NotAvailable
from .metrics import METRICS, MetricsRegistry
from .models import ContentPayload, utcnow
from .repositories import ContentPoolRepository, DeliveryLedgerRepository


logger = logging.getLogger(__name__)

LowStockHook = Callable[[CategoryKey, Optional[str]], None]

CANDIDATE_PAGE_SIZE = 16


class ContentPool:
    """Grants, finalizes and reclaims leases on pooled items.

    Every state change goes through one conditional update in the repository;
    losing such an update to a concurrent caller is an expected outcome and
    simply moves on to the next candidate.
    """

    def __init__(
        self,
        repo: ContentPoolRepository,
        ledger: DeliveryLedgerRepository,
        config: Optional[PoolConfig] = None,
        metrics: MetricsRegistry = METRICS,
        on_low_stock: Optional[LowStockHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._ledger = ledger
        self._config = config or PoolConfig()
        self._metrics = metrics
        self._on_low_stock = on_low_stock
        self._clock = clock

    @property
    def config(self) -> PoolConfig:
        return self._config

    def set_low_stock_hook(self, hook: Optional[LowStockHook]) -> None:
        self._on_low_stock = hook

    def _signal_low_stock(self, key: CategoryKey, owner: Optional[str]) -> None:
        if self._on_low_stock is None:
            return
        try:
            self._on_low_stock(key, owner)
        except Exception:
            logger.exception("Low-stock hook failed for %s", key.label)

    # region Leases
    def _reserve_one(
        self,
        key: CategoryKey,
        owner: str,
        ttl: float,
        preferred_topics: Sequence[str],
        exclude_delivered: bool,
    ) -> Optional[ContentItem]:
        tried: Set[str] = set()
        delivered_since = self._clock() - timedelta(days=self._config.delivery_window_days)
        while True:
            candidates = [
                item_id
                for item_id in self._repo.candidate_ids(
                    key,
                    CANDIDATE_PAGE_SIZE + len(tried),
                    preferred_topics=preferred_topics,
                    exclude_delivered_to=owner if exclude_delivered else None,
                    delivered_since=delivered_since,
                )
                if item_id not in tried
            ]
            if not candidates:
                return None
            for item_id in candidates:
                tried.add(item_id)
                now = self._clock()
                expiry = now + timedelta(seconds=ttl)
                if self._repo.compare_and_reserve(item_id, owner, uuid4().hex, now, expiry):
                    self._metrics.record_reservation()
                    logger.debug("Reserved item %s under %s for %s", item_id, key.label, owner)
                    return self._repo.get_item(item_id)
                self._metrics.record_reservation_conflict()

    def reserve(
        self,
        key: CategoryKey,
        owner: str,
        ttl: Optional[float] = None,
        preferred_topics: Sequence[str] = (),
        exclude_delivered: bool = True,
    ) -> Union[ContentItem, NotAvailable]:
        """Lease one available item for ``owner``.

        Never blocks on generation: an empty key yields ``NotAvailable`` and the
        low-stock hook is signalled.
        """

        granted = self.reserve_many(
            key,
            owner,
            1,
            ttl=ttl,
            preferred_topics=preferred_topics,
            exclude_delivered=exclude_delivered,
        )
        if granted:
            return granted[0]
        return NotAvailable(retry_after_seconds=self._config.retry_after_seconds)

    def reserve_many(
        self,
        key: CategoryKey,
        owner: str,
        count: int,
        ttl: Optional[float] = None,
        preferred_topics: Sequence[str] = (),
        exclude_delivered: bool = True,
        notify: bool = True,
    ) -> List[ContentItem]:
        """Lease up to ``count`` items; ``notify=False`` leaves low-stock handling to the caller."""

        if count < 1:
            raise ValueError("count must be at least 1")
        lease_seconds = self._config.lease_ttl_seconds if ttl is None else ttl
        if timedelta(seconds=lease_seconds) <= timedelta(0):
            raise ValueError("ttl must be positive")
        granted: List[ContentItem] = []
        while len(granted) < count:
            item = self._reserve_one(key, owner, lease_seconds, preferred_topics, exclude_delivered)
            if item is None:
                break
            granted.append(item)
        if len(granted) < count:
            self._metrics.record_reservation_miss()
            logger.info(
                "Pool short for %s: granted %s of %s to %s", key.label, len(granted), count, owner
            )
            if notify:
                self._signal_low_stock(key, owner)
        elif notify and self.is_low(key):
            self._signal_low_stock(key, owner)
        return granted

    def finalize(self, item_id: str, owner: str, lease_token: str) -> bool:
        """reserved -> used, only for the current holder of ``lease_token``."""

        if self._repo.compare_and_finalize(item_id, owner, lease_token, self._clock()):
            self._metrics.record_finalization()
            logger.debug("Finalized item %s for %s", item_id, owner)
            return True
        self._note_rejection(item_id, owner, lease_token, "finalize")
        return False

    def release(self, item_id: str, owner: str, lease_token: str) -> bool:
        """reserved -> available, only for the current holder of ``lease_token``."""

        if self._repo.compare_and_release(item_id, owner, lease_token):
            self._metrics.record_release()
            logger.debug("Released item %s from %s", item_id, owner)
            return True
        self._note_rejection(item_id, owner, lease_token, "release")
        return False

    def _note_rejection(self, item_id: str, owner: str, lease_token: str, action: str) -> None:
        item = self._repo.get_item(item_id)
        if item.state is ItemState.RESERVED and (
            item.reserved_by != owner or item.lease_token != lease_token
        ):
            self._metrics.record_stale_owner()
        logger.info(
            "Refused %s of item %s by %s (state=%s, holder=%s)",
            action,
            item_id,
            owner,
            item.state.value,
            item.reserved_by,
        )

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        reclaimed = self._repo.reclaim_expired(now or self._clock())
        if reclaimed:
            self._metrics.record_reclaimed(reclaimed)
            logger.info("Reclaimed %s expired leases", reclaimed)
        return reclaimed

    # endregion

    # region Inventory
    def get_item(self, item_id: str) -> ContentItem:
        return self._repo.get_item(item_id)

    def insert_candidates(
        self, key: CategoryKey, pairs: Iterable[Tuple[ContentPayload, str]]
    ) -> int:
        inserted = self._repo.insert_items(key, pairs, self._clock())
        logger.debug("Inserted %s items under %s", inserted, key.label)
        return inserted

    def available_count(self, key: CategoryKey) -> int:
        return self._repo.count_available(key)

    def is_low(self, key: CategoryKey) -> bool:
        return self._repo.count_available(key) < self._config.low_watermark

    def stats(self) -> Dict[CategoryKey, KeyStats]:
        return self._repo.stats()

    def delivery_history(self, user_id: str) -> List[DeliveryRecord]:
        since = self._clock() - timedelta(days=self._config.delivery_window_days)
        return self._ledger.deliveries_for(user_id, since)

    def clean(self, max_age_days: Optional[int] = None) -> Tuple[int, int]:
        """Purge used items older than ``max_age_days`` and deliveries past the ledger window."""

        days = self._config.retention_days if max_age_days is None else max_age_days
        if days < 0:
            raise ValueError("max_age_days must be non-negative")
        now = self._clock()
        purged_items = self._repo.purge_used(now - timedelta(days=days))
        purged_deliveries = self._ledger.purge_deliveries(
            now - timedelta(days=self._config.delivery_window_days)
        )
        self._metrics.record_purged(purged_items)
        logger.info(
            "Cleaned pool: %s used items older than %s days, %s delivery records",
            purged_items,
            days,
            purged_deliveries,
        )
        return purged_items, purged_deliveries

    # endregion


class LeaseSweeper:
    """Background task reclaiming expired leases on a fixed interval."""

    def __init__(self, pool: ContentPool, interval_seconds: Optional[float] = None) -> None:
        self._pool = pool
        self._interval = interval_seconds or pool.config.sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        return await asyncio.to_thread(self._pool.sweep_expired)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Lease sweep failed; retrying next interval")


__all__ = ["ContentPool", "LeaseSweeper", "LowStockHook"]
