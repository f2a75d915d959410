"""Tunable configuration for the pool, scoring pipeline and generation engine."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .retry import BackoffPolicy


ENV_PREFIX = "CONTENTPOOL_"

# Priority bands over the weakness score (0-100).
PRIORITY_CRITICAL_THRESHOLD = 70.0
PRIORITY_HIGH_THRESHOLD = 50.0
PRIORITY_MEDIUM_THRESHOLD = 30.0

# Trend bands over the success rate (0-100).
TREND_IMPROVING_THRESHOLD = 80.0
TREND_STABLE_GOOD_THRESHOLD = 60.0
TREND_STABLE_THRESHOLD = 40.0

# Level bands over recent accuracy (0-1).
LEVEL_STRUGGLING_BELOW = 0.50
LEVEL_ADVANCED_FROM = 0.75

BASE_TEMPERATURES: Dict[str, float] = {
    "struggling": 0.4,
    "intermediate": 0.7,
    "advanced": 0.9,
}

CONTEXT_MODIFIERS: Dict[str, float] = {
    "initial_assessment": 0.10,
    "weakness_targeting": -0.10,
    "strength_building": 0.15,
    "daily_practice": 0.0,
}

MIN_TEMPERATURE = 0.3
MAX_TEMPERATURE = 1.0


@dataclass
class PoolConfig:
    """Lease, watermark and retention settings for the shared content pool."""

    lease_ttl_seconds: float = 600.0
    low_watermark: int = 20
    default_batch_size: int = 20
    max_batch_size: int = 50
    sweep_interval_seconds: float = 60.0
    retention_days: int = 30
    delivery_window_days: int = 90
    retry_after_seconds: float = 5.0
    replenish_wait_seconds: float = 20.0
    rate_limit_cooldown_seconds: float = 60.0
    max_keys_per_refill_run: int = 3


@dataclass
class ScoringConfig:
    """Band thresholds and trend mode used by the weakness aggregator."""

    priority_critical: float = PRIORITY_CRITICAL_THRESHOLD
    priority_high: float = PRIORITY_HIGH_THRESHOLD
    priority_medium: float = PRIORITY_MEDIUM_THRESHOLD
    trend_improving: float = TREND_IMPROVING_THRESHOLD
    trend_stable_good: float = TREND_STABLE_GOOD_THRESHOLD
    trend_stable: float = TREND_STABLE_THRESHOLD
    trend_mode: str = "overall"
    trend_window: int = 10
    storage_retry: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(max_attempts=3, initial_delay=0.05, max_delay=1.0)
    )

    def __post_init__(self) -> None:
        if self.trend_mode not in ("overall", "recent"):
            raise ValueError("trend_mode must be 'overall' or 'recent'")
        if not self.priority_critical >= self.priority_high >= self.priority_medium:
            raise ValueError("priority thresholds must be non-increasing")
        if not self.trend_improving >= self.trend_stable_good >= self.trend_stable:
            raise ValueError("trend thresholds must be non-increasing")


@dataclass
class PlannerConfig:
    """Level bands, temperature table and targeting knobs for personalization."""

    recent_window: int = 20
    struggling_below: float = LEVEL_STRUGGLING_BELOW
    advanced_from: float = LEVEL_ADVANCED_FROM
    base_temperatures: Dict[str, float] = field(default_factory=lambda: dict(BASE_TEMPERATURES))
    context_modifiers: Dict[str, float] = field(default_factory=lambda: dict(CONTEXT_MODIFIERS))
    min_temperature: float = MIN_TEMPERATURE
    max_temperature: float = MAX_TEMPERATURE
    max_target_topics: int = 5
    target_share: float = 0.65

    def __post_init__(self) -> None:
        if not 0.0 <= self.target_share <= 1.0:
            raise ValueError("target_share must be within [0, 1]")
        if self.min_temperature > self.max_temperature:
            raise ValueError("min_temperature must not exceed max_temperature")


@dataclass
class GenerationEngineConfig:
    """Connection settings for the HTTP generation engine."""

    url: str = "http://localhost:8080/v1/generate"
    api_key: Optional[str] = None
    model: str = "default"
    timeout_seconds: float = 60.0
    retry: BackoffPolicy = field(default_factory=BackoffPolicy)


@dataclass
class AppConfig:
    database_path: Path = Path("contentpool.db")
    pool: PoolConfig = field(default_factory=PoolConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    engine: GenerationEngineConfig = field(default_factory=GenerationEngineConfig)


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


def load_config() -> AppConfig:
    """Build the application configuration from ``CONTENTPOOL_*`` environment variables."""

    pool = PoolConfig(
        lease_ttl_seconds=float(_env("LEASE_TTL_SECONDS", "600")),
        low_watermark=int(_env("LOW_WATERMARK", "20")),
        default_batch_size=int(_env("BATCH_SIZE", "20")),
        max_batch_size=int(_env("MAX_BATCH_SIZE", "50")),
        sweep_interval_seconds=float(_env("SWEEP_INTERVAL_SECONDS", "60")),
        retention_days=int(_env("RETENTION_DAYS", "30")),
        delivery_window_days=int(_env("DELIVERY_WINDOW_DAYS", "90")),
        retry_after_seconds=float(_env("RETRY_AFTER_SECONDS", "5")),
        replenish_wait_seconds=float(_env("REPLENISH_WAIT_SECONDS", "20")),
        rate_limit_cooldown_seconds=float(_env("RATE_LIMIT_COOLDOWN_SECONDS", "60")),
        max_keys_per_refill_run=int(_env("MAX_KEYS_PER_REFILL_RUN", "3")),
    )
    scoring = ScoringConfig(
        priority_critical=float(_env("PRIORITY_CRITICAL", str(PRIORITY_CRITICAL_THRESHOLD))),
        priority_high=float(_env("PRIORITY_HIGH", str(PRIORITY_HIGH_THRESHOLD))),
        priority_medium=float(_env("PRIORITY_MEDIUM", str(PRIORITY_MEDIUM_THRESHOLD))),
        trend_improving=float(_env("TREND_IMPROVING", str(TREND_IMPROVING_THRESHOLD))),
        trend_stable_good=float(_env("TREND_STABLE_GOOD", str(TREND_STABLE_GOOD_THRESHOLD))),
        trend_stable=float(_env("TREND_STABLE", str(TREND_STABLE_THRESHOLD))),
        trend_mode=_env("TREND_MODE", "overall"),
        trend_window=int(_env("TREND_WINDOW", "10")),
    )
    planner = PlannerConfig(
        recent_window=int(_env("RECENT_WINDOW", "20")),
        struggling_below=float(_env("LEVEL_STRUGGLING_BELOW", str(LEVEL_STRUGGLING_BELOW))),
        advanced_from=float(_env("LEVEL_ADVANCED_FROM", str(LEVEL_ADVANCED_FROM))),
        target_share=float(_env("TARGET_SHARE", "0.65")),
    )
    engine = GenerationEngineConfig(
        url=_env("ENGINE_URL", GenerationEngineConfig.url),
        api_key=os.getenv(ENV_PREFIX + "ENGINE_API_KEY"),
        model=_env("ENGINE_MODEL", "default"),
        timeout_seconds=float(_env("ENGINE_TIMEOUT_SECONDS", "60")),
        retry=BackoffPolicy(
            max_attempts=int(_env("ENGINE_MAX_ATTEMPTS", "3")),
            initial_delay=float(_env("ENGINE_INITIAL_DELAY", "0.5")),
            max_delay=float(_env("ENGINE_MAX_DELAY", "8")),
        ),
    )
    return AppConfig(
        database_path=Path(_env("DATABASE_PATH", "contentpool.db")),
        pool=pool,
        scoring=scoring,
        planner=planner,
        engine=engine,
    )


__all__ = [
    "AppConfig",
    "BASE_TEMPERATURES",
    "CONTEXT_MODIFIERS",
    "GenerationEngineConfig",
    "PlannerConfig",
    "PoolConfig",
    "ScoringConfig",
    "load_config",
]
