"""Exception hierarchy shared by the pool, scoring and generation layers."""
from __future__ import annotations

from typing import Optional


class ContentPoolError(Exception):
    """Base class for errors raised by the content coordinator."""


class UnknownItemError(ContentPoolError, KeyError):
    """Raised when a content item id is not present in the pool."""


class TransientStorageError(ContentPoolError):
    """Storage failure that is expected to succeed when retried (e.g. a locked database)."""


class GenerationError(ContentPoolError):
    """Failure reported by the external generation engine."""

    reason = "error"


class TransientGenerationError(GenerationError):
    """Network failure, timeout or 5xx response; safe to retry with backoff."""

    reason = "transient"


class RateLimitedError(GenerationError):
    """The engine asked us to slow down."""

    reason = "rate_limited"

    def __init__(
        self,
        message: str = "Generation engine rate limit reached",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class QuotaExceededError(GenerationError):
    """The engine quota is exhausted; an operator has to intervene."""

    reason = "quota_exceeded"


__all__ = [
    "ContentPoolError",
    "GenerationError",
    "QuotaExceededError",
    "RateLimitedError",
    "TransientGenerationError",
    "TransientStorageError",
    "UnknownItemError",
]
