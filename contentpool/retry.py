"""Parameterised exponential backoff built on tenacity."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with full jitter and a bounded number of attempts.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` disables retries.
    The wait before attempt ``n + 1`` is drawn uniformly from
    ``[0, min(max_delay, initial_delay * 2 ** (n - 1))]``.
    """

    max_attempts: int = 3
    initial_delay: float = 0.5
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("backoff delays must be non-negative")

    def wait_strategy(self) -> wait_random_exponential:
        return wait_random_exponential(multiplier=self.initial_delay, max=self.max_delay)

    def delay_ceiling(self, attempt: int) -> float:
        """Upper bound of the jittered wait that follows ``attempt`` (1-based)."""

        if attempt < 1:
            return 0.0
        return min(self.max_delay, self.initial_delay * (2 ** (attempt - 1)))

    def async_retrying(self, *retry_on: Type[BaseException]) -> AsyncRetrying:
        """Return a tenacity controller retrying only the given exception types."""

        return AsyncRetrying(**self._retry_kwargs(retry_on))

    def retrying(self, *retry_on: Type[BaseException]) -> Retrying:
        return Retrying(**self._retry_kwargs(retry_on))

    def _retry_kwargs(self, retry_on: Tuple[Type[BaseException], ...]) -> dict:
        return {
            "stop": stop_after_attempt(self.max_attempts),
            "wait": self.wait_strategy(),
            "retry": retry_if_exception_type(retry_on or (Exception,)),
            "before_sleep": _log_retry,
            "reraise": True,
        }


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Attempt %s failed (%s); retrying in %.2fs",
        retry_state.attempt_number,
        error,
        delay,
    )


__all__ = ["BackoffPolicy"]
