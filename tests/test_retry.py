"""Tests for the backoff policy."""

from __future__ import annotations

import pytest

from contentpool.errors import TransientGenerationError
from contentpool.retry import BackoffPolicy


def test_delay_ceiling_grows_exponentially_and_caps() -> None:
    policy = BackoffPolicy(max_attempts=6, initial_delay=0.5, max_delay=3.0)

    assert [policy.delay_ceiling(n) for n in range(0, 6)] == [0.0, 0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"initial_delay": -1.0}, {"max_delay": -0.1}],
)
def test_invalid_policies(kwargs) -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)


def test_retrying_stops_after_max_attempts() -> None:
    policy = BackoffPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)
    calls = []

    with pytest.raises(TransientGenerationError):
        for attempt in policy.retrying(TransientGenerationError):
            with attempt:
                calls.append(attempt.retry_state.attempt_number)
                raise TransientGenerationError("still down")

    assert calls == [1, 2, 3]


def test_only_listed_exceptions_are_retried() -> None:
    policy = BackoffPolicy(max_attempts=5, initial_delay=0.0, max_delay=0.0)
    calls = []

    with pytest.raises(KeyError):
        for attempt in policy.retrying(TransientGenerationError):
            with attempt:
                calls.append(1)
                raise KeyError("permanent")

    assert calls == [1]


@pytest.mark.asyncio
async def test_async_retrying_returns_first_success() -> None:
    policy = BackoffPolicy(max_attempts=4, initial_delay=0.0, max_delay=0.0)
    outcomes = [TransientGenerationError("a"), TransientGenerationError("b"), "ok"]

    async def flaky() -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = None
    async for attempt in policy.async_retrying(TransientGenerationError):
        with attempt:
            result = await flaky()

    assert result == "ok"
    assert outcomes == []
