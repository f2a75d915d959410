"""Tests for the HTTP generation engine client."""

from __future__ import annotations

import json

import httpx
import pytest

from contentpool.config import GenerationEngineConfig
from contentpool.domain import PersonalizationContext, StudentLevel
from contentpool.errors import (
    GenerationError,
    QuotaExceededError,
    RateLimitedError,
    TransientGenerationError,
)
from contentpool.generation import HttpGenerationEngine, parse_candidates
from contentpool.planner import build_prompt_context

from conftest import KEY

CONFIG = GenerationEngineConfig(url="https://engine.test/v1/generate", api_key="secret", model="quiz-v1")


def _prompt(count: int = 2):
    plan = PersonalizationContext(
        user_id="user-1",
        level=StudentLevel.INTERMEDIATE,
        overall_success_rate=0.6,
        total_attempts=12,
        sample_temperature=0.7,
    )
    return build_prompt_context(plan, KEY, count)


def _engine(handler) -> HttpGenerationEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGenerationEngine(CONFIG, client=client)


CANDIDATE = {
    "questionText": "What is 3 + 4?",
    "options": ["6", "7", "8"],
    "correctAnswer": "7",
    "explanation": "Three plus four is seven.",
    "difficulty": "easy",
    "topic": "arithmetic",
}


class TestRequestBatch:
    @pytest.mark.asyncio
    async def test_posts_prompt_and_parses_candidates(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"candidates": [CANDIDATE, {"options": "broken"}, "junk"]})

        engine = _engine(handler)
        candidates = await engine.request_batch(KEY, 2, _prompt())
        await engine.aclose()

        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["count"] == 2
        assert seen["body"]["temperature"] == 0.7
        assert seen["body"]["category"]["section"] == "math"
        assert seen["body"]["model"] == "quiz-v1"
        assert "Generate 2 multiple-choice questions" in seen["body"]["instructions"]
        assert len(candidates) == 1
        assert candidates[0].question_text == "What is 3 + 4?"
        assert candidates[0].correct_answer == "7"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, headers, text, error",
        [
            (429, {"Retry-After": "7"}, "", RateLimitedError),
            (402, {}, "payment required", QuotaExceededError),
            (403, {}, "monthly quota exceeded", QuotaExceededError),
            (403, {}, "forbidden", GenerationError),
            (503, {}, "unavailable", TransientGenerationError),
            (400, {}, "bad request", GenerationError),
        ],
    )
    async def test_status_classification(self, status, headers, text, error) -> None:
        engine = _engine(lambda request: httpx.Response(status, headers=headers, text=text))

        with pytest.raises(error) as excinfo:
            await engine.request_batch(KEY, 2, _prompt())

        assert type(excinfo.value) is error
        if status == 429:
            assert excinfo.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_network_errors_are_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientGenerationError):
            await _engine(handler).request_batch(KEY, 2, _prompt())

    @pytest.mark.asyncio
    async def test_timeouts_are_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientGenerationError):
            await _engine(handler).request_batch(KEY, 2, _prompt())

    @pytest.mark.asyncio
    async def test_invalid_json_is_an_error(self) -> None:
        engine = _engine(lambda request: httpx.Response(200, text="not json"))

        with pytest.raises(GenerationError):
            await engine.request_batch(KEY, 2, _prompt())

    @pytest.mark.asyncio
    async def test_extra_candidates_are_truncated(self) -> None:
        engine = _engine(lambda request: httpx.Response(200, json={"questions": [CANDIDATE] * 5}))

        assert len(await engine.request_batch(KEY, 2, _prompt())) == 2


def test_parse_candidates_accepts_bare_list() -> None:
    assert len(parse_candidates([CANDIDATE, CANDIDATE])) == 2


def test_parse_candidates_requires_list() -> None:
    with pytest.raises(GenerationError):
        parse_candidates({"candidates": "nope"})
