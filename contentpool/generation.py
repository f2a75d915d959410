"""Client contract and HTTP implementation for the external generation engine."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from .config import GenerationEngineConfig
from .domain import CategoryKey
from .errors import GenerationError, QuotaExceededError, RateLimitedError, TransientGenerationError
from .models import GenerationCandidate
from .planner import PromptContext


logger = logging.getLogger(__name__)


class GenerationEngine(Protocol):
    async def request_batch(
        self, key: CategoryKey, count: int, prompt_context: PromptContext
    ) -> List[GenerationCandidate]:
        """Return up to ``count`` candidates or raise a ``GenerationError`` subclass."""


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def parse_candidates(data: Any) -> List[GenerationCandidate]:
    """Extract candidates from a response body, skipping entries that cannot be parsed."""

    if isinstance(data, dict):
        entries = data.get("candidates")
        if entries is None:
            entries = data.get("questions")
    else:
        entries = data
    if not isinstance(entries, list):
        raise GenerationError("Generation response does not contain a candidate list")
    candidates: List[GenerationCandidate] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            candidates.append(GenerationCandidate.model_validate(entry))
        except ValidationError as exc:
            logger.debug("Skipping unparseable candidate: %s", exc)
    return candidates


class HttpGenerationEngine:
    """Posts generation requests to a JSON endpoint and classifies its failures."""

    def __init__(
        self,
        config: Optional[GenerationEngineConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config or GenerationEngineConfig()
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _body(self, key: CategoryKey, count: int, prompt_context: PromptContext) -> Dict[str, Any]:
        return {
            "model": self.config.model,
            "category": {
                "test_type": key.test_type,
                "section": key.section,
                "difficulty": key.difficulty,
                "track": key.track,
            },
            "count": count,
            "temperature": prompt_context.temperature,
            "instructions": prompt_context.render(),
            "target_topics": prompt_context.target_topic_names,
            "target_count": prompt_context.target_count,
        }

    async def request_batch(
        self, key: CategoryKey, count: int, prompt_context: PromptContext
    ) -> List[GenerationCandidate]:
        try:
            response = await self._client.post(
                self.config.url,
                headers=self._headers(),
                json=self._body(key, count, prompt_context),
            )
        except httpx.TimeoutException as exc:
            raise TransientGenerationError(f"Generation engine timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientGenerationError(f"Generation engine unreachable: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise RateLimitedError(retry_after=_retry_after(response))
        if status == 402 or (status == 403 and "quota" in response.text.lower()):
            raise QuotaExceededError(f"Generation engine quota exhausted (HTTP {status})")
        if status >= 500:
            raise TransientGenerationError(f"Generation engine returned HTTP {status}")
        if status >= 400:
            raise GenerationError(f"Generation engine rejected the request (HTTP {status}): {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("Generation engine returned invalid JSON") from exc
        candidates = parse_candidates(data)
        logger.debug("Engine returned %s candidates for %s", len(candidates), key.label)
        return candidates[:count] if count > 0 else candidates

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["GenerationEngine", "HttpGenerationEngine", "parse_candidates"]
