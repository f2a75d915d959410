"""Content hashing and uniqueness checks for generated items."""
from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, Set, Tuple

from .domain import CategoryKey
from .models import ContentPayload, utcnow
from .repositories import ContentPoolRepository, DeliveryLedgerRepository


_WHITESPACE = re.compile(r"\s+")
# "A.", "b)", "(c)", "1-", "أ." and similar list markers in front of an option.
_OPTION_LABEL = re.compile(r"^\(?(?:[a-z]|\d{1,2}|[ء-ي])\s*[\.\)\-:]\s+")


def normalize_text(text: str) -> str:
    normalized = unicodedata.normalize("NFKC", text or "").casefold()
    return _WHITESPACE.sub(" ", normalized).strip()


def normalize_option(option: str) -> str:
    return _OPTION_LABEL.sub("", normalize_text(option), count=1)


def content_hash(question_text: str, options: Sequence[str]) -> str:
    """Fingerprint of an item's semantic content.

    Option order, labels, case and whitespace do not influence the result.
    """

    document = {
        "question": normalize_text(question_text),
        "options": sorted(normalize_option(option) for option in options),
    }
    canonical = json.dumps(document, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DedupScope:
    """Where a hash must be unique: one category key, and optionally a user's history."""

    key: CategoryKey
    user_id: Optional[str] = None
    window: Optional[timedelta] = None


class DeduplicationIndex:
    def __init__(
        self,
        pool_repo: ContentPoolRepository,
        ledger: DeliveryLedgerRepository,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._pool_repo = pool_repo
        self._ledger = ledger
        self._clock = clock

    @staticmethod
    def hash(payload: ContentPayload) -> str:
        return content_hash(payload.question_text, payload.options)

    def is_duplicate(self, hash_value: str, scope: DedupScope) -> bool:
        if self._pool_repo.hash_exists(scope.key, hash_value):
            return True
        if scope.window is None:
            return False
        since = self._clock() - scope.window
        if scope.user_id is not None:
            return self._ledger.was_delivered(scope.user_id, hash_value, since)
        return self._ledger.delivered_recently(hash_value, since)

    def filter_unique(
        self, candidates: Iterable[ContentPayload], scope: DedupScope
    ) -> Tuple[List[Tuple[ContentPayload, str]], int]:
        """Split candidates into unseen ``(payload, hash)`` pairs and a duplicate count."""

        unique: List[Tuple[ContentPayload, str]] = []
        seen: Set[str] = set()
        duplicates = 0
        for payload in candidates:
            hash_value = self.hash(payload)
            if hash_value in seen or self.is_duplicate(hash_value, scope):
                duplicates += 1
                continue
            seen.add(hash_value)
            unique.append((payload, hash_value))
        return unique, duplicates


__all__ = [
    "DedupScope",
    "DeduplicationIndex",
    "content_hash",
    "normalize_option",
    "normalize_text",
]
