"""Validation utilities for generated candidates prior to pooling."""
from __future__ import annotations

import re
from typing import Iterable, List, Tuple

from .models import ContentPayload, GenerationCandidate


FORBIDDEN_PATTERNS = (
    re.compile(r"\bTODO\b", re.IGNORECASE),
    re.compile(r"\bTBD\b", re.IGNORECASE),
    re.compile(r"lorem ipsum", re.IGNORECASE),
    re.compile(r"\?{3,}"),
)
BANNED_ANSWERS = (
    re.compile(r"^\s*all of the above\s*\.?\s*$", re.IGNORECASE),
    re.compile(r"^\s*none of the above\s*\.?\s*$", re.IGNORECASE),
)
ANSWER_LABEL = re.compile(r"^\(?([a-zA-Z]|\d{1,2})\)?[\.\):]?$")
OPTION_LABEL = re.compile(r"^\(?([a-zA-Z]|\d{1,2})\s*[\.\):\-]\s+")
MIN_OPTIONS = 2


class CandidateValidationError(ValueError):
    """Raised when a generated candidate is unfit for the pool."""


def _assert_forbidden_patterns(text: str, context: str) -> None:
    for pattern in FORBIDDEN_PATTERNS:
        if pattern.search(text):
            raise CandidateValidationError(f"Forbidden pattern detected in {context}: '{pattern.pattern}'")


def _strip_label(option: str) -> str:
    return OPTION_LABEL.sub("", option.strip(), count=1).strip()


def resolve_answer(answer: str, options: List[str]) -> int:
    """Return the index of the option the answer designates, or -1.

    The answer may repeat the option text (with or without its label) or name
    the option by letter or 1-based number.
    """

    cleaned = answer.strip()
    folded = cleaned.casefold()
    for index, option in enumerate(options):
        if folded in (option.strip().casefold(), _strip_label(option).casefold()):
            return index
    stripped_answer = _strip_label(cleaned).casefold()
    for index, option in enumerate(options):
        if stripped_answer and stripped_answer == _strip_label(option).casefold():
            return index
    match = ANSWER_LABEL.match(cleaned)
    if match:
        label = match.group(1)
        index = int(label) - 1 if label.isdigit() else ord(label.lower()) - ord("a")
        if 0 <= index < len(options):
            return index
    return -1


def validate_candidate(candidate: GenerationCandidate) -> ContentPayload:
    """Validate a generated candidate and return it as a pool payload."""

    question = candidate.question_text.strip()
    if not question:
        raise CandidateValidationError("Candidate question text is empty")
    options = [option.strip() for option in candidate.options]
    if len(options) < MIN_OPTIONS:
        raise CandidateValidationError("Candidates must provide at least two options")
    if any(not option for option in options):
        raise CandidateValidationError("Candidate options must be non-empty")
    if len({_strip_label(option).casefold() for option in options}) != len(options):
        raise CandidateValidationError("Candidate options must be distinct")
    if not candidate.explanation.strip():
        raise CandidateValidationError("Candidate explanation is empty")
    if not candidate.topic.strip():
        raise CandidateValidationError("Candidate topic is empty")

    _assert_forbidden_patterns(question, "question")
    _assert_forbidden_patterns(candidate.explanation, "explanation")
    for option in options:
        _assert_forbidden_patterns(option, "option")

    answer_index = resolve_answer(candidate.correct_answer, options)
    if answer_index < 0:
        raise CandidateValidationError("Correct answer must match one of the provided options")
    answer = options[answer_index]
    if any(pattern.match(_strip_label(answer)) for pattern in BANNED_ANSWERS):
        raise CandidateValidationError("Catch-all answers are not allowed")

    payload = candidate.to_payload()
    payload.options = options
    payload.correct_answer = answer
    return payload


def partition_valid(candidates: Iterable[GenerationCandidate]) -> Tuple[List[ContentPayload], int]:
    valid: List[ContentPayload] = []
    rejected = 0
    for candidate in candidates:
        try:
            valid.append(validate_candidate(candidate))
        except ValueError:
            rejected += 1
    return valid, rejected


__all__ = [
    "CandidateValidationError",
    "partition_valid",
    "resolve_answer",
    "validate_candidate",
]
