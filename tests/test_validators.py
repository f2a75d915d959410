"""Tests for generated candidate validation."""

from __future__ import annotations

import pytest

from contentpool.models import GenerationCandidate
from contentpool.validators import (
    CandidateValidationError,
    partition_valid,
    resolve_answer,
    validate_candidate,
)

from conftest import make_candidate


def _candidate(**overrides) -> GenerationCandidate:
    data = {
        "questionText": "Which planet is closest to the Sun?",
        "options": ["A. Mercury", "B. Venus", "C. Earth", "D. Mars"],
        "correctAnswer": "A",
        "explanation": "Mercury orbits nearest to the Sun.",
        "topic": "astronomy",
    }
    data.update(overrides)
    return GenerationCandidate.model_validate(data)


def test_valid_candidate_resolves_letter_answer() -> None:
    payload = validate_candidate(_candidate())
    assert payload.correct_answer == "A. Mercury"
    assert payload.topic == "astronomy"


def test_answer_may_repeat_option_text_without_label() -> None:
    payload = validate_candidate(_candidate(correctAnswer="venus"))
    assert payload.correct_answer == "B. Venus"


def test_resolve_answer_by_number() -> None:
    assert resolve_answer("3", ["x", "y", "z"]) == 2
    assert resolve_answer("q", ["x", "y", "z"]) == -1


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"questionText": "   "}, "question"),
        ({"options": ["Only one"]}, "two options"),
        ({"options": ["Mercury", "mercury"], "correctAnswer": "Mercury"}, "distinct"),
        ({"explanation": ""}, "explanation"),
        ({"topic": ""}, "topic"),
        ({"correctAnswer": "Pluto"}, "match"),
        ({"explanation": "TODO write this"}, "Forbidden"),
        ({"questionText": "Which planet ???"}, "Forbidden"),
    ],
)
def test_invalid_candidates_are_rejected(overrides, message) -> None:
    with pytest.raises(CandidateValidationError, match=message):
        validate_candidate(_candidate(**overrides))


def test_catch_all_answers_are_rejected() -> None:
    candidate = _candidate(
        options=["Mercury", "Venus", "All of the above"], correctAnswer="All of the above"
    )
    with pytest.raises(CandidateValidationError):
        validate_candidate(candidate)


def test_partition_valid_counts_rejections() -> None:
    candidates = [make_candidate(1), _candidate(topic=""), make_candidate(2), _candidate(options=[])]

    valid, rejected = partition_valid(candidates)

    assert rejected == 2
    assert [payload.question_text for payload in valid] == ["What is 1 + 1?", "What is 2 + 2?"]
