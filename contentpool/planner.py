"""Personalization planning: learner level, sampling temperature and target topics."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .config import PlannerConfig
from .domain import (
    CategoryKey,
    PersonalizationContext,
    PracticeContext,
    StudentLevel,
    WeaknessRecord,
)
from .weakness import WeaknessAggregator


logger = logging.getLogger(__name__)

NO_HISTORY_RATE = 0.5

LEVEL_GUIDANCE = {
    StudentLevel.STRUGGLING: (
        "Prefer clear, direct questions with a single unambiguous answer.",
        "Build from fundamentals before combining concepts.",
        "Explanations should walk through each step of the reasoning.",
    ),
    StudentLevel.INTERMEDIATE: (
        "Mix standard questions with a moderate share of multi-step problems.",
        "Use plausible distractors that reflect common mistakes.",
        "Explanations should name the concept being tested.",
    ),
    StudentLevel.ADVANCED: (
        "Favour multi-step and analytical questions.",
        "Use close distractors that require careful reasoning to rule out.",
        "Explanations may be concise but must justify every rejected option.",
    ),
}

CONTEXT_GUIDANCE = {
    PracticeContext.INITIAL_ASSESSMENT: "Cover the section broadly to establish a baseline.",
    PracticeContext.WEAKNESS_TARGETING: "Concentrate on the weak topics listed above.",
    PracticeContext.STRENGTH_BUILDING: "Stretch the learner slightly beyond their current level.",
    PracticeContext.DAILY_PRACTICE: "Keep a balanced mix of review and new material.",
}


def _as_context(value: Union[str, PracticeContext]) -> PracticeContext:
    if isinstance(value, PracticeContext):
        return value
    try:
        return PracticeContext(value)
    except ValueError:
        raise ValueError(f"Unknown practice context: {value!r}") from None


def classify_level(accuracy: Optional[float], config: Optional[PlannerConfig] = None) -> StudentLevel:
    """Map recent accuracy (0-1) to a level; no history counts as intermediate."""

    config = config or PlannerConfig()
    if accuracy is None:
        return StudentLevel.INTERMEDIATE
    if accuracy < config.struggling_below:
        return StudentLevel.STRUGGLING
    if accuracy < config.advanced_from:
        return StudentLevel.INTERMEDIATE
    return StudentLevel.ADVANCED


def compute_temperature(
    level: StudentLevel,
    practice_context: Union[str, PracticeContext] = PracticeContext.DAILY_PRACTICE,
    config: Optional[PlannerConfig] = None,
) -> float:
    config = config or PlannerConfig()
    context = _as_context(practice_context)
    base = config.base_temperatures[level.value]
    modifier = config.context_modifiers.get(context.value, 0.0)
    clamped = max(config.min_temperature, min(config.max_temperature, base + modifier))
    return round(clamped, 2)


def rank_target_topics(records: List[WeaknessRecord], limit: int) -> List[WeaknessRecord]:
    """Weakest first; ties go to the more urgent priority, then the most recent update."""

    ordered = sorted(
        records,
        key=lambda record: (
            -record.weakness_score,
            record.priority.rank,
            -record.last_updated.timestamp(),
        ),
    )
    return ordered[:limit]


@dataclass
class PromptTopic:
    topic: str
    success_rate: float
    weakness_score: float
    priority: str
    trend: str


@dataclass
class PromptContext:
    """Structured instructions for one generation request.

    ``render`` combines the fields with fixed templates so the same context
    always produces the same text.
    """

    key: CategoryKey
    count: int
    level: StudentLevel
    temperature: float
    practice_context: PracticeContext
    overall_success_rate: float
    weak_topics: List[PromptTopic] = field(default_factory=list)
    target_share: float = 0.0
    target_count: int = 0
    guidance: List[str] = field(default_factory=list)

    @property
    def target_topic_names(self) -> List[str]:
        return [topic.topic for topic in self.weak_topics]

    def render(self) -> str:
        lines = [
            f"Generate {self.count} multiple-choice questions for "
            f"{self.key.test_type} / {self.key.section} at {self.key.difficulty} difficulty "
            f"(track: {self.key.track}).",
            f"Learner level: {self.level.value} "
            f"(recent accuracy {self.overall_success_rate * 100:.0f}%).",
            f"Practice context: {self.practice_context.value}.",
        ]
        if self.weak_topics:
            lines.append("Weak topics (weakest first):")
            for topic in self.weak_topics:
                lines.append(
                    f"- {topic.topic}: success {topic.success_rate:.0f}%, "
                    f"priority {topic.priority}, trend {topic.trend}"
                )
            lines.append(
                f"Devote about {self.target_count} of the {self.count} questions "
                f"({self.target_share * 100:.0f}%) to these topics."
            )
        lines.extend(self.guidance)
        lines.append(
            "Every question needs at least two distinct options, exactly one correct answer "
            "copied from the options, a topic and an explanation."
        )
        return "\n".join(lines)


class PersonalizationPlanner:
    """Combines weakness records and recent accuracy into a sampling plan."""

    def __init__(self, aggregator: WeaknessAggregator, config: Optional[PlannerConfig] = None) -> None:
        self._aggregator = aggregator
        self._config = config or PlannerConfig()

    @property
    def config(self) -> PlannerConfig:
        return self._config

    def plan(
        self,
        user_id: str,
        test_type: str,
        section: str,
        practice_context: Union[str, PracticeContext] = PracticeContext.DAILY_PRACTICE,
    ) -> PersonalizationContext:
        context = _as_context(practice_context)
        accuracy, attempts = self._aggregator.recent_accuracy(user_id, self._config.recent_window)
        level = classify_level(accuracy, self._config)
        records = self._aggregator.get_records(user_id, test_type=test_type, section=section)
        targets = rank_target_topics(records, self._config.max_target_topics)
        plan = PersonalizationContext(
            user_id=user_id,
            level=level,
            overall_success_rate=accuracy if accuracy is not None else NO_HISTORY_RATE,
            total_attempts=attempts,
            sample_temperature=compute_temperature(level, context, self._config),
            practice_context=context,
            target_topics=targets,
        )
        logger.debug(
            "Planned %s for user %s: level=%s temperature=%.2f targets=%s",
            context.value,
            user_id,
            level.value,
            plan.sample_temperature,
            plan.target_topic_names,
        )
        return plan

    def default_plan(self, user_id: str = "system") -> PersonalizationContext:
        """Neutral plan for replenishment that is not driven by a learner."""

        return PersonalizationContext(
            user_id=user_id,
            level=StudentLevel.INTERMEDIATE,
            overall_success_rate=NO_HISTORY_RATE,
            total_attempts=0,
            sample_temperature=compute_temperature(StudentLevel.INTERMEDIATE, config=self._config),
        )

    def build_prompt_context(
        self, plan: PersonalizationContext, key: CategoryKey, count: int
    ) -> PromptContext:
        return build_prompt_context(plan, key, count, self._config)


def build_prompt_context(
    plan: PersonalizationContext,
    key: CategoryKey,
    count: int,
    config: Optional[PlannerConfig] = None,
) -> PromptContext:
    config = config or PlannerConfig()
    weak_topics = [
        PromptTopic(
            topic=record.topic,
            success_rate=round(record.success_rate, 1),
            weakness_score=round(record.weakness_score, 1),
            priority=record.priority.value,
            trend=record.trend.value,
        )
        for record in plan.target_topics
    ]
    share = config.target_share if weak_topics else 0.0
    guidance = list(LEVEL_GUIDANCE[plan.level])
    guidance.append(CONTEXT_GUIDANCE[plan.practice_context])
    return PromptContext(
        key=key,
        count=count,
        level=plan.level,
        temperature=plan.sample_temperature,
        practice_context=plan.practice_context,
        overall_success_rate=plan.overall_success_rate,
        weak_topics=weak_topics,
        target_share=share,
        target_count=round(count * share) if weak_topics else 0,
        guidance=guidance,
    )


__all__ = [
    "PersonalizationPlanner",
    "PromptContext",
    "PromptTopic",
    "build_prompt_context",
    "classify_level",
    "compute_temperature",
    "rank_target_topics",
]
