"""Pydantic models for the content coordinator API and generation payloads."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


PracticeContextName = Literal[
    "initial_assessment", "weakness_targeting", "strength_building", "daily_practice"
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentPayload(BaseModel):
    """Question content stored with a pooled item."""

    question_text: str
    options: List[str]
    correct_answer: str
    explanation: str = ""
    difficulty: str = "medium"
    topic: str = "general"

    @field_validator("options")
    @classmethod
    def validate_options(cls, value: List[str]) -> List[str]:
        if len(value) < 2:
            raise ValueError("Items require at least two options")
        return value


class GenerationCandidate(BaseModel):
    """Raw item proposed by the generation engine, validated before pooling."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    question_text: str = Field(
        default="", validation_alias=AliasChoices("question_text", "questionText", "question")
    )
    options: List[str] = Field(default_factory=list)
    correct_answer: str = Field(
        default="", validation_alias=AliasChoices("correct_answer", "correctAnswer")
    )
    explanation: str = ""
    difficulty: str = "medium"
    topic: str = ""

    def to_payload(self) -> ContentPayload:
        return ContentPayload(
            question_text=self.question_text.strip(),
            options=[option.strip() for option in self.options],
            correct_answer=self.correct_answer.strip(),
            explanation=self.explanation.strip(),
            difficulty=self.difficulty,
            topic=self.topic.strip(),
        )


class PerformanceEvent(BaseModel):
    """One answered item, pushed by quiz and exercise completion flows."""

    user_id: str
    topic: str
    section: str
    test_type: str
    is_correct: bool
    time_spent_seconds: float = Field(default=0.0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)
    content_hash: Optional[str] = None

    @field_validator("user_id", "topic", "section", "test_type")
    @classmethod
    def validate_identifiers(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must be a non-empty string")
        return cleaned

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ContentRequest(BaseModel):
    """Input body for POST /v1/content."""

    user_id: str = Field(min_length=1)
    test_type: str = Field(min_length=1)
    section: str = Field(min_length=1)
    difficulty: str = Field(min_length=1)
    track: str = "general"
    count: int = Field(default=10, ge=1, le=50)
    practice_context: PracticeContextName = "daily_practice"


class DeliveredItem(BaseModel):
    item_id: str
    lease_token: str
    content_hash: str
    lease_expiry: datetime
    payload: ContentPayload


class FocusTopic(BaseModel):
    topic: str
    weakness_score: float
    priority: str
    trend: str


class PersonalizationMeta(BaseModel):
    """Informational summary of the plan used for a request (display only)."""

    level: str
    overall_success_rate: float
    sample_temperature: float
    practice_context: str
    focus_topics: List[FocusTopic] = Field(default_factory=list)


class ContentResponse(BaseModel):
    items: List[DeliveredItem]
    personalization_meta: PersonalizationMeta
    retry_after_seconds: Optional[float] = None


class LeaseActionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    lease_token: str = Field(min_length=1)


class LeaseActionResponse(BaseModel):
    item_id: str
    ok: bool


class PerformanceAccepted(BaseModel):
    accepted: bool


class WeaknessRecordOut(BaseModel):
    topic: str
    section: str
    test_type: str
    attempts: int
    correct_attempts: int
    success_rate: float
    weakness_score: float
    priority: str
    trend: str
    avg_time_seconds: Optional[float] = None
    last_updated: datetime


class WeaknessListResponse(BaseModel):
    user_id: str
    records: List[WeaknessRecordOut]


class DeliveryOut(BaseModel):
    content_hash: str
    delivered_at: datetime


class DeliveryHistoryResponse(BaseModel):
    user_id: str
    deliveries: List[DeliveryOut]


class PrefillConfig(BaseModel):
    test_type: str = Field(min_length=1)
    section: str = Field(min_length=1)
    difficulty: str = Field(min_length=1)
    track: str = "general"
    count: int = Field(default=20, ge=1, le=200)


class PrefillRequest(BaseModel):
    configs: List[PrefillConfig] = Field(min_length=1)


class ReplenishmentOut(BaseModel):
    key: str
    status: str
    requested: int
    generated: int
    inserted: int
    duplicates: int
    invalid: int
    error: Optional[str] = None
    retry_after_seconds: Optional[float] = None


class KeyStatsOut(BaseModel):
    available: int
    reserved: int
    used: int


class PoolStatsResponse(BaseModel):
    stats: Dict[str, KeyStatsOut]


class PrefillResponse(BaseModel):
    results: List[ReplenishmentOut]
    stats: Dict[str, KeyStatsOut]


class RefillRequest(BaseModel):
    keys: Optional[List[str]] = None


class CleanPoolRequest(BaseModel):
    max_age_days: int = Field(default=30, ge=0)


class CleanPoolResponse(BaseModel):
    purged_items: int
    purged_deliveries: int


class SweepResponse(BaseModel):
    reclaimed: int


__all__ = [
    "CleanPoolRequest",
    "CleanPoolResponse",
    "ContentPayload",
    "ContentRequest",
    "ContentResponse",
    "DeliveredItem",
    "DeliveryHistoryResponse",
    "DeliveryOut",
    "FocusTopic",
    "GenerationCandidate",
    "KeyStatsOut",
    "LeaseActionRequest",
    "LeaseActionResponse",
    "PerformanceAccepted",
    "PerformanceEvent",
    "PersonalizationMeta",
    "PoolStatsResponse",
    "PrefillConfig",
    "PrefillRequest",
    "RefillRequest",
    "PrefillResponse",
    "ReplenishmentOut",
    "SweepResponse",
    "WeaknessListResponse",
    "WeaknessRecordOut",
    "utcnow",
]
