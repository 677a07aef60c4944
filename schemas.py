"""Pydantic request and response models for the HTTP surface."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

__all__ = [
    "LearnerProfileBody",
    "GenerateStoryBody",
    "StoryQuestion",
    "GenerateStoryResponse",
    "LearnerBody",
    "RewriteBody",
    "ReadingCompletedBody",
    "SessionAnswer",
    "FinalizeSessionBody",
    "FinalizeSessionResponse",
    "SkillRatingResponse",
]

QuestionType = Literal["literal", "inference", "vocabulary", "summary"]


class LearnerProfileBody(BaseModel):
    learner_id: str = Field(min_length=1)
    display_name: str | None = None
    age_years: int = Field(default=7, ge=3, le=14)
    reading_level: float = Field(default=1.0, ge=1.0, le=10.0)
    tone: int = Field(default=3, ge=1, le=5, description="1 = very calm, 5 = very playful.")
    interests: List[str] = Field(default_factory=list)
    favorite_characters: str | None = None
    personal_context: str | None = Field(
        default=None,
        description="Free text about the child (family, pets, places) woven into stories.",
    )


class GenerateStoryBody(BaseModel):
    learner_id: str = Field(min_length=1)
    topic_slug: str | None = Field(
        default=None,
        description="Catalogue slug, a legacy alias, or 'custom:<free text>'. Omit to let the router choose.",
    )
    force_regenerate: bool = False
    trace_id: str | None = Field(default=None, description="Client-chosen id so the trace can be polled early.")
    level_override: float | None = Field(default=None, ge=1.0, le=10.0)


class StoryQuestion(BaseModel):
    id: str
    type: QuestionType
    prompt: str
    options: List[str]
    correct_index: int = Field(ge=0, le=3)
    explanation: str | None = None
    difficulty: int = Field(default=3, ge=1, le=5)
    position: int = 0


class GenerateStoryResponse(BaseModel):
    ok: bool
    trace_id: str
    story_id: str | None = None
    session_id: str | None = None
    from_cache: bool = False
    title: str | None = None
    body: str | None = None
    level: float | None = None
    topic_slug: str | None = None
    questions: List[StoryQuestion] = Field(default_factory=list)
    questions_pending: bool = False


class LearnerBody(BaseModel):
    learner_id: str = Field(min_length=1)


class RewriteBody(BaseModel):
    learner_id: str = Field(min_length=1)
    direction: Literal["easier", "harder"]


class ReadingCompletedBody(BaseModel):
    learner_id: str = Field(min_length=1)
    reading_time_ms: int = Field(ge=0)
    wpm: float | None = Field(default=None, ge=0)


class SessionAnswer(BaseModel):
    question_id: str
    type: QuestionType
    selected_option: int = Field(ge=0, le=3)
    is_correct: bool
    response_time_ms: int | None = Field(default=None, ge=0)


class FinalizeSessionBody(BaseModel):
    learner_id: str = Field(min_length=1)
    reading_time_ms: int = Field(ge=0)
    answers: List[SessionAnswer] = Field(min_length=1, max_length=4)
    wpm: float | None = Field(default=None, ge=0)


class FinalizeSessionResponse(BaseModel):
    correct: int
    total: int
    comprehension_score: int = Field(description="Percentage of correct answers, 0-100.")
    stars: int = Field(ge=0, le=3)
    session_score: float
    direction: Literal["up", "hold", "down"]
    level_before: float
    level_after: float
    reason: str
    global_rating: float | None = None
    previous_global_rating: float | None = None
    rating_label: str | None = None


class SkillRatingResponse(BaseModel):
    learner_id: str
    ratings: Dict[str, float]
    label: str
    history: Optional[List[Dict[str, Any]]] = None
