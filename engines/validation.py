"""Structure checks and the content rubric for generated stories and questions.

Every check here is pure and synchronous. The structure validators answer a
yes/no shape question; the ``evaluate_*`` functions run the ordered rubric
and report the first rejection only.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from content_policy import ContentPolicy, active_policy
from engines.prompts import QUESTION_TYPES, level_config
from topics import normalize_text


class ValidationError(Exception):
    """Base class for validation errors."""
    pass


class AnswerValidationError(ValidationError):
    """Raised when submitted session answers are malformed."""
    pass


@dataclass(frozen=True)
class QAResult:
    approved: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "QAResult":
        return cls(True)

    @classmethod
    def reject(cls, reason: str) -> "QAResult":
        return cls(False, reason)


# ----------------------------------------------------------------
# Structure checks
# ----------------------------------------------------------------
def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_question_structure(question: Any) -> bool:
    if not isinstance(question, Mapping):
        return False
    if not _non_empty_str(question.get("type")):
        return False
    if not _non_empty_str(question.get("prompt")):
        return False
    options = question.get("options")
    if not isinstance(options, list) or len(options) != 4:
        return False
    if not all(isinstance(option, str) for option in options):
        return False
    index = question.get("correct_index")
    if not _is_int(index) or not 0 <= index <= 3:
        return False
    explanation = question.get("explanation")
    if explanation is not None and not isinstance(explanation, str):
        return False
    difficulty = question.get("difficulty")
    if difficulty is not None and (not _is_int(difficulty) or not 1 <= difficulty <= 5):
        return False
    return True


def validate_story_only_structure(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    if not _non_empty_str(data.get("title")) or not _non_empty_str(data.get("body")):
        return False
    vocabulary = data.get("vocabulary", [])
    return isinstance(vocabulary, list)


def validate_questions_structure(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    questions = data.get("questions")
    if not isinstance(questions, list) or len(questions) != 4:
        return False
    return all(validate_question_structure(question) for question in questions)


def validate_story_structure(data: Any) -> bool:
    """Shape check for the combined story + questions payload."""
    return validate_story_only_structure(data) and validate_questions_structure(data)


# ----------------------------------------------------------------
# Rubric helpers
# ----------------------------------------------------------------
def count_words(text: str) -> int:
    return len(text.split())


def _title_tokens(title: str) -> set[str]:
    return {token for token in normalize_text(title).split(" ") if len(token) >= 2}


def dice_similarity(a: str, b: str) -> float:
    """Dice coefficient over normalized title tokens of two or more characters."""

    tokens_a = _title_tokens(a)
    tokens_b = _title_tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return 2.0 * len(tokens_a & tokens_b) / (len(tokens_a) + len(tokens_b))


def _unsafe_term(text: str, policy: ContentPolicy) -> Optional[str]:
    lowered = text.lower()
    for term in policy.unsafe_terms:
        if term in lowered:
            return term
    return None


def _length_issue(body: str, level: float, policy: ContentPolicy) -> Optional[str]:
    config = level_config(level)
    words = count_words(body)
    if words < config.words_min * (1 - policy.length_tolerance):
        return f"Story too short: {words} words (minimum ~{config.words_min})"
    if words > config.words_max * (1 + policy.length_tolerance):
        return f"Story too long: {words} words (maximum ~{config.words_max})"
    return None


def _missing_type(questions: Sequence[Mapping[str, Any]]) -> Optional[str]:
    present = {str(question.get("type", "")).strip().lower() for question in questions}
    for question_type in QUESTION_TYPES:
        if question_type not in present:
            return f"Missing question of type: {question_type}"
    return None


def _option_issue(questions: Sequence[Mapping[str, Any]]) -> Optional[str]:
    for question in questions:
        label = question.get("type", "?")
        options = [str(option) for option in question.get("options", [])]
        normalized = [normalize_text(option) for option in options]
        if len(set(normalized)) != len(normalized):
            return f'Question "{label}" has duplicate options'
        index = question.get("correct_index")
        if not _is_int(index) or not 0 <= index < len(options):
            return f'Question "{label}" has an invalid answer index'
        if not options[index].strip():
            return f'Question "{label}" has an empty correct option'
    return None


def _duplicate_title(title: str, recent_titles: Iterable[str], policy: ContentPolicy) -> Optional[str]:
    candidate = normalize_text(title)
    for previous in recent_titles:
        if not previous:
            continue
        if candidate == normalize_text(previous) or dice_similarity(title, previous) >= policy.duplicate_title_threshold:
            return f'Title too similar to a recent story: "{previous}"'
    return None


def _flat_opening(body: str, policy: ContentPolicy) -> bool:
    opening = normalize_text(body[: policy.opening_window_chars * 2])[: policy.opening_window_chars]
    return any(opening.startswith(normalize_text(phrase)) for phrase in policy.flat_openings)


def _has_narrative_connective(body: str, policy: ContentPolicy) -> bool:
    padded = f" {normalize_text(body)} "
    return any(f" {normalize_text(phrase)} " in padded for phrase in policy.narrative_connectives)


def _story_rubric(
    story: Mapping[str, Any],
    level: float,
    *,
    questions: Optional[Sequence[Mapping[str, Any]]],
    recent_titles: Iterable[str],
    policy: ContentPolicy,
) -> QAResult:
    title = str(story.get("title", ""))
    body = str(story.get("body", ""))

    term = _unsafe_term(f"{title} {body}", policy)
    if term:
        return QAResult.reject(f'Unsafe content: contains "{term}"')

    issue = _length_issue(body, level, policy)
    if issue:
        return QAResult.reject(issue)

    if questions is not None:
        issue = _missing_type(questions) or _option_issue(questions)
        if issue:
            return QAResult.reject(issue)

    if len(title.strip()) < 3:
        return QAResult.reject("Title too short")

    issue = _duplicate_title(title, recent_titles, policy)
    if issue:
        return QAResult.reject(issue)

    if _flat_opening(body, policy):
        return QAResult.reject("Flat opening: start with curiosity, action or surprise")

    if not _has_narrative_connective(body, policy):
        return QAResult.reject("No narrative progression: the story needs connectives such as 'one day' or 'finally'")

    return QAResult.ok()


# ----------------------------------------------------------------
# Public rubric entry points
# ----------------------------------------------------------------
def evaluate_story(
    story: Mapping[str, Any],
    level: float,
    *,
    recent_titles: Iterable[str] = (),
    policy: Optional[ContentPolicy] = None,
) -> QAResult:
    """Full rubric for a combined story + questions candidate."""

    return _story_rubric(
        story,
        level,
        questions=list(story.get("questions") or []),
        recent_titles=recent_titles,
        policy=policy or active_policy(),
    )


def evaluate_story_only(
    story: Mapping[str, Any],
    level: float,
    *,
    recent_titles: Iterable[str] = (),
    policy: Optional[ContentPolicy] = None,
) -> QAResult:
    return _story_rubric(
        story,
        level,
        questions=None,
        recent_titles=recent_titles,
        policy=policy or active_policy(),
    )


def evaluate_questions(payload: Mapping[str, Any]) -> QAResult:
    questions = list(payload.get("questions") or [])
    issue = _missing_type(questions) or _option_issue(questions)
    if issue:
        return QAResult.reject(issue)
    return QAResult.ok()


def compute_story_metadata(body: str, age_years: int, level: float) -> Dict[str, Any]:
    words = body.split()
    sentences = [chunk for chunk in re.split(r"[.!?]+", body) if chunk.strip()]
    avg_sentence = round(len(words) / len(sentences)) if sentences else len(words)
    return {
        "word_count": len(words),
        "avg_sentence_length": avg_sentence,
        "target_age": int(age_years),
        "expected_reading_time_ms": level_config(level).expected_time_ms,
    }


# ----------------------------------------------------------------
# Session answers
# ----------------------------------------------------------------
def validate_session_answers(answers: Any) -> List[Dict[str, Any]]:
    """Validate finalization answers and return them as plain dicts.

    Raises AnswerValidationError if validation fails.
    """
    if not isinstance(answers, (list, tuple)):
        raise AnswerValidationError("Answers must be a list")
    if not 1 <= len(answers) <= 4:
        raise AnswerValidationError("Between 1 and 4 answers are required")

    cleaned: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for position, raw in enumerate(answers, start=1):
        if not isinstance(raw, Mapping):
            raise AnswerValidationError(f"Answer #{position} must be an object")
        question_id = raw.get("question_id")
        if not _non_empty_str(question_id):
            raise AnswerValidationError(f"Answer #{position} is missing question_id")
        if question_id in seen:
            raise AnswerValidationError(f"Question {question_id} answered twice")
        seen.add(question_id)

        question_type = raw.get("type")
        if question_type not in QUESTION_TYPES:
            raise AnswerValidationError(f"Answer #{position} has unknown type {question_type!r}")

        selected = raw.get("selected_option")
        if not _is_int(selected) or not 0 <= selected <= 3:
            raise AnswerValidationError(f"Answer #{position} selected_option must be within 0-3")

        is_correct = raw.get("is_correct")
        if not isinstance(is_correct, bool):
            raise AnswerValidationError(f"Answer #{position} is_correct must be a boolean")

        response_time = raw.get("response_time_ms")
        if response_time is not None and (not _is_int(response_time) or response_time < 0):
            raise AnswerValidationError(f"Answer #{position} response_time_ms must be a non-negative integer")

        cleaned.append(
            {
                "question_id": question_id,
                "type": question_type,
                "selected_option": selected,
                "is_correct": is_correct,
                "response_time_ms": response_time,
            }
        )
    return cleaned
