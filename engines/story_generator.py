"""Story, question and rewrite generation on top of the model invoker and QA rubric."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from engines.errors import GENERATION_FAILED, QA_REJECTED
from engines.model_invoker import LLMUsage, ModelInvoker
from engines.prompts import (
    QUESTION_TYPES,
    PedagogicalProfile,
    RewriteDirection,
    build_questions_system_prompt,
    build_questions_user_prompt,
    build_rewrite_prompt,
    build_story_only_system_prompt,
    build_story_only_user_prompt,
    build_system_prompt,
    build_user_prompt,
    rewrite_target_level,
)
from engines.validation import (
    QAResult,
    compute_story_metadata,
    evaluate_questions,
    evaluate_story,
    evaluate_story_only,
    validate_questions_structure,
    validate_story_only_structure,
    validate_story_structure,
)
from env_validation import get_env_int
from topics import normalize_text

logger = logging.getLogger(__name__)

# Transport retries per model call, and rubric retries per generation.
MAX_LLM_RETRIES = 1
MAX_QA_RETRIES = 1

DEFAULT_EXPLANATION = "The correct answer is the one that best matches what the story tells."

_TYPE_ALIASES: Sequence[tuple[str, tuple[str, ...]]] = (
    ("literal", ("literal", "explicit", "text")),
    ("inference", ("inferen", "deduc", "implic")),
    ("vocabulary", ("vocab", "word", "meaning")),
    ("summary", ("summary", "main", "theme")),
)
_LETTER_INDEX = {"a": 0, "b": 1, "c": 2, "d": 3}


@dataclass
class GeneratedStory:
    title: str
    body: str
    vocabulary: List[str]
    metadata: Dict[str, Any]
    questions: List[Dict[str, Any]]
    model: Optional[str]
    approved: bool
    rejection_reason: Optional[str] = None
    usage: LLMUsage = field(default_factory=LLMUsage)
    level: Optional[float] = None


@dataclass
class StoryResult:
    ok: bool
    story: Optional[GeneratedStory] = None
    error: Optional[str] = None
    code: Optional[str] = None
    # Last candidate the rubric rejected, kept for auditing.
    rejected: Optional[GeneratedStory] = None


@dataclass
class QuestionsResult:
    ok: bool
    questions: List[Dict[str, Any]] = field(default_factory=list)
    model: Optional[str] = None
    usage: LLMUsage = field(default_factory=LLMUsage)
    error: Optional[str] = None
    code: Optional[str] = None


# ----------------------------------------------------------------
# Question payload normalization
# ----------------------------------------------------------------
def canonical_question_type(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    normalized = normalize_text(value)
    if not normalized:
        return None
    for canonical, needles in _TYPE_ALIASES:
        if any(needle in normalized for needle in needles):
            return canonical
    return None


def _extract_options(raw: Any) -> Optional[List[str]]:
    if isinstance(raw, list):
        options = [item.strip() for item in raw if isinstance(item, str) and item.strip()][:4]
        return options if len(options) == 4 else None
    if not isinstance(raw, Mapping):
        return None
    by_letter = [raw.get(key, raw.get(key.upper())) for key in ("a", "b", "c", "d")]
    if all(isinstance(value, str) and value.strip() for value in by_letter):
        return [value.strip() for value in by_letter]
    values = [value.strip() for value in raw.values() if isinstance(value, str) and value.strip()][:4]
    return values if len(values) == 4 else None


def _extract_correct_index(raw: Any, options: Sequence[str]) -> Optional[int]:
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw if 0 <= raw <= 3 else None
    if not isinstance(raw, str):
        return None
    cleaned = raw.strip().lower()
    if not cleaned:
        return None
    if cleaned.isdigit():
        value = int(cleaned)
        return value if 0 <= value <= 3 else None
    if cleaned in _LETTER_INDEX:
        return _LETTER_INDEX[cleaned]
    target = normalize_text(cleaned)
    for index, option in enumerate(options):
        if normalize_text(option) == target:
            return index
    return None


def _normalize_difficulty(raw: Any) -> int:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 3
    if value != value:
        return 3
    return max(1, min(5, int(round(value))))


def normalize_questions(payload: Any) -> Optional[Dict[str, List[Dict[str, Any]]]]:
    """Coerce a loosely shaped questions payload into one question per type.

    Returns ``None`` unless all four types can be recovered.
    """
    if not isinstance(payload, Mapping):
        return None
    raw_questions = payload.get("questions")
    if not isinstance(raw_questions, list):
        return None

    by_type: Dict[str, Dict[str, Any]] = {}
    for item in raw_questions:
        if not isinstance(item, Mapping):
            continue
        question_type = canonical_question_type(item.get("type", item.get("category")))
        prompt_raw = item.get("prompt", item.get("question"))
        prompt = prompt_raw.strip() if isinstance(prompt_raw, str) else ""
        options = _extract_options(item.get("options", item.get("choices")))
        correct = None
        if options:
            correct = _extract_correct_index(
                item.get("correct_index", item.get("correct_answer", item.get("answer"))), options
            )
        if not question_type or not prompt or not options or correct is None:
            continue
        if question_type in by_type:
            continue
        explanation = item.get("explanation")
        explanation = explanation.strip() if isinstance(explanation, str) else ""
        by_type[question_type] = {
            "type": question_type,
            "prompt": prompt,
            "options": options,
            "correct_index": correct,
            "explanation": explanation or DEFAULT_EXPLANATION,
            "difficulty": _normalize_difficulty(item.get("difficulty")),
        }

    if len(by_type) != len(QUESTION_TYPES):
        return None
    return {"questions": [by_type[question_type] for question_type in QUESTION_TYPES]}


def _clean_questions(raw: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": str(question["type"]).strip().lower(),
            "prompt": str(question["prompt"]).strip(),
            "options": [str(option).strip() for option in question["options"]],
            "correct_index": int(question["correct_index"]),
            "explanation": (question.get("explanation") or DEFAULT_EXPLANATION).strip(),
            "difficulty": int(question.get("difficulty") or 3),
        }
        for question in raw
    ]


# ----------------------------------------------------------------
# Generator
# ----------------------------------------------------------------
class StoryGenerator:
    """Runs prompt → model → rubric with bounded rubric retries."""

    def __init__(self, invoker: Optional[ModelInvoker] = None):
        self.invoker = invoker or ModelInvoker()

    def _build_story(
        self,
        parsed: Mapping[str, Any],
        qa: QAResult,
        *,
        age_years: int,
        level: float,
        tone: int,
        model: Optional[str],
        usage: LLMUsage,
        with_questions: bool,
    ) -> GeneratedStory:
        vocabulary = [str(word) for word in parsed.get("vocabulary") or [] if str(word).strip()]
        metadata = compute_story_metadata(str(parsed["body"]), age_years, level)
        metadata.update({"vocabulary": vocabulary, "tone": int(tone), "fun_mode": int(tone) >= 4})
        return GeneratedStory(
            title=str(parsed["title"]).strip(),
            body=str(parsed["body"]).strip(),
            vocabulary=vocabulary,
            metadata=metadata,
            questions=_clean_questions(parsed.get("questions") or []) if with_questions else [],
            model=model,
            approved=qa.approved,
            rejection_reason=qa.reason,
            usage=usage,
            level=level,
        )

    def _generate(
        self,
        profile: PedagogicalProfile,
        *,
        with_questions: bool,
        learner_id: Optional[str],
    ) -> StoryResult:
        purpose = "story" if with_questions else "story_only"
        system_prompt = build_system_prompt() if with_questions else build_story_only_system_prompt()
        check_structure = validate_story_structure if with_questions else validate_story_only_structure
        evaluate = evaluate_story if with_questions else evaluate_story_only
        max_tokens = get_env_int("LLM_MAX_TOKENS_STORY", 1200)

        last_error = ""
        rejected: Optional[GeneratedStory] = None
        for attempt in range(MAX_QA_RETRIES + 1):
            hint = last_error if attempt > 0 else None
            if with_questions:
                user_prompt = build_user_prompt(profile, retry_hint=hint, attempt=attempt + 1)
            else:
                user_prompt = build_story_only_user_prompt(profile, retry_hint=hint, attempt=attempt + 1)

            outcome = self.invoker.invoke(
                system_prompt,
                user_prompt,
                max_retries=MAX_LLM_RETRIES,
                temperature=0.8 + 0.05 * attempt,
                max_tokens=max_tokens,
                model_env_var="LLM_MODEL_STORY",
                purpose=f"{purpose}[{attempt}]",
                learner_id=learner_id,
            )
            if not outcome.ok:
                return StoryResult(ok=False, error=outcome.error, code=outcome.code, rejected=rejected)

            parsed = outcome.parsed or {}
            if not check_structure(parsed):
                last_error = "Invalid response structure"
                logger.warning("%s QA retry %s/%s: %s", purpose, attempt + 1, MAX_QA_RETRIES + 1, last_error)
                continue

            qa = evaluate(parsed, profile.level, recent_titles=profile.recent_titles)
            story = self._build_story(
                parsed,
                qa,
                age_years=profile.age_years,
                level=profile.level,
                tone=profile.tone,
                model=outcome.model,
                usage=outcome.usage,
                with_questions=with_questions,
            )
            if not qa.approved:
                last_error = qa.reason or "Rejected by QA"
                rejected = story
                logger.warning("%s QA retry %s/%s: %s", purpose, attempt + 1, MAX_QA_RETRIES + 1, last_error)
                continue
            return StoryResult(ok=True, story=story)

        code = QA_REJECTED if rejected is not None else GENERATION_FAILED
        return StoryResult(ok=False, error=last_error, code=code, rejected=rejected)

    def generate_story(self, profile: PedagogicalProfile, *, learner_id: Optional[str] = None) -> StoryResult:
        """Single call producing the story and its four questions."""
        return self._generate(profile, with_questions=True, learner_id=learner_id)

    def generate_story_only(self, profile: PedagogicalProfile, *, learner_id: Optional[str] = None) -> StoryResult:
        return self._generate(profile, with_questions=False, learner_id=learner_id)

    def generate_questions(
        self,
        *,
        title: str,
        body: str,
        age_years: int,
        level: float,
        topic_name: Optional[str] = None,
        learner_id: Optional[str] = None,
    ) -> QuestionsResult:
        outcome = self.invoker.invoke(
            build_questions_system_prompt(),
            build_questions_user_prompt(
                title=title, body=body, age_years=age_years, level=level, topic_name=topic_name
            ),
            max_retries=MAX_LLM_RETRIES,
            temperature=0.6,
            max_tokens=get_env_int("LLM_MAX_TOKENS_QUESTIONS", 650),
            model_env_var="LLM_MODEL_QUESTIONS",
            purpose="questions",
            learner_id=learner_id,
        )
        if not outcome.ok:
            return QuestionsResult(ok=False, error=outcome.error, code=outcome.code, model=outcome.model)

        normalized = normalize_questions(outcome.parsed)
        if normalized is None or not validate_questions_structure(normalized):
            return QuestionsResult(
                ok=False, error="Invalid questions structure", code=GENERATION_FAILED, model=outcome.model
            )

        qa = evaluate_questions(normalized)
        if not qa.approved:
            return QuestionsResult(ok=False, error=qa.reason, code=QA_REJECTED, model=outcome.model)

        return QuestionsResult(
            ok=True, questions=normalized["questions"], model=outcome.model, usage=outcome.usage
        )

    def rewrite_story(
        self,
        *,
        title: str,
        body: str,
        current_level: float,
        direction: RewriteDirection,
        age_years: int,
        topic_name: str,
        tone: int = 3,
        learner_id: Optional[str] = None,
    ) -> StoryResult:
        """Re-level an existing story one step easier or harder."""

        target_level = rewrite_target_level(current_level, direction)
        outcome = self.invoker.invoke(
            build_system_prompt(),
            build_rewrite_prompt(
                title=title,
                body=body,
                current_level=current_level,
                direction=direction,
                age_years=age_years,
                topic_name=topic_name,
            ),
            max_retries=MAX_LLM_RETRIES,
            temperature=0.7,
            max_tokens=get_env_int("LLM_MAX_TOKENS_REWRITE", 1200),
            model_env_var="LLM_MODEL_REWRITE",
            purpose="rewrite",
            learner_id=learner_id,
        )
        if not outcome.ok:
            return StoryResult(ok=False, error=outcome.error, code=outcome.code)

        parsed = outcome.parsed or {}
        if not validate_story_structure(parsed):
            return StoryResult(ok=False, error="Invalid response structure", code=GENERATION_FAILED)

        qa = evaluate_story(parsed, target_level)
        story = self._build_story(
            parsed,
            qa,
            age_years=age_years,
            level=target_level,
            tone=tone,
            model=outcome.model,
            usage=outcome.usage,
            with_questions=True,
        )
        if not qa.approved:
            return StoryResult(ok=False, error=qa.reason, code=QA_REJECTED, rejected=story)
        return StoryResult(ok=True, story=story)
