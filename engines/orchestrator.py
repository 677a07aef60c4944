"""End-to-end story generation pipeline and the session-level story operations."""

from __future__ import annotations

import logging
import random
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import db
from engines.cache_resolver import CacheResolver
from engines.errors import (
    GENERATION_FAILED,
    NO_API_KEY,
    QA_REJECTED,
    RATE_LIMIT,
    ConflictError,
    GenerationError,
    NotFoundError,
    user_message,
)
from engines.logging_utils import json_log
from engines.prompts import (
    PedagogicalProfile,
    RewriteDirection,
    clamp_prompt_level,
    level_config,
    rewrite_target_level,
)
from engines.story_generator import GeneratedStory, StoryGenerator
from engines.trace import CACHE_SKIPPED_STAGES, GenerationTrace, TraceRecorder
from env_validation import get_env_bool, get_env_int, has_llm_key
from topics import (
    HistoryAwareTopicRouter,
    RouterContext,
    TopicRouter,
    get_topic,
    is_custom_topic,
    parse_custom_topic,
    random_topic_for_age,
    resolve_topic_slug,
    CUSTOM_TOPIC_PREFIX,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_STORIES_PER_DAY = 20
RECENT_TITLES_LIMIT = 5


@dataclass
class GenerationRequest:
    learner_id: str
    topic_slug: Optional[str] = None
    force_regenerate: bool = False
    trace_id: Optional[str] = None
    level_override: Optional[float] = None


@dataclass
class GenerationResponse:
    ok: bool
    trace_id: str
    story_id: Optional[str] = None
    session_id: Optional[str] = None
    from_cache: bool = False
    title: Optional[str] = None
    body: Optional[str] = None
    level: Optional[float] = None
    topic_slug: Optional[str] = None
    questions: List[Dict[str, Any]] = field(default_factory=list)
    questions_pending: bool = False
    code: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class QuestionsOutcome:
    ok: bool
    questions: List[Dict[str, Any]] = field(default_factory=list)
    generated: bool = False
    code: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RewriteOutcome:
    ok: bool
    session_id: str
    story_id: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    direction: Optional[str] = None
    level_before: Optional[float] = None
    level_after: Optional[float] = None
    questions: List[Dict[str, Any]] = field(default_factory=list)
    code: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _RoutedTopic:
    slug: str
    name: str
    description: str
    core_concept: Optional[str]
    domain: Optional[str]
    custom: bool


class StoryGenerationOrchestrator:
    """Drives validations → route → cache → prompt → llm → persistence → session."""

    def __init__(
        self,
        *,
        generator: Optional[StoryGenerator] = None,
        cache: Optional[CacheResolver] = None,
        router: Optional[TopicRouter] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = db.utcnow,
        max_stories_per_day: Optional[int] = None,
        split_flow: Optional[bool] = None,
    ):
        self.generator = generator or StoryGenerator()
        self.cache = cache or CacheResolver()
        self._rng = rng or random.Random()
        self.router = router or HistoryAwareTopicRouter(rng=self._rng)
        self._clock = clock
        self.max_stories_per_day = (
            max_stories_per_day
            if max_stories_per_day is not None
            else get_env_int("MAX_STORIES_PER_DAY", DEFAULT_MAX_STORIES_PER_DAY)
        )
        self.split_flow = split_flow if split_flow is not None else get_env_bool("STORY_SPLIT_FLOW", True)

    # ------------------------------------------------------------------
    # Generation pipeline
    # ------------------------------------------------------------------
    def generate(self, request: GenerationRequest) -> GenerationResponse:
        trace_id = request.trace_id or uuid4().hex
        recorder = TraceRecorder(GenerationTrace.create(trace_id, request.learner_id), db.save_generation_trace)
        try:
            return self._run(request, recorder)
        except GenerationError as exc:
            stage = recorder.current_stage
            logger.warning(
                "Story generation for learner=%s stopped at stage=%s: %s (%s)",
                request.learner_id, stage, exc.message, exc.code,
            )
            self._fail_trace(recorder, stage, exc.message, exc.code)
            return self._failure(trace_id, exc.code, exc.message)
        except Exception as exc:
            stage = recorder.current_stage
            logger.error(
                "Story generation crashed for learner=%s at stage=%s",
                request.learner_id, stage, exc_info=True,
            )
            self._fail_trace(recorder, stage, str(exc) or exc.__class__.__name__, GENERATION_FAILED)
            return self._failure(trace_id, GENERATION_FAILED, str(exc))

    def _fail_trace(self, recorder: TraceRecorder, stage: str, message: str, code: str) -> None:
        if recorder.trace.is_terminal:
            return
        try:
            recorder.error(stage, message, code=code)
        except Exception:
            logger.error("Could not persist failed trace %s", recorder.trace.trace_id, exc_info=True)

    @staticmethod
    def _failure(trace_id: str, code: str, error: Optional[str]) -> GenerationResponse:
        return GenerationResponse(ok=False, trace_id=trace_id, code=code, error=error, message=user_message(code))

    def _local_midnight_utc(self) -> datetime:
        local_now = self._clock().astimezone()
        midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return midnight.astimezone(timezone.utc)

    def _run(self, request: GenerationRequest, recorder: TraceRecorder) -> GenerationResponse:
        learner_id = request.learner_id
        trace_id = recorder.trace.trace_id

        # validations
        recorder.running("validations", "Checking credentials and daily limit")
        learner = db.get_learner(learner_id)
        if learner is None:
            raise GenerationError(GENERATION_FAILED, f"Learner {learner_id} not found")
        if not has_llm_key():
            raise GenerationError(NO_API_KEY, "No LLM API key configured")
        generated_today = db.count_stories_since(learner_id, self._local_midnight_utc())
        if generated_today >= self.max_stories_per_day:
            raise GenerationError(
                RATE_LIMIT, f"Daily limit of {self.max_stories_per_day} stories reached ({generated_today})"
            )
        recorder.done("validations", "Profile and limits OK")

        # route
        recorder.running("route", "Choosing topic")
        topic = self._route(request, learner)
        recorder.done("route", f"Topic: {topic.name}")

        level = float(request.level_override) if request.level_override is not None else float(learner["reading_level"])
        tone = int(learner["tone"])

        # cache
        recorder.running("cache", "Searching reusable stories")
        cached = self.cache.find(learner_id, topic.slug, level, tone, skip=request.force_regenerate)
        if cached is not None:
            recorder.done("cache", "Cache hit, reusing story")
            recorder.skip(CACHE_SKIPPED_STAGES)
            json_log(
                "story_cache_hit",
                {
                    "learner_id": learner_id,
                    "story_id": cached["id"],
                    "topic_slug": topic.slug,
                    "target_level": level,
                    "story_level": cached["level"],
                },
            )
            recorder.running("session", "Creating reading session")
            session_id = self._create_session(
                learner_id, cached["id"], topic.slug, cached["level"], from_cache=True, trace_id=trace_id
            )
            recorder.finalize("Story ready from cache")
            questions = db.list_story_questions(cached["id"])
            return GenerationResponse(
                ok=True,
                trace_id=trace_id,
                story_id=cached["id"],
                session_id=session_id,
                from_cache=True,
                title=cached["title"],
                body=cached["body"],
                level=level,
                topic_slug=topic.slug,
                questions=questions,
                questions_pending=not questions,
            )
        recorder.done("cache", "No reusable story")

        # prompt
        recorder.running("prompt", "Building prompt")
        profile = PedagogicalProfile(
            age_years=int(learner["age_years"]),
            level=level,
            topic_name=topic.name,
            topic_description=topic.description,
            core_concept=topic.core_concept,
            domain=topic.domain,
            tone=tone,
            interests=tuple(learner["interests"]),
            favorite_characters=learner["favorite_characters"],
            personal_context=learner["personal_context"],
            recent_titles=tuple(db.list_recent_titles(learner_id, topic.slug, RECENT_TITLES_LIMIT)),
        )
        recorder.done("prompt", f"Template level {clamp_prompt_level(level)}")

        # llm
        recorder.running("llm", "Writing the story")
        if self.split_flow:
            result = self.generator.generate_story_only(profile, learner_id=learner_id)
        else:
            result = self.generator.generate_story(profile, learner_id=learner_id)
        if not result.ok:
            if result.code == QA_REJECTED and result.rejected is not None:
                rejected_id = self._persist_story(learner_id, topic, result.rejected, level)
                json_log(
                    "story_qa_rejected",
                    {
                        "learner_id": learner_id,
                        "story_id": rejected_id,
                        "reason": result.rejected.rejection_reason,
                    },
                )
            raise GenerationError(result.code or GENERATION_FAILED, result.error or "Generation failed")
        story = result.story
        recorder.done("llm", f"Story generated ({story.metadata.get('word_count')} words)")

        # persistence
        recorder.running("persistence", "Saving story")
        story_id = self._persist_story(learner_id, topic, story, level)
        questions: List[Dict[str, Any]] = []
        if story.questions:
            db.insert_questions_if_absent(story_id, story.questions)
            questions = db.list_story_questions(story_id)
        recorder.done("persistence", "Story saved")

        # session
        recorder.running("session", "Creating reading session")
        session_id = self._create_session(learner_id, story_id, topic.slug, level, from_cache=False, trace_id=trace_id)
        recorder.finalize("Story ready")

        return GenerationResponse(
            ok=True,
            trace_id=trace_id,
            story_id=story_id,
            session_id=session_id,
            from_cache=False,
            title=story.title,
            body=story.body,
            level=level,
            topic_slug=topic.slug,
            questions=questions,
            questions_pending=not questions,
        )

    def _route(self, request: GenerationRequest, learner: Dict[str, Any]) -> _RoutedTopic:
        age = int(learner["age_years"])
        requested = (request.topic_slug or "").strip()

        if is_custom_topic(requested):
            name = parse_custom_topic(requested)
            if not name:
                raise GenerationError(GENERATION_FAILED, "Custom topic is empty")
            return _RoutedTopic(
                slug=f"{CUSTOM_TOPIC_PREFIX}{name}",
                name=name,
                description=name,
                core_concept=None,
                domain=None,
                custom=True,
            )

        raw_slug = requested
        if not raw_slug:
            suggestions = self.router.suggest(
                RouterContext(
                    learner_id=learner["id"],
                    age_years=age,
                    interests=tuple(learner["interests"]),
                    recent_topic_slugs=tuple(db.list_recent_topic_slugs(learner["id"])),
                )
            )
            if suggestions:
                raw_slug = suggestions[0].slug

        resolved = resolve_topic_slug(raw_slug, age) if raw_slug else None
        if resolved is None:
            fallback = random_topic_for_age(age, self._rng)
            if fallback is None:
                raise GenerationError(GENERATION_FAILED, "No topic available")
            if raw_slug:
                logger.warning("Topic '%s' could not be resolved; using '%s'", raw_slug, fallback.slug)
            resolved_slug, topic = fallback.slug, fallback
        else:
            resolved_slug, topic = resolved.slug, resolved.topic
            if resolved.remapped:
                json_log(
                    "topic_remap",
                    {"learner_id": learner["id"], "requested": raw_slug, "resolved": resolved_slug},
                )
        return _RoutedTopic(
            slug=resolved_slug,
            name=topic.name,
            description=topic.description,
            core_concept=topic.core_concept,
            domain=topic.domain,
            custom=False,
        )

    def _persist_story(self, learner_id: str, topic: _RoutedTopic, story: GeneratedStory, level: float) -> str:
        metadata = dict(story.metadata)
        metadata["llm_usage"] = story.usage.to_dict()
        return db.insert_story(
            learner_id,
            topic.slug,
            story.title,
            story.body,
            level,
            metadata,
            story.model,
            approved=story.approved,
            rejection_reason=story.rejection_reason,
            reusable=story.approved and not topic.custom,
        )

    def _create_session(
        self,
        learner_id: str,
        story_id: str,
        topic_slug: str,
        level: float,
        *,
        from_cache: bool,
        trace_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        expected_ms = level_config(level).expected_time_ms
        metadata: Dict[str, Any] = {
            "level": level,
            "topic_slug": topic_slug,
            "expected_time_ms": expected_ms,
            "from_cache": from_cache,
        }
        if trace_id:
            metadata["trace_id"] = trace_id
        if extra:
            metadata.update(extra)
        return db.create_session(
            learner_id, story_id, topic_slug, level, expected_ms, from_cache=from_cache, metadata=metadata
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    @staticmethod
    def get_trace(trace_id: str, learner_id: str) -> Optional[Dict[str, Any]]:
        return db.get_generation_trace(trace_id, learner_id)

    # ------------------------------------------------------------------
    # Story operations
    # ------------------------------------------------------------------
    def _owned_story(self, story_id: str, learner_id: str) -> Dict[str, Any]:
        story = db.get_story(story_id)
        if story is None or story["learner_id"] != learner_id:
            raise NotFoundError(f"Story {story_id} not found")
        return story

    @staticmethod
    def _topic_name(slug: str) -> str:
        if is_custom_topic(slug):
            return parse_custom_topic(slug)
        topic = get_topic(slug)
        return topic.name if topic else slug

    def ensure_story_questions(self, story_id: str, learner_id: str) -> QuestionsOutcome:
        """Return the story's questions, generating them once if missing."""

        story = self._owned_story(story_id, learner_id)
        existing = db.list_story_questions(story_id)
        if existing:
            return QuestionsOutcome(ok=True, questions=existing)

        learner = db.get_learner(learner_id) or {}
        result = self.generator.generate_questions(
            title=story["title"],
            body=story["body"],
            age_years=int(learner.get("age_years") or story["metadata"].get("target_age") or 7),
            level=story["level"],
            topic_name=self._topic_name(story["topic_slug"]),
            learner_id=learner_id,
        )
        if not result.ok:
            logger.warning("Question generation failed for story=%s: %s", story_id, result.error)
            return QuestionsOutcome(ok=False, code=result.code, error=result.error)

        inserted = db.insert_questions_if_absent(story_id, result.questions)
        if not inserted:
            logger.info("Questions for story=%s were written by a concurrent request", story_id)
        return QuestionsOutcome(ok=True, questions=db.list_story_questions(story_id), generated=inserted)

    def load_existing_story(self, story_id: str, learner_id: str) -> Dict[str, Any]:
        """Open a new reading session on a story the learner already has."""

        story = self._owned_story(story_id, learner_id)
        session_id = self._create_session(
            learner_id, story_id, story["topic_slug"], story["level"], from_cache=False, extra={"reopened": True}
        )
        return {
            "session_id": session_id,
            "story_id": story_id,
            "title": story["title"],
            "body": story["body"],
            "level": story["level"],
            "topic_slug": story["topic_slug"],
            "questions": db.list_story_questions(story_id),
        }

    def mark_reading_completed(
        self,
        session_id: str,
        learner_id: str,
        *,
        reading_time_ms: int,
        wpm: Optional[float] = None,
    ) -> Dict[str, Any]:
        session = db.get_session(session_id, learner_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        metadata = session["metadata"]
        already_marked = metadata.get("reading_completed") is True
        completed_at = metadata.get("reading_completed_at") or db.format_timestamp(self._clock())
        patch: Dict[str, Any] = {
            "reading_completed": True,
            "reading_completed_at": completed_at,
            "reading_time_ms": int(reading_time_ms),
        }
        if wpm is not None:
            patch["wpm"] = float(wpm)
        db.merge_session_metadata(session_id, patch)
        return {"already_marked": already_marked, "reading_completed_at": completed_at}

    def rewrite_story(self, session_id: str, learner_id: str, direction: RewriteDirection) -> RewriteOutcome:
        """Swap the session's story for an easier or harder rewrite, once per session."""

        if direction not in ("easier", "harder"):
            raise ValueError(f"Unknown rewrite direction: {direction}")
        session = db.get_session(session_id, learner_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if session["completed"]:
            raise ConflictError("Session is already finalized")
        if db.get_manual_adjustment(session_id, learner_id) is not None:
            raise ConflictError("This session was already adjusted")

        original = self._owned_story(session["story_id"], learner_id)
        current_level = float(original["level"])
        target_level = rewrite_target_level(current_level, direction)
        if target_level == current_level:
            raise ConflictError(f"Story is already at the {'easiest' if direction == 'easier' else 'hardest'} level")

        learner = db.get_learner(learner_id) or {}
        result = self.generator.rewrite_story(
            title=original["title"],
            body=original["body"],
            current_level=current_level,
            direction=direction,
            age_years=int(learner.get("age_years") or 7),
            topic_name=self._topic_name(original["topic_slug"]),
            tone=int(learner.get("tone") or original["metadata"].get("tone") or 3),
            learner_id=learner_id,
        )
        if not result.ok:
            return RewriteOutcome(ok=False, session_id=session_id, code=result.code, error=result.error)

        story = result.story
        metadata = dict(story.metadata)
        metadata.update({"llm_usage": story.usage.to_dict(), "rewritten_from": original["id"], "manual_adjustment": direction})
        new_story_id = db.insert_story(
            learner_id,
            original["topic_slug"],
            story.title,
            story.body,
            target_level,
            metadata,
            story.model,
            approved=True,
            reusable=False,
        )
        if not db.record_manual_adjustment(
            session_id,
            learner_id,
            direction=direction,
            level_before=current_level,
            level_after=target_level,
            story_id=new_story_id,
        ):
            raise ConflictError("This session was already adjusted")

        db.insert_questions_if_absent(new_story_id, story.questions)
        db.repoint_session_story(session_id, new_story_id, target_level, level_config(target_level).expected_time_ms)
        db.merge_session_metadata(
            session_id,
            {"level": target_level, "manual_adjustment": direction, "rewritten_from": original["id"]},
        )
        json_log(
            "story_rewrite",
            {
                "learner_id": learner_id,
                "session_id": session_id,
                "direction": direction,
                "level_before": current_level,
                "level_after": target_level,
                "story_id": new_story_id,
            },
        )
        return RewriteOutcome(
            ok=True,
            session_id=session_id,
            story_id=new_story_id,
            title=story.title,
            body=story.body,
            direction=direction,
            level_before=current_level,
            level_after=target_level,
            questions=db.list_story_questions(new_story_id),
        )
