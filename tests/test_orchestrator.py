from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.cache_resolver import CacheResolver
from engines.errors import ConflictError, NotFoundError
from engines.model_invoker import LLMOutcome, LLMUsage
from engines.orchestrator import GenerationRequest, StoryGenerationOrchestrator
from engines.story_generator import StoryGenerator
from engines.trace import SKIPPED_DETAIL

LEVEL_ONE_BODY = (
    "Luna looked up at the night sky and saw a bright red dot. One day she asked her grandpa "
    "what it was. He smiled and said it was Mars. Finally Luna drew the red planet in her notebook."
)
LEVEL_TWO_BODY = " ".join([LEVEL_ONE_BODY] * 2)


class StubInvoker:
    def __init__(self, outcomes=()):
        self._outcomes = list(outcomes)
        self.calls = []

    def invoke(self, system_prompt, user_message, **kwargs):
        self.calls.append({"system": system_prompt, "user": user_message, **kwargs})
        if not self._outcomes:
            raise AssertionError("unexpected model call")
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _ok(parsed):
    return LLMOutcome(
        ok=True,
        parsed=parsed,
        usage=LLMUsage(prompt_tokens=300, completion_tokens=150, total_tokens=450),
        model="gpt-4o-mini",
        attempts=1,
    )


def _questions():
    return [
        {"type": "literal", "prompt": "What colour was the dot?",
         "options": ["Red", "Blue", "Green", "Yellow"], "correct_index": 0, "explanation": "It was red.", "difficulty": 2},
        {"type": "inference", "prompt": "Why did Luna ask?",
         "options": ["She was curious", "She was hungry", "She was sleepy", "She was angry"], "correct_index": 0,
         "explanation": "She wanted to know.", "difficulty": 4},
        {"type": "vocabulary", "prompt": "What is a planet?",
         "options": ["A world in space", "A tree", "A boat", "A song"], "correct_index": 0,
         "explanation": "Mars is a planet.", "difficulty": 3},
        {"type": "summary", "prompt": "What is the story about?",
         "options": ["Luna and Mars", "A trip to the sea", "A lost dog", "A cake"], "correct_index": 0,
         "explanation": "Luna learns about Mars.", "difficulty": 3},
    ]


def _orchestrator(outcomes=(), **kwargs):
    invoker = StubInvoker(outcomes)
    kwargs.setdefault("split_flow", True)
    kwargs.setdefault("max_stories_per_day", 20)
    orchestrator = StoryGenerationOrchestrator(generator=StoryGenerator(invoker), **kwargs)
    return orchestrator, invoker


@pytest.fixture
def learner(temp_db, llm_env):
    db.upsert_learner("alice", display_name="Alice", age_years=7, reading_level=1.0, tone=3, interests=["space"])
    return "alice"


def _stage(trace, stage_id):
    return next(stage for stage in trace["stages"] if stage["id"] == stage_id)


def test_cache_hit_reuses_story_and_skips_generation_stages(learner):
    db.set_reading_level(learner, 2.2)
    cached_id = db.insert_story(
        learner, "solar-system", "Luna Meets Mars", LEVEL_TWO_BODY, 2.3, {"tone": 3}, "gpt-4o-mini",
        approved=True, reusable=True, created_at=datetime.now(timezone.utc) - timedelta(days=3),
    )
    db.insert_questions_if_absent(cached_id, _questions())
    orchestrator, invoker = _orchestrator()

    response = orchestrator.generate(
        GenerationRequest(learner_id=learner, topic_slug="sistema-solar", trace_id="trace-cache")
    )

    assert response.ok
    assert response.from_cache
    assert response.story_id == cached_id
    assert response.level == 2.2
    assert response.topic_slug == "solar-system"
    assert len(response.questions) == 4
    assert not response.questions_pending
    assert invoker.calls == []

    trace = orchestrator.get_trace("trace-cache", learner)
    assert trace["status"] == "done"
    assert trace["progress"] == 100
    assert _stage(trace, "cache")["detail"] == "Cache hit, reusing story"
    for stage_id in ("prompt", "llm", "persistence"):
        assert _stage(trace, stage_id)["status"] == "done"
        assert _stage(trace, stage_id)["detail"] == SKIPPED_DETAIL
    assert _stage(trace, "session")["detail"] == "Story ready from cache"

    session = db.get_session(response.session_id, learner)
    assert session["from_cache"]
    assert session["story_id"] == cached_id
    assert session["metadata"]["trace_id"] == "trace-cache"


def test_force_regenerate_bypasses_cache(learner):
    db.insert_story(
        learner, "solar-system", "Luna Meets Mars", LEVEL_ONE_BODY, 1.0, {"tone": 3}, "m", approved=True, reusable=True,
    )
    orchestrator, invoker = _orchestrator([_ok({"title": "Mars at Night", "body": LEVEL_ONE_BODY})])

    response = orchestrator.generate(
        GenerationRequest(learner_id=learner, topic_slug="solar-system", force_regenerate=True)
    )

    assert response.ok
    assert not response.from_cache
    assert response.title == "Mars at Night"
    assert len(invoker.calls) == 1
    assert '- "Luna Meets Mars"' in invoker.calls[0]["user"]


def test_split_flow_persists_story_and_defers_questions(learner):
    orchestrator, invoker = _orchestrator([_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})])

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system", trace_id="t1"))

    assert response.ok
    assert response.questions == []
    assert response.questions_pending
    assert invoker.calls[0]["purpose"] == "story_only[0]"

    story = db.get_story(response.story_id)
    assert story["approved"]
    assert story["reusable"]
    assert story["level"] == 1.0
    assert story["metadata"]["llm_usage"] == {"prompt_tokens": 300, "completion_tokens": 150, "total_tokens": 450}
    assert story["metadata"]["tone"] == 3

    trace = orchestrator.get_trace("t1", learner)
    assert trace["status"] == "done"
    assert [stage["status"] for stage in trace["stages"]] == ["done"] * 7
    assert _stage(trace, "llm")["detail"] == "Story generated (38 words)"
    assert orchestrator.get_trace("t1", "mallory") is None


def test_combined_flow_returns_questions(learner):
    orchestrator, _ = _orchestrator(
        [_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY, "vocabulary": [], "questions": _questions()})],
        split_flow=False,
    )

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system"))

    assert response.ok
    assert [question["type"] for question in response.questions] == ["literal", "inference", "vocabulary", "summary"]
    assert not response.questions_pending
    assert len(db.list_story_questions(response.story_id)) == 4


def test_qa_rejection_then_retry_persists_only_second_candidate(learner):
    short_body = " ".join(LEVEL_ONE_BODY.split()[:12]) + " Then"
    orchestrator, _ = _orchestrator(
        [
            _ok({"title": "Luna and the Red Planet", "body": short_body}),
            _ok({"title": "Luna Meets Mars", "body": LEVEL_ONE_BODY}),
        ]
    )

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system"))

    assert response.ok
    rows = db._query("SELECT title, approved FROM generated_stories WHERE learner_id = ?", (learner,))
    assert [(row["title"], row["approved"]) for row in rows] == [("Luna Meets Mars", 1)]


def test_final_qa_rejection_is_persisted_for_audit(learner):
    orchestrator, _ = _orchestrator(
        [
            _ok({"title": "Too short", "body": "One day Luna saw Mars."}),
            _ok({"title": "Still short", "body": "Then Luna saw Mars again."}),
        ]
    )

    response = orchestrator.generate(
        GenerationRequest(learner_id=learner, topic_slug="solar-system", trace_id="t-reject")
    )

    assert not response.ok
    assert response.code == "QA_REJECTED"
    assert response.message
    rows = db._query(
        "SELECT title, approved, reusable, rejection_reason FROM generated_stories WHERE learner_id = ?", (learner,)
    )
    assert len(rows) == 1
    assert rows[0]["title"] == "Still short"
    assert rows[0]["approved"] == 0
    assert rows[0]["reusable"] == 0
    assert rows[0]["rejection_reason"].startswith("Story too short")
    assert db._query("SELECT COUNT(*) AS n FROM reading_sessions")[0]["n"] == 0

    trace = orchestrator.get_trace("t-reject", learner)
    assert trace["status"] == "error"
    assert trace["error_code"] == "QA_REJECTED"
    assert _stage(trace, "llm")["status"] == "error"
    assert _stage(trace, "persistence")["status"] == "pending"


def test_missing_key_fails_at_validations(learner, no_llm_env):
    orchestrator, invoker = _orchestrator()

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system", trace_id="t-key"))

    assert not response.ok
    assert response.code == "NO_API_KEY"
    assert invoker.calls == []
    trace = orchestrator.get_trace("t-key", learner)
    assert trace["status"] == "error"
    assert trace["current_stage"] == "validations"
    assert _stage(trace, "validations")["status"] == "error"
    assert _stage(trace, "route")["status"] == "pending"


def test_daily_limit(learner):
    db.insert_story(learner, "solar-system", "Earlier today", LEVEL_ONE_BODY, 1.0, {"tone": 3}, "m", approved=True)
    orchestrator, invoker = _orchestrator(max_stories_per_day=1)

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system"))

    assert not response.ok
    assert response.code == "RATE_LIMIT"
    assert invoker.calls == []


def test_unexpected_exception_marks_current_stage(learner):
    orchestrator, _ = _orchestrator([RuntimeError("socket closed")])

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="solar-system", trace_id="t-boom"))

    assert not response.ok
    assert response.code == "GENERATION_FAILED"
    trace = orchestrator.get_trace("t-boom", learner)
    assert trace["error"] == "socket closed"
    assert _stage(trace, "llm")["status"] == "error"


def test_custom_topic_is_never_cached_or_reusable(learner):
    orchestrator, invoker = _orchestrator([_ok({"title": "Pepper the Cat", "body": LEVEL_ONE_BODY})])

    response = orchestrator.generate(GenerationRequest(learner_id=learner, topic_slug="custom:  my cat Pepper"))

    assert response.ok
    assert response.topic_slug == "custom:my cat Pepper"
    assert 'Topic: "my cat Pepper"' in invoker.calls[0]["user"]
    story = db.get_story(response.story_id)
    assert story["approved"]
    assert not story["reusable"]


def test_router_picks_a_topic_when_none_is_given(learner):
    orchestrator, _ = _orchestrator([_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})])

    response = orchestrator.generate(GenerationRequest(learner_id=learner))

    assert response.ok
    # interest "space" steers the router towards a space topic
    assert response.topic_slug in {"solar-system", "moon-phases"}


def _generated_story(orchestrator, learner_id):
    response = orchestrator.generate(GenerationRequest(learner_id=learner_id, topic_slug="solar-system"))
    assert response.ok
    return response


def test_ensure_story_questions_is_idempotent(learner):
    orchestrator, invoker = _orchestrator(
        [
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY}),
            _ok({"questions": _questions()}),
        ]
    )
    response = _generated_story(orchestrator, learner)

    first = orchestrator.ensure_story_questions(response.story_id, learner)
    second = orchestrator.ensure_story_questions(response.story_id, learner)

    assert first.ok and first.generated
    assert second.ok and not second.generated
    assert [q["id"] for q in first.questions] == [q["id"] for q in second.questions]
    assert len(invoker.calls) == 2
    assert invoker.calls[1]["purpose"] == "questions"

    db.upsert_learner("bob")
    with pytest.raises(NotFoundError):
        orchestrator.ensure_story_questions(response.story_id, "bob")


def test_ensure_story_questions_reports_model_failure(learner):
    orchestrator, _ = _orchestrator(
        [
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY}),
            LLMOutcome(ok=False, error="Generation failed after 2 attempts. Last error: timeout", code="GENERATION_FAILED"),
        ]
    )
    response = _generated_story(orchestrator, learner)

    outcome = orchestrator.ensure_story_questions(response.story_id, learner)

    assert not outcome.ok
    assert outcome.code == "GENERATION_FAILED"
    assert db.list_story_questions(response.story_id) == []


def test_rewrite_swaps_story_once_per_session(learner):
    orchestrator, invoker = _orchestrator(
        [
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY}),
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_TWO_BODY, "vocabulary": [], "questions": _questions()}),
        ]
    )
    response = _generated_story(orchestrator, learner)

    outcome = orchestrator.rewrite_story(response.session_id, learner, "harder")

    assert outcome.ok
    assert (outcome.level_before, outcome.level_after) == (1.0, 2.0)
    assert outcome.story_id != response.story_id
    assert len(outcome.questions) == 4
    assert invoker.calls[1]["purpose"] == "rewrite"

    rewritten = db.get_story(outcome.story_id)
    assert rewritten["approved"]
    assert not rewritten["reusable"]
    assert rewritten["metadata"]["rewritten_from"] == response.story_id

    session = db.get_session(response.session_id, learner)
    assert session["story_id"] == outcome.story_id
    assert session["level"] == 2.0
    assert session["expected_time_ms"] == 120_000
    assert db.get_manual_adjustment(response.session_id, learner)["direction"] == "harder"

    with pytest.raises(ConflictError):
        orchestrator.rewrite_story(response.session_id, learner, "easier")
    assert len(invoker.calls) == 2


def test_rewrite_below_easiest_level_is_refused(learner):
    orchestrator, invoker = _orchestrator([_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})])
    response = _generated_story(orchestrator, learner)

    with pytest.raises(ConflictError):
        orchestrator.rewrite_story(response.session_id, learner, "easier")
    assert len(invoker.calls) == 1
    assert db.get_manual_adjustment(response.session_id, learner) is None


def test_rewrite_from_sub_level_clamps_to_easiest(learner):
    db.set_reading_level(learner, 1.4)
    orchestrator, invoker = _orchestrator(
        [
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY}),
            _ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY, "vocabulary": [], "questions": _questions()}),
        ]
    )
    response = _generated_story(orchestrator, learner)

    outcome = orchestrator.rewrite_story(response.session_id, learner, "easier")

    assert outcome.ok
    assert (outcome.level_before, outcome.level_after) == (1.4, 1.0)
    assert db.get_story(outcome.story_id)["level"] == 1.0
    assert db.get_session(response.session_id, learner)["expected_time_ms"] == 90_000
    assert len(invoker.calls) == 2


def test_rewrite_unknown_session(learner):
    orchestrator, _ = _orchestrator()

    with pytest.raises(NotFoundError):
        orchestrator.rewrite_story("missing", learner, "harder")


def test_reading_completed_is_idempotent(learner):
    orchestrator, _ = _orchestrator([_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})])
    response = _generated_story(orchestrator, learner)

    first = orchestrator.mark_reading_completed(response.session_id, learner, reading_time_ms=80_000, wpm=28.5)
    second = orchestrator.mark_reading_completed(response.session_id, learner, reading_time_ms=81_000)

    assert first["already_marked"] is False
    assert second["already_marked"] is True
    assert second["reading_completed_at"] == first["reading_completed_at"]
    metadata = db.get_session(response.session_id, learner)["metadata"]
    assert metadata["reading_completed"] is True
    assert metadata["wpm"] == 28.5

    with pytest.raises(NotFoundError):
        orchestrator.mark_reading_completed("missing", learner, reading_time_ms=1)


def test_load_existing_story_opens_new_session(learner):
    orchestrator, _ = _orchestrator([_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})])
    response = _generated_story(orchestrator, learner)

    loaded = orchestrator.load_existing_story(response.story_id, learner)

    assert loaded["session_id"] != response.session_id
    assert loaded["title"] == "Luna and the Red Planet"
    session = db.get_session(loaded["session_id"], learner)
    assert session["story_id"] == response.story_id
    assert session["metadata"]["reopened"] is True

    with pytest.raises(NotFoundError):
        orchestrator.load_existing_story("missing", learner)


def test_cache_resolver_is_injectable(learner):
    class _NeverHit(CacheResolver):
        def find(self, *args, **kwargs):
            return None

    orchestrator, _ = _orchestrator(
        [_ok({"title": "Luna and the Red Planet", "body": LEVEL_ONE_BODY})], cache=_NeverHit()
    )

    assert _generated_story(orchestrator, learner).from_cache is False
