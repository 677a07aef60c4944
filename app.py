# app.py: ReadBuddy
# - Adaptive story generation with pollable traces
# - Session finalization: stars, coarse level, Glicko rating

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException

import db
from engines.elo import GlickoRatingEngine, classify_rating
from engines.errors import HTTP_STATUS, ConflictError, NotFoundError, user_message
from engines.orchestrator import GenerationRequest, StoryGenerationOrchestrator
from engines.session_finalizer import SessionFinalizer
from engines.validation import AnswerValidationError
from schemas import (
    FinalizeSessionBody,
    FinalizeSessionResponse,
    GenerateStoryBody,
    GenerateStoryResponse,
    LearnerBody,
    LearnerProfileBody,
    ReadingCompletedBody,
    RewriteBody,
    SkillRatingResponse,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import describe_configuration, validate_environment
        validate_environment()

        db.init()
        logger.info("ReadBuddy configuration: %s", describe_configuration())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="ReadBuddy", version="1.0.0", lifespan=_lifespan)

ORCHESTRATOR = StoryGenerationOrchestrator()
FINALIZER = SessionFinalizer()
RATINGS = GlickoRatingEngine()


def _error_detail(code: str, error: str | None, **extra) -> dict:
    detail = {"code": code, "message": user_message(code), "error": error}
    detail.update(extra)
    return detail


@app.post("/learners")
def upsert_learner(body: LearnerProfileBody):
    db.upsert_learner(
        body.learner_id,
        display_name=body.display_name,
        age_years=body.age_years,
        reading_level=body.reading_level,
        tone=body.tone,
        interests=body.interests,
        favorite_characters=body.favorite_characters,
        personal_context=body.personal_context,
    )
    return db.get_learner(body.learner_id)


@app.post("/stories/generate", response_model=GenerateStoryResponse)
def generate_story(body: GenerateStoryBody):
    response = ORCHESTRATOR.generate(
        GenerationRequest(
            learner_id=body.learner_id,
            topic_slug=body.topic_slug,
            force_regenerate=body.force_regenerate,
            trace_id=body.trace_id,
            level_override=body.level_override,
        )
    )
    if not response.ok:
        raise HTTPException(
            status_code=HTTP_STATUS.get(response.code, 502),
            detail=_error_detail(response.code, response.error, trace_id=response.trace_id),
        )
    return response.to_dict()


@app.get("/stories/traces/{trace_id}")
def get_trace(trace_id: str, learner_id: str):
    trace = ORCHESTRATOR.get_trace(trace_id, learner_id)
    if trace is None:
        raise HTTPException(status_code=404, detail="trace not found")
    return trace


@app.post("/stories/{story_id}/questions")
def ensure_questions(story_id: str, body: LearnerBody):
    try:
        outcome = ORCHESTRATOR.ensure_story_questions(story_id, body.learner_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="story not found")
    if not outcome.ok:
        raise HTTPException(
            status_code=HTTP_STATUS.get(outcome.code, 502),
            detail=_error_detail(outcome.code, outcome.error),
        )
    return {"story_id": story_id, "questions": outcome.questions, "generated": outcome.generated}


@app.post("/stories/{story_id}/sessions")
def open_story_session(story_id: str, body: LearnerBody):
    try:
        return ORCHESTRATOR.load_existing_story(story_id, body.learner_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="story not found")


@app.post("/sessions/{session_id}/rewrite")
def rewrite_story(session_id: str, body: RewriteBody):
    try:
        outcome = ORCHESTRATOR.rewrite_story(session_id, body.learner_id, body.direction)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="session not found")
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not outcome.ok:
        raise HTTPException(
            status_code=HTTP_STATUS.get(outcome.code, 502),
            detail=_error_detail(outcome.code, outcome.error),
        )
    return outcome.to_dict()


@app.post("/sessions/{session_id}/reading-completed")
def reading_completed(session_id: str, body: ReadingCompletedBody):
    try:
        return ORCHESTRATOR.mark_reading_completed(
            session_id, body.learner_id, reading_time_ms=body.reading_time_ms, wpm=body.wpm
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="session not found")


@app.post("/sessions/{session_id}/finalize", response_model=FinalizeSessionResponse)
def finalize_session(session_id: str, body: FinalizeSessionBody):
    try:
        result = FINALIZER.finalize(
            session_id,
            body.learner_id,
            reading_time_ms=body.reading_time_ms,
            answers=[answer.model_dump() for answer in body.answers],
            wpm=body.wpm,
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="session not found")
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AnswerValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return result.to_dict()


@app.get("/learners/{learner_id}/rating", response_model=SkillRatingResponse)
def learner_rating(learner_id: str, history: bool = False):
    if db.get_learner(learner_id) is None:
        raise HTTPException(status_code=404, detail="learner not found")
    ratings = RATINGS.current(learner_id)
    return {
        "learner_id": learner_id,
        "ratings": ratings.to_row(),
        "label": classify_rating(ratings.global_),
        "history": db.list_rating_snapshots(learner_id) if history else None,
    }
