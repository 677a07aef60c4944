"""Session finalization: answers, stars, coarse level adjustment and rating update."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import db
from engines.difficulty_manager import DifficultyManager, compute_stars
from engines.elo import GlickoRatingEngine, RatedAnswer, classify_rating
from engines.errors import ConflictError, NotFoundError
from engines.logging_utils import json_log
from engines.prompts import level_config
from engines.validation import validate_session_answers

logger = logging.getLogger(__name__)


@dataclass
class FinalizationResult:
    correct: int
    total: int
    comprehension_score: int
    stars: int
    session_score: float
    direction: str
    level_before: float
    level_after: float
    reason: str
    global_rating: Optional[float] = None
    previous_global_rating: Optional[float] = None
    rating_label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionFinalizer:
    def __init__(
        self,
        *,
        difficulty: Optional[DifficultyManager] = None,
        ratings: Optional[GlickoRatingEngine] = None,
    ):
        self.difficulty = difficulty or DifficultyManager()
        self.ratings = ratings or GlickoRatingEngine()

    def finalize(
        self,
        session_id: str,
        learner_id: str,
        *,
        reading_time_ms: int,
        answers: Sequence[Dict[str, Any]],
        wpm: Optional[float] = None,
    ) -> FinalizationResult:
        session = db.get_session(session_id, learner_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        if session["completed"]:
            raise ConflictError(f"Session {session_id} is already finalized")

        cleaned = validate_session_answers(answers)
        total = len(cleaned)
        correct = sum(1 for answer in cleaned if answer["is_correct"])
        ratio = correct / total if total else 0.0
        stars = compute_stars(ratio)
        metadata = session["metadata"]
        wpm = wpm if wpm is not None else metadata.get("wpm")

        completed = db.complete_session(
            session_id,
            stars=stars,
            duration_seconds=round(reading_time_ms / 1000),
            metadata_patch={
                "reading_completed": True,
                "comprehension_score": ratio,
                "correct": correct,
                "total_questions": total,
                "reading_time_ms": int(reading_time_ms),
                "wpm": wpm,
            },
        )
        if not completed:
            raise ConflictError(f"Session {session_id} is already finalized")
        db.insert_session_answers(session_id, cleaned)

        level = session["level"] if session["level"] is not None else 1.0
        expected_ms = session["expected_time_ms"] or level_config(level).expected_time_ms
        adjustment = self.difficulty.evaluate_session(
            learner_id,
            session_id,
            comprehension=ratio,
            actual_ms=reading_time_ms,
            expected_ms=expected_ms,
        )
        db.merge_session_metadata(session_id, {"session_score": adjustment.session_score})
        json_log(
            "difficulty_adjustment",
            {
                "learner_id": learner_id,
                "session_id": session_id,
                "direction": adjustment.direction,
                "level_before": adjustment.level_before,
                "level_after": adjustment.level_after,
                "session_score": adjustment.session_score,
                "fallback": adjustment.fallback,
            },
        )

        result = FinalizationResult(
            correct=correct,
            total=total,
            comprehension_score=round(ratio * 100),
            stars=stars,
            session_score=adjustment.session_score,
            direction=adjustment.direction,
            level_before=adjustment.level_before,
            level_after=adjustment.level_after,
            reason=adjustment.reason,
        )

        try:
            rating = self._update_rating(session, learner_id, cleaned, wpm)
        except Exception:
            logger.error(
                "Rating update failed for learner=%s session=%s", learner_id, session_id, exc_info=True
            )
            rating = None
        if rating is not None:
            result.global_rating = rating["global"]
            result.previous_global_rating = rating["previous_global"]
            result.rating_label = classify_rating(rating["global"])
            json_log(
                "rating_update",
                {
                    "learner_id": learner_id,
                    "session_id": session_id,
                    "previous_global": rating["previous_global"],
                    "global": rating["global"],
                    "rd": rating["rd"],
                },
            )
        return result

    def _update_rating(
        self,
        session: Dict[str, Any],
        learner_id: str,
        answers: Sequence[Dict[str, Any]],
        wpm: Optional[float],
    ) -> Optional[Dict[str, Any]]:
        story = db.get_story(session["story_id"]) if session["story_id"] else None
        if story is None:
            return None
        difficulty_by_question = {
            question["id"]: question["difficulty"] for question in db.list_story_questions(story["id"])
        }
        rated = [
            RatedAnswer(
                type=answer["type"],
                correct=answer["is_correct"],
                difficulty=int(difficulty_by_question.get(answer["question_id"], 3)),
            )
            for answer in answers
        ]
        return self.ratings.update_for_session(
            learner_id,
            session["id"],
            rated,
            text_level=float(story["level"]),
            wpm=wpm,
        )
