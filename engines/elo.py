"""Glicko-style reading comprehension rating.

Each learner has a global rating, one rating per question type and a shared
rating deviation (RD). A high RD means the system is still calibrating, so
ratings move more per answer; RD shrinks as answers arrive, grows again after
inactivity and is nudged by how well the model predicted the session (Brier
score). A rating of 1000 is a five-year-old with basic comprehension.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import db

logger = logging.getLogger(__name__)

Q = math.log(10) / 400
QUESTION_RD = 50.0
RD_MIN = 75.0
RD_MAX = 350.0
DEFAULT_RATING = 1000.0
NEUTRAL_BRIER = 0.2
RD_SENSITIVITY = 120.0
# RD growth per day of inactivity; takes RD_MIN back to RD_MAX in about a year.
INACTIVITY_C = 17.9

TYPE_MODIFIER: Dict[str, int] = {
    "literal": -40,
    "vocabulary": 0,
    "inference": 40,
    "summary": 60,
}


@dataclass
class SkillRatings:
    global_: float = DEFAULT_RATING
    literal: float = DEFAULT_RATING
    inference: float = DEFAULT_RATING
    vocabulary: float = DEFAULT_RATING
    summary: float = DEFAULT_RATING
    rd: float = RD_MAX

    @classmethod
    def from_row(cls, row: Optional[Mapping[str, float]]) -> "SkillRatings":
        if not row:
            return cls()
        return cls(
            global_=float(row["global"]),
            literal=float(row["literal"]),
            inference=float(row["inference"]),
            vocabulary=float(row["vocabulary"]),
            summary=float(row["summary"]),
            rd=float(row["rd"]),
        )

    def to_row(self) -> Dict[str, float]:
        return {
            "global": self.global_,
            "literal": self.literal,
            "inference": self.inference,
            "vocabulary": self.vocabulary,
            "summary": self.summary,
            "rd": self.rd,
        }


@dataclass(frozen=True)
class RatedAnswer:
    type: str
    correct: bool
    difficulty: int = 3


@dataclass
class AnswerChange:
    type: str
    question_rating: float
    delta_global: float
    delta_type: float


@dataclass
class RatingUpdate:
    ratings: SkillRatings
    changes: List[AnswerChange] = field(default_factory=list)


def _round1(value: float) -> float:
    return round(value * 10) / 10


def glicko_g(rd: float) -> float:
    return 1 / math.sqrt(1 + (3 * Q * Q * rd * rd) / (math.pi * math.pi))


def expected_score(rating: float, opponent_rating: float, opponent_rd: float) -> float:
    g = glicko_g(opponent_rd)
    return 1 / (1 + 10 ** (-g * (rating - opponent_rating) / 400))


def glicko_update(rating: float, rd: float, opponent_rating: float, opponent_rd: float, score: float) -> tuple[float, float]:
    g = glicko_g(opponent_rd)
    e = expected_score(rating, opponent_rating, opponent_rd)
    d2 = 1 / (Q * Q * g * g * e * (1 - e))
    rd_sq = rd * rd
    new_rating = rating + (Q / (1 / rd_sq + 1 / d2)) * g * (score - e)
    new_rd = max(RD_MIN, math.sqrt(1 / (1 / rd_sq + 1 / d2)))
    return _round1(new_rating), _round1(new_rd)


def question_rating(text_level: float, difficulty: int, question_type: str) -> float:
    base = text_level * 200 + 200
    return float(round(base + (difficulty - 3) * 80 + TYPE_MODIFIER.get(question_type, 0)))


def anti_farming_factor(player: float, question: float, score: float, expected: float, rd: float) -> float:
    """Damp expected outcomes, and easy correct answers most of all.

    The damping is relaxed while RD is high because "easy" items then only
    reflect that the level is still unknown.
    """
    surprise_factor = 0.2 + 0.8 * abs(score - expected)
    if score == 1 and player > question:
        gap = player - question
        easy_penalty = max(0.05, 1 - gap / 500)
        raw = max(0.02, surprise_factor * easy_penalty)
        rd_norm = min(1.0, max(0.0, (rd - 100) / 200))
        return raw + (rd_norm * 0.5) * (1 - raw)
    return surprise_factor


def adjust_rd_for_consistency(rd: float, predictions: Sequence[tuple[float, float]]) -> float:
    if len(predictions) < 2:
        return rd
    brier = sum((actual - expected) ** 2 for expected, actual in predictions) / len(predictions)
    adjusted = rd + (brier - NEUTRAL_BRIER) * RD_SENSITIVITY
    return min(RD_MAX, max(RD_MIN, _round1(adjusted)))


def inflate_rd_for_inactivity(rd: float, last_active: Optional[datetime], now: datetime) -> float:
    if last_active is None:
        return rd
    days = max(0.0, (now - last_active).total_seconds() / 86400.0)
    if days <= 0:
        return rd
    return min(RD_MAX, math.sqrt(rd * rd + INACTIVITY_C * INACTIVITY_C * days))


def classify_rating(rating: float) -> str:
    if rating < 800:
        return "Beginner"
    if rating < 1100:
        return "Developing"
    if rating < 1400:
        return "Competent"
    return "Advanced"


def process_answers(current: SkillRatings, answers: Sequence[RatedAnswer], text_level: float) -> RatingUpdate:
    """Apply one session's answers in order and return the new ratings."""

    ratings = SkillRatings(**asdict(current))
    rd = ratings.rd
    predictions: List[tuple[float, float]] = []
    changes: List[AnswerChange] = []

    for answer in answers:
        if answer.type not in TYPE_MODIFIER:
            raise ValueError(f"Unknown question type: {answer.type}")
        q_rating = question_rating(text_level, answer.difficulty, answer.type)
        score = 1.0 if answer.correct else 0.0
        prev_global = ratings.global_
        prev_type = getattr(ratings, answer.type)

        expected = expected_score(prev_global, q_rating, QUESTION_RD)
        predictions.append((expected, score))

        new_global, new_rd = glicko_update(prev_global, rd, q_rating, QUESTION_RD, score)
        delta = (new_global - prev_global) * anti_farming_factor(prev_global, q_rating, score, expected, rd)
        max_delta = 8 + rd / 50
        delta = max(-max_delta, min(max_delta, delta))
        ratings.global_ = _round1(prev_global + delta)
        rd = new_rd

        k = max(12.0, rd * 0.15)
        expected_type = 1 / (1 + 10 ** ((q_rating - prev_type) / 400))
        setattr(ratings, answer.type, _round1(prev_type + k * (score - expected_type)))

        changes.append(
            AnswerChange(
                type=answer.type,
                question_rating=q_rating,
                delta_global=_round1(ratings.global_ - prev_global),
                delta_type=_round1(getattr(ratings, answer.type) - prev_type),
            )
        )

    ratings.rd = adjust_rd_for_consistency(rd, predictions)
    return RatingUpdate(ratings=ratings, changes=changes)


class GlickoRatingEngine:
    def __init__(self, *, store=db):
        self.store = store
        self._lock = threading.Lock()

    def current(self, learner_id: str) -> SkillRatings:
        return SkillRatings.from_row(self.store.get_skill_rating(learner_id))

    def update_for_session(
        self,
        learner_id: str,
        session_id: str,
        answers: Sequence[RatedAnswer],
        *,
        text_level: float,
        wpm: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Inflate RD for inactivity, apply the answers, write the rating and a snapshot."""

        stamp = now or db.utcnow()
        with self._lock:
            before = self.current(learner_id)
            last_active = self.store.last_completed_session_at(learner_id, exclude_session_id=session_id)
            inflated = SkillRatings(**asdict(before))
            inflated.rd = inflate_rd_for_inactivity(before.rd, last_active, stamp)
            update = process_answers(inflated, answers, text_level)
            row = update.ratings.to_row()
            self.store.save_skill_rating(learner_id, row)
            self.store.append_rating_snapshot(learner_id, session_id, row, wpm)
        return {
            "previous_global": before.global_,
            "global": update.ratings.global_,
            "rd": update.ratings.rd,
            "ratings": row,
            "label": classify_rating(update.ratings.global_),
            "changes": [asdict(change) for change in update.changes],
        }
