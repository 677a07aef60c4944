"""Coarse reading-level adjustment after a completed session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Sequence

import db

logger = logging.getLogger(__name__)

Direction = Literal["up", "hold", "down"]

MIN_LEVEL = 1.0
MAX_LEVEL = 10.0
LEVEL_STEP = 0.5

UP_THRESHOLD = 0.80
HOLD_THRESHOLD = 0.60

DEFAULT_STABILITY = 0.5
MIN_SESSIONS_FOR_STABILITY = 3
STABILITY_WINDOW = 5

MANUAL_EASIER_MODIFIER = -0.10
MANUAL_HARDER_MODIFIER = 0.10
MANUAL_HARDER_MIN_COMPREHENSION = 0.75

FALLBACK_REASON = "Difficulty adjustment temporarily unavailable; level kept."


@dataclass
class AdjustmentResult:
    session_score: float
    direction: Direction
    level_before: float
    level_after: float
    reason: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False


def compute_rhythm(actual_ms: float, expected_ms: float) -> float:
    """1.0 when reading time matches the expectation, lower when much faster or slower."""

    if not expected_ms or expected_ms <= 0:
        return 1.0
    ratio = float(actual_ms) / float(expected_ms)
    return max(0.0, 1.0 - abs(1.0 - ratio) * 0.5)


def compute_stability(previous_scores: Sequence[float]) -> float:
    scores = [float(score) for score in previous_scores]
    if len(scores) < MIN_SESSIONS_FOR_STABILITY:
        return DEFAULT_STABILITY
    mean = sum(scores) / len(scores)
    variance = sum((score - mean) ** 2 for score in scores) / len(scores)
    return max(0.0, 1.0 - variance * 4)


def manual_modifier(manual_direction: Optional[str], comprehension: float) -> float:
    if manual_direction == "easier":
        return MANUAL_EASIER_MODIFIER
    if manual_direction == "harder" and comprehension >= MANUAL_HARDER_MIN_COMPREHENSION:
        return MANUAL_HARDER_MODIFIER
    return 0.0


def compute_session_score(comprehension: float, rhythm: float, stability: float, modifier: float = 0.0) -> float:
    score = 0.65 * comprehension + 0.25 * rhythm + 0.10 * stability + modifier
    return max(0.0, min(1.0, score))


def decide_direction(comprehension: float) -> Direction:
    if comprehension >= UP_THRESHOLD:
        return "up"
    if comprehension >= HOLD_THRESHOLD:
        return "hold"
    return "down"


def clamp_coarse_level(level: float) -> float:
    return max(MIN_LEVEL, min(MAX_LEVEL, float(level)))


def compute_stars(ratio: float) -> int:
    if ratio >= 1.0:
        return 3
    if ratio >= 0.75:
        return 2
    if ratio > 0:
        return 1
    return 0


_REASONS: Dict[str, str] = {
    "up": "Comprehension {comp}% (>=80%), session score {score}%. Raising difficulty.",
    "hold": "Comprehension {comp}% (60-79%), session score {score}%. Keeping the current level.",
    "down": "Comprehension {comp}% (<60%), session score {score}%. Lowering difficulty to consolidate.",
}


def build_reason(direction: Direction, comprehension: float, session_score: float, *, manual: Optional[str] = None, modifier: float = 0.0) -> str:
    reason = _REASONS[direction].format(comp=round(comprehension * 100), score=round(session_score * 100))
    if manual:
        sign = "+" if modifier > 0 else ""
        reason += f" (Manual adjustment: {manual}, modifier: {sign}{round(modifier * 100)}%)"
    return reason


class DifficultyManager:
    """Moves the learner's coarse level from comprehension, rhythm and stability."""

    def __init__(self, *, store=db):
        self.store = store

    def evaluate_session(
        self,
        learner_id: str,
        session_id: str,
        *,
        comprehension: float,
        actual_ms: float,
        expected_ms: float,
    ) -> AdjustmentResult:
        """Compute and persist the adjustment; falls back to holding the level on failure."""

        try:
            return self._evaluate(
                learner_id,
                session_id,
                comprehension=comprehension,
                actual_ms=actual_ms,
                expected_ms=expected_ms,
            )
        except Exception:
            logger.error(
                "Difficulty adjustment failed for learner=%s session=%s; holding level",
                learner_id, session_id, exc_info=True,
            )
            return self._fallback(learner_id, comprehension)

    def _fallback(self, learner_id: str, comprehension: float) -> AdjustmentResult:
        level = MIN_LEVEL
        try:
            learner = self.store.get_learner(learner_id)
            if learner:
                level = clamp_coarse_level(learner["reading_level"])
        except Exception:
            logger.warning("Could not read level for learner=%s during fallback", learner_id, exc_info=True)
        return AdjustmentResult(
            session_score=round(comprehension, 2),
            direction="hold",
            level_before=level,
            level_after=level,
            reason=FALLBACK_REASON,
            fallback=True,
        )

    def _evaluate(
        self,
        learner_id: str,
        session_id: str,
        *,
        comprehension: float,
        actual_ms: float,
        expected_ms: float,
    ) -> AdjustmentResult:
        learner = self.store.get_learner(learner_id)
        if learner is None:
            raise LookupError(f"Unknown learner {learner_id}")
        level_before = clamp_coarse_level(learner["reading_level"])

        rhythm = compute_rhythm(actual_ms, expected_ms)
        previous = self.store.list_recent_comprehension_scores(
            learner_id, exclude_session_id=session_id, limit=STABILITY_WINDOW
        )
        stability = compute_stability(previous)

        manual = self.store.get_manual_adjustment(session_id, learner_id)
        manual_direction = manual["direction"] if manual else None
        modifier = manual_modifier(manual_direction, comprehension)

        session_score = compute_session_score(comprehension, rhythm, stability, modifier)
        direction = decide_direction(comprehension)
        if direction == "up":
            level_after = clamp_coarse_level(level_before + LEVEL_STEP)
        elif direction == "down":
            level_after = clamp_coarse_level(level_before - LEVEL_STEP)
        else:
            level_after = level_before

        reason = build_reason(direction, comprehension, session_score, manual=manual_direction, modifier=modifier)
        evidence = {
            "comprehension_score": comprehension,
            "rhythm": round(rhythm, 4),
            "stability": round(stability, 4),
            "session_score": session_score,
            "manual_adjustment": manual_direction,
            "manual_modifier": modifier,
        }
        self.store.record_level_adjustment(
            learner_id,
            session_id,
            level_before=level_before,
            level_after=level_after,
            direction=direction,
            reason=reason,
            evidence=evidence,
        )
        logger.info(
            "Difficulty %s for learner=%s: %.1f -> %.1f (score=%.4f)",
            direction, learner_id, level_before, level_after, session_score,
        )
        return AdjustmentResult(
            session_score=session_score,
            direction=direction,
            level_before=level_before,
            level_after=level_after,
            reason=reason,
            evidence=evidence,
        )
