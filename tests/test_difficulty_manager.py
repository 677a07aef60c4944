import pytest

import db
from engines.difficulty_manager import (
    FALLBACK_REASON,
    DifficultyManager,
    build_reason,
    clamp_coarse_level,
    compute_rhythm,
    compute_session_score,
    compute_stability,
    compute_stars,
    decide_direction,
    manual_modifier,
)


def test_rhythm():
    assert compute_rhythm(90_000, 90_000) == 1.0
    assert compute_rhythm(180_000, 90_000) == 0.5
    assert compute_rhythm(45_000, 90_000) == 0.75
    assert compute_rhythm(500_000, 90_000) == 0.0
    assert compute_rhythm(10_000, 0) == 1.0


def test_stability_needs_three_sessions():
    assert compute_stability([]) == 0.5
    assert compute_stability([1.0, 0.0]) == 0.5
    assert compute_stability([0.5, 0.75, 1.0]) == pytest.approx(1 - (0.125 / 3) * 4)
    assert compute_stability([0.0, 1.0, 0.0, 1.0]) == 0.0


def test_session_score_example():
    score = compute_session_score(0.85, compute_rhythm(90_000, 90_000), compute_stability([]))

    assert score == pytest.approx(0.8525)
    assert decide_direction(0.85) == "up"


def test_direction_is_driven_by_comprehension_only():
    assert decide_direction(0.80) == "up"
    assert decide_direction(0.79) == "hold"
    assert decide_direction(0.60) == "hold"
    assert decide_direction(0.59) == "down"
    # a high composite score does not move a learner whose comprehension is low
    assert compute_session_score(0.7, 1.0, 1.0, 0.1) >= 0.8
    assert decide_direction(0.7) == "hold"


def test_session_score_is_clamped():
    assert compute_session_score(1.0, 1.0, 1.0, 0.1) == 1.0
    assert compute_session_score(0.0, 0.0, 0.0, -0.1) == 0.0


def test_manual_modifier():
    assert manual_modifier(None, 1.0) == 0.0
    assert manual_modifier("easier", 1.0) == -0.10
    assert manual_modifier("harder", 0.75) == 0.10
    assert manual_modifier("harder", 0.5) == 0.0


def test_coarse_level_is_clamped():
    assert clamp_coarse_level(0.5) == 1.0
    assert clamp_coarse_level(12) == 10.0
    assert clamp_coarse_level(3.5) == 3.5


@pytest.mark.parametrize(
    "ratio, stars",
    [(1.0, 3), (0.75, 2), (0.8, 2), (0.5, 1), (0.25, 1), (0.0, 0)],
)
def test_stars(ratio, stars):
    assert compute_stars(ratio) == stars


def test_reason_mentions_manual_adjustment():
    reason = build_reason("up", 0.85, 0.7025, manual="easier", modifier=-0.10)

    assert reason.startswith("Comprehension 85% (>=80%), session score 70%. Raising difficulty.")
    assert reason.endswith("(Manual adjustment: easier, modifier: -10%)")


def _seed_session(learner_id="alice", level=2.0):
    db.upsert_learner(learner_id, age_years=7, reading_level=level)
    story_id = db.insert_story(learner_id, "solar-system", "Luna", "body", level, {"tone": 3}, "m", approved=True)
    return db.create_session(learner_id, story_id, "solar-system", level, 90_000)


def test_evaluate_session_moves_level_up_and_records_audit(temp_db):
    session_id = _seed_session(level=2.0)

    result = DifficultyManager().evaluate_session(
        "alice", session_id, comprehension=0.85, actual_ms=90_000, expected_ms=90_000
    )

    assert result.direction == "up"
    assert result.session_score == pytest.approx(0.8525)
    assert (result.level_before, result.level_after) == (2.0, 2.5)
    assert not result.fallback
    assert db.get_learner("alice")["reading_level"] == 2.5

    audit = db.list_difficulty_adjustments("alice")
    assert len(audit) == 1
    assert audit[0]["session_id"] == session_id
    assert audit[0]["direction"] == "up"
    assert audit[0]["evidence"]["rhythm"] == 1.0
    assert audit[0]["evidence"]["stability"] == 0.5


def test_evaluate_session_respects_floor_and_manual_easier(temp_db):
    session_id = _seed_session(level=1.0)
    db.record_manual_adjustment(
        session_id, "alice", direction="easier", level_before=1.0, level_after=1.0, story_id=None
    )

    result = DifficultyManager().evaluate_session(
        "alice", session_id, comprehension=0.25, actual_ms=90_000, expected_ms=90_000
    )

    assert result.direction == "down"
    assert result.level_after == 1.0
    assert result.session_score == pytest.approx(0.65 * 0.25 + 0.25 + 0.05 - 0.10)
    assert "Manual adjustment: easier" in result.reason
    assert db.get_learner("alice")["reading_level"] == 1.0


class _BrokenStore:
    def get_learner(self, learner_id):
        return {"reading_level": 3.0}

    def list_recent_comprehension_scores(self, learner_id, **kwargs):
        raise RuntimeError("database is locked")


def test_failure_falls_back_to_hold():
    result = DifficultyManager(store=_BrokenStore()).evaluate_session(
        "alice", "s1", comprehension=0.456, actual_ms=1, expected_ms=1
    )

    assert result.fallback
    assert result.direction == "hold"
    assert result.level_before == result.level_after == 3.0
    assert result.session_score == 0.46
    assert result.reason == FALLBACK_REASON
