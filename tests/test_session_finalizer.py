import pytest

import db
from engines.errors import ConflictError, NotFoundError
from engines.session_finalizer import SessionFinalizer
from engines.validation import AnswerValidationError


def _questions():
    return [
        {"type": question_type, "prompt": f"{question_type} question?", "options": ["a", "b", "c", "d"],
         "correct_index": 0, "explanation": "Because.", "difficulty": difficulty}
        for question_type, difficulty in (("literal", 2), ("inference", 4), ("vocabulary", 3), ("summary", 3))
    ]


@pytest.fixture
def session(temp_db):
    db.upsert_learner("alice", age_years=7, reading_level=2.0)
    story_id = db.insert_story(
        "alice", "solar-system", "Luna Meets Mars", "body", 2.0, {"tone": 3}, "m", approved=True, reusable=True
    )
    db.insert_questions_if_absent(story_id, _questions())
    session_id = db.create_session("alice", story_id, "solar-system", 2.0, 120_000)
    return {"session_id": session_id, "story_id": story_id, "questions": db.list_story_questions(story_id)}


def _answers(questions, correct_flags):
    return [
        {
            "question_id": question["id"],
            "type": question["type"],
            "selected_option": 0 if correct else 1,
            "is_correct": correct,
            "response_time_ms": 3000,
        }
        for question, correct in zip(questions, correct_flags)
    ]


def test_three_of_four_gives_two_stars(session):
    result = SessionFinalizer().finalize(
        session["session_id"],
        "alice",
        reading_time_ms=120_000,
        answers=_answers(session["questions"], [True, True, False, True]),
        wpm=70,
    )

    assert (result.correct, result.total) == (3, 4)
    assert result.comprehension_score == 75
    assert result.stars == 2
    assert result.direction == "hold"
    assert result.level_before == result.level_after == 2.0
    # 0.65 * 0.75 + 0.25 * 1 + 0.10 * 0.5
    assert result.session_score == pytest.approx(0.7875)
    assert result.global_rating is not None
    assert result.previous_global_rating == 1000
    assert result.rating_label

    stored = db.get_session(session["session_id"], "alice")
    assert stored["completed"]
    assert stored["stars"] == 2
    assert stored["duration_seconds"] == 120
    assert stored["metadata"]["comprehension_score"] == 0.75
    assert stored["metadata"]["session_score"] == pytest.approx(0.7875)
    assert stored["metadata"]["wpm"] == 70
    assert len(db.list_session_answers(session["session_id"])) == 4
    assert db.get_skill_rating("alice")["global"] == result.global_rating


def test_perfect_session_moves_level_up(session):
    result = SessionFinalizer().finalize(
        session["session_id"],
        "alice",
        reading_time_ms=120_000,
        answers=_answers(session["questions"], [True, True, True, True]),
    )

    assert result.stars == 3
    assert result.direction == "up"
    assert result.level_after == 2.5
    assert db.get_learner("alice")["reading_level"] == 2.5


def test_session_can_only_be_finalized_once(session):
    finalizer = SessionFinalizer()
    answers = _answers(session["questions"], [True, False])
    finalizer.finalize(session["session_id"], "alice", reading_time_ms=60_000, answers=answers)

    with pytest.raises(ConflictError):
        finalizer.finalize(session["session_id"], "alice", reading_time_ms=60_000, answers=answers)

    assert len(db.list_session_answers(session["session_id"])) == 2
    assert len(db.list_difficulty_adjustments("alice")) == 1


def test_unknown_or_foreign_session_is_not_found(session):
    db.upsert_learner("bob")
    answers = _answers(session["questions"], [True])

    with pytest.raises(NotFoundError):
        SessionFinalizer().finalize("missing", "alice", reading_time_ms=1, answers=answers)
    with pytest.raises(NotFoundError):
        SessionFinalizer().finalize(session["session_id"], "bob", reading_time_ms=1, answers=answers)


def test_invalid_answers_leave_session_open(session):
    with pytest.raises(AnswerValidationError):
        SessionFinalizer().finalize(session["session_id"], "alice", reading_time_ms=1, answers=[])

    assert not db.get_session(session["session_id"])["completed"]


def test_rating_failure_does_not_block_finalization(session):
    class _BrokenRatings:
        def update_for_session(self, *args, **kwargs):
            raise RuntimeError("rating store unavailable")

    result = SessionFinalizer(ratings=_BrokenRatings()).finalize(
        session["session_id"],
        "alice",
        reading_time_ms=120_000,
        answers=_answers(session["questions"], [True, True, True, True]),
    )

    assert result.stars == 3
    assert result.global_rating is None
    assert db.get_session(session["session_id"])["completed"]
