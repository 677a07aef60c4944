import math
from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.elo import (
    RD_MAX,
    RD_MIN,
    GlickoRatingEngine,
    RatedAnswer,
    SkillRatings,
    adjust_rd_for_consistency,
    anti_farming_factor,
    classify_rating,
    expected_score,
    glicko_g,
    inflate_rd_for_inactivity,
    process_answers,
    question_rating,
)


def test_g_and_expected_score():
    assert glicko_g(0) == 1.0
    assert glicko_g(350) < glicko_g(50) < 1.0
    assert expected_score(1000, 1000, 50) == pytest.approx(0.5)
    assert expected_score(1200, 1000, 50) > 0.5 > expected_score(800, 1000, 50)


def test_question_rating():
    assert question_rating(2.0, 3, "vocabulary") == 600
    assert question_rating(1.0, 5, "summary") == 620
    assert question_rating(4.0, 1, "literal") == 800


def test_anti_farming_damps_easy_correct_answers():
    easy = anti_farming_factor(1400, 600, 1.0, 0.99, 80)
    surprising = anti_farming_factor(1000, 1000, 0.0, 0.5, 80)

    assert easy < 0.1
    assert surprising == pytest.approx(0.6)


def test_anti_farming_is_relaxed_while_uncertain():
    calibrated = anti_farming_factor(1400, 600, 1.0, 0.99, 100)
    uncertain = anti_farming_factor(1400, 600, 1.0, 0.99, 300)

    assert uncertain > calibrated


def test_rd_consistency_adjustment():
    assert adjust_rd_for_consistency(200, [(0.9, 1.0)]) == 200
    # perfect predictions shrink RD, bad ones grow it, always within bounds
    assert adjust_rd_for_consistency(200, [(0.95, 1.0), (0.05, 0.0)]) < 200
    assert adjust_rd_for_consistency(200, [(0.9, 0.0), (0.1, 1.0)]) > 200
    assert adjust_rd_for_consistency(80, [(1.0, 1.0), (0.0, 0.0)]) == RD_MIN
    assert adjust_rd_for_consistency(340, [(1.0, 0.0), (0.0, 1.0)]) == RD_MAX


def test_inactivity_inflates_rd():
    now = datetime(2025, 3, 10, tzinfo=timezone.utc)

    assert inflate_rd_for_inactivity(75, None, now) == 75
    assert inflate_rd_for_inactivity(75, now, now) == 75
    assert inflate_rd_for_inactivity(75, now - timedelta(days=30), now) == pytest.approx(
        math.sqrt(75 ** 2 + 17.9 ** 2 * 30)
    )
    assert inflate_rd_for_inactivity(75, now - timedelta(days=2000), now) == RD_MAX


def test_correct_answer_raises_rating_and_shrinks_rd():
    update = process_answers(SkillRatings(), [RatedAnswer("vocabulary", True, 3)], text_level=2.0)

    ratings = update.ratings
    assert 1000 < ratings.global_ <= 1000 + 8 + RD_MAX / 50
    assert ratings.vocabulary > 1000
    assert ratings.literal == ratings.inference == ratings.summary == 1000
    assert RD_MIN <= ratings.rd < RD_MAX
    assert update.changes[0].question_rating == 600


def test_wrong_answer_on_hard_question_lowers_rating():
    start = SkillRatings(global_=1200, literal=1200, inference=1200, vocabulary=1200, summary=1200, rd=150)

    update = process_answers(start, [RatedAnswer("summary", False, 5)], text_level=4.0)

    assert update.ratings.global_ < 1200
    assert update.ratings.summary < 1200
    assert update.changes[0].delta_global < 0


def test_unknown_question_type_is_rejected():
    with pytest.raises(ValueError):
        process_answers(SkillRatings(), [RatedAnswer("opinion", True)], text_level=1.0)


def test_classify_rating():
    assert classify_rating(799.9) == "Beginner"
    assert classify_rating(800) == "Developing"
    assert classify_rating(1100) == "Competent"
    assert classify_rating(1400) == "Advanced"


def test_engine_persists_rating_and_snapshot(temp_db):
    db.upsert_learner("alice")
    engine = GlickoRatingEngine()

    result = engine.update_for_session(
        "alice",
        "session-1",
        [
            RatedAnswer("literal", True, 2),
            RatedAnswer("inference", True, 4),
            RatedAnswer("vocabulary", False, 3),
            RatedAnswer("summary", True, 3),
        ],
        text_level=2.0,
        wpm=64.5,
    )

    assert result["previous_global"] == 1000
    assert result["global"] == db.get_skill_rating("alice")["global"]
    assert result["label"] == classify_rating(result["global"])
    assert len(result["changes"]) == 4
    assert engine.current("alice").rd == result["rd"]

    snapshots = db.list_rating_snapshots("alice")
    assert len(snapshots) == 1
    assert snapshots[0]["session_id"] == "session-1"
    assert snapshots[0]["wpm"] == 64.5


def test_engine_inflates_rd_since_last_completed_session():
    class _Store:
        def __init__(self):
            self.saved = None

        def get_skill_rating(self, learner_id):
            return {"global": 1000, "literal": 1000, "inference": 1000, "vocabulary": 1000, "summary": 1000, "rd": 80}

        def last_completed_session_at(self, learner_id, exclude_session_id=None):
            return datetime(2025, 1, 1, tzinfo=timezone.utc)

        def save_skill_rating(self, learner_id, ratings):
            self.saved = dict(ratings)

        def append_rating_snapshot(self, learner_id, session_id, ratings, wpm):
            pass

    store = _Store()
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    inflated = inflate_rd_for_inactivity(80, datetime(2025, 1, 1, tzinfo=timezone.utc), now)
    expected = process_answers(
        SkillRatings(rd=inflated), [RatedAnswer("literal", True, 3)], text_level=1.0
    ).ratings

    GlickoRatingEngine(store=store).update_for_session(
        "alice", "s2", [RatedAnswer("literal", True, 3)], text_level=1.0, now=now
    )

    assert store.saved["rd"] == expected.rd
    assert store.saved["global"] == expected.global_
