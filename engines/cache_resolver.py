"""Reuse of approved stories within a level, age and tone window."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import db
from env_validation import get_env_float, get_env_int
from topics import is_custom_topic

logger = logging.getLogger(__name__)

DEFAULT_LEVEL_WINDOW = 0.18
DEFAULT_TTL_DAYS = 7
CANDIDATE_LIMIT = 12
# A story without questions still needs the questions call before it is ready.
MISSING_QUESTIONS_PENALTY = 0.15


class CacheResolver:
    def __init__(
        self,
        *,
        level_window: Optional[float] = None,
        ttl_days: Optional[int] = None,
        clock: Callable[[], datetime] = db.utcnow,
        fetch_candidates: Callable[..., List[Dict[str, Any]]] = db.list_cache_candidates,
    ):
        self.level_window = level_window if level_window is not None else get_env_float(
            "CACHE_LEVEL_WINDOW", DEFAULT_LEVEL_WINDOW
        )
        self.ttl_days = ttl_days if ttl_days is not None else get_env_int("CACHE_TTL_DAYS", DEFAULT_TTL_DAYS)
        self._clock = clock
        self._fetch = fetch_candidates

    @staticmethod
    def rank(story: Dict[str, Any], target_level: float) -> float:
        penalty = MISSING_QUESTIONS_PENALTY if int(story.get("question_count") or 0) == 0 else 0.0
        return abs(float(story["level"]) - target_level) + penalty

    def find(
        self,
        learner_id: str,
        topic_slug: str,
        target_level: float,
        tone: int,
        *,
        skip: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Return the best reusable story for the request, or ``None``."""

        if skip or is_custom_topic(topic_slug):
            return None

        since = self._clock() - timedelta(days=self.ttl_days)
        candidates = self._fetch(
            learner_id,
            topic_slug,
            target_level - self.level_window,
            target_level + self.level_window,
            since,
            CANDIDATE_LIMIT,
        )
        matching = [story for story in candidates if _stored_tone(story) == int(tone)]
        if not matching:
            logger.debug(
                "No cached story for learner=%s topic=%s level=%.2f tone=%s (%d candidates)",
                learner_id, topic_slug, target_level, tone, len(candidates),
            )
            return None

        # sorted() is stable, so equal ranks keep the newest-first order of the query.
        best = sorted(matching, key=lambda story: self.rank(story, target_level))[0]
        return best


def _stored_tone(story: Dict[str, Any]) -> Optional[int]:
    metadata = story.get("metadata") or {}
    raw = metadata.get("tone")
    if isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
