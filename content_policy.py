"""Content policy word lists used by the story QA rubric."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


class ContentPolicyError(ValueError):
    """Raised when a content policy override file contains invalid data."""


_DEFAULT_UNSAFE_TERMS: Tuple[str, ...] = (
    # Matched as substrings, so entries must not occur inside everyday words.
    "murder", "blood", "pistol", "rifle", "knife", "weapon",
    "drugs", "alcohol", "beer", "drunk", "cigarette",
    "sexy", "naked",
    "stupid", "idiot", "moron",
    "devil", "horror",
    "suicide", "dead body",
)

_DEFAULT_FLAT_OPENINGS: Tuple[str, ...] = (
    "in this text",
    "in this story",
    "this text is about",
    "this story is about",
    "today we will learn",
    "today we are going to learn",
    "in this lesson",
    "we are going to talk about",
    "let us learn about",
)

_DEFAULT_NARRATIVE_CONNECTIVES: Tuple[str, ...] = (
    "one day",
    "suddenly",
    "then",
    "but",
    "when",
    "meanwhile",
    "finally",
    "afterward",
    "so",
)


@dataclass(frozen=True)
class ContentPolicy:
    """Swappable word lists and thresholds for the QA rubric."""

    unsafe_terms: Tuple[str, ...] = _DEFAULT_UNSAFE_TERMS
    flat_openings: Tuple[str, ...] = _DEFAULT_FLAT_OPENINGS
    narrative_connectives: Tuple[str, ...] = _DEFAULT_NARRATIVE_CONNECTIVES
    duplicate_title_threshold: float = 0.9
    opening_window_chars: int = 80
    length_tolerance: float = 0.3


DEFAULT_POLICY = ContentPolicy()

_LIST_KEYS = ("unsafe_terms", "flat_openings", "narrative_connectives")


def _coerce_terms(key: str, value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list):
        raise ContentPolicyError(f"'{key}' must be a JSON list of strings")
    terms = []
    for idx, item in enumerate(value, start=1):
        if not isinstance(item, str) or not item.strip():
            raise ContentPolicyError(f"'{key}' entry #{idx} must be a non-empty string")
        terms.append(item.strip().lower())
    if not terms:
        raise ContentPolicyError(f"'{key}' may not be empty")
    return tuple(terms)


def load_content_policy(path: str | Path) -> ContentPolicy:
    """Load ``path`` and overlay its keys on the built-in policy."""

    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Content policy file not found: {policy_path}")

    with policy_path.open("r", encoding="utf-8") as fh:
        try:
            raw = json.load(fh)
        except json.JSONDecodeError as exc:
            raise ContentPolicyError(f"Content policy file is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise ContentPolicyError("Content policy file must contain a JSON object")

    overrides: Dict[str, Any] = {}
    for key in _LIST_KEYS:
        if key in raw:
            overrides[key] = _coerce_terms(key, raw[key])

    if "duplicate_title_threshold" in raw:
        try:
            threshold = float(raw["duplicate_title_threshold"])
        except (TypeError, ValueError) as exc:
            raise ContentPolicyError("'duplicate_title_threshold' must be numeric") from exc
        if not 0.0 < threshold <= 1.0:
            raise ContentPolicyError("'duplicate_title_threshold' must be within (0, 1]")
        overrides["duplicate_title_threshold"] = threshold

    if "opening_window_chars" in raw:
        try:
            window = int(raw["opening_window_chars"])
        except (TypeError, ValueError) as exc:
            raise ContentPolicyError("'opening_window_chars' must be an integer") from exc
        if window <= 0:
            raise ContentPolicyError("'opening_window_chars' must be positive")
        overrides["opening_window_chars"] = window

    unknown = sorted(set(raw) - set(_LIST_KEYS) - {"duplicate_title_threshold", "opening_window_chars"})
    if unknown:
        raise ContentPolicyError(f"Unknown content policy keys: {', '.join(unknown)}")

    return replace(DEFAULT_POLICY, **overrides)


@lru_cache(maxsize=4)
def _cached_policy(path: Optional[str]) -> ContentPolicy:
    if not path:
        return DEFAULT_POLICY
    return load_content_policy(path)


def active_policy() -> ContentPolicy:
    """Return the policy selected by ``CONTENT_POLICY_PATH`` (built-in when unset)."""

    return _cached_policy(os.getenv("CONTENT_POLICY_PATH") or None)
