"""Outcome codes shared by the generation pipeline and the HTTP layer."""

from __future__ import annotations

from typing import Dict, Literal

ErrorCode = Literal["NO_API_KEY", "RATE_LIMIT", "GENERATION_FAILED", "QA_REJECTED"]

NO_API_KEY: ErrorCode = "NO_API_KEY"
RATE_LIMIT: ErrorCode = "RATE_LIMIT"
GENERATION_FAILED: ErrorCode = "GENERATION_FAILED"
QA_REJECTED: ErrorCode = "QA_REJECTED"

_USER_MESSAGES: Dict[str, str] = {
    NO_API_KEY: "Story generation is not configured right now. Please ask an adult to check the settings.",
    RATE_LIMIT: "You have read a lot of new stories today! Come back tomorrow for more.",
    GENERATION_FAILED: "We could not create your story this time. Please try again in a moment.",
    QA_REJECTED: "The story we wrote was not good enough, so we did not show it. Please try again.",
}

HTTP_STATUS: Dict[str, int] = {
    NO_API_KEY: 503,
    RATE_LIMIT: 429,
    QA_REJECTED: 422,
    GENERATION_FAILED: 502,
}


def user_message(code: str) -> str:
    return _USER_MESSAGES.get(code, _USER_MESSAGES[GENERATION_FAILED])


class GenerationError(Exception):
    """Aborts the active pipeline stage with a typed outcome code."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class NotFoundError(LookupError):
    """The requested story, session or trace does not exist for this learner."""


class ConflictError(RuntimeError):
    """The operation was already applied and may not run twice."""
