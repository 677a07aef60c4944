"""Environment variable validation and LLM credential resolution."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_LLM_MODEL = "gpt-4o-mini"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_MODEL": "Model identifier for story generation",
        "CONTENT_POLICY_PATH": "JSON file overriding the content policy word lists",
    }

    if os.getenv("LLM_API_KEY") and not os.getenv("LLM_BASE_URL"):
        logger.warning("LLM_API_KEY is set without LLM_BASE_URL; story generation will report NO_API_KEY")
    elif not (os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")):
        logger.warning("No LLM credentials configured; story generation will report NO_API_KEY")

    url_vars = {"LLM_BASE_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in ("MAX_STORIES_PER_DAY", "CACHE_TTL_DAYS", "LLM_TIMEOUT"):
        raw = os.getenv(var)
        if raw:
            try:
                int(raw)
            except ValueError as exc:
                raise EnvironmentError(f"{var} must be an integer, got {raw!r}") from exc

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class LLMCredentials:
    api_key: str
    base_url: str
    model: str

    @property
    def chat_completions_url(self) -> str:
        return self.base_url.rstrip("/") + "/chat/completions"


class MissingCredentialsError(EnvironmentError):
    """Raised when no usable LLM credential is configured."""


def resolve_llm_credentials(model_env_var: Optional[str] = None) -> LLMCredentials:
    """Return the active provider credentials.

    ``LLM_API_KEY`` (with its mandatory ``LLM_BASE_URL``) wins over
    ``OPENAI_API_KEY``. ``model_env_var`` names a purpose-specific override such
    as ``LLM_MODEL_STORY`` that takes precedence over ``LLM_MODEL``.
    """
    model_override = os.getenv(model_env_var) if model_env_var else None
    api_key = os.getenv("LLM_API_KEY")
    if api_key:
        base_url = os.getenv("LLM_BASE_URL")
        if not base_url:
            raise MissingCredentialsError(
                "LLM_BASE_URL is required when using LLM_API_KEY"
            )
        model = model_override or os.getenv("LLM_MODEL") or DEFAULT_LLM_MODEL
        return LLMCredentials(api_key=api_key, base_url=base_url, model=model)

    openai_key = os.getenv("OPENAI_API_KEY")
    if openai_key:
        model = model_override or os.getenv("LLM_MODEL") or DEFAULT_LLM_MODEL
        return LLMCredentials(api_key=openai_key, base_url=DEFAULT_OPENAI_BASE_URL, model=model)

    raise MissingCredentialsError(
        "No LLM API key configured. Set LLM_API_KEY (with LLM_BASE_URL) or OPENAI_API_KEY."
    )


def has_llm_key() -> bool:
    return bool(os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"))


def describe_configuration() -> Dict[str, Optional[str]]:
    """Non-secret view of the LLM configuration for start-up logs."""
    return {
        "provider": "custom" if os.getenv("LLM_API_KEY") else ("openai" if os.getenv("OPENAI_API_KEY") else None),
        "base_url": os.getenv("LLM_BASE_URL") or (DEFAULT_OPENAI_BASE_URL if os.getenv("OPENAI_API_KEY") else None),
        "model": os.getenv("LLM_MODEL") or DEFAULT_LLM_MODEL,
    }
