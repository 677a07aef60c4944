"""Chat-completion client with a bounded retry loop and usage accounting."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple
from uuid import uuid4

import requests

import db
from engines.errors import GENERATION_FAILED, NO_API_KEY
from env_validation import MissingCredentialsError, get_env_int, resolve_llm_credentials

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("readbuddy.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

RETRY_BACKOFF_BASE_MS = 220
PREVIEW_CHARS = 220


@dataclass(frozen=True)
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class LLMOutcome:
    ok: bool
    parsed: Optional[Dict[str, Any]] = None
    usage: LLMUsage = field(default_factory=LLMUsage)
    model: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None
    attempts: int = 0


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_usage(usage: Optional[Mapping[str, Any]]) -> LLMUsage:
    usage = usage or {}
    prompt = max(0, _coerce_int(usage.get("prompt_tokens")) or 0)
    completion = max(0, _coerce_int(usage.get("completion_tokens")) or 0)
    reported_total = max(0, _coerce_int(usage.get("total_tokens")) or 0)
    total = reported_total if reported_total > 0 else prompt + completion
    return LLMUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _extract_content(data: Any) -> Tuple[Optional[str], Dict[str, Any]]:
    """Pull the message text out of a completion body plus a diagnostic snapshot."""

    choice: Mapping[str, Any] = {}
    if isinstance(data, Mapping):
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], Mapping):
            choice = choices[0]
    message = choice.get("message") or {}
    raw = message.get("content") if isinstance(message, Mapping) else None

    if isinstance(raw, str):
        kind, text = "string", raw
    elif isinstance(raw, list):
        kind = "array"
        text = "".join(
            part if isinstance(part, str) else str(part.get("text", "")) if isinstance(part, Mapping) else ""
            for part in raw
        )
    elif raw is None:
        kind, text = "null", ""
    else:
        kind, text = "other", str(raw)

    content = text.strip()
    usage = data.get("usage") if isinstance(data, Mapping) else None
    usage = usage if isinstance(usage, Mapping) else {}
    snapshot = {
        "finish_reason": choice.get("finish_reason"),
        "content_kind": kind,
        "content_len": len(content),
        "prompt_tokens": _coerce_int(usage.get("prompt_tokens")),
        "completion_tokens": _coerce_int(usage.get("completion_tokens")),
        "total_tokens": _coerce_int(usage.get("total_tokens")),
    }
    return (content or None), snapshot


def _format_snapshot(snapshot: Mapping[str, Any]) -> str:
    return ", ".join(
        [
            f"finish_reason={snapshot.get('finish_reason') or 'null'}",
            f"content_kind={snapshot.get('content_kind')}",
            f"content_len={snapshot.get('content_len')}",
            f"prompt_tokens={snapshot.get('prompt_tokens') if snapshot.get('prompt_tokens') is not None else 'n/a'}",
            f"completion_tokens={snapshot.get('completion_tokens') if snapshot.get('completion_tokens') is not None else 'n/a'}",
        ]
    )


class ModelInvoker:
    """Calls an OpenAI-compatible chat endpoint and returns parsed JSON objects.

    Domain checks are left to the caller; a successful outcome only means a
    well-formed JSON object came back. Expected failures are returned as
    ``LLMOutcome(ok=False, code=...)`` rather than raised.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        post: Optional[Callable[..., Any]] = None,
        record_metrics: bool = True,
    ):
        self._sleep = sleep
        self._post = post
        self.record_metrics = record_metrics

    def _send(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Any:
        post = self._post or requests.post
        response = post(url, json=payload, headers=headers, timeout=get_env_int("LLM_TIMEOUT", 60))
        response.raise_for_status()
        return response.json()

    def invoke(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_retries: int = 0,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        model_env_var: Optional[str] = None,
        purpose: str = "story",
        learner_id: Optional[str] = None,
    ) -> LLMOutcome:
        try:
            credentials = resolve_llm_credentials(model_env_var)
        except MissingCredentialsError as exc:
            logger.warning("LLM call '%s' skipped: %s", purpose, exc)
            return LLMOutcome(ok=False, error=str(exc), code=NO_API_KEY)

        headers = {
            "Authorization": f"Bearer {credentials.api_key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": credentials.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "temperature": temperature,
            "response_format": {"type": "json_object"},
        }
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)

        request_id = str(uuid4())
        total_attempts = max(0, int(max_retries)) + 1
        last_error = ""
        outcome: Optional[LLMOutcome] = None
        usage = LLMUsage()
        start = time.perf_counter()

        for attempt in range(total_attempts):
            if attempt > 0:
                self._sleep(RETRY_BACKOFF_BASE_MS * attempt / 1000.0)
            try:
                data = self._send(credentials.chat_completions_url, headers, payload)
            except requests.RequestException as exc:
                status = getattr(getattr(exc, "response", None), "status_code", None)
                last_error = f"API error: {exc}"
                logger.error(
                    "LLM call '%s' failed (attempt %s/%s, status=%s): %s",
                    purpose, attempt + 1, total_attempts, status, exc,
                )
                continue
            except ValueError as exc:
                last_error = f"API error: response body is not JSON ({exc})"
                logger.error("LLM call '%s' returned a non-JSON body: %s", purpose, exc)
                continue

            content, snapshot = _extract_content(data)
            if not content:
                last_error = f"The model returned no content ({_format_snapshot(snapshot)})"
                logger.warning("LLM call '%s' returned no content: %s", purpose, snapshot)
                continue

            try:
                parsed = json.loads(content)
            except json.JSONDecodeError:
                parsed = None
            if not isinstance(parsed, dict):
                if snapshot.get("finish_reason") == "length":
                    last_error = f"The model returned truncated JSON ({_format_snapshot(snapshot)})"
                else:
                    last_error = "The model returned invalid JSON"
                logger.warning(
                    "LLM call '%s' returned unparsable JSON: %s",
                    purpose,
                    {**snapshot, "preview": content[:PREVIEW_CHARS]},
                )
                continue

            usage = normalize_usage(data.get("usage") if isinstance(data, Mapping) else None)
            outcome = LLMOutcome(
                ok=True,
                parsed=parsed,
                usage=usage,
                model=credentials.model,
                attempts=attempt + 1,
            )
            break

        if outcome is None:
            outcome = LLMOutcome(
                ok=False,
                model=credentials.model,
                error=f"Generation failed after {total_attempts} attempts. Last error: {last_error}",
                code=GENERATION_FAILED,
                attempts=total_attempts,
            )

        latency_ms = int((time.perf_counter() - start) * 1000)
        self._record(request_id, learner_id, purpose, outcome, usage, latency_ms)
        return outcome

    def _record(
        self,
        request_id: str,
        learner_id: Optional[str],
        purpose: str,
        outcome: LLMOutcome,
        usage: LLMUsage,
        latency_ms: int,
    ) -> None:
        status = "ok" if outcome.ok else "failed"
        if self.record_metrics:
            try:
                db.record_llm_metric(
                    learner_id=learner_id,
                    model_id=outcome.model or "unknown",
                    purpose=purpose,
                    attempts=outcome.attempts,
                    latency_ms=latency_ms,
                    tokens_in=usage.prompt_tokens if outcome.ok else None,
                    tokens_out=usage.completion_tokens if outcome.ok else None,
                    outcome=status,
                )
            except Exception:
                logger.warning("Failed to record LLM metric for request %s", request_id, exc_info=True)

        log_record = {
            "event": "llm_call",
            "request_id": request_id,
            "learner_id": learner_id,
            "purpose": purpose,
            "model": outcome.model,
            "attempts": outcome.attempts,
            "latency_ms": latency_ms,
            "tokens_in": usage.prompt_tokens,
            "tokens_out": usage.completion_tokens,
            "tokens_total": usage.total_tokens,
            "outcome": status,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False, sort_keys=True))
