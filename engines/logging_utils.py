"""Structured JSON event logging shared by the engines."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def json_log(event: str, payload: Dict[str, Any], log: Optional[logging.Logger] = None) -> None:
    """Log ``event`` and ``payload`` as one sorted-key JSON line at INFO."""

    record = {"event": event, **payload}
    try:
        message = json.dumps(record, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        fallback = {
            "event": event,
            "error": "serialization_failed",
            "payload_repr": repr(payload),
        }
        message = json.dumps(fallback, ensure_ascii=False, sort_keys=True)
    (log or logger).info(message)
