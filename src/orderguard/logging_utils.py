from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

from orderguard.domain.identity import identity_kind
from orderguard.logging_context import current_log_context
from orderguard.security.redaction import redact_data

# library logger -> (env override, level used when the root is not at DEBUG)
_CHATTY_LIBRARIES = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.WARNING),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.WARNING),
}
# httpcore stays at WARNING even in debug runs; its traces are per-socket noise
_DEBUG_PASSTHROUGH = {"httpx"}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: base fields, the admission context, then ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = current_log_context()
        payload.update(context.as_fields())
        if context.identity is not None:
            kind = identity_kind(context.identity)
            payload["identity_kind"] = kind.value if kind is not None else "unknown"

        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = str(exc_value) if exc_value is not None else ""
            payload["traceback"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["traceback"] = record.exc_text

        return json.dumps(redact_data(payload), default=str)


def _parse_level(raw: str | int | None, default: int) -> int:
    if isinstance(raw, int):
        return raw
    if raw is None or not str(raw).strip():
        return default
    resolved = logging.getLevelName(str(raw).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None) -> None:
    root = logging.getLogger()
    root_level = _parse_level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name, (env_name, quiet_level) in _CHATTY_LIBRARIES.items():
        default = quiet_level
        if root_level <= logging.DEBUG and name in _DEBUG_PASSTHROUGH:
            default = root_level
        logging.getLogger(name).setLevel(_parse_level(os.getenv(env_name), default))
