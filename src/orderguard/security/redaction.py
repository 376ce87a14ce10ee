from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = {
    "AUTHORIZATION",
    "TOKEN",
    "SECRET",
    "PASSWORD",
    "SESSION_TOKEN",
    "REMOTE_STORE_TOKEN",
    "INIT_DATA",
}

_SENSITIVE_PARTS = tuple(part.casefold() for part in SENSITIVE_KEYS)
# exemption tokens are state, not credentials
_NON_SENSITIVE_KEYS = {"cancel_exemption_token", "cancelexemptiontoken", "exemption_token"}

_PLAIN_SECRET_PATTERNS = (
    re.compile(r"(?im)(authorization\s*[:=]\s*)(bearer\s+)?([^\s,;]+)"),
    re.compile(r"(?im)(remote_store_token\s*[:=]\s*)()([^\s,;]+)"),
)
_SESSION_IDENTITY_PATTERN = re.compile(r"\b(session_)([0-9a-z]+(?:_[0-9a-z]+)?)\b", re.IGNORECASE)


def _is_sensitive_key(key: object) -> bool:
    normalized = str(key).replace("-", "_").casefold()
    if normalized in _NON_SENSITIVE_KEYS:
        return False
    return any(part in normalized for part in _SENSITIVE_PARTS)


def mask_secret(value: str) -> str:
    if not value:
        return REDACTED
    if len(value) > 8:
        return f"{value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
    if len(value) <= 2:
        return "*" * len(value)
    return f"{'*' * (len(value) - 2)}{value[-2:]}"


def _redact_match(match: re.Match[str]) -> str:
    return f"{match.group(1)}{match.group(2) or ''}[REDACTED]"


def sanitize_text(text: str) -> str:
    try:
        redacted = str(text)
        for pattern in _PLAIN_SECRET_PATTERNS:
            redacted = pattern.sub(_redact_match, redacted)
        return _SESSION_IDENTITY_PATTERN.sub(
            lambda m: f"{m.group(1)}{mask_secret(m.group(2))}", redacted
        )
    except Exception:  # noqa: BLE001
        return REDACTED


def sanitize_mapping(d: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in d.items():
        key_str = str(key)
        if _is_sensitive_key(key_str):
            sanitized[key_str] = mask_secret(str(value)) if value is not None else REDACTED
            continue
        sanitized[key_str] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    try:
        if isinstance(value, Mapping):
            return sanitize_mapping(value)
        if isinstance(value, list):
            return [redact_data(item) for item in value]
        if isinstance(value, tuple):
            return tuple(redact_data(item) for item in value)
        if isinstance(value, str):
            return sanitize_text(value)
        return value
    except Exception:  # noqa: BLE001
        return REDACTED
