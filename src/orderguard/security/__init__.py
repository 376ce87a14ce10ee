from orderguard.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    mask_secret,
    redact_data,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "mask_secret",
    "redact_data",
    "sanitize_mapping",
    "sanitize_text",
]
