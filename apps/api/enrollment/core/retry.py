from __future__ import annotations

import re

from fastapi import HTTPException

_MAX_BACKOFF_SECONDS = 60.0
_MAX_ERROR_LENGTH = 500
_SENSITIVE_PATTERNS = (
    re.compile(r"bearer\s+[a-z0-9\-_\.]+", re.IGNORECASE),
    re.compile(r"(x-api-key|api[_-]?key|token|secret|password)[\"']?\s*[:=]\s*[\"']?[^\s,;\"']+", re.IGNORECASE),
    re.compile(r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b"),
)


def backoff_seconds(attempt: int, *, base: float = 1.0) -> float:
    """Delay to wait after a failed attempt: base, 2*base, 4*base, ..."""
    if attempt <= 1:
        return base
    return min(base * (2 ** (attempt - 1)), _MAX_BACKOFF_SECONDS)


def sanitize_error(exc: Exception, *, default_message: str) -> str:
    if isinstance(exc, HTTPException) and isinstance(exc.detail, str) and exc.detail.strip():
        message = exc.detail.strip()
    else:
        message = str(exc).strip()
    if not message:
        message = default_message
    return sanitize_text(message)


def sanitize_text(message: str) -> str:
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub("[redacted]", sanitized)
    return sanitized[:_MAX_ERROR_LENGTH]


def mask_document(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) < 4:
        return "***" if digits else None
    return f"***{digits[-2:]}"


def mask_email(value: object) -> str | None:
    if not isinstance(value, str) or "@" not in value:
        return None
    local, _, domain = value.strip().partition("@")
    if not local:
        return f"***@{domain}"
    return f"{local[0]}***@{domain}"
