from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    UNKNOWN = "unknown"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network error",
    "connection timeout",
    "connection reset",
    "unable to connect",
    "could not connect",
    "timed out",
    "timeout",
    "no connection",
    "connection refused",
    "connection failed",
    "socket error",
    "host unreachable",
    "network unreachable",
    "429",
    "rate limit",
    "too many requests",
    "503",
    "service unavailable",
    "502",
    "bad gateway",
    "504",
    "gateway timeout",
    "500",
    "internal server error",
    "quota exceeded",
    "overloaded",
    "capacity exceeded",
    "try again later",
    "temporarily unavailable",
    "throttled",
)

PERMANENT_PATTERNS: tuple[str, ...] = (
    "401",
    "unauthorized",
    "authentication failed",
    "invalid api key",
    "invalid token",
    "403",
    "forbidden",
    "access denied",
    "permission denied",
    "invalid configuration",
    "invalid model",
    "model not found",
    "invalid parameter",
    "invalid request",
    "bad request",
    "400",
    "syntax error",
    "parse error",
    "validation error",
    "invalid json",
    "invalid format",
    "schema violation",
    "404",
    "not found",
    "does not exist",
    "resource not found",
    "content policy",
    "content filter",
    "safety violation",
    "blocked by policy",
)


def classify_error(message: str | None) -> ErrorCategory:
    """Sort an error message into transient, permanent or unknown.

    Transient patterns are checked first, so "504 not found upstream" is
    retried rather than given up on.
    """
    if not message or not message.strip():
        return ErrorCategory.UNKNOWN
    lowered = message.lower()
    if any(pattern in lowered for pattern in TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT
    if any(pattern in lowered for pattern in PERMANENT_PATTERNS):
        return ErrorCategory.PERMANENT
    return ErrorCategory.UNKNOWN


def is_retriable(message: str | None) -> bool:
    return classify_error(message) != ErrorCategory.PERMANENT
