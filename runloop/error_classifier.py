"""Map raised failures and tool error text onto the run's error taxonomy.

The classifier is a pure policy: no state, no I/O. Act uses it to decide
between a single local retry (transient), recording and moving on
(permanent), and escalating into recovery (stuck). Plan uses it to decide
whether a failed model call is worth another attempt.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Protocol

import httpx


class ErrorClass(str, Enum):
    NONE = "none"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    STUCK = "stuck"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    ErrorClass.NONE: 0,
    ErrorClass.TRANSIENT: 1,
    ErrorClass.STUCK: 2,
    ErrorClass.PERMANENT: 3,
}


class _ErrorSummary(Protocol):
    is_error: bool
    result_text: str


_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504, 529}
_PERMANENT_STATUS = {400, 401, 403, 404, 405, 413, 422}

TRANSIENT_PATTERNS = (
    "rate limit",
    "429",
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporarily unavailable",
    "service unavailable",
    "503",
    "502",
    "retry",
    "screenshot capture failed",
    "screenshot failed",
    "econnreset",
    "econnrefused",
)

PERMANENT_PATTERNS = (
    "not found",
    "permission denied",
    "invalid tool",
    "unknown tool",
    "invalid parameter",
    "crashed",
    "app not running",
    "accessibility not available",
    "403",
    "401",
    "unauthorized",
    "forbidden",
    "unsupported",
    "malformed",
    # Resource limits cannot be fixed by retrying the same call.
    "token limit",
    "context length",
    "budget exceeded",
    "quota",
    "payload too large",
)

STUCK_PATTERNS = (
    "stuck",
    "identical",
    "no progress",
    "repeating",
    "same state",
    "loop detected",
    "repeated action",
)


def classify(exc: BaseException) -> ErrorClass:
    """Classify a raised exception."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else 0
        if status in _TRANSIENT_STATUS:
            return ErrorClass.TRANSIENT
        if status in _PERMANENT_STATUS:
            return ErrorClass.PERMANENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, PermissionError):
        return ErrorClass.PERMANENT
    return classify_message(str(exc) or type(exc).__name__)


def classify_tool_error(text: str) -> ErrorClass:
    """Classify the result text of an error-flagged tool result."""
    return classify_message(text)


def classify_summaries(summaries: Iterable[_ErrorSummary]) -> ErrorClass:
    """Return the most severe class among the failed summaries of a batch."""
    worst = ErrorClass.NONE
    for s in summaries:
        if not s.is_error:
            continue
        cls = classify_tool_error(s.result_text)
        if cls.severity > worst.severity:
            worst = cls
    return worst


def classify_message(message: str) -> ErrorClass:
    m = (message or "").lower()
    if _matches_any(m, TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    if _matches_any(m, PERMANENT_PATTERNS):
        return ErrorClass.PERMANENT
    if _matches_any(m, STUCK_PATTERNS):
        return ErrorClass.STUCK
    # Unknown failures are treated as retry-worthy.
    return ErrorClass.TRANSIENT


def _matches_any(message: str, patterns: Iterable[str]) -> bool:
    return any(p in message for p in patterns)
