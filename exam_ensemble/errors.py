"""
Error taxonomy for provider calls and ensemble resolution.

Provider failures are classified into a small, stable set of kinds so that
retry decisions and user-facing messages never depend on raw provider text.
"""

from __future__ import annotations
import re
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    OVERLOAD = "overload"
    TIMEOUT = "timeout"
    AUTH_ERROR = "auth_error"
    NOT_FOUND = "not_found"
    SAFETY_BLOCKED = "safety_blocked"
    NETWORK_ERROR = "network_error"
    EMPTY_OR_UNPARSEABLE = "empty_or_unparseable"
    MISSING_CREDENTIAL = "missing_credential"
    OTHER = "other"
    ENSEMBLE_EXHAUSTED = "ensemble_exhausted"


FATAL_KINDS = frozenset({
    ErrorKind.MISSING_CREDENTIAL,
    ErrorKind.AUTH_ERROR,
    ErrorKind.NOT_FOUND,
})

_DESCRIPTIONS = {
    ErrorKind.OVERLOAD: "Server busy or rate limited",
    ErrorKind.TIMEOUT: "Timeout",
    ErrorKind.AUTH_ERROR: "API key invalid or expired",
    ErrorKind.NOT_FOUND: "Model not found",
    ErrorKind.SAFETY_BLOCKED: "Blocked by safety filter",
    ErrorKind.NETWORK_ERROR: "Network error",
    ErrorKind.EMPTY_OR_UNPARSEABLE: "Empty response or parse failure",
    ErrorKind.MISSING_CREDENTIAL: "API key not configured",
    ErrorKind.OTHER: "Provider error",
    ErrorKind.ENSEMBLE_EXHAUSTED: "All models failed",
}

# Checked in order; the first pattern found in the message wins.
_MESSAGE_RULES = [
    (ErrorKind.OVERLOAD, r"\b(429|503|529)\b|overload|unavailable|resource_exhausted|quota|rate.?limit"),
    (ErrorKind.AUTH_ERROR, r"api.?key|\b401\b|unauthenticated|authentication|permission_denied"),
    (ErrorKind.NOT_FOUND, r"\b404\b|not.?found"),
    (ErrorKind.TIMEOUT, r"timed? ?out|deadline_exceeded"),
    (ErrorKind.SAFETY_BLOCKED, r"safety|blocked"),
    (ErrorKind.NETWORK_ERROR, r"econnrefused|connection|network|dns"),
    (ErrorKind.EMPTY_OR_UNPARSEABLE, r"empty response|parse failure|no candidates"),
]


def classify_error(http_status: Optional[int], message: Optional[str] = None) -> ErrorKind:
    """
    Map an HTTP-like status code and/or an error message to an ErrorKind.

    The status code is authoritative when it is unambiguous; a 400 is only
    an auth error when the message says so (Google reports bad keys as 400).
    """
    msg = (message or "").lower()

    if http_status in (429, 503, 529):
        return ErrorKind.OVERLOAD
    if http_status in (401, 403):
        return ErrorKind.AUTH_ERROR
    if http_status == 404:
        return ErrorKind.NOT_FOUND
    if http_status in (408, 504):
        return ErrorKind.TIMEOUT

    for kind, pattern in _MESSAGE_RULES:
        if re.search(pattern, msg):
            return kind
    return ErrorKind.OTHER


def is_retryable(kind: ErrorKind) -> bool:
    return kind not in FATAL_KINDS and kind != ErrorKind.ENSEMBLE_EXHAUSTED


def next_step(kind: Optional[ErrorKind], attempt: int, max_attempts: int) -> str:
    """
    Transition of the per-call retry state machine.

    ``attempt`` is the 1-based index of the attempt that just finished.
    Returns "success", "retry" or "stop".
    """
    if kind is None:
        return "success"
    if not is_retryable(kind) or attempt >= max_attempts:
        return "stop"
    return "retry"


def backoff_delay(
    kind: ErrorKind,
    attempt: int,
    base_s: float = 1.0,
    overload_base_s: float = 2.0,
) -> float:
    """Seconds to wait before the attempt after ``attempt`` (1-based)."""
    base = overload_base_s if kind == ErrorKind.OVERLOAD else base_s
    return base * attempt


def describe_error(kind: Optional[ErrorKind]) -> str:
    if kind is None:
        return ""
    return _DESCRIPTIONS.get(kind, kind.value)


class EnsembleExhausted(Exception):
    """Raised when no worker and no judge produced a usable answer."""

    kind = ErrorKind.ENSEMBLE_EXHAUSTED

    def __init__(self, provider_errors: Optional[dict] = None):
        self.provider_errors = dict(provider_errors or {})
        detail = ", ".join(
            f"{pid}: {kind.value if kind else 'no answer'}"
            for pid, kind in self.provider_errors.items()
        )
        message = "All models failed including judge"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
