"""
Failure Taxonomy
================

Classifies model-call failures into recovery tiers and tool failures into
recoverable vs fatal-for-iteration kinds.

Model failures:

    TRANSIENT        network blip, 5xx, timeout     retry immediately (max 3)
    RATE_LIMIT       429, quota exhausted           backoff with jitter, cooldown
    MODEL_SPECIFIC   overloaded, model unavailable  fall back to next model
    CONTENT_RELATED  context too long, policy       adjust and retry once
    FATAL            bad credential, suspended      stop, surface to caller

Tool failures are classified separately (``ToolErrorKind``); only ``crash``
and ``blocked`` end the iteration.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from hyle.errors import LlmFailure, ProviderError


class FailureKind(Enum):
    """Model-call failure categories."""
    TRANSIENT = "transient"
    RATE_LIMIT = "rate_limit"
    MODEL_SPECIFIC = "model_specific"
    CONTENT_RELATED = "content_related"
    FATAL = "fatal"


class RecoveryAction(Enum):
    """What the dispatcher does about a failure."""
    RETRY = "retry"
    BACKOFF = "backoff"
    FALLBACK = "fallback"
    ADJUST = "adjust"
    CIRCUIT_BREAK = "circuit_break"


RECOVERY_FOR_KIND = {
    FailureKind.TRANSIENT: RecoveryAction.RETRY,
    FailureKind.RATE_LIMIT: RecoveryAction.BACKOFF,
    FailureKind.MODEL_SPECIFIC: RecoveryAction.FALLBACK,
    FailureKind.CONTENT_RELATED: RecoveryAction.ADJUST,
    FailureKind.FATAL: RecoveryAction.CIRCUIT_BREAK,
}


class ToolErrorKind(Enum):
    """Tool execution failure categories."""
    NOT_FOUND = "not_found"
    INVALID_ARGS = "invalid_args"
    NONZERO_EXIT = "nonzero_exit"
    IO = "io"
    TIMEOUT = "timeout"
    KILLED = "killed"
    CRASH = "crash"
    BLOCKED = "blocked"
    REJECTED = "rejected"    # declined by the user or skipped with a blocked batch

    @property
    def fatal_for_iteration(self) -> bool:
        return self in (ToolErrorKind.CRASH, ToolErrorKind.BLOCKED)


# =============================================================================
# Message patterns
# =============================================================================

FATAL_PATTERNS = [
    r"(?i)invalid\s+(api\s+)?key",
    r"(?i)unauthori[sz]ed",
    r"(?i)authentication\s+(failed|error|required)",
    r"(?i)account\s+(is\s+)?(suspended|disabled|deactivated)",
    r"(?i)insufficient\s+credits?",
    r"(?i)payment\s+required",
]

RATE_LIMIT_PATTERNS = [
    r"(?i)rate[\s_-]?limit",
    r"(?i)too\s+many\s+requests",
    r"(?i)quota\s+(exceeded|exhausted)",
]

CONTENT_PATTERNS = [
    r"(?i)context\s+(length|window)?\s*(exceeded|too\s+long)",
    r"(?i)maximum\s+context\s+length",
    r"(?i)prompt\s+is\s+too\s+long",
    r"(?i)too\s+many\s+tokens",
    r"(?i)content\s+(policy|filter|moderation)",
    r"(?i)flagged\s+by\s+moderation",
]

MODEL_SPECIFIC_PATTERNS = [
    r"(?i)overloaded",
    r"(?i)model\s+(is\s+)?(currently\s+)?(unavailable|not\s+available|not\s+found)",
    r"(?i)no\s+endpoints?\s+found",
    r"(?i)does\s+not\s+support\s+tools",
]

TRANSIENT_PATTERNS = [
    r"(?i)timed?\s*out",
    r"(?i)connection\s+(reset|refused|error|aborted)",
    r"(?i)temporarily\s+unavailable",
    r"(?i)bad\s+gateway",
    r"(?i)service\s+unavailable",
]


def _matches(patterns: list, text: str) -> bool:
    return any(re.search(p, text) for p in patterns)


@dataclass
class Classification:
    """Result of classifying one failure."""
    kind: FailureKind
    message: str
    retry_after: Optional[float] = None
    status: Optional[int] = None

    @property
    def recovery(self) -> RecoveryAction:
        return RECOVERY_FOR_KIND[self.kind]


def classify_status(status: int) -> Optional[FailureKind]:
    """Map an HTTP status code to a failure kind, if the code alone decides it."""
    if status == 429:
        return FailureKind.RATE_LIMIT
    if status in (401, 402, 403):
        return FailureKind.FATAL
    if status in (404, 529):
        return FailureKind.MODEL_SPECIFIC
    if status == 413:
        return FailureKind.CONTENT_RELATED
    if status in (408, 500, 502, 503, 504):
        return FailureKind.TRANSIENT
    return None


def classify_message(message: str) -> FailureKind:
    """Classify from error text alone. Unknown text is treated as transient."""
    if _matches(FATAL_PATTERNS, message):
        return FailureKind.FATAL
    if _matches(RATE_LIMIT_PATTERNS, message):
        return FailureKind.RATE_LIMIT
    if _matches(CONTENT_PATTERNS, message):
        return FailureKind.CONTENT_RELATED
    if _matches(MODEL_SPECIFIC_PATTERNS, message):
        return FailureKind.MODEL_SPECIFIC
    return FailureKind.TRANSIENT


def classify_failure(exc: BaseException) -> Classification:
    """
    Classify an exception raised while talking to a model.

    Message patterns win over a bare 400 status because providers report
    context-length and policy problems as generic client errors.
    """
    if isinstance(exc, LlmFailure):
        return Classification(exc.kind, exc.message, exc.retry_after)

    if isinstance(exc, ProviderError):
        message = exc.message
        kind = classify_status(exc.status) if exc.status is not None else None
        if kind is None or kind == FailureKind.TRANSIENT:
            by_text = classify_message(message)
            if kind is None or by_text != FailureKind.TRANSIENT:
                kind = by_text
        return Classification(kind, message, exc.retry_after, exc.status)

    if isinstance(exc, httpx.TimeoutException):
        return Classification(FailureKind.TRANSIENT, f"Request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return Classification(FailureKind.TRANSIENT, f"Connection error: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        kind = classify_status(status) or classify_message(str(exc))
        return Classification(kind, str(exc), parse_retry_after(exc.response.headers.get("retry-after")), status)
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return Classification(FailureKind.TRANSIENT, f"{type(exc).__name__}: {exc}")

    return Classification(classify_message(str(exc)), f"{type(exc).__name__}: {exc}")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds. HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)


# =============================================================================
# Fingerprints
# =============================================================================

_VOLATILE = [
    (re.compile(r"0x[0-9a-fA-F]+"), "0x?"),
    (re.compile(r"\d+"), "N"),
    (re.compile(r"\s+"), " "),
]


def error_fingerprint(text: str) -> str:
    """
    Short stable hash of an error message with numbers and addresses removed,
    so "line 12" and "line 40" variants of the same failure collapse together.
    """
    normalized = text.strip()[:200]
    for pattern, repl in _VOLATILE:
        normalized = pattern.sub(repl, normalized)
    return hashlib.md5(normalized.lower().encode()).hexdigest()[:8]
