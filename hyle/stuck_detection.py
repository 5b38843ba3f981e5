"""
Stuck Detection
===============

Detects an agent going in circles within one loop:

- repeated action: the same tool call signature (name + canonical
  arguments) seen ``repeat_threshold`` times among the last 10 calls
- repeated error: one error category (tool, error kind and a fingerprint
  of the message) seen 3 times in the same window
- failure streak: ``max_consecutive_failures`` failures in a row

``repeat_threshold`` is ``min(3, max_consecutive_failures)``, so a
conservative failure budget also tightens the repeat check.
"""

import hashlib
import json
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Deque, Optional, Tuple

from hyle.failures import error_fingerprint
from hyle.records import ToolCall

SIGNATURE_WINDOW = 10
DEFAULT_REPEAT_THRESHOLD = 3
ERROR_REPEAT_THRESHOLD = 3
DEFAULT_MAX_CONSECUTIVE_FAILURES = 5


def _canonical(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def action_signature(name: str, args: dict) -> str:
    """sha256 of the tool name and its arguments as canonical JSON."""
    payload = json.dumps(_canonical(args or {}), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{name.strip().lower()}\n{payload}".encode("utf-8")).hexdigest()


def error_category(call: ToolCall) -> Optional[str]:
    """
    ``<tool>:<error kind>:<fingerprint>`` for a failed call, None otherwise.

    The fingerprint ignores numbers, so "line 12" and "line 40" variants of
    one error count as the same category.
    """
    if call.succeeded or call.error_kind is None:
        return None
    return f"{call.name}:{call.error_kind}:{error_fingerprint(call.error or '')}"


@dataclass
class StuckStatus:
    """Result of a stuck check."""
    is_stuck: bool = False
    score: float = 0.0
    reason: str = ""
    consecutive_failures: int = 0


class StuckDetector:
    """Sliding-window detector over recent tool calls."""

    def __init__(self, max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES):
        self.max_consecutive_failures = max(int(max_consecutive_failures), 1)
        self.repeat_threshold = min(DEFAULT_REPEAT_THRESHOLD, self.max_consecutive_failures)
        self._window: Deque[Tuple[str, Optional[str]]] = deque(maxlen=SIGNATURE_WINDOW)
        self.consecutive_failures = 0

    def record(self, name: str, args: dict, success: bool, category: Optional[str] = None) -> None:
        self._window.append((action_signature(name, args), None if success else category))
        if success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    def record_call(self, call: ToolCall) -> None:
        self.record(call.name, call.args, call.succeeded, error_category(call))

    def _max_signature_repeats(self) -> int:
        counts = Counter(sig for sig, _ in self._window)
        return max(counts.values()) if counts else 0

    def _max_error_repeats(self) -> Tuple[Optional[str], int]:
        counts = Counter(cat for _, cat in self._window if cat is not None)
        if not counts:
            return None, 0
        return counts.most_common(1)[0]

    def is_stuck(self) -> bool:
        return self.reason() != ""

    def reason(self) -> str:
        """Why the loop is considered stuck, empty when it is not."""
        repeats = self._max_signature_repeats()
        if repeats >= self.repeat_threshold:
            return f"Same action repeated {repeats} times"
        category, errors = self._max_error_repeats()
        if errors >= ERROR_REPEAT_THRESHOLD:
            return f"Same error ({category}) {errors} times"
        if self.consecutive_failures >= self.max_consecutive_failures:
            return f"{self.consecutive_failures} consecutive tool failures"
        return ""

    def stuck_score(self) -> float:
        """How close to stuck, in [0, 1]."""
        _, errors = self._max_error_repeats()
        score = max(
            self._max_signature_repeats() / self.repeat_threshold,
            errors / ERROR_REPEAT_THRESHOLD,
            self.consecutive_failures / self.max_consecutive_failures,
        )
        return min(score, 1.0)

    def status(self) -> StuckStatus:
        reason = self.reason()
        return StuckStatus(
            is_stuck=bool(reason),
            score=self.stuck_score(),
            reason=reason,
            consecutive_failures=self.consecutive_failures,
        )

    def clear(self) -> None:
        self._window.clear()
        self.consecutive_failures = 0
