"""
Momentum Tracking
=================

Rolling success rate of recent tool calls. A falling score slows the loop
down (shorter batches) and, below the pause threshold, stops it for a check.
Neither signal fires before ``min_samples`` outcomes have been seen, so a
couple of early failures are left to the stuck detector.
"""

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

DEFAULT_WINDOW = 20
DEFAULT_SLOW_DOWN_THRESHOLD = 0.5
DEFAULT_PAUSE_THRESHOLD = 0.3
DEFAULT_MIN_SAMPLES = 5


@dataclass
class ToolOutcome:
    tool_name: str
    success: bool


class Momentum:
    """Success ratio over the last ``window`` tool outcomes (1.0 when empty)."""

    def __init__(
        self,
        window: int = DEFAULT_WINDOW,
        slow_down_threshold: float = DEFAULT_SLOW_DOWN_THRESHOLD,
        pause_threshold: float = DEFAULT_PAUSE_THRESHOLD,
        min_samples: int = DEFAULT_MIN_SAMPLES,
    ):
        self.window_size = max(int(window), 1)
        self.slow_down_threshold = slow_down_threshold
        self.pause_threshold = pause_threshold
        self.min_samples = max(0, min(int(min_samples), self.window_size))
        self._window: Deque[ToolOutcome] = deque(maxlen=self.window_size)

    def record(self, success: bool, tool_name: str = "") -> None:
        self._window.append(ToolOutcome(tool_name, success))

    def __len__(self) -> int:
        return len(self._window)

    def score(self) -> float:
        if not self._window:
            return 1.0
        return sum(1 for o in self._window if o.success) / len(self._window)

    def should_slow_down(self) -> bool:
        return len(self._window) >= self.min_samples and self.score() < self.slow_down_threshold

    def should_pause(self) -> bool:
        return len(self._window) >= self.min_samples and self.score() < self.pause_threshold

    def recent_failures(self, n: Optional[int] = None) -> int:
        """Failures among the last ``n`` outcomes, or trailing failures when ``n`` is None."""
        outcomes = list(self._window)
        if n is not None:
            return sum(1 for o in outcomes[-n:] if not o.success) if n > 0 else 0
        count = 0
        for outcome in reversed(outcomes):
            if outcome.success:
                break
            count += 1
        return count

    def reset(self) -> None:
        self._window.clear()
