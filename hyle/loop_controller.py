"""
Loop Controller
===============

The state machine that decides, after every model response, whether the
orchestrator executes the requested tools, pauses, or stops.

Rules are applied in strict precedence order, first match wins:

    1. explicit completion signal          -> COMPLETE
    2. explicit clarification request      -> PAUSE_CHECK
    3. no requested tool calls             -> COMPLETE
    4. a call needs confirmation           -> PAUSE_CONFIRM
    5. momentum below the pause threshold  -> PAUSE_CHECK
    6. iteration budget used up            -> MAX_ITER
    7. stuck detector fires                -> STUCK
    8. otherwise                           -> EXECUTE

The iteration budget grows by ``bonus_iterations`` (up to
``max_iterations_ceiling``) when the last executed batch wrote or edited at
least one file path not touched earlier in the loop. That count is the only
progress signal.

Usage:
    controller = create_loop_controller(config, registry.target_path)
    decision = controller.assess(response.text, calls)
    if decision.state == LoopPhase.EXECUTE:
        ...run the batch...
        halt = controller.record_batch(calls)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set

from hyle.config import HyleConfig
from hyle.failures import ToolErrorKind
from hyle.momentum import Momentum
from hyle.records import LoopPhase, LoopState, RiskTier, ToolCall, ToolStatus
from hyle.risk import WRITE_TOOLS
from hyle.stuck_detection import StuckDetector

logger = logging.getLogger(__name__)

PathOf = Callable[[ToolCall], Optional[str]]


# =============================================================================
# Response signals
# =============================================================================

COMPLETION_PATTERNS = [
    r"(?i)\btask\s+(is\s+)?complete(d)?\b",
    r"(?i)\bimplementation\s+(is\s+)?complete\b",
    r"(?i)\ball\s+changes\s+(have\s+been\s+)?applied\b",
    r"(?i)\bno\s+(more|further)\s+changes\s+(are\s+)?needed\b",
]

CLARIFICATION_PATTERNS = [
    r"(?im)^\s*question:",
    r"(?i)\bcould\s+you\s+(please\s+)?clarify\b",
    r"(?i)\bplease\s+clarify\b",
    r"(?i)\bdo\s+you\s+want\s+me\s+to\b[^?\n]*\?",
    r"(?i)\bwhich\s+(one|option|file|approach)\s+(do|would|should)\b[^?\n]*\?",
]

def _search(patterns: List[str], text: str) -> Optional[str]:
    for pattern in patterns:
        match = re.search(pattern, text or "")
        if match:
            return match.group(0).strip()
    return None


def detect_completion(text: str) -> Optional[str]:
    """The completion phrase in ``text``, if any."""
    return _search(COMPLETION_PATTERNS, text)


def detect_clarification(text: str) -> Optional[str]:
    return _search(CLARIFICATION_PATTERNS, text)


def default_path_of(call: ToolCall) -> Optional[str]:
    if call.name.lower() not in WRITE_TOOLS:
        return None
    for key in ("path", "file_path", "file"):
        value = call.args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# =============================================================================
# Decisions
# =============================================================================

@dataclass
class Decision:
    """What the loop does next, and why."""
    state: LoopPhase
    reason: str
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "reason": self.reason,
            "tool_calls": [c.id for c in self.tool_calls],
        }

    def __str__(self) -> str:
        return f"{self.state.value}: {self.reason}"


class LoopController:
    """Decides the next step of one agent loop."""

    def __init__(
        self,
        config: Optional[HyleConfig] = None,
        path_of: Optional[PathOf] = None,
        momentum: Optional[Momentum] = None,
        stuck: Optional[StuckDetector] = None,
    ):
        self.config = config or HyleConfig()
        self.path_of = path_of or default_path_of
        self.momentum = momentum or Momentum(
            window=self.config.momentum_window,
            slow_down_threshold=self.config.momentum_threshold,
            pause_threshold=self.config.pause_threshold,
        )
        self.stuck = stuck or StuckDetector(self.config.max_consecutive_failures)
        self.state = LoopState(max_iterations=self.config.max_iterations)
        self.phase = LoopPhase.ASSESS
        self.new_paths_last_batch = 0
        self._touched: Set[str] = set()

    # -------------------------------------------------------------------------
    # Rule helpers
    # -------------------------------------------------------------------------

    def needs_confirmation(self, call: ToolCall) -> bool:
        """Whether ``call`` must be approved before it runs."""
        tier = call.risk_tier if call.risk_tier is not None else RiskTier.CONFIRM
        if tier >= RiskTier.CONFIRM:
            return True
        if tier == RiskTier.CAUTIOUS:
            return not self.config.auto_execute_writes
        return not self.config.auto_execute_reads

    def _try_extend(self) -> bool:
        """Grant bonus iterations when the last batch touched new files."""
        if not self.config.extend_on_progress or self.new_paths_last_batch < 1:
            return False
        ceiling = max(self.config.max_iterations_ceiling, self.config.max_iterations)
        if self.state.max_iterations >= ceiling or self.config.bonus_iterations <= 0:
            return False
        granted = min(self.config.bonus_iterations, ceiling - self.state.max_iterations)
        self.state.max_iterations += granted
        self.state.extensions += 1
        # One extension per progress observation
        self.new_paths_last_batch = 0
        logger.info(
            "Progress on new files; iteration budget extended by %d to %d",
            granted, self.state.max_iterations,
        )
        return True

    def _decide(self, state: LoopPhase, reason: str, calls: Optional[List[ToolCall]] = None) -> Decision:
        decision = Decision(state, reason, list(calls or []))
        self.phase = state
        self.state.last_decision = state.value
        self.state.momentum_score = self.momentum.score()
        self.state.stuck_score = self.stuck.stuck_score()
        logger.debug("Decision %s", decision)
        return decision

    # -------------------------------------------------------------------------
    # Assessment
    # -------------------------------------------------------------------------

    def assess(self, response_text: str, tool_calls: Iterable[ToolCall]) -> Decision:
        """
        Decide what to do with one model response.

        ``tool_calls`` are all calls the response requested, already
        classified. Calls rejected before this point (status FAILED with
        kind ``blocked``) still count as requested.
        """
        calls = list(tool_calls)
        pending = [c for c in calls if c.status == ToolStatus.PENDING]
        blocked = [c for c in calls if c.error_kind == ToolErrorKind.BLOCKED.value]

        completion = detect_completion(response_text)
        if completion:
            return self._decide(LoopPhase.COMPLETE, f"Model signalled completion ({completion!r})")

        question = detect_clarification(response_text)
        if question:
            return self._decide(LoopPhase.PAUSE_CHECK, "Model asked for clarification")

        if not calls:
            return self._decide(LoopPhase.COMPLETE, "No tool calls requested")

        confirm = [c for c in pending if self.needs_confirmation(c)]
        if blocked or confirm:
            names = ", ".join(c.name for c in blocked + confirm)
            if blocked:
                reason = f"Dangerous tool call rejected ({names})"
            else:
                reason = f"Confirmation required ({names})"
            return self._decide(LoopPhase.PAUSE_CONFIRM, reason, blocked + confirm)

        if self.momentum.should_pause():
            return self._decide(
                LoopPhase.PAUSE_CHECK,
                f"Momentum {self.momentum.score():.2f} below {self.momentum.pause_threshold:.2f}",
                pending,
            )

        if self.state.iteration >= self.state.max_iterations and not self._try_extend():
            return self._decide(
                LoopPhase.MAX_ITER,
                f"Reached {self.state.iteration} of {self.state.max_iterations} iterations",
                pending,
            )

        if self.stuck.is_stuck():
            return self._decide(LoopPhase.STUCK, self.stuck.reason(), pending)

        return self._decide(LoopPhase.EXECUTE, f"Executing {len(pending)} tool call(s)", pending)

    def batch_limit(self) -> int:
        """Calls allowed in the next batch; halved while momentum is low."""
        limit = max(self.config.max_tool_calls_per_iteration, 1)
        if self.momentum.should_slow_down():
            return max(limit // 2, 1)
        return limit

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def record_batch(self, calls: Iterable[ToolCall]) -> Optional[Decision]:
        """
        Feed one finished batch into momentum, stuck detection and the
        progress signal.

        Returns a PAUSE_CHECK decision when a call failed in a way that
        ends the iteration (crash or blocked), else None.
        """
        calls = [
            c for c in calls
            if c.status.is_terminal and c.error_kind != ToolErrorKind.REJECTED.value
        ]
        fresh: Set[str] = set()
        fatal: List[ToolCall] = []

        for call in calls:
            self.momentum.record(call.succeeded, call.name)
            self.stuck.record_call(call)
            if call.succeeded:
                path = self.path_of(call)
                if path and path not in self._touched:
                    fresh.add(path)
            elif call.error_kind in (ToolErrorKind.CRASH.value, ToolErrorKind.BLOCKED.value):
                fatal.append(call)

        self._touched.update(fresh)
        self.new_paths_last_batch = len(fresh)
        self.state.touched_paths = sorted(self._touched)
        self.state.iteration += 1
        self.state.momentum_score = self.momentum.score()
        self.state.stuck_score = self.stuck.stuck_score()

        if fatal:
            detail = "; ".join(f"{c.name}: {c.error}" for c in fatal)
            return self._decide(LoopPhase.PAUSE_CHECK, f"Tool error ends the iteration ({detail})", fatal)
        return None

    def abort(self, reason: str) -> Decision:
        return self._decide(LoopPhase.ABORTED, reason)

    def halt(self, state: LoopPhase, reason: str) -> Decision:
        """Terminal decision reached outside ``assess`` (sanity checks, declined approval)."""
        return self._decide(state, reason)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> LoopState:
        return LoopState.from_dict(self.state.to_dict())

    def restore(self, state: LoopState) -> None:
        """Resume from a checkpointed state (after a rollback)."""
        self.state = LoopState.from_dict(state.to_dict())
        self._touched = set(self.state.touched_paths)
        self.new_paths_last_batch = 0
        self.momentum.reset()
        self.stuck.clear()
        self.phase = LoopPhase.ASSESS


def create_loop_controller(config: Optional[HyleConfig] = None, path_of: Optional[PathOf] = None) -> LoopController:
    return LoopController(config, path_of)
