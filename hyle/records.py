"""
Conversation Records
====================

Value types shared by the session store, the loop controller and the
orchestrator: messages, tool calls and the loop state snapshot.

Messages are immutable once built. Tool calls carry a status that only ever
moves forward:

    PENDING -> RUNNING -> DONE | FAILED | KILLED
    PENDING -> FAILED | KILLED          (rejected or interrupted before start)
"""

import copy
import secrets
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from hyle.errors import InvalidTransition


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def parse_time(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RiskTier(IntEnum):
    """Blast radius of a pending tool call. Higher is riskier."""
    SAFE = 1
    CAUTIOUS = 2
    CONFIRM = 3
    DANGEROUS = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "RiskTier":
        return cls[label.upper()]


class ToolStatus(Enum):
    """Lifecycle of a tool call."""
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolStatus.DONE, ToolStatus.FAILED, ToolStatus.KILLED)


ALLOWED_TRANSITIONS = {
    ToolStatus.PENDING: {ToolStatus.RUNNING, ToolStatus.FAILED, ToolStatus.KILLED},
    ToolStatus.RUNNING: {ToolStatus.DONE, ToolStatus.FAILED, ToolStatus.KILLED},
    ToolStatus.DONE: set(),
    ToolStatus.FAILED: set(),
    ToolStatus.KILLED: set(),
}


class Role(Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class LoopPhase(Enum):
    """States of the loop controller."""
    ASSESS = "assess"
    EXECUTE = "execute"
    PAUSE_CONFIRM = "pause_confirm"
    PAUSE_CHECK = "pause_check"
    STUCK = "stuck"
    MAX_ITER = "max_iter"
    COMPLETE = "complete"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self is not LoopPhase.EXECUTE and self is not LoopPhase.ASSESS


# =============================================================================
# Tool calls
# =============================================================================

def new_call_id() -> str:
    return f"call_{secrets.token_hex(6)}"


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    risk_tier: Optional[RiskTier] = None
    status: ToolStatus = ToolStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def create(cls, name: str, args: Optional[Dict[str, Any]] = None) -> "ToolCall":
        return cls(id=new_call_id(), name=name, args=dict(args or {}))

    def _move(self, target: ToolStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(self.id, self.status.value, target.value)
        self.status = target

    def start(self) -> None:
        self._move(ToolStatus.RUNNING)
        self.started_at = utc_now()

    def finish(self, output: str) -> None:
        self._move(ToolStatus.DONE)
        self.output = output
        self.finished_at = utc_now()

    def fail(self, kind: str, error: str, output: Optional[str] = None) -> None:
        self._move(ToolStatus.FAILED)
        self.error_kind = kind
        self.error = error
        if output is not None:
            self.output = output
        self.finished_at = utc_now()

    def kill(self, partial_output: Optional[str] = None) -> None:
        self._move(ToolStatus.KILLED)
        self.error_kind = "killed"
        self.error = "Interrupted by user"
        if partial_output:
            self.output = partial_output
        self.finished_at = utc_now()

    @property
    def succeeded(self) -> bool:
        return self.status == ToolStatus.DONE

    def snapshot(self) -> "ToolCall":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["risk_tier"] = self.risk_tier.label if self.risk_tier is not None else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        data = dict(data)
        data["status"] = ToolStatus(data.get("status", "pending"))
        tier = data.get("risk_tier")
        data["risk_tier"] = RiskTier.from_label(tier) if tier else None
        return cls(**data)


# =============================================================================
# Messages
# =============================================================================

@dataclass(frozen=True)
class Message:
    """A single conversation entry. Immutable once created."""
    role: Role
    content: str
    tool_calls: Tuple[ToolCall, ...] = ()
    tokens_in: int = 0
    tokens_out: int = 0
    timestamp: str = field(default_factory=utc_now)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Optional[List[ToolCall]] = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
    ) -> "Message":
        calls = tuple(c.snapshot() for c in (tool_calls or []))
        return cls(Role.ASSISTANT, content, calls, tokens_in, tokens_out)

    @classmethod
    def tool_result(cls, call: ToolCall, content: str) -> "Message":
        return cls(Role.TOOL, content, (call.snapshot(),))

    @property
    def is_error(self) -> bool:
        if self.role != Role.TOOL:
            return False
        return any(c.status in (ToolStatus.FAILED, ToolStatus.KILLED) for c in self.tool_calls)

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            tool_calls=tuple(ToolCall.from_dict(c) for c in data.get("tool_calls", [])),
            tokens_in=data.get("tokens_in", 0),
            tokens_out=data.get("tokens_out", 0),
            timestamp=data.get("timestamp") or utc_now(),
        )


# =============================================================================
# Loop state
# =============================================================================

@dataclass
class LoopState:
    """Snapshot of loop progress, stored in checkpoints."""
    iteration: int = 0
    momentum_score: float = 1.0
    stuck_score: float = 0.0
    max_iterations: int = 20
    last_decision: Optional[str] = None
    touched_paths: List[str] = field(default_factory=list)
    extensions: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LoopState":
        data = dict(data)
        data.setdefault("touched_paths", [])
        data.setdefault("extensions", 0)
        return cls(**data)


@dataclass(frozen=True)
class ToolSpec:
    """Name, description and JSON-schema parameters advertised to the model."""
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }
