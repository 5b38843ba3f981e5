"""
Error Types
===========

Exception hierarchy shared by every hyle component.

Library code raises these; the CLI catches ``HyleError`` and reports it.
Model-call failures carry a ``FailureKind`` (see ``hyle.failures``) so the
dispatcher and the loop can pick a recovery action without string matching.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from hyle.failures import FailureKind


class HyleError(Exception):
    """Base class for all hyle errors."""


# =============================================================================
# Session store
# =============================================================================

class StoreError(HyleError):
    """Base class for session store failures."""


class LockContention(StoreError):
    """An advisory lock could not be acquired within the allowed wait."""

    def __init__(self, lock_path: str, waited: float):
        self.lock_path = lock_path
        self.waited = waited
        super().__init__(f"Lock {lock_path} still held after {waited:.1f}s")


class StoreIoError(StoreError):
    """A filesystem operation on session data failed."""


class SessionNotFound(StoreError):
    """No session exists with the requested id."""


class CheckpointError(StoreError):
    """A checkpoint cannot be created or applied."""


class InvalidTransition(HyleError):
    """A tool call status change would move backwards."""

    def __init__(self, call_id: str, current: str, target: str):
        self.call_id = call_id
        self.current = current
        self.target = target
        super().__init__(f"Tool call {call_id}: cannot move from {current} to {target}")


# =============================================================================
# Model calls
# =============================================================================

class ProviderError(HyleError):
    """Raised by a ModelProvider when a request fails.

    ``status`` is the HTTP status when one exists; ``retry_after`` is the
    server hint in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
    ):
        self.message = message
        self.status = status
        self.retry_after = retry_after
        self.code = code
        super().__init__(message)


class LlmFailure(HyleError):
    """A classified model-call failure surfaced to the caller."""

    def __init__(
        self,
        kind: "FailureKind",
        message: str,
        model: Optional[str] = None,
        retry_after: Optional[float] = None,
        attempts: int = 0,
    ):
        self.kind = kind
        self.message = message
        self.model = model
        self.retry_after = retry_after
        self.attempts = attempts
        super().__init__(f"[{kind.value}] {message}")

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "model": self.model,
            "retry_after": self.retry_after,
            "attempts": self.attempts,
        }


# =============================================================================
# Tools
# =============================================================================

class ToolError(HyleError):
    """A tool failed; ``kind`` is one of the ``ToolErrorKind`` values."""

    def __init__(self, kind: str, message: str, output: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.output = output
        super().__init__(message)


class UnknownTool(ToolError):
    """The model asked for a tool that is not registered."""

    def __init__(self, name: str):
        super().__init__("invalid_args", f"Unknown tool: {name}")
        self.name = name
