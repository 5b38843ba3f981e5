"""
Tests for the shared records and failure classification.
"""

import httpx
import pytest

from hyle.errors import InvalidTransition, LlmFailure, ProviderError
from hyle.failures import (
    FailureKind,
    RecoveryAction,
    ToolErrorKind,
    classify_failure,
    classify_message,
    classify_status,
    error_fingerprint,
    parse_retry_after,
)
from hyle.records import LoopPhase, LoopState, Message, RiskTier, Role, ToolCall, ToolStatus


class TestToolCallLifecycle:
    """Status transitions of a tool call."""

    def test_happy_path(self):
        call = ToolCall.create("read", {"path": "a.py"})
        assert call.status == ToolStatus.PENDING
        call.start()
        assert call.started_at is not None
        call.finish("contents")
        assert call.succeeded
        assert call.status.is_terminal

    def test_pending_can_fail_without_running(self):
        call = ToolCall.create("bash", {"command": "rm -rf /"})
        call.fail("blocked", "Blocked")
        assert call.status == ToolStatus.FAILED
        assert call.error_kind == "blocked"

    def test_terminal_status_is_final(self):
        call = ToolCall.create("read", {})
        call.start()
        call.finish("x")
        with pytest.raises(InvalidTransition):
            call.start()
        with pytest.raises(InvalidTransition):
            call.fail("io", "late")

    def test_pending_cannot_finish(self):
        with pytest.raises(InvalidTransition):
            ToolCall.create("read", {}).finish("x")

    def test_kill_keeps_partial_output(self):
        call = ToolCall.create("bash", {"command": "sleep 9"})
        call.start()
        call.kill("half")
        assert call.status == ToolStatus.KILLED
        assert call.error_kind == "killed"
        assert call.output == "half"

    def test_dict_round_trip_keeps_tier(self):
        call = ToolCall.create("write", {"path": "a.py"})
        call.risk_tier = RiskTier.CONFIRM
        restored = ToolCall.from_dict(call.to_dict())
        assert restored == call
        assert call.to_dict()["risk_tier"] == "confirm"


class TestMessages:
    """Immutable conversation entries."""

    def test_assistant_snapshots_calls(self):
        call = ToolCall.create("read", {"path": "a.py"})
        message = Message.assistant("reading", [call])
        call.start()
        assert message.tool_calls[0].status == ToolStatus.PENDING

    def test_frozen(self):
        message = Message.user("hi")
        with pytest.raises(AttributeError):
            message.content = "changed"

    def test_error_detection(self):
        call = ToolCall.create("read", {"path": "x"})
        call.fail("not_found", "missing")
        assert Message.tool_result(call, "ERROR").is_error
        assert not Message.user("ERROR").is_error

    def test_from_dict(self):
        message = Message.from_dict({"role": "tool", "content": "ok"})
        assert message.role == Role.TOOL
        assert message.tool_calls == ()
        assert message.timestamp


class TestEnums:
    """Tiers, phases and loop state."""

    def test_risk_tier_ordering(self):
        assert RiskTier.SAFE < RiskTier.CAUTIOUS < RiskTier.CONFIRM < RiskTier.DANGEROUS
        assert RiskTier.from_label("Dangerous") is RiskTier.DANGEROUS

    def test_terminal_phases(self):
        assert not LoopPhase.EXECUTE.is_terminal
        assert not LoopPhase.ASSESS.is_terminal
        for phase in (LoopPhase.COMPLETE, LoopPhase.STUCK, LoopPhase.MAX_ITER, LoopPhase.PAUSE_CHECK):
            assert phase.is_terminal

    def test_loop_state_defaults_on_load(self):
        state = LoopState.from_dict({"iteration": 3, "momentum_score": 0.5, "stuck_score": 0.1,
                                     "max_iterations": 20, "last_decision": "execute"})
        assert state.touched_paths == []
        assert state.extensions == 0

    def test_fatal_tool_errors(self):
        assert ToolErrorKind.CRASH.fatal_for_iteration
        assert ToolErrorKind.BLOCKED.fatal_for_iteration
        assert not ToolErrorKind.NONZERO_EXIT.fatal_for_iteration


class TestFailureClassification:
    """Status codes, messages and exceptions map to failure kinds."""

    @pytest.mark.parametrize("status,kind", [
        (429, FailureKind.RATE_LIMIT),
        (401, FailureKind.FATAL),
        (402, FailureKind.FATAL),
        (404, FailureKind.MODEL_SPECIFIC),
        (529, FailureKind.MODEL_SPECIFIC),
        (413, FailureKind.CONTENT_RELATED),
        (503, FailureKind.TRANSIENT),
        (400, None),
    ])
    def test_status(self, status, kind):
        assert classify_status(status) == kind

    @pytest.mark.parametrize("message,kind", [
        ("Invalid API key provided", FailureKind.FATAL),
        ("Rate limit exceeded, slow down", FailureKind.RATE_LIMIT),
        ("This model's maximum context length is 8192 tokens", FailureKind.CONTENT_RELATED),
        ("Model is currently unavailable", FailureKind.MODEL_SPECIFIC),
        ("something odd happened", FailureKind.TRANSIENT),
    ])
    def test_message(self, message, kind):
        assert classify_message(message) == kind

    def test_bad_request_uses_message(self):
        exc = ProviderError("prompt is too long", status=400)
        assert classify_failure(exc).kind == FailureKind.CONTENT_RELATED

    def test_server_error_with_overload_text(self):
        exc = ProviderError("upstream overloaded", status=500)
        assert classify_failure(exc).kind == FailureKind.MODEL_SPECIFIC

    def test_rate_limit_keeps_retry_after(self):
        result = classify_failure(ProviderError("slow down", status=429, retry_after=5.0))
        assert result.kind == FailureKind.RATE_LIMIT
        assert result.retry_after == 5.0
        assert result.recovery == RecoveryAction.BACKOFF

    def test_httpx_errors(self):
        timeout = httpx.ReadTimeout("read timed out")
        assert classify_failure(timeout).kind == FailureKind.TRANSIENT
        refused = httpx.ConnectError("refused")
        assert classify_failure(refused).recovery == RecoveryAction.RETRY

    def test_llm_failure_passthrough(self):
        exc = LlmFailure(FailureKind.FATAL, "no credits", model="m")
        assert classify_failure(exc).kind == FailureKind.FATAL
        assert exc.to_dict()["kind"] == "fatal"

    def test_parse_retry_after(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(" 1.5 ") == 1.5
        assert parse_retry_after("-3") == 0.0
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") is None
        assert parse_retry_after(None) is None

    def test_fingerprint_ignores_numbers(self):
        a = error_fingerprint("SyntaxError at line 12 col 4")
        b = error_fingerprint("SyntaxError at line 40 col 1")
        assert a == b
        assert len(a) == 8
        assert a != error_fingerprint("NameError: x is not defined")
