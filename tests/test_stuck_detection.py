"""
Tests for stuck detection and momentum tracking.
"""

import pytest

from hyle.failures import error_fingerprint
from hyle.momentum import Momentum
from hyle.records import ToolCall
from hyle.stuck_detection import StuckDetector, action_signature, error_category


def failed(name: str, args: dict, kind: str = "nonzero_exit", error: str = "boom") -> ToolCall:
    call = ToolCall.create(name, args)
    call.start()
    call.fail(kind, error)
    return call


class TestSignatures:
    """Canonical action signatures."""

    def test_key_order_and_whitespace_ignored(self):
        a = action_signature("Read", {"path": " a.py ", "limit": 10})
        b = action_signature("read", {"limit": 10, "path": "a.py"})
        assert a == b
        assert len(a) == 64

    def test_different_args_differ(self):
        assert action_signature("read", {"path": "a.py"}) != action_signature("read", {"path": "b.py"})

    def test_error_category(self):
        assert error_category(failed("bash", {"command": "x"})) == f"bash:nonzero_exit:{error_fingerprint('boom')}"
        ok = ToolCall.create("ls", {})
        ok.start()
        ok.finish("")
        assert error_category(ok) is None

    def test_error_category_fingerprints_message(self):
        """Messages that differ only in numbers share a category; other messages do not."""
        a = failed("bash", {"command": "make"}, error="Exit code 2")
        b = failed("bash", {"command": "make all"}, error="Exit code 127")
        c = failed("bash", {"command": "make"}, error="Permission denied")
        assert error_category(a) == error_category(b)
        assert error_category(a) != error_category(c)


class TestStuckDetector:
    """Repeated actions, repeated errors and failure streaks."""

    def test_third_identical_call_is_stuck(self):
        detector = StuckDetector()
        detector.record("read", {"path": "a.py"}, success=True)
        detector.record("read", {"path": "a.py"}, success=True)
        assert not detector.is_stuck()
        detector.record("read", {"path": "a.py"}, success=True)
        assert detector.is_stuck()
        assert "repeated 3 times" in detector.reason()

    def test_same_error_category_three_times(self):
        detector = StuckDetector()
        for n in range(3):
            detector.record_call(failed("bash", {"command": f"make target{n}"}))
        status = detector.status()
        assert status.is_stuck
        assert "bash:nonzero_exit" in status.reason
        assert status.score == 1.0

    def test_failure_streak(self):
        detector = StuckDetector(max_consecutive_failures=5)
        kinds = ["not_found", "invalid_args", "io", "timeout"]
        for n, kind in enumerate(kinds):
            detector.record(f"tool{n}", {"n": n}, success=False, category=f"tool{n}:{kind}")
        assert not detector.is_stuck()
        detector.record("tool9", {}, success=False, category="tool9:crash")
        assert detector.is_stuck()
        assert "5 consecutive" in detector.reason()

    def test_conservative_budget_tightens_repeats(self):
        detector = StuckDetector(max_consecutive_failures=2)
        assert detector.repeat_threshold == 2
        detector.record("ls", {}, success=True)
        detector.record("ls", {}, success=True)
        assert detector.is_stuck()

    def test_window_slides(self):
        detector = StuckDetector()
        detector.record("read", {"path": "a.py"}, success=True)
        detector.record("read", {"path": "a.py"}, success=True)
        for n in range(10):
            detector.record("read", {"path": f"file{n}.py"}, success=True)
        detector.record("read", {"path": "a.py"}, success=True)
        assert not detector.is_stuck()

    def test_success_resets_streak_and_clear(self):
        detector = StuckDetector()
        detector.record("a", {}, success=False, category="a:io")
        detector.record("b", {}, success=True)
        assert detector.consecutive_failures == 0
        assert 0.0 < detector.stuck_score() < 1.0
        detector.clear()
        assert detector.stuck_score() == 0.0


class TestMomentum:
    """Rolling success ratio with a minimum sample size."""

    def test_empty_is_full_momentum(self):
        momentum = Momentum()
        assert momentum.score() == 1.0
        assert not momentum.should_slow_down()

    def test_no_signal_before_min_samples(self):
        momentum = Momentum(min_samples=5)
        for _ in range(4):
            momentum.record(False)
        assert momentum.score() == 0.0
        assert not momentum.should_pause()
        momentum.record(False)
        assert momentum.should_pause()

    def test_thresholds(self):
        momentum = Momentum(min_samples=0)
        for success in (True, True, False, False, False):
            momentum.record(success)
        assert momentum.score() == pytest.approx(0.4)
        assert momentum.should_slow_down()
        assert not momentum.should_pause()

    def test_window_keeps_latest(self):
        momentum = Momentum(window=3, min_samples=0)
        for success in (False, False, False, True, True, True):
            momentum.record(success)
        assert momentum.score() == 1.0
        assert len(momentum) == 3

    def test_recent_failures(self):
        momentum = Momentum()
        for success in (False, True, False, False):
            momentum.record(success)
        assert momentum.recent_failures() == 2
        assert momentum.recent_failures(4) == 3
        momentum.reset()
        assert momentum.recent_failures() == 0
