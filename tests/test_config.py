"""
Tests for configuration loading.
"""

import json
import tempfile
from pathlib import Path

import pytest

from hyle.config import CONFIG_FILENAME, DEFAULT_MODEL, HyleConfig, _coerce


@pytest.fixture
def project_dir():
    """Create a temporary project directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class TestPresets:
    """Default, autonomous and conservative settings."""

    def test_defaults(self):
        config = HyleConfig()
        assert config.max_iterations == 20
        assert config.primary_model == DEFAULT_MODEL
        assert config.auto_execute_reads and not config.auto_execute_writes

    def test_named_presets(self):
        assert HyleConfig.preset("autonomous").auto_execute_writes
        conservative = HyleConfig.preset("conservative")
        assert conservative.max_consecutive_failures == 2
        assert not conservative.extend_on_progress
        assert HyleConfig.preset(None) == HyleConfig()

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            HyleConfig.preset("reckless")


class TestLoading:
    """Environment over file over preset."""

    def test_file_overrides_preset(self, project_dir, monkeypatch):
        monkeypatch.delenv("HYLE_MAX_ITERATIONS", raising=False)
        (project_dir / CONFIG_FILENAME).write_text(json.dumps({"max_iterations": 12, "bogus": 1}))
        config = HyleConfig.load(project_dir, preset="conservative")
        assert config.max_iterations == 12
        assert config.max_tool_calls_per_iteration == 3

    def test_env_overrides_file(self, project_dir, monkeypatch):
        (project_dir / CONFIG_FILENAME).write_text(json.dumps({"max_iterations": 12}))
        monkeypatch.setenv("HYLE_MAX_ITERATIONS", "7")
        monkeypatch.setenv("HYLE_MODEL_ROTATION", "a/one, b/two")
        monkeypatch.setenv("HYLE_AUTO_EXECUTE_WRITES", "yes")
        config = HyleConfig.load(project_dir)
        assert config.max_iterations == 7
        assert config.model_rotation == ["a/one", "b/two"]
        assert config.auto_execute_writes is True

    def test_invalid_env_value_ignored(self, project_dir, monkeypatch):
        monkeypatch.setenv("HYLE_TOOL_TIMEOUT", "soon")
        assert HyleConfig.load(project_dir).tool_timeout == 60.0

    def test_broken_file_ignored(self, project_dir, monkeypatch):
        monkeypatch.delenv("HYLE_MAX_ITERATIONS", raising=False)
        (project_dir / CONFIG_FILENAME).write_text("{not json")
        assert HyleConfig.load(project_dir).max_iterations == 20


class TestCoerce:
    """Environment strings take the type of the current value."""

    def test_types(self):
        assert _coerce("off", True) is False
        assert _coerce("3", 1) == 3
        assert _coerce("2.5", 1.0) == 2.5
        assert _coerce("x,,y", []) == ["x", "y"]
        assert _coerce("text", "old") == "text"

    def test_bad_bool(self):
        with pytest.raises(ValueError):
            _coerce("maybe", False)
