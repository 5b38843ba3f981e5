"""
Configuration Management
========================

One dataclass holds every tunable of the engine. Values are loaded in
precedence order:

1. Environment variables (``HYLE_<FIELD>``, e.g. ``HYLE_MAX_ITERATIONS=30``)
2. Project config file (``hyle_config.json``)
3. Defaults below

Two presets mirror common ways of running the agent: ``autonomous()`` for
long unattended runs and ``conservative()`` for risky repositories.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "mistralai/devstral-small:free"
AUXILIARY_MODEL = "mistralai/mistral-7b-instruct:free"
CONFIG_FILENAME = "hyle_config.json"
ENV_PREFIX = "HYLE_"


@dataclass
class HyleConfig:
    """Hyle engine configuration."""

    # Iteration budget
    max_iterations: int = 20
    max_iterations_ceiling: int = 40
    bonus_iterations: int = 5
    extend_on_progress: bool = True

    # Tools
    max_tool_calls_per_iteration: int = 5
    tool_timeout: float = 60.0
    auto_execute_reads: bool = True
    auto_execute_writes: bool = False

    # Stuck / momentum
    max_consecutive_failures: int = 5
    momentum_window: int = 20
    momentum_threshold: float = 0.5
    pause_threshold: float = 0.3

    # Models
    model_rotation: List[str] = field(default_factory=lambda: [DEFAULT_MODEL])
    auxiliary_models: List[str] = field(default_factory=lambda: [AUXILIARY_MODEL])
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 60.0
    max_tokens: int = 4096

    # Context
    context_budget: int = 0          # 0: derive from the model's context window
    model_summarizer: bool = False   # summarize with auxiliary_models instead of heuristics

    # Sessions
    session_max_age: float = 3600.0
    lock_timeout: float = 10.0

    # Sanity checks (0 disables)
    sanity_check_interval: int = 0

    @classmethod
    def autonomous(cls) -> "HyleConfig":
        """Persistent settings for unattended runs."""
        return cls(
            max_iterations=30,
            max_tool_calls_per_iteration=8,
            tool_timeout=120.0,
            extend_on_progress=True,
            bonus_iterations=10,
            max_consecutive_failures=7,
            auto_execute_writes=True,
        )

    @classmethod
    def conservative(cls) -> "HyleConfig":
        """Short leash for risky operations."""
        return cls(
            max_iterations=10,
            max_tool_calls_per_iteration=3,
            tool_timeout=30.0,
            extend_on_progress=False,
            bonus_iterations=0,
            max_consecutive_failures=2,
        )

    @classmethod
    def preset(cls, name: Optional[str]) -> "HyleConfig":
        if name in (None, "", "default"):
            return cls()
        if name == "autonomous":
            return cls.autonomous()
        if name == "conservative":
            return cls.conservative()
        raise ValueError(f"Unknown preset: {name}")

    @property
    def primary_model(self) -> str:
        return self.model_rotation[0] if self.model_rotation else DEFAULT_MODEL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["HyleConfig"] = None) -> "HyleConfig":
        """Overlay known keys of ``data`` on ``base`` (or the defaults). Unknown keys are ignored."""
        values = (base or cls()).to_dict()
        known = {f.name for f in fields(cls)}
        for key, value in data.items():
            if key in known:
                values[key] = value
            else:
                logger.warning("Ignoring unknown config key: %s", key)
        return cls(**values)

    @classmethod
    def load(cls, project_dir: Optional[Path] = None, preset: Optional[str] = None) -> "HyleConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (hyle_config.json)
        3. Preset / default values
        """
        load_dotenv()
        config = cls.preset(preset)

        config_path = Path(project_dir or Path.cwd()) / CONFIG_FILENAME
        if config_path.exists():
            try:
                file_config = json.loads(config_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)
            else:
                if isinstance(file_config, dict):
                    config = cls.from_dict(file_config, base=config)

        return config.with_env(os.environ)

    def with_env(self, environ: Dict[str, str]) -> "HyleConfig":
        """Copy with ``HYLE_*`` overrides applied."""
        values = self.to_dict()
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            try:
                values[f.name] = _coerce(raw, values[f.name])
            except ValueError:
                logger.warning("Ignoring invalid %s%s=%r", ENV_PREFIX, f.name.upper(), raw)
        return HyleConfig(**values)


def _coerce(raw: str, current: Any) -> Any:
    """Parse an environment string into the type of the current value."""
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        return [part.strip() for part in raw.split(",") if part.strip()]
    return raw


def get_default_model() -> str:
    """Get the primary model from configuration."""
    return HyleConfig.load().primary_model
