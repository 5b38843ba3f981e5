"""
Sanity Checks
=============

An outside opinion on whether the loop is still working toward the goal.
The orchestrator consults a checker every ``sanity_check_interval``
iterations; ``should_abort`` ends the loop and ``should_pause`` stops it for
the user.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List

from hyle.context import parse_json_object
from hyle.errors import LlmFailure
from hyle.prompts import get_sanity_prompt

logger = logging.getLogger(__name__)


@dataclass
class SanityResult:
    on_track: bool = True
    confidence: float = 1.0
    progress_estimate: float = 0.0
    concerns: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    should_pause: bool = False
    should_abort: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "SanityResult":
        def number(key: str, default: float) -> float:
            try:
                return max(0.0, min(float(data.get(key, default)), 1.0))
            except (TypeError, ValueError):
                return default

        return cls(
            on_track=bool(data.get("on_track", True)),
            confidence=number("confidence", 1.0),
            progress_estimate=number("progress", 0.0),
            concerns=[str(c) for c in data.get("concerns") or []],
            suggestions=[str(s) for s in data.get("suggestions") or []],
            should_pause=bool(data.get("should_pause", False)),
            should_abort=bool(data.get("should_abort", False)),
        )

    def to_dict(self) -> dict:
        return {
            "on_track": self.on_track,
            "confidence": self.confidence,
            "progress": self.progress_estimate,
            "concerns": self.concerns,
            "suggestions": self.suggestions,
            "should_pause": self.should_pause,
            "should_abort": self.should_abort,
        }


class SanityChecker(ABC):
    @abstractmethod
    async def check(self, goal: str, recent_actions: List[str], state: str = "") -> SanityResult:
        """Judge whether ``recent_actions`` are moving toward ``goal``."""


class ModelSanityChecker(SanityChecker):
    """
    Asks a model through the dispatcher. A failed call or an unreadable
    answer yields a neutral (on-track) result rather than stopping the loop.
    """

    def __init__(self, dispatcher: Any, model_rotation: List[str], max_actions: int = 15):
        self.dispatcher = dispatcher
        self.model_rotation = model_rotation
        self.max_actions = max_actions

    async def check(self, goal: str, recent_actions: List[str], state: str = "") -> SanityResult:
        prompt = get_sanity_prompt(goal, recent_actions[-self.max_actions:], state)
        try:
            response = await self.dispatcher.dispatch(
                [{"role": "user", "content": prompt}], [], self.model_rotation,
            )
        except LlmFailure as e:
            logger.warning("Sanity check skipped: %s", e)
            return SanityResult(confidence=0.0)

        data = parse_json_object(response.text)
        if data is None:
            logger.debug("Sanity checker returned no JSON: %s", response.text[:200])
            return SanityResult(confidence=0.0)
        result = SanityResult.from_dict(data)
        if not result.on_track:
            logger.info("Sanity check concerns: %s", "; ".join(result.concerns) or "(none given)")
        return result
