"""
Model Dispatcher
================

Routes one completion request across a rotation of models, classifying
every failure and applying the matching recovery:

- transient: retry the same model immediately, at most ``max_retries`` times
- rate limit: record a cooldown (server Retry-After, else exponential
  backoff with jitter capped at ``backoff_cap``) and move to the next healthy
  model; if every model is cooling down, sleep until the earliest one is free
- model specific: short cooldown, fall back to the next model
- content related: let the caller shrink the prompt and retry once
- fatal: stop immediately

Health is written after every attempt, so cooldowns recorded here are seen
by other processes sharing the working directory.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from hyle.errors import LlmFailure, ProviderError
from hyle.failures import Classification, FailureKind, classify_failure
from hyle.model_catalog import ModelCatalog
from hyle.model_health import ModelHealthRegistry
from hyle.providers import ModelProvider, ProviderRouter, StreamEventKind, Usage
from hyle.records import ToolCall, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_CAP = 60.0
MODEL_SPECIFIC_COOLDOWN = 30.0

ChatMessages = List[Dict[str, Any]]
AdjustHook = Callable[[ChatMessages], Union[ChatMessages, Awaitable[ChatMessages]]]


@dataclass
class ModelResponse:
    """A successful completion."""
    model: str
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    latency: float = 0.0
    attempts: int = 1
    cost: float = 0.0


@dataclass
class AttemptRecord:
    """One try against one model, kept for the session log."""
    model: str
    ok: bool
    latency: float
    kind: Optional[str] = None
    message: str = ""
    waited: float = 0.0

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "ok": self.ok,
            "latency": round(self.latency, 3),
            "kind": self.kind,
            "message": self.message[:300],
            "waited": round(self.waited, 3),
        }


def backoff_delay(attempt: int, base: float, cap: float, rng: Callable[[], float] = random.random) -> float:
    """Exponential backoff with jitter: ``min(cap, base * 2**attempt)`` scaled into [0.5, 1.0]."""
    ceiling = min(cap, base * (2 ** attempt))
    return ceiling * (0.5 + rng() / 2)


class ModelDispatcher:
    """
    Sends a prompt to the first healthy model in a rotation and recovers
    from failures according to their kind.
    """

    def __init__(
        self,
        providers: Union[ProviderRouter, ModelProvider],
        health: ModelHealthRegistry,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        model_specific_cooldown: float = MODEL_SPECIFIC_COOLDOWN,
        catalog: Optional[ModelCatalog] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Optional[Callable[[], float]] = None,
    ):
        if isinstance(providers, ModelProvider):
            providers = ProviderRouter(providers)
        self.router = providers
        self.health = health
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.model_specific_cooldown = model_specific_cooldown
        self.catalog = catalog
        self._sleep = sleep
        self._rng = rng
        self._clock = clock or health.clock

        self.attempts: List[AttemptRecord] = []
        self.partial_text = ""

    async def _health(self, model: str):
        return await asyncio.to_thread(self.health.get, model)

    async def _pick_model(self, rotation: List[str], exhausted: Set[str]) -> Optional[str]:
        """
        First model in rotation order that is usable now. Sleeps while every
        remaining model is cooling down. Returns None once nothing is left.
        """
        while True:
            candidates = [m for m in rotation if m not in exhausted]
            if not candidates:
                return None
            waits = []
            for model in candidates:
                record = await self._health(model)
                if record.is_available(self._clock()):
                    return model
                if record.is_broken(self._clock()):
                    exhausted.add(model)
                    continue
                waits.append(record.cooldown_remaining(self._clock()))
            if not waits:
                continue
            wait = min(waits)
            logger.info("All models cooling down; waiting %.1fs", wait)
            await self._sleep(min(wait, self.backoff_cap))
            if self.attempts:
                self.attempts[-1].waited += min(wait, self.backoff_cap)

    async def _attempt(
        self,
        model: str,
        messages: ChatMessages,
        tool_specs: List[ToolSpec],
        on_token: Optional[Callable[[str], None]],
    ) -> ModelResponse:
        provider, bare_model = self.router.resolve(model)
        self.partial_text = ""
        parts: List[str] = []
        calls: List[ToolCall] = []
        usage = Usage()
        started = time.monotonic()

        async for event in provider.send(messages, tool_specs, bare_model):
            if event.kind == StreamEventKind.TOKEN:
                parts.append(event.text)
                self.partial_text += event.text
                if on_token is not None:
                    on_token(event.text)
            elif event.kind == StreamEventKind.TOOL_CALL and event.tool_call is not None:
                calls.append(event.tool_call)
            elif event.kind == StreamEventKind.USAGE and event.usage is not None:
                usage = event.usage
            elif event.kind == StreamEventKind.FAILURE:
                raise event.error or ProviderError("Provider reported a failure")

        text = "".join(parts)
        if not text.strip() and not calls:
            raise ProviderError("Empty response from model", status=502)

        latency = time.monotonic() - started
        cost = self.catalog.calculate_cost(model, usage) if self.catalog else 0.0
        return ModelResponse(model=model, text=text, tool_calls=calls, usage=usage, latency=latency, cost=cost)

    async def dispatch(
        self,
        messages: ChatMessages,
        tool_specs: List[ToolSpec],
        model_rotation: List[str],
        on_token: Optional[Callable[[str], None]] = None,
        adjust: Optional[AdjustHook] = None,
    ) -> ModelResponse:
        """
        Get a completion from the rotation.

        Returns:
            ModelResponse from the first model that succeeds

        Raises:
            LlmFailure: FATAL on bad credentials or once every model is
                exhausted; CONTENT_RELATED if the adjusted prompt is still rejected
        """
        if not model_rotation:
            raise LlmFailure(FailureKind.FATAL, "Model rotation is empty")

        self.attempts = []
        exhausted: Set[str] = set()
        transient_failures: Dict[str, int] = {}
        rate_limit_hits: Dict[str, int] = {}
        adjusted = False
        last: Optional[Classification] = None

        while True:
            model = await self._pick_model(model_rotation, exhausted)
            if model is None:
                detail = f" (last error: {last.message})" if last else ""
                raise LlmFailure(
                    FailureKind.FATAL,
                    f"All {len(model_rotation)} models in rotation failed{detail}",
                    attempts=len(self.attempts),
                )

            started = time.monotonic()
            try:
                response = await self._attempt(model, messages, tool_specs, on_token)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                latency = time.monotonic() - started
                last = classify_failure(exc)
                self.attempts.append(AttemptRecord(model, False, latency, last.kind.value, last.message))
                logger.warning("Model %s failed (%s): %s", model, last.kind.value, last.message)
            else:
                await asyncio.to_thread(self.health.record_success, model, response.latency)
                self.attempts.append(AttemptRecord(model, True, response.latency))
                response.attempts = len(self.attempts)
                return response

            if last.kind == FailureKind.FATAL:
                await asyncio.to_thread(self.health.record_failure, model, last.kind, last.message, latency)
                raise LlmFailure(last.kind, last.message, model=model, attempts=len(self.attempts))

            if last.kind == FailureKind.TRANSIENT:
                transient_failures[model] = transient_failures.get(model, 0) + 1
                await asyncio.to_thread(self.health.record_failure, model, last.kind, last.message, latency)
                if transient_failures[model] >= self.max_retries:
                    exhausted.add(model)

            elif last.kind == FailureKind.RATE_LIMIT:
                hits = rate_limit_hits.get(model, 0)
                rate_limit_hits[model] = hits + 1
                if last.retry_after is not None:
                    cooldown = last.retry_after
                else:
                    cooldown = backoff_delay(hits, self.backoff_base, self.backoff_cap, self._rng)
                await asyncio.to_thread(
                    self.health.record_failure, model, last.kind, last.message, latency, cooldown,
                )
                if rate_limit_hits[model] > self.max_retries:
                    exhausted.add(model)

            elif last.kind == FailureKind.MODEL_SPECIFIC:
                await asyncio.to_thread(
                    self.health.record_failure, model, last.kind, last.message, latency,
                    self.model_specific_cooldown,
                )
                exhausted.add(model)

            elif last.kind == FailureKind.CONTENT_RELATED:
                await asyncio.to_thread(self.health.record_failure, model, last.kind, last.message, latency)
                if adjusted or adjust is None:
                    raise LlmFailure(last.kind, last.message, model=model, attempts=len(self.attempts))
                adjusted = True
                result = adjust(messages)
                messages = await result if asyncio.iscoroutine(result) else result
                logger.info("Retrying %s with an adjusted prompt", model)


def create_dispatcher(
    providers: Union[ProviderRouter, ModelProvider],
    health: ModelHealthRegistry,
    catalog: Optional[ModelCatalog] = None,
    **kwargs,
) -> ModelDispatcher:
    """Dispatcher with the default retry and backoff policy."""
    return ModelDispatcher(providers, health, catalog=catalog, **kwargs)
