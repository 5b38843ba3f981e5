"""
Loop Orchestrator
=================

Drives one user turn to a terminal decision:

    context prompt -> model -> parse tool calls -> classify -> reject dangerous
    -> assess -> execute (or pause) -> persist -> repeat

Every message is appended to the session log as soon as it exists; tool
results are persisted one by one as calls finish. Read-only calls in a batch
run concurrently, any mutating call makes the whole batch sequential.

``interrupt()`` cancels whatever is in flight (model stream or tool batch),
kills running subprocesses, writes the partial output and killed calls to
the log and ends the loop ABORTED.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from hyle.config import HyleConfig
from hyle.context import ContextManager, estimate_tokens
from hyle.dispatcher import ModelDispatcher, ModelResponse
from hyle.errors import LlmFailure
from hyle.failures import ToolErrorKind
from hyle.loop_controller import Decision, LoopController
from hyle.model_catalog import DEFAULT_CONTEXT_WINDOW
from hyle.observability import EventLog, EventType
from hyle.prompts import continuation_prompt, get_system_prompt
from hyle.records import LoopPhase, Message, ToolCall, ToolStatus
from hyle.risk import ToolRiskClassifier
from hyle.sanity import SanityChecker
from hyle.session_store import LogKind, Session, SessionStore
from hyle.tool_parser import args_preview, parse_tool_calls
from hyle.tools import ToolRegistry, format_tool_result

logger = logging.getLogger(__name__)

MIN_PROMPT_BUDGET = 256


class Approver(ABC):
    """Decides whether calls that need confirmation may run."""

    @abstractmethod
    async def approve(self, tool_calls: List[ToolCall]) -> bool:
        """True to run every call in ``tool_calls``, False to decline them all."""


class AutoApprover(Approver):
    """Approves everything it is asked about. Dangerous calls never reach an approver."""

    async def approve(self, tool_calls: List[ToolCall]) -> bool:
        return True


class Orchestrator:
    """
    Composition root for one agent loop.

    Usage:
        orchestrator = Orchestrator(config, store, dispatcher, registry, classifier, context, cwd)
        decision = await orchestrator.start_loop(session, "list files")
    """

    def __init__(
        self,
        config: HyleConfig,
        store: SessionStore,
        dispatcher: ModelDispatcher,
        registry: ToolRegistry,
        classifier: ToolRiskClassifier,
        context: ContextManager,
        cwd: Path,
        approver: Optional[Approver] = None,
        sanity: Optional[SanityChecker] = None,
        event_log: Optional[EventLog] = None,
        on_token: Optional[Callable[[str], None]] = None,
        on_tool: Optional[Callable[[ToolCall], None]] = None,
    ):
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.registry = registry
        self.classifier = classifier
        self.context = context
        self.cwd = Path(cwd).resolve()
        self.approver = approver
        self.sanity = sanity
        self.event_log = event_log
        self.on_token = on_token
        self.on_tool = on_tool

        self.controller: Optional[LoopController] = None
        self._task: Optional[asyncio.Task] = None
        self._interrupted = False
        self._running = asyncio.Event()
        self._running.set()

        # Interrupt bookkeeping
        self._streaming = False
        self._inflight: List[ToolCall] = []
        self._persisted: Set[str] = set()

        self._budget_scale = 1.0
        self._actions: List[str] = []

    # =========================================================================
    # Entry points
    # =========================================================================

    async def start_loop(self, session: Session, user_input: str) -> Decision:
        """Run the loop for one user turn and return its terminal decision."""
        self.controller = LoopController(self.config, self.registry.target_path)
        self._interrupted = False
        self._budget_scale = 1.0
        self._actions = []

        self._task = asyncio.create_task(self._run(session, user_input))
        try:
            decision = await self._task
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            decision = await self._abort_after_interrupt(session)
        finally:
            self._task = None

        await self._event(session, EventType.LOOP_END, payload={
            "state": decision.state.value,
            "reason": decision.reason,
            "iterations": self.controller.state.iteration,
        })
        return decision

    def interrupt(self) -> None:
        """Stop the running loop now. It ends ABORTED after flushing partial output."""
        if self._task is None or self._task.done():
            return
        logger.info("Interrupt requested")
        self._interrupted = True
        self._running.set()
        self._task.cancel()

    def pause(self) -> None:
        """Hold the loop before its next model call."""
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    # =========================================================================
    # Persistence helpers
    # =========================================================================

    async def _append(self, session: Session, message: Message) -> None:
        await asyncio.to_thread(self.store.append, session, message)

    async def _log(self, session: Session, kind: LogKind, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self.store.log_event, session, kind, payload)

    async def _event(
        self,
        session: Session,
        event_type: EventType,
        tool_name: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.event_log is not None:
            await self.event_log.record(session.id, event_type, tool_name, payload)

    async def _finish(self, session: Session, decision: Decision) -> Decision:
        """Log a terminal decision with the loop state that led to it."""
        await self._log(session, LogKind.DECISION, {
            **decision.to_dict(),
            "loop_state": self.controller.snapshot().to_dict(),
        })
        await self._event(session, EventType.DECISION, payload=decision.to_dict())
        logger.info("Loop ended: %s", decision)
        return decision

    # =========================================================================
    # Prompt
    # =========================================================================

    def _prompt_budget(self, system_prompt: str, continuation: Optional[str]) -> int:
        if self.config.context_budget > 0:
            budget = self.config.context_budget
        else:
            catalog = self.dispatcher.catalog
            window = catalog.context_window(self.config.primary_model) if catalog else DEFAULT_CONTEXT_WINDOW
            budget = window - self.config.max_tokens - estimate_tokens(system_prompt)
        if continuation:
            budget -= estimate_tokens(continuation)
        return max(int(budget * self._budget_scale), MIN_PROMPT_BUDGET)

    async def _build_messages(
        self,
        history: List[Message],
        task: str,
        system_prompt: str,
        continuation: Optional[str],
    ) -> List[Dict[str, Any]]:
        budget = self._prompt_budget(system_prompt, continuation)
        prompt = await self.context.build(history, task, budget)
        messages = prompt.to_messages(system_prompt)
        if continuation:
            messages.append({"role": "user", "content": continuation})
        return messages

    # =========================================================================
    # Main loop
    # =========================================================================

    async def _run(self, session: Session, user_input: str) -> Decision:
        controller = self.controller
        await self._append(session, Message.user(user_input))
        await self._event(session, EventType.LOOP_START, payload={"input": user_input})

        specs = self.registry.specs()
        system_prompt = get_system_prompt(self.cwd, specs)
        continuation: Optional[str] = None

        while True:
            await self._running.wait()

            history = await asyncio.to_thread(self.store.messages, session)
            self.classifier.note_history(history)
            messages = await self._build_messages(history, user_input, system_prompt, continuation)

            async def shrink(_rejected: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
                self._budget_scale = max(self._budget_scale / 2, 0.05)
                logger.info("Prompt rejected as too large; retrying at %.0f%% budget", self._budget_scale * 100)
                return await self._build_messages(history, user_input, system_prompt, continuation)

            await self._log(session, LogKind.REQUEST, {
                "iteration": controller.state.iteration,
                "messages": len(messages),
                "context": self.context.last_stats.to_dict() if self.context.last_stats else {},
            })

            self._streaming = True
            try:
                response = await self.dispatcher.dispatch(
                    messages, specs, self.config.model_rotation,
                    on_token=self.on_token, adjust=shrink,
                )
            except LlmFailure as e:
                self._streaming = False
                await self._log(session, LogKind.ERROR, {
                    "source": "model",
                    **e.to_dict(),
                    "attempts_detail": [a.to_dict() for a in self.dispatcher.attempts],
                })
                await self._event(session, EventType.MODEL_FAILURE, payload=e.to_dict())
                return await self._finish(session, controller.abort(f"Model call failed: {e}"))
            self._streaming = False

            calls = self._parse_calls(response)
            blocked = self._classify(calls)

            await self._append(session, Message.assistant(
                response.text, calls, response.usage.prompt_tokens, response.usage.completion_tokens,
            ))
            await self._log_response(session, response, calls)

            decision = controller.assess(response.text, calls)
            await self._log(session, LogKind.DECISION, decision.to_dict())

            if decision.state == LoopPhase.PAUSE_CONFIRM:
                if blocked:
                    return await self._finish(session, await self._reject_batch(session, calls, blocked))
                if not await self._confirm(session, decision, calls):
                    return await self._finish(session, decision)
            elif decision.state != LoopPhase.EXECUTE:
                return await self._finish(session, decision)

            await self._execute(session, calls)
            halt = controller.record_batch(calls)
            await asyncio.to_thread(
                self.store.checkpoint, session,
                f"iteration {controller.state.iteration}", controller.snapshot(),
            )
            if halt is not None:
                return await self._finish(session, halt)

            verdict = await self._sanity_check(session, user_input)
            if verdict is not None:
                return await self._finish(session, verdict)

            continuation = continuation_prompt(response.text, calls, controller.momentum.score())

    def _parse_calls(self, response: ModelResponse) -> List[ToolCall]:
        """Native tool calls, else calls written in the text; capped per iteration."""
        calls = list(response.tool_calls) or parse_tool_calls(response.text, self.registry.names())
        limit = self.controller.batch_limit()
        if len(calls) > limit:
            logger.info("Model asked for %d tool calls; running the first %d", len(calls), limit)
            calls = calls[:limit]
        return calls

    def _classify(self, calls: List[ToolCall]) -> List[ToolCall]:
        """Set each call's risk tier and reject dangerous ones. Returns the rejected calls."""
        blocked = []
        for call in calls:
            assessment = self.classifier.assess(call)
            call.risk_tier = assessment.tier
            if assessment.blocked:
                call.fail(ToolErrorKind.BLOCKED.value, f"Blocked: {assessment.reason}")
                blocked.append(call)
                logger.warning("Blocked dangerous tool call %s: %s", call.name, assessment.reason)
        return blocked

    async def _log_response(self, session: Session, response: ModelResponse, calls: List[ToolCall]) -> None:
        await self._log(session, LogKind.RESPONSE, {
            "model": response.model,
            "latency": round(response.latency, 3),
            "attempts": [a.to_dict() for a in self.dispatcher.attempts],
            "tokens_in": response.usage.prompt_tokens,
            "tokens_out": response.usage.completion_tokens,
            "cost": response.cost,
            "tool_calls": [
                {"id": c.id, "name": c.name, "risk_tier": c.risk_tier.label if c.risk_tier else None}
                for c in calls
            ],
        })
        await self._event(session, EventType.MODEL_CALL, payload={
            "model": response.model,
            "tokens_in": response.usage.prompt_tokens,
            "tokens_out": response.usage.completion_tokens,
            "cost": response.cost,
            "latency": response.latency,
        })

    # =========================================================================
    # Confirmation
    # =========================================================================

    async def _confirm(self, session: Session, decision: Decision, calls: List[ToolCall]) -> bool:
        """Ask the approver about the calls behind a PAUSE_CONFIRM. False leaves the loop paused."""
        if self.approver is None:
            return False
        waiting = [c for c in decision.tool_calls if c.status == ToolStatus.PENDING]
        approved = await self.approver.approve(waiting)
        await self._log(session, LogKind.DECISION, {
            "state": "approval",
            "approved": approved,
            "tool_calls": [c.id for c in waiting],
        })
        if approved:
            return True
        for call in calls:
            if call.status == ToolStatus.PENDING:
                call.fail(ToolErrorKind.REJECTED.value, "Declined by user")
                await self._persist_result(session, call)
        decision.reason = f"Declined by user ({', '.join(c.name for c in waiting)})"
        return False

    async def _reject_batch(self, session: Session, calls: List[ToolCall], blocked: List[ToolCall]) -> Decision:
        """A batch with a dangerous call never runs: persist the rejections and stop for review."""
        for call in calls:
            if call.status == ToolStatus.PENDING:
                call.fail(ToolErrorKind.REJECTED.value, "Not run: the batch contained a blocked command")
        for call in calls:
            await self._persist_result(session, call)
        for call in blocked:
            await self._event(session, EventType.TOOL_BLOCKED, call.name, {"error": call.error, "args": call.args})
        halt = self.controller.record_batch(calls)
        return halt or self.controller.halt(LoopPhase.PAUSE_CHECK, "Dangerous tool call rejected")

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, session: Session, calls: List[ToolCall]) -> None:
        pending = [c for c in calls if c.status == ToolStatus.PENDING]
        self._inflight = pending
        if all(self.registry.is_read_only(c) for c in pending):
            await asyncio.gather(*(self._run_call(session, c) for c in pending))
        else:
            for call in pending:
                await self._run_call(session, call)
        self._inflight = []

    async def _run_call(self, session: Session, call: ToolCall) -> None:
        await self.registry.execute(call, self.cwd, timeout=self.config.tool_timeout)
        if call.succeeded:
            path = self.registry.target_path(call)
            if path:
                self.classifier.note_reference(path)
        await self._persist_result(session, call)

        outcome = "ok" if call.succeeded else f"{call.error_kind}: {call.error}"
        self._actions.append(f"{call.name}({args_preview(call.args, 40)}) -> {outcome}")
        if self.on_tool is not None:
            self.on_tool(call)

    async def _persist_result(self, session: Session, call: ToolCall) -> None:
        if call.id in self._persisted:
            return
        self._persisted.add(call.id)
        await self._append(session, Message.tool_result(call, format_tool_result(call)))
        await self._log(session, LogKind.TOOL, {
            "id": call.id,
            "name": call.name,
            "status": call.status.value,
            "risk_tier": call.risk_tier.label if call.risk_tier else None,
            "error_kind": call.error_kind,
        })
        if call.status == ToolStatus.DONE:
            await self._event(session, EventType.TOOL_RESULT, call.name)
            return
        await self._log(session, LogKind.ERROR, {
            "source": "tool",
            "call": call.to_dict(),
            "fatal_for_iteration": call.error_kind in (ToolErrorKind.CRASH.value, ToolErrorKind.BLOCKED.value),
        })
        if call.error_kind != ToolErrorKind.BLOCKED.value:
            await self._event(session, EventType.TOOL_ERROR, call.name, {
                "error_kind": call.error_kind,
                "error": call.error,
            })

    # =========================================================================
    # Sanity checks
    # =========================================================================

    async def _sanity_check(self, session: Session, goal: str) -> Optional[Decision]:
        interval = self.config.sanity_check_interval
        iteration = self.controller.state.iteration
        if self.sanity is None or interval <= 0 or iteration % interval != 0:
            return None

        state = (
            f"iteration {iteration}/{self.controller.state.max_iterations}, "
            f"momentum {self.controller.momentum.score():.2f}, "
            f"stuck score {self.controller.stuck.stuck_score():.2f}"
        )
        result = await self.sanity.check(goal, self._actions, state)
        await self._log(session, LogKind.DECISION, {"state": "sanity_check", **result.to_dict()})
        await self._event(session, EventType.SANITY_CHECK, payload=result.to_dict())

        concerns = "; ".join(result.concerns) or "no details"
        if result.should_abort:
            return self.controller.halt(LoopPhase.ABORTED, f"Sanity check: {concerns}")
        if result.should_pause:
            return self.controller.halt(LoopPhase.PAUSE_CHECK, f"Sanity check: {concerns}")
        return None

    # =========================================================================
    # Interrupt
    # =========================================================================

    async def _abort_after_interrupt(self, session: Session) -> Decision:
        """Write whatever the cancelled step produced, then end ABORTED."""
        if self._streaming and self.dispatcher.partial_text:
            await self._append(session, Message.assistant(self.dispatcher.partial_text + "\n[interrupted]"))
        self._streaming = False

        for call in self._inflight:
            if not call.status.is_terminal:
                call.kill()
            await self._persist_result(session, call)
        self._inflight = []

        await self._event(session, EventType.INTERRUPT)
        return await self._finish(session, self.controller.abort("Interrupted by user"))


def create_orchestrator(
    config: HyleConfig,
    store: SessionStore,
    dispatcher: ModelDispatcher,
    registry: ToolRegistry,
    context: ContextManager,
    cwd: Path,
    **kwargs,
) -> Orchestrator:
    """Orchestrator with a risk classifier bound to ``registry``."""
    classifier = ToolRiskClassifier(cwd, registry)
    return Orchestrator(config, store, dispatcher, registry, classifier, context, cwd, **kwargs)
