"""
End-to-end tests for the agent loop with scripted models.
"""

import asyncio
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import List

import pytest

from hyle.config import HyleConfig
from hyle.context import ContextManager
from hyle.dispatcher import ModelDispatcher
from hyle.errors import ProviderError
from hyle.model_health import ModelHealthRegistry
from hyle.orchestrator import Approver, AutoApprover, create_orchestrator
from hyle.records import LoopPhase, Role, ToolCall, ToolStatus
from hyle.sanity import ModelSanityChecker, SanityChecker, SanityResult
from hyle.session_store import LogKind, SessionStore
from hyle.tools import create_default_registry

from helpers import FakeClock, RecordingBashTool, ScriptedProvider, reply


@pytest.fixture
def project_dir():
    """Create a temporary project with a couple of files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "README.md").write_text("# demo\n")
        (root / "src").mkdir()
        (root / "src" / "app.py").write_text("print('hi')\n")
        yield root


class DecliningApprover(Approver):
    def __init__(self):
        self.asked: List[List[str]] = []

    async def approve(self, tool_calls):
        self.asked.append([c.name for c in tool_calls])
        return False


class Harness:
    """Wires an orchestrator around a scripted provider in ``project_dir``."""

    def __init__(self, project_dir: Path, turns, config: HyleConfig = None, bash=None, **kwargs):
        self.project_dir = project_dir
        self.provider = ScriptedProvider(turns)
        self.clock = FakeClock()
        self.config = config or HyleConfig()
        self.store = SessionStore.for_project(project_dir, lock_timeout=2.0)
        health = ModelHealthRegistry(project_dir / ".hyle", lock_timeout=2.0, clock=self.clock)
        dispatcher = ModelDispatcher(self.provider, health, sleep=self.clock.sleep)
        self.registry = create_default_registry()
        if bash is not None:
            self.registry.register(bash)
        self.orchestrator = create_orchestrator(
            self.config, self.store, dispatcher, self.registry, ContextManager(), project_dir, **kwargs,
        )
        self.session = self.store.create(self.config.primary_model, project_dir)

    async def run(self, task: str):
        return await self.orchestrator.start_loop(self.session, task)

    def roles(self) -> List[Role]:
        return [m.role for m in self.store.messages(self.session)]

    def close(self):
        self.store.release(self.session)


class TestHappyPath:
    """A read-only task completes on its own."""

    @pytest.mark.asyncio
    async def test_list_files_completes_in_one_iteration(self, project_dir):
        ls = ToolCall.create("ls", {"path": "."})
        harness = Harness(project_dir, [
            reply("Let me list the files.", [ls]),
            "The project has README.md and src/. Task complete.",
        ])
        try:
            decision = await harness.run("list files")

            assert decision.state == LoopPhase.COMPLETE
            assert harness.orchestrator.controller.state.iteration == 1
            assert harness.roles() == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
            result = harness.store.messages(harness.session)[2]
            assert result.tool_calls[0].status == ToolStatus.DONE
            assert "README.md" in result.content
            assert len(harness.store.list_checkpoints(harness.session)) == 1
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_calls_written_in_text(self, project_dir):
        harness = Harness(project_dir, [
            'Reading it.\n```json\n{"tool": "read", "args": {"path": "src/app.py"}}\n```',
            "It prints hi. Task complete.",
        ])
        try:
            decision = await harness.run("what does src/app.py print?")
            assert decision.state == LoopPhase.COMPLETE
            result = harness.store.messages(harness.session)[2]
            assert "print('hi')" in result.content
            # Second request carries the tool result back to the model
            second = harness.provider.requests[1]["messages"]
            assert any("print('hi')" in m["content"] for m in second)
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_approved_write_runs(self, project_dir):
        write = ToolCall.create("write", {"path": "notes.txt", "content": "done\n"})
        harness = Harness(project_dir, [reply("Writing notes.", [write]), "Task complete."],
                          approver=AutoApprover())
        try:
            decision = await harness.run("take notes")
            assert decision.state == LoopPhase.COMPLETE
            assert (project_dir / "notes.txt").read_text() == "done\n"
            assert harness.orchestrator.controller.state.touched_paths == ["notes.txt"]
        finally:
            harness.close()


class TestStopping:
    """Stuck, iteration budget and model failures end the loop."""

    @pytest.mark.asyncio
    async def test_three_identical_failures_end_stuck(self, project_dir):
        bash = RecordingBashTool(exit_code=2, output="make: *** [build] Error 2")
        turns = [
            reply(f"Building, attempt {n}.", [ToolCall.create("bash", {"command": f"make build{n}"})])
            for n in range(4)
        ]
        harness = Harness(project_dir, turns, config=HyleConfig.autonomous(), bash=bash)
        try:
            decision = await harness.run("build the project")

            assert decision.state == LoopPhase.STUCK
            assert "bash:nonzero_exit" in decision.reason
            assert bash.commands == ["make build0", "make build1", "make build2"]
            errors = harness.store.read_log(harness.session, LogKind.ERROR)
            assert len(errors) == 3
            assert all(e["source"] == "tool" for e in errors)
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_max_iterations(self, project_dir):
        config = HyleConfig(max_iterations=1, extend_on_progress=False)
        turns = [
            reply("Reading.", [ToolCall.create("read", {"path": "README.md"})]),
            reply("Reading more.", [ToolCall.create("read", {"path": "src/app.py"})]),
        ]
        harness = Harness(project_dir, turns, config=config)
        try:
            decision = await harness.run("read everything")
            assert decision.state == LoopPhase.MAX_ITER
            last = harness.store.read_log(harness.session, LogKind.DECISION)[-1]
            assert last["state"] == "max_iter"
            assert last["loop_state"]["iteration"] == 1
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_model_failure_aborts(self, project_dir):
        harness = Harness(project_dir, [ProviderError("Invalid API key", status=401)])
        try:
            decision = await harness.run("anything")
            assert decision.state == LoopPhase.ABORTED
            error = harness.store.read_log(harness.session, LogKind.ERROR)[0]
            assert error["source"] == "model"
            assert error["kind"] == "fatal"
            assert harness.roles() == [Role.USER]
        finally:
            harness.close()


class TestSafety:
    """Dangerous commands never run; confirmations go through the approver."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config", [HyleConfig.autonomous(), HyleConfig.conservative()])
    async def test_rm_rf_is_never_executed(self, project_dir, config):
        bash = RecordingBashTool()
        danger = ToolCall.create("bash", {"command": "rm -rf /tmp/project"})
        read = ToolCall.create("read", {"path": "README.md"})
        harness = Harness(project_dir, [reply("Cleaning up.", [read, danger])],
                          config=config, bash=bash, approver=AutoApprover())
        try:
            decision = await harness.run("clean the temp directory")

            assert decision.state == LoopPhase.PAUSE_CHECK
            assert bash.commands == []
            messages = harness.store.messages(harness.session)
            results = {m.tool_calls[0].name: m.tool_calls[0] for m in messages if m.role == Role.TOOL}
            assert results["bash"].error_kind == "blocked"
            assert results["read"].error_kind == "rejected"
            assert "rm -rf" in messages[1].tool_calls[1].args["command"]
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_declined_write_is_not_run(self, project_dir):
        approver = DecliningApprover()
        write = ToolCall.create("write", {"path": "notes.txt", "content": "x"})
        harness = Harness(project_dir, [reply("Writing notes.", [write])], approver=approver)
        try:
            decision = await harness.run("take notes")

            assert decision.state == LoopPhase.PAUSE_CONFIRM
            assert "Declined" in decision.reason
            assert approver.asked == [["write"]]
            assert not (project_dir / "notes.txt").exists()
            assert harness.store.messages(harness.session)[-1].tool_calls[0].error_kind == "rejected"
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_declined_write_is_asked_again(self, project_dir):
        """Proposing the same write twice does not make it pre-approved."""
        approver = DecliningApprover()
        turns = [
            reply("Writing a script.", [ToolCall.create("write", {"path": "evil.sh", "content": "x"})]),
            reply("Writing it again.", [ToolCall.create("write", {"path": "evil.sh", "content": "x"})]),
        ]
        harness = Harness(project_dir, turns, config=HyleConfig.autonomous(), approver=approver)
        try:
            first = await harness.run("set things up")
            second = await harness.run("try again")

            assert first.state == LoopPhase.PAUSE_CONFIRM
            assert second.state == LoopPhase.PAUSE_CONFIRM
            assert approver.asked == [["write"], ["write"]]
            assert not (project_dir / "evil.sh").exists()
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_without_approver_loop_pauses(self, project_dir):
        write = ToolCall.create("write", {"path": "notes.txt", "content": "x"})
        harness = Harness(project_dir, [reply("Writing notes.", [write])])
        try:
            decision = await harness.run("take notes")
            assert decision.state == LoopPhase.PAUSE_CONFIRM
            assert decision.tool_calls[0].status == ToolStatus.PENDING
            assert not (project_dir / "notes.txt").exists()
        finally:
            harness.close()


class TestInterrupt:
    """interrupt() kills the running tool and ends ABORTED."""

    @pytest.mark.asyncio
    async def test_interrupt_kills_running_command(self, project_dir):
        sleeper = ToolCall.create("bash", {"command": "echo started; sleep 30"})
        harness = Harness(project_dir, [reply("Waiting.", [sleeper])], approver=AutoApprover())
        try:
            task = asyncio.create_task(harness.run("wait a while"))
            for _ in range(200):
                if sleeper.status == ToolStatus.RUNNING:
                    break
                await asyncio.sleep(0.05)
            assert sleeper.status == ToolStatus.RUNNING
            await asyncio.sleep(0.3)

            harness.orchestrator.interrupt()
            decision = await asyncio.wait_for(task, timeout=10)

            assert decision.state == LoopPhase.ABORTED
            last = harness.store.messages(harness.session)[-1]
            assert last.role == Role.TOOL
            assert last.tool_calls[0].status == ToolStatus.KILLED
            assert "started" in (last.tool_calls[0].output or "")
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_interrupt_when_idle_is_noop(self, project_dir):
        harness = Harness(project_dir, [])
        try:
            harness.orchestrator.interrupt()
            assert harness.orchestrator.controller is None
        finally:
            harness.close()


class ScriptedSanity(SanityChecker):
    def __init__(self, result: SanityResult):
        self.result = result
        self.seen: List[List[str]] = []

    async def check(self, goal, recent_actions, state=""):
        self.seen.append(list(recent_actions))
        return self.result


class TestSanityChecks:
    """Periodic outside opinions can stop the loop."""

    @pytest.mark.asyncio
    async def test_abort_verdict_ends_loop(self, project_dir):
        sanity = ScriptedSanity(SanityResult(on_track=False, concerns=["going in circles"], should_abort=True))
        harness = Harness(
            project_dir,
            [reply("Reading.", [ToolCall.create("read", {"path": "README.md"})])],
            config=HyleConfig(sanity_check_interval=1),
            sanity=sanity,
        )
        try:
            decision = await harness.run("summarize the readme")
            assert decision.state == LoopPhase.ABORTED
            assert "going in circles" in decision.reason
            assert sanity.seen[0][0].startswith("read(path=README.md) -> ok")
        finally:
            harness.close()

    @pytest.mark.asyncio
    async def test_model_checker_reads_json(self):
        async def dispatch(messages, tool_specs, model_rotation, **kwargs):
            return SimpleNamespace(text='Verdict: {"on_track": true, "progress": 1.7, "concerns": []}')

        checker = ModelSanityChecker(SimpleNamespace(dispatch=dispatch), ["m"])
        result = await checker.check("goal", ["ls -> ok"])
        assert result.on_track
        assert result.progress_estimate == 1.0
        assert not result.should_pause
