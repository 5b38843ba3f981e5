"""
Scripted stand-ins for model providers, clocks and tools used across the tests.
"""

from typing import Any, Dict, List, Optional, Union

from hyle.errors import ProviderError, ToolError
from hyle.providers import ModelProvider, StreamEvent
from hyle.records import ToolCall
from hyle.tools import BashTool, ToolContext


class FakeClock:
    """Manual clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


Turn = Union[str, ProviderError, List[StreamEvent]]


def reply(text: str = "", calls: Optional[List[ToolCall]] = None, tokens=(10, 5)) -> List[StreamEvent]:
    """Events for one model reply: text tokens, native calls, usage."""
    events = [StreamEvent.token(part) for part in _chunks(text)]
    events.extend(StreamEvent.call(call) for call in calls or [])
    events.append(StreamEvent.totals(*tokens))
    return events


def _chunks(text: str, size: int = 16) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


class ScriptedProvider(ModelProvider):
    """
    Replays scripted turns in order, one per ``send``.

    A turn is reply text, a list of StreamEvents, or a ProviderError to raise.
    Per-model scripts can be given as a dict.
    """

    name = "scripted"

    def __init__(self, turns: Union[List[Turn], Dict[str, List[Turn]]]):
        self.turns = turns
        self.requests: List[Dict[str, Any]] = []

    def _next(self, model: str) -> Turn:
        queue = self.turns.get(model, []) if isinstance(self.turns, dict) else self.turns
        if not queue:
            raise ProviderError(f"No scripted reply left for {model}", status=500)
        return queue.pop(0)

    async def send(self, messages, tool_specs, model):
        self.requests.append({"model": model, "messages": list(messages), "tools": list(tool_specs)})
        turn = self._next(model)
        if isinstance(turn, ProviderError):
            raise turn
        events = reply(turn) if isinstance(turn, str) else turn
        for event in events:
            yield event


class RecordingBashTool(BashTool):
    """Bash tool that records commands instead of running them."""

    def __init__(self, exit_code: int = 0, output: str = ""):
        self.commands: List[str] = []
        self.exit_code = exit_code
        self.output = output

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        self.commands.append(args.get("command", ""))
        if self.exit_code != 0:
            raise ToolError("nonzero_exit", f"Exit code {self.exit_code}", output=self.output)
        return self.output
