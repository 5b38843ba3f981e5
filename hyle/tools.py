"""
Tool Registry
=============

The tools a model can call, behind one interface:

    Tool.run(args, ctx) -> output text, or raises ToolError(kind, message)

Each tool declares whether it is read-only, mutates files, deletes, or runs
a shell, which is what the risk classifier and the orchestrator's batching
use. ``ToolRegistry.execute`` drives a ToolCall through its lifecycle with a
wall-clock timeout; shell subprocesses are killed (whole process group) on
timeout or cancellation.

Tools:
- read, list (ls), glob, grep (search), diff     read-only
- write, edit, patch                             mutate one file
- bash (shell, sh)                               run a shell command
"""

import asyncio
import difflib
import fnmatch
import logging
import os
import re
import signal
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from hyle.errors import ToolError
from hyle.failures import ToolErrorKind
from hyle.records import ToolCall, ToolSpec, ToolStatus

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 60.0
MAX_OUTPUT_CHARS = 30_000
MAX_MATCHES = 200
MAX_GLOB_RESULTS = 500
MAX_READ_CHARS = 5_000_000

SKIP_DIRS = {".git", ".hyle", "node_modules", "__pycache__", ".venv", "target", ".mypy_cache"}


@dataclass
class ToolContext:
    """Per-call execution context. ``output`` collects streamed output so it survives a kill."""
    cwd: Path
    timeout: float = DEFAULT_TOOL_TIMEOUT
    output: List[str] = field(default_factory=list)
    stop: threading.Event = field(default_factory=threading.Event)

    def resolve(self, path: str) -> Path:
        candidate = Path(os.path.expanduser(path))
        if not candidate.is_absolute():
            candidate = self.cwd / candidate
        return candidate

    @property
    def partial_output(self) -> str:
        return "".join(self.output)

    def check_stop(self) -> None:
        """Raise once the call has timed out or been cancelled, ending a worker thread early."""
        if self.stop.is_set():
            raise ToolError(ToolErrorKind.KILLED.value, "Stopped")


def truncate_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Keep the head and tail of overlong output."""
    if len(text) <= limit:
        return text
    half = limit // 2
    omitted = len(text) - limit
    return f"{text[:half]}\n... ({omitted} characters omitted) ...\n{text[-half:]}"


def _require(args: Dict[str, Any], *keys: str) -> str:
    """First present string argument among ``keys``."""
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"Missing required argument: {keys[0]}")


def _read_text(path: Path, limit: int = -1) -> str:
    if not path.exists():
        raise ToolError(ToolErrorKind.NOT_FOUND.value, f"File not found: {path}")
    if path.is_dir():
        raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"{path} is a directory")
    if not path.is_file():
        raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"{path} is not a regular file")
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            return f.read(limit)
    except OSError as e:
        raise ToolError(ToolErrorKind.IO.value, f"Failed to read {path}: {e}") from e


def _write_text(path: Path, content: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        raise ToolError(ToolErrorKind.IO.value, f"Failed to write {path}: {e}") from e


def _walk_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for name in sorted(filenames):
            yield Path(dirpath) / name


def _display(path: Path, cwd: Path) -> str:
    try:
        return str(path.relative_to(cwd))
    except ValueError:
        return str(path)


# =============================================================================
# Tool base
# =============================================================================

class Tool(ABC):
    """A capability the model can invoke by name."""

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {}
    aliases: tuple = ()

    read_only = False
    mutates = False
    deletes = False
    runs_shell = False

    def spec(self) -> ToolSpec:
        return ToolSpec(self.name, self.description, self.parameters)

    def target_path(self, args: Dict[str, Any]) -> Optional[str]:
        """File this call would modify, for mutating tools."""
        for key in ("path", "file_path", "file"):
            value = args.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @abstractmethod
    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        """Execute and return the output text."""


class BlockingTool(Tool):
    """
    A tool whose work is synchronous filesystem access.

    ``run_blocking`` runs in a worker thread so timeouts, interrupts and
    concurrent batches keep working while it reads. Long loops call
    ``ctx.check_stop()`` so an abandoned thread exits soon after.
    """

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        return await asyncio.to_thread(self.run_blocking, args, ctx)

    @abstractmethod
    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        """Execute in a worker thread and return the output text."""


def _schema(required: List[str], **props: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "properties": props, "required": required}


_STR = {"type": "string"}


# =============================================================================
# Read-only tools
# =============================================================================

class ReadTool(BlockingTool):
    name = "read"
    description = "Read a text file with line numbers."
    parameters = _schema(
        ["path"],
        path=_STR,
        offset={"type": "integer", "description": "First line to show (1-based)"},
        limit={"type": "integer", "description": "Maximum number of lines"},
    )
    read_only = True

    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = ctx.resolve(_require(args, "path", "file_path", "file"))
        lines = _read_text(path, MAX_READ_CHARS).splitlines()
        try:
            start = max(int(args.get("offset") or 1), 1)
            limit = int(args["limit"]) if args.get("limit") else len(lines)
        except (TypeError, ValueError) as e:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"Bad offset/limit: {e}") from e
        selected = lines[start - 1:start - 1 + limit]
        return truncate_output("\n".join(f"{i:4}│ {line}" for i, line in enumerate(selected, start)))


class ListTool(BlockingTool):
    name = "list"
    aliases = ("ls",)
    description = "List the entries of a directory. Directories end with '/'."
    parameters = _schema([], path=_STR)
    read_only = True

    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = ctx.resolve(args.get("path") or ".")
        if not path.exists():
            raise ToolError(ToolErrorKind.NOT_FOUND.value, f"Directory not found: {path}")
        if not path.is_dir():
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"{path} is not a directory")
        try:
            entries = sorted(path.iterdir(), key=lambda p: p.name)
        except OSError as e:
            raise ToolError(ToolErrorKind.IO.value, f"Failed to list {path}: {e}") from e
        if not entries:
            return "(empty directory)"
        return "\n".join(e.name + ("/" if e.is_dir() else "") for e in entries)


class GlobTool(BlockingTool):
    name = "glob"
    description = "Find files matching a glob pattern such as 'src/**/*.py'."
    parameters = _schema(["pattern"], pattern=_STR, path=_STR)
    read_only = True

    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        pattern = _require(args, "pattern")
        root = ctx.resolve(args.get("path") or ".")
        if not root.is_dir():
            raise ToolError(ToolErrorKind.NOT_FOUND.value, f"Directory not found: {root}")
        matches = []
        truncated = False
        for match in root.glob(pattern):
            ctx.check_stop()
            if SKIP_DIRS.intersection(match.relative_to(root).parts):
                continue
            if len(matches) >= MAX_GLOB_RESULTS:
                truncated = True
                break
            matches.append(_display(match, ctx.cwd))
        matches.sort()
        if truncated:
            matches.append(f"... (stopped at {MAX_GLOB_RESULTS} results)")
        return "\n".join(matches) if matches else "(no matches)"


class GrepTool(BlockingTool):
    name = "grep"
    aliases = ("search",)
    description = "Search file contents for a regular expression."
    parameters = _schema(
        ["pattern"],
        pattern=_STR,
        path=_STR,
        glob={"type": "string", "description": "Only search files matching this glob"},
        ignore_case={"type": "boolean"},
    )
    read_only = True

    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        pattern = _require(args, "pattern", "query")
        flags = re.IGNORECASE if args.get("ignore_case") else 0
        try:
            regex = re.compile(pattern, flags)
        except re.error as e:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"Invalid pattern: {e}") from e

        root = ctx.resolve(args.get("path") or ".")
        if not root.exists():
            raise ToolError(ToolErrorKind.NOT_FOUND.value, f"Path not found: {root}")
        files: Iterable[Path] = [root] if root.is_file() else _walk_files(root)
        include = args.get("glob")

        results: List[str] = []
        for file in files:
            ctx.check_stop()
            if include and not fnmatch.fnmatch(file.name, include):
                continue
            try:
                if not file.is_file():
                    continue
                with open(file, encoding="utf-8") as f:
                    text = f.read(MAX_READ_CHARS)
            except (UnicodeDecodeError, OSError):
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    results.append(f"{_display(file, ctx.cwd)}:{lineno}: {line.strip()}")
                    if len(results) >= MAX_MATCHES:
                        results.append(f"... (stopped at {MAX_MATCHES} matches)")
                        return "\n".join(results)
        return "\n".join(results) if results else "(no matches)"


class DiffTool(BlockingTool):
    name = "diff"
    description = "Show a unified diff between a file and proposed content, or between two files."
    parameters = _schema([], path=_STR, content=_STR, other=_STR)
    read_only = True

    def run_blocking(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = _require(args, "path", "file_path")
        original = _read_text(ctx.resolve(path), MAX_READ_CHARS)
        if isinstance(args.get("other"), str):
            other_name = args["other"]
            modified = _read_text(ctx.resolve(other_name), MAX_READ_CHARS)
        elif isinstance(args.get("content"), str):
            other_name = path
            modified = args["content"]
        else:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, "diff needs 'content' or 'other'")
        diff = "".join(difflib.unified_diff(
            original.splitlines(keepends=True),
            modified.splitlines(keepends=True),
            fromfile=f"a/{path}",
            tofile=f"b/{other_name}",
        ))
        return truncate_output(diff) if diff else "(no differences)"


# =============================================================================
# Mutating tools
# =============================================================================

class WriteTool(Tool):
    name = "write"
    description = "Create or overwrite a file with the given content."
    parameters = _schema(["path", "content"], path=_STR, content=_STR)
    mutates = True

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = ctx.resolve(_require(args, "path", "file_path", "file"))
        content = args.get("content")
        if not isinstance(content, str):
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, "Missing required argument: content")
        _write_text(path, content)
        return f"Wrote {len(content.encode('utf-8'))} bytes to {_display(path, ctx.cwd)}"


class EditTool(Tool):
    name = "edit"
    description = "Replace an exact text fragment in a file. The fragment must be unique unless replace_all is set."
    parameters = _schema(
        ["path", "old", "new"],
        path=_STR,
        old=_STR,
        new=_STR,
        replace_all={"type": "boolean"},
    )
    mutates = True

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = ctx.resolve(_require(args, "path", "file_path", "file"))
        old = args.get("old", args.get("old_string"))
        new = args.get("new", args.get("new_string"))
        if not isinstance(old, str) or not old or not isinstance(new, str):
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, "edit needs non-empty 'old' and a 'new' string")

        text = _read_text(path)
        count = text.count(old)
        if count == 0:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"Text to replace not found in {path.name}")
        if count > 1 and not args.get("replace_all"):
            raise ToolError(
                ToolErrorKind.INVALID_ARGS.value,
                f"Text to replace occurs {count} times in {path.name}; add context or set replace_all",
            )
        _write_text(path, text.replace(old, new) if args.get("replace_all") else text.replace(old, new, 1))
        return f"Edited {_display(path, ctx.cwd)} ({count if args.get('replace_all') else 1} replacement)"


_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def diff_target(diff: str) -> Optional[str]:
    """File named in a unified diff's ``+++`` header."""
    for line in diff.splitlines():
        if line.startswith("+++ "):
            target = line[4:].split("\t")[0].strip()
            if target == "/dev/null":
                return None
            return target[2:] if target.startswith(("a/", "b/")) else target
    return None


def apply_unified_diff(original: str, diff: str) -> str:
    """
    Apply the hunks of a unified diff to ``original``.

    Each hunk is located by its context and removed lines, searching
    outward from the line number in its header.
    """
    lines = original.splitlines()
    hunks: List[tuple] = []
    current: Optional[tuple] = None
    for raw in diff.splitlines():
        header = _HUNK_HEADER.match(raw)
        if header:
            current = (int(header.group(1)), [], [])
            hunks.append(current)
            continue
        if current is None or raw.startswith(("---", "+++", "\\")):
            continue
        tag, body = (raw[0], raw[1:]) if raw else (" ", "")
        if tag in (" ", "-"):
            current[1].append(body)
        if tag in (" ", "+"):
            current[2].append(body)

    if not hunks:
        raise ToolError(ToolErrorKind.INVALID_ARGS.value, "No hunks found in diff")

    shift = 0
    for start, old, new in hunks:
        expected = max(start - 1 + shift, 0)
        position = _find_block(lines, old, expected)
        if position is None:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, f"Hunk at line {start} does not match the file")
        lines[position:position + len(old)] = new
        shift += len(new) - len(old)

    result = "\n".join(lines)
    if original.endswith("\n") or not original:
        result += "\n"
    return result


def _find_block(lines: List[str], block: List[str], expected: int) -> Optional[int]:
    if not block:
        return min(expected, len(lines))
    size = len(block)
    candidates = range(0, len(lines) - size + 1)
    for position in sorted(candidates, key=lambda p: abs(p - expected)):
        if lines[position:position + size] == block:
            return position
    return None


class PatchTool(Tool):
    name = "patch"
    description = "Apply a unified diff to a file."
    parameters = _schema(["diff"], path=_STR, diff=_STR)
    mutates = True

    def target_path(self, args: Dict[str, Any]) -> Optional[str]:
        return super().target_path(args) or diff_target(str(args.get("diff", "")))

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        diff = _require(args, "diff", "patch")
        target = self.target_path(args)
        if not target:
            raise ToolError(ToolErrorKind.INVALID_ARGS.value, "patch needs a 'path' or a diff with a +++ header")
        path = ctx.resolve(target)
        original = _read_text(path) if path.exists() else ""
        _write_text(path, apply_unified_diff(original, diff))
        return f"Patched {_display(path, ctx.cwd)}"


# =============================================================================
# Shell
# =============================================================================

def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except ProcessLookupError:
        pass


class BashTool(Tool):
    name = "bash"
    aliases = ("shell", "sh")
    description = "Run a shell command in the working directory. stdout and stderr are combined."
    parameters = _schema(["command"], command=_STR)
    runs_shell = True

    async def run(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        command = _require(args, "command", "cmd")
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(ctx.cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            stdin=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        try:
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                ctx.output.append(chunk.decode("utf-8", errors="replace"))
            returncode = await proc.wait()
        except asyncio.CancelledError:
            # Timeout or interrupt: take the children down with the shell
            _kill_process_group(proc)
            await proc.wait()
            raise

        output = truncate_output(ctx.partial_output)
        if returncode != 0:
            raise ToolError(ToolErrorKind.NONZERO_EXIT.value, f"Exit code {returncode}", output=output)
        return output


# =============================================================================
# Registry
# =============================================================================

class ToolRegistry:
    """
    Tools by name (and alias).

    Usage:
        registry = create_default_registry()
        specs = registry.specs()                     # for the model
        call = await registry.execute(call, cwd)     # run one ToolCall
    """

    def __init__(self, tools: Optional[Iterable[Tool]] = None, timeout: float = DEFAULT_TOOL_TIMEOUT):
        self._tools: Dict[str, Tool] = {}
        self._aliases: Dict[str, str] = {}
        self.timeout = timeout
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool
        for alias in tool.aliases:
            self._aliases[alias] = tool.name

    def get(self, name: str) -> Optional[Tool]:
        key = (name or "").strip().lower()
        return self._tools.get(self._aliases.get(key, key))

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def names(self) -> List[str]:
        """Tool names and aliases."""
        return sorted(list(self._tools) + list(self._aliases))

    def specs(self) -> List[ToolSpec]:
        return [tool.spec() for tool in self._tools.values()]

    def is_read_only(self, call: ToolCall) -> bool:
        tool = self.get(call.name)
        return tool is not None and tool.read_only

    def target_path(self, call: ToolCall) -> Optional[str]:
        tool = self.get(call.name)
        if tool is None or not tool.mutates:
            return None
        return tool.target_path(call.args)

    async def execute(self, call: ToolCall, cwd: Path, timeout: Optional[float] = None) -> ToolCall:
        """
        Run ``call`` to a terminal status.

        Failures are recorded on the call, never raised. Cancellation kills
        the call (keeping partial output) and propagates.
        """
        tool = self.get(call.name)
        if tool is None:
            call.fail(ToolErrorKind.INVALID_ARGS.value, f"Unknown tool: {call.name}")
            return call

        limit = timeout if timeout is not None else self.timeout
        ctx = ToolContext(cwd=Path(cwd), timeout=limit)
        call.start()
        try:
            output = await asyncio.wait_for(tool.run(call.args, ctx), timeout=limit)
        except asyncio.TimeoutError:
            ctx.stop.set()
            call.fail(
                ToolErrorKind.TIMEOUT.value,
                f"{call.name} timed out after {limit:g}s",
                truncate_output(ctx.partial_output) or None,
            )
        except asyncio.CancelledError:
            ctx.stop.set()
            call.kill(truncate_output(ctx.partial_output))
            raise
        except ToolError as e:
            call.fail(e.kind, e.message, e.output)
        except Exception as e:
            logger.exception("Tool %s crashed", call.name)
            call.fail(ToolErrorKind.CRASH.value, f"{type(e).__name__}: {e}")
        else:
            call.finish(output)
        return call


def create_default_registry(timeout: float = DEFAULT_TOOL_TIMEOUT) -> ToolRegistry:
    return ToolRegistry(
        [ReadTool(), ListTool(), GlobTool(), GrepTool(), DiffTool(), WriteTool(), EditTool(), PatchTool(), BashTool()],
        timeout=timeout,
    )


# =============================================================================
# Result formatting
# =============================================================================

def format_tool_result(call: ToolCall) -> str:
    """Result block fed back to the model for one call."""
    header = f"## {call.name} result:\n"
    if call.status == ToolStatus.DONE:
        return header + (call.output or "(no output)")
    if call.status == ToolStatus.FAILED:
        body = f"ERROR: {call.error or 'unknown'}"
        if call.output:
            body += f"\n{call.output}"
        return header + body
    if call.status == ToolStatus.KILLED:
        return header + "(killed by user)" + (f"\n{call.output}" if call.output else "")
    return header + "(unexpected status)"
