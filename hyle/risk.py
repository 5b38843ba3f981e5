"""
Tool Risk Classification
========================

Grades every tool call the model proposes before anything runs:

    SAFE        read-only tools, read-only shell commands
    CAUTIOUS    edits to files already referenced in the session,
                allowlisted build/test commands
    CONFIRM     writes to new or outside paths, deletes, git commit/push,
                anything not allowlisted or not parseable
    DANGEROUS   fixed deny-list; always rejected, never executed

The deny-list is checked first and no configuration can lower it.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from hyle.records import Message, RiskTier, Role, ToolCall, ToolStatus, utc_now
from hyle.security import command_words, grade_shell_command, parse_command_line

logger = logging.getLogger(__name__)


READ_ONLY_TOOLS = {"read", "list", "ls", "glob", "grep", "search", "diff"}
WRITE_TOOLS = {"write", "edit", "patch"}
DELETE_TOOLS = {"delete", "remove", "rm"}
SHELL_TOOLS = {"bash", "shell", "sh", "exec"}

PATH_ARG_KEYS = ("path", "file_path", "file", "target")

# Directories a model should never write into directly.
PROTECTED_DIRS = {".hyle", ".git"}

COMMAND_WRAPPERS = {"sudo", "doas", "nice", "nohup", "time", "command", "env", "xargs", "exec"}
SHELLS = {"sh", "bash", "zsh", "dash", "ksh"}

_PATH_TOKEN = re.compile(r"(?:[\w.-]+/)*[\w-][\w.-]*\.[A-Za-z0-9]{1,8}\b")


@dataclass
class DangerPattern:
    """A deny-list entry: input that is never allowed to run."""

    pattern_id: str
    description: str
    input_pattern: str
    input_field: str = "command"

    def matches(self, value: str) -> bool:
        return re.search(self.input_pattern, value) is not None


DEFAULT_DANGER_PATTERNS: List[DangerPattern] = [
    DangerPattern(
        pattern_id="fork_bomb",
        description="Fork bomb",
        input_pattern=r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    ),
    DangerPattern(
        pattern_id="fork_bomb_named",
        description="Fork bomb",
        input_pattern=r"\b(\w+)\s*\(\s*\)\s*\{[^}]*\b\1\s*\|\s*\1\s*&",
    ),
    DangerPattern(
        pattern_id="dd_device",
        description="dd writing to a device",
        input_pattern=r"\bdd\b[^;&|]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)",
    ),
    DangerPattern(
        pattern_id="mkfs",
        description="Filesystem creation",
        input_pattern=r"\bmkfs(\.\w+)?\b",
    ),
    DangerPattern(
        pattern_id="raw_device_redirect",
        description="Redirection onto a raw block device",
        input_pattern=r">\s*/dev/(sd[a-z]|hd[a-z]|vd[a-z]|xvd[a-z]|nvme\d|mmcblk\d|disk\d)",
    ),
    DangerPattern(
        pattern_id="download_pipe_shell",
        description="Download piped into a shell",
        input_pattern=r"\b(curl|wget)\b[^|;&]*\|\s*(sudo\s+)?(ba|z|da|k)?sh\b",
    ),
    DangerPattern(
        pattern_id="shell_eval_download",
        description="Shell evaluating a download",
        input_pattern=r"\b(ba|z)?sh\b[^;&|]*(<\(|\$\()\s*(curl|wget)\b",
    ),
    DangerPattern(
        pattern_id="chmod_777_root",
        description="Recursive chmod 777 on the filesystem root",
        input_pattern=r"\bchmod\s+(?:(?:-\w*R\w*|--recursive)\s+)+0?777\s+/(?:\s|\*|$)",
    ),
    DangerPattern(
        pattern_id="write_raw_device",
        description="Write to a raw block device",
        input_pattern=r"^/dev/(sd|hd|vd|xvd|nvme|mmcblk|disk)",
        input_field="path",
    ),
]


def _strip_wrappers(words: List[str]) -> List[str]:
    """Drop sudo/env/xargs-style prefixes and their options."""
    while words and os.path.basename(words[0]) in COMMAND_WRAPPERS:
        words = words[1:]
        while words and (words[0].startswith("-") or "=" in words[0]):
            words = words[1:]
    return words


def is_recursive_force_delete(words: List[str]) -> bool:
    """True for ``rm`` with both a recursive and a force flag, in any spelling."""
    recursive, force, _ = _rm_flags(words)
    return recursive and force


def _rm_flags(words: List[str]) -> Tuple[bool, bool, List[str]]:
    """(recursive, force, targets) for an ``rm`` command; all false for anything else."""
    words = _strip_wrappers(list(words))
    if not words or os.path.basename(words[0]) != "rm":
        return False, False, []
    recursive = force = False
    targets: List[str] = []
    options_done = False
    for word in words[1:]:
        if options_done or not word.startswith("-") or word == "-":
            targets.append(word)
        elif word == "--":
            options_done = True
        elif word == "--recursive":
            recursive = True
        elif word == "--force":
            force = True
        elif not word.startswith("--"):
            flags = word[1:]
            recursive = recursive or "r" in flags or "R" in flags
            force = force or "f" in flags
    return recursive, force, targets


def is_sweeping_target(target: str) -> bool:
    """The filesystem root, a home directory, or any absolute path."""
    target = target.strip("'\"")
    if not target:
        return False
    return (
        target.startswith("/")
        or target.startswith("~")
        or target.startswith("$HOME")
        or target.startswith("${HOME}")
    )


def recursive_delete_reason(words: List[str]) -> Optional[Tuple[str, str]]:
    """
    (pattern_id, description) for recursive deletes the deny-list covers.

    ``rm`` with recursive and force flags is always denied. Recursive ``rm``
    without force is denied when it targets the root, a home directory or an
    absolute path. ``find`` rooted at such a path is denied when it deletes
    what it finds.
    """
    recursive, force, targets = _rm_flags(words)
    if recursive and force:
        target = targets[-1] if targets else ""
        return "rm_recursive_force", f"Recursive force delete of {target}"
    if recursive:
        for target in targets:
            if is_sweeping_target(target):
                return "rm_recursive_absolute", f"Recursive delete of {target}"

    words = _strip_wrappers(list(words))
    if words and os.path.basename(words[0]) == "find":
        roots = []
        for word in words[1:]:
            if word.startswith("-") or word in ("(", "!"):
                break
            roots.append(word)
        deletes = "-delete" in words
        for flag in ("-exec", "-execdir", "-ok", "-okdir"):
            if flag in words:
                idx = words.index(flag)
                if idx + 1 < len(words) and os.path.basename(words[idx + 1]) in ("rm", "rmdir", "shred", "unlink"):
                    deletes = True
        if deletes:
            for root in roots:
                if is_sweeping_target(root):
                    return "find_delete_absolute", f"find deleting under {root}"
    return None


def _nested_scripts(command: str) -> List[str]:
    """Scripts passed to ``sh -c`` style invocations."""
    scripts = []
    for cmd in parse_command_line(command) or []:
        if cmd.name in SHELLS and "-c" in cmd.args:
            idx = cmd.argv.index("-c")
            if idx + 1 < len(cmd.argv):
                scripts.append(cmd.argv[idx + 1])
    return scripts


@dataclass
class RiskAssessment:
    """Risk verdict for one tool call."""

    tool: str
    tier: RiskTier
    reason: str
    action: str
    pattern_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_now)

    @property
    def blocked(self) -> bool:
        return self.tier == RiskTier.DANGEROUS

    @property
    def needs_confirmation(self) -> bool:
        return self.tier >= RiskTier.CONFIRM

    def to_dict(self) -> dict:
        return {
            "tool": self.tool,
            "tier": self.tier.label,
            "reason": self.reason,
            "action": self.action,
            "pattern_id": self.pattern_id,
            "timestamp": self.timestamp,
        }


class ToolRiskClassifier:
    """
    Classifies tool calls by blast radius before execution.

    Keeps the set of files referenced in the session (mentioned by the user
    or touched by tool calls that completed); edits to those are CAUTIOUS, edits to
    anything else need confirmation.
    """

    def __init__(self, cwd: Path, registry: Any = None, patterns: Optional[List[DangerPattern]] = None):
        self.cwd = Path(cwd).resolve()
        self.registry = registry
        self.patterns = list(patterns if patterns is not None else DEFAULT_DANGER_PATTERNS)
        self._referenced: Set[Path] = set()

        self.stats = {
            "total_assessments": 0,
            "by_tier": {tier.label: 0 for tier in RiskTier},
        }

    # =========================================================================
    # Referenced files
    # =========================================================================

    def _resolve(self, path: str) -> Path:
        candidate = Path(os.path.expanduser(path))
        if not candidate.is_absolute():
            candidate = self.cwd / candidate
        return candidate.resolve()

    def note_reference(self, path: str) -> None:
        """Mark a file as known to this session."""
        if path:
            self._referenced.add(self._resolve(path))

    def note_history(self, messages: Iterable[Message]) -> None:
        """
        Collect references from user text and from tool calls that completed.

        Calls the model only proposed (assistant messages, declined or
        pending calls) never count.
        """
        for message in messages:
            if message.role == Role.USER:
                for token in _PATH_TOKEN.findall(message.content):
                    self.note_reference(token)
            elif message.role == Role.TOOL:
                for call in message.tool_calls:
                    path = _path_arg(call.args)
                    if path and call.status == ToolStatus.DONE:
                        self.note_reference(path)

    def is_referenced(self, path: str) -> bool:
        return self._resolve(path) in self._referenced

    def is_inside_cwd(self, path: str) -> bool:
        resolved = self._resolve(path)
        return resolved == self.cwd or self.cwd in resolved.parents

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(self, call: ToolCall) -> RiskTier:
        return self.assess(call).tier

    def assess(self, call: ToolCall) -> RiskAssessment:
        """Full assessment with the reason for the tier."""
        kind = self._tool_kind(call.name)
        if kind == "shell":
            tier, reason, pattern_id = self._assess_shell(str(call.args.get("command", "")))
        elif kind == "write":
            tier, reason, pattern_id = self._assess_write(call.args)
        elif kind == "delete":
            tier, reason, pattern_id = self._assess_delete(call.args)
        elif kind == "read":
            tier, reason, pattern_id = RiskTier.SAFE, f"{call.name} is read-only", None
        else:
            tier, reason, pattern_id = RiskTier.CONFIRM, f"unknown tool {call.name!r}", None

        assessment = RiskAssessment(
            tool=call.name,
            tier=tier,
            reason=reason,
            action=self._summarize_action(call),
            pattern_id=pattern_id,
        )
        self._log_assessment(assessment)
        return assessment

    def _tool_kind(self, name: str) -> str:
        tool = self.registry.get(name) if self.registry is not None else None
        if tool is not None:
            if tool.runs_shell:
                return "shell"
            if tool.deletes:
                return "delete"
            if tool.mutates:
                return "write"
            if tool.read_only:
                return "read"
            return "unknown"
        lowered = name.lower()
        if lowered in SHELL_TOOLS:
            return "shell"
        if lowered in DELETE_TOOLS:
            return "delete"
        if lowered in WRITE_TOOLS:
            return "write"
        if lowered in READ_ONLY_TOOLS:
            return "read"
        return "unknown"

    def _match_patterns(self, field_name: str, value: str) -> Optional[DangerPattern]:
        for pattern in self.patterns:
            if pattern.input_field == field_name and pattern.matches(value):
                return pattern
        return None

    def dangerous_reason(self, command: str) -> Optional[Tuple[str, str]]:
        """(pattern_id, description) when the command is on the deny-list."""
        pattern = self._match_patterns("command", command)
        if pattern is not None:
            return pattern.pattern_id, pattern.description
        for words in command_words(command):
            found = recursive_delete_reason(words)
            if found is not None:
                return found
        for script in _nested_scripts(command):
            found = self.dangerous_reason(script)
            if found is not None:
                return found
        return None

    def _assess_shell(self, command: str) -> Tuple[RiskTier, str, Optional[str]]:
        danger = self.dangerous_reason(command)
        if danger is not None:
            return RiskTier.DANGEROUS, danger[1], danger[0]
        tier, reason = grade_shell_command(command)
        return tier, reason, None

    def _assess_write(self, args: Dict[str, Any]) -> Tuple[RiskTier, str, Optional[str]]:
        path = _path_arg(args)
        if not path:
            return RiskTier.CONFIRM, "no target path given", None

        pattern = self._match_patterns("path", path)
        if pattern is not None:
            return RiskTier.DANGEROUS, pattern.description, pattern.pattern_id

        if not self.is_inside_cwd(path):
            return RiskTier.CONFIRM, f"{path} is outside the working directory", None
        relative = self._resolve(path).relative_to(self.cwd)
        if relative.parts and relative.parts[0] in PROTECTED_DIRS:
            return RiskTier.CONFIRM, f"{path} is inside {relative.parts[0]}", None
        if not self.is_referenced(path):
            return RiskTier.CONFIRM, f"{path} has not been referenced in this session", None
        return RiskTier.CAUTIOUS, f"{path} is a referenced file in the working directory", None

    def _assess_delete(self, args: Dict[str, Any]) -> Tuple[RiskTier, str, Optional[str]]:
        path = _path_arg(args) or ""
        if args.get("recursive") and (path in ("/", "~") or os.path.isabs(os.path.expanduser(path))):
            return RiskTier.DANGEROUS, f"Recursive delete of {path}", "delete_recursive_absolute"
        return RiskTier.CONFIRM, f"delete {path}".strip(), None

    # =========================================================================
    # Reporting
    # =========================================================================

    def _summarize_action(self, call: ToolCall) -> str:
        if "command" in call.args:
            cmd = str(call.args["command"])
            return f"Run: {cmd[:60]}{'...' if len(cmd) > 60 else ''}"
        path = _path_arg(call.args)
        if path:
            return f"{call.name} {path}"
        return f"{call.name} operation"

    def _log_assessment(self, assessment: RiskAssessment) -> None:
        self.stats["total_assessments"] += 1
        self.stats["by_tier"][assessment.tier.label] += 1
        if assessment.blocked:
            logger.warning("Blocked %s: %s", assessment.action, assessment.reason)
        else:
            logger.debug("%s -> %s (%s)", assessment.action, assessment.tier.label, assessment.reason)

    def get_stats(self) -> dict:
        return {
            "total_assessments": self.stats["total_assessments"],
            "by_tier": dict(self.stats["by_tier"]),
            "referenced_files": len(self._referenced),
        }


def _path_arg(args: Dict[str, Any]) -> Optional[str]:
    for key in PATH_ARG_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def format_assessment(assessment: RiskAssessment) -> str:
    """Format an assessment for display."""
    lines = [
        f"Risk Assessment: {assessment.action}",
        f"  Tool: {assessment.tool}",
        f"  Tier: {assessment.tier.label.upper()}",
        f"  Reason: {assessment.reason}",
    ]
    if assessment.blocked:
        lines.append("  BLOCKED")
    elif assessment.needs_confirmation:
        lines.append("  REQUIRES APPROVAL")
    return "\n".join(lines)


def create_risk_classifier(cwd: Path, registry: Any = None) -> ToolRiskClassifier:
    """Classifier with the default deny-list."""
    return ToolRiskClassifier(cwd, registry=registry)
