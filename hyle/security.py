"""
Shell Command Inspection
========================

Parses shell command lines proposed by the model and grades them against
allowlists:

- read-only commands (ls, cat, grep, git status, ...) are safe to run
- build and test commands (make, cargo test, pytest, ...) change only build
  output and are run with caution
- everything else, including anything that cannot be parsed, needs the
  user's confirmation

The fixed deny-list of destructive commands lives in ``hyle.risk``; it uses
``command_words`` from here so both see the same segmentation.
"""

import os
import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from hyle.records import RiskTier


# =============================================================================
# Allowlists
# =============================================================================

READ_ONLY_COMMANDS = {
    # File inspection
    "ls",
    "cat",
    "head",
    "tail",
    "wc",
    "grep",
    "egrep",
    "rg",
    "tree",
    "file",
    "stat",
    "du",
    "df",
    "diff",
    "sort",
    "uniq",
    "cut",
    "less",
    # Directory
    "pwd",
    "cd",
    # Other
    "echo",
    "which",
    "whoami",
    "date",
    "true",
    "ps",
}

READ_ONLY_GIT_SUBCOMMANDS = {
    "status",
    "log",
    "diff",
    "show",
    "blame",
    "rev-parse",
    "ls-files",
    "shortlog",
}

FIND_ACTIONS = {"-delete", "-exec", "-execdir", "-ok", "-okdir", "-fprint", "-fprintf", "-fls"}

# Command name -> allowed first subcommands (None means any arguments).
BUILD_TEST_COMMANDS: Dict[str, Optional[Set[str]]] = {
    "make": None,
    "pytest": None,
    "tsc": None,
    "mkdir": None,
    "touch": None,
    "cargo": {"build", "check", "test", "fmt", "clippy", "run", "bench", "doc"},
    "go": {"build", "test", "vet", "fmt", "run"},
    "npm": {"test", "run", "ci", "install"},
    "pnpm": {"test", "run", "install"},
    "yarn": {"test", "run", "install", "build"},
    "python": {"-m"},
    "python3": {"-m"},
}

# For ``python -m <module>``.
PYTHON_BUILD_MODULES = {"pytest", "unittest", "compileall", "mypy", "build"}

SHELL_KEYWORDS = {
    "if", "then", "else", "elif", "fi", "for", "while", "until",
    "do", "done", "case", "esac", "in", "!", "{", "}",
}

COMMAND_SEPARATORS = {"|", "||", "&&", "&", ";", ";;", "(", ")", "|&"}
REDIRECT_OPERATORS = {">", ">>", "<", "<<", "<<<", ">&", "&>", "&>>", ">|", "<>", "<&"}
WRITE_REDIRECTS = {">", ">>", "&>", "&>>", ">|", "<>"}

HARMLESS_REDIRECT_TARGETS = {"/dev/null", "/dev/stdout", "/dev/stderr"}

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@dataclass
class ShellCommand:
    """One simple command inside a command line."""
    name: str
    argv: List[str] = field(default_factory=list)
    writes_to: List[str] = field(default_factory=list)

    @property
    def args(self) -> List[str]:
        return self.argv[1:]

    def first_operand(self) -> Optional[str]:
        """First argument that is not a flag."""
        for arg in self.args:
            if not arg.startswith("-"):
                return arg
        return None


# =============================================================================
# Parsing
# =============================================================================

def split_command_segments(command_string: str) -> List[str]:
    """
    Split a compound command into individual command segments.

    Handles command chaining (&&, ||, ;) but not pipes (those are single commands).
    """
    segments = re.split(r"\s*(?:&&|\|\|)\s*", command_string)

    result = []
    for segment in segments:
        for sub in re.split(r'(?<!["\'])\s*;\s*(?!["\'])', segment):
            sub = sub.strip()
            if sub:
                result.append(sub)
    return result


def _tokenize(command_string: str) -> List[str]:
    lexer = shlex.shlex(command_string, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    return list(lexer)


def parse_command_line(command_string: str) -> Optional[List[ShellCommand]]:
    """
    Parse a command line into simple commands.

    Returns None when the line cannot be analysed safely: unbalanced quotes,
    command substitution, or a redirection with no command.
    """
    if "$(" in command_string or "`" in command_string or "<(" in command_string:
        return None
    try:
        tokens = _tokenize(command_string)
    except ValueError:
        # Malformed command (unclosed quotes, etc.)
        return None

    commands: List[ShellCommand] = []
    current: Optional[ShellCommand] = None
    redirect: Optional[str] = None

    for token in tokens:
        if redirect is not None:
            if current is None:
                return None
            if redirect in WRITE_REDIRECTS:
                current.writes_to.append(token)
            redirect = None
            continue

        if token in COMMAND_SEPARATORS:
            current = None
            continue
        if token in REDIRECT_OPERATORS:
            redirect = token
            continue

        if current is None:
            if token in SHELL_KEYWORDS or _ASSIGNMENT.match(token):
                continue
            # Base command name, so /usr/bin/ls and ls are the same
            current = ShellCommand(name=os.path.basename(token).lower(), argv=[token])
            commands.append(current)
        else:
            current.argv.append(token)

    if redirect is not None:
        return None
    return commands


def extract_commands(command_string: str) -> List[str]:
    """
    Extract base command names from a shell command string.

    Returns an empty list for lines that cannot be parsed.
    """
    parsed = parse_command_line(command_string)
    return [c.name for c in parsed] if parsed else []


def command_words(command_string: str) -> List[List[str]]:
    """
    Word lists for every simple command, never failing.

    Falls back to whitespace splitting of each segment when shlex cannot
    parse the line, so deny-list checks still see something.
    """
    parsed = parse_command_line(command_string)
    if parsed is not None:
        return [c.argv for c in parsed]

    words = []
    for segment in split_command_segments(command_string):
        for piece in re.split(r"\s*\|\s*", segment):
            tokens = [t.strip("'\"") for t in piece.split()]
            tokens = [t for t in tokens if t and not _ASSIGNMENT.match(t)]
            if tokens:
                words.append(tokens)
    return words


# =============================================================================
# Grading
# =============================================================================

def _grade_command(cmd: ShellCommand) -> Tuple[RiskTier, str]:
    writes = [t for t in cmd.writes_to if t not in HARMLESS_REDIRECT_TARGETS]
    if writes:
        return RiskTier.CONFIRM, f"{cmd.name} writes to {writes[0]} via redirection"

    if cmd.name in READ_ONLY_COMMANDS:
        return RiskTier.SAFE, f"{cmd.name} is read-only"

    if cmd.name == "find":
        actions = FIND_ACTIONS.intersection(cmd.args)
        if actions:
            return RiskTier.CONFIRM, f"find with {sorted(actions)[0]}"
        return RiskTier.SAFE, "find is read-only"

    if cmd.name == "sed":
        if any(a == "-i" or a.startswith("-i") or a == "--in-place" for a in cmd.args):
            return RiskTier.CONFIRM, "sed -i edits files in place"
        return RiskTier.SAFE, "sed without -i is read-only"

    if cmd.name == "git":
        sub = cmd.first_operand()
        if sub in READ_ONLY_GIT_SUBCOMMANDS:
            return RiskTier.SAFE, f"git {sub} is read-only"
        if sub in ("commit", "push"):
            return RiskTier.CONFIRM, f"git {sub} changes history"
        return RiskTier.CONFIRM, f"git {sub} modifies the repository" if sub else "bare git invocation"

    if cmd.name == "rm":
        return RiskTier.CONFIRM, "rm deletes files"

    if cmd.name in BUILD_TEST_COMMANDS:
        allowed = BUILD_TEST_COMMANDS[cmd.name]
        if allowed is None:
            return RiskTier.CAUTIOUS, f"{cmd.name} is a build/test command"
        args = cmd.args
        if cmd.name in ("python", "python3"):
            if len(args) >= 2 and args[0] == "-m" and args[1] in PYTHON_BUILD_MODULES:
                return RiskTier.CAUTIOUS, f"python -m {args[1]} is a build/test command"
            return RiskTier.CONFIRM, "arbitrary python execution"
        sub = cmd.first_operand()
        if sub in allowed:
            return RiskTier.CAUTIOUS, f"{cmd.name} {sub} is a build/test command"
        return RiskTier.CONFIRM, f"{cmd.name} {sub} is not allowlisted" if sub else f"{cmd.name} needs a subcommand"

    return RiskTier.CONFIRM, f"{cmd.name} is not allowlisted"


def grade_shell_command(command_string: str) -> Tuple[RiskTier, str]:
    """
    Grade a command line as SAFE, CAUTIOUS or CONFIRM.

    The line is as risky as its riskiest simple command. Lines that cannot
    be parsed need confirmation.
    """
    if not command_string or not command_string.strip():
        return RiskTier.CONFIRM, "empty command"

    parsed = parse_command_line(command_string)
    if parsed is None:
        return RiskTier.CONFIRM, "command could not be parsed"
    if not parsed:
        return RiskTier.CONFIRM, "no command found"

    tier, reason = RiskTier.SAFE, ""
    for cmd in parsed:
        cmd_tier, cmd_reason = _grade_command(cmd)
        if cmd_tier > tier or not reason:
            tier, reason = cmd_tier, cmd_reason
    return tier, reason
