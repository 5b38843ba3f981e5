"""
Tool Call Parsing
=================

Models without native function calling write their tool calls into the
response text. Three forms are recognised, in this order:

    ```json
    {"tool": "read", "args": {"path": "src/main.py"}}
    ```
    <tool>{"name": "bash", "args": {"command": "pytest"}}</tool>
    read(path="src/main.py")

JSON values may be ``{"tool": name, "args": {...}}``, ``{"name": name,
"args"|"arguments": {...}}``, ``{"<known tool>": {...}}``, or a list of any
of these. The function-call form is only accepted for known tool names.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Set

from hyle.records import ToolCall

KNOWN_TOOLS = {
    "read", "write", "glob", "grep", "bash", "edit", "search", "patch", "diff", "list", "ls",
}

_JSON_BLOCK = re.compile(r"```(?:json)?[ \t]*\n([\s\S]*?)\n[ \t]*```")
_TOOL_TAG = re.compile(r"<tool>([\s\S]*?)</tool>")
_FUNCTION_CALL = re.compile(r"\b(\w+)\(([^)]*)\)")
_KEYWORD_ARG = re.compile(r"(\w+)\s*=\s*\"([^\"]*)\"")


def _to_call(value: Any, known: Set[str]) -> Optional[ToolCall]:
    if not isinstance(value, dict):
        return None

    for key in ("tool", "name"):
        name = value.get(key)
        if isinstance(name, str) and name:
            args = value.get("args", value.get("arguments", {}))
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError:
                    args = {"_raw": args}
            return ToolCall.create(name, args if isinstance(args, dict) else {})

    # {"read": {"path": "..."}}
    for key, args in value.items():
        if key in known and isinstance(args, dict):
            return ToolCall.create(key, args)
    return None


def _from_json(text: str, known: Set[str]) -> List[ToolCall]:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return []
    items = parsed if isinstance(parsed, list) else [parsed]
    calls = []
    for item in items:
        call = _to_call(item, known)
        if call is not None:
            calls.append(call)
    return calls


def parse_json_blocks(text: str, known: Set[str] = KNOWN_TOOLS) -> List[ToolCall]:
    calls = []
    for match in _JSON_BLOCK.finditer(text):
        calls.extend(_from_json(match.group(1), known))
    return calls


def parse_tool_tags(text: str, known: Set[str] = KNOWN_TOOLS) -> List[ToolCall]:
    calls = []
    for match in _TOOL_TAG.finditer(text):
        calls.extend(_from_json(match.group(1).strip(), known))
    return calls


def parse_function_calls(text: str, known: Set[str] = KNOWN_TOOLS) -> List[ToolCall]:
    """``name(key="value", ...)`` for known tool names, outside code blocks and tags."""
    stripped = _TOOL_TAG.sub("", _JSON_BLOCK.sub("", text))
    calls = []
    for match in _FUNCTION_CALL.finditer(stripped):
        name = match.group(1)
        if name not in known:
            continue
        args = dict(_KEYWORD_ARG.findall(match.group(2)))
        if args:
            calls.append(ToolCall.create(name, args))
    return calls


def parse_tool_calls(text: str, known_tools: Optional[Iterable[str]] = None) -> List[ToolCall]:
    """
    All tool calls written in ``text``, in document order per form.

    Args:
        text: Model response text
        known_tools: Names accepted for the bare-key and function-call forms
    """
    known = set(known_tools) if known_tools is not None else KNOWN_TOOLS
    calls = parse_json_blocks(text, known)
    calls.extend(parse_tool_tags(text, known))
    calls.extend(parse_function_calls(text, known))
    return calls


def strip_tool_calls(text: str) -> str:
    """Response text with JSON tool blocks and tool tags removed."""
    def _drop_if_call(match: "re.Match") -> str:
        return "" if _from_json(match.group(1), KNOWN_TOOLS) else match.group(0)

    text = _JSON_BLOCK.sub(_drop_if_call, text)
    text = _TOOL_TAG.sub("", text)
    return text.strip()


def args_preview(args: Dict[str, Any], limit: int = 60) -> str:
    """Short one-line rendering of tool arguments."""
    parts = []
    for key, value in args.items():
        rendered = str(value).replace("\n", " ")
        if len(rendered) > limit:
            rendered = rendered[:limit - 3] + "..."
        parts.append(f"{key}={rendered}")
    return ", ".join(parts)
