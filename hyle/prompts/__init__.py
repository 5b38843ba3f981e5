"""
Prompt Loading Utilities
========================

Prompt templates live next to this module as ``.md`` files and use
``{{PLACEHOLDER}}`` substitution. The continuation prompt is built in code
from the last batch of tool outcomes.
"""

from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from hyle.records import ToolCall, ToolSpec

PROMPTS_PACKAGE = "hyle.prompts"

INTENT_PATTERNS = ["next, i'll ", "i'll now ", "let me ", "now i'll ", "i will now "]


def _get_prompt_path(name: str):
    return resources.files(PROMPTS_PACKAGE) / f"{name}.md"


def load_prompt(name: str, substitutions: Optional[Dict[str, str]] = None) -> str:
    """
    Load a prompt template from the prompts package.

    Args:
        name: Name of the prompt file (without .md extension)
        substitutions: Placeholder (without braces) to value
    """
    prompt = _get_prompt_path(name).read_text(encoding="utf-8")
    for placeholder, value in (substitutions or {}).items():
        prompt = prompt.replace("{{" + placeholder + "}}", value)
    return prompt


def describe_tools(specs: Iterable[ToolSpec]) -> str:
    """One line per tool: ``name(arg="...", ...): description``."""
    lines = []
    for spec in specs:
        props = (spec.parameters or {}).get("properties", {})
        args = ", ".join(f'{key}="..."' for key in props)
        lines.append(f"- {spec.name}({args}): {spec.description}")
    return "\n".join(lines)


def get_system_prompt(working_directory: Path, specs: Iterable[ToolSpec]) -> str:
    return load_prompt("system_prompt", {
        "WORKING_DIRECTORY": str(working_directory),
        "TOOLS": describe_tools(specs),
    })


def get_summarizer_prompt(exchange: str) -> str:
    return load_prompt("summarizer_prompt", {"EXCHANGE": exchange})


def get_sanity_prompt(goal: str, actions: List[str], state: str) -> str:
    return load_prompt("sanity_prompt", {
        "GOAL": goal,
        "ACTIONS": "\n".join(f"- {a}" for a in actions) or "- (none yet)",
        "STATE": state or "(no state)",
    })


def extract_stated_intent(response: str) -> Optional[str]:
    """The model's own "Next, I'll ..." sentence, if it wrote one."""
    lower = response.lower()
    for pattern in INTENT_PATTERNS:
        pos = lower.find(pattern)
        if pos == -1:
            continue
        start = pos + len(pattern)
        ends = [i for i in (lower.find(".", start), lower.find("\n", start)) if i != -1]
        end = min(ends) if ends else start + 50
        end = min(end, start + 100)
        return response[pos:end].strip()
    return None


def continuation_prompt(last_response: str, calls: List[ToolCall], momentum_score: float) -> str:
    """Follow-up user turn sent after a batch of tool results."""
    failures = [c.name for c in calls if not c.succeeded]
    if failures:
        return (
            f"Tools failed: {', '.join(failures)}. "
            "Assess the error and try a different approach."
        )

    stated = extract_stated_intent(last_response)
    if stated:
        return f"Proceed: {stated}"

    if momentum_score > 0.8:
        return "Continue."
    return "Continue. Verify progress."
