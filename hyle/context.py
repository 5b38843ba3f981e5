"""
Context Management
==================

Assembles the prompt for the next model call from the session history under
a hard token budget.

Every history message gets a salience score (category weight, recency decay,
task keyword overlap, later references, error and decision markers, focus
file mentions). Messages are then placed in tiers:

    Focus       40%   high-salience messages, full text
    Recent      30%   the newest remaining messages, full text
    Summary     20%   everything else, compressed by a Summarizer
    Background  10%   extracted facts and task keywords

The task is always placed first. Each insertion is checked against both the
tier budget and the overall budget, so ``prompt.tokens <= budget`` holds by
construction.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hyle.errors import LlmFailure
from hyle.prompts import get_summarizer_prompt
from hyle.records import Message, Role

logger = logging.getLogger(__name__)

FOCUS_THRESHOLD = 0.8
TIER_SHARES = {"focus": 0.4, "recent": 0.3, "summary": 0.2, "background": 0.1}

STOPWORDS = {
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being", "have", "has", "had",
    "do", "does", "did", "will", "would", "could", "should", "may", "might", "must", "shall",
    "can", "need", "to", "of", "in", "for", "on", "with", "at", "by", "from", "as", "into",
    "through", "during", "before", "after", "above", "below", "between", "under", "again",
    "further", "then", "once", "here", "there", "when", "where", "why", "how", "all", "each",
    "few", "more", "most", "other", "some", "such", "no", "nor", "not", "only", "own", "same",
    "so", "than", "too", "very", "just", "and", "but", "if", "or", "because", "until", "while",
    "this", "that", "these", "those", "what", "which", "who", "whom", "i", "you", "he", "she",
    "it", "we", "they", "me", "him", "her", "us", "them", "my", "your", "his", "its", "our",
    "their", "please", "help", "want", "like", "make", "get", "let",
}

ERROR_MARKERS = ("error", "failed", "exception", "traceback", "panic")
DECISION_MARKERS = ("decided", "will ", "should ", "let's ")
KEEP_LINE_MARKERS = ("error", "success", "result:", "file:", "decided", "failed")

_PATH_TOKEN = re.compile(r"(?:[\w.-]+/)*[\w-][\w.-]*\.[A-Za-z0-9]{1,8}\b")


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token, rounded up."""
    return (len(text) + 3) // 4


def extract_keywords(text: str) -> List[str]:
    """Content words of ``text``, in order, without duplicates."""
    seen = []
    for word in re.split(r"[^\w]+", text.lower()):
        if len(word) > 2 and word not in STOPWORDS and word not in seen:
            seen.append(word)
    return seen


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Hard cut so that ``estimate_tokens(result) <= max_tokens``."""
    if max_tokens <= 0:
        return ""
    if estimate_tokens(text) <= max_tokens:
        return text
    return text[:max_tokens * 4]


def compress_content(text: str, target_tokens: int) -> str:
    """
    Keep the first line and the lines carrying errors, results, decisions or
    list items, then note how many lines were left out. The result never
    exceeds ``target_tokens``.
    """
    lines = text.splitlines()
    if len(lines) > 3:
        kept = [lines[0]]
        for line in lines[1:]:
            lower = line.lower()
            if any(m in lower for m in KEEP_LINE_MARKERS) or line.startswith(("- ", "* ")):
                if estimate_tokens("\n".join(kept + [line])) > target_tokens:
                    break
                kept.append(line)
        if len(kept) < len(lines):
            kept.append(f"... ({len(lines) - len(kept)} lines omitted)")
        text = "\n".join(kept)
    return truncate_to_tokens(text, target_tokens)


class Category(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    ERROR = "error"

    @property
    def base_weight(self) -> float:
        return {
            Category.USER: 0.9,
            Category.ERROR: 0.95,
            Category.TOOL_RESULT: 0.8,
            Category.TOOL_CALL: 0.7,
            Category.ASSISTANT: 0.6,
        }[self]


def categorize(message: Message) -> Category:
    if message.role == Role.USER:
        return Category.USER
    if message.role == Role.TOOL:
        return Category.ERROR if message.is_error else Category.TOOL_RESULT
    return Category.TOOL_CALL if message.tool_calls else Category.ASSISTANT


def render_message(message: Message) -> Tuple[str, str]:
    """(chat role, text) for a history message."""
    if message.role == Role.TOOL:
        return "user", f"Tool execution results:\n{message.content}"
    if message.role == Role.ASSISTANT:
        text = message.content
        if not text.strip() and message.tool_calls:
            text = "\n".join(
                "```json\n" + json.dumps({"tool": c.name, "args": c.args}) + "\n```"
                for c in message.tool_calls
            )
        return "assistant", text
    return "user", message.content


@dataclass
class SalienceFactors:
    age: int = 0
    keyword_match: float = 0.0
    reference_count: int = 0
    has_error: bool = False
    has_decision: bool = False
    file_relevance: float = 0.0

    def score(self, category: Category) -> float:
        score = category.base_weight / (1.0 + self.age * 0.3)
        score += self.keyword_match * 0.2
        score += min(self.reference_count * 0.1, 0.3)
        if self.has_error:
            score = min(score + 0.3, 1.0)
        if self.has_decision:
            score += 0.15
        score += self.file_relevance * 0.1
        return max(0.0, min(score, 1.0))


# =============================================================================
# Summarizers
# =============================================================================

class Summarizer(ABC):
    """Compresses messages that did not fit the full-text tiers."""

    @abstractmethod
    async def summarize(self, messages: Sequence[Message]) -> Tuple[str, List[str]]:
        """Return (compressed text, extracted facts)."""


def _message_facts(message: Message) -> List[str]:
    facts = []
    for call in message.tool_calls:
        path = call.args.get("path") if isinstance(call.args.get("path"), str) else None
        if message.role == Role.TOOL:
            if call.error:
                facts.append(f"{call.name} failed: {call.error.splitlines()[0][:120]}")
            elif path and call.name in ("write", "edit", "patch"):
                facts.append(f"Modified {path}")
    return facts


class HeuristicSummarizer(Summarizer):
    """Line-based compression, no model call."""

    def __init__(self, lines_per_message: int = 4):
        self.lines_per_message = lines_per_message

    def _compress_one(self, message: Message) -> str:
        role, text = render_message(message)
        lines = text.splitlines() or [""]
        kept = [lines[0]]
        for line in lines[1:]:
            lower = line.lower()
            if any(m in lower for m in ERROR_MARKERS) or any(m in lower for m in DECISION_MARKERS):
                kept.append(line.strip())
            if len(kept) >= self.lines_per_message:
                break
        if len(kept) < len(lines):
            kept.append(f"... ({len(lines) - len(kept)} lines omitted)")
        return f"[{message.role.value}] " + "\n".join(kept)

    async def summarize(self, messages: Sequence[Message]) -> Tuple[str, List[str]]:
        parts = [self._compress_one(m) for m in messages]
        facts: List[str] = []
        for message in messages:
            for fact in _message_facts(message):
                if fact not in facts:
                    facts.append(fact)
        return "\n".join(parts), facts


class ModelSummarizer(Summarizer):
    """
    Asks a (cheap) model to summarize through the dispatcher. Falls back to
    the heuristic summary when the model call fails or the answer is not JSON.
    """

    def __init__(self, dispatcher: Any, model_rotation: List[str], max_input_chars: int = 12_000):
        self.dispatcher = dispatcher
        self.model_rotation = model_rotation
        self.max_input_chars = max_input_chars
        self.fallback = HeuristicSummarizer()

    async def summarize(self, messages: Sequence[Message]) -> Tuple[str, List[str]]:
        exchange = "\n\n".join(f"[{m.role.value}] {render_message(m)[1]}" for m in messages)
        prompt = get_summarizer_prompt(exchange[-self.max_input_chars:])
        try:
            response = await self.dispatcher.dispatch(
                [{"role": "user", "content": prompt}], [], self.model_rotation,
            )
        except LlmFailure as e:
            logger.warning("Summarizer model failed (%s); using heuristic summary", e)
            return await self.fallback.summarize(messages)

        data = parse_json_object(response.text)
        if not data or not isinstance(data.get("summary"), str):
            logger.debug("Summarizer answer was not usable JSON")
            return await self.fallback.summarize(messages)
        facts = [str(f) for f in data.get("facts") or []]
        facts.extend(f"Modified {p}" for p in data.get("files") or [])
        return data["summary"], facts


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """First JSON object in ``text`` (bare or inside a code fence)."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


# =============================================================================
# Prompt assembly
# =============================================================================

@dataclass
class PromptItem:
    tier: str            # goal | focus | recent | summary | background
    role: str            # chat role
    content: str
    index: int = -1      # position in history, -1 for synthesized items

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content)


@dataclass
class ContextStats:
    budget: int = 0
    tokens_by_tier: Dict[str, int] = field(default_factory=dict)
    focus_items: int = 0
    recent_items: int = 0
    summarized: int = 0
    dropped: int = 0
    facts: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(self.tokens_by_tier.values())

    @property
    def budget_used(self) -> float:
        return min(self.total_tokens / self.budget, 1.0) if self.budget else 0.0

    def to_dict(self) -> dict:
        return {
            "budget": self.budget,
            "total_tokens": self.total_tokens,
            "tokens_by_tier": dict(self.tokens_by_tier),
            "focus_items": self.focus_items,
            "recent_items": self.recent_items,
            "summarized": self.summarized,
            "dropped": self.dropped,
            "facts": self.facts,
        }

    def __str__(self) -> str:
        return (
            f"Context: {self.total_tokens} tokens ({self.budget_used:.0%} of {self.budget}), "
            f"focus:{self.focus_items} recent:{self.recent_items} "
            f"summarized:{self.summarized} dropped:{self.dropped}"
        )


@dataclass
class Prompt:
    """The assembled context. ``tokens`` never exceeds ``budget``."""
    items: List[PromptItem]
    budget: int
    stats: ContextStats

    @property
    def tokens(self) -> int:
        return sum(item.tokens for item in self.items)

    @property
    def text(self) -> str:
        return "\n\n".join(item.content for item in self.items)

    def to_messages(self, system_prompt: Optional[str] = None) -> List[Dict[str, str]]:
        """
        Chat messages: system prompt, then goal/background/summary as one
        context message, then the full-text messages in history order.
        """
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        preamble = [i.content for i in self.items if i.tier in ("goal", "background", "summary")]
        if preamble:
            messages.append({"role": "user", "content": "\n\n".join(preamble)})
        body = sorted((i for i in self.items if i.index >= 0), key=lambda i: i.index)
        for item in body:
            messages.append({"role": item.role, "content": item.content})
        return messages


class ContextManager:
    """Builds budgeted prompts from session history."""

    def __init__(self, summarizer: Optional[Summarizer] = None, focus_threshold: float = FOCUS_THRESHOLD):
        self.summarizer = summarizer or HeuristicSummarizer()
        self.focus_threshold = focus_threshold
        self.last_stats: Optional[ContextStats] = None

    # =========================================================================
    # Scoring
    # =========================================================================

    def score_history(self, history: Sequence[Message], task: str) -> List[float]:
        keywords = extract_keywords(task)
        focus_files = set(_PATH_TOKEN.findall(task))
        for message in reversed(history):
            if message.role == Role.ASSISTANT and message.tool_calls:
                for call in message.tool_calls:
                    for value in call.args.values():
                        if isinstance(value, str) and _PATH_TOKEN.fullmatch(value):
                            focus_files.add(value)
                break

        texts = [render_message(m)[1] for m in history]
        lowered = [t.lower() for t in texts]
        paths = [set(_PATH_TOKEN.findall(t)) for t in texts]
        scores = []
        for idx, message in enumerate(history):
            text = lowered[idx]
            later = lowered[idx + 1:]
            references = sum(1 for other in later if any(p.lower() in other for p in paths[idx])) if paths[idx] else 0
            factors = SalienceFactors(
                age=len(history) - 1 - idx,
                keyword_match=(sum(1 for k in keywords if k in text) / len(keywords)) if keywords else 0.0,
                reference_count=references,
                has_error=message.is_error or any(m in text for m in ERROR_MARKERS),
                has_decision=any(m in text for m in DECISION_MARKERS),
                file_relevance=(
                    sum(1 for f in focus_files if f in texts[idx]) / len(focus_files)
                ) if focus_files else 0.0,
            )
            scores.append(factors.score(categorize(message)))
        return scores

    # =========================================================================
    # Build
    # =========================================================================

    async def build(self, history: Sequence[Message], task: str, budget_tokens: int) -> Prompt:
        """
        Assemble a prompt for ``task`` from ``history`` within ``budget_tokens``.

        The most recent user message equal to the task is not repeated.
        """
        budget = max(int(budget_tokens), 0)
        stats = ContextStats(budget=budget, tokens_by_tier={t: 0 for t in ("goal", *TIER_SHARES)})
        items: List[PromptItem] = []
        used = 0

        def fits(tokens: int, tier: str) -> bool:
            if used + tokens > budget:
                return False
            if tier in TIER_SHARES:
                return stats.tokens_by_tier[tier] + tokens <= int(budget * TIER_SHARES[tier])
            return True

        def place(item: PromptItem) -> None:
            nonlocal used
            items.append(item)
            used += item.tokens
            stats.tokens_by_tier[item.tier] += item.tokens

        # 1. Task
        goal = f"<goal>\n{task}\n</goal>"
        if estimate_tokens(goal) > budget:
            goal = truncate_to_tokens(task, budget)
        if goal:
            place(PromptItem("goal", "user", goal))

        # Skip the task's own user message
        history = list(history)
        skip = -1
        for idx in range(len(history) - 1, -1, -1):
            if history[idx].role == Role.USER:
                if history[idx].content == task:
                    skip = idx
                break
        candidates = [i for i in range(len(history)) if i != skip]
        scores = self.score_history(history, task)
        rendered = {i: render_message(history[i]) for i in candidates}
        placed = set()

        # 2. Focus: highest salience first
        for idx in sorted(candidates, key=lambda i: (-scores[i], -i)):
            if scores[idx] < self.focus_threshold:
                break
            role, text = rendered[idx]
            item = PromptItem("focus", role, text, idx)
            if fits(item.tokens, "focus"):
                place(item)
                placed.add(idx)
                stats.focus_items += 1

        # 3. Recent: newest first
        for idx in sorted(candidates, reverse=True):
            if idx in placed:
                continue
            role, text = rendered[idx]
            item = PromptItem("recent", role, text, idx)
            if fits(item.tokens, "recent"):
                place(item)
                placed.add(idx)
                stats.recent_items += 1

        leftover = [i for i in candidates if i not in placed]
        facts: List[str] = []

        # 4. Summary of everything that did not fit
        if leftover:
            compressed, facts = await self.summarizer.summarize([history[i] for i in leftover])
            summary_budget = int(budget * TIER_SHARES["summary"])
            placed_summary = False
            if compressed:
                wrapper = f"<summary>\n{compressed}\n</summary>"
                if not fits(estimate_tokens(wrapper), "summary"):
                    room = min(summary_budget, budget - used) - estimate_tokens("<summary>\n\n</summary>")
                    wrapper = f"<summary>\n{compress_content(compressed, room)}\n</summary>" if room > 0 else ""
                if wrapper and fits(estimate_tokens(wrapper), "summary"):
                    place(PromptItem("summary", "user", wrapper))
                    placed_summary = True
            if placed_summary:
                stats.summarized = len(leftover)
            else:
                stats.dropped = len(leftover)

        # 5. Background: facts and task keywords
        background_lines = [f"- {fact}" for fact in facts]
        keywords = extract_keywords(task)[:12]
        if keywords:
            background_lines.append(f"- keywords: {', '.join(keywords)}")
        kept_lines: List[str] = []
        for line in background_lines:
            block = "<facts>\n" + "\n".join(kept_lines + [line]) + "\n</facts>"
            if not fits(estimate_tokens(block), "background"):
                break
            kept_lines.append(line)
        if kept_lines:
            place(PromptItem("background", "user", "<facts>\n" + "\n".join(kept_lines) + "\n</facts>"))
            stats.facts = sum(1 for line in kept_lines if not line.startswith("- keywords:"))

        prompt = Prompt(items=items, budget=budget, stats=stats)
        self.last_stats = stats
        logger.debug("%s", stats)
        return prompt


def create_context_manager(summarizer: Optional[Summarizer] = None) -> ContextManager:
    return ContextManager(summarizer=summarizer)
