"""
Model Providers
===============

Transport adapters that turn a chat transcript into a stream of events.

    ModelProvider.send(messages, tool_specs, model) -> async iterator of StreamEvent

Events are text tokens, completed native tool calls, usage totals, or an
in-band failure. Transport-level failures are raised as ``ProviderError``
with the HTTP status and any Retry-After hint so the dispatcher can
classify them.

Providers:
- OpenRouterProvider: OpenAI-compatible chat completions over SSE (httpx)
- ClaudeCodeProvider: single-turn completions through the Claude Code SDK
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient
from dotenv import load_dotenv

from hyle.errors import ProviderError
from hyle.failures import parse_retry_after
from hyle.records import ToolCall, ToolSpec

load_dotenv()

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
CLAUDE_CODE_PREFIX = "claude-code:"


class StreamEventKind(Enum):
    TOKEN = "token"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    FAILURE = "failure"


@dataclass
class Usage:
    """Token counts reported by the provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_call: Optional[ToolCall] = None
    usage: Optional[Usage] = None
    error: Optional[ProviderError] = None

    @classmethod
    def token(cls, text: str) -> "StreamEvent":
        return cls(StreamEventKind.TOKEN, text=text)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "StreamEvent":
        return cls(StreamEventKind.TOOL_CALL, tool_call=tool_call)

    @classmethod
    def totals(cls, prompt_tokens: int, completion_tokens: int) -> "StreamEvent":
        return cls(StreamEventKind.USAGE, usage=Usage(prompt_tokens, completion_tokens))

    @classmethod
    def failure(cls, error: ProviderError) -> "StreamEvent":
        return cls(StreamEventKind.FAILURE, error=error)


class ModelProvider(ABC):
    """Something that can stream a completion for a model id."""

    name = "provider"

    @abstractmethod
    def send(
        self,
        messages: List[Dict[str, Any]],
        tool_specs: List[ToolSpec],
        model: str,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion. Implementations are async generators."""

    async def list_models(self) -> List[Dict[str, Any]]:
        """Raw model listing, when the backend offers one."""
        return []

    async def aclose(self) -> None:
        return None


# =============================================================================
# OpenRouter (OpenAI-compatible SSE)
# =============================================================================

def _error_message(body: str) -> Tuple[str, Optional[str]]:
    """Pull a readable message and error code out of an error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return body.strip()[:500] or "empty error body", None
    err = data.get("error", data) if isinstance(data, dict) else {}
    if isinstance(err, dict):
        code = err.get("code")
        return str(err.get("message") or body[:500]), str(code) if code is not None else None
    return str(err), None


def _finish_tool_call(entry: Dict[str, Any]) -> ToolCall:
    raw = entry.get("arguments") or ""
    try:
        args = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        args = {"_raw": raw}
    if not isinstance(args, dict):
        args = {"value": args}
    call = ToolCall.create(entry.get("name") or "", args)
    if entry.get("id"):
        call.id = entry["id"]
    return call


class OpenRouterProvider(ModelProvider):
    """
    Chat completions against OpenRouter or any OpenAI-compatible endpoint.

    Config:
        api_key: defaults to $OPENROUTER_API_KEY
        base_url: defaults to $OPENROUTER_BASE_URL or the public endpoint
    """

    name = "openrouter"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 120.0,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("OPENROUTER_API_KEY", "")
        self.base_url = (base_url or os.environ.get("OPENROUTER_BASE_URL") or OPENROUTER_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": "hyle",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        messages: List[Dict[str, Any]],
        tool_specs: List[ToolSpec],
        model: str,
    ) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            raise ProviderError("OPENROUTER_API_KEY is not set", status=401)

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "usage": {"include": True},
        }
        if tool_specs:
            payload["tools"] = [spec.to_openai() for spec in tool_specs]

        client = self._get_client()
        url = f"{self.base_url}/chat/completions"
        async with client.stream("POST", url, json=payload, headers=self._headers) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                message, code = _error_message(body)
                raise ProviderError(
                    f"API error {response.status_code}: {message}",
                    status=response.status_code,
                    retry_after=parse_retry_after(response.headers.get("retry-after")),
                    code=code,
                )

            pending: Dict[int, Dict[str, Any]] = {}
            async for line in response.aiter_lines():
                line = line.strip()
                # SSE comments (": OPENROUTER PROCESSING") and blank keep-alives
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed SSE chunk: %s", data[:200])
                    continue

                if chunk.get("error"):
                    err = chunk["error"]
                    status = err.get("code") if isinstance(err.get("code"), int) else None
                    yield StreamEvent.failure(ProviderError(str(err.get("message", err)), status=status))
                    return

                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield StreamEvent.token(content)
                    for part in delta.get("tool_calls") or []:
                        entry = pending.setdefault(part.get("index", 0), {"id": None, "name": "", "arguments": ""})
                        if part.get("id"):
                            entry["id"] = part["id"]
                        function = part.get("function") or {}
                        entry["name"] += function.get("name") or ""
                        entry["arguments"] += function.get("arguments") or ""

                usage = chunk.get("usage")
                if usage:
                    yield StreamEvent.totals(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0))

            for index in sorted(pending):
                yield StreamEvent.call(_finish_tool_call(pending[index]))

    async def list_models(self) -> List[Dict[str, Any]]:
        client = self._get_client()
        try:
            response = await client.get(f"{self.base_url}/models", headers=self._headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to fetch models: {e}") from e
        if response.status_code >= 400:
            message, code = _error_message(response.text)
            raise ProviderError(f"API error {response.status_code}: {message}", status=response.status_code, code=code)
        return response.json().get("data", [])


# =============================================================================
# Claude Code SDK
# =============================================================================

def _render_transcript(messages: List[Dict[str, Any]]) -> Tuple[str, str]:
    """Split chat messages into (system prompt, flattened conversation)."""
    system_parts = []
    turns = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content") or ""
        if role == "system":
            system_parts.append(content)
        elif role == "assistant":
            turns.append(f"[ASSISTANT]\n{content}")
        else:
            turns.append(f"[USER]\n{content}")
    return "\n\n".join(system_parts), "\n\n".join(turns)


class ClaudeCodeProvider(ModelProvider):
    """
    One-shot text completions through ``claude_code_sdk``.

    The SDK's own tools are disabled; tool calls come back as text and are
    parsed by hyle like any other model output.
    """

    name = "claude-code"

    def __init__(self, cwd: Optional[Path] = None):
        self.cwd = Path(cwd or Path.cwd())

    async def send(
        self,
        messages: List[Dict[str, Any]],
        tool_specs: List[ToolSpec],
        model: str,
    ) -> AsyncIterator[StreamEvent]:

        system_prompt, transcript = _render_transcript(messages)
        options = ClaudeCodeOptions(
            model=model or None,
            system_prompt=system_prompt or None,
            allowed_tools=[],
            max_turns=1,
            cwd=str(self.cwd.resolve()),
        )
        async with ClaudeSDKClient(options=options) as client:
            await client.query(transcript)
            async for msg in client.receive_response():
                msg_type = type(msg).__name__
                if msg_type == "AssistantMessage" and hasattr(msg, "content"):
                    for block in msg.content:
                        if type(block).__name__ == "TextBlock":
                            yield StreamEvent.token(block.text)
                elif msg_type == "ResultMessage":
                    usage = getattr(msg, "usage", None) or {}
                    if not isinstance(usage, dict):
                        usage = {
                            "input_tokens": getattr(usage, "input_tokens", 0),
                            "output_tokens": getattr(usage, "output_tokens", 0),
                        }
                    yield StreamEvent.totals(usage.get("input_tokens", 0), usage.get("output_tokens", 0))
                    if getattr(msg, "is_error", False):
                        raise ProviderError(str(getattr(msg, "result", None) or "Claude Code request failed"))


# =============================================================================
# Routing
# =============================================================================

class ProviderRouter:
    """
    Picks the provider for a model id.

    ``claude-code:<model>`` goes to the Claude Code provider with the prefix
    stripped; everything else goes to the default provider.
    """

    def __init__(self, default: ModelProvider, prefixed: Optional[Dict[str, ModelProvider]] = None):
        self.default = default
        self.prefixed = dict(prefixed or {})

    def resolve(self, model_id: str) -> Tuple[ModelProvider, str]:
        for prefix, provider in self.prefixed.items():
            if model_id.startswith(prefix):
                return provider, model_id[len(prefix):]
        return self.default, model_id

    async def aclose(self) -> None:
        await self.default.aclose()
        for provider in self.prefixed.values():
            await provider.aclose()


def create_provider_router(cwd: Optional[Path] = None, api_key: Optional[str] = None) -> ProviderRouter:
    """OpenRouter by default, Claude Code for ``claude-code:`` model ids."""
    return ProviderRouter(
        OpenRouterProvider(api_key=api_key),
        {CLAUDE_CODE_PREFIX: ClaudeCodeProvider(cwd)},
    )
