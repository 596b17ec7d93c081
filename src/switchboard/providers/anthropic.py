"""Anthropic Messages API provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
import uuid

from switchboard._utils import parse_tool_arguments
from switchboard.errors import ProviderError
from switchboard.models import (
    ChatResponse,
    Model,
    ProviderConfig,
    TextBlock,
    ToolCall,
    ToolResultBlock,
    ToolUseBlock,
)
from switchboard.policy import build_usage, normalize_finish_reason, resolve_thinking_budget
from switchboard.providers._http import DEFAULT_TIMEOUT_S, HTTPProvider
from switchboard.providers._stream import terminate_stream
from switchboard.providers.base import ProviderCapabilities
from switchboard.streaming.frames import parse_sse

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.models import ChatRequest, ContentBlock, Message
    from switchboard.streaming.events import StreamEvent

DEFAULT_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 1024

_MODELS: tuple[Model, ...] = (
    Model(
        id="claude-3-5-sonnet-latest",
        name="Claude 3.5 Sonnet",
        provider="byok-anthropic",
        context_window=200_000,
        max_output_tokens=8_192,
        capabilities=frozenset({"chat", "streaming", "tool_use", "vision"}),
    ),
    Model(
        id="claude-3-5-haiku-latest",
        name="Claude 3.5 Haiku",
        provider="byok-anthropic",
        context_window=200_000,
        max_output_tokens=8_192,
        capabilities=frozenset({"chat", "streaming", "tool_use", "vision"}),
    ),
)
_MAX_OUTPUT_BY_MODEL = {m.id: m.max_output_tokens for m in _MODELS}


class AnthropicProvider(HTTPProvider):
    """Anthropic Messages API provider."""

    provider_name = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize with an API key."""
        super().__init__(base_url, timeout_s=timeout_s, client=client)
        self.api_key = api_key

    @property
    def config(self) -> ProviderConfig:
        return ProviderConfig("byok-anthropic", "Anthropic", "byok", self.base_url)

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            auth=frozenset({"api_key"}),
            transport="sse",
            tools=True,
            thinking=True,
            live_catalog=False,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_payload(self, request: ChatRequest, *, stream: bool = False) -> dict[str, Any]:
        """Build the ``/v1/messages`` request body."""
        system, messages = _build_messages(request.messages)
        if request.system_prompt:
            system = [request.system_prompt, *system]

        max_tokens = request.max_tokens or _DEFAULT_MAX_TOKENS
        budget = resolve_thinking_budget(
            request.thinking_level,
            max_tokens,
            model_max_output=_MAX_OUTPUT_BY_MODEL.get(request.model),
        )

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": budget.max_tokens,
        }
        if system:
            payload["system"] = "\n\n".join(system)
        if budget.enabled:
            # Extended thinking rejects any temperature other than the default.
            payload["thinking"] = {
                "type": "enabled",
                "budget_tokens": budget.budget_tokens,
            }
        elif request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.tools:
            payload["tools"] = [
                {
                    "name": t.name,
                    "description": t.description,
                    "input_schema": t.parameters,
                }
                for t in request.tools
            ]
        if stream:
            payload["stream"] = True
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Generate a response using Anthropic's Messages API."""
        data = await self._request_json(
            "POST", "v1/messages", phase="chat", json=self.build_payload(request)
        )
        return parse_response(data, request)

    def stream(
        self, request: ChatRequest, *, signal: asyncio.Event | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as canonical events."""
        return terminate_stream(
            self._stream_events(request, signal),
            request,
            provider=self.provider_name,
            signal=signal,
        )

    async def _stream_events(
        self, request: ChatRequest, signal: asyncio.Event | None
    ) -> AsyncIterator[StreamEvent]:
        payload = self.build_payload(request, stream=True)
        async with self._open_stream("POST", "v1/messages", json=payload) as response:
            async for event in parse_sse(response.aiter_bytes(), signal):
                yield event

    async def list_models(self) -> list[Model]:
        return list(_MODELS)

    async def validate_connection(self) -> bool:
        return await self._probe("v1/models", params={"limit": 1})


def _to_block(block: ContentBlock) -> dict[str, Any]:
    match block:
        case TextBlock():
            return {"type": "text", "text": block.text}
        case ToolUseBlock():
            return {
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": dict(block.input),
            }
        case ToolResultBlock():
            out: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": block.tool_use_id,
                "content": block.content,
            }
            if block.is_error:
                out["is_error"] = True
            return out
    raise TypeError(f"Unsupported content block: {block!r}")


def _build_messages(
    history: tuple[Message, ...],
) -> tuple[list[str], list[dict[str, Any]]]:
    """Split system text out of *history* and build the messages list.

    Anthropic requires strict user/assistant role alternation, so
    consecutive same-role messages are merged via ``_append_message``.
    """
    system: list[str] = []
    messages: list[dict[str, Any]] = []
    for item in history:
        if item.role == "system":
            if item.text:
                system.append(item.text)
        elif item.role == "tool":
            blocks = [b for b in item.blocks if isinstance(b, ToolResultBlock)]
            if not blocks:
                if not item.tool_result_id:
                    continue
                blocks = [ToolResultBlock(item.tool_result_id, item.text)]
            _append_message(
                messages, {"role": "user", "content": [_to_block(b) for b in blocks]}
            )
        else:
            content: str | list[dict[str, Any]]
            if isinstance(item.content, str):
                content = item.content
            else:
                content = [_to_block(b) for b in item.content]
            if content:
                _append_message(messages, {"role": item.role, "content": content})
    return system, messages


def _append_message(messages: list[dict[str, Any]], msg: dict[str, Any]) -> None:
    """Append *msg*, merging into the previous message when roles match."""
    if messages and messages[-1]["role"] == msg["role"]:
        prev = messages[-1]
        prev_content = prev["content"]
        new_content = msg["content"]
        if isinstance(prev_content, str):
            prev_content = [{"type": "text", "text": prev_content}]
        if isinstance(new_content, str):
            new_content = [{"type": "text", "text": new_content}]
        prev["content"] = prev_content + new_content
    else:
        messages.append(msg)


def parse_response(data: dict[str, Any], request: ChatRequest) -> ChatResponse:
    """Parse an Anthropic Message body into a ChatResponse."""
    content = data.get("content")
    if not isinstance(content, list):
        raise ProviderError(
            "Anthropic response has no content list",
            body=str(data)[:2000],
            provider="anthropic",
            phase="chat",
        )

    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and isinstance(block.get("text"), str):
            text_parts.append(block["text"])
        elif block_type == "tool_use":
            tool_calls.append(
                ToolCall(
                    id=str(block.get("id") or ""),
                    name=str(block.get("name") or ""),
                    arguments=parse_tool_arguments(block.get("input")),
                )
            )
    text = "\n".join(text_parts)

    usage_raw = data.get("usage")
    usage_raw = usage_raw if isinstance(usage_raw, dict) else {}
    response_id = data.get("id")
    model = data.get("model")
    return ChatResponse(
        id=response_id if isinstance(response_id, str) else f"anthropic-{uuid.uuid4().hex}",
        model=model if isinstance(model, str) else request.model,
        content=text,
        usage=build_usage(
            request,
            text,
            input_tokens=usage_raw.get("input_tokens"),
            output_tokens=usage_raw.get("output_tokens"),
        ),
        finish_reason=normalize_finish_reason(data.get("stop_reason")),
        tool_calls=tuple(tool_calls) if tool_calls else None,
    )
