"""OpenAI Chat Completions provider.

The request builders and response parser here also serve the
OpenAI-compatible vLLM adapter.
"""

from __future__ import annotations

import json
import logging
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
from switchboard.policy import build_usage, normalize_finish_reason
from switchboard.providers._http import DEFAULT_TIMEOUT_S, HTTPProvider
from switchboard.providers._stream import terminate_stream
from switchboard.providers.base import ProviderCapabilities
from switchboard.streaming.frames import parse_sse

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.models import ChatRequest, ToolDefinition
    from switchboard.streaming.events import StreamEvent

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com"
_DEFAULT_CONTEXT_WINDOW = 128_000
_CONTEXT_WINDOWS: tuple[tuple[str, int], ...] = (
    ("gpt-4.1", 1_047_576),
    ("gpt-3.5", 16_385),
    ("o1", 200_000),
    ("o3", 200_000),
    ("o4", 200_000),
)


def build_chat_messages(request: ChatRequest) -> list[dict[str, Any]]:
    """Convert a request's history into Chat Completions messages.

    The system prompt leads as a ``system`` message. Tool results, whether
    carried by ``tool`` messages or as blocks in user turns, become one
    ``tool`` message each.
    """
    messages: list[dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})

    for item in request.messages:
        if item.role == "tool" and isinstance(item.content, str):
            messages.append(
                {
                    "role": "tool",
                    "tool_call_id": item.tool_result_id or "",
                    "content": item.content,
                }
            )
            continue

        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for block in item.blocks:
            if isinstance(block, TextBlock):
                text_parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                tool_calls.append(
                    {
                        "id": block.id,
                        "type": "function",
                        "function": {
                            "name": block.name,
                            "arguments": json.dumps(block.input),
                        },
                    }
                )
            elif isinstance(block, ToolResultBlock):
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.tool_use_id,
                        "content": block.content,
                    }
                )

        text = "".join(text_parts)
        if item.role == "assistant":
            if not text and not tool_calls:
                continue
            message: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_calls:
                message["tool_calls"] = tool_calls
            messages.append(message)
        elif item.role != "tool" and (text or isinstance(item.content, str)):
            messages.append({"role": item.role, "content": text})
    return messages


def build_chat_tools(tools: tuple[ToolDefinition, ...] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.parameters,
            },
        }
        for t in tools
    ]


def parse_chat_completion(
    data: dict[str, Any], request: ChatRequest, *, provider: str
) -> ChatResponse:
    """Parse a Chat Completions body into a ChatResponse."""
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ProviderError(
            f"{provider} response has no choices",
            body=str(data)[:2000],
            provider=provider,
            phase="chat",
        )
    choice = choices[0]
    message = choice.get("message")
    message = message if isinstance(message, dict) else {}
    content = message.get("content")
    text = content if isinstance(content, str) else ""

    tool_calls: list[ToolCall] = []
    raw_calls = message.get("tool_calls")
    for call in raw_calls if isinstance(raw_calls, list) else []:
        if not isinstance(call, dict):
            continue
        function = call.get("function")
        function = function if isinstance(function, dict) else {}
        tool_calls.append(
            ToolCall(
                id=str(call.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=parse_tool_arguments(function.get("arguments")),
            )
        )

    usage_raw = data.get("usage")
    usage_raw = usage_raw if isinstance(usage_raw, dict) else {}
    response_id = data.get("id")
    model = data.get("model")
    return ChatResponse(
        id=response_id if isinstance(response_id, str) else f"{provider}-{uuid.uuid4().hex}",
        model=model if isinstance(model, str) else request.model,
        content=text,
        usage=build_usage(
            request,
            text,
            input_tokens=usage_raw.get("prompt_tokens"),
            output_tokens=usage_raw.get("completion_tokens"),
            total_tokens=usage_raw.get("total_tokens"),
        ),
        finish_reason=normalize_finish_reason(choice.get("finish_reason")),
        tool_calls=tuple(tool_calls) if tool_calls else None,
    )


def estimate_context_window(model_id: str) -> int:
    normalized = model_id.lower()
    for marker, window in _CONTEXT_WINDOWS:
        if normalized.startswith(marker):
            return window
    return _DEFAULT_CONTEXT_WINDOW


class OpenAIProvider(HTTPProvider):
    """OpenAI Chat Completions provider."""

    provider_name = "openai"

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
        return ProviderConfig("byok-openai", "OpenAI", "byok", self.base_url)

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            auth=frozenset({"bearer"}),
            transport="sse",
            tools=True,
            thinking=True,
            live_catalog=True,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "content-type": "application/json",
        }

    def build_payload(self, request: ChatRequest, *, stream: bool = False) -> dict[str, Any]:
        """Build the ``/v1/chat/completions`` request body."""
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": build_chat_messages(request),
        }
        if request.max_tokens is not None:
            payload["max_completion_tokens"] = request.max_tokens
        if request.thinking_level is not None:
            # Reasoning models take a coarse effort and reject temperature.
            payload["reasoning_effort"] = request.thinking_level
        elif request.temperature is not None:
            payload["temperature"] = request.temperature
        tools = build_chat_tools(request.tools)
        if tools:
            payload["tools"] = tools
        if stream:
            payload["stream"] = True
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Generate a response using the Chat Completions API."""
        data = await self._request_json(
            "POST", "v1/chat/completions", phase="chat", json=self.build_payload(request)
        )
        return parse_chat_completion(data, request, provider=self.provider_name)

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
        async with self._open_stream(
            "POST", "v1/chat/completions", json=payload
        ) as response:
            async for event in parse_sse(response.aiter_bytes(), signal):
                yield event

    async def list_models(self) -> list[Model]:
        """Query the live catalog."""
        data = await self._request_json("GET", "v1/models", phase="list_models")
        entries = data.get("data")
        models: list[Model] = []
        for entry in entries if isinstance(entries, list) else []:
            model_id = entry.get("id") if isinstance(entry, dict) else None
            if not isinstance(model_id, str) or not model_id:
                continue
            models.append(
                Model(
                    id=model_id,
                    name=model_id,
                    provider=self.config.id,
                    context_window=estimate_context_window(model_id),
                    capabilities=frozenset({"chat", "streaming", "tool_use"}),
                )
            )
        return models

    async def validate_connection(self) -> bool:
        """Valid when the catalog can be listed and is non-empty."""
        try:
            return len(await self.list_models()) > 0
        except ProviderError as exc:
            log.debug("openai connection check failed: %s", exc)
            return False
