"""Ollama provider (local ``/api/chat``, NDJSON streaming)."""

from __future__ import annotations

from contextlib import aclosing
import json
import time
from typing import TYPE_CHECKING, Any
import uuid

from switchboard._utils import as_count, parse_tool_arguments
from switchboard.errors import FrameError, StreamError
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
from switchboard.providers._http import DEFAULT_TIMEOUT_S
from switchboard.providers._local import LocalProvider
from switchboard.providers._stream import terminate_stream
from switchboard.providers.base import ProviderCapabilities
from switchboard.providers.metrics import DEFAULT_CAPACITY
from switchboard.providers.openai import build_chat_tools
from switchboard.streaming.events import DoneEvent, ErrorEvent, TokenEvent, ToolCallStartEvent
from switchboard.streaming.frames import iter_ndjson_lines

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.models import ChatRequest, ModelCapability
    from switchboard.providers.health import BackendKind
    from switchboard.streaming.events import StreamEvent

DEFAULT_BASE_URL = "http://localhost:11434"


def _build_messages(request: ChatRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})

    names: dict[str, str] = {}
    for item in request.messages:
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        for block in item.blocks:
            if isinstance(block, TextBlock):
                text_parts.append(block.text)
            elif isinstance(block, ToolUseBlock):
                names[block.id] = block.name
                tool_calls.append(
                    {"function": {"name": block.name, "arguments": dict(block.input)}}
                )
            elif isinstance(block, ToolResultBlock):
                messages.append(
                    {
                        "role": "tool",
                        "content": block.content,
                        "tool_name": names.get(block.tool_use_id, block.tool_use_id),
                    }
                )

        if item.role == "tool" and isinstance(item.content, str):
            call_id = item.tool_result_id or ""
            messages.append(
                {
                    "role": "tool",
                    "content": item.content,
                    "tool_name": names.get(call_id, call_id),
                }
            )
            continue

        text = "".join(text_parts)
        if not text and not tool_calls and not isinstance(item.content, str):
            continue
        message: dict[str, Any] = {"role": item.role, "content": text}
        if tool_calls:
            message["tool_calls"] = tool_calls
        messages.append(message)
    return messages


def _parse_tool_calls(raw: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for entry in raw if isinstance(raw, list) else []:
        function = entry.get("function") if isinstance(entry, dict) else None
        if not isinstance(function, dict) or not isinstance(function.get("name"), str):
            continue
        call_id = entry.get("id")
        calls.append(
            ToolCall(
                id=call_id if isinstance(call_id, str) else f"call_{uuid.uuid4().hex[:12]}",
                name=function["name"],
                arguments=parse_tool_arguments(function.get("arguments")),
            )
        )
    return calls


def estimate_context_window(name: str, family: str | None = None) -> int:
    normalized = f"{name} {family or ''}".lower()
    if "llama3" in normalized or "qwen2.5" in normalized:
        return 128_000
    if "mistral" in normalized or "gemma" in normalized:
        return 32_000
    return 8_192


def estimate_capabilities(name: str, family: str | None = None) -> frozenset[ModelCapability]:
    normalized = f"{name} {family or ''}".lower()
    capabilities: set[ModelCapability] = {"chat", "streaming"}
    if "vision" in normalized or "llava" in normalized:
        capabilities.add("vision")
    return frozenset(capabilities)


class OllamaProvider(LocalProvider):
    """Local Ollama server."""

    provider_name = "ollama"
    backend_kind = "ollama"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        backend_kind: BackendKind | None = None,
        health_check_interval_s: float | None = None,
        metrics_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        super().__init__(
            base_url,
            timeout_s=timeout_s,
            client=client,
            backend_kind=backend_kind,
            health_check_interval_s=health_check_interval_s,
            metrics_capacity=metrics_capacity,
        )

    @property
    def config(self) -> ProviderConfig:
        return ProviderConfig("ollama", "Ollama", "local", self.base_url)

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            auth=frozenset({"none"}),
            transport="ndjson",
            tools=True,
            thinking=True,
            live_catalog=True,
            health=True,
        )

    def build_payload(self, request: ChatRequest, *, stream: bool = False) -> dict[str, Any]:
        """Build the ``/api/chat`` request body."""
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": _build_messages(request),
            "stream": stream,
        }
        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            payload["options"] = options
        if request.thinking_level is not None:
            payload["think"] = True
        tools = build_chat_tools(request.tools)
        if tools:
            payload["tools"] = tools
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Generate a complete response."""
        self._ensure_polling()
        started = time.perf_counter()
        data = await self._request_json(
            "POST", "api/chat", phase="chat", json=self.build_payload(request)
        )
        message = data.get("message")
        message = message if isinstance(message, dict) else {}
        content = message.get("content")
        text = content if isinstance(content, str) else ""
        tool_calls = _parse_tool_calls(message.get("tool_calls"))

        usage = build_usage(
            request,
            text,
            input_tokens=data.get("prompt_eval_count"),
            output_tokens=data.get("eval_count"),
        )
        self._record(
            request.model, usage.output_tokens, started, as_count(data.get("eval_duration"))
        )

        finish = normalize_finish_reason(data.get("done_reason"))
        if finish == "stop" and tool_calls:
            finish = "tool_use"
        model = data.get("model")
        return ChatResponse(
            id=f"ollama-{uuid.uuid4().hex}",
            model=model if isinstance(model, str) else request.model,
            content=text,
            usage=usage,
            finish_reason=finish,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

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
        """Read Ollama's NDJSON chunks directly.

        A chunk carrying ``error`` ends the stream with an error; an
        undecodable line is reported as a frame error and skipped.
        ``done: true`` ends the stream with the reported usage.
        """
        self._ensure_polling()
        started = time.perf_counter()
        payload = self.build_payload(request, stream=True)
        collected: list[str] = []
        saw_tool_call = False

        async with self._open_stream("POST", "api/chat", json=payload) as response:
            async with aclosing(iter_ndjson_lines(response.aiter_bytes(), signal)) as lines:
                async for line in lines:
                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as exc:
                        yield ErrorEvent(
                            FrameError(
                                f"Invalid NDJSON payload from Ollama stream: {exc}",
                                provider=self.provider_name,
                                phase="stream",
                            )
                        )
                        continue
                    if not isinstance(chunk, dict):
                        yield ErrorEvent(
                            FrameError(
                                "Ollama stream chunk is not an object",
                                provider=self.provider_name,
                                phase="stream",
                            )
                        )
                        continue

                    error = chunk.get("error")
                    if isinstance(error, str) and error:
                        raise StreamError(error, provider=self.provider_name, phase="stream")

                    message = chunk.get("message")
                    message = message if isinstance(message, dict) else {}
                    delta = message.get("content")
                    if isinstance(delta, str) and delta:
                        collected.append(delta)
                        yield TokenEvent(delta)
                    for call in _parse_tool_calls(message.get("tool_calls")):
                        saw_tool_call = True
                        yield ToolCallStartEvent(call)

                    if chunk.get("done") is True:
                        usage = build_usage(
                            request,
                            "".join(collected),
                            input_tokens=chunk.get("prompt_eval_count"),
                            output_tokens=chunk.get("eval_count"),
                        )
                        self._record(
                            request.model,
                            usage.output_tokens,
                            started,
                            as_count(chunk.get("eval_duration")),
                        )
                        finish = normalize_finish_reason(chunk.get("done_reason"))
                        if finish == "stop" and saw_tool_call:
                            finish = "tool_use"
                        yield DoneEvent(usage, finish)
                        return

        if signal is not None and signal.is_set():
            return
        usage = build_usage(request, "".join(collected))
        self._record(request.model, usage.output_tokens, started)
        yield DoneEvent(usage, "stop")

    async def list_models(self) -> list[Model]:
        """Query installed models via ``/api/tags``."""
        self._ensure_polling()
        data = await self._request_json("GET", "api/tags", phase="list_models")
        entries = data.get("models")
        models: list[Model] = []
        for entry in entries if isinstance(entries, list) else []:
            name = entry.get("name") if isinstance(entry, dict) else None
            if not isinstance(name, str) or not name:
                continue
            details = entry.get("details")
            family = details.get("family") if isinstance(details, dict) else None
            family = family if isinstance(family, str) else None
            models.append(
                Model(
                    id=name,
                    name=name,
                    provider=self.config.id,
                    context_window=estimate_context_window(name, family),
                    capabilities=estimate_capabilities(name, family),
                )
            )
        return models
