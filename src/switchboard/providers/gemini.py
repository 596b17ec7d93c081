"""Google Gemini (Generative Language API) provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
import uuid

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

    from switchboard.models import ChatRequest, Message
    from switchboard.streaming.events import StreamEvent

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
_DEFAULT_THINKING_MAX_OUTPUT = 8192

_MODELS: tuple[Model, ...] = (
    Model(
        id="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        provider="byok-google",
        context_window=1_048_576,
        max_output_tokens=65_536,
        capabilities=frozenset({"chat", "streaming", "tool_use", "vision", "audio"}),
    ),
    Model(
        id="gemini-1.5-pro",
        name="Gemini 1.5 Pro",
        provider="byok-google",
        context_window=2_000_000,
        capabilities=frozenset({"chat", "streaming", "vision"}),
    ),
    Model(
        id="gemini-1.5-flash",
        name="Gemini 1.5 Flash",
        provider="byok-google",
        context_window=1_000_000,
        capabilities=frozenset({"chat", "streaming", "vision"}),
    ),
)
_MAX_OUTPUT_BY_MODEL = {m.id: m.max_output_tokens for m in _MODELS}


def _tool_names(history: tuple[Message, ...]) -> dict[str, str]:
    """Map tool-use ids to function names, for functionResponse parts."""
    names: dict[str, str] = {}
    for item in history:
        for block in item.blocks:
            if isinstance(block, ToolUseBlock):
                names[block.id] = block.name
    return names


def _build_contents(request: ChatRequest) -> list[dict[str, Any]]:
    """Build ``contents`` with the system text prefixed onto the first turn."""
    names = _tool_names(request.messages)
    system = [request.system_prompt] if request.system_prompt else []
    contents: list[dict[str, Any]] = []

    for item in request.messages:
        if item.role == "system":
            if item.text:
                system.append(item.text)
            continue

        parts: list[dict[str, Any]] = []
        if item.role == "tool" and isinstance(item.content, str):
            call_id = item.tool_result_id or ""
            parts.append(
                {
                    "functionResponse": {
                        "name": names.get(call_id, call_id),
                        "response": {"content": item.content},
                    }
                }
            )
        else:
            for block in item.blocks:
                if isinstance(block, TextBlock):
                    parts.append({"text": block.text})
                elif isinstance(block, ToolUseBlock):
                    parts.append({"functionCall": {"name": block.name, "args": dict(block.input)}})
                elif isinstance(block, ToolResultBlock):
                    key = "error" if block.is_error else "content"
                    parts.append(
                        {
                            "functionResponse": {
                                "name": names.get(block.tool_use_id, block.tool_use_id),
                                "response": {key: block.content},
                            }
                        }
                    )
            if not parts:
                parts.append({"text": ""})

        role = "model" if item.role == "assistant" else "user"
        contents.append({"role": role, "parts": parts})

    if system and contents:
        prefix = "\n\n".join(system) + "\n\n"
        first_parts = contents[0]["parts"]
        if "text" in first_parts[0]:
            first_parts[0] = {"text": prefix + first_parts[0]["text"]}
        else:
            first_parts.insert(0, {"text": prefix})
    elif system:
        contents.append({"role": "user", "parts": [{"text": "\n\n".join(system)}]})
    return contents


class GeminiProvider(HTTPProvider):
    """Google Gemini provider over the public REST API."""

    provider_name = "google"

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
        return ProviderConfig("byok-google", "Google Gemini", "byok", self.base_url)

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
        return {"x-goog-api-key": self.api_key, "content-type": "application/json"}

    def build_payload(self, request: ChatRequest) -> dict[str, Any]:
        """Build the ``generateContent`` request body."""
        generation_config: dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation_config["maxOutputTokens"] = request.max_tokens
        if request.thinking_level is not None:
            budget = resolve_thinking_budget(
                request.thinking_level,
                request.max_tokens or _DEFAULT_THINKING_MAX_OUTPUT,
                model_max_output=_MAX_OUTPUT_BY_MODEL.get(request.model),
            )
            if budget.enabled:
                generation_config["maxOutputTokens"] = budget.max_tokens
                generation_config["thinkingConfig"] = {
                    "thinkingBudget": budget.budget_tokens
                }

        payload: dict[str, Any] = {"contents": _build_contents(request)}
        if generation_config:
            payload["generationConfig"] = generation_config
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": t.parameters,
                        }
                        for t in request.tools
                    ]
                }
            ]
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Generate a response using ``generateContent``."""
        data = await self._request_json(
            "POST",
            f"v1beta/models/{request.model}:generateContent",
            phase="chat",
            json=self.build_payload(request),
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
        async with self._open_stream(
            "POST",
            f"v1beta/models/{request.model}:streamGenerateContent",
            params={"alt": "sse"},
            json=self.build_payload(request),
        ) as response:
            async for event in parse_sse(response.aiter_bytes(), signal):
                yield event

    async def list_models(self) -> list[Model]:
        return list(_MODELS)

    async def validate_connection(self) -> bool:
        return await self._probe("v1beta/models")


def parse_response(data: dict[str, Any], request: ChatRequest) -> ChatResponse:
    """Parse a ``GenerateContentResponse`` into a ChatResponse.

    Only the first (top-ranked) candidate contributes text and tool calls.
    """
    candidates = data.get("candidates")
    candidate: dict[str, Any] = {}
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        candidate = candidates[0]

    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    for part in parts if isinstance(parts, list) else []:
        if not isinstance(part, dict) or part.get("thought") is True:
            continue
        text = part.get("text")
        if isinstance(text, str):
            text_parts.append(text)
        call = part.get("functionCall")
        if isinstance(call, dict) and isinstance(call.get("name"), str):
            args = call.get("args")
            call_id = call.get("id")
            tool_calls.append(
                ToolCall(
                    id=call_id if isinstance(call_id, str) else call["name"],
                    name=call["name"],
                    arguments=args if isinstance(args, dict) else {},
                )
            )
    text = "".join(text_parts)

    finish = normalize_finish_reason(candidate.get("finishReason"))
    if finish == "stop" and tool_calls:
        finish = "tool_use"

    metadata = data.get("usageMetadata")
    metadata = metadata if isinstance(metadata, dict) else {}
    model = data.get("modelVersion")
    response_id = data.get("responseId")
    return ChatResponse(
        id=response_id if isinstance(response_id, str) else f"google-{uuid.uuid4().hex}",
        model=model if isinstance(model, str) else request.model,
        content=text,
        usage=build_usage(
            request,
            text,
            input_tokens=metadata.get("promptTokenCount"),
            output_tokens=metadata.get("candidatesTokenCount"),
            total_tokens=metadata.get("totalTokenCount"),
        ),
        finish_reason=finish,
        tool_calls=tuple(tool_calls) if tool_calls else None,
    )
