"""vLLM provider (OpenAI-compatible server, SSE streaming)."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

from switchboard.models import Model, ProviderConfig
from switchboard.providers._http import DEFAULT_TIMEOUT_S
from switchboard.providers._local import LocalProvider
from switchboard.providers._stream import terminate_stream
from switchboard.providers.base import ProviderCapabilities
from switchboard.providers.metrics import DEFAULT_CAPACITY
from switchboard.providers.openai import (
    build_chat_messages,
    build_chat_tools,
    parse_chat_completion,
)
from switchboard.streaming.frames import parse_sse

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.models import ChatRequest, ChatResponse
    from switchboard.providers.health import BackendKind
    from switchboard.streaming.events import DoneEvent, StreamEvent

DEFAULT_BASE_URL = "http://localhost:8000"


def estimate_context_window(model_id: str) -> int:
    normalized = model_id.lower()
    if "128k" in normalized:
        return 128_000
    if "32k" in normalized:
        return 32_000
    if "16k" in normalized:
        return 16_000
    return 8_192


class VLLMProvider(LocalProvider):
    """Local vLLM server speaking the Chat Completions protocol."""

    provider_name = "vllm"
    backend_kind = "vllm"

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        api_key: str | None = None,
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
        self.api_key = api_key

    @property
    def config(self) -> ProviderConfig:
        return ProviderConfig("vllm", "vLLM", "local", self.base_url)

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(
            auth=frozenset({"none", "bearer"}),
            transport="sse",
            tools=True,
            thinking=False,
            live_catalog=True,
            health=True,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: ChatRequest, *, stream: bool = False) -> dict[str, Any]:
        """Build the ``/v1/chat/completions`` request body."""
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": build_chat_messages(request),
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        tools = build_chat_tools(request.tools)
        if tools:
            payload["tools"] = tools
        return payload

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Generate a complete response."""
        self._ensure_polling()
        started = time.perf_counter()
        data = await self._request_json(
            "POST",
            "v1/chat/completions",
            phase="chat",
            json=self.build_payload(request),
        )
        response = parse_chat_completion(data, request, provider=self.provider_name)
        self._record(request.model, response.usage.output_tokens, started)
        return response

    def stream(
        self, request: ChatRequest, *, signal: asyncio.Event | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as canonical events."""

        def record(done: DoneEvent, latency_ms: float) -> None:
            self.metrics.record_call(
                request.model,
                output_tokens=done.usage.output_tokens,
                latency_ms=latency_ms,
            )

        return terminate_stream(
            self._stream_events(request, signal),
            request,
            provider=self.provider_name,
            signal=signal,
            on_done=record,
        )

    async def _stream_events(
        self, request: ChatRequest, signal: asyncio.Event | None
    ) -> AsyncIterator[StreamEvent]:
        self._ensure_polling()
        payload = self.build_payload(request, stream=True)
        async with self._open_stream(
            "POST", "v1/chat/completions", json=payload
        ) as response:
            async for event in parse_sse(response.aiter_bytes(), signal):
                yield event

    async def list_models(self) -> list[Model]:
        """Query served models via ``/v1/models``."""
        self._ensure_polling()
        data = await self._request_json("GET", "v1/models", phase="list_models")
        entries = data.get("data")
        models: list[Model] = []
        for entry in entries if isinstance(entries, list) else []:
            model_id = entry.get("id") if isinstance(entry, dict) else None
            if not isinstance(model_id, str) or not model_id:
                continue
            max_len = entry.get("max_model_len")
            context_window = (
                max_len
                if isinstance(max_len, int) and not isinstance(max_len, bool) and max_len > 0
                else estimate_context_window(model_id)
            )
            models.append(
                Model(
                    id=model_id,
                    name=model_id,
                    provider=self.config.id,
                    context_window=context_window,
                    capabilities=frozenset({"chat", "streaming", "tool_use"}),
                )
            )
        return models
