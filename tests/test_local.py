"""Local backend tests: health checking, metrics, Ollama and vLLM adapters."""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from switchboard.errors import StreamError
from switchboard.models import (
    ChatRequest,
    Message,
    PerformanceMetrics,
    ProviderHealth,
    TokenUsage,
    ToolDefinition,
    ToolUseBlock,
)
from switchboard.providers import HealthChecker, MetricsTracker, OllamaProvider, VLLMProvider
from switchboard.providers.health import guess_backend_kind
from switchboard.providers.metrics import tokens_per_second
from switchboard.streaming.events import DoneEvent, TokenEvent, ToolCallStartEvent
from tests.helpers import Recorder, collect, json_response, ndjson, sse, stream_response

pytestmark = pytest.mark.unit

OLLAMA = "http://localhost:11434"
VLLM = "http://localhost:8000"


# =============================================================================
# Health Checking
# =============================================================================


@pytest.mark.parametrize(
    ("url", "kind"),
    [
        ("http://localhost:11434", "ollama"),
        ("http://ollama.internal", "ollama"),
        ("http://localhost:8000/", "vllm"),
        ("http://gpu-box:9000", "generic"),
    ],
)
def test_guess_backend_kind(url: str, kind: str) -> None:
    assert guess_backend_kind(url) == kind


def test_explicit_backend_kind_overrides_url() -> None:
    checker = HealthChecker("http://localhost:11434", backend_kind="vllm")

    assert checker.probe_paths == ("health", "v1/models")
    assert checker.health == ProviderHealth()


@pytest.mark.asyncio
async def test_check_tries_probes_in_order_until_one_succeeds() -> None:
    recorder = Recorder(
        routes={
            "/api/tags": httpx.Response(500),
            "/api/version": json_response({"version": "0.5.1"}),
        }
    )
    checker = HealthChecker(OLLAMA, client=recorder.client())

    health = await checker.check()

    assert health.status == "available"
    assert health.error is None
    assert health.latency_ms is not None
    assert health.last_checked is not None
    assert [r.url.path for r in recorder.requests] == ["/api/tags", "/api/version"]


@pytest.mark.asyncio
async def test_check_reports_last_failure_and_never_raises() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(503)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    checker = HealthChecker(VLLM, client=client)

    health = await checker.check()

    assert health.status == "unavailable"
    assert health.error == "v1/models: HTTP 503"


@pytest.mark.asyncio
async def test_listeners_fire_only_on_change() -> None:
    state = {"up": True}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if state["up"] else 500, json={})

    checker = HealthChecker(
        VLLM, client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    seen: list[str] = []
    unsubscribe = checker.on_change(lambda h: seen.append(h.status))

    await checker.check()
    await checker.check()
    state["up"] = False
    await checker.check()
    await checker.check()
    unsubscribe()
    state["up"] = True
    await checker.check()

    assert seen == ["available", "unavailable"]
    assert checker.health.status == "available"


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_check(caplog: pytest.LogCaptureFixture) -> None:
    recorder = Recorder(routes={"/health": json_response({})})
    checker = HealthChecker(VLLM, client=recorder.client())
    seen: list[ProviderHealth] = []

    def broken(_: ProviderHealth) -> None:
        raise RuntimeError("listener bug")

    checker.on_change(broken)
    checker.on_change(seen.append)
    with caplog.at_level(logging.WARNING, logger="switchboard.providers.health"):
        health = await checker.check()

    assert health.status == "available"
    assert seen == [health]
    assert "listener bug" in caplog.text


@pytest.mark.asyncio
async def test_polling_runs_in_background_until_stopped() -> None:
    recorder = Recorder(routes={"/health": json_response({})})
    checker = HealthChecker(VLLM, client=recorder.client())

    checker.start_polling(0.01)
    assert checker.polling
    for _ in range(200):
        if len(recorder.requests) >= 2:
            break
        await asyncio.sleep(0.01)
    await checker.aclose()

    assert len(recorder.requests) >= 2
    assert not checker.polling


@pytest.mark.asyncio
async def test_start_polling_rejects_non_positive_interval() -> None:
    checker = HealthChecker(VLLM)

    with pytest.raises(ValueError, match="interval_s"):
        checker.start_polling(0)


# =============================================================================
# Metrics
# =============================================================================


def _sample(model_id: str, latency_ms: float, tps: float) -> PerformanceMetrics:
    return PerformanceMetrics(model_id=model_id, latency_ms=latency_ms, tokens_per_second=tps)


def test_tracker_evicts_oldest_beyond_capacity() -> None:
    tracker = MetricsTracker(capacity=3)
    for i in range(5):
        tracker.record(_sample("m", float(i), 1.0))

    assert tracker.capacity == 3
    assert len(tracker) == 3
    assert [s.latency_ms for s in tracker] == [2.0, 3.0, 4.0]
    assert [s.latency_ms for s in tracker.recent(2)] == [4.0, 3.0]
    assert tracker.recent(0) == []


def test_tracker_averages_per_model() -> None:
    tracker = MetricsTracker()
    tracker.record(_sample("a", 100.0, 10.0))
    tracker.record(_sample("a", 300.0, 30.0))
    tracker.record(_sample("b", 50.0, 5.0))

    summary = tracker.average("a")

    assert summary is not None
    assert summary.samples == 2
    assert summary.latency_ms == 200.0
    assert summary.tokens_per_second == 20.0
    assert tracker.average("missing") is None
    assert tracker.average().samples == 3  # type: ignore[union-attr]
    tracker.clear()
    assert tracker.average() is None


def test_tokens_per_second_prefers_backend_eval_duration() -> None:
    assert tokens_per_second(100, 10_000.0, eval_duration_ns=2_000_000_000) == 50.0
    assert tokens_per_second(100, 2_000.0) == 50.0
    assert tokens_per_second(5, 0.0) > 0


def test_tracker_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError, match="capacity"):
        MetricsTracker(0)


# =============================================================================
# Ollama
# =============================================================================


def test_ollama_payload_options_and_tool_messages(weather_tool: ToolDefinition) -> None:
    request = ChatRequest(
        model="llama3.2",
        messages=(
            Message(role="user", content="Weather in Oslo?"),
            Message(
                role="assistant",
                content=(ToolUseBlock("call_1", "get_weather", {"city": "Oslo"}),),
            ),
            Message(role="tool", content="18C", tool_result_id="call_1"),
        ),
        tools=(weather_tool,),
        system_prompt="Be brief.",
        temperature=0.1,
        max_tokens=64,
        thinking_level="low",
    )

    payload = OllamaProvider().build_payload(request, stream=True)

    assert payload["stream"] is True
    assert payload["options"] == {"temperature": 0.1, "num_predict": 64}
    assert payload["think"] is True
    assert payload["tools"][0]["function"]["name"] == "get_weather"
    assert payload["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Weather in Oslo?"},
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}
            ],
        },
        {"role": "tool", "content": "18C", "tool_name": "get_weather"},
    ]


@pytest.mark.asyncio
async def test_ollama_chat_round_trip_records_metrics(simple_request: ChatRequest) -> None:
    recorder = Recorder(
        routes={
            "/api/chat": json_response(
                {
                    "model": "llama3.2",
                    "created_at": "2023-12-12T14:13:43.416799Z",
                    "message": {"role": "assistant", "content": "Hello! How are you today?"},
                    "done": True,
                    "done_reason": "stop",
                    "total_duration": 5191566416,
                    "load_duration": 2154458,
                    "prompt_eval_count": 26,
                    "prompt_eval_duration": 383809000,
                    "eval_count": 298,
                    "eval_duration": 4799921000,
                }
            )
        }
    )
    provider = OllamaProvider(client=recorder.client())

    response = await provider.chat(simple_request)

    assert response.content == "Hello! How are you today?"
    assert response.model == "llama3.2"
    assert response.usage == TokenUsage(26, 298, 324)
    assert response.finish_reason == "stop"
    (sample,) = provider.metrics.recent()
    assert sample.model_id == simple_request.model
    assert sample.tokens_per_second == pytest.approx(298 / 4.799921)


@pytest.mark.asyncio
async def test_ollama_chat_tool_calls(simple_request: ChatRequest) -> None:
    recorder = Recorder(
        routes={
            "/api/chat": json_response(
                {
                    "model": "llama3.2",
                    "message": {
                        "role": "assistant",
                        "content": "",
                        "tool_calls": [
                            {"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}
                        ],
                    },
                    "done": True,
                    "done_reason": "stop",
                }
            )
        }
    )

    response = await OllamaProvider(client=recorder.client()).chat(simple_request)

    assert response.finish_reason == "tool_use"
    assert response.tool_calls is not None
    assert response.tool_calls[0].arguments == {"city": "Oslo"}
    assert response.usage.output_tokens == 0


@pytest.mark.asyncio
async def test_ollama_stream_reports_final_usage(simple_request: ChatRequest) -> None:
    body = ndjson(
        {"model": "llama3.2", "message": {"role": "assistant", "content": "Fo"}, "done": False},
        {"model": "llama3.2", "message": {"role": "assistant", "content": "ur"}, "done": False},
        {
            "model": "llama3.2",
            "message": {"role": "assistant", "content": ""},
            "done": True,
            "done_reason": "length",
            "prompt_eval_count": 11,
            "eval_count": 2,
            "eval_duration": 1_000_000_000,
        },
    )
    recorder = Recorder(routes={"/api/chat": stream_response(body, "application/x-ndjson")})
    provider = OllamaProvider(client=recorder.client())

    events = await collect(provider.stream(simple_request))

    assert events == [
        TokenEvent("Fo"),
        TokenEvent("ur"),
        DoneEvent(TokenUsage(11, 2, 13), "length"),
    ]
    assert provider.metrics.recent()[0].tokens_per_second == 2.0
    assert recorder.last_json["stream"] is True


@pytest.mark.asyncio
async def test_ollama_stream_tool_call_chunk(simple_request: ChatRequest) -> None:
    body = ndjson(
        {
            "message": {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}],
            },
            "done": False,
        },
        {"message": {"content": ""}, "done": True, "done_reason": "stop"},
    )
    recorder = Recorder(routes={"/api/chat": stream_response(body, "application/x-ndjson")})

    events = await collect(OllamaProvider(client=recorder.client()).stream(simple_request))

    assert isinstance(events[0], ToolCallStartEvent)
    assert events[-1].finish_reason == "tool_use"


@pytest.mark.asyncio
async def test_ollama_stream_error_chunk_ends_with_error_then_done(
    simple_request: ChatRequest,
) -> None:
    body = ndjson(
        {"message": {"content": "a"}, "done": False},
        {"error": "model 'nope' not found"},
    )
    recorder = Recorder(routes={"/api/chat": stream_response(body, "application/x-ndjson")})

    events = await collect(OllamaProvider(client=recorder.client()).stream(simple_request))

    assert [e.type for e in events][-2:] == ["error", "done"]
    assert isinstance(events[-2].error, StreamError)
    assert events[-2].message == "model 'nope' not found"
    assert events[-1].finish_reason == "error"


@pytest.mark.asyncio
async def test_ollama_stream_skips_bad_lines_and_continues(
    simple_request: ChatRequest, caplog: pytest.LogCaptureFixture
) -> None:
    body = (
        ndjson({"message": {"content": "a"}, "done": False})
        + "not json\n"
        + "[1, 2]\n"
        + ndjson(
            {"message": {"content": "b"}, "done": False},
            {"message": {"content": ""}, "done": True, "prompt_eval_count": 4, "eval_count": 2},
        )
    )
    recorder = Recorder(routes={"/api/chat": stream_response(body, "application/x-ndjson")})

    with caplog.at_level(logging.WARNING, logger="switchboard.providers._stream"):
        events = await collect(OllamaProvider(client=recorder.client()).stream(simple_request))

    assert events == [
        TokenEvent("a"),
        TokenEvent("b"),
        DoneEvent(TokenUsage(4, 2, 6), "stop"),
    ]
    assert sum("skipping bad frame" in r.getMessage() for r in caplog.records) == 2


@pytest.mark.asyncio
async def test_ollama_stream_without_done_chunk_is_completed(
    simple_request: ChatRequest,
) -> None:
    body = ndjson({"message": {"content": "partial answer"}, "done": False})
    recorder = Recorder(routes={"/api/chat": stream_response(body, "application/x-ndjson")})
    provider = OllamaProvider(client=recorder.client())

    events = await collect(provider.stream(simple_request))

    assert [e.type for e in events] == ["token", "done"]
    assert events[-1].usage.output_tokens == 4
    assert len(provider.metrics) == 1


@pytest.mark.asyncio
async def test_ollama_catalog_estimates_windows_and_vision() -> None:
    recorder = Recorder(
        routes={
            "/api/tags": json_response(
                {
                    "models": [
                        {"name": "llama3.2:latest", "details": {"family": "llama"}},
                        {"name": "llava:7b", "details": {"family": "llama"}},
                        {"name": "mistral:7b"},
                        {"name": "phi3:mini"},
                        {"size": 1},
                    ]
                }
            )
        }
    )

    models = await OllamaProvider(client=recorder.client()).list_models()

    windows = {m.id: m.context_window for m in models}
    assert windows == {
        "llama3.2:latest": 128_000,
        "llava:7b": 8_192,
        "mistral:7b": 32_000,
        "phi3:mini": 8_192,
    }
    assert "vision" in next(m for m in models if m.id == "llava:7b").capabilities
    assert all(m.provider == "ollama" for m in models)


@pytest.mark.asyncio
async def test_ollama_validation_uses_health_probes() -> None:
    up = Recorder(routes={"/api/tags": json_response({"models": []})})
    down = Recorder()

    assert await OllamaProvider(client=up.client()).validate_connection() is True
    assert await OllamaProvider(client=down.client()).validate_connection() is False
    assert [r.url.path for r in down.requests] == ["/api/tags", "/api/version"]


@pytest.mark.asyncio
async def test_health_polling_starts_lazily_and_stops_on_close() -> None:
    recorder = Recorder(routes={"/api/tags": json_response({"models": []})})
    provider = OllamaProvider(client=recorder.client(), health_check_interval_s=60)

    assert not provider.health_checker.polling
    await provider.list_models()
    assert provider.health_checker.polling
    await provider.aclose()
    assert not provider.health_checker.polling


# =============================================================================
# vLLM
# =============================================================================


def test_vllm_payload_and_optional_bearer(simple_request: ChatRequest) -> None:
    provider = VLLMProvider(api_key="token")

    payload = provider.build_payload(simple_request)

    assert payload["max_tokens"] == 256
    assert payload["temperature"] == 0.2
    assert payload["stream"] is False
    assert payload["messages"][0] == {"role": "system", "content": "Be concise."}
    assert provider._headers()["Authorization"] == "Bearer token"
    assert "Authorization" not in VLLMProvider()._headers()


@pytest.mark.asyncio
async def test_vllm_chat_records_metrics(simple_request: ChatRequest) -> None:
    recorder = Recorder(
        routes={
            "/v1/chat/completions": json_response(
                {
                    "id": "cmpl-1",
                    "model": "test-model",
                    "choices": [
                        {
                            "index": 0,
                            "message": {"role": "assistant", "content": "4"},
                            "finish_reason": "stop",
                        }
                    ],
                    "usage": {"prompt_tokens": 20, "completion_tokens": 1, "total_tokens": 21},
                }
            )
        }
    )
    provider = VLLMProvider(client=recorder.client())

    response = await provider.chat(simple_request)

    assert response.content == "4"
    assert response.usage == TokenUsage(20, 1, 21)
    assert len(provider.metrics) == 1


@pytest.mark.asyncio
async def test_vllm_stream_records_metrics_on_completion(simple_request: ChatRequest) -> None:
    body = sse(
        {"choices": [{"index": 0, "delta": {"content": "Four"}}]},
        {
            "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 20, "completion_tokens": 1},
        },
        "[DONE]",
    )
    recorder = Recorder(routes={"/v1/chat/completions": stream_response(body)})
    provider = VLLMProvider(client=recorder.client())

    events = await collect(provider.stream(simple_request))

    assert events[-1] == DoneEvent(TokenUsage(20, 1, 21), "stop")
    (sample,) = provider.metrics.recent()
    assert sample.model_id == "test-model"
    assert sample.latency_ms >= 0


@pytest.mark.asyncio
async def test_vllm_catalog_prefers_served_max_len() -> None:
    recorder = Recorder(
        routes={
            "/v1/models": json_response(
                {
                    "object": "list",
                    "data": [
                        {"id": "meta-llama/Llama-3.1-8B-Instruct", "max_model_len": 131072},
                        {"id": "qwen-32k-chat"},
                        {"id": "tiny"},
                    ],
                }
            )
        }
    )

    models = await VLLMProvider(client=recorder.client()).list_models()

    assert [m.context_window for m in models] == [131072, 32_000, 8_192]


@pytest.mark.asyncio
async def test_vllm_validation_probes_health_endpoint() -> None:
    recorder = Recorder(routes={"/health": httpx.Response(200)})

    assert await VLLMProvider(client=recorder.client()).validate_connection() is True
    assert recorder.requests[0].url.path == "/health"
