"""Frame parser tests: SSE, NDJSON and chunked text over async byte sources."""

from __future__ import annotations

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from switchboard.errors import FrameError, IncompleteFrameError
from switchboard.models import TokenUsage
from switchboard.streaming.decoder import iter_text
from switchboard.streaming.events import DoneEvent, ErrorEvent, TokenEvent
from switchboard.streaming.frames import (
    iter_ndjson_lines,
    parse_chunked_text,
    parse_ndjson,
    parse_sse,
    parse_sse_block,
)
from tests.helpers import byte_stream, collect, ndjson, sse

pytestmark = pytest.mark.unit


# =============================================================================
# Text Decoding
# =============================================================================


@pytest.mark.asyncio
async def test_iter_text_holds_back_split_code_points() -> None:
    """A multi-byte character split across chunks decodes once, intact."""
    data = "héllo".encode()
    source = byte_stream(data, split=[2])

    assert await collect(iter_text(source)) == ["h", "éllo"]
    assert source.close_calls == 1


@pytest.mark.asyncio
async def test_iter_text_replaces_invalid_bytes() -> None:
    source = byte_stream(b"ok\xff!")

    assert "".join(await collect(iter_text(source))) == "ok\ufffd!"


@pytest.mark.asyncio
async def test_iter_text_emits_replacement_for_truncated_tail() -> None:
    source = byte_stream("é".encode()[:1])

    assert await collect(iter_text(source)) == ["\ufffd"]


# =============================================================================
# SSE Blocks
# =============================================================================


def test_parse_sse_block_joins_data_lines_and_reads_event_name() -> None:
    block = 'event: content_block_delta\ndata: {"a":\ndata: 1}'

    assert parse_sse_block(block) == ("content_block_delta", '{"a":\n1}')


def test_parse_sse_block_without_data_is_a_keepalive() -> None:
    assert parse_sse_block(": ping") == (None, None)
    assert parse_sse_block("event: ping") == ("ping", None)


# =============================================================================
# SSE Streams
# =============================================================================


@pytest.mark.asyncio
async def test_parse_sse_yields_tokens_and_done_sentinel() -> None:
    body = sse({"type": "token", "content": "Hel"}, {"type": "token", "content": "lo"})
    body += "data: [DONE]\n\n"

    events = await collect(parse_sse(byte_stream(body)))

    assert [e.type for e in events] == ["token", "token", "done"]
    assert "".join(e.content for e in events if isinstance(e, TokenEvent)) == "Hello"
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.finish_reason == "stop"
    assert done.usage.total_tokens == 0


@pytest.mark.asyncio
async def test_parse_sse_accepts_crlf_separators_and_comments() -> None:
    body = ': keepalive\r\n\r\ndata: {"type":"token","content":"x"}\r\n\r\n'

    events = await collect(parse_sse(byte_stream(body)))

    assert events == [TokenEvent("x")]


@pytest.mark.asyncio
async def test_parse_sse_undecodable_frame_is_reported_and_parsing_continues() -> None:
    body = "data: {bad}\n\n" + sse({"type": "token", "content": "after"})

    events = await collect(parse_sse(byte_stream(body)))

    assert [e.type for e in events] == ["error", "token"]
    assert isinstance(events[0], ErrorEvent)
    assert isinstance(events[0].error, FrameError)
    assert events[1] == TokenEvent("after")


@pytest.mark.asyncio
async def test_parse_sse_reports_incomplete_trailing_event() -> None:
    body = sse({"type": "token", "content": "a"}) + 'data: {"type":"tok'

    events = await collect(parse_sse(byte_stream(body)))

    assert events[0] == TokenEvent("a")
    assert isinstance(events[-1], ErrorEvent)
    assert isinstance(events[-1].error, IncompleteFrameError)
    assert events[-1].message == "Incomplete SSE event payload"


@pytest.mark.asyncio
async def test_parse_sse_uses_event_field_when_payload_is_untyped() -> None:
    body = "event: ping\ndata: {}\n\nevent: message_stop\ndata: {}\n\n"

    events = await collect(parse_sse(byte_stream(body)))

    assert [e.type for e in events] == ["done"]


@given(
    splits=st.lists(st.integers(min_value=1, max_value=200), max_size=12),
    words=st.lists(
        st.text(alphabet="aé✓ \n{}\"", min_size=1, max_size=6), min_size=1, max_size=5
    ),
)
@settings(max_examples=10, deadline=None, derandomize=True)
def test_parse_sse_is_independent_of_chunk_boundaries(
    splits: list[int], words: list[str]
) -> None:
    """Property: re-chunking the body never changes the decoded tokens."""
    body = sse(*({"type": "token", "content": w} for w in words)) + "data: [DONE]\n\n"

    async def run() -> list:
        return await collect(parse_sse(byte_stream(body, split=splits)))

    events = asyncio.run(run())

    assert [e.content for e in events if isinstance(e, TokenEvent)] == words
    assert isinstance(events[-1], DoneEvent)
    assert not any(isinstance(e, ErrorEvent) for e in events)


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_parse_sse_stops_silently_when_signal_already_set() -> None:
    signal = asyncio.Event()
    signal.set()
    source = byte_stream(sse({"type": "token", "content": "x"}))

    assert await collect(parse_sse(source, signal)) == []
    assert source.close_calls == 1


@pytest.mark.asyncio
async def test_parse_sse_cancel_mid_stream_releases_reader_once() -> None:
    """A stalled server read is abandoned when the signal fires."""
    signal = asyncio.Event()
    source = byte_stream(sse({"type": "token", "content": "hi"}), hang=True)
    events: list = []

    async def consume() -> None:
        async for event in parse_sse(source, signal):
            events.append(event)

    task = asyncio.create_task(consume())
    while not events:
        await asyncio.sleep(0)
    signal.set()
    await asyncio.wait_for(task, timeout=1)

    assert events == [TokenEvent("hi")]
    assert source.close_calls == 1


@pytest.mark.asyncio
async def test_parse_sse_releases_reader_when_consumer_stops_early() -> None:
    body = sse({"type": "token", "content": "a"}, {"type": "token", "content": "b"})
    source = byte_stream(body, split=[10])
    stream = parse_sse(source)

    first = await anext(stream)
    await stream.aclose()

    assert first == TokenEvent("a")
    assert source.close_calls == 1


# =============================================================================
# NDJSON and Chunked Text
# =============================================================================


@pytest.mark.asyncio
async def test_iter_ndjson_lines_includes_unterminated_last_line() -> None:
    source = byte_stream('{"a": 1}\n\n  \n{"b": 2}', split=[4])

    assert await collect(iter_ndjson_lines(source)) == ['{"a": 1}', '{"b": 2}']


@pytest.mark.asyncio
async def test_parse_ndjson_reports_bad_lines_and_continues() -> None:
    body = ndjson({"type": "token", "content": "a"}) + "not json\n"
    body += ndjson({"type": "done", "usage": {"inputTokens": 3, "outputTokens": 2}})

    events = await collect(parse_ndjson(byte_stream(body)))

    assert [e.type for e in events] == ["token", "error", "done"]
    assert "NDJSON" in events[1].message
    assert events[2].usage.total_tokens == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("tail", ["[DONE]\n", "[DONE]"], ids=["terminated", "trailing-fragment"])
async def test_parse_ndjson_done_sentinel(tail: str) -> None:
    body = ndjson({"type": "token", "content": "a"}) + tail

    events = await collect(parse_ndjson(byte_stream(body, split=[len(body) - 3])))

    assert events == [TokenEvent("a"), DoneEvent(TokenUsage.zero(), "stop")]


@pytest.mark.asyncio
async def test_parse_chunked_text_emits_chunks_then_done() -> None:
    source = byte_stream("hello world", split=[5])

    events = await collect(parse_chunked_text(source))

    assert events[:-1] == [TokenEvent("hello"), TokenEvent(" world")]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].finish_reason == "stop"


@pytest.mark.asyncio
async def test_parse_chunked_text_cancelled_has_no_done() -> None:
    signal = asyncio.Event()
    source = byte_stream("abc", hang=True)
    events: list = []

    async def consume() -> None:
        async for event in parse_chunked_text(source, signal):
            events.append(event)

    task = asyncio.create_task(consume())
    while not events:
        await asyncio.sleep(0)
    signal.set()
    await asyncio.wait_for(task, timeout=1)

    assert events == [TokenEvent("abc")]
    assert source.close_calls == 1
