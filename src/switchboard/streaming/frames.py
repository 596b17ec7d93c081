"""Frame parsers for streaming HTTP bodies: SSE, NDJSON and raw text.

Each parser consumes an async byte source and yields canonical stream
events. Decoding failures of a single frame become one ``error`` event and
parsing continues. All parsers stop silently once the cancellation signal is
set, without a synthetic completion.
"""

from __future__ import annotations

from contextlib import aclosing
import json
import logging
import re
from typing import TYPE_CHECKING

from switchboard.errors import FrameError, IncompleteFrameError
from switchboard.streaming.decoder import iter_text
from switchboard.streaming.events import ErrorEvent, TokenEvent, done_event
from switchboard.streaming.normalizer import StreamNormalizer

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterable, AsyncIterator

    from switchboard.streaming.events import StreamEvent

log = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
_SSE_SEPARATOR = re.compile(r"\r?\n\r?\n")


def _cancelled(signal: asyncio.Event | None) -> bool:
    return signal is not None and signal.is_set()


def parse_sse_block(block: str) -> tuple[str | None, str | None]:
    """Split one SSE block into its ``event:`` name and joined ``data:`` text.

    Returns ``None`` for the data when the block carries no data lines
    (comments and keep-alives).
    """
    event_name: str | None = None
    data_lines: list[str] = []
    for line in block.splitlines():
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value.lstrip()
        if name == "event":
            event_name = value.strip() or None
        elif name == "data":
            data_lines.append(value)
    if not data_lines:
        return event_name, None
    return event_name, "\n".join(data_lines).strip()


def decode_frame(
    data: str,
    event_name: str | None,
    normalizer: StreamNormalizer,
    *,
    framing: str,
) -> list[StreamEvent]:
    """Turn one frame's text into events, handling the completion sentinel."""
    if data == DONE_SENTINEL:
        return [done_event("stop")]
    if not data:
        return []
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        log.debug("Skipping undecodable %s frame: %s", framing, exc)
        return [ErrorEvent(FrameError(f"Invalid {framing} payload: {exc}"))]
    return normalizer.feed(payload, event_name)


async def parse_sse(
    source: AsyncIterable[bytes],
    signal: asyncio.Event | None = None,
    *,
    normalizer: StreamNormalizer | None = None,
) -> AsyncIterator[StreamEvent]:
    """Parse a Server-Sent Events body."""
    normalizer = normalizer or StreamNormalizer()
    buffer = ""
    async with aclosing(iter_text(source, signal)) as chunks:
        async for text in chunks:
            buffer += text
            while match := _SSE_SEPARATOR.search(buffer):
                block = buffer[: match.start()]
                buffer = buffer[match.end() :]
                event_name, data = parse_sse_block(block)
                if data is None:
                    continue
                for event in decode_frame(data, event_name, normalizer, framing="SSE"):
                    if _cancelled(signal):
                        return
                    yield event
    if _cancelled(signal):
        return
    if buffer.strip():
        yield ErrorEvent(IncompleteFrameError("Incomplete SSE event payload"))


async def iter_ndjson_lines(
    source: AsyncIterable[bytes], signal: asyncio.Event | None = None
) -> AsyncIterator[str]:
    """Yield stripped, non-empty lines, including an unterminated last line."""
    buffer = ""
    async with aclosing(iter_text(source, signal)) as chunks:
        async for text in chunks:
            buffer += text
            *lines, buffer = buffer.split("\n")
            for line in lines:
                line = line.strip()
                if line:
                    if _cancelled(signal):
                        return
                    yield line
    if _cancelled(signal):
        return
    tail = buffer.strip()
    if tail:
        yield tail


async def parse_ndjson(
    source: AsyncIterable[bytes],
    signal: asyncio.Event | None = None,
    *,
    normalizer: StreamNormalizer | None = None,
) -> AsyncIterator[StreamEvent]:
    """Parse a newline-delimited JSON body."""
    normalizer = normalizer or StreamNormalizer()
    async with aclosing(iter_ndjson_lines(source, signal)) as lines:
        async for line in lines:
            for event in decode_frame(line, None, normalizer, framing="NDJSON"):
                if _cancelled(signal):
                    return
                yield event


async def parse_chunked_text(
    source: AsyncIterable[bytes], signal: asyncio.Event | None = None
) -> AsyncIterator[StreamEvent]:
    """Emit each decoded chunk as a token, then a synthetic completion."""
    async with aclosing(iter_text(source, signal)) as chunks:
        async for text in chunks:
            if _cancelled(signal):
                return
            yield TokenEvent(text)
    if not _cancelled(signal):
        yield done_event("stop")
