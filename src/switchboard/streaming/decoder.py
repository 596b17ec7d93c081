"""Incremental byte-to-text decoding with cooperative cancellation."""

from __future__ import annotations

import asyncio
import codecs
from contextlib import suppress
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

log = logging.getLogger(__name__)

_EOF: Any = object()
_CANCELLED: Any = object()


async def _read(iterator: AsyncIterator[bytes]) -> Any:
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return _EOF


async def _next_chunk(
    iterator: AsyncIterator[bytes], signal: asyncio.Event | None
) -> Any:
    """Await the next chunk, abandoning the read if *signal* fires first."""
    if signal is None:
        return await _read(iterator)
    if signal.is_set():
        return _CANCELLED

    read = asyncio.ensure_future(_read(iterator))
    wait = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({read, wait}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        read.cancel()
        wait.cancel()
        raise
    if read in done:
        wait.cancel()
        return read.result()

    read.cancel()
    with suppress(asyncio.CancelledError):
        await read
    return _CANCELLED


async def release(source: Any) -> None:
    """Close an async byte source if it supports closing."""
    aclose = getattr(source, "aclose", None)
    if not callable(aclose):
        return
    try:
        await aclose()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.debug("Closing stream source failed: %s", exc)


async def iter_text(
    source: AsyncIterable[bytes], signal: asyncio.Event | None = None
) -> AsyncIterator[str]:
    """Decode UTF-8 text from *source* as bytes arrive.

    Code points split across chunks are held back until complete. Invalid
    bytes decode to U+FFFD. Once *signal* is set the in-flight read is
    abandoned and iteration ends; *source* is closed exactly once either way.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    iterator = aiter(source)
    try:
        while True:
            chunk = await _next_chunk(iterator, signal)
            if chunk is _CANCELLED:
                log.debug("Stream read cancelled")
                return
            if chunk is _EOF:
                break
            text = decoder.decode(bytes(chunk))
            if text:
                yield text
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail
    finally:
        await release(iterator)
