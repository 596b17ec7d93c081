"""Enforce the one-terminal-event contract on adapter streams."""

from __future__ import annotations

import asyncio
from contextlib import aclosing
import logging
import time
from typing import TYPE_CHECKING

from switchboard.errors import FrameError
from switchboard.policy import estimate_usage
from switchboard.providers._errors import wrap_provider_error
from switchboard.streaming.events import (
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    done_event,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from switchboard.models import ChatRequest
    from switchboard.streaming.events import StreamEvent

log = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


async def terminate_stream(
    events: AsyncIterator[StreamEvent],
    request: ChatRequest,
    *,
    provider: str,
    signal: asyncio.Event | None = None,
    on_done: Callable[[DoneEvent, float], None] | None = None,
) -> AsyncIterator[StreamEvent]:
    """Relay *events* so that exactly one terminal event ends the stream.

    - Recoverable frame errors are logged and skipped.
    - Any other error is relayed, followed by a zero-usage ``done("error")``.
    - The first ``done`` ends the stream; zero usage is replaced by an
      estimate from the request and the text streamed so far.
    - A source that ends without ``done`` gets a synthetic one.
    - Exceptions from the source become ``error`` + ``done("error")``.
    - After cancellation nothing more is emitted.

    *on_done* receives the final ``done`` and the elapsed milliseconds since
    the stream was first iterated.
    """
    started = time.perf_counter()
    output: list[str] = []
    try:
        async with aclosing(events) as source:
            async for event in source:
                if signal is not None and signal.is_set():
                    return
                match event:
                    case ErrorEvent(error=FrameError() as exc):
                        log.warning("%s stream: skipping bad frame: %s", provider, exc)
                    case ErrorEvent():
                        yield event
                        yield done_event("error")
                        return
                    case DoneEvent():
                        if event.usage.total_tokens == 0:
                            event = DoneEvent(
                                estimate_usage(request, "".join(output)),
                                event.finish_reason,
                            )
                        if on_done is not None:
                            on_done(event, _elapsed_ms(started))
                        yield event
                        return
                    case TokenEvent():
                        output.append(event.content)
                        yield event
                    case _:
                        yield event
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        if signal is not None and signal.is_set():
            return
        err = wrap_provider_error(exc, provider=provider, phase="stream")
        log.debug("%s stream failed: %s", provider, err)
        yield ErrorEvent(err)
        yield done_event("error")
        return

    if signal is not None and signal.is_set():
        return
    done = DoneEvent(estimate_usage(request, "".join(output)), "stop")
    if on_done is not None:
        on_done(done, _elapsed_ms(started))
    yield done
