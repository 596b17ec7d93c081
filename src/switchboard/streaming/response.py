"""Consumer-side wrapper around an adapter event stream.

``StreamingResponse`` lets callers either iterate events or ``collect()``
the whole completion, with optional per-event callbacks and cooperative
cancellation over an ``asyncio.Event``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from switchboard.errors import StreamError, SwitchboardError
from switchboard.models import TokenUsage, ToolCall
from switchboard.streaming.events import (
    DoneEvent,
    ErrorEvent,
    TokenEvent,
    ToolCallStartEvent,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from switchboard.streaming.events import StreamEvent

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectedResponse:
    """The result of draining a stream.

    ``finish_reason`` is the stream's own reason, ``"cancelled"`` when the
    response was cancelled before a ``done`` arrived, or ``"unknown"`` when
    the stream ended without one.
    """

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage.zero)
    finish_reason: str = "unknown"


class StreamingResponse:
    """Iterate or collect an event stream, with callbacks and cancellation.

    Pass the same *signal* given to ``Provider.stream`` so that ``cancel()``
    also abandons the in-flight read. Iteration stops after the first
    ``done``; an exception from the source becomes a single ``error`` event.

    Example:
        signal = asyncio.Event()
        response = StreamingResponse(provider.stream(request, signal=signal), signal)
        response.on_token(print).on_done(lambda usage, reason: ...)
        result = await response.collect()
    """

    def __init__(
        self, source: AsyncIterator[StreamEvent], signal: asyncio.Event | None = None
    ) -> None:
        self._source = source
        self._signal = signal if signal is not None else asyncio.Event()
        self._token_callbacks: list[Callable[[str], None]] = []
        self._tool_call_callbacks: list[Callable[[ToolCall], None]] = []
        self._error_callbacks: list[Callable[[SwitchboardError], None]] = []
        self._done_callbacks: list[Callable[[TokenUsage, str], None]] = []

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    def on_token(self, callback: Callable[[str], None]) -> StreamingResponse:
        self._token_callbacks.append(callback)
        return self

    def on_tool_call(self, callback: Callable[[ToolCall], None]) -> StreamingResponse:
        self._tool_call_callbacks.append(callback)
        return self

    def on_error(self, callback: Callable[[SwitchboardError], None]) -> StreamingResponse:
        self._error_callbacks.append(callback)
        return self

    def on_done(self, callback: Callable[[TokenUsage, str], None]) -> StreamingResponse:
        self._done_callbacks.append(callback)
        return self

    def cancel(self) -> None:
        self._signal.set()

    @property
    def aborted(self) -> bool:
        return self._signal.is_set()

    async def collect(self) -> CollectedResponse:
        """Drain the stream into a single response."""
        content: list[str] = []
        tool_calls: list[ToolCall] = []
        usage = TokenUsage.zero()
        finish_reason = "cancelled" if self.aborted else "unknown"

        async for event in self:
            match event:
                case TokenEvent():
                    content.append(event.content)
                case ToolCallStartEvent():
                    tool_calls.append(event.tool_call)
                case DoneEvent():
                    usage = event.usage
                    finish_reason = event.finish_reason

        if self.aborted and finish_reason == "unknown":
            finish_reason = "cancelled"
        return CollectedResponse("".join(content), tuple(tool_calls), usage, finish_reason)

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        source = self._source
        try:
            while not self.aborted:
                try:
                    event = await anext(source)
                except StopAsyncIteration:
                    return
                except Exception as exc:
                    if self.aborted:
                        return
                    error = exc if isinstance(exc, SwitchboardError) else StreamError(str(exc))
                    log.debug("Stream source failed: %s", error)
                    failure = ErrorEvent(error)
                    self._dispatch(failure)
                    yield failure
                    return
                if self.aborted:
                    return
                self._dispatch(event)
                yield event
                if isinstance(event, DoneEvent):
                    return
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    def _dispatch(self, event: StreamEvent) -> None:
        match event:
            case TokenEvent():
                for on_token in self._token_callbacks:
                    on_token(event.content)
            case ToolCallStartEvent():
                for on_tool_call in self._tool_call_callbacks:
                    on_tool_call(event.tool_call)
            case ErrorEvent():
                for on_error in self._error_callbacks:
                    on_error(event.error)
            case DoneEvent():
                for on_done in self._done_callbacks:
                    on_done(event.usage, event.finish_reason)
