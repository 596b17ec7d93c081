"""Exception hierarchy for switchboard."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class SwitchboardError(Exception):
    """Base exception for all switchboard errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(SwitchboardError):
    """Configuration validation or resolution failed."""


class ProviderError(SwitchboardError):
    """A backend call failed.

    Covers transport failures, non-2xx responses and payloads that do not
    have the shape the backend documents. ``status_code`` and ``body`` are
    populated whenever an HTTP response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.status_code = status_code
        self.body = body
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(ProviderError):
    """Rate limit exceeded (HTTP 429)."""


class StreamError(ProviderError):
    """A streaming response could not be consumed."""


class FrameError(StreamError):
    """One frame of a stream could not be decoded.

    Recoverable: the stream carries on with the next frame.
    """


class IncompleteFrameError(StreamError):
    """The stream ended in the middle of a frame."""


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
