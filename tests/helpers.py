"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: byte-stream fakes for the frame
parsers and an httpx MockTransport recorder for the adapters.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
import json
from typing import Any

import httpx


@dataclass
class ByteStream:
    """Async byte source that counts ``aclose`` calls.

    With ``hang=True`` the source blocks forever once its chunks run out,
    like a server that stopped sending without closing the connection.
    """

    chunks: list[bytes]
    hang: bool = False
    close_calls: int = 0
    reads: int = 0
    _index: int = 0

    def __aiter__(self) -> ByteStream:
        return self

    async def __anext__(self) -> bytes:
        self.reads += 1
        if self._index < len(self.chunks):
            chunk = self.chunks[self._index]
            self._index += 1
            await asyncio.sleep(0)
            return chunk
        if self.hang:
            await asyncio.Event().wait()
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self.close_calls += 1


def byte_stream(text: str | bytes, *, split: Iterable[int] = (), hang: bool = False) -> ByteStream:
    """Split *text* at the given byte offsets into a ByteStream."""
    data = text.encode("utf-8") if isinstance(text, str) else text
    cuts = sorted({c for c in split if 0 < c < len(data)})
    chunks: list[bytes] = []
    start = 0
    for cut in [*cuts, len(data)]:
        chunks.append(data[start:cut])
        start = cut
    return ByteStream([c for c in chunks if c], hang=hang)


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]


def sse(*payloads: Any, event: str | None = None) -> str:
    """Render payloads as SSE blocks; strings are sent verbatim as data."""
    blocks: list[str] = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        prefix = f"event: {event}\n" if event else ""
        blocks.append(f"{prefix}data: {data}\n\n")
    return "".join(blocks)


def ndjson(*payloads: Any) -> str:
    return "".join(json.dumps(p) + "\n" for p in payloads)


@dataclass
class Recorder:
    """MockTransport handler that records requests and replays responses.

    ``routes`` maps a URL path suffix to a response factory or a fixed
    ``httpx.Response``; unmatched paths return 404.
    """

    routes: dict[str, httpx.Response | Callable[[httpx.Request], httpx.Response]] = field(
        default_factory=dict
    )
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, route in self.routes.items():
            if request.url.path.endswith(suffix):
                if callable(route):
                    return route(request)
                # Fresh copy so one route can answer repeated requests.
                return httpx.Response(
                    route.status_code, headers=route.headers, content=route.content
                )
        return httpx.Response(404, text="not found")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))

    @property
    def last_json(self) -> dict[str, Any]:
        return json.loads(self.requests[-1].content)


def json_response(body: Any, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json=body)


def stream_response(text: str, content_type: str = "text/event-stream") -> httpx.Response:
    return httpx.Response(
        200, content=text.encode("utf-8"), headers={"content-type": content_type}
    )
