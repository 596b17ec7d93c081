"""Provider protocol: the contract every backend adapter implements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator

    from switchboard.models import ChatRequest, ChatResponse, Model, ProviderConfig
    from switchboard.streaming.events import StreamEvent


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    auth: frozenset[Literal["api_key", "bearer", "none"]]
    transport: Literal["sse", "ndjson", "chunked"]
    tools: bool = True
    thinking: bool = False
    live_catalog: bool = False
    health: bool = False


@runtime_checkable
class Provider(Protocol):
    """Minimal provider protocol: chat, stream, catalog, connection check."""

    @property
    def config(self) -> ProviderConfig:
        """Static identity of this adapter."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Declared auth modes and features."""
        ...

    async def chat(self, request: ChatRequest) -> ChatResponse:
        """Run one non-streaming completion."""
        ...

    def stream(
        self, request: ChatRequest, *, signal: asyncio.Event | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream one completion; always ends with exactly one terminal event."""
        ...

    async def list_models(self) -> list[Model]:
        """Return the models this backend offers."""
        ...

    async def validate_connection(self) -> bool:
        """Check reachability and credentials without raising."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
