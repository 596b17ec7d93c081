"""Reachability probing for local inference servers."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import logging
import time
from typing import TYPE_CHECKING, Literal

import httpx

from switchboard.models import ProviderHealth

if TYPE_CHECKING:
    from collections.abc import Callable

log = logging.getLogger(__name__)

BackendKind = Literal["ollama", "vllm", "generic"]

_PROBE_PATHS: dict[str, tuple[str, ...]] = {
    "ollama": ("api/tags", "api/version"),
    "vllm": ("health", "v1/models"),
    "generic": ("v1/models", "health", "api/tags"),
}


def guess_backend_kind(base_url: str) -> BackendKind:
    """Guess the backend from its URL; only used when no kind is given."""
    url = base_url.lower()
    if "ollama" in url or ":11434" in url:
        return "ollama"
    if "vllm" in url or ":8000" in url:
        return "vllm"
    return "generic"


class HealthChecker:
    """Probe a backend's lightweight endpoints and track status changes.

    Listeners are only notified when the status or error text differs from
    the previous check. ``check`` never raises.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        backend_kind: BackendKind | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.backend_kind: BackendKind = backend_kind or guess_backend_kind(base_url)
        self._client = client
        self._owns_client = client is None
        self._listeners: list[Callable[[ProviderHealth], None]] = []
        self._health = ProviderHealth()
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def health(self) -> ProviderHealth:
        """Result of the latest check (``unknown`` before the first one)."""
        return self._health

    @property
    def probe_paths(self) -> tuple[str, ...]:
        return _PROBE_PATHS[self.backend_kind]

    def on_change(self, listener: Callable[[ProviderHealth], None]) -> Callable[[], None]:
        """Register *listener*; returns a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
            self._owns_client = True
        return self._client

    async def check(self) -> ProviderHealth:
        """Probe each endpoint in order; the first success wins."""
        client = self._get_client()
        last_error = "no probe endpoints"
        for path in self.probe_paths:
            url = f"{self.base_url}/{path}"
            started = time.perf_counter()
            try:
                response = await client.get(url, timeout=self.timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = f"{path}: {str(exc) or type(exc).__name__}"
                continue
            if response.is_success:
                latency_ms = (time.perf_counter() - started) * 1000
                return self._update(
                    ProviderHealth("available", _now(), latency_ms=latency_ms)
                )
            last_error = f"{path}: HTTP {response.status_code}"
        return self._update(ProviderHealth("unavailable", _now(), error=last_error))

    def _update(self, health: ProviderHealth) -> ProviderHealth:
        previous = self._health
        self._health = health
        if (previous.status, previous.error) != (health.status, health.error):
            log.debug(
                "Health of %s changed: %s -> %s", self.base_url, previous.status, health.status
            )
            for listener in list(self._listeners):
                try:
                    listener(health)
                except Exception as exc:
                    log.warning("Health listener failed: %s", exc)
        return health

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start_polling(self, interval_s: float) -> None:
        """Check every *interval_s* seconds in a background task."""
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self.stop_polling()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(interval_s))

    async def _poll(self, interval_s: float) -> None:
        while True:
            await self.check()
            await asyncio.sleep(interval_s)

    def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        self.stop_polling()
        client = self._client
        if client is None:
            return
        self._client = None
        if self._owns_client:
            await client.aclose()


def _now() -> datetime:
    return datetime.now(UTC)
