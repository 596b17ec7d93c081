"""Shared base for adapters that front a local inference server."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from switchboard.providers._http import DEFAULT_TIMEOUT_S, HTTPProvider
from switchboard.providers.health import HealthChecker
from switchboard.providers.metrics import DEFAULT_CAPACITY, MetricsTracker

if TYPE_CHECKING:
    import httpx

    from switchboard.models import PerformanceMetrics
    from switchboard.providers.health import BackendKind

log = logging.getLogger(__name__)


class LocalProvider(HTTPProvider):
    """HTTP adapter with a health checker and a metrics tracker attached.

    Both sidecars belong to this instance alone. When
    ``health_check_interval_s`` is set, background polling starts on the
    adapter's first call inside a running event loop.
    """

    backend_kind: BackendKind = "generic"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        backend_kind: BackendKind | None = None,
        health_check_interval_s: float | None = None,
        metrics_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        super().__init__(base_url, timeout_s=timeout_s, client=client)
        self.health_checker = HealthChecker(
            base_url,
            timeout_s=timeout_s,
            backend_kind=backend_kind or self.backend_kind,
            client=client,
        )
        self.metrics = MetricsTracker(metrics_capacity)
        self.health_check_interval_s = health_check_interval_s

    def _ensure_polling(self) -> None:
        interval = self.health_check_interval_s
        if interval is not None and not self.health_checker.polling:
            self.health_checker.start_polling(interval)

    def _record(
        self,
        model_id: str,
        output_tokens: int,
        started: float,
        eval_duration_ns: float | None = None,
    ) -> PerformanceMetrics:
        """Record a sample for a call that began at perf-counter *started*."""
        latency_ms = (time.perf_counter() - started) * 1000
        return self.metrics.record_call(
            model_id,
            output_tokens=output_tokens,
            latency_ms=latency_ms,
            eval_duration_ns=eval_duration_ns,
        )

    async def validate_connection(self) -> bool:
        """Available when any health probe succeeds."""
        self._ensure_polling()
        health = await self.health_checker.check()
        return health.status == "available"

    async def aclose(self) -> None:
        await self.health_checker.aclose()
        await super().aclose()
