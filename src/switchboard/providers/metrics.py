"""Bounded latency/throughput history for local backends."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

from switchboard.models import PerformanceMetrics

if TYPE_CHECKING:
    from collections.abc import Iterator

DEFAULT_CAPACITY = 100


@dataclass(frozen=True)
class MetricsSummary:
    """Mean latency and throughput over a set of samples."""

    samples: int
    latency_ms: float
    tokens_per_second: float


def tokens_per_second(
    output_tokens: int, latency_ms: float, eval_duration_ns: float | None = None
) -> float:
    """Throughput, preferring the backend's own generation time when known."""
    if eval_duration_ns is not None and eval_duration_ns > 0:
        return output_tokens / (eval_duration_ns / 1_000_000_000)
    return output_tokens / max(latency_ms / 1000, 0.001)


class MetricsTracker:
    """Keeps the most recent *capacity* samples; older ones are evicted."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._samples: deque[PerformanceMetrics] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._samples.maxlen or 0

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[PerformanceMetrics]:
        return iter(self._samples)

    def record(self, sample: PerformanceMetrics) -> None:
        self._samples.append(sample)

    def record_call(
        self,
        model_id: str,
        *,
        output_tokens: int,
        latency_ms: float,
        eval_duration_ns: float | None = None,
    ) -> PerformanceMetrics:
        """Record one completed generation and return the stored sample."""
        sample = PerformanceMetrics(
            model_id=model_id,
            latency_ms=latency_ms,
            tokens_per_second=tokens_per_second(output_tokens, latency_ms, eval_duration_ns),
        )
        self.record(sample)
        return sample

    def average(self, model_id: str | None = None) -> MetricsSummary | None:
        """Mean over all samples, or only those for *model_id*.

        Returns ``None`` when there is nothing to average.
        """
        selected = [
            s for s in self._samples if model_id is None or s.model_id == model_id
        ]
        if not selected:
            return None
        return MetricsSummary(
            samples=len(selected),
            latency_ms=sum(s.latency_ms for s in selected) / len(selected),
            tokens_per_second=sum(s.tokens_per_second for s in selected) / len(selected),
        )

    def recent(self, n: int = 10) -> list[PerformanceMetrics]:
        """The last *n* samples, newest first."""
        if n <= 0:
            return []
        out: list[PerformanceMetrics] = []
        for sample in reversed(self._samples):
            if len(out) == n:
                break
            out.append(sample)
        return out

    def clear(self) -> None:
        self._samples.clear()
