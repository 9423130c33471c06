from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Protocol


class MetricsSink(Protocol):
    """Counters and latencies emitted by ingestion, storage and the cranker."""

    def inc(self, name: str, value: int = 1) -> None: ...

    def observe_ms(self, name: str, value_ms: float) -> None: ...


@dataclass
class InMemoryMetricsSink:
    counters: Counter[str] = field(default_factory=Counter)
    latencies: dict[str, list[float]] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def observe_ms(self, name: str, value_ms: float) -> None:
        self.latencies.setdefault(name, []).append(value_ms)

    def snapshot(self) -> dict[str, object]:
        """Counters plus per-name latency count and max, for shutdown logs."""
        summary: dict[str, object] = dict(sorted(self.counters.items()))
        for name, samples in sorted(self.latencies.items()):
            summary[f"{name}_count"] = len(samples)
            summary[f"{name}_max_ms"] = round(max(samples), 3)
        return summary
