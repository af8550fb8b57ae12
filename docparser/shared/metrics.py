# docparser/shared/metrics.py
"""
In-process metrics.

Labelled counters and duration histograms for outbound calls, OCR and the
caches. Values are kept in memory and read back through `snapshot()`;
there is no exporter.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

LabelKey = Tuple[Tuple[str, str], ...]

DEFAULT_BUCKETS: Tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


def _key(labels: Dict[str, str]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


@dataclass
class HistogramStats:
    """Cumulative bucket counts plus count/sum."""

    buckets: Tuple[float, ...] = DEFAULT_BUCKETS
    count: int = 0
    total: float = 0.0
    bucket_counts: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            self.bucket_counts = [0] * len(self.buckets)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        for i, upper in enumerate(self.buckets):
            if value <= upper:
                self.bucket_counts[i] += 1


class Counter:
    def __init__(self, name: str):
        self.name = name
        self._values: Dict[LabelKey, float] = defaultdict(float)
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        with self._lock:
            self._values[_key(labels)] += amount

    def value(self, **labels: str) -> float:
        return self._values.get(_key(labels), 0.0)

    def items(self) -> Iterable[Tuple[LabelKey, float]]:
        return list(self._values.items())


class Histogram:
    def __init__(self, name: str, buckets: Tuple[float, ...] = DEFAULT_BUCKETS):
        self.name = name
        self._buckets = buckets
        self._stats: Dict[LabelKey, HistogramStats] = {}
        self._lock = threading.Lock()

    def observe(self, value: float, **labels: str) -> None:
        key = _key(labels)
        with self._lock:
            stats = self._stats.get(key)
            if stats is None:
                stats = self._stats[key] = HistogramStats(buckets=self._buckets)
            stats.observe(value)

    def stats(self, **labels: str) -> HistogramStats:
        return self._stats.get(_key(labels)) or HistogramStats(buckets=self._buckets)

    def items(self) -> Iterable[Tuple[LabelKey, HistogramStats]]:
        return list(self._stats.items())


class MetricsRegistry:
    """Get-or-create registry; one per process unless a test builds its own."""

    def __init__(self) -> None:
        self._counters: Dict[str, Counter] = {}
        self._histograms: Dict[str, Histogram] = {}
        self._lock = threading.Lock()

    def counter(self, name: str) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter(name)
            return self._counters[name]

    def histogram(self, name: str, buckets: Tuple[float, ...] = DEFAULT_BUCKETS) -> Histogram:
        with self._lock:
            if name not in self._histograms:
                self._histograms[name] = Histogram(name, buckets)
            return self._histograms[name]

    def snapshot(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name, c in self._counters.items():
            out[name] = [{"labels": dict(k), "value": v} for k, v in c.items()]
        for name, h in self._histograms.items():
            out[name] = [
                {"labels": dict(k), "count": s.count, "sum": round(s.total, 6)}
                for k, s in h.items()
            ]
        return out


metrics = MetricsRegistry()
