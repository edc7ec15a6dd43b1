"""In-process metrics rendered in the Prometheus text format.

Counters and gauges keyed by label tuples, plus a fixed-bucket histogram
for model-call latency. Served by GET /metrics.
"""

from __future__ import annotations

import re
import threading
from bisect import bisect_left
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _render_labels(pairs: Sequence[Tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape(val)}"' for name, val in pairs) + "}"


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names = list(label_names or [])
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def _pairs(self, key: LabelValues) -> List[Tuple[str, str]]:
        return list(zip(self.label_names, key))

    def samples(self) -> List[str]:
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError

    def render(self) -> List[str]:
        return [f"# TYPE {self.name} {self.kind}"] + self.samples()


class _Scalar(_Metric):
    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        super().__init__(name, label_names)
        self._values: Dict[LabelValues, float] = {}

    def _add(self, labels: Optional[Dict[str, str]], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            return [f"{self.name}{_render_labels(self._pairs(k))} {v}" for k, v in self._values.items()]

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Counter(_Scalar):
    kind = "counter"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only go up")
        self._add(labels, amount)


class Gauge(_Scalar):
    kind = "gauge"

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        self._add(labels, amount)

    def dec(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        self._add(labels, -amount)


class Histogram(_Metric):
    kind = "histogram"

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, *, buckets: Sequence[float]):
        super().__init__(name, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # per label key: (bucket counts, sum, count)
        self._series: Dict[LabelValues, Tuple[List[int], float, int]] = {}

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        key = self._key(labels)
        with self._lock:
            counts, total, n = self._series.get(key, ([0] * len(self.buckets), 0.0, 0))
            index = bisect_left(self.buckets, value)
            if index < len(counts):
                counts[index] += 1
            self._series[key] = (counts, total + value, n + 1)

    def count(self, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            series = self._series.get(self._key(labels))
            return series[2] if series else 0

    def samples(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            for key, (counts, total, n) in self._series.items():
                pairs = self._pairs(key)
                cumulative = 0
                for bound, hits in zip(self.buckets, counts):
                    cumulative += hits
                    lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', repr(bound))])} {cumulative}")
                lines.append(f"{self.name}_bucket{_render_labels(pairs + [('le', '+Inf')])} {n}")
                lines.append(f"{self.name}_sum{_render_labels(pairs)} {total}")
                lines.append(f"{self.name}_count{_render_labels(pairs)} {n}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._metrics: Dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def _register(self, metric: _Metric) -> _Metric:
        with self._lock:
            existing = self._metrics.get(metric.name)
            if existing is not None:
                if type(existing) is not type(metric):
                    raise ValueError(f"metric {metric.name} already registered as {existing.kind}")
                return existing
            self._metrics[metric.name] = metric
            return metric

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        return self._register(Counter(name, label_names))

    def gauge(self, name: str, label_names: Optional[Iterable[str]] = None) -> Gauge:
        return self._register(Gauge(name, label_names))

    def histogram(self, name: str, label_names: Optional[Iterable[str]] = None, *, buckets: Sequence[float]) -> Histogram:
        return self._register(Histogram(name, label_names, buckets=buckets))

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self._metrics.values()):
            lines.extend(metric.render())
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        for metric in list(self._metrics.values()):
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
chat_requests_total = METRICS.counter("chat_requests_total", ["outcome"])
quota_denials_total = METRICS.counter("quota_denials_total", ["kind"])
model_calls_total = METRICS.counter("model_calls_total", ["backend", "outcome"])
length_retries_total = METRICS.counter("length_retries_total")
length_fallbacks_total = METRICS.counter("length_fallbacks_total")

model_calls_in_flight = METRICS.gauge("model_calls_in_flight", ["backend"])
model_call_seconds = METRICS.histogram(
    "model_call_seconds", ["backend"], buckets=(0.25, 0.5, 1, 2.5, 5, 10, 30, 60)
)


_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,})$")


def normalize_path(path: str) -> str:
    """Collapse numeric and UUID-like path segments to :id."""
    segments = [":id" if _ID_SEGMENT.match(s) else s for s in path.split("/") if s]
    return "/" + "/".join(segments)
