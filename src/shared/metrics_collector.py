"""
Metrics collection for the cache gateway.

In-process counters, gauges and histograms for cache lookups, writes,
invalidations and request handling, with JSON and Prometheus text export.
"""

import time
import threading
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional, Union
from enum import Enum

from .logging_config import get_logger


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


def _series_key(name: str, labels: Dict[str, Any]) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{labels[k]}"' for k in sorted(labels))
    return f"{name}{{{rendered}}}"


class Counter:
    """Counter metric that only increases, tracked per label set."""

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[str, Union[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, amount: Union[int, float] = 1, **labels):
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = _series_key(self.name, labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def get_value(self, **labels) -> Union[int, float]:
        """Get the value for a label set, or the total across all label sets."""
        with self._lock:
            if labels:
                return self._values.get(_series_key(self.name, labels), 0)
            return sum(self._values.values())

    def samples(self) -> Dict[str, Union[int, float]]:
        with self._lock:
            return dict(self._values)

    def reset(self):
        with self._lock:
            self._values.clear()


class Gauge:
    """Gauge metric that can increase or decrease."""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._values: Dict[str, Union[int, float]] = {}
        self._lock = threading.Lock()

    def set(self, value: Union[int, float], **labels):
        with self._lock:
            self._values[_series_key(self.name, labels)] = value

    def increment(self, amount: Union[int, float] = 1, **labels):
        key = _series_key(self.name, labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount

    def decrement(self, amount: Union[int, float] = 1, **labels):
        self.increment(-amount, **labels)

    def get_value(self, **labels) -> Union[int, float]:
        with self._lock:
            return self._values.get(_series_key(self.name, labels), 0)

    def samples(self) -> Dict[str, Union[int, float]]:
        with self._lock:
            return dict(self._values)

    def reset(self):
        with self._lock:
            self._values.clear()


class Histogram:
    """Histogram metric for tracking distributions."""

    metric_type = MetricType.HISTOGRAM

    def __init__(self, name: str, description: str = "", buckets: List[float] = None):
        self.name = name
        self.description = description
        self.buckets = buckets or [0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, float('inf')]
        self._bucket_counts = {bucket: 0 for bucket in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: Union[int, float]):
        with self._lock:
            self._sum += value
            self._count += 1
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1

    def time(self) -> 'TimerContext':
        """Context manager observing the elapsed wall time in seconds."""
        return TimerContext(self)

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'count': self._count,
                'sum': self._sum,
                'mean': self._sum / self._count if self._count > 0 else 0,
                'buckets': self._bucket_counts.copy()
            }

    def reset(self):
        with self._lock:
            self._bucket_counts = {bucket: 0 for bucket in self.buckets}
            self._sum = 0.0
            self._count = 0


class TimerContext:
    """Context manager for timing operations into a histogram."""

    def __init__(self, histogram: Histogram):
        self.histogram = histogram
        self.start_time = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        self.histogram.observe(self.duration)


class MetricsCollector:
    """Central registry of metrics."""

    _instance: Optional['MetricsCollector'] = None
    _lock = threading.Lock()

    def __init__(self):
        self.logger = get_logger(__name__, 'metrics_collector')
        self.counters: Dict[str, Counter] = {}
        self.gauges: Dict[str, Gauge] = {}
        self.histograms: Dict[str, Histogram] = {}
        self._registry_lock = threading.Lock()
        self.start_time = datetime.now(timezone.utc)

        self.request_counter = self.get_counter('http_requests_total', 'Total HTTP requests')
        self.request_duration = self.get_histogram('http_request_duration_seconds', 'HTTP request duration')

    @classmethod
    def get_instance(cls) -> 'MetricsCollector':
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get_counter(self, name: str, description: str = "") -> Counter:
        with self._registry_lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, description)
            return self.counters[name]

    def get_gauge(self, name: str, description: str = "") -> Gauge:
        with self._registry_lock:
            if name not in self.gauges:
                self.gauges[name] = Gauge(name, description)
            return self.gauges[name]

    def get_histogram(self, name: str, description: str = "", buckets: List[float] = None) -> Histogram:
        with self._registry_lock:
            if name not in self.histograms:
                self.histograms[name] = Histogram(name, description, buckets)
            return self.histograms[name]

    def record_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record an HTTP request."""
        self.request_counter.increment(method=method, endpoint=endpoint, status=str(status_code))
        self.request_duration.observe(duration)

    def record_cache_lookup(self, resource: str, outcome: str):
        """Record a read-through lookup outcome (hit, miss or skip)."""
        self.get_counter('cache_lookups_total', 'Read-through cache lookups').increment(
            resource=resource, outcome=outcome
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get summary of all metrics."""
        return {
            'uptime_seconds': (datetime.now(timezone.utc) - self.start_time).total_seconds(),
            'counters': {name: counter.samples() for name, counter in self.counters.items()},
            'gauges': {name: gauge.samples() for name, gauge in self.gauges.items()},
            'histograms': {name: hist.get_statistics() for name, hist in self.histograms.items()},
        }

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []

        for metric in list(self.counters.values()) + list(self.gauges.values()):
            lines.append(f"# HELP {metric.name} {metric.description or metric.name}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type.value}")
            for series, value in sorted(metric.samples().items()):
                lines.append(f"{series} {value}")

        for hist in self.histograms.values():
            stats = hist.get_statistics()
            lines.append(f"# HELP {hist.name} {hist.description or hist.name}")
            lines.append(f"# TYPE {hist.name} histogram")
            for bucket, count in stats['buckets'].items():
                le = "+Inf" if bucket == float('inf') else repr(bucket)
                lines.append(f'{hist.name}_bucket{{le="{le}"}} {count}')
            lines.append(f"{hist.name}_sum {stats['sum']}")
            lines.append(f"{hist.name}_count {stats['count']}")

        return "\n".join(lines) + "\n"

    def reset(self):
        """Reset every registered metric."""
        for metric in list(self.counters.values()) + list(self.gauges.values()) + list(self.histograms.values()):
            metric.reset()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.get_instance()
