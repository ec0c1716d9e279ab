"""In-process metrics for egress jobs and output delivery."""

import time
from collections import defaultdict
from threading import Lock
from typing import Any, Dict, List, Optional


# Metric names
EGRESS_STARTED = "egress_started_total"
EGRESS_ENDED = "egress_ended_total"
EGRESS_ERRORS = "egress_errors_total"
EGRESS_ACTIVE = "egress_active_count"
DELIVERY_RETRIES = "egress_delivery_retries_total"
START_DURATION = "egress_start_duration"


def _summarize(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"count": 0, "sum": 0, "min": 0, "max": 0, "avg": 0}

    ordered = sorted(values)
    return {
        "count": len(values),
        "sum": sum(values),
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(values) / len(values),
        "p50": ordered[int((len(ordered) - 1) * 0.5)],
        "p95": ordered[int((len(ordered) - 1) * 0.95)],
    }


class MetricsCollector:
    """Thread-safe metrics collector.

    Counters and gauges are keyed by name plus sorted labels, e.g.
    ``egress_ended_total{status=EGRESS_COMPLETE}``.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, List[float]] = defaultdict(list)
        self._labels: Dict[str, Dict[str, str]] = {}

    @staticmethod
    def _get_metric_key(name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment counter metric."""
        with self._lock:
            key = self._get_metric_key(name, labels)
            self._counters[key] += value
            if labels:
                self._labels[key] = labels

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set gauge metric value."""
        with self._lock:
            key = self._get_metric_key(name, labels)
            self._gauges[key] = value
            if labels:
                self._labels[key] = labels

    def record_timer(self, name: str, duration: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record timer duration in seconds."""
        with self._lock:
            key = self._get_metric_key(name, labels)
            self._timers[key].append(duration)
            if labels:
                self._labels[key] = labels

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(self._get_metric_key(name, labels), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get(self._get_metric_key(name, labels))

    def get_timer_stats(self, name: str, labels: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        with self._lock:
            return _summarize(self._timers.get(self._get_metric_key(name, labels), []))

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all metrics as dictionary."""
        with self._lock:
            metrics: Dict[str, Any] = {}
            for key, value in self._counters.items():
                metrics[key] = {"type": "counter", "value": value, "labels": self._labels.get(key, {})}
            for key, value in self._gauges.items():
                metrics[key] = {"type": "gauge", "value": value, "labels": self._labels.get(key, {})}
            for key, values in self._timers.items():
                metrics[key] = {"type": "timer", "stats": _summarize(values), "labels": self._labels.get(key, {})}
            return metrics

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()
            self._labels.clear()


class Timer:
    """Context manager for timing operations."""

    def __init__(self, collector: MetricsCollector, name: str, labels: Optional[Dict[str, str]] = None):
        self.collector = collector
        self.name = name
        self.labels = labels
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.collector.record_timer(self.name, time.perf_counter() - self.start_time, self.labels)


# Global metrics collector instance
metrics_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance."""
    return metrics_collector


def timer(name: str, labels: Optional[Dict[str, str]] = None) -> Timer:
    """Create timer context manager."""
    return Timer(metrics_collector, name, labels)
