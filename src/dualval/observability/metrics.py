"""
DualVal Metrics

In-process metrics for the validation pipeline: iterations, node pass/fail,
disagreement rate, learning batch throughput and provider calls. External
dashboards read the registry; nothing here exports on its own.
"""

import time
from collections import defaultdict
from threading import Lock
from typing import Any

Labels = dict[str, str] | None


def _labels_key(labels: Labels) -> str:
    """Stable key for a label set."""
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class _Metric:
    """Shared name/description/lock plumbing."""

    kind = "metric"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._lock = Lock()


class Counter(_Metric):
    """
    Monotonically increasing counter.

    Usage:
        counter = Counter("dualval_iterations_total", "Iterations scored")
        counter.inc(labels={"outcome": "passed"})
    """

    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._values: dict[str, float] = defaultdict(float)

    def inc(self, value: float = 1.0, labels: Labels = None) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._values[_labels_key(labels)] += value

    def get(self, labels: Labels = None) -> float:
        with self._lock:
            return self._values.get(_labels_key(labels), 0.0)

    def total(self) -> float:
        """Sum across all label combinations."""
        with self._lock:
            return sum(self._values.values())

    def values(self) -> dict[str, float]:
        with self._lock:
            return dict(self._values)


class Gauge(_Metric):
    """Value that can go up or down."""

    kind = "gauge"

    def __init__(self, name: str, description: str = "") -> None:
        super().__init__(name, description)
        self._values: dict[str, float] = defaultdict(float)

    def set(self, value: float, labels: Labels = None) -> None:
        with self._lock:
            self._values[_labels_key(labels)] = value

    def inc(self, value: float = 1.0, labels: Labels = None) -> None:
        with self._lock:
            self._values[_labels_key(labels)] += value

    def dec(self, value: float = 1.0, labels: Labels = None) -> None:
        self.inc(-value, labels)

    def get(self, labels: Labels = None) -> float:
        with self._lock:
            return self._values.get(_labels_key(labels), 0.0)

    def values(self) -> dict[str, float]:
        with self._lock:
            return dict(self._values)


class Histogram(_Metric):
    """
    Distribution of observed values (latencies, confidences).

    Usage:
        with histogram.time(labels={"operation": "evaluate"}):
            await provider.evaluate(...)
    """

    kind = "histogram"

    DEFAULT_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf"))

    def __init__(
        self, name: str, description: str = "", buckets: tuple[float, ...] | None = None
    ) -> None:
        super().__init__(name, description)
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._bucket_counts: dict[str, dict[float, int]] = defaultdict(
            lambda: dict.fromkeys(self._buckets, 0)
        )
        self._sums: dict[str, float] = defaultdict(float)
        self._counts: dict[str, int] = defaultdict(int)

    def observe(self, value: float, labels: Labels = None) -> None:
        key = _labels_key(labels)
        with self._lock:
            self._sums[key] += value
            self._counts[key] += 1
            for bucket in self._buckets:
                if value <= bucket:
                    self._bucket_counts[key][bucket] += 1

    def time(self, labels: Labels = None) -> "_Timer":
        return _Timer(self, labels)

    def get_count(self, labels: Labels = None) -> int:
        with self._lock:
            return self._counts.get(_labels_key(labels), 0)

    def get_sum(self, labels: Labels = None) -> float:
        with self._lock:
            return self._sums.get(_labels_key(labels), 0.0)

    def get_mean(self, labels: Labels = None) -> float:
        count = self.get_count(labels)
        return self.get_sum(labels) / count if count else 0.0


class _Timer:
    """Observe elapsed wall time into a histogram."""

    def __init__(self, histogram: Histogram, labels: Labels) -> None:
        self._histogram = histogram
        self._labels = labels
        self._start = 0.0

    def __enter__(self) -> "_Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self._histogram.observe(time.perf_counter() - self._start, self._labels)


class MetricsRegistry:
    """Get-or-create registry keyed by metric name."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = Lock()

    def _get_or_create(self, cls: type, name: str, *args: Any) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = cls(name, *args)
                self._metrics[name] = metric
            elif not isinstance(metric, cls):
                raise TypeError(f"Metric '{name}' already registered as {metric.kind}")
            return metric

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(Counter, name, description)

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(Gauge, name, description)

    def histogram(
        self, name: str, description: str = "", buckets: tuple[float, ...] | None = None
    ) -> Histogram:
        return self._get_or_create(Histogram, name, description, buckets)

    def get_all(self) -> dict[str, Any]:
        """Snapshot of every metric."""
        with self._lock:
            metrics = list(self._metrics.values())
        result: dict[str, Any] = {}
        for metric in metrics:
            if isinstance(metric, Histogram):
                result[metric.name] = {
                    "count": metric.get_count(),
                    "sum": metric.get_sum(),
                    "mean": metric.get_mean(),
                }
            else:
                result[metric.name] = metric.values()  # type: ignore[attr-defined]
        return result


# Global metrics registry
_registry: MetricsRegistry | None = None


def get_registry() -> MetricsRegistry:
    """Get global metrics registry."""
    global _registry
    if _registry is None:
        _registry = MetricsRegistry()
    return _registry


def reset_metrics() -> None:
    """Reset global metrics (for testing)."""
    global _registry
    _registry = None


class DualValMetrics:
    """Named pipeline metrics."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self._registry = registry or get_registry()

    @property
    def iterations(self) -> Counter:
        """Completed scoring iterations (labels: outcome)."""
        return self._registry.counter("dualval_iterations_total", "Scoring iterations")

    @property
    def node_results(self) -> Counter:
        """Node pass/fail outcomes (labels: result, node_type)."""
        return self._registry.counter("dualval_node_results_total", "Node pass/fail")

    @property
    def nodes_reused(self) -> Counter:
        """Node scores carried forward without rescoring."""
        return self._registry.counter("dualval_nodes_reused_total", "Node scores reused")

    @property
    def workflows(self) -> Counter:
        """Workflow transitions (labels: status)."""
        return self._registry.counter("dualval_workflows_total", "Workflow status transitions")

    @property
    def workflows_suspended(self) -> Gauge:
        """Workflows awaiting revised content."""
        return self._registry.gauge("dualval_workflows_suspended", "Workflows awaiting revision")

    @property
    def final_confidence(self) -> Histogram:
        """Final confidence of terminal workflows."""
        return self._registry.histogram(
            "dualval_final_confidence",
            "Final workflow confidence",
            buckets=(40.0, 50.0, 60.0, 70.0, 80.0, 85.0, 90.0, 95.0, 100.0),
        )

    @property
    def disagreements(self) -> Counter:
        """Disagreements by transition (labels: status)."""
        return self._registry.counter("dualval_disagreements_total", "Disagreement transitions")

    @property
    def learning_events(self) -> Counter:
        """Learning events recorded (labels: event_type)."""
        return self._registry.counter("dualval_learning_events_total", "Learning events")

    @property
    def learning_batches(self) -> Counter:
        """Processed learning batches (labels: outcome)."""
        return self._registry.counter("dualval_learning_batches_total", "Learning batches")

    @property
    def learning_insights(self) -> Counter:
        """Insights generated."""
        return self._registry.counter("dualval_learning_insights_total", "Learning insights")

    @property
    def provider_calls(self) -> Counter:
        """Provider calls (labels: operation, outcome)."""
        return self._registry.counter("dualval_provider_calls_total", "Provider calls")

    @property
    def provider_latency(self) -> Histogram:
        """Provider call latency in seconds."""
        return self._registry.histogram("dualval_provider_latency_seconds", "Provider latency")

    @property
    def errors(self) -> Counter:
        """Errors by type."""
        return self._registry.counter("dualval_errors_total", "Errors by type")

    def emit(self, name: str, value: float = 1.0, tags: dict[str, str] | None = None) -> None:
        """Emit an ad-hoc named event into a counter."""
        self._registry.counter(name, f"Event: {name}").inc(value, tags)

    def disagreement_rate(self) -> float:
        """Disagreements opened per completed workflow."""
        opened = self.disagreements.get({"status": "pending"})
        finished = sum(
            self.workflows.get({"status": s}) for s in ("approved", "rejected", "escalated")
        )
        return opened / finished if finished else 0.0


def get_metrics() -> DualValMetrics:
    """Get pipeline metrics bound to the global registry."""
    return DualValMetrics()
