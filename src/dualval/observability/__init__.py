"""
DualVal Observability Layer

Tracing, metrics and logging setup.
"""

from dualval.observability.log import configure_logging
from dualval.observability.metrics import (
    Counter,
    DualValMetrics,
    Gauge,
    Histogram,
    MetricsRegistry,
    get_metrics,
    get_registry,
    reset_metrics,
)
from dualval.observability.tracer import (
    Span,
    SpanKind,
    SpanStatus,
    Tracer,
    current_span,
    get_tracer,
    reset_tracers,
)

__all__ = [
    # Tracer
    "Tracer",
    "Span",
    "SpanKind",
    "SpanStatus",
    "current_span",
    "get_tracer",
    "reset_tracers",
    # Metrics
    "MetricsRegistry",
    "Counter",
    "Gauge",
    "Histogram",
    "DualValMetrics",
    "get_registry",
    "get_metrics",
    "reset_metrics",
    # Logging
    "configure_logging",
]
