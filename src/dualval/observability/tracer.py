"""
DualVal Tracer

Spans around workflow passes, graph nodes, scoring and provider calls.

The active span lives in a ContextVar, so concurrent workflows running on one
event loop each keep their own parent chain. A root span opened with a
``workflow_id`` attribute uses that id as its trace id and every child span
inherits it, which makes all spans of one workflow queryable together.
"""

import json
import time
import uuid
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator

from dualval.config import get_settings

DEFAULT_BUFFER_SIZE = 2000


class SpanKind(str, Enum):
    """What a span measures."""

    WORKFLOW = "workflow"
    GRAPH_NODE = "graph_node"
    SCORING = "scoring"
    PROVIDER = "provider"


class SpanStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


@dataclass
class Span:
    trace_id: str
    span_id: str
    name: str
    kind: SpanKind
    parent_id: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float | None = None
    status: SpanStatus | None = None
    error: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[key] = value

    @property
    def finished(self) -> bool:
        return self.status is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "kind": self.kind.value,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.duration_ms,
            "status": self.status.value if self.status else None,
            "error": self.error,
            "attributes": self.attributes,
        }


_active_span: ContextVar[Span | None] = ContextVar("dualval_active_span", default=None)


def current_span() -> Span | None:
    """Innermost open span of the running task, from any tracer."""
    return _active_span.get()


class Tracer:
    """
    Span recorder for one component.

    Usage:
        tracer = get_tracer("dualval.scoring")

        with tracer.span("assess_many", SpanKind.SCORING, {"workflow_id": wf_id}) as span:
            ...
            span.set_attribute("failed", 1)
    """

    def __init__(
        self,
        name: str,
        export_path: Path | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self._name = name
        self._export_path = export_path
        self._finished: deque[Span] = deque(maxlen=buffer_size)

    @contextmanager
    def span(
        self,
        name: str,
        kind: SpanKind = SpanKind.SCORING,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Open a span under the current span for the duration of the block."""
        attributes = dict(attributes or {})
        parent = _active_span.get()
        if parent is not None:
            trace_id = parent.trace_id
        else:
            trace_id = str(attributes.get("workflow_id") or uuid.uuid4().hex[:16])

        span = Span(
            trace_id=trace_id,
            span_id=uuid.uuid4().hex[:16],
            name=f"{self._name}.{name}",
            kind=kind,
            parent_id=parent.span_id if parent else None,
            attributes=attributes,
        )
        token = _active_span.set(span)
        started = time.perf_counter()
        try:
            yield span
        except Exception as e:
            span.status = SpanStatus.ERROR
            span.error = f"{type(e).__name__}: {e}"
            raise
        else:
            span.status = SpanStatus.OK
        finally:
            span.duration_ms = (time.perf_counter() - started) * 1000
            _active_span.reset(token)
            self._finished.append(span)
            if self._export_path:
                self._export(span)

    def _export(self, span: Span) -> None:
        self._export_path.mkdir(parents=True, exist_ok=True)
        with open(self._export_path / f"{span.trace_id}.jsonl", "a") as f:
            f.write(json.dumps(span.to_dict(), default=str) + "\n")

    def spans(self, trace_id: str | None = None) -> list[Span]:
        """Finished spans, oldest first, optionally for one trace."""
        if trace_id is None:
            return list(self._finished)
        return [s for s in self._finished if s.trace_id == trace_id]


_tracers: dict[str, Tracer] = {}


def get_tracer(name: str) -> Tracer:
    """Get or create a tracer by name. Spans are written to disk only in debug mode."""
    if name not in _tracers:
        settings = get_settings()
        export_path = settings.storage.trace_path if settings.features.debug else None
        _tracers[name] = Tracer(name, export_path)
    return _tracers[name]


def reset_tracers() -> None:
    """Reset all tracers (for testing)."""
    _tracers.clear()
