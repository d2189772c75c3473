"""Span helpers that capture errors and timings for service entry points."""

from __future__ import annotations

import contextvars
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from devplane.config.logging import log_context
from devplane.telemetry.metrics import get_metrics_client

logger = logging.getLogger(__name__)

_current_span: contextvars.ContextVar[Optional["Span"]] = contextvars.ContextVar(
    "devplane_current_span", default=None
)


@dataclass(slots=True)
class Span:
    """A unit of traced work; child spans share the parent's trace id."""

    name: str
    trace_id: str
    span_id: str
    parent_id: Optional[str] = None
    tags: dict[str, Any] = field(default_factory=dict)
    error: Optional[BaseException] = None
    duration_ms: Optional[float] = None

    def set_tag(self, key: str, value: Any) -> None:
        self.tags[key] = value

    def set_error(self, exc: BaseException) -> None:
        self.error = exc
        self.tags["error"] = True


def current_span() -> Optional[Span]:
    return _current_span.get()


@contextmanager
def trace_span(name: str, **tags: Any) -> Iterator[Span]:
    """Open a span, mark it failed on exceptions and always re-raise.

    Emits ``span.<name>`` timing and error counters and binds ``trace_id`` to
    log records emitted inside the block.
    """

    parent = _current_span.get()
    span = Span(
        name=name,
        trace_id=parent.trace_id if parent else uuid.uuid4().hex,
        span_id=uuid.uuid4().hex[:16],
        parent_id=parent.span_id if parent else None,
        tags={k: v for k, v in tags.items() if v is not None},
    )
    token = _current_span.set(span)
    metrics = get_metrics_client()
    start = time.perf_counter()
    try:
        with log_context(trace_id=span.trace_id):
            yield span
    except BaseException as exc:
        span.set_error(exc)
        metrics.increment(f"span.{name}.error")
        logger.debug(
            "Span %s failed: %s",
            name,
            exc,
            extra={"span": name, "span_tags": span.tags},
        )
        raise
    finally:
        span.duration_ms = (time.perf_counter() - start) * 1000
        metrics.timing(f"span.{name}", span.duration_ms)
        _current_span.reset(token)


__all__ = ["Span", "current_span", "trace_span"]
