"""Metrics and tracing helpers."""

from devplane.telemetry.metrics import MetricsClient, get_metrics_client
from devplane.telemetry.tracing import Span, current_span, trace_span

__all__ = ["MetricsClient", "Span", "current_span", "get_metrics_client", "trace_span"]
