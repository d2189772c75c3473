import pytest

from devplane.config.logging import current_log_context
from devplane.telemetry import current_span, trace_span


def test_nested_spans_share_trace_id():
    with trace_span("outer", clone_url="https://github.com/acme/app.git", skipped=None) as outer:
        with trace_span("inner") as inner:
            assert current_span() is inner
            assert current_log_context()["trace_id"] == outer.trace_id
        assert current_span() is outer

    assert inner.trace_id == outer.trace_id
    assert inner.parent_id == outer.span_id
    assert outer.tags == {"clone_url": "https://github.com/acme/app.git"}
    assert outer.duration_ms is not None
    assert current_span() is None


def test_span_records_and_reraises_errors():
    with pytest.raises(KeyError):
        with trace_span("failing") as span:
            raise KeyError("missing")

    assert isinstance(span.error, KeyError)
    assert span.tags["error"] is True
