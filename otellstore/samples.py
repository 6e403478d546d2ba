"""A small canned trace used for demos and tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from otellstore.models import LogRecord, SpanRecord


def sample_trace(trace_id: str) -> tuple[list[SpanRecord], list[LogRecord]]:
    """Return the spans and logs of a failing request with a redis cache call."""
    base = datetime(2026, 2, 1, tzinfo=timezone.utc)

    def at(ms: int) -> datetime:
        return base + timedelta(milliseconds=ms)

    spans = [
        SpanRecord(
            trace_id=trace_id,
            span_id="root",
            parent_span_id=None,
            service="api",
            name="GET /v1/orders",
            start_ts=base,
            end_ts=at(1800),
            status="ERROR",
            attrs_json="{}",
            events_json="[]",
        ),
        SpanRecord(
            trace_id=trace_id,
            span_id="child",
            parent_span_id="root",
            service="api",
            name="cache.get redis",
            start_ts=at(900),
            end_ts=at(1600),
            status="ERROR",
            attrs_json='{"peer":"redis:6379"}',
            events_json="[]",
        ),
    ]
    logs = [
        LogRecord(
            ts=at(950),
            service="api",
            severity=13,
            trace_id=trace_id,
            span_id="child",
            body="retrying attempt=2",
            attrs_json="{}",
            attrs_text="attempt=2",
        ),
        LogRecord(
            ts=at(1200),
            service="api",
            severity=17,
            trace_id=trace_id,
            span_id="child",
            body="context deadline exceeded",
            attrs_json='{"peer":"redis:6379"}',
            attrs_text="peer=redis:6379",
        ),
    ]
    return spans, logs