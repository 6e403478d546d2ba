from datetime import datetime, timedelta, timezone

import pytest

from otellstore.models import (
    AttrFilter,
    LogRecord,
    MetricPoint,
    ParseError,
    SearchRequest,
)
from otellstore.query import (
    aggregate_metrics,
    apply_pattern,
    compute_search_stats,
    dedupe_logs,
    filter_subtree,
    matches_attr_filters,
    percentile,
    severity_label,
)
from otellstore.samples import sample_trace

T0 = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _log(body, seconds=0, service="api", severity=9, span_id=None):
    return LogRecord(
        ts=T0 + timedelta(seconds=seconds),
        service=service,
        severity=severity,
        span_id=span_id,
        body=body,
    )


def _point(value, service="api", seconds=0):
    return MetricPoint(
        ts=T0 + timedelta(seconds=seconds),
        name="http.server.duration",
        service=service,
        value=value,
    )


@pytest.mark.parametrize(
    "level,label",
    [
        (1, "TRACE"),
        (4, "TRACE"),
        (5, "DEBUG"),
        (8, "DEBUG"),
        (9, "INFO"),
        (13, "WARN"),
        (17, "ERROR"),
        (20, "ERROR"),
        (21, "FATAL"),
        (0, "FATAL"),
    ],
)
def test_severity_label(level, label):
    assert severity_label(level) == label


def test_percentile_empty_is_zero():
    assert percentile([], 0.95) == 0.0


def test_percentile_returns_elements_of_input():
    values = [10.0, 20.0]
    assert percentile(values, 0.95) == 20.0
    assert percentile(values, 0.0) == 10.0
    # Half-way positions round away from zero.
    assert percentile([1.0, 2.0], 0.5) == 2.0


def test_aggregate_count_min_max():
    points = [_point(20.0), _point(10.0, seconds=1), _point(30.0, seconds=2)]
    assert aggregate_metrics(points, None, "count", 10)[0].value == len(points)
    assert aggregate_metrics(points, None, "min", 10)[0].value == 10.0
    assert aggregate_metrics(points, None, "max", 10)[0].value == 30.0


def test_aggregate_default_is_average():
    series = aggregate_metrics([_point(10.0), _point(20.0)], None, None, 10)
    assert [s.group for s in series] == ["all"]
    assert series[0].value == 15.0


def test_aggregate_groups_by_service_sorted_and_limited():
    points = [_point(1.0, "web"), _point(2.0, "api"), _point(3.0, "db")]
    series = aggregate_metrics(points, "service", "max", 10)
    assert [s.group for s in series] == ["api", "db", "web"]
    assert aggregate_metrics(points, "service", "max", 2) == series[:2]


def test_aggregate_p95_at_least_min():
    series = aggregate_metrics([_point(10.0), _point(20.0)], "service", "p95", 10)
    assert len(series) == 1
    assert series[0].value >= 10.0


def test_compute_search_stats_orders_by_count():
    records = [
        _log("a", service="web", severity=17),
        _log("b", service="api", severity=17),
        _log("c", service="api", severity=13),
    ]
    stats = compute_search_stats(records)
    assert stats.by_service == [("api", 2), ("web", 1)]
    assert stats.by_severity == [("ERROR", 2), ("WARN", 1)]


def test_filter_subtree_from_root_keeps_all():
    spans, _ = sample_trace("t1")
    kept = filter_subtree(spans, "root")
    assert [s.span_id for s in kept] == ["root", "child"]


def test_filter_subtree_from_child_and_unknown():
    spans, _ = sample_trace("t1")
    assert [s.span_id for s in filter_subtree(spans, "child")] == ["child"]
    assert filter_subtree(spans, "missing") == []


def test_matches_attr_filters():
    redis = AttrFilter.parse("attrs.peer=redis:*")
    assert matches_attr_filters('{"peer":"redis:6379"}', [redis])
    assert not matches_attr_filters('{"peer":"postgres:5432"}', [redis])
    assert matches_attr_filters("not json", [])
    assert not matches_attr_filters("not json", [redis])


def test_matches_attr_filters_strips_repeated_prefix():
    flt = AttrFilter.parse("attrs.attrs.peer=redis:*")
    assert matches_attr_filters('{"peer":"redis:6379"}', [flt])


def test_apply_pattern_without_pattern_keeps_everything():
    rows = [_log("one"), _log("two", 1)]
    assert apply_pattern(rows, SearchRequest()) == rows


def test_apply_pattern_regex_and_ignore_case():
    rows = [_log("timeout from redis"), _log("healthy", 1), _log("TIMEOUT", 2)]
    hits = apply_pattern(rows, SearchRequest(pattern="timeout"))
    assert [r.body for r in hits] == ["timeout from redis"]
    hits = apply_pattern(rows, SearchRequest(pattern="time.ut", ignore_case=True))
    assert [r.body for r in hits] == ["timeout from redis", "TIMEOUT"]


def test_apply_pattern_fixed_is_literal():
    rows = [_log("a.b"), _log("axb", 1), _log("A.B", 2)]
    hits = apply_pattern(rows, SearchRequest(pattern="a.b", fixed=True))
    assert [r.body for r in hits] == ["a.b"]
    hits = apply_pattern(rows, SearchRequest(pattern="a.b", fixed=True, ignore_case=True))
    assert [r.body for r in hits] == ["a.b", "A.B"]


def test_apply_pattern_invalid_regex():
    with pytest.raises(ParseError):
        apply_pattern([_log("x")], SearchRequest(pattern="("))


def test_dedupe_logs_removes_repeats_and_sorts():
    later = _log("later", 5, span_id="s1")
    early = _log("early", 0, span_id="s1")
    result = dedupe_logs([later, early, later, early])
    assert result == [early, later]
    assert dedupe_logs(result) == result