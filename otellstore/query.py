"""Pure helpers behind log search, trace views and metric aggregation."""

from __future__ import annotations

import json
import math
import re
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence

from otellstore.models import (
    AttrFilter,
    LogRecord,
    MetricPoint,
    MetricSeries,
    ParseError,
    SearchRequest,
    SearchStats,
    SpanRecord,
)

_ATTR_PREFIX = "attrs."
_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz"
)


def _ascii_lower(text: str) -> str:
    """Lowercase ASCII letters only, leaving every other character unchanged."""
    return text.translate(_ASCII_LOWER)


def _ranked(counts: Counter[str]) -> list[tuple[str, int]]:
    """Entries by descending count, ties broken by ascending key."""
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def compute_search_stats(records: Iterable[LogRecord]) -> SearchStats:
    """Count matches per service and per severity label."""
    by_service: Counter[str] = Counter()
    by_severity: Counter[str] = Counter()
    for record in records:
        by_service[record.service] += 1
        by_severity[severity_label(record.severity)] += 1
    return SearchStats(by_service=_ranked(by_service), by_severity=_ranked(by_severity))


def severity_label(level: int) -> str:
    """Map an OpenTelemetry severity number to its band name."""
    if 1 <= level <= 4:
        return "TRACE"
    if 5 <= level <= 8:
        return "DEBUG"
    if 9 <= level <= 12:
        return "INFO"
    if 13 <= level <= 16:
        return "WARN"
    if 17 <= level <= 20:
        return "ERROR"
    return "FATAL"


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile of already sorted values; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    position = (len(sorted_values) - 1) * pct
    # Round half away from zero; position is never negative here.
    idx = max(int(math.floor(position + 0.5)), 0)
    return sorted_values[min(idx, len(sorted_values) - 1)]


def _aggregate(values: list[float], agg: str) -> float:
    if agg == "count":
        return float(len(values))
    if agg == "min":
        return values[0] if values else 0.0
    if agg == "max":
        return values[-1] if values else 0.0
    if agg == "p50":
        return percentile(values, 0.50)
    if agg == "p95":
        return percentile(values, 0.95)
    if agg == "p99":
        return percentile(values, 0.99)
    return sum(values) / len(values) if values else 0.0


def aggregate_metrics(
    points: Iterable[MetricPoint],
    group_by: str | None,
    agg: str | None,
    limit: int,
) -> list[MetricSeries]:
    """Aggregate point values per group (``service`` or a single ``all`` group)."""
    groups: defaultdict[str, list[float]] = defaultdict(list)
    for point in points:
        group = point.service if group_by == "service" else "all"
        groups[group].append(point.value)

    how = agg if agg is not None else "avg"
    series = [
        MetricSeries(group=group, value=_aggregate(sorted(values), how))
        for group, values in groups.items()
    ]
    series.sort(key=lambda s: s.group)
    return series[:limit]


def filter_subtree(spans: Iterable[SpanRecord], root: str) -> list[SpanRecord]:
    """Return ``root`` and all its descendants, ordered by start time."""
    children: defaultdict[str | None, list[str]] = defaultdict(list)
    by_id: dict[str, SpanRecord] = {}
    for span in spans:
        children[span.parent_span_id].append(span.span_id)
        by_id[span.span_id] = span

    keep: set[str] = set()
    stack = [root]
    while stack:
        span_id = stack.pop()
        if span_id in keep:
            continue
        keep.add(span_id)
        stack.extend(children.get(span_id, ()))

    selected = [span for span_id, span in by_id.items() if span_id in keep]
    selected.sort(key=lambda s: s.start_ts)
    return selected


def _strip_attr_prefix(key: str) -> str:
    while key.startswith(_ATTR_PREFIX):
        key = key[len(_ATTR_PREFIX):]
    return key


def matches_attr_filters(attrs_json: str, filters: Sequence[AttrFilter]) -> bool:
    """True when every filter matches the string attribute it names."""
    if not filters:
        return True
    try:
        parsed = json.loads(attrs_json)
    except (json.JSONDecodeError, TypeError):
        parsed = None
    attrs = parsed if isinstance(parsed, dict) else {}

    for attr_filter in filters:
        raw = attrs.get(_strip_attr_prefix(attr_filter.key))
        value = raw if isinstance(raw, str) else ""
        if not attr_filter.matches(value):
            return False
    return True


def apply_pattern(rows: Iterable[LogRecord], req: SearchRequest) -> list[LogRecord]:
    """Keep the rows whose body matches the request's pattern, if any."""
    rows = list(rows)
    pattern = req.pattern
    if pattern is None:
        return rows

    if req.fixed:
        if req.ignore_case:
            needle = _ascii_lower(pattern)
            return [r for r in rows if needle in _ascii_lower(r.body)]
        return [r for r in rows if pattern in r.body]

    try:
        regex = re.compile(pattern, re.IGNORECASE if req.ignore_case else 0)
    except re.error as exc:
        raise ParseError(f"invalid regex pattern: {exc}") from exc
    return [r for r in rows if regex.search(r.body)]


def dedupe_logs(logs: Iterable[LogRecord]) -> list[LogRecord]:
    """Drop repeats of (ts, body, span_id), keeping the first, then order by time."""
    seen: set[tuple[object, str, str | None]] = set()
    unique: list[LogRecord] = []
    for log in logs:
        key = (log.ts, log.body, log.span_id)
        if key in seen:
            continue
        seen.add(key)
        unique.append(log)
    unique.sort(key=lambda log: log.ts)
    return unique