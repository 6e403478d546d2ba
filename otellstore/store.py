"""Query side of the telemetry store: log search, trace views and metrics."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Sequence

from otellstore.db import Database, _from_db_ts, _to_db_ts
from otellstore.models import (
    LogContextMode,
    LogRecord,
    LogsContextMeta,
    MetricNameItem,
    MetricPoint,
    MetricsListRequest,
    MetricsListResponse,
    MetricsRequest,
    MetricsResponse,
    SearchRequest,
    SearchResponse,
    SortOrder,
    SpanRecord,
    SpanRequest,
    SpanResponse,
    StoreError,
    TraceListItem,
    TraceRequest,
    TraceResponse,
    TracesRequest,
    _millis,
)
from otellstore.query import (
    aggregate_metrics,
    apply_pattern,
    compute_search_stats,
    dedupe_logs,
    filter_subtree,
    filter_subtree as _filter_subtree,  # noqa: F401
    matches_attr_filters,
)

TRACE_LOG_LIMIT = 50
SPAN_LOG_LIMIT = 30
_ANCHOR_SLACK = timedelta(seconds=1)

_TRACES_SQL = (
    "SELECT s.trace_id, s.name, s.start_ts, s.end_ts, s.status,"
    " (SELECT COUNT(*) FROM spans s2 WHERE s2.trace_id = s.trace_id) AS span_count"
    " FROM spans s"
    " WHERE s.parent_span_id IS NULL"
)
_TRACES_BY_SERVICE_SQL = (
    _TRACES_SQL
    + " AND EXISTS (SELECT 1 FROM spans sf WHERE sf.trace_id = s.trace_id AND sf.service = ?)"
)


def _log_key(log: LogRecord) -> tuple[datetime, str, str | None]:
    return (log.ts, log.body, log.span_id)


def _policy(mode: LogContextMode) -> str:
    return mode.value


class Store(Database):
    """A telemetry database that answers search, trace and metric queries."""

    def search_logs(self, req: SearchRequest) -> SearchResponse:
        """Search logs by filters and pattern, optionally with context and stats."""
        candidates = self._fetch_logs_candidates(req)
        filtered = apply_pattern(candidates, req)
        total_matches = len(filtered)
        stats = compute_search_stats(filtered) if req.include_stats else None

        if req.count_only:
            return SearchResponse(total_matches=total_matches, returned=0, records=[], stats=stats)

        selected = filtered[: max(req.limit, 0)]
        if req.context_lines > 0:
            selected = self._expand_with_context(selected, req.context_lines)
        if req.context_seconds is not None:
            selected = self._expand_with_time_context(selected, req.context_seconds)

        return SearchResponse(
            total_matches=total_matches,
            returned=len(selected),
            records=selected,
            stats=stats,
        )

    def get_trace(self, req: TraceRequest) -> TraceResponse:
        """Return a trace's spans (optionally one subtree) with related logs."""
        spans = self._fetch_trace_spans(req.trace_id)
        if req.root_span_id is not None:
            spans = filter_subtree(spans, req.root_span_id)

        if req.logs is LogContextMode.NONE:
            logs: list[LogRecord] = []
        elif req.logs is LogContextMode.ALL:
            logs = self._fetch_logs_for_trace(req.trace_id)
        else:
            logs = self._fetch_logs_for_trace_bounded(req.trace_id, spans, TRACE_LOG_LIMIT)

        truncated = req.logs is LogContextMode.BOUNDED and len(logs) >= TRACE_LOG_LIMIT
        return TraceResponse(
            trace_id=req.trace_id,
            spans=spans,
            logs=logs,
            context=LogsContextMeta(
                policy=_policy(req.logs), limit=TRACE_LOG_LIMIT, truncated=truncated
            ),
        )

    def get_span(self, req: SpanRequest) -> SpanResponse:
        """Return one span with its logs; raises StoreError if it does not exist."""
        trace = self.get_trace(
            TraceRequest(trace_id=req.trace_id, root_span_id=None, logs=LogContextMode.NONE)
        )
        span = next((s for s in trace.spans if s.span_id == req.span_id), None)
        if span is None:
            raise StoreError(f"span not found: {req.span_id}")

        if req.logs is LogContextMode.NONE:
            logs: list[LogRecord] = []
        elif req.logs is LogContextMode.ALL:
            logs = [
                log for log in self._fetch_logs_for_trace(req.trace_id)
                if log.span_id == req.span_id
            ]
        else:
            logs = self._fetch_logs_around_span(req.trace_id, req.span_id, SPAN_LOG_LIMIT)

        truncated = req.logs is LogContextMode.BOUNDED and len(logs) == SPAN_LOG_LIMIT
        return SpanResponse(
            span=span,
            logs=logs,
            context=LogsContextMeta(
                policy=_policy(req.logs), limit=SPAN_LOG_LIMIT, truncated=truncated
            ),
        )

    def list_traces(self, req: TracesRequest) -> list[TraceListItem]:
        """List root spans as traces, filtered and ordered by duration."""
        if req.service is not None:
            rows = self._fetch_all(
                _TRACES_BY_SERVICE_SQL + " ORDER BY s.start_ts ASC",
                (req.service,),
                what="query traces",
            )
        else:
            rows = self._fetch_all(_TRACES_SQL + " ORDER BY s.start_ts ASC", what="query traces")

        items: list[TraceListItem] = []
        for trace_id, root_name, start_text, end_text, status, span_count in rows:
            start = _from_db_ts(start_text)
            end = _from_db_ts(end_text)
            if not req.window.contains(start):
                continue
            if req.status is not None and status != req.status:
                continue
            items.append(
                TraceListItem(
                    trace_id=trace_id,
                    root_name=root_name,
                    duration_ms=_millis(end - start),
                    span_count=int(span_count),
                    status=status,
                )
            )

        if req.sort is SortOrder.TS_ASC:
            items.sort(key=lambda item: item.duration_ms)
        else:
            items.sort(key=lambda item: -item.duration_ms)
        return items[: max(req.limit, 0)]

    def query_metrics(self, req: MetricsRequest) -> MetricsResponse:
        """Return the points of one metric and their aggregated series."""
        rows = self._fetch_all(
            "SELECT ts, name, service, value, attrs_json FROM metric_points"
            " WHERE name = ? ORDER BY ts ASC, id ASC",
            (req.name,),
            what="query metrics",
        )
        points: list[MetricPoint] = []
        for ts_text, name, service, value, attrs_json in rows:
            point = MetricPoint(
                ts=_from_db_ts(ts_text),
                name=name,
                service=service,
                value=float(value),
                attrs_json=attrs_json,
            )
            if not req.window.contains(point.ts):
                continue
            if req.service is not None and point.service != req.service:
                continue
            points.append(point)

        series = aggregate_metrics(points, req.group_by, req.agg, req.limit)
        return MetricsResponse(points=points, series=series)

    def list_metric_names(self, req: MetricsListRequest) -> MetricsListResponse:
        """Count points per metric name, most frequent first."""
        rows = self._fetch_all(
            "SELECT ts, name, service FROM metric_points ORDER BY ts DESC",
            what="query metric names",
        )
        counts: Counter[str] = Counter()
        for ts_text, name, service in rows:
            if not req.window.contains(_from_db_ts(ts_text)):
                continue
            if req.service is not None and service != req.service:
                continue
            counts[name] += 1

        metrics = [MetricNameItem(name=name, count=count) for name, count in counts.items()]
        metrics.sort(key=lambda item: (-item.count, item.name))
        return MetricsListResponse(metrics=metrics[: max(req.limit, 0)])

    def _fetch_logs_candidates(self, req: SearchRequest) -> list[LogRecord]:
        where: list[str] = []
        args: list[object] = []
        if req.service is not None:
            where.append("service = ?")
            args.append(req.service)
        if req.trace_id is not None:
            where.append("trace_id = ?")
            args.append(req.trace_id)
        if req.span_id is not None:
            where.append("span_id = ?")
            args.append(req.span_id)
        if req.severity_gte is not None:
            where.append("severity >= ?")
            args.append(int(req.severity_gte))
        if req.window.since is not None:
            where.append("ts >= ?")
            args.append(_to_db_ts(req.window.since))
        if req.window.until is not None:
            where.append("ts <= ?")
            args.append(_to_db_ts(req.window.until))

        where_sql = f" WHERE {' AND '.join(where)}" if where else ""
        rows = self._fetch_all(
            "SELECT ts, service, severity, trace_id, span_id, body, attrs_json, attrs_text"
            f" FROM logs{where_sql} ORDER BY ts ASC, id ASC",
            args,
            what="query search",
        )

        results = [
            LogRecord(
                ts=_from_db_ts(ts_text),
                service=service,
                severity=int(severity),
                trace_id=trace_id,
                span_id=span_id,
                body=body,
                attrs_json=attrs_json,
                attrs_text=attrs_text,
            )
            for ts_text, service, severity, trace_id, span_id, body, attrs_json, attrs_text in rows
            if matches_attr_filters(attrs_json, req.attr_filters)
        ]
        if req.sort is SortOrder.TS_DESC:
            results.reverse()
        return results

    def _fetch_trace_spans(self, trace_id: str) -> list[SpanRecord]:
        rows = self._fetch_all(
            "SELECT trace_id, span_id, parent_span_id, service, name, start_ts, end_ts,"
            " status, attrs_json, events_json FROM spans WHERE trace_id = ?"
            " ORDER BY start_ts ASC",
            (trace_id,),
            what="query trace spans",
        )
        return [
            SpanRecord(
                trace_id=row[0],
                span_id=row[1],
                parent_span_id=row[2],
                service=row[3],
                name=row[4],
                start_ts=_from_db_ts(row[5]),
                end_ts=_from_db_ts(row[6]),
                status=row[7],
                attrs_json=row[8],
                events_json=row[9],
            )
            for row in rows
        ]

    def _fetch_logs_for_trace(self, trace_id: str, limit: int | None = None) -> list[LogRecord]:
        records = self._fetch_logs_candidates(SearchRequest(trace_id=trace_id))
        return records if limit is None else records[:limit]

    def _fetch_logs_around_span(self, trace_id: str, span_id: str, limit: int) -> list[LogRecord]:
        spans = self._fetch_trace_spans(trace_id)
        span = next((s for s in spans if s.span_id == span_id), None)
        if span is None:
            raise StoreError(f"span not found: {span_id}")

        lower = span.start_ts - _ANCHOR_SLACK
        upper = span.end_ts + _ANCHOR_SLACK
        rows = self._fetch_logs_candidates(
            SearchRequest(trace_id=trace_id, sort=SortOrder.TS_ASC)
        )
        return [log for log in rows if lower <= log.ts <= upper][:limit]

    def _fetch_logs_for_trace_bounded(
        self, trace_id: str, spans: Sequence[SpanRecord], limit: int
    ) -> list[LogRecord]:
        all_logs = self._fetch_logs_for_trace(trace_id)
        if len(all_logs) <= limit:
            return all_logs

        anchors: list[datetime] = []
        root = next((s for s in spans if s.parent_span_id is None), None)
        if root is not None:
            anchors += [root.start_ts, root.end_ts]
        for span in spans:
            if span.status == "ERROR":
                anchors += [span.start_ts, span.end_ts]
        slowest = sorted(spans, key=lambda s: -s.duration_ms())[:2]
        for span in slowest:
            anchors += [span.start_ts, span.end_ts]

        chosen = [
            log
            for anchor in anchors
            for log in all_logs
            if anchor - _ANCHOR_SLACK <= log.ts <= anchor + _ANCHOR_SLACK
        ]
        chosen = dedupe_logs(chosen)
        if len(chosen) <= limit:
            return chosen

        half = limit // 2
        tail = limit - half
        return chosen[:half] + chosen[len(chosen) - tail:]

    def _expand_with_context(
        self, selected: Sequence[LogRecord], context_lines: int
    ) -> list[LogRecord]:
        if not selected:
            return []
        all_logs = self._fetch_logs_candidates(SearchRequest())
        wanted = {_log_key(log) for log in selected}

        keep: set[int] = set()
        for idx, row in enumerate(all_logs):
            if _log_key(row) in wanted:
                start = max(idx - context_lines, 0)
                end = min(idx + context_lines + 1, len(all_logs))
                keep.update(range(start, end))
        return [row for idx, row in enumerate(all_logs) if idx in keep]

    def _expand_with_time_context(
        self, selected: Sequence[LogRecord], seconds: int
    ) -> list[LogRecord]:
        if not selected or seconds <= 0:
            return list(selected)
        all_logs = self._fetch_logs_candidates(SearchRequest())
        bound = seconds * 1000
        keep = [
            row
            for row in all_logs
            if any(abs(_millis(row.ts - match.ts)) <= bound for match in selected)
        ]
        return dedupe_logs(keep)