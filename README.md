# otellstore

An embedded store for telemetry data: log records, trace spans and metric
points. Everything is kept in a single SQLite database file (or in memory),
and the store answers the questions you usually ask while debugging a
service:

- grep-like log search with regex or fixed-string patterns (optionally
  case-insensitive), attribute and severity filters, service/trace/span
  filters, time windows, surrounding context by line count or by seconds,
  a count-only mode, and optional per-service and per-severity statistics;
- a trace's spans, optionally narrowed to the subtree under one span, with
  its logs: none, all, or a bounded selection (at most 50) taken around the
  root span, error spans and the two slowest spans;
- a single span with either all of its own logs or up to 30 trace logs
  recorded within a second of its start and end;
- a list of traces (one per root span) with root name, duration, span count
  and status, filtered by service, status and the root's start time, and
  ordered by duration (ascending for `SortOrder.TS_ASC`, otherwise
  descending);
- metric points by name, aggregated per service or overall with `avg`
  (the default), `count`, `min`, `max`, `p50`, `p95` or `p99`;
- the metric names seen, ranked by number of points.

It depends on nothing outside the Python standard library.

## Layout

- `otellstore.models`: the records (`LogRecord`, `SpanRecord`,
  `MetricPoint`), the filters (`TimeWindow`, `AttrFilter`, `Severity`,
  `SortOrder`, `LogContextMode`), the request and response dataclasses,
  and the errors (`OtellError`, `StoreError`, `ParseError`).
- `otellstore.db`: `Database`, which opens a database file (creating its
  directory) or an in-memory one, writes records (`insert_logs`,
  `insert_spans`, which replaces spans with the same trace and span id,
  and `insert_metrics`), reports counts, file size and log time range via
  `status()`, hands out a `queue.Queue` of newly inserted logs via
  `subscribe_logs()`, and applies retention by age (`prune_ttl`, taking a
  `timedelta` or seconds) and size (`prune_size`, which drops the oldest
  10,000 logs and metric points when the file is too large), or both with
  `run_retention`. It can be used as a context manager and has `close()`.
- `otellstore.store`: `Store`, a `Database` with the query methods
  `search_logs`, `get_trace`, `get_span`, `list_traces`, `query_metrics`
  and `list_metric_names`.
- `otellstore.query`: the pure helpers behind those queries:
  `compute_search_stats`, `severity_label`, `percentile`,
  `aggregate_metrics`, `filter_subtree`, `matches_attr_filters`,
  `apply_pattern` and `dedupe_logs`.
- `otellstore.samples`: `sample_trace(trace_id)`, a two-span failing
  request with two logs, handy for tests and demonstrations.

## Example

```python
from otellstore.models import AttrFilter, LogContextMode, SearchRequest, TraceRequest
from otellstore.samples import sample_trace
from otellstore.store import Store

with Store.open_in_memory() as store:
    spans, logs = sample_trace("t1")
    store.insert_spans(spans)
    store.insert_logs(logs)

    found = store.search_logs(
        SearchRequest(pattern="deadline", attr_filters=[AttrFilter.parse("attrs.peer=redis:*")])
    )
    print(found.total_matches, [r.body for r in found.records])

    trace = store.get_trace(TraceRequest(trace_id="t1", logs=LogContextMode.BOUNDED))
    print([s.name for s in trace.spans], trace.context.policy)
```

## Errors

Failed database operations and missing spans raise `StoreError`; an
invalid regex pattern or attribute filter raises `ParseError`. Failing to
create the database directory, to stat the file for size pruning, or to
convert a retention TTL raises `OtellError`, the base of both.

## What it does not do

The package is a storage and query library only. It does not receive
telemetry over the network, offer a command line or a server, or render
results; records are handed to it as `LogRecord`, `SpanRecord` and
`MetricPoint` objects, and answers come back as dataclasses.