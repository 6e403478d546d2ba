"""SQLite-backed storage for logs, spans and metric points."""

from __future__ import annotations

import os
import queue
import sqlite3
import threading
import weakref
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

from otellstore.models import (
    LogRecord,
    MetricPoint,
    OtellError,
    SpanRecord,
    StatusResponse,
    StoreError,
)

MEMORY_PATH = ":memory:"
LOG_CHANNEL_CAPACITY = 8192
SIZE_PRUNE_BATCH = 10_000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS logs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  service TEXT NOT NULL,
  severity INTEGER NOT NULL,
  trace_id TEXT,
  span_id TEXT,
  body TEXT NOT NULL,
  attrs_json TEXT NOT NULL,
  attrs_text TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS spans (
  trace_id TEXT NOT NULL,
  span_id TEXT NOT NULL,
  parent_span_id TEXT,
  service TEXT NOT NULL,
  name TEXT NOT NULL,
  start_ts TEXT NOT NULL,
  end_ts TEXT NOT NULL,
  status TEXT NOT NULL,
  attrs_json TEXT NOT NULL,
  events_json TEXT NOT NULL,
  PRIMARY KEY(trace_id, span_id)
);

CREATE TABLE IF NOT EXISTS metric_points (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  name TEXT NOT NULL,
  service TEXT NOT NULL,
  value REAL NOT NULL,
  attrs_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_logs_ts ON logs(ts);
CREATE INDEX IF NOT EXISTS idx_logs_service_ts ON logs(service, ts);
CREATE INDEX IF NOT EXISTS idx_logs_trace ON logs(trace_id);
CREATE INDEX IF NOT EXISTS idx_logs_span ON logs(span_id);

CREATE INDEX IF NOT EXISTS idx_spans_trace ON spans(trace_id);
CREATE INDEX IF NOT EXISTS idx_spans_service_start ON spans(service, start_ts);

CREATE INDEX IF NOT EXISTS idx_metrics_name_ts ON metric_points(name, ts);
CREATE INDEX IF NOT EXISTS idx_metrics_service_ts ON metric_points(service, ts);
"""

_TS_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _to_db_ts(ts: datetime) -> str:
    """Render a timestamp as sortable UTC text; naive values are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_db_ts(text: str) -> datetime:
    return datetime.strptime(text, _TS_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """A telemetry database with a broadcast feed of newly inserted logs."""

    def __init__(self, conn: sqlite3.Connection, db_path: str) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self.db_path = db_path
        self._subscribers: weakref.WeakSet[queue.Queue[LogRecord]] = weakref.WeakSet()
        self._subscribers_lock = threading.Lock()

    @classmethod
    def open(cls, path: str | os.PathLike[str]) -> Database:
        """Open (creating if needed) a database file and its parent directory."""
        path = Path(path)
        if str(path.parent):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise OtellError(f"failed to create db dir: {exc}") from exc
        try:
            conn = sqlite3.connect(str(path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"failed to open database: {exc}") from exc
        cls._init_schema(conn)
        return cls(conn, str(path))

    @classmethod
    def open_in_memory(cls) -> Database:
        """Open a fresh database that lives only in memory."""
        try:
            conn = sqlite3.connect(MEMORY_PATH, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"failed to open in-memory db: {exc}") from exc
        cls._init_schema(conn)
        return cls(conn, MEMORY_PATH)

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        try:
            conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as exc:
            conn.close()
            raise StoreError(f"failed to initialize schema: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Hold the connection lock for the duration of the block."""
        with self._lock:
            yield self._conn

    def _fetch_all(self, sql: str, params: Iterable[object] = (), what: str = "query") -> list[tuple]:
        try:
            with self._connection() as conn:
                return conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"{what} failed: {exc}") from exc

    def _scalar(self, sql: str) -> object:
        rows = self._fetch_all(sql, what="query")
        return rows[0][0] if rows else None

    def status(self) -> StatusResponse:
        logs_count = int(self._scalar("SELECT COUNT(*) FROM logs") or 0)
        spans_count = int(self._scalar("SELECT COUNT(*) FROM spans") or 0)
        metrics_count = int(self._scalar("SELECT COUNT(*) FROM metric_points") or 0)
        oldest = self._scalar("SELECT MIN(ts) FROM logs")
        newest = self._scalar("SELECT MAX(ts) FROM logs")

        if self.db_path == MEMORY_PATH:
            size = 0
        else:
            try:
                size = os.path.getsize(self.db_path)
            except OSError:
                size = 0

        return StatusResponse(
            db_path=self.db_path,
            db_size_bytes=size,
            logs_count=logs_count,
            spans_count=spans_count,
            metrics_count=metrics_count,
            oldest_ts=_from_db_ts(oldest) if oldest is not None else None,
            newest_ts=_from_db_ts(newest) if newest is not None else None,
        )

    def subscribe_logs(self) -> queue.Queue[LogRecord]:
        """Return a queue receiving every log inserted from now on.

        A subscriber that falls behind by more than the channel capacity
        loses its oldest undelivered records.
        """
        feed: queue.Queue[LogRecord] = queue.Queue(maxsize=LOG_CHANNEL_CAPACITY)
        with self._subscribers_lock:
            self._subscribers.add(feed)
        return feed

    def _publish_log(self, record: LogRecord) -> None:
        with self._subscribers_lock:
            feeds = list(self._subscribers)
        for feed in feeds:
            while True:
                try:
                    feed.put_nowait(record)
                    break
                except queue.Full:
                    try:
                        feed.get_nowait()
                    except queue.Empty:
                        pass

    def _write_many(self, sql: str, rows: list[tuple], what: str) -> None:
        try:
            with self._connection() as conn, conn:
                conn.executemany(sql, rows)
        except sqlite3.Error as exc:
            raise StoreError(f"insert {what} failed: {exc}") from exc

    def insert_logs(self, logs: Iterable[LogRecord]) -> None:
        logs = list(logs)
        if not logs:
            return
        self._write_many(
            "INSERT INTO logs (ts, service, severity, trace_id, span_id, body, attrs_json, attrs_text)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    _to_db_ts(log.ts),
                    log.service,
                    int(log.severity),
                    log.trace_id,
                    log.span_id,
                    log.body,
                    log.attrs_json,
                    log.attrs_text,
                )
                for log in logs
            ],
            "logs",
        )
        for log in logs:
            self._publish_log(log)

    def insert_spans(self, spans: Iterable[SpanRecord]) -> None:
        """Insert spans, replacing any with the same trace and span id."""
        spans = list(spans)
        if not spans:
            return
        self._write_many(
            "INSERT OR REPLACE INTO spans (trace_id, span_id, parent_span_id, service, name,"
            " start_ts, end_ts, status, attrs_json, events_json)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    span.trace_id,
                    span.span_id,
                    span.parent_span_id,
                    span.service,
                    span.name,
                    _to_db_ts(span.start_ts),
                    _to_db_ts(span.end_ts),
                    span.status,
                    span.attrs_json,
                    span.events_json,
                )
                for span in spans
            ],
            "spans",
        )

    def insert_metrics(self, metrics: Iterable[MetricPoint]) -> None:
        metrics = list(metrics)
        if not metrics:
            return
        self._write_many(
            "INSERT INTO metric_points (ts, name, service, value, attrs_json) VALUES (?, ?, ?, ?, ?)",
            [
                (_to_db_ts(m.ts), m.name, m.service, float(m.value), m.attrs_json)
                for m in metrics
            ],
            "metrics",
        )

    def run_retention(self, ttl: timedelta | float, max_bytes: int) -> None:
        """Drop records older than ``ttl``, then trim the file if it is too large."""
        self.prune_ttl(ttl)
        self.prune_size(max_bytes)

    def prune_ttl(self, ttl: timedelta | float) -> None:
        """Delete logs, spans and metric points older than ``ttl`` (seconds or timedelta)."""
        try:
            delta = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
            cutoff = _to_db_ts(datetime.now(timezone.utc) - delta)
        except (OverflowError, ValueError, TypeError) as exc:
            raise OtellError(f"ttl conversion failed: {exc}") from exc

        statements = (
            ("DELETE FROM logs WHERE ts < ?", "logs"),
            ("DELETE FROM spans WHERE end_ts < ?", "spans"),
            ("DELETE FROM metric_points WHERE ts < ?", "metrics"),
        )
        with self._connection() as conn:
            for sql, what in statements:
                try:
                    with conn:
                        conn.execute(sql, (cutoff,))
                except sqlite3.Error as exc:
                    raise StoreError(f"retention {what} delete failed: {exc}") from exc

    def prune_size(self, max_bytes: int) -> None:
        """Delete the oldest batch of logs and metrics if the file exceeds ``max_bytes``."""
        if self.db_path == MEMORY_PATH:
            return
        try:
            size = os.path.getsize(self.db_path)
        except OSError as exc:
            raise OtellError(f"failed to stat db: {exc}") from exc
        if size <= max_bytes:
            return

        statements = (
            (
                "DELETE FROM logs WHERE id IN (SELECT id FROM logs ORDER BY ts ASC LIMIT ?)",
                "logs",
            ),
            (
                "DELETE FROM metric_points WHERE id IN"
                " (SELECT id FROM metric_points ORDER BY ts ASC LIMIT ?)",
                "metrics",
            ),
        )
        with self._connection() as conn:
            for sql, what in statements:
                try:
                    with conn:
                        conn.execute(sql, (SIZE_PRUNE_BATCH,))
                except sqlite3.Error as exc:
                    raise StoreError(f"size prune {what} failed: {exc}") from exc