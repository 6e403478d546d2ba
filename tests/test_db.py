from datetime import datetime, timedelta, timezone

import pytest

from otellstore.db import Database
from otellstore.models import (
    LogRecord,
    MetricPoint,
    OtellError,
    SpanRecord,
    StoreError,
)
from otellstore.samples import sample_trace

T0 = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _log(ts, body="x", service="api"):
    return LogRecord(ts=ts, service=service, severity=9, body=body)


def _metric(ts, name="m", value=1.0):
    return MetricPoint(ts=ts, name=name, service="api", value=value)


@pytest.fixture
def db():
    database = Database.open_in_memory()
    yield database
    database.close()


def test_in_memory_store_initializes(db):
    status = db.status()
    assert status.logs_count == 0
    assert status.spans_count == 0
    assert status.metrics_count == 0
    assert status.db_path == ":memory:"
    assert status.db_size_bytes == 0
    assert status.oldest_ts is None and status.newest_ts is None


def test_ttl_prunes_old_logs(db):
    old = datetime(2000, 1, 1, tzinfo=timezone.utc)
    db.insert_logs([_log(old, "old")])
    db.prune_ttl(timedelta(seconds=60))
    assert db.status().logs_count == 0


def test_ttl_keeps_recent_records(db):
    now = datetime.now(timezone.utc)
    old = datetime(2000, 1, 1, tzinfo=timezone.utc)
    db.insert_logs([_log(now, "new"), _log(old, "old")])
    db.insert_metrics([_metric(now), _metric(old)])
    db.insert_spans(
        [
            SpanRecord("t", "a", None, "api", "n", old, old, "OK"),
            SpanRecord("t", "b", None, "api", "n", now, now, "OK"),
        ]
    )
    db.prune_ttl(3600)
    status = db.status()
    assert (status.logs_count, status.spans_count, status.metrics_count) == (1, 1, 1)


def test_status_reports_oldest_and_newest(db):
    db.insert_logs([_log(T0 + timedelta(seconds=5)), _log(T0), _log(T0 + timedelta(milliseconds=250))])
    status = db.status()
    assert status.logs_count == 3
    assert status.oldest_ts == T0
    assert status.newest_ts == T0 + timedelta(seconds=5)


def test_insert_sample_trace_counts(db):
    spans, logs = sample_trace("t1")
    db.insert_spans(spans)
    db.insert_logs(logs)
    status = db.status()
    assert status.spans_count == 2
    assert status.logs_count == 2


def test_insert_spans_replaces_same_key(db):
    spans, _ = sample_trace("t1")
    db.insert_spans(spans)
    db.insert_spans(spans)
    assert db.status().spans_count == 2


def test_insert_empty_is_noop(db):
    db.insert_logs([])
    db.insert_spans([])
    db.insert_metrics([])
    status = db.status()
    assert (status.logs_count, status.spans_count, status.metrics_count) == (0, 0, 0)


def test_insert_metrics_counts(db):
    db.insert_metrics([_metric(T0), _metric(T0, "n", 2.5)])
    assert db.status().metrics_count == 2


def test_subscribe_receives_inserted_logs(db):
    feed = db.subscribe_logs()
    records = [_log(T0, "a"), _log(T0, "b")]
    db.insert_logs(records)
    assert feed.get_nowait() == records[0]
    assert feed.get_nowait() == records[1]
    assert feed.empty()


def test_subscriber_only_sees_logs_after_subscribing(db):
    db.insert_logs([_log(T0, "before")])
    feed = db.subscribe_logs()
    db.insert_logs([_log(T0, "after")])
    assert feed.get_nowait().body == "after"
    assert feed.empty()


def test_open_file_creates_parent_dir(tmp_path):
    path = tmp_path / "nested" / "dir" / "otell.db"
    with Database.open(path) as database:
        database.insert_logs([_log(T0)])
        status = database.status()
    assert path.exists()
    assert status.db_path == str(path)
    assert status.db_size_bytes > 0
    assert status.logs_count == 1


def test_file_database_persists(tmp_path):
    path = tmp_path / "otell.db"
    with Database.open(path) as database:
        database.insert_logs([_log(T0, "kept")])
    with Database.open(path) as database:
        assert database.status().logs_count == 1


def test_prune_size_under_limit_keeps_everything(tmp_path):
    with Database.open(tmp_path / "a.db") as database:
        database.insert_logs([_log(T0 + timedelta(seconds=i)) for i in range(5)])
        database.prune_size(10**12)
        assert database.status().logs_count == 5


def test_prune_size_over_limit_deletes_oldest(tmp_path):
    with Database.open(tmp_path / "a.db") as database:
        database.insert_logs([_log(T0 + timedelta(seconds=i)) for i in range(5)])
        database.insert_metrics([_metric(T0)])
        database.prune_size(0)
        status = database.status()
        assert status.logs_count == 0
        assert status.metrics_count == 0


def test_prune_size_in_memory_is_noop(db):
    db.insert_logs([_log(T0)])
    db.prune_size(0)
    assert db.status().logs_count == 1


def test_run_retention_combines_both(tmp_path):
    with Database.open(tmp_path / "a.db") as database:
        database.insert_logs([_log(datetime(2000, 1, 1, tzinfo=timezone.utc)), _log(datetime.now(timezone.utc))])
        database.run_retention(timedelta(hours=1), 10**12)
        assert database.status().logs_count == 1


def test_ttl_overflow_raises(db):
    with pytest.raises(OtellError):
        db.prune_ttl(timedelta(days=999_999_999))


def test_closed_database_raises_store_error(db):
    db.close()
    with pytest.raises(StoreError):
        db.status()