from otellstore.samples import sample_trace


def test_sample_trace_shape():
    spans, logs = sample_trace("t-abc")
    assert [s.span_id for s in spans] == ["root", "child"]
    assert len(logs) == 2
    assert all(s.trace_id == "t-abc" for s in spans)
    assert all(l.trace_id == "t-abc" for l in logs)


def test_sample_trace_tree():
    spans, _ = sample_trace("t1")
    root, child = spans
    assert root.parent_span_id is None
    assert child.parent_span_id == root.span_id
    assert root.start_ts <= child.start_ts
    assert child.end_ts <= root.end_ts


def test_sample_trace_durations():
    spans, _ = sample_trace("t1")
    root, child = spans
    assert root.duration_ms() == 1800
    assert 0 < child.duration_ms() < root.duration_ms()


def test_sample_logs_fall_inside_child_span():
    spans, logs = sample_trace("t1")
    child = spans[1]
    for log in logs:
        assert log.span_id == "child"
        assert child.start_ts <= log.ts <= child.end_ts
    assert logs[1].body == "context deadline exceeded"
    assert logs[1].severity == 17


def test_sample_trace_fresh_lists():
    spans_a, logs_a = sample_trace("t1")
    spans_b, _ = sample_trace("t1")
    spans_a.clear()
    assert len(spans_b) == 2
    assert logs_a[0].attrs_text == "attempt=2"