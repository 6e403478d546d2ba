"""Records, request and response types shared by the telemetry store."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta


class OtellError(Exception):
    """Base class for all store errors."""


class StoreError(OtellError):
    """Raised when a storage operation fails or a record is missing."""


class ParseError(OtellError):
    """Raised when user input such as a pattern or filter cannot be parsed."""


class Severity(enum.IntEnum):
    """Lower bound of each OpenTelemetry severity band."""

    TRACE = 1
    DEBUG = 5
    INFO = 9
    WARN = 13
    ERROR = 17
    FATAL = 21


class SortOrder(enum.Enum):
    TS_ASC = "ts_asc"
    TS_DESC = "ts_desc"
    DURATION_DESC = "duration_desc"


class LogContextMode(enum.Enum):
    NONE = "none"
    ALL = "all"
    BOUNDED = "bounded"


@dataclass(frozen=True)
class TimeWindow:
    """An optional inclusive interval of timestamps."""

    since: datetime | None = None
    until: datetime | None = None

    @classmethod
    def all(cls) -> TimeWindow:
        return cls()

    def contains(self, ts: datetime) -> bool:
        if self.since is not None and ts < self.since:
            return False
        if self.until is not None and ts > self.until:
            return False
        return True


@dataclass(frozen=True)
class AttrFilter:
    """A ``key=value`` (or ``key!=value``) filter; ``*`` in the value is a wildcard."""

    key: str
    value: str
    negate: bool = False

    @classmethod
    def parse(cls, text: str) -> AttrFilter:
        if "!=" in text:
            key, _, value = text.partition("!=")
            negate = True
        elif "=" in text:
            key, _, value = text.partition("=")
            negate = False
        else:
            raise ParseError(f"invalid attribute filter (expected key=value): {text}")
        key = key.strip()
        if not key:
            raise ParseError(f"invalid attribute filter (empty key): {text}")
        return cls(key=key, value=value.strip(), negate=negate)

    def matches(self, value: str) -> bool:
        pattern = ".*".join(re.escape(part) for part in self.value.split("*"))
        hit = re.fullmatch(pattern, value, flags=re.DOTALL) is not None
        return hit != self.negate


def _millis(delta: timedelta) -> int:
    """Whole milliseconds in ``delta``, truncated toward zero."""
    micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
    whole = abs(micros) // 1000
    return whole if micros >= 0 else -whole


@dataclass(frozen=True)
class LogRecord:
    ts: datetime
    service: str
    severity: int
    trace_id: str | None = None
    span_id: str | None = None
    body: str = ""
    attrs_json: str = "{}"
    attrs_text: str = ""


@dataclass(frozen=True)
class SpanRecord:
    trace_id: str
    span_id: str
    parent_span_id: str | None
    service: str
    name: str
    start_ts: datetime
    end_ts: datetime
    status: str
    attrs_json: str = "{}"
    events_json: str = "[]"

    def duration_ms(self) -> int:
        return _millis(self.end_ts - self.start_ts)


@dataclass(frozen=True)
class MetricPoint:
    ts: datetime
    name: str
    service: str
    value: float
    attrs_json: str = "{}"


@dataclass
class SearchRequest:
    pattern: str | None = None
    fixed: bool = False
    ignore_case: bool = False
    service: str | None = None
    trace_id: str | None = None
    span_id: str | None = None
    severity_gte: Severity | int | None = None
    attr_filters: list[AttrFilter] = field(default_factory=list)
    window: TimeWindow = field(default_factory=TimeWindow.all)
    sort: SortOrder = SortOrder.TS_ASC
    limit: int = 100
    context_lines: int = 0
    context_seconds: int | None = None
    count_only: bool = False
    include_stats: bool = False


@dataclass
class SearchStats:
    by_service: list[tuple[str, int]] = field(default_factory=list)
    by_severity: list[tuple[str, int]] = field(default_factory=list)


@dataclass
class SearchResponse:
    total_matches: int
    returned: int
    records: list[LogRecord] = field(default_factory=list)
    stats: SearchStats | None = None


@dataclass
class TraceRequest:
    trace_id: str
    root_span_id: str | None = None
    logs: LogContextMode = LogContextMode.BOUNDED


@dataclass
class LogsContextMeta:
    policy: str
    limit: int
    truncated: bool


@dataclass
class TraceResponse:
    trace_id: str
    spans: list[SpanRecord]
    logs: list[LogRecord]
    context: LogsContextMeta


@dataclass
class SpanRequest:
    trace_id: str
    span_id: str
    logs: LogContextMode = LogContextMode.BOUNDED


@dataclass
class SpanResponse:
    span: SpanRecord
    logs: list[LogRecord]
    context: LogsContextMeta


@dataclass
class TracesRequest:
    service: str | None = None
    status: str | None = None
    window: TimeWindow = field(default_factory=TimeWindow.all)
    sort: SortOrder = SortOrder.TS_DESC
    limit: int = 100


@dataclass
class TraceListItem:
    trace_id: str
    root_name: str
    duration_ms: int
    span_count: int
    status: str


@dataclass
class MetricsRequest:
    name: str
    service: str | None = None
    window: TimeWindow = field(default_factory=TimeWindow.all)
    group_by: str | None = None
    agg: str | None = None
    limit: int = 100


@dataclass
class MetricSeries:
    group: str
    value: float


@dataclass
class MetricsResponse:
    points: list[MetricPoint]
    series: list[MetricSeries]


@dataclass
class MetricsListRequest:
    service: str | None = None
    window: TimeWindow = field(default_factory=TimeWindow.all)
    limit: int = 100


@dataclass
class MetricNameItem:
    name: str
    count: int


@dataclass
class MetricsListResponse:
    metrics: list[MetricNameItem]


@dataclass
class StatusResponse:
    db_path: str
    db_size_bytes: int
    logs_count: int
    spans_count: int
    metrics_count: int
    oldest_ts: datetime | None
    newest_ts: datetime | None