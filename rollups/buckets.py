from __future__ import annotations
from typing import NamedTuple, Optional, Tuple
from datetime import date, datetime, timezone

from rollups.errors import RebuildWindowError

DAILY = "daily"
HOURLY = "hourly"
DIMENSION_DAILY = "dimension_daily"
DIMENSION_HOURLY = "dimension_hourly"
TABLES = (DAILY, HOURLY, DIMENSION_DAILY, DIMENSION_HOURLY)


class BucketKey(NamedTuple):
    site_id: str
    date: date
    hour: Optional[int] = None  # None for daily buckets


class DimensionKey(NamedTuple):
    site_id: str
    date: date
    hour: Optional[int]
    dimension: str
    value: str


def to_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def ms_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(ts: datetime) -> int:
    return int(to_utc(ts).timestamp() * 1000)


def bucket_of(ts_ms: int) -> Tuple[date, int]:
    dt = ms_to_datetime(ts_ms)
    return dt.date(), dt.hour


def daily_key(site_id: str, ts_ms: int) -> BucketKey:
    d, _ = bucket_of(ts_ms)
    return BucketKey(site_id, d, None)


def hourly_key(site_id: str, ts_ms: int) -> BucketKey:
    d, h = bucket_of(ts_ms)
    return BucketKey(site_id, d, h)


def same_hour(a_ms: int, b_ms: int) -> bool:
    return bucket_of(a_ms) == bucket_of(b_ms)


def start_of_utc_day(value: datetime | date) -> datetime:
    if isinstance(value, datetime):
        value = to_utc(value).date()
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


class Window(NamedTuple):
    """UTC-day-aligned half-open window [start, end), optionally for one site."""

    site_id: Optional[str]
    start: datetime
    end: datetime

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    @property
    def start_ms(self) -> int:
        return datetime_to_ms(self.start)

    @property
    def end_ms(self) -> int:
        return datetime_to_ms(self.end)

    def contains_date(self, d: date) -> bool:
        return self.start_date <= d < self.end_date


def resolve_window(site_id: Optional[str], from_ts: datetime | date, to_ts: datetime | date) -> Window:
    start = start_of_utc_day(from_ts)
    end = start_of_utc_day(to_ts)
    if end <= start:
        raise RebuildWindowError("Range must include at least one UTC day")
    return Window(site_id or None, start, end)


