"""
Calendar-aligned time windows.

Every function is pure: it takes the reference instant `now` (UTC epoch
milliseconds) and returns a half-open TimeWindow [start, end). Month
arithmetic works on (year, month) pairs so that stepping back from the 31st
never lands in the wrong month.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class TimeWindow:
    """Half-open UTC range in epoch milliseconds."""
    start: int
    end: int

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"TimeWindow start must be before end: {self.start} >= {self.end}")

    @property
    def duration(self) -> int:
        return self.end - self.start

    def contains(self, ts: int) -> bool:
        return self.start <= ts < self.end


def to_datetime(ts: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ts)


def to_millis(dt: datetime) -> int:
    return (dt - EPOCH) // timedelta(milliseconds=1)


def now_millis() -> int:
    return to_millis(datetime.now(timezone.utc))


def add_months(year: int, month: int, delta: int) -> tuple[int, int]:
    """Shift a (year, month) pair by `delta` months, month being 1-12."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_start(year: int, month: int) -> int:
    return to_millis(datetime(year, month, 1, tzinfo=timezone.utc))


def start_of_hour(ts: int) -> int:
    return ts - ts % HOUR_MS


def start_of_day(ts: int) -> int:
    return ts - ts % DAY_MS


def start_of_month(ts: int) -> int:
    dt = to_datetime(ts)
    return month_start(dt.year, dt.month)


def _until(start: int, now: int) -> TimeWindow:
    # `now` sitting exactly on the boundary would give an empty window
    return TimeWindow(start, max(now, start + 1))


def last_n_millis(now: int, n: int) -> TimeWindow:
    """[now - n, now)"""
    return TimeWindow(now - n, now)


def last_hour(now: int) -> TimeWindow:
    return last_n_millis(now, HOUR_MS)


def last_24h(now: int) -> TimeWindow:
    return last_n_millis(now, DAY_MS)


def last_n_days(now: int, n: int) -> TimeWindow:
    """[now - n days, now)"""
    return last_n_millis(now, n * DAY_MS)


def today(now: int) -> TimeWindow:
    """[midnight UTC, now)"""
    return _until(start_of_day(now), now)


def yesterday(now: int) -> TimeWindow:
    """[midnight UTC - 1 day, midnight UTC)"""
    midnight = start_of_day(now)
    return TimeWindow(midnight - DAY_MS, midnight)


def day_before_yesterday(now: int) -> TimeWindow:
    """[midnight UTC - 2 days, midnight UTC - 1 day)"""
    midnight = start_of_day(now)
    return TimeWindow(midnight - 2 * DAY_MS, midnight - DAY_MS)


def intersect(window: TimeWindow, bounds: TimeWindow) -> Optional[TimeWindow]:
    """Overlap of two windows, None when they do not overlap."""
    start, end = max(window.start, bounds.start), min(window.end, bounds.end)
    if start >= end:
        return None
    return TimeWindow(start, end)


def this_month(now: int) -> TimeWindow:
    """[first of month UTC, now)"""
    return _until(start_of_month(now), now)


def last_month(now: int) -> TimeWindow:
    """[first of previous month, last instant of previous month)"""
    dt = to_datetime(now)
    year, month = add_months(dt.year, dt.month, -1)
    return TimeWindow(month_start(year, month), start_of_month(now) - 1)


def last_n_months(now: int, n: int) -> TimeWindow:
    """[first of current month - n months, now)"""
    dt = to_datetime(now)
    year, month = add_months(dt.year, dt.month, -n)
    return _until(month_start(year, month), now)
