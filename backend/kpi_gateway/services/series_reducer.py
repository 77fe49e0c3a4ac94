"""
Reduction of raw ThingsBoard point arrays.

Raw points look like {"ts": 1705689600000, "value": "12.5"}. Values arrive as
strings or numbers; anything that cannot be read as a finite number is
dropped from the reduction. Points are always sorted chronologically before
being folded, whatever order the upstream returned them in.

Scalar reducers return None for "no data", never 0. Series fillers return one
point per calendar bucket with value None where no data exists.
"""
import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import pandas as pd

from kpi_gateway.core.errors import MalformedUpstreamData
from kpi_gateway.core.logging import get_logger
from kpi_gateway.services.time_windows import (
    DAY_MS,
    add_months,
    month_start,
    start_of_day,
    start_of_month,
    to_datetime,
)


logger = get_logger(__name__)

RawPoints = Optional[Iterable[dict[str, Any]]]


@dataclass(frozen=True)
class SeriesPoint:
    ts: int
    value: Optional[float]


def parse_value(raw: Any) -> float:
    """
    Read an upstream value as a float.

    Raises:
        MalformedUpstreamData: if the value is missing, not numeric or not finite
    """
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise MalformedUpstreamData(f"Unparseable telemetry value: {raw!r}")
    if math.isnan(value) or math.isinf(value):
        raise MalformedUpstreamData(f"Non-finite telemetry value: {raw!r}")
    return value


def to_points(raw_points: RawPoints) -> list[SeriesPoint]:
    """Parse and sort raw points, skipping malformed ones."""
    points = []
    for raw in raw_points or []:
        try:
            points.append(SeriesPoint(ts=int(raw["ts"]), value=parse_value(raw.get("value"))))
        except (MalformedUpstreamData, KeyError, TypeError, ValueError):
            logger.debug("series_reducer.point_skipped", point=raw)
    points.sort(key=lambda p: p.ts)
    return points


def latest(raw_points: RawPoints) -> Optional[float]:
    """Value of the chronologically last point."""
    points = to_points(raw_points)
    if not points:
        return None
    return points[-1].value


def single(raw_points: RawPoints) -> Optional[float]:
    """
    Pass-through of an upstream-aggregated value (MIN, MAX or AVG over a
    window collapsed to one bucket). When the window spilled into several
    buckets the most recent one wins.
    """
    return latest(raw_points)


def total(raw_points: RawPoints) -> Optional[float]:
    """
    Sum of already bucket-aggregated values.

    None when there are no points; 0 is a real result when points exist.
    """
    points = to_points(raw_points)
    if not points:
        return None
    return sum(p.value for p in points)


def accumulated_delta(raw_points: RawPoints) -> Optional[float]:
    """
    Consumption between the first and last reading of an accumulating
    counter such as AccumulatedActiveEnergyDelivered.
    """
    points = to_points(raw_points)
    if len(points) < 2:
        return None
    delta = points[-1].value - points[0].value
    if delta < 0:
        # Meter replaced or reset inside the window
        logger.warning(
            "series_reducer.negative_delta",
            first=points[0].value,
            last=points[-1].value,
        )
        return None
    return round(delta, 2)


def round_or_none(value: Optional[float], digits: int = 1) -> Optional[float]:
    if value is None:
        return None
    return round(value, digits)


def fill_buckets(raw_points: RawPoints, start: int, end: int, step: int) -> list[SeriesPoint]:
    """
    One point per fixed-stride bucket aligned on `start`, covering [start, end).

    A bucket takes the value of the upstream point whose timestamp falls in it
    (ThingsBoard stamps aggregated buckets at their midpoint). Upstream
    aggregation is trusted: if two points land in the same bucket the later
    one wins instead of being re-aggregated.
    """
    if step <= 0:
        raise ValueError("step must be positive")
    if end <= start:
        return []

    count = -(-(end - start) // step)
    values: list[Optional[float]] = [None] * count
    for point in to_points(raw_points):
        if start <= point.ts < end:
            values[(point.ts - start) // step] = point.value

    return [SeriesPoint(ts=start + i * step, value=value) for i, value in enumerate(values)]


def fill_days(raw_points: RawPoints, start: int, end: int) -> list[SeriesPoint]:
    """One point per UTC calendar day touched by [start, end)."""
    return fill_buckets(raw_points, start_of_day(start), end, DAY_MS)


def fill_month_days(raw_points: RawPoints, now: int) -> list[SeriesPoint]:
    """One point per day of the calendar month containing `now`, future days included."""
    current = to_datetime(now)
    year, month = add_months(current.year, current.month, 1)
    return fill_buckets(raw_points, start_of_month(now), month_start(year, month), DAY_MS)


def fold_months(
    raw_points: RawPoints,
    start: Optional[int] = None,
    end: Optional[int] = None,
    how: str = "mean",
) -> list[SeriesPoint]:
    """
    Fold daily (or finer) points into one point per calendar month.

    Points are grouped by (year, month) in UTC and reduced with `how`
    ("mean" or "sum"). One point is emitted for every month from the month of
    `start` to the month of the last instant before `end`; without bounds the
    span of the data itself is used. Months without data carry None.
    """
    if how not in ("mean", "sum"):
        raise ValueError(f"Unsupported month reduction: {how}")

    points = to_points(raw_points)
    if start is None or end is None:
        if not points:
            return []
        first, last = points[0].ts, points[-1].ts
    else:
        first, last = start, end - 1
    if last < first:
        return []

    reduced: dict[tuple[int, int], float] = {}
    if points:
        frame = pd.DataFrame({
            "ts": [p.ts for p in points],
            "value": [p.value for p in points],
        })
        stamps = pd.to_datetime(frame["ts"], unit="ms", utc=True)
        frame["year"] = stamps.dt.year
        frame["month"] = stamps.dt.month
        grouped = frame.groupby(["year", "month"])["value"].agg(how)
        reduced = {(int(year), int(month)): float(value) for (year, month), value in grouped.items()}

    first_dt, last_dt = to_datetime(first), to_datetime(last)
    year, month = first_dt.year, first_dt.month
    months = []
    while (year, month) <= (last_dt.year, last_dt.month):
        months.append(SeriesPoint(ts=month_start(year, month), value=reduced.get((year, month))))
        year, month = add_months(year, month, 1)

    return months


def count_points(result: Optional[dict[str, list]]) -> int:
    """Total number of raw points across all keys of one upstream answer."""
    if not result:
        return 0
    return sum(len(points) for points in result.values() if isinstance(points, list))
