"""Shaping helpers shared by the dashboard views."""
from typing import Iterable

from kpi_gateway.services.series_reducer import SeriesPoint, to_points
from kpi_gateway.services.time_windows import to_datetime


def iso_date(ts: int) -> str:
    return to_datetime(ts).isoformat().replace("+00:00", "Z")


def day_label(ts: int) -> str:
    """DD/MM/YYYY in UTC."""
    return to_datetime(ts).strftime("%d/%m/%Y")


def month_year_label(ts: int) -> str:
    """MM/YYYY in UTC."""
    return to_datetime(ts).strftime("%m/%Y")


def plain(points: Iterable[SeriesPoint]) -> list[dict]:
    return [{"ts": p.ts, "value": p.value} for p in points]


def with_iso_date(points: Iterable[SeriesPoint]) -> list[dict]:
    return [{"ts": p.ts, "date": iso_date(p.ts), "value": p.value} for p in points]


def with_day_label(points: Iterable[SeriesPoint]) -> list[dict]:
    return [{"ts": p.ts, "date": day_label(p.ts), "value": p.value} for p in points]


def with_month_label(points: Iterable[SeriesPoint]) -> list[dict]:
    return [
        {
            "ts": p.ts,
            "date": iso_date(p.ts),
            "month": to_datetime(p.ts).month,
            "monthYear": month_year_label(p.ts),
            "value": p.value,
        }
        for p in points
    ]


def raw_series(raw_points, now: int) -> list[dict]:
    """Upstream buckets as returned, sorted, no gap filling."""
    return with_iso_date(to_points(raw_points))
