"""
Current view.

Every figure reads the averaged phase current key. Min/avg/max KPIs ask
ThingsBoard for a single bucket spanning the whole window.
"""
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import SubQuery, ViewDefinition, kpi, series
from kpi_gateway.services.views.common import raw_series, with_day_label, with_iso_date, with_month_label


CURRENT = "Current_Avg"


def _last_7_days(now: int) -> tw.TimeWindow:
    return tw.last_n_days(now, 7)


def _last_30_days(now: int) -> tw.TimeWindow:
    return tw.last_n_days(now, 30)


def _last_365_days(now: int) -> tw.TimeWindow:
    return tw.last_n_days(now, 365)


def hourly_today(raw_points, now: int) -> list[dict]:
    start = tw.start_of_day(now)
    end = tw.start_of_hour(now) + tw.HOUR_MS
    return with_iso_date(reduce.fill_buckets(raw_points, start, end, tw.HOUR_MS))


def daily_week(raw_points, now: int) -> list[dict]:
    window = _last_7_days(now)
    return with_day_label(reduce.fill_days(raw_points, window.start, window.end))


def daily_month(raw_points, now: int) -> list[dict]:
    window = _last_30_days(now)
    return with_day_label(reduce.fill_days(raw_points, window.start, window.end))


def monthly_year(raw_points, now: int) -> list[dict]:
    window = _last_365_days(now)
    return with_month_label(reduce.fold_months(raw_points, window.start, window.end, how="mean"))


def _whole_window_min(window: tw.TimeWindow) -> AggregationSpec:
    return AggregationSpec.min(window.duration)


def _whole_window_avg(window: tw.TimeWindow) -> AggregationSpec:
    return AggregationSpec.avg(window.duration)


def _whole_window_max(window: tw.TimeWindow) -> AggregationSpec:
    return AggregationSpec.max(window.duration)


CURRENT_VIEW = ViewDefinition(
    name="current",
    queries=(
        SubQuery("instantaneous", (CURRENT,), tw.last_24h, AggregationSpec.latest()),
        SubQuery("lastHourMin", (CURRENT,), tw.last_hour, _whole_window_min),
        SubQuery("lastHourAvg", (CURRENT,), tw.last_hour, _whole_window_avg),
        SubQuery("lastHourMax", (CURRENT,), tw.last_hour, _whole_window_max),
        SubQuery("todayAvg", (CURRENT,), tw.today, _whole_window_avg),
        SubQuery("widget", (CURRENT,), tw.last_hour, AggregationSpec.max(15 * tw.MINUTE_MS)),
        SubQuery("hourly", (CURRENT,), tw.today, AggregationSpec.avg(tw.HOUR_MS)),
        SubQuery("dailyWeek", (CURRENT,), _last_7_days, AggregationSpec.avg(tw.DAY_MS)),
        SubQuery("dailyMonth", (CURRENT,), _last_30_days, AggregationSpec.avg(tw.DAY_MS)),
        SubQuery("dailyYear", (CURRENT,), _last_365_days, AggregationSpec.avg(tw.DAY_MS)),
    ),
    rules=(
        kpi("instantaneousCurrent", "instantaneous", CURRENT, reduce.latest),
        kpi("lastHourMin", "lastHourMin", CURRENT, reduce.single),
        kpi("lastHourAverage", "lastHourAvg", CURRENT, reduce.single),
        kpi("lastHourMax", "lastHourMax", CURRENT, reduce.single),
        kpi("todayAverage", "todayAvg", CURRENT, reduce.single),
        series("widgetData", "widget", CURRENT, raw_series),
        series("hourlyData", "hourly", CURRENT, hourly_today),
        series("dailyWeekData", "dailyWeek", CURRENT, daily_week),
        series("dailyMonthData", "dailyMonth", CURRENT, daily_month),
        series("dailyYearData", "dailyYear", CURRENT, monthly_year),
    ),
)
