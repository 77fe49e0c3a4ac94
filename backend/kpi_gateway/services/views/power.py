"""
Power ("puissance") view.

KPIs and charts for the energy meter page, all consumption figures coming
from the hourly energy delta key summed upstream.
"""
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import SubQuery, ViewDefinition, kpi, series
from kpi_gateway.services.views.common import plain, with_day_label, with_month_label


ACTIVE_POWER = "ActivePowerTotal"
# Key name as provisioned on the devices
ENERGY_DELTA = "deltaHourEnergyConsumtion"

# Current month plus the eleven before it
YEAR_MONTHS = 11


def hourly_today(raw_points, now: int) -> list[dict]:
    """One bucket per hour from midnight up to and including the current hour."""
    start = tw.start_of_day(now)
    end = tw.start_of_hour(now) + tw.HOUR_MS
    return plain(reduce.fill_buckets(raw_points, start, end, tw.HOUR_MS))


def daily_this_month(raw_points, now: int) -> list[dict]:
    return with_day_label(reduce.fill_month_days(raw_points, now))


def monthly_last_year(raw_points, now: int) -> list[dict]:
    window = tw.last_n_months(now, YEAR_MONTHS)
    return with_month_label(reduce.fold_months(raw_points, window.start, window.end, how="sum"))


POWER_VIEW = ViewDefinition(
    name="power",
    queries=(
        SubQuery("instantaneous", (ACTIVE_POWER,), tw.last_24h, AggregationSpec.latest()),
        SubQuery("thisHour", (ENERGY_DELTA,), tw.last_hour, AggregationSpec.sum(10 * tw.MINUTE_MS, limit=10)),
        SubQuery("today", (ENERGY_DELTA,), tw.today, AggregationSpec.sum(5 * tw.MINUTE_MS, limit=10000)),
        SubQuery("yesterday", (ENERGY_DELTA,), tw.yesterday, AggregationSpec.sum(tw.HOUR_MS, limit=24)),
        SubQuery("thisMonth", (ENERGY_DELTA,), tw.this_month, AggregationSpec.sum(2 * tw.HOUR_MS, limit=10000)),
        SubQuery("lastMonth", (ENERGY_DELTA,), tw.last_month, AggregationSpec.sum(2 * tw.HOUR_MS, limit=10000)),
        SubQuery("todayHourly", (ENERGY_DELTA,), tw.today, AggregationSpec.sum(tw.HOUR_MS, limit=24)),
        SubQuery("thisMonthDaily", (ENERGY_DELTA,), tw.this_month, AggregationSpec.sum(tw.DAY_MS, limit=31)),
        SubQuery(
            "yearlyMonthly",
            (ENERGY_DELTA,),
            lambda now: tw.last_n_months(now, YEAR_MONTHS),
            AggregationSpec.sum(tw.DAY_MS, limit=372),
        ),
    ),
    rules=(
        kpi("instantaneousPower", "instantaneous", ACTIVE_POWER, reduce.latest),
        kpi("consumedThisHour", "thisHour", ENERGY_DELTA, reduce.total),
        kpi("consumedToday", "today", ENERGY_DELTA, reduce.total),
        kpi("consumedYesterday", "yesterday", ENERGY_DELTA, reduce.total),
        kpi("consumedThisMonth", "thisMonth", ENERGY_DELTA, reduce.total),
        kpi("consumedLastMonth", "lastMonth", ENERGY_DELTA, reduce.total),
        series("hourlyData", "todayHourly", ENERGY_DELTA, hourly_today),
        series("dailyData", "thisMonthDaily", ENERGY_DELTA, daily_this_month),
        series("monthlyData", "yearlyMonthly", ENERGY_DELTA, monthly_last_year),
    ),
)
