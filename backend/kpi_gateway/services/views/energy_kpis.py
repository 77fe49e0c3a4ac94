"""
Energy KPIs from the accumulating meter counter.

Consumption over a calendar period is the difference between the last and
first counter readings inside it. Each period costs two single-point queries
(oldest and newest reading) instead of a scan of every raw sample.

The current hour has no counter reading of its own worth diffing, so it is
estimated from the average active power over the last hour.
"""
from typing import Callable, Optional

from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import Rule, SubQuery, ViewDefinition, kpi


ACTIVE_POWER = "ActivePowerTotal"
ACCUMULATED = "AccumulatedActiveEnergyDelivered"

PERIODS: dict[str, Callable[[int], tw.TimeWindow]] = {
    "Today": tw.today,
    "Yesterday": tw.yesterday,
    "DayBeforeYesterday": tw.day_before_yesterday,
    "ThisMonth": tw.this_month,
    "LastMonth": tw.last_month,
}


def _whole_window_avg(window: tw.TimeWindow) -> AggregationSpec:
    return AggregationSpec.avg(window.duration)


def _hour_energy(raw_points) -> Optional[float]:
    """Average power in W over one hour, as kWh."""
    average = reduce.single(raw_points)
    if average is None:
        return None
    return round(average / 1000, 2)


def _fold_delta(results: list, now: int):
    first, last = results
    # A lone reading is both oldest and newest
    readings = {point.get("ts"): point for point in (first.get(ACCUMULATED) or []) + (last.get(ACCUMULATED) or [])}
    return reduce.accumulated_delta(list(readings.values()))


def _period_queries() -> tuple[SubQuery, ...]:
    queries = []
    for period, window in PERIODS.items():
        queries.append(SubQuery(f"first{period}", (ACCUMULATED,), window, AggregationSpec.none(limit=1, order="ASC")))
        queries.append(SubQuery(f"last{period}", (ACCUMULATED,), window, AggregationSpec.latest()))
    return tuple(queries)


def _period_rules() -> tuple[Rule, ...]:
    return tuple(
        Rule(f"consumed{period}", (f"first{period}", f"last{period}"), _fold_delta)
        for period in PERIODS
    )


ENERGY_KPI_VIEW = ViewDefinition(
    name="energy_kpis",
    queries=(
        SubQuery("instantaneous", (ACTIVE_POWER,), tw.last_24h, AggregationSpec.latest()),
        SubQuery("thisHour", (ACTIVE_POWER,), tw.last_hour, _whole_window_avg),
        *_period_queries(),
    ),
    rules=(
        kpi("instantaneousConsumption", "instantaneous", ACTIVE_POWER, reduce.latest),
        kpi("consumedThisHour", "thisHour", ACTIVE_POWER, _hour_energy),
        *_period_rules(),
    ),
)
