"""
Global meters view: a compact bundle per meter for the factory wall display.
"""
import asyncio
from typing import Optional

from kpi_gateway.core.errors import GatewayError
from kpi_gateway.core.logging import get_logger
from kpi_gateway.schemas.views import GlobalMeter
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import SubQuery, ViewAssembler, ViewDefinition, kpi, series
from kpi_gateway.services.views.common import plain
from kpi_gateway.services.views.power import ACTIVE_POWER, ENERGY_DELTA, hourly_today


logger = get_logger(__name__)


def _last_7_days(now: int) -> tw.TimeWindow:
    return tw.TimeWindow(tw.start_of_day(now) - 7 * tw.DAY_MS, max(now, tw.start_of_day(now) + 1))


def _last_year(now: int) -> tw.TimeWindow:
    return tw.TimeWindow(tw.start_of_day(now) - 365 * tw.DAY_MS, max(now, tw.start_of_day(now) + 1))


def _daily(window_of):
    def shape(raw_points, now: int) -> list[dict]:
        window = window_of(now)
        return plain(reduce.fill_days(raw_points, window.start, window.end))
    return shape


GLOBAL_METER_VIEW = ViewDefinition(
    name="global_meter",
    queries=(
        SubQuery("instantaneous", (ACTIVE_POWER,), tw.last_24h, AggregationSpec.latest()),
        SubQuery("today", (ENERGY_DELTA,), tw.today, AggregationSpec.sum(5 * tw.MINUTE_MS, limit=10000)),
        SubQuery("yesterday", (ENERGY_DELTA,), tw.yesterday, AggregationSpec.sum(tw.HOUR_MS, limit=24)),
        SubQuery("todayHourly", (ENERGY_DELTA,), tw.today, AggregationSpec.sum(tw.HOUR_MS, limit=24)),
        SubQuery("last7Days", (ENERGY_DELTA,), _last_7_days, AggregationSpec.sum(tw.DAY_MS, limit=8)),
        SubQuery("lastYear", (ENERGY_DELTA,), _last_year, AggregationSpec.avg(tw.DAY_MS, limit=366)),
    ),
    rules=(
        kpi("instantaneous", "instantaneous", ACTIVE_POWER, reduce.latest),
        kpi("today", "today", ENERGY_DELTA, reduce.total),
        kpi("yesterday", "yesterday", ENERGY_DELTA, reduce.total),
        series("hourlyData", "todayHourly", ENERGY_DELTA, hourly_today),
        series("monthlyData", "last7Days", ENERGY_DELTA, _daily(_last_7_days)),
        series("yearlyData", "lastYear", ENERGY_DELTA, _daily(_last_year)),
    ),
)


async def meter_for_device(
    assembler: ViewAssembler,
    device_id: str,
    now: Optional[int] = None,
    debug: bool = False,
) -> tuple[GlobalMeter, Optional[list[dict]]]:
    """Assemble one meter. Errors propagate to the caller."""
    view = await assembler.assemble(device_id, now=now, debug=debug)
    data = view.data
    meter = GlobalMeter(
        device_uuid=device_id,
        name=view.meta.device_name,
        status="online" if data.get("instantaneous") is not None else "offline",
        instantaneous=data.get("instantaneous"),
        today=data.get("today"),
        yesterday=data.get("yesterday"),
        hourly_data=data.get("hourlyData", []),
        monthly_data=data.get("monthlyData", []),
        yearly_data=data.get("yearlyData", []),
    )
    requests = [request.to_json() for request in view.debug] if view.debug is not None else None
    return meter, requests


async def collect_meters(
    assembler: ViewAssembler,
    device_ids: list[str],
    now: Optional[int] = None,
    debug: bool = False,
) -> dict:
    """
    Assemble every requested meter concurrently.

    A meter that cannot be assembled at all (unknown device, upstream down
    for every sub-query) is dropped from the batch and logged.
    """
    requested_at = tw.now_millis()
    outcomes = await asyncio.gather(
        *(meter_for_device(assembler, device_id, now=now, debug=debug) for device_id in device_ids),
        return_exceptions=True,
    )

    meters = []
    debug_devices = {}
    for device_id, outcome in zip(device_ids, outcomes):
        if isinstance(outcome, GatewayError):
            logger.warning("global_meters.device_dropped", device_id=device_id, error=outcome.message)
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        meter, requests = outcome
        meters.append(meter.to_json())
        if requests is not None:
            debug_devices[device_id] = {"requests": requests}

    logger.info("global_meters.collected", requested=len(device_ids), returned=len(meters))

    body = {
        "success": True,
        "data": meters,
        "meta": {"count": len(meters), "requestedAt": requested_at},
    }
    if debug:
        body["debug"] = {"devices": debug_devices}
    return body
