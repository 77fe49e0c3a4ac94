"""
Energy history view.

Each metric maps to a fixed list of telemetry keys. All keys of a metric are
fetched in one sub-query, bucketed at the requested resolution and merged:
in each bucket the first key (in catalogue order) carrying a value wins.
"""
import asyncio
from dataclasses import dataclass
from typing import Optional

from kpi_gateway.core.errors import DeviceNotFound, GatewayError, InvalidParameters, UpstreamUnavailable
from kpi_gateway.core.logging import get_logger
from kpi_gateway.schemas.views import HistoryPoint, MetricInfo
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import Rule, SubQuery, ViewAssembler, ViewDefinition


logger = get_logger(__name__)

METRIC_KEYS: dict[str, tuple[str, ...]] = {
    "energy": ("ActiveEnergy", "AccumulatedActiveEnergyDelivered"),
    "co2": ("CO2Emissions", "CO2Intensity"),
    "cost": ("EnergyCost", "CostPerKWh"),
    # Energy deltas take precedence over the power reading
    "consumption": ("deltaHourEnergyConsumtion", "deltaDayEnergyConsumtion", "ActivePowerTotal"),
}
METRIC_AGGREGATION: dict[str, str] = {metric: "SUM" for metric in METRIC_KEYS}
RESOLUTIONS: dict[str, int] = {
    "hourly": tw.HOUR_MS,
    "daily": tw.DAY_MS,
}
DEFAULT_METRICS = ("consumption",)
DEFAULT_RESOLUTION = "daily"
MAX_BUCKETS = 10000


@dataclass(frozen=True)
class HistoryQuery:
    device_ids: tuple[str, ...]
    window: tw.TimeWindow
    metrics: tuple[str, ...]
    resolution: str
    hour_from: Optional[int] = None
    hour_to: Optional[int] = None

    @property
    def interval(self) -> int:
        return RESOLUTIONS[self.resolution]

    @property
    def filters_hours(self) -> bool:
        return self.hour_from is not None or self.hour_to is not None


def split_csv(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_history_query(
    device_ids: list[str],
    start_date: Optional[int],
    end_date: Optional[int],
    metrics: Optional[str] = None,
    resolution: Optional[str] = None,
    hour_from: Optional[int] = None,
    hour_to: Optional[int] = None,
) -> HistoryQuery:
    """
    Validate energy history parameters.

    Raises:
        InvalidParameters: on any missing or inconsistent parameter
    """
    if not device_ids:
        raise InvalidParameters("At least one device UUID required")
    if start_date is None or end_date is None:
        raise InvalidParameters("Missing required parameters: startDate, endDate")
    if start_date >= end_date:
        raise InvalidParameters("startDate must be before endDate")

    metric_list = tuple(dict.fromkeys(split_csv(metrics))) or DEFAULT_METRICS
    unknown = [metric for metric in metric_list if metric not in METRIC_KEYS]
    if unknown:
        raise InvalidParameters(
            f"Unknown metrics: {', '.join(unknown)}. Expected any of: {', '.join(METRIC_KEYS)}"
        )

    resolution = resolution or DEFAULT_RESOLUTION
    if resolution not in RESOLUTIONS:
        raise InvalidParameters(f"Invalid resolution: {resolution}. Expected hourly or daily")

    for name, hour in (("hourFrom", hour_from), ("hourTo", hour_to)):
        if hour is not None and not 0 <= hour <= 23:
            raise InvalidParameters(f"{name} must be between 0 and 23")
    if hour_from is not None and hour_to is not None and hour_from > hour_to:
        raise InvalidParameters("hourFrom must not be after hourTo")

    if (end_date - start_date) / RESOLUTIONS[resolution] > MAX_BUCKETS:
        raise InvalidParameters(f"Date range too large for {resolution} resolution")

    return HistoryQuery(
        device_ids=tuple(dict.fromkeys(device_ids)),
        window=tw.TimeWindow(start_date, end_date),
        metrics=metric_list,
        resolution=resolution,
        hour_from=hour_from,
        hour_to=hour_to,
    )


def merge_metric(result: dict, keys: tuple[str, ...], query: HistoryQuery) -> list[dict]:
    """Bucket every key over the window and keep the first non-null value per bucket."""
    start, end, step = query.window.start, query.window.end, query.interval
    filled = [reduce.fill_buckets(result.get(key), start, end, step) for key in keys]

    hour_from = query.hour_from if query.hour_from is not None else 0
    hour_to = query.hour_to if query.hour_to is not None else 23

    points = []
    for buckets in zip(*filled):
        ts = buckets[0].ts
        if query.filters_hours and not hour_from <= tw.to_datetime(ts).hour <= hour_to:
            continue
        value = next((bucket.value for bucket in buckets if bucket.value is not None), None)
        points.append(HistoryPoint(timestamp=ts, value=value, has_data=value is not None).to_json())
    return points


def history_definition(query: HistoryQuery) -> ViewDefinition:
    """Per-request definition: one sub-query and one series per metric."""
    def window(now: int) -> tw.TimeWindow:
        return query.window

    def fold_for(metric: str):
        keys = METRIC_KEYS[metric]
        return lambda results, now: merge_metric(results[0], keys, query)

    return ViewDefinition(
        name="energy_history",
        queries=tuple(
            SubQuery(
                metric,
                METRIC_KEYS[metric],
                window,
                AggregationSpec(METRIC_AGGREGATION[metric], interval=query.interval, order="ASC"),
            )
            for metric in query.metrics
        ),
        rules=tuple(Rule(metric, (metric,), fold_for(metric), empty=list) for metric in query.metrics),
    )


def available_metrics() -> dict:
    return {
        metric: MetricInfo(keys=list(keys), aggregation=METRIC_AGGREGATION[metric]).to_json()
        for metric, keys in METRIC_KEYS.items()
    }


async def energy_history(
    assembler_for,
    query: HistoryQuery,
    now: Optional[int] = None,
    debug: bool = False,
) -> dict:
    """
    Energy history for every device of the query.

    `assembler_for` builds a ViewAssembler from a ViewDefinition. An unknown
    device fails the whole request; a device whose sub-queries all failed
    gets empty series as long as another device answered.

    Raises:
        DeviceNotFound: if any device does not resolve
        UpstreamUnavailable: if no device could be assembled
    """
    requested_at = tw.now_millis()
    assembler: ViewAssembler = assembler_for(history_definition(query))

    outcomes = await asyncio.gather(
        *(assembler.assemble(device_id, now=now, debug=debug) for device_id in query.device_ids),
        return_exceptions=True,
    )

    for outcome in outcomes:
        if isinstance(outcome, DeviceNotFound):
            raise outcome
        if isinstance(outcome, BaseException) and not isinstance(outcome, GatewayError):
            raise outcome

    failures = [outcome for outcome in outcomes if isinstance(outcome, GatewayError)]
    if len(failures) == len(outcomes):
        raise UpstreamUnavailable(failures[0].message)

    data = {}
    requests = []
    for device_id, outcome in zip(query.device_ids, outcomes):
        if isinstance(outcome, GatewayError):
            logger.warning("energy_history.device_failed", device_id=device_id, error=outcome.message)
            data[device_id] = {metric: [] for metric in query.metrics}
            continue
        data[device_id] = {metric: outcome.data.get(metric, []) for metric in query.metrics}
        for request in outcome.debug or []:
            requests.append({"deviceUUID": device_id, "metricType": request.id, **request.to_json()})

    logger.info(
        "energy_history.built",
        devices=len(query.device_ids),
        metrics=list(query.metrics),
        resolution=query.resolution,
    )

    body = {
        "success": True,
        "data": data,
        "meta": {
            "deviceUUIDs": list(query.device_ids),
            "metricTypes": list(query.metrics),
            "resolution": query.resolution,
            "startDate": query.window.start,
            "endDate": query.window.end,
            "requestedAt": requested_at,
        },
    }
    if debug:
        body["debug"] = {"requests": requests}
    return body
