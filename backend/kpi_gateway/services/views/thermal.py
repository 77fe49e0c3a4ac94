"""
Thermal management view.

Temperature sensors are the devices whose name contains "t_sensor". Each
sensor costs two sub-queries: its latest readings and its configuration
attributes. The chart and the relay command live here too.
"""
import asyncio
import json
import re
from datetime import datetime
from typing import Any, Optional

from kpi_gateway.core.errors import DeviceNotFound, GatewayError, InvalidParameters
from kpi_gateway.core.logging import get_logger
from kpi_gateway.core.thingsboard import ThingsboardClient
from kpi_gateway.schemas.views import ChartSensor, ThermalSensor, ThermalSummary
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.device_service import Device, DeviceResolver
from kpi_gateway.services.telemetry_fetcher import AggregationSpec, AttributeQuery, QuerySpec, TelemetryFetcher
from kpi_gateway.services.view_assembler import AttributeSubQuery, Rule, SubQuery, ViewAssembler, ViewDefinition
from kpi_gateway.services.views.common import iso_date


logger = get_logger(__name__)

SENSOR_MARKER = "t_sensor"
TELEMETRY_KEYS = ("Temperature", "Humidity", "DewPoint", "RawSht3xData", "Time")
METADATA_KEYS = (
    "active", "powerStatus", "displayName", "hideAutoMode", "delay",
    "minTemp", "maxTemp", "mode", "relay", "controllerUUID",
)

_ZONE = re.compile(r"Zone[_\s]?([A-Za-z0-9]+)", re.IGNORECASE)
_SENSOR_SUFFIX = re.compile(r"(?:t_sensor|sensor)[_\s]?([A-Za-z0-9]+)", re.IGNORECASE)


def is_thermal_sensor(device: Device) -> bool:
    return SENSOR_MARKER in device.name.lower()


def zone_from_name(name: str) -> str:
    """
    Derive a display zone from a sensor name.

    "T_Sensor_Zone_A" -> "Zone A", "t_sensor_3" -> "Zone 3".
    """
    match = _ZONE.search(name)
    if match:
        return f"Zone {match.group(1)}"
    match = _SENSOR_SUFFIX.search(name)
    if match:
        return f"Zone {match.group(1).upper()}"
    if SENSOR_MARKER in name.lower():
        parts = re.split(r"[_-]", name)
        if len(parts) > 1 and parts[-1]:
            return f"Zone {parts[-1].upper()}"
    return "Unnamed Zone"


def parse_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def parse_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return reduce.parse_value(value)
    except GatewayError:
        return None


def parse_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _latest_text(raw_points) -> Optional[str]:
    points = [p for p in raw_points or [] if "ts" in p]
    if not points:
        return None
    return parse_text(max(points, key=lambda p: p["ts"]).get("value"))


def _epoch_millis(text: str) -> Optional[int]:
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return tw.to_millis(parsed)


def read_telemetry(results: list, now: int) -> dict:
    data = results[0]
    raw_data = None
    raw_text = _latest_text(data.get("RawSht3xData"))
    if raw_text:
        try:
            raw_data = json.loads(raw_text)
        except ValueError:
            logger.warning("thermal.raw_data_unparseable", value=raw_text[:100])

    timestamp = _latest_text(data.get("Time"))
    last_update = None
    if timestamp:
        last_update = _epoch_millis(timestamp)
    else:
        temperature_points = reduce.to_points(data.get("Temperature"))
        if temperature_points:
            last_update = temperature_points[-1].ts
            timestamp = iso_date(last_update)

    return {
        "temperature": reduce.latest(data.get("Temperature")),
        "humidity": reduce.latest(data.get("Humidity")),
        "dew_point": reduce.latest(data.get("DewPoint")),
        "raw_data": raw_data if isinstance(raw_data, dict) else None,
        "timestamp": timestamp,
        "last_update": last_update,
    }


def read_metadata(results: list, now: int) -> dict:
    attributes = results[0]
    return {
        "active": parse_bool(attributes.get("active")),
        "power_status": parse_bool(attributes.get("powerStatus")),
        "display_name": parse_text(attributes.get("displayName")),
        "hide_auto_mode": parse_bool(attributes.get("hideAutoMode")),
        "delay": parse_number(attributes.get("delay")),
        "min_temp": parse_number(attributes.get("minTemp")),
        "max_temp": parse_number(attributes.get("maxTemp")),
        "mode": parse_text(attributes.get("mode")),
        "relay": parse_text(attributes.get("relay")),
        "controller_uuid": parse_text(attributes.get("controllerUUID")),
    }


THERMAL_SENSOR_VIEW = ViewDefinition(
    name="thermal_sensor",
    queries=(
        SubQuery("telemetry", TELEMETRY_KEYS, tw.last_24h, AggregationSpec.latest()),
        AttributeSubQuery("metadata", METADATA_KEYS),
    ),
    rules=(
        Rule("readings", ("telemetry",), read_telemetry, empty=dict),
        Rule("settings", ("metadata",), read_metadata, empty=dict),
    ),
)


def summarize(sensors: list[ThermalSensor]) -> ThermalSummary:
    temperatures = [s.temperature for s in sensors if s.temperature is not None]
    return ThermalSummary(
        total_sensors=len(sensors),
        active_sensors=sum(1 for s in sensors if s.active is True),
        average_temperature=reduce.round_or_none(sum(temperatures) / len(temperatures)) if temperatures else None,
        min_temperature=reduce.round_or_none(min(temperatures)) if temperatures else None,
        max_temperature=reduce.round_or_none(max(temperatures)) if temperatures else None,
    )


async def _sensor(
    assembler: ViewAssembler,
    device: Device,
    now: int,
    debug: bool,
) -> tuple[ThermalSensor, list[dict]]:
    identity = {
        "device_uuid": device.device_uuid,
        "name": device.name,
        "label": device.label,
        "zone": zone_from_name(device.name),
    }
    try:
        view = await assembler.assemble(device.device_uuid, now=now, debug=debug, device=device)
    except GatewayError as e:
        logger.warning("thermal.sensor_unavailable", device_id=device.device_uuid, error=e.message)
        return ThermalSensor(**identity), []

    sensor = ThermalSensor(**identity, **view.data["readings"], **view.data["settings"])
    requests = [
        {"deviceUUID": device.device_uuid, **request.to_json()}
        for request in view.debug or []
    ]
    return sensor, requests


async def thermal_overview(
    assembler: ViewAssembler,
    devices: DeviceResolver,
    now: Optional[int] = None,
    debug: bool = False,
) -> dict:
    """Latest readings and configuration of every temperature sensor, with a summary."""
    requested_at = tw.now_millis()
    if now is None:
        now = requested_at

    sensors_found = [device for device in await devices.list_devices() if is_thermal_sensor(device)]
    logger.info("thermal.sensors_found", count=len(sensors_found))

    outcomes = await asyncio.gather(*(_sensor(assembler, device, now, debug) for device in sensors_found))
    sensors = [sensor for sensor, _ in outcomes]

    body = {
        "success": True,
        "data": {
            "sensors": [sensor.to_json() for sensor in sensors],
            "summary": summarize(sensors).to_json(),
        },
        "meta": {"requestedAt": requested_at, "sensorCount": len(sensors)},
    }
    if debug:
        body["debug"] = {"requests": [request for _, requests in outcomes for request in requests]}
    return body


def chart_window(start_ts: Optional[int], now: int) -> tw.TimeWindow:
    """24 hours ending at the start of the hour of `start_ts` (or of `now`)."""
    end = tw.start_of_hour(start_ts if start_ts is not None else now)
    return tw.TimeWindow(end - tw.DAY_MS, end)


async def temperature_chart(
    fetcher: TelemetryFetcher,
    devices: DeviceResolver,
    sensor_ids: Optional[list[str]] = None,
    start_ts: Optional[int] = None,
    now: Optional[int] = None,
) -> dict:
    """Hourly average temperature over 24 hours for each selected sensor."""
    if now is None:
        now = tw.now_millis()
    window = chart_window(start_ts, now)

    sensors = [device for device in await devices.list_devices() if is_thermal_sensor(device)]
    if sensor_ids:
        wanted = set(sensor_ids)
        sensors = [device for device in sensors if device.device_uuid in wanted]

    queries = {
        device.device_uuid: QuerySpec(device.device_uuid, ("Temperature",), window, AggregationSpec.avg(tw.HOUR_MS))
        for device in sensors
    }
    outcomes = await fetcher.fetch_all(queries)

    charts = []
    for device in sensors:
        outcome = outcomes[device.device_uuid]
        data = []
        if not isinstance(outcome, Exception):
            buckets = reduce.fill_buckets(outcome.get("Temperature"), window.start, window.end, tw.HOUR_MS)
            data = [
                {
                    "timestamp": point.ts,
                    "date": iso_date(point.ts),
                    "value": reduce.round_or_none(point.value),
                }
                for point in buckets
            ]
        charts.append(ChartSensor(
            device_uuid=device.device_uuid,
            sensor_label=device.label or device.name,
            sensor_name=device.name,
            data=data,
        ).to_json())

    logger.info("thermal.chart_built", sensors=len(charts), start_ts=window.start, end_ts=window.end)

    return {
        "success": True,
        "data": {"sensors": charts},
        "meta": {"startTs": window.start, "endTs": window.end, "interval": tw.HOUR_MS},
    }


async def control_relay(
    client: ThingsboardClient,
    fetcher: TelemetryFetcher,
    devices: DeviceResolver,
    device_id: str,
    action: str,
) -> dict:
    """
    Switch the relay feeding a sensor's zone.

    The sensor's `controllerUUID` attribute holds the controller device name;
    the command is the controller's shared `active` attribute.

    Raises:
        DeviceNotFound: if the sensor or its controller does not exist
        InvalidParameters: if the sensor has no controller or relay assigned
    """
    if action not in ("start", "stop"):
        raise InvalidParameters(f"Invalid relay action: {action}")

    sensor = await devices.resolve(device_id)
    metadata = await fetcher.fetch_attributes(AttributeQuery(device_id, ("controllerUUID", "relay")))
    controller_name = parse_text(metadata.get("controllerUUID"))
    relay = parse_text(metadata.get("relay"))

    if not controller_name:
        raise InvalidParameters(f"No controller UUID found for device {sensor.name}")
    if not relay:
        raise InvalidParameters(f"No relay assigned to device {sensor.name}")

    controller = await devices.find_by_name(controller_name)
    if controller is None:
        raise DeviceNotFound(controller_name)

    active = action == "start"
    await client.save_attributes("DEVICE", controller.device_uuid, {"active": active})

    logger.info(
        "thermal.relay_switched",
        device_id=device_id,
        controller=controller.name,
        relay=relay,
        action=action,
    )

    return {
        "success": True,
        "message": f"Relay {action} command sent successfully",
        "data": {
            "deviceUUID": device_id,
            "controllerUUID": controller.device_uuid,
            "controllerName": controller.name,
            "relay": relay,
            "active": active,
        },
    }
