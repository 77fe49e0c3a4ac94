from typing import Optional

from fastapi import APIRouter, Depends, Query

from kpi_gateway.core.dependencies import (
    AssemblerFactory,
    get_assembler_factory,
    get_client,
    get_device_resolver,
    get_fetcher,
)
from kpi_gateway.core.errors import InvalidParameters
from kpi_gateway.core.logging import get_logger
from kpi_gateway.core.thingsboard import ThingsboardClient
from kpi_gateway.schemas.views import DeviceOut, GlobalMetersRequest, RelayCommand
from kpi_gateway.services.device_service import DeviceResolver
from kpi_gateway.services.telemetry_fetcher import AGGREGATIONS, ORDERS, TelemetryFetcher
from kpi_gateway.services.time_windows import TimeWindow, now_millis
from kpi_gateway.services.views import energy_history as history
from kpi_gateway.services.views import global_meters, thermal
from kpi_gateway.services.views.current import CURRENT_VIEW
from kpi_gateway.services.views.energy_kpis import ENERGY_KPI_VIEW
from kpi_gateway.services.views.power import POWER_VIEW


router = APIRouter(prefix="/telemetry", tags=["Telemetry"])
logger = get_logger(__name__)


@router.get("/devices", response_model=dict)
async def list_devices(
    refresh: bool = Query(False, description="Bypass the device list cache"),
    devices: DeviceResolver = Depends(get_device_resolver)
):
    """List the devices visible to the configured customer."""
    items = await devices.list_devices(refresh=refresh)
    return {
        "success": True,
        "data": [
            DeviceOut(device_uuid=d.device_uuid, name=d.name, label=d.label, type=d.type).to_json()
            for d in items
        ],
        "count": len(items),
    }


@router.get("/thermal", response_model=dict)
async def get_thermal(
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory),
    devices: DeviceResolver = Depends(get_device_resolver)
):
    """Latest readings, configuration and summary of all temperature sensors."""
    return await thermal.thermal_overview(build(thermal.THERMAL_SENSOR_VIEW), devices, debug=debug)


@router.get("/thermal/chart", response_model=dict)
async def get_thermal_chart(
    sensor_ids: Optional[str] = Query(None, alias="sensorIds", description="Comma-separated device UUIDs"),
    start_ts: Optional[int] = Query(None, alias="startTs", ge=0),
    fetcher: TelemetryFetcher = Depends(get_fetcher),
    devices: DeviceResolver = Depends(get_device_resolver)
):
    """
    Hourly average temperature over 24 hours.

    The window ends at the start of the hour containing `startTs` (default:
    the current hour).
    """
    return await thermal.temperature_chart(
        fetcher,
        devices,
        sensor_ids=history.split_csv(sensor_ids) or None,
        start_ts=start_ts,
    )


@router.post("/thermal/{device_id}/relay", response_model=dict)
async def control_relay(
    device_id: str,
    command: RelayCommand,
    client: ThingsboardClient = Depends(get_client),
    fetcher: TelemetryFetcher = Depends(get_fetcher),
    devices: DeviceResolver = Depends(get_device_resolver)
):
    """Start or stop the relay of a sensor's zone."""
    return await thermal.control_relay(client, fetcher, devices, device_id, command.action)


@router.get("/energy-history", response_model=dict)
async def get_energy_history(
    devices_param: Optional[str] = Query(None, alias="devices", description="Comma-separated device UUIDs"),
    start_date: Optional[int] = Query(None, alias="startDate"),
    end_date: Optional[int] = Query(None, alias="endDate"),
    metrics: Optional[str] = Query(None, description="energy,co2,cost,consumption"),
    resolution: Optional[str] = Query(None, description="hourly or daily"),
    hour_from: Optional[int] = Query(None, alias="hourFrom"),
    hour_to: Optional[int] = Query(None, alias="hourTo"),
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Energy history for several devices at once."""
    query = history.parse_history_query(
        history.split_csv(devices_param), start_date, end_date, metrics, resolution, hour_from, hour_to
    )
    return await history.energy_history(build, query, debug=debug)


@router.post("/global-meters", response_model=dict)
async def get_global_meters(
    body: GlobalMetersRequest,
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Meter bundles for a batch of devices. Devices that fail entirely are left out."""
    device_ids = list(dict.fromkeys(d.strip() for d in body.device_uuids if d.strip()))
    return await global_meters.collect_meters(
        build(global_meters.GLOBAL_METER_VIEW), device_ids, debug=body.debug
    )


@router.get("/global-meters/{device_id}", response_model=dict)
async def get_global_meter(
    device_id: str,
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Meter bundle for one device."""
    meter, requests = await global_meters.meter_for_device(
        build(global_meters.GLOBAL_METER_VIEW), device_id, debug=debug
    )
    body = {
        "success": True,
        "data": meter.to_json(),
        "meta": {"deviceUUID": device_id, "deviceName": meter.name, "requestedAt": now_millis()},
    }
    if requests is not None:
        body["debug"] = {"requests": requests}
    return body


async def _timeseries_passthrough(
    client: ThingsboardClient,
    entity_type: str,
    entity_id: str,
    keys: Optional[str],
    start_ts: Optional[int],
    end_ts: Optional[int],
    interval: Optional[int],
    agg: Optional[str],
    order_by: Optional[str],
    limit: Optional[int],
    use_strict_data_types: Optional[bool],
) -> dict:
    key_list = history.split_csv(keys)
    if not key_list:
        raise InvalidParameters("Missing required parameter: keys")
    if start_ts is None or end_ts is None:
        raise InvalidParameters("Missing required parameters: startTs, endTs")
    if start_ts >= end_ts:
        raise InvalidParameters("startTs must be less than endTs")
    if agg is not None:
        agg = agg.upper()
        if agg not in AGGREGATIONS:
            raise InvalidParameters(f"Invalid agg: {agg}. Expected one of {', '.join(AGGREGATIONS)}")
        if agg != "NONE" and interval is None:
            raise InvalidParameters(f"interval is required for {agg} aggregation")
    if order_by is not None:
        order_by = order_by.upper()
        if order_by not in ORDERS:
            raise InvalidParameters("Invalid orderBy: expected ASC or DESC")

    data = await client.get_timeseries(
        entity_type, entity_id, key_list, start_ts, end_ts,
        interval=interval,
        agg=agg,
        order_by=order_by,
        limit=limit,
        use_strict_data_types=use_strict_data_types,
    )

    logger.info("timeseries.passthrough", entity_type=entity_type, entity_id=entity_id, keys=key_list, agg=agg)

    return {
        "success": True,
        "data": data,
        "meta": {
            "deviceUUID": entity_id,
            "keys": key_list,
            "startTs": start_ts,
            "endTs": end_ts,
            "requestedAt": now_millis(),
        },
    }


@router.get("/timeseries", response_model=dict)
async def get_entity_timeseries(
    entity_type: Optional[str] = Query(None, alias="entityType", description="e.g. DEVICE"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    keys: Optional[str] = Query(None, description="Comma-separated telemetry keys"),
    start_ts: Optional[int] = Query(None, alias="startTs"),
    end_ts: Optional[int] = Query(None, alias="endTs"),
    interval: Optional[int] = Query(None, gt=0),
    agg: Optional[str] = Query(None),
    order_by: Optional[str] = Query(None, alias="orderBy"),
    limit: Optional[int] = Query(None, gt=0),
    use_strict_data_types: Optional[bool] = Query(None, alias="useStrictDataTypes"),
    client: ThingsboardClient = Depends(get_client)
):
    """Raw passthrough with an explicit entity type and id."""
    if not entity_type or not entity_id:
        raise InvalidParameters("Missing required parameters: entityType, entityId")
    return await _timeseries_passthrough(
        client, entity_type.upper(), entity_id, keys, start_ts, end_ts,
        interval, agg, order_by, limit, use_strict_data_types,
    )


@router.get("/{device_id}/timeseries", response_model=dict)
async def get_timeseries(
    device_id: str,
    keys: Optional[str] = Query(None, description="Comma-separated telemetry keys"),
    start_ts: Optional[int] = Query(None, alias="startTs"),
    end_ts: Optional[int] = Query(None, alias="endTs"),
    interval: Optional[int] = Query(None, gt=0),
    agg: Optional[str] = Query(None),
    order_by: Optional[str] = Query(None, alias="orderBy"),
    limit: Optional[int] = Query(None, gt=0),
    use_strict_data_types: Optional[bool] = Query(None, alias="useStrictDataTypes"),
    client: ThingsboardClient = Depends(get_client)
):
    """Raw passthrough to the ThingsBoard timeseries endpoint."""
    return await _timeseries_passthrough(
        client, "DEVICE", device_id, keys, start_ts, end_ts,
        interval, agg, order_by, limit, use_strict_data_types,
    )


@router.get("/{device_id}/puissance", response_model=dict)
async def get_power_view(
    device_id: str,
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Power KPIs and consumption charts."""
    view = await build(POWER_VIEW).assemble(device_id, debug=debug)
    return view.envelope()


@router.get("/{device_id}/current", response_model=dict)
async def get_current_view(
    device_id: str,
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Current KPIs and charts."""
    view = await build(CURRENT_VIEW).assemble(device_id, debug=debug)
    return view.envelope()


@router.get("/{device_id}/kpis", response_model=dict)
async def get_energy_kpis(
    device_id: str,
    start_ts: Optional[int] = Query(None, alias="startTs"),
    end_ts: Optional[int] = Query(None, alias="endTs"),
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """
    Consumption KPIs from the accumulated energy counter.

    With `startTs` and `endTs`, every sub-query window is clipped to
    [startTs, endTs) and periods falling outside it read as no data.
    """
    bounds = None
    if start_ts is not None or end_ts is not None:
        if start_ts is None or end_ts is None:
            raise InvalidParameters("startTs and endTs must be given together")
        if start_ts >= end_ts:
            raise InvalidParameters("startTs must be less than endTs")
        bounds = TimeWindow(start_ts, end_ts)
    view = await build(ENERGY_KPI_VIEW).assemble(device_id, debug=debug, bounds=bounds)
    return view.envelope()


@router.get("/{device_id}/energy-history", response_model=dict)
async def get_device_energy_history(
    device_id: str,
    start_date: Optional[int] = Query(None, alias="startDate"),
    end_date: Optional[int] = Query(None, alias="endDate"),
    metrics: Optional[str] = Query(None, description="energy,co2,cost,consumption"),
    resolution: Optional[str] = Query(None, description="hourly or daily"),
    hour_from: Optional[int] = Query(None, alias="hourFrom"),
    hour_to: Optional[int] = Query(None, alias="hourTo"),
    debug: bool = Query(False),
    build: AssemblerFactory = Depends(get_assembler_factory)
):
    """Energy history for one device."""
    query = history.parse_history_query(
        [device_id], start_date, end_date, metrics, resolution, hour_from, hour_to
    )
    return await history.energy_history(build, query, debug=debug)


@router.get("/{device_id}/available-metrics", response_model=dict)
async def get_available_metrics(device_id: str):
    """Metric catalogue of the energy history view."""
    return {
        "success": True,
        "data": history.available_metrics(),
        "meta": {"deviceUUID": device_id, "requestedAt": now_millis()},
    }
