from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with the dashboard's camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class DebugRequest(CamelModel):
    """Observed outcome of one upstream sub-query."""
    id: str
    keys: list[str]
    start_ts: int
    end_ts: int
    interval: Optional[int] = None
    agg: Optional[str] = None
    result_points: int = 0
    error: Optional[str] = None

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ViewMeta(CamelModel):
    device_uuid: str = Field(alias="deviceUUID")
    device_name: str
    requested_at: int


class ViewResponse(CamelModel):
    """
    Assembled view: KPI scalars and chart series keyed by name, plus the
    device identity and, on request, the sub-query report.
    """
    data: dict[str, Any]
    meta: ViewMeta
    debug: Optional[list[DebugRequest]] = None

    def envelope(self) -> dict:
        """Render as {success, data, meta, debug?}."""
        body = {
            "success": True,
            "data": self.data,
            "meta": self.meta.to_json(),
        }
        if self.debug is not None:
            body["debug"] = {"requests": [request.to_json() for request in self.debug]}
        return body


class DeviceOut(CamelModel):
    device_uuid: str = Field(alias="deviceUUID")
    name: str
    label: str = ""
    type: str = ""


class ThermalSensor(CamelModel):
    """Latest readings and configuration of one temperature sensor."""
    device_uuid: str = Field(alias="deviceUUID")
    name: str
    label: str = ""
    zone: str

    active: Optional[bool] = None
    power_status: Optional[bool] = None
    display_name: Optional[str] = None
    hide_auto_mode: Optional[bool] = None
    delay: Optional[float] = None
    min_temp: Optional[float] = None
    max_temp: Optional[float] = None
    mode: Optional[str] = None
    relay: Optional[str] = None
    controller_uuid: Optional[str] = Field(default=None, alias="controllerUUID")

    temperature: Optional[float] = None
    humidity: Optional[float] = None
    dew_point: Optional[float] = None
    raw_data: Optional[dict[str, Any]] = None
    timestamp: Optional[str] = None
    last_update: Optional[int] = None


class ThermalSummary(CamelModel):
    total_sensors: int
    active_sensors: int
    average_temperature: Optional[float] = None
    min_temperature: Optional[float] = None
    max_temperature: Optional[float] = None


class ChartSensor(CamelModel):
    device_uuid: str = Field(alias="deviceUUID")
    sensor_label: str
    sensor_name: str
    data: list[dict[str, Any]]


class RelayCommand(CamelModel):
    action: Literal["start", "stop"]


class GlobalMetersRequest(CamelModel):
    device_uuids: list[str] = Field(alias="deviceUUIDs")
    debug: bool = False


class GlobalMeter(CamelModel):
    device_uuid: str = Field(alias="deviceUUID")
    name: str
    status: Literal["online", "offline"]
    instantaneous: Optional[float] = None
    today: Optional[float] = None
    yesterday: Optional[float] = None
    hourly_data: list[dict[str, Any]] = []
    monthly_data: list[dict[str, Any]] = []
    yearly_data: list[dict[str, Any]] = []


class HistoryPoint(CamelModel):
    timestamp: int
    value: Optional[float] = None
    has_data: bool


class MetricInfo(CamelModel):
    available: bool = True
    keys: list[str]
    aggregation: str
