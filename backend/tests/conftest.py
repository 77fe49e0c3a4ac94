"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from kpi_gateway.core.errors import DeviceNotFound
from kpi_gateway.services.device_service import DeviceResolver
from kpi_gateway.services.telemetry_fetcher import TelemetryFetcher
from kpi_gateway.services.time_windows import to_millis
from kpi_gateway.services.view_assembler import ViewAssembler

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.option.asyncio_mode = "auto"


def utc_millis(*args) -> int:
    return to_millis(datetime(*args, tzinfo=timezone.utc))


class FakeThingsboard:
    """
    In-memory stand-in for ThingsboardClient.

    Points are returned as stored (pre-aggregated), filtered to the
    requested window. `fail` may return an exception to raise for a call.
    """

    def __init__(self):
        self.devices: dict[str, dict] = {}
        self.points: dict[tuple[str, str], list[dict]] = {}
        self.attributes: dict[str, dict] = {}
        self.fail: Optional[Callable[[dict], Optional[Exception]]] = None
        self.calls: list[dict] = []
        self.saved: list[tuple] = []

    def add_device(self, device_id: str, name: str, label: str = "") -> None:
        self.devices[device_id] = {
            "id": {"id": device_id, "entityType": "DEVICE"},
            "name": name,
            "label": label,
            "type": "default",
        }

    def add_points(self, device_id: str, key: str, points: list[tuple[int, object]]) -> None:
        self.points.setdefault((device_id, key), []).extend({"ts": ts, "value": value} for ts, value in points)

    def _check(self, call: dict) -> None:
        self.calls.append(call)
        if self.fail:
            error = self.fail(call)
            if error is not None:
                raise error
        if call["entity_id"] not in self.devices:
            raise DeviceNotFound(call["entity_id"])

    async def get_timeseries(self, entity_type, entity_id, keys, start_ts, end_ts, interval=None,
                             agg=None, order_by=None, limit=None, use_strict_data_types=None):
        self._check({
            "kind": "timeseries", "entity_id": entity_id, "keys": list(keys),
            "start_ts": start_ts, "end_ts": end_ts, "interval": interval, "agg": agg,
            "order_by": order_by, "limit": limit,
        })
        result = {}
        for key in keys:
            points = [p for p in self.points.get((entity_id, key), []) if start_ts <= p["ts"] < end_ts]
            points.sort(key=lambda p: p["ts"], reverse=order_by == "DESC")
            if limit and agg in (None, "NONE"):
                points = points[:limit]
            if points:
                result[key] = points
        return result

    async def get_attributes(self, entity_type, entity_id, keys):
        self._check({"kind": "attributes", "entity_id": entity_id, "keys": list(keys)})
        stored = self.attributes.get(entity_id, {})
        return [{"key": key, "value": stored[key]} for key in keys if key in stored]

    async def save_attributes(self, entity_type, entity_id, attributes, scope="SHARED_SCOPE"):
        self._check({"kind": "save", "entity_id": entity_id, "keys": list(attributes)})
        self.saved.append((entity_id, scope, attributes))

    async def get_device(self, device_id):
        if device_id not in self.devices:
            raise DeviceNotFound(device_id)
        return self.devices[device_id]

    async def list_devices(self, customer_id=""):
        return list(self.devices.values())


@pytest.fixture
def now() -> int:
    """Friday 15 March 2024, 10:30 UTC."""
    return utc_millis(2024, 3, 15, 10, 30)


@pytest.fixture
def tb() -> FakeThingsboard:
    fake = FakeThingsboard()
    fake.add_device("meter-1", "Main_Meter", "Main meter")
    return fake


@pytest.fixture
def fetcher(tb) -> TelemetryFetcher:
    return TelemetryFetcher(tb, timeout=1.0)


@pytest.fixture
def resolver(tb) -> DeviceResolver:
    return DeviceResolver(tb)


@pytest.fixture
def build(fetcher, resolver) -> Callable:
    def factory(definition):
        return ViewAssembler(definition, fetcher, resolver)
    return factory
