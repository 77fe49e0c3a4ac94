"""
Integration tests for the telemetry API.
The app runs in-process over ASGITransport with ThingsBoard replaced by the
in-memory fake from conftest.
"""
import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from kpi_gateway.core.dependencies import get_client, get_device_resolver
from kpi_gateway.core.errors import UpstreamUnavailable
from kpi_gateway.core.thingsboard import ThingsboardClient
from kpi_gateway.main import app
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.device_service import DeviceResolver
from kpi_gateway.services.time_windows import now_millis
from kpi_gateway.services.views.energy_kpis import ACCUMULATED


@pytest_asyncio.fixture
async def api(tb):
    app.dependency_overrides[get_client] = lambda: tb
    app.dependency_overrides[get_device_resolver] = lambda: DeviceResolver(tb)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


class TestViewRoutes:
    """Tests for the per-device views."""

    async def test_unknown_device_is_404(self, api):
        response = await api.get("/api/telemetry/nonexistent/puissance")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Device not found: nonexistent"}

    async def test_malformed_device_id_is_404(self, api):
        """Test that ThingsBoard's 400 for a non-UUID id still answers 404."""
        def handler(request):
            if request.url.path == "/api/auth/login":
                return httpx.Response(200, json={"token": "t"})
            return httpx.Response(400, json={"status": 400, "message": "Incorrect deviceId nonexistent"})

        client = ThingsboardClient("http://tb.local", "u", "p", transport=httpx.MockTransport(handler))
        app.dependency_overrides[get_client] = lambda: client
        app.dependency_overrides[get_device_resolver] = lambda: DeviceResolver(client)

        response = await api.get("/api/telemetry/nonexistent/kpis")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Device not found: nonexistent"}

    @pytest.mark.parametrize("view", ["puissance", "current", "kpis"])
    async def test_envelope(self, api, view):
        response = await api.get(f"/api/telemetry/meter-1/{view}")
        body = response.json()

        assert response.status_code == 200
        assert body["success"] is True
        assert body["meta"]["deviceUUID"] == "meter-1"
        assert body["meta"]["deviceName"] == "Main_Meter"
        assert "debug" not in body

    async def test_debug_report(self, api):
        response = await api.get("/api/telemetry/meter-1/puissance", params={"debug": "true"})
        requests = response.json()["debug"]["requests"]

        assert len(requests) == 9
        assert {"id", "keys", "startTs", "endTs", "resultPoints"} <= set(requests[0])

    async def test_partial_data_is_200(self, api, tb):
        """Test that a failing sub-query degrades the view instead of failing it."""
        tb.add_points("meter-1", "ActivePowerTotal", [(now_millis() - 60000, "5")])
        tb.fail = lambda call: UpstreamUnavailable("down") if call["agg"] == "SUM" else None

        response = await api.get("/api/telemetry/meter-1/puissance")
        data = response.json()["data"]

        assert response.status_code == 200
        assert data["instantaneousPower"] == 5.0
        assert data["consumedToday"] is None
        assert data["hourlyData"] == []

    async def test_upstream_down_is_502(self, api, tb):
        tb.fail = lambda call: UpstreamUnavailable("down")

        response = await api.get("/api/telemetry/meter-1/current")

        assert response.status_code == 502
        assert response.json()["success"] is False

    @pytest.mark.parametrize("params", [
        {"startTs": 1},
        {"endTs": 2},
        {"startTs": 5, "endTs": 2},
        {"startTs": "today", "endTs": 2},
    ])
    async def test_kpi_bounds_validation(self, api, tb, params):
        response = await api.get("/api/telemetry/meter-1/kpis", params=params)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert tb.calls == []

    async def test_kpi_bounds(self, api, tb):
        """Test that startTs/endTs restrict every counter read."""
        midnight = tw.start_of_day(now_millis())
        tb.add_points("meter-1", ACCUMULATED, [
            (midnight - tw.DAY_MS + 1000, "10"),
            (midnight - 1000, "15"),
        ])

        response = await api.get("/api/telemetry/meter-1/kpis", params={
            "startTs": midnight - tw.DAY_MS, "endTs": midnight, "debug": "true",
        })
        body = response.json()

        assert response.status_code == 200
        assert body["data"]["consumedYesterday"] == 5.0
        assert body["data"]["consumedToday"] is None
        assert len(body["debug"]["requests"]) == 12
        assert all(midnight - tw.DAY_MS <= call["start_ts"] and call["end_ts"] <= midnight for call in tb.calls)


class TestTimeseriesPassthrough:
    """Tests for the raw timeseries route."""

    async def test_forwards_query(self, api, tb):
        tb.add_points("meter-1", "Current_Avg", [(150, "2")])

        response = await api.get("/api/telemetry/meter-1/timeseries", params={
            "keys": "Current_Avg", "startTs": 100, "endTs": 200, "agg": "avg", "interval": 50,
        })

        assert response.status_code == 200
        assert response.json()["data"] == {"Current_Avg": [{"ts": 150, "value": "2"}]}
        assert tb.calls[-1]["agg"] == "AVG"

    @pytest.mark.parametrize("params", [
        {"startTs": 1, "endTs": 2},
        {"keys": "k", "startTs": 1},
        {"keys": "k", "startTs": 5, "endTs": 2},
        {"keys": "k", "startTs": 1, "endTs": 2, "agg": "MEDIAN", "interval": 10},
        {"keys": "k", "startTs": 1, "endTs": 2, "agg": "SUM"},
        {"keys": "k", "startTs": 1, "endTs": 2, "orderBy": "UP"},
        {"keys": "k", "startTs": "yesterday", "endTs": 2},
    ])
    async def test_invalid_parameters_never_reach_upstream(self, api, tb, params):
        response = await api.get("/api/telemetry/meter-1/timeseries", params=params)

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert tb.calls == []

    async def test_entity_route_forwards_query(self, api, tb):
        tb.add_points("meter-1", "Current_Avg", [(150, "2")])

        response = await api.get("/api/telemetry/timeseries", params={
            "entityType": "device", "entityId": "meter-1", "keys": "Current_Avg", "startTs": 100, "endTs": 200,
        })
        body = response.json()

        assert response.status_code == 200
        assert body["data"] == {"Current_Avg": [{"ts": 150, "value": "2"}]}
        assert body["meta"]["deviceUUID"] == "meter-1"
        assert tb.calls[-1]["entity_id"] == "meter-1"

    @pytest.mark.parametrize("params", [
        {"entityId": "meter-1", "keys": "k", "startTs": 1, "endTs": 2},
        {"entityType": "DEVICE", "keys": "k", "startTs": 1, "endTs": 2},
        {"entityType": "DEVICE", "entityId": "meter-1", "startTs": 1, "endTs": 2},
        {"entityType": "DEVICE", "entityId": "meter-1", "keys": "k", "startTs": 5, "endTs": 2},
    ])
    async def test_entity_route_validation(self, api, tb, params):
        response = await api.get("/api/telemetry/timeseries", params=params)

        assert response.status_code == 400
        assert tb.calls == []


class TestBatchRoutes:
    """Tests for the multi-device routes."""

    async def test_devices(self, api):
        response = await api.get("/api/telemetry/devices")
        body = response.json()

        assert body["count"] == 1
        assert body["data"][0] == {"deviceUUID": "meter-1", "name": "Main_Meter", "label": "Main meter", "type": "default"}

    async def test_global_meters_drop_unknown(self, api):
        response = await api.post("/api/telemetry/global-meters", json={"deviceUUIDs": ["meter-1", "ghost"]})
        body = response.json()

        assert response.status_code == 200
        assert [meter["deviceUUID"] for meter in body["data"]] == ["meter-1"]

    async def test_global_meters_require_list(self, api):
        response = await api.post("/api/telemetry/global-meters", json={})

        assert response.status_code == 400

    async def test_energy_history_validation(self, api, tb):
        response = await api.get("/api/telemetry/energy-history", params={"devices": "meter-1"})

        assert response.status_code == 400
        assert "startDate" in response.json()["error"]
        assert tb.calls == []

    async def test_energy_history(self, api):
        end = now_millis()
        response = await api.get("/api/telemetry/meter-1/energy-history", params={
            "startDate": end - 3 * 86400000, "endDate": end, "metrics": "energy",
        })
        body = response.json()

        assert response.status_code == 200
        assert list(body["data"]["meter-1"]) == ["energy"]
        assert len(body["data"]["meter-1"]["energy"]) == 3

    async def test_available_metrics(self, api):
        response = await api.get("/api/telemetry/meter-1/available-metrics")

        assert set(response.json()["data"]) == {"energy", "co2", "cost", "consumption"}

    async def test_thermal_without_sensors(self, api):
        response = await api.get("/api/telemetry/thermal")
        body = response.json()

        assert body["data"]["sensors"] == []
        assert body["data"]["summary"]["totalSensors"] == 0

    async def test_relay_rejects_unknown_action(self, api, tb):
        response = await api.post("/api/telemetry/thermal/meter-1/relay", json={"action": "toggle"})

        assert response.status_code == 400
        assert tb.saved == []


class TestAppRoutes:
    """Tests for the app-level routes and middleware."""

    async def test_request_id_is_echoed(self, api):
        response = await api.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["name"] == "KPI Gateway"

    async def test_request_id_is_generated(self, api):
        response = await api.get("/")

        assert response.headers["X-Request-ID"]
