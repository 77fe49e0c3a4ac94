"""
Unit tests for the thermal management view.
Run: pytest backend/tests/unit/test_thermal.py -v
"""
import pytest

from kpi_gateway.core.errors import DeviceNotFound, InvalidParameters, UpstreamUnavailable
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.device_service import Device
from kpi_gateway.services.views import thermal


@pytest.fixture
def sensors(tb, now):
    tb.add_device("sensor-a", "T_Sensor_Zone_A", "Cold room")
    tb.add_device("sensor-b", "t_sensor_3")
    tb.add_device("ctrl-1", "Ctrl_A")
    tb.add_points("sensor-a", "Temperature", [(now - 120000, "20.9"), (now - 60000, "21.46")])
    tb.add_points("sensor-a", "Humidity", [(now - 60000, "55")])
    tb.add_points("sensor-a", "RawSht3xData", [(now - 60000, '{"t": 21.46, "rh": 55}')])
    tb.attributes["sensor-a"] = {
        "active": "true",
        "minTemp": "18",
        "maxTemp": 24,
        "mode": "auto",
        "relay": "R1",
        "controllerUUID": "Ctrl_A",
    }
    return tb


class TestSensorParsing:
    """Tests for sensor naming and value parsing."""

    @pytest.mark.parametrize("name, zone", [
        ("T_Sensor_Zone_A", "Zone A"),
        ("zone 12 t_sensor", "Zone 12"),
        ("t_sensor_3", "Zone 3"),
        ("T_SENSOR-b", "Zone B"),
        ("Boiler", "Unnamed Zone"),
    ])
    def test_zone_from_name(self, name, zone):
        assert thermal.zone_from_name(name) == zone

    def test_sensor_detection_is_case_insensitive(self):
        assert thermal.is_thermal_sensor(Device("x", "T_Sensor_1"))
        assert not thermal.is_thermal_sensor(Device("y", "Main_Meter"))

    @pytest.mark.parametrize("raw, expected", [
        (True, True), ("false", False), ("TRUE", True), (0, False), ("maybe", None), (None, None),
    ])
    def test_parse_bool(self, raw, expected):
        assert thermal.parse_bool(raw) is expected

    def test_parse_number(self):
        assert thermal.parse_number("18.5") == 18.5
        assert thermal.parse_number("warm") is None
        assert thermal.parse_number(True) is None

    def test_time_key_wins_for_timestamp(self, now):
        """Test that the device-reported Time is preferred over the point stamp."""
        readings = thermal.read_telemetry([{
            "Temperature": [{"ts": now, "value": "20"}],
            "Time": [{"ts": now, "value": "2024-03-15T10:00:00Z"}],
        }], now)

        assert readings["timestamp"] == "2024-03-15T10:00:00Z"
        assert readings["last_update"] == now - 30 * tw.MINUTE_MS


class TestThermalOverview:
    """Tests for the sensor listing and summary."""

    async def test_sensors_and_summary(self, sensors, build, resolver, now):
        body = await thermal.thermal_overview(build(thermal.THERMAL_SENSOR_VIEW), resolver, now=now)
        by_id = {sensor["deviceUUID"]: sensor for sensor in body["data"]["sensors"]}

        assert set(by_id) == {"sensor-a", "sensor-b"}
        sensor = by_id["sensor-a"]
        assert sensor["zone"] == "Zone A"
        assert sensor["temperature"] == 21.46
        assert sensor["humidity"] == 55.0
        assert sensor["active"] is True
        assert sensor["minTemp"] == 18.0
        assert sensor["maxTemp"] == 24.0
        assert sensor["controllerUUID"] == "Ctrl_A"
        assert sensor["rawData"] == {"t": 21.46, "rh": 55}
        assert sensor["lastUpdate"] == now - 60000
        assert sensor["timestamp"] == "2024-03-15T10:29:00Z"

        assert body["data"]["summary"] == {
            "totalSensors": 2,
            "activeSensors": 1,
            "averageTemperature": 21.5,
            "minTemperature": 21.5,
            "maxTemperature": 21.5,
        }
        assert body["meta"]["sensorCount"] == 2
        assert "debug" not in body

    async def test_failed_sensor_keeps_identity(self, sensors, build, resolver, now):
        """Test that a sensor with no reachable data is still listed."""
        sensors.fail = lambda call: UpstreamUnavailable("down") if call["entity_id"] == "sensor-a" else None

        body = await thermal.thermal_overview(build(thermal.THERMAL_SENSOR_VIEW), resolver, now=now)
        by_id = {sensor["deviceUUID"]: sensor for sensor in body["data"]["sensors"]}

        assert by_id["sensor-a"]["name"] == "T_Sensor_Zone_A"
        assert by_id["sensor-a"]["temperature"] is None
        assert body["data"]["summary"]["averageTemperature"] is None

    async def test_debug_requests_name_the_sensor(self, sensors, build, resolver, now):
        body = await thermal.thermal_overview(build(thermal.THERMAL_SENSOR_VIEW), resolver, now=now, debug=True)
        requests = body["debug"]["requests"]

        assert len(requests) == 4
        assert {request["deviceUUID"] for request in requests} == {"sensor-a", "sensor-b"}


class TestTemperatureChart:
    """Tests for the 24 hour chart."""

    async def test_hourly_buckets_ending_at_current_hour(self, sensors, fetcher, resolver, now):
        end = tw.start_of_hour(now)
        sensors.add_points("sensor-a", "Temperature", [(end - 30 * tw.MINUTE_MS, "20.04")])

        body = await thermal.temperature_chart(fetcher, resolver, sensor_ids=["sensor-a"], now=now)
        chart = body["data"]["sensors"]

        assert len(chart) == 1
        assert chart[0]["sensorLabel"] == "Cold room"
        assert len(chart[0]["data"]) == 24
        assert chart[0]["data"][-1]["value"] == 20.0
        assert chart[0]["data"][0]["value"] is None
        assert body["meta"] == {"startTs": end - tw.DAY_MS, "endTs": end, "interval": tw.HOUR_MS}

    async def test_start_ts_moves_the_window(self, sensors, fetcher, resolver, now):
        start_ts = now - 3 * tw.DAY_MS

        body = await thermal.temperature_chart(fetcher, resolver, start_ts=start_ts, now=now)

        assert body["meta"]["endTs"] == tw.start_of_hour(start_ts)
        assert len(body["data"]["sensors"]) == 2


class TestRelayControl:
    """Tests for relay commands."""

    async def test_start_sets_controller_attribute(self, sensors, fetcher, resolver):
        body = await thermal.control_relay(sensors, fetcher, resolver, "sensor-a", "start")

        assert sensors.saved == [("ctrl-1", "SHARED_SCOPE", {"active": True})]
        assert body["data"]["relay"] == "R1"
        assert body["data"]["active"] is True

    async def test_sensor_without_controller(self, sensors, fetcher, resolver):
        with pytest.raises(InvalidParameters):
            await thermal.control_relay(sensors, fetcher, resolver, "sensor-b", "stop")

    async def test_unknown_controller(self, sensors, fetcher, resolver):
        sensors.attributes["sensor-a"]["controllerUUID"] = "Ctrl_Z"

        with pytest.raises(DeviceNotFound):
            await thermal.control_relay(sensors, fetcher, resolver, "sensor-a", "stop")
        assert sensors.saved == []

    async def test_invalid_action(self, sensors, fetcher, resolver):
        with pytest.raises(InvalidParameters):
            await thermal.control_relay(sensors, fetcher, resolver, "sensor-a", "toggle")
