"""
Unit tests for generic view assembly.
Run: pytest backend/tests/unit/test_view_assembler.py -v
"""
import pytest

from kpi_gateway.core.errors import DeviceNotFound, UpstreamUnavailable
from kpi_gateway.services import series_reducer as reduce
from kpi_gateway.services import time_windows as tw
from kpi_gateway.services.telemetry_fetcher import AggregationSpec
from kpi_gateway.services.view_assembler import (
    AttributeSubQuery,
    Rule,
    SubQuery,
    ViewDefinition,
    kpi,
    series,
)


KEY = "ActivePowerTotal"


def fill_hours(raw, now):
    window = tw.last_n_millis(now, 3 * tw.HOUR_MS)
    return [{"ts": p.ts, "value": p.value} for p in reduce.fill_buckets(raw, window.start, window.end, tw.HOUR_MS)]


SAMPLE_VIEW = ViewDefinition(
    name="sample",
    queries=(
        SubQuery("instantaneous", (KEY,), tw.last_24h, AggregationSpec.latest()),
        SubQuery("today", (KEY,), tw.today, AggregationSpec.sum(5 * tw.MINUTE_MS, limit=10000)),
        SubQuery("chart", (KEY,), lambda now: tw.last_n_millis(now, 3 * tw.HOUR_MS),
                 AggregationSpec.avg(tw.HOUR_MS, limit=3)),
    ),
    rules=(
        kpi("instantaneous", "instantaneous", KEY, reduce.latest),
        kpi("today", "today", KEY, reduce.total),
        series("chart", "chart", KEY, fill_hours),
    ),
)


class TestViewDefinition:
    """Tests for definition validation."""

    def test_duplicate_ids_rejected(self):
        query = SubQuery("a", (KEY,), tw.today, AggregationSpec.latest())
        with pytest.raises(ValueError):
            ViewDefinition("dup", (query, query))

    def test_rules_must_reference_known_queries(self):
        query = SubQuery("a", (KEY,), tw.today, AggregationSpec.latest())
        with pytest.raises(ValueError):
            ViewDefinition("orphan", (query,), (kpi("x", "b", KEY, reduce.latest),))

    def test_window_dependent_aggregation(self, now):
        """Test that a callable aggregation sees the resolved window."""
        query = SubQuery("avg", (KEY,), tw.last_hour, lambda window: AggregationSpec.avg(window.duration))

        built = query.build("meter-1", now)

        assert built.aggregation.interval == tw.HOUR_MS
        assert built.window == tw.last_hour(now)

    def test_bounds_clip_before_aggregation(self, now):
        """Test that a callable aggregation sees the clipped window."""
        query = SubQuery("avg", (KEY,), tw.last_hour, lambda window: AggregationSpec.avg(window.duration))
        bounds = tw.TimeWindow(now - 2 * tw.HOUR_MS, now - 15 * tw.MINUTE_MS)

        built = query.build("meter-1", now, bounds)

        assert built.window == tw.TimeWindow(now - tw.HOUR_MS, now - 15 * tw.MINUTE_MS)
        assert built.aggregation.interval == 45 * tw.MINUTE_MS

    def test_window_outside_bounds_builds_nothing(self, now):
        query = SubQuery("today", (KEY,), tw.today, AggregationSpec.latest())

        assert query.build("meter-1", now, tw.yesterday(now)) is None


class TestAssemble:
    """Tests for ViewAssembler.assemble."""

    async def test_full_view(self, tb, build, now):
        """Test that every rule is folded from its sub-query."""
        tb.add_points("meter-1", KEY, [(now - 60000, "12.5"), (tw.start_of_day(now) + 1000, "2"), (now - 2, "3")])

        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now)

        assert view.data["instantaneous"] == 3.0
        assert view.data["today"] == 17.5
        assert len(view.data["chart"]) == 3
        assert view.meta.device_uuid == "meter-1"
        assert view.meta.device_name == "Main_Meter"
        assert view.debug is None

    async def test_no_data_is_null_not_zero(self, build, now):
        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now)

        assert view.data["instantaneous"] is None
        assert view.data["today"] is None
        assert [p["value"] for p in view.data["chart"]] == [None, None, None]

    async def test_partial_failure_degrades_only_dependent_fields(self, tb, build, now):
        """Test that a failed sub-query nulls its own fields and nothing else."""
        tb.add_points("meter-1", KEY, [(now - 60000, "12.5")])
        tb.fail = lambda call: UpstreamUnavailable("boom") if call["agg"] == "SUM" else None

        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now)

        assert view.data["today"] is None
        assert view.data["instantaneous"] == 12.5
        assert len(view.data["chart"]) == 3

    async def test_failed_series_is_empty_list(self, tb, build, now):
        tb.fail = lambda call: UpstreamUnavailable("boom") if call["agg"] == "AVG" else None

        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now)

        assert view.data["chart"] == []

    async def test_all_subqueries_failed(self, tb, build, now):
        """Test that a view with no successful sub-query is a gateway error."""
        tb.fail = lambda call: UpstreamUnavailable("down")

        with pytest.raises(UpstreamUnavailable):
            await build(SAMPLE_VIEW).assemble("meter-1", now=now)

    async def test_unknown_device(self, tb, build, now):
        """Test that an unknown device fails before any telemetry call."""
        with pytest.raises(DeviceNotFound):
            await build(SAMPLE_VIEW).assemble("nope", now=now)

        assert tb.calls == []

    async def test_reducer_exception_degrades_field(self, build, now):
        """Test that a fold raising is isolated to its field."""
        def explode(results, now):
            raise RuntimeError("bad fold")

        definition = ViewDefinition(
            name="fragile",
            queries=SAMPLE_VIEW.queries,
            rules=SAMPLE_VIEW.rules + (Rule("fragile", ("today",), explode, empty=dict),),
        )

        view = await build(definition).assemble("meter-1", now=now)

        assert view.data["fragile"] == {}
        assert view.data["today"] is None

    async def test_debug_report(self, tb, build, now):
        """Test the per sub-query report including failures."""
        tb.add_points("meter-1", KEY, [(now - 60000, "12.5")])
        tb.fail = lambda call: UpstreamUnavailable("boom") if call["agg"] == "SUM" else None

        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now, debug=True)
        report = {entry["id"]: entry for entry in view.envelope()["debug"]["requests"]}

        assert set(report) == {"instantaneous", "today", "chart"}
        assert report["instantaneous"]["resultPoints"] == 1
        assert report["instantaneous"]["agg"] == "NONE"
        assert report["instantaneous"]["startTs"] == now - tw.DAY_MS
        assert report["instantaneous"]["endTs"] == now
        assert report["today"]["error"] == "boom"
        assert report["today"]["interval"] == 5 * tw.MINUTE_MS
        assert "error" not in report["chart"]

    async def test_attribute_sub_query(self, tb, build, now):
        tb.attributes["meter-1"] = {"zone": "A"}
        definition = ViewDefinition(
            name="attrs",
            queries=(AttributeSubQuery("metadata", ("zone",)),),
            rules=(Rule("zone", ("metadata",), lambda results, now: results[0].get("zone")),),
        )

        view = await build(definition).assemble("meter-1", now=now, debug=True)

        assert view.data == {"zone": "A"}
        assert view.debug[0].start_ts == now
        assert view.debug[0].result_points == 1

    async def test_envelope_shape(self, build, now):
        view = await build(SAMPLE_VIEW).assemble("meter-1", now=now)
        body = view.envelope()

        assert body["success"] is True
        assert set(body["meta"]) == {"deviceUUID", "deviceName", "requestedAt"}
        assert "debug" not in body
