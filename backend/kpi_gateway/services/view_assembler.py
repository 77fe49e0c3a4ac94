"""
Generic view assembly.

A view is declared once as a ViewDefinition: the sub-queries it needs (each
built from the reference instant) and the rules folding their results into
named KPI and series fields. ViewAssembler runs every sub-query concurrently,
waits for all of them, and degrades only the fields fed by a failed one.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from kpi_gateway.core.errors import UpstreamUnavailable
from kpi_gateway.core.logging import get_logger
from kpi_gateway.schemas.views import DebugRequest, ViewMeta, ViewResponse
from kpi_gateway.services.device_service import Device, DeviceResolver
from kpi_gateway.services.series_reducer import count_points
from kpi_gateway.services.telemetry_fetcher import (
    AggregationSpec,
    AttributeQuery,
    Query,
    QuerySpec,
    TelemetryFetcher,
)
from kpi_gateway.services.time_windows import TimeWindow, intersect, now_millis


logger = get_logger(__name__)


@dataclass(frozen=True)
class SubQuery:
    """
    A named timeseries query relative to `now`.

    `aggregation` may be a callable of the resolved window, for aggregations
    collapsing the whole window into one bucket.
    """
    id: str
    keys: tuple[str, ...]
    window: Callable[[int], TimeWindow]
    aggregation: Union[AggregationSpec, Callable[[TimeWindow], AggregationSpec]]

    def build(self, device_id: str, now: int, bounds: Optional[TimeWindow] = None) -> Optional[QuerySpec]:
        """The query for `now`, clipped to `bounds`. None when nothing of the window is left."""
        window = self.window(now)
        if bounds is not None:
            window = intersect(window, bounds)
            if window is None:
                return None
        aggregation = self.aggregation
        if not isinstance(aggregation, AggregationSpec):
            aggregation = aggregation(window)
        return QuerySpec(device_id, self.keys, window, aggregation)


@dataclass(frozen=True)
class AttributeSubQuery:
    """A named attribute lookup."""
    id: str
    keys: tuple[str, ...]

    def build(self, device_id: str, now: int, bounds: Optional[TimeWindow] = None) -> AttributeQuery:
        return AttributeQuery(device_id, self.keys)


@dataclass(frozen=True)
class Rule:
    """
    One output field.

    `fold` receives the results of `sources` (in order) and `now`. When any
    source failed, or the fold itself raises, the field takes `empty()`.
    """
    name: str
    sources: tuple[str, ...]
    fold: Callable[[list[Any], int], Any]
    empty: Callable[[], Any] = lambda: None


def kpi(name: str, source: str, key: str, reducer: Callable) -> Rule:
    """Scalar field: `reducer` applied to the points of `key`."""
    return Rule(name, (source,), lambda results, now: reducer(results[0].get(key)))


def series(name: str, source: str, key: str, shape: Callable) -> Rule:
    """Chart field: `shape(points, now)` applied to the points of `key`."""
    return Rule(name, (source,), lambda results, now: shape(results[0].get(key), now), empty=list)


@dataclass(frozen=True)
class ViewDefinition:
    name: str
    queries: tuple[Union[SubQuery, AttributeSubQuery], ...]
    rules: tuple[Rule, ...] = field(default_factory=tuple)

    def __post_init__(self):
        ids = [query.id for query in self.queries]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate sub-query id in view {self.name}")
        unknown = {source for rule in self.rules for source in rule.sources} - set(ids)
        if unknown:
            raise ValueError(f"View {self.name} has rules on unknown sub-queries: {sorted(unknown)}")


def debug_entry(query_id: str, query: Query, outcome: Any, now: int) -> DebugRequest:
    if isinstance(outcome, Exception):
        points, error = 0, str(outcome) or type(outcome).__name__
    elif isinstance(query, QuerySpec):
        points, error = count_points(outcome), None
    else:
        points, error = len(outcome), None

    if isinstance(query, QuerySpec):
        return DebugRequest(
            id=query_id,
            keys=list(query.keys),
            start_ts=query.window.start,
            end_ts=query.window.end,
            interval=query.aggregation.interval,
            agg=query.aggregation.kind,
            result_points=points,
            error=error,
        )
    # Attributes are not windowed, report them as read at `now`
    return DebugRequest(
        id=query_id,
        keys=list(query.keys),
        start_ts=now,
        end_ts=now,
        result_points=points,
        error=error,
    )


class ViewAssembler:
    """Runs one ViewDefinition for one device."""

    def __init__(self, definition: ViewDefinition, fetcher: TelemetryFetcher, devices: DeviceResolver):
        self.definition = definition
        self.fetcher = fetcher
        self.devices = devices

    async def assemble(
        self,
        device_id: str,
        now: Optional[int] = None,
        debug: bool = False,
        device: Optional[Device] = None,
        bounds: Optional[TimeWindow] = None,
    ) -> ViewResponse:
        """
        Assemble the view for a device.

        Args:
            device_id: ThingsBoard device UUID
            now: Reference instant (epoch ms), defaults to the current time
            debug: Attach the per sub-query report
            device: Already resolved device, skips the lookup
            bounds: Clip every timeseries window to this range. Sub-queries
                whose window falls outside it are not sent and read as empty.

        Raises:
            DeviceNotFound: if the device does not resolve
            UpstreamUnavailable: if every sent sub-query failed
        """
        requested_at = now_millis()
        if now is None:
            now = requested_at
        if device is None:
            device = await self.devices.resolve(device_id)

        view = self.definition.name
        built = {sub.id: sub.build(device_id, now, bounds) for sub in self.definition.queries}
        queries = {query_id: query for query_id, query in built.items() if query is not None}
        outcomes = await self.fetcher.fetch_all(queries)

        skipped = {sub.id: sub for sub in self.definition.queries if built[sub.id] is None}
        for query_id, sub in skipped.items():
            outcomes[query_id] = {key: [] for key in sub.keys}

        failed = [query_id for query_id, outcome in outcomes.items() if isinstance(outcome, Exception)]
        if queries and len(failed) == len(queries):
            logger.error("view.all_subqueries_failed", view=view, device_id=device_id, count=len(failed))
            raise UpstreamUnavailable(f"All {len(failed)} telemetry queries failed for device {device_id}")
        if failed:
            logger.warning("view.partial_data", view=view, device_id=device_id, failed=failed)

        data: dict[str, Any] = {}
        for rule in self.definition.rules:
            results = [outcomes[source] for source in rule.sources]
            if any(isinstance(result, Exception) for result in results):
                data[rule.name] = rule.empty()
                continue
            try:
                data[rule.name] = rule.fold(results, now)
            except Exception as e:
                logger.warning(
                    "view.reduction_failed",
                    view=view,
                    device_id=device_id,
                    field=rule.name,
                    error=str(e),
                    exc_info=e,
                )
                data[rule.name] = rule.empty()

        logger.info(
            "view.assembled",
            view=view,
            device_id=device_id,
            subqueries=len(queries),
            skipped=len(skipped),
            failed=len(failed),
        )

        report = None
        if debug:
            # Skipped sub-queries are reported over their unclipped window
            report = [
                debug_entry(
                    sub.id,
                    queries.get(sub.id) or sub.build(device_id, now),
                    outcomes[sub.id],
                    now,
                )
                for sub in self.definition.queries
            ]

        return ViewResponse(
            data=data,
            meta=ViewMeta(device_uuid=device_id, device_name=device.name, requested_at=requested_at),
            debug=report,
        )
