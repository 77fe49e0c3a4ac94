"""
Telemetry fetcher for dashboard views.
Turns QuerySpecs into ThingsBoard timeseries calls and runs batches of them
concurrently with settle-all semantics.
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

from kpi_gateway.core.config import settings
from kpi_gateway.core.errors import UpstreamUnavailable
from kpi_gateway.core.logging import get_logger
from kpi_gateway.core.thingsboard import ThingsboardClient
from kpi_gateway.services.series_reducer import count_points
from kpi_gateway.services.time_windows import TimeWindow


logger = get_logger(__name__)

ENTITY_TYPE = "DEVICE"
AGGREGATIONS = ("NONE", "SUM", "AVG", "MIN", "MAX")
ORDERS = ("ASC", "DESC")


@dataclass(frozen=True)
class AggregationSpec:
    """
    How ThingsBoard collapses raw points.

    NONE returns raw points (`limit` and `order` apply); the other kinds
    bucket by `interval` milliseconds and reduce each bucket.
    """
    kind: str = "NONE"
    interval: Optional[int] = None
    limit: Optional[int] = None
    order: Optional[str] = None

    def __post_init__(self):
        if self.kind not in AGGREGATIONS:
            raise ValueError(f"Unknown aggregation: {self.kind}")
        if self.kind != "NONE" and not self.interval:
            raise ValueError(f"{self.kind} aggregation needs an interval")
        if self.order is not None and self.order not in ORDERS:
            raise ValueError(f"Unknown order: {self.order}")

    @classmethod
    def latest(cls) -> "AggregationSpec":
        return cls("NONE", limit=1, order="DESC")

    @classmethod
    def none(cls, limit: Optional[int] = None, order: Optional[str] = "ASC") -> "AggregationSpec":
        return cls("NONE", limit=limit, order=order)

    @classmethod
    def sum(cls, interval: int, limit: Optional[int] = None) -> "AggregationSpec":
        return cls("SUM", interval=interval, limit=limit, order="ASC")

    @classmethod
    def avg(cls, interval: int, limit: Optional[int] = None) -> "AggregationSpec":
        return cls("AVG", interval=interval, limit=limit, order="ASC")

    @classmethod
    def min(cls, interval: int) -> "AggregationSpec":
        return cls("MIN", interval=interval, order="ASC")

    @classmethod
    def max(cls, interval: int) -> "AggregationSpec":
        return cls("MAX", interval=interval, order="ASC")


@dataclass(frozen=True)
class QuerySpec:
    """One outbound timeseries query."""
    device_id: str
    keys: tuple[str, ...]
    window: TimeWindow
    aggregation: AggregationSpec


@dataclass(frozen=True)
class AttributeQuery:
    """One outbound attribute lookup."""
    device_id: str
    keys: tuple[str, ...]


Query = Union[QuerySpec, AttributeQuery]


class TelemetryFetcher:
    """Executes QuerySpecs against ThingsBoard."""

    def __init__(self, client: ThingsboardClient, timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout if timeout is not None else settings.subquery_timeout_seconds

    async def fetch(self, spec: QuerySpec) -> dict[str, list[dict]]:
        """
        Run one timeseries query.

        Returns:
            Mapping of every requested key to its point list ([] when the
            upstream returned nothing for that key)
        """
        agg = spec.aggregation
        data = await self.client.get_timeseries(
            ENTITY_TYPE,
            spec.device_id,
            list(spec.keys),
            spec.window.start,
            spec.window.end,
            interval=agg.interval,
            agg=agg.kind,
            order_by=agg.order,
            limit=agg.limit,
        )
        return {key: data.get(key) or [] for key in spec.keys}

    async def fetch_attributes(self, query: AttributeQuery) -> dict[str, Any]:
        """Run one attribute lookup, returning key -> value for the keys found."""
        attributes = await self.client.get_attributes(ENTITY_TYPE, query.device_id, list(query.keys))
        return {item["key"]: item.get("value") for item in attributes if "key" in item}

    async def _run(self, query: Query) -> Any:
        if isinstance(query, AttributeQuery):
            call = self.fetch_attributes(query)
        else:
            call = self.fetch(query)
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(
                f"Sub-query timed out after {self.timeout}s for device {query.device_id}"
            ) from e

    async def fetch_all(self, queries: dict[str, Query]) -> dict[str, Any]:
        """
        Run every query concurrently and wait for all of them.

        A failing query never cancels its siblings: its slot in the result
        holds the exception instead of the data.

        Returns:
            Mapping of query id -> result dict or Exception
        """
        ids = list(queries)
        outcomes = await asyncio.gather(
            *(self._run(queries[query_id]) for query_id in ids),
            return_exceptions=True,
        )

        results: dict[str, Any] = {}
        for query_id, outcome in zip(ids, outcomes):
            query = queries[query_id]
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                logger.warning(
                    "telemetry_fetcher.subquery_failed",
                    query_id=query_id,
                    device_id=query.device_id,
                    keys=list(query.keys),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            else:
                logger.debug(
                    "telemetry_fetcher.subquery_done",
                    query_id=query_id,
                    device_id=query.device_id,
                    points=count_points(outcome) if isinstance(query, QuerySpec) else len(outcome),
                )
            results[query_id] = outcome

        return results
