from typing import Callable

from fastapi import Depends

from kpi_gateway.core.config import settings
from kpi_gateway.core.redis_client import get_redis_client
from kpi_gateway.core.thingsboard import ThingsboardClient, get_thingsboard_client
from kpi_gateway.services.device_service import DeviceResolver
from kpi_gateway.services.telemetry_fetcher import TelemetryFetcher
from kpi_gateway.services.view_assembler import ViewAssembler, ViewDefinition


AssemblerFactory = Callable[[ViewDefinition], ViewAssembler]


def get_client() -> ThingsboardClient:
    """Shared ThingsBoard client (overridden in tests)."""
    return get_thingsboard_client()


def get_fetcher(client: ThingsboardClient = Depends(get_client)) -> TelemetryFetcher:
    return TelemetryFetcher(client)


def get_device_resolver(client: ThingsboardClient = Depends(get_client)) -> DeviceResolver:
    """
    Device resolver backed by the Redis device list cache.

    Returns:
        DeviceResolver scoped to the configured customer
    """
    return DeviceResolver(
        client,
        redis=get_redis_client(),
        customer_id=settings.thingsboard_customer_id,
    )


def get_assembler_factory(
    fetcher: TelemetryFetcher = Depends(get_fetcher),
    devices: DeviceResolver = Depends(get_device_resolver),
) -> AssemblerFactory:
    """
    Create a dependency building a ViewAssembler for any view definition.

    Returns:
        Function mapping a ViewDefinition to its assembler
    """
    def build(definition: ViewDefinition) -> ViewAssembler:
        return ViewAssembler(definition, fetcher, devices)

    return build
