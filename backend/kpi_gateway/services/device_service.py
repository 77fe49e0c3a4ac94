from dataclasses import asdict, dataclass
from typing import Optional
import json

from redis.asyncio import Redis
from redis.exceptions import RedisError

from kpi_gateway.core.config import settings
from kpi_gateway.core.errors import DeviceNotFound, InvalidParameters
from kpi_gateway.core.logging import get_logger
from kpi_gateway.core.thingsboard import ThingsboardClient

logger = get_logger(__name__)

DEVICE_LIST_CACHE_KEY = "devices:list:{customer_id}"


@dataclass(frozen=True)
class Device:
    """A ThingsBoard device as seen by the dashboard."""
    device_uuid: str
    name: str
    label: str = ""
    type: str = ""


def device_from_thingsboard(raw: dict) -> Device:
    """
    Normalize a ThingsBoard Device or DeviceInfo payload.

    ThingsBoard nests the UUID as {"id": {"id": "...", "entityType": "DEVICE"}}.
    """
    ident = raw.get("id")
    device_uuid = ident.get("id") if isinstance(ident, dict) else ident
    return Device(
        device_uuid=str(device_uuid),
        name=raw.get("name") or "Unknown",
        label=raw.get("label") or "",
        type=raw.get("type") or "",
    )


def devices_to_json(devices: list[Device]) -> str:
    """Serialize a device list for Redis caching."""
    return json.dumps([asdict(device) for device in devices])


def devices_from_json(data: str) -> list[Device]:
    """Deserialize a cached device list."""
    return [Device(**obj) for obj in json.loads(data)]


class DeviceResolver:
    """
    Lists the customer's devices and resolves single device ids.

    The device list is cached in Redis. Any Redis failure falls back to a
    direct ThingsBoard call.
    """

    def __init__(
        self,
        client: ThingsboardClient,
        redis: Optional[Redis] = None,
        customer_id: str = "",
        ttl_seconds: Optional[int] = None,
    ):
        self.client = client
        self.redis = redis
        self.customer_id = customer_id
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.device_cache_ttl_seconds

    @property
    def cache_key(self) -> str:
        return DEVICE_LIST_CACHE_KEY.format(customer_id=self.customer_id or "tenant")

    async def _cached_devices(self) -> Optional[list[Device]]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self.cache_key)
        except RedisError as e:
            logger.warning("devices.cache_unavailable", error=str(e))
            return None
        if not cached:
            logger.debug("devices.cache_miss", customer_id=self.customer_id)
            return None
        logger.debug("devices.cache_hit", customer_id=self.customer_id)
        return devices_from_json(cached)

    async def _store_devices(self, devices: list[Device]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(self.cache_key, self.ttl_seconds, devices_to_json(devices))
            logger.debug("devices.cached", count=len(devices), ttl=self.ttl_seconds)
        except RedisError as e:
            logger.warning("devices.cache_write_failed", error=str(e))

    async def list_devices(self, refresh: bool = False) -> list[Device]:
        """
        Get the device list.

        Args:
            refresh: Skip the cache and reload from ThingsBoard

        Returns:
            Devices of the configured customer (or of the tenant)
        """
        if not refresh:
            cached = await self._cached_devices()
            if cached is not None:
                return cached

        raw_devices = await self.client.list_devices(self.customer_id)
        devices = [device_from_thingsboard(raw) for raw in raw_devices]
        await self._store_devices(devices)

        logger.info("devices.loaded", count=len(devices), refresh=refresh)
        return devices

    async def resolve(self, device_id: str) -> Device:
        """
        Resolve one device id against ThingsBoard.

        Raises:
            DeviceNotFound: if ThingsBoard does not know the id or rejects it
                as malformed
        """
        try:
            raw = await self.client.get_device(device_id)
        except InvalidParameters as e:
            # ThingsBoard answers 400 "Incorrect deviceId" for ids that are not UUIDs
            raise DeviceNotFound(device_id) from e
        if not raw:
            raise DeviceNotFound(device_id)
        return device_from_thingsboard(raw)

    async def find_by_name(self, name: str) -> Optional[Device]:
        for device in await self.list_devices():
            if device.name == name:
                return device
        return None
