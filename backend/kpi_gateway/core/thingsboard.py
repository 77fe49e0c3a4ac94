import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx

from .config import settings
from .errors import DeviceNotFound, InvalidParameters, UpstreamAuthExpired, UpstreamUnavailable
from .logging import get_logger


logger = get_logger(__name__)

TELEMETRY_PREFIX = "/api/plugins/telemetry"
DEVICE_PAGE_SIZE = 100


class TokenCell:
    """
    Holds the ThingsBoard bearer token shared by every request.

    At most one login runs at a time. A caller that saw a token rejected
    passes it to refresh(); if another caller already replaced it, the new
    token is returned without logging in again.
    """

    def __init__(self, login: Callable[[], Awaitable[str]]):
        self._login = login
        self._token: Optional[str] = None
        self._lock = asyncio.Lock()

    async def get(self) -> str:
        if self._token is None:
            async with self._lock:
                if self._token is None:
                    self._token = await self._login()
        return self._token

    async def refresh(self, stale: Optional[str]) -> str:
        async with self._lock:
            if self._token is not None and self._token != stale:
                return self._token
            self._token = await self._login()
            return self._token


class ThingsboardClient:
    """
    Thin async client for the ThingsBoard REST API.

    Status mapping:
    - 401 -> refresh credentials once and retry once, then UpstreamUnavailable
    - 404 -> DeviceNotFound
    - 400 -> InvalidParameters
    - anything else >= 400, timeouts, network errors -> UpstreamUnavailable
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._username = username
        self._password = password
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)
        self.credentials = TokenCell(self._login)

    async def _login(self) -> str:
        logger.info("thingsboard.login", base_url=self.base_url, username=self._username)
        try:
            response = await self._http.post(
                "/api/auth/login",
                json={"username": self._username, "password": self._password},
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"ThingsBoard login failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamUnavailable(f"ThingsBoard login failed: HTTP {response.status_code}")

        token = _json_body(response, "/api/auth/login").get("token")
        if not token:
            raise UpstreamUnavailable("ThingsBoard login returned no token")
        return token

    async def _send(
        self,
        method: str,
        path: str,
        token: str,
        params: Optional[dict] = None,
        json: Any = None,
        entity_id: Optional[str] = None,
    ) -> Any:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers={"X-Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"ThingsBoard timed out on {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"ThingsBoard request failed on {path}: {e}") from e

        if response.status_code == 401:
            raise UpstreamAuthExpired(f"ThingsBoard rejected credentials on {path}")
        if response.status_code == 404:
            raise DeviceNotFound(entity_id or path)
        if response.status_code == 400:
            raise InvalidParameters(_error_message(response) or "Bad request")
        if response.status_code >= 400:
            raise UpstreamUnavailable(
                f"ThingsBoard API error: {response.status_code} {_error_message(response)}".strip()
            )

        if not response.content:
            return None
        return _json_body(response, path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        entity_id: Optional[str] = None,
    ) -> Any:
        """Authenticated request with a single credential refresh on 401."""
        token = await self.credentials.get()
        try:
            return await self._send(method, path, token, params, json, entity_id)
        except UpstreamAuthExpired:
            logger.warning("thingsboard.token_expired", path=path)

        token = await self.credentials.refresh(token)
        try:
            return await self._send(method, path, token, params, json, entity_id)
        except UpstreamAuthExpired as e:
            logger.error("thingsboard.auth_retry_failed", path=path)
            raise UpstreamUnavailable(f"ThingsBoard rejected refreshed credentials on {path}") from e

    async def get_timeseries(
        self,
        entity_type: str,
        entity_id: str,
        keys: list[str],
        start_ts: int,
        end_ts: int,
        interval: Optional[int] = None,
        agg: Optional[str] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        use_strict_data_types: Optional[bool] = None,
    ) -> dict[str, list[dict]]:
        """
        GET /api/plugins/telemetry/{entityType}/{entityId}/values/timeseries

        Returns a mapping of key -> [{"ts": ms, "value": str|number}].
        """
        params: dict[str, Any] = {
            "keys": ",".join(keys),
            "startTs": start_ts,
            "endTs": end_ts,
        }
        if interval is not None:
            params["interval"] = interval
        if agg is not None:
            params["agg"] = agg
        if order_by is not None:
            params["orderBy"] = order_by
        if limit is not None:
            params["limit"] = limit
        if use_strict_data_types is not None:
            params["useStrictDataTypes"] = str(use_strict_data_types).lower()

        data = await self.request(
            "GET",
            f"{TELEMETRY_PREFIX}/{entity_type}/{entity_id}/values/timeseries",
            params=params,
            entity_id=entity_id,
        )
        return data or {}

    async def get_attributes(self, entity_type: str, entity_id: str, keys: list[str]) -> list[dict]:
        """GET .../values/attributes -> [{"key": ..., "value": ..., "lastUpdateTs": ...}]"""
        data = await self.request(
            "GET",
            f"{TELEMETRY_PREFIX}/{entity_type}/{entity_id}/values/attributes",
            params={"keys": ",".join(keys)},
            entity_id=entity_id,
        )
        return data or []

    async def save_attributes(
        self,
        entity_type: str,
        entity_id: str,
        attributes: dict[str, Any],
        scope: str = "SHARED_SCOPE",
    ) -> None:
        """POST .../attributes/{scope}"""
        await self.request(
            "POST",
            f"{TELEMETRY_PREFIX}/{entity_type}/{entity_id}/attributes/{scope}",
            json=attributes,
            entity_id=entity_id,
        )

    async def get_device(self, device_id: str) -> dict:
        """GET /api/device/{deviceId}"""
        return await self.request("GET", f"/api/device/{device_id}", entity_id=device_id)

    async def list_devices(self, customer_id: str = "") -> list[dict]:
        """
        Page through the device infos of a customer, or of the tenant when no
        customer is configured.
        """
        path = f"/api/customer/{customer_id}/deviceInfos" if customer_id else "/api/tenant/deviceInfos"
        devices: list[dict] = []
        page = 0
        while True:
            data = await self.request("GET", path, params={"pageSize": DEVICE_PAGE_SIZE, "page": page}) or {}
            devices.extend(data.get("data", []))
            if not data.get("hasNext"):
                return devices
            page += 1

    async def aclose(self) -> None:
        await self._http.aclose()


def _json_body(response: httpx.Response, path: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise UpstreamUnavailable(f"ThingsBoard returned a non-JSON body on {path}") from e


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message", ""))
    return ""


# ThingsBoard client instance
_thingsboard_client: Optional[ThingsboardClient] = None


def get_thingsboard_client() -> ThingsboardClient:
    """
    Get or create the ThingsBoard client instance.

    Returns:
        Shared ThingsboardClient
    """
    global _thingsboard_client

    if _thingsboard_client is None:
        _thingsboard_client = ThingsboardClient(
            base_url=settings.thingsboard_base_url,
            username=settings.thingsboard_username,
            password=settings.thingsboard_password,
            timeout=settings.thingsboard_http_timeout_seconds,
        )

    return _thingsboard_client


async def check_thingsboard_health() -> bool:
    """
    Check ThingsBoard connectivity by obtaining a token.

    Returns:
        True if ThingsBoard accepted the credentials, False otherwise
    """
    try:
        await get_thingsboard_client().credentials.get()
        return True
    except Exception:
        return False


async def close_thingsboard():
    """Close the ThingsBoard HTTP client (call on shutdown)."""
    global _thingsboard_client

    if _thingsboard_client:
        await _thingsboard_client.aclose()
        _thingsboard_client = None
