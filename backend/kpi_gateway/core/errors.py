"""
Error taxonomy of the gateway.

Every error raised on purpose derives from GatewayError and carries the HTTP
status it maps to. The exception handler in main.py renders them as
{"success": false, "error": "<message>"}.
"""
from fastapi import status


class GatewayError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DeviceNotFound(GatewayError):
    """The device identifier does not resolve upstream."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, device_id: str):
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class InvalidParameters(GatewayError):
    """Malformed or missing request parameters. Never reaches the upstream."""

    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamUnavailable(GatewayError):
    """Network failure, timeout or 5xx from ThingsBoard."""

    status_code = status.HTTP_502_BAD_GATEWAY


class UpstreamAuthExpired(GatewayError):
    """
    ThingsBoard answered 401.

    Handled inside the client (one refresh, one retry) and converted to
    UpstreamUnavailable if the retry fails too.
    """

    status_code = status.HTTP_502_BAD_GATEWAY


class MalformedUpstreamData(GatewayError):
    """A raw point value cannot be read as a number. The point is skipped."""

    status_code = status.HTTP_502_BAD_GATEWAY
