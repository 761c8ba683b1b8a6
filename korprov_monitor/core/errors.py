"""
Error taxonomy for communication with the remote automation worker.

Every failure seen by the poller, the realtime bridge or the health monitor
is mapped to an ErrorInfo so callers can decide between "ignore and retry on
the next tick", "warn" and "switch to fallback mode".
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass

import httpx
from pydantic import ValidationError


class WorkerAPIError(Exception):
    """Raised when a worker API request fails."""

    def __init__(self, message: str, code: str = "UNKNOWN_ERROR", status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class AuthenticationError(WorkerAPIError):
    """Raised when the worker rejects our token."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=401)


class MalformedPayloadError(ValueError):
    """Raised when a payload from an endpoint or channel has an unexpected shape."""


class PollerStateError(RuntimeError):
    """Raised when a poller is driven through an invalid lifecycle transition."""


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    retryable: bool
    severity: str
    user_message: str

    @property
    def is_offline(self) -> bool:
        return self.code == "VPS_OFFLINE" or self.severity == "critical"


ERROR_MAPPINGS: dict[str, ErrorInfo] = {
    "NETWORK_ERROR": ErrorInfo(
        "NETWORK_ERROR", True, "high", "Kan inte ansluta till VPS-servern. Kontrollera din internetanslutning."
    ),
    "TIMEOUT": ErrorInfo("TIMEOUT", True, "medium", "Begäran tog för lång tid. Försöker igen automatiskt."),
    "VPS_OFFLINE": ErrorInfo("VPS_OFFLINE", True, "critical", "VPS-servern är offline. Byter till lokalt läge."),
    "UNAUTHORIZED": ErrorInfo(
        "UNAUTHORIZED", False, "high", "Otillåten åtkomst till VPS-servern. Kontrollera dina rättigheter."
    ),
    "RATE_LIMITED": ErrorInfo("RATE_LIMITED", True, "medium", "För många förfrågningar. Väntar innan nästa försök."),
    "VPS_OVERLOADED": ErrorInfo(
        "VPS_OVERLOADED", True, "high", "VPS-servern är överbelastad. Försöker igen senare."
    ),
    "INTERNAL_SERVER_ERROR": ErrorInfo(
        "INTERNAL_SERVER_ERROR", True, "high", "Internt serverfel på VPS. Teknisk support har informerats."
    ),
    "MALFORMED_PAYLOAD": ErrorInfo("MALFORMED_PAYLOAD", True, "low", "Oväntat svar från servern ignorerades."),
    "WEBSOCKET_CONNECTION_FAILED": ErrorInfo(
        "WEBSOCKET_CONNECTION_FAILED",
        True,
        "medium",
        "Realtidsanslutning misslyckades. Uppdateringar kommer att försenas.",
    ),
    "UNKNOWN_ERROR": ErrorInfo("UNKNOWN_ERROR", True, "medium", "Ett oväntat fel inträffade. Försöker igen automatiskt."),
}


def _is_retryable_error(status_code: int | None, exception: Exception) -> bool:
    """
    Determine if an error is retryable based on HTTP status code and exception type.

    Args:
        status_code: HTTP status code (None if no response received)
        exception: The exception that was raised

    Returns:
        True if the error should be retried, False otherwise
    """
    if isinstance(exception, (httpx.NetworkError, httpx.TimeoutException)):
        return True

    if status_code is not None and 500 <= status_code < 600:
        return True

    if status_code == 429:
        return True

    if status_code is not None and 400 <= status_code < 500:
        return False

    return True


def _code_for_status(status_code: int) -> str:
    if status_code == 401:
        return "UNAUTHORIZED"
    if status_code == 429:
        return "RATE_LIMITED"
    if status_code == 503:
        return "VPS_OVERLOADED"
    if status_code >= 500:
        return "INTERNAL_SERVER_ERROR"
    return "UNKNOWN_ERROR"


def classify_error(error: BaseException) -> ErrorInfo:
    """Map an exception raised while talking to the worker onto the taxonomy."""
    if isinstance(error, WorkerAPIError):
        return ERROR_MAPPINGS.get(error.code, ERROR_MAPPINGS["UNKNOWN_ERROR"])

    # ConnectError covers refused connections and unresolvable hosts
    if isinstance(error, httpx.ConnectError):
        return ERROR_MAPPINGS["VPS_OFFLINE"]
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ERROR_MAPPINGS["TIMEOUT"]
    if isinstance(error, httpx.NetworkError):
        return ERROR_MAPPINGS["NETWORK_ERROR"]
    if isinstance(error, httpx.HTTPStatusError):
        return ERROR_MAPPINGS[_code_for_status(error.response.status_code)]
    if isinstance(error, (MalformedPayloadError, ValidationError, json.JSONDecodeError)):
        return ERROR_MAPPINGS["MALFORMED_PAYLOAD"]

    message = str(error).lower()
    if "connection refused" in message:
        return ERROR_MAPPINGS["VPS_OFFLINE"]
    if "websocket" in message:
        return ERROR_MAPPINGS["WEBSOCKET_CONNECTION_FAILED"]

    return ERROR_MAPPINGS["UNKNOWN_ERROR"]
