"""
Async HTTP client for the remote automation worker (the VPS).

Uses bearer token authentication. Poll endpoints (status, QR, health) are
called without retries because the next tick is the retry; control calls
(start, stop) retry transient failures with exponential backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

import httpx

from korprov_monitor.core.errors import (
    AuthenticationError,
    MalformedPayloadError,
    WorkerAPIError,
    _code_for_status,
    _is_retryable_error,
)
from korprov_monitor.core.models import HealthReport, QrResponse

logger = logging.getLogger(__name__)

# Retry configuration constants
DEFAULT_MAX_RETRIES = 3
RETRY_BACKOFF_MULTIPLIER = 2  # Exponential backoff: 1s, 2s, 4s
RETRY_INITIAL_DELAY = 1.0  # Initial delay in seconds

DEFAULT_STATUS_TIMEOUT = 10.0
DEFAULT_QR_TIMEOUT = 5.0
DEFAULT_HEALTH_TIMEOUT = 5.0
DEFAULT_CONTROL_TIMEOUT = 15.0


class WorkerAPIClient:
    """
    HTTP client for the booking automation worker.

    Handles:
    - Bearer token authentication
    - Status and QR polling endpoints
    - Health probe
    - Start/stop control calls with retry logic
    - Booking log retrieval
    """

    def __init__(
        self,
        api_url: str | None = None,
        api_token: str | None = None,
        control_timeout: float = DEFAULT_CONTROL_TIMEOUT,
        max_retries: int | None = None,
    ):
        self.api_url = api_url or os.environ.get("WORKER_API_URL", "")
        self.api_token = api_token or os.environ.get("WORKER_API_TOKEN", "")
        self.control_timeout = control_timeout
        self.max_retries = (
            max_retries
            if max_retries is not None
            else int(os.environ.get("WORKER_API_MAX_RETRIES", str(DEFAULT_MAX_RETRIES)))
        )

        if not self.api_url:
            logger.warning("WORKER_API_URL not configured")
        if not self.api_token:
            logger.warning("WORKER_API_TOKEN not configured")

    def _get_headers(self) -> dict[str, str]:
        """Get headers for authenticated requests."""
        if not self.api_token:
            raise AuthenticationError("WORKER_API_TOKEN not configured")

        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    def _url(self, endpoint: str) -> str:
        if not self.api_url:
            raise WorkerAPIError("WORKER_API_URL not configured", code="NETWORK_ERROR")
        return f"{self.api_url.rstrip('/')}{endpoint}"

    async def _send(
        self,
        method: str,
        endpoint: str,
        timeout: float,
        payload: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        """Send one request. Raises WorkerAPIError subclasses or httpx errors."""
        url = self._url(endpoint)
        headers = self._get_headers()

        async with httpx.AsyncClient(timeout=timeout) as client:
            if method.upper() == "GET":
                response = await client.get(url, headers=headers)
            else:
                response = await client.post(url, headers=headers, content=json.dumps(payload or {}))

        if response.status_code == 401:
            raise AuthenticationError("Invalid worker API token")
        if allow_not_found and response.status_code == 404:
            return response

        response.raise_for_status()
        return response

    async def _request_json(
        self,
        method: str,
        endpoint: str,
        timeout: float,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(method, endpoint, timeout, payload)
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedPayloadError(f"Non-JSON response from {endpoint}") from e
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Unexpected response shape from {endpoint}")
        return data

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an authenticated request with retry logic and exponential backoff.

        Retries on transient failures (network errors, timeouts, 5xx, 429).
        Fails immediately on non-retryable errors (4xx client errors, auth failures).
        """
        delay = RETRY_INITIAL_DELAY

        for attempt in range(self.max_retries + 1):
            try:
                return await self._request_json(method, endpoint, self.control_timeout, payload)

            except httpx.HTTPStatusError as e:
                status_code = e.response.status_code
                if not _is_retryable_error(status_code, e) or attempt >= self.max_retries:
                    raise WorkerAPIError(
                        f"HTTP {status_code} from {endpoint}",
                        code=_code_for_status(status_code),
                        status_code=status_code,
                    ) from e

                logger.warning(
                    f"[Worker API] Request failed (attempt {attempt + 1}/{self.max_retries + 1}): "
                    f"{status_code}. Retrying in {delay:.1f}s..."
                )

            except (httpx.NetworkError, httpx.TimeoutException) as e:
                if attempt >= self.max_retries:
                    raise

                logger.warning(
                    f"[Worker API] Request failed (attempt {attempt + 1}/{self.max_retries + 1}): "
                    f"{type(e).__name__} - {str(e)[:200]}. Retrying in {delay:.1f}s..."
                )

            await asyncio.sleep(delay)
            delay *= RETRY_BACKOFF_MULTIPLIER

        raise WorkerAPIError(f"Retries exhausted for {endpoint}")

    async def get_job_status(self, job_id: str, timeout: float = DEFAULT_STATUS_TIMEOUT) -> dict[str, Any]:
        """Fetch the raw status payload for a job."""
        data = await self._request_json("GET", f"/api/v1/booking/{job_id}/status", timeout)
        if data.get("success") is False and not data.get("status"):
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            raise WorkerAPIError(message or "Failed to get job status", code="UNKNOWN_ERROR")
        return data

    async def get_qr_code(self, job_id: str, timeout: float = DEFAULT_QR_TIMEOUT) -> QrResponse:
        """
        Fetch the latest QR code for a job.

        A 404 or `success: false` is "not ready yet", returned as a QrResponse
        with `is_ready == False` rather than raised.
        """
        response = await self._send("GET", f"/api/v1/booking/{job_id}/qr", timeout, allow_not_found=True)
        if response.status_code == 404:
            return QrResponse(success=False, error="not_found")

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedPayloadError("Non-JSON response from QR endpoint") from e
        return QrResponse.from_payload(data)

    async def get_health(self, timeout: float = DEFAULT_HEALTH_TIMEOUT) -> HealthReport:
        """Lightweight reachability probe."""
        data = await self._request_json("GET", "/health", timeout)
        if isinstance(data.get("data"), dict):
            data = data["data"]
        return HealthReport.model_validate(data)

    async def start_booking(self, config: dict[str, Any]) -> str:
        """
        Start a booking automation run.

        Returns:
            The job id assigned by the worker

        Raises:
            WorkerAPIError: If the worker refuses or cannot be reached
        """
        data = await self._request_with_retry(
            "POST",
            "/api/v1/booking/start",
            payload={"config": config, "timestamp": datetime.now(timezone.utc).isoformat()},
        )

        body = data.get("data") if isinstance(data.get("data"), dict) else data
        job_id = body.get("job_id")
        if data.get("success") is False or not job_id:
            error = data.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            raise WorkerAPIError(message or "Failed to start booking", code="BOOKING_START_FAILED")

        logger.info(f"[Worker API] Booking started: {job_id}", extra={"job_id": job_id})
        return str(job_id)

    async def stop_booking(self, job_id: str) -> bool:
        """Ask the worker to stop a job. Returns True if it acknowledged."""
        data = await self._request_with_retry(
            "POST",
            "/api/v1/booking/stop",
            payload={"job_id": job_id, "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        stopped = bool(body.get("stopped", data.get("success", False)))
        logger.info(f"[Worker API] Stop requested for {job_id}: stopped={stopped}", extra={"job_id": job_id})
        return stopped

    async def get_booking_logs(self, job_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Fetch recent worker log lines for a job. Returns [] on any failure."""
        try:
            response = await self._send(
                "GET", f"/api/v1/booking/logs/{job_id}?limit={limit}", DEFAULT_STATUS_TIMEOUT
            )
            data = response.json()
        except Exception as e:
            logger.warning(f"[Worker API] Failed to fetch logs for {job_id}: {e}")
            return []

        if isinstance(data, dict):
            data = data.get("data") or data.get("logs") or []
        if not isinstance(data, list):
            return []
        return [entry for entry in data if isinstance(entry, dict)][-limit:]
