import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from korprov_monitor.core.api_client import WorkerAPIClient
from korprov_monitor.core.errors import AuthenticationError, MalformedPayloadError, WorkerAPIError


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    if status_code >= 400:
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            f"HTTP {status_code}", request=MagicMock(), response=response
        )
    return response


def _patched_async_client(method="get", responses=None):
    """Patch httpx.AsyncClient; returns (patcher, instance)."""
    patcher = patch("httpx.AsyncClient")
    mock_client = patcher.start()
    instance = MagicMock()
    setattr(instance, method, AsyncMock(side_effect=responses))
    mock_client.return_value.__aenter__.return_value = instance
    return patcher, mock_client, instance


class TestWorkerAPIClient:
    def setup_method(self):
        self.client = WorkerAPIClient(
            api_url="https://vps.example.com/",
            api_token="test-token",
            max_retries=2,
        )

    def teardown_method(self):
        patch.stopall()

    def test_init_sets_attributes(self):
        assert self.client.api_url == "https://vps.example.com/"
        assert self.client.api_token == "test-token"
        assert self.client.max_retries == 2

    def test_init_reads_environment(self):
        with patch.dict(os.environ, {"WORKER_API_URL": "https://env.example.com", "WORKER_API_TOKEN": "env-token"}):
            client = WorkerAPIClient()
        assert client.api_url == "https://env.example.com"
        assert client.api_token == "env-token"

    def test_get_headers_uses_bearer_token(self):
        headers = self.client._get_headers()
        assert headers["Authorization"] == "Bearer test-token"
        assert headers["Content-Type"] == "application/json"

    def test_get_headers_raises_if_no_token(self):
        with patch.dict(os.environ, {}, clear=True):
            client = WorkerAPIClient(api_url="https://vps.example.com", api_token="")
            with pytest.raises(AuthenticationError):
                client._get_headers()

    def test_url_strips_trailing_slash(self):
        assert self.client._url("/health") == "https://vps.example.com/health"

    @pytest.mark.asyncio
    async def test_get_job_status(self):
        _, mock_client, instance = _patched_async_client(
            responses=[_response(payload={"status": "searching", "progress": 60})]
        )

        data = await self.client.get_job_status("job-42", timeout=2.7)

        assert data["status"] == "searching"
        url = instance.get.call_args[0][0]
        assert url == "https://vps.example.com/api/v1/booking/job-42/status"
        assert instance.get.call_args[1]["headers"]["Authorization"] == "Bearer test-token"
        assert mock_client.call_args[1]["timeout"] == 2.7

    @pytest.mark.asyncio
    async def test_get_job_status_unsuccessful_payload_raises(self):
        _patched_async_client(responses=[_response(payload={"success": False, "error": {"message": "Job not found"}})])

        with pytest.raises(WorkerAPIError, match="Job not found"):
            await self.client.get_job_status("job-42")

    @pytest.mark.asyncio
    async def test_401_raises_auth_error(self):
        _patched_async_client(responses=[_response(status_code=401)])

        with pytest.raises(AuthenticationError):
            await self.client.get_job_status("job-42")

    @pytest.mark.asyncio
    async def test_status_poll_does_not_retry(self):
        _, _, instance = _patched_async_client(responses=[_response(status_code=500)])

        with pytest.raises(httpx.HTTPStatusError):
            await self.client.get_job_status("job-42")
        assert instance.get.call_count == 1

    @pytest.mark.asyncio
    async def test_non_json_response_is_malformed(self):
        response = _response()
        response.json.side_effect = json.JSONDecodeError("bad", "", 0)
        _patched_async_client(responses=[response])

        with pytest.raises(MalformedPayloadError):
            await self.client.get_job_status("job-42")

    @pytest.mark.asyncio
    async def test_get_qr_code_ready(self):
        _, _, instance = _patched_async_client(
            responses=[_response(payload={"success": True, "qr_url": "https://qr.example/a.png"})]
        )

        response = await self.client.get_qr_code("job-42")

        assert response.is_ready is True
        assert response.reference == "https://qr.example/a.png"
        assert instance.get.call_args[0][0].endswith("/api/v1/booking/job-42/qr")

    @pytest.mark.asyncio
    async def test_get_qr_code_404_is_not_ready(self):
        _patched_async_client(responses=[_response(status_code=404)])

        response = await self.client.get_qr_code("job-42")

        assert response.is_ready is False
        assert response.error == "not_found"

    @pytest.mark.asyncio
    async def test_get_health(self):
        _patched_async_client(responses=[_response(payload={"status": "healthy", "active_jobs": 2})])

        report = await self.client.get_health(timeout=1.0)

        assert report.is_healthy is True
        assert report.active_jobs == 2

    @pytest.mark.asyncio
    async def test_start_booking_returns_job_id(self):
        _, _, instance = _patched_async_client(
            method="post", responses=[_response(payload={"success": True, "job_id": "job-42"})]
        )

        job_id = await self.client.start_booking({"license_type": "B", "locations": ["Stockholm"]})

        assert job_id == "job-42"
        body = json.loads(instance.post.call_args[1]["content"])
        assert body["config"]["license_type"] == "B"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_start_booking_without_job_id_raises(self):
        _patched_async_client(method="post", responses=[_response(payload={"success": False, "error": "busy"})])

        with pytest.raises(WorkerAPIError) as exc_info:
            await self.client.start_booking({})
        assert exc_info.value.code == "BOOKING_START_FAILED"

    @pytest.mark.asyncio
    async def test_start_booking_retries_server_errors(self):
        _, _, instance = _patched_async_client(
            method="post",
            responses=[_response(status_code=503), _response(payload={"data": {"job_id": "job-42"}})],
        )

        with patch("korprov_monitor.core.api_client.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            job_id = await self.client.start_booking({})

        assert job_id == "job-42"
        assert instance.post.call_count == 2
        mock_sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_start_booking_gives_up_after_max_retries(self):
        _, _, instance = _patched_async_client(
            method="post", responses=[_response(status_code=500) for _ in range(3)]
        )

        with patch("korprov_monitor.core.api_client.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            with pytest.raises(WorkerAPIError) as exc_info:
                await self.client.start_booking({})

        assert exc_info.value.code == "INTERNAL_SERVER_ERROR"
        assert instance.post.call_count == 3
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_start_booking_client_error_not_retried(self):
        _, _, instance = _patched_async_client(method="post", responses=[_response(status_code=400)])

        with pytest.raises(WorkerAPIError) as exc_info:
            await self.client.start_booking({})

        assert exc_info.value.status_code == 400
        assert instance.post.call_count == 1

    @pytest.mark.asyncio
    async def test_start_booking_connect_error_propagates(self):
        _patched_async_client(method="post", responses=[httpx.ConnectError("refused")] * 3)

        with patch("korprov_monitor.core.api_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(httpx.ConnectError):
                await self.client.start_booking({})

    @pytest.mark.asyncio
    async def test_stop_booking(self):
        _, _, instance = _patched_async_client(
            method="post", responses=[_response(payload={"success": True, "data": {"stopped": True}})]
        )

        assert await self.client.stop_booking("job-42") is True
        body = json.loads(instance.post.call_args[1]["content"])
        assert body["job_id"] == "job-42"

    @pytest.mark.asyncio
    async def test_get_booking_logs(self):
        _, _, instance = _patched_async_client(
            responses=[_response(payload={"data": [{"message": "a"}, "junk", {"message": "b"}]})]
        )

        logs = await self.client.get_booking_logs("job-42", limit=10)

        assert logs == [{"message": "a"}, {"message": "b"}]
        assert instance.get.call_args[0][0].endswith("/api/v1/booking/logs/job-42?limit=10")

    @pytest.mark.asyncio
    async def test_get_booking_logs_swallows_errors(self):
        _patched_async_client(responses=[httpx.ConnectError("refused")])

        assert await self.client.get_booking_logs("job-42") == []
