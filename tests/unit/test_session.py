"""
Unit tests for BookingMonitorSession.

Tests cover:
- Starting a job wires poller, realtime bridge and display
- Fallback mode when the worker is offline
- Switching jobs tears the previous one down first
- Stop/close semantics and worker notification
- Terminal statuses release the push subscription and the worker socket
- Log history is seeded when attaching to a running job
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from korprov_monitor.core.errors import WorkerAPIError
from korprov_monitor.core.health_monitor import ConnectionHealthMonitor
from korprov_monitor.core.models import ConnectionState, PollingPhase, QrResponse
from korprov_monitor.core.poller import PollingConfig
from korprov_monitor.core.session import FALLBACK_MESSAGE, BookingMonitorSession

logger = logging.getLogger(__name__)


async def drain(rounds: int = 6) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestBookingMonitorSession:
    @pytest.fixture(autouse=True)
    def _session(self, mock_worker_client):
        self.client = mock_worker_client
        self.client.get_job_status.return_value = {"status": "searching"}
        self.client.get_qr_code.return_value = QrResponse(success=False)
        self.client.get_health.side_effect = httpx.ConnectError("Connection refused")

        self.bridge = MagicMock()
        self.bridge.subscribe = AsyncMock(return_value=True)
        self.bridge.unsubscribe = AsyncMock()
        self.health = ConnectionHealthMonitor(self.client)
        self.display = MagicMock()

        self.session = BookingMonitorSession(
            self.client,
            health_monitor=self.health,
            bridge=self.bridge,
            config=PollingConfig(status_interval=100.0, qr_interval=100.0, status_interval_during_qr=0),
        )
        self.session.attach_display(self.display)

    @pytest.mark.asyncio
    async def test_start_job_begins_monitoring(self):
        logger.info("Starting test_start_job_begins_monitoring")

        self.client.start_booking.return_value = "job-42"

        handle = await self.session.start_job({"license_type": "B"}, channel_key="user-7")
        await drain()

        assert handle.job_id == "job-42"
        assert handle.fallback is False
        assert self.session.phase == PollingPhase.AWAITING_READY
        self.client.start_booking.assert_awaited_once_with({"license_type": "B"})
        self.bridge.subscribe.assert_awaited_once_with("user-7", self.session.state)
        self.client.get_job_status.assert_awaited()
        self.display.on_status.assert_called_once()
        assert self.display.on_status.call_args[0][0].status == "searching"

        await self.session.close()
        logger.info("test_start_job_begins_monitoring passed")

    @pytest.mark.asyncio
    async def test_start_job_offline_enters_fallback(self):
        self.client.start_booking.side_effect = httpx.ConnectError("Connection refused")

        handle = await self.session.start_job({"license_type": "B"})
        await drain()

        assert handle.fallback is True
        assert handle.job_id.startswith("fallback-")
        assert self.health.state == ConnectionState.FALLBACK
        assert self.session.phase == PollingPhase.IDLE
        self.client.get_job_status.assert_not_awaited()
        self.bridge.subscribe.assert_not_awaited()

        snapshot = self.display.on_status.call_args[0][0]
        assert snapshot.status == "fallback"
        assert snapshot.message == FALLBACK_MESSAGE
        self.display.on_connection_change.assert_called_with(ConnectionState.FALLBACK)

        await self.session.close()

    @pytest.mark.asyncio
    async def test_start_job_skips_worker_when_already_in_fallback(self):
        self.health.set_fallback(True)

        handle = await self.session.start_job({})

        assert handle.fallback is True
        self.client.start_booking.assert_not_awaited()
        await self.session.close()

    @pytest.mark.asyncio
    async def test_start_job_rejection_raises(self):
        self.client.start_booking.side_effect = WorkerAPIError("busy", code="BOOKING_START_FAILED")

        with pytest.raises(WorkerAPIError):
            await self.session.start_job({})

        assert self.session.handle is None
        assert self.health.state != ConnectionState.FALLBACK

    @pytest.mark.asyncio
    async def test_unexpected_start_error_wrapped(self):
        self.client.start_booking.side_effect = RuntimeError("something odd")

        with pytest.raises(WorkerAPIError) as exc_info:
            await self.session.start_job({})
        assert exc_info.value.code == "UNKNOWN_ERROR"

    @pytest.mark.asyncio
    async def test_switching_jobs_tears_down_previous(self):
        first = await self.session.attach("job-1")
        await drain()
        first_poller = self.session.poller
        first_state = self.session.state

        second = await self.session.attach("job-2")
        await drain()

        assert first.job_id == "job-1" and second.job_id == "job-2"
        assert first_poller.phase == PollingPhase.IDLE
        assert first_state.closed is True
        assert self.session.state.job_id == "job-2"
        self.bridge.unsubscribe.assert_awaited()
        self.bridge.subscribe.assert_awaited_with("job-2", self.session.state)

        await self.session.close()

    @pytest.mark.asyncio
    async def test_stop_job_notifies_worker(self):
        await self.session.attach("job-42")
        await drain()

        assert await self.session.stop_job() is True

        self.client.stop_booking.assert_awaited_once_with("job-42")
        assert self.session.phase == PollingPhase.IDLE
        assert self.session.handle is None

    @pytest.mark.asyncio
    async def test_stop_job_without_notification(self):
        await self.session.attach("job-42")

        assert await self.session.stop_job(notify_worker=False) is True
        self.client.stop_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_fallback_job_does_not_call_worker(self):
        self.health.set_fallback(True)
        await self.session.start_job({})

        assert await self.session.stop_job() is True
        self.client.stop_booking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_job_when_idle(self):
        assert await self.session.stop_job() is False

    @pytest.mark.asyncio
    async def test_stop_job_worker_failure_returns_false(self):
        self.client.stop_booking.side_effect = httpx.ConnectError("refused")
        await self.session.attach("job-42")

        assert await self.session.stop_job() is False

    @pytest.mark.asyncio
    async def test_terminal_status_releases_bridge(self):
        self.client.get_job_status.return_value = {"status": "completed"}

        await self.session.attach("job-42")
        await drain()

        assert self.session.phase == PollingPhase.TERMINAL
        self.bridge.unsubscribe.assert_awaited()
        assert self.session.latest_snapshot.status == "completed"

        await self.session.close()

    @pytest.mark.asyncio
    async def test_refresh_qr_without_job(self):
        assert await self.session.refresh_qr() is None
        assert self.session.request_fast_refresh() is False

    @pytest.mark.asyncio
    async def test_connection_changes_reach_display(self):
        await self.health.check_now()
        self.display.on_connection_change.assert_called_with(ConnectionState.DISCONNECTED)

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_detaches(self):
        await self.session.attach("job-42")
        await drain()

        await self.session.close()
        await self.session.close()

        assert self.session.phase == PollingPhase.IDLE
        assert self.session.log == []
        calls = self.display.on_connection_change.call_count
        self.health.set_fallback(True)
        assert self.display.on_connection_change.call_count == calls

    @pytest.mark.asyncio
    async def test_attach_seeds_worker_log(self):
        self.client.get_booking_logs.return_value = [
            {"message": "Loggar in", "timestamp": "2024-01-05T10:00:00Z", "level": "info"},
            {"message": "Kollar Uppsala", "timestamp": "2024-01-05T10:00:05Z", "stage": "searching"},
            {"level": "debug"},
        ]

        await self.session.attach("job-42")
        await drain()

        self.client.get_booking_logs.assert_awaited_once_with("job-42", limit=self.session.log_limit)
        messages = [entry.message for entry in self.session.log]
        assert messages[:2] == ["Loggar in", "Kollar Uppsala"]
        assert self.session.log[0].stage == "info"

        await self.session.close()

    @pytest.mark.asyncio
    async def test_attach_survives_log_fetch_failure(self):
        self.client.get_booking_logs.side_effect = httpx.ConnectError("Connection refused")

        handle = await self.session.attach("job-42")
        await drain()

        assert handle.job_id == "job-42"
        assert self.session.phase == PollingPhase.AWAITING_READY

        await self.session.close()

    @pytest.mark.asyncio
    async def test_close_waits_for_pending_feed_release(self):
        self.client.get_job_status.return_value = {"status": "completed"}
        released = asyncio.Event()

        async def slow_unsubscribe():
            await asyncio.sleep(0.01)
            released.set()

        self.bridge.unsubscribe = AsyncMock(side_effect=slow_unsubscribe)

        await self.session.attach("job-42")
        await drain()
        assert self.session.phase == PollingPhase.TERMINAL
        assert not released.is_set()

        await self.session.close()

        assert released.is_set()
        assert self.session._release_task is None


class TestSessionSocketFeed:
    @pytest.fixture(autouse=True)
    def _session(self, mock_worker_client):
        self.client = mock_worker_client
        self.client.get_job_status.return_value = {"status": "searching"}
        self.client.get_qr_code.return_value = QrResponse(success=False)

        self.feed = MagicMock()
        self.feed.start = AsyncMock()
        self.feed.stop = AsyncMock()

        self.session = BookingMonitorSession(
            self.client,
            socket_feed=self.feed,
            config=PollingConfig(status_interval=100.0, qr_interval=100.0, status_interval_during_qr=0),
        )

    @pytest.mark.asyncio
    async def test_feed_follows_the_current_job(self):
        await self.session.attach("job-1")
        first_state = self.session.state
        self.feed.start.assert_awaited_once_with(first_state)

        await self.session.attach("job-2")

        self.feed.stop.assert_awaited()
        self.feed.start.assert_awaited_with(self.session.state)
        assert self.session.state is not first_state

        await self.session.close()

    @pytest.mark.asyncio
    async def test_teardown_stops_feed(self):
        await self.session.attach("job-42")
        self.feed.stop.reset_mock()

        await self.session.stop_job(notify_worker=False)

        self.feed.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_terminal_status_releases_feed(self):
        self.client.get_job_status.return_value = {"status": "completed"}

        await self.session.attach("job-42")
        self.feed.stop.reset_mock()
        await drain()

        assert self.session.phase == PollingPhase.TERMINAL
        self.feed.stop.assert_awaited_once()

        await self.session.close()
