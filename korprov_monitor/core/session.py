"""
Booking monitor session: owns the poller, the realtime bridge, the worker
socket feed and the sync state for the job currently shown on one screen.

Starting or attaching a new job always tears the previous one down first,
so two pollers or two subscriptions never run for overlapping jobs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from korprov_monitor.core.api_client import WorkerAPIClient
from korprov_monitor.core.errors import WorkerAPIError, classify_error
from korprov_monitor.core.events import DisplayAdapter, EventEmitter, attach_display
from korprov_monitor.core.health_monitor import ConnectionHealthMonitor
from korprov_monitor.core.models import JobHandle, JobStatusSnapshot, LogEntry, PollingPhase, QrFrame
from korprov_monitor.core.poller import PollingConfig, StatusQrPoller
from korprov_monitor.core.realtime_bridge import RealtimeEventBridge
from korprov_monitor.core.sync_state import DEFAULT_LOG_LIMIT, JobSyncState
from korprov_monitor.core.worker_socket import WorkerSocketFeed

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Bokning startad i fallback-läge"


class BookingMonitorSession:
    """
    Explicitly constructed per screen; nothing here is a module singleton.

    Args:
        client: Worker API client
        emitter: Event emitter the display listens on
        health_monitor: Shared health monitor (optional)
        bridge: Realtime bridge for push updates (optional)
        socket_feed: Direct worker websocket feed (optional)
        config: Polling cadences
        log_limit: Length of the trailing log kept per job
    """

    def __init__(
        self,
        client: WorkerAPIClient,
        emitter: EventEmitter | None = None,
        health_monitor: ConnectionHealthMonitor | None = None,
        bridge: RealtimeEventBridge | None = None,
        config: PollingConfig | None = None,
        log_limit: int = DEFAULT_LOG_LIMIT,
        socket_feed: WorkerSocketFeed | None = None,
    ):
        self.client = client
        self.emitter = emitter or EventEmitter()
        self.health_monitor = health_monitor
        self.bridge = bridge
        self.socket_feed = socket_feed
        self.config = config or PollingConfig()
        self.log_limit = log_limit

        self.handle: JobHandle | None = None
        self.state: JobSyncState | None = None
        self.poller: StatusQrPoller | None = None
        self._lock = asyncio.Lock()
        self._detachers: list[Callable[[], None]] = []
        self._release_task: asyncio.Task | None = None

    @property
    def phase(self) -> PollingPhase:
        return self.poller.phase if self.poller else PollingPhase.IDLE

    @property
    def latest_snapshot(self) -> JobStatusSnapshot | None:
        return self.state.latest_snapshot if self.state else None

    @property
    def latest_frame(self) -> QrFrame | None:
        return self.state.latest_frame if self.state else None

    @property
    def log(self) -> list[LogEntry]:
        return self.state.log if self.state else []

    def attach_display(self, adapter: DisplayAdapter) -> Callable[[], None]:
        """
        Route job events and connection changes to `adapter`.

        Connection events come from the health monitor's own emitter when one
        is configured.
        """
        detach_job = attach_display(self.emitter, adapter)
        detach_connection: Callable[[], None] | None = None
        if self.health_monitor is not None and self.health_monitor.emitter is not self.emitter:
            detach_connection = self.health_monitor.subscribe(
                lambda event: adapter.on_connection_change(event.state)
            )

        def detach() -> None:
            detach_job()
            if detach_connection is not None:
                detach_connection()

        self._detachers.append(detach)
        return detach

    async def start_job(self, booking_config: dict[str, Any], channel_key: str | None = None) -> JobHandle:
        """
        Start a new automation run and begin monitoring it.

        When the worker is classified offline, a local fallback handle is
        returned instead of an error, and nothing is polled.

        Raises:
            WorkerAPIError: If the worker refused the start for a reason
                other than being unreachable
        """
        async with self._lock:
            await self._teardown()

            if self.health_monitor is not None and self.health_monitor.is_fallback:
                return self._begin_fallback("health monitor in fallback")

            try:
                job_id = await self.client.start_booking(booking_config)
            except Exception as e:
                info = classify_error(e)
                if info.is_offline:
                    if self.health_monitor is not None:
                        self.health_monitor.set_fallback(True)
                    return self._begin_fallback(info.code)
                logger.error(f"[Session] Failed to start booking ({info.code}): {e}")
                if isinstance(e, WorkerAPIError):
                    raise
                raise WorkerAPIError(str(e), code=info.code) from e

            handle = JobHandle(job_id=job_id)
            await self._begin(handle, channel_key)
            return handle

    async def attach(self, job_id: str, channel_key: str | None = None) -> JobHandle:
        """Monitor an already running job, e.g. one recovered from persisted session state."""
        async with self._lock:
            await self._teardown()
            handle = JobHandle(job_id=job_id)
            await self._begin(handle, channel_key)
            await self._seed_log(handle)
            return handle

    async def _begin(self, handle: JobHandle, channel_key: str | None) -> None:
        self.handle = handle
        self.state = JobSyncState(handle.job_id, self.emitter, log_limit=self.log_limit)
        self.poller = StatusQrPoller(
            self.client,
            self.state,
            config=self.config,
            health_monitor=self.health_monitor,
            on_terminal=self._on_terminal,
        )
        self.poller.start(handle)

        if self.bridge is not None:
            await self.bridge.subscribe(channel_key or handle.job_id, self.state)
        if self.socket_feed is not None:
            await self.socket_feed.start(self.state)

        logger.info(f"[Session] Monitoring job {handle.job_id}", extra={"job_id": handle.job_id})

    async def _seed_log(self, handle: JobHandle) -> None:
        """Load the worker's recent log lines so a reattached screen shows history."""
        try:
            rows = await self.client.get_booking_logs(handle.job_id, limit=self.log_limit)
            entries = [entry for entry in map(LogEntry.from_payload, rows or []) if entry is not None]
        except Exception as e:
            logger.warning(
                f"[Session] Could not load log for job {handle.job_id}: {e}", extra={"job_id": handle.job_id}
            )
            return
        if self.state is not None and self.state.job_id == handle.job_id:
            seeded = self.state.seed_log(entries)
            logger.debug(f"[Session] Seeded {seeded} log entries for job {handle.job_id}")

    def _begin_fallback(self, reason: str) -> JobHandle:
        handle = JobHandle.synthesize_fallback()
        self.handle = handle
        self.state = JobSyncState(handle.job_id, self.emitter, log_limit=self.log_limit)
        logger.warning(
            f"[Session] Worker unavailable ({reason}), continuing in fallback mode as {handle.job_id}",
            extra={"job_id": handle.job_id},
        )
        self.state.offer_snapshot(
            JobStatusSnapshot(job_id=handle.job_id, status="fallback", stage="fallback", message=FALLBACK_MESSAGE),
            source="local",
        )
        return handle

    def _on_terminal(self, snapshot: JobStatusSnapshot) -> None:
        # Push and socket feeds have nothing left to deliver once the job is over.
        if self.bridge is not None or self.socket_feed is not None:
            self._release_task = asyncio.get_running_loop().create_task(self._release_feeds(snapshot.job_id))

    async def _release_feeds(self, job_id: str) -> None:
        async with self._lock:
            if self.handle is None or self.handle.job_id != job_id:
                return
            if self.bridge is not None:
                await self.bridge.unsubscribe()
            if self.socket_feed is not None:
                await self.socket_feed.stop()

    async def _teardown(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        if self.bridge is not None:
            await self.bridge.unsubscribe()
        if self.socket_feed is not None:
            await self.socket_feed.stop()
        if self.state is not None:
            self.state.close()

        if self.handle is not None:
            logger.info(f"[Session] Released job {self.handle.job_id}", extra={"job_id": self.handle.job_id})
        self.poller = None
        self.state = None
        self.handle = None

    async def stop_job(self, notify_worker: bool = True) -> bool:
        """
        Stop monitoring the current job and, unless it is a fallback job,
        ask the worker to stop it. Returns the worker's acknowledgement.
        """
        async with self._lock:
            handle = self.handle
            await self._teardown()

        if handle is None or handle.fallback or not notify_worker:
            return handle is not None

        try:
            return await self.client.stop_booking(handle.job_id)
        except Exception as e:
            logger.error(f"[Session] Failed to stop job {handle.job_id}: {e}", extra={"job_id": handle.job_id})
            return False

    async def refresh_qr(self) -> QrFrame | None:
        """One-shot QR refresh for the current job."""
        if self.poller is None:
            return None
        return await self.poller.refresh_once(self.handle)

    def request_fast_refresh(self) -> bool:
        return self.poller.request_fast_refresh() if self.poller else False

    async def close(self) -> None:
        """Tear everything down and detach displays. Safe to call more than once."""
        release, self._release_task = self._release_task, None
        if release is not None and not release.done():
            try:
                await release
            except Exception as e:
                logger.error(f"[Session] Releasing feeds failed: {e}")
        async with self._lock:
            await self._teardown()
        for detach in self._detachers:
            detach()
        self._detachers.clear()
