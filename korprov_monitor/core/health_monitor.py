"""
Connection health monitor for the remote automation worker.

Probes the worker's health endpoint on a fixed interval, independently of
any job, and publishes ConnectionState changes. Pollers report sustained
failures here so a job in trouble shows up as `degraded`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable

from korprov_monitor.core.api_client import WorkerAPIClient
from korprov_monitor.core.errors import ErrorInfo, classify_error
from korprov_monitor.core.events import ConnectionEvent, EventEmitter
from korprov_monitor.core.models import ConnectionState, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 30.0
DEFAULT_PROBE_TIMEOUT = 5.0


class ConnectionHealthMonitor:
    """
    Tracks worker reachability as a ConnectionState.

    Transitions:
    - checking -> connected on a healthy probe
    - any -> degraded when the worker reports itself unhealthy, or a poller
      reports sustained failures while connected
    - any -> disconnected on a failed probe
    - any -> fallback on a manual probe classified as fully offline, or via
      set_fallback(True)
    """

    def __init__(
        self,
        client: WorkerAPIClient,
        interval: float = DEFAULT_CHECK_INTERVAL,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        emitter: EventEmitter | None = None,
    ):
        self.client = client
        self.interval = interval
        self.probe_timeout = min(probe_timeout, interval)
        self.emitter = emitter or EventEmitter()

        self._state = ConnectionState.CHECKING
        self._task: asyncio.Task | None = None
        self._shutdown_event = asyncio.Event()
        self.last_check: datetime | None = None
        self.last_error: ErrorInfo | None = None
        self.probe_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_fallback(self) -> bool:
        return self._state == ConnectionState.FALLBACK

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, handler: Callable[[ConnectionEvent], None]) -> Callable[[], None]:
        """Observe state changes. Returns a callable that detaches the handler."""
        return self.emitter.subscribe(ConnectionEvent, handler)

    def _set_state(self, state: ConnectionState, reason: str | None = None) -> None:
        previous = self._state
        if state == previous:
            return

        self._state = state
        log = logger.warning if state in (ConnectionState.DISCONNECTED, ConnectionState.FALLBACK) else logger.info
        log(
            f"[Health] Connection {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""),
            extra={"connection_state": state.value},
        )
        self.emitter.emit(ConnectionEvent(state=state, previous=previous, reason=reason))

    def start(self) -> None:
        """Start the background probe loop (immediate probe, then every interval)."""
        if self.is_running:
            logger.warning("[Health] Probe loop already running")
            return

        self._shutdown_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._probe_loop(), name="health-probe")
        logger.info(f"[Health] Probing worker every {self.interval}s")

    async def stop(self) -> None:
        """Stop the probe loop. Safe to call more than once."""
        self._shutdown_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _probe_loop(self) -> None:
        try:
            while not self._shutdown_event.is_set():
                await self.check_now()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            logger.debug("[Health] Probe loop cancelled")

    async def check_now(self, manual: bool = False) -> ConnectionState:
        """
        Probe the worker once and update the state.

        Args:
            manual: User-initiated probe; only these may switch to fallback

        Returns:
            The state after the probe
        """
        self.probe_count += 1
        try:
            report = await asyncio.wait_for(
                self.client.get_health(timeout=self.probe_timeout),
                timeout=self.probe_timeout + 1,
            )
        except Exception as e:
            info = classify_error(e)
            self.last_error = info
            self.last_check = utcnow()
            logger.info(f"[Health] Probe failed ({info.code}): {e}")

            if manual and info.is_offline:
                self._set_state(ConnectionState.FALLBACK, info.code)
            elif self._state != ConnectionState.FALLBACK:
                self._set_state(ConnectionState.DISCONNECTED, info.code)
            return self._state

        self.last_error = None
        self.last_check = utcnow()

        if report.is_down:
            self._set_state(ConnectionState.DISCONNECTED, f"worker reports {report.status}")
        elif report.is_healthy:
            self._set_state(ConnectionState.CONNECTED)
        else:
            self._set_state(ConnectionState.DEGRADED, f"worker reports {report.status}")
        return self._state

    def report_sustained_failure(self, job_id: str, count: int) -> None:
        """Called by a poller after a burst of consecutive request failures."""
        logger.warning(
            f"[Health] Job {job_id} saw {count} consecutive failures",
            extra={"job_id": job_id, "connection_state": self._state.value},
        )
        if self._state in (ConnectionState.CHECKING, ConnectionState.CONNECTED):
            self._set_state(ConnectionState.DEGRADED, f"{count} consecutive poll failures")

    def report_recovery(self) -> None:
        """Called by a poller when requests succeed again after a failure burst."""
        if self._state == ConnectionState.DEGRADED:
            self._set_state(ConnectionState.CONNECTED, "polling recovered")

    def set_fallback(self, enabled: bool) -> None:
        """Force or clear fallback mode."""
        if enabled:
            self._set_state(ConnectionState.FALLBACK, "manual override")
        elif self._state == ConnectionState.FALLBACK:
            self._set_state(ConnectionState.CHECKING, "fallback cleared")
