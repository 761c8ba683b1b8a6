"""
Status/QR poller for one booking job.

Phases:
- idle: no timers
- awaiting_ready: status polled every 3s until the worker waits for a QR scan
- fast_qr_polling: QR endpoint polled every second, new codes forwarded
- terminal: the job finished; no further network activity

Snapshots accepted from any source (poll or push) drive the transitions, so
the realtime bridge can escalate or finish a job before the next poll does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from korprov_monitor.core.api_client import WorkerAPIClient
from korprov_monitor.core.errors import PollerStateError, classify_error
from korprov_monitor.core.freshness import is_qr_ready, is_terminal_status
from korprov_monitor.core.models import JobHandle, JobStatusSnapshot, PollingPhase, QrFrame
from korprov_monitor.core.scheduler import InFlightTasks, RepeatingTask, schedule_repeating
from korprov_monitor.core.sync_state import JobSyncState

logger = logging.getLogger(__name__)

ACTIVE_PHASES = frozenset({PollingPhase.AWAITING_READY, PollingPhase.FAST_QR_POLLING})

# Request timeouts never exceed this share of the owning poll interval.
TIMEOUT_INTERVAL_RATIO = 0.9


@dataclass
class PollingConfig:
    """Cadences and thresholds for one poller."""

    status_interval: float = 3.0
    qr_interval: float = 1.0
    fast_refresh_interval: float = 1.0
    max_ready_attempts: int = 40
    failure_threshold: int = 5
    status_interval_during_qr: float = 10.0
    status_timeout: float = 10.0
    qr_timeout: float = 5.0


def _bounded_timeout(timeout: float, interval: float) -> float:
    return min(timeout, interval * TIMEOUT_INTERVAL_RATIO)


class StatusQrPoller:
    """
    Drives status and QR polling for a single JobHandle.

    A poller is single-use: once started it can be stopped but never
    restarted. Create a new one for a new job.
    """

    def __init__(
        self,
        client: WorkerAPIClient,
        state: JobSyncState,
        config: PollingConfig | None = None,
        health_monitor=None,
        on_terminal: Callable[[JobStatusSnapshot], None] | None = None,
    ):
        self.client = client
        self.state = state
        self.config = config or PollingConfig()
        self.health_monitor = health_monitor
        self.on_terminal = on_terminal

        self._phase = PollingPhase.IDLE
        self._handle: JobHandle | None = None
        self._started = False
        self._generation = 0
        self._status_task: RepeatingTask | None = None
        self._qr_task: RepeatingTask | None = None
        self._keepalive_task: RepeatingTask | None = None
        self._requests = InFlightTasks(name=f"poller:{state.job_id}")
        self._remove_listener: Callable[[], None] | None = None
        self._qr_interval = self.config.qr_interval
        self._status_attempts = 0
        self._consecutive_failures = 0
        self._escalation_reason: str | None = None

    @property
    def phase(self) -> PollingPhase:
        return self._phase

    @property
    def handle(self) -> JobHandle | None:
        return self._handle

    @property
    def is_active(self) -> bool:
        return self._phase in ACTIVE_PHASES

    @property
    def status_attempts(self) -> int:
        return self._status_attempts

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def qr_interval(self) -> float:
        return self._qr_interval

    @property
    def escalation_reason(self) -> str | None:
        return self._escalation_reason

    @property
    def qr_update_count(self) -> int:
        return self.state.qr_update_count

    @property
    def qr_heartbeats(self) -> int:
        return self.state.qr_heartbeats

    @property
    def last_qr_seen_at(self) -> datetime | None:
        return self.state.last_qr_seen_at

    def is_qr_stale(self, max_age: float) -> bool:
        return self.state.is_qr_stale(max_age)

    @property
    def _tag(self) -> str:
        return f"[Poller {self.state.job_id}]"

    def _log_extra(self) -> dict:
        return {"job_id": self.state.job_id, "phase": self._phase.value}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, handle: JobHandle) -> None:
        """
        Begin polling for `handle`.

        Issues one status check immediately, then every status_interval.

        Raises:
            PollerStateError: If this poller was started before, the handle is
                a fallback handle, or the handle does not match the sync state
        """
        if self._started:
            raise PollerStateError("Poller already used; create a new poller for a new job")
        if handle.fallback:
            raise PollerStateError(f"Fallback job {handle.job_id} cannot be polled")
        if handle.job_id != self.state.job_id:
            raise PollerStateError(f"Handle {handle.job_id} does not match sync state {self.state.job_id}")

        self._started = True
        self._handle = handle
        self._phase = PollingPhase.AWAITING_READY
        self._remove_listener = self.state.add_snapshot_listener(self._on_snapshot_accepted)
        self._status_task = schedule_repeating(
            self.config.status_interval,
            self._status_tick,
            immediate=True,
            name=f"status-poll:{handle.job_id}",
        )
        logger.info(
            f"{self._tag} Started, polling status every {self.config.status_interval}s",
            extra=self._log_extra(),
        )

    def stop(self) -> None:
        """
        Cancel all timers and in-flight requests and return to idle.

        Idempotent and callable from any phase. Results of requests that are
        still in the network layer are discarded when they land.
        """
        self._generation += 1
        self._dispose_timers()
        cancelled = self._requests.cancel_all()

        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None

        previous = self._phase
        self._phase = PollingPhase.IDLE
        if previous != PollingPhase.IDLE:
            logger.info(
                f"{self._tag} Stopped from {previous.value} ({cancelled} requests cancelled)",
                extra=self._log_extra(),
            )

    cleanup = stop

    def _dispose_timers(self) -> None:
        for task in (self._status_task, self._qr_task, self._keepalive_task):
            if task is not None:
                task.dispose()
        self._status_task = None
        self._qr_task = None
        self._keepalive_task = None

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._phase in ACTIVE_PHASES

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _on_snapshot_accepted(self, snapshot: JobStatusSnapshot, source: str) -> None:
        if self._phase not in ACTIVE_PHASES:
            return

        if is_terminal_status(snapshot.status):
            self._enter_terminal(snapshot, source)
            return

        if self._phase == PollingPhase.AWAITING_READY and is_qr_ready(
            snapshot.status, snapshot.stage, snapshot.message
        ):
            self._enter_fast_qr(f"{source}:{snapshot.stage or snapshot.status}")

    def _enter_fast_qr(self, reason: str) -> None:
        if self._status_task is not None:
            self._status_task.dispose()
            self._status_task = None

        self._phase = PollingPhase.FAST_QR_POLLING
        self._escalation_reason = reason
        job_id = self.state.job_id
        logger.info(
            f"{self._tag} QR ready ({reason}), polling QR every {self._qr_interval}s",
            extra=self._log_extra(),
        )

        self._qr_task = schedule_repeating(
            self._qr_interval, self._qr_tick, immediate=True, name=f"qr-poll:{job_id}"
        )
        if self.config.status_interval_during_qr > 0:
            self._keepalive_task = schedule_repeating(
                self.config.status_interval_during_qr,
                self._status_tick,
                name=f"status-keepalive:{job_id}",
            )

    def _enter_terminal(self, snapshot: JobStatusSnapshot, source: str) -> None:
        self._phase = PollingPhase.TERMINAL
        self._dispose_timers()
        self._requests.cancel_all()
        logger.info(
            f"{self._tag} Job reached terminal status '{snapshot.status}' via {source}",
            extra=self._log_extra(),
        )

        if self.on_terminal is not None:
            try:
                self.on_terminal(snapshot)
            except Exception as e:
                logger.error(f"{self._tag} on_terminal callback failed: {e}")

    def _count_ready_attempt(self) -> None:
        if self._phase != PollingPhase.AWAITING_READY:
            return

        self._status_attempts += 1
        if self._status_attempts >= self.config.max_ready_attempts:
            logger.warning(
                f"{self._tag} No QR-ready signal after {self._status_attempts} status checks, "
                "switching to QR polling anyway",
                extra=self._log_extra(),
            )
            self._enter_fast_qr("timeout")

    def request_fast_refresh(self) -> bool:
        """
        Re-arm the QR timer at the fast refresh interval.

        Used while the user is actively trying to scan. Returns True if the
        cadence changed.
        """
        if self._phase != PollingPhase.FAST_QR_POLLING:
            return False
        if self._qr_interval <= self.config.fast_refresh_interval:
            return False

        if self._qr_task is not None:
            self._qr_task.dispose()
        self._qr_interval = self.config.fast_refresh_interval
        self._qr_task = schedule_repeating(
            self._qr_interval, self._qr_tick, immediate=True, name=f"qr-poll:{self.state.job_id}"
        )
        logger.info(f"{self._tag} Fast QR refresh requested ({self._qr_interval}s)", extra=self._log_extra())
        return True

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def _status_tick(self) -> None:
        self._requests.spawn(self.poll_status_once())

    def _qr_tick(self) -> None:
        self._requests.spawn(self.poll_qr_once())

    def _record_failure(self, kind: str, error: Exception) -> None:
        info = classify_error(error)
        self._consecutive_failures += 1
        logger.info(
            f"{self._tag} {kind} poll failed ({info.code}): {error}",
            extra=self._log_extra(),
        )

        if self._consecutive_failures == self.config.failure_threshold:
            logger.warning(
                f"{self._tag} {self._consecutive_failures} consecutive poll failures, backend may be down",
                extra=self._log_extra(),
            )
            if self.health_monitor is not None:
                self.health_monitor.report_sustained_failure(self.state.job_id, self._consecutive_failures)

    def _record_success(self) -> None:
        if self._consecutive_failures >= self.config.failure_threshold and self.health_monitor is not None:
            self.health_monitor.report_recovery()
        self._consecutive_failures = 0

    async def poll_status_once(self) -> JobStatusSnapshot | None:
        """
        Perform one status check and feed the result into the sync state.

        Returns the parsed snapshot, or None if the request failed or the
        poller stopped while it was in flight.
        """
        generation = self._generation
        if not self._is_current(generation):
            return None

        job_id = self.state.job_id
        interval = (
            self.config.status_interval
            if self._phase == PollingPhase.AWAITING_READY
            else self.config.status_interval_during_qr or self.config.status_interval
        )
        try:
            data = await self.client.get_job_status(
                job_id, timeout=_bounded_timeout(self.config.status_timeout, interval)
            )
            if not self._is_current(generation):
                return None
            snapshot = JobStatusSnapshot.from_payload(data, job_id=job_id)
            self.state.offer_snapshot(snapshot, source="poll")
        except Exception as e:
            if self._is_current(generation):
                self._record_failure("Status", e)
                self._count_ready_attempt()
            return None

        self._record_success()
        self._count_ready_attempt()
        return snapshot

    async def poll_qr_once(self) -> QrFrame | None:
        """
        Perform one QR fetch. Returns the frame if it was a new QR code.

        "Not ready yet" responses and repeated codes return None.
        """
        return await self._fetch_qr(source="poll")

    async def refresh_once(self, handle: JobHandle | None = None) -> QrFrame | None:
        """
        Out-of-band QR fetch for manual refresh buttons.

        Uses the same de-duplication as the timer and never touches the
        phase or the timers.
        """
        if handle is not None and (self._handle is None or handle.job_id != self._handle.job_id):
            logger.debug(f"{self._tag} Ignoring refresh for foreign job {handle.job_id}")
            return None
        return await self._fetch_qr(source="refresh")

    async def _fetch_qr(self, source: str) -> QrFrame | None:
        generation = self._generation
        if not self._is_current(generation):
            return None

        job_id = self.state.job_id
        try:
            response = await self.client.get_qr_code(
                job_id, timeout=_bounded_timeout(self.config.qr_timeout, self._qr_interval)
            )
            if not self._is_current(generation):
                return None
            snapshot = response.to_snapshot(job_id)
            frame = response.to_frame(source=source)
            if snapshot is not None:
                self.state.offer_snapshot(snapshot, source=source)
            # A snapshot in the same response may have ended the job.
            accepted = False
            if frame is not None and self._is_current(generation):
                accepted = self.state.offer_qr(frame, source=source)
        except Exception as e:
            if self._is_current(generation):
                self._record_failure("QR", e)
            return None

        self._record_success()
        if frame is None:
            logger.debug(f"{self._tag} QR not ready yet", extra=self._log_extra())
            return None
        return frame if accepted else None
