"""
Per-job synchronisation state shared by the poller and the realtime bridge.

Both sources offer their updates here; the freshness rules decide which one
wins and only accepted updates reach the event emitter. The display layer
therefore never sees a duplicate QR code or a status that goes backwards.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from korprov_monitor.core.errors import MalformedPayloadError
from korprov_monitor.core.events import EventEmitter, QrEvent, StatusEvent
from korprov_monitor.core.freshness import is_newer_frame, is_newer_snapshot
from korprov_monitor.core.models import JobStatusSnapshot, LogEntry, QrFrame, QrResponse, utcnow

logger = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 50

# Identical log messages closer together than this are treated as one entry.
LOG_DEDUP_WINDOW = timedelta(seconds=1)

_TICK = timedelta(microseconds=1)

# Keys that mark a status payload as also carrying a QR reference.
QR_PAYLOAD_KEYS = ("qr_url", "qr_image_url", "qr_data", "qr_code", "qr_code_base64")


class JobSyncState:
    """
    Latest known view of one job.

    Holds the latest snapshot and QR frame, the QR update counter, QR
    liveness information and a bounded trailing log.
    """

    def __init__(self, job_id: str, emitter: EventEmitter, log_limit: int = DEFAULT_LOG_LIMIT):
        self.job_id = job_id
        self.emitter = emitter
        self.latest_snapshot: JobStatusSnapshot | None = None
        self.latest_frame: QrFrame | None = None
        self.qr_update_count = 0
        self.qr_heartbeats = 0
        self.last_qr_seen_at: datetime | None = None
        self._log: deque[LogEntry] = deque(maxlen=log_limit)
        self._sequence = 0
        self._last_received_at: datetime | None = None
        self._snapshot_listeners: list[Callable[[JobStatusSnapshot, str], None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def log(self) -> list[LogEntry]:
        return list(self._log)

    def add_snapshot_listener(self, listener: Callable[[JobStatusSnapshot, str], None]) -> Callable[[], None]:
        """Call `listener(snapshot, source)` for every accepted snapshot."""
        self._snapshot_listeners.append(listener)

        def remove() -> None:
            if listener in self._snapshot_listeners:
                self._snapshot_listeners.remove(listener)

        return remove

    def _stamp(self, snapshot: JobStatusSnapshot) -> JobStatusSnapshot:
        # Receipt times must be strictly increasing so that two snapshots
        # without a source timestamp never compare as equal.
        received_at = utcnow()
        if self._last_received_at is not None and received_at <= self._last_received_at:
            received_at = self._last_received_at + _TICK
        self._last_received_at = received_at
        self._sequence += 1
        return snapshot.model_copy(update={"received_at": received_at, "sequence": self._sequence})

    def offer_snapshot(self, snapshot: JobStatusSnapshot, source: str = "poll") -> bool:
        """Accept the snapshot if it is fresher than the held one. Returns True if accepted."""
        if self._closed:
            return False
        if snapshot.job_id != self.job_id:
            logger.debug(f"[Sync {self.job_id}] Ignoring snapshot for job {snapshot.job_id}")
            return False

        snapshot = self._stamp(snapshot)
        if not is_newer_snapshot(snapshot, self.latest_snapshot):
            logger.debug(
                f"[Sync {self.job_id}] Discarded stale {source} snapshot: {snapshot.status}",
                extra={"job_id": self.job_id, "source": source},
            )
            return False

        self.latest_snapshot = snapshot
        self._append_log(snapshot)
        self.emitter.emit(StatusEvent(job_id=self.job_id, snapshot=snapshot, source=source))

        for listener in list(self._snapshot_listeners):
            try:
                listener(snapshot, source)
            except Exception as e:
                logger.error(f"[Sync {self.job_id}] Snapshot listener failed: {e}")

        return True

    def offer_qr(self, frame: QrFrame, source: str = "poll") -> bool:
        """
        Accept the frame if it is a new QR code. Returns True if accepted.

        A frame identical to the held one only refreshes liveness.
        """
        if self._closed:
            return False

        current = self.latest_frame
        if current is not None and frame.content_hash == current.content_hash:
            self.qr_heartbeats += 1
            self.last_qr_seen_at = frame.observed_at
            return False

        if not is_newer_frame(frame, current):
            logger.debug(f"[Sync {self.job_id}] Discarded stale {source} QR frame")
            return False

        self.latest_frame = frame
        self.last_qr_seen_at = frame.observed_at
        self.qr_update_count += 1
        logger.info(
            f"[Sync {self.job_id}] New QR code #{self.qr_update_count} via {source}",
            extra={"job_id": self.job_id, "source": source},
        )
        self.emitter.emit(
            QrEvent(job_id=self.job_id, frame=frame, update_count=self.qr_update_count, source=source)
        )
        return True

    def offer_status_payload(self, payload: dict[str, Any], source: str) -> int:
        """
        Parse a raw pushed status payload and offer it, plus any QR reference it carries.

        Malformed payloads are dropped. Returns the number of accepted updates.
        """
        accepted = 0
        try:
            snapshot = JobStatusSnapshot.from_payload(payload, job_id=self.job_id)
        except MalformedPayloadError as e:
            logger.debug(f"[Sync {self.job_id}] Discarding malformed {source} status update: {e}")
        else:
            if self.offer_snapshot(snapshot, source=source):
                accepted += 1

        if any(payload.get(key) for key in QR_PAYLOAD_KEYS) and self.offer_qr_payload(payload, source):
            accepted += 1
        return accepted

    def offer_qr_payload(self, payload: dict[str, Any], source: str) -> bool:
        """Parse a raw pushed QR payload and offer the frame. Returns True if accepted."""
        try:
            response = QrResponse.from_payload({**payload, "success": True})
        except MalformedPayloadError as e:
            logger.debug(f"[Sync {self.job_id}] Discarding malformed {source} QR update: {e}")
            return False

        frame = response.to_frame(source=source)
        return frame is not None and self.offer_qr(frame, source=source)

    def is_qr_stale(self, max_age: float, now: datetime | None = None) -> bool:
        """True if no QR frame (new or repeated) was seen within `max_age` seconds."""
        if self.last_qr_seen_at is None:
            return True
        now = now or utcnow()
        return (now - self.last_qr_seen_at).total_seconds() > max_age

    def _append_log(self, snapshot: JobStatusSnapshot) -> None:
        if not snapshot.message:
            return

        entry = LogEntry(
            message=snapshot.message,
            timestamp=snapshot.effective_time,
            stage=snapshot.stage or snapshot.status,
            cycle=snapshot.cycle_count,
            operation=snapshot.current_operation,
        )
        if not any(_is_repeat(existing, entry) for existing in self._log):
            self._log.append(entry)

    def seed_log(self, entries: Iterable[LogEntry]) -> int:
        """
        Merge earlier log lines, e.g. history fetched when attaching to a
        running job, into the trailing log. Returns how many were added.
        """
        if self._closed:
            return 0

        merged = list(self._log)
        added = 0
        for entry in entries:
            if any(_is_repeat(existing, entry) for existing in merged):
                continue
            merged.append(entry)
            added += 1

        merged.sort(key=lambda item: item.timestamp)
        self._log.clear()
        self._log.extend(merged)
        return added

    def close(self) -> None:
        """Reject all further updates. Safe to call more than once."""
        self._closed = True
        self._snapshot_listeners.clear()


def _is_repeat(a: LogEntry, b: LogEntry) -> bool:
    return a.message == b.message and abs(a.timestamp - b.timestamp) < LOG_DEDUP_WINDOW

