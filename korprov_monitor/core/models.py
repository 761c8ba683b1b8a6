"""
Data models for the booking job monitor.

This module defines Pydantic models for everything that crosses the wire
between the client and the remote automation worker:
- JobHandle: Opaque identifier for one automation run
- JobStatusSnapshot: Normalised status/progress report (poll or push)
- QrFrame: One rendition of the rotating BankID QR code
- QrResponse: Normalised result of the QR endpoint
- HealthReport: Result of the worker's health endpoint

Raw payloads are loosely shaped (optional fields, nested booking_details,
numeric or ISO timestamps), so every model normalises on the way in.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from korprov_monitor.core.errors import MalformedPayloadError

# Progress shown for statuses that do not report their own percentage.
STATUS_PROGRESS: dict[str, int] = {
    "idle": 0,
    "initializing": 5,
    "browser_starting": 10,
    "navigating": 15,
    "cookies_accepted": 20,
    "logging_in": 25,
    "bankid_waiting": 30,
    "waiting_bankid": 30,
    "qr_waiting": 30,
    "login_success": 40,
    "selecting_locations": 45,
    "locations_confirmed": 50,
    "searching": 60,
    "searching_times": 70,
    "times_found": 75,
    "booking": 80,
    "booking_time": 85,
    "booking_complete": 100,
    "completed": 100,
    "error": 0,
    "failed": 0,
    "cancelled": 0,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_DATETIME = TypeAdapter(datetime)


def _as_utc(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PollingPhase(str, Enum):
    """Phase of the status/QR poller for one job."""

    IDLE = "idle"
    AWAITING_READY = "awaiting_ready"
    FAST_QR_POLLING = "fast_qr_polling"
    TERMINAL = "terminal"


class ConnectionState(str, Enum):
    """Reachability of the remote worker as seen by the health monitor."""

    CHECKING = "checking"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"
    FALLBACK = "fallback"


class JobHandle(BaseModel):
    """
    Identifier for one remote automation run.

    Attributes:
        job_id: Identifier returned by the start endpoint (or recovered
            from a persisted session)
        fallback: True when the id was synthesised locally because the
            worker was offline; such jobs are never polled
        created_at: When the handle was created
    """

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., min_length=1)
    fallback: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def synthesize_fallback(cls) -> JobHandle:
        """Create a local job id for degraded operation."""
        return cls(job_id=f"fallback-{int(time.time() * 1000)}", fallback=True)


class JobStatusSnapshot(BaseModel):
    """
    Status report for a job, produced by polling and by the push channel.

    `timestamp` is the source's own time (may be absent); `received_at` and
    `sequence` are stamped locally when the snapshot enters the sync state.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    job_id: str
    status: str
    stage: str | None = None
    message: str | None = None
    progress: float | None = None
    timestamp: datetime | None = None
    slots_found: int | None = None
    cycle_count: int | None = None
    current_operation: str | None = None
    error_message: str | None = None
    received_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0

    @field_validator("timestamp", "received_at", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @field_validator("progress", mode="after")
    @classmethod
    def clamp_progress(cls, v: float | None) -> float | None:
        if v is None:
            return None
        return max(0.0, min(100.0, v))

    @field_validator("status", mode="after")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.lower()

    @property
    def effective_time(self) -> datetime:
        return self.timestamp or self.received_at

    @property
    def effective_progress(self) -> float:
        if self.progress is not None:
            return self.progress
        return float(STATUS_PROGRESS.get(self.stage or "", STATUS_PROGRESS.get(self.status, 0)))

    @classmethod
    def from_payload(cls, data: Any, job_id: str | None = None) -> JobStatusSnapshot:
        """
        Build a snapshot from a raw status payload.

        Accepts flat payloads, `{success, data}` envelopes and session rows
        whose details live in `booking_details` (dict or JSON string).

        Raises:
            MalformedPayloadError: If the payload has no usable status
        """
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Status payload is not an object: {type(data).__name__}")

        if isinstance(data.get("data"), dict) and "status" not in data:
            envelope = data
            data = dict(envelope["data"])
            for key in ("job_id", "timestamp"):
                if envelope.get(key) is not None:
                    data.setdefault(key, envelope[key])

        fields = dict(data)
        details = fields.pop("booking_details", None)
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                details = None
        if isinstance(details, dict):
            for key, value in details.items():
                fields.setdefault(key, value)

        status = fields.get("status") or fields.get("stage")
        if not status or not isinstance(status, str):
            raise MalformedPayloadError("Status payload has no status field")

        resolved_job_id = fields.get("job_id") or job_id
        if not resolved_job_id:
            raise MalformedPayloadError("Status payload has no job_id")

        try:
            return cls(
                job_id=str(resolved_job_id),
                status=status,
                stage=fields.get("stage"),
                message=fields.get("message"),
                progress=fields.get("progress"),
                timestamp=fields.get("timestamp") or None,
                slots_found=fields.get("slots_found"),
                cycle_count=fields.get("cycle_count"),
                current_operation=fields.get("current_operation"),
                error_message=fields.get("error_message") or fields.get("error"),
            )
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid status payload: {e.error_count()} errors") from e


class QrFrame(BaseModel):
    """
    One QR code image reference.

    Two frames are the same code iff their content hashes match.
    """

    model_config = ConfigDict(frozen=True)

    payload: str
    content_hash: str
    observed_at: datetime = Field(default_factory=utcnow)
    issued_at: datetime | None = None
    source: str = "poll"

    @field_validator("observed_at", "issued_at", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @classmethod
    def create(
        cls,
        payload: str,
        source: str = "poll",
        issued_at: datetime | None = None,
    ) -> QrFrame:
        from korprov_monitor.core.freshness import content_hash

        reference = normalize_qr_reference(payload)
        return cls(
            payload=reference,
            content_hash=content_hash(reference),
            issued_at=issued_at,
            source=source,
        )

    @property
    def is_url(self) -> bool:
        return self.payload.startswith(("http://", "https://"))


def normalize_qr_reference(payload: str) -> str:
    """Return a URL or data URI usable as an image source."""
    payload = payload.strip()
    if payload.startswith(("http://", "https://", "data:")):
        return payload
    return f"data:image/png;base64,{payload}"


class QrResponse(BaseModel):
    """
    Result of one QR endpoint call.

    `success=False` with no QR reference is the normal "not ready yet"
    outcome and is not an error.
    """

    success: bool = False
    qr_url: str | None = None
    qr_data: str | None = None
    error: str | None = None
    status: str | None = None
    stage: str | None = None
    message: str | None = None
    timestamp: datetime | None = None

    @field_validator("timestamp", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @property
    def reference(self) -> str | None:
        return self.qr_url or self.qr_data or None

    @property
    def is_ready(self) -> bool:
        return self.success and bool(self.reference)

    @property
    def has_status(self) -> bool:
        return bool(self.status or self.stage)

    @classmethod
    def from_payload(cls, data: Any) -> QrResponse:
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"QR payload is not an object: {type(data).__name__}")

        if isinstance(data.get("data"), dict):
            inner = dict(data["data"])
            inner.setdefault("success", data.get("success", True))
            data = inner

        qr_url = data.get("qr_url") or data.get("qr_image_url") or data.get("image_url")
        qr_data = data.get("qr_data") or data.get("qr_code_base64") or data.get("qr_code")
        success = data.get("success")
        if success is None:
            success = bool(qr_url or qr_data)

        try:
            return cls(
                success=bool(success),
                qr_url=qr_url,
                qr_data=qr_data,
                error=data.get("error") if isinstance(data.get("error"), str) else None,
                status=data.get("status"),
                stage=data.get("stage"),
                message=data.get("message"),
                timestamp=data.get("timestamp") or None,
            )
        except ValidationError as e:
            raise MalformedPayloadError(f"Invalid QR payload: {e.error_count()} errors") from e

    def to_frame(self, source: str = "poll") -> QrFrame | None:
        if not self.is_ready:
            return None
        return QrFrame.create(self.reference, source=source, issued_at=self.timestamp)

    def to_snapshot(self, job_id: str) -> JobStatusSnapshot | None:
        if not self.has_status:
            return None
        return JobStatusSnapshot.from_payload(
            {
                "status": self.status or self.stage,
                "stage": self.stage,
                "message": self.message,
                "timestamp": self.timestamp,
            },
            job_id=job_id,
        )


class HealthReport(BaseModel):
    """Worker health endpoint result."""

    status: str = "unknown"
    timestamp: datetime | None = None
    active_jobs: int | None = None
    websocket_connections: int | None = None
    browser_status: str | None = None
    queue_status: str | None = None

    @property
    def is_down(self) -> bool:
        return self.status.lower() in ("down", "offline")

    @property
    def is_healthy(self) -> bool:
        return self.status.lower() in ("healthy", "ok", "up", "running")


@dataclass
class LogEntry:
    """One line of the trailing live-updates log."""

    message: str
    timestamp: datetime
    stage: str
    cycle: int | None = None
    operation: str | None = None

    @classmethod
    def from_payload(cls, data: Any) -> LogEntry | None:
        """Build an entry from one row of the worker's log endpoint, or None if it has no message."""
        if not isinstance(data, dict) or not data.get("message"):
            return None

        try:
            timestamp = _as_utc(_DATETIME.validate_python(data["timestamp"])) if data.get("timestamp") else utcnow()
        except ValidationError:
            timestamp = utcnow()

        return cls(
            message=str(data["message"]),
            timestamp=timestamp,
            stage=data.get("stage") or data.get("level") or "log",
            cycle=data.get("cycle_count") if isinstance(data.get("cycle_count"), int) else None,
            operation=data.get("current_operation"),
        )


# Worker event types, as sent over the broadcast channel (`vps_update`) and
# the direct worker websocket.
STATUS_EVENT_TYPES = frozenset({"status_update", "progress"})
QR_EVENT_TYPES = frozenset({"qr_code_update", "qr_code"})
COMPLETED_EVENT_TYPES = frozenset({"booking_completed", "completion"})
FAILED_EVENT_TYPES = frozenset({"booking_failed"})


def flatten_worker_event(event_type: str | None, envelope: dict[str, Any]) -> tuple[str, dict[str, Any]] | None:
    """
    Flatten a `{type, job_id, timestamp, data}` worker event.

    Returns ("status", fields) or ("qr", fields) ready for the status or QR
    payload parsers, or None for event types that carry neither (logs,
    free-form errors).
    """
    fields: dict[str, Any] = {key: envelope[key] for key in ("job_id", "timestamp") if envelope.get(key) is not None}
    data = envelope.get("data")
    if isinstance(data, dict):
        fields.update(data)

    if event_type in STATUS_EVENT_TYPES:
        return "status", fields
    if event_type in QR_EVENT_TYPES:
        return "qr", fields
    if event_type in COMPLETED_EVENT_TYPES:
        message = fields.pop("completion_message", None) or fields.get("message") or "Booking completed successfully"
        fields.pop("booking_details", None)
        fields.update(status="completed", stage="completed", message=message)
        return "status", fields
    if event_type in FAILED_EVENT_TYPES:
        error_message = fields.get("error_message") or fields.get("message") or "Booking failed"
        fields.update(status="error", stage="error", message=error_message, error_message=error_message)
        return "status", fields
    return None
