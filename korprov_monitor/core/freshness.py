"""
Freshness and de-duplication rules shared by the poller and the realtime bridge.

Everything here is pure: no I/O, no timers, no state.
"""

from __future__ import annotations

import hashlib

from korprov_monitor.core.models import JobStatusSnapshot, QrFrame

# Status or stage values meaning "the worker is waiting for a QR scan".
QR_READY_SIGNALS = frozenset(
    {
        "qr_waiting",
        "bankid_waiting",
        "waiting_bankid",
        "qr_streaming",
        "bankid",
        "authenticating",
        "authentication",
    }
)

# Substrings that mark a free-text message as QR-ready. This is a heuristic:
# the worker's message texts are not a documented contract.
QR_READY_MESSAGE_HINTS = ("qr", "bankid")

TERMINAL_STATUSES = frozenset({"error", "failed", "completed", "cancelled"})


def content_hash(payload: str | bytes) -> str:
    """SHA-256 hex digest of a QR payload reference."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def is_qr_ready(status: str | None, stage: str | None = None, message: str | None = None) -> bool:
    """Return True if a status report says the worker is waiting for a QR scan."""
    for value in (status, stage):
        if value and value.strip().lower() in QR_READY_SIGNALS:
            return True

    if message:
        lowered = message.lower()
        return any(hint in lowered for hint in QR_READY_MESSAGE_HINTS)

    return False


def is_terminal_status(status: str | None) -> bool:
    return bool(status) and status.strip().lower() in TERMINAL_STATUSES


def is_newer_frame(candidate: QrFrame, current: QrFrame | None) -> bool:
    """
    Decide whether a QR frame supersedes the currently accepted one.

    Identical content is never newer, whatever its timestamps. A frame
    issued before the current one is stale.
    """
    if current is None:
        return True
    if candidate.content_hash == current.content_hash:
        return False
    if candidate.issued_at is not None and current.issued_at is not None:
        return candidate.issued_at >= current.issued_at
    return True


_SNAPSHOT_CONTENT_FIELDS = ("status", "stage", "message", "progress", "slots_found", "cycle_count")


def same_snapshot_content(a: JobStatusSnapshot, b: JobStatusSnapshot) -> bool:
    return all(getattr(a, name) == getattr(b, name) for name in _SNAPSHOT_CONTENT_FIELDS)


def _locally_later(candidate: JobStatusSnapshot, current: JobStatusSnapshot) -> bool:
    if candidate.sequence and current.sequence:
        return candidate.sequence > current.sequence
    return candidate.received_at > current.received_at


def is_newer_snapshot(candidate: JobStatusSnapshot, current: JobStatusSnapshot | None) -> bool:
    """
    Decide whether a status snapshot supersedes the currently held one.

    A terminal snapshot is final. Source timestamps are only compared when
    both snapshots carry one, since the worker clock and the local clock are
    not comparable. Otherwise the local receipt order decides. Without a
    timestamp on both sides, a repeat of the held content is a duplicate.
    """
    if current is None:
        return True
    if is_terminal_status(current.status):
        return False
    if candidate.timestamp is not None and current.timestamp is not None:
        if candidate.timestamp <= current.timestamp:
            return False
    else:
        if same_snapshot_content(candidate, current):
            return False
        if not _locally_later(candidate, current):
            return False
    if candidate.cycle_count is not None and current.cycle_count is not None:
        if candidate.cycle_count < current.cycle_count:
            return False
    return True


def is_newer(candidate: QrFrame | JobStatusSnapshot, current: QrFrame | JobStatusSnapshot | None) -> bool:
    """Dispatch to the frame or snapshot rule depending on the candidate type."""
    if isinstance(candidate, QrFrame):
        if current is not None and not isinstance(current, QrFrame):
            raise TypeError("Cannot compare a QrFrame with a JobStatusSnapshot")
        return is_newer_frame(candidate, current)

    if isinstance(candidate, JobStatusSnapshot):
        if current is not None and not isinstance(current, JobStatusSnapshot):
            raise TypeError("Cannot compare a JobStatusSnapshot with a QrFrame")
        return is_newer_snapshot(candidate, current)

    raise TypeError(f"Unsupported update type: {type(candidate).__name__}")
