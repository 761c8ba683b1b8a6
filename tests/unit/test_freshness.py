"""
Unit tests for the freshness rules shared by polling and push.

Tests cover:
- QR readiness detection (status, stage and message heuristics)
- Terminal status detection
- QR frame ordering and de-duplication
- Status snapshot ordering, terminal finality and cycle counters
- Type dispatch in is_newer
"""

import logging

import pytest

from korprov_monitor.core.freshness import (
    content_hash,
    is_newer,
    is_newer_frame,
    is_newer_snapshot,
    is_qr_ready,
    is_terminal_status,
)
from korprov_monitor.core.models import JobStatusSnapshot, QrFrame

logger = logging.getLogger(__name__)


def _snapshot(status="searching", **kwargs):
    kwargs.setdefault("job_id", "job-42")
    return JobStatusSnapshot(status=status, **kwargs)


class TestQrReady:
    @pytest.mark.parametrize(
        "status",
        ["qr_waiting", "bankid_waiting", "waiting_bankid", "qr_streaming", "bankid", "authenticating", "authentication"],
    )
    def test_allow_listed_statuses(self, status):
        assert is_qr_ready(status) is True

    def test_stage_can_signal_ready(self):
        assert is_qr_ready("running", stage="waiting_bankid") is True

    def test_case_insensitive(self):
        assert is_qr_ready("BankID_Waiting") is True

    def test_message_heuristic(self):
        assert is_qr_ready("running", message="Scanna QR-koden i appen") is True
        assert is_qr_ready("running", message="Öppna BankID") is True

    def test_not_ready(self):
        assert is_qr_ready("searching", stage="searching_times", message="Söker lediga tider") is False
        assert is_qr_ready(None) is False
        assert is_qr_ready("") is False


class TestTerminalStatus:
    @pytest.mark.parametrize("status", ["error", "failed", "completed", "cancelled", "COMPLETED"])
    def test_terminal(self, status):
        assert is_terminal_status(status) is True

    @pytest.mark.parametrize("status", ["searching", "booking", "qr_waiting", "", None])
    def test_not_terminal(self, status):
        assert is_terminal_status(status) is False


class TestFrameFreshness:
    def test_first_frame_is_newer(self):
        assert is_newer_frame(QrFrame.create("https://qr.example/a.png"), None) is True

    def test_same_hash_never_newer(self, base_time, later):
        """Identical content is a duplicate even with a later timestamp."""
        current = QrFrame.create("https://qr.example/a.png", issued_at=base_time)
        candidate = QrFrame.create("https://qr.example/a.png", issued_at=later(5))

        assert candidate.content_hash == current.content_hash
        assert is_newer_frame(candidate, current) is False

    def test_different_hash_is_newer(self):
        current = QrFrame.create("https://qr.example/a.png")
        candidate = QrFrame.create("https://qr.example/b.png")
        assert is_newer_frame(candidate, current) is True

    def test_earlier_issued_frame_is_stale(self, base_time, later):
        current = QrFrame.create("https://qr.example/b.png", issued_at=later(2))
        candidate = QrFrame.create("https://qr.example/a.png", issued_at=base_time)
        assert is_newer_frame(candidate, current) is False

    def test_missing_issue_time_falls_back_to_hash(self, base_time):
        current = QrFrame.create("https://qr.example/b.png", issued_at=base_time)
        candidate = QrFrame.create("https://qr.example/c.png")
        assert is_newer_frame(candidate, current) is True

    def test_content_hash_is_stable(self):
        assert content_hash("abc") == content_hash(b"abc")
        assert content_hash("abc") != content_hash("abd")


class TestSnapshotFreshness:
    def test_first_snapshot_is_newer(self):
        assert is_newer_snapshot(_snapshot(), None) is True

    def test_later_timestamp_is_newer(self, base_time, later):
        current = _snapshot(timestamp=base_time)
        candidate = _snapshot("booking", timestamp=later(1))
        assert is_newer_snapshot(candidate, current) is True

    def test_equal_timestamp_is_not_newer(self, base_time):
        current = _snapshot(timestamp=base_time)
        candidate = _snapshot("booking", timestamp=base_time)
        assert is_newer_snapshot(candidate, current) is False

    def test_earlier_timestamp_is_stale(self, base_time, later):
        current = _snapshot(timestamp=later(10))
        candidate = _snapshot("booking", timestamp=base_time)
        assert is_newer_snapshot(candidate, current) is False

    def test_terminal_is_final(self, base_time, later):
        """Nothing replaces a terminal snapshot, however late."""
        logger.info("Starting test_terminal_is_final")

        current = _snapshot("completed", timestamp=base_time)
        candidate = _snapshot("searching", timestamp=later(60))
        assert is_newer_snapshot(candidate, current) is False

        logger.info("test_terminal_is_final passed")

    def test_cycle_count_cannot_go_backwards(self, base_time, later):
        current = _snapshot(timestamp=base_time, cycle_count=7)
        candidate = _snapshot(timestamp=later(5), cycle_count=6)
        assert is_newer_snapshot(candidate, current) is False

    def test_cycle_count_can_repeat(self, base_time, later):
        current = _snapshot(timestamp=base_time, cycle_count=7, message="a")
        candidate = _snapshot(timestamp=later(5), cycle_count=7, message="b")
        assert is_newer_snapshot(candidate, current) is True

    def test_receipt_time_used_without_timestamp(self, base_time, later):
        current = _snapshot(received_at=base_time)
        candidate = _snapshot("booking", received_at=later(1))
        assert is_newer_snapshot(candidate, current) is True

    def test_untimestamped_repeat_is_duplicate(self, base_time, later):
        current = _snapshot("qr_waiting", message="Skanna QR", received_at=base_time)
        candidate = _snapshot("qr_waiting", message="Skanna QR", received_at=later(1))
        assert is_newer_snapshot(candidate, current) is False

    def test_worker_clock_ahead_does_not_block_untimestamped_update(self, later):
        current = _snapshot("qr_waiting", timestamp=later(300), received_at=later(0), sequence=1)
        candidate = _snapshot("completed", received_at=later(1), sequence=2)
        assert is_newer_snapshot(candidate, current) is True

    def test_worker_clock_behind_does_not_block_timestamped_update(self, base_time, later):
        current = _snapshot("searching", received_at=later(5), sequence=3)
        candidate = _snapshot("booking", timestamp=base_time, received_at=later(6), sequence=4)
        assert is_newer_snapshot(candidate, current) is True

    def test_local_sequence_orders_mixed_sources(self, later):
        current = _snapshot("searching", timestamp=later(0), received_at=later(2), sequence=5)
        candidate = _snapshot("booking", received_at=later(1), sequence=4)
        assert is_newer_snapshot(candidate, current) is False

    def test_repeat_without_timestamp_on_one_side_is_duplicate(self, base_time, later):
        current = _snapshot("qr_waiting", message="Skanna QR", timestamp=base_time, sequence=1)
        candidate = _snapshot("qr_waiting", message="Skanna QR", received_at=later(1), sequence=2)
        assert is_newer_snapshot(candidate, current) is False


class TestIsNewerDispatch:
    def test_dispatches_frames(self):
        assert is_newer(QrFrame.create("abc"), None) is True

    def test_dispatches_snapshots(self):
        assert is_newer(_snapshot(), None) is True

    def test_mixed_types_rejected(self):
        with pytest.raises(TypeError):
            is_newer(QrFrame.create("abc"), _snapshot())
        with pytest.raises(TypeError):
            is_newer(_snapshot(), QrFrame.create("abc"))

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            is_newer("not an update", None)
