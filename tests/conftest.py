"""Pytest configuration and fixtures."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Make the package importable when running from a source checkout."""
    project_root = Path(__file__).resolve().parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


@pytest.fixture
def base_time():
    return datetime(2025, 3, 14, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def later(base_time):
    def _later(seconds: float) -> datetime:
        return base_time + timedelta(seconds=seconds)

    return _later


@pytest.fixture
def mock_worker_client():
    """WorkerAPIClient double with async endpoint methods."""
    client = MagicMock()
    client.get_job_status = AsyncMock()
    client.get_qr_code = AsyncMock()
    client.get_health = AsyncMock()
    client.start_booking = AsyncMock()
    client.stop_booking = AsyncMock(return_value=True)
    client.get_booking_logs = AsyncMock(return_value=[])
    return client
