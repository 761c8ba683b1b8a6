"""
Settings Manager for korprov-monitor.

All configuration comes from environment variables (optionally loaded from a
.env file by the CLI). Nothing here holds credentials beyond what the
environment provides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from korprov_monitor.core.poller import PollingConfig

logger = logging.getLogger(__name__)

# Project root directory - used for locating .env files
PROJECT_ROOT = Path(__file__).parent.parent.parent.resolve()


class SettingsManager:
    """Manages monitor configuration via environment variables."""

    DEFAULTS = {
        "worker_api_url": "",
        "worker_api_token": "",
        "supabase_url": "",
        "supabase_anon_key": "",
        "status_poll_interval": 3.0,
        "qr_poll_interval": 1.0,
        "status_interval_during_qr": 10.0,
        "max_ready_attempts": 40,
        "failure_threshold": 5,
        "status_timeout": 10.0,
        "qr_timeout": 5.0,
        "health_check_interval": 30.0,
        "health_probe_timeout": 5.0,
        "log_limit": 50,
        "worker_socket_enabled": False,
        "debug_mode": False,
    }

    ENV_MAPPINGS = {
        "worker_api_url": "WORKER_API_URL",
        "worker_api_token": "WORKER_API_TOKEN",
        "supabase_url": "SUPABASE_URL",
        "supabase_anon_key": "SUPABASE_ANON_KEY",
        "status_poll_interval": "STATUS_POLL_INTERVAL",
        "qr_poll_interval": "QR_POLL_INTERVAL",
        "status_interval_during_qr": "STATUS_INTERVAL_DURING_QR",
        "max_ready_attempts": "MAX_READY_ATTEMPTS",
        "failure_threshold": "FAILURE_THRESHOLD",
        "status_timeout": "STATUS_TIMEOUT",
        "qr_timeout": "QR_TIMEOUT",
        "health_check_interval": "HEALTH_CHECK_INTERVAL",
        "health_probe_timeout": "HEALTH_PROBE_TIMEOUT",
        "log_limit": "LOG_LIMIT",
        "worker_socket_enabled": "WORKER_SOCKET_ENABLED",
        "debug_mode": "DEBUG",
    }

    def __init__(self) -> None:
        self._cache: dict = {}
        self._load_from_env()

    def _load_from_env(self) -> None:
        for setting_key, env_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value:
                self.set(setting_key, env_value)

    def get(self, key: str, default=None):
        if default is None:
            default = self.DEFAULTS.get(key, "")

        value = self._cache.get(key, default)

        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"

        if isinstance(value, str) and value.isdigit():
            return int(value)

        if isinstance(value, str):
            try:
                return float(value)
            except ValueError:
                return value

        return value

    def get_float(self, key: str) -> float:
        value = self.get(key)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {key}: {value!r}, using default")
            return float(self.DEFAULTS[key])

    def get_int(self, key: str) -> int:
        value = self.get(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {key}: {value!r}, using default")
            return int(self.DEFAULTS[key])

    def set(self, key: str, value):
        self._cache[key] = value

    def get_all(self) -> dict:
        all_settings = {}
        for key in self.DEFAULTS.keys():
            all_settings[key] = self.get(key)
        return all_settings

    def reload(self) -> None:
        self._load_from_env()

    @property
    def debug_mode(self) -> bool:
        return self.get("debug_mode") in (True, 1)

    def polling_config(self) -> PollingConfig:
        return PollingConfig(
            status_interval=self.get_float("status_poll_interval"),
            qr_interval=self.get_float("qr_poll_interval"),
            max_ready_attempts=self.get_int("max_ready_attempts"),
            failure_threshold=self.get_int("failure_threshold"),
            status_interval_during_qr=self.get_float("status_interval_during_qr"),
            status_timeout=self.get_float("status_timeout"),
            qr_timeout=self.get_float("qr_timeout"),
        )

    @property
    def health_settings(self) -> dict:
        return {
            "interval": self.get_float("health_check_interval"),
            "probe_timeout": self.get_float("health_probe_timeout"),
        }

    @property
    def realtime_enabled(self) -> bool:
        return bool(self.get("supabase_url")) and bool(self.get("supabase_anon_key"))

    @property
    def worker_socket_enabled(self) -> bool:
        return self.get("worker_socket_enabled") in (True, 1) and bool(self.get("worker_api_url"))
