from __future__ import annotations

import json
import logging
import os
import re
import sys
import uuid
from datetime import datetime, timezone
from logging import LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

# Define project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

# Track if logging has been configured to avoid duplicate setup
_logging_configured = False


class SensitiveDataFilter(logging.Filter):
    """
    Log filter that redacts sensitive data from log records.

    Sensitive patterns include:
    - Bearer tokens and Authorization headers
    - Supabase/JWT style API keys
    - Swedish personal identity numbers (personnummer)
    """

    SENSITIVE_PATTERNS = [
        (r"Bearer\s+[a-zA-Z0-9_\-\.]+", "[TOKEN_REDACTED]"),
        (r'Authorization["\']?\s*[:=]\s*["\']?[^\s"\']+', "[AUTH_REDACTED]"),
        (r"eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+", "[API_KEY_REDACTED]"),
        (r'apikey["\']?\s*[:=]\s*["\']?[a-zA-Z0-9_\-\.]+', "[API_KEY_REDACTED]"),
        (r"\b(?:19|20)?\d{6}[-+]\d{4}\b", "[PNR_REDACTED]"),
    ]

    def filter(self, record: LogRecord) -> bool:
        """Redact sensitive data from log message and args."""
        record.msg = self._redact(str(record.msg))

        if record.args:
            record.args = tuple(self._redact(str(arg)) if isinstance(arg, (str, bytes)) else arg for arg in record.args)

        return True

    def _redact(self, text: str) -> str:
        result = text
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)
        return result


class JSONFormatter(logging.Formatter):
    """JSON formatter that outputs one log record per line."""

    OPTIONAL_FIELDS = ["job_id", "phase", "source", "connection_state", "trace_id"]

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in self.OPTIONAL_FIELDS:
            value = getattr(record, field, None)
            if value is not None and value != "":
                log_data[field] = value

        if record.exc_info:
            log_data["error_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            log_data["error_message"] = str(record.exc_info[1]) if record.exc_info[1] else None

        return json.dumps(log_data, ensure_ascii=False)


class NoHttpFilter(logging.Filter):
    """Filter to suppress httpx/httpcore/websockets noise."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(("httpx", "httpcore", "websockets"))


def _get_log_level() -> int:
    env_level = os.environ.get("LOG_LEVEL", "").upper()
    if env_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        return getattr(logging, env_level)
    return logging.INFO


def _get_log_format() -> str:
    """Determine log format from environment (default: pretty for a terminal tool)."""
    env_format = os.environ.get("LOG_FORMAT", "pretty").lower()
    if env_format == "json":
        return "json"
    return "pretty"


def generate_trace_id() -> str:
    """Generate a short trace ID for correlating one monitoring session."""
    return str(uuid.uuid4())[:8]


def setup_logging(
    debug_mode: bool = False,
    *,
    json_output: bool | None = None,
    use_file_handler: bool = False,
) -> None:
    """Configure logging for korprov-monitor.

    Args:
        debug_mode: If True, set log level to DEBUG.
        json_output: Force JSON (True) or pretty (False) output. Defaults to LOG_FORMAT.
        use_file_handler: If True, also write rotating JSON logs under LOG_DIR.
    """
    global _logging_configured

    if _logging_configured and not debug_mode:
        return

    log_level = logging.DEBUG if debug_mode else _get_log_level()
    use_json = json_output if json_output is not None else _get_log_format() == "json"

    logger = logging.getLogger()
    logger.setLevel(log_level)
    if logger.hasHandlers():
        logger.handlers.clear()

    # Output goes to stderr so the console display owns stdout
    console_handler = logging.StreamHandler(sys.stderr)
    if use_json:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    console_handler.addFilter(SensitiveDataFilter())
    if not debug_mode:
        console_handler.addFilter(NoHttpFilter())
    logger.addHandler(console_handler)

    if use_file_handler:
        log_dir = Path(os.environ.get("LOG_DIR") or PROJECT_ROOT / "logs")
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / "korprov-monitor.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(SensitiveDataFilter())
        logger.addHandler(file_handler)

    _logging_configured = True

    level_name = logging.getLevelName(log_level)
    logging.getLogger().info(f"Logging initialized ({'JSON' if use_json else 'pretty'} mode). Level: {level_name}")


def reset_logging() -> None:
    """Reset logging configuration (useful for testing)."""
    global _logging_configured
    _logging_configured = False

    logger = logging.getLogger()
    if logger.hasHandlers():
        logger.handlers.clear()
