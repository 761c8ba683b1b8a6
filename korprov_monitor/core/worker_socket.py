"""
Direct websocket feed from the worker for one job.

Features:
- One connection to `<worker>/ws/<job_id>` per job; starting a new job
  closes the previous connection first
- `status_update`, `progress`, `qr_code` and `completion` messages are fed
  into the same JobSyncState as polling and push, so the freshness rules
  still decide what reaches the display
- Reconnect with exponential backoff after an abnormal closure; a normal
  close from the worker ends the feed

The feed is best effort. Connection problems are logged and retried, never
raised; the poller alone is enough for correctness.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Callable
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosedOK

from korprov_monitor.core.models import flatten_worker_event
from korprov_monitor.core.sync_state import JobSyncState

logger = logging.getLogger(__name__)

SOURCE = "socket"

# Reconnection configuration
MAX_RECONNECT_ATTEMPTS = 5
BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0


def socket_url(api_url: str, job_id: str, api_token: str | None = None) -> str:
    """Websocket URL for a job, derived from the worker's HTTP base URL."""
    base = api_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]

    url = f"{base}/ws/{quote(job_id, safe='')}"
    if api_token:
        url += f"?token={quote(api_token, safe='')}"
    return url


def reconnect_delay(attempt: int, base: float = BASE_RECONNECT_DELAY, max_delay: float = MAX_RECONNECT_DELAY) -> float:
    """Calculate delay in seconds for a reconnect attempt (exponential backoff, 10% jitter)."""
    delay = min(base * (2**attempt), max_delay)
    return delay * (0.9 + random.random() * 0.2)


class WorkerSocketFeed:
    """
    Streams live worker messages for the current job into its sync state.

    Args:
        api_url: Worker HTTP base URL (http/https is mapped to ws/wss)
        api_token: Worker API token, sent as the `token` query parameter
        max_reconnect_attempts: Consecutive failed connects before giving up
        connect: Websocket connect function, websockets.connect by default
    """

    def __init__(
        self,
        api_url: str,
        api_token: str | None = None,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        base_delay: float = BASE_RECONNECT_DELAY,
        max_delay: float = MAX_RECONNECT_DELAY,
        connect: Callable[..., Any] | None = None,
    ):
        self.api_url = api_url
        self.api_token = api_token
        self.max_reconnect_attempts = max_reconnect_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect or websockets.connect

        self._task: asyncio.Task | None = None
        self._job_id: str | None = None

        self.messages_received = 0
        self.messages_accepted = 0
        self.reconnects = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def job_id(self) -> str | None:
        return self._job_id

    async def start(self, state: JobSyncState) -> None:
        """Open the feed for `state.job_id`, closing any previous connection first."""
        await self.stop()
        self._job_id = state.job_id
        self._task = asyncio.get_running_loop().create_task(self._run(state), name=f"worker-socket:{state.job_id}")

    async def stop(self) -> None:
        """Close the connection and cancel any pending reconnect. Safe to call more than once."""
        task, job_id = self._task, self._job_id
        self._task = None
        self._job_id = None

        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info(f"[Socket {job_id}] Disconnected", extra={"job_id": job_id, "source": SOURCE})

    async def _run(self, state: JobSyncState) -> None:
        tag = f"[Socket {state.job_id}]"
        extra = {"job_id": state.job_id, "source": SOURCE}
        url = socket_url(self.api_url, state.job_id, self.api_token)
        attempt = 0

        while not state.closed:
            try:
                async with self._connect(url) as connection:
                    if attempt:
                        logger.info(f"{tag} Reconnected after {attempt} attempts", extra=extra)
                    else:
                        logger.info(f"{tag} Connected", extra=extra)
                    attempt = 0

                    async for raw in connection:
                        self._handle_message(state, raw)
                        if state.closed:
                            break

                if not state.closed:
                    logger.info(f"{tag} Closed by worker", extra=extra)
                return

            except ConnectionClosedOK:
                logger.info(f"{tag} Closed by worker", extra=extra)
                return

            except Exception as e:
                if attempt >= self.max_reconnect_attempts:
                    logger.warning(
                        f"{tag} Giving up after {attempt} reconnect attempts: {e}",
                        extra=extra,
                    )
                    return

                delay = reconnect_delay(attempt, self.base_delay, self.max_delay)
                attempt += 1
                self.reconnects += 1
                logger.info(
                    f"{tag} Connection lost ({type(e).__name__}: {e}), "
                    f"reconnecting in {delay:.1f}s (attempt {attempt}/{self.max_reconnect_attempts})",
                    extra=extra,
                )
                await asyncio.sleep(delay)

    def _handle_message(self, state: JobSyncState, raw: str | bytes) -> None:
        try:
            self.messages_received += 1
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug(f"[Socket {state.job_id}] Discarding non-JSON message")
                return
            if not isinstance(message, dict):
                return

            job_id = message.get("job_id")
            if job_id and str(job_id) != state.job_id:
                return

            event_type = message.get("type")
            flattened = flatten_worker_event(event_type, message)
            if flattened is None:
                logger.debug(f"[Socket {state.job_id}] Ignoring message of type {event_type!r}")
                return

            kind, fields = flattened
            if kind == "qr":
                if state.offer_qr_payload(fields, source=SOURCE):
                    self.messages_accepted += 1
            else:
                self.messages_accepted += state.offer_status_payload(fields, source=SOURCE)

        except Exception as e:
            logger.error(f"[Socket {state.job_id}] Error handling message: {e}")
