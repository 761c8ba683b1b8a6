"""
Supabase Realtime bridge for booking job updates.

Features:
- Subscribe to the `booking-<key>` broadcast channel (key = user or job id)
- Feed `status_update`, `qr_code_update` and the worker webhook's
  `vps_update` events into the same JobSyncState the poller uses, so
  whichever source is first wins
- At most one live subscription per bridge; re-subscribing tears down the
  previous one first

Push delivery is an optimisation. Every failure here is logged and
swallowed; the poller alone is enough for correctness.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from realtime import AsyncRealtimeClient

from korprov_monitor.core.models import flatten_worker_event
from korprov_monitor.core.sync_state import JobSyncState

logger = logging.getLogger(__name__)

EVENT_STATUS_UPDATE = "status_update"
EVENT_QR_CODE_UPDATE = "qr_code_update"
# Relayed worker webhook events: `{type, job_id, timestamp, data}`.
EVENT_VPS_UPDATE = "vps_update"

CHANNEL_PREFIX = "booking-"


class RealtimeEventBridge:
    """
    Manages one Supabase Realtime broadcast subscription for a job.

    Features:
    - Async WebSocket connection per subscription
    - Generation-tagged handlers so events from a replaced channel are dropped
    - Job id filtering for user-keyed channels that carry several jobs
    - Malformed payloads discarded without touching the sync state
    """

    def __init__(
        self,
        supabase_url: str,
        api_key: str,
        client_factory: Callable[..., Any] | None = None,
    ):
        """
        Initialize the bridge.

        Args:
            supabase_url: Full Supabase project URL (e.g., https://xyz.supabase.co)
            api_key: Supabase anon key
            client_factory: Realtime client constructor, AsyncRealtimeClient by default
        """
        self.supabase_url = supabase_url
        self.api_key = api_key
        self._client_factory = client_factory or AsyncRealtimeClient

        self.client: Any | None = None
        self._channel: Any | None = None
        self._state: JobSyncState | None = None
        self._key: str | None = None
        self._generation = 0
        self._lock = asyncio.Lock()

        self.events_received = 0
        self.events_accepted = 0

    @property
    def is_subscribed(self) -> bool:
        return self._channel is not None and self._state is not None

    @property
    def channel_name(self) -> str | None:
        return f"{CHANNEL_PREFIX}{self._key}" if self._key else None

    async def subscribe(self, key: str, state: JobSyncState) -> bool:
        """
        Subscribe to the broadcast channel for `key`, replacing any previous subscription.

        Returns:
            True if the channel was joined, False otherwise
        """
        async with self._lock:
            await self._teardown()

            generation = self._generation
            channel_name = f"{CHANNEL_PREFIX}{key}"
            client = None
            try:
                client = self._client_factory(f"{self.supabase_url.rstrip('/')}/realtime/v1", self.api_key)
                await client.connect()

                channel = client.channel(channel_name)
                channel.on_broadcast(
                    EVENT_STATUS_UPDATE,
                    lambda message: self._handle_status_update(generation, message),
                )
                channel.on_broadcast(
                    EVENT_QR_CODE_UPDATE,
                    lambda message: self._handle_qr_update(generation, message),
                )
                channel.on_broadcast(
                    EVENT_VPS_UPDATE,
                    lambda message: self._handle_vps_update(generation, message),
                )
                await channel.subscribe()

            except Exception as e:
                logger.warning(
                    f"[Realtime {state.job_id}] Failed to subscribe to {channel_name}: {e}",
                    extra={"job_id": state.job_id, "source": "push"},
                )
                if client is not None:
                    await self._close_client(client)
                return False

            self.client = client
            self._channel = channel
            self._state = state
            self._key = key
            logger.info(
                f"[Realtime {state.job_id}] Subscribed to {channel_name}",
                extra={"job_id": state.job_id, "source": "push"},
            )
            return True

    async def unsubscribe(self) -> None:
        """Leave the channel and close the connection. Safe to call more than once."""
        async with self._lock:
            await self._teardown()

    async def _teardown(self) -> None:
        self._generation += 1
        channel, client, state = self._channel, self.client, self._state
        self._channel = None
        self.client = None
        self._state = None
        self._key = None

        if channel is not None:
            try:
                await channel.unsubscribe()
            except Exception as e:
                logger.warning(f"[Realtime] Failed to unsubscribe channel: {e}")

        if client is not None:
            await self._close_client(client)

        if state is not None:
            logger.info(f"[Realtime {state.job_id}] Unsubscribed", extra={"job_id": state.job_id})

    @staticmethod
    async def _close_client(client: Any) -> None:
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"[Realtime] Failed to close client: {e}")

    def _accept_payload(self, generation: int, message: Any) -> tuple[JobSyncState, dict] | None:
        """Unwrap a broadcast message, or return None if it must be dropped."""
        state = self._state
        if generation != self._generation or state is None or state.closed:
            return None

        self.events_received += 1

        payload = message
        if isinstance(payload, dict) and isinstance(payload.get("payload"), dict):
            payload = payload["payload"]
        if not isinstance(payload, dict):
            logger.debug(f"[Realtime {state.job_id}] Discarding non-object broadcast payload")
            return None

        job_id = payload.get("job_id")
        if job_id and str(job_id) != state.job_id:
            return None

        return state, payload

    def _handle_status_update(self, generation: int, message: Any) -> None:
        try:
            accepted = self._accept_payload(generation, message)
            if accepted is None:
                return
            state, payload = accepted
            self.events_accepted += state.offer_status_payload(payload, source="push")

        except Exception as e:
            logger.error(f"[Realtime] Error handling status update: {e}")

    def _handle_qr_update(self, generation: int, message: Any) -> None:
        try:
            accepted = self._accept_payload(generation, message)
            if accepted is None:
                return
            state, payload = accepted
            if state.offer_qr_payload(payload, source="push"):
                self.events_accepted += 1

        except Exception as e:
            logger.error(f"[Realtime] Error handling QR update: {e}")

    def _handle_vps_update(self, generation: int, message: Any) -> None:
        try:
            accepted = self._accept_payload(generation, message)
            if accepted is None:
                return
            state, payload = accepted

            event_type = payload.get("type")
            flattened = flatten_worker_event(event_type, payload)
            if flattened is None:
                logger.debug(f"[Realtime {state.job_id}] Ignoring vps_update of type {event_type!r}")
                return

            kind, fields = flattened
            if kind == "qr":
                if state.offer_qr_payload(fields, source="push"):
                    self.events_accepted += 1
            else:
                self.events_accepted += state.offer_status_payload(fields, source="push")

        except Exception as e:
            logger.error(f"[Realtime] Error handling vps_update: {e}")
