"""
Typed events delivered to the display layer.

The core talks to the presentation layer only through three hooks:
on_status(snapshot), on_qr(frame) and on_connection_change(state).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Union

from korprov_monitor.core.models import ConnectionState, JobStatusSnapshot, QrFrame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    job_id: str
    snapshot: JobStatusSnapshot
    source: str = "poll"


@dataclass(frozen=True)
class QrEvent:
    job_id: str
    frame: QrFrame
    update_count: int
    source: str = "poll"


@dataclass(frozen=True)
class ConnectionEvent:
    state: ConnectionState
    previous: ConnectionState | None = None
    reason: str | None = None


Event = Union[StatusEvent, QrEvent, ConnectionEvent]
Handler = Callable[[Any], Any]


class EventEmitter:
    """
    Minimal synchronous pub/sub keyed by event type.

    Handlers run inline; coroutine handlers are scheduled as tasks so a slow
    consumer never blocks the emitting loop. A failing handler is logged and
    does not affect other handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, []))

    def emit(self, event: Event) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_handler_done)
            except Exception as e:
                logger.error(f"[Events] {type(event).__name__} handler failed: {e}")

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Events] Async handler failed: {task.exception()}")

    def clear(self) -> None:
        self._handlers.clear()


class DisplayAdapter(Protocol):
    """Presentation layer contract. Calls must return quickly."""

    def on_status(self, snapshot: JobStatusSnapshot) -> Any: ...

    def on_qr(self, frame: QrFrame) -> Any: ...

    def on_connection_change(self, state: ConnectionState) -> Any: ...


def attach_display(emitter: EventEmitter, adapter: DisplayAdapter) -> Callable[[], None]:
    """Route emitter events to a display adapter. Returns a detach callable."""
    detachers = [
        emitter.subscribe(StatusEvent, lambda event: adapter.on_status(event.snapshot)),
        emitter.subscribe(QrEvent, lambda event: adapter.on_qr(event.frame)),
        emitter.subscribe(ConnectionEvent, lambda event: adapter.on_connection_change(event.state)),
    ]

    def detach() -> None:
        for detacher in detachers:
            detacher()

    return detach
