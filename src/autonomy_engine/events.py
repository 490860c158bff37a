from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, AsyncIterator, Callable, Protocol

from .models import EngineEvent

logger = logging.getLogger(__name__)

ACTION_STARTED = "action-started"
ACTION_COMPLETED = "action-completed"
ACTION_FAILED = "action-failed"
PROPOSALS_UPDATED = "proposals-updated"
STATUS_CHANGED = "status-changed"
MILESTONE_REACHED = "milestone-reached"
GOAL_COMPLETED = "goal-completed"
APPROVAL_REQUESTED = "approval-requested"
APPROVAL_RESOLVED = "approval-resolved"

EventCallback = Callable[[EngineEvent], None]


class EventSink(Protocol):
    def emit(self, event_name: str, payload: dict[str, Any] | None = None) -> EngineEvent:
        ...


class EventBus:
    """Fan engine events out to callbacks and async stream subscribers.

    ``emit`` never raises because of a subscriber: callback failures are
    logged, and slow stream consumers lose their oldest buffered event.
    """

    STREAM_BUFFER = 256

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self._callbacks: list[EventCallback] = []
        self._streams: list[asyncio.Queue[EngineEvent]] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    async def stream(self) -> AsyncIterator[EngineEvent]:
        queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=self.STREAM_BUFFER)
        self._streams.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._streams.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._streams)

    def emit(self, event_name: str, payload: dict[str, Any] | None = None) -> EngineEvent:
        event = EngineEvent(seq=next(self._seq), name=event_name, payload=dict(payload or {}))
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event subscriber %r failed on %s", callback, event_name)
        for queue in list(self._streams):
            if queue.full():
                dropped = queue.get_nowait()
                logger.warning("Event stream overflow; dropped %s (seq=%d)", dropped.name, dropped.seq)
            queue.put_nowait(event)
        return event


class LoggingSubscriber:
    """Mirror every engine event to the ``autonomy_engine.events`` logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def __call__(self, event: EngineEvent) -> None:
        level = logging.WARNING if event.name == ACTION_FAILED or event.payload.get("fatal") else self.level
        logger.log(level, "event %s #%d %s", event.name, event.seq, event.payload)
