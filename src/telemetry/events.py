"""Topic-based publisher for the orchestrator's outward events.

Topics:
    scan-result    SensorDevice        a device was discovered or re-identified
    device-status  DeviceStatusEvent   connection state changed or a connect failed
    sensor-data    SensorReading       a validated reading was accepted

Handlers are called as ``handler(topic, payload)`` and may be plain functions
or coroutine functions.  A failing handler is logged and never affects the
publisher or the other handlers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger("cyclelink.telemetry.events")

SCAN_RESULT = "scan-result"
DEVICE_STATUS = "device-status"
SENSOR_DATA = "sensor-data"

TOPICS = (SCAN_RESULT, DEVICE_STATUS, SENSOR_DATA)

Handler = Callable[[str, Any], Any]


class EventEmitter:
    """Fan out events to subscribers on the owning event loop.

    Publishing from a foreign thread is allowed once a loop is bound; the
    call is marshalled onto that loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._subscribers: dict[str, list[Handler]] = {}
        self._loop = loop
        self._pending: set[asyncio.Future] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def subscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.setdefault(topic, [])
        if handler not in handlers:
            handlers.append(handler)
        logger.debug("Subscribed %r to %s", handler, topic)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._subscribers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)
            logger.debug("Unsubscribed %r from %s", handler, topic)

    def unsubscribe_all(self) -> None:
        self._subscribers.clear()

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, []))

    def emit(self, topic: str, payload: Any) -> None:
        """Deliver ``payload`` to every handler subscribed to ``topic``."""
        # Copy so handlers may unsubscribe while being called
        for handler in list(self._subscribers.get(topic, [])):
            try:
                self._dispatch(handler, topic, payload)
            except Exception:
                logger.exception("Error handling %s event in %r", topic, handler)

    def _dispatch(self, handler: Handler, topic: str, payload: Any) -> None:
        try:
            current_loop = asyncio.get_running_loop()
        except RuntimeError:
            current_loop = None

        is_async = inspect.iscoroutinefunction(handler)
        loop = self._loop or current_loop

        if loop is None:
            if is_async:
                logger.warning("No event loop bound; cannot dispatch async handler for %s", topic)
            else:
                handler(topic, payload)
            return

        if current_loop is loop:
            if is_async:
                task = loop.create_task(self._guarded(handler, topic, payload))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
            else:
                handler(topic, payload)
        elif is_async:
            asyncio.run_coroutine_threadsafe(self._guarded(handler, topic, payload), loop)
        else:
            loop.call_soon_threadsafe(self._call_guarded, handler, topic, payload)

    @staticmethod
    async def _guarded(handler: Handler, topic: str, payload: Any) -> None:
        try:
            await handler(topic, payload)
        except Exception:
            logger.exception("Error handling %s event in %r", topic, handler)

    @staticmethod
    def _call_guarded(handler: Handler, topic: str, payload: Any) -> None:
        try:
            handler(topic, payload)
        except Exception:
            logger.exception("Error handling %s event in %r", topic, handler)

    async def flush(self) -> None:
        """Wait for async handlers started by ``emit`` to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
