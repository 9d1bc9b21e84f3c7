"""Fan-out of session events to the /events SSE stream.

SessionControllers call their listeners synchronously, so the server hands
events over with ``publish_sync()``. Each connected SSE client drains its own
bounded queue.

    async for payload in event_bus.subscribe():
        ...  # {"event": "app-started", "data": {...}}; None once closed
"""

import asyncio
import itertools
import logging
from typing import AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

_CLOSED = None


class _Subscriber:
    def __init__(self, sub_id: int, maxsize: int):
        self.id = sub_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, payload) -> bool:
        try:
            self.queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False


class EventBus:
    """Delivers event payloads to every open stream.

    A client that stops reading only loses its own events once its queue
    holds ``max_queue_size`` payloads.
    """

    def __init__(self, max_queue_size: int = 100):
        self._max_queue_size = max_queue_size
        self._subscribers: Dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the loop that publish_sync() hands events to."""
        self._loop = loop

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self) -> AsyncIterator[Optional[dict]]:
        """Stream payloads until close(); the last item yielded is None."""
        sub = _Subscriber(next(self._ids), self._max_queue_size)
        self._subscribers[sub.id] = sub
        logger.info(f"Event stream #{sub.id} opened ({self.subscriber_count} open)")
        try:
            while True:
                payload = await sub.queue.get()
                yield payload
                if payload is _CLOSED:
                    break
        finally:
            self._subscribers.pop(sub.id, None)
            if sub.dropped:
                logger.warning(f"Event stream #{sub.id} dropped {sub.dropped} event(s)")
            logger.info(f"Event stream #{sub.id} closed ({self.subscriber_count} open)")

    async def publish(self, event: dict) -> int:
        """Queue ``event`` for every stream.

        Returns:
            How many streams accepted it
        """
        return self._fan_out(event)

    def publish_sync(self, event: dict) -> None:
        """Hand ``event`` to the bound loop; callable from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop bound, {event.get('event')} event not published")
            return
        loop.call_soon_threadsafe(self._fan_out, event)

    def _fan_out(self, event: dict) -> int:
        delivered = 0
        for sub in list(self._subscribers.values()):
            if sub.offer(event):
                delivered += 1
            else:
                logger.warning(f"Event stream #{sub.id} is full, dropping {event.get('event')} event")
        return delivered

    async def close(self) -> None:
        """End every open stream."""
        for sub in list(self._subscribers.values()):
            if sub.queue.full():
                sub.queue.get_nowait()
            sub.offer(_CLOSED)
        self._subscribers.clear()
        logger.info("Event bus closed")


# Shared by main.py and the session listener it installs
event_bus = EventBus()
