from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from smart_warehouse.domain.events import WarehouseEvent

log = logging.getLogger(__name__)


class AsyncEventBus:
    """
    In-process fan-out. Each subscriber owns a bounded queue; a slow subscriber
    loses its oldest messages instead of blocking the publisher.
    """

    def __init__(self, default_queue_size: int) -> None:
        self._default_queue_size = default_queue_size
        self._subscribers: dict[asyncio.Queue[Any], int] = {}
        self._lock = asyncio.Lock()
        self._published = 0

    def stats(self) -> dict[str, int]:
        return {
            "subscribers": len(self._subscribers),
            "published": self._published,
            "dropped": sum(self._subscribers.values()),
        }

    async def subscribe(self, maxsize: int | None = None) -> asyncio.Queue[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize or self._default_queue_size)
        async with self._lock:
            self._subscribers[queue] = 0
            count = len(self._subscribers)
        log.info("Event bus subscribe subscribers=%s queue_size=%s", count, queue.maxsize)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue[Any]) -> None:
        async with self._lock:
            dropped = self._subscribers.pop(queue, 0)
            count = len(self._subscribers)
        log.info("Event bus unsubscribe subscribers=%s dropped_total=%s", count, dropped)

    async def publish(self, event: WarehouseEvent) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)
            self._published += 1
        dropped = 0
        for queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                with contextlib.suppress(asyncio.QueueEmpty):
                    _ = queue.get_nowait()
                queue.put_nowait(event)
                dropped += 1
                if queue in self._subscribers:
                    self._subscribers[queue] += 1
        if dropped:
            log.warning(
                "Event bus publish dropped_oldest=%s event_type=%s subscribers=%s",
                dropped,
                type(event).__name__,
                len(subscribers),
            )
        else:
            log.debug("Event bus publish event_type=%s subscribers=%s", type(event).__name__, len(subscribers))
