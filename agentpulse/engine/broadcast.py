"""Fan-out of tick results to stream subscribers."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

logger = logging.getLogger("agentpulse.broadcast")


class ActivityBroadcaster:
    """Each subscriber gets its own bounded queue.

    A slow subscriber loses its oldest queued messages rather than blocking
    the publisher or other subscribers.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self.queues: list[asyncio.Queue[dict[str, Any]]] = []

    def __len__(self) -> int:
        return len(self.queues)

    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.maxsize)
        self.queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        if queue in self.queues:
            self.queues.remove(queue)

    def publish(self, event_type: str, data: dict[str, Any]) -> int:
        """Queue ``{"event", "data"}`` for every subscriber; returns the count."""
        message = {"event": event_type, "data": data}
        for queue in list(self.queues):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("Subscriber queue full, dropped oldest %s message", event_type)
            queue.put_nowait(message)
        return len(self.queues)
