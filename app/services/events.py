"""In-process fan-out of search events to websocket subscribers."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator

from ..models import SearchEvent

logger = logging.getLogger(__name__)


class SearchEventBus:
    """Delivers every published event to each current subscriber queue."""

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue[SearchEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SearchEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Dropping %s event for a slow subscriber", event.type)

    @contextmanager
    def subscribe(self) -> Iterator[asyncio.Queue[SearchEvent]]:
        queue: asyncio.Queue[SearchEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
