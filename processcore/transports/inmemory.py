"""In-process fan-out event bus."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

from ..contracts import DomainEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport):
    """Broadcast events to subscribers living in this process."""

    def __init__(self, max_pending: int = 1000) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._max_pending = max_pending

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Deliver to every current subscriber; slow ones lose the event."""
        for queue in list(self._subscribers.get(topic, ())):
            if not queue.full():
                queue.put_nowait(event)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[DomainEvent]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_pending)
        self._subscribers[topic].add(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield event
        finally:
            self._subscribers[topic].discard(queue)
            if not self._subscribers[topic]:
                del self._subscribers[topic]
