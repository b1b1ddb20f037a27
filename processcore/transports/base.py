"""Base event bus interface for domain event streaming."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional

from ..contracts import DomainEvent


class BaseTransport(metaclass=abc.ABCMeta):
    """Abstract publish/subscribe bus for domain events.

    Every subscriber of a topic receives every event published on it after
    it subscribed. Nothing is persisted for late subscribers.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def publish_event(self, event: DomainEvent) -> None:
        """Publish ``event`` on each of its topics."""
        for topic in event.topics():
            await self.publish(topic, event)

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Send an event to a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[DomainEvent]:
        """Yield events published on ``topic``.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep the subscription open.
                If None, runs until the consumer stops iterating.
        """
        raise NotImplementedError
