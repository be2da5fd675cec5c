"""Dual-write event bus.

Used while migrating from in-process delivery to the broker: every
publish goes to both transports, but subscriptions only live on the
durable bus so each handler sees each event exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from domain_bus.domain.events import DomainEvent

from .protocol import DomainEventHandler, EventBus, Unsubscribe

logger = logging.getLogger(__name__)


class DualWriteEventBus:
    """Fan-out composite over an in-process bus and a durable bus.

    Parameters
    ----------
    memory:
        The in-process bus.  Receives every publish; nobody subscribes
        to it through this wrapper.
    durable:
        The broker-backed bus.  Receives every publish and every
        subscription.
    """

    def __init__(self, memory: EventBus, durable: EventBus) -> None:
        self._memory = memory
        self._durable = durable
        self._publish_failures: dict[str, int] = {"memory": 0, "durable": 0}

    @property
    def memory(self) -> EventBus:
        return self._memory

    @property
    def durable(self) -> EventBus:
        return self._durable

    async def publish(self, event: DomainEvent[Any]) -> None:
        """Publish to both buses concurrently.  Never raises."""
        results = await asyncio.gather(
            self._memory.publish(event),
            self._durable.publish(event),
            return_exceptions=True,
        )
        for name, result in zip(("memory", "durable"), results):
            if isinstance(result, BaseException):
                self._publish_failures[name] += 1
                logger.error(
                    "Dual-write publish to %s bus failed for event type=%s id=%s: %r",
                    name,
                    event.type,
                    event.id,
                    result,
                )

    def subscribe(self, pattern: str, handler: DomainEventHandler) -> Unsubscribe:
        """Subscribe on the durable bus only."""
        return self._durable.subscribe(pattern, handler)

    async def shutdown(self) -> None:
        """Shut down both buses; one failing does not stop the other."""
        results = await asyncio.gather(
            self._memory.shutdown(),
            self._durable.shutdown(),
            return_exceptions=True,
        )
        for name, result in zip(("memory", "durable"), results):
            if isinstance(result, BaseException):
                logger.error("Dual-write shutdown of %s bus failed: %r", name, result)

    def get_publish_failures(self) -> dict[str, int]:
        """Return failed publish counts per underlying bus."""
        return dict(self._publish_failures)
