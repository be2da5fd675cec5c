"""Event bus abstraction.

Every transport (in-process, RabbitMQ, dual-write) satisfies
``EventBus``.  Callers never need to know which one they hold.

Pattern syntax for ``subscribe``:

- Exact: ``"product.created"`` matches only that type.
- Single-word wildcard: ``"product.*"`` matches ``product.created`` and
  ``product.updated``.
- Multi-word wildcard: ``"product.#"`` matches ``product.created`` and
  ``product.variant.added``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from domain_bus.domain.events import DomainEvent

# A handler may be sync or async.
DomainEventHandler = Callable[[DomainEvent[Any]], Awaitable[None] | None]

# Returned by ``subscribe``; removes the subscription.  Idempotent.
Unsubscribe = Callable[[], None]


@runtime_checkable
class EventBus(Protocol):
    """Publish/subscribe bus for ``DomainEvent`` values."""

    async def publish(self, event: DomainEvent[Any]) -> Any:
        """Publish *event* to all matching subscribers."""
        ...

    def subscribe(self, pattern: str, handler: DomainEventHandler) -> Unsubscribe:
        """Register *handler* for event types matching *pattern*."""
        ...

    async def shutdown(self) -> None:
        """Release every resource held by the bus.  Idempotent."""
        ...
