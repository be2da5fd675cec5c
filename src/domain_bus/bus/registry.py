"""Process-wide bus accessors.

Each accessor is backed by a ``BusRegistry``: the first ``get()`` builds
the bus, concurrent first calls share the same in-flight construction,
and later calls return the cached instance.  ``reset()`` forgets the
instance without closing it (tests); ``shutdown()`` closes and forgets.

Usage::

    bus = await use_event_bus()
    bus.subscribe("order.#", on_order)
    ...
    await shutdown_event_bus()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from domain_bus.core.config import Settings, load_settings

from .bus import create_event_bus
from .memory_bus import InMemoryEventBus, create_memory_event_bus
from .rabbitmq import RabbitMQEventBus, create_rabbitmq_event_bus

logger = logging.getLogger(__name__)

B = TypeVar("B")


class BusRegistry(Generic[B]):
    """Lazily built, shared bus instance with explicit lifecycle."""

    def __init__(self, factory: Callable[[], Awaitable[B]], name: str) -> None:
        self._factory = factory
        self._name = name
        self._instance: B | None = None
        self._pending: asyncio.Task[B] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def instance(self) -> B | None:
        """The built bus, or ``None`` before the first successful ``get()``."""
        return self._instance

    async def get(self) -> B:
        if self._instance is not None:
            return self._instance

        if self._pending is None:
            self._pending = asyncio.ensure_future(self._build())
        pending = self._pending
        # shield: one cancelled caller must not abort the shared build
        return await asyncio.shield(pending)

    async def _build(self) -> B:
        task = asyncio.current_task()
        try:
            instance = await self._factory()
        except BaseException:
            logger.warning("Failed to build %s", self._name, exc_info=True)
            if self._pending is task:
                self._pending = None
            raise
        # A reset() or shutdown() during the build disowns its result.
        if self._pending is task:
            self._instance = instance
            self._pending = None
            logger.info("Built %s", self._name)
        return instance

    def reset(self) -> None:
        """Forget the instance without shutting it down."""
        self._instance = None
        self._pending = None

    async def shutdown(self) -> None:
        """Shut the instance down (if any) and forget it.

        A build still in flight is awaited and whatever it produces is
        shut down too.
        """
        instance, pending = self._instance, self._pending
        self.reset()
        if instance is None and pending is not None:
            try:
                instance = await asyncio.shield(pending)
            except Exception:
                return
        if instance is None:
            return
        await instance.shutdown()  # type: ignore[attr-defined]
        logger.info("Shut down %s", self._name)


# ---------------------------------------------------------------------------
# Process-wide registries
# ---------------------------------------------------------------------------

def _settings() -> Settings:
    return load_settings()


async def _build_event_bus() -> Any:
    return await create_event_bus(_settings())


async def _build_message_broker() -> RabbitMQEventBus:
    return await create_rabbitmq_event_bus(_settings().require_rabbitmq())


event_bus_registry: BusRegistry[Any] = BusRegistry(_build_event_bus, "event bus")
memory_bus_registry: BusRegistry[InMemoryEventBus] = BusRegistry(
    create_memory_event_bus, "in-memory event bus"
)
message_broker_registry: BusRegistry[RabbitMQEventBus] = BusRegistry(
    _build_message_broker, "message broker"
)


async def use_event_bus() -> Any:
    """The bus selected by configuration (memory, rabbitmq or dual-write)."""
    return await event_bus_registry.get()


def reset_event_bus() -> None:
    event_bus_registry.reset()


async def shutdown_event_bus() -> None:
    await event_bus_registry.shutdown()


async def use_memory_bus() -> InMemoryEventBus:
    """The process-wide in-process bus."""
    return await memory_bus_registry.get()


def reset_memory_bus() -> None:
    memory_bus_registry.reset()


async def shutdown_memory_bus() -> None:
    await memory_bus_registry.shutdown()


async def use_message_broker() -> RabbitMQEventBus:
    """The process-wide RabbitMQ bus.

    Raises ``BrokerNotConfiguredError`` when no broker URL is configured.
    """
    return await message_broker_registry.get()


def reset_message_broker() -> None:
    message_broker_registry.reset()


async def shutdown_message_broker() -> None:
    await message_broker_registry.shutdown()
