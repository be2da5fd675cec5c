"""Event bus factory.

Creates the appropriate event bus implementation based on settings.
"""

from __future__ import annotations

import logging
from typing import Any

from domain_bus.core.config import Settings

from .dual_write import DualWriteEventBus
from .memory_bus import InMemoryEventBus, create_memory_event_bus
from .rabbitmq import RabbitMQEventBus, create_rabbitmq_event_bus

logger = logging.getLogger(__name__)


async def create_event_bus(
    settings: Settings,
    **rabbitmq_kwargs: Any,
) -> InMemoryEventBus | RabbitMQEventBus | DualWriteEventBus:
    """Create an event bus for the given settings.

    - ``dual_write``: DualWriteEventBus over a fresh in-process bus and a
      fresh RabbitMQ bus
    - ``provider="rabbitmq"``: RabbitMQEventBus (durable, connected)
    - ``provider="memory"``: InMemoryEventBus (no external deps)

    Args:
        settings: Loaded settings.
        **rabbitmq_kwargs: Passed through to ``RabbitMQEventBus``
            (e.g. ``connect`` or ``payload_registry``).

    Raises:
        BrokerNotConfiguredError: A RabbitMQ bus is needed but no URL is set.
    """
    if settings.dual_write:
        broker = settings.require_rabbitmq()
        memory = await create_memory_event_bus()
        durable = await create_rabbitmq_event_bus(broker, **rabbitmq_kwargs)
        logger.info("Created dual-write event bus (memory + rabbitmq)")
        return DualWriteEventBus(memory, durable)

    if settings.provider == "rabbitmq":
        broker = settings.require_rabbitmq()
        bus = await create_rabbitmq_event_bus(broker, **rabbitmq_kwargs)
        logger.info("Created rabbitmq event bus")
        return bus

    logger.info("Created in-memory event bus")
    return await create_memory_event_bus()
