"""Event bus transports, factory and process-wide accessors."""

from domain_bus.bus.bus import create_event_bus
from domain_bus.bus.dual_write import DualWriteEventBus
from domain_bus.bus.memory_bus import InMemoryEventBus, create_memory_event_bus
from domain_bus.bus.patterns import compile_pattern, matches
from domain_bus.bus.protocol import DomainEventHandler, EventBus, Unsubscribe
from domain_bus.bus.rabbitmq import (
    ConnectionState,
    RabbitMQEventBus,
    create_rabbitmq_event_bus,
)
from domain_bus.bus.registry import (
    BusRegistry,
    reset_event_bus,
    reset_memory_bus,
    reset_message_broker,
    shutdown_event_bus,
    shutdown_memory_bus,
    shutdown_message_broker,
    use_event_bus,
    use_memory_bus,
    use_message_broker,
)

__all__ = [
    "BusRegistry",
    "ConnectionState",
    "DomainEventHandler",
    "DualWriteEventBus",
    "EventBus",
    "InMemoryEventBus",
    "RabbitMQEventBus",
    "Unsubscribe",
    "compile_pattern",
    "create_event_bus",
    "create_memory_event_bus",
    "create_rabbitmq_event_bus",
    "matches",
    "reset_event_bus",
    "reset_memory_bus",
    "reset_message_broker",
    "shutdown_event_bus",
    "shutdown_memory_bus",
    "shutdown_message_broker",
    "use_event_bus",
    "use_memory_bus",
    "use_message_broker",
]
