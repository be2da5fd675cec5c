"""Custom exception hierarchy for the event bus."""

from __future__ import annotations


class EventBusError(Exception):
    """Base exception for all event bus errors."""


# --- Configuration ---
class ConfigError(EventBusError):
    """Invalid or missing configuration."""


class BrokerNotConfiguredError(ConfigError):
    """A broker-backed bus was requested without a connection URL."""


# --- Publish ---
class PublishError(EventBusError):
    """A publish call could not be completed."""

    def __init__(
        self,
        message: str,
        event_id: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.event_id = event_id
        self.cause = cause


class BusClosedError(PublishError):
    """The bus has been shut down or gave up reconnecting."""


class ReconnectExhaustedError(BusClosedError):
    """The reconnect budget ran out; buffered publishes are rejected."""


class PublishBufferFullError(PublishError):
    """The publish buffer is at capacity while the broker is unreachable."""


class PublishRejectedError(PublishError):
    """The broker refused the message or the transport failed mid-publish."""


class EventSerializationError(PublishError):
    """The event could not be encoded for the wire."""
