"""RabbitMQ event bus implementation.

Uses a durable topic exchange so the broker does the ``*`` / ``#``
routing natively, plus a durable topic dead-letter exchange that
receives every message a handler fails on.

Connection lifecycle
--------------------
::

    connected ──(unexpected close)──► reconnecting ──(link restored)──► connected
        │                                 │
        └──────(shutdown)──► closed ◄─────┴──(shutdown / retries exhausted)

- While ``reconnecting``, ``publish()`` calls are buffered (bounded) and
  settle once the backlog is flushed on the new channel.  The flush
  happens *before* the state flips back to ``connected`` so new
  publishes cannot overtake the backlog.
- The live connection/channel/exchange are held in one ``_BrokerLink``
  that is only ever replaced, never mutated.  Every operation captures
  the current link before its first await, so a reconnect in the middle
  of an operation cannot retarget it.
- Handler failures ``nack`` without requeue; the message moves to the
  dead-letter exchange.  Retry policy is up to whoever consumes the DLX.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)

from domain_bus.core.config import RabbitMQConfig, ReconnectConfig
from domain_bus.core.context import context_for, run_with_context
from domain_bus.core.errors import (
    BusClosedError,
    EventSerializationError,
    PublishBufferFullError,
    PublishRejectedError,
    ReconnectExhaustedError,
)
from domain_bus.core.ids import epoch_seconds
from domain_bus.domain.events import DomainEvent
from domain_bus.domain.schemas import PayloadRegistry
from domain_bus.domain.validation import ValidationFailure, validate_domain_event

from .protocol import DomainEventHandler, Unsubscribe

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[AbstractConnection]]


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class _BrokerLink:
    """The connection, channel and primary exchange in use together."""

    connection: AbstractConnection
    channel: AbstractChannel
    exchange: AbstractExchange


@dataclass(eq=False)
class BrokerSubscription:
    """Delivery state for one ``subscribe()`` call."""

    pattern: str
    handler: DomainEventHandler
    active: bool = True
    consumer_tag: str | None = None
    queue_name: str | None = None
    # Captured at setup time; cancellation always targets these.
    queue: AbstractQueue | None = field(default=None, repr=False)
    channel: AbstractChannel | None = field(default=None, repr=False)


@dataclass(eq=False)
class _BufferedPublish:
    event: DomainEvent[Any]
    future: asyncio.Future[None]


def compute_backoff_delay(
    attempt: int,
    config: ReconnectConfig,
    rand: Callable[[], float] = random.random,
) -> float:
    """Seconds to wait before reconnect attempt number *attempt* (0-based).

    ``min(initial * multiplier**attempt, max)`` scaled by a jitter factor
    drawn uniformly from ``[0.5, 1.5)``.
    """
    base_ms = min(
        config.initial_delay_ms * (config.multiplier ** attempt),
        config.max_delay_ms,
    )
    return base_ms * (0.5 + rand()) / 1000.0


def encode_event(event: DomainEvent[Any]) -> bytes:
    """Serialize *event* to the UTF-8 JSON wire form."""
    try:
        return json.dumps(event.to_dict()).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EventSerializationError(
            f"Cannot serialize event {event.type}: {exc}",
            event_id=event.id,
            cause=exc,
        ) from exc


def build_message(event: DomainEvent[Any], body: bytes) -> Message:
    """Wrap *body* in an AMQP message carrying the event's properties."""
    try:
        seconds = epoch_seconds(event.timestamp)
    except ValueError as exc:
        raise EventSerializationError(
            f"Invalid timestamp {event.timestamp!r} on event {event.id}",
            event_id=event.id,
            cause=exc,
        ) from exc

    return Message(
        body,
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT,
        message_id=event.id,
        correlation_id=event.metadata.correlation_id,
        timestamp=datetime.fromtimestamp(seconds, tz=timezone.utc),
    )


class RabbitMQEventBus:
    """Production event bus backed by a RabbitMQ topic exchange.

    Parameters
    ----------
    config
        Broker URL, exchange names, prefetch and reconnect tuning.
    connect
        Coroutine function opening a connection for a URL.  Defaults to
        ``aio_pika.connect``; reconnection is handled here rather than by
        aio-pika's robust connection so buffering stays under our control.
    payload_registry
        Optional registry used to validate inbound payloads.
    rand
        Source of jitter in ``[0, 1)``.
    """

    def __init__(
        self,
        config: RabbitMQConfig,
        *,
        connect: Connector | None = None,
        payload_registry: PayloadRegistry | None = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._config = config
        self._connect = connect or aio_pika.connect
        self._payload_registry = payload_registry
        self._rand = rand

        self._link: _BrokerLink | None = None
        self._state = ConnectionState.CONNECTED
        self._subscriptions: list[BrokerSubscription] = []
        self._buffer: deque[_BufferedPublish] = deque()
        self._attempt = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._shut_down = False

        # Observability
        self._messages_processed = 0
        self._messages_failed = 0
        self._reconnections = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the initial link.  Failures propagate to the caller."""
        link = await self._open_link()
        self._link = link
        self._attach(link)
        self._state = ConnectionState.CONNECTED
        logger.info(
            "Connected to RabbitMQ exchange=%s dlx=%s prefetch=%d",
            self._config.exchange,
            self._config.dead_letter_exchange,
            self._config.prefetch,
        )

    async def shutdown(self) -> None:
        """Cancel consumers, close channel and connection.  Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True
        self._state = ConnectionState.CLOSED

        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None:
            reconnect_task.cancel()
            await asyncio.gather(reconnect_task, return_exceptions=True)

        self._reject_buffer(BusClosedError("Event bus shut down"))

        link, self._link = self._link, None
        if link is not None:
            self._detach(link)

        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            sub.active = False
            if link is not None and sub.channel is link.channel:
                await self._cancel_consumer(sub)

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        if link is not None:
            await self._close_link(link)
        logger.info("RabbitMQ event bus shut down")

    # ------------------------------------------------------------------
    # Publish / Subscribe
    # ------------------------------------------------------------------

    async def publish(self, event: DomainEvent[Any]) -> None:
        """Publish *event*; resolves once the broker confirms it.

        Raises
        ------
        BusClosedError
            The bus is closed.
        PublishBufferFullError
            Reconnecting and the buffer is at capacity.
        PublishRejectedError
            The broker refused the message.
        EventSerializationError
            The event cannot be encoded.
        """
        if self._state is ConnectionState.CLOSED:
            raise BusClosedError("Event bus is closed", event_id=event.id)

        if self._state is ConnectionState.RECONNECTING:
            return await self._buffer_publish(event)

        link = self._link
        if link is None:
            raise BusClosedError("Event bus is not connected", event_id=event.id)
        await self._publish_on(link, event)

    def subscribe(self, pattern: str, handler: DomainEventHandler) -> Unsubscribe:
        """Bind a fresh exclusive queue to *pattern* and consume it.

        Setup runs in the background; while reconnecting it is deferred
        to the reconnect sequence.
        """
        if self._state is ConnectionState.CLOSED:
            raise BusClosedError("Cannot subscribe on a closed event bus")

        sub = BrokerSubscription(pattern=pattern, handler=handler)
        self._subscriptions.append(sub)

        link = self._link
        if self._state is ConnectionState.CONNECTED and link is not None:
            self._spawn(self._setup_consumer_safely(sub, link))

        def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
            if sub.consumer_tag is not None:
                self._spawn(self._cancel_consumer(sub))

        return unsubscribe

    # ------------------------------------------------------------------
    # Link management
    # ------------------------------------------------------------------

    async def _open_link(self) -> _BrokerLink:
        connection = await self._connect(self._config.url)
        try:
            channel = await connection.channel(
                publisher_confirms=self._config.publisher_confirms,
            )
            exchange = await channel.declare_exchange(
                self._config.exchange, ExchangeType.TOPIC, durable=True,
            )
            await channel.declare_exchange(
                self._config.dead_letter_exchange, ExchangeType.TOPIC, durable=True,
            )
            await channel.set_qos(prefetch_count=self._config.prefetch)
        except Exception:
            await self._quiet_close(connection)
            raise
        return _BrokerLink(connection=connection, channel=channel, exchange=exchange)

    def _attach(self, link: _BrokerLink) -> None:
        link.connection.close_callbacks.add(self._on_link_closed)
        link.channel.close_callbacks.add(self._on_link_closed)

    def _detach(self, link: _BrokerLink) -> None:
        link.connection.close_callbacks.discard(self._on_link_closed)
        link.channel.close_callbacks.discard(self._on_link_closed)

    async def _close_link(self, link: _BrokerLink) -> None:
        await self._quiet_close(link.channel)
        await self._quiet_close(link.connection)

    @staticmethod
    async def _quiet_close(handle: Any) -> None:
        try:
            await handle.close()
        except Exception:
            logger.debug("Ignoring error while closing %r", handle, exc_info=True)

    def _on_link_closed(self, sender: Any, exc: BaseException | None = None, *_: Any) -> None:
        """Close callback for the current connection and channel."""
        link = self._link
        if self._state is not ConnectionState.CONNECTED or link is None:
            return
        if sender is not link.connection and sender is not link.channel:
            return

        logger.warning("RabbitMQ link lost: %r", exc)
        self._detach(link)
        self._link = None
        # A channel-level close leaves the connection open.
        self._spawn(self._close_link(link))
        for sub in self._subscriptions:
            sub.consumer_tag = None

        if not self._config.reconnect.enabled:
            self._state = ConnectionState.CLOSED
            logger.error("RabbitMQ link lost and reconnect is disabled; bus closed")
            return

        self._state = ConnectionState.RECONNECTING
        self._attempt = 0
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        delay = compute_backoff_delay(self._attempt, self._config.reconnect, self._rand)
        logger.info(
            "Reconnecting to RabbitMQ in %.3fs (attempt %d)", delay, self._attempt + 1,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="rabbitmq-reconnect",
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._attempt_reconnect()

    async def _attempt_reconnect(self) -> None:
        if self._state is not ConnectionState.RECONNECTING:
            return

        link: _BrokerLink | None = None
        installed = False
        try:
            link = await self._open_link()
            if self._state is not ConnectionState.RECONNECTING:
                await self._close_link(link)
                return

            self._link = link
            installed = True
            self._attach(link)
            # Subscriptions and publishes made meanwhile are deferred to us;
            # the last pass does no awaits, so nothing slips in before the flip.
            while self._state is ConnectionState.RECONNECTING:
                set_up = await self._resubscribe(link)
                flushed = await self._flush_buffer(link)
                if not set_up and not flushed:
                    break
            if link.connection.is_closed or link.channel.is_closed:
                raise ConnectionError("link closed during reconnect")
        except asyncio.CancelledError:
            # Once installed, the link belongs to shutdown().
            if link is not None and not installed:
                await self._close_link(link)
            raise
        except Exception as exc:
            if link is not None:
                self._detach(link)
                if self._link is link:
                    self._link = None
                await self._close_link(link)
            self._on_attempt_failed(exc)
            return

        if self._state is not ConnectionState.RECONNECTING:
            # shutdown() ran mid-sequence and has closed the link.
            return
        self._attempt = 0
        self._reconnections += 1
        self._reconnect_task = None
        self._state = ConnectionState.CONNECTED
        logger.info("Reconnected to RabbitMQ")

    def _on_attempt_failed(self, exc: BaseException) -> None:
        if self._state is not ConnectionState.RECONNECTING:
            return
        self._attempt += 1
        max_attempts = self._config.reconnect.max_attempts
        logger.warning("RabbitMQ reconnect attempt %d failed: %r", self._attempt, exc)

        if max_attempts > 0 and self._attempt >= max_attempts:
            logger.error(
                "Giving up on RabbitMQ after %d attempts; bus closed", self._attempt,
            )
            self._state = ConnectionState.CLOSED
            self._reconnect_task = None
            self._reject_buffer(
                ReconnectExhaustedError(
                    f"RabbitMQ unreachable after {self._attempt} attempts", cause=exc,
                )
            )
            return

        self._schedule_reconnect()

    async def _resubscribe(self, link: _BrokerLink) -> int:
        """Set up consumers missing on *link*; returns how many were tried."""
        tried = 0
        for sub in list(self._subscriptions):
            if sub.active and sub.channel is not link.channel:
                tried += 1
                await self._setup_consumer(sub, link)
        return tried

    # ------------------------------------------------------------------
    # Publish internals
    # ------------------------------------------------------------------

    async def _buffer_publish(self, event: DomainEvent[Any]) -> None:
        capacity = self._config.reconnect.publish_buffer_size
        if len(self._buffer) >= capacity:
            raise PublishBufferFullError(
                f"Publish buffer full ({capacity} events) while reconnecting",
                event_id=event.id,
            )
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._buffer.append(_BufferedPublish(event=event, future=future))
        await future

    async def _flush_buffer(self, link: _BrokerLink) -> int:
        flushed = 0
        while self._buffer:
            entry = self._buffer.popleft()
            if entry.future.done():
                continue
            try:
                await self._publish_on(link, entry.event)
            except asyncio.CancelledError:
                # shutdown() rejects whatever is still buffered.
                self._buffer.appendleft(entry)
                raise
            except Exception as exc:
                if link.connection.is_closed or link.channel.is_closed:
                    # Keep the entry for the next attempt.
                    self._buffer.appendleft(entry)
                    raise ConnectionError("link closed while flushing") from exc
                if not entry.future.done():
                    entry.future.set_exception(exc)
            else:
                if not entry.future.done():
                    entry.future.set_result(None)
            flushed += 1
        if flushed:
            logger.info("Flushed %d buffered events", flushed)
        return flushed

    def _reject_buffer(self, exc: BaseException) -> None:
        while self._buffer:
            entry = self._buffer.popleft()
            if not entry.future.done():
                entry.future.set_exception(exc)

    async def _publish_on(self, link: _BrokerLink, event: DomainEvent[Any]) -> None:
        message = build_message(event, encode_event(event))
        try:
            await link.exchange.publish(message, routing_key=event.type, mandatory=False)
        except Exception as exc:
            raise PublishRejectedError(
                f"Broker did not accept event {event.type}: {exc}",
                event_id=event.id,
                cause=exc,
            ) from exc

    # ------------------------------------------------------------------
    # Consumer internals
    # ------------------------------------------------------------------

    async def _setup_consumer_safely(
        self, sub: BrokerSubscription, link: _BrokerLink
    ) -> None:
        try:
            await self._setup_consumer(sub, link)
        except asyncio.CancelledError:
            raise
        except Exception:
            # A lost link re-runs setup for active subscriptions.
            logger.exception("Consumer setup failed for pattern=%s", sub.pattern)

    async def _setup_consumer(self, sub: BrokerSubscription, link: _BrokerLink) -> None:
        channel = link.channel
        queue = await channel.declare_queue(
            "",
            exclusive=True,
            durable=False,
            auto_delete=True,
            arguments={"x-dead-letter-exchange": self._config.dead_letter_exchange},
        )
        await queue.bind(link.exchange, routing_key=sub.pattern)

        if not sub.active or self._link is not link:
            return

        consumer_tag = await queue.consume(self._make_callback(sub))

        if not sub.active or self._link is not link:
            try:
                await queue.cancel(consumer_tag)
            except Exception:
                logger.debug("Ignoring cancel error for stale consumer", exc_info=True)
            return

        sub.consumer_tag = consumer_tag
        sub.queue_name = queue.name
        sub.queue = queue
        sub.channel = channel
        logger.info(
            "Consuming pattern=%s queue=%s tag=%s", sub.pattern, queue.name, consumer_tag,
        )

    async def _cancel_consumer(self, sub: BrokerSubscription) -> None:
        queue, tag = sub.queue, sub.consumer_tag
        sub.consumer_tag = None
        if queue is None or tag is None:
            return
        try:
            await queue.cancel(tag)
        except Exception:
            logger.debug("Ignoring cancel error for tag=%s", tag, exc_info=True)

    def _make_callback(
        self, sub: BrokerSubscription
    ) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        async def on_message(message: AbstractIncomingMessage) -> None:
            await self._handle_message(sub, message)

        return on_message

    async def _handle_message(
        self, sub: BrokerSubscription, message: AbstractIncomingMessage
    ) -> None:
        if not sub.active:
            await message.nack(requeue=True)
            return

        try:
            raw = json.loads(message.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Malformed message on pattern=%s: %s", sub.pattern, exc)
            self._messages_failed += 1
            await message.nack(requeue=False)
            return

        result = validate_domain_event(raw, payload_registry=self._payload_registry)
        if isinstance(result, ValidationFailure):
            logger.warning(
                "Invalid event envelope on pattern=%s: %s",
                sub.pattern,
                "; ".join(f"{e.path}: {e.message}" for e in result.errors),
            )
            self._messages_failed += 1
            await message.nack(requeue=False)
            return

        event = result.data
        try:
            await run_with_context(
                context_for(event.metadata.correlation_id), sub.handler, event,
            )
        except Exception:
            logger.exception(
                "Handler error on pattern=%s event type=%s id=%s; dead-lettering",
                sub.pattern,
                event.type,
                event.id,
            )
            self._messages_failed += 1
            await message.nack(requeue=False)
            return

        await message.ack()
        self._messages_processed += 1

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def buffered_count(self) -> int:
        return len(self._buffer)

    @property
    def subscriptions(self) -> list[BrokerSubscription]:
        """Snapshot of the active subscriptions."""
        return list(self._subscriptions)

    @property
    def messages_processed(self) -> int:
        return self._messages_processed

    @property
    def messages_failed(self) -> int:
        return self._messages_failed

    @property
    def reconnections(self) -> int:
        return self._reconnections


async def create_rabbitmq_event_bus(
    config: RabbitMQConfig,
    **kwargs: Any,
) -> RabbitMQEventBus:
    """Construct and connect a ``RabbitMQEventBus``.

    Connection or topology errors propagate; the bus never starts broken.
    """
    bus = RabbitMQEventBus(config, **kwargs)
    await bus.connect()
    return bus
