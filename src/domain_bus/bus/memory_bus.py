"""In-process event bus.

No external dependencies.  Matching handlers for a publish run
concurrently; their failures are isolated from the publisher and from
each other.

Publish hook
------------
Besides pub/sub fan-out the bus has one *publish hook* slot: after all
handlers of a publish have settled, the hook is called with the event
and its result becomes the return value of ``publish()``.  Only the most
recently registered hook is live and ``shutdown()`` resets it to a no-op.
This lets exactly one collaborator answer a publication synchronously
(request/response style) while everyone else only observes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from domain_bus.core.context import context_for, run_with_context
from domain_bus.domain.events import DomainEvent

from .patterns import Matcher, compile_pattern
from .protocol import DomainEventHandler, Unsubscribe

logger = logging.getLogger(__name__)

PublishHook = Callable[[DomainEvent[Any]], Any | Awaitable[Any]]


def _noop_hook(event: DomainEvent[Any]) -> None:
    return None


@dataclass(frozen=True)
class Subscription:
    pattern: str
    matcher: Matcher
    handler: DomainEventHandler


@dataclass(frozen=True)
class HandlerOutcome:
    """Result of one handler invocation for one publish."""

    pattern: str
    ok: bool
    error: BaseException | None = None


class InMemoryEventBus:
    """Deterministic, in-process event bus.

    Parameters
    ----------
    on_handler_error
        Optional callback ``(pattern, event, exc)`` invoked for every
        failed handler.  Useful for external metrics.
    """

    def __init__(
        self,
        *,
        on_handler_error: Callable[
            [str, DomainEvent[Any], BaseException], None
        ] | None = None,
    ) -> None:
        # Replaced wholesale on every change so in-flight publishes keep
        # iterating the snapshot they started with.
        self._subscriptions: tuple[Subscription, ...] = ()
        self._publish_hook: PublishHook = _noop_hook
        self._on_handler_error = on_handler_error

        # Observability
        self._error_counts: dict[str, int] = defaultdict(int)
        self._messages_processed: int = 0

    # -- Core API ----------------------------------------------------------

    async def publish(self, event: DomainEvent[Any]) -> Any:
        """Deliver *event* to every matching handler, then run the hook.

        Returns the publish hook's result, or ``None`` when no
        subscription matched (the hook is not called in that case).
        """
        matching = [s for s in self._subscriptions if s.matcher(event.type)]
        if not matching:
            return None

        outcomes = await asyncio.gather(
            *(self._invoke(sub, event) for sub in matching)
        )
        self._record(event, outcomes)

        result = self._publish_hook(event)
        if inspect.isawaitable(result):
            result = await result
        return result

    def subscribe(self, pattern: str, handler: DomainEventHandler) -> Unsubscribe:
        """Register *handler* for event types matching *pattern*."""
        subscription = Subscription(
            pattern=pattern,
            matcher=compile_pattern(pattern),
            handler=handler,
        )
        self._subscriptions = (*self._subscriptions, subscription)

        def unsubscribe() -> None:
            self._subscriptions = tuple(
                s for s in self._subscriptions if s is not subscription
            )

        return unsubscribe

    def set_publish_hook(self, hook: PublishHook) -> None:
        """Install *hook* as the publish hook, replacing the previous one."""
        self._publish_hook = hook

    async def shutdown(self) -> None:
        """Drop all subscriptions and reset the publish hook."""
        self._subscriptions = ()
        self._publish_hook = _noop_hook

    # -- Internals ---------------------------------------------------------

    async def _invoke(
        self, sub: Subscription, event: DomainEvent[Any]
    ) -> HandlerOutcome:
        ctx = context_for(event.metadata.correlation_id)
        try:
            await run_with_context(ctx, sub.handler, event)
        except Exception as exc:
            return HandlerOutcome(pattern=sub.pattern, ok=False, error=exc)
        return HandlerOutcome(pattern=sub.pattern, ok=True)

    def _record(
        self, event: DomainEvent[Any], outcomes: list[HandlerOutcome]
    ) -> None:
        failures = [o for o in outcomes if not o.ok]
        self._messages_processed += len(outcomes) - len(failures)
        if not failures:
            return

        for outcome in failures:
            self._error_counts[outcome.pattern] += 1
            if self._on_handler_error is not None and outcome.error is not None:
                try:
                    self._on_handler_error(outcome.pattern, event, outcome.error)
                except Exception:
                    logger.warning(
                        "on_handler_error callback failed", exc_info=True,
                    )

        logger.warning(
            "%d of %d handlers failed for event type=%s id=%s: %s",
            len(failures),
            len(outcomes),
            event.type,
            event.id,
            "; ".join(f"{o.pattern}: {o.error!r}" for o in failures),
        )

    # -- Observability -----------------------------------------------------

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def get_error_counts(self) -> dict[str, int]:
        """Return per-pattern handler error counts."""
        return dict(self._error_counts)

    @property
    def messages_processed(self) -> int:
        """Total successful handler invocations."""
        return self._messages_processed


async def create_memory_event_bus(**kwargs: Any) -> InMemoryEventBus:
    """Async factory matching ``create_rabbitmq_event_bus``."""
    return InMemoryEventBus(**kwargs)
