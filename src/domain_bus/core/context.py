"""Request-scoped correlation context.

Each unit of work (an inbound request, an event handler invocation) runs
with its own ``CorrelationContext``.  The context lives in a
``ContextVar`` so it follows the asyncio task that set it and is copied
into tasks spawned from there.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from .ids import new_id


@dataclass(frozen=True)
class CorrelationContext:
    """Correlation data for the current unit of work."""

    correlation_id: str
    trace_id: str | None = None


_current: ContextVar[CorrelationContext | None] = ContextVar(
    "correlation_context", default=None
)


def get_context() -> CorrelationContext | None:
    """Return the active context, or ``None`` outside any scope."""
    return _current.get()


def get_correlation_id() -> str | None:
    """Return the active correlation ID, or ``None`` outside any scope."""
    ctx = _current.get()
    return ctx.correlation_id if ctx is not None else None


def context_for(correlation_id: str | None) -> CorrelationContext:
    """Build a context for *correlation_id*, generating one when missing."""
    return CorrelationContext(correlation_id=correlation_id or new_id())


@contextmanager
def correlation_scope(ctx: CorrelationContext) -> Iterator[CorrelationContext]:
    """Make *ctx* the active context for the duration of the block."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


async def run_with_context(
    ctx: CorrelationContext,
    fn: Callable[..., Any],
    *args: Any,
) -> Any:
    """Call *fn* with *ctx* active, awaiting the result if it is awaitable."""
    with correlation_scope(ctx):
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result
