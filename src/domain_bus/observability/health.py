"""Broker health check.

Opens a short-lived connection to RabbitMQ and reports whether it
succeeded and how long it took.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal

import aio_pika

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RabbitMQHealthResult:
    status: Literal["ok", "error"]
    latency_ms: float
    error: str | None = None

    @property
    def healthy(self) -> bool:
        return self.status == "ok"


async def check_rabbitmq_health(
    url: str,
    *,
    connect: Callable[[str], Awaitable[Any]] | None = None,
) -> RabbitMQHealthResult:
    """Health check for a RabbitMQ connection.  Never raises."""
    connect = connect or aio_pika.connect
    start = time.monotonic()
    try:
        connection = await connect(url)
        await connection.close()
    except Exception as e:
        latency = (time.monotonic() - start) * 1000
        logger.warning("RabbitMQ health check failed: %s", e)
        return RabbitMQHealthResult(status="error", latency_ms=latency, error=str(e))

    latency = (time.monotonic() - start) * 1000
    return RabbitMQHealthResult(status="ok", latency_ms=latency)
