"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.

Environment variables use the ``EVENTBUS_`` prefix with ``__`` as the
nesting delimiter, e.g. ``EVENTBUS_RABBITMQ__URL`` or
``EVENTBUS_RABBITMQ__RECONNECT__MAX_ATTEMPTS``.  A bare ``RABBITMQ_URL``
is honoured when no broker section is configured.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

from .errors import BrokerNotConfiguredError


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class ReconnectConfig(BaseModel):
    enabled: bool = True
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_attempts: int = Field(default=0, ge=0)  # 0 = unlimited
    publish_buffer_size: int = Field(default=1000, ge=0)


class RabbitMQConfig(BaseModel):
    url: str
    exchange: str = "events"
    dead_letter_exchange: str = "dlx"
    prefetch: int = Field(default=10, ge=0)
    publisher_confirms: bool = True
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level event bus settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    provider: Literal["memory", "rabbitmq"] = "memory"
    source: str = "monolith"  # Default source tag for events produced here
    dual_write: bool = False  # Publish to both transports, consume from the broker

    rabbitmq: RabbitMQConfig | None = None
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "EVENTBUS_", "env_nested_delimiter": "__"}

    @model_validator(mode="after")
    def _fallback_rabbitmq_url(self) -> Settings:
        if self.rabbitmq is None:
            url = os.environ.get("RABBITMQ_URL", "")
            if url:
                self.rabbitmq = RabbitMQConfig(url=url)
        return self

    def require_rabbitmq(self) -> RabbitMQConfig:
        """Return the broker config or raise when no URL is available."""
        if self.rabbitmq is None or not self.rabbitmq.url:
            raise BrokerNotConfiguredError(
                "RabbitMQ bus requires rabbitmq.url (or RABBITMQ_URL) to be set."
            )
        return self.rabbitmq


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        data.update(overrides)

    return Settings(**data)
