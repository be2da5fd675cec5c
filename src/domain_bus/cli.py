"""CLI entry point for the event bus."""

from __future__ import annotations

import json

import click

from .core.config import load_settings


@click.group()
def main() -> None:
    """Domain event bus tools."""


@main.command()
@click.option("--url", default=None, help="Broker URL (defaults to configured URL)")
@click.option("--config", default=None, help="Config file path")
def health(url: str | None, config: str | None) -> None:
    """Check that RabbitMQ accepts connections."""
    import asyncio

    from .observability.health import check_rabbitmq_health
    from .observability.logger import setup_logging

    settings = load_settings(config)
    setup_logging(settings.observability.log_level, settings.observability.log_format)

    if url is None:
        url = settings.require_rabbitmq().url

    result = asyncio.run(check_rabbitmq_health(url))
    click.echo(json.dumps({
        "status": result.status,
        "latency_ms": round(result.latency_ms, 2),
        "error": result.error,
    }))
    if not result.healthy:
        raise SystemExit(1)


@main.command()
@click.argument("event_type")
@click.option("--payload", default="{}", help="Event payload as JSON")
@click.option("--source", default=None, help="metadata.source (defaults to settings.source)")
@click.option("--config", default=None, help="Config file path")
def publish(event_type: str, payload: str, source: str | None, config: str | None) -> None:
    """Publish one event through the configured bus."""
    import asyncio

    from .bus.bus import create_event_bus
    from .domain.events import create_domain_event
    from .observability.logger import setup_logging

    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--payload") from e

    settings = load_settings(config)
    setup_logging(settings.observability.log_level, settings.observability.log_format)

    event = create_domain_event(
        event_type, data, metadata={"source": source or settings.source},
    )

    async def _run() -> None:
        bus = await create_event_bus(settings)
        try:
            await bus.publish(event)
        finally:
            await bus.shutdown()

    asyncio.run(_run())
    click.echo(event.id)


if __name__ == "__main__":
    main()
