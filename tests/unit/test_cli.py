"""Tests for the click CLI."""

from __future__ import annotations

import uuid

from click.testing import CliRunner

from domain_bus import cli
from domain_bus.observability.health import RabbitMQHealthResult


class TestPublishCommand:
    def test_publishes_on_memory_bus(self):
        runner = CliRunner()
        result = runner.invoke(
            cli.main, ["publish", "order.placed", "--payload", '{"orderId": "o-1"}']
        )

        assert result.exit_code == 0, result.output
        uuid.UUID(result.output.strip().splitlines()[-1])

    def test_rejects_invalid_json(self):
        runner = CliRunner()
        result = runner.invoke(cli.main, ["publish", "order.placed", "--payload", "{nope"])

        assert result.exit_code != 0
        assert "not valid JSON" in result.output

    def test_rabbitmq_provider_without_url_fails(self, monkeypatch):
        monkeypatch.setenv("EVENTBUS_PROVIDER", "rabbitmq")
        runner = CliRunner()
        result = runner.invoke(cli.main, ["publish", "order.placed"])

        assert result.exit_code != 0


class TestHealthCommand:
    def test_reports_ok(self, monkeypatch):
        async def fake_check(url):
            assert url == "amqp://broker.internal"
            return RabbitMQHealthResult(status="ok", latency_ms=1.5)

        monkeypatch.setattr(
            "domain_bus.observability.health.check_rabbitmq_health", fake_check
        )
        result = CliRunner().invoke(cli.main, ["health", "--url", "amqp://broker.internal"])

        assert result.exit_code == 0, result.output
        assert '"status": "ok"' in result.output

    def test_error_exits_nonzero(self, monkeypatch):
        async def fake_check(url):
            return RabbitMQHealthResult(status="error", latency_ms=2.0, error="refused")

        monkeypatch.setattr(
            "domain_bus.observability.health.check_rabbitmq_health", fake_check
        )
        result = CliRunner().invoke(cli.main, ["health", "--url", "amqp://broker.internal"])

        assert result.exit_code == 1
        assert "refused" in result.output

    def test_falls_back_to_configured_url(self, monkeypatch):
        seen = []

        async def fake_check(url):
            seen.append(url)
            return RabbitMQHealthResult(status="ok", latency_ms=1.0)

        monkeypatch.setenv("RABBITMQ_URL", "amqp://from-env")
        monkeypatch.setattr(
            "domain_bus.observability.health.check_rabbitmq_health", fake_check
        )
        result = CliRunner().invoke(cli.main, ["health"])

        assert result.exit_code == 0, result.output
        assert seen == ["amqp://from-env"]
