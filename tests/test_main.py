"""
Tests for the service runner and command line interface.
"""

import argparse
import asyncio
import json
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from structlog.testing import capture_logs

from ratedesk.common.config import Config, NotificationSettings
from ratedesk.common.errors import PricingUnavailable
from ratedesk.common.models import DealStatus, utcnow
from ratedesk.common.sql_store import SqlStore
from ratedesk.common.store import InMemoryStore
from ratedesk.deals.notifications import LoggingNotificationChannel, WebhookNotificationChannel
from ratedesk.main import (
    RateDeskService,
    build_notification_channels,
    build_parser,
    create_store,
    main_async,
    parse_datetime,
    parse_decimal,
    run_command,
    setup_logging,
)


def make_config(**overrides) -> Config:
    values = dict(
        symbols=["EUR/USD", "USDT/RUB"],
        paper_spot_rates={"EUR/USD": Decimal("1.0850"), "USDT/RUB": Decimal("92.10")},
        paper_p2p_rates={"EUR/USD": Decimal("1.0870"), "USDT/RUB": Decimal("92.50")},
        partners={"p1": {"NAME": "Partner One"}},
        counterparties=[{"ID": "cp1", "NAME": "Trader", "RATING": "4.8", "COMPLETION_RATE": "98"}],
        log_level="ERROR",
    )
    values.update(overrides)
    return Config(**values)


def printed_json(text: str):
    """Decode the indented JSON document from captured output, skipping log lines."""
    match = re.search(r"^\{$", text, re.MULTILINE)
    assert match, text
    return json.JSONDecoder().raw_decode(text[match.start():])[0]


class TestRateDeskService:
    """Test service wiring and background work."""

    def setup_method(self):
        """Set up test fixtures."""
        self.config = make_config()
        self.service = RateDeskService(self.config)

    def test_service_initialization(self):
        """Test service initializes correctly."""
        assert isinstance(self.service.store, InMemoryStore)
        assert self.service.counterparty_matcher is not self.service.order_gateway
        assert self.service.deals.pricing_engine is self.service.pricing_engine
        assert not self.service.running
        assert len(self.service.tasks) == 0

    def test_injected_store(self):
        store = InMemoryStore()
        service = RateDeskService(self.config, store=store)

        assert service.store is store
        assert service.pricing_engine.store is store

    @pytest.mark.asyncio
    async def test_collect_rate_deltas(self):
        recorded = await self.service.collect_rate_deltas()

        assert recorded == 2
        assert self.service.collected_deltas == 2
        deltas = await self.service.store.get_rate_deltas("EUR/USD", utcnow() - timedelta(hours=1))
        assert len(deltas) == 1
        assert deltas[0].spot_rate == Decimal("1.0850")
        assert deltas[0].p2p_rate == Decimal("1.0870")

    @pytest.mark.asyncio
    async def test_collect_rate_deltas_counts_failures(self):
        """A symbol without a P2P rate is skipped and counted as an error."""
        service = RateDeskService(make_config(paper_p2p_rates={"EUR/USD": Decimal("1.0870")}))

        recorded = await service.collect_rate_deltas()

        assert recorded == 1
        assert service.error_count == 1

    @pytest.mark.asyncio
    async def test_run_volatility_analysis(self):
        results = await self.service.run_volatility_analysis()

        assert set(results) == {"EUR/USD", "USDT/RUB"}
        status = self.service.get_status()
        assert status["latest_risk_levels"] == {"EUR/USD": "LOW", "USDT/RUB": "LOW"}

    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self):
        """Test service startup and graceful shutdown."""
        start_task = asyncio.create_task(self.service.start())

        await asyncio.sleep(0.1)

        assert self.service.running
        assert len(self.service.tasks) == 3
        # The collector runs once immediately on startup
        assert self.service.collected_deltas == 2

        self.service.shutdown_event.set()
        await start_task

        assert not self.service.running
        assert all(task.done() for task in self.service.tasks)

    def test_health_check(self):
        """Test health check logic."""
        assert self.service._check_health()

        self.service.error_count = 200
        assert not self.service._check_health()

        self.service.error_count = 0
        assert self.service._check_health()

        self.service.last_heartbeat = utcnow() - timedelta(minutes=10)
        assert not self.service._check_health()

    def test_get_status(self):
        """Test status reporting."""
        status = self.service.get_status()

        required_keys = [
            "running",
            "healthy",
            "last_heartbeat",
            "error_count",
            "collected_deltas",
            "active_tasks",
            "pending_executions",
            "symbols",
            "venue",
            "latest_risk_levels",
        ]
        for key in required_keys:
            assert key in status

        assert status["symbols"] == ["EUR/USD", "USDT/RUB"]
        assert status["venue"] == "paper"
        assert status["pending_executions"] == 0


class TestWiringHelpers:
    """Test store and notification channel construction."""

    def test_create_memory_store(self):
        assert isinstance(create_store("memory://"), InMemoryStore)

    @pytest.mark.asyncio
    async def test_create_sql_store(self, tmp_path):
        store = create_store(f"sqlite:///{tmp_path / 'ratedesk.db'}")
        try:
            assert isinstance(store, SqlStore)
            assert await store.list_deals() == []
        finally:
            await store.close()

    def test_notification_channels(self):
        channels = build_notification_channels(make_config())
        assert len(channels) == 1
        assert isinstance(channels[0], LoggingNotificationChannel)

        config = make_config(
            notifications=NotificationSettings(webhook_url="https://hooks.example.com/deals")
        )
        channels = build_notification_channels(config)
        assert len(channels) == 2
        assert isinstance(channels[1], WebhookNotificationChannel)


class TestArgumentParsing:
    """Test command line parsing."""

    def test_parse_decimal(self):
        assert parse_decimal("1000.50") == Decimal("1000.50")

        with pytest.raises(argparse.ArgumentTypeError, match="Invalid decimal"):
            parse_decimal("lots")
        with pytest.raises(argparse.ArgumentTypeError, match="finite"):
            parse_decimal("NaN")

    def test_parse_datetime(self):
        assert parse_datetime("2026-01-15T12:00:00") == datetime(
            2026, 1, 15, 12, tzinfo=timezone.utc
        )
        assert parse_datetime("2026-01-15T12:00:00+03:00").utcoffset() == timedelta(hours=3)

        with pytest.raises(argparse.ArgumentTypeError):
            parse_datetime("yesterday")

    def test_deal_create_arguments(self):
        args = build_parser().parse_args(
            [
                "--config",
                "custom.yaml",
                "deal-create",
                "--partner",
                "p1",
                "--symbol",
                "eur/usd",
                "--side",
                "BUY",
                "--amount",
                "1000",
                "--max-rate",
                "1.2",
                "--auto-execute",
            ]
        )

        assert args.config == "custom.yaml"
        assert args.command == "deal-create"
        assert args.amount == Decimal("1000")
        assert args.max_rate == Decimal("1.2")
        assert args.min_rate is None
        assert args.auto_execute

    def test_stats_arguments(self):
        args = build_parser().parse_args(["stats", "--partner", "p1", "--from", "2026-01-01"])

        assert args.partner == "p1"
        assert args.from_date == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert args.to_date is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_invalid_side(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(
                ["deal-create", "--partner", "p1", "--symbol", "EUR/USD", "--side", "HOLD", "--amount", "1"]
            )


class TestRunCommand:
    """Test one-shot subcommands against a paper service."""

    def setup_method(self):
        self.service = RateDeskService(make_config())
        self.parser = build_parser()

    @pytest.mark.asyncio
    async def test_quote(self):
        output = await run_command(self.service, self.parser.parse_args(["quote", "eur/usd"]))

        assert output["symbol"] == "EUR/USD"
        assert output["spot_rate"] == "1.0850"
        assert output["metadata"]["spread_config_id"] == "default"
        json.dumps(output)

    @pytest.mark.asyncio
    async def test_volatility(self):
        output = await run_command(
            self.service, self.parser.parse_args(["volatility", "EUR/USD", "--window", "6"])
        )

        assert output["symbol"] == "EUR/USD"
        assert output["current_volatility"]["risk_level"] == "LOW"

    @pytest.mark.asyncio
    async def test_deal_lifecycle(self):
        args = self.parser.parse_args(
            ["deal-create", "--partner", "p1", "--symbol", "EUR/USD", "--side", "BUY", "--amount", "1000"]
        )
        created = await run_command(self.service, args)

        assert created["status"] == DealStatus.PENDING.value
        assert created["partner_id"] == "p1"

        fetched = await run_command(self.service, self.parser.parse_args(["deal-get", created["id"]]))
        assert fetched["id"] == created["id"]

        cancelled = await run_command(
            self.service,
            self.parser.parse_args(["deal-cancel", created["id"], "--reason", "Partner request"]),
        )
        assert cancelled == {"deal_id": created["id"], "cancelled": True}

        stats = await run_command(self.service, self.parser.parse_args(["stats", "--partner", "p1"]))
        assert stats["total_deals"] == 1
        assert stats["cancelled_deals"] == 1

    @pytest.mark.asyncio
    async def test_deal_create_auto_execute_waits_for_completion(self):
        args = self.parser.parse_args(
            [
                "deal-create",
                "--partner",
                "p1",
                "--symbol",
                "EUR/USD",
                "--side",
                "SELL",
                "--amount",
                "500",
                "--auto-execute",
            ]
        )

        output = await run_command(self.service, args)

        assert output["status"] == DealStatus.COMPLETED.value
        assert output["counterparty"]["id"] == "cp1"


class TestMainAsync:
    """Test exit codes and output of one-shot commands."""

    @pytest.mark.asyncio
    async def test_success_prints_json(self, capsys):
        args = build_parser().parse_args(["quote", "EUR/USD"])

        with patch("ratedesk.main.setup_logging"):
            exit_code = await main_async(make_config(), args)

        assert exit_code == 0
        output = printed_json(capsys.readouterr().out)
        assert output["symbol"] == "EUR/USD"

    @pytest.mark.asyncio
    async def test_domain_error_returns_2(self, capsys):
        args = build_parser().parse_args(["deal-get", "DEAL_missing"])

        with patch("ratedesk.main.setup_logging"):
            exit_code = await main_async(make_config(), args)

        assert exit_code == 2
        error = printed_json(capsys.readouterr().err)["error"]
        assert error["code"] == "DEAL_NOT_FOUND"
        assert error["details"] == {"deal_id": "DEAL_missing"}

    @pytest.mark.asyncio
    async def test_stored_deal_command_warns_on_memory_store(self):
        args = build_parser().parse_args(["deal-get", "DEAL_missing"])

        with patch("ratedesk.main.setup_logging"), capture_logs() as logs:
            exit_code = await main_async(make_config(), args)

        assert exit_code == 2
        warnings = [e for e in logs if e["log_level"] == "warning"]
        assert len(warnings) == 1
        assert warnings[0]["command"] == "deal-get"

    @pytest.mark.asyncio
    async def test_persistent_store_does_not_warn(self, tmp_path):
        args = build_parser().parse_args(["deal-get", "DEAL_missing"])
        config = make_config(store_url=f"sqlite:///{tmp_path / 'deals.db'}")

        with patch("ratedesk.main.setup_logging"), capture_logs() as logs:
            exit_code = await main_async(config, args)

        assert exit_code == 2
        assert not [e for e in logs if e["log_level"] == "warning"]

    @pytest.mark.asyncio
    async def test_service_closed_after_command(self):
        args = build_parser().parse_args(["quote", "EUR/USD"])

        with patch.object(RateDeskService, "close", new_callable=AsyncMock) as close:
            with patch(
                "ratedesk.main.run_command", AsyncMock(side_effect=PricingUnavailable("feed down"))
            ):
                exit_code = await main_async(make_config(), args)

        assert exit_code == 2
        close.assert_awaited_once()

    def test_setup_logging(self):
        """Test logging configuration setup."""
        # Should not raise an exception
        setup_logging(make_config(log_format="json", log_level="DEBUG"))
        setup_logging(make_config(log_format="console"))
