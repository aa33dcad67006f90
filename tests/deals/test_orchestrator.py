"""
Tests for deal automation.

This module drives the full deal lifecycle against paper collaborators:
- Deal creation, validation and rate bounds
- Execution outcomes (fill, no counterparty, rejection, timeout, failure)
- Cancellation, including a cancellation racing an execution
- Background auto-execution and statistics
"""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from structlog.testing import capture_logs

from ratedesk.common.config import Config, DealSettings, SpreadDefaults
from ratedesk.common.errors import (
    DealNotFound,
    GatewayUnavailable,
    InvalidDealRequest,
    InvalidDealState,
    InvalidPartner,
    PricingUnavailable,
    RateBelowMinimum,
    RateExceedsMaximum,
    StoreUnavailable,
)
from ratedesk.common.models import (
    DealRequest,
    DealSide,
    DealStatus,
    FixedSpreadConfig,
    PartnerInfo,
    utcnow,
)
from ratedesk.common.provider_base import NotificationChannel
from ratedesk.common.sql_store import SqlStore
from ratedesk.common.store import InMemoryStore
from ratedesk.deals.notifications import NotificationService
from ratedesk.deals.orchestrator import (
    CANCELLED_DURING_EXECUTION_ERROR,
    NO_COUNTERPARTY_ERROR,
    DealAutomationService,
    compute_slippage_percent,
)
from ratedesk.pricing.fixed_spread import FixedSpreadPricingEngine
from ratedesk.pricing.spread_config import SpreadConfigStore
from ratedesk.providers.paper import (
    ConfigPartnerDirectory,
    PaperOrderGateway,
    RatingCounterpartyMatcher,
    StaticP2PIndicativeFeed,
    StaticSpotPriceFeed,
)

TRUSTED = {"ID": "cp_trusted", "NAME": "TrustedTrader", "RATING": "4.8", "COMPLETION_RATE": "98.5"}
UNRATED = {"ID": "cp_new", "NAME": "NewTrader", "RATING": "3.1", "COMPLETION_RATE": "70"}


class RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self):
        self.events = []

    async def send(self, event, payload):
        self.events.append((event, payload))


def make_request(**overrides) -> DealRequest:
    values = dict(
        partner_id="p1",
        symbol="EUR/USD",
        side=DealSide.BUY,
        amount=Decimal("1000"),
    )
    values.update(overrides)
    return DealRequest(**values)


class DealServiceTestBase:
    """Wires a deal service to paper collaborators with a 2% default spread."""

    def build(self, gateway=None, counterparties=(TRUSTED,), settings=None, store=None):
        self.config = Config(
            symbols=["EUR/USD"],
            counterparties=list(counterparties),
            paper_spot_rates={"EUR/USD": Decimal("1.0850")},
            paper_p2p_rates={"EUR/USD": Decimal("1.0870")},
        )
        self.store = store if store is not None else InMemoryStore()
        self.spread_configs = SpreadConfigStore(self.store)
        self.pricing = FixedSpreadPricingEngine(
            self.store,
            self.spread_configs,
            default_spread=SpreadDefaults(
                base_spread_percent=Decimal("2.0"),
                min_spread_percent=Decimal("0.5"),
                max_spread_percent=Decimal("3.0"),
            ),
            spot_feed=StaticSpotPriceFeed(self.config),
            p2p_feed=StaticP2PIndicativeFeed(self.config),
        )
        self.partners = ConfigPartnerDirectory(
            [
                PartnerInfo(id="p1", name="Partner One"),
                PartnerInfo(id="p_off", name="Dormant", is_active=False),
            ]
        )
        self.matcher = RatingCounterpartyMatcher(self.config)
        self.gateway = gateway or PaperOrderGateway()
        self.recorder = RecordingChannel()
        self.notifications = NotificationService([self.recorder])
        self.service = DealAutomationService(
            self.store,
            self.pricing,
            self.partners,
            self.matcher,
            self.gateway,
            notifications=self.notifications,
            settings=settings
            or DealSettings(max_execution_seconds=5.0, poll_interval_seconds=0.01),
        )
        return self.service

    async def events(self):
        await self.notifications.drain()
        return [event for event, _ in self.recorder.events]


class TestCreateDeal(DealServiceTestBase):
    """Test deal creation."""

    def setup_method(self):
        self.build()

    @pytest.mark.asyncio
    async def test_create_pending_deal(self):
        deal = await self.service.create_deal(make_request(notes="Quarter-end hedge"))

        assert deal.status == DealStatus.PENDING
        assert deal.rate == Decimal("1.1067")
        assert deal.total_value == Decimal("1106.7")
        assert deal.metadata.spot_rate == Decimal("1.0850")
        assert deal.metadata.spread == Decimal("0.0217")
        assert deal.metadata.p2p_rate == Decimal("1.0870")
        assert deal.metadata.source == "FIXED_SPREAD"
        assert deal.notes.endswith(": Quarter-end hedge")
        assert (await self.service.get_deal(deal.id)).id == deal.id
        assert await self.events() == ["DEAL_CREATED"]

    @pytest.mark.asyncio
    async def test_rate_above_maximum(self):
        with pytest.raises(RateExceedsMaximum) as exc_info:
            await self.service.create_deal(make_request(max_rate=Decimal("1.05")))

        assert exc_info.value.rate == Decimal("1.1067")
        assert await self.store.list_deals() == []

    @pytest.mark.asyncio
    async def test_rate_below_minimum(self):
        with pytest.raises(RateBelowMinimum):
            await self.service.create_deal(make_request(min_rate=Decimal("1.2")))

    @pytest.mark.asyncio
    async def test_rate_within_bounds(self):
        deal = await self.service.create_deal(
            make_request(min_rate=Decimal("1.10"), max_rate=Decimal("1.11"))
        )
        assert deal.status == DealStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount": Decimal("0")},
            {"amount": Decimal("-5")},
            {"max_rate": Decimal("0")},
            {"min_rate": Decimal("1.2"), "max_rate": Decimal("1.1")},
            {"symbol": " "},
        ],
    )
    async def test_invalid_request(self, overrides):
        with pytest.raises(InvalidDealRequest):
            await self.service.create_deal(make_request(**overrides))

    @pytest.mark.asyncio
    async def test_unknown_or_inactive_partner(self):
        with pytest.raises(InvalidPartner):
            await self.service.create_deal(make_request(partner_id="ghost"))
        with pytest.raises(InvalidPartner):
            await self.service.create_deal(make_request(partner_id="p_off"))

    @pytest.mark.asyncio
    async def test_pricing_unavailable(self):
        with pytest.raises(PricingUnavailable):
            await self.service.create_deal(make_request(symbol="USDT/RUB"))

    @pytest.mark.asyncio
    async def test_inactive_spread_config_surfaces_as_pricing_unavailable(self):
        now = utcnow()
        await self.spread_configs.save_fixed_spread_config(
            FixedSpreadConfig(
                symbol="EUR/USD",
                base_spread_percent=Decimal("1"),
                min_spread_percent=Decimal("0.5"),
                max_spread_percent=Decimal("2"),
                valid_from=now - timedelta(days=2),
                valid_to=now - timedelta(days=1),
            )
        )

        with pytest.raises(PricingUnavailable) as exc_info:
            await self.service.create_deal(make_request())

        assert exc_info.value.details["cause"] == "SPREAD_CONFIG_INACTIVE"


class TestExecuteDeal(DealServiceTestBase):
    """Test deal execution outcomes."""

    async def create(self):
        return await self.service.create_deal(make_request())

    @pytest.mark.asyncio
    async def test_successful_execution(self):
        self.build()
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert result.success
        assert result.executed_rate == Decimal("1.1067")
        assert result.executed_amount == Decimal("1000")
        assert result.p2p_order_id.startswith("P2P_")
        assert result.metadata.counterparty_found
        assert result.metadata.slippage_percent == 0
        assert result.warnings == []

        stored = await self.service.get_deal(deal.id)
        assert stored.status == DealStatus.COMPLETED
        assert stored.executed_at is not None
        assert stored.closed_at is not None
        assert stored.counterparty.id == "cp_trusted"
        assert stored.p2p_order_id == result.p2p_order_id
        assert "placed with counterparty TrustedTrader" in stored.notes
        assert "Executed 1000 at 1.1067" in stored.notes
        assert await self.events() == ["DEAL_CREATED", "DEAL_EXECUTED"]

    @pytest.mark.asyncio
    async def test_no_counterparty(self):
        self.build(counterparties=(UNRATED,))
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == NO_COUNTERPARTY_ERROR
        assert not result.metadata.counterparty_found
        stored = await self.service.get_deal(deal.id)
        assert stored.status == DealStatus.FAILED
        assert stored.closed_at is not None
        assert stored.notes.endswith(f"Execution failed: {NO_COUNTERPARTY_ERROR}")
        assert await self.events() == ["DEAL_CREATED", "DEAL_EXECUTED"]

    @pytest.mark.asyncio
    async def test_order_rejected(self):
        self.build(gateway=PaperOrderGateway(reject_reason="Insufficient balance"))
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == "P2P order creation failed: Insufficient balance"
        assert result.metadata.counterparty_found
        assert (await self.service.get_deal(deal.id)).status == DealStatus.FAILED

    @pytest.mark.asyncio
    async def test_fill_failed(self):
        self.build(gateway=PaperOrderGateway(fail_reason="Counterparty disputed"))
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == "P2P order failed: Counterparty disputed"
        assert result.p2p_order_id is not None
        assert (await self.service.get_deal(deal.id)).status == DealStatus.FAILED

    @pytest.mark.asyncio
    async def test_timeout_cancels_upstream_order(self):
        gateway = PaperOrderGateway(fills_after_polls=None)
        self.build(
            gateway=gateway,
            settings=DealSettings(max_execution_seconds=0.05, poll_interval_seconds=0.01),
        )
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == "Execution timed out after 0.05 seconds"
        assert gateway.cancelled_orders == [result.p2p_order_id]
        assert (await self.service.get_deal(deal.id)).status == DealStatus.FAILED

    @pytest.mark.asyncio
    async def test_slippage_above_maximum_is_a_warning(self):
        self.build(gateway=PaperOrderGateway(fill_rate_offset_percent=Decimal("3")))
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert result.success
        assert result.metadata.slippage_percent == Decimal("3")
        assert result.warnings == ["Slippage 3.0000% exceeds maximum 2.0%"]
        assert (await self.service.get_deal(deal.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_gateway_unavailable(self):
        self.build()
        self.gateway.place_order = AsyncMock(side_effect=GatewayUnavailable("venue down"))
        deal = await self.create()

        result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == "venue down"
        assert result.metadata.counterparty_found
        assert (await self.service.get_deal(deal.id)).status == DealStatus.FAILED

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed_and_propagates(self):
        self.build()
        self.matcher.find_counterparty = AsyncMock(side_effect=RuntimeError("boom"))
        deal = await self.create()

        with pytest.raises(RuntimeError, match="boom"):
            await self.service.execute_deal(deal.id)

        stored = await self.service.get_deal(deal.id)
        assert stored.status == DealStatus.FAILED
        assert stored.notes.endswith("Execution failed: Unexpected error: boom")

    def fail_failed_writes(self):
        """Make the store refuse every write that would record FAILED."""
        original = self.store.update_deal_if_status

        async def update_deal_if_status(deal_id, expected, **changes):
            if changes.get("status") == DealStatus.FAILED:
                raise StoreUnavailable("database locked")
            return await original(deal_id, expected, **changes)

        self.store.update_deal_if_status = update_deal_if_status

    @pytest.mark.asyncio
    async def test_store_failure_while_recording_no_counterparty(self):
        with capture_logs() as logs:
            self.build(counterparties=(UNRATED,))
            deal = await self.create()
            self.fail_failed_writes()

            result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == f"{NO_COUNTERPARTY_ERROR} (failure not recorded: database locked)"
        assert (await self.service.get_deal(deal.id)).status == DealStatus.EXECUTING
        errors = [entry for entry in logs if entry["log_level"] == "error"]
        assert len(errors) == 1
        assert errors[0]["deal_id"] == deal.id
        assert errors[0]["symbol"] == "EUR/USD"
        assert errors[0]["partner_id"] == "p1"

    @pytest.mark.asyncio
    async def test_store_failure_while_recording_gateway_error(self):
        with capture_logs() as logs:
            self.build()
            self.gateway.place_order = AsyncMock(side_effect=GatewayUnavailable("venue down"))
            deal = await self.create()
            self.fail_failed_writes()

            result = await self.service.execute_deal(deal.id)

        assert not result.success
        assert result.error == "venue down (failure not recorded: database locked)"
        assert any(
            entry["log_level"] == "error" and entry["deal_id"] == deal.id for entry in logs
        )

    @pytest.mark.asyncio
    async def test_terminal_deal_cannot_be_executed_again(self):
        self.build()
        deal = await self.create()
        await self.service.execute_deal(deal.id)

        with pytest.raises(InvalidDealState):
            await self.service.execute_deal(deal.id)

        assert (await self.service.get_deal(deal.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_deal(self):
        self.build()
        with pytest.raises(DealNotFound):
            await self.service.execute_deal("DEAL_missing")


class TestCancelDeal(DealServiceTestBase):
    """Test deal cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_with_reason(self):
        self.build()
        deal = await self.service.create_deal(make_request())

        assert await self.service.cancel_deal(deal.id, "Partner request") is True

        stored = await self.service.get_deal(deal.id)
        assert stored.status == DealStatus.CANCELLED
        assert stored.closed_at is not None
        assert stored.notes.split("\n")[-1].endswith(": Cancelled: Partner request")
        assert await self.events() == ["DEAL_CREATED", "DEAL_CANCELLED"]

    @pytest.mark.asyncio
    async def test_cancel_without_reason_adds_no_note(self):
        self.build()
        deal = await self.service.create_deal(make_request())

        await self.service.cancel_deal(deal.id)

        assert (await self.service.get_deal(deal.id)).notes is None

    @pytest.mark.asyncio
    async def test_cancel_terminal_deal(self):
        self.build()
        deal = await self.service.create_deal(make_request())
        await self.service.cancel_deal(deal.id, "Partner request")
        notes = (await self.service.get_deal(deal.id)).notes

        with pytest.raises(InvalidDealState):
            await self.service.cancel_deal(deal.id, "Second request")

        assert (await self.service.get_deal(deal.id)).notes == notes

        completed = await self.service.create_deal(make_request())
        await self.service.execute_deal(completed.id)
        with pytest.raises(InvalidDealState):
            await self.service.cancel_deal(completed.id)
        assert (await self.service.get_deal(completed.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown_deal(self):
        self.build()
        with pytest.raises(DealNotFound):
            await self.service.cancel_deal("DEAL_missing")

    @pytest.mark.asyncio
    async def test_cancel_during_execution(self):
        """A cancellation racing an execution wins and the execution reports it."""
        gateway = PaperOrderGateway(fills_after_polls=None)
        self.build(gateway=gateway)
        deal = await self.service.create_deal(make_request())

        execution = asyncio.create_task(self.service.execute_deal(deal.id))
        for _ in range(200):
            current = await self.store.get_deal(deal.id)
            if current.p2p_order_id:
                break
            await asyncio.sleep(0.01)

        await self.service.cancel_deal(deal.id, "Partner request")
        result = await execution

        assert not result.success
        assert result.error == CANCELLED_DURING_EXECUTION_ERROR
        assert gateway.cancelled_orders[0] == current.p2p_order_id
        assert (await self.service.get_deal(deal.id)).status == DealStatus.CANCELLED


class TestAutomationAndStats(DealServiceTestBase):
    """Test auto-execution, listings and statistics."""

    @pytest.mark.asyncio
    async def test_auto_execute_runs_in_background(self):
        self.build()

        deal = await self.service.create_deal(make_request(auto_execute=True))

        assert deal.status == DealStatus.APPROVED
        assert self.service.pending_executions == 1
        await self.service.shutdown()
        assert self.service.pending_executions == 0
        assert (await self.service.get_deal(deal.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_partner_listing_and_stats(self):
        self.build()
        completed = await self.service.create_deal(make_request())
        await self.service.execute_deal(completed.id)
        cancelled = await self.service.create_deal(make_request())
        await self.service.cancel_deal(cancelled.id)

        deals = await self.service.get_deals_for_partner("p1")
        stats = await self.service.get_deal_stats("p1")

        assert {d.id for d in deals} == {completed.id, cancelled.id}
        assert stats.total_deals == 2
        assert stats.completed_deals == 1
        assert stats.cancelled_deals == 1
        assert stats.success_rate == 50.0
        assert stats.total_profit == Decimal("21.7")
        assert (await self.service.get_deal_stats("p2")).total_deals == 0

    def test_list_statuses(self):
        statuses = DealAutomationService.list_statuses()

        assert {"status": "COMPLETED", "is_terminal": True} in statuses
        assert {"status": "PENDING", "is_terminal": False} in statuses
        assert len(statuses) == len(DealStatus)

    def test_compute_slippage_percent(self):
        assert compute_slippage_percent(Decimal("100"), Decimal("98")) == Decimal("2")
        assert compute_slippage_percent(Decimal("100"), Decimal("100")) == 0


@pytest.fixture(params=["memory", "sqlite-file", "sqlite-memory"])
def deal_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    if request.param == "sqlite-file":
        store = SqlStore(f"sqlite:///{tmp_path / 'deals.db'}")
    else:
        store = SqlStore("sqlite://")
    store.init_db()
    yield store
    store.engine.dispose()


class TestConcurrentExecution(DealServiceTestBase):
    """Concurrent executions against every store backend."""

    @pytest.mark.asyncio
    async def test_same_deal_executes_once(self, deal_store):
        self.build(store=deal_store)
        deal = await self.service.create_deal(make_request())

        outcomes = await asyncio.gather(
            self.service.execute_deal(deal.id),
            self.service.execute_deal(deal.id),
            return_exceptions=True,
        )

        conflicts = [o for o in outcomes if isinstance(o, InvalidDealState)]
        results = [o for o in outcomes if not isinstance(o, BaseException)]
        assert len(conflicts) == 1
        assert len(results) == 1
        assert results[0].success
        assert len(self.gateway.orders) == 1
        assert (await self.service.get_deal(deal.id)).status == DealStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_many_deals_execute_concurrently(self, deal_store):
        self.build(store=deal_store)
        deals = [await self.service.create_deal(make_request()) for _ in range(20)]

        outcomes = await asyncio.gather(
            *(self.service.execute_deal(deal.id) for deal in deals),
            return_exceptions=True,
        )

        assert [o for o in outcomes if isinstance(o, BaseException)] == []
        assert all(result.success for result in outcomes)
        for deal in deals:
            assert (await self.service.get_deal(deal.id)).status == DealStatus.COMPLETED
