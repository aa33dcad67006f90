"""
Deal automation: creation, execution, cancellation and statistics.

Deal lifecycle::

    PENDING -> APPROVED -> EXECUTING -> EXECUTED -> SETTLING -> COMPLETED

with ``FAILED`` and ``CANCELLED`` reachable from any non-terminal state.
``PENDING`` and ``APPROVED`` are the two initial states (``APPROVED`` when
auto-execution was requested). Every status change is a compare-and-set on
the store, so an execution and a cancellation racing on the same deal can
never both win, and no lock is held while waiting on the P2P venue.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from prometheus_client import Counter, Histogram

from ..common.config import DealSettings
from ..common.decimal_math import safe_div
from ..common.errors import (
    CollaboratorUnavailable,
    DealNotFound,
    InvalidDealRequest,
    InvalidDealState,
    InvalidPartner,
    PricingUnavailable,
    RateBelowMinimum,
    RateDeskError,
    RateExceedsMaximum,
)
from ..common.models import (
    EXECUTABLE_STATUSES,
    TERMINAL_STATUSES,
    Counterparty,
    Deal,
    DealExecutionMetadata,
    DealExecutionResult,
    DealMetadata,
    DealRequest,
    DealStats,
    DealStatus,
    OrderState,
    OrderStatus,
    utcnow,
)
from ..common.provider_base import CounterpartyMatcher, P2POrderGateway, PartnerDirectory
from ..common.store import RateDeskStore, format_note
from ..pricing.fixed_spread import FixedSpreadPricingEngine
from .notifications import NotificationService
from .stats import compute_deal_stats

CANCELLABLE_STATUSES = frozenset(set(DealStatus) - TERMINAL_STATUSES)

NO_COUNTERPARTY_ERROR = "No suitable counterparty found"
CANCELLED_DURING_EXECUTION_ERROR = "Deal was cancelled during execution"

deals_created_total = Counter(
    "ratedesk_deals_created_total", "Deals created", ["symbol", "side", "initial_status"]
)
deal_executions_total = Counter(
    "ratedesk_deal_executions_total", "Deal executions by outcome", ["outcome"]
)
deals_cancelled_total = Counter("ratedesk_deals_cancelled_total", "Deals cancelled")
deal_execution_seconds = Histogram(
    "ratedesk_deal_execution_seconds", "Time spent executing deals"
)


def compute_slippage_percent(expected_rate: Decimal, executed_rate: Decimal) -> Decimal:
    """Absolute deviation of the executed rate from the deal rate, in percent."""
    return abs(safe_div(executed_rate - expected_rate, expected_rate) * 100)


class DealAutomationService:
    """
    Orchestrates the deal lifecycle against the P2P venue.

    Args:
        store: Persistent store (deals and compare-and-set transitions)
        pricing_engine: Source of the current rate for new deals
        partner_directory: Partner validation
        counterparty_matcher: Finds a counterparty for a deal
        order_gateway: Places, monitors and cancels P2P orders
        notifications: Lifecycle notification sink
        settings: Execution limits (timeout, poll interval, slippage)
        clock: Time source, injectable for tests
    """

    def __init__(
        self,
        store: RateDeskStore,
        pricing_engine: FixedSpreadPricingEngine,
        partner_directory: PartnerDirectory,
        counterparty_matcher: CounterpartyMatcher,
        order_gateway: P2POrderGateway,
        notifications: Optional[NotificationService] = None,
        settings: Optional[DealSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.pricing_engine = pricing_engine
        self.partner_directory = partner_directory
        self.counterparty_matcher = counterparty_matcher
        self.order_gateway = order_gateway
        self.notifications = notifications or NotificationService()
        self.settings = settings or DealSettings()
        self.clock = clock
        self.logger = structlog.get_logger("ratedesk.deals")

        self._execution_tasks: set[asyncio.Task] = set()

    @property
    def pending_executions(self) -> int:
        return len(self._execution_tasks)

    async def create_deal(self, request: DealRequest) -> Deal:
        """
        Create a deal at the current rate.

        Returns immediately; when ``auto_execute`` is set the deal is created
        ``APPROVED`` and executed in a background task.

        Raises:
            InvalidDealRequest: If amount or rate bounds are malformed
            InvalidPartner: If the partner is unknown or inactive
            PricingUnavailable: If no rate can be computed
            RateExceedsMaximum: If the rate is above ``max_rate``
            RateBelowMinimum: If the rate is below ``min_rate``
        """
        self._validate_request(request)
        self.logger.info(
            "Creating new deal",
            partner_id=request.partner_id,
            symbol=request.symbol,
            side=request.side.value,
            amount=str(request.amount),
        )

        partner = await self.partner_directory.get_partner(request.partner_id)
        if partner is None or not partner.is_active:
            raise InvalidPartner(request.partner_id)

        try:
            pricing = await self.pricing_engine.quote(request.symbol, request.partner_id)
        except PricingUnavailable:
            raise
        except RateDeskError as e:
            raise PricingUnavailable(
                f"Pricing unavailable for {request.symbol}: {e}",
                {"symbol": request.symbol, "cause": e.code},
            ) from e

        rate = pricing.final_rate
        if request.max_rate is not None and rate > request.max_rate:
            raise RateExceedsMaximum(rate, request.max_rate)
        if request.min_rate is not None and rate < request.min_rate:
            raise RateBelowMinimum(rate, request.min_rate)

        now = self.clock()
        deal = Deal(
            partner_id=request.partner_id,
            symbol=request.symbol,
            side=request.side,
            amount=request.amount,
            rate=rate,
            total_value=request.amount * rate,
            status=DealStatus.APPROVED if request.auto_execute else DealStatus.PENDING,
            created_at=now,
            updated_at=now,
            metadata=DealMetadata(
                spot_rate=pricing.spot_rate,
                p2p_rate=pricing.p2p_indicative_rate,
                spread=pricing.total_spread,
                volatility_adjustment=pricing.volatility_spread,
                confidence=pricing.confidence,
                source=pricing.calculation_method.value,
            ),
            notes=format_note(request.notes, now) if request.notes else None,
        )

        await self.store.insert_deal(deal)
        self.notifications.deal_created(deal)
        deals_created_total.labels(
            symbol=deal.symbol, side=deal.side.value, initial_status=deal.status.value
        ).inc()

        if request.auto_execute:
            self._spawn_execution(deal.id)

        self.logger.info(
            "Deal created successfully",
            deal_id=deal.id,
            rate=str(deal.rate),
            total_value=str(deal.total_value),
            auto_execute=request.auto_execute,
        )
        return deal

    async def execute_deal(self, deal_id: str) -> DealExecutionResult:
        """
        Execute a ``PENDING`` or ``APPROVED`` deal against the P2P venue.

        Handled failures (no counterparty, order rejected, fill failed,
        timeout, venue unavailable) leave the deal ``FAILED`` and return a
        result with ``success=False``.

        Raises:
            DealNotFound: If the deal does not exist
            InvalidDealState: If the deal is not executable
        """
        started = time.perf_counter()

        deal = await self.store.get_deal(deal_id)
        if deal is None:
            raise DealNotFound(deal_id)
        if deal.status not in EXECUTABLE_STATUSES:
            raise InvalidDealState(deal_id, deal.status, EXECUTABLE_STATUSES)

        deal = await self.store.update_deal_if_status(
            deal_id, EXECUTABLE_STATUSES, status=DealStatus.EXECUTING
        )
        log = self.logger.bind(
            deal_id=deal.id, symbol=deal.symbol, partner_id=deal.partner_id
        )
        log.info("Executing deal")

        counterparty: Optional[Counterparty] = None
        order_id: Optional[str] = None
        try:
            counterparty = await self.counterparty_matcher.find_counterparty(deal)
            if counterparty is None:
                return await self._fail(deal, NO_COUNTERPARTY_ERROR, started, False)

            placement = await self.order_gateway.place_order(deal, counterparty)
            if not placement.success or not placement.order_id:
                return await self._fail(
                    deal,
                    f"P2P order creation failed: {placement.error or 'no order id returned'}",
                    started,
                    True,
                )
            order_id = placement.order_id

            deal = await self.store.update_deal_if_status(
                deal_id,
                {DealStatus.EXECUTING},
                p2p_order_id=order_id,
                counterparty=counterparty,
                note=f"P2P order {order_id} placed with counterparty {counterparty.name}",
            )

            try:
                fill = await asyncio.wait_for(
                    self._monitor_order(order_id),
                    timeout=self.settings.max_execution_seconds,
                )
            except asyncio.TimeoutError:
                await self._cancel_upstream(order_id, log)
                return await self._fail(
                    deal,
                    f"Execution timed out after {self.settings.max_execution_seconds:g} seconds",
                    started,
                    True,
                    order_id,
                )

            if fill.state != OrderState.FILLED:
                return await self._fail(
                    deal,
                    f"P2P order {fill.state.value.lower()}: {fill.error or 'no details'}",
                    started,
                    True,
                    order_id,
                )

            return await self._complete(deal, fill, started, log)

        except InvalidDealState as e:
            # Only a concurrent cancellation moves a deal out of EXECUTING
            log.warning("Deal changed state during execution", error=str(e))
            if order_id:
                await self._cancel_upstream(order_id, log)
            return self._interrupted_result(deal, e, started, counterparty, order_id)

        except CollaboratorUnavailable as e:
            log.warning("P2P venue unavailable during execution", error=str(e))
            if order_id:
                await self._cancel_upstream(order_id, log)
            return await self._fail(
                deal, e.message, started, counterparty is not None, order_id
            )

        except Exception as e:
            log.error("Unexpected error during deal execution", error=str(e), exc_info=True)
            deal_executions_total.labels(outcome="error").inc()
            await self._mark_failed_best_effort(deal_id, f"Unexpected error: {e}", log)
            raise

    async def cancel_deal(self, deal_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel an in-flight deal.

        The upstream order, if any, is cancelled best-effort; the local record
        is cancelled regardless.

        Raises:
            DealNotFound: If the deal does not exist
            InvalidDealState: If the deal is already terminal
        """
        deal = await self.store.get_deal(deal_id)
        if deal is None:
            raise DealNotFound(deal_id)
        if deal.status in TERMINAL_STATUSES:
            raise InvalidDealState(deal_id, deal.status, CANCELLABLE_STATUSES)

        log = self.logger.bind(deal_id=deal_id, symbol=deal.symbol, partner_id=deal.partner_id)

        if deal.p2p_order_id:
            await self._cancel_upstream(deal.p2p_order_id, log)

        cancelled = await self.store.update_deal_if_status(
            deal_id,
            CANCELLABLE_STATUSES,
            status=DealStatus.CANCELLED,
            note=f"Cancelled: {reason}" if reason else None,
            closed_at=self.clock(),
        )

        self.notifications.deal_cancelled(cancelled, reason)
        deals_cancelled_total.inc()
        log.info("Deal cancelled successfully", reason=reason, previous_status=deal.status.value)
        return True

    async def get_deal(self, deal_id: str) -> Deal:
        deal = await self.store.get_deal(deal_id)
        if deal is None:
            raise DealNotFound(deal_id)
        return deal

    async def get_deals_for_partner(self, partner_id: str, limit: int = 50) -> list[Deal]:
        """Most recent deals for a partner, newest first."""
        return await self.store.list_deals(partner_id=partner_id, limit=limit)

    async def get_deal_stats(
        self,
        partner_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
    ) -> DealStats:
        """Aggregate statistics over deals filtered by partner and creation date."""
        deals = await self.store.list_deals(
            partner_id=partner_id, from_date=from_date, to_date=to_date
        )
        return compute_deal_stats(deals, from_date, to_date, now=self.clock())

    @staticmethod
    def list_statuses() -> list[dict]:
        """Deal statuses with their terminal flag."""
        return [
            {"status": status.value, "is_terminal": status.is_terminal}
            for status in DealStatus
        ]

    async def shutdown(self) -> None:
        """Wait for background executions and pending notifications."""
        if self._execution_tasks:
            self.logger.info(
                "Waiting for background executions", count=len(self._execution_tasks)
            )
            await asyncio.gather(*list(self._execution_tasks), return_exceptions=True)
        await self.notifications.drain()

    # Internals

    def _validate_request(self, request: DealRequest) -> None:
        if not request.symbol or not request.symbol.strip():
            raise InvalidDealRequest("Symbol is required", {"field": "symbol"})
        if not request.partner_id or not request.partner_id.strip():
            raise InvalidDealRequest("Partner id is required", {"field": "partner_id"})
        if request.amount <= 0:
            raise InvalidDealRequest(
                f"Amount must be positive: {request.amount}", {"field": "amount"}
            )
        for field_name in ("max_rate", "min_rate"):
            value = getattr(request, field_name)
            if value is not None and value <= 0:
                raise InvalidDealRequest(
                    f"{field_name} must be positive: {value}", {"field": field_name}
                )
        if (
            request.max_rate is not None
            and request.min_rate is not None
            and request.min_rate > request.max_rate
        ):
            raise InvalidDealRequest(
                f"min_rate {request.min_rate} exceeds max_rate {request.max_rate}",
                {"field": "min_rate"},
            )

    def _spawn_execution(self, deal_id: str) -> None:
        task = asyncio.create_task(self._auto_execute(deal_id))
        self._execution_tasks.add(task)
        task.add_done_callback(self._execution_tasks.discard)

    async def _auto_execute(self, deal_id: str) -> None:
        try:
            result = await self.execute_deal(deal_id)
            self.logger.info(
                "Auto-execution finished", deal_id=deal_id, success=result.success
            )
        except RateDeskError as e:
            self.logger.warning("Auto-execution rejected", deal_id=deal_id, error=str(e))
        except Exception as e:
            # Already logged and marked FAILED by execute_deal
            self.logger.error("Auto-execution crashed", deal_id=deal_id, error=str(e))

    async def _monitor_order(self, order_id: str) -> OrderStatus:
        while True:
            status = await self.order_gateway.get_order_status(order_id)
            if status.state != OrderState.PENDING:
                return status
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def _complete(self, deal: Deal, fill: OrderStatus, started: float, log) -> DealExecutionResult:
        executed_rate = fill.executed_rate if fill.executed_rate is not None else deal.rate
        executed_amount = (
            fill.executed_amount if fill.executed_amount is not None else deal.amount
        )
        slippage = (
            fill.slippage_percent
            if fill.slippage_percent is not None
            else compute_slippage_percent(deal.rate, executed_rate)
        )

        warnings = []
        if slippage > self.settings.max_slippage_percent:
            warnings.append(
                f"Slippage {slippage:.4f}% exceeds maximum {self.settings.max_slippage_percent}%"
            )
            log.warning(
                "Slippage above maximum",
                slippage_percent=str(slippage),
                max_slippage_percent=str(self.settings.max_slippage_percent),
            )

        deal = await self.store.update_deal_if_status(
            deal.id,
            {DealStatus.EXECUTING},
            status=DealStatus.EXECUTED,
            executed_at=self.clock(),
            note=f"Executed {executed_amount} at {executed_rate}",
        )
        deal = await self.store.update_deal_if_status(
            deal.id, {DealStatus.EXECUTED}, status=DealStatus.SETTLING
        )
        deal = await self.store.update_deal_if_status(
            deal.id,
            {DealStatus.SETTLING},
            status=DealStatus.COMPLETED,
            closed_at=self.clock(),
        )

        result = DealExecutionResult(
            success=True,
            deal_id=deal.id,
            executed_rate=executed_rate,
            executed_amount=executed_amount,
            p2p_order_id=deal.p2p_order_id,
            warnings=warnings,
            metadata=DealExecutionMetadata(
                execution_time_ms=self._elapsed_ms(started),
                counterparty_found=True,
                slippage_percent=slippage,
            ),
        )
        self._record_outcome(deal, result, "completed")
        log.info(
            "Deal execution completed",
            executed_rate=str(executed_rate),
            execution_time_ms=result.metadata.execution_time_ms,
            slippage_percent=str(slippage),
        )
        return result

    async def _fail(
        self,
        deal: Deal,
        error: str,
        started: float,
        counterparty_found: bool,
        order_id: Optional[str] = None,
    ) -> DealExecutionResult:
        """Record FAILED with the cause, then build the negative result."""
        try:
            failed = await self.store.update_deal_if_status(
                deal.id,
                {DealStatus.EXECUTING},
                status=DealStatus.FAILED,
                closed_at=self.clock(),
                note=f"Execution failed: {error}",
            )
        except InvalidDealState as e:
            return self._interrupted_result(deal, e, started, None, order_id)
        except RateDeskError as e:
            # The deal stays EXECUTING; the result still carries the original cause
            self.logger.error(
                "Could not record failed deal execution",
                deal_id=deal.id,
                symbol=deal.symbol,
                partner_id=deal.partner_id,
                error=error,
                store_error=str(e),
            )
            deal_executions_total.labels(outcome="error").inc()
            return DealExecutionResult(
                success=False,
                deal_id=deal.id,
                p2p_order_id=order_id,
                error=f"{error} (failure not recorded: {e.message})",
                metadata=DealExecutionMetadata(
                    execution_time_ms=self._elapsed_ms(started),
                    counterparty_found=counterparty_found,
                ),
            )

        result = DealExecutionResult(
            success=False,
            deal_id=deal.id,
            p2p_order_id=order_id,
            error=error,
            metadata=DealExecutionMetadata(
                execution_time_ms=self._elapsed_ms(started),
                counterparty_found=counterparty_found,
            ),
        )
        self._record_outcome(failed, result, "failed")
        self.logger.warning(
            "Deal execution failed",
            deal_id=deal.id,
            symbol=deal.symbol,
            partner_id=deal.partner_id,
            error=error,
        )
        return result

    def _interrupted_result(
        self,
        deal: Deal,
        conflict: InvalidDealState,
        started: float,
        counterparty: Optional[Counterparty],
        order_id: Optional[str],
    ) -> DealExecutionResult:
        if conflict.current == DealStatus.CANCELLED:
            error = CANCELLED_DURING_EXECUTION_ERROR
            outcome = "cancelled"
        else:
            error = f"Deal left EXECUTING unexpectedly (now {conflict.details['current_status']})"
            outcome = "conflict"
        deal_executions_total.labels(outcome=outcome).inc()
        return DealExecutionResult(
            success=False,
            deal_id=deal.id,
            p2p_order_id=order_id,
            error=error,
            metadata=DealExecutionMetadata(
                execution_time_ms=self._elapsed_ms(started),
                counterparty_found=counterparty is not None or order_id is not None,
            ),
        )

    async def _mark_failed_best_effort(self, deal_id: str, error: str, log) -> None:
        try:
            await self.store.update_deal_if_status(
                deal_id,
                {DealStatus.EXECUTING},
                status=DealStatus.FAILED,
                closed_at=self.clock(),
                note=f"Execution failed: {error}",
            )
        except RateDeskError as e:
            log.error("Could not mark deal as failed", error=str(e))

    async def _cancel_upstream(self, order_id: str, log) -> None:
        try:
            await self.order_gateway.cancel_order(order_id)
            log.info("P2P order cancelled upstream", order_id=order_id)
        except RateDeskError as e:
            log.warning("Upstream order cancel failed", order_id=order_id, error=str(e))

    def _record_outcome(self, deal: Deal, result: DealExecutionResult, outcome: str) -> None:
        deal_executions_total.labels(outcome=outcome).inc()
        deal_execution_seconds.observe(result.metadata.execution_time_ms / 1000)
        self.notifications.deal_executed(deal, result)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)
