"""
Paper-trading collaborators.

These implementations need no network access: spot and P2P rates come
from the configuration (and can be moved at runtime with ``set_rate``),
partners and counterparties are read from the configuration, and the
order gateway fills orders at the deal rate after a configurable number
of status polls.
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from ..common.config import Config
from ..common.errors import InsufficientOffers, PricingUnavailable
from ..common.models import (
    Counterparty,
    Deal,
    OrderPlacement,
    OrderState,
    OrderStatus,
    P2PIndicativeRate,
    PartnerInfo,
    SpotRate,
    new_id,
    utcnow,
)
from ..common.provider_base import (
    CounterpartyMatcher,
    P2PIndicativeFeed,
    P2POrderGateway,
    PartnerDirectory,
    SpotPriceFeed,
)

logger = logging.getLogger(__name__)

# Half of the quoted bid/ask spread, as a fraction of price
PAPER_HALF_SPREAD = Decimal("0.0001")


class StaticSpotPriceFeed(SpotPriceFeed):
    """Spot feed serving fixed rates from configuration."""

    def __init__(self, config: Config, clock: Callable[[], datetime] = utcnow):
        self.rates: dict[str, Decimal] = dict(config.paper_spot_rates)
        self.clock = clock

    def set_rate(self, symbol: str, price: Decimal) -> None:
        self.rates[symbol] = price

    async def get_spot_rate(self, symbol: str) -> SpotRate:
        price = self.rates.get(symbol)
        if price is None:
            raise PricingUnavailable(f"No paper spot rate for {symbol}", {"symbol": symbol})

        half_spread = price * PAPER_HALF_SPREAD
        bid = price - half_spread
        ask = price + half_spread
        return SpotRate(
            symbol=symbol,
            price=price,
            bid=bid,
            ask=ask,
            spread=ask - bid,
            source="paper",
            timestamp=self.clock(),
        )


class StaticP2PIndicativeFeed(P2PIndicativeFeed):
    """P2P feed serving fixed indicative rates from configuration."""

    def __init__(self, config: Config, clock: Callable[[], datetime] = utcnow):
        self.rates: dict[str, Decimal] = dict(config.paper_p2p_rates)
        self.clock = clock

    def set_rate(self, symbol: str, rate: Decimal) -> None:
        self.rates[symbol] = rate

    async def get_indicative_rate(self, symbol: str) -> P2PIndicativeRate:
        rate = self.rates.get(symbol)
        if rate is None:
            raise InsufficientOffers(f"No paper P2P offers for {symbol}", {"symbol": symbol})
        return P2PIndicativeRate(
            symbol=symbol,
            rate=rate,
            data_quality=100,
            sources=["paper"],
            seller_count=1,
            calculated_at=self.clock(),
        )


class ConfigPartnerDirectory(PartnerDirectory):
    """Partner directory backed by a static list of partners."""

    def __init__(self, partners: Iterable[PartnerInfo] = ()):
        self.partners = {partner.id: partner for partner in partners}

    @classmethod
    def from_config(cls, config: Config) -> "ConfigPartnerDirectory":
        """
        Build from the ``PARTNERS`` section.

        Each entry maps a partner id to ``NAME``, ``ACTIVE``,
        ``RATE_LIMIT_PER_MINUTE`` and ``TIER``.
        """
        partners = []
        for partner_id, data in config.partners.items():
            partners.append(
                PartnerInfo(
                    id=partner_id,
                    name=str(data.get("NAME", partner_id)),
                    is_active=bool(data.get("ACTIVE", True)),
                    rate_limit_per_minute=int(data.get("RATE_LIMIT_PER_MINUTE", 60)),
                    tier=str(data.get("TIER", "BASIC")),
                )
            )
        return cls(partners)

    async def get_partner(self, partner_id: str) -> Optional[PartnerInfo]:
        return self.partners.get(partner_id)


def _counterparty_from_dict(data: dict[str, Any]) -> Counterparty:
    return Counterparty(
        id=str(data["ID"]),
        name=str(data.get("NAME", data["ID"])),
        rating=Decimal(str(data.get("RATING", "0"))),
        completion_rate=Decimal(str(data.get("COMPLETION_RATE", "0"))),
    )


class RatingCounterpartyMatcher(CounterpartyMatcher):
    """
    Picks the best-rated counterparty meeting the configured minimums.

    Candidates need ``rating >= min_counterparty_rating`` and
    ``completion_rate >= min_completion_rate``; ties on rating are broken by
    completion rate.
    """

    def __init__(
        self, config: Config, counterparties: Optional[list[Counterparty]] = None
    ):
        if counterparties is None:
            counterparties = [_counterparty_from_dict(c) for c in config.counterparties]
        self.counterparties = counterparties
        self.min_rating = config.deals.min_counterparty_rating
        self.min_completion_rate = config.deals.min_completion_rate

    async def find_counterparty(self, deal: Deal) -> Optional[Counterparty]:
        eligible = [
            c
            for c in self.counterparties
            if c.rating >= self.min_rating and c.completion_rate >= self.min_completion_rate
        ]
        if not eligible:
            logger.info(f"No eligible counterparty for deal {deal.id}")
            return None
        return max(eligible, key=lambda c: (c.rating, c.completion_rate))


class PaperOrderGateway(P2POrderGateway):
    """
    Simulated P2P venue.

    Args:
        config: Application configuration
        fills_after_polls: Status polls before the order fills; None never fills
        fill_rate_offset_percent: Executed rate deviation from the deal rate
        reject_reason: When set, every order placement is rejected
        fail_reason: When set, orders end FAILED instead of FILLED
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        fills_after_polls: Optional[int] = 1,
        fill_rate_offset_percent: Decimal = Decimal("0"),
        reject_reason: Optional[str] = None,
        fail_reason: Optional[str] = None,
    ):
        self.fills_after_polls = fills_after_polls
        self.fill_rate_offset_percent = fill_rate_offset_percent
        self.reject_reason = reject_reason
        self.fail_reason = fail_reason
        self.orders: dict[str, dict[str, Any]] = {}
        self.cancelled_orders: list[str] = []

    async def place_order(self, deal: Deal, counterparty: Counterparty) -> OrderPlacement:
        if self.reject_reason:
            return OrderPlacement(success=False, error=self.reject_reason)

        order_id = new_id("P2P")
        self.orders[order_id] = {
            "deal": deal,
            "counterparty": counterparty,
            "polls": 0,
            "state": OrderState.PENDING,
        }
        logger.info(f"Paper order placed: {order_id} for deal {deal.id}")
        return OrderPlacement(success=True, order_id=order_id)

    async def get_order_status(self, order_id: str) -> OrderStatus:
        order = self.orders.get(order_id)
        if order is None:
            return OrderStatus(
                order_id=order_id, state=OrderState.FAILED, error="Unknown order"
            )

        if order["state"] == OrderState.PENDING:
            order["polls"] += 1
            if self.fills_after_polls is not None and order["polls"] >= self.fills_after_polls:
                order["state"] = OrderState.FAILED if self.fail_reason else OrderState.FILLED

        deal: Deal = order["deal"]
        if order["state"] == OrderState.FILLED:
            executed_rate = deal.rate * (1 + self.fill_rate_offset_percent / 100)
            return OrderStatus(
                order_id=order_id,
                state=OrderState.FILLED,
                executed_rate=executed_rate,
                executed_amount=deal.amount,
            )
        if order["state"] == OrderState.FAILED:
            return OrderStatus(order_id=order_id, state=OrderState.FAILED, error=self.fail_reason)
        if order["state"] == OrderState.CANCELLED:
            return OrderStatus(
                order_id=order_id, state=OrderState.CANCELLED, error="Cancelled by request"
            )
        return OrderStatus(order_id=order_id, state=OrderState.PENDING)

    async def cancel_order(self, order_id: str) -> None:
        self.cancelled_orders.append(order_id)
        order = self.orders.get(order_id)
        if order is not None and order["state"] == OrderState.PENDING:
            order["state"] = OrderState.CANCELLED
        logger.info(f"Paper order cancelled: {order_id}")
