"""
Abstract base classes for external collaborators.

This module defines the interface contracts the pricing and deal engine
depends on. Concrete implementations live in ``ratedesk.providers``:
paper-trading doubles for tests and local runs, and a generic REST venue
for live P2P trading.

Implementations report transport problems as ``CollaboratorUnavailable``
subclasses (``GatewayUnavailable``, ``PricingUnavailable``,
``InsufficientOffers``) so the orchestrator can resolve deals to a
definitive state instead of leaking transport exceptions.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import (
    Counterparty,
    Deal,
    OrderPlacement,
    OrderStatus,
    P2PIndicativeRate,
    PartnerInfo,
    SpotRate,
)


class SpotPriceFeed(ABC):
    """Source of spot exchange rates."""

    @abstractmethod
    async def get_spot_rate(self, symbol: str) -> SpotRate:
        """
        Fetch the current spot rate.

        Raises:
            PricingUnavailable: If the feed cannot provide a rate right now
        """
        pass

    async def close(self) -> None:
        pass


class P2PIndicativeFeed(ABC):
    """Source of indicative rates aggregated from P2P seller offers."""

    @abstractmethod
    async def get_indicative_rate(self, symbol: str) -> P2PIndicativeRate:
        """
        Fetch the weighted indicative rate with its data-quality score.

        Raises:
            InsufficientOffers: If too few offers are available
        """
        pass

    async def close(self) -> None:
        pass


class PartnerDirectory(ABC):
    """Lookup of partner accounts."""

    @abstractmethod
    async def get_partner(self, partner_id: str) -> Optional[PartnerInfo]:
        """Return partner record or None if unknown."""
        pass


class CounterpartyMatcher(ABC):
    """Finds a P2P counterparty able to fill a deal."""

    @abstractmethod
    async def find_counterparty(self, deal: Deal) -> Optional[Counterparty]:
        """Return a suitable counterparty, or None if none is found."""
        pass


class P2POrderGateway(ABC):
    """Order placement and monitoring on a P2P venue."""

    @abstractmethod
    async def place_order(self, deal: Deal, counterparty: Counterparty) -> OrderPlacement:
        """Place an order for the deal with the selected counterparty."""
        pass

    @abstractmethod
    async def get_order_status(self, order_id: str) -> OrderStatus:
        """Poll the fill status of an order."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        """Cancel an order upstream (best-effort)."""
        pass

    async def connect(self) -> None:
        """Establish connection to the venue."""
        pass

    async def disconnect(self) -> None:
        """Clean up and disconnect from the venue."""
        pass


class NotificationChannel(ABC):
    """Destination for deal lifecycle notifications."""

    name = "channel"

    @abstractmethod
    async def send(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver a notification; may raise on delivery failure."""
        pass

    async def close(self) -> None:
        pass
