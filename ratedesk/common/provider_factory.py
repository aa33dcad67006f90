"""
Factory for collaborator instantiation.

This module provides a central registry that maps venue names from the
configuration (``VENUE: paper`` or ``VENUE: rest``) to concrete
implementations of the spot feed, P2P indicative feed, counterparty
matcher and order gateway interfaces.
"""

from typing import Any

from .config import Config
from .provider_base import (
    CounterpartyMatcher,
    P2PIndicativeFeed,
    P2POrderGateway,
    SpotPriceFeed,
)


class ProviderFactory:
    """Factory for creating collaborator instances based on configuration."""

    # Registry of available collaborators, keyed by venue name
    _spot_feeds: dict[str, type[SpotPriceFeed]] = {}
    _p2p_feeds: dict[str, type[P2PIndicativeFeed]] = {}
    _matchers: dict[str, type[CounterpartyMatcher]] = {}
    _gateways: dict[str, type[P2POrderGateway]] = {}

    @classmethod
    def register_spot_feed(cls, name: str, feed_class: type[SpotPriceFeed]) -> None:
        """Register a spot price feed implementation."""
        cls._spot_feeds[name] = feed_class

    @classmethod
    def register_p2p_feed(
        cls, name: str, feed_class: type[P2PIndicativeFeed]
    ) -> None:
        """Register a P2P indicative feed implementation."""
        cls._p2p_feeds[name] = feed_class

    @classmethod
    def register_counterparty_matcher(
        cls, name: str, matcher_class: type[CounterpartyMatcher]
    ) -> None:
        cls._matchers[name] = matcher_class

    @classmethod
    def register_order_gateway(
        cls, name: str, gateway_class: type[P2POrderGateway]
    ) -> None:
        cls._gateways[name] = gateway_class

    @classmethod
    def create_spot_feed(cls, venue: str, config: Config) -> SpotPriceFeed:
        """Create a spot price feed instance."""
        if venue not in cls._spot_feeds:
            raise ValueError(f"Unknown spot feed: {venue}")
        return cls._spot_feeds[venue](config)

    @classmethod
    def create_p2p_feed(cls, venue: str, config: Config) -> P2PIndicativeFeed:
        """Create a P2P indicative feed instance."""
        if venue not in cls._p2p_feeds:
            raise ValueError(f"Unknown P2P feed: {venue}")
        return cls._p2p_feeds[venue](config)

    @classmethod
    def create_counterparty_matcher(
        cls, venue: str, config: Config
    ) -> CounterpartyMatcher:
        if venue not in cls._matchers:
            raise ValueError(f"Unknown counterparty matcher: {venue}")
        return cls._matchers[venue](config)

    @classmethod
    def create_order_gateway(cls, venue: str, config: Config) -> P2POrderGateway:
        if venue not in cls._gateways:
            raise ValueError(f"Unknown order gateway: {venue}")
        return cls._gateways[venue](config)

    @classmethod
    def get_available_providers(cls) -> dict[str, Any]:
        """Get list of all registered collaborators."""
        return {
            "spot_feeds": list(cls._spot_feeds.keys()),
            "p2p_feeds": list(cls._p2p_feeds.keys()),
            "counterparty_matchers": list(cls._matchers.keys()),
            "order_gateways": list(cls._gateways.keys()),
        }


def _register_builtin_providers():
    """Register built-in collaborator implementations."""
    from ..providers.paper import (
        PaperOrderGateway,
        RatingCounterpartyMatcher,
        StaticP2PIndicativeFeed,
        StaticSpotPriceFeed,
    )
    from ..providers.rest import RestP2PIndicativeFeed, RestP2PVenue, RestSpotPriceFeed

    ProviderFactory.register_spot_feed("paper", StaticSpotPriceFeed)
    ProviderFactory.register_p2p_feed("paper", StaticP2PIndicativeFeed)
    ProviderFactory.register_counterparty_matcher("paper", RatingCounterpartyMatcher)
    ProviderFactory.register_order_gateway("paper", PaperOrderGateway)

    ProviderFactory.register_spot_feed("rest", RestSpotPriceFeed)
    ProviderFactory.register_p2p_feed("rest", RestP2PIndicativeFeed)
    ProviderFactory.register_counterparty_matcher("rest", RestP2PVenue)
    ProviderFactory.register_order_gateway("rest", RestP2PVenue)


# Auto-register on module import
_register_builtin_providers()
