"""
REST P2P venue implementation.

This module talks to a JSON REST venue that exposes spot rates, P2P
indicative rates, counterparty search and order management. Requests are
authenticated with an HMAC-SHA256 signature over
``timestamp + method + path + body``.

Endpoints::

    GET    /v1/spot/{symbol}
    GET    /v1/p2p/indicative/{symbol}
    POST   /v1/p2p/counterparties/search
    POST   /v1/p2p/orders
    GET    /v1/p2p/orders/{order_id}
    DELETE /v1/p2p/orders/{order_id}
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import aiohttp

from ..common.config import Config
from ..common.errors import GatewayUnavailable, InsufficientOffers, PricingUnavailable
from ..common.models import (
    Counterparty,
    Deal,
    OrderPlacement,
    OrderState,
    OrderStatus,
    P2PIndicativeRate,
    SpotRate,
)
from ..common.provider_base import (
    CounterpartyMatcher,
    P2PIndicativeFeed,
    P2POrderGateway,
    SpotPriceFeed,
)

logger = logging.getLogger(__name__)


def venue_symbol(symbol: str) -> str:
    """Convert 'EUR/USD' style symbols to the venue's 'EURUSD' form."""
    return symbol.replace("/", "").replace("-", "").upper()


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _http_error(status: int, data: Any) -> str:
    """Status plus the venue's own error message, when it sent one."""
    if isinstance(data, dict) and data.get("error"):
        return f"HTTP {status}: {data['error']}"
    return f"HTTP {status}"


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RestVenueClient:
    """Signed JSON client shared by the REST collaborators."""

    def __init__(self, config: Config):
        self.venue = config.rest
        self.api_key = config.rest.api_key
        self.api_secret = config.rest.api_secret
        self.rest_url = config.rest.rest_url.rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session."""
        self.venue.validate_for_use()
        if self.session is None:
            logger.info(f"Connecting to REST venue at {self.rest_url}")
            timeout = aiohttp.ClientTimeout(total=self.venue.timeout_seconds)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def disconnect(self) -> None:
        """Clean up and close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Disconnected from REST venue")

    def sign(self, timestamp: str, method: str, path: str, body: str) -> str:
        message = f"{timestamp}{method.upper()}{path}{body}"
        return hmac.new(
            self.api_secret.encode(), message.encode(), hashlib.sha256
        ).hexdigest()

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> tuple[int, Any]:
        """
        Make an authenticated request.

        Returns:
            HTTP status and decoded JSON body (None for empty bodies)

        Raises:
            GatewayUnavailable: On transport errors or 5xx responses
        """
        if self.session is None:
            await self.connect()

        body = json.dumps(payload) if payload is not None else ""
        timestamp = str(int(time.time() * 1000))
        headers = {
            "Content-Type": "application/json",
            "X-API-KEY": self.api_key,
            "X-TIMESTAMP": timestamp,
            "X-SIGNATURE": self.sign(timestamp, method, path, body),
        }

        url = f"{self.rest_url}{path}"
        try:
            async with self.session.request(
                method, url, data=body or None, headers=headers
            ) as response:
                text = await response.text()
                if response.status >= 500:
                    raise GatewayUnavailable(
                        f"Venue error: {response.status} - {text}",
                        {"status": response.status, "path": path},
                    )
                return response.status, json.loads(text) if text else None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayUnavailable(f"Venue request failed: {e}", {"path": path}) from e
        except json.JSONDecodeError as e:
            raise GatewayUnavailable(f"Invalid venue response: {e}", {"path": path}) from e


class RestSpotPriceFeed(SpotPriceFeed):
    """Spot rates from the REST venue."""

    def __init__(self, config: Config):
        self.client = RestVenueClient(config)

    async def get_spot_rate(self, symbol: str) -> SpotRate:
        path = f"/v1/spot/{venue_symbol(symbol)}"
        try:
            status, data = await self.client.request("GET", path)
        except GatewayUnavailable as e:
            raise PricingUnavailable(e.message, {"symbol": symbol}) from e

        if status != 200 or not data:
            raise PricingUnavailable(
                f"Spot rate unavailable for {symbol}: HTTP {status}", {"symbol": symbol}
            )

        price = Decimal(str(data["price"]))
        bid = _optional_decimal(data.get("bid")) or price
        ask = _optional_decimal(data.get("ask")) or price
        return SpotRate(
            symbol=symbol,
            price=price,
            bid=bid,
            ask=ask,
            spread=ask - bid,
            source=str(data.get("source", "rest")),
            timestamp=_parse_timestamp(data.get("timestamp")),
            volume=_optional_decimal(data.get("volume")),
        )

    async def close(self) -> None:
        await self.client.disconnect()


class RestP2PIndicativeFeed(P2PIndicativeFeed):
    """Weighted P2P indicative rates from the REST venue."""

    def __init__(self, config: Config):
        self.client = RestVenueClient(config)

    async def get_indicative_rate(self, symbol: str) -> P2PIndicativeRate:
        path = f"/v1/p2p/indicative/{venue_symbol(symbol)}"
        status, data = await self.client.request("GET", path)

        if status == 404:
            raise InsufficientOffers(f"No P2P offers for {symbol}", {"symbol": symbol})
        if status != 200:
            raise GatewayUnavailable(
                f"Indicative rate request failed: {_http_error(status, data)}",
                {"symbol": symbol},
            )
        if not data or int(data.get("seller_count", 0)) == 0:
            raise InsufficientOffers(f"No P2P offers for {symbol}", {"symbol": symbol})

        return P2PIndicativeRate(
            symbol=symbol,
            rate=Decimal(str(data["rate"])),
            data_quality=int(data.get("data_quality", 0)),
            issues=list(data.get("issues", [])),
            sources=list(data.get("sources", [])),
            seller_count=int(data.get("seller_count", 0)),
        )

    async def close(self) -> None:
        await self.client.disconnect()


class RestP2PVenue(CounterpartyMatcher, P2POrderGateway):
    """Counterparty search and order management on the REST venue."""

    def __init__(self, config: Config):
        self.client = RestVenueClient(config)
        self.min_rating = config.deals.min_counterparty_rating
        self.min_completion_rate = config.deals.min_completion_rate

    async def connect(self) -> None:
        await self.client.connect()

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def find_counterparty(self, deal: Deal) -> Optional[Counterparty]:
        status, data = await self.client.request(
            "POST",
            "/v1/p2p/counterparties/search",
            {
                "symbol": venue_symbol(deal.symbol),
                "side": deal.side.value,
                "amount": str(deal.amount),
                "rate": str(deal.rate),
                "min_rating": str(self.min_rating),
                "min_completion_rate": str(self.min_completion_rate),
            },
        )
        if status == 404:
            return None
        if status != 200:
            raise GatewayUnavailable(
                f"Counterparty search failed: {_http_error(status, data)}"
            )
        if not data or not data.get("counterparty"):
            return None

        found = data["counterparty"]
        return Counterparty(
            id=str(found["id"]),
            name=str(found.get("name", found["id"])),
            rating=Decimal(str(found.get("rating", "0"))),
            completion_rate=Decimal(str(found.get("completion_rate", "0"))),
        )

    async def place_order(self, deal: Deal, counterparty: Counterparty) -> OrderPlacement:
        status, data = await self.client.request(
            "POST",
            "/v1/p2p/orders",
            {
                "client_order_id": deal.id,
                "symbol": venue_symbol(deal.symbol),
                "side": deal.side.value,
                "amount": str(deal.amount),
                "rate": str(deal.rate),
                "counterparty_id": counterparty.id,
            },
        )
        data = data or {}
        if status not in (200, 201) or not data.get("order_id"):
            error = data.get("error") or f"HTTP {status}"
            logger.warning(f"Order rejected for deal {deal.id}: {error}")
            return OrderPlacement(success=False, error=str(error))

        order_id = str(data["order_id"])
        logger.info(f"Order placed: {order_id} for deal {deal.id}")
        return OrderPlacement(success=True, order_id=order_id)

    async def get_order_status(self, order_id: str) -> OrderStatus:
        status, data = await self.client.request("GET", f"/v1/p2p/orders/{order_id}")
        if status == 404:
            return OrderStatus(order_id=order_id, state=OrderState.FAILED, error="Order not found")
        if status != 200 or not data:
            raise GatewayUnavailable(f"Order status request failed: HTTP {status}")

        return OrderStatus(
            order_id=order_id,
            state=self._map_state(data.get("state", "")),
            executed_rate=_optional_decimal(data.get("executed_rate")),
            executed_amount=_optional_decimal(data.get("executed_amount")),
            slippage_percent=_optional_decimal(data.get("slippage_percent")),
            error=data.get("error"),
        )

    async def cancel_order(self, order_id: str) -> None:
        status, _ = await self.client.request("DELETE", f"/v1/p2p/orders/{order_id}")
        if status not in (200, 202, 204, 404):
            raise GatewayUnavailable(f"Order cancel failed: HTTP {status}")
        logger.info(f"Order cancel requested: {order_id}")

    @staticmethod
    def _map_state(state: str) -> OrderState:
        """Map venue order states to ours."""
        state = state.lower()
        if state in ("filled", "completed", "done"):
            return OrderState.FILLED
        if state in ("failed", "rejected", "expired", "appeal"):
            return OrderState.FAILED
        if state in ("cancelled", "canceled"):
            return OrderState.CANCELLED
        return OrderState.PENDING
