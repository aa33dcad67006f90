"""
Persistent store contract and in-memory implementation.

The store holds spread/volatility configuration, deals, audit records
(pricing results and volatility metrics) and the historical rate-delta
time series. Deal status transitions go through ``update_deal_if_status``,
an atomic compare-and-set, so concurrent executions or cancellations of the
same deal are linearized without holding a lock across slow collaborator
calls.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Collection
from datetime import datetime
from typing import Any, Optional

from .errors import DealNotFound, InvalidDealState, RateDeskError
from .models import (
    Deal,
    DealStatus,
    FixedSpreadConfig,
    PricingResult,
    RateDelta,
    SpreadBoundary,
    VolatilityMetrics,
    VolatilitySpreadConfig,
    utcnow,
)


def format_note(text: str, timestamp: Optional[datetime] = None) -> str:
    """Format a single append-only note line."""
    timestamp = timestamp or utcnow()
    return f"{timestamp.isoformat()}: {text}"


def append_note(existing: Optional[str], text: str) -> str:
    line = format_note(text)
    if not existing:
        return line
    return f"{existing}\n{line}"


class RateDeskStore(ABC):
    """Abstract persistence contract used by all core components."""

    # Fixed spread configuration

    @abstractmethod
    async def save_fixed_spread_config(self, config: FixedSpreadConfig) -> None:
        """Insert or replace a fixed spread configuration."""
        pass

    @abstractmethod
    async def find_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str]
    ) -> Optional[FixedSpreadConfig]:
        """
        Most recently created ``is_active`` config matching symbol and partner.

        ``partner_id=None`` matches only symbol-default rows.
        """
        pass

    @abstractmethod
    async def list_fixed_spread_configs(self, symbol: str) -> list[FixedSpreadConfig]:
        """All fixed spread configs for a symbol, newest first."""
        pass

    # Volatility configuration

    @abstractmethod
    async def save_volatility_config(self, config: VolatilitySpreadConfig) -> None:
        pass

    @abstractmethod
    async def find_volatility_config(
        self, symbol: str
    ) -> Optional[VolatilitySpreadConfig]:
        """Most recently created ``is_active`` volatility config for symbol."""
        pass

    # Spread boundaries

    @abstractmethod
    async def save_spread_boundary(self, boundary: SpreadBoundary) -> None:
        pass

    @abstractmethod
    async def get_spread_boundary(self, symbol: str) -> Optional[SpreadBoundary]:
        pass

    # Rate deltas

    @abstractmethod
    async def add_rate_delta(self, delta: RateDelta) -> None:
        pass

    @abstractmethod
    async def get_rate_deltas(self, symbol: str, since: datetime) -> list[RateDelta]:
        """Deltas for symbol with ``timestamp >= since``, oldest first."""
        pass

    # Audit records

    @abstractmethod
    async def save_pricing_result(self, result: PricingResult) -> None:
        pass

    @abstractmethod
    async def list_pricing_results(
        self, symbol: str, limit: int = 100
    ) -> list[PricingResult]:
        """Audited pricing results for symbol, newest first."""
        pass

    @abstractmethod
    async def save_volatility_metrics(self, metrics: VolatilityMetrics) -> None:
        pass

    @abstractmethod
    async def list_volatility_metrics(
        self, symbol: str, limit: int = 100
    ) -> list[VolatilityMetrics]:
        pass

    # Deals

    @abstractmethod
    async def insert_deal(self, deal: Deal) -> None:
        pass

    @abstractmethod
    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        pass

    @abstractmethod
    async def list_deals(
        self,
        partner_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Deal]:
        """Deals filtered by partner and inclusive ``created_at`` range, newest first."""
        pass

    @abstractmethod
    async def update_deal_if_status(
        self,
        deal_id: str,
        expected: Collection[DealStatus],
        *,
        status: Optional[DealStatus] = None,
        note: Optional[str] = None,
        **changes: Any,
    ) -> Deal:
        """
        Atomically update a deal only if its current status is in ``expected``.

        Args:
            deal_id: Deal identifier
            expected: Statuses the deal must currently be in
            status: New status, or None to keep the current one
            note: Text appended to the deal notes in the same write
            **changes: Other deal fields to set (executed_at, p2p_order_id, ...)

        Returns:
            The updated deal

        Raises:
            DealNotFound: If the deal does not exist
            InvalidDealState: If the current status is not in ``expected``
        """
        pass

    async def close(self) -> None:
        """Release any resources held by the store."""
        pass


class InMemoryStore(RateDeskStore):
    """
    Process-local store for tests and paper trading.

    Deals are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._fixed_configs: dict[str, FixedSpreadConfig] = {}
        self._volatility_configs: dict[str, VolatilitySpreadConfig] = {}
        self._boundaries: dict[str, SpreadBoundary] = {}
        self._deltas: dict[str, list[RateDelta]] = defaultdict(list)
        self._pricing_results: dict[str, list[PricingResult]] = defaultdict(list)
        self._volatility_metrics: dict[str, list[VolatilityMetrics]] = defaultdict(list)
        self._deals: dict[str, Deal] = {}
        self._deal_lock = asyncio.Lock()

    async def save_fixed_spread_config(self, config: FixedSpreadConfig) -> None:
        self._fixed_configs[config.id] = config.model_copy(deep=True)

    async def find_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str]
    ) -> Optional[FixedSpreadConfig]:
        candidates = [
            config
            for config in self._fixed_configs.values()
            if config.symbol == symbol
            and config.partner_id == partner_id
            and config.is_active
        ]
        if not candidates:
            return None
        newest = max(candidates, key=lambda c: c.created_at)
        return newest.model_copy(deep=True)

    async def list_fixed_spread_configs(self, symbol: str) -> list[FixedSpreadConfig]:
        configs = [c for c in self._fixed_configs.values() if c.symbol == symbol]
        configs.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in configs]

    async def save_volatility_config(self, config: VolatilitySpreadConfig) -> None:
        self._volatility_configs[config.id] = config.model_copy(deep=True)

    async def find_volatility_config(
        self, symbol: str
    ) -> Optional[VolatilitySpreadConfig]:
        candidates = [
            config
            for config in self._volatility_configs.values()
            if config.symbol == symbol and config.is_active
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.created_at).model_copy(deep=True)

    async def save_spread_boundary(self, boundary: SpreadBoundary) -> None:
        self._boundaries[boundary.symbol] = boundary.model_copy(deep=True)

    async def get_spread_boundary(self, symbol: str) -> Optional[SpreadBoundary]:
        boundary = self._boundaries.get(symbol)
        return boundary.model_copy(deep=True) if boundary else None

    async def add_rate_delta(self, delta: RateDelta) -> None:
        self._deltas[delta.symbol].append(delta.model_copy())

    async def get_rate_deltas(self, symbol: str, since: datetime) -> list[RateDelta]:
        deltas = [d for d in self._deltas.get(symbol, []) if d.timestamp >= since]
        deltas.sort(key=lambda d: d.timestamp)
        return deltas

    async def save_pricing_result(self, result: PricingResult) -> None:
        self._pricing_results[result.symbol].append(result)

    async def list_pricing_results(
        self, symbol: str, limit: int = 100
    ) -> list[PricingResult]:
        results = sorted(
            self._pricing_results.get(symbol, []),
            key=lambda r: r.timestamp,
            reverse=True,
        )
        return results[:limit]

    async def save_volatility_metrics(self, metrics: VolatilityMetrics) -> None:
        self._volatility_metrics[metrics.symbol].append(metrics)

    async def list_volatility_metrics(
        self, symbol: str, limit: int = 100
    ) -> list[VolatilityMetrics]:
        metrics = sorted(
            self._volatility_metrics.get(symbol, []),
            key=lambda m: m.calculated_at,
            reverse=True,
        )
        return metrics[:limit]

    async def insert_deal(self, deal: Deal) -> None:
        async with self._deal_lock:
            if deal.id in self._deals:
                raise RateDeskError(f"Deal already exists: {deal.id}")
            self._deals[deal.id] = deal.model_copy(deep=True)

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        deal = self._deals.get(deal_id)
        return deal.model_copy(deep=True) if deal else None

    async def list_deals(
        self,
        partner_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Deal]:
        deals = [
            deal
            for deal in self._deals.values()
            if (partner_id is None or deal.partner_id == partner_id)
            and (from_date is None or deal.created_at >= from_date)
            and (to_date is None or deal.created_at <= to_date)
        ]
        deals.sort(key=lambda d: d.created_at, reverse=True)
        if limit is not None:
            deals = deals[:limit]
        return [d.model_copy(deep=True) for d in deals]

    async def update_deal_if_status(
        self,
        deal_id: str,
        expected: Collection[DealStatus],
        *,
        status: Optional[DealStatus] = None,
        note: Optional[str] = None,
        **changes: Any,
    ) -> Deal:
        async with self._deal_lock:
            current = self._deals.get(deal_id)
            if current is None:
                raise DealNotFound(deal_id)
            if current.status not in expected:
                raise InvalidDealState(deal_id, current.status, expected)

            updates = dict(changes)
            if status is not None:
                updates["status"] = status
            if note is not None:
                updates["notes"] = append_note(current.notes, note)
            updates["updated_at"] = utcnow()

            updated = current.model_copy(update=updates, deep=True)
            self._deals[deal_id] = updated
            return updated.model_copy(deep=True)
