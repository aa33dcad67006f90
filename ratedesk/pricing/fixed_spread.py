"""
Fixed-spread pricing engine.

Converts a spot rate into a partner payout rate by adding a percentage
spread clamped into the configured ``[min, max]`` band. The calculation is
pure with respect to the symbol and spot rate; configuration lookups are
read-only and the audit write never affects the returned result.

The spread is strictly additive to spot (``final = spot + spread``) for
every deal side.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from prometheus_client import Counter

from ..common.config import SpreadDefaults
from ..common.decimal_math import clamp, percent_of, safe_div
from ..common.errors import (
    GatewayUnavailable,
    InsufficientOffers,
    PricingUnavailable,
    RateDeskError,
    SpreadConfigInactive,
)
from ..common.models import (
    CalculationMethod,
    FixedSpreadConfig,
    PricingMetadata,
    PricingResult,
    SpotRate,
    utcnow,
)
from ..common.provider_base import P2PIndicativeFeed, SpotPriceFeed
from ..common.store import RateDeskStore
from .spread_config import SpreadConfigStore, is_config_active
from .volatility import audit_write_failures_total

FRESHNESS_WINDOW_SECONDS = 60
MAX_STALENESS_PENALTY = 30.0
LOW_DATA_QUALITY = 50

pricing_calculations_total = Counter(
    "ratedesk_pricing_calculations_total",
    "Rate calculations performed",
    ["symbol", "method"],
)


def staleness_confidence(spot_timestamp: datetime, now: datetime) -> float:
    """
    Confidence in [0, 100] for a spot observation of a given age.

    One point is lost per second of age beyond the freshness window, capped
    at 30 points.
    """
    age_seconds = (now - spot_timestamp).total_seconds()
    confidence = 100.0
    if age_seconds > FRESHNESS_WINDOW_SECONDS:
        confidence -= min(MAX_STALENESS_PENALTY, age_seconds - FRESHNESS_WINDOW_SECONDS)
    return max(0.0, min(100.0, confidence))


def compute_fixed_spread(price: Decimal, config: FixedSpreadConfig) -> Decimal:
    """Spread amount for a price, clamped into the config's percentage band."""
    return clamp(
        percent_of(price, config.base_spread_percent),
        percent_of(price, config.min_spread_percent),
        percent_of(price, config.max_spread_percent),
    )


class FixedSpreadPricingEngine:
    """
    Rate calculator applying fixed spreads to spot prices.

    Args:
        store: Persistent store used for audit records
        spread_configs: Configuration lookups
        default_spread: System default applied when no config is stored
        spot_feed: Spot price source used by ``quote``
        p2p_feed: Optional P2P indicative source used by ``quote``
        clock: Time source, injectable for tests
    """

    def __init__(
        self,
        store: RateDeskStore,
        spread_configs: SpreadConfigStore,
        default_spread: Optional[SpreadDefaults] = None,
        spot_feed: Optional[SpotPriceFeed] = None,
        p2p_feed: Optional[P2PIndicativeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.spread_configs = spread_configs
        self.default_spread = default_spread or SpreadDefaults()
        self.spot_feed = spot_feed
        self.p2p_feed = p2p_feed
        self.clock = clock
        self.logger = structlog.get_logger("ratedesk.pricing")

    async def calculate_rate(
        self, symbol: str, spot_rate: SpotRate, partner_id: Optional[str] = None
    ) -> PricingResult:
        """
        Calculate the payout rate for a spot observation.

        Raises:
            SpreadConfigInactive: If the resolved stored config is expired,
                not yet valid or disabled
            ConfigUnavailable: If configuration cannot be read
        """
        config = await self.spread_configs.get_active_fixed_spread_config(
            symbol, partner_id
        )
        now = self.clock()
        if config is None:
            config = self.default_spread.as_config(symbol)
        elif not is_config_active(config, now):
            self.logger.error(
                "Spread configuration is not active",
                symbol=symbol,
                partner_id=partner_id,
                config_id=config.id,
            )
            raise SpreadConfigInactive(symbol, config.id)

        fixed_spread = compute_fixed_spread(spot_rate.price, config)
        final_rate = spot_rate.price + fixed_spread

        result = PricingResult(
            symbol=symbol,
            partner_id=partner_id,
            spot_rate=spot_rate.price,
            fixed_spread=fixed_spread,
            final_rate=final_rate,
            calculation_method=CalculationMethod.FIXED_SPREAD,
            timestamp=now,
            confidence=staleness_confidence(spot_rate.timestamp, now),
            metadata=PricingMetadata(
                spot_source=spot_rate.source,
                spread_config_id=config.id,
                historical_data_points=1,
            ),
        )

        await self._save_result(result)

        pricing_calculations_total.labels(
            symbol=symbol, method=result.calculation_method.value
        ).inc()
        self.logger.info(
            "Rate calculated",
            symbol=symbol,
            partner_id=partner_id,
            spot_rate=str(spot_rate.price),
            fixed_spread=str(fixed_spread),
            final_rate=str(final_rate),
            confidence=result.confidence,
        )
        return result

    async def quote(self, symbol: str, partner_id: Optional[str] = None) -> PricingResult:
        """
        Fetch the spot rate and price it, annotating with P2P market data.

        Raises:
            PricingUnavailable: If no spot feed is wired or it fails
        """
        if self.spot_feed is None:
            raise PricingUnavailable(f"No spot feed configured for {symbol}", {"symbol": symbol})

        try:
            spot_rate = await self.spot_feed.get_spot_rate(symbol)
        except PricingUnavailable:
            raise
        except RateDeskError as e:
            raise PricingUnavailable(
                f"Spot rate unavailable for {symbol}: {e}", {"symbol": symbol}
            ) from e

        result = await self.calculate_rate(symbol, spot_rate, partner_id)
        if self.p2p_feed is None:
            return result
        return await self._attach_p2p(result)

    async def get_pricing_history(self, symbol: str, limit: int = 100) -> list[PricingResult]:
        """Audited pricing results for a symbol, newest first."""
        return await self.store.list_pricing_results(symbol, limit)

    async def _attach_p2p(self, result: PricingResult) -> PricingResult:
        try:
            indicative = await self.p2p_feed.get_indicative_rate(result.symbol)
        except (InsufficientOffers, GatewayUnavailable) as e:
            return result.model_copy(
                update={"warnings": [*result.warnings, f"P2P rate unavailable: {e.message}"]}
            )

        warnings = list(result.warnings)
        if indicative.data_quality < LOW_DATA_QUALITY:
            warnings.append(f"Low P2P data quality: {indicative.data_quality}")

        boundary = await self.spread_configs.get_spread_boundary(result.symbol)
        if boundary is not None:
            deviation = abs(
                safe_div(indicative.rate - result.final_rate, result.final_rate) * 100
            )
            if deviation > boundary.alert_threshold_percent:
                warnings.append(
                    f"P2P rate deviates {deviation:.2f}% from final rate "
                    f"(alert threshold {boundary.alert_threshold_percent}%)"
                )
                self.logger.warning(
                    "P2P deviation above alert threshold",
                    symbol=result.symbol,
                    deviation=str(deviation),
                    threshold=str(boundary.alert_threshold_percent),
                )

        return result.model_copy(
            update={
                "p2p_indicative_rate": indicative.rate,
                "warnings": warnings,
                "metadata": result.metadata.model_copy(
                    update={"p2p_sources": list(indicative.sources)}
                ),
            }
        )

    async def _save_result(self, result: PricingResult) -> None:
        try:
            await self.store.save_pricing_result(result)
        except RateDeskError as e:
            audit_write_failures_total.labels(record="pricing_result").inc()
            self.logger.error(
                "Failed to save pricing result", symbol=result.symbol, error=str(e)
            )
