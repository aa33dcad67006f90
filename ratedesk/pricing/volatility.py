"""
Volatility analysis of the P2P/spot rate delta time series.

The analyzer computes rolling statistics over recorded rate deltas
(``p2p_rate - spot_rate``), classifies the volatility index into a risk
level, and recommends a spread that widens as volatility rises. It never
fails for lack of data: fewer than ``MIN_DATA_POINTS`` samples produce a
well-defined default result.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from prometheus_client import Counter

from ..common.decimal_math import (
    ZERO,
    dmin,
    dsqrt,
    mean,
    population_variance,
    safe_div,
)
from ..common.errors import RateDeskError, StoreUnavailable
from ..common.models import (
    RateDelta,
    RiskLevel,
    VolatilityAnalysisMetadata,
    VolatilityAnalysisResult,
    VolatilityMetrics,
    VolatilitySpreadConfig,
    utcnow,
)
from ..common.store import RateDeskStore
from .spread_config import SpreadConfigStore

MIN_DATA_POINTS = 10
FULL_CONFIDENCE_DATA_POINTS = 50

# Fixed risk classification bounds on the volatility index (inclusive lower)
MEDIUM_RISK_INDEX = Decimal("5")
HIGH_RISK_INDEX = Decimal("10")
CRITICAL_RISK_INDEX = Decimal("15")

# Share of the volatility multiplier applied per threshold band
LOW_BAND_FACTOR = Decimal("0.2")
MEDIUM_BAND_FACTOR = Decimal("0.5")
HIGH_BAND_FACTOR = Decimal("0.8")

INSUFFICIENT_DATA_WARNING = "Insufficient historical data for volatility analysis"
CRITICAL_WARNING = "Critical volatility detected - maximum spread protection activated"
HIGH_WARNING = "High volatility detected - increased spread protection recommended"
MANUAL_REVIEW_WARNING = "Volatility exceeds critical threshold - consider manual review"

volatility_analyses_total = Counter(
    "ratedesk_volatility_analyses_total",
    "Volatility analyses performed",
    ["symbol", "risk_level"],
)
audit_write_failures_total = Counter(
    "ratedesk_audit_write_failures_total",
    "Audit records that could not be persisted",
    ["record"],
)


def classify_risk(volatility_index: Decimal) -> RiskLevel:
    """Map a volatility index to its risk level."""
    if volatility_index >= CRITICAL_RISK_INDEX:
        return RiskLevel.CRITICAL
    if volatility_index >= HIGH_RISK_INDEX:
        return RiskLevel.HIGH
    if volatility_index >= MEDIUM_RISK_INDEX:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_spread_adjustment(
    volatility_index: Decimal, config: VolatilitySpreadConfig
) -> Decimal:
    """
    Piecewise-linear spread adjustment across the configured thresholds.

    Within each band the multiplier is scaled by how far the index has moved
    through the band. At or above the critical threshold the full headroom
    ``max_volatility_spread - base_spread`` applies. The result is damped by
    the smoothing factor.
    """
    if volatility_index >= config.critical_threshold:
        adjustment = config.max_volatility_spread - config.base_spread
    elif volatility_index >= config.high_threshold:
        factor = safe_div(
            volatility_index - config.high_threshold,
            config.critical_threshold - config.high_threshold,
        )
        adjustment = config.volatility_multiplier * factor * HIGH_BAND_FACTOR
    elif volatility_index >= config.medium_threshold:
        factor = safe_div(
            volatility_index - config.medium_threshold,
            config.high_threshold - config.medium_threshold,
        )
        adjustment = config.volatility_multiplier * factor * MEDIUM_BAND_FACTOR
    elif volatility_index >= config.low_threshold:
        factor = safe_div(
            volatility_index - config.low_threshold,
            config.medium_threshold - config.low_threshold,
        )
        adjustment = config.volatility_multiplier * factor * LOW_BAND_FACTOR
    else:
        adjustment = ZERO

    return adjustment * config.smoothing_factor


def compute_confidence(data_points: int, risk_level: RiskLevel) -> float:
    """Confidence in [0, 100], reduced for thin data and higher risk."""
    confidence = 100.0
    if data_points < FULL_CONFIDENCE_DATA_POINTS:
        confidence -= (FULL_CONFIDENCE_DATA_POINTS - data_points) * 0.5

    if risk_level == RiskLevel.CRITICAL:
        confidence -= 20
    elif risk_level == RiskLevel.HIGH:
        confidence -= 10
    elif risk_level == RiskLevel.MEDIUM:
        confidence -= 5

    return max(0.0, min(100.0, confidence))


def compute_metrics(
    symbol: str,
    deltas: list[Decimal],
    time_window_hours: int,
    calculated_at: Optional[datetime] = None,
) -> VolatilityMetrics:
    """Rolling statistics over a non-empty list of deltas."""
    moving_average = mean(deltas)
    variance = population_variance(deltas, moving_average)
    standard_deviation = dsqrt(variance)

    # Coefficient of variation as a percentage; zero mean gives index 0
    if moving_average == 0:
        volatility_index = ZERO
    else:
        volatility_index = safe_div(standard_deviation, abs(moving_average)) * 100

    return VolatilityMetrics(
        symbol=symbol,
        time_window_hours=time_window_hours,
        variance=variance,
        standard_deviation=standard_deviation,
        moving_average=moving_average,
        volatility_index=volatility_index,
        risk_level=classify_risk(volatility_index),
        calculated_at=calculated_at or utcnow(),
    )


def build_warnings(metrics: VolatilityMetrics, config: VolatilitySpreadConfig) -> list[str]:
    warnings = []
    if metrics.risk_level == RiskLevel.CRITICAL:
        warnings.append(CRITICAL_WARNING)
    if metrics.risk_level == RiskLevel.HIGH:
        warnings.append(HIGH_WARNING)
    if metrics.volatility_index >= config.critical_threshold:
        warnings.append(MANUAL_REVIEW_WARNING)
    return warnings


class VolatilityAnalyzer:
    """Volatility analysis and spread recommendation per symbol."""

    def __init__(
        self,
        store: RateDeskStore,
        spread_configs: SpreadConfigStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.spread_configs = spread_configs
        self.clock = clock
        self.logger = structlog.get_logger("ratedesk.volatility")

    async def analyze_volatility(
        self, symbol: str, time_window_hours: int = 24
    ) -> VolatilityAnalysisResult:
        """
        Analyze volatility for a symbol and recommend a spread.

        Args:
            symbol: Currency pair symbol
            time_window_hours: Trailing window of deltas to analyze

        Returns:
            Analysis result; a default LOW-risk result with confidence 0 when
            fewer than ``MIN_DATA_POINTS`` deltas are available
        """
        now = self.clock()
        self.logger.info(
            "Starting volatility analysis", symbol=symbol, window_hours=time_window_hours
        )

        deltas = await self._load_deltas(symbol, now - timedelta(hours=time_window_hours))
        config = await self.spread_configs.get_active_volatility_config(symbol)

        if len(deltas) < MIN_DATA_POINTS:
            self.logger.warning(
                "Insufficient data for volatility analysis",
                symbol=symbol,
                data_points=len(deltas),
                required=MIN_DATA_POINTS,
            )
            return self._default_result(symbol, time_window_hours, len(deltas), config, now)

        metrics = compute_metrics(
            symbol, [d.delta for d in deltas], time_window_hours, calculated_at=now
        )
        adjustment = compute_spread_adjustment(metrics.volatility_index, config)
        recommended = dmin(config.base_spread + adjustment, config.max_volatility_spread)

        await self._save_metrics(metrics)

        result = VolatilityAnalysisResult(
            symbol=symbol,
            current_volatility=metrics,
            recommended_spread=recommended,
            spread_adjustment=adjustment,
            confidence=compute_confidence(len(deltas), metrics.risk_level),
            warnings=build_warnings(metrics, config),
            metadata=VolatilityAnalysisMetadata(
                data_points=len(deltas),
                analysis_window_hours=time_window_hours,
                last_update=now,
            ),
        )

        volatility_analyses_total.labels(
            symbol=symbol, risk_level=metrics.risk_level.value
        ).inc()
        self.logger.info(
            "Volatility analysis completed",
            symbol=symbol,
            volatility_index=str(metrics.volatility_index),
            risk_level=metrics.risk_level.value,
            recommended_spread=str(recommended),
            confidence=result.confidence,
        )
        return result

    async def batch_analyze(
        self, symbols: list[str], time_window_hours: int = 24
    ) -> dict[str, VolatilityAnalysisResult]:
        """Analyze several symbols concurrently, omitting those that fail."""
        outcomes = await asyncio.gather(
            *(self.analyze_volatility(symbol, time_window_hours) for symbol in symbols),
            return_exceptions=True,
        )

        results = {}
        for symbol, outcome in zip(symbols, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self.logger.error(
                    "Volatility analysis failed", symbol=symbol, error=str(outcome)
                )
                continue
            results[symbol] = outcome
        return results

    async def record_rate_delta(
        self,
        symbol: str,
        spot_rate: Decimal,
        p2p_rate: Decimal,
        timestamp: Optional[datetime] = None,
    ) -> RateDelta:
        """Store one point of the delta time series (``p2p - spot``)."""
        delta = RateDelta(
            symbol=symbol,
            delta=p2p_rate - spot_rate,
            spot_rate=spot_rate,
            p2p_rate=p2p_rate,
            timestamp=timestamp or self.clock(),
        )
        await self.store.add_rate_delta(delta)
        self.logger.debug("Rate delta recorded", symbol=symbol, delta=str(delta.delta))
        return delta

    async def _load_deltas(self, symbol: str, since: datetime) -> list[RateDelta]:
        try:
            return await self.store.get_rate_deltas(symbol, since)
        except StoreUnavailable as e:
            self.logger.error(
                "Failed to load historical deltas", symbol=symbol, error=str(e)
            )
            return []

    async def _save_metrics(self, metrics: VolatilityMetrics) -> None:
        try:
            await self.store.save_volatility_metrics(metrics)
        except RateDeskError as e:
            audit_write_failures_total.labels(record="volatility_metrics").inc()
            self.logger.error(
                "Failed to save volatility metrics", symbol=metrics.symbol, error=str(e)
            )

    def _default_result(
        self,
        symbol: str,
        time_window_hours: int,
        data_points: int,
        config: VolatilitySpreadConfig,
        now: datetime,
    ) -> VolatilityAnalysisResult:
        metrics = VolatilityMetrics(
            symbol=symbol,
            time_window_hours=time_window_hours,
            variance=ZERO,
            standard_deviation=ZERO,
            moving_average=ZERO,
            volatility_index=ZERO,
            risk_level=RiskLevel.LOW,
            calculated_at=now,
        )
        return VolatilityAnalysisResult(
            symbol=symbol,
            current_volatility=metrics,
            recommended_spread=config.base_spread,
            spread_adjustment=ZERO,
            confidence=0.0,
            warnings=[INSUFFICIENT_DATA_WARNING],
            metadata=VolatilityAnalysisMetadata(
                data_points=data_points,
                analysis_window_hours=time_window_hours,
                last_update=now,
            ),
        )
