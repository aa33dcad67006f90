"""
Data models for the RateDesk pricing and deal engine.

This module contains data structures for:
- Market data (spot rates, P2P indicative rates, rate deltas)
- Spread and volatility configuration
- Pricing and volatility analysis results
- Deals, counterparties and execution outcomes
- Aggregate deal statistics
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class RiskLevel(str, Enum):
    """Volatility risk classification."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class CalculationMethod(str, Enum):
    FIXED_SPREAD = "FIXED_SPREAD"
    HYBRID_P2P = "HYBRID_P2P"
    VOLATILITY_ADJUSTED = "VOLATILITY_ADJUSTED"


class DealSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class DealStatus(str, Enum):
    """Deal lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    SETTLING = "SETTLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {DealStatus.COMPLETED, DealStatus.FAILED, DealStatus.CANCELLED}
)
EXECUTABLE_STATUSES = frozenset({DealStatus.PENDING, DealStatus.APPROVED})


class OrderState(str, Enum):
    """Fill state reported by a P2P order gateway."""

    PENDING = "PENDING"
    FILLED = "FILLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Market data


class SpotRate(BaseModel):
    """Immutable spot price snapshot from a price feed."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Decimal = Field(gt=0)
    bid: Decimal
    ask: Decimal
    spread: Decimal
    source: str
    timestamp: datetime
    volume: Optional[Decimal] = None

    @computed_field
    @property
    def mid_price(self) -> Decimal:
        """Calculate mid price from bid and ask."""
        return (self.bid + self.ask) / 2


class P2PIndicativeRate(BaseModel):
    """Weighted indicative rate derived from P2P seller offers."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    rate: Decimal
    data_quality: int = Field(ge=0, le=100)  # 0-100 score
    issues: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    seller_count: int = 0
    calculated_at: datetime = Field(default_factory=utcnow)


class RateDelta(BaseModel):
    """Signed deviation between a P2P indicative rate and the spot rate."""

    symbol: str
    delta: Decimal
    spot_rate: Decimal
    p2p_rate: Optional[Decimal] = None
    timestamp: datetime


# Configuration entities


class FixedSpreadConfig(BaseModel):
    """Fixed spread configuration for a symbol, optionally per partner."""

    id: str = Field(default_factory=lambda: new_id("fsc"))
    symbol: str
    base_spread_percent: Decimal = Field(ge=0)
    min_spread_percent: Decimal = Field(ge=0)
    max_spread_percent: Decimal = Field(ge=0)
    is_active: bool = True
    valid_from: datetime = Field(default_factory=utcnow)
    valid_to: Optional[datetime] = None
    partner_id: Optional[str] = None
    partner_notification_required: bool = False
    created_by: str = "system"
    updated_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_spread_bounds(self) -> "FixedSpreadConfig":
        if not (
            self.min_spread_percent
            <= self.base_spread_percent
            <= self.max_spread_percent
        ):
            raise ValueError(
                "Spread bounds must satisfy min <= base <= max "
                f"(got {self.min_spread_percent} / {self.base_spread_percent} / "
                f"{self.max_spread_percent})"
            )
        if self.valid_to is not None and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


class VolatilitySpreadConfig(BaseModel):
    """Volatility-driven spread adjustment parameters."""

    id: str = Field(default_factory=lambda: new_id("vsc"))
    symbol: str
    base_spread: Decimal = Field(ge=0)
    volatility_multiplier: Decimal = Field(ge=0)
    low_threshold: Decimal
    medium_threshold: Decimal
    high_threshold: Decimal
    critical_threshold: Decimal
    max_volatility_spread: Decimal
    smoothing_factor: Decimal = Field(ge=0, le=1)
    is_active: bool = True
    valid_from: datetime = Field(default_factory=utcnow)
    valid_to: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "VolatilitySpreadConfig":
        if not (
            self.low_threshold
            < self.medium_threshold
            < self.high_threshold
            < self.critical_threshold
        ):
            raise ValueError(
                "Volatility thresholds must be strictly ascending: "
                "low < medium < high < critical"
            )
        if self.max_volatility_spread < self.base_spread:
            raise ValueError("max_volatility_spread must be >= base_spread")
        return self


class SpreadBoundary(BaseModel):
    """Deviation alert limits for a symbol."""

    symbol: str
    min_deviation_percent: Decimal
    max_deviation_percent: Decimal
    alert_threshold_percent: Decimal
    emergency_stop_threshold_percent: Decimal


# Analysis and pricing results


class VolatilityMetrics(BaseModel):
    """Rolling volatility statistics for a symbol, kept as an audit record."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    time_window_hours: int
    variance: Decimal
    standard_deviation: Decimal
    moving_average: Decimal
    volatility_index: Decimal
    risk_level: RiskLevel
    calculated_at: datetime = Field(default_factory=utcnow)


class VolatilityAnalysisMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    data_points: int
    analysis_window_hours: int
    last_update: datetime = Field(default_factory=utcnow)


class VolatilityAnalysisResult(BaseModel):
    """Volatility analysis with the recommended spread."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    current_volatility: VolatilityMetrics
    recommended_spread: Decimal
    spread_adjustment: Decimal
    confidence: float = Field(ge=0, le=100)
    warnings: list[str] = Field(default_factory=list)
    metadata: VolatilityAnalysisMetadata


class PricingMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    spot_source: str
    spread_config_id: str
    historical_data_points: int = 1
    p2p_sources: Optional[list[str]] = None
    volatility_index: Optional[Decimal] = None


class PricingResult(BaseModel):
    """Output of a rate calculation, persisted for audit."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    partner_id: Optional[str] = None
    spot_rate: Decimal
    p2p_indicative_rate: Optional[Decimal] = None
    fixed_spread: Decimal
    volatility_spread: Decimal = Decimal("0")
    final_rate: Decimal
    calculation_method: CalculationMethod
    timestamp: datetime = Field(default_factory=utcnow)
    confidence: float = Field(ge=0, le=100)
    warnings: list[str] = Field(default_factory=list)
    metadata: PricingMetadata

    @computed_field
    @property
    def total_spread(self) -> Decimal:
        """Fixed plus volatility spread."""
        return self.fixed_spread + self.volatility_spread


# Partners, counterparties and orders


class PartnerInfo(BaseModel):
    id: str
    name: str = ""
    is_active: bool = True
    rate_limit_per_minute: int = 60
    tier: str = "BASIC"


class Counterparty(BaseModel):
    """P2P counterparty selected to fill a deal."""

    id: str
    name: str
    rating: Decimal
    completion_rate: Decimal


class OrderPlacement(BaseModel):
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None


class OrderStatus(BaseModel):
    """Fill status of a P2P order."""

    order_id: str
    state: OrderState
    executed_rate: Optional[Decimal] = None
    executed_amount: Optional[Decimal] = None
    slippage_percent: Optional[Decimal] = None
    error: Optional[str] = None


# Deals


class DealRequest(BaseModel):
    """Request to open a deal at the current rate."""

    partner_id: str
    symbol: str
    side: DealSide
    amount: Decimal
    max_rate: Optional[Decimal] = None
    min_rate: Optional[Decimal] = None
    auto_execute: bool = False
    notes: Optional[str] = None


class DealMetadata(BaseModel):
    """Pricing snapshot captured when the deal was quoted."""

    spot_rate: Decimal
    p2p_rate: Optional[Decimal] = None
    spread: Decimal
    volatility_adjustment: Decimal = Decimal("0")
    confidence: float
    source: str


class Deal(BaseModel):
    """A partner deal and its lifecycle state."""

    id: str = Field(default_factory=lambda: new_id("DEAL"))
    partner_id: str
    symbol: str
    side: DealSide
    amount: Decimal
    rate: Decimal
    total_value: Decimal
    status: DealStatus
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    executed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    metadata: DealMetadata
    counterparty: Optional[Counterparty] = None
    p2p_order_id: Optional[str] = None
    notes: Optional[str] = None

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @computed_field
    @property
    def profit(self) -> Decimal:
        """Spread captured over spot for the deal amount."""
        return (self.rate - self.metadata.spot_rate) * self.amount


class DealExecutionMetadata(BaseModel):
    execution_time_ms: int
    counterparty_found: bool
    slippage_percent: Optional[Decimal] = None


class DealExecutionResult(BaseModel):
    """Outcome of a deal execution attempt."""

    success: bool
    deal_id: str
    executed_rate: Optional[Decimal] = None
    executed_amount: Optional[Decimal] = None
    p2p_order_id: Optional[str] = None
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    metadata: DealExecutionMetadata


class StatsPeriod(BaseModel):
    from_date: datetime
    to_date: datetime


class DealStats(BaseModel):
    """Aggregate deal statistics for a partner and time range."""

    total_deals: int
    completed_deals: int
    failed_deals: int
    cancelled_deals: int
    status_counts: dict[str, int]
    success_rate: float
    total_volume: Decimal
    total_profit: Decimal
    average_execution_time_seconds: float
    average_spread: Decimal
    period: StatsPeriod
