"""
SQLAlchemy-backed implementation of the RateDesk store.

Monetary values are stored as strings so they round-trip exactly. Timestamps
are stored as naive UTC. Deal status transitions use a single conditional
``UPDATE ... WHERE id = :id AND status IN (...)`` so concurrent writers are
linearized by the database itself.

The engine is synchronous; every call runs in a worker thread via
``asyncio.to_thread`` so the event loop never blocks on I/O. In-memory SQLite
shares a single connection across those threads, so calls against it are
serialized.
"""

import asyncio
import threading
from collections.abc import Collection
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    case,
    create_engine,
    or_,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import DealNotFound, InvalidDealState, StoreUnavailable
from .models import (
    Counterparty,
    Deal,
    DealMetadata,
    DealSide,
    DealStatus,
    FixedSpreadConfig,
    PricingResult,
    RateDelta,
    SpreadBoundary,
    VolatilityMetrics,
    VolatilitySpreadConfig,
    utcnow,
)
from .store import RateDeskStore, format_note


class Base(DeclarativeBase):
    pass


class FixedSpreadConfigRow(Base):
    __tablename__ = "fixed_spread_configs"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    payload: Mapped[str] = mapped_column(Text)


class VolatilityConfigRow(Base):
    __tablename__ = "volatility_spread_configs"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    payload: Mapped[str] = mapped_column(Text)


class SpreadBoundaryRow(Base):
    __tablename__ = "spread_boundaries"
    symbol: Mapped[str] = mapped_column(String, primary_key=True)
    payload: Mapped[str] = mapped_column(Text)


class RateDeltaRow(Base):
    __tablename__ = "rate_deltas"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    delta: Mapped[str] = mapped_column(String)
    spot_rate: Mapped[str] = mapped_column(String)
    p2p_rate: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)


class PricingResultRow(Base):
    __tablename__ = "pricing_results"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    partner_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    final_rate: Mapped[str] = mapped_column(String)
    calculation_method: Mapped[str] = mapped_column(String)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    payload: Mapped[str] = mapped_column(Text)


class VolatilityMetricsRow(Base):
    __tablename__ = "volatility_metrics"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    risk_level: Mapped[str] = mapped_column(String)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    payload: Mapped[str] = mapped_column(Text)


class DealRow(Base):
    __tablename__ = "deals"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    partner_id: Mapped[str] = mapped_column(String, index=True)
    symbol: Mapped[str] = mapped_column(String, index=True)
    side: Mapped[str] = mapped_column(String)
    amount: Mapped[str] = mapped_column(String)
    rate: Mapped[str] = mapped_column(String)
    total_value: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    spot_rate: Mapped[str] = mapped_column(String)
    p2p_rate: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    spread: Mapped[str] = mapped_column(String)
    volatility_adjustment: Mapped[str] = mapped_column(String)
    confidence: Mapped[str] = mapped_column(String)
    source: Mapped[str] = mapped_column(String)
    counterparty_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    counterparty_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    counterparty_rating: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    counterparty_completion_rate: Mapped[Optional[str]] = mapped_column(
        String, nullable=True
    )
    p2p_order_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _opt_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def _opt_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _deal_to_row(deal: Deal) -> DealRow:
    row = DealRow(
        id=deal.id,
        partner_id=deal.partner_id,
        symbol=deal.symbol,
        side=deal.side.value,
        amount=str(deal.amount),
        rate=str(deal.rate),
        total_value=str(deal.total_value),
        status=deal.status.value,
        created_at=_to_db_time(deal.created_at),
        updated_at=_to_db_time(deal.updated_at),
        executed_at=_to_db_time(deal.executed_at),
        closed_at=_to_db_time(deal.closed_at),
        spot_rate=str(deal.metadata.spot_rate),
        p2p_rate=_opt_str(deal.metadata.p2p_rate),
        spread=str(deal.metadata.spread),
        volatility_adjustment=str(deal.metadata.volatility_adjustment),
        confidence=str(deal.metadata.confidence),
        source=deal.metadata.source,
        p2p_order_id=deal.p2p_order_id,
        notes=deal.notes,
    )
    row_updates = _counterparty_columns(deal.counterparty)
    for key, value in row_updates.items():
        setattr(row, key, value)
    return row


def _counterparty_columns(counterparty: Optional[Counterparty]) -> dict[str, Any]:
    if counterparty is None:
        return {}
    return {
        "counterparty_id": counterparty.id,
        "counterparty_name": counterparty.name,
        "counterparty_rating": str(counterparty.rating),
        "counterparty_completion_rate": str(counterparty.completion_rate),
    }


def _row_to_deal(row: DealRow) -> Deal:
    counterparty = None
    if row.counterparty_id:
        counterparty = Counterparty(
            id=row.counterparty_id,
            name=row.counterparty_name or "",
            rating=Decimal(row.counterparty_rating or "0"),
            completion_rate=Decimal(row.counterparty_completion_rate or "0"),
        )
    return Deal(
        id=row.id,
        partner_id=row.partner_id,
        symbol=row.symbol,
        side=DealSide(row.side),
        amount=Decimal(row.amount),
        rate=Decimal(row.rate),
        total_value=Decimal(row.total_value),
        status=DealStatus(row.status),
        created_at=_from_db_time(row.created_at),
        updated_at=_from_db_time(row.updated_at),
        executed_at=_from_db_time(row.executed_at),
        closed_at=_from_db_time(row.closed_at),
        metadata=DealMetadata(
            spot_rate=Decimal(row.spot_rate),
            p2p_rate=_opt_decimal(row.p2p_rate),
            spread=Decimal(row.spread),
            volatility_adjustment=Decimal(row.volatility_adjustment),
            confidence=float(row.confidence),
            source=row.source,
        ),
        counterparty=counterparty,
        p2p_order_id=row.p2p_order_id,
        notes=row.notes,
    )


def _deal_changes_to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    """Map Deal field updates onto DealRow columns."""
    columns: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "counterparty":
            columns.update(_counterparty_columns(value))
        elif key in ("executed_at", "closed_at", "updated_at"):
            columns[key] = _to_db_time(value)
        elif key in ("p2p_order_id",):
            columns[key] = value
        else:
            raise ValueError(f"Unsupported deal field update: {key}")
    return columns


class SqlStore(RateDeskStore):
    """RateDesk store over any SQLAlchemy database URL."""

    def __init__(self, database_url: str = "sqlite:///./ratedesk.db", echo: bool = False):
        self.database_url = database_url
        engine_kwargs: dict[str, Any] = {"echo": echo, "future": True, "pool_pre_ping": True}
        # Held around every call when all threads share one connection
        self._connection_lock: Optional[threading.Lock] = None
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url == "sqlite://":
                engine_kwargs["poolclass"] = StaticPool
                self._connection_lock = threading.Lock()
        self.engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def init_db(self) -> None:
        """Create all tables if they do not exist."""
        Base.metadata.create_all(bind=self.engine)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(self._call, fn, args, kwargs)
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Store operation failed: {e}") from e

    def _call(self, fn: Callable[..., Any], args: tuple, kwargs: dict[str, Any]) -> Any:
        if self._connection_lock is None:
            return fn(*args, **kwargs)
        with self._connection_lock:
            return fn(*args, **kwargs)

    # Fixed spread configuration

    async def save_fixed_spread_config(self, config: FixedSpreadConfig) -> None:
        await self._run(self._save_fixed_spread_config, config)

    def _save_fixed_spread_config(self, config: FixedSpreadConfig) -> None:
        with self._session_factory() as session:
            session.merge(
                FixedSpreadConfigRow(
                    id=config.id,
                    symbol=config.symbol,
                    partner_id=config.partner_id,
                    is_active=config.is_active,
                    created_at=_to_db_time(config.created_at),
                    payload=config.model_dump_json(),
                )
            )
            session.commit()

    async def find_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str]
    ) -> Optional[FixedSpreadConfig]:
        return await self._run(self._find_fixed_spread_config, symbol, partner_id)

    def _find_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str]
    ) -> Optional[FixedSpreadConfig]:
        partner_clause = (
            FixedSpreadConfigRow.partner_id.is_(None)
            if partner_id is None
            else FixedSpreadConfigRow.partner_id == partner_id
        )
        stmt = (
            select(FixedSpreadConfigRow)
            .where(
                FixedSpreadConfigRow.symbol == symbol,
                partner_clause,
                FixedSpreadConfigRow.is_active.is_(True),
            )
            .order_by(FixedSpreadConfigRow.created_at.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            if row is None:
                return None
            return FixedSpreadConfig.model_validate_json(row.payload)

    async def list_fixed_spread_configs(self, symbol: str) -> list[FixedSpreadConfig]:
        return await self._run(self._list_fixed_spread_configs, symbol)

    def _list_fixed_spread_configs(self, symbol: str) -> list[FixedSpreadConfig]:
        stmt = (
            select(FixedSpreadConfigRow)
            .where(FixedSpreadConfigRow.symbol == symbol)
            .order_by(FixedSpreadConfigRow.created_at.desc())
        )
        with self._session_factory() as session:
            return [
                FixedSpreadConfig.model_validate_json(row.payload)
                for row in session.scalars(stmt)
            ]

    # Volatility configuration

    async def save_volatility_config(self, config: VolatilitySpreadConfig) -> None:
        await self._run(self._save_volatility_config, config)

    def _save_volatility_config(self, config: VolatilitySpreadConfig) -> None:
        with self._session_factory() as session:
            session.merge(
                VolatilityConfigRow(
                    id=config.id,
                    symbol=config.symbol,
                    is_active=config.is_active,
                    created_at=_to_db_time(config.created_at),
                    payload=config.model_dump_json(),
                )
            )
            session.commit()

    async def find_volatility_config(
        self, symbol: str
    ) -> Optional[VolatilitySpreadConfig]:
        return await self._run(self._find_volatility_config, symbol)

    def _find_volatility_config(self, symbol: str) -> Optional[VolatilitySpreadConfig]:
        stmt = (
            select(VolatilityConfigRow)
            .where(
                VolatilityConfigRow.symbol == symbol,
                VolatilityConfigRow.is_active.is_(True),
            )
            .order_by(VolatilityConfigRow.created_at.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            if row is None:
                return None
            return VolatilitySpreadConfig.model_validate_json(row.payload)

    # Spread boundaries

    async def save_spread_boundary(self, boundary: SpreadBoundary) -> None:
        await self._run(self._save_spread_boundary, boundary)

    def _save_spread_boundary(self, boundary: SpreadBoundary) -> None:
        with self._session_factory() as session:
            session.merge(
                SpreadBoundaryRow(
                    symbol=boundary.symbol, payload=boundary.model_dump_json()
                )
            )
            session.commit()

    async def get_spread_boundary(self, symbol: str) -> Optional[SpreadBoundary]:
        return await self._run(self._get_spread_boundary, symbol)

    def _get_spread_boundary(self, symbol: str) -> Optional[SpreadBoundary]:
        with self._session_factory() as session:
            row = session.get(SpreadBoundaryRow, symbol)
            if row is None:
                return None
            return SpreadBoundary.model_validate_json(row.payload)

    # Rate deltas

    async def add_rate_delta(self, delta: RateDelta) -> None:
        await self._run(self._add_rate_delta, delta)

    def _add_rate_delta(self, delta: RateDelta) -> None:
        with self._session_factory() as session:
            session.add(
                RateDeltaRow(
                    symbol=delta.symbol,
                    delta=str(delta.delta),
                    spot_rate=str(delta.spot_rate),
                    p2p_rate=_opt_str(delta.p2p_rate),
                    timestamp=_to_db_time(delta.timestamp),
                )
            )
            session.commit()

    async def get_rate_deltas(self, symbol: str, since: datetime) -> list[RateDelta]:
        return await self._run(self._get_rate_deltas, symbol, since)

    def _get_rate_deltas(self, symbol: str, since: datetime) -> list[RateDelta]:
        stmt = (
            select(RateDeltaRow)
            .where(
                RateDeltaRow.symbol == symbol,
                RateDeltaRow.timestamp >= _to_db_time(since),
            )
            .order_by(RateDeltaRow.timestamp.asc(), RateDeltaRow.id.asc())
        )
        with self._session_factory() as session:
            return [
                RateDelta(
                    symbol=row.symbol,
                    delta=Decimal(row.delta),
                    spot_rate=Decimal(row.spot_rate),
                    p2p_rate=_opt_decimal(row.p2p_rate),
                    timestamp=_from_db_time(row.timestamp),
                )
                for row in session.scalars(stmt)
            ]

    # Audit records

    async def save_pricing_result(self, result: PricingResult) -> None:
        await self._run(self._save_pricing_result, result)

    def _save_pricing_result(self, result: PricingResult) -> None:
        with self._session_factory() as session:
            session.add(
                PricingResultRow(
                    symbol=result.symbol,
                    partner_id=result.partner_id,
                    final_rate=str(result.final_rate),
                    calculation_method=result.calculation_method.value,
                    timestamp=_to_db_time(result.timestamp),
                    payload=result.model_dump_json(exclude={"total_spread"}),
                )
            )
            session.commit()

    async def list_pricing_results(
        self, symbol: str, limit: int = 100
    ) -> list[PricingResult]:
        return await self._run(self._list_pricing_results, symbol, limit)

    def _list_pricing_results(self, symbol: str, limit: int) -> list[PricingResult]:
        stmt = (
            select(PricingResultRow)
            .where(PricingResultRow.symbol == symbol)
            .order_by(PricingResultRow.timestamp.desc(), PricingResultRow.id.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [
                PricingResult.model_validate_json(row.payload)
                for row in session.scalars(stmt)
            ]

    async def save_volatility_metrics(self, metrics: VolatilityMetrics) -> None:
        await self._run(self._save_volatility_metrics, metrics)

    def _save_volatility_metrics(self, metrics: VolatilityMetrics) -> None:
        with self._session_factory() as session:
            session.add(
                VolatilityMetricsRow(
                    symbol=metrics.symbol,
                    risk_level=metrics.risk_level.value,
                    calculated_at=_to_db_time(metrics.calculated_at),
                    payload=metrics.model_dump_json(),
                )
            )
            session.commit()

    async def list_volatility_metrics(
        self, symbol: str, limit: int = 100
    ) -> list[VolatilityMetrics]:
        return await self._run(self._list_volatility_metrics, symbol, limit)

    def _list_volatility_metrics(self, symbol: str, limit: int) -> list[VolatilityMetrics]:
        stmt = (
            select(VolatilityMetricsRow)
            .where(VolatilityMetricsRow.symbol == symbol)
            .order_by(
                VolatilityMetricsRow.calculated_at.desc(),
                VolatilityMetricsRow.id.desc(),
            )
            .limit(limit)
        )
        with self._session_factory() as session:
            return [
                VolatilityMetrics.model_validate_json(row.payload)
                for row in session.scalars(stmt)
            ]

    # Deals

    async def insert_deal(self, deal: Deal) -> None:
        await self._run(self._insert_deal, deal)

    def _insert_deal(self, deal: Deal) -> None:
        with self._session_factory() as session:
            session.add(_deal_to_row(deal))
            session.commit()

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        return await self._run(self._get_deal, deal_id)

    def _get_deal(self, deal_id: str) -> Optional[Deal]:
        with self._session_factory() as session:
            row = session.get(DealRow, deal_id)
            return _row_to_deal(row) if row else None

    async def list_deals(
        self,
        partner_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Deal]:
        return await self._run(self._list_deals, partner_id, from_date, to_date, limit)

    def _list_deals(
        self,
        partner_id: Optional[str],
        from_date: Optional[datetime],
        to_date: Optional[datetime],
        limit: Optional[int],
    ) -> list[Deal]:
        stmt = select(DealRow)
        if partner_id is not None:
            stmt = stmt.where(DealRow.partner_id == partner_id)
        if from_date is not None:
            stmt = stmt.where(DealRow.created_at >= _to_db_time(from_date))
        if to_date is not None:
            stmt = stmt.where(DealRow.created_at <= _to_db_time(to_date))
        stmt = stmt.order_by(DealRow.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [_row_to_deal(row) for row in session.scalars(stmt)]

    async def update_deal_if_status(
        self,
        deal_id: str,
        expected: Collection[DealStatus],
        *,
        status: Optional[DealStatus] = None,
        note: Optional[str] = None,
        **changes: Any,
    ) -> Deal:
        return await self._run(
            self._update_deal_if_status, deal_id, expected, status, note, changes
        )

    def _update_deal_if_status(
        self,
        deal_id: str,
        expected: Collection[DealStatus],
        status: Optional[DealStatus],
        note: Optional[str],
        changes: dict[str, Any],
    ) -> Deal:
        values = _deal_changes_to_columns(changes)
        values["updated_at"] = _to_db_time(utcnow())
        if status is not None:
            values["status"] = status.value
        if note is not None:
            line = format_note(note)
            values["notes"] = case(
                (or_(DealRow.notes.is_(None), DealRow.notes == ""), line),
                else_=DealRow.notes + "\n" + line,
            )

        stmt = (
            update(DealRow)
            .where(
                DealRow.id == deal_id,
                DealRow.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            result = session.execute(stmt)
            session.commit()
            row = session.get(DealRow, deal_id, populate_existing=True)
            if row is None:
                raise DealNotFound(deal_id)
            if result.rowcount == 0:
                raise InvalidDealState(deal_id, DealStatus(row.status), expected)
            return _row_to_deal(row)
