"""
Tests for spread configuration resolution.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from ratedesk.common.errors import ConfigNotFound, ConfigUnavailable, StoreUnavailable
from ratedesk.common.models import FixedSpreadConfig, VolatilitySpreadConfig
from ratedesk.common.store import InMemoryStore
from ratedesk.pricing.spread_config import SpreadConfigStore, is_config_active

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_config(**overrides) -> FixedSpreadConfig:
    values = dict(
        symbol="EUR/USD",
        base_spread_percent=Decimal("0.5"),
        min_spread_percent=Decimal("0.1"),
        max_spread_percent=Decimal("2.0"),
        valid_from=NOW - timedelta(days=1),
    )
    values.update(overrides)
    return FixedSpreadConfig(**values)


class TestIsConfigActive:
    """Test validity window evaluation."""

    def test_active_within_window(self):
        assert is_config_active(make_config(), NOW)
        assert is_config_active(make_config(valid_to=NOW + timedelta(hours=1)), NOW)

    def test_inactive_flag(self):
        assert not is_config_active(make_config(is_active=False), NOW)

    def test_not_yet_valid(self):
        config = make_config(valid_from=NOW + timedelta(minutes=1))
        assert not is_config_active(config, NOW)

    def test_valid_to_is_exclusive(self):
        assert not is_config_active(make_config(valid_to=NOW), NOW)
        assert not is_config_active(make_config(valid_to=NOW - timedelta(seconds=1)), NOW)


class TestSpreadConfigStore:
    """Test configuration lookups and administration."""

    def setup_method(self):
        self.store = InMemoryStore()
        self.configs = SpreadConfigStore(self.store)

    @pytest.mark.asyncio
    async def test_partner_config_takes_precedence(self):
        default = await self.configs.save_fixed_spread_config(make_config())
        partner = await self.configs.save_fixed_spread_config(
            make_config(partner_id="p1", base_spread_percent=Decimal("1.5"))
        )

        assert (await self.configs.get_active_fixed_spread_config("EUR/USD", "p1")).id == partner.id
        assert (await self.configs.get_active_fixed_spread_config("EUR/USD", "p2")).id == default.id
        assert (await self.configs.get_active_fixed_spread_config("EUR/USD")).id == default.id

    @pytest.mark.asyncio
    async def test_nothing_stored(self):
        assert await self.configs.get_active_fixed_spread_config("EUR/USD", "p1") is None
        with pytest.raises(ConfigNotFound):
            await self.configs.require_fixed_spread_config("EUR/USD", "p1")

    @pytest.mark.asyncio
    async def test_store_failure_maps_to_config_unavailable(self):
        with patch.object(
            self.store,
            "find_fixed_spread_config",
            AsyncMock(side_effect=StoreUnavailable("db down")),
        ):
            with pytest.raises(ConfigUnavailable) as exc_info:
                await self.configs.get_active_fixed_spread_config("EUR/USD", "p1")

        assert exc_info.value.retryable
        assert exc_info.value.details["symbol"] == "EUR/USD"

    @pytest.mark.asyncio
    async def test_deactivate(self):
        config = await self.configs.save_fixed_spread_config(make_config())

        updated = await self.configs.deactivate_fixed_spread_config(
            "EUR/USD", config.id, updated_by="ops"
        )

        assert not updated.is_active
        assert updated.updated_by == "ops"
        assert await self.configs.get_active_fixed_spread_config("EUR/USD") is None

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self):
        with pytest.raises(ConfigNotFound):
            await self.configs.deactivate_fixed_spread_config("EUR/USD", "fsc_missing")

    @pytest.mark.asyncio
    async def test_volatility_config_default_and_stored(self):
        default = await self.configs.get_active_volatility_config("EUR/USD")
        assert default.id == "default"
        assert default.base_spread == Decimal("0.5")
        assert default.critical_threshold == Decimal("15.0")

        stored = VolatilitySpreadConfig(
            symbol="EUR/USD",
            base_spread=Decimal("1.0"),
            volatility_multiplier=Decimal("3.0"),
            low_threshold=Decimal("1"),
            medium_threshold=Decimal("3"),
            high_threshold=Decimal("6"),
            critical_threshold=Decimal("9"),
            max_volatility_spread=Decimal("4"),
            smoothing_factor=Decimal("1"),
        )
        await self.configs.save_volatility_config(stored)

        assert (await self.configs.get_active_volatility_config("EUR/USD")).id == stored.id

    @pytest.mark.asyncio
    async def test_volatility_config_falls_back_when_store_down(self):
        with patch.object(
            self.store,
            "find_volatility_config",
            AsyncMock(side_effect=StoreUnavailable("db down")),
        ):
            config = await self.configs.get_active_volatility_config("EUR/USD")

        assert config.id == "default"

    @pytest.mark.asyncio
    async def test_spread_boundary_store_failure(self):
        with patch.object(
            self.store,
            "get_spread_boundary",
            AsyncMock(side_effect=StoreUnavailable("db down")),
        ):
            with pytest.raises(ConfigUnavailable):
                await self.configs.get_spread_boundary("EUR/USD")
