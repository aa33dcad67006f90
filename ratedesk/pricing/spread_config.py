"""
Spread configuration lookup and administration.

Resolves the fixed spread configuration for a symbol and partner
(partner-specific first, then the symbol default), the volatility
configuration for a symbol (falling back to the system default) and the
deviation boundaries used for alerting.
"""

from datetime import datetime
from typing import Optional

import structlog

from ..common.config import VolatilityDefaults
from ..common.errors import ConfigNotFound, ConfigUnavailable, StoreUnavailable
from ..common.models import (
    FixedSpreadConfig,
    SpreadBoundary,
    VolatilitySpreadConfig,
    utcnow,
)
from ..common.store import RateDeskStore


def is_config_active(config, now: Optional[datetime] = None) -> bool:
    """
    Check whether a configuration applies at ``now``.

    A config is active when its flag is set, ``valid_from <= now`` and
    ``valid_to`` is either unset or strictly after ``now``.
    """
    now = now or utcnow()
    if not config.is_active:
        return False
    if config.valid_from > now:
        return False
    if config.valid_to is not None and now >= config.valid_to:
        return False
    return True


class SpreadConfigStore:
    """Configuration lookups on top of the persistent store."""

    def __init__(
        self,
        store: RateDeskStore,
        volatility_defaults: Optional[VolatilityDefaults] = None,
    ):
        self.store = store
        self.volatility_defaults = volatility_defaults or VolatilityDefaults()
        self.logger = structlog.get_logger("ratedesk.spread_config")

    async def get_active_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str] = None
    ) -> Optional[FixedSpreadConfig]:
        """
        Resolve the fixed spread config for a symbol.

        Precedence: newest active partner-specific config, then newest active
        symbol default. Returns None when neither exists; the caller applies
        the system default.

        Raises:
            ConfigUnavailable: If the backing store cannot be read
        """
        try:
            if partner_id is not None:
                config = await self.store.find_fixed_spread_config(symbol, partner_id)
                if config is not None:
                    return config
            return await self.store.find_fixed_spread_config(symbol, None)
        except StoreUnavailable as e:
            raise ConfigUnavailable(
                f"Spread configuration unavailable for {symbol}: {e}",
                {"symbol": symbol, "partner_id": partner_id},
            ) from e

    async def require_fixed_spread_config(
        self, symbol: str, partner_id: Optional[str] = None
    ) -> FixedSpreadConfig:
        """Strict lookup that raises ``ConfigNotFound`` when nothing is stored."""
        config = await self.get_active_fixed_spread_config(symbol, partner_id)
        if config is None:
            raise ConfigNotFound(
                f"No fixed spread configuration for {symbol}",
                {"symbol": symbol, "partner_id": partner_id},
            )
        return config

    async def get_active_volatility_config(self, symbol: str) -> VolatilitySpreadConfig:
        """Stored volatility config for the symbol, or the system default."""
        try:
            config = await self.store.find_volatility_config(symbol)
        except StoreUnavailable as e:
            self.logger.warning(
                "Volatility config unavailable, using system default",
                symbol=symbol,
                error=str(e),
            )
            config = None

        if config is None:
            return self.volatility_defaults.as_config(symbol)
        return config

    async def get_spread_boundary(self, symbol: str) -> Optional[SpreadBoundary]:
        try:
            return await self.store.get_spread_boundary(symbol)
        except StoreUnavailable as e:
            raise ConfigUnavailable(
                f"Spread boundary unavailable for {symbol}: {e}", {"symbol": symbol}
            ) from e

    # Administration

    async def save_fixed_spread_config(self, config: FixedSpreadConfig) -> FixedSpreadConfig:
        await self.store.save_fixed_spread_config(config)
        self.logger.info(
            "Fixed spread config saved",
            config_id=config.id,
            symbol=config.symbol,
            partner_id=config.partner_id,
            base_spread=str(config.base_spread_percent),
        )
        return config

    async def deactivate_fixed_spread_config(
        self, symbol: str, config_id: str, updated_by: str = "system"
    ) -> FixedSpreadConfig:
        """
        Switch off a stored config so lookups skip it.

        Raises:
            ConfigNotFound: If no config with that id exists for the symbol
        """
        for config in await self.store.list_fixed_spread_configs(symbol):
            if config.id == config_id:
                updated = config.model_copy(
                    update={
                        "is_active": False,
                        "updated_by": updated_by,
                        "updated_at": utcnow(),
                    }
                )
                await self.store.save_fixed_spread_config(updated)
                self.logger.info(
                    "Fixed spread config deactivated", config_id=config_id, symbol=symbol
                )
                return updated

        raise ConfigNotFound(
            f"Fixed spread configuration not found: {config_id}",
            {"symbol": symbol, "config_id": config_id},
        )

    async def save_volatility_config(
        self, config: VolatilitySpreadConfig
    ) -> VolatilitySpreadConfig:
        await self.store.save_volatility_config(config)
        self.logger.info("Volatility config saved", config_id=config.id, symbol=config.symbol)
        return config

    async def save_spread_boundary(self, boundary: SpreadBoundary) -> SpreadBoundary:
        await self.store.save_spread_boundary(boundary)
        self.logger.info("Spread boundary saved", symbol=boundary.symbol)
        return boundary
