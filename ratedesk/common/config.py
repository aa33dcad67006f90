"""
Configuration system for the RateDesk engine.

This module provides configuration loading and validation that supports
YAML files, environment variable substitution and overrides, and
type-safe access to configuration values. All rates and spreads are
loaded as ``Decimal`` for financial precision.
"""

import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import FixedSpreadConfig, VolatilitySpreadConfig

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]+([/\-][A-Z0-9]+)?$")
SUPPORTED_VENUES = ("paper", "rest")


def _dec(value: Any, default: str) -> Decimal:
    if value is None:
        value = default
    return Decimal(str(value))


@dataclass
class VenueConfig:
    """
    Credentials and endpoint for the REST P2P venue.

    Attributes:
        api_key: API key for venue authentication
        api_secret: API secret used for request signing
        rest_url: REST API base URL
        timeout_seconds: Per-request timeout
    """

    api_key: str = ""
    api_secret: str = ""
    rest_url: str = ""
    timeout_seconds: int = 30

    def __post_init__(self) -> None:
        # Credentials may be empty in YAML and filled from the environment
        if self.api_key:
            self.api_key = self.api_key.strip()
        if self.api_secret:
            self.api_secret = self.api_secret.strip()
        if self.timeout_seconds <= 0:
            raise ValueError("Venue timeout must be positive")

    def validate_for_use(self) -> None:
        """
        Validate that credentials are available for use.
        Call this method before using the venue config.
        """
        if not self.rest_url or not self.rest_url.strip():
            raise ValueError("REST URL is required for venue usage")
        if not self.api_key or not self.api_key.strip():
            raise ValueError("API key is required for venue usage")
        if not self.api_secret or not self.api_secret.strip():
            raise ValueError("API secret is required for venue usage")


@dataclass
class SpreadDefaults:
    """System default fixed spread, used when no configuration is stored."""

    base_spread_percent: Decimal = Decimal("0.5")
    min_spread_percent: Decimal = Decimal("0.1")
    max_spread_percent: Decimal = Decimal("2.0")

    def __post_init__(self) -> None:
        if self.min_spread_percent < 0:
            raise ValueError("Minimum spread cannot be negative")
        if not (
            self.min_spread_percent
            <= self.base_spread_percent
            <= self.max_spread_percent
        ):
            raise ValueError("Default spread must satisfy min <= base <= max")

    def as_config(self, symbol: str) -> FixedSpreadConfig:
        return FixedSpreadConfig(
            id="default",
            symbol=symbol,
            base_spread_percent=self.base_spread_percent,
            min_spread_percent=self.min_spread_percent,
            max_spread_percent=self.max_spread_percent,
        )


@dataclass
class VolatilityDefaults:
    """System default volatility spread parameters."""

    base_spread: Decimal = Decimal("0.5")
    volatility_multiplier: Decimal = Decimal("2.0")
    low_threshold: Decimal = Decimal("2.0")
    medium_threshold: Decimal = Decimal("5.0")
    high_threshold: Decimal = Decimal("10.0")
    critical_threshold: Decimal = Decimal("15.0")
    max_volatility_spread: Decimal = Decimal("5.0")
    smoothing_factor: Decimal = Decimal("0.8")

    def as_config(self, symbol: str) -> VolatilitySpreadConfig:
        """Build a volatility config; pydantic validation enforces thresholds."""
        return VolatilitySpreadConfig(
            id="default",
            symbol=symbol,
            base_spread=self.base_spread,
            volatility_multiplier=self.volatility_multiplier,
            low_threshold=self.low_threshold,
            medium_threshold=self.medium_threshold,
            high_threshold=self.high_threshold,
            critical_threshold=self.critical_threshold,
            max_volatility_spread=self.max_volatility_spread,
            smoothing_factor=self.smoothing_factor,
        )


@dataclass
class DealSettings:
    """Execution limits for the deal orchestrator."""

    max_execution_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    max_slippage_percent: Decimal = Decimal("2.0")
    min_counterparty_rating: Decimal = Decimal("4.0")
    min_completion_rate: Decimal = Decimal("90")

    def __post_init__(self) -> None:
        if self.max_execution_seconds <= 0:
            raise ValueError("Max execution time must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("Poll interval must be positive")
        if self.max_slippage_percent < 0:
            raise ValueError("Max slippage cannot be negative")


@dataclass
class NotificationSettings:
    webhook_url: str = ""
    timeout_seconds: int = 10


@dataclass
class Config:
    """
    Main configuration class with validation.

    Provides type-safe access to all configuration parameters with
    automatic validation, environment variable support, and decimal
    precision for financial values.
    """

    symbols: list[str]
    store_url: str = "memory://"
    venue: str = "paper"

    default_fixed_spread: SpreadDefaults = field(default_factory=SpreadDefaults)
    default_volatility: VolatilityDefaults = field(default_factory=VolatilityDefaults)
    deals: DealSettings = field(default_factory=DealSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    rest: VenueConfig = field(default_factory=VenueConfig)

    # Paper-mode collaborator data
    partners: dict[str, dict[str, Any]] = field(default_factory=dict)
    counterparties: list[dict[str, Any]] = field(default_factory=list)
    paper_spot_rates: dict[str, Decimal] = field(default_factory=dict)
    paper_p2p_rates: dict[str, Decimal] = field(default_factory=dict)

    # Background loops
    delta_collection_interval_seconds: float = 60.0
    volatility_analysis_interval_seconds: float = 900.0
    volatility_window_hours: int = 24

    # Observability
    log_level: str = "INFO"
    log_format: str = "console"
    metrics_port: Optional[int] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._validate_symbols()
        self._validate_venue()
        self._validate_intervals()
        self._validate_logging()

    def _validate_symbols(self) -> None:
        """Validate symbol format."""
        if not self.symbols:
            raise ValueError("At least one symbol must be specified")

        for i, symbol in enumerate(self.symbols):
            if not symbol or not symbol.strip():
                raise ValueError(f"Symbol at index {i} cannot be empty")

            cleaned_symbol = symbol.strip().upper()
            if not SYMBOL_PATTERN.match(cleaned_symbol):
                raise ValueError(f"Invalid symbol format: {symbol}")

            self.symbols[i] = cleaned_symbol

    def _validate_venue(self) -> None:
        self.venue = (self.venue or "").strip().lower()
        if self.venue not in SUPPORTED_VENUES:
            raise ValueError(
                f"Unknown venue '{self.venue}' (expected one of {', '.join(SUPPORTED_VENUES)})"
            )

    def _validate_intervals(self) -> None:
        if self.delta_collection_interval_seconds <= 0:
            raise ValueError("Delta collection interval must be positive")
        if self.volatility_analysis_interval_seconds <= 0:
            raise ValueError("Volatility analysis interval must be positive")
        if self.volatility_window_hours <= 0:
            raise ValueError("Volatility window must be positive")

    def _validate_logging(self) -> None:
        self.log_level = self.log_level.strip().upper()
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {self.log_level}")
        self.log_format = self.log_format.strip().lower()
        if self.log_format not in ("console", "json"):
            raise ValueError(f"Invalid log format: {self.log_format}")

    def validate_for_venue(self) -> None:
        """
        Validate that configuration is ready for a live venue.
        This checks that the REST venue credentials are present.
        """
        if self.venue == "rest":
            try:
                self.rest.validate_for_use()
            except ValueError as e:
                raise ValueError(f"Venue 'rest' configuration invalid: {e}")

    @classmethod
    def load_from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from YAML file with validation.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Validated Config instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration file must contain a YAML dictionary")

        cls._substitute_env_variables(raw_config)
        cls._apply_env_overrides(raw_config)

        return cls._from_dict(raw_config)

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "Config":
        """Build a validated Config from an already-parsed dictionary."""
        return cls._from_dict(config_dict)

    @staticmethod
    def _substitute_env_variables(config: dict[str, Any]) -> None:
        """
        Substitute environment variables using ${VAR:-default} pattern.

        Args:
            config: Configuration dictionary to process in-place
        """

        def substitute_recursive(obj: Any) -> Any:
            if isinstance(obj, dict):
                return {k: substitute_recursive(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [substitute_recursive(item) for item in obj]
            elif isinstance(obj, str):
                pattern = r"\$\{([^}:]+)(?::-([^}]*))?\}"

                def replace_var(match):
                    var_name = match.group(1)
                    default_value = match.group(2) if match.group(2) is not None else ""
                    return os.environ.get(var_name, default_value)

                return re.sub(pattern, replace_var, obj)
            else:
                return obj

        for key, value in config.items():
            config[key] = substitute_recursive(value)

    @staticmethod
    def _apply_env_overrides(config: dict[str, Any]) -> None:
        """
        Apply environment variable overrides for secrets and deployment settings.

        Args:
            config: Configuration dictionary to modify in-place
        """
        rest_config = config.setdefault("REST", {})
        if not isinstance(rest_config, dict):
            return

        if "RATEDESK_API_KEY" in os.environ:
            rest_config["API_KEY"] = os.environ["RATEDESK_API_KEY"]
        if "RATEDESK_API_SECRET" in os.environ:
            rest_config["API_SECRET"] = os.environ["RATEDESK_API_SECRET"]
        if "RATEDESK_STORE_URL" in os.environ:
            config["STORE_URL"] = os.environ["RATEDESK_STORE_URL"]

    @classmethod
    def _from_dict(cls, config_dict: dict[str, Any]) -> "Config":
        """
        Create Config instance from dictionary with validation.

        Raises:
            ValueError: If configuration validation fails
        """
        try:
            spread = config_dict.get("DEFAULT_FIXED_SPREAD") or {}
            volatility = config_dict.get("DEFAULT_VOLATILITY") or {}
            deals = config_dict.get("DEALS") or {}
            notifications = config_dict.get("NOTIFICATIONS") or {}
            rest = config_dict.get("REST") or {}

            metrics_port = config_dict.get("METRICS_PORT")

            return cls(
                symbols=list(config_dict.get("SYMBOLS", [])),
                store_url=config_dict.get("STORE_URL", "memory://"),
                venue=config_dict.get("VENUE", "paper"),
                default_fixed_spread=SpreadDefaults(
                    base_spread_percent=_dec(spread.get("BASE"), "0.5"),
                    min_spread_percent=_dec(spread.get("MIN"), "0.1"),
                    max_spread_percent=_dec(spread.get("MAX"), "2.0"),
                ),
                default_volatility=VolatilityDefaults(
                    base_spread=_dec(volatility.get("BASE_SPREAD"), "0.5"),
                    volatility_multiplier=_dec(volatility.get("MULTIPLIER"), "2.0"),
                    low_threshold=_dec(volatility.get("LOW_THRESHOLD"), "2.0"),
                    medium_threshold=_dec(volatility.get("MEDIUM_THRESHOLD"), "5.0"),
                    high_threshold=_dec(volatility.get("HIGH_THRESHOLD"), "10.0"),
                    critical_threshold=_dec(volatility.get("CRITICAL_THRESHOLD"), "15.0"),
                    max_volatility_spread=_dec(volatility.get("MAX_SPREAD"), "5.0"),
                    smoothing_factor=_dec(volatility.get("SMOOTHING_FACTOR"), "0.8"),
                ),
                deals=DealSettings(
                    max_execution_seconds=float(deals.get("MAX_EXECUTION_SECONDS", 300)),
                    poll_interval_seconds=float(deals.get("POLL_INTERVAL_SECONDS", 2)),
                    max_slippage_percent=_dec(deals.get("MAX_SLIPPAGE_PERCENT"), "2.0"),
                    min_counterparty_rating=_dec(deals.get("MIN_COUNTERPARTY_RATING"), "4.0"),
                    min_completion_rate=_dec(deals.get("MIN_COMPLETION_RATE"), "90"),
                ),
                notifications=NotificationSettings(
                    webhook_url=notifications.get("WEBHOOK_URL", "") or "",
                    timeout_seconds=int(notifications.get("TIMEOUT_SECONDS", 10)),
                ),
                rest=VenueConfig(
                    api_key=rest.get("API_KEY", "") or "",
                    api_secret=rest.get("API_SECRET", "") or "",
                    rest_url=rest.get("REST_URL", "") or "",
                    timeout_seconds=int(rest.get("TIMEOUT_SECONDS", 30)),
                ),
                partners={
                    str(pid): dict(data or {})
                    for pid, data in (config_dict.get("PARTNERS") or {}).items()
                },
                counterparties=list(config_dict.get("COUNTERPARTIES") or []),
                paper_spot_rates={
                    str(symbol).upper(): Decimal(str(rate))
                    for symbol, rate in (config_dict.get("PAPER_SPOT_RATES") or {}).items()
                },
                paper_p2p_rates={
                    str(symbol).upper(): Decimal(str(rate))
                    for symbol, rate in (config_dict.get("PAPER_P2P_RATES") or {}).items()
                },
                delta_collection_interval_seconds=float(
                    config_dict.get("DELTA_COLLECTION_INTERVAL_SECONDS", 60)
                ),
                volatility_analysis_interval_seconds=float(
                    config_dict.get("VOLATILITY_ANALYSIS_INTERVAL_SECONDS", 900)
                ),
                volatility_window_hours=int(config_dict.get("VOLATILITY_WINDOW_HOURS", 24)),
                log_level=str(config_dict.get("LOG_LEVEL", "INFO")),
                log_format=str(config_dict.get("LOG_FORMAT", "console")),
                metrics_port=int(metrics_port) if metrics_port not in (None, "") else None,
            )

        except Exception as e:
            raise ValueError(f"Configuration validation failed: {e}")


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to configuration file. Defaults to 'config.yaml'

    Returns:
        Validated Config instance
    """
    if config_path is None:
        config_path = "config.yaml"

        # Try local config first if it exists
        local_config = "config.local.yaml"
        if Path(local_config).exists():
            config_path = local_config

    return Config.load_from_file(config_path)
