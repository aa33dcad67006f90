"""
Service runner and command line interface for RateDesk.

This module wires the store, collaborators, pricing engines and the deal
orchestrator from configuration. ``run`` starts the long-running service
(rate-delta collection, periodic volatility analysis, health monitoring);
the other subcommands perform a single operation and print JSON.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog
import uvloop
from prometheus_client import Counter, Gauge, start_http_server

from .common.config import Config, load_config
from .common.errors import CollaboratorUnavailable, RateDeskError
from .common.models import DealRequest, DealSide, VolatilityAnalysisResult, utcnow
from .common.provider_base import CounterpartyMatcher, NotificationChannel
from .common.provider_factory import ProviderFactory
from .common.sql_store import SqlStore
from .common.store import InMemoryStore, RateDeskStore
from .deals.notifications import (
    LoggingNotificationChannel,
    NotificationService,
    WebhookNotificationChannel,
)
from .deals.orchestrator import DealAutomationService
from .pricing.fixed_spread import FixedSpreadPricingEngine
from .pricing.spread_config import SpreadConfigStore
from .pricing.volatility import VolatilityAnalyzer
from .providers.paper import ConfigPartnerDirectory

# Prometheus metrics
rate_deltas_collected_total = Counter(
    "ratedesk_rate_deltas_collected_total", "Rate deltas recorded", ["symbol"]
)
collection_errors_total = Counter(
    "ratedesk_collection_errors_total", "Rate delta collection failures", ["symbol"]
)
health_check_status = Gauge(
    "ratedesk_health_check_status", "Health check status (1=healthy, 0=unhealthy)"
)

MEMORY_STORE_URL = "memory://"

# Commands that read deals persisted by an earlier invocation
STORED_DEAL_COMMANDS = ("deal-execute", "deal-cancel", "deal-get", "stats")


def create_store(store_url: str) -> RateDeskStore:
    """Create the store for a URL: ``memory://`` or any SQLAlchemy URL."""
    if store_url == MEMORY_STORE_URL:
        return InMemoryStore()
    store = SqlStore(store_url)
    store.init_db()
    return store


def build_notification_channels(config: Config) -> list[NotificationChannel]:
    channels: list[NotificationChannel] = [LoggingNotificationChannel()]
    if config.notifications.webhook_url:
        channels.append(
            WebhookNotificationChannel(
                config.notifications.webhook_url, config.notifications.timeout_seconds
            )
        )
    return channels


class RateDeskService:
    """
    Wires and runs all RateDesk components.

    Manages:
    - Store and venue collaborators chosen by configuration
    - Pricing, volatility analysis and deal orchestration
    - Background rate-delta collection and volatility analysis
    - Health monitoring and graceful shutdown
    """

    def __init__(self, config: Config, store: Optional[RateDeskStore] = None):
        self.config = config
        self.logger = structlog.get_logger("ratedesk.service")

        self.store = store or create_store(config.store_url)

        self.spot_feed = ProviderFactory.create_spot_feed(config.venue, config)
        self.p2p_feed = ProviderFactory.create_p2p_feed(config.venue, config)
        self.order_gateway = ProviderFactory.create_order_gateway(config.venue, config)
        if isinstance(self.order_gateway, CounterpartyMatcher):
            self.counterparty_matcher = self.order_gateway
        else:
            self.counterparty_matcher = ProviderFactory.create_counterparty_matcher(
                config.venue, config
            )
        self.partner_directory = ConfigPartnerDirectory.from_config(config)

        self.spread_configs = SpreadConfigStore(self.store, config.default_volatility)
        self.pricing_engine = FixedSpreadPricingEngine(
            self.store,
            self.spread_configs,
            default_spread=config.default_fixed_spread,
            spot_feed=self.spot_feed,
            p2p_feed=self.p2p_feed,
        )
        self.volatility_analyzer = VolatilityAnalyzer(self.store, self.spread_configs)
        self.notifications = NotificationService(build_notification_channels(config))
        self.deals = DealAutomationService(
            self.store,
            self.pricing_engine,
            self.partner_directory,
            self.counterparty_matcher,
            self.order_gateway,
            notifications=self.notifications,
            settings=config.deals,
        )

        # Async management
        self.tasks: set[asyncio.Task] = set()
        self.shutdown_event = asyncio.Event()
        self.running = False

        # Health monitoring
        self.last_heartbeat = utcnow()
        self.error_count = 0
        self.collected_deltas = 0
        self.latest_analysis: dict[str, VolatilityAnalysisResult] = {}

        self.logger.info(
            "RateDesk service initialized",
            symbols=config.symbols,
            venue=config.venue,
            store=type(self.store).__name__,
        )

    async def start(self) -> None:
        """Start background loops and wait for the shutdown signal."""
        self.logger.info("Starting RateDesk service")
        self.running = True

        try:
            await self.order_gateway.connect()

            self.tasks.add(asyncio.create_task(self._delta_collector()))
            self.tasks.add(asyncio.create_task(self._volatility_monitor()))
            self.tasks.add(asyncio.create_task(self._health_monitor()))
            self.logger.info("All service tasks started")

            await self.shutdown_event.wait()

        except Exception as e:
            self.logger.error("Error in service main loop", error=str(e))
            self.error_count += 1
            raise
        finally:
            await self._shutdown()

    async def collect_rate_deltas(self) -> int:
        """Record one spot/P2P delta per symbol; returns how many were stored."""
        recorded = 0
        for symbol in self.config.symbols:
            try:
                spot = await self.spot_feed.get_spot_rate(symbol)
                indicative = await self.p2p_feed.get_indicative_rate(symbol)
                await self.volatility_analyzer.record_rate_delta(
                    symbol, spot.price, indicative.rate
                )
                rate_deltas_collected_total.labels(symbol=symbol).inc()
                recorded += 1
            except CollaboratorUnavailable as e:
                collection_errors_total.labels(symbol=symbol).inc()
                self.error_count += 1
                self.logger.warning("Rate delta collection failed", symbol=symbol, error=str(e))

        self.collected_deltas += recorded
        return recorded

    async def run_volatility_analysis(self) -> dict[str, VolatilityAnalysisResult]:
        results = await self.volatility_analyzer.batch_analyze(
            self.config.symbols, self.config.volatility_window_hours
        )
        self.latest_analysis.update(results)
        return results

    async def _delta_collector(self) -> None:
        """Periodically record rate deltas for all symbols."""
        self.logger.info("Starting rate delta collector")

        while not self.shutdown_event.is_set():
            try:
                await self.collect_rate_deltas()
                await asyncio.sleep(self.config.delta_collection_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in rate delta collector", error=str(e))
                self.error_count += 1
                await asyncio.sleep(self.config.delta_collection_interval_seconds)

    async def _volatility_monitor(self) -> None:
        """Periodically analyze volatility for all symbols."""
        self.logger.info("Starting volatility monitor")

        while not self.shutdown_event.is_set():
            try:
                await asyncio.sleep(self.config.volatility_analysis_interval_seconds)
                await self.run_volatility_analysis()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in volatility monitor", error=str(e))
                self.error_count += 1

    async def _health_monitor(self) -> None:
        """Monitor system health and update metrics."""
        self.logger.info("Starting health monitor")

        while not self.shutdown_event.is_set():
            try:
                self.last_heartbeat = utcnow()

                is_healthy = self._check_health()
                health_check_status.set(1 if is_healthy else 0)

                if not is_healthy:
                    self.logger.warning(
                        "System health check failed",
                        error_count=self.error_count,
                        active_tasks=len(self.tasks),
                    )

                await asyncio.sleep(30)

            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in health monitor", error=str(e))
                await asyncio.sleep(60)

    def _check_health(self) -> bool:
        """Check overall system health."""
        now = utcnow()

        if now - self.last_heartbeat > timedelta(minutes=5):
            return False

        if self.error_count > 100:
            return False

        # A background loop that exited is unhealthy
        if any(task.done() for task in self.tasks):
            return False

        return True

    async def _shutdown(self) -> None:
        """Graceful shutdown of all components."""
        self.logger.info("Starting graceful shutdown")
        self.running = False

        for task in self.tasks:
            if not task.done():
                task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        await self.close()
        self.logger.info("Graceful shutdown completed")

    async def close(self) -> None:
        """Drain deal work and release collaborator resources."""
        await self.deals.shutdown()
        await self.notifications.close()
        await self.order_gateway.disconnect()
        if self.counterparty_matcher is not self.order_gateway:
            disconnect = getattr(self.counterparty_matcher, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        await self.spot_feed.close()
        await self.p2p_feed.close()
        await self.store.close()

    def get_status(self) -> dict[str, Any]:
        """Get current system status."""
        return {
            "running": self.running,
            "healthy": self._check_health(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "error_count": self.error_count,
            "collected_deltas": self.collected_deltas,
            "active_tasks": len([t for t in self.tasks if not t.done()]),
            "pending_executions": self.deals.pending_executions,
            "symbols": self.config.symbols,
            "venue": self.config.venue,
            "latest_risk_levels": {
                symbol: result.current_volatility.risk_level.value
                for symbol, result in self.latest_analysis.items()
            },
        }


def setup_logging(config: Config) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer()
            if config.log_format != "json"
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, config.log_level)
        ),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def parse_decimal(value: str) -> Decimal:
    """argparse type for decimal arguments."""
    try:
        result = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid decimal value: {value}")
    if not result.is_finite():
        raise argparse.ArgumentTypeError(f"Decimal value must be finite: {value}")
    return result


def parse_datetime(value: str) -> datetime:
    """argparse type for ISO-8601 timestamps; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO timestamp: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ratedesk",
        description="RateDesk - exchange rate pricing and P2P deal automation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: config.local.yaml or config.yaml)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the service with background loops")

    quote = commands.add_parser("quote", help="Quote the current payout rate")
    quote.add_argument("symbol")
    quote.add_argument("--partner", default=None, help="Partner id for partner-specific spreads")

    volatility = commands.add_parser("volatility", help="Analyze volatility for a symbol")
    volatility.add_argument("symbol")
    volatility.add_argument("--window", type=int, default=24, help="Window in hours")

    create = commands.add_parser("deal-create", help="Create a deal at the current rate")
    create.add_argument("--partner", required=True)
    create.add_argument("--symbol", required=True)
    create.add_argument("--side", choices=[s.value for s in DealSide], required=True)
    create.add_argument("--amount", type=parse_decimal, required=True)
    create.add_argument("--max-rate", type=parse_decimal, default=None)
    create.add_argument("--min-rate", type=parse_decimal, default=None)
    create.add_argument("--auto-execute", action="store_true")
    create.add_argument("--notes", default=None)

    execute = commands.add_parser("deal-execute", help="Execute a pending deal")
    execute.add_argument("deal_id")

    cancel = commands.add_parser("deal-cancel", help="Cancel an in-flight deal")
    cancel.add_argument("deal_id")
    cancel.add_argument("--reason", default=None)

    get = commands.add_parser("deal-get", help="Show a deal")
    get.add_argument("deal_id")

    stats = commands.add_parser("stats", help="Deal statistics")
    stats.add_argument("--partner", default=None)
    stats.add_argument("--from", dest="from_date", type=parse_datetime, default=None)
    stats.add_argument("--to", dest="to_date", type=parse_datetime, default=None)

    return parser


async def run_command(service: RateDeskService, args: argparse.Namespace) -> Any:
    """Run a one-shot subcommand and return its JSON-ready result."""
    if args.command == "quote":
        result = await service.pricing_engine.quote(args.symbol.upper(), args.partner)
        return result.model_dump(mode="json")

    if args.command == "volatility":
        result = await service.volatility_analyzer.analyze_volatility(
            args.symbol.upper(), args.window
        )
        return result.model_dump(mode="json")

    if args.command == "deal-create":
        deal = await service.deals.create_deal(
            DealRequest(
                partner_id=args.partner,
                symbol=args.symbol.upper(),
                side=DealSide(args.side),
                amount=args.amount,
                max_rate=args.max_rate,
                min_rate=args.min_rate,
                auto_execute=args.auto_execute,
                notes=args.notes,
            )
        )
        # Let a requested auto-execution finish before the process exits
        await service.deals.shutdown()
        return (await service.deals.get_deal(deal.id)).model_dump(mode="json")

    if args.command == "deal-execute":
        result = await service.deals.execute_deal(args.deal_id)
        return result.model_dump(mode="json")

    if args.command == "deal-cancel":
        cancelled = await service.deals.cancel_deal(args.deal_id, args.reason)
        return {"deal_id": args.deal_id, "cancelled": cancelled}

    if args.command == "deal-get":
        return (await service.deals.get_deal(args.deal_id)).model_dump(mode="json")

    if args.command == "stats":
        stats = await service.deals.get_deal_stats(args.partner, args.from_date, args.to_date)
        return stats.model_dump(mode="json")

    raise ValueError(f"Unknown command: {args.command}")


async def main_async(config: Config, args: argparse.Namespace) -> int:
    """Async main function; returns the process exit code."""
    setup_logging(config)
    logger = structlog.get_logger("ratedesk.main")

    service = RateDeskService(config)

    if args.command in STORED_DEAL_COMMANDS and config.store_url == MEMORY_STORE_URL:
        logger.warning(
            "In-memory store holds no deals from earlier invocations; set STORE_URL to a database",
            command=args.command,
        )

    if args.command != "run":
        try:
            output = await run_command(service, args)
        except RateDeskError as e:
            print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
            return 2
        finally:
            await service.close()
        print(json.dumps(output, indent=2))
        return 0

    logger.info(
        "Starting RateDesk",
        venue=config.venue,
        symbols=config.symbols,
        store_url=config.store_url,
    )

    if config.metrics_port:
        start_http_server(config.metrics_port)
        logger.info("Metrics server started", port=config.metrics_port)

    def signal_handler():
        logger.info("Shutdown signal received")
        service.shutdown_event.set()

    for sig in [signal.SIGTERM, signal.SIGINT]:
        signal.signal(sig, lambda s, f: signal_handler())

    try:
        await service.start()
    except Exception as e:
        logger.error("Fatal error in main loop", error=str(e), traceback=traceback.format_exc())
        raise
    finally:
        logger.info("RateDesk shutdown complete")
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the RateDesk CLI.

    This function will:
    1. Parse command line arguments
    2. Load and validate configuration
    3. Wire store, venue collaborators and engines
    4. Run the requested command (or the long-running service)
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        config.validate_for_venue()
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # Use uvloop for better performance on Unix systems
    runner = uvloop.run if sys.platform != "win32" else asyncio.run

    try:
        exit_code = runner(main_async(config, args))
    except KeyboardInterrupt:
        print("\nShutdown complete.", file=sys.stderr)
        exit_code = 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
