#!/usr/bin/env python3
"""
RateDesk Pricing and Deal Demo

Demonstrates fixed-spread pricing, volatility analysis and a full deal
lifecycle against the paper venue.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from ratedesk.common.config import Config
from ratedesk.common.models import DealRequest, DealSide, FixedSpreadConfig, utcnow
from ratedesk.main import RateDeskService


def build_config() -> Config:
    return Config.from_dict(
        {
            "SYMBOLS": ["EUR/USD"],
            "VENUE": "paper",
            "DEALS": {"POLL_INTERVAL_SECONDS": 0.1},
            "PARTNERS": {"partner_demo": {"NAME": "Demo Partner"}},
            "COUNTERPARTIES": [
                {"ID": "cp_trusted", "NAME": "TrustedTrader", "RATING": "4.8", "COMPLETION_RATE": "98.5"}
            ],
            "PAPER_SPOT_RATES": {"EUR/USD": "1.0850"},
            "PAPER_P2P_RATES": {"EUR/USD": "1.0870"},
        }
    )


async def run_demo():
    print("=== RateDesk Pricing and Deal Demo ===")
    print()

    service = RateDeskService(build_config())

    await service.spread_configs.save_fixed_spread_config(
        FixedSpreadConfig(
            symbol="EUR/USD",
            base_spread_percent=Decimal("2.0"),
            min_spread_percent=Decimal("0.5"),
            max_spread_percent=Decimal("3.0"),
        )
    )

    quote = await service.pricing_engine.quote("EUR/USD", "partner_demo")
    print("💱 Quote for EUR/USD")
    print(f"  Spot:       {quote.spot_rate}")
    print(f"  Spread:     {quote.fixed_spread}")
    print(f"  Final rate: {quote.final_rate}")
    print(f"  P2P rate:   {quote.p2p_indicative_rate}")
    print(f"  Confidence: {quote.confidence:.0f}")
    print()

    # Seed a day of deltas around a drifting P2P premium
    start = utcnow() - timedelta(hours=23)
    for i in range(30):
        premium = Decimal("0.0020") + Decimal(i % 5) * Decimal("0.0004")
        await service.volatility_analyzer.record_rate_delta(
            "EUR/USD",
            Decimal("1.0850"),
            Decimal("1.0850") + premium,
            timestamp=start + timedelta(minutes=30 * i),
        )

    analysis = await service.volatility_analyzer.analyze_volatility("EUR/USD")
    metrics = analysis.current_volatility
    print("📊 Volatility analysis")
    print(f"  Index:       {metrics.volatility_index:.2f}")
    print(f"  Risk level:  {metrics.risk_level.value}")
    print(f"  Recommended: {analysis.recommended_spread:.4f}%")
    print(f"  Confidence:  {analysis.confidence:.1f}")
    for warning in analysis.warnings:
        print(f"  ⚠️  {warning}")
    print()

    deal = await service.deals.create_deal(
        DealRequest(
            partner_id="partner_demo",
            symbol="EUR/USD",
            side=DealSide.BUY,
            amount=Decimal("1000"),
            max_rate=Decimal("1.20"),
        )
    )
    print(f"📝 Deal {deal.id} created at {deal.rate} ({deal.status.value})")

    result = await service.deals.execute_deal(deal.id)
    deal = await service.deals.get_deal(deal.id)
    print(f"✅ Execution success={result.success} status={deal.status.value}")
    print(f"  Executed rate: {result.executed_rate}")
    print(f"  Order id:      {result.p2p_order_id}")
    print()

    stats = await service.deals.get_deal_stats("partner_demo")
    print("📈 Deal stats")
    print(f"  Total:        {stats.total_deals}")
    print(f"  Success rate: {stats.success_rate:.1f}%")
    print(f"  Volume:       {stats.total_volume}")
    print(f"  Profit:       {stats.total_profit}")

    await service.close()
    print()
    print("=== Demo Complete ===")


if __name__ == "__main__":
    asyncio.run(run_demo())
