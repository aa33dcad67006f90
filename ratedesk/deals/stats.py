"""Aggregate statistics over a set of deals."""

from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from ..common.decimal_math import ZERO, dsum, mean
from ..common.models import Deal, DealStats, DealStatus, StatsPeriod, utcnow

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def compute_deal_stats(
    deals: list[Deal],
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> DealStats:
    """
    Summarize deals that were already filtered by partner and date range.

    Success rate is ``completed / total * 100`` (0 for no deals). Profit is
    ``(rate - spot_rate) * amount`` summed over completed deals only.
    Average execution time covers deals that reached ``executed_at``.
    """
    status_counts = Counter(deal.status for deal in deals)
    total = len(deals)
    completed = status_counts.get(DealStatus.COMPLETED, 0)

    executed = [deal for deal in deals if deal.executed_at is not None]
    if executed:
        average_execution_time = sum(
            (deal.executed_at - deal.created_at).total_seconds() for deal in executed
        ) / len(executed)
    else:
        average_execution_time = 0.0

    return DealStats(
        total_deals=total,
        completed_deals=completed,
        failed_deals=status_counts.get(DealStatus.FAILED, 0),
        cancelled_deals=status_counts.get(DealStatus.CANCELLED, 0),
        status_counts={status.value: status_counts.get(status, 0) for status in DealStatus},
        success_rate=(completed / total * 100) if total else 0.0,
        total_volume=dsum(deal.total_value for deal in deals),
        total_profit=dsum(
            deal.profit for deal in deals if deal.status == DealStatus.COMPLETED
        ),
        average_execution_time_seconds=average_execution_time,
        average_spread=mean([deal.metadata.spread for deal in deals]) if deals else ZERO,
        period=StatsPeriod(
            from_date=from_date or EPOCH,
            to_date=to_date or now or utcnow(),
        ),
    )

