"""
Aggregate daily sale records into SaleStats.

Averages are volume-weighted (price x count). The weekly window is the
seven days before `today`, exclusive; the monthly window is whatever the
market returned (normally 30 days).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Mapping, Sequence

from scanner.errors import DataUnavailable
from scanner.fees import CommissionSchedule, get_commissions, price_scale, sell_price_with_commission
from scanner.models import Market, SaleStats

logger = logging.getLogger(__name__)

WEEK_DAYS = 7


@dataclass(frozen=True)
class SaleRecord:
    day: date
    price: float
    count: int


def _weighted_avg(records: Sequence[SaleRecord]) -> tuple[float, int]:
    volume = sum(r.count for r in records)
    if volume <= 0:
        return 0.0, 0
    return sum(r.price * r.count for r in records) / volume, volume


def in_last_week(day: date, today: date) -> bool:
    return day > today - timedelta(days=WEEK_DAYS)


def compute_sale_stats(
    name: str,
    market: Market,
    records: Sequence[SaleRecord],
    today: date | None = None,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
) -> SaleStats:
    """
    Build SaleStats for one item on one market.

    The with-commission weekly average uses the market's sell + withdraw
    commission. Raises DataUnavailable if that schedule is unknown or no
    sale falls inside the weekly window: a zero average is not a price.
    """
    today = today or date.today()
    schedule = get_commissions(market, schedules)

    weekly = [r for r in records if in_last_week(r.day, today)]
    weekly_avg, weekly_count = _weighted_avg(weekly)
    if weekly_count == 0:
        raise DataUnavailable(
            f"No sales of {name} on {market.value} in the last {WEEK_DAYS} days",
            item=name,
            market=market,
        )
    monthly_avg, monthly_count = _weighted_avg(records)

    change_pct = ((weekly_avg / monthly_avg) - 1.0) * 100.0 if monthly_avg != 0 else 0.0

    stats = SaleStats(
        name=name,
        weekly_avg_price=weekly_avg,
        weekly_avg_price_with_commission=sell_price_with_commission(weekly_avg, schedule, price_scale(market)),
        weekly_sale_count=weekly_count,
        monthly_avg_price=monthly_avg,
        monthly_sale_count=monthly_count,
        weekly_price_change_pct=change_pct,
    )
    logger.debug(
        "Sale stats %s on %s: week avg=%.3f (%d sold) month avg=%.3f (%d sold) change=%.1f%%",
        name, market.value, weekly_avg, weekly_count, monthly_avg, monthly_count, change_pct,
    )
    return stats
