"""
Build a Quote from a market's raw listings.

Listings carry a trade-hold duration in days. Each is bucketed into the
immediate tier or one of the 2/4/7-day hold tiers, keeping the cheapest
per tier. Hold tiers only matter when they undercut the immediate price,
so only listings cheaper than the cheapest immediate listing are bucketed.
Empty tiers are filled with the immediate price.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Mapping

from scanner.errors import DataUnavailable
from scanner.fees import (
    CommissionSchedule,
    buy_price_with_commission,
    get_commissions,
    price_scale,
    sell_price_with_commission,
)
from scanner.models import Market, Quote, SaleStats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Listing:
    name: str
    price: float
    tradehold_days: int = 0


def hold_tier_index(tradehold_days: int) -> int | None:
    """Index into (2, 4, 7)-day tiers, or None for an immediately tradable listing."""
    if tradehold_days > 4:
        return 2
    if tradehold_days > 2:
        return 1
    if tradehold_days >= 1:
        return 0
    return None


def _validate_listing_price(price: float, context: str) -> float:
    if math.isnan(price) or math.isinf(price):
        raise ValueError(f"Invalid {context}: {price}")
    if price < 0:
        raise ValueError(f"Invalid {context}: negative value {price}")
    return price


def build_quote(
    market: Market,
    item_name: str,
    listings: Iterable[Listing],
    schedules: Mapping[Market, CommissionSchedule] | None = None,
    sale_stats: SaleStats | None = None,
) -> Quote:
    """
    Build a Quote for item_name from listings on one market.

    Listings for other names (search results are fuzzy) are ignored.
    Raises DataUnavailable when no immediately tradable listing exists or the
    market's commission schedule is unknown.
    """
    matching = sorted(
        (l for l in listings if l.name == item_name),
        key=lambda l: l.price,
    )

    immediate: float | None = None
    tiers = [0.0, 0.0, 0.0]
    for listing in matching:
        price = _validate_listing_price(listing.price, f"{market.value} listing price ({item_name})")
        idx = hold_tier_index(listing.tradehold_days)
        if idx is None:
            immediate = price
            break
        if tiers[idx] == 0.0:
            tiers[idx] = price

    if immediate is None:
        raise DataUnavailable(
            f"No immediately tradable listing for {item_name} on {market.value} "
            f"({len(matching)} matching listings)",
            item=item_name,
            market=market,
        )

    tiers = [t if t > 0 else immediate for t in tiers]

    schedule = get_commissions(market, schedules)
    scale = price_scale(market)
    tiers_with_commission = tuple(buy_price_with_commission(t, schedule, scale) for t in tiers)

    return Quote(
        market=market,
        commission_pct=schedule.total_sell_pct,
        buy_price=immediate,
        buy_price_with_commission=buy_price_with_commission(immediate, schedule, scale),
        sell_price=immediate,
        sell_price_with_commission=sell_price_with_commission(immediate, schedule, scale),
        hold_tier_prices=(tiers[0], tiers[1], tiers[2]),
        hold_tier_prices_with_commission=tiers_with_commission,
        sale_stats=sale_stats,
    )
