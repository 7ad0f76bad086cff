"""
Margin-preserving price limits.

max_buy_price inverts a required profit margin into the highest price that
may be paid on a buy market. min_sell_price is the sell-side counterpart:
the lowest listing price that still returns the margin after the sell
market's commission.

Both return 0.0 (never a guess) when the commission schedule is unknown or
the inputs cannot produce a meaningful price. The failure is logged with the
market involved.
"""

from __future__ import annotations

import logging
from typing import Mapping

from scanner.errors import CalculationError, DataUnavailable
from scanner.fees import CommissionSchedule, ceil_to_grid, get_commissions, price_scale
from scanner.models import Market

logger = logging.getLogger(__name__)


def _check_margin(min_margin_pct: float) -> None:
    if min_margin_pct <= -100.0:
        raise CalculationError(f"Margin {min_margin_pct}% leaves no positive price")


def max_buy_price(
    avg_sell_price_with_commission: float,
    buy_market: Market,
    min_margin_pct: float,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
) -> float:
    """
    Highest price to pay on buy_market while keeping min_margin_pct.

        raw = avg_sell_price_with_commission / (1 + margin / 100)
        max = ceil_grid(raw * (1 - buy_commission / 100))

    Returns 0.0 when the buy market's commissions are unknown or the inputs
    are unusable.
    """
    try:
        commissions = get_commissions(buy_market, schedules)
    except DataUnavailable as e:
        logger.error("Cannot get the commissions for %s: %s", buy_market.value, e)
        return 0.0

    try:
        _check_margin(min_margin_pct)
        if avg_sell_price_with_commission <= 0:
            raise CalculationError(
                f"Non-positive average sell price {avg_sell_price_with_commission}",
                market=buy_market,
            )
    except CalculationError as e:
        logger.warning("max_buy_price on %s: %s", buy_market.value, e)
        return 0.0

    raw = avg_sell_price_with_commission / (1.0 + min_margin_pct / 100.0)
    adjusted = raw - raw * (commissions.buy_pct / 100.0)
    return ceil_to_grid(adjusted, price_scale(buy_market))


def min_sell_price(
    buy_price: float,
    sell_market: Market,
    min_margin_pct: float,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
) -> float:
    """
    Lowest listing price on sell_market that nets buy_price * (1 + margin / 100)
    after sell + withdraw commission. Returns 0.0 on unknown commissions.
    """
    try:
        commissions = get_commissions(sell_market, schedules)
    except DataUnavailable as e:
        logger.error("Cannot get the commissions for %s: %s", sell_market.value, e)
        return 0.0

    try:
        _check_margin(min_margin_pct)
        if buy_price <= 0:
            raise CalculationError(f"Non-positive buy price {buy_price}", market=sell_market)
        if commissions.total_sell_pct >= 100.0:
            raise CalculationError(
                f"Sell commission {commissions.total_sell_pct}% consumes the whole sale",
                market=sell_market,
            )
    except CalculationError as e:
        logger.warning("min_sell_price on %s: %s", sell_market.value, e)
        return 0.0

    required_net = buy_price * (1.0 + min_margin_pct / 100.0)
    gross = required_net / (1.0 - commissions.total_sell_pct / 100.0)
    return ceil_to_grid(gross, price_scale(sell_market))
