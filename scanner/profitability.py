"""
Profitability selector: the single best (buy market, sell market) pair for one item.

Buying a listing that is still under trade hold is cheaper but locks capital,
so each hold tier's price carries a holding-cost premium before it is
compared with the immediate price:

    effective = tier_price_with_commission * premium   (2d: 1.02, 4d: 1.04, 7d: 1.07)

Profit is measured against the sell market's weekly average sale price net
of commission:

    profit_pct = (weekly_avg_price_with_commission / best_buy_price - 1) * 100

Combinations are visited buy-market-major, sell-market-minor, in the order
the allowed lists are given. The running best only changes on strict
improvement, so equal profits resolve to the first combination visited.
"""

from __future__ import annotations

import logging
from typing import Sequence

from scanner.models import HOLD_TIERS, Market, ProfitPick, Quote

logger = logging.getLogger(__name__)

DEFAULT_BUY_MARKETS: tuple[Market, ...] = (
    Market.DMARKET,
    Market.BITSKINS,
    Market.CSFLOAT,
    Market.LISSKINS,
    Market.CSMONEY,
)
DEFAULT_SELL_MARKETS: tuple[Market, ...] = (Market.MARKETCSGO,)

HOLD_PREMIUMS: dict[int, float] = {2: 1.02, 4: 1.04, 7: 1.07}


def best_buy_price(quote: Quote) -> tuple[float, int]:
    """
    Cheapest premium-adjusted buy price and the hold (days) that produced it.

    Candidates are visited in order immediate, 2, 4, 7 and only a strictly
    lower value replaces the current best, so an exact tie keeps the shorter
    hold. Value and tier are tracked together; there is no equality lookup
    afterwards.
    """
    best_price = quote.buy_price_with_commission
    best_days = 0
    for days, tier_price in zip(HOLD_TIERS, quote.hold_tier_prices_with_commission):
        base = tier_price if tier_price > 0 else quote.buy_price_with_commission
        candidate = base * HOLD_PREMIUMS[days]
        if candidate < best_price:
            best_price = candidate
            best_days = days
    return best_price, best_days


def _quote_for(quotes: Sequence[Quote], market: Market) -> Quote | None:
    for quote in quotes:
        if quote.market == market:
            return quote
    return None


def most_profitable(
    quotes: Sequence[Quote],
    item_name: str,
    buy_markets: Sequence[Market] = DEFAULT_BUY_MARKETS,
    sell_markets: Sequence[Market] = DEFAULT_SELL_MARKETS,
) -> ProfitPick:
    """
    Select the most profitable buy/sell market pair for item_name.

    Returns a zero-profit sentinel on the first allowed markets (found=False)
    when no pair makes a positive profit. When no combination could be evaluated at all (missing
    quotes, or every sell quote lacked recent sale stats) the sentinel has
    data_unavailable=True: "no data" is not "no profit".
    """
    if not buy_markets or not sell_markets:
        raise ValueError("most_profitable needs at least one buy and one sell market")

    best = ProfitPick(buy_market=buy_markets[0], sell_market=sell_markets[0])
    missing: list[Market] = []
    evaluated = 0

    for buy_market in buy_markets:
        buy_quote = _quote_for(quotes, buy_market)
        if buy_quote is None:
            continue
        for sell_market in sell_markets:
            sell_quote = _quote_for(quotes, sell_market)
            if sell_quote is None:
                continue
            stats = sell_quote.sale_stats
            # A zero weekly average means no recent sales, not a free item
            if stats is None or stats.weekly_avg_price_with_commission <= 0:
                if sell_market not in missing:
                    missing.append(sell_market)
                    logger.warning(
                        "No sales data in sell market %s for %s",
                        sell_market.value, item_name,
                        extra={"item": item_name, "market": sell_market.value},
                    )
                continue

            buy_price, hold_days = best_buy_price(buy_quote)
            if buy_price <= 0:
                logger.warning(
                    "Skipping %s %s -> %s: non-positive buy price %.4f",
                    item_name, buy_market.value, sell_market.value, buy_price,
                )
                continue

            evaluated += 1
            profit_pct = (stats.weekly_avg_price_with_commission / buy_price - 1.0) * 100.0
            if profit_pct > best.profit_pct:
                best = ProfitPick(
                    buy_market=buy_market,
                    sell_market=sell_market,
                    profit_pct=profit_pct,
                    hold_days=hold_days,
                    found=True,
                )

    if evaluated == 0:
        logger.info(
            "Cannot rank %s: no evaluable buy/sell combination (missing stats: %s)",
            item_name, ", ".join(m.value for m in missing) or "none",
        )
    if missing or evaluated == 0:
        best = ProfitPick(
            buy_market=best.buy_market,
            sell_market=best.sell_market,
            profit_pct=best.profit_pct,
            hold_days=best.hold_days,
            found=best.found,
            missing_stats=tuple(missing),
            data_unavailable=evaluated == 0,
        )
    return best
