"""
Cross-market price comparator.

For every item and every pair of its quotes, evaluates both directions
(A buy / B sell and B buy / A sell): commissions and hold tiers differ per
market, so the two directions are not mirror images. Results are bucketed
by (buy market, sell market).

This is an exploratory report. Nothing is filtered by profitability here;
downstream consumers decide what is worth acting on.
"""

from __future__ import annotations

import logging
from typing import Mapping

from scanner.errors import CalculationError
from scanner.models import Item, Market, PriceCompare, Quote

logger = logging.getLogger(__name__)

MarketPair = tuple[Market, Market]


def compare_direction(name: str, buy: Quote, sell: Quote) -> PriceCompare:
    """
    Compare buying on `buy.market` and selling on `sell.market`.
    Percentages are truncated toward zero. Raises CalculationError on a zero buy price.
    """
    if buy.buy_price <= 0:
        raise CalculationError(
            f"Zero buy price for {name} on {buy.market.value}", item=name, market=buy.market,
        )

    sell_net = sell.sell_price - sell.sell_price * sell.commission_pct / 100.0
    diff_before = sell.sell_price - buy.buy_price
    diff_after = sell_net - buy.buy_price

    return PriceCompare(
        name=name,
        diff_pct_before_commission=int(diff_before / buy.buy_price * 100.0),
        diff_pct_after_commission=int(diff_after / buy.buy_price * 100.0),
        diff_value_before_commission=diff_before,
        diff_value_after_commission=diff_after,
        price=(buy, sell),
    )


def compare_all(items: Mapping[str, Item]) -> dict[MarketPair, list[PriceCompare]]:
    """
    Every directional comparison across every item's quotes.

    A direction that cannot be computed (zero buy price) is logged and skipped;
    the rest of the batch continues.
    """
    result: dict[MarketPair, list[PriceCompare]] = {}
    skipped = 0

    for name, item in items.items():
        quotes = item.quotes
        for i in range(len(quotes)):
            for j in range(i + 1, len(quotes)):
                for buy, sell in ((quotes[i], quotes[j]), (quotes[j], quotes[i])):
                    try:
                        cmp = compare_direction(name, buy, sell)
                    except CalculationError as e:
                        skipped += 1
                        logger.warning(
                            "Skipping %s %s -> %s: %s",
                            name, buy.market.value, sell.market.value, e,
                        )
                        continue
                    result.setdefault((buy.market, sell.market), []).append(cmp)

    logger.debug(
        "Compared %d items: %d market pairs, %d comparisons, %d skipped",
        len(items), len(result), sum(len(v) for v in result.values()), skipped,
    )
    return result


def top_comparisons(
    result: Mapping[MarketPair, list[PriceCompare]],
    pair: MarketPair,
    limit: int = 10,
) -> list[PriceCompare]:
    """Highest after-commission percentage first, for reporting."""
    rows = sorted(
        result.get(pair, []),
        key=lambda c: (c.diff_pct_after_commission, c.diff_value_after_commission),
        reverse=True,
    )
    return rows[:limit]
