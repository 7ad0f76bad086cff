"""
Decision pass over an ItemBook snapshot.

Buys: for every item still below its max_count, the profitability selector
picks the best (buy market, sell market, hold) combination; the buy is
proposed only if the profit clears the margin and the listing price for the
chosen hold is at or below max_buy_price. Items whose data is unavailable
are reported, never treated as "no profit".

Sales: every AVAILABLE instance is offered on the first sell market that
has a quote, at the market's current price but never below the floor that
keeps the margin over what was paid for it (when that is known).

Pure functions of the snapshot: no I/O, no locks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from scanner.fees import CommissionSchedule
from scanner.models import HOLD_TIERS, Item, ItemStatus, Market, ProfitPick, Quote
from scanner.pricing import max_buy_price, min_sell_price
from scanner.profitability import DEFAULT_BUY_MARKETS, DEFAULT_SELL_MARKETS, most_profitable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuyDecision:
    item: str
    buy_market: Market
    sell_market: Market
    hold_days: int
    # Listing price (major units, before buy commission) for the chosen hold
    price: float
    max_price: float
    profit_pct: float


@dataclass(frozen=True)
class SaleCandidate:
    asset_id: str
    item: str
    market: Market
    price: float
    floor_price: float = 0.0


@dataclass
class DecisionReport:
    buys: list[BuyDecision] = field(default_factory=list)
    sales: list[SaleCandidate] = field(default_factory=list)
    # item name -> reason the item could not be decided
    unavailable: dict[str, str] = field(default_factory=dict)
    at_capacity: list[str] = field(default_factory=list)
    unprofitable: list[str] = field(default_factory=list)


def listing_price_for_hold(quote: Quote, hold_days: int) -> float:
    """Raw listing price of the tier that hold_days refers to (0 = immediate)."""
    if hold_days == 0:
        return quote.buy_price
    price = quote.hold_tier_prices[HOLD_TIERS.index(hold_days)]
    return price if price > 0 else quote.buy_price


def _buy_for_item(
    item: Item,
    buy_markets: Sequence[Market],
    sell_markets: Sequence[Market],
    min_margin_pct: float,
    schedules: Mapping[Market, CommissionSchedule] | None,
    report: DecisionReport,
) -> BuyDecision | None:
    if item.count.total >= item.count.max_count:
        report.at_capacity.append(item.name)
        return None

    pick: ProfitPick = most_profitable(item.quotes, item.name, buy_markets, sell_markets)
    if pick.data_unavailable:
        missing = ", ".join(m.value for m in pick.missing_stats)
        report.unavailable[item.name] = f"missing sale stats: {missing}" if missing else "missing quotes"
        return None
    if not pick.found or pick.profit_pct < min_margin_pct:
        report.unprofitable.append(item.name)
        return None

    buy_quote = item.quote_for(pick.buy_market)
    sell_quote = item.quote_for(pick.sell_market)
    # most_profitable only evaluates pairs with both quotes and sell stats
    stats = sell_quote.sale_stats

    limit = max_buy_price(stats.weekly_avg_price_with_commission, pick.buy_market, min_margin_pct, schedules)
    if limit <= 0:
        report.unavailable[item.name] = f"no max buy price on {pick.buy_market.value}"
        return None

    price = listing_price_for_hold(buy_quote, pick.hold_days)
    if price > limit:
        logger.debug(
            "%s: %s listing %.3f above max buy price %.3f",
            item.name, pick.buy_market.value, price, limit,
            extra={"item": item.name, "market": pick.buy_market.value},
        )
        report.unprofitable.append(item.name)
        return None

    return BuyDecision(
        item=item.name,
        buy_market=pick.buy_market,
        sell_market=pick.sell_market,
        hold_days=pick.hold_days,
        price=price,
        max_price=limit,
        profit_pct=pick.profit_pct,
    )


def scan_for_buys(
    snapshot: Mapping[str, Item],
    min_margin_pct: float,
    buy_markets: Sequence[Market] = DEFAULT_BUY_MARKETS,
    sell_markets: Sequence[Market] = DEFAULT_SELL_MARKETS,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
    report: DecisionReport | None = None,
) -> DecisionReport:
    """Buy decisions for every item in the snapshot, best profit first."""
    report = report or DecisionReport()
    for name, item in snapshot.items():
        try:
            decision = _buy_for_item(item, buy_markets, sell_markets, min_margin_pct, schedules, report)
        except Exception as e:
            logger.error("Decision failed for %s: %s", name, e, exc_info=True, extra={"item": name})
            report.unavailable[name] = f"{type(e).__name__}: {e}"
            continue
        if decision is not None:
            report.buys.append(decision)

    report.buys.sort(key=lambda d: d.profit_pct, reverse=True)
    if report.unavailable:
        logger.info("%d item(s) could not be decided: %s", len(report.unavailable), ", ".join(report.unavailable))
    return report


def sale_candidates(
    snapshot: Mapping[str, Item],
    min_margin_pct: float,
    sell_markets: Sequence[Market] = DEFAULT_SELL_MARKETS,
    cost_basis: Mapping[str, float] | None = None,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
    report: DecisionReport | None = None,
) -> DecisionReport:
    """
    One SaleCandidate per AVAILABLE instance. cost_basis maps asset_id to the
    price paid and overrides the instance's own buy_price; instances with
    neither are listed at the market price.
    """
    report = report or DecisionReport()
    cost_basis = cost_basis or {}
    for name, item in snapshot.items():
        available = item.instances(ItemStatus.AVAILABLE)
        if not available:
            continue
        quotes = [item.quote_for(m) for m in sell_markets]
        quote = next((q for q in quotes if q is not None), None)
        if quote is None:
            report.unavailable[name] = "no sell market quote"
            continue
        for data in available:
            floor = 0.0
            paid = cost_basis.get(data.asset_id, data.buy_price)
            if paid > 0:
                floor = min_sell_price(paid, quote.market, min_margin_pct, schedules)
            report.sales.append(SaleCandidate(
                asset_id=data.asset_id,
                item=name,
                market=quote.market,
                price=max(quote.sell_price, floor),
                floor_price=floor,
            ))
    return report
