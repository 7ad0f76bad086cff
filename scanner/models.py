"""
Data models for the arbitrage scanner and item lifecycle. Pure data, no I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Market(Enum):
    """Marketplaces in fixed declaration order. Order matters: quotes are kept sorted by it."""
    STEAM = "steam"
    DMARKET = "dmarket"
    MARKETCSGO = "marketcsgo"
    BUFF = "buff"
    CSMONEY = "csmoney"
    CSFLOAT = "csfloat"
    BITSKINS = "bitskins"
    LISSKINS = "lisskins"
    WAXPEER = "waxpeer"

    @property
    def order(self) -> int:
        return _MARKET_ORDER[self]

    @classmethod
    def parse(cls, name: str) -> Market:
        """Accept either the value ("dmarket") or the member name ("DMARKET")."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            return cls[name.strip().upper()]


_MARKET_ORDER = {m: i for i, m in enumerate(Market)}


class ItemStatus(Enum):
    AVAILABLE = "available"
    ON_SELL_OFFER_WAITING_BUYER = "on_sell_offer_waiting_buyer"
    ON_SELL_OFFER_WAITING_TRADE_OFFER = "on_sell_offer_waiting_trade_offer"
    ON_SELL_OFFER_WAITING_TRADE = "on_sell_offer_waiting_trade"
    SOLD = "sold"
    ON_BUY_OFFER_WAITING_SELLER = "on_buy_offer_waiting_seller"
    ON_BUY_OFFER_WAITING_TRADE_OFFER = "on_buy_offer_waiting_trade_offer"
    ON_BUY_OFFER_WAITING_TRADE = "on_buy_offer_waiting_trade"
    BOUGHT = "bought"
    BOUGHT_VIA_ALTERNATE_FLOW = "bought_via_alternate_flow"
    ERROR = "error"
    ON_HOLD = "on_hold"


SELL_OFFER_STATES = frozenset({
    ItemStatus.ON_SELL_OFFER_WAITING_BUYER,
    ItemStatus.ON_SELL_OFFER_WAITING_TRADE_OFFER,
    ItemStatus.ON_SELL_OFFER_WAITING_TRADE,
})

BUY_OFFER_STATES = frozenset({
    ItemStatus.ON_BUY_OFFER_WAITING_SELLER,
    ItemStatus.ON_BUY_OFFER_WAITING_TRADE_OFFER,
    ItemStatus.ON_BUY_OFFER_WAITING_TRADE,
})

# Instances that count towards Item.count.in_flight
IN_FLIGHT_STATES = BUY_OFFER_STATES | {
    ItemStatus.BOUGHT,
    ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW,
    ItemStatus.ERROR,
}

TERMINAL_STATES = frozenset({ItemStatus.SOLD, ItemStatus.ERROR})

# Hold tiers in days, in the order of Quote.hold_tier_prices
HOLD_TIERS: tuple[int, int, int] = (2, 4, 7)


@dataclass(frozen=True)
class SaleStats:
    name: str
    weekly_avg_price: float
    weekly_avg_price_with_commission: float
    weekly_sale_count: int
    monthly_avg_price: float
    monthly_sale_count: int
    weekly_price_change_pct: float
    projected_price_next_week: float = 0.0


@dataclass(frozen=True)
class Quote:
    """
    One market's latest prices for one item.

    hold_tier_prices are ordered by hold duration (2, 4, 7 days).
    A tier price of 0.0 means unknown: fall back to the immediate price.
    """
    market: Market
    commission_pct: float
    buy_price: float
    buy_price_with_commission: float
    sell_price: float
    sell_price_with_commission: float
    hold_tier_prices: tuple[float, float, float] = (0.0, 0.0, 0.0)
    hold_tier_prices_with_commission: tuple[float, float, float] = (0.0, 0.0, 0.0)
    sale_stats: SaleStats | None = None

    def __post_init__(self) -> None:
        prices = (
            self.buy_price,
            self.buy_price_with_commission,
            self.sell_price,
            self.sell_price_with_commission,
            *self.hold_tier_prices,
            *self.hold_tier_prices_with_commission,
        )
        if any(p < 0 for p in prices):
            raise ValueError(f"Negative price in {self.market.value} quote: {prices}")
        if len(self.hold_tier_prices) != 3 or len(self.hold_tier_prices_with_commission) != 3:
            raise ValueError("hold tier prices must have exactly 3 entries (2, 4, 7 days)")


@dataclass
class ItemCount:
    total: int = 0
    available: int = 0
    on_offer: int = 0
    on_hold: int = 0
    in_flight: int = 0
    max_count: int = 0

    @property
    def is_consistent(self) -> bool:
        return self.total == self.available + self.on_offer + self.on_hold + self.in_flight


@dataclass
class ItemData:
    """One physical instance. Status is owned by executor.state_machine."""
    asset_id: str
    item_name: str
    status: ItemStatus
    market: Market = Market.STEAM
    trade_offer_id: str = ""
    instance_id: str = ""
    class_id: str = ""
    # Per-market listing ids; "" when not listed there
    listing_ids: dict[Market, str] = field(default_factory=dict)
    listing_market: Market | None = None
    timestamp_unix: int | None = None
    # Price paid (major units) and the lowest sale price that keeps the margin; 0 when unknown
    buy_price: float = 0.0
    min_sale_price: float = 0.0

    @property
    def is_listed(self) -> bool:
        return self.listing_market is not None


@dataclass(frozen=True)
class ItemHistory:
    timestamp_unix: int
    price: float
    market: Market
    asset_id: str
    min_sale_price: float = 0.0


@dataclass
class Item:
    name: str
    count: ItemCount = field(default_factory=ItemCount)
    quotes: tuple[Quote, ...] = ()
    data: list[ItemData] = field(default_factory=list)
    history: list[ItemHistory] = field(default_factory=list)

    def quote_for(self, market: Market) -> Quote | None:
        for quote in self.quotes:
            if quote.market == market:
                return quote
        return None

    def instances(self, status: ItemStatus) -> list[ItemData]:
        return [d for d in self.data if d.status == status]


@dataclass(frozen=True)
class PriceCompare:
    """One directional comparison: buy on price[0].market, sell on price[1].market."""
    name: str
    diff_pct_before_commission: int
    diff_pct_after_commission: int
    diff_value_before_commission: float
    diff_value_after_commission: float
    price: tuple[Quote, Quote]

    @property
    def buy_market(self) -> Market:
        return self.price[0].market

    @property
    def sell_market(self) -> Market:
        return self.price[1].market


@dataclass(frozen=True)
class ProfitPick:
    """
    Result of the profitability selector.

    found is False for the zero-profit sentinel: no pair beat 0%, and the
    markets are only placeholders. data_unavailable is True when no
    combination could be evaluated because every candidate sell quote lacked
    sale stats. It is distinct from a zero-profit result.
    """
    buy_market: Market
    sell_market: Market
    profit_pct: float = 0.0
    hold_days: int = 0
    found: bool = False
    missing_stats: tuple[Market, ...] = ()
    data_unavailable: bool = False

    def as_tuple(self) -> tuple[Market, Market, float, int]:
        return (self.buy_market, self.sell_market, self.profit_pct, self.hold_days)

    @property
    def is_profitable(self) -> bool:
        return self.found and not self.data_unavailable and self.profit_pct > 0
