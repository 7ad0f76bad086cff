"""
Market commission schedules and price granularity.

Each market charges:
- buy commission: added on top of the listing price when purchasing
- sell commission: deducted from the listing price when a sale completes
- withdraw commission: deducted when proceeds leave the market

Prices on MarketCSGO are quoted in thousandths, everywhere else in hundredths.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Mapping

from scanner.errors import DataUnavailable
from scanner.models import Market

logger = logging.getLogger(__name__)

# Sub-grid float noise tolerated before rounding up (fraction of one minor unit)
_GRID_EPSILON = 1e-9


@dataclass(frozen=True)
class CommissionSchedule:
    buy_pct: float
    sell_pct: float
    withdraw_pct: float = 0.0

    @property
    def total_sell_pct(self) -> float:
        return self.sell_pct + self.withdraw_pct


DEFAULT_COMMISSIONS: dict[Market, CommissionSchedule] = {
    Market.STEAM: CommissionSchedule(buy_pct=0.0, sell_pct=13.0),
    Market.DMARKET: CommissionSchedule(buy_pct=0.0, sell_pct=5.0),
    Market.MARKETCSGO: CommissionSchedule(buy_pct=0.0, sell_pct=5.0),
    Market.BUFF: CommissionSchedule(buy_pct=0.0, sell_pct=2.5),
    Market.CSMONEY: CommissionSchedule(buy_pct=0.0, sell_pct=5.0),
    Market.CSFLOAT: CommissionSchedule(buy_pct=2.5, sell_pct=2.0),
    Market.BITSKINS: CommissionSchedule(buy_pct=0.0, sell_pct=10.0, withdraw_pct=2.0),
    Market.LISSKINS: CommissionSchedule(buy_pct=0.0, sell_pct=5.0),
    Market.WAXPEER: CommissionSchedule(buy_pct=0.0, sell_pct=6.0),
}

# Minor units per currency unit
PRICE_SCALE: dict[Market, int] = {Market.MARKETCSGO: 1000}
DEFAULT_PRICE_SCALE = 100


def get_commissions(
    market: Market,
    schedules: Mapping[Market, CommissionSchedule] | None = None,
) -> CommissionSchedule:
    """Resolve a market's commission schedule. Raises DataUnavailable if unknown."""
    table = DEFAULT_COMMISSIONS if schedules is None else schedules
    schedule = table.get(market)
    if schedule is None:
        raise DataUnavailable(f"No commission schedule for {market.value}", market=market)
    return schedule


def price_scale(market: Market) -> int:
    return PRICE_SCALE.get(market, DEFAULT_PRICE_SCALE)


def ceil_to_grid(value: float, scale: int) -> float:
    """Round up to 1/scale, ignoring float noise below _GRID_EPSILON of a unit."""
    return math.ceil(value * scale - _GRID_EPSILON) / scale


def buy_price_with_commission(price: float, schedule: CommissionSchedule, scale: int = DEFAULT_PRICE_SCALE) -> float:
    """
    Total paid for a listing at `price`. 0.0 stays 0.0 (unknown hold tier).
    The buy commission is grossed up: paid = price / (1 - buy_pct/100).
    """
    if price <= 0:
        return 0.0
    return ceil_to_grid(price / ((100.0 - schedule.buy_pct) / 100.0), scale)


def sell_price_with_commission(price: float, schedule: CommissionSchedule, scale: int = DEFAULT_PRICE_SCALE) -> float:
    """Proceeds received for a sale at `price` after sell + withdraw commission."""
    if price <= 0:
        return 0.0
    return ceil_to_grid(price * (1.0 - schedule.total_sell_pct / 100.0), scale)
