"""
Upstream data source protocols.

Any market client that satisfies these protocols can be plugged into the
pipeline: read sources feed the poller and the reconciler, a TradeClient
feeds executor.trader. Implementations raise DataUnavailable when the
market has no usable data for the item and a NetworkError subclass
(client.transport) for transport or HTTP failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from scanner.models import ItemData, Market, Quote, SaleStats


@dataclass(frozen=True)
class MarketListing:
    """A buyable listing on a market. price is in major units."""
    listing_id: str
    price: float
    tradehold_days: int = 0


@dataclass(frozen=True)
class Purchase:
    asset_id: str
    # Price actually charged, major units
    price: float


@runtime_checkable
class QuoteSource(Protocol):
    def fetch(self, item_name: str, market: Market) -> Quote:
        """Current quote for item_name on market, without sale stats attached."""
        ...


@runtime_checkable
class SaleStatsSource(Protocol):
    def fetch(self, item_name: str, market: Market) -> SaleStats:
        """Weekly/monthly sale statistics for item_name on market."""
        ...


@runtime_checkable
class InventorySource(Protocol):
    def list_instances(self, account: str) -> list[ItemData]:
        """
        Every instance held by account, all pages collected. Tradable instances
        come back AVAILABLE, trade-locked ones ON_HOLD.
        """
        ...


@runtime_checkable
class TradeClient(Protocol):
    """
    Buy, withdraw and list calls. Each write is sent once: a failure after the
    request may have landed raises AmbiguousOutcome and must be reconciled
    with a read, never resent.
    """

    def find_listing(
        self, item_name: str, market: Market, max_price: float, max_hold_days: int = 0,
    ) -> MarketListing | None:
        ...

    def buy(self, market: Market, listing_id: str, price: float, item_name: str = "") -> Purchase:
        ...

    def withdraw(self, market: Market, asset_id: str) -> None:
        ...

    def create_listing(self, market: Market, asset_id: str, price: float, item_name: str = "") -> str:
        """Listing id of the new sell offer."""
        ...

    def find_own_listing(self, market: Market, asset_id: str) -> str:
        """Listing id of the account's offer for asset_id, "" when there is none."""
        ...
