"""
Item lifecycle: status-change variants, tickets and the transition table.

A StatusChangeTicket is the only legal way to move an ItemData between
statuses. next_status() is a pure function of (current status, change);
it never performs I/O and never falls back to ERROR on an undefined
transition. ERROR is reached only through the explicit failure variants
(BuyFailure, SellError).

Buy flow:
    OnBuyOfferWaitingSeller -BuyStart-> OnBuyOfferWaitingTradeOffer -BuyStart-> OnBuyOfferWaitingTrade
    any OnBuyOffer* -BuySuccess-> Bought (BoughtViaAlternateFlow for markets settling outside Steam trades)
    Bought* -Withdrawal-> OnHold -TradeLockDone-> Available

Sell flow:
    Available -SellOfferCreated-> OnSellOfferWaitingBuyer -SellOfferBought-> OnSellOfferWaitingTradeOffer
    -SellTradeSent-> OnSellOfferWaitingTrade -SellSuccess-> Sold
    any OnSellOffer* -SellTradeCanceled-> Available
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from scanner.models import BUY_OFFER_STATES, SELL_OFFER_STATES, ItemStatus, Market

logger = logging.getLogger(__name__)

# Markets whose purchases are delivered without a Steam trade offer
ALTERNATE_FLOW_MARKETS = frozenset({Market.LISSKINS})


class InvalidTransition(Exception):
    """The change is not defined from the instance's current status. Instance left unchanged."""

    def __init__(self, asset_id: str, current: ItemStatus, change: StatusChange) -> None:
        super().__init__(
            f"Invalid transition for asset {asset_id}: {change.kind} from {current.value}"
        )
        self.asset_id = asset_id
        self.current = current
        self.change = change


# -- Status change variants ---------------------------------------------------

@dataclass(frozen=True)
class StatusChange:
    """Base for all variants. `kind` is the serialized tag."""

    kind = "status_change"

    def payload(self) -> dict:
        return {}


@dataclass(frozen=True)
class Withdrawal(StatusChange):
    kind = "withdrawal"


@dataclass(frozen=True)
class TradeLockDone(StatusChange):
    kind = "trade_lock_done"


@dataclass(frozen=True)
class BuyStart(StatusChange):
    market: Market
    kind = "buy_start"

    def payload(self) -> dict:
        return {"market": self.market.value}


@dataclass(frozen=True)
class BuySuccess(StatusChange):
    market: Market
    # Price paid in major units; 0.0 when the market did not report it
    price: float = 0.0
    kind = "buy_success"

    def payload(self) -> dict:
        return {"market": self.market.value, "price": self.price}


@dataclass(frozen=True)
class BuyFailure(StatusChange):
    kind = "buy_failure"


@dataclass(frozen=True)
class SellOfferCreated(StatusChange):
    market: Market
    kind = "sell_offer_created"

    def payload(self) -> dict:
        return {"market": self.market.value}


@dataclass(frozen=True)
class SellOfferBought(StatusChange):
    market: Market
    kind = "sell_offer_bought"

    def payload(self) -> dict:
        return {"market": self.market.value}


@dataclass(frozen=True)
class SellTradeCanceled(StatusChange):
    kind = "sell_trade_canceled"


@dataclass(frozen=True)
class SellTradeSent(StatusChange):
    market: Market
    timestamp_unix: int
    kind = "sell_trade_sent"

    def payload(self) -> dict:
        return {"market": self.market.value, "timestamp_unix": self.timestamp_unix}


@dataclass(frozen=True)
class SellSuccess(StatusChange):
    market: Market
    price: float
    kind = "sell_success"

    def payload(self) -> dict:
        return {"market": self.market.value, "price": self.price}


@dataclass(frozen=True)
class SellError(StatusChange):
    timestamp_unix: int
    kind = "sell_error"

    def payload(self) -> dict:
        return {"timestamp_unix": self.timestamp_unix}


_VARIANTS: dict[str, type[StatusChange]] = {
    cls.kind: cls
    for cls in (
        Withdrawal, TradeLockDone, BuyStart, BuySuccess, BuyFailure,
        SellOfferCreated, SellOfferBought, SellTradeCanceled,
        SellTradeSent, SellSuccess, SellError,
    )
}


def change_to_dict(change: StatusChange) -> dict:
    return {"kind": change.kind, **change.payload()}


def change_from_dict(data: dict) -> StatusChange:
    """Inverse of change_to_dict. Raises ValueError on an unknown kind."""
    kind = data.get("kind")
    cls = _VARIANTS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown status change kind: {kind!r}")
    kwargs = {k: v for k, v in data.items() if k != "kind"}
    if "market" in kwargs:
        kwargs["market"] = Market(kwargs["market"])
    return cls(**kwargs)


@dataclass(frozen=True)
class StatusChangeTicket:
    """Immutable event: apply `change` to the instance identified by asset_id."""
    asset_id: str
    change: StatusChange
    # Listing id on the change's market (sell offers) or the buy order id
    listing_id: str = ""
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "asset_id": self.asset_id,
            "change": change_to_dict(self.change),
            "listing_id": self.listing_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> StatusChangeTicket:
        return cls(
            asset_id=data["asset_id"],
            change=change_from_dict(data["change"]),
            listing_id=data.get("listing_id", ""),
            created_at=data.get("created_at", 0.0),
        )


# -- Transition table ---------------------------------------------------------

_TRANSITIONS: dict[type[StatusChange], dict[ItemStatus, ItemStatus]] = {
    BuyStart: {
        ItemStatus.ON_BUY_OFFER_WAITING_SELLER: ItemStatus.ON_BUY_OFFER_WAITING_TRADE_OFFER,
        ItemStatus.ON_BUY_OFFER_WAITING_TRADE_OFFER: ItemStatus.ON_BUY_OFFER_WAITING_TRADE,
    },
    BuySuccess: {s: ItemStatus.BOUGHT for s in BUY_OFFER_STATES},
    BuyFailure: {s: ItemStatus.ERROR for s in BUY_OFFER_STATES},
    Withdrawal: {
        ItemStatus.BOUGHT: ItemStatus.ON_HOLD,
        ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW: ItemStatus.ON_HOLD,
    },
    TradeLockDone: {ItemStatus.ON_HOLD: ItemStatus.AVAILABLE},
    SellOfferCreated: {ItemStatus.AVAILABLE: ItemStatus.ON_SELL_OFFER_WAITING_BUYER},
    SellOfferBought: {
        ItemStatus.ON_SELL_OFFER_WAITING_BUYER: ItemStatus.ON_SELL_OFFER_WAITING_TRADE_OFFER,
    },
    SellTradeSent: {
        ItemStatus.ON_SELL_OFFER_WAITING_TRADE_OFFER: ItemStatus.ON_SELL_OFFER_WAITING_TRADE,
    },
    SellTradeCanceled: {s: ItemStatus.AVAILABLE for s in SELL_OFFER_STATES},
    SellSuccess: {ItemStatus.ON_SELL_OFFER_WAITING_TRADE: ItemStatus.SOLD},
    SellError: {s: ItemStatus.ERROR for s in SELL_OFFER_STATES},
}


def can_apply(current: ItemStatus, change: StatusChange) -> bool:
    return current in _TRANSITIONS.get(type(change), {})


def next_status(current: ItemStatus, change: StatusChange, asset_id: str = "") -> ItemStatus:
    """
    Status after applying `change` to an instance in `current`.

    Raises InvalidTransition when the change is not defined from `current`.
    """
    targets = _TRANSITIONS.get(type(change))
    if targets is None or current not in targets:
        raise InvalidTransition(asset_id, current, change)
    target = targets[current]
    if isinstance(change, BuySuccess) and change.market in ALTERNATE_FLOW_MARKETS:
        target = ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW
    return target


def replay(initial: ItemStatus, changes: list[StatusChange], asset_id: str = "") -> ItemStatus:
    """Fold next_status over an ordered change log."""
    status = initial
    for change in changes:
        status = next_status(status, change, asset_id)
    return status


def legal_changes(current: ItemStatus) -> list[str]:
    """Variant kinds that may be applied from `current`."""
    return sorted(cls.kind for cls, table in _TRANSITIONS.items() if current in table)
