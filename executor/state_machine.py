"""
Item state machine: applies status-change tickets to tracked instances.

Instances live in the shared ItemBook (Item.data). The machine owns their
status field: nothing else writes it. Per asset, ticket application is
linearized by a per-asset lock; tickets for different assets run in
parallel. Lock order is asset lock -> item lock -> book structural lock.

An accepted ticket is written to the ledger (when one is attached) before
the in-memory instance is mutated. A rejected ticket leaves the instance,
the counts and the ledger untouched.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace

from executor.lifecycle import (
    BuySuccess,
    InvalidTransition,
    SellError,
    SellOfferCreated,
    SellSuccess,
    SellTradeCanceled,
    SellTradeSent,
    StatusChangeTicket,
    next_status,
)
from scanner.errors import DataUnavailable
from scanner.models import (
    IN_FLIGHT_STATES,
    SELL_OFFER_STATES,
    Item,
    ItemData,
    ItemHistory,
    ItemStatus,
)
from state.item_book import ItemBook
from state.ledger import TicketLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    asset_id: str
    previous: ItemStatus
    new_status: ItemStatus


def recount(item: Item) -> None:
    """Recompute item.count from its live instances. max_count is kept."""
    count = item.count
    count.total = len(item.data)
    count.available = sum(1 for d in item.data if d.status == ItemStatus.AVAILABLE)
    count.on_offer = sum(1 for d in item.data if d.status in SELL_OFFER_STATES)
    count.on_hold = sum(1 for d in item.data if d.status == ItemStatus.ON_HOLD)
    count.in_flight = sum(1 for d in item.data if d.status in IN_FLIGHT_STATES)


class ItemStateMachine:
    """
    Usage:
        machine = ItemStateMachine(book, ledger)
        machine.track(ItemData(asset_id="1", item_name=name, status=ItemStatus.ON_HOLD))
        machine.apply_ticket("1", StatusChangeTicket("1", TradeLockDone()))
    """

    def __init__(self, book: ItemBook, ledger: TicketLedger | None = None) -> None:
        self._book = book
        self._ledger = ledger
        self._lock = threading.Lock()
        self._asset_locks: dict[str, threading.Lock] = {}
        # asset_id -> item name, for every tracked (live) instance
        self._index: dict[str, str] = {}
        # Sold instances are retired from Item.data but remain known
        self._retired: dict[str, ItemStatus] = {}

    @property
    def book(self) -> ItemBook:
        return self._book

    def is_tracked(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._index or asset_id in self._retired

    def tracked_assets(self) -> list[str]:
        with self._lock:
            return list(self._index)

    def track(self, data: ItemData) -> None:
        """
        Start tracking a new instance in its initial status.
        Raises ValueError if the asset id is already tracked.
        """
        self._track(data, register=True)

    def restore(self) -> int:
        """
        Rebuild tracked instances from the ledger after a restart.

        Each asset starts from its registered status and cost, then its logged
        tickets go through the same mutation as live application, so listings,
        timestamps and sale history come back along with the status. Returns
        the number of live (unsold) instances restored.
        """
        if self._ledger is None:
            return 0
        costs = self._ledger.costs()
        restored = 0
        for asset_id, name, initial in self._ledger.registered():
            paid, floor = costs.get(asset_id, (0.0, 0.0))
            data = ItemData(
                asset_id=asset_id, item_name=name, status=initial,
                buy_price=paid, min_sale_price=floor,
            )
            self._track(data, register=False)
            with self._book.locked(name) as item:
                for entry in self._ledger.history(asset_id):
                    self._mutate(item, data, entry.ticket, entry.status_after)
                recount(item)
            if data.status != ItemStatus.SOLD:
                restored += 1
        logger.info("Restored %d instance(s) from the ledger", restored)
        return restored

    def _track(self, data: ItemData, register: bool) -> None:
        with self._lock:
            if data.asset_id in self._index or data.asset_id in self._retired:
                raise ValueError(f"Asset {data.asset_id} is already tracked")
            self._index[data.asset_id] = data.item_name
            self._asset_locks[data.asset_id] = threading.Lock()

        if register and self._ledger is not None:
            self._ledger.register(
                data.asset_id, data.item_name, data.status, data.buy_price, data.min_sale_price,
            )

        with self._book.locked(data.item_name) as item:
            item.data.append(data)
            recount(item)
        logger.info(
            "Tracking %s asset %s as %s",
            data.item_name, data.asset_id, data.status.value,
            extra={"item": data.item_name, "asset_id": data.asset_id},
        )

    def status(self, asset_id: str) -> ItemStatus:
        """Current status. Raises DataUnavailable for an unknown asset."""
        with self._lock:
            retired = self._retired.get(asset_id)
            name = self._index.get(asset_id)
        if retired is not None:
            return retired
        if name is None:
            raise DataUnavailable(f"Asset {asset_id} is not tracked")
        with self._book.locked(name) as item:
            return self._find(item, asset_id).status

    def available_instances(self, name: str) -> list[ItemData]:
        """Copies of the item's instances that can be listed for sale now."""
        item = self._book.get(name)
        if item is None:
            return []
        with self._book.locked(name) as item:
            return [
                replace(d, listing_ids=dict(d.listing_ids))
                for d in item.data
                if d.status == ItemStatus.AVAILABLE
            ]

    def cost_basis(self) -> dict[str, float]:
        """asset_id -> price paid, for live instances whose cost is known."""
        with self._lock:
            names = set(self._index.values())
        basis: dict[str, float] = {}
        for name in sorted(names):
            with self._book.locked(name) as item:
                basis.update({d.asset_id: d.buy_price for d in item.data if d.buy_price > 0})
        return basis

    def instances(self, *statuses: ItemStatus) -> list[ItemData]:
        """Copies of every live instance currently in one of statuses."""
        with self._lock:
            names = sorted(set(self._index.values()))
        found: list[ItemData] = []
        for name in names:
            with self._book.locked(name) as item:
                found.extend(
                    replace(d, listing_ids=dict(d.listing_ids)) for d in item.data if d.status in statuses
                )
        return found

    def apply_ticket(self, asset_id: str, ticket: StatusChangeTicket) -> ApplyResult:
        """
        Apply one ticket. Raises DataUnavailable for an unknown asset and
        InvalidTransition when the change is illegal from the current status.
        """
        if ticket.asset_id != asset_id:
            raise ValueError(f"Ticket for asset {ticket.asset_id} applied to asset {asset_id}")

        with self._lock:
            asset_lock = self._asset_locks.get(asset_id)
            name = self._index.get(asset_id)
            retired = self._retired.get(asset_id)

        if asset_lock is None:
            raise DataUnavailable(f"Asset {asset_id} is not tracked")
        if retired is not None:
            raise InvalidTransition(asset_id, retired, ticket.change)

        with asset_lock:
            with self._lock:
                retired = self._retired.get(asset_id)
            if retired is not None:
                raise InvalidTransition(asset_id, retired, ticket.change)
            with self._book.locked(name) as item:
                data = self._find(item, asset_id)
                previous = data.status
                try:
                    new_status = next_status(previous, ticket.change, asset_id)
                except InvalidTransition:
                    logger.warning(
                        "Rejected %s for asset %s in %s",
                        ticket.change.kind, asset_id, previous.value,
                        extra={"item": name, "asset_id": asset_id},
                    )
                    raise

                if self._ledger is not None:
                    self._ledger.append(ticket, new_status)

                self._mutate(item, data, ticket, new_status)
                recount(item)

        logger.info(
            "Asset %s: %s -> %s (%s)",
            asset_id, previous.value, new_status.value, ticket.change.kind,
            extra={"item": name, "asset_id": asset_id},
        )
        return ApplyResult(asset_id=asset_id, previous=previous, new_status=new_status)

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _find(item: Item, asset_id: str) -> ItemData:
        for data in item.data:
            if data.asset_id == asset_id:
                return data
        raise DataUnavailable(f"Asset {asset_id} missing from {item.name}", item=item.name)

    def _mutate(
        self, item: Item, data: ItemData, ticket: StatusChangeTicket, new_status: ItemStatus,
    ) -> None:
        change = ticket.change
        data.status = new_status

        if isinstance(change, BuySuccess):
            if change.price > 0:
                data.buy_price = change.price
        elif isinstance(change, SellOfferCreated):
            data.listing_market = change.market
            if ticket.listing_id:
                data.listing_ids[change.market] = ticket.listing_id
        elif isinstance(change, SellTradeCanceled):
            if data.listing_market is not None:
                data.listing_ids.pop(data.listing_market, None)
            data.listing_market = None
        elif isinstance(change, (SellTradeSent, SellError)):
            data.timestamp_unix = change.timestamp_unix
        elif isinstance(change, SellSuccess):
            item.data.remove(data)
            item.history.append(ItemHistory(
                timestamp_unix=data.timestamp_unix or int(time.time()),
                price=change.price,
                market=change.market,
                asset_id=data.asset_id,
                min_sale_price=data.min_sale_price,
            ))
            with self._lock:
                self._index.pop(data.asset_id, None)
                self._retired[data.asset_id] = new_status
