"""
Inventory reconciliation.

sync_inventory() merges one inventory read into the state machine. Unseen
assets start being tracked (AVAILABLE when tradable, ON_HOLD otherwise).
Tracked assets found in the read move on: a bought asset that arrived gets
Withdrawal, an ON_HOLD asset whose trade lock ended gets TradeLockDone.
Tickets are returned, not applied, so the caller routes them through the
TicketDispatcher and keeps per-asset ordering.

reconcile_ambiguous_buy() is the follow-up read after a non-idempotent buy
ended in AmbiguousOutcome: the inventory, not the failed call, says whether
the purchase happened.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from client.sources import InventorySource
from client.transport import NetworkError
from executor.lifecycle import StatusChangeTicket, TradeLockDone, Withdrawal
from executor.state_machine import ItemStateMachine
from scanner.errors import DataUnavailable
from scanner.models import ItemData, ItemStatus

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    scanned: int = 0
    tracked: list[str] = field(default_factory=list)
    tickets: list[StatusChangeTicket] = field(default_factory=list)
    # Tracked live assets not present in this read (traded away or withdrawn elsewhere)
    missing: list[str] = field(default_factory=list)
    error: str = ""


def _lock_ended(data: ItemData, now: float) -> bool:
    if data.status == ItemStatus.AVAILABLE:
        return True
    return data.timestamp_unix is not None and data.timestamp_unix <= now


def arrival_tickets(machine: ItemStateMachine, inventory: list[ItemData]) -> list[StatusChangeTicket]:
    """Withdrawal tickets for tracked bought assets that have shown up in the inventory."""
    tickets = []
    for data in inventory:
        if not machine.is_tracked(data.asset_id):
            continue
        if machine.status(data.asset_id) not in (ItemStatus.BOUGHT, ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW):
            continue
        tickets.append(StatusChangeTicket(asset_id=data.asset_id, change=Withdrawal()))
        logger.info(
            "Bought asset %s arrived in inventory", data.asset_id,
            extra={"item": data.item_name, "asset_id": data.asset_id},
        )
    return tickets


def trade_lock_tickets(
    machine: ItemStateMachine,
    inventory: list[ItemData],
    now: float | None = None,
) -> list[StatusChangeTicket]:
    """TradeLockDone tickets for tracked ON_HOLD assets that are tradable in this read."""
    now = time.time() if now is None else now
    tickets = []
    for data in inventory:
        if not machine.is_tracked(data.asset_id) or not _lock_ended(data, now):
            continue
        if machine.status(data.asset_id) != ItemStatus.ON_HOLD:
            continue
        tickets.append(StatusChangeTicket(asset_id=data.asset_id, change=TradeLockDone()))
        logger.debug(
            "Trade lock ended for asset %s", data.asset_id,
            extra={"item": data.item_name, "asset_id": data.asset_id},
        )
    return tickets


def sync_inventory(
    machine: ItemStateMachine,
    source: InventorySource,
    account: str,
    now: float | None = None,
) -> SyncReport:
    """Read account's inventory once and merge it. Network failures are reported, not raised."""
    report = SyncReport()
    try:
        inventory = source.list_instances(account)
    except (NetworkError, DataUnavailable) as e:
        logger.warning("Inventory sync for %s failed: %s", account, e)
        report.error = f"{type(e).__name__}: {e}"
        return report

    report.scanned = len(inventory)
    seen = set()
    for data in inventory:
        seen.add(data.asset_id)
        if machine.is_tracked(data.asset_id):
            continue
        machine.track(data)
        report.tracked.append(data.asset_id)

    report.tickets = arrival_tickets(machine, inventory) + trade_lock_tickets(machine, inventory, now)
    report.missing = [a for a in machine.tracked_assets() if a not in seen]

    logger.info(
        "Inventory %s: %d scanned, %d newly tracked, %d trade locks ended",
        account, report.scanned, len(report.tracked), len(report.tickets),
    )
    return report


def reconcile_ambiguous_buy(
    machine: ItemStateMachine,
    source: InventorySource,
    account: str,
    item_name: str,
) -> list[ItemData]:
    """
    Instances of item_name present in the inventory but not yet tracked.
    Empty means the buy did not land (yet); the caller decides whether to retry.
    Raises the NetworkError of the follow-up read: the outcome stays unknown.
    """
    arrived = [
        data
        for data in source.list_instances(account)
        if data.item_name == item_name and not machine.is_tracked(data.asset_id)
    ]
    if arrived:
        logger.info(
            "Ambiguous buy of %s confirmed: %d new instance(s) in inventory",
            item_name, len(arrived), extra={"item": item_name},
        )
    else:
        logger.warning("Ambiguous buy of %s not visible in inventory", item_name, extra={"item": item_name})
    return arrived
