"""
Trade execution. Turns buy decisions and sale candidates into market calls
and status-change tickets.

Buy:  find a listing at or below max price -> POST buy -> track the asset
      with its cost -> BuySuccess. Bought assets are then withdrawn
      (Withdrawal) on every pass until the market accepts.
Sell: POST listing -> SellOfferCreated carrying the listing id.

Writes are sent once. When one ends in AmbiguousOutcome the follow-up is a
read, never a resend: the inventory for a buy, the account's own listings
for a sale. Anything still unknown is reported as ambiguous and left for
the next inventory sync.

In paper mode nothing is sent; decisions are only logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Mapping

from client.sources import InventorySource, MarketListing, Purchase, TradeClient
from client.transport import AmbiguousOutcome, NetworkError
from executor.dispatch import TicketDispatcher
from executor.lifecycle import BuySuccess, InvalidTransition, SellOfferCreated, StatusChangeTicket, Withdrawal
from executor.state_machine import ItemStateMachine
from pipeline.decision import BuyDecision, DecisionReport, SaleCandidate
from pipeline.reconcile import reconcile_ambiguous_buy
from scanner.errors import DataUnavailable
from scanner.fees import CommissionSchedule
from scanner.models import ItemData, ItemStatus, Market
from scanner.pricing import min_sell_price

logger = logging.getLogger(__name__)

_BOUGHT = (ItemStatus.BOUGHT, ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW)


@dataclass
class TradeReport:
    bought: list[str] = field(default_factory=list)
    withdrawn: list[str] = field(default_factory=list)
    listed: list[str] = field(default_factory=list)
    # item name or asset id -> reason
    failed: dict[str, str] = field(default_factory=dict)
    # Outcome still unknown after the follow-up read
    ambiguous: list[str] = field(default_factory=list)
    paper: int = 0


class Trader:
    """
    Usage:
        trader = Trader(machine, dispatcher, HttpTradeClient(executor, endpoints), inventory, account)
        result = trader.execute(decisions)
    """

    def __init__(
        self,
        machine: ItemStateMachine,
        dispatcher: TicketDispatcher,
        client: TradeClient,
        inventory: InventorySource | None = None,
        account: str = "",
        min_margin_pct: float = 10.0,
        schedules: Mapping[Market, CommissionSchedule] | None = None,
        paper_trading: bool = True,
    ) -> None:
        self._machine = machine
        self._dispatcher = dispatcher
        self._client = client
        self._inventory = inventory
        self._account = account
        self._min_margin_pct = min_margin_pct
        self._schedules = schedules
        self._paper = paper_trading

    @property
    def paper_trading(self) -> bool:
        return self._paper

    def execute(self, decisions: DecisionReport) -> TradeReport:
        report = TradeReport()
        for decision in decisions.buys:
            self.execute_buy(decision, report)
        self.withdraw_bought(report)
        for sale in decisions.sales:
            self.execute_sale(sale, report)
        if report.failed or report.ambiguous:
            logger.warning(
                "Trades: %d failed, %d ambiguous", len(report.failed), len(report.ambiguous),
            )
        return report

    # -- buys -----------------------------------------------------------------

    def execute_buy(self, decision: BuyDecision, report: TradeReport | None = None) -> TradeReport:
        report = report or TradeReport()
        extra = {"item": decision.item, "market": decision.buy_market.value}
        if self._paper:
            logger.info(
                "[PAPER] BUY %s on %s at %.2f (max %.2f, hold %dd), profit %.1f%%",
                decision.item, decision.buy_market.value, decision.price, decision.max_price,
                decision.hold_days, decision.profit_pct, extra=extra,
            )
            report.paper += 1
            return report

        try:
            listing = self._client.find_listing(
                decision.item, decision.buy_market, decision.max_price, decision.hold_days,
            )
        except (NetworkError, DataUnavailable) as e:
            logger.warning("Listing lookup for %s failed: %s", decision.item, e, extra=extra)
            report.failed[decision.item] = f"{type(e).__name__}: {e}"
            return report
        if listing is None:
            logger.info("No listing of %s at or below %.2f", decision.item, decision.max_price, extra=extra)
            report.failed[decision.item] = "no listing at or below max price"
            return report

        try:
            purchase = self._client.buy(decision.buy_market, listing.listing_id, listing.price, decision.item)
        except AmbiguousOutcome as e:
            logger.warning("Buy of %s may have gone through: %s", decision.item, e, extra=extra)
            self._reconcile_buy(decision, listing, report)
            return report
        except NetworkError as e:
            logger.warning("Buy of %s failed: %s", decision.item, e, extra=extra)
            report.failed[decision.item] = f"{type(e).__name__}: {e}"
            return report

        self._record_purchase(decision, listing, purchase, report)
        return report

    def _floor(self, decision: BuyDecision, paid: float) -> float:
        return min_sell_price(paid, decision.sell_market, self._min_margin_pct, self._schedules)

    def _record_purchase(
        self, decision: BuyDecision, listing: MarketListing, purchase: Purchase, report: TradeReport,
    ) -> None:
        if self._machine.is_tracked(purchase.asset_id):
            logger.error(
                "Bought asset %s of %s is already tracked", purchase.asset_id, decision.item,
                extra={"item": decision.item, "asset_id": purchase.asset_id},
            )
            report.failed[purchase.asset_id] = "already tracked"
            return
        self._machine.track(ItemData(
            asset_id=purchase.asset_id,
            item_name=decision.item,
            status=ItemStatus.ON_BUY_OFFER_WAITING_SELLER,
            market=decision.buy_market,
            buy_price=purchase.price,
            min_sale_price=self._floor(decision, purchase.price),
        ))
        ticket = StatusChangeTicket(
            asset_id=purchase.asset_id,
            change=BuySuccess(decision.buy_market, purchase.price),
            listing_id=listing.listing_id,
        )
        if self._submit(ticket, report):
            report.bought.append(purchase.asset_id)

    def _reconcile_buy(self, decision: BuyDecision, listing: MarketListing, report: TradeReport) -> None:
        if self._inventory is None:
            logger.error("Cannot confirm the buy of %s: no inventory source", decision.item)
            report.ambiguous.append(decision.item)
            return
        try:
            arrived = reconcile_ambiguous_buy(self._machine, self._inventory, self._account, decision.item)
        except (NetworkError, DataUnavailable) as e:
            logger.error("Cannot confirm the buy of %s: %s", decision.item, e, extra={"item": decision.item})
            report.ambiguous.append(decision.item)
            return
        if not arrived:
            report.ambiguous.append(decision.item)
            return

        # One buy was sent, so at most one arrival is ours; later syncs track the rest
        data = replace(
            arrived[0],
            buy_price=listing.price,
            min_sale_price=self._floor(decision, listing.price),
        )
        self._machine.track(data)
        report.bought.append(data.asset_id)

    def withdraw_bought(self, report: TradeReport | None = None) -> TradeReport:
        """Ask the buy market to deliver every asset still waiting in BOUGHT."""
        report = report or TradeReport()
        if self._paper:
            return report
        for data in self._machine.instances(*_BOUGHT):
            extra = {"item": data.item_name, "market": data.market.value, "asset_id": data.asset_id}
            try:
                self._client.withdraw(data.market, data.asset_id)
            except AmbiguousOutcome as e:
                # The next inventory sync sees the arrival and applies Withdrawal
                logger.warning("Withdrawal of %s unconfirmed: %s", data.asset_id, e, extra=extra)
                report.ambiguous.append(data.asset_id)
                continue
            except NetworkError as e:
                logger.warning("Withdrawal of %s failed: %s", data.asset_id, e, extra=extra)
                report.failed[data.asset_id] = f"{type(e).__name__}: {e}"
                continue
            if self._submit(StatusChangeTicket(asset_id=data.asset_id, change=Withdrawal()), report):
                report.withdrawn.append(data.asset_id)
        return report

    # -- sales ----------------------------------------------------------------

    def execute_sale(self, sale: SaleCandidate, report: TradeReport | None = None) -> TradeReport:
        report = report or TradeReport()
        extra = {"item": sale.item, "market": sale.market.value, "asset_id": sale.asset_id}
        if self._paper:
            logger.info(
                "[PAPER] SELL %s #%s on %s at %.2f (floor %.2f)",
                sale.item, sale.asset_id, sale.market.value, sale.price, sale.floor_price, extra=extra,
            )
            report.paper += 1
            return report

        # The candidate comes from a snapshot; the instance may have moved on since
        try:
            status = self._machine.status(sale.asset_id)
        except DataUnavailable as e:
            report.failed[sale.asset_id] = str(e)
            return report
        if status != ItemStatus.AVAILABLE:
            report.failed[sale.asset_id] = f"not available ({status.value})"
            return report

        try:
            listing_id = self._client.create_listing(sale.market, sale.asset_id, sale.price, sale.item)
        except AmbiguousOutcome as e:
            logger.warning("Listing of %s may have been created: %s", sale.asset_id, e, extra=extra)
            listing_id = self._reconcile_sale(sale, report)
            if not listing_id:
                return report
        except NetworkError as e:
            logger.warning("Listing of %s failed: %s", sale.asset_id, e, extra=extra)
            report.failed[sale.asset_id] = f"{type(e).__name__}: {e}"
            return report

        ticket = StatusChangeTicket(
            asset_id=sale.asset_id, change=SellOfferCreated(sale.market), listing_id=listing_id,
        )
        if self._submit(ticket, report):
            logger.info(
                "Listed %s #%s on %s at %.2f (listing %s)",
                sale.item, sale.asset_id, sale.market.value, sale.price, listing_id, extra=extra,
            )
            report.listed.append(sale.asset_id)
        return report

    def _reconcile_sale(self, sale: SaleCandidate, report: TradeReport) -> str:
        try:
            listing_id = self._client.find_own_listing(sale.market, sale.asset_id)
        except (NetworkError, DataUnavailable) as e:
            logger.error("Cannot confirm the listing of %s: %s", sale.asset_id, e)
            report.ambiguous.append(sale.asset_id)
            return ""
        if not listing_id:
            report.failed[sale.asset_id] = "listing not created"
        return listing_id

    # -- tickets --------------------------------------------------------------

    def _submit(self, ticket: StatusChangeTicket, report: TradeReport) -> bool:
        try:
            self._dispatcher.submit(ticket).result()
        except (InvalidTransition, DataUnavailable) as e:
            logger.error("Ticket %s for %s rejected: %s", ticket.change.kind, ticket.asset_id, e)
            report.failed[ticket.asset_id] = f"{type(e).__name__}: {e}"
            return False
        return True
