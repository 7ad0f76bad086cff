"""
Unit tests for executor/trader.py -- buys, withdrawals and listings turned into tickets.
"""

import httpx
import pytest
import respx

from client.market_http import HttpTradeClient
from client.sources import MarketListing, Purchase
from client.transport import AmbiguousOutcome, RequestExecutor, TradeRejected, TransientNetworkError
from executor.dispatch import TicketDispatcher
from executor.lifecycle import BuySuccess, SellOfferCreated, StatusChangeTicket, Withdrawal
from executor.state_machine import ItemStateMachine
from executor.trader import TradeReport, Trader
from pipeline.decision import BuyDecision, DecisionReport, SaleCandidate
from scanner.models import ItemData, ItemStatus, Market
from state.item_book import ItemBook
from state.ledger import TicketLedger

AK = "AK-47 | Redline (Field-Tested)"


class FakeTradeClient:
    """Scripted trade client. Each attribute is a return value or an exception to raise."""

    def __init__(self, listing=None, purchase=None, withdraw=None, listing_id="S-1", own_listing=""):
        self.listing = listing
        self.purchase = purchase
        self.withdraw_error = withdraw
        self.listing_id = listing_id
        self.own_listing = own_listing
        self.calls = []

    @staticmethod
    def _result(value):
        if isinstance(value, Exception):
            raise value
        return value

    def find_listing(self, item_name, market, max_price, max_hold_days=0):
        self.calls.append(("find_listing", item_name, market, max_price, max_hold_days))
        return self._result(self.listing)

    def buy(self, market, listing_id, price, item_name=""):
        self.calls.append(("buy", market, listing_id, price))
        return self._result(self.purchase)

    def withdraw(self, market, asset_id):
        self.calls.append(("withdraw", market, asset_id))
        self._result(self.withdraw_error)

    def create_listing(self, market, asset_id, price, item_name=""):
        self.calls.append(("create_listing", market, asset_id, price))
        return self._result(self.listing_id)

    def find_own_listing(self, market, asset_id):
        self.calls.append(("find_own_listing", market, asset_id))
        return self._result(self.own_listing)


class FakeInventory:
    def __init__(self, instances=None, error=None):
        self.instances = instances or []
        self.error = error

    def list_instances(self, account):
        if self.error is not None:
            raise self.error
        return [ItemData(d.asset_id, d.item_name, d.status) for d in self.instances]


def _decision(price=100.0, max_price=120.0, hold_days=0):
    return BuyDecision(
        item=AK,
        buy_market=Market.DMARKET,
        sell_market=Market.MARKETCSGO,
        hold_days=hold_days,
        price=price,
        max_price=max_price,
        profit_pct=30.0,
    )


def _buy_success(asset_id, market=Market.DMARKET):
    return StatusChangeTicket(asset_id, BuySuccess(market, 99.0))


@pytest.fixture
def ledger(tmp_path):
    led = TicketLedger(tmp_path / "ledger.db")
    yield led
    led.close()


@pytest.fixture
def machine(ledger):
    return ItemStateMachine(ItemBook(default_max_count=3), ledger)


@pytest.fixture
def dispatcher(machine):
    d = TicketDispatcher(machine, max_workers=2)
    yield d
    d.shutdown()


def _trader(machine, dispatcher, client, inventory=None, paper_trading=False):
    return Trader(
        machine, dispatcher, client,
        inventory=inventory, account="acct", min_margin_pct=10.0, paper_trading=paper_trading,
    )


class TestPaperMode:
    def test_nothing_sent(self, machine, dispatcher):
        client = FakeTradeClient()
        trader = _trader(machine, dispatcher, client, paper_trading=True)
        decisions = DecisionReport(
            buys=[_decision()],
            sales=[SaleCandidate("1", AK, Market.MARKETCSGO, 160.0)],
        )
        report = trader.execute(decisions)
        assert client.calls == []
        assert report.paper == 2
        assert machine.tracked_assets() == []

    def test_paper_logs_decisions(self, machine, dispatcher, caplog):
        trader = _trader(machine, dispatcher, FakeTradeClient(), paper_trading=True)
        with caplog.at_level("INFO", logger="executor.trader"):
            trader.execute_buy(_decision())
        assert any("[PAPER] BUY" in r.getMessage() for r in caplog.records)


class TestBuy:
    def test_bought_tracked_with_cost_then_withdrawn(self, machine, dispatcher, ledger):
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0), purchase=Purchase("900", 99.0),
        )
        trader = _trader(machine, dispatcher, client)
        report = trader.execute(DecisionReport(buys=[_decision()]))

        assert client.calls[0] == ("find_listing", AK, Market.DMARKET, 120.0, 0)
        assert client.calls[1] == ("buy", Market.DMARKET, "L-9", 99.0)
        assert client.calls[2] == ("withdraw", Market.DMARKET, "900")
        assert report.bought == ["900"]
        assert report.withdrawn == ["900"]

        assert machine.status("900") == ItemStatus.ON_HOLD
        assert machine.cost_basis() == {"900": 99.0}
        data = machine.book.get(AK).data[0]
        # 99 * 1.1 / 0.95, rounded up to MarketCSGO's 0.001 grid
        assert data.min_sale_price == pytest.approx(114.632)
        changes = [entry.ticket.change for entry in ledger.history("900")]
        assert changes == [BuySuccess(Market.DMARKET, 99.0), Withdrawal()]
        assert ledger.history("900")[0].ticket.listing_id == "L-9"

    def test_no_listing_under_max(self, machine, dispatcher):
        client = FakeTradeClient(listing=None)
        report = _trader(machine, dispatcher, client).execute_buy(_decision())
        assert report.failed == {AK: "no listing at or below max price"}
        assert [c[0] for c in client.calls] == ["find_listing"]

    def test_rejected_buy_tracks_nothing(self, machine, dispatcher):
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0),
            purchase=TradeRejected("dmarket refused POST /buy: sold", target=Market.DMARKET),
        )
        report = _trader(machine, dispatcher, client).execute_buy(_decision())
        assert AK in report.failed
        assert report.bought == []
        assert machine.tracked_assets() == []

    def test_ambiguous_buy_confirmed_by_inventory(self, machine, dispatcher, ledger):
        machine.track(ItemData("1", AK, ItemStatus.AVAILABLE))
        inventory = FakeInventory([
            ItemData("1", AK, ItemStatus.AVAILABLE),
            ItemData("900", AK, ItemStatus.ON_HOLD),
        ])
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0),
            purchase=AmbiguousOutcome("read timed out", target=Market.DMARKET),
        )
        report = _trader(machine, dispatcher, client, inventory=inventory).execute_buy(_decision())

        assert report.bought == ["900"]
        assert report.ambiguous == []
        assert machine.status("900") == ItemStatus.ON_HOLD
        assert machine.cost_basis() == {"900": 99.0}
        assert ledger.costs()["900"][0] == 99.0
        # Only one buy call: the outcome is read back, never resent
        assert [c[0] for c in client.calls] == ["find_listing", "buy"]

    def test_ambiguous_buy_not_visible(self, machine, dispatcher):
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0),
            purchase=AmbiguousOutcome("read timed out", target=Market.DMARKET),
        )
        report = _trader(machine, dispatcher, client, inventory=FakeInventory()).execute_buy(_decision())
        assert report.ambiguous == [AK]
        assert machine.tracked_assets() == []

    def test_ambiguous_buy_and_failed_read(self, machine, dispatcher):
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0),
            purchase=AmbiguousOutcome("read timed out", target=Market.DMARKET),
        )
        inventory = FakeInventory(error=TransientNetworkError("down", target=Market.STEAM))
        report = _trader(machine, dispatcher, client, inventory=inventory).execute_buy(_decision())
        assert report.ambiguous == [AK]

    def test_ambiguous_buy_without_inventory(self, machine, dispatcher):
        client = FakeTradeClient(
            listing=MarketListing("L-9", 99.0),
            purchase=AmbiguousOutcome("read timed out", target=Market.DMARKET),
        )
        report = _trader(machine, dispatcher, client).execute_buy(_decision())
        assert report.ambiguous == [AK]


class TestWithdraw:
    def test_failed_withdrawal_stays_bought(self, machine, dispatcher):
        machine.track(ItemData("900", AK, ItemStatus.ON_BUY_OFFER_WAITING_SELLER, market=Market.DMARKET))
        machine.apply_ticket("900", _buy_success("900"))
        client = FakeTradeClient(withdraw=TradeRejected("not yet", target=Market.DMARKET))
        report = _trader(machine, dispatcher, client).withdraw_bought()
        assert "900" in report.failed
        assert machine.status("900") == ItemStatus.BOUGHT

    def test_ambiguous_withdrawal_left_for_inventory_sync(self, machine, dispatcher):
        machine.track(ItemData("900", AK, ItemStatus.ON_BUY_OFFER_WAITING_SELLER, market=Market.LISSKINS))
        machine.apply_ticket("900", _buy_success("900", Market.LISSKINS))
        client = FakeTradeClient(withdraw=AmbiguousOutcome("reset", target=Market.LISSKINS))
        report = _trader(machine, dispatcher, client).withdraw_bought()
        assert client.calls == [("withdraw", Market.LISSKINS, "900")]
        assert report.ambiguous == ["900"]
        assert machine.status("900") == ItemStatus.BOUGHT_VIA_ALTERNATE_FLOW


class TestSale:
    def test_listing_recorded(self, machine, dispatcher, ledger):
        machine.track(ItemData("1", AK, ItemStatus.AVAILABLE))
        client = FakeTradeClient(listing_id="S-7")
        report = _trader(machine, dispatcher, client).execute_sale(
            SaleCandidate("1", AK, Market.MARKETCSGO, 160.0),
        )
        assert report.listed == ["1"]
        assert client.calls == [("create_listing", Market.MARKETCSGO, "1", 160.0)]
        data = machine.book.get(AK).data[0]
        assert data.status == ItemStatus.ON_SELL_OFFER_WAITING_BUYER
        assert data.listing_ids == {Market.MARKETCSGO: "S-7"}
        entry = ledger.history("1")[0]
        assert entry.ticket.change == SellOfferCreated(Market.MARKETCSGO)
        assert entry.ticket.listing_id == "S-7"

    def test_ambiguous_listing_found_by_read(self, machine, dispatcher):
        machine.track(ItemData("1", AK, ItemStatus.AVAILABLE))
        client = FakeTradeClient(
            listing_id=AmbiguousOutcome("502", target=Market.MARKETCSGO), own_listing="S-8",
        )
        report = _trader(machine, dispatcher, client).execute_sale(
            SaleCandidate("1", AK, Market.MARKETCSGO, 160.0),
        )
        assert report.listed == ["1"]
        assert [c[0] for c in client.calls] == ["create_listing", "find_own_listing"]
        assert machine.book.get(AK).data[0].listing_ids == {Market.MARKETCSGO: "S-8"}

    def test_ambiguous_listing_not_created(self, machine, dispatcher):
        machine.track(ItemData("1", AK, ItemStatus.AVAILABLE))
        client = FakeTradeClient(listing_id=AmbiguousOutcome("502", target=Market.MARKETCSGO))
        report = _trader(machine, dispatcher, client).execute_sale(
            SaleCandidate("1", AK, Market.MARKETCSGO, 160.0),
        )
        assert report.failed == {"1": "listing not created"}
        assert machine.status("1") == ItemStatus.AVAILABLE

    def test_stale_candidate_not_sent(self, machine, dispatcher):
        machine.track(ItemData("1", AK, ItemStatus.ON_HOLD))
        client = FakeTradeClient()
        report = _trader(machine, dispatcher, client).execute_sale(
            SaleCandidate("1", AK, Market.MARKETCSGO, 160.0),
        )
        assert report.listed == []
        assert report.failed == {"1": "not available (on_hold)"}
        assert client.calls == []


class TestOverHttp:
    @pytest.fixture
    def executor(self):
        ex = RequestExecutor(sleep=lambda s: None)
        yield ex
        ex.close()

    @respx.mock
    def test_buy_timeout_is_read_back_from_inventory(self, machine, dispatcher, executor):
        respx.get("https://dm.test/api/listings").mock(return_value=httpx.Response(200, json={
            "listings": [{"id": "L-9", "name": AK, "price": 9900, "tradehold": 0}],
        }))
        buy = respx.post("https://dm.test/api/buy").mock(side_effect=httpx.ReadTimeout("timed out"))
        client = HttpTradeClient(executor, {Market.DMARKET: "https://dm.test/api"})
        inventory = FakeInventory([ItemData("900", AK, ItemStatus.ON_HOLD)])

        report = _trader(machine, dispatcher, client, inventory=inventory).execute_buy(_decision())

        assert buy.call_count == 1
        assert report.bought == ["900"]
        assert machine.cost_basis() == {"900": 99.0}

    @respx.mock
    def test_full_pass(self, machine, dispatcher, executor):
        respx.get("https://dm.test/api/listings").mock(return_value=httpx.Response(200, json={
            "listings": [{"id": "L-9", "name": AK, "price": 9900, "tradehold": 0}],
        }))
        respx.post("https://dm.test/api/buy").mock(return_value=httpx.Response(200, json={
            "success": True, "asset_id": "900", "price": 9850,
        }))
        respx.post("https://dm.test/api/withdraw").mock(return_value=httpx.Response(200, json={"success": True}))
        respx.post("https://mc.test/api/listings").mock(return_value=httpx.Response(200, json={
            "success": True, "listing_id": "S-1",
        }))
        client = HttpTradeClient(executor, {
            Market.DMARKET: "https://dm.test/api",
            Market.MARKETCSGO: "https://mc.test/api",
        })
        machine.track(ItemData("1", AK, ItemStatus.AVAILABLE))

        report = _trader(machine, dispatcher, client).execute(DecisionReport(
            buys=[_decision()],
            sales=[SaleCandidate("1", AK, Market.MARKETCSGO, 160.0)],
        ))

        assert isinstance(report, TradeReport)
        assert (report.bought, report.withdrawn, report.listed) == (["900"], ["900"], ["1"])
        assert machine.cost_basis() == {"900": 98.5}
        assert machine.status("900") == ItemStatus.ON_HOLD
        assert machine.status("1") == ItemStatus.ON_SELL_OFFER_WAITING_BUYER
