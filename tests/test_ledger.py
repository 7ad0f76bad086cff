"""
Unit tests for state/ledger.py -- append-only ticket log and replay.
"""

import sqlite3
import threading

import pytest

from executor.lifecycle import (
    SellOfferBought,
    SellOfferCreated,
    SellTradeCanceled,
    StatusChangeTicket,
    TradeLockDone,
)
from scanner.models import ItemStatus, Market
from state.ledger import TicketLedger

NAME = "M4A4 | Howl (Minimal Wear)"


@pytest.fixture
def ledger(tmp_path):
    led = TicketLedger(tmp_path / "ledger.db")
    yield led
    led.close()


class TestRegister:
    def test_register_once(self, ledger):
        assert ledger.register("1", NAME, ItemStatus.ON_HOLD) is True
        assert ledger.register("1", NAME, ItemStatus.AVAILABLE) is False
        assert ledger.initial_status("1") == ItemStatus.ON_HOLD

    def test_costs_only_for_known_prices(self, ledger):
        ledger.register("1", NAME, ItemStatus.ON_BUY_OFFER_WAITING_SELLER, buy_price=10.0, min_sale_price=11.9)
        ledger.register("2", NAME, ItemStatus.AVAILABLE)
        assert ledger.costs() == {"1": (10.0, 11.9)}

    def test_unknown_asset(self, ledger):
        assert ledger.initial_status("nope") is None
        assert ledger.replay("nope") is None
        assert ledger.history("nope") == []


class TestAppend:
    def test_sequence_per_asset(self, ledger):
        ledger.register("1", NAME, ItemStatus.ON_HOLD)
        ledger.register("2", NAME, ItemStatus.AVAILABLE)
        assert ledger.append(StatusChangeTicket("1", TradeLockDone()), ItemStatus.AVAILABLE) == 1
        assert ledger.append(StatusChangeTicket("2", SellOfferCreated(Market.MARKETCSGO)),
                             ItemStatus.ON_SELL_OFFER_WAITING_BUYER) == 1
        assert ledger.append(StatusChangeTicket("1", SellOfferCreated(Market.MARKETCSGO)),
                             ItemStatus.ON_SELL_OFFER_WAITING_BUYER) == 2

    def test_unregistered_asset_rejected(self, ledger):
        with pytest.raises(KeyError):
            ledger.append(StatusChangeTicket("9", TradeLockDone()), ItemStatus.AVAILABLE)
        assert ledger.stats["tickets"] == 0

    def test_history_in_order(self, ledger):
        ledger.register("1", NAME, ItemStatus.AVAILABLE)
        tickets = [
            StatusChangeTicket("1", SellOfferCreated(Market.MARKETCSGO), listing_id="L1"),
            StatusChangeTicket("1", SellOfferBought(Market.MARKETCSGO)),
            StatusChangeTicket("1", SellTradeCanceled()),
        ]
        statuses = [
            ItemStatus.ON_SELL_OFFER_WAITING_BUYER,
            ItemStatus.ON_SELL_OFFER_WAITING_TRADE_OFFER,
            ItemStatus.AVAILABLE,
        ]
        for ticket, status in zip(tickets, statuses):
            ledger.append(ticket, status)

        history = ledger.history("1")
        assert [e.seq for e in history] == [1, 2, 3]
        assert [e.ticket for e in history] == tickets
        assert [e.status_after for e in history] == statuses
        assert ledger.replay("1") == ItemStatus.AVAILABLE
        assert ledger.projection() == {"1": ItemStatus.AVAILABLE}

    def test_concurrent_appends_distinct_seq(self, ledger):
        ledger.register("1", NAME, ItemStatus.AVAILABLE)
        seqs = []
        lock = threading.Lock()

        def append():
            seq = ledger.append(StatusChangeTicket("1", SellTradeCanceled()), ItemStatus.AVAILABLE)
            with lock:
                seqs.append(seq)

        threads = [threading.Thread(target=append) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(seqs) == list(range(1, 21))


class TestPersistence:
    def test_reopen_keeps_log(self, tmp_path):
        path = tmp_path / "ledger.db"
        led = TicketLedger(path)
        led.register("1", NAME, ItemStatus.ON_HOLD)
        led.append(StatusChangeTicket("1", TradeLockDone()), ItemStatus.AVAILABLE)
        led.close()

        reopened = TicketLedger(path)
        assert reopened.replay("1") == ItemStatus.AVAILABLE
        assert reopened.registered() == [("1", NAME, ItemStatus.ON_HOLD)]
        reopened.close()

    def test_wal_mode(self, tmp_path):
        path = tmp_path / "ledger.db"
        led = TicketLedger(path)
        led.close()
        conn = sqlite3.connect(str(path))
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        finally:
            conn.close()

    def test_older_database_gains_cost_columns(self, tmp_path):
        path = tmp_path / "ledger.db"
        conn = sqlite3.connect(str(path))
        conn.execute(
            "CREATE TABLE instances (asset_id TEXT PRIMARY KEY, item_name TEXT NOT NULL, "
            "initial_status TEXT NOT NULL, created_at REAL NOT NULL)"
        )
        conn.execute("INSERT INTO instances VALUES ('1', ?, 'available', 0)", (NAME,))
        conn.commit()
        conn.close()

        led = TicketLedger(path)
        assert led.registered() == [("1", NAME, ItemStatus.AVAILABLE)]
        assert led.costs() == {}
        led.register("2", NAME, ItemStatus.AVAILABLE, buy_price=5.0)
        assert led.costs() == {"2": (5.0, 0.0)}
        led.close()
