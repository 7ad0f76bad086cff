"""
Unit tests for pipeline/poller.py -- per-market quote polling into the item book.
"""

import logging
import threading

import pytest

from client.transport import NotFound, TransientNetworkError
from pipeline.poller import MarketPoller
from scanner.errors import DataUnavailable
from scanner.models import Market, Quote, SaleStats
from state.item_book import ItemBook

AK = "AK-47 | Redline (Field-Tested)"
AWP = "AWP | Asiimov (Field-Tested)"


def _quote(market, price=10.0):
    return Quote(
        market=market,
        commission_pct=5.0,
        buy_price=price,
        buy_price_with_commission=price,
        sell_price=price,
        sell_price_with_commission=price * 0.95,
    )


def _stats(name, avg=12.0):
    return SaleStats(
        name=name,
        weekly_avg_price=avg,
        weekly_avg_price_with_commission=avg * 0.95,
        weekly_sale_count=5,
        monthly_avg_price=avg,
        monthly_sale_count=20,
        weekly_price_change_pct=0.0,
    )


class FakeQuotes:
    """Returns a quote per (item, market) unless an exception is scripted for it."""

    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, item_name, market):
        with self._lock:
            self.calls.append((item_name, market))
        error = self.failures.get((item_name, market))
        if error is not None:
            raise error
        return _quote(market)


class FakeStats:
    def __init__(self, failures=None):
        self.failures = failures or {}

    def fetch(self, item_name, market):
        error = self.failures.get((item_name, market))
        if error is not None:
            raise error
        return _stats(item_name)


def _poller(book, quotes, stats=None, markets=(Market.DMARKET, Market.MARKETCSGO), items=(AK, AWP)):
    return MarketPoller(
        book, quotes, stats,
        markets=markets,
        stats_markets=[Market.MARKETCSGO],
        items=items,
    )


class TestPollOnce:
    def test_every_item_market_updated(self):
        book = ItemBook()
        quotes = FakeQuotes()
        report = _poller(book, quotes, FakeStats()).poll_once()

        assert report.updated == 4
        assert report.errors == []
        assert sorted(quotes.calls, key=lambda c: (c[0], c[1].order)) == [
            (AK, Market.DMARKET), (AK, Market.MARKETCSGO),
            (AWP, Market.DMARKET), (AWP, Market.MARKETCSGO),
        ]
        item = book.get(AK)
        assert [q.market for q in item.quotes] == [Market.DMARKET, Market.MARKETCSGO]

    def test_stats_only_on_sell_markets(self):
        book = ItemBook()
        _poller(book, FakeQuotes(), FakeStats()).poll_once()
        item = book.get(AK)
        assert item.quote_for(Market.DMARKET).sale_stats is None
        assert item.quote_for(Market.MARKETCSGO).sale_stats.weekly_avg_price == 12.0

    def test_tracked_items_exist_even_without_markets(self):
        book = ItemBook()
        report = _poller(book, FakeQuotes(), markets=()).poll_once()
        assert report.updated == 0
        assert AK in book and AWP in book

    def test_fetch_failure_drops_existing_quote(self):
        book = ItemBook()
        book.update_quote(AK, _quote(Market.DMARKET, price=9.0))
        quotes = FakeQuotes({(AK, Market.DMARKET): NotFound("delisted", target=Market.DMARKET)})
        report = _poller(book, quotes, FakeStats()).poll_once()

        assert report.dropped == 1
        assert report.updated == 3
        assert book.get(AK).quote_for(Market.DMARKET) is None
        assert [(e.market, e.item, e.kind) for e in report.errors] == [(Market.DMARKET, AK, "NotFound")]

    def test_failure_does_not_stop_other_items(self):
        book = ItemBook()
        quotes = FakeQuotes({
            (AK, Market.DMARKET): TransientNetworkError("timeout", target=Market.DMARKET),
        })
        _poller(book, quotes, FakeStats()).poll_once()
        assert book.get(AWP).quote_for(Market.DMARKET) is not None

    def test_missing_stats_keeps_quote(self):
        book = ItemBook()
        stats = FakeStats({(AK, Market.MARKETCSGO): DataUnavailable("no sales", item=AK)})
        report = _poller(book, FakeQuotes(), stats).poll_once()

        assert report.missing_stats == 1
        assert report.updated == 4
        quote = book.get(AK).quote_for(Market.MARKETCSGO)
        assert quote is not None
        assert quote.sale_stats is None

    def test_no_stats_source(self):
        book = ItemBook()
        report = _poller(book, FakeQuotes(), None).poll_once()
        assert report.missing_stats == 0
        assert book.get(AK).quote_for(Market.MARKETCSGO).sale_stats is None

    def test_unexpected_error_reported_per_market(self):
        book = ItemBook()
        quotes = FakeQuotes({(AK, Market.DMARKET): RuntimeError("bug")})
        report = _poller(book, quotes, FakeStats()).poll_once()
        assert [(e.market, e.kind) for e in report.errors] == [(Market.DMARKET, "RuntimeError")]
        # The other market's pass is unaffected
        assert book.get(AK).quote_for(Market.MARKETCSGO) is not None

    def test_not_found_logged_at_info(self, caplog):
        book = ItemBook()
        quotes = FakeQuotes({(AK, Market.DMARKET): NotFound("delisted", target=Market.DMARKET)})
        with caplog.at_level(logging.INFO, logger="pipeline.poller"):
            _poller(book, quotes, FakeStats(), markets=[Market.DMARKET]).poll_once()
        records = [r for r in caplog.records if "NotFound" in r.getMessage()]
        assert len(records) == 1
        assert records[0].levelno == logging.INFO
        assert records[0].market == "dmarket"
        assert records[0].item == AK

    def test_duplicate_markets_polled_once(self):
        poller = _poller(ItemBook(), FakeQuotes(), markets=[Market.DMARKET, Market.DMARKET])
        assert poller.markets == [Market.DMARKET]
