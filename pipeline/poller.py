"""
Quote poller: one worker per market, refreshing every tracked item's quote.

Each market's worker walks the tracked items sequentially, fetching the
quote (and, on sell markets, the sale stats) with no lock held, then
publishes the result into the ItemBook under that item's lock. A failure
for one item/market drops that quote from the book and is recorded in the
PollReport; the rest of the pass continues.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Sequence

from client.sources import QuoteSource, SaleStatsSource
from client.transport import NetworkError, NotFound
from scanner.errors import CalculationError, DataUnavailable
from scanner.models import Market
from state.item_book import ItemBook

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollError:
    market: Market
    item: str
    kind: str
    message: str


@dataclass
class PollReport:
    updated: int = 0
    dropped: int = 0
    missing_stats: int = 0
    errors: list[PollError] = field(default_factory=list)
    elapsed_sec: float = 0.0

    def merge(self, other: PollReport) -> None:
        self.updated += other.updated
        self.dropped += other.dropped
        self.missing_stats += other.missing_stats
        self.errors.extend(other.errors)


class MarketPoller:
    """
    Usage:
        poller = MarketPoller(book, quotes, stats, markets, sell_markets, items)
        report = poller.poll_once()
    """

    def __init__(
        self,
        book: ItemBook,
        quote_source: QuoteSource,
        stats_source: SaleStatsSource | None,
        markets: Sequence[Market],
        stats_markets: Sequence[Market],
        items: Sequence[str],
        max_workers: int | None = None,
    ) -> None:
        self._book = book
        self._quotes = quote_source
        self._stats = stats_source
        self._markets = list(dict.fromkeys(markets))
        self._stats_markets = frozenset(stats_markets)
        self._items = list(items)
        self._max_workers = max_workers or max(1, len(self._markets))

    @property
    def markets(self) -> list[Market]:
        return list(self._markets)

    def poll_once(self) -> PollReport:
        """Refresh every (item, market) quote once. Blocks until all markets finish."""
        t0 = time.monotonic()
        report = PollReport()
        for name in self._items:
            self._book.ensure(name)
        if not self._markets or not self._items:
            return report

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="poll") as pool:
            futures = {pool.submit(self._poll_market, m): m for m in self._markets}
            for future, market in futures.items():
                try:
                    report.merge(future.result())
                except Exception as e:
                    logger.error("Poller for %s crashed: %s", market.value, e, exc_info=True)
                    report.errors.append(PollError(market, "", type(e).__name__, str(e)))

        report.elapsed_sec = time.monotonic() - t0
        logger.info(
            "Poll pass: %d quotes updated, %d dropped, %d errors in %.1fs",
            report.updated, report.dropped, len(report.errors), report.elapsed_sec,
        )
        return report

    def _poll_market(self, market: Market) -> PollReport:
        report = PollReport()
        for name in self._items:
            try:
                quote = self._quotes.fetch(name, market)
            except (NotFound, DataUnavailable, CalculationError, NetworkError) as e:
                self._record(report, market, name, e)
                if self._book.drop_quote(name, market):
                    report.dropped += 1
                continue

            if market in self._stats_markets and self._stats is not None:
                try:
                    quote = replace(quote, sale_stats=self._stats.fetch(name, market))
                except (DataUnavailable, CalculationError, NetworkError) as e:
                    report.missing_stats += 1
                    self._record(report, market, name, e)

            self._book.update_quote(name, quote)
            report.updated += 1
        return report

    @staticmethod
    def _record(report: PollReport, market: Market, name: str, error: Exception) -> None:
        kind = type(error).__name__
        level = logging.INFO if isinstance(error, (NotFound, DataUnavailable)) else logging.WARNING
        logger.log(
            level, "%s on %s for %s: %s", kind, market.value, name, error,
            extra={"item": name, "market": market.value},
        )
        report.errors.append(PollError(market=market, item=name, kind=kind, message=str(error)))
