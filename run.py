#!/usr/bin/env python3
"""
Skin arbitrage scanner -- single pipeline script.

Each cycle:
  1. Poll quotes (and sell-market sale stats) from every configured market
  2. Sync the Steam inventory into the state machine, apply trade-lock tickets
  3. Snapshot the item book
  4. Compare markets, decide buys and sale candidates
  5. Execute them (paper mode by default: log only)
  6. Sleep until the next cycle

Usage:
  python run.py --once              # single pass, then exit
  python run.py --live              # send buy, withdraw and listing calls
  python run.py --report            # also log the top market-pair comparisons
  python run.py --log-level DEBUG --json-log run.ndjson
"""

from __future__ import annotations

import argparse
import logging
import signal
import time
from dataclasses import dataclass

from config import (
    Config,
    buy_market_list,
    load_config,
    market_endpoint_map,
    proxied_market_list,
    proxy_endpoint_list,
    sell_market_list,
    tracked_item_list,
)
from client.market_http import HttpInventorySource, HttpQuoteSource, HttpSaleStatsSource, HttpTradeClient
from client.proxy import ProxyPool
from client.transport import RequestExecutor
from executor.dispatch import TicketDispatcher
from executor.state_machine import ItemStateMachine
from executor.trader import Trader
from monitor.logger import setup_logging
from pipeline.decision import DecisionReport, sale_candidates, scan_for_buys
from pipeline.poller import MarketPoller
from pipeline.reconcile import sync_inventory
from scanner.compare import compare_all, top_comparisons
from scanner.models import Market
from state.item_book import ItemBook
from state.ledger import TicketLedger

logger = logging.getLogger(__name__)


_BANNER = r"""
 ____  _    _         _         _     _ _
/ ___|| | _(_)_ __   / \   _ __| |__ (_) |_ _ __ __ _  __ _  ___
\___ \| |/ / | '_ \ / _ \ | '__| '_ \| | __| '__/ _` |/ _` |/ _ \
 ___) |   <| | | | / ___ \| |  | |_) | | |_| | | (_| | (_| |  __/
|____/|_|\_\_|_| |_/_/   \_\_|  |_.__/|_|\__|_|  \__,_|\__, |\___|
                                                       |___/
"""

_REPORT_ROWS = 5


@dataclass
class Pipeline:
    cfg: Config
    book: ItemBook
    ledger: TicketLedger
    machine: ItemStateMachine
    dispatcher: TicketDispatcher
    executor: RequestExecutor
    poller: MarketPoller
    inventory: HttpInventorySource | None
    trader: Trader

    def close(self) -> None:
        self.dispatcher.shutdown()
        self.executor.close()
        self.ledger.close()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cross-market skin arbitrage scanner")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--report", action="store_true", help="Log the top comparisons per market pair")
    parser.add_argument("--live", action="store_true", help="Enable live trading (disables paper mode)")
    parser.add_argument("--log-level", type=str, default=None, help="Console log level (overrides LOG_LEVEL)")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    return parser.parse_args(argv)


def build_pipeline(cfg: Config) -> Pipeline:
    endpoints = market_endpoint_map(cfg)
    buy_markets = buy_market_list(cfg)
    sell_markets = sell_market_list(cfg)

    pool = ProxyPool(
        proxy_endpoint_list(cfg),
        username=cfg.proxy_username,
        password=cfg.proxy_password,
        proxied_markets=proxied_market_list(cfg),
    )
    executor = RequestExecutor(pool, backoff_sec=cfg.retry_backoff_sec)

    book = ItemBook(default_max_count=cfg.default_max_count)
    ledger = TicketLedger(cfg.ledger_db)
    machine = ItemStateMachine(book, ledger)
    machine.restore()
    dispatcher = TicketDispatcher(machine, max_workers=cfg.ticket_workers)

    quote_markets = [m for m in list(dict.fromkeys(buy_markets + sell_markets)) if m in endpoints]
    quotes = HttpQuoteSource(executor, endpoints, cfg.quote_timeout_sec, cfg.quote_max_retries)
    stats = HttpSaleStatsSource(executor, endpoints, cfg.stats_timeout_sec, cfg.stats_max_retries)
    poller = MarketPoller(
        book, quotes, stats,
        markets=quote_markets,
        stats_markets=sell_markets,
        items=tracked_item_list(cfg),
        max_workers=cfg.poll_workers,
    )

    inventory = None
    if cfg.steam_account and Market.STEAM in endpoints:
        inventory = HttpInventorySource(
            executor, endpoints, cfg.inventory_timeout_sec, cfg.inventory_max_retries,
        )

    logger.info(
        "Markets: %d polled (%s), buy=%s sell=%s, %d items, %d proxies",
        len(quote_markets), ", ".join(m.value for m in quote_markets),
        ",".join(m.value for m in buy_markets), ",".join(m.value for m in sell_markets),
        len(tracked_item_list(cfg)), len(pool),
    )
    missing = [m.value for m in buy_markets + sell_markets if m not in endpoints]
    if missing:
        logger.warning("No endpoint configured for: %s", ", ".join(missing))

    trader = Trader(
        machine, dispatcher,
        HttpTradeClient(executor, endpoints, cfg.trade_timeout_sec),
        inventory=inventory,
        account=cfg.steam_account,
        min_margin_pct=cfg.min_profit_margin_pct,
        paper_trading=cfg.paper_trading,
    )

    return Pipeline(cfg, book, ledger, machine, dispatcher, executor, poller, inventory, trader)


def _log_report(snapshot) -> None:
    result = compare_all(snapshot)
    for pair in sorted(result, key=lambda p: (p[0].order, p[1].order)):
        rows = top_comparisons(result, pair, _REPORT_ROWS)
        logger.info("%s -> %s: %d items", pair[0].value, pair[1].value, len(result[pair]))
        for row in rows:
            logger.info(
                "    %-50s %+4d%% (%+.2f) after commission",
                row.name, row.diff_pct_after_commission, row.diff_value_after_commission,
            )


def run_cycle(pipeline: Pipeline, report: bool = False) -> DecisionReport:
    cfg = pipeline.cfg
    pipeline.poller.poll_once()

    if pipeline.inventory is not None:
        sync = sync_inventory(pipeline.machine, pipeline.inventory, cfg.steam_account)
        for future in pipeline.dispatcher.apply_all(sync.tickets):
            exc = future.exception()
            if exc is not None:
                logger.warning("Ticket rejected: %s", exc)

    snapshot = pipeline.book.snapshot()
    if report:
        _log_report(snapshot)

    decisions = scan_for_buys(
        snapshot, cfg.min_profit_margin_pct, buy_market_list(cfg), sell_market_list(cfg),
    )
    sale_candidates(
        snapshot, cfg.min_profit_margin_pct, sell_market_list(cfg),
        cost_basis=pipeline.machine.cost_basis(), report=decisions,
    )

    logger.info("Decisions: %d buy(s), %d sale(s)", len(decisions.buys), len(decisions.sales))
    trades = pipeline.trader.execute(decisions)
    if not pipeline.trader.paper_trading:
        logger.info(
            "Trades: %d bought, %d withdrawn, %d listed, %d failed, %d ambiguous",
            len(trades.bought), len(trades.withdrawn), len(trades.listed),
            len(trades.failed), len(trades.ambiguous),
        )
    return decisions


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    cfg = load_config()
    if args.log_level:
        cfg = cfg.model_copy(update={"log_level": args.log_level})
    if args.live:
        cfg = cfg.model_copy(update={"paper_trading": False})

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.info(_BANNER.strip("\n"))
    logger.info("  Log file: %s", log_file_path)
    logger.info("  Mode: %s", "paper trading" if cfg.paper_trading else "LIVE trading")

    pipeline = build_pipeline(cfg)

    shutdown_requested = False

    def handle_signal(signum, frame):
        nonlocal shutdown_requested
        shutdown_requested = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    cycle = 0
    try:
        while not shutdown_requested:
            cycle += 1
            cycle_start = time.time()
            logger.info("-- Cycle %d --", cycle)
            try:
                run_cycle(pipeline, report=args.report)
            except Exception as e:
                logger.error("Cycle %d failed: %s", cycle, e, exc_info=True)

            if args.once:
                break
            remaining = cfg.poll_interval_sec - (time.time() - cycle_start)
            while remaining > 0 and not shutdown_requested:
                time.sleep(min(remaining, 1.0))
                remaining -= 1.0
    finally:
        pipeline.close()
        logger.info("Stopped after %d cycle(s)", cycle)


if __name__ == "__main__":
    main()
