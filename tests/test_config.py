"""
Unit tests for config.py.
"""

import pytest
from pydantic import ValidationError

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
from scanner.models import Market


class TestConfig:
    def test_defaults(self):
        cfg = Config(_env_file=None)
        assert cfg.quote_timeout_sec == 15.0
        assert cfg.quote_max_retries == 0
        assert cfg.stats_timeout_sec == 10.0
        assert cfg.stats_max_retries == 2
        assert cfg.inventory_timeout_sec == 30.0
        assert cfg.retry_backoff_sec == 1.0
        assert cfg.min_profit_margin_pct == 10.0
        assert cfg.default_max_count == 3
        assert cfg.paper_trading is True
        assert cfg.trade_timeout_sec == 30.0
        assert cfg.ledger_db == "ledger.db"
        assert cfg.log_level == "INFO"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MIN_PROFIT_MARGIN_PCT", "7.5")
        monkeypatch.setenv("SELL_MARKETS", "marketcsgo,csfloat")
        cfg = load_config()
        assert cfg.min_profit_margin_pct == 7.5
        assert sell_market_list(cfg) == [Market.MARKETCSGO, Market.CSFLOAT]

    def test_live_trading_from_env(self, monkeypatch):
        monkeypatch.setenv("PAPER_TRADING", "false")
        assert load_config().paper_trading is False

    def test_margin_at_minus_hundred_rejected(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, min_profit_margin_pct=-100.0)

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, stats_max_retries=-1)

    def test_zero_timeout_rejected(self):
        with pytest.raises(ValidationError):
            Config(_env_file=None, quote_timeout_sec=0)

    def test_frozen(self):
        cfg = Config(_env_file=None)
        with pytest.raises(ValidationError):
            cfg.log_level = "DEBUG"


class TestListHelpers:
    def test_default_markets(self):
        cfg = Config(_env_file=None)
        assert buy_market_list(cfg) == [
            Market.DMARKET, Market.BITSKINS, Market.CSFLOAT, Market.LISSKINS, Market.CSMONEY,
        ]
        assert sell_market_list(cfg) == [Market.MARKETCSGO]

    def test_market_names_case_insensitive(self):
        cfg = Config(_env_file=None, buy_markets=" DMARKET , csfloat,")
        assert buy_market_list(cfg) == [Market.DMARKET, Market.CSFLOAT]

    def test_proxied_markets_unset_is_none(self):
        assert proxied_market_list(Config(_env_file=None)) is None
        cfg = Config(_env_file=None, proxied_markets="steam")
        assert proxied_market_list(cfg) == [Market.STEAM]

    def test_proxy_endpoints(self):
        cfg = Config(_env_file=None, proxy_endpoints="10.0.0.1:8080, 10.0.0.2:8080")
        assert proxy_endpoint_list(cfg) == ["10.0.0.1:8080", "10.0.0.2:8080"]

    def test_tracked_items_semicolon_separated(self):
        cfg = Config(
            _env_file=None,
            tracked_items="AK-47 | Redline (Field-Tested); Sticker | Team Liquid, Katowice 2014",
        )
        assert tracked_item_list(cfg) == [
            "AK-47 | Redline (Field-Tested)",
            "Sticker | Team Liquid, Katowice 2014",
        ]

    def test_market_endpoint_map(self):
        cfg = Config(_env_file=None, market_endpoints="dmarket=https://dm.test/api, steam=https://st.test")
        assert market_endpoint_map(cfg) == {
            Market.DMARKET: "https://dm.test/api",
            Market.STEAM: "https://st.test",
        }

    def test_market_endpoint_without_url(self):
        cfg = Config(_env_file=None, market_endpoints="dmarket")
        with pytest.raises(ValueError, match="market=url"):
            market_endpoint_map(cfg)
