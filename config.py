"""
Configuration loaded from environment variables (and .env). Fail-fast on invalid values.

List-valued settings are plain strings so they can be set from a shell:
markets and proxy endpoints are comma-separated, tracked item names are
';'-separated (item names may contain commas), market endpoints are
'market=url' pairs separated by commas.
"""

from pydantic_settings import BaseSettings
from pydantic import Field

from scanner.models import Market


class Config(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "frozen": True, "extra": "ignore"}

    # Egress proxies, 'host:port' each; empty = every market goes direct
    proxy_endpoints: str = ""
    proxy_username: str = ""
    proxy_password: str = ""
    # Markets routed through the proxy pool; empty = all but steam, buff, lisskins
    proxied_markets: str = ""

    # Per-operation timeouts and retries. Price lookups fail fast; stats and
    # inventory reads are retried; trade calls are never retried.
    quote_timeout_sec: float = Field(default=15.0, gt=0)
    quote_max_retries: int = Field(default=0, ge=0, le=10)
    stats_timeout_sec: float = Field(default=10.0, gt=0)
    stats_max_retries: int = Field(default=2, ge=0, le=10)
    inventory_timeout_sec: float = Field(default=30.0, gt=0)
    inventory_max_retries: int = Field(default=2, ge=0, le=10)
    trade_timeout_sec: float = Field(default=30.0, gt=0)
    # Linear backoff: attempt n waits retry_backoff_sec * n
    retry_backoff_sec: float = Field(default=1.0, ge=0)

    # Decision thresholds
    min_profit_margin_pct: float = Field(default=10.0, gt=-100.0)
    buy_markets: str = "dmarket,bitskins,csfloat,lisskins,csmoney"
    sell_markets: str = "marketcsgo"
    # Instances held per item before buying stops (0 = no buying)
    default_max_count: int = Field(default=3, ge=0)
    # Log decisions without sending any buy, withdraw or listing call
    paper_trading: bool = True

    # Market data
    market_endpoints: str = ""
    tracked_items: str = ""
    steam_account: str = ""

    # Runtime
    poll_interval_sec: float = Field(default=60.0, gt=0)
    poll_workers: int = Field(default=9, ge=1, le=32)
    ticket_workers: int = Field(default=4, ge=1, le=32)
    ledger_db: str = "ledger.db"
    log_level: str = "INFO"


def _split(value: str, sep: str = ",") -> list[str]:
    return [part.strip() for part in value.split(sep) if part.strip()]


def _markets(value: str) -> list[Market]:
    return [Market.parse(name) for name in _split(value)]


def buy_market_list(cfg: Config) -> list[Market]:
    return _markets(cfg.buy_markets)


def sell_market_list(cfg: Config) -> list[Market]:
    return _markets(cfg.sell_markets)


def proxied_market_list(cfg: Config) -> list[Market] | None:
    """None when unset, so the pool applies its default direct-market set."""
    return _markets(cfg.proxied_markets) if cfg.proxied_markets.strip() else None


def proxy_endpoint_list(cfg: Config) -> list[str]:
    return _split(cfg.proxy_endpoints)


def tracked_item_list(cfg: Config) -> list[str]:
    return _split(cfg.tracked_items, ";")


def market_endpoint_map(cfg: Config) -> dict[Market, str]:
    """'dmarket=https://a,steam=https://b' -> {Market.DMARKET: 'https://a', ...}."""
    endpoints: dict[Market, str] = {}
    for pair in _split(cfg.market_endpoints):
        name, sep, url = pair.partition("=")
        if not sep or not url.strip():
            raise ValueError(f"Bad market endpoint {pair!r}, expected market=url")
        endpoints[Market.parse(name.strip())] = url.strip()
    return endpoints


def load_config() -> Config:
    """Load and validate config from environment. Raises on invalid fields."""
    return Config()
