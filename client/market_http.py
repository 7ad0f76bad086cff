"""
HTTP market sources over a normalized JSON surface.

Each market is configured with a base URL. Endpoints:

    GET {base}/listings?name=<item>   -> {"listings": [{"id", "name", "price", "tradehold"}]}
    GET {base}/sales?name=<item>      -> {"sales": [{"date": "YYYY-MM-DD", "price", "count"}]}
    GET {base}/inventory?account=<a>&after=<cursor>
                                      -> {"items": [...], "next": cursor | null}

Prices arrive in the market's minor units (cents, or mills on MarketCSGO)
and are converted to major units here. These calls are reads, so they go
through the RequestExecutor with retries enabled.

HttpTradeClient adds the writes:

    POST {base}/buy       {"listing_id", "price"} -> {"success", "asset_id", "price"}
    POST {base}/withdraw  {"asset_id"}            -> {"success"}
    POST {base}/listings  {"asset_id", "price"}   -> {"success", "listing_id"}
    GET  {base}/listings/own?asset_id=<a>        -> {"listings": [{"listing_id", "asset_id"}]}

Writes are sent once with max_retries=0. A 5xx reply or an unreadable 2xx
body leaves the outcome unknown and raises AmbiguousOutcome, like a
transport failure after sending; "success": false raises TradeRejected.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Mapping

from client.sources import MarketListing, Purchase
from client.transport import (
    AmbiguousOutcome,
    OutboundRequest,
    RequestExecutor,
    TradeRejected,
    classify_response,
)
from scanner.errors import DataUnavailable
from scanner.fees import CommissionSchedule, price_scale
from scanner.models import ItemData, ItemStatus, Market, Quote, SaleStats
from scanner.quotes import Listing, build_quote
from scanner.sale_stats import SaleRecord, compute_sale_stats

logger = logging.getLogger(__name__)

# Safety cap on inventory pagination
MAX_INVENTORY_PAGES = 200


class _MarketHttpBase:
    def __init__(
        self,
        executor: RequestExecutor,
        endpoints: Mapping[Market, str],
        timeout: float = 15.0,
        max_retries: int = 0,
        price_units: Mapping[Market, int] | None = None,
    ) -> None:
        self._executor = executor
        self._endpoints = {m: url.rstrip("/") for m, url in endpoints.items()}
        self._timeout = timeout
        self._max_retries = max_retries
        self._price_units = dict(price_units or {})

    def markets(self) -> list[Market]:
        return list(self._endpoints)

    def _base(self, market: Market, item_name: str = "") -> str:
        base = self._endpoints.get(market)
        if base is None:
            raise DataUnavailable(f"No endpoint configured for {market.value}", item=item_name, market=market)
        return base

    def _unit(self, market: Market) -> int:
        return self._price_units.get(market, price_scale(market))

    def _get_json(self, market: Market, path: str, params: dict) -> dict:
        url = f"{self._base(market, params.get('name', ''))}{path}"
        response = self._executor.execute(
            market,
            OutboundRequest.get(url, params=params, headers={"Accept": "application/json"}),
            timeout=self._timeout,
            max_retries=self._max_retries,
        )
        classify_response(response, market)
        try:
            body = response.json()
        except ValueError as e:
            raise DataUnavailable(f"Malformed JSON from {market.value} {path}: {e}", market=market) from e
        if not isinstance(body, dict):
            raise DataUnavailable(f"Unexpected payload from {market.value} {path}", market=market)
        return body


def _to_major(raw, unit: int, context: str) -> float:
    try:
        value = float(raw) / unit
    except (TypeError, ValueError) as e:
        raise DataUnavailable(f"Bad price {raw!r} in {context}") from e
    if math.isnan(value) or math.isinf(value):
        raise DataUnavailable(f"Non-finite price {raw!r} in {context}")
    return value


class HttpQuoteSource(_MarketHttpBase):
    """
    Usage:
        quotes = HttpQuoteSource(executor, {Market.DMARKET: "https://dm.example/api"})
        quote = quotes.fetch("AK-47 | Redline (Field-Tested)", Market.DMARKET)
    """

    def __init__(
        self,
        executor: RequestExecutor,
        endpoints: Mapping[Market, str],
        timeout: float = 15.0,
        max_retries: int = 0,
        price_units: Mapping[Market, int] | None = None,
        schedules: Mapping[Market, CommissionSchedule] | None = None,
    ) -> None:
        super().__init__(executor, endpoints, timeout, max_retries, price_units)
        self._schedules = schedules

    def fetch(self, item_name: str, market: Market) -> Quote:
        body = self._get_json(market, "/listings", {"name": item_name})
        unit = self._unit(market)
        context = f"{market.value} listings for {item_name}"
        listings = [
            Listing(
                name=row.get("name", ""),
                price=_to_major(row.get("price"), unit, context),
                tradehold_days=int(row.get("tradehold") or 0),
            )
            for row in body.get("listings") or []
        ]
        logger.debug("%s: %d listings for %s", market.value, len(listings), item_name)
        return build_quote(market, item_name, listings, self._schedules)


class HttpSaleStatsSource(_MarketHttpBase):
    def __init__(
        self,
        executor: RequestExecutor,
        endpoints: Mapping[Market, str],
        timeout: float = 10.0,
        max_retries: int = 2,
        price_units: Mapping[Market, int] | None = None,
        schedules: Mapping[Market, CommissionSchedule] | None = None,
        today: date | None = None,
    ) -> None:
        super().__init__(executor, endpoints, timeout, max_retries, price_units)
        self._schedules = schedules
        self._today = today

    def fetch(self, item_name: str, market: Market) -> SaleStats:
        body = self._get_json(market, "/sales", {"name": item_name})
        unit = self._unit(market)
        context = f"{market.value} sales for {item_name}"
        records = []
        for row in body.get("sales") or []:
            try:
                day = date.fromisoformat(row["date"])
            except (KeyError, TypeError, ValueError) as e:
                raise DataUnavailable(f"Bad sale date in {context}: {row!r}", item=item_name, market=market) from e
            records.append(SaleRecord(
                day=day,
                price=_to_major(row.get("price"), unit, context),
                count=int(row.get("count") or 0),
            ))
        if not records:
            raise DataUnavailable(f"No sales for {item_name} on {market.value}", item=item_name, market=market)
        return compute_sale_stats(item_name, market, records, today=self._today, schedules=self._schedules)


class HttpInventorySource(_MarketHttpBase):
    """Inventory of a trading account, read page by page from one market (Steam by default)."""

    def __init__(
        self,
        executor: RequestExecutor,
        endpoints: Mapping[Market, str],
        timeout: float = 30.0,
        max_retries: int = 2,
        market: Market = Market.STEAM,
    ) -> None:
        super().__init__(executor, endpoints, timeout, max_retries)
        self._market = market

    def list_instances(self, account: str) -> list[ItemData]:
        instances: list[ItemData] = []
        cursor: str | None = None
        for _ in range(MAX_INVENTORY_PAGES):
            params = {"account": account}
            if cursor:
                params["after"] = cursor
            body = self._get_json(self._market, "/inventory", params)
            for row in body.get("items") or []:
                instances.append(self._parse_item(row))
            cursor = body.get("next")
            if not cursor:
                break
        else:
            logger.warning(
                "Inventory of %s truncated at %d pages", account, MAX_INVENTORY_PAGES,
            )
        logger.debug("Inventory of %s: %d instances", account, len(instances))
        return instances

    def _parse_item(self, row: dict) -> ItemData:
        try:
            asset_id = str(row["asset_id"])
            name = row["name"]
        except KeyError as e:
            raise DataUnavailable(f"Inventory row missing {e}: {row!r}", market=self._market) from e
        tradable_after = row.get("tradable_after")
        return ItemData(
            asset_id=asset_id,
            item_name=name,
            status=ItemStatus.AVAILABLE if row.get("tradable", True) else ItemStatus.ON_HOLD,
            market=self._market,
            instance_id=str(row.get("instance_id", "")),
            class_id=str(row.get("class_id", "")),
            timestamp_unix=int(tradable_after) if tradable_after else None,
        )


class HttpTradeClient(_MarketHttpBase):
    """
    Usage:
        trades = HttpTradeClient(executor, endpoints, timeout=cfg.trade_timeout_sec)
        listing = trades.find_listing(name, Market.DMARKET, max_price=12.5)
        purchase = trades.buy(Market.DMARKET, listing.listing_id, listing.price, name)

    max_retries applies to the listing lookups only; writes are never retried.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        endpoints: Mapping[Market, str],
        timeout: float = 30.0,
        max_retries: int = 0,
        price_units: Mapping[Market, int] | None = None,
    ) -> None:
        super().__init__(executor, endpoints, timeout, max_retries, price_units)

    def find_listing(
        self, item_name: str, market: Market, max_price: float, max_hold_days: int = 0,
    ) -> MarketListing | None:
        """Cheapest listing of item_name at or below max_price whose trade hold fits max_hold_days."""
        body = self._get_json(market, "/listings", {"name": item_name})
        unit = self._unit(market)
        context = f"{market.value} listings for {item_name}"
        best: MarketListing | None = None
        for row in body.get("listings") or []:
            if row.get("name") != item_name or not row.get("id"):
                continue
            price = _to_major(row.get("price"), unit, context)
            hold = int(row.get("tradehold") or 0)
            if price <= 0 or price > max_price or hold > max_hold_days:
                continue
            if best is None or (price, hold) < (best.price, best.tradehold_days):
                best = MarketListing(listing_id=str(row["id"]), price=price, tradehold_days=hold)
        return best

    def buy(self, market: Market, listing_id: str, price: float, item_name: str = "") -> Purchase:
        unit = self._unit(market)
        body = self._post_json(market, "/buy", {"listing_id": listing_id, "price": round(price * unit)}, item_name)
        asset_id = body.get("asset_id")
        if not asset_id:
            raise AmbiguousOutcome(
                f"{market.value} confirmed listing {listing_id} without an asset id", target=market,
            )
        paid = price
        if body.get("price") is not None:
            try:
                paid = _to_major(body["price"], unit, f"{market.value} purchase of {item_name}")
            except DataUnavailable as e:
                logger.warning("%s; keeping the listed price %.3f", e, price, extra={"item": item_name})
        logger.info(
            "Bought %s on %s for %.3f (listing %s, asset %s)",
            item_name, market.value, paid, listing_id, asset_id,
            extra={"item": item_name, "market": market.value, "asset_id": str(asset_id)},
        )
        return Purchase(asset_id=str(asset_id), price=paid)

    def withdraw(self, market: Market, asset_id: str) -> None:
        self._post_json(market, "/withdraw", {"asset_id": asset_id})
        logger.info(
            "Withdrawal of asset %s from %s requested", asset_id, market.value,
            extra={"market": market.value, "asset_id": asset_id},
        )

    def create_listing(self, market: Market, asset_id: str, price: float, item_name: str = "") -> str:
        payload = {"asset_id": asset_id, "price": round(price * self._unit(market))}
        body = self._post_json(market, "/listings", payload, item_name)
        listing_id = body.get("listing_id")
        if not listing_id:
            raise AmbiguousOutcome(
                f"{market.value} accepted asset {asset_id} without a listing id", target=market,
            )
        return str(listing_id)

    def find_own_listing(self, market: Market, asset_id: str) -> str:
        body = self._get_json(market, "/listings/own", {"asset_id": asset_id})
        for row in body.get("listings") or []:
            if str(row.get("asset_id")) == asset_id and row.get("listing_id"):
                return str(row["listing_id"])
        return ""

    def _post_json(self, market: Market, path: str, payload: dict, item_name: str = "") -> dict:
        url = f"{self._base(market, item_name)}{path}"
        response = self._executor.execute(
            market,
            OutboundRequest.post(url, json=payload, headers={"Accept": "application/json"}),
            timeout=self._timeout,
            max_retries=0,
        )
        if response.status_code >= 500:
            raise AmbiguousOutcome(
                f"HTTP {response.status_code} from {market.value} POST {path}, outcome unknown",
                target=market, url=url, status_code=response.status_code,
            )
        classify_response(response, market)
        try:
            body = response.json()
        except ValueError as e:
            raise AmbiguousOutcome(f"Unreadable reply to {market.value} POST {path}: {e}", target=market, url=url) from e
        if not isinstance(body, dict):
            raise AmbiguousOutcome(f"Unexpected reply to {market.value} POST {path}", target=market, url=url)
        if not body.get("success"):
            raise TradeRejected(
                f"{market.value} refused POST {path}: {body.get('error') or 'no reason given'}",
                target=market, url=url, status_code=response.status_code,
            )
        return body
