"""
Resilient request executor over httpx.

Every upstream call goes through RequestExecutor.execute():

- one egress endpoint is drawn from the ProxyPool per call (retries reuse it)
- only transport failures and timeouts are retried, with linear backoff
  (backoff_sec * attempt)
- a received response is returned as-is whatever its status; mapping
  non-2xx onto the error taxonomy is the caller's job (classify_response)
- non-idempotent requests are never retried here. If such a request fails
  after it may have reached the server, AmbiguousOutcome tells the caller to
  reconcile (re-read inventory or orders) instead of resending
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from client.proxy import ProxyPool
from scanner.models import Market

logger = logging.getLogger(__name__)

# Failures raised before any byte of the request could reach the server
_NOT_SENT = (httpx.ConnectError, httpx.ConnectTimeout, httpx.ProxyError, httpx.PoolTimeout)


class NetworkError(Exception):
    def __init__(
        self,
        message: str,
        target: Market | None = None,
        url: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.target = target
        self.url = url
        self.status_code = status_code


class TransientNetworkError(NetworkError):
    """Transport failure or timeout after retries, or a 429/5xx reply."""


class FatalNetworkError(NetworkError):
    """Authentication rejected or another permanent 4xx. Do not retry."""


class NotFound(NetworkError):
    """404: the item or listing does not exist on this market."""


class AmbiguousOutcome(NetworkError):
    """A non-idempotent request failed after it may have been applied."""


class TradeRejected(FatalNetworkError):
    """The market answered but refused the trade, e.g. the listing is gone or its price moved."""


@dataclass(frozen=True)
class OutboundRequest:
    method: str
    url: str
    params: dict[str, Any] | None = None
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: bytes | None = None
    # Reads, searches and price lookups are idempotent; buy/withdraw/accept are not
    idempotent: bool = True

    @classmethod
    def get(cls, url: str, params: dict[str, Any] | None = None, **kwargs) -> OutboundRequest:
        return cls(method="GET", url=url, params=params, **kwargs)

    @classmethod
    def post(cls, url: str, json: Any = None, idempotent: bool = False, **kwargs) -> OutboundRequest:
        return cls(method="POST", url=url, json=json, idempotent=idempotent, **kwargs)


def _default_client(proxy: str | None) -> httpx.Client:
    return httpx.Client(proxy=proxy, follow_redirects=True)


class RequestExecutor:
    """
    Usage:
        executor = RequestExecutor(ProxyPool(["10.0.0.1:8080"], "u", "p"))
        resp = executor.execute(Market.DMARKET, OutboundRequest.get(url), timeout=15.0, max_retries=2)
        classify_response(resp, Market.DMARKET)
    """

    def __init__(
        self,
        pool: ProxyPool | None = None,
        client_factory: Callable[[str | None], httpx.Client] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff_sec: float = 1.0,
    ) -> None:
        self._pool = pool or ProxyPool()
        self._client_factory = client_factory or _default_client
        self._sleep = sleep
        self._backoff_sec = backoff_sec
        # One pooled client per egress endpoint (None = direct)
        self._clients: dict[str | None, httpx.Client] = {}
        self._lock = threading.Lock()

    @property
    def pool(self) -> ProxyPool:
        return self._pool

    def _client_for(self, proxy: str | None) -> httpx.Client:
        with self._lock:
            client = self._clients.get(proxy)
            if client is None:
                client = self._client_factory(proxy)
                self._clients[proxy] = client
            return client

    def execute(
        self,
        target: Market,
        request: OutboundRequest,
        timeout: float = 30.0,
        max_retries: int = 0,
    ) -> httpx.Response:
        """
        Send request to target, retrying transport failures up to max_retries times.

        Raises ValueError for max_retries > 0 on a non-idempotent request,
        TransientNetworkError once retries are exhausted, and AmbiguousOutcome
        when a non-idempotent request fails after it may have been sent.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not request.idempotent and max_retries > 0:
            raise ValueError(
                f"{request.method} {request.url} is not idempotent and cannot be retried automatically"
            )

        proxy = self._pool.next_for(target)
        client = self._client_for(proxy)
        attempts = max_retries + 1
        last_error: httpx.TransportError | None = None

        for attempt in range(1, attempts + 1):
            t0 = time.monotonic()
            try:
                response = client.request(
                    request.method,
                    request.url,
                    params=request.params,
                    headers=request.headers or None,
                    json=request.json,
                    content=request.content,
                    timeout=timeout,
                )
            except httpx.TransportError as e:
                elapsed_ms = (time.monotonic() - t0) * 1000
                last_error = e
                logger.debug(
                    "%s %s %s attempt %d/%d failed after %.0fms: %s",
                    target.value, request.method, request.url, attempt, attempts, elapsed_ms, e,
                )
                if not request.idempotent and not isinstance(e, _NOT_SENT):
                    raise AmbiguousOutcome(
                        f"{request.method} {request.url} outcome unknown: {e}",
                        target=target, url=request.url,
                    ) from e
                if attempt < attempts:
                    self._sleep(self._backoff_sec * attempt)
                continue

            elapsed_ms = (time.monotonic() - t0) * 1000
            logger.debug(
                "%s %s %s -> %d in %.0fms (attempt %d/%d)",
                target.value, request.method, request.url,
                response.status_code, elapsed_ms, attempt, attempts,
            )
            return response

        logger.warning(
            "%s %s %s failed after %d attempt(s): %s",
            target.value, request.method, request.url, attempts, last_error,
        )
        raise TransientNetworkError(
            f"{request.method} {request.url} failed after {attempts} attempt(s): {last_error}",
            target=target, url=request.url,
        ) from last_error

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()


def classify_response(response: httpx.Response, target: Market | None = None) -> httpx.Response:
    """
    Return response if it is 2xx; otherwise raise the matching NetworkError.

    404 -> NotFound, 429/5xx -> TransientNetworkError, any other 4xx -> FatalNetworkError.
    """
    status = response.status_code
    if 200 <= status < 300:
        return response

    try:
        url = str(response.request.url)
    except RuntimeError:
        url = ""
    message = f"HTTP {status} from {target.value if target else 'upstream'} {url}".rstrip()
    if status == 404:
        raise NotFound(message, target=target, url=url, status_code=status)
    if status == 429 or status >= 500:
        raise TransientNetworkError(message, target=target, url=url, status_code=status)
    raise FatalNetworkError(message, target=target, url=url, status_code=status)
