"""
Shared item book: item name -> Item.

Thread-safe for many concurrent writers (one poller per market, inventory
sync, the state machine) and readers (comparison passes):

- a structural lock guards the dict itself and is held only for lookups,
  inserts and snapshot copies, never across network I/O
- a per-name lock serializes writers of one item, so two markets updating
  the same item's quotes cannot interleave

Quote tuples are replaced whole, never mutated in place, so a snapshot can
share them by reference.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

from scanner.models import Item, ItemCount, Market, Quote

logger = logging.getLogger(__name__)


class ItemBook:
    def __init__(self, default_max_count: int = 0) -> None:
        self._items: dict[str, Item] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self._default_max_count = default_max_count

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._items

    def names(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def get(self, name: str) -> Item | None:
        with self._lock:
            return self._items.get(name)

    def ensure(self, name: str) -> Item:
        """Return the Item for name, creating an empty one if it is new."""
        with self._lock:
            item = self._items.get(name)
            if item is None:
                item = Item(name=name, count=ItemCount(max_count=self._default_max_count))
                self._items[name] = item
                self._key_locks[name] = threading.Lock()
                logger.debug("Item book: new item %s", name)
            return item

    def _key_lock(self, name: str) -> threading.Lock:
        self.ensure(name)
        with self._lock:
            return self._key_locks[name]

    @contextmanager
    def locked(self, name: str) -> Iterator[Item]:
        """Exclusive write access to one item. Do not do network I/O inside."""
        lock = self._key_lock(name)
        with lock:
            yield self.ensure(name)

    def _publish_quotes(self, item: Item, quotes: tuple[Quote, ...]) -> None:
        # Swap under the structural lock so snapshot() sees all quote tuples at one instant
        with self._lock:
            item.quotes = quotes

    def update_quote(self, name: str, quote: Quote) -> None:
        """Replace (or add) this market's quote, keeping market declaration order."""
        with self.locked(name) as item:
            others = [q for q in item.quotes if q.market != quote.market]
            others.append(quote)
            self._publish_quotes(item, tuple(sorted(others, key=lambda q: q.market.order)))

    def drop_quote(self, name: str, market: Market) -> bool:
        """Remove a market's quote (item delisted there). Returns True if one was removed."""
        with self.locked(name) as item:
            kept = tuple(q for q in item.quotes if q.market != market)
            removed = len(kept) != len(item.quotes)
            self._publish_quotes(item, kept)
            return removed

    def snapshot(self) -> dict[str, Item]:
        """
        Point-in-time copy for a comparison pass.

        All quote tuples are captured in one critical section and shared by
        reference (they are immutable). Instance lists, counts and history are
        then copied per item under that item's lock.
        """
        with self._lock:
            captured = [(name, item, item.quotes) for name, item in self._items.items()]
            locks = dict(self._key_locks)

        snap: dict[str, Item] = {}
        for name, item, quotes in captured:
            with locks[name]:
                snap[name] = replace(
                    item,
                    quotes=quotes,
                    count=replace(item.count),
                    data=[replace(d) for d in item.data],
                    history=list(item.history),
                )
        return snap
