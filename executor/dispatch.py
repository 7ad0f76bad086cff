"""
Ticket dispatcher: serial per asset, parallel across assets.

Each asset has a FIFO queue. At most one worker drains a given asset's
queue at a time, so tickets for one asset are applied in submission order
no matter how the pool schedules them. Different assets drain on different
workers concurrently.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor

from executor.lifecycle import StatusChangeTicket
from executor.state_machine import ApplyResult, ItemStateMachine

logger = logging.getLogger(__name__)


class TicketDispatcher:
    """
    Usage:
        dispatcher = TicketDispatcher(machine, max_workers=4)
        future = dispatcher.submit(ticket)
        result = future.result()  # ApplyResult, or raises InvalidTransition
        dispatcher.shutdown()
    """

    def __init__(self, machine: ItemStateMachine, max_workers: int = 4) -> None:
        self._machine = machine
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tickets")
        self._lock = threading.Lock()
        self._queues: dict[str, deque[tuple[StatusChangeTicket, Future]]] = {}
        # Assets with a drain task scheduled or running
        self._active: set[str] = set()
        self._closed = False

    def submit(self, ticket: StatusChangeTicket) -> Future:
        """Queue a ticket for its asset. The future resolves to an ApplyResult."""
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("TicketDispatcher is shut down")
            queue = self._queues.setdefault(ticket.asset_id, deque())
            queue.append((ticket, future))
            schedule = ticket.asset_id not in self._active
            if schedule:
                self._active.add(ticket.asset_id)
        if schedule:
            self._pool.submit(self._drain, ticket.asset_id)
        return future

    def apply_all(self, tickets: list[StatusChangeTicket]) -> list[Future]:
        return [self.submit(t) for t in tickets]

    def pending(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._queues.values())

    def _drain(self, asset_id: str) -> None:
        while True:
            with self._lock:
                queue = self._queues.get(asset_id)
                if not queue:
                    self._queues.pop(asset_id, None)
                    self._active.discard(asset_id)
                    return
                ticket, future = queue.popleft()

            if not future.set_running_or_notify_cancel():
                continue
            try:
                result: ApplyResult = self._machine.apply_ticket(asset_id, ticket)
            except Exception as e:
                logger.debug("Ticket %s for asset %s failed: %s", ticket.change.kind, asset_id, e)
                future.set_exception(e)
            else:
                future.set_result(result)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait)
