"""
Ticket ledger. Append-only per-asset log of accepted status-change tickets in SQLite.

The log is the source of truth for an instance's status: replaying an
asset's tickets from its initial status yields its current status. Each
append is one SQLite transaction and assigns the next per-asset sequence
number, so the order of the log is the order of application.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from executor.lifecycle import StatusChangeTicket, replay
from scanner.models import ItemStatus

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS instances (
    asset_id TEXT PRIMARY KEY,
    item_name TEXT NOT NULL,
    initial_status TEXT NOT NULL,
    created_at REAL NOT NULL,
    buy_price REAL NOT NULL DEFAULT 0,
    min_sale_price REAL NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS tickets (
    asset_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    ticket_json TEXT NOT NULL,
    status_after TEXT NOT NULL,
    applied_at REAL NOT NULL,
    PRIMARY KEY (asset_id, seq)
);
"""

DEFAULT_DB_PATH = Path("ledger.db")


@dataclass(frozen=True)
class LedgerEntry:
    asset_id: str
    seq: int
    ticket: StatusChangeTicket
    status_after: ItemStatus
    applied_at: float


class TicketLedger:
    """
    SQLite-backed ticket log. Thread-safe; callers serialize per asset.

    Usage:
        ledger = TicketLedger("ledger.db")
        ledger.register("123", "AK-47 | Redline (Field-Tested)", ItemStatus.ON_HOLD)
        ledger.append(ticket, ItemStatus.AVAILABLE)
        ledger.replay("123")  # -> ItemStatus.AVAILABLE
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._append_count = 0
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(instances)")}
        for column in ("buy_price", "min_sale_price"):
            if column not in columns:
                conn.execute(f"ALTER TABLE instances ADD COLUMN {column} REAL NOT NULL DEFAULT 0")
        conn.commit()

    def register(
        self,
        asset_id: str,
        item_name: str,
        initial_status: ItemStatus,
        buy_price: float = 0.0,
        min_sale_price: float = 0.0,
    ) -> bool:
        """
        Record a newly tracked instance and what was paid for it, when known.
        Returns False if the asset is already registered (the existing row is kept).
        """
        with self._lock:
            conn = self._get_conn()
            cur = conn.execute(
                "INSERT OR IGNORE INTO instances "
                "(asset_id, item_name, initial_status, created_at, buy_price, min_sale_price) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (asset_id, item_name, initial_status.value, time.time(), buy_price, min_sale_price),
            )
            conn.commit()
        return cur.rowcount > 0

    def append(self, ticket: StatusChangeTicket, status_after: ItemStatus) -> int:
        """
        Append an accepted ticket. Returns its per-asset sequence number.
        Raises KeyError if the asset was never registered.
        """
        data_json = json.dumps(ticket.to_dict(), separators=(",", ":"))
        with self._lock:
            conn = self._get_conn()
            with conn:
                known = conn.execute(
                    "SELECT 1 FROM instances WHERE asset_id = ?", (ticket.asset_id,)
                ).fetchone()
                if known is None:
                    raise KeyError(f"Asset {ticket.asset_id} is not registered in the ledger")
                row = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) FROM tickets WHERE asset_id = ?",
                    (ticket.asset_id,),
                ).fetchone()
                seq = row[0] + 1
                conn.execute(
                    "INSERT INTO tickets (asset_id, seq, ticket_json, status_after, applied_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (ticket.asset_id, seq, data_json, status_after.value, time.time()),
                )
            self._append_count += 1

        logger.debug(
            "Ledger append: asset %s seq %d %s -> %s",
            ticket.asset_id, seq, ticket.change.kind, status_after.value,
        )
        return seq

    def initial_status(self, asset_id: str) -> ItemStatus | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT initial_status FROM instances WHERE asset_id = ?", (asset_id,)
            ).fetchone()
        return ItemStatus(row[0]) if row else None

    def history(self, asset_id: str) -> list[LedgerEntry]:
        """All tickets for an asset in application order."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT seq, ticket_json, status_after, applied_at FROM tickets "
                "WHERE asset_id = ? ORDER BY seq",
                (asset_id,),
            ).fetchall()
        return [
            LedgerEntry(
                asset_id=asset_id,
                seq=seq,
                ticket=StatusChangeTicket.from_dict(json.loads(ticket_json)),
                status_after=ItemStatus(status_after),
                applied_at=applied_at,
            )
            for seq, ticket_json, status_after, applied_at in rows
        ]

    def replay(self, asset_id: str) -> ItemStatus | None:
        """
        Current status derived from the log alone. None if the asset is unknown.
        Raises InvalidTransition if the stored log is not a legal sequence.
        """
        initial = self.initial_status(asset_id)
        if initial is None:
            return None
        changes = [entry.ticket.change for entry in self.history(asset_id)]
        return replay(initial, changes, asset_id)

    def projection(self) -> dict[str, ItemStatus]:
        """Current status of every registered asset, from the last logged status."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT i.asset_id, COALESCE("
                "  (SELECT t.status_after FROM tickets t WHERE t.asset_id = i.asset_id "
                "   ORDER BY t.seq DESC LIMIT 1), i.initial_status) "
                "FROM instances i ORDER BY i.asset_id"
            ).fetchall()
        return {asset_id: ItemStatus(status) for asset_id, status in rows}

    def registered(self) -> list[tuple[str, str, ItemStatus]]:
        """(asset_id, item_name, initial_status) for every registered asset."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT asset_id, item_name, initial_status FROM instances ORDER BY created_at, asset_id"
            ).fetchall()
        return [(a, n, ItemStatus(s)) for a, n, s in rows]

    def costs(self) -> dict[str, tuple[float, float]]:
        """asset_id -> (buy_price, min_sale_price) for assets registered with a known cost."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT asset_id, buy_price, min_sale_price FROM instances WHERE buy_price > 0"
            ).fetchall()
        return {asset_id: (paid, floor) for asset_id, paid, floor in rows}

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def stats(self) -> dict:
        with self._lock:
            conn = self._get_conn()
            instances = conn.execute("SELECT COUNT(*) FROM instances").fetchone()[0]
            tickets = conn.execute("SELECT COUNT(*) FROM tickets").fetchone()[0]
        return {
            "db_path": self._db_path,
            "instances": instances,
            "tickets": tickets,
            "append_count": self._append_count,
        }
