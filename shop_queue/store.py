from __future__ import annotations

# Entry store (SQLite).
#
# One connection, guarded by a lock, used from many request threads. Every
# mutation runs inside `transaction()`, which is a single BEGIN IMMEDIATE ...
# COMMIT: entry rows, history rows and worker counters change together or not
# at all.
#
# The schema enforces the invariants on its own as a last line:
# - public_code is UNIQUE over all rows (terminal ones too)
# - a partial UNIQUE index keeps active positions distinct per partition
# - triggers refuse to touch total_cost/public_code, to leave a terminal
#   status, or to modify history rows

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, List, Optional

from .models import (
    EntryStatus,
    Guest,
    HistoryRecord,
    QueueEntry,
    Registered,
    ServiceLine,
)

logger = logging.getLogger(__name__)

MEMORY = ":memory:"

_ACTIVE_SQL = "('pending', 'in_progress')"

DDL = f"""
CREATE TABLE IF NOT EXISTS queue_entries (
  id TEXT PRIMARY KEY,
  shop_ref TEXT NOT NULL,
  worker_ref TEXT NOT NULL DEFAULT '',
  customer_kind TEXT NOT NULL CHECK (customer_kind IN ('registered', 'guest')),
  user_ref TEXT,
  guest_name TEXT,
  guest_phone TEXT,
  services_json TEXT NOT NULL,
  total_cost TEXT NOT NULL,
  position INTEGER NOT NULL,
  public_code TEXT NOT NULL UNIQUE,
  status TEXT NOT NULL CHECK (status IN ('pending', 'in_progress', 'completed', 'cancelled')),
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_queue_entries_active_position
  ON queue_entries(shop_ref, worker_ref, position)
  WHERE status IN {_ACTIVE_SQL};

CREATE INDEX IF NOT EXISTS idx_queue_entries_shop_status ON queue_entries(shop_ref, status);

CREATE TRIGGER IF NOT EXISTS trg_queue_entries_frozen_fields
BEFORE UPDATE OF total_cost, public_code ON queue_entries
WHEN NEW.total_cost IS NOT OLD.total_cost OR NEW.public_code IS NOT OLD.public_code
BEGIN
  SELECT RAISE(ABORT, 'total_cost and public_code are immutable');
END;

CREATE TRIGGER IF NOT EXISTS trg_queue_entries_terminal
BEFORE UPDATE OF status, position ON queue_entries
WHEN OLD.status NOT IN {_ACTIVE_SQL}
BEGIN
  SELECT RAISE(ABORT, 'entry is in a terminal status');
END;

CREATE TABLE IF NOT EXISTS queue_history (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  entry_id TEXT NOT NULL UNIQUE REFERENCES queue_entries(id),
  user_ref TEXT,
  worker_ref TEXT,
  shop_ref TEXT NOT NULL,
  services_json TEXT NOT NULL,
  total_cost TEXT NOT NULL,
  public_code TEXT NOT NULL,
  position INTEGER NOT NULL,
  completed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_history_user ON queue_history(user_ref);
CREATE INDEX IF NOT EXISTS idx_queue_history_worker ON queue_history(worker_ref);
CREATE INDEX IF NOT EXISTS idx_queue_history_shop ON queue_history(shop_ref);

CREATE TRIGGER IF NOT EXISTS trg_queue_history_no_update
BEFORE UPDATE ON queue_history
BEGIN
  SELECT RAISE(ABORT, 'history is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_queue_history_no_delete
BEFORE DELETE ON queue_history
BEGIN
  SELECT RAISE(ABORT, 'history is append-only');
END;

CREATE TABLE IF NOT EXISTS worker_stats (
  worker_ref TEXT PRIMARY KEY,
  served_count INTEGER NOT NULL DEFAULT 0
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(dt: datetime) -> str:
    return dt.isoformat()


def _from_iso(val: str | None) -> Optional[datetime]:
    if not val:
        return None
    return datetime.fromisoformat(val)


def _worker_key(worker_ref: str | None) -> str:
    return worker_ref or ""


def _services_to_json(services: tuple[ServiceLine, ...]) -> str:
    return json.dumps([s.to_dict() for s in services], separators=(",", ":"))


def _services_from_json(raw: str) -> tuple[ServiceLine, ...]:
    return tuple(
        ServiceLine(service_ref=str(s["service_ref"]), quantity=int(s["quantity"]))
        for s in json.loads(raw or "[]")
    )


def _row_to_entry(row: sqlite3.Row) -> QueueEntry:
    if row["customer_kind"] == "registered":
        customer = Registered(user_ref=row["user_ref"])
    else:
        customer = Guest(name=row["guest_name"] or "", phone=row["guest_phone"] or "")
    return QueueEntry(
        id=row["id"],
        shop_ref=row["shop_ref"],
        worker_ref=row["worker_ref"] or None,
        customer=customer,
        services=_services_from_json(row["services_json"]),
        total_cost=Decimal(row["total_cost"]),
        position=int(row["position"]),
        public_code=row["public_code"],
        status=EntryStatus(row["status"]),
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
    )


def _row_to_history(row: sqlite3.Row) -> HistoryRecord:
    return HistoryRecord(
        id=int(row["id"]),
        entry_id=row["entry_id"],
        user_ref=row["user_ref"],
        worker_ref=row["worker_ref"],
        shop_ref=row["shop_ref"],
        services=_services_from_json(row["services_json"]),
        total_cost=Decimal(row["total_cost"]),
        public_code=row["public_code"],
        position=int(row["position"]),
        completed_at=_from_iso(row["completed_at"]) or utcnow(),
    )


class StoreSession:
    """Queries and writes bound to the store's connection.

    Obtained from `EntryStore.transaction()` for writes or `EntryStore.read()`
    for lookups; never used outside that block.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # -------------------- entries: reads --------------------

    def get_entry(self, entry_id: str) -> QueueEntry | None:
        row = self._conn.execute("SELECT * FROM queue_entries WHERE id = ?", (entry_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def get_entry_by_code(self, public_code: str) -> QueueEntry | None:
        row = self._conn.execute(
            "SELECT * FROM queue_entries WHERE public_code = ?", (public_code,)
        ).fetchone()
        return _row_to_entry(row) if row else None

    def code_exists(self, public_code: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM queue_entries WHERE public_code = ?", (public_code,)
        ).fetchone()
        return row is not None

    def max_active_position(self, shop_ref: str, worker_ref: str | None) -> int:
        row = self._conn.execute(
            f"""
            SELECT MAX(position) FROM queue_entries
            WHERE shop_ref = ? AND worker_ref = ? AND status IN {_ACTIVE_SQL}
            """,
            (shop_ref, _worker_key(worker_ref)),
        ).fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def next_active_after(self, entry: QueueEntry) -> QueueEntry | None:
        row = self._conn.execute(
            f"""
            SELECT * FROM queue_entries
            WHERE shop_ref = ? AND worker_ref = ? AND status IN {_ACTIVE_SQL}
              AND position > ?
            ORDER BY position ASC
            LIMIT 1
            """,
            (entry.shop_ref, _worker_key(entry.worker_ref), entry.position),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def prev_active_before(self, entry: QueueEntry) -> QueueEntry | None:
        row = self._conn.execute(
            f"""
            SELECT * FROM queue_entries
            WHERE shop_ref = ? AND worker_ref = ? AND status IN {_ACTIVE_SQL}
              AND position < ?
            ORDER BY position DESC
            LIMIT 1
            """,
            (entry.shop_ref, _worker_key(entry.worker_ref), entry.position),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def active_in_partition(self, shop_ref: str, worker_ref: str | None) -> List[QueueEntry]:
        rows = self._conn.execute(
            f"""
            SELECT * FROM queue_entries
            WHERE shop_ref = ? AND worker_ref = ? AND status IN {_ACTIVE_SQL}
            ORDER BY position ASC
            """,
            (shop_ref, _worker_key(worker_ref)),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def active_for_shop(self, shop_ref: str) -> List[QueueEntry]:
        rows = self._conn.execute(
            f"""
            SELECT * FROM queue_entries
            WHERE shop_ref = ? AND status IN {_ACTIVE_SQL}
            ORDER BY position ASC, created_at ASC, id ASC
            """,
            (shop_ref,),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    # -------------------- entries: writes --------------------

    def insert_entry(self, entry: QueueEntry) -> None:
        customer = entry.customer
        self._conn.execute(
            """
            INSERT INTO queue_entries (
              id, shop_ref, worker_ref, customer_kind, user_ref, guest_name, guest_phone,
              services_json, total_cost, position, public_code, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.shop_ref,
                _worker_key(entry.worker_ref),
                "registered" if isinstance(customer, Registered) else "guest",
                customer.user_ref if isinstance(customer, Registered) else None,
                customer.name if isinstance(customer, Guest) else None,
                customer.phone if isinstance(customer, Guest) else None,
                _services_to_json(entry.services),
                str(entry.total_cost),
                int(entry.position),
                entry.public_code,
                entry.status.value,
                _to_iso(entry.created_at or utcnow()),
                _to_iso(entry.updated_at or entry.created_at or utcnow()),
            ),
        )

    def set_position(self, entry_id: str, position: int, updated_at: datetime) -> None:
        self._conn.execute(
            "UPDATE queue_entries SET position = ?, updated_at = ? WHERE id = ?",
            (int(position), _to_iso(updated_at), entry_id),
        )

    def set_status(self, entry_id: str, status: EntryStatus, updated_at: datetime) -> None:
        self._conn.execute(
            "UPDATE queue_entries SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, _to_iso(updated_at), entry_id),
        )

    # -------------------- history + worker stats --------------------

    def insert_history(self, entry: QueueEntry, completed_at: datetime) -> HistoryRecord:
        cur = self._conn.execute(
            """
            INSERT INTO queue_history (
              entry_id, user_ref, worker_ref, shop_ref, services_json, total_cost,
              public_code, position, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.user_ref,
                entry.worker_ref,
                entry.shop_ref,
                _services_to_json(entry.services),
                str(entry.total_cost),
                entry.public_code,
                int(entry.position),
                _to_iso(completed_at),
            ),
        )
        return HistoryRecord(
            id=int(cur.lastrowid),
            entry_id=entry.id,
            user_ref=entry.user_ref,
            worker_ref=entry.worker_ref,
            shop_ref=entry.shop_ref,
            services=entry.services,
            total_cost=entry.total_cost,
            public_code=entry.public_code,
            position=entry.position,
            completed_at=completed_at,
        )

    def increment_served(self, worker_ref: str) -> None:
        self._conn.execute(
            """
            INSERT INTO worker_stats (worker_ref, served_count) VALUES (?, 1)
            ON CONFLICT(worker_ref) DO UPDATE SET served_count = served_count + 1
            """,
            (worker_ref,),
        )

    def served_count(self, worker_ref: str) -> int:
        row = self._conn.execute(
            "SELECT served_count FROM worker_stats WHERE worker_ref = ?", (worker_ref,)
        ).fetchone()
        return int(row[0]) if row else 0

    def history(self, column: str, value: str) -> List[HistoryRecord]:
        if column not in {"user_ref", "worker_ref", "shop_ref", "entry_id"}:
            raise ValueError(f"unsupported history filter: {column}")
        rows = self._conn.execute(
            f"SELECT * FROM queue_history WHERE {column} = ? ORDER BY completed_at DESC, id DESC",
            (value,),
        ).fetchall()
        return [_row_to_history(r) for r in rows]


class EntryStore:
    """SQLite-backed queue entry store. Thread safe via one lock."""

    def __init__(self, db_path: str = MEMORY, *, timeout: float = 30.0) -> None:
        self.db_path = db_path
        if db_path != MEMORY:
            parent = os.path.dirname(db_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._closed = False
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA foreign_keys = ON")
            if self.db_path != MEMORY:
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(DDL)

    @contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        """Run a block as one atomic write.

        Any exception rolls everything back and is re-raised.
        """
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreSession(self._conn)
                self._conn.execute("COMMIT")
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    @contextmanager
    def read(self) -> Iterator[StoreSession]:
        with self._lock:
            yield StoreSession(self._conn)

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    # -------------------- convenience lookups --------------------

    def get_entry(self, entry_id: str) -> QueueEntry | None:
        with self.read() as s:
            return s.get_entry(entry_id)

    def get_entry_by_code(self, public_code: str) -> QueueEntry | None:
        with self.read() as s:
            return s.get_entry_by_code(public_code)

    def active_for_shop(self, shop_ref: str) -> List[QueueEntry]:
        with self.read() as s:
            return s.active_for_shop(shop_ref)

    def active_in_partition(self, shop_ref: str, worker_ref: str | None) -> List[QueueEntry]:
        with self.read() as s:
            return s.active_in_partition(shop_ref, worker_ref)

    def served_count(self, worker_ref: str) -> int:
        with self.read() as s:
            return s.served_count(worker_ref)

    def history_for_customer(self, user_ref: str) -> List[HistoryRecord]:
        with self.read() as s:
            return s.history("user_ref", user_ref)

    def history_for_worker(self, worker_ref: str) -> List[HistoryRecord]:
        with self.read() as s:
            return s.history("worker_ref", worker_ref)

    def history_for_shop(self, shop_ref: str) -> List[HistoryRecord]:
        with self.read() as s:
            return s.history("shop_ref", shop_ref)

    def history_for_entry(self, entry_id: str) -> List[HistoryRecord]:
        with self.read() as s:
            return s.history("entry_id", entry_id)
