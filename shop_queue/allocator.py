from __future__ import annotations

# Order allocator.
#
# Positions are handed out per partition (shop, worker-or-None):
#   position = 1 + max(active positions in the partition), or 1 if empty
#
# The read and the write must never interleave with another writer of the
# same partition, so every position-changing unit of work runs with the
# partition lock held *and* inside one store transaction. Different
# partitions never wait on each other's partition lock.
#
# If the store still reports a uniqueness clash (e.g. another process wrote
# to the same database file), the whole unit is retried a bounded number of
# times and then surfaced as AllocationContention.

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, TypeVar

from .errors import AlreadyLast, AllocationContention
from .models import PartitionKey, QueueEntry
from .store import EntryStore, StoreSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Position a swapped entry parks on while its neighbour takes its slot.
# Real positions start at 1, so it never clashes with a live entry.
_PARKING_POSITION = 0


class PartitionLocks:
    """One lock per partition key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # Never pruned; bounded by the partitions the catalog can produce.
        self._locks: dict[PartitionKey, threading.Lock] = {}

    def lock_for(self, key: PartitionKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: PartitionKey) -> Iterator[None]:
        with self.lock_for(key):
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _is_retryable(exc: sqlite3.Error) -> bool:
    text = str(exc)
    if isinstance(exc, sqlite3.IntegrityError):
        return "UNIQUE constraint failed: queue_entries" in text
    if isinstance(exc, sqlite3.OperationalError):
        return "locked" in text or "busy" in text
    return False


class OrderAllocator:
    def __init__(
        self,
        store: EntryStore,
        *,
        max_attempts: int = 3,
        locks: PartitionLocks | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.max_attempts = max_attempts
        self.locks = locks or PartitionLocks()

    def run(self, partition: PartitionKey, work: Callable[[StoreSession], T]) -> T:
        """Run `work` serialized on `partition`, inside one transaction.

        QueueErrors raised by `work` roll the transaction back and propagate
        unchanged. Storage-level clashes are retried.
        """
        last_exc: sqlite3.Error | None = None
        for attempt in range(1, self.max_attempts + 1):
            with self.locks.hold(partition):
                try:
                    with self.store.transaction() as session:
                        return work(session)
                except sqlite3.Error as exc:
                    if not _is_retryable(exc):
                        raise
                    last_exc = exc
            logger.warning(
                "position clash in partition %s (attempt %d/%d): %s",
                partition,
                attempt,
                self.max_attempts,
                last_exc,
            )
        raise AllocationContention(
            f"could not update partition {partition} after {self.max_attempts} attempts"
        ) from last_exc

    # -------------------- primitives (call inside run) --------------------

    @staticmethod
    def next_position(session: StoreSession, partition: PartitionKey) -> int:
        shop_ref, worker_ref = partition
        return session.max_active_position(shop_ref, worker_ref) + 1

    @staticmethod
    def swap_with_next(session: StoreSession, entry: QueueEntry, now: datetime) -> QueueEntry:
        """Exchange positions of `entry` and its next active neighbour.

        Both objects are updated in place; the neighbour is returned.

        Raises:
            AlreadyLast: nobody is behind `entry` in its partition.
        """
        neighbour = session.next_active_after(entry)
        if neighbour is None:
            raise AlreadyLast(f"entry {entry.public_code} is already last in its queue")

        mine, theirs = entry.position, neighbour.position
        session.set_position(entry.id, _PARKING_POSITION, now)
        session.set_position(neighbour.id, mine, now)
        session.set_position(entry.id, theirs, now)

        entry.position, neighbour.position = theirs, mine
        entry.updated_at = neighbour.updated_at = now
        return neighbour

    @staticmethod
    def compact(session: StoreSession, partition: PartitionKey, now: datetime) -> list[QueueEntry]:
        """Renumber the partition's active entries 1..n, keeping their order.

        Walking in ascending order only ever moves an entry to a lower, already
        free slot, so the unique index holds after every statement.

        Returns the entries whose position changed.
        """
        shop_ref, worker_ref = partition
        changed: list[QueueEntry] = []
        for expected, entry in enumerate(session.active_in_partition(shop_ref, worker_ref), start=1):
            if entry.position != expected:
                session.set_position(entry.id, expected, now)
                entry.position = expected
                entry.updated_at = now
                changed.append(entry)
        return changed
