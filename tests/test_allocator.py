import sqlite3
import threading
from decimal import Decimal

import pytest

from shop_queue.allocator import OrderAllocator, PartitionLocks
from shop_queue.errors import AllocationContention, AlreadyLast
from shop_queue.models import EntryStatus, Guest, QueueEntry, ServiceLine
from shop_queue.store import utcnow

PART = ("s1", None)


def add(session, entry_id, code, partition=PART):
    now = utcnow()
    entry = QueueEntry(
        id=entry_id,
        shop_ref=partition[0],
        worker_ref=partition[1],
        customer=Guest("G", "1"),
        services=(ServiceLine("haircut"),),
        total_cost=Decimal("10"),
        position=OrderAllocator.next_position(session, partition),
        public_code=code,
        created_at=now,
        updated_at=now,
    )
    session.insert_entry(entry)
    return entry


def test_positions_start_at_one_and_grow(store):
    alloc = OrderAllocator(store)
    a = alloc.run(PART, lambda s: add(s, "a", "AAAAAA"))
    b = alloc.run(PART, lambda s: add(s, "b", "BBBBBB"))
    other = alloc.run(("s1", "b1"), lambda s: add(s, "c", "CCCCCC", ("s1", "b1")))
    assert (a.position, b.position, other.position) == (1, 2, 1)


def test_swap_with_next(store):
    alloc = OrderAllocator(store)
    alloc.run(PART, lambda s: [add(s, "a", "AAAAAA"), add(s, "b", "BBBBBB")])

    def swap(s):
        entry = s.get_entry("a")
        return entry, OrderAllocator.swap_with_next(s, entry, utcnow())

    moved, neighbour = alloc.run(PART, swap)
    assert (moved.position, neighbour.position) == (2, 1)
    assert [e.id for e in store.active_in_partition("s1", None)] == ["b", "a"]

    with pytest.raises(AlreadyLast):
        alloc.run(PART, lambda s: OrderAllocator.swap_with_next(s, s.get_entry("a"), utcnow()))


def test_compact_keeps_order(store):
    alloc = OrderAllocator(store)
    alloc.run(PART, lambda s: [add(s, i, i.upper() * 6) for i in "abcd"])

    def cancel_and_compact(s):
        now = utcnow()
        s.set_status("b", EntryStatus.cancelled, now)
        return OrderAllocator.compact(s, PART, now)

    changed = alloc.run(PART, cancel_and_compact)
    assert [e.id for e in changed] == ["c", "d"]
    assert [(e.id, e.position) for e in store.active_in_partition("s1", None)] == [("a", 1), ("c", 2), ("d", 3)]


def test_unique_clash_is_retried_then_surfaced(store):
    alloc = OrderAllocator(store, max_attempts=3)
    calls = []

    def clash(session):
        calls.append(1)
        raise sqlite3.IntegrityError("UNIQUE constraint failed: queue_entries.shop_ref")

    with pytest.raises(AllocationContention):
        alloc.run(PART, clash)
    assert len(calls) == 3


def test_clash_then_success(store):
    alloc = OrderAllocator(store)
    attempts = []

    def flaky(session):
        attempts.append(1)
        if len(attempts) == 1:
            raise sqlite3.OperationalError("database is locked")
        return add(session, "a", "AAAAAA")

    assert alloc.run(PART, flaky).position == 1
    assert len(attempts) == 2


def test_other_errors_are_not_retried(store):
    alloc = OrderAllocator(store)
    calls = []

    def broken(session):
        calls.append(1)
        raise sqlite3.IntegrityError("CHECK constraint failed")

    with pytest.raises(sqlite3.IntegrityError):
        alloc.run(PART, broken)
    assert len(calls) == 1


def test_concurrent_allocations_are_dense(store):
    alloc = OrderAllocator(store)
    n = 30
    barrier = threading.Barrier(n)

    def worker(i):
        barrier.wait(timeout=5)
        alloc.run(PART, lambda s: add(s, f"e{i}", f"C{i:05d}"))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert [e.position for e in store.active_in_partition("s1", None)] == list(range(1, n + 1))


def test_partition_locks_are_per_key():
    locks = PartitionLocks()
    assert locks.lock_for(("s1", None)) is locks.lock_for(("s1", None))
    assert locks.lock_for(("s1", None)) is not locks.lock_for(("s1", "b1"))
    assert len(locks) == 2
    with locks.hold(("s1", None)):
        assert locks.lock_for(("s1", "b1")).acquire(blocking=False)
        locks.lock_for(("s1", "b1")).release()


def test_attempts_must_be_positive(store):
    with pytest.raises(ValueError):
        OrderAllocator(store, max_attempts=0)
