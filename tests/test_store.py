import sqlite3
from decimal import Decimal

import pytest

from shop_queue.models import EntryStatus, Guest, QueueEntry, Registered, ServiceLine
from shop_queue.store import EntryStore, utcnow


def make_entry(entry_id, position, code, *, worker_ref=None, status=EntryStatus.pending, customer=None):
    now = utcnow()
    return QueueEntry(
        id=entry_id,
        shop_ref="s1",
        worker_ref=worker_ref,
        customer=customer or Guest(name="Ann", phone="555"),
        services=(ServiceLine("haircut", 2),),
        total_cost=Decimal("300"),
        position=position,
        public_code=code,
        status=status,
        created_at=now,
        updated_at=now,
    )


def test_round_trip(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA", worker_ref="b1", customer=Registered("user-1")))
    got = store.get_entry("e1")
    assert got.worker_ref == "b1"
    assert got.customer == Registered("user-1")
    assert got.services == (ServiceLine("haircut", 2),)
    assert got.total_cost == Decimal("300")
    assert store.get_entry_by_code("AAAAAA").id == "e1"
    assert store.get_entry("missing") is None


def test_active_positions_are_unique_per_partition(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
        s.insert_entry(make_entry("e2", 1, "BBBBBB", worker_ref="b1"))
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s.insert_entry(make_entry("e3", 1, "CCCCCC"))


def test_terminal_entries_free_their_position(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
        s.set_status("e1", EntryStatus.cancelled, utcnow())
        s.insert_entry(make_entry("e2", 1, "BBBBBB"))
    assert [e.id for e in store.active_in_partition("s1", None)] == ["e2"]


def test_public_codes_are_never_reused(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA", status=EntryStatus.cancelled))
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s.insert_entry(make_entry("e2", 1, "AAAAAA"))


def test_cost_and_code_are_immutable(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s._conn.execute("UPDATE queue_entries SET total_cost = '1' WHERE id = 'e1'")
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s._conn.execute("UPDATE queue_entries SET public_code = 'ZZZZZZ' WHERE id = 'e1'")
    assert store.get_entry("e1").total_cost == Decimal("300")


def test_terminal_status_is_final(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
        s.set_status("e1", EntryStatus.completed, utcnow())
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s.set_status("e1", EntryStatus.pending, utcnow())
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s.set_position("e1", 5, utcnow())


def test_transaction_rolls_back_everything(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as s:
            s.insert_entry(make_entry("e1", 1, "AAAAAA"))
            s.increment_served("b1")
            raise RuntimeError("boom")
    assert store.get_entry("e1") is None
    assert store.served_count("b1") == 0

    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
    assert store.get_entry("e1") is not None


def test_history_is_append_only(store):
    entry = make_entry("e1", 1, "AAAAAA", customer=Registered("user-1"))
    with store.transaction() as s:
        s.insert_entry(entry)
        record = s.insert_history(entry, utcnow())
    assert store.history_for_customer("user-1")[0].id == record.id

    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s._conn.execute("UPDATE queue_history SET total_cost = '0'")
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s._conn.execute("DELETE FROM queue_history")
    with pytest.raises(sqlite3.IntegrityError):
        with store.transaction() as s:
            s.insert_history(entry, utcnow())
    assert len(store.history_for_entry("e1")) == 1


def test_served_counter(store):
    with store.transaction() as s:
        s.increment_served("b1")
        s.increment_served("b1")
    assert store.served_count("b1") == 2
    assert store.served_count("b2") == 0


def test_shop_view_orders_by_position(store):
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 2, "AAAAAA"))
        s.insert_entry(make_entry("e2", 1, "BBBBBB", worker_ref="b1"))
        s.insert_entry(make_entry("e3", 1, "CCCCCC"))
    assert [e.position for e in store.active_for_shop("s1")] == [1, 1, 2]


def test_file_database(tmp_path):
    path = tmp_path / "data" / "queue.db"
    store = EntryStore(str(path))
    with store.transaction() as s:
        s.insert_entry(make_entry("e1", 1, "AAAAAA"))
    store.close()

    reopened = EntryStore(str(path))
    try:
        assert reopened.get_entry("e1").public_code == "AAAAAA"
    finally:
        reopened.close()
