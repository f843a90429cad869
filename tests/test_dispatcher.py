import threading

import pytest

from shop_queue.dispatcher import SideEffectDispatcher


def test_runs_submitted_tasks(dispatcher):
    seen = []
    for i in range(5):
        assert dispatcher.submit(seen.append, i, description=f"task {i}")
    assert dispatcher.drain(timeout=5)
    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert dispatcher.pending == 0


def test_failures_are_logged_and_counted(dispatcher, caplog):
    def boom():
        raise RuntimeError("push service down")

    seen = []
    dispatcher.submit(boom, description="failing push")
    dispatcher.submit(seen.append, "after")
    assert dispatcher.drain(timeout=5)

    assert dispatcher.failures == 1
    assert seen == ["after"]
    assert "failing push" in caplog.text


def test_submit_does_not_wait_for_slow_tasks(dispatcher):
    gate = threading.Event()
    dispatcher.submit(gate.wait, 5)
    dispatcher.submit(gate.wait, 5)
    assert dispatcher.drain(timeout=0.05) is False
    gate.set()
    assert dispatcher.drain(timeout=5)


def test_stop_finishes_queued_work_then_refuses():
    d = SideEffectDispatcher(workers=1)
    d.start()
    seen = []
    for i in range(3):
        d.submit(seen.append, i)
    d.stop(timeout=5)

    assert seen == [0, 1, 2]
    assert d.submit(seen.append, 99) is False


def test_needs_a_worker():
    with pytest.raises(ValueError):
        SideEffectDispatcher(workers=0)
