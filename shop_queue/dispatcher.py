from __future__ import annotations

# Side-effect dispatcher.
#
# Queue mutations commit first; anything that talks to the outside world
# (push notifications, live snapshots) is submitted here afterwards and runs
# on background worker threads.
#
# - submit() never blocks and never raises because of the task.
# - A failing task is logged with its traceback and dropped. No retries.
# - stop() lets already-queued tasks finish (up to a timeout) and then exits.

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class _Task:
    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    description: str = ""


_STOP = object()


class SideEffectDispatcher:
    def __init__(self, *, workers: int = 2, name: str = "side-effects") -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.name = name
        self.workers = workers

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending = 0
        self._started = False
        self._stopping = False

        self.failures = 0

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            self._stopping = False
        for i in range(self.workers):
            t = threading.Thread(target=self._worker_loop, name=f"{self.name}-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def submit(self, fn: Callable[..., Any], *args: Any, description: str = "", **kwargs: Any) -> bool:
        """Queue a task. Returns False if the dispatcher is stopped."""
        with self._lock:
            if self._stopping:
                logger.warning("dispatcher %s stopped; dropping %s", self.name, description or fn)
                return False
            self._pending += 1
        self._inbox.put(_Task(fn, args, kwargs, description))
        return True

    def drain(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has run. True if idle."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    def stop(self, timeout: float = 2.0) -> None:
        with self._lock:
            if not self._started or self._stopping:
                return
            self._stopping = True
        for _ in self._threads:
            self._inbox.put(_STOP)
        for t in self._threads:
            if t.is_alive():
                t.join(timeout=timeout)
        self._threads.clear()
        with self._lock:
            self._started = False

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def _worker_loop(self) -> None:
        while True:
            item = self._inbox.get()
            if item is _STOP:
                return
            try:
                item.fn(*item.args, **item.kwargs)
            except Exception:
                with self._lock:
                    self.failures += 1
                logger.exception("side effect failed: %s", item.description or item.fn)
            finally:
                with self._idle:
                    self._pending -= 1
                    if self._pending == 0:
                        self._idle.notify_all()
