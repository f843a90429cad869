"""Live queue broadcasting.

After every committed mutation the manager asks the broadcaster to publish
the shop's *full* active queue (all workers, sorted). Subscribers always get
whole snapshots, never diffs; queues are short so this stays cheap.

Publishing goes through pluggable publishers:
- `LocalHub`: in-process subscriptions (`subscribe(shop)` -> iterator)
- `MqttSnapshotPublisher`: retained message on `<ns>/shops/<shop>/queue`

Snapshots for one shop are computed and published under a per-shop lock, so
two publications can't overtake each other and observers never see an older
queue after a newer one.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import TYPE_CHECKING, Callable, Iterator, Protocol

from .models import Snapshot

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[str], Snapshot]


class SnapshotPublisher(Protocol):
    def publish(self, snapshot: Snapshot) -> None: ...


class Subscription:
    """A stream of snapshots for one shop.

    Iterating blocks until the next snapshot arrives and stops once the
    subscription is closed. A slow reader only ever loses stale snapshots:
    when the buffer is full the oldest one is dropped.
    """

    _CLOSED = object()

    def __init__(self, hub: LocalHub, shop_ref: str, *, maxsize: int = 16) -> None:
        self.hub = hub
        self.shop_ref = shop_ref
        self._q: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self.closed = False
        self._closing = False

    def _offer(self, item: object) -> None:
        while True:
            try:
                self._q.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._q.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> Snapshot | None:
        """Next snapshot, or None on timeout/close."""
        try:
            item = self._q.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            self.closed = True
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if not self._closing:
            self._closing = True
            self.hub._unsubscribe(self)
            self._offer(self._CLOSED)

    def __iter__(self) -> Iterator[Snapshot]:
        while not self.closed:
            snap = self.get()
            if snap is None:
                return
            yield snap

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class LocalHub:
    """In-process shop-scoped channels."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: dict[str, list[Subscription]] = {}
        self._latest: dict[str, Snapshot] = {}

    def subscribe(
        self, shop_ref: str, *, initial: Snapshot | None = None, maxsize: int = 16
    ) -> Subscription:
        """Open a subscription. It starts with `initial`, or else the last
        snapshot published for the shop, if any."""
        sub = Subscription(self, shop_ref, maxsize=maxsize)
        with self._lock:
            self._subs.setdefault(shop_ref, []).append(sub)
            first = initial if initial is not None else self._latest.get(shop_ref)
            if initial is not None:
                self._latest[shop_ref] = initial
        if first is not None:
            sub._offer(first)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.shop_ref, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.shop_ref, None)

    def subscriber_count(self, shop_ref: str) -> int:
        with self._lock:
            return len(self._subs.get(shop_ref, []))

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            self._latest[snapshot.shop_ref] = snapshot
            subs = list(self._subs.get(snapshot.shop_ref, []))
        for sub in subs:
            sub._offer(snapshot)

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subs.values() for s in group]
        for sub in subs:
            sub.close()


class MqttSnapshotPublisher:
    """Publish snapshots as retained MQTT messages, one topic per shop."""

    def __init__(self, *, mqtt: MqttClient, namespace: str) -> None:
        from .mqtt_topics import shop_queue_updates

        self._topic_for = shop_queue_updates
        self.mqtt = mqtt
        self.namespace = namespace

    def publish(self, snapshot: Snapshot) -> None:
        self.mqtt.publish(
            self._topic_for(snapshot.shop_ref, self.namespace),
            snapshot.to_message(),
            retain=True,
        )


class LiveBroadcaster:
    def __init__(self, source: SnapshotSource, publishers: list[SnapshotPublisher] | None = None) -> None:
        self.source = source
        self.publishers: list[SnapshotPublisher] = list(publishers or [])
        self._guard = threading.Lock()
        # Never pruned; bounded by the number of shops in the catalog.
        self._shop_locks: dict[str, threading.Lock] = {}

    def add_publisher(self, publisher: SnapshotPublisher) -> None:
        self.publishers.append(publisher)

    def _lock_for(self, shop_ref: str) -> threading.Lock:
        with self._guard:
            lock = self._shop_locks.get(shop_ref)
            if lock is None:
                lock = self._shop_locks[shop_ref] = threading.Lock()
            return lock

    def publish(self, shop_ref: str) -> Snapshot:
        """Recompute the shop's snapshot and hand it to every publisher.

        A failing publisher is logged and does not stop the others.
        """
        with self._lock_for(shop_ref):
            snapshot = self.source(shop_ref)
            for publisher in list(self.publishers):
                try:
                    publisher.publish(snapshot)
                except Exception:
                    logger.exception("snapshot publisher %r failed for shop %s", publisher, shop_ref)
            logger.debug("published snapshot for shop %s (%d entries)", shop_ref, len(snapshot.entries))
            return snapshot

    def attach(self, hub: LocalHub, shop_ref: str, *, maxsize: int = 16) -> Subscription:
        """Subscribe to `hub`, starting from the shop's current snapshot.

        Done under the shop lock so no publication can slip in between the
        initial snapshot and the subscription.
        """
        with self._lock_for(shop_ref):
            return hub.subscribe(shop_ref, initial=self.source(shop_ref), maxsize=maxsize)
