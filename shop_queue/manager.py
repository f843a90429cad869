from __future__ import annotations

# The Queue Manager is the *authoritative brain* of the system.
#
# IMPORTANT: This file contains two layers:
# 1) `QueueManager` (pure logic over the store, easy to unit test)
# 2) `MqttQueueManagerService` + `main()` (integration with the MQTT broker)
#
# Every mutation follows the same shape:
#   validate + authorize  ->  one serialized store transaction  ->  commit
#   -> submit side effects (push notifications, live snapshot) to the
#      dispatcher, which runs them on its own threads.
# A side effect can fail or be slow without touching the committed change.

import argparse
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional

from . import notifications
from .allocator import OrderAllocator
from .auth import require_cancel, require_manage
from .broadcaster import LiveBroadcaster, LocalHub, SnapshotPublisher, Subscription
from .catalog import Catalog
from .codes import DEFAULT_MAX_ATTEMPTS, generate_unique_code
from .dispatcher import SideEffectDispatcher
from .errors import (
    AlreadyFirst,
    EntryNotFound,
    ErrorResponse,
    InvalidQuantity,
    InvalidTransition,
    MissingCustomerInfo,
    QueueError,
    ShopNotFound,
    ValidationError,
    WorkerUnavailable,
)
from .models import (
    EntryStatus,
    EntrySummary,
    Guest,
    HistoryRecord,
    QueueEntry,
    Registered,
    Requester,
    Role,
    ServiceLine,
    Snapshot,
    customer_from_dict,
)
from .pricing import normalize_services, resolve_total_cost
from .status import check_transition, parse_status
from .store import EntryStore, StoreSession, utcnow

if TYPE_CHECKING:
    import random

    from .mqtt_client import MqttClient
    from .push import Notifier

logger = logging.getLogger(__name__)

NotificationBuilder = Callable[[QueueEntry, str, Optional[str]], Optional[notifications.Notification]]


def _new_entry_id() -> str:
    return uuid.uuid4().hex


class QueueManager:
    """Core queue operations (testable without MQTT)."""

    def __init__(
        self,
        *,
        store: EntryStore,
        catalog: Catalog,
        dispatcher: SideEffectDispatcher | None = None,
        notifier: Notifier | None = None,
        publishers: Iterable[SnapshotPublisher] = (),
        allocation_attempts: int = 3,
        code_attempts: int = DEFAULT_MAX_ATTEMPTS,
        code_rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_entry_id,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.allocator = OrderAllocator(store, max_attempts=allocation_attempts)
        self.code_attempts = code_attempts
        self._code_rng = code_rng
        self._clock = clock
        self._id_factory = id_factory

        # Without an injected dispatcher we run our own and stop it in close().
        self._owns_dispatcher = dispatcher is None
        self.dispatcher = dispatcher or SideEffectDispatcher()
        if self._owns_dispatcher:
            self.dispatcher.start()

        self.hub = LocalHub()
        self.broadcaster = LiveBroadcaster(self.snapshot, [self.hub, *publishers])

    # -------------------- create --------------------

    def create_entry(
        self,
        shop_ref: str,
        customer: Registered | Guest,
        services: Iterable[ServiceLine],
        *,
        worker_ref: str | None = None,
        requester: Requester | None = None,
    ) -> QueueEntry:
        """Put a customer at the end of a queue.

        If a worker registers a walk-in without naming a worker, the entry
        goes to that worker's own queue.

        Raises:
            ShopNotFound, WorkerUnavailable, UnofferedService,
            MissingCustomerInfo, EmptyServices, InvalidQuantity,
            AllocationContention, CodeSpaceExhausted
        """
        customer = self._check_customer(customer)

        shop = self.catalog.get_shop(shop_ref)
        if shop is None:
            raise ShopNotFound(f"shop {shop_ref!r} not found")

        if worker_ref is None and requester is not None and requester.role is Role.worker:
            own = self.catalog.get_worker(requester.ref)
            if own is not None and own.shop_ref == shop_ref:
                worker_ref = own.ref

        if worker_ref is not None:
            worker = self.catalog.get_worker(worker_ref)
            if worker is None or worker.shop_ref != shop_ref or not worker.available:
                raise WorkerUnavailable(f"worker {worker_ref!r} is not available at shop {shop_ref!r}")

        lines = normalize_services(services)
        total_cost = resolve_total_cost(shop_ref=shop_ref, services=lines, rate_card=shop.rate_card())

        partition = (shop_ref, worker_ref)

        def work(session: StoreSession) -> QueueEntry:
            now = self._clock()
            entry = QueueEntry(
                id=self._id_factory(),
                shop_ref=shop_ref,
                worker_ref=worker_ref,
                customer=customer,
                services=lines,
                total_cost=total_cost,
                position=self.allocator.next_position(session, partition),
                public_code=generate_unique_code(
                    is_taken=session.code_exists,
                    rng=self._code_rng,
                    max_attempts=self.code_attempts,
                ),
                status=EntryStatus.pending,
                created_at=now,
                updated_at=now,
            )
            session.insert_entry(entry)
            return entry

        entry = self.allocator.run(partition, work)
        logger.info(
            "entry %s (%s) joined shop=%s worker=%s at #%d, total=%s",
            entry.id,
            entry.public_code,
            shop_ref,
            worker_ref,
            entry.position,
            entry.total_cost,
        )

        self._notify_later(entry, notifications.joined)
        self._broadcast_later(shop_ref)
        return entry

    @staticmethod
    def _check_customer(customer: Registered | Guest) -> Registered | Guest:
        if isinstance(customer, Registered):
            if not customer.user_ref.strip():
                raise MissingCustomerInfo("user_ref required for registered customers")
            return customer
        if isinstance(customer, Guest):
            name, phone = customer.name.strip(), customer.phone.strip()
            if not name or not phone:
                raise MissingCustomerInfo("guest customers need a name and a phone number")
            return Guest(name=name, phone=phone)
        raise ValidationError(f"unsupported customer type {type(customer).__name__}")

    # -------------------- cancel --------------------

    def cancel_entry(self, entry_id: str, requester: Requester) -> QueueEntry:
        """Cancel an active entry and close the gap it leaves.

        Raises:
            EntryNotFound, NotAuthorized, InvalidTransition
        """
        entry = self._get(entry_id)
        require_cancel(requester, entry, self.catalog)
        return self._cancel(entry)

    def _cancel(self, entry: QueueEntry) -> QueueEntry:
        def work(session: StoreSession) -> QueueEntry:
            fresh = self._fresh(session, entry.id)
            check_transition(fresh.status, EntryStatus.cancelled)
            now = self._clock()
            session.set_status(fresh.id, EntryStatus.cancelled, now)
            fresh.status = EntryStatus.cancelled
            fresh.updated_at = now
            self.allocator.compact(session, fresh.partition, now)
            return fresh

        cancelled = self.allocator.run(entry.partition, work)
        logger.info("entry %s (%s) cancelled", cancelled.id, cancelled.public_code)

        self._notify_later(cancelled, notifications.cancelled)
        self._broadcast_later(cancelled.shop_ref)
        return cancelled

    # -------------------- status --------------------

    def advance_status(self, entry_id: str, target: EntryStatus | str, requester: Requester) -> QueueEntry:
        """Move an entry along its lifecycle.

        Completing writes exactly one history record and bumps the worker's
        served counter in the same transaction.

        Raises:
            EntryNotFound, NotAuthorized, InvalidTransition, InvalidStatus
        """
        target_status = parse_status(target)
        entry = self._get(entry_id)
        require_manage(requester, entry, self.catalog)

        if target_status is EntryStatus.cancelled:
            return self._cancel(entry)

        def work(session: StoreSession) -> QueueEntry:
            fresh = self._fresh(session, entry.id)
            check_transition(fresh.status, target_status)
            now = self._clock()
            session.set_status(fresh.id, target_status, now)
            fresh.status = target_status
            fresh.updated_at = now
            if target_status is EntryStatus.completed:
                session.insert_history(fresh, now)
                if fresh.worker_ref:
                    session.increment_served(fresh.worker_ref)
            return fresh

        updated = self.allocator.run(entry.partition, work)
        logger.info("entry %s (%s) is now %s", updated.id, updated.public_code, updated.status.value)

        self._notify_later(updated, notifications.status_changed)
        self._broadcast_later(updated.shop_ref)
        return updated

    # -------------------- reorder --------------------

    def move_down(self, entry_id: str, requester: Requester) -> tuple[QueueEntry, QueueEntry]:
        """Swap an entry with the one right behind it (it waits longer).

        Returns (moved entry, entry it swapped with).

        Raises:
            EntryNotFound, NotAuthorized, AlreadyLast, InvalidTransition
        """
        entry = self._get(entry_id)
        require_manage(requester, entry, self.catalog)

        def work(session: StoreSession) -> tuple[QueueEntry, QueueEntry]:
            fresh = self._fresh_active(session, entry.id, "move_down")
            neighbour = self.allocator.swap_with_next(session, fresh, self._clock())
            return fresh, neighbour

        return self._after_swap(*self.allocator.run(entry.partition, work))

    def move_up(self, entry_id: str, requester: Requester) -> tuple[QueueEntry, QueueEntry]:
        """Swap an entry with the one right before it (served sooner).

        Same as moving the predecessor down. Returns (moved entry, entry it
        swapped with).

        Raises:
            EntryNotFound, NotAuthorized, AlreadyFirst, InvalidTransition
        """
        entry = self._get(entry_id)
        require_manage(requester, entry, self.catalog)

        def work(session: StoreSession) -> tuple[QueueEntry, QueueEntry]:
            fresh = self._fresh_active(session, entry.id, "move_up")
            predecessor = session.prev_active_before(fresh)
            if predecessor is None:
                raise AlreadyFirst(f"entry {fresh.public_code} is already first in its queue")
            moved = self.allocator.swap_with_next(session, predecessor, self._clock())
            return moved, predecessor

        return self._after_swap(*self.allocator.run(entry.partition, work))

    def _after_swap(self, moved: QueueEntry, other: QueueEntry) -> tuple[QueueEntry, QueueEntry]:
        logger.info(
            "entries %s and %s swapped: now #%d and #%d",
            moved.public_code,
            other.public_code,
            moved.position,
            other.position,
        )
        self._notify_later(moved, notifications.position_changed)
        self._notify_later(other, notifications.position_changed)
        self._broadcast_later(moved.shop_ref)
        return moved, other

    # -------------------- reads --------------------

    def get_entry(self, entry_id: str) -> QueueEntry:
        return self._get(entry_id)

    def find_by_code(self, public_code: str) -> QueueEntry:
        entry = self.store.get_entry_by_code(public_code.strip().upper())
        if entry is None:
            raise EntryNotFound(f"no entry with code {public_code!r}")
        return entry

    def get_active_queue(self, shop_ref: str, worker_ref: str | None = None) -> List[EntrySummary]:
        """Active entries in serving order.

        With a worker: that worker's queue. Without: the whole shop, every
        worker's queue included (what the shop display shows).
        """
        if self.catalog.get_shop(shop_ref) is None:
            raise ShopNotFound(f"shop {shop_ref!r} not found")
        if worker_ref is None:
            entries = self.store.active_for_shop(shop_ref)
        else:
            worker = self.catalog.get_worker(worker_ref)
            if worker is None or worker.shop_ref != shop_ref:
                raise WorkerUnavailable(f"worker {worker_ref!r} does not work at shop {shop_ref!r}")
            entries = self.store.active_in_partition(shop_ref, worker_ref)
        return [e.summary() for e in entries]

    def snapshot(self, shop_ref: str) -> Snapshot:
        return Snapshot(shop_ref=shop_ref, entries=[e.summary() for e in self.store.active_for_shop(shop_ref)])

    def subscribe(self, shop_ref: str, *, maxsize: int = 16) -> Subscription:
        """Stream of full snapshots for a shop, starting with the current one."""
        if self.catalog.get_shop(shop_ref) is None:
            raise ShopNotFound(f"shop {shop_ref!r} not found")
        return self.broadcaster.attach(self.hub, shop_ref, maxsize=maxsize)

    def history_for_customer(self, user_ref: str) -> List[HistoryRecord]:
        return self.store.history_for_customer(user_ref)

    def history_for_worker(self, worker_ref: str) -> List[HistoryRecord]:
        return self.store.history_for_worker(worker_ref)

    def history_for_shop(self, shop_ref: str) -> List[HistoryRecord]:
        return self.store.history_for_shop(shop_ref)

    def served_count(self, worker_ref: str) -> int:
        return self.store.served_count(worker_ref)

    # -------------------- lifecycle --------------------

    def close(self) -> None:
        if self._owns_dispatcher:
            self.dispatcher.stop()
        self.hub.close()

    # -------------------- internals --------------------

    def _get(self, entry_id: str) -> QueueEntry:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"queue entry {entry_id!r} not found")
        return entry

    @staticmethod
    def _fresh(session: StoreSession, entry_id: str) -> QueueEntry:
        entry = session.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(f"queue entry {entry_id!r} not found")
        return entry

    def _fresh_active(self, session: StoreSession, entry_id: str, action: str) -> QueueEntry:
        entry = self._fresh(session, entry_id)
        if not entry.status.is_active:
            raise InvalidTransition(entry.status.value, action)
        return entry

    def _broadcast_later(self, shop_ref: str) -> None:
        self.dispatcher.submit(self.broadcaster.publish, shop_ref, description=f"broadcast shop {shop_ref}")

    def _notify_later(self, entry: QueueEntry, build: NotificationBuilder) -> None:
        if self.notifier is None or entry.user_ref is None:
            return
        self.dispatcher.submit(
            self._deliver,
            entry,
            build,
            description=f"notify {entry.user_ref} about {entry.public_code}",
        )

    def _deliver(self, entry: QueueEntry, build: NotificationBuilder) -> None:
        shop = self.catalog.get_shop(entry.shop_ref)
        worker = self.catalog.get_worker(entry.worker_ref) if entry.worker_ref else None
        note = build(entry, shop.name if shop else "a shop", worker.name if worker else None)
        if note is None or self.notifier is None or entry.user_ref is None:
            return
        self.notifier.notify(entry.user_ref, note)


# -------------------- MQTT adapter --------------------


def _quantity_from_message(raw: Any) -> int:
    """Whole numbers only: an int (not bool) or a string of digits."""
    if isinstance(raw, bool):
        raise InvalidQuantity(f"quantity must be an integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    raise InvalidQuantity(f"quantity must be an integer, got {raw!r}")


def _services_from_message(raw: Any) -> list[ServiceLine]:
    if not isinstance(raw, list):
        raise ValidationError("services must be a list")
    lines = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("each service must be an object")
        quantity = _quantity_from_message(item.get("quantity", 1))
        lines.append(ServiceLine(service_ref=str(item.get("service_ref") or ""), quantity=quantity))
    return lines


def _requester_from_message(msg: dict[str, Any]) -> Requester:
    raw = msg.get("requester")
    if not isinstance(raw, dict):
        raise ValidationError("requester required")
    try:
        return Requester.from_dict(raw)
    except ValueError:
        raise ValidationError(f"unknown requester role {raw.get('role')!r}") from None


def _required(msg: dict[str, Any], key: str) -> str:
    value = msg.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} required")
    return value


class MqttQueueManagerService:
    """MQTT adapter around the QueueManager business logic.

    The paho network thread only parses and hands each request to a worker
    pool; replies are published from the worker.
    """

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        manager: QueueManager,
        namespace: str,
        request_workers: int = 8,
    ) -> None:
        # Local imports so unit tests can import QueueManager without paho-mqtt.
        from .broadcaster import MqttSnapshotPublisher
        from .mqtt_topics import queue_requests

        self._queue_requests = queue_requests
        self.mqtt = mqtt
        self.manager = manager
        self.namespace = namespace
        self.manager.broadcaster.add_publisher(MqttSnapshotPublisher(mqtt=mqtt, namespace=namespace))

        self._pool = ThreadPoolExecutor(max_workers=request_workers, thread_name_prefix="queue-request")
        self._stopped = threading.Event()

    def start(self) -> None:
        topic = self._queue_requests(self.namespace)
        self.mqtt.subscribe(topic)
        self.mqtt.add_handler(self._handle_message, topic_filter=topic)

    def stop(self) -> None:
        """Finish in-flight requests. Call before disconnecting MQTT."""
        self._stopped.set()
        self._pool.shutdown(wait=True)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if self._stopped.is_set():
            return
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            logger.debug("dropping request without reply_to: %s", msg.get("type"))
            return
        self._pool.submit(self._process, reply_to, msg)

    def _reply(self, reply_to: str, corr_id: str | None, message: dict[str, Any]) -> None:
        msg = dict(message)
        if corr_id is not None:
            msg["corr_id"] = corr_id
        self.mqtt.publish(reply_to, msg)

    def _process(self, reply_to: str, msg: dict[str, Any]) -> None:
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None
        try:
            response = self.handle_request(msg)
        except QueueError as exc:
            response = exc.to_response().to_message()
        except Exception:
            logger.exception("request %r failed", msg.get("type"))
            response = ErrorResponse("internal_error", "Unexpected server error").to_message()
        self._reply(reply_to, corr_id, response)

    def handle_request(self, msg: dict[str, Any]) -> dict[str, Any]:
        """Run one request message and build its reply. Raises QueueError."""
        mtype = msg.get("type")
        m = self.manager

        if mtype == "join_queue":
            raw_customer = msg.get("customer")
            if not isinstance(raw_customer, dict):
                raise ValidationError("customer required")
            try:
                customer = customer_from_dict(raw_customer)
            except (KeyError, ValueError) as exc:
                raise ValidationError(f"invalid customer: {exc}") from None
            requester = _requester_from_message(msg) if isinstance(msg.get("requester"), dict) else None
            worker_ref = msg.get("worker_ref") if isinstance(msg.get("worker_ref"), str) else None
            entry = m.create_entry(
                _required(msg, "shop_ref"),
                customer,
                _services_from_message(msg.get("services")),
                worker_ref=worker_ref or None,
                requester=requester,
            )
            return {"type": "joined", "entry": entry.to_dict()}

        if mtype == "cancel_entry":
            entry = m.cancel_entry(_required(msg, "entry_id"), _requester_from_message(msg))
            return {"type": "cancelled", "entry": entry.to_dict()}

        if mtype == "advance_status":
            entry = m.advance_status(
                _required(msg, "entry_id"), _required(msg, "status"), _requester_from_message(msg)
            )
            return {"type": "status_changed", "entry": entry.to_dict()}

        if mtype in ("move_down", "move_up"):
            op = m.move_down if mtype == "move_down" else m.move_up
            moved, other = op(_required(msg, "entry_id"), _requester_from_message(msg))
            return {"type": "moved", "entry": moved.to_dict(), "swapped_with": other.to_dict()}

        if mtype == "get_queue":
            shop_ref = _required(msg, "shop_ref")
            worker_ref = msg.get("worker_ref") if isinstance(msg.get("worker_ref"), str) else None
            entries = m.get_active_queue(shop_ref, worker_ref or None)
            return {
                "type": "queue",
                "shop_ref": shop_ref,
                "worker_ref": worker_ref or None,
                "queue": [e.to_dict() for e in entries],
                "count": len(entries),
            }

        if mtype == "find_entry":
            entry = m.find_by_code(_required(msg, "public_code"))
            return {"type": "entry", "entry": entry.summary().to_dict()}

        raise ValidationError(f"unknown request type {mtype!r}")


def build_manager(settings, catalog: Catalog) -> tuple[QueueManager, SideEffectDispatcher, Optional[Notifier]]:
    """Wire a QueueManager from settings. Caller owns the returned services."""
    from .push import ExpoPushTransport, Notifier

    store = EntryStore(settings.db_path)
    dispatcher = SideEffectDispatcher(workers=settings.dispatch_workers)
    dispatcher.start()

    notifier = None
    if settings.push_enabled:
        notifier = Notifier(
            catalog=catalog,
            transport=ExpoPushTransport(url=settings.push_url, timeout=settings.push_timeout_s),
        )

    manager = QueueManager(
        store=store,
        catalog=catalog,
        dispatcher=dispatcher,
        notifier=notifier,
        allocation_attempts=settings.allocation_retries,
        code_attempts=settings.code_retries,
    )
    return manager, dispatcher, notifier


def main(argv: list[str] | None = None) -> None:
    # Import MQTT dependencies only when running the real service.
    from .catalog import InMemoryCatalog, load_catalog
    from .config import load_settings
    from .logging_setup import setup_logging
    from .mqtt_client import MqttClient

    settings = load_settings()

    parser = argparse.ArgumentParser(description="Queue Manager (MQTT)")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument("--db", default=settings.db_path, help="SQLite file (default: in-memory)")
    parser.add_argument("--catalog", default=settings.catalog_path, help="catalog JSON (shops, workers, tokens)")
    parser.add_argument("--no-push", action="store_true", help="disable push notifications")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    settings = settings.model_copy(
        update={
            "mqtt_host": args.mqtt_host,
            "mqtt_port": args.mqtt_port,
            "namespace": args.namespace,
            "db_path": args.db,
            "catalog_path": args.catalog,
            "push_enabled": settings.push_enabled and not args.no_push,
        }
    )

    if settings.catalog_path:
        catalog = load_catalog(settings.catalog_path)
    else:
        logger.warning("no catalog given; every join request will fail with shop_not_found")
        catalog = InMemoryCatalog()

    manager, dispatcher, notifier = build_manager(settings, catalog)

    mqtt_client = MqttClient(client_id=f"queue-manager-{uuid.uuid4().hex[:8]}", host=settings.mqtt_host, port=settings.mqtt_port)
    mqtt_client.start()

    service = MqttQueueManagerService(mqtt=mqtt_client, manager=manager, namespace=settings.namespace)
    service.start()

    logger.info(
        "queue manager connected to MQTT %s:%s, namespace=%s, db=%s",
        settings.mqtt_host,
        settings.mqtt_port,
        settings.namespace,
        settings.db_path,
    )

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        service.stop()
        dispatcher.stop()
        manager.close()
        if notifier is not None:
            notifier.close()
        mqtt_client.stop()
        manager.store.close()


if __name__ == "__main__":
    main()
