from __future__ import annotations

# Queue client.
#
# Short-lived helpers used by the CLI (and by shop displays):
# - connect to broker
# - publish one request on the shared request topic
# - wait for the correlated reply on our own response topic
#
# `watch_shop` instead subscribes to a shop's snapshot stream and calls back
# with every full queue it receives.

import logging
import threading
import time
import uuid
from typing import Any, Callable

from .mqtt_client import MqttClient
from .mqtt_topics import DEFAULT_NAMESPACE, queue_requests, queue_responses, shop_queue_updates

logger = logging.getLogger(__name__)


class QueueClient:
    def __init__(
        self,
        *,
        mqtt_host: str = "127.0.0.1",
        mqtt_port: int = 1883,
        namespace: str = DEFAULT_NAMESPACE,
        client_id: str | None = None,
        timeout: float = 5.0,
        mqtt: MqttClient | None = None,
    ) -> None:
        # Use a unique client id so many clients can run concurrently.
        self.client_id = client_id or f"queue-client-{uuid.uuid4().hex[:12]}"
        self.namespace = namespace
        self.timeout = timeout
        self.mqtt = mqtt or MqttClient(client_id=self.client_id, host=mqtt_host, port=mqtt_port)
        self.reply_topic = queue_responses(self.client_id, namespace)

    def start(self) -> None:
        self.mqtt.start()
        self.mqtt.subscribe(self.reply_topic)

    def stop(self) -> None:
        self.mqtt.stop()

    def __enter__(self) -> QueueClient:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def call(self, message: dict[str, Any]) -> dict[str, Any]:
        return self.mqtt.request(
            request_topic=queue_requests(self.namespace),
            response_topic=self.reply_topic,
            message=message,
            timeout=self.timeout,
        )

    # -------------------- operations --------------------

    def join(
        self,
        *,
        shop_ref: str,
        services: list[dict[str, Any]],
        user_ref: str | None = None,
        name: str | None = None,
        phone: str | None = None,
        worker_ref: str | None = None,
        requester: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if user_ref:
            customer: dict[str, Any] = {"kind": "registered", "user_ref": user_ref}
        else:
            customer = {"kind": "guest", "name": name or "", "phone": phone or ""}
        msg: dict[str, Any] = {
            "type": "join_queue",
            "shop_ref": shop_ref,
            "customer": customer,
            "services": services,
        }
        if worker_ref:
            msg["worker_ref"] = worker_ref
        if requester:
            msg["requester"] = requester
        return self.call(msg)

    def cancel(self, *, entry_id: str, requester: dict[str, str]) -> dict[str, Any]:
        return self.call({"type": "cancel_entry", "entry_id": entry_id, "requester": requester})

    def advance(self, *, entry_id: str, status: str, requester: dict[str, str]) -> dict[str, Any]:
        return self.call(
            {"type": "advance_status", "entry_id": entry_id, "status": status, "requester": requester}
        )

    def move_down(self, *, entry_id: str, requester: dict[str, str]) -> dict[str, Any]:
        return self.call({"type": "move_down", "entry_id": entry_id, "requester": requester})

    def move_up(self, *, entry_id: str, requester: dict[str, str]) -> dict[str, Any]:
        return self.call({"type": "move_up", "entry_id": entry_id, "requester": requester})

    def get_queue(self, *, shop_ref: str, worker_ref: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "get_queue", "shop_ref": shop_ref}
        if worker_ref:
            msg["worker_ref"] = worker_ref
        return self.call(msg)

    def find(self, *, public_code: str) -> dict[str, Any]:
        return self.call({"type": "find_entry", "public_code": public_code})


def watch_shop(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    shop_ref: str,
    on_snapshot: Callable[[dict[str, Any]], None],
    stop_event: threading.Event | None = None,
) -> None:
    """Call `on_snapshot` with each snapshot of a shop until stopped.

    The snapshot topic is retained, so the current queue arrives right away.
    """
    stop = stop_event or threading.Event()
    mqtt = MqttClient(client_id=f"queue-watch-{uuid.uuid4().hex[:12]}", host=mqtt_host, port=mqtt_port)
    topic = shop_queue_updates(shop_ref, namespace)

    def handler(_topic: str, msg: dict[str, Any]) -> None:
        if msg.get("type") == "queue_updated":
            on_snapshot(msg)

    mqtt.add_handler(handler, topic_filter=topic)
    mqtt.start()
    mqtt.subscribe(topic)
    try:
        while not stop.is_set():
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        mqtt.stop()


def format_queue(entries: list[dict[str, Any]]) -> str:
    """One line per entry, in serving order."""
    if not entries:
        return "(queue is empty)"
    lines = []
    for e in entries:
        worker = e.get("worker_ref") or "-"
        lines.append(
            f"#{e.get('position'):>3}  {e.get('public_code')}  {e.get('status'):<11}  "
            f"{e.get('customer_name')}  worker={worker}  total={e.get('total_cost')}"
        )
    return "\n".join(lines)
