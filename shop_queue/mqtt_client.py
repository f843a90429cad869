"""Small MQTT helper built on top of paho-mqtt.

Why this exists:
- paho-mqtt is callback-based.
- The queue server answers requests, and the CLI wants a *blocking
  request/response* call on top of pub/sub.

Design:
- `MqttClient` manages the connection and a background network loop.
- Subscriptions are remembered and re-issued on every (re)connect, since we
  use clean sessions.
- `request()` publishes a JSON message and waits for a correlated response
  (`corr_id` + `reply_to`).
- Handlers can be bound to a topic filter; a failing handler is logged and
  the others still run.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class PendingResponse:
    corr_id: str
    q: "queue.Queue[dict[str, Any]]"


def encode_message(message: dict[str, Any]) -> bytes:
    # Decimals, datetimes and enums all serialize through str().
    return json.dumps(message, separators=(",", ":"), default=str).encode("utf-8")


def decode_message(raw: bytes | str) -> dict[str, Any] | None:
    """Parse a JSON object payload; None for anything else."""
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        data = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


class MqttClient:
    """Thin wrapper around paho-mqtt with JSON convenience APIs."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
        qos: int = 1,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.qos = qos

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            clean_session=True,
        )
        self._client.on_message = self._on_message
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect

        # (topic_filter or None, handler). None matches every topic.
        self._handlers: list[tuple[str | None, MessageHandler]] = []
        self._subscriptions: set[str] = set()

        # corr_id -> queue used by request()
        self._pending: dict[str, PendingResponse] = {}
        self._lock = threading.Lock()

        self._connected = threading.Event()
        self._started = False

    def start(self, *, wait: float = 5.0) -> None:
        """Connect and start the background network loop."""
        if self._started:
            return
        self._client.connect(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()
        self._started = True
        if wait and not self._connected.wait(wait):
            logger.warning("MQTT %s: not connected to %s:%s after %.1fs", self.client_id, self.host, self.port, wait)

    def stop(self) -> None:
        """Stop and disconnect."""
        if not self._started:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._started = False
        self._connected.clear()

    def add_handler(self, handler: MessageHandler, *, topic_filter: str | None = None) -> None:
        with self._lock:
            self._handlers.append((topic_filter, handler))

    def subscribe(self, topic: str) -> None:
        with self._lock:
            self._subscriptions.add(topic)
        self._client.subscribe(topic, qos=self.qos)

    def unsubscribe(self, topic: str) -> None:
        with self._lock:
            self._subscriptions.discard(topic)
        self._client.unsubscribe(topic)

    def publish(self, topic: str, message: dict[str, Any], *, retain: bool = False) -> None:
        info = self._client.publish(topic, payload=encode_message(message), qos=self.qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish to %s failed: %s", topic, mqtt.error_string(info.rc))

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Publish a message and wait for a correlated response.

        The caller must ensure we are subscribed to `response_topic`.
        """
        corr_id = str(uuid.uuid4())
        msg = dict(message)
        msg["corr_id"] = corr_id
        msg["reply_to"] = response_topic

        q: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        pending = PendingResponse(corr_id=corr_id, q=q)

        with self._lock:
            self._pending[corr_id] = pending

        self.publish(request_topic, msg)

        try:
            return q.get(timeout=timeout)
        except queue.Empty as e:
            raise TimeoutError(f"No response for corr_id={corr_id}") from e
        finally:
            with self._lock:
                self._pending.pop(corr_id, None)

    # -------------------- internal callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if getattr(reason_code, "is_failure", False):
            logger.error("MQTT %s: connect refused: %s", self.client_id, reason_code)
            return
        with self._lock:
            topics = sorted(self._subscriptions)
        for topic in topics:
            client.subscribe(topic, qos=self.qos)
        self._connected.set()
        logger.info("MQTT %s: connected to %s:%s", self.client_id, self.host, self.port)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        self._connected.clear()
        if getattr(reason_code, "is_failure", False):
            logger.warning("MQTT %s: disconnected unexpectedly: %s", self.client_id, reason_code)

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        data = decode_message(msg.payload)
        if data is None:
            logger.debug("ignoring non-JSON message on %s", msg.topic)
            return

        # First, try to match pending request.
        corr_id = data.get("corr_id")
        if isinstance(corr_id, str):
            with self._lock:
                pending = self._pending.get(corr_id)
            if pending is not None:
                try:
                    pending.q.put_nowait(data)
                except queue.Full:
                    pass
                return

        self.dispatch(msg.topic, data)

    def dispatch(self, topic: str, data: dict[str, Any]) -> None:
        """Run every handler whose filter matches `topic`."""
        with self._lock:
            handlers = list(self._handlers)
        for topic_filter, handler in handlers:
            if topic_filter is not None and not mqtt.topic_matches_sub(topic_filter, topic):
                continue
            try:
                handler(topic, data)
            except Exception:
                logger.exception("MQTT handler %r failed on %s", handler, topic)
