from decimal import Decimal

from shop_queue.broadcaster import LiveBroadcaster, LocalHub, MqttSnapshotPublisher
from shop_queue.models import EntryStatus, EntrySummary, Snapshot


def summary(entry_id, position):
    return EntrySummary(
        id=entry_id,
        shop_ref="s1",
        worker_ref=None,
        customer_name="Ann",
        registered=False,
        position=position,
        public_code="AAAAAA",
        status=EntryStatus.pending,
        total_cost=Decimal("10"),
    )


class FakeMqtt:
    def __init__(self):
        self.published = []

    def publish(self, topic, message, *, retain=False):
        self.published.append((topic, message, retain))


class Exploding:
    def publish(self, snapshot):
        raise RuntimeError("broker gone")


def test_hub_delivers_to_shop_subscribers_only():
    hub = LocalHub()
    s1 = hub.subscribe("s1")
    s2 = hub.subscribe("s2")

    hub.publish(Snapshot("s1", [summary("e1", 1)]))

    assert s1.get(timeout=1).entries[0].id == "e1"
    assert s2.get(timeout=0.05) is None
    assert hub.subscriber_count("s1") == 1


def test_late_subscriber_gets_latest():
    hub = LocalHub()
    hub.publish(Snapshot("s1", [summary("e1", 1)]))
    hub.publish(Snapshot("s1", [summary("e1", 1), summary("e2", 2)]))

    sub = hub.subscribe("s1")
    assert len(sub.get(timeout=1).entries) == 2


def test_slow_reader_keeps_newest():
    hub = LocalHub()
    sub = hub.subscribe("s1", maxsize=2)
    for n in range(1, 6):
        hub.publish(Snapshot("s1", [summary(f"e{i}", i) for i in range(1, n + 1)]))

    got = [len(sub.get(timeout=1).entries), len(sub.get(timeout=1).entries)]
    assert got == [4, 5]


def test_close_ends_iteration():
    hub = LocalHub()
    sub = hub.subscribe("s1")
    hub.publish(Snapshot("s1", []))
    sub.close()
    sub.close()

    assert [s.shop_ref for s in sub] == ["s1"]
    assert hub.subscriber_count("s1") == 0


def test_broadcaster_survives_failing_publisher():
    hub = LocalHub()
    sub = hub.subscribe("s1")
    broadcaster = LiveBroadcaster(lambda shop: Snapshot(shop, [summary("e1", 1)]), [Exploding(), hub])

    snap = broadcaster.publish("s1")

    assert snap.shop_ref == "s1"
    assert sub.get(timeout=1) is snap


def test_attach_starts_with_current_snapshot():
    hub = LocalHub()
    broadcaster = LiveBroadcaster(lambda shop: Snapshot(shop, [summary("e9", 1)]), [hub])
    sub = broadcaster.attach(hub, "s1")
    assert sub.get(timeout=1).entries[0].id == "e9"


def test_mqtt_publisher_retains_full_snapshot():
    mqtt = FakeMqtt()
    MqttSnapshotPublisher(mqtt=mqtt, namespace="ns").publish(Snapshot("s1", [summary("e1", 1)]))

    topic, message, retain = mqtt.published[0]
    assert topic == "ns/shops/s1/queue"
    assert retain is True
    assert message["type"] == "queue_updated"
    assert message["shopId"] == "s1"
    assert message["count"] == 1
    assert message["queue"][0]["public_code"] == "AAAAAA"
