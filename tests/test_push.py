import json

import httpx
import pytest

from conftest import TOKEN, RecordingTransport
from shop_queue.errors import PushDeliveryError
from shop_queue.notifications import Notification
from shop_queue.push import ExpoPushTransport, Notifier, is_expo_push_token

NOTE = Notification("Hello", "You're #1", {"type": "queue_add"})


def transport_with(handler):
    return ExpoPushTransport(url="https://push.test/send", client=httpx.Client(transport=httpx.MockTransport(handler)))


def test_token_format():
    assert is_expo_push_token("ExponentPushToken[xyz]")
    assert is_expo_push_token("ExpoPushToken[xyz]")
    assert not is_expo_push_token("abc")
    assert not is_expo_push_token("")
    assert not is_expo_push_token(None)


def test_expo_transport_posts_message():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"data": [{"status": "ok", "id": "t1"}]})

    transport_with(handler).send(TOKEN, NOTE)

    body = json.loads(requests[0].content)
    assert str(requests[0].url) == "https://push.test/send"
    assert body == [
        {
            "to": TOKEN,
            "sound": "default",
            "title": "Hello",
            "body": "You're #1",
            "channelId": "default",
            "priority": "high",
            "data": {"type": "queue_add"},
        }
    ]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="oops"),
        httpx.Response(200, json={"errors": [{"code": "bad"}]}),
        httpx.Response(200, json={"data": [{"status": "error", "message": "DeviceNotRegistered"}]}),
    ],
)
def test_expo_transport_failures(response):
    with pytest.raises(PushDeliveryError):
        transport_with(lambda request: response).send(TOKEN, NOTE)


def test_notifier_skips_missing_and_invalid_tokens(catalog):
    transport = RecordingTransport()
    notifier = Notifier(catalog=catalog, transport=transport)
    catalog.set_push_token("user-3", "not-a-token")

    assert notifier.notify("nobody", NOTE) is False
    assert notifier.notify("user-3", NOTE) is False
    assert notifier.notify("user-1", NOTE) is True
    assert transport.sent == [(TOKEN, NOTE)]
