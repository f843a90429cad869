from decimal import Decimal

import pytest

from shop_queue.catalog import InMemoryCatalog
from shop_queue.dispatcher import SideEffectDispatcher
from shop_queue.errors import PushDeliveryError
from shop_queue.manager import QueueManager
from shop_queue.models import Guest, Registered, Requester, Role, ServiceLine
from shop_queue.push import Notifier, is_expo_push_token
from shop_queue.store import EntryStore

TOKEN = "ExponentPushToken[abc123]"


class RecordingTransport:
    """Push transport that records instead of sending."""

    def __init__(self, *, fail: bool = False, gate=None) -> None:
        self.fail = fail
        self.gate = gate
        self.sent = []

    def is_valid_token(self, token):
        return is_expo_push_token(token)

    def send(self, token, notification):
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail:
            raise PushDeliveryError("transport down")
        self.sent.append((token, notification))

    def close(self):
        pass


@pytest.fixture
def catalog():
    c = InMemoryCatalog()
    c.add_shop(
        "s1",
        name="Corner Cuts",
        operator_ref="owner-1",
        prices={"haircut": "150", "shave": "80", "beard": "60"},
    )
    c.add_shop("s2", name="Other Shop", operator_ref="owner-2", prices={"haircut": "200"})
    c.add_worker("b1", shop_ref="s1", name="Ravi")
    c.add_worker("b2", shop_ref="s1", name="Sam")
    c.add_worker("b9", shop_ref="s2", name="Elsewhere")
    c.add_worker("off", shop_ref="s1", name="Off Duty", available=False)
    c.set_push_token("user-1", TOKEN)
    c.set_push_token("user-2", TOKEN.replace("abc", "def"))
    return c


@pytest.fixture
def store():
    s = EntryStore()
    yield s
    s.close()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher():
    d = SideEffectDispatcher(workers=2)
    d.start()
    yield d
    d.stop()


@pytest.fixture
def manager(store, catalog, dispatcher, transport):
    m = QueueManager(
        store=store,
        catalog=catalog,
        dispatcher=dispatcher,
        notifier=Notifier(catalog=catalog, transport=transport),
    )
    yield m
    m.close()


OPERATOR = Requester(Role.operator, "owner-1")
ADMIN = Requester(Role.admin)


def guest(name="Walk In", phone="555-0100"):
    return Guest(name=name, phone=phone)


def registered(user_ref="user-1"):
    return Registered(user_ref=user_ref)


def haircut(quantity=1):
    return [ServiceLine("haircut", quantity)]


def money(value):
    return Decimal(str(value))
