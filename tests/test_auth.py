from decimal import Decimal

import pytest

from shop_queue.auth import can_cancel, can_manage, require_cancel, require_manage
from shop_queue.errors import NotAuthorized
from shop_queue.models import Guest, QueueEntry, Registered, Requester, Role, ServiceLine


def entry(*, worker_ref=None, customer=None):
    return QueueEntry(
        id="e1",
        shop_ref="s1",
        worker_ref=worker_ref,
        customer=customer or Registered("user-1"),
        services=(ServiceLine("haircut"),),
        total_cost=Decimal("150"),
        position=1,
        public_code="AAAAAA",
    )


@pytest.mark.parametrize(
    "requester,worker_ref,allowed",
    [
        (Requester(Role.admin), None, True),
        (Requester(Role.operator, "owner-1"), "b1", True),
        (Requester(Role.operator, "owner-2"), None, False),
        (Requester(Role.operator, ""), None, False),
        (Requester(Role.worker, "b1"), "b1", True),
        (Requester(Role.worker, "b2"), "b1", False),
        (Requester(Role.worker, "b2"), None, True),
        (Requester(Role.worker, "b9"), None, False),
        (Requester(Role.customer, "user-1"), None, False),
    ],
)
def test_can_manage(catalog, requester, worker_ref, allowed):
    assert can_manage(requester, entry(worker_ref=worker_ref), catalog) is allowed


def test_own_customer_may_cancel_only(catalog):
    own = Requester(Role.customer, "user-1")
    stranger = Requester(Role.customer, "user-2")
    e = entry()

    assert can_cancel(own, e, catalog)
    assert not can_cancel(stranger, e, catalog)
    require_cancel(own, e, catalog)
    with pytest.raises(NotAuthorized):
        require_manage(own, e, catalog)
    with pytest.raises(NotAuthorized):
        require_cancel(stranger, e, catalog)


def test_guest_entries_have_no_customer_owner(catalog):
    e = entry(customer=Guest("Ann", "555"))
    assert not can_cancel(Requester(Role.customer, ""), e, catalog)
