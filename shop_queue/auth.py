from __future__ import annotations

# Authorization at the caller boundary.
#
# Identity itself is established elsewhere; we receive a Requester that has
# already been authenticated and only decide whether it may touch an entry.
#
# - cancel: the entry's own (registered) customer, its worker, the shop's
#   operator, or an admin
# - advance status / move: its worker, the shop's operator, or an admin
#
# A worker may act on entries assigned to them and on the shop-wide
# (unassigned) queue of the shop they work at.

from .catalog import Catalog, ShopInfo
from .errors import NotAuthorized
from .models import QueueEntry, Requester, Role


def _is_operator(requester: Requester, shop: ShopInfo | None) -> bool:
    return (
        requester.role is Role.operator
        and shop is not None
        and bool(shop.operator_ref)
        and shop.operator_ref == requester.ref
    )


def _is_worker_for(requester: Requester, entry: QueueEntry, catalog: Catalog) -> bool:
    if requester.role is not Role.worker or not requester.ref:
        return False
    if entry.worker_ref is not None:
        return entry.worker_ref == requester.ref
    worker = catalog.get_worker(requester.ref)
    return worker is not None and worker.shop_ref == entry.shop_ref


def _is_own_customer(requester: Requester, entry: QueueEntry) -> bool:
    return (
        requester.role is Role.customer
        and bool(requester.ref)
        and entry.user_ref == requester.ref
    )


def can_manage(requester: Requester, entry: QueueEntry, catalog: Catalog) -> bool:
    if requester.role is Role.admin:
        return True
    shop = catalog.get_shop(entry.shop_ref)
    return _is_operator(requester, shop) or _is_worker_for(requester, entry, catalog)


def can_cancel(requester: Requester, entry: QueueEntry, catalog: Catalog) -> bool:
    return _is_own_customer(requester, entry) or can_manage(requester, entry, catalog)


def require_manage(requester: Requester, entry: QueueEntry, catalog: Catalog) -> None:
    if not can_manage(requester, entry, catalog):
        raise NotAuthorized(f"{requester.role.value} {requester.ref!r} may not manage entry {entry.public_code}")


def require_cancel(requester: Requester, entry: QueueEntry, catalog: Catalog) -> None:
    if not can_cancel(requester, entry, catalog):
        raise NotAuthorized(f"{requester.role.value} {requester.ref!r} may not cancel entry {entry.public_code}")
