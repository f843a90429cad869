from __future__ import annotations

# Cost resolver.
#
# The total is fixed at creation time:
#   total_cost = sum(price(service) * quantity)
# using the shop's rate card *as it is right now*. The result is stored on the
# entry and never recomputed, so later price changes don't touch it.

from decimal import Decimal
from typing import Iterable, Mapping

from .errors import EmptyServices, InvalidQuantity, UnofferedService
from .models import ServiceLine


def normalize_services(services: Iterable[ServiceLine]) -> tuple[ServiceLine, ...]:
    """Validate the requested service list and freeze it.

    Raises:
        EmptyServices: nothing was requested.
        InvalidQuantity: a quantity is below 1.
    """
    lines = tuple(services)
    if not lines:
        raise EmptyServices("at least one service must be selected")
    for line in lines:
        if not line.service_ref:
            raise EmptyServices("service_ref required")
        if int(line.quantity) < 1:
            raise InvalidQuantity(f"quantity for {line.service_ref!r} must be >= 1")
    return lines


def resolve_total_cost(
    *,
    shop_ref: str,
    services: Iterable[ServiceLine],
    rate_card: Mapping[str, Decimal],
) -> Decimal:
    """Price a service list against a rate card.

    Args:
        shop_ref: shop the rate card belongs to (only used in errors).
        services: requested lines, already validated.
        rate_card: service_ref -> unit price.

    Returns:
        Sum of price * quantity.

    Raises:
        UnofferedService: a requested service is missing from the rate card.
    """
    total = Decimal("0")
    for line in services:
        price = rate_card.get(line.service_ref)
        if price is None:
            raise UnofferedService(line.service_ref, shop_ref)
        total += Decimal(price) * int(line.quantity)
    return total
