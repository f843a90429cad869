"""Queue data model.

A queue *partition* is the pair (shop_ref, worker_ref-or-None). Positions are
unique among the active entries of one partition; public codes are unique
across every entry ever created.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union


class EntryStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

    def __str__(self) -> str:
        return self.value


ACTIVE_STATUSES = frozenset({EntryStatus.pending, EntryStatus.in_progress})


@dataclass(frozen=True)
class Registered:
    """A customer with an account; notifications go to their device."""

    user_ref: str

    @property
    def display_name(self) -> str:
        return self.user_ref

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "registered", "user_ref": self.user_ref}


@dataclass(frozen=True)
class Guest:
    """A walk-in without an account. Never notified."""

    name: str
    phone: str

    @property
    def display_name(self) -> str:
        return self.name

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "guest", "name": self.name, "phone": self.phone}


Customer = Union[Registered, Guest]


def _optional_text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def customer_from_dict(data: dict[str, Any]) -> Customer:
    """Build the customer variant from its wire form.

    Raises KeyError/ValueError on malformed input; callers translate that into
    a validation error.
    """
    kind = data.get("kind")
    if kind == "registered" or (kind is None and data.get("user_ref")):
        user_ref = data.get("user_ref")
        if not isinstance(user_ref, str) or not user_ref.strip():
            raise ValueError("user_ref must be a non-empty string")
        return Registered(user_ref=user_ref)
    if kind == "guest" or kind is None:
        return Guest(name=_optional_text(data, "name"), phone=_optional_text(data, "phone"))
    raise ValueError(f"unknown customer kind: {kind!r}")


@dataclass(frozen=True)
class ServiceLine:
    service_ref: str
    quantity: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"service_ref": self.service_ref, "quantity": self.quantity}


PartitionKey = tuple[str, Union[str, None]]


@dataclass
class QueueEntry:
    id: str
    shop_ref: str
    worker_ref: str | None
    customer: Customer
    services: tuple[ServiceLine, ...]
    total_cost: Decimal
    position: int
    public_code: str
    status: EntryStatus = EntryStatus.pending
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def partition(self) -> PartitionKey:
        return (self.shop_ref, self.worker_ref)

    @property
    def user_ref(self) -> str | None:
        if isinstance(self.customer, Registered):
            return self.customer.user_ref
        return None

    def summary(self) -> EntrySummary:
        return EntrySummary(
            id=self.id,
            shop_ref=self.shop_ref,
            worker_ref=self.worker_ref,
            customer_name=self.customer.display_name,
            registered=isinstance(self.customer, Registered),
            position=self.position,
            public_code=self.public_code,
            status=self.status,
            total_cost=self.total_cost,
            created_at=self.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shop_ref": self.shop_ref,
            "worker_ref": self.worker_ref,
            "customer": self.customer.to_dict(),
            "services": [s.to_dict() for s in self.services],
            "total_cost": str(self.total_cost),
            "position": self.position,
            "public_code": self.public_code,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class EntrySummary:
    """What observers see. Guest phone numbers are never part of it."""

    id: str
    shop_ref: str
    worker_ref: str | None
    customer_name: str
    registered: bool
    position: int
    public_code: str
    status: EntryStatus
    total_cost: Decimal
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shop_ref": self.shop_ref,
            "worker_ref": self.worker_ref,
            "customer_name": self.customer_name,
            "registered": self.registered,
            "position": self.position,
            "public_code": self.public_code,
            "status": self.status.value,
            "total_cost": str(self.total_cost),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class HistoryRecord:
    id: int
    entry_id: str
    user_ref: str | None
    worker_ref: str | None
    shop_ref: str
    services: tuple[ServiceLine, ...]
    total_cost: Decimal
    public_code: str
    position: int
    completed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "user_ref": self.user_ref,
            "worker_ref": self.worker_ref,
            "shop_ref": self.shop_ref,
            "services": [s.to_dict() for s in self.services],
            "total_cost": str(self.total_cost),
            "public_code": self.public_code,
            "position": self.position,
            "completed_at": self.completed_at.isoformat(),
        }


class Role(str, Enum):
    customer = "customer"
    worker = "worker"
    operator = "operator"
    admin = "admin"


@dataclass(frozen=True)
class Requester:
    """An authenticated caller, as vouched for by the identity boundary."""

    role: Role
    ref: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Requester:
        return cls(role=Role(str(data.get("role", ""))), ref=str(data.get("ref", "")))

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role.value, "ref": self.ref}


@dataclass
class Snapshot:
    """Full active queue of one shop at a point in time."""

    shop_ref: str
    entries: list[EntrySummary] = field(default_factory=list)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "queue_updated",
            "shopId": self.shop_ref,
            "queue": [e.to_dict() for e in self.entries],
            "count": len(self.entries),
        }
