"""Customer-facing notification texts.

One function per queue event. Each returns the `(title, body, data)` triple
that the push transport delivers; `data` is opaque to the transport and is
read by the customer's app.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import EntryStatus, QueueEntry


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": dict(self.data)}


def joined(entry: QueueEntry, shop_name: str, worker_name: str | None = None) -> Notification:
    return Notification(
        title=f"You're in line at {shop_name}!",
        body=f"Your queue number is #{entry.position}. Code: {entry.public_code}.",
        data={"type": "queue_add", "queueId": entry.id, "shopId": entry.shop_ref},
    )


def cancelled(entry: QueueEntry, shop_name: str, worker_name: str | None = None) -> Notification:
    return Notification(
        title=f"Queue Update at {shop_name}",
        body=f"Your queue entry #{entry.position} (Code: {entry.public_code}) has been cancelled.",
        data={"type": "queue_cancelled", "queueId": entry.id, "shopId": entry.shop_ref},
    )


def status_changed(entry: QueueEntry, shop_name: str, worker_name: str | None = None) -> Notification | None:
    """Texts for in_progress/completed; None for anything else."""
    who = worker_name or "The barber"
    data = {
        "type": f"service_{entry.status.value}",
        "queueId": entry.id,
        "shopId": entry.shop_ref,
    }
    if entry.status is EntryStatus.in_progress:
        return Notification(
            title=f"You're up next at {shop_name}!",
            body=f"{who} is now ready for you (Code: {entry.public_code}).",
            data=data,
        )
    if entry.status is EntryStatus.completed:
        return Notification(
            title=f"Service Completed at {shop_name}!",
            body=f"Your service with {who} (Code: {entry.public_code}) is complete. Thank you!",
            data=data,
        )
    return None


def position_changed(entry: QueueEntry, shop_name: str, worker_name: str | None = None) -> Notification:
    return Notification(
        title=f"Queue Position Changed at {shop_name}",
        body=f"Your queue entry (Code: {entry.public_code}) is now #{entry.position}.",
        data={
            "type": "queue_position_change",
            "queueId": entry.id,
            "shopId": entry.shop_ref,
            "newPosition": entry.position,
            "uniqueCode": entry.public_code,
        },
    )
