"""Error taxonomy and the shared error envelope.

Every failure the caller can see is a `QueueError` with a stable `code`.
The MQTT adapter turns them into `ErrorResponse` messages so clients get the
same shape whatever went wrong.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str
    kind: str = "internal"

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
        }
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg


class QueueError(Exception):
    code = "queue_error"
    kind = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, self.message, self.kind)


# -------------------- validation --------------------


class ValidationError(QueueError):
    code = "bad_request"
    kind = "validation"


class MissingCustomerInfo(ValidationError):
    code = "missing_customer_info"


class EmptyServices(ValidationError):
    code = "empty_services"


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class UnofferedService(ValidationError):
    code = "unoffered_service"

    def __init__(self, service_ref: str, shop_ref: str) -> None:
        super().__init__(f"service {service_ref!r} is not offered by shop {shop_ref!r}")
        self.service_ref = service_ref
        self.shop_ref = shop_ref


class InvalidStatus(ValidationError):
    code = "invalid_status"


# -------------------- not found --------------------


class NotFound(QueueError):
    code = "not_found"
    kind = "not_found"


class ShopNotFound(NotFound):
    code = "shop_not_found"


class EntryNotFound(NotFound):
    code = "entry_not_found"


class WorkerUnavailable(NotFound):
    code = "worker_unavailable"


# -------------------- authorization --------------------


class NotAuthorized(QueueError):
    code = "not_authorized"
    kind = "authorization"


# -------------------- conflict --------------------


class Conflict(QueueError):
    code = "conflict"
    kind = "conflict"


class AlreadyLast(Conflict):
    code = "already_last"


class AlreadyFirst(Conflict):
    code = "already_first"


class InvalidTransition(Conflict):
    code = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"cannot move entry from {current} to {target}")
        self.current = current
        self.target = target


# -------------------- transient --------------------


class TransientError(QueueError):
    """The mutation was not applied; retrying is safe."""

    code = "transient"
    kind = "transient"


class AllocationContention(TransientError):
    code = "allocation_contention"


class CodeSpaceExhausted(TransientError):
    code = "code_space_exhausted"


# -------------------- side effects --------------------


class PushDeliveryError(Exception):
    """Raised by push transports. Never reaches a queue caller."""
