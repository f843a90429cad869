"""Push delivery to customer devices.

`Notifier` resolves a registered customer's device token through the catalog
and hands the message to a `PushTransport`. The default transport talks to the
Expo push HTTP API with httpx.

Notes:
- Delivery is best effort. Missing or malformed tokens are logged and
  skipped; transport failures raise `PushDeliveryError` and the dispatcher
  logs them. Nothing here is retried.
- Guests have no token and are never notified.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from .catalog import Catalog
from .errors import PushDeliveryError
from .notifications import Notification

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[[^\]]+\]$")


def is_expo_push_token(token: str | None) -> bool:
    return bool(token) and _EXPO_TOKEN_RE.match(token or "") is not None


class PushTransport(Protocol):
    def is_valid_token(self, token: str) -> bool: ...

    def send(self, token: str, notification: Notification) -> None: ...

    def close(self) -> None: ...


class ExpoPushTransport:
    """Expo push API over httpx."""

    def __init__(
        self,
        *,
        url: str = EXPO_PUSH_URL,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def is_valid_token(self, token: str) -> bool:
        return is_expo_push_token(token)

    def build_message(self, token: str, notification: Notification) -> dict[str, Any]:
        return {
            "to": token,
            "sound": "default",
            "title": notification.title,
            "body": notification.body,
            "channelId": "default",
            "priority": "high",
            "data": dict(notification.data),
        }

    def send(self, token: str, notification: Notification) -> None:
        message = self.build_message(token, notification)
        try:
            resp = self._client.post(
                self.url,
                json=[message],
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PushDeliveryError(f"push request failed: {exc}") from exc

        if payload.get("errors"):
            raise PushDeliveryError(f"push rejected: {payload['errors']}")
        for ticket in payload.get("data") or []:
            if ticket.get("status") == "error":
                raise PushDeliveryError(f"push ticket error: {ticket.get('message')}")

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class Notifier:
    def __init__(self, *, catalog: Catalog, transport: PushTransport) -> None:
        self.catalog = catalog
        self.transport = transport

    def notify(self, user_ref: str, notification: Notification) -> bool:
        """Deliver to one registered customer.

        Returns True if the transport accepted the message, False if it was
        skipped. Raises PushDeliveryError on transport failure.
        """
        token = self.catalog.push_token_for(user_ref)
        if not token:
            logger.info("notification skipped for user %s: no push token", user_ref)
            return False
        if not self.transport.is_valid_token(token):
            logger.warning("notification skipped for user %s: invalid push token %r", user_ref, token)
            return False
        self.transport.send(token, notification)
        logger.info("notification sent to user %s: %s", user_ref, notification.title)
        return True

    def close(self) -> None:
        self.transport.close()
