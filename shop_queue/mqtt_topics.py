"""MQTT topic helpers.

We keep topic construction in one place so the server, the CLI clients and
shop displays agree on naming.

Topic layout under a configurable namespace (default: `shopqueue/v1`):

Request/response:
- `<ns>/queue/requests`
    All queue operations (join, cancel, advance, move, read).
- `<ns>/queue/responses/<client_id>`
    Each client listens for its replies here.

Streaming/broadcast:
- `<ns>/shops/<shop_ref>/queue`
    Full active-queue snapshot of one shop, published (retained) after every
    change. A display subscribing late still gets the current queue.

Refs are used verbatim as topic levels, so they must not contain `/`, `+`
or `#`.
"""

from __future__ import annotations

DEFAULT_NAMESPACE = "shopqueue/v1"

_RESERVED = ("/", "+", "#")


def _level(value: str) -> str:
    if not value or any(ch in value for ch in _RESERVED):
        raise ValueError(f"invalid topic level: {value!r}")
    return value


def queue_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/requests"


def queue_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/queue/responses/{_level(client_id)}"


def shop_queue_updates(shop_ref: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Snapshot stream of one shop."""
    return f"{namespace}/shops/{_level(shop_ref)}/queue"


def all_shop_queue_updates(namespace: str = DEFAULT_NAMESPACE) -> str:
    """Wildcard filter matching every shop's snapshot stream."""
    return f"{namespace}/shops/+/queue"
