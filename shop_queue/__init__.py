"""Walk-in service queues for shops (MQTT-based).

The queue manager keeps, per shop (and optionally per worker):
- numbered, strictly ordered queue entries for registered customers and guests
- staff operations: start/complete service, cancel, reorder
- an append-only history of completed services

Every change is followed by a full queue snapshot on the shop's MQTT topic and
a best-effort push notification to the affected registered customers.

See `python -m shop_queue.app -h` for how to run.
"""

__version__ = "0.1.0"
