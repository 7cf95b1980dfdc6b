"""
Event sink for audit entries.

Downstream consumers (journey timelines, notification dispatch) subscribe
a callback; the fulfillment services publish each audit entry *after* the
transaction that wrote it has committed. A failing subscriber is logged
and skipped: delivery never gates, reverses or retries a state change, and
nothing a subscriber returns is read back.

Usage:
    from radiopharm.services import event_sink

    event_sink.subscribe(lambda entry: print(entry["action"]))
"""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[dict], None]

_subscribers: list[Subscriber] = []
_subscribers_lock = threading.Lock()


def subscribe(callback: Subscriber) -> Subscriber:
    """Register *callback*; returns it so this works as a decorator."""
    with _subscribers_lock:
        if callback not in _subscribers:
            _subscribers.append(callback)
    return callback


def unsubscribe(callback: Subscriber) -> None:
    with _subscribers_lock:
        if callback in _subscribers:
            _subscribers.remove(callback)


def clear_subscribers() -> None:
    """Drop every subscriber (for testing)."""
    with _subscribers_lock:
        _subscribers.clear()


def publish(entries: list[dict]) -> int:
    """Deliver committed audit entries to every subscriber.

    Returns:
        Number of successful (entry, subscriber) deliveries.
    """
    with _subscribers_lock:
        targets = list(_subscribers)
    delivered = 0
    for entry in entries:
        for callback in targets:
            try:
                callback(entry)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event sink subscriber %r failed for %s",
                    callback, entry.get("action"),
                    extra={"event_type": entry.get("action")},
                )
    return delivered
