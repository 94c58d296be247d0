"""
Fire-and-forget audit sink for billing state transitions.

Subscribers (notifications, analytics) register a callable; a failing
subscriber is logged and never propagates into the payment write path.
"""
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]

_subscribers: list[Subscriber] = []


def subscribe(subscriber: Subscriber) -> None:
    _subscribers.append(subscriber)


def unsubscribe(subscriber: Subscriber) -> None:
    if subscriber in _subscribers:
        _subscribers.remove(subscriber)


def publish(event_type: str, payload: dict[str, Any]) -> None:
    logger.info("Billing event %s: %s", event_type, payload)
    for subscriber in list(_subscribers):
        try:
            subscriber(event_type, payload)
        except Exception as e:
            logger.warning("Audit subscriber %r failed on %s: %s", subscriber, event_type, e)
