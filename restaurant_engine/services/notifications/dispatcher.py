"""
Notification Dispatcher

The state machine's only view of notifications: ``notify(order_id,
event_kind, payload)``. Delivery (and its retries) happens in a Celery
worker; enqueueing is best effort and never raises into the caller,
whose transaction has already committed.
"""

import logging
from typing import Any, Protocol

from kombu.exceptions import OperationalError as BrokerError

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def notify(self, order_id: int, event_kind: str, payload: dict[str, Any]) -> None:
        ...


class CeleryNotificationDispatcher:
    """Queues ``deliver_notification`` tasks on the Redis broker."""

    def notify(self, order_id: int, event_kind: str, payload: dict[str, Any]) -> None:
        # Imported lazily: the task module pulls in the worker app.
        from restaurant_engine.tasks import deliver_notification

        try:
            deliver_notification.delay(order_id, event_kind, payload)
        except BrokerError as e:
            logger.error(f"Could not enqueue {event_kind} notification for order {order_id}: {e}")
            return
        logger.debug(f"Queued {event_kind} notification for order {order_id}")
