"""
Customer-facing message texts per order event.

The payload is whatever the state machine attached to the event; only
``order_number``, ``contact_phone`` and ``contact_email`` are expected
on every event.
"""

from typing import Any

from restaurant_engine.services.notifications.base import EventKind, NotificationMessage

TEMPLATES: dict[EventKind, tuple[str, str]] = {
    EventKind.ORDER_CREATED: (
        "Order {order_number} received",
        "We received your order {order_number}. Total: {total_amount}.",
    ),
    EventKind.ORDER_CONFIRMED: (
        "Order {order_number} confirmed",
        "Your order {order_number} is confirmed and will be prepared shortly.",
    ),
    EventKind.ORDER_PREPARING: (
        "Order {order_number} is being prepared",
        "The kitchen has started preparing order {order_number}.",
    ),
    EventKind.ORDER_READY: (
        "Order {order_number} is ready",
        "Order {order_number} is ready. Estimated delivery: {estimated_delivery_time}.",
    ),
    EventKind.DELIVERY_ASSIGNED: (
        "Courier assigned to order {order_number}",
        "A delivery partner has been assigned to order {order_number}.",
    ),
    EventKind.OUT_FOR_DELIVERY: (
        "Order {order_number} is on its way",
        "Order {order_number} is out for delivery.",
    ),
    EventKind.ORDER_DELIVERED: (
        "Order {order_number} delivered",
        "Order {order_number} has been delivered. Enjoy your meal!",
    ),
    EventKind.ORDER_CANCELLED: (
        "Order {order_number} cancelled",
        "Order {order_number} was cancelled. Reason: {reason}.",
    ),
    EventKind.PAYMENT_FAILED: (
        "Payment failed for order {order_number}",
        "We could not process the payment for order {order_number}. Please try again.",
    ),
    EventKind.REFUND_ISSUED: (
        "Refund issued for order {order_number}",
        "A refund of {amount} for order {order_number} has been issued.",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "n/a"


def render(order_id: int, event_kind: str, payload: dict[str, Any]) -> NotificationMessage:
    """Build the message for one event. Unknown event kinds raise ValueError."""
    kind = EventKind(event_kind)
    subject, body = TEMPLATES[kind]
    fields = _Defaults({"order_number": f"#{order_id}"})
    fields.update({k: v for k, v in payload.items() if v is not None})

    return NotificationMessage(
        order_id=order_id,
        event_kind=kind.value,
        subject=subject.format_map(fields),
        body=body.format_map(fields),
        to_phone=payload.get("contact_phone"),
        to_email=payload.get("contact_email"),
        payload=payload,
    )


def event_payload(order, **extra: Any) -> dict[str, Any]:
    """JSON-safe payload for an event on ``order`` (Celery serializes it)."""
    address = order.delivery_address or {}
    payload = {
        "order_number": order.order_number,
        "status": order.status.value,
        "total_amount": str(order.total_amount),
        "contact_phone": address.get("contact_phone"),
        "contact_email": address.get("contact_email"),
    }
    payload.update(extra)
    return payload
