"""
Display metadata for status values.

Labels, icons, colors and progress percentages for clients. The state
machine never reads any of this.
"""

from typing import Any

from restaurant_engine.models import DeliveryStatus, OrderStatus, PaymentMethod, PaymentStatus

# status -> (label, icon, color, progress %)
ORDER_STATUS_DISPLAY: dict[OrderStatus, tuple[str, str, str, int]] = {
    OrderStatus.PENDING: ("Pending", "⏳", "#FFA500", 10),
    OrderStatus.CONFIRMED: ("Confirmed", "✅", "#32CD32", 25),
    OrderStatus.PREPARING: ("Preparing", "👨‍🍳", "#1E90FF", 50),
    OrderStatus.READY_FOR_PICKUP: ("Ready for Pickup", "📦", "#9370DB", 75),
    OrderStatus.OUT_FOR_DELIVERY: ("Out for Delivery", "🚚", "#FF6347", 90),
    OrderStatus.DELIVERED: ("Delivered", "🎉", "#228B22", 100),
    OrderStatus.CANCELLED: ("Cancelled", "❌", "#DC143C", 0),
}

PAYMENT_STATUS_DISPLAY: dict[PaymentStatus, tuple[str, str, str]] = {
    PaymentStatus.PENDING: ("Pending", "⏳", "#FFA500"),
    PaymentStatus.PROCESSING: ("Processing", "🔄", "#1E90FF"),
    PaymentStatus.COMPLETED: ("Completed", "✅", "#228B22"),
    PaymentStatus.FAILED: ("Failed", "❌", "#DC143C"),
    PaymentStatus.REFUNDED: ("Refunded", "↩️", "#9370DB"),
    PaymentStatus.PARTIALLY_REFUNDED: ("Partially Refunded", "↪️", "#FF6347"),
}

PAYMENT_METHOD_DISPLAY: dict[PaymentMethod, tuple[str, str]] = {
    PaymentMethod.CASH_ON_DELIVERY: ("Cash on Delivery", "💵"),
    PaymentMethod.UPI: ("UPI", "📱"),
    PaymentMethod.DEBIT_CARD: ("Debit Card", "💳"),
    PaymentMethod.CREDIT_CARD: ("Credit Card", "💳"),
    PaymentMethod.NET_BANKING: ("Net Banking", "🏦"),
    PaymentMethod.DIGITAL_WALLET: ("Digital Wallet", "📲"),
}

DELIVERY_STATUS_DISPLAY: dict[DeliveryStatus, tuple[str, str, str]] = {
    DeliveryStatus.AVAILABLE: ("Available", "🟢", "#228B22"),
    DeliveryStatus.BUSY: ("Busy", "🟡", "#FFA500"),
    DeliveryStatus.OFFLINE: ("Offline", "🔴", "#DC143C"),
}


def order_status_info(status: OrderStatus) -> dict[str, Any]:
    label, icon, color, progress = ORDER_STATUS_DISPLAY[status]
    return {
        "value": status.value,
        "label": label,
        "icon": icon,
        "color": color,
        "progress_percentage": progress,
    }


def reference_tables() -> dict[str, list[dict[str, Any]]]:
    """Every lookup table, in enum order."""
    return {
        "order_statuses": [order_status_info(s) for s in OrderStatus],
        "payment_statuses": [
            {"value": s.value, "label": label, "icon": icon, "color": color}
            for s, (label, icon, color) in PAYMENT_STATUS_DISPLAY.items()
        ],
        "payment_methods": [
            {"value": m.value, "label": label, "icon": icon, "is_online": m.is_online}
            for m, (label, icon) in PAYMENT_METHOD_DISPLAY.items()
        ],
        "delivery_statuses": [
            {"value": s.value, "label": label, "icon": icon, "color": color}
            for s, (label, icon, color) in DELIVERY_STATUS_DISPLAY.items()
        ],
    }
