"""
Notification Service Abstract Base Class

Defines the interface for delivering order-event messages over SMS and
Email. Supports both Mock (development) and Real (production)
implementations.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Order events customers are told about."""
    ORDER_CREATED = "order_created"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_PREPARING = "order_preparing"
    ORDER_READY = "order_ready"
    DELIVERY_ASSIGNED = "delivery_assigned"
    OUT_FOR_DELIVERY = "out_for_delivery"
    ORDER_DELIVERED = "order_delivered"
    ORDER_CANCELLED = "order_cancelled"
    PAYMENT_FAILED = "payment_failed"
    REFUND_ISSUED = "refund_issued"


@dataclass
class NotificationMessage:
    """A rendered message ready for delivery."""
    order_id: int
    event_kind: str
    subject: str
    body: str
    to_phone: Optional[str] = None
    to_email: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def deliver(self, message: NotificationMessage) -> NotificationResult:
        """
        Send ``message`` on every channel it has an address for.

        Succeeds if at least one channel accepted it. A message with no
        address at all is logged by the caller and counts as delivered.
        """
        results = []
        if message.to_phone:
            results.append(await self.send_sms(message.to_phone, message.body))
        if message.to_email:
            results.append(
                await self.send_email(
                    to_email=message.to_email,
                    subject=message.subject,
                    body_html=f"<p>{message.body}</p>",
                    body_text=message.body,
                )
            )

        if not results:
            return NotificationResult(success=True, provider=self.provider_name)

        delivered = [r for r in results if r.success]
        if delivered:
            return delivered[0]
        return NotificationResult(
            success=False,
            error_message="; ".join(r.error_message or "unknown error" for r in results),
            provider=self.provider_name,
        )
