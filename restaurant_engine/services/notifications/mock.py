"""
Mock Notification Service

Stands in for Twilio/SendGrid in development. Nothing leaves the process:
each order-event message is logged and kept in a bounded outbox, so the
timeline a customer would have received can be inspected per order.
"""

import asyncio
import logging
import random
import uuid
from collections import deque
from typing import Optional

from restaurant_engine.services.notifications.base import (
    BaseNotificationService,
    NotificationMessage,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class MockNotificationService(BaseNotificationService):
    """
    Development notifier.

    Attributes:
        failure_rate: Probability of a simulated channel failure (0.0-1.0)
        max_latency: Upper bound of the simulated send time in seconds
        outbox: Delivered messages, oldest first (at most ``outbox_size``)
    """

    def __init__(self, failure_rate: float = 0.05, max_latency: float = 0.3, outbox_size: int = 500):
        self.failure_rate = failure_rate
        self.max_latency = max_latency
        self.outbox: deque[NotificationMessage] = deque(maxlen=outbox_size)
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate(self, channel: str, to: str) -> NotificationResult:
        await asyncio.sleep(random.uniform(0, self.max_latency))
        if random.random() < self.failure_rate:
            logger.warning(f"Mock {channel} to {to} failed (simulated)")
            return NotificationResult(
                success=False,
                error_message=f"Simulated {channel} failure",
                provider="mock",
            )
        return NotificationResult(
            success=True,
            message_id=f"{channel}_mock_{uuid.uuid4().hex[:12]}",
            provider="mock",
        )

    async def send_sms(self, to_phone: str, message: str) -> NotificationResult:
        result = await self._simulate("sms", to_phone)
        if result.success:
            logger.debug(f"Mock SMS {result.message_id} to {to_phone}: {message[:50]}")
        return result

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        result = await self._simulate("email", to_email)
        if result.success:
            logger.debug(f"Mock email {result.message_id} to {to_email}: {subject}")
        return result

    async def deliver(self, message: NotificationMessage) -> NotificationResult:
        result = await super().deliver(message)
        if result.success:
            self.outbox.append(message)
            logger.info(
                f"Mock: order #{message.order_id} {message.event_kind} -> "
                f"{message.to_phone or '-'} / {message.to_email or '-'}"
            )
        else:
            logger.warning(
                f"Mock: order #{message.order_id} {message.event_kind} not delivered: "
                f"{result.error_message}"
            )
        return result

    def timeline(self, order_id: int) -> list[str]:
        """Event kinds delivered for ``order_id``, in delivery order."""
        return [m.event_kind for m in self.outbox if m.order_id == order_id]

    async def health_check(self) -> bool:
        return True
