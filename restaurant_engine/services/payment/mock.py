"""
Mock Payment Gateway Implementation

Simulates a card/UPI gateway without making real API calls.
Used in development mode (ENV_MODE=development) to:
    - Test the complete order flow locally
    - Develop without internet connectivity

Behavior:
    - Simulates response times
    - Randomly declines a configurable share of charges
    - Generates gateway-like IDs (pi_mock_xxx, re_mock_xxx)
    - Honours idempotency keys: a repeated charge or refund key returns the first result
"""

import asyncio
import random
import uuid
import logging
from decimal import Decimal
from typing import Optional

from restaurant_engine.services.payment.base import (
    BasePaymentGateway,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class MockPaymentGateway(BasePaymentGateway):
    """
    Mock implementation of the payment gateway.

    Attributes:
        failure_rate: Probability of a simulated decline (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds

    Example:
        >>> gateway = MockPaymentGateway(failure_rate=0.0, min_latency=0, max_latency=0)
        >>> result = await gateway.charge(Decimal("312.50"), "inr", "txn-1")
        >>> result.success
        True
    """

    # Simulated decline reasons (mimic real card decline codes)
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("insufficient_funds", "Your card has insufficient funds."),
        ("expired_card", "Your card has expired."),
        ("processing_error", "An error occurred while processing your card."),
    ]

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self._charges: dict[str, PaymentResult] = {}
        self._refunds: dict[str, RefundResult] = {}

        logger.info(
            f"MockPaymentGateway initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> float:
        """Simulate network latency, returning it in milliseconds."""
        latency = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        if idempotency_key in self._charges:
            logger.debug(f"Mock: Replaying charge for key {idempotency_key}")
            return self._charges[idempotency_key]

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        latency_ms = await self._simulate_latency()

        if self._should_fail():
            error_code, error_message = random.choice(self.DECLINE_REASONS)
            logger.debug(f"Mock: Charge declined - {error_code}")
            result = PaymentResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message=error_message,
                error_code=error_code,
                response_time_ms=latency_ms,
            )
        else:
            result = PaymentResult(
                success=True,
                gateway_transaction_id=f"pi_mock_{uuid.uuid4().hex[:24]}",
                amount=amount,
                currency=currency,
                response_time_ms=latency_ms,
                metadata={"mock": True, **(metadata or {})},
            )
            logger.info(f"Mock: Charge captured - {result.gateway_transaction_id} - {amount}")

        self._charges[idempotency_key] = result
        return result

    async def refund(
        self,
        gateway_transaction_id: str,
        amount: Decimal,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        if idempotency_key in self._refunds:
            logger.debug(f"Mock: Replaying refund for key {idempotency_key}")
            return self._refunds[idempotency_key]

        await self._simulate_latency()

        if not gateway_transaction_id.startswith("pi_"):
            return RefundResult(
                success=False,
                error_message="Invalid gateway transaction ID",
                status="failed",
            )

        refund_id = f"re_mock_{uuid.uuid4().hex[:24]}"
        logger.info(f"Mock: Refund processed - {refund_id} - {amount}")

        result = RefundResult(
            success=True,
            refund_id=refund_id,
            amount=amount,
            status="succeeded",
        )
        self._refunds[idempotency_key] = result
        return result

    async def health_check(self) -> bool:
        return True
