"""
Stripe Payment Gateway Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment

Security Notes:
    - Never log full card numbers or CVCs
    - Use idempotency keys for retries (the payment transaction id)

The SDK is synchronous; calls run in a worker thread so the event loop
stays free while Stripe answers.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe

from restaurant_engine.core.config import get_settings
from restaurant_engine.core.exceptions import TransientInfraError
from restaurant_engine.services.payment.base import (
    BasePaymentGateway,
    PaymentResult,
    RefundResult,
)

logger = logging.getLogger(__name__)


class StripePaymentGateway(BasePaymentGateway):
    """
    Production Stripe gateway.

    Example:
        >>> gateway = StripePaymentGateway()
        >>> result = await gateway.charge(Decimal("312.50"), "inr", "txn-42")
    """

    def __init__(self):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        logger.info(f"StripePaymentGateway initialized (api_version={stripe.api_version})")

    @property
    def provider_name(self) -> str:
        return "stripe"

    @staticmethod
    def _to_minor_units(amount: Decimal) -> int:
        """Stripe expects the smallest currency unit (paise, cents)."""
        return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))

    @staticmethod
    def _from_minor_units(value: int) -> Decimal:
        return (Decimal(value) / 100).quantize(Decimal("0.01"))

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        start_time = datetime.now()
        logger.info(f"Stripe: Charging {amount} {currency.upper()} (key={idempotency_key})")

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=self._to_minor_units(amount),
                currency=currency.lower(),
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"source": "restaurant_engine", **(metadata or {})},
                idempotency_key=idempotency_key,
            )
        except stripe.CardError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.warning(f"Stripe: Card declined - {e.code}: {e.user_message}")
            return PaymentResult(
                success=False,
                error_message=e.user_message,
                error_code=e.code,
                response_time_ms=elapsed_ms,
            )
        except stripe.InvalidRequestError as e:
            elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
            logger.error(f"Stripe: Invalid request - {e}")
            return PaymentResult(
                success=False,
                error_message=str(e),
                error_code="invalid_request",
                response_time_ms=elapsed_ms,
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe: Connection error - {e}")
            raise TransientInfraError("Payment service temporarily unavailable") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe: Error - {e}")
            raise TransientInfraError("Payment processing error", {"provider": "stripe"}) from e

        elapsed_ms = (datetime.now() - start_time).total_seconds() * 1000
        logger.info(f"Stripe: PaymentIntent {intent.id} status={intent.status}")

        return PaymentResult(
            success=intent.status == "succeeded",
            gateway_transaction_id=intent.id,
            amount=self._from_minor_units(intent.amount),
            currency=intent.currency,
            error_message=None if intent.status == "succeeded" else f"Payment {intent.status}",
            error_code=None if intent.status == "succeeded" else intent.status,
            response_time_ms=elapsed_ms,
            metadata={"status": intent.status},
        )

    async def refund(
        self,
        gateway_transaction_id: str,
        amount: Decimal,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        refund_params = {
            "payment_intent": gateway_transaction_id,
            "amount": self._to_minor_units(amount),
        }
        if reason:
            refund_params["reason"] = reason

        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create, idempotency_key=idempotency_key, **refund_params
            )
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe: Connection error during refund - {e}")
            raise TransientInfraError("Payment service temporarily unavailable") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund failed - {e}")
            return RefundResult(success=False, error_message=str(e), status="failed")

        logger.info(f"Stripe: Refund processed - {refund.id} - status={refund.status}")

        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            amount=self._from_minor_units(refund.amount),
            status=refund.status,
        )

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(stripe.Account.retrieve)
            return True
        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
