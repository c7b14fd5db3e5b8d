"""
Payment Gateway Factory

Provides a single entry point for obtaining a payment gateway instance.
The rest of the application stays agnostic about which provider is used.

Environment Switching:
    - ENV_MODE=development → MockPaymentGateway (no API calls)
    - ENV_MODE=staging → StripePaymentGateway (test keys)
    - ENV_MODE=production → StripePaymentGateway (live keys)
"""

import logging
from functools import lru_cache

from restaurant_engine.core.config import get_settings
from restaurant_engine.services.payment.base import (
    BasePaymentGateway,
    PaymentResult,
    RefundResult,
)
from restaurant_engine.services.payment.mock import MockPaymentGateway
from restaurant_engine.services.payment.stripe import StripePaymentGateway

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_gateway() -> BasePaymentGateway:
    """
    Get the configured payment gateway instance (cached per process).

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Gateway: Using MockPaymentGateway (development mode)")
        return MockPaymentGateway(
            failure_rate=0.10,  # 10% simulated declines
            min_latency=0.2,
            max_latency=0.8,
        )

    logger.info(f"Payment Gateway: Using StripePaymentGateway ({settings.env_mode.value} mode)")
    return StripePaymentGateway()


__all__ = [
    "get_payment_gateway",
    "BasePaymentGateway",
    "PaymentResult",
    "RefundResult",
    "MockPaymentGateway",
    "StripePaymentGateway",
]
