"""
Payment Gateway Abstract Base Class

Defines the capability the payment reconciler consumes: charge an amount
under an idempotency key, refund part or all of a captured charge, and
report health. MockPaymentGateway and StripePaymentGateway implement it.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - Facilitates testing with mock implementations

Failure semantics:
    - A decline is a normal result (``success=False``)
    - A network/provider outage raises TransientInfraError
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass
class PaymentResult:
    """
    Standardized result from a charge.

    Attributes:
        success: Whether the charge was captured
        gateway_transaction_id: Provider-side identifier (e.g. pi_xxx)
        amount: Amount charged
        currency: Currency code
        error_message: Decline description if the charge failed
        error_code: Machine-readable decline code
        response_time_ms: Time taken by the provider
        metadata: Raw provider data worth keeping with the payment
    """
    success: bool
    gateway_transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = "inr"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "gateway_transaction_id": self.gateway_transaction_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "response_time_ms": self.response_time_ms,
            "metadata": self.metadata,
        }


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted
        refund_id: Provider-side refund identifier
        amount: Amount refunded
        status: Provider refund status (pending, succeeded, failed)
        error_message: Error description if refund failed
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: str = "pending"
    error_message: Optional[str] = None


class BasePaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider (e.g. "mock", "stripe")."""
        pass

    @abstractmethod
    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Capture ``amount``.

        Repeating a call with the same ``idempotency_key`` must not charge
        twice; providers that support it get the key passed through.

        Raises:
            TransientInfraError: provider unreachable
        """
        pass

    @abstractmethod
    async def refund(
        self,
        gateway_transaction_id: str,
        amount: Decimal,
        idempotency_key: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund ``amount`` of a captured charge.

        Like ``charge``, a repeated ``idempotency_key`` must return the
        first refund instead of paying out again.

        Raises:
            TransientInfraError: provider unreachable
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the payment service."""
        pass
