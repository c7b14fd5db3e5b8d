"""
Order Engine Error Taxonomy

Every failure the engine reports falls into one of these categories so
callers can tell bad input from a rejected transition from a failure
that is safe to retry.

    ValidationError        bad input, rejected before any mutation
    NotFoundError          unknown identifier
    InvalidTransitionError state machine precondition not met
    ConflictError          idempotency-key reuse or lost claim
    TransientInfraError    database / gateway / network failure, retry the call
    ExhaustedRetryError    bounded retry budget used up, try again later
"""

from typing import Any, Optional


class OrderEngineError(Exception):
    """Base class for all engine errors."""

    error_code = "ORDER_ENGINE_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.error_code,
            "detail": self.message,
            **({"context": self.details} if self.details else {}),
        }


class ValidationError(OrderEngineError):
    error_code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ValidationError):
    error_code = "NOT_FOUND"
    http_status = 404


class InvalidTransitionError(OrderEngineError):
    """Raised when an order cannot move to the requested status."""

    error_code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(
        self,
        order_id: Optional[int],
        current: str,
        target: str,
        reason: Optional[str] = None,
    ):
        message = f"Order {order_id}: cannot move from '{current}' to '{target}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            {"order_id": order_id, "current_status": current, "requested_status": target},
        )
        self.order_id = order_id
        self.current = current
        self.target = target


class ConflictError(OrderEngineError):
    error_code = "CONFLICT"
    http_status = 409


class TransientInfraError(OrderEngineError):
    error_code = "TRANSIENT_FAILURE"
    http_status = 503


class ExhaustedRetryError(OrderEngineError):
    error_code = "RETRY_EXHAUSTED"
    http_status = 503
