"""
Pydantic Schemas for Request/Response Validation

Request models are the validated inputs the order engine accepts;
response models shape what the API returns.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from restaurant_engine.models import (
    DeliveryStatus,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    TipStatus,
)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class AddressSchema(BaseModel):
    """Structured delivery address with coordinates."""
    street: str = Field(..., min_length=1, max_length=255, examples=["12 MG Road"])
    city: str = Field(..., min_length=1, max_length=100, examples=["Bengaluru"])
    state: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20, examples=["560001"])
    landmark: Optional[str] = Field(None, max_length=255)
    latitude: float = Field(..., examples=[12.9716])
    longitude: float = Field(..., examples=[77.5946])
    contact_phone: Optional[str] = Field(None, max_length=20, examples=["+919876543210"])
    contact_email: Optional[str] = Field(None, examples=["asha@example.com"])

    @field_validator("contact_phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        cleaned = re.sub(r"[^\d]", "", v)
        if len(cleaned) < 10:
            raise ValueError("Phone number must have at least 10 digits")
        return v

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        # Basic email validation
        if not re.match(r"^[\w\.\+-]+@[\w\.-]+\.\w+$", v):
            raise ValueError("Invalid email format")
        return v


class OrderItemRequest(BaseModel):
    """Single line in a cart."""
    menu_item_id: int = Field(..., examples=[1])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    customizations: Optional[dict[str, Any]] = None
    special_instructions: Optional[str] = Field(None, max_length=200)


class CreateOrderRequest(BaseModel):
    """Validated, authenticated cart submitted for placement."""
    user_id: int
    items: List[OrderItemRequest] = Field(..., min_length=1)
    delivery_address: AddressSchema
    payment_method: PaymentMethod = Field(default=PaymentMethod.CASH_ON_DELIVERY)
    tip_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    special_instructions: Optional[str] = Field(None, max_length=500)


class UpdateStatusRequest(BaseModel):
    """Requested move of an order to another status."""
    status: OrderStatus
    delivery_person_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class AssignDeliveryRequest(BaseModel):
    delivery_person_id: int


class RecordPaymentRequest(BaseModel):
    """A payment attempt, keyed by the caller's transaction id."""
    order_id: int
    method: PaymentMethod
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    transaction_id: str = Field(..., min_length=1, max_length=255)


class PaymentWebhookRequest(BaseModel):
    """Gateway callback with the outcome of a charge."""
    transaction_id: str = Field(..., min_length=1, max_length=255)
    status: str = Field(..., examples=["completed", "failed"])
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None


class RefundRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class TipSettlementRequest(BaseModel):
    success: bool
    upi_transaction_id: Optional[str] = Field(None, max_length=255)


class LocationUpdateRequest(BaseModel):
    latitude: float
    longitude: float


class AvailabilityUpdateRequest(BaseModel):
    status: DeliveryStatus


class ConfigUpdateRequest(BaseModel):
    value: str = Field(..., max_length=500)
    is_public: Optional[bool] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    customizations: Optional[dict[str, Any]] = None
    special_instructions: Optional[str] = None


class StatusInfo(BaseModel):
    value: str
    label: str
    icon: str
    color: str
    progress_percentage: int


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    status_info: Optional[StatusInfo] = None
    delivery_address: dict[str, Any]
    delivery_distance: Optional[Decimal] = None
    delivery_person_id: Optional[int] = None
    estimated_delivery_time: Optional[datetime] = None
    estimated_minutes_remaining: Optional[int] = None
    actual_delivery_time: Optional[datetime] = None
    special_instructions: Optional[str] = None
    cancellation_reason: Optional[str] = None
    subtotal: Decimal
    delivery_fee: Decimal
    tax_amount: Decimal
    tip_amount: Decimal
    total_amount: Decimal
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    payment_transaction_id: Optional[str] = None
    is_active: bool
    can_cancel: bool
    items: List[OrderItemResponse] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    payment_method: PaymentMethod
    payment_gateway: Optional[str] = None
    transaction_id: str
    gateway_transaction_id: Optional[str] = None
    amount: Decimal
    refunded_amount: Decimal
    status: PaymentStatus
    paid_at: Optional[datetime] = None


class TipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    delivery_person_id: int
    tip_amount: Decimal
    status: TipStatus
    upi_transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None


class DeliveryPersonResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: DeliveryStatus
    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    last_location_update: Optional[datetime] = None
    rating: Decimal
    total_deliveries: int
    total_earnings: Decimal
    is_active: bool


class DispatchResponse(BaseModel):
    """Outcome of a dispatch attempt; not assigned is a normal result."""
    order_id: int
    assigned: bool
    delivery_person_id: Optional[int] = None
    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    timestamp: datetime
