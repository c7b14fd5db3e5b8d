"""
SQLAlchemy Database Models

Tables for the order lifecycle and delivery-dispatch engine:
- Orders and their item lines (price snapshots)
- Menu catalog
- Payments and courier tips
- Delivery personnel with location tracking
- Key/value system configuration
"""

import enum
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)

from restaurant_engine.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands timestamps back naive; treat those as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], **kwargs) -> Column:
    return Column(
        Enum(enum_cls, values_callable=lambda members: [m.value for m in members]),
        **kwargs,
    )


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class PaymentMethod(str, enum.Enum):
    CASH_ON_DELIVERY = "cod"
    UPI = "upi"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    NET_BANKING = "net_banking"
    DIGITAL_WALLET = "digital_wallet"

    @property
    def is_online(self) -> bool:
        return self is not PaymentMethod.CASH_ON_DELIVERY


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"

    @property
    def is_settled(self) -> bool:
        """Money was captured at some point (possibly refunded since)."""
        return self in (
            PaymentStatus.COMPLETED,
            PaymentStatus.REFUNDED,
            PaymentStatus.PARTIALLY_REFUNDED,
        )

    @property
    def can_refund(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)


class DeliveryStatus(str, enum.Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class TipStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# CATALOG
# =============================================================================

class MenuItem(Base):
    """Catalog entry. Orders keep a price snapshot, never a live reference."""
    __tablename__ = "menu_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(100), nullable=False, index=True)
    image_url = Column(String(500), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False, index=True)
    is_vegetarian = Column(Boolean, default=False, nullable=False)
    is_vegan = Column(Boolean, default=False, nullable=False)
    ingredients = Column(JSON, nullable=True)
    allergens = Column(JSON, nullable=True)
    preparation_time = Column(Integer, default=0, nullable=False)  # minutes
    sort_order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<MenuItem #{self.id} - {self.name} - {self.price}>"


# =============================================================================
# ORDERS
# =============================================================================

class Order(Base):
    """
    Order aggregate root.

    ``version`` is bumped on every UPDATE and checked in the WHERE clause,
    so two transactions that read the same row cannot both commit a change.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), nullable=False, unique=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    status = _enum_column(OrderStatus, default=OrderStatus.PENDING, nullable=False, index=True)

    # =========================================================================
    # DELIVERY
    # =========================================================================
    delivery_address = Column(JSON, nullable=False)
    delivery_latitude = Column(Float, nullable=True)
    delivery_longitude = Column(Float, nullable=True)
    delivery_distance = Column(Numeric(8, 2), nullable=True)  # km
    delivery_person_id = Column(
        Integer,
        ForeignKey("delivery_personnel.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    estimated_delivery_time = Column(DateTime(timezone=True), nullable=True)
    actual_delivery_time = Column(DateTime(timezone=True), nullable=True)
    special_instructions = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # =========================================================================
    # PRICING (written only by the pricing calculator)
    # =========================================================================
    subtotal = Column(Numeric(10, 2), nullable=False)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    tax_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    tip_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_amount = Column(Numeric(10, 2), nullable=False)

    # =========================================================================
    # PAYMENT
    # =========================================================================
    payment_status = _enum_column(
        PaymentStatus, default=PaymentStatus.PENDING, nullable=False, index=True
    )
    payment_method = _enum_column(PaymentMethod, nullable=False)
    payment_transaction_id = Column(String(255), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @staticmethod
    def generate_order_number(now: Optional[datetime] = None) -> str:
        """Date-prefixed order number, e.g. ``ORD-20240115-3F9A1C``."""
        now = now or utcnow()
        return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    @property
    def can_cancel(self) -> bool:
        return self.status in (
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
        )

    def estimated_time_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        """Minutes until the estimated delivery time (0 once it has passed)."""
        if self.estimated_delivery_time is None:
            return None
        now = now or utcnow()
        remaining = ensure_utc(self.estimated_delivery_time) - now
        return max(int(remaining.total_seconds() // 60), 0)

    def __repr__(self):
        return f"<Order {self.order_number} - {self.status.value}>"


class OrderItem(Base):
    """One line per distinct menu item; unit_price is frozen at order time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    menu_item_id = Column(
        Integer, ForeignKey("menu_items.id"), nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    customizations = Column(JSON, nullable=True)
    special_instructions = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<OrderItem order={self.order_id} item={self.menu_item_id} x{self.quantity}>"


# =============================================================================
# PAYMENTS & TIPS
# =============================================================================

class Payment(Base):
    """
    A payment attempt against an order.

    ``transaction_id`` is the caller's idempotency key. Refunds reduce the
    refundable balance (``amount - refunded_amount``) in place. Versioned like
    Order, so two concurrent confirmations or refunds cannot both commit.
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_method = _enum_column(PaymentMethod, nullable=False)
    payment_gateway = Column(String(50), nullable=True)
    transaction_id = Column(String(255), nullable=False, unique=True, index=True)
    gateway_transaction_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    status = _enum_column(PaymentStatus, default=PaymentStatus.PENDING, nullable=False, index=True)
    gateway_response = Column(JSON, nullable=True)
    receipt_url = Column(String(500), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def refundable_amount(self) -> Decimal:
        if not self.status.can_refund:
            return Decimal("0.00")
        return Decimal(self.amount) - Decimal(self.refunded_amount or 0)

    def __repr__(self):
        return f"<Payment {self.transaction_id} - {self.amount} - {self.status.value}>"


class TipTransaction(Base):
    """Courier tip, settled independently of the order payment."""
    __tablename__ = "tip_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(
        Integer,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    delivery_person_id = Column(
        Integer,
        ForeignKey("delivery_personnel.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tip_amount = Column(Numeric(10, 2), nullable=False)
    upi_transaction_id = Column(String(255), nullable=True)
    status = _enum_column(TipStatus, default=TipStatus.PENDING, nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# =============================================================================
# DELIVERY PERSONNEL
# =============================================================================

class DeliveryPersonnel(Base):
    __tablename__ = "delivery_personnel"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, unique=True)
    vehicle_type = Column(String(50), nullable=False)
    vehicle_number = Column(String(20), nullable=False)
    license_number = Column(String(50), nullable=False)
    upi_address = Column(String(255), nullable=True)
    status = _enum_column(
        DeliveryStatus, default=DeliveryStatus.OFFLINE, nullable=False, index=True
    )
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    last_location_update = Column(DateTime(timezone=True), nullable=True)
    rating = Column(Numeric(3, 2), nullable=False, default=Decimal("0.00"))
    total_deliveries = Column(Integer, nullable=False, default=0)
    total_earnings = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def can_assign_order(self) -> bool:
        return self.is_active and self.status == DeliveryStatus.AVAILABLE

    def has_recent_location(self, now: datetime, max_age_minutes: int = 10) -> bool:
        if self.current_latitude is None or self.current_longitude is None:
            return False
        if self.last_location_update is None:
            return False
        age = now - ensure_utc(self.last_location_update)
        return age.total_seconds() <= max_age_minutes * 60

    def __repr__(self):
        return f"<DeliveryPersonnel #{self.id} - {self.status.value}>"


# =============================================================================
# CONFIGURATION
# =============================================================================

class SystemConfiguration(Base):
    """Operational key/value parameter, admin-editable."""
    __tablename__ = "system_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    config_key = Column(String(100), nullable=False, unique=True, index=True)
    config_value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SystemConfiguration {self.config_key}={self.config_value}>"
