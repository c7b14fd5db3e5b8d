"""
Shared fixtures: a throwaway SQLite database per test, the engine wired
through ``build_services`` with recording fakes in place of Celery and
the payment gateway, and helpers that seed menu items, couriers and
orders in any lifecycle state.
"""

import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import func, select

from restaurant_engine.core.config import Settings
from restaurant_engine.core.exceptions import TransientInfraError
from restaurant_engine.database import create_engine, create_session_factory, init_db
from restaurant_engine.models import (
    DeliveryPersonnel,
    DeliveryStatus,
    MenuItem,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
)
from restaurant_engine.schemas import AddressSchema, CreateOrderRequest, OrderItemRequest
from restaurant_engine.services import build_services
from restaurant_engine.services.payment.base import BasePaymentGateway, PaymentResult, RefundResult

RESTAURANT = (12.9716, 77.5946)  # MG Road, Bengaluru
NEARBY = (12.9352, 77.6245)      # Koramangala, ~5 km
FAR_AWAY = (13.1986, 77.7066)    # Airport, ~28 km


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Collects (order_id, event_kind, payload) instead of queueing tasks."""

    def __init__(self):
        self.events: list[tuple[int, str, dict]] = []

    def notify(self, order_id: int, event_kind: str, payload: dict) -> None:
        self.events.append((order_id, event_kind, payload))

    def kinds(self, order_id: Optional[int] = None) -> list[str]:
        return [kind for oid, kind, _ in self.events if order_id is None or oid == order_id]


class RecordingRefundScheduler:
    def __init__(self):
        self.calls: list[tuple[int, str]] = []

    def __call__(self, payment_id: int, amount: str) -> None:
        self.calls.append((payment_id, amount))


class FakeGateway(BasePaymentGateway):
    """
    Deterministic gateway.

    ``decline`` makes charges fail; ``refund_mode`` is "ok", "refuse"
    (a negative answer), "down" (provider unreachable) or "lost_reply"
    (the refund is made but the answer never arrives). Refunds are
    replayed by idempotency key.
    """

    def __init__(self):
        self.decline = False
        self.refund_mode = "ok"
        self.charges: list[tuple[Decimal, str]] = []
        self.refunds: list[tuple[str, Decimal]] = []
        self.refund_keys: list[str] = []
        self._refunds_by_key: dict[str, RefundResult] = {}
        self._ids = itertools.count(1)

    @property
    def provider_name(self) -> str:
        return "fake"

    async def charge(self, amount, currency, idempotency_key, metadata=None) -> PaymentResult:
        self.charges.append((amount, idempotency_key))
        if self.decline:
            return PaymentResult(
                success=False,
                amount=amount,
                currency=currency,
                error_message="Your card was declined.",
                error_code="card_declined",
            )
        return PaymentResult(
            success=True,
            gateway_transaction_id=f"pi_fake_{next(self._ids)}",
            amount=amount,
            currency=currency,
        )

    async def refund(
        self, gateway_transaction_id, amount, idempotency_key, reason=None
    ) -> RefundResult:
        self.refund_keys.append(idempotency_key)
        if self.refund_mode == "down":
            raise TransientInfraError("Payment service unreachable")
        if self.refund_mode == "refuse":
            return RefundResult(success=False, status="failed", error_message="charge_disputed")
        if idempotency_key not in self._refunds_by_key:
            self.refunds.append((gateway_transaction_id, amount))
            self._refunds_by_key[idempotency_key] = RefundResult(
                success=True,
                refund_id=f"re_fake_{next(self._ids)}",
                amount=amount,
                status="succeeded",
            )
        if self.refund_mode == "lost_reply":
            raise TransientInfraError("Payment service timed out")
        return self._refunds_by_key[idempotency_key]

    async def health_check(self) -> bool:
        return True


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        restaurant_latitude=RESTAURANT[0],
        restaurant_longitude=RESTAURANT[1],
        restaurant_timezone="UTC",
        operating_hours_start="00:00",
        operating_hours_end="00:00",
        delivery_radius_km=10.0,
        min_order_amount=100.0,
        delivery_fee=50.0,
        tax_percentage=5.0,
        average_preparation_time=30,
        average_delivery_speed_kmph=20.0,
        delivery_fee_share_percentage=80.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def refunds() -> RecordingRefundScheduler:
    return RecordingRefundScheduler()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def services(engine, settings, notifier, refunds, gateway, clock):
    services = build_services(
        create_session_factory(engine),
        settings,
        gateway=gateway,
        notifier=notifier,
        refund_scheduler=refunds,
        clock=clock,
    )
    await services.config.initialize()
    return services


# =============================================================================
# SEEDING
# =============================================================================

class Seeder:
    """Test data through the same session factory the engine uses."""

    def __init__(self, services, clock: FakeClock):
        self.services = services
        self.clock = clock
        self._user_ids = itertools.count(1000)
        self._txn_ids = itertools.count(1)
        self._default_item: Optional[int] = None

    async def menu_item(self, name: str = "Paneer Tikka", price: str = "100.00", available: bool = True) -> int:
        async with self.services.session_factory() as session, session.begin():
            item = MenuItem(
                name=name,
                price=Decimal(price),
                category="Mains",
                is_available=available,
            )
            session.add(item)
            await session.flush()
            return item.id

    async def courier(
        self,
        *,
        status: DeliveryStatus = DeliveryStatus.AVAILABLE,
        location: Optional[tuple[float, float]] = None,
        located_minutes_ago: int = 1,
        rating: str = "4.50",
        deliveries: int = 0,
        active: bool = True,
    ) -> int:
        async with self.services.session_factory() as session, session.begin():
            person = DeliveryPersonnel(
                user_id=next(self._user_ids),
                vehicle_type="bike",
                vehicle_number="KA01AB1234",
                license_number="DL-0420110012345",
                status=status,
                rating=Decimal(rating),
                total_deliveries=deliveries,
                total_earnings=Decimal("0.00"),
                is_active=active,
            )
            if location is not None:
                person.current_latitude, person.current_longitude = location
                person.last_location_update = self.clock.now - timedelta(minutes=located_minutes_ago)
            session.add(person)
            await session.flush()
            return person.id

    async def person(self, personnel_id: int) -> DeliveryPersonnel:
        async with self.services.session_factory() as session:
            return await session.get(DeliveryPersonnel, personnel_id)

    async def order(self, order_id: int) -> Order:
        order, _ = await self.services.orders.get_order(order_id)
        return order

    async def payments(self, order_id: int) -> list[Payment]:
        async with self.services.session_factory() as session:
            result = await session.execute(
                select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
            )
            return list(result.scalars().all())

    async def count_orders(self) -> int:
        async with self.services.session_factory() as session:
            return (await session.execute(select(func.count(Order.id)))).scalar_one()

    async def request(
        self,
        items: Optional[list[tuple[int, int]]] = None,
        *,
        method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        tip: str = "0",
        location: tuple[float, float] = NEARBY,
    ) -> CreateOrderRequest:
        if items is None:
            if self._default_item is None:
                self._default_item = await self.menu_item()
            items = [(self._default_item, 2)]
        return CreateOrderRequest(
            user_id=42,
            items=[OrderItemRequest(menu_item_id=item_id, quantity=qty) for item_id, qty in items],
            delivery_address=AddressSchema(
                street="4th Block, 80 Feet Road",
                city="Bengaluru",
                postal_code="560034",
                latitude=location[0],
                longitude=location[1],
                contact_phone="+919876543210",
                contact_email="asha@example.com",
            ),
            payment_method=method,
            tip_amount=Decimal(tip),
        )

    async def pay(self, order: Order) -> Payment:
        """Record and confirm an online payment for the full total."""
        transaction_id = f"txn-{next(self._txn_ids)}"
        await self.services.payments.record_attempt(
            order.id, order.payment_method, order.total_amount, transaction_id
        )
        return await self.services.payments.confirm(
            transaction_id, "completed", f"pi_seed_{transaction_id}"
        )

    async def order_in(
        self,
        status: OrderStatus,
        *,
        method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY,
        tip: str = "0",
        with_courier: bool = True,
    ) -> Order:
        """
        Drive a fresh order through the engine up to ``status``.

        With ``with_courier`` an available courier is added just before
        the order turns ready, so dispatch assigns one.
        """
        orders = self.services.orders
        order = await orders.create_order(await self.request(method=method, tip=tip))
        if status == OrderStatus.PENDING:
            return order
        if status == OrderStatus.CANCELLED:
            return await orders.cancel(order.id, "changed my mind")

        path = [
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_PICKUP,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        for step in path:
            if step == OrderStatus.CONFIRMED and method.is_online:
                await self.pay(order)
                order = await self.order(order.id)
            elif step == OrderStatus.READY_FOR_PICKUP:
                if with_courier:
                    await self.courier()
                order = await orders.mark_ready(order.id)
            elif step == OrderStatus.DELIVERED:
                order = await orders.deliver(order.id, order.delivery_person_id)
            else:
                order = await orders.update_status(order.id, step)
            if step == status:
                return order
        raise AssertionError(f"unreachable status {status}")


@pytest.fixture
def seed(services, clock) -> Seeder:
    return Seeder(services, clock)
