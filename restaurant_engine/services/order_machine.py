"""
Order State Machine

Owns the order lifecycle:

    pending -> confirmed -> preparing -> ready_for_pickup
            -> out_for_delivery -> delivered

with ``cancelled`` reachable from pending, confirmed and preparing only.
``delivered`` and ``cancelled`` are terminal.

Each transition runs in one unit of work: the order row (versioned),
the courier/payment/tip rows it touches and the post-commit hooks
(notification, refund scheduling) either all commit or none do. A
transition that loses a race with another one on the same order is
re-run once against the committed state, where its precondition is
checked again.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_engine.core.exceptions import (
    ConflictError,
    ExhaustedRetryError,
    InvalidTransitionError,
    NotFoundError,
    OrderEngineError,
    ValidationError,
)
from restaurant_engine.models import (
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    TipStatus,
    TipTransaction,
    utcnow,
)
from restaurant_engine.repository import OrderRepository, retry_on_stale, unit_of_work
from restaurant_engine.services.configuration import ConfigurationProvider
from restaurant_engine.services.dispatch import DispatchSelector, estimate_delivery_time
from restaurant_engine.services.distance import Coordinates, estimate_distance
from restaurant_engine.services.notifications.base import EventKind
from restaurant_engine.services.notifications.dispatcher import NotificationDispatcher
from restaurant_engine.services.notifications.messages import event_payload
from restaurant_engine.services.pricing import calculate_pricing, quantize, to_money

logger = logging.getLogger(__name__)


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.OUT_FOR_DELIVERY}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

EVENTS: dict[OrderStatus, EventKind] = {
    OrderStatus.CONFIRMED: EventKind.ORDER_CONFIRMED,
    OrderStatus.PREPARING: EventKind.ORDER_PREPARING,
    OrderStatus.READY_FOR_PICKUP: EventKind.ORDER_READY,
    OrderStatus.OUT_FOR_DELIVERY: EventKind.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED: EventKind.ORDER_DELIVERED,
    OrderStatus.CANCELLED: EventKind.ORDER_CANCELLED,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


class OrderStateMachine:
    """
    Public operations on orders.

    Collaborators are injected at the composition root; ``clock`` and
    ``order_number_factory`` exist so tests can pin time and force
    order-number collisions.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConfigurationProvider,
        dispatcher: DispatchSelector,
        notifier: NotificationDispatcher,
        refund_scheduler: Callable[[int, str], None],
        *,
        clock: Callable[[], datetime] = utcnow,
        order_number_attempts: int = 3,
        order_number_factory: Callable[[datetime], str] = Order.generate_order_number,
    ):
        self._session_factory = session_factory
        self.config = config
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.refund_scheduler = refund_scheduler
        self.clock = clock
        self.order_number_attempts = order_number_attempts
        self.order_number_factory = order_number_factory

    # =========================================================================
    # ORDER PLACEMENT
    # =========================================================================

    async def create_order(self, request) -> Order:
        """
        Price, validate and persist a new pending order.

        ``request`` is a CreateOrderRequest (see schemas). Nothing is
        written unless every check passes.

        Raises:
            ValidationError: closed, out of radius, unknown/unavailable
                items, bad quantities or below the minimum order amount
            ExhaustedRetryError: no free order number within the retry budget
        """
        now = self.clock()
        if not self.config.is_accepting_orders:
            raise ValidationError("The restaurant is not accepting orders right now")
        if not self.config.is_open(now):
            raise ValidationError("The restaurant is closed at this time")
        if not request.items:
            raise ValidationError("An order needs at least one item")

        address = request.delivery_address
        destination = Coordinates(address.latitude, address.longitude)
        distance = estimate_distance(
            self.config.restaurant_location, destination, self.config.delivery_radius_km
        )
        if not distance.within_radius:
            raise ValidationError(
                f"Delivery address is {distance.distance_km} km away; "
                f"we deliver within {self.config.delivery_radius_km:g} km",
                {"distance_km": str(distance.distance_km)},
            )

        attempts = self.order_number_attempts
        for attempt in range(1, attempts + 1):
            order_number = self.order_number_factory(now)
            try:
                order = await self._insert_order(order_number, request, distance.distance_km, now)
            except IntegrityError as exc:
                if "order_number" not in str(exc):
                    raise ConflictError("Order could not be stored", {"cause": str(exc.orig)}) from exc
                order = None

            if order is not None:
                logger.info(
                    f"Order {order.order_number} created: user={order.user_id} "
                    f"total={order.total_amount} method={order.payment_method.value}"
                )
                return order
            logger.warning(f"Order number {order_number} already taken (attempt {attempt}/{attempts})")

        raise ExhaustedRetryError(
            "Could not allocate an order number, please try again",
            {"attempts": attempts},
        )

    async def _insert_order(
        self,
        order_number: str,
        request,
        distance_km: Decimal,
        now: datetime,
    ) -> Optional[Order]:
        async with unit_of_work(self._session_factory) as repo:
            if await repo.order_number_exists(order_number):
                return None

            menu = await repo.get_menu_items(line.menu_item_id for line in request.items)
            for line in request.items:
                item = menu.get(line.menu_item_id)
                if item is None:
                    raise NotFoundError(
                        f"Menu item #{line.menu_item_id} not found",
                        {"menu_item_id": line.menu_item_id},
                    )
                if not item.is_available:
                    raise ValidationError(
                        f"{item.name} is currently unavailable",
                        {"menu_item_id": item.id},
                    )

            pricing = calculate_pricing(
                [(menu[line.menu_item_id].price, line.quantity) for line in request.items],
                self.config.tax_percentage,
                self.config.delivery_fee,
                request.tip_amount or Decimal("0"),
            )
            minimum = self.config.min_order_amount
            if pricing.subtotal < minimum:
                raise ValidationError(
                    f"Minimum order amount is {minimum}, cart subtotal is {pricing.subtotal}",
                    {"min_order_amount": str(minimum), "subtotal": str(pricing.subtotal)},
                )

            address = request.delivery_address
            order = Order(
                order_number=order_number,
                user_id=request.user_id,
                status=OrderStatus.PENDING,
                delivery_address=address.model_dump(mode="json"),
                delivery_latitude=address.latitude,
                delivery_longitude=address.longitude,
                delivery_distance=distance_km,
                special_instructions=request.special_instructions,
                subtotal=pricing.subtotal,
                delivery_fee=pricing.delivery_fee,
                tax_amount=pricing.tax_amount,
                tip_amount=pricing.tip_amount,
                total_amount=pricing.total_amount,
                payment_status=PaymentStatus.PENDING,
                payment_method=PaymentMethod(request.payment_method),
            )
            items = [
                OrderItem(
                    menu_item_id=line.menu_item_id,
                    quantity=line.quantity,
                    unit_price=menu[line.menu_item_id].price,
                    total_price=quantize(to_money(menu[line.menu_item_id].price) * line.quantity),
                    customizations=line.customizations,
                    special_instructions=line.special_instructions,
                )
                for line in request.items
            ]
            await repo.save_order(order, items)
            self._notify(repo, order, EventKind.ORDER_CREATED)
        return order

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: int) -> tuple[Order, list[OrderItem]]:
        async with unit_of_work(self._session_factory) as repo:
            order = await repo.get_order(order_id)
            items = await repo.get_order_items(order_id)
        return order, items

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def update_status(
        self,
        order_id: int,
        target: OrderStatus,
        *,
        delivery_person_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Move an order to ``target``.

        Raises:
            InvalidTransitionError: not an edge of the graph, or the edge's
                precondition does not hold
            ConflictError: lost two races in a row on the same order
        """
        target = OrderStatus(target)

        async def once() -> Order:
            async with unit_of_work(self._session_factory) as repo:
                order = await repo.get_order(order_id, for_update=True)
                await self.apply_transition(
                    repo, order, target, delivery_person_id=delivery_person_id, reason=reason
                )
            return order

        order = await retry_on_stale(once, what=f"order {order_id}")

        if target == OrderStatus.READY_FOR_PICKUP:
            order = await self._dispatch_after_ready(order)
        return order

    async def confirm(self, order_id: int) -> Order:
        return await self.update_status(order_id, OrderStatus.CONFIRMED)

    async def start_preparing(self, order_id: int) -> Order:
        return await self.update_status(order_id, OrderStatus.PREPARING)

    async def mark_ready(self, order_id: int) -> Order:
        """preparing -> ready_for_pickup, then try to dispatch a courier."""
        return await self.update_status(order_id, OrderStatus.READY_FOR_PICKUP)

    async def pick_up(self, order_id: int, delivery_person_id: Optional[int] = None) -> Order:
        return await self.update_status(
            order_id, OrderStatus.OUT_FOR_DELIVERY, delivery_person_id=delivery_person_id
        )

    async def deliver(self, order_id: int, delivery_person_id: int) -> Order:
        return await self.update_status(
            order_id, OrderStatus.DELIVERED, delivery_person_id=delivery_person_id
        )

    async def cancel(self, order_id: int, reason: Optional[str] = None) -> Order:
        return await self.update_status(order_id, OrderStatus.CANCELLED, reason=reason)

    async def dispatch(self, order_id: int):
        """Re-run courier selection for a ready order (scheduler tick or admin retry)."""
        return await self.dispatcher.select(order_id)

    async def assign_delivery_person(self, order_id: int, delivery_person_id: int) -> Order:
        return await self.dispatcher.assign_manually(order_id, delivery_person_id)

    def check_transition(self, order: Order, target: OrderStatus) -> None:
        if not can_transition(order.status, target):
            logger.warning(
                f"Rejected transition for order {order.order_number}: "
                f"{order.status.value} -> {target.value}"
            )
            raise InvalidTransitionError(order.id, order.status.value, target.value)

    async def apply_transition(
        self,
        repo: OrderRepository,
        order: Order,
        target: OrderStatus,
        *,
        delivery_person_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        """
        Validate and apply one edge inside the caller's unit of work.

        The payment reconciler uses this to confirm an order in the same
        transaction that completes its payment.
        """
        self.check_transition(order, target)
        now = self.clock()
        previous = order.status

        if target == OrderStatus.CONFIRMED:
            extra = self._enter_confirmed(order)
        elif target == OrderStatus.READY_FOR_PICKUP:
            extra = self._enter_ready(order, now)
        elif target == OrderStatus.OUT_FOR_DELIVERY:
            extra = await self._enter_out_for_delivery(repo, order, delivery_person_id)
        elif target == OrderStatus.DELIVERED:
            extra = await self._enter_delivered(repo, order, delivery_person_id, now)
        elif target == OrderStatus.CANCELLED:
            extra = await self._enter_cancelled(repo, order, reason)
        else:
            extra = {}

        order.status = target
        order_number = order.order_number
        repo.after_commit(
            lambda: logger.info(f"Order {order_number}: {previous.value} -> {target.value}")
        )
        self._notify(repo, order, EVENTS[target], **extra)

    # =========================================================================
    # EDGE PRECONDITIONS & EFFECTS
    # =========================================================================

    def _reject(self, order: Order, target: OrderStatus, reason: str) -> InvalidTransitionError:
        logger.warning(
            f"Rejected transition for order {order.order_number}: "
            f"{order.status.value} -> {target.value} ({reason})"
        )
        return InvalidTransitionError(order.id, order.status.value, target.value, reason)

    def _enter_confirmed(self, order: Order) -> dict[str, Any]:
        if order.payment_method.is_online:
            allowed = {PaymentStatus.COMPLETED}
        else:
            allowed = {PaymentStatus.PENDING, PaymentStatus.COMPLETED}
        if order.payment_status not in allowed:
            raise self._reject(
                order,
                OrderStatus.CONFIRMED,
                f"payment is {order.payment_status.value} for {order.payment_method.value}",
            )
        return {}

    def _enter_ready(self, order: Order, now: datetime) -> dict[str, Any]:
        order.estimated_delivery_time = estimate_delivery_time(
            now,
            self.config.average_preparation_minutes,
            float(order.delivery_distance or 0),
            self.config.average_delivery_speed_kmph,
        )
        return {"estimated_delivery_time": order.estimated_delivery_time.isoformat()}

    async def _enter_out_for_delivery(
        self,
        repo: OrderRepository,
        order: Order,
        delivery_person_id: Optional[int],
    ) -> dict[str, Any]:
        target = OrderStatus.OUT_FOR_DELIVERY
        assigned = order.delivery_person_id
        if assigned is None:
            raise self._reject(order, target, "no delivery person assigned")
        if delivery_person_id is not None and delivery_person_id != assigned:
            raise self._reject(order, target, f"order is assigned to courier #{assigned}")

        person = await repo.get_delivery_person(assigned, for_update=True)
        if person.status != DeliveryStatus.BUSY and not await repo.claim_delivery_person(assigned):
            raise ConflictError(
                f"Delivery person #{assigned} is {person.status.value}",
                {"delivery_person_id": assigned},
            )

        tip_amount = Decimal(order.tip_amount or 0)
        if tip_amount > 0 and await repo.get_tip(order.id) is None:
            await repo.add_tip(
                TipTransaction(
                    order_id=order.id,
                    delivery_person_id=assigned,
                    tip_amount=tip_amount,
                    status=TipStatus.PENDING,
                )
            )
        return {"delivery_person_id": assigned}

    async def _enter_delivered(
        self,
        repo: OrderRepository,
        order: Order,
        delivery_person_id: Optional[int],
        now: datetime,
    ) -> dict[str, Any]:
        assigned = order.delivery_person_id
        if delivery_person_id is None or delivery_person_id != assigned:
            raise self._reject(
                order, OrderStatus.DELIVERED, "delivery must be confirmed by the assigned courier"
            )

        order.actual_delivery_time = now
        await repo.release_delivery_person(assigned)

        earnings = quantize(Decimal(order.delivery_fee) * self.config.delivery_fee_share)
        tip = await repo.get_tip(order.id, for_update=True)
        if tip is not None and tip.status == TipStatus.COMPLETED:
            earnings += Decimal(tip.tip_amount)
        await repo.credit_delivery_person(assigned, earnings=earnings, deliveries=1)

        if order.payment_method == PaymentMethod.CASH_ON_DELIVERY and order.payment_status != PaymentStatus.COMPLETED:
            transaction_id = f"COD-{order.order_number}"
            await repo.append_payment(
                Payment(
                    order_id=order.id,
                    payment_method=PaymentMethod.CASH_ON_DELIVERY,
                    payment_gateway="cash",
                    transaction_id=transaction_id,
                    amount=order.total_amount,
                    status=PaymentStatus.COMPLETED,
                    paid_at=now,
                )
            )
            order.payment_status = PaymentStatus.COMPLETED
            order.payment_transaction_id = transaction_id

        return {"delivery_person_id": assigned, "courier_earnings": str(earnings)}

    async def _enter_cancelled(
        self,
        repo: OrderRepository,
        order: Order,
        reason: Optional[str],
    ) -> dict[str, Any]:
        order.cancellation_reason = reason
        if order.delivery_person_id is not None:
            await repo.release_delivery_person(order.delivery_person_id)
            order.delivery_person_id = None

        for payment in await repo.payments_for_order(order.id):
            refundable = payment.refundable_amount
            if refundable <= 0:
                continue
            repo.after_commit(
                lambda payment_id=payment.id, amount=str(refundable): self.refund_scheduler(payment_id, amount)
            )
            logger.info(f"Order {order.order_number}: refund of {refundable} queued for payment #{payment.id}")
        return {"reason": reason or "cancelled"}

    # =========================================================================
    # TIPS
    # =========================================================================

    async def settle_tip(
        self,
        order_id: int,
        success: bool,
        upi_transaction_id: Optional[str] = None,
    ) -> TipTransaction:
        """
        Record the outcome of the courier tip transfer.

        A completed tip is credited to the courier right away when the
        order is already delivered; otherwise delivery credits it.
        Settling twice with the same outcome is a no-op.
        """

        async def once() -> TipTransaction:
            async with unit_of_work(self._session_factory) as repo:
                order = await repo.get_order(order_id, for_update=True)
                tip = await repo.get_tip(order_id, for_update=True)
                if tip is None:
                    raise NotFoundError(f"No tip recorded for order {order_id}", {"order_id": order_id})

                outcome = TipStatus.COMPLETED if success else TipStatus.FAILED
                if tip.status == outcome:
                    return tip
                if tip.status != TipStatus.PENDING:
                    raise ConflictError(
                        f"Tip for order {order.order_number} is already {tip.status.value}",
                        {"order_id": order_id},
                    )

                now = self.clock()
                tip.status = outcome
                tip.upi_transaction_id = upi_transaction_id
                tip.processed_at = now
                # Bumps the order version so a concurrent delivery re-reads the tip.
                order.updated_at = now

                if outcome == TipStatus.COMPLETED and order.status == OrderStatus.DELIVERED:
                    await repo.credit_delivery_person(
                        tip.delivery_person_id, earnings=Decimal(tip.tip_amount)
                    )
            logger.info(f"Tip for order {order.order_number} {outcome.value}")
            return tip

        return await retry_on_stale(once, what=f"order {order_id}")

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _dispatch_after_ready(self, order: Order) -> Order:
        """
        Dispatch runs in its own transaction once ready_for_pickup has
        committed. Failing to find (or claim) a courier leaves the order
        ready; the periodic redispatch picks it up later.
        """
        try:
            person = await self.dispatcher.select(order.id)
        except OrderEngineError as e:
            logger.warning(f"Dispatch for order {order.order_number} deferred: {e.message}")
            return order
        if person is None:
            return order
        refreshed, _ = await self.get_order(order.id)
        return refreshed

    def _notify(self, repo: OrderRepository, order: Order, kind: EventKind, **extra: Any) -> None:
        payload = event_payload(order, **extra)
        order_id = order.id
        repo.after_commit(lambda: self.notifier.notify(order_id, kind.value, payload))
