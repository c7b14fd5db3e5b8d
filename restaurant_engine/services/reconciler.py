"""
Payment Reconciler

Tracks payment attempts against orders and settles them.

    record_attempt  pending Payment bound to the caller's transaction id
    charge          run an online charge through the gateway, then confirm
    confirm         gateway outcome -> completed/failed (+ order confirmation)
    refund          partial or full refund of a captured payment

The transaction id is the idempotency key everywhere: repeating a call
with the same arguments returns the stored result, while repeating it
with different arguments is a ConflictError. Gateway calls never run
inside a database transaction.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol, Union

from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_engine.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from restaurant_engine.models import (
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from restaurant_engine.repository import retry_on_stale, unit_of_work
from restaurant_engine.services.notifications.base import EventKind
from restaurant_engine.services.notifications.dispatcher import NotificationDispatcher
from restaurant_engine.services.notifications.messages import event_payload
from restaurant_engine.services.payment.base import BasePaymentGateway
from restaurant_engine.services.pricing import quantize, to_money

if TYPE_CHECKING:
    from restaurant_engine.services.order_machine import OrderStateMachine

logger = logging.getLogger(__name__)

OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)


class RefundScheduler(Protocol):
    def __call__(self, payment_id: int, amount: str) -> None:
        ...


class CeleryRefundScheduler:
    """Queues ``issue_refund`` tasks; never raises into the caller."""

    def __call__(self, payment_id: int, amount: str) -> None:
        from restaurant_engine.tasks import issue_refund

        try:
            issue_refund.delay(payment_id, amount)
        except BrokerError as e:
            logger.error(f"Could not enqueue refund of {amount} for payment #{payment_id}: {e}")


def parse_outcome(gateway_status: Union[str, PaymentStatus]) -> PaymentStatus:
    """Map a gateway callback status onto completed/failed."""
    value = getattr(gateway_status, "value", gateway_status)
    value = str(value).strip().lower()
    if value in ("completed", "succeeded", "success", "paid"):
        return PaymentStatus.COMPLETED
    if value in ("failed", "declined", "canceled", "cancelled"):
        return PaymentStatus.FAILED
    raise ValidationError(f"Unknown gateway status: {gateway_status!r}")


class PaymentReconciler:
    """Payment bookkeeping for orders."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: "OrderStateMachine",
        gateway: BasePaymentGateway,
        notifier: NotificationDispatcher,
        refund_scheduler: RefundScheduler,
        *,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "inr",
    ):
        self._session_factory = session_factory
        self.state_machine = state_machine
        self.gateway = gateway
        self.notifier = notifier
        self.refund_scheduler = refund_scheduler
        self.clock = clock
        self.currency = currency

    # =========================================================================
    # RECORD
    # =========================================================================

    async def record_attempt(
        self,
        order_id: int,
        method: Union[str, PaymentMethod],
        amount: Any,
        transaction_id: str,
    ) -> Payment:
        """
        Create a pending payment for ``order_id`` under ``transaction_id``.

        Raises:
            ValidationError: bad amount, cash method, closed order, or the
                attempt would take the order past its total
            ConflictError: the transaction id already names a different attempt
        """
        method = PaymentMethod(method)
        amount = quantize(to_money(amount))
        if amount <= 0:
            raise ValidationError(f"Payment amount must be positive, got {amount}")
        if not method.is_online:
            raise ValidationError("Cash on delivery is collected by the courier, not recorded upfront")
        if not transaction_id:
            raise ValidationError("A transaction id is required")

        async def once() -> Payment:
            async with unit_of_work(self._session_factory) as repo:
                existing = await repo.get_payment_by_transaction(transaction_id)
                if existing is not None:
                    return self._same_attempt(existing, order_id, method, amount)

                order = await repo.get_order(order_id, for_update=True)
                if order.status.is_terminal:
                    raise ValidationError(
                        f"Order {order.order_number} is {order.status.value}; no new payments",
                        {"order_id": order_id},
                    )

                committed = Decimal("0")
                for payment in await repo.payments_for_order(order_id):
                    if payment.status in OPEN_STATUSES:
                        committed += Decimal(payment.amount)
                    elif payment.status.is_settled:
                        committed += Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)
                if committed + amount > Decimal(order.total_amount):
                    raise ValidationError(
                        f"Payment of {amount} would exceed the order total {order.total_amount}",
                        {"already_committed": str(committed)},
                    )

                payment = await repo.append_payment(
                    Payment(
                        order_id=order_id,
                        payment_method=method,
                        payment_gateway=self.gateway.provider_name,
                        transaction_id=transaction_id,
                        amount=amount,
                        status=PaymentStatus.PENDING,
                    )
                )
                if order.status == OrderStatus.PENDING:
                    order.payment_method = method
                # Bumps the order version so concurrent attempts are checked one at a time.
                order.updated_at = self.clock()
            logger.info(f"Payment attempt {transaction_id} recorded: {amount} via {method.value}")
            return payment

        try:
            return await retry_on_stale(once, what=f"order {order_id}")
        except IntegrityError:
            # Same transaction id inserted concurrently; the winner's row is there now.
            logger.warning(f"Transaction {transaction_id} recorded concurrently, re-reading")
            return await once()

    @staticmethod
    def _same_attempt(
        existing: Payment, order_id: int, method: PaymentMethod, amount: Decimal
    ) -> Payment:
        if (
            existing.order_id == order_id
            and existing.payment_method == method
            and Decimal(existing.amount) == amount
        ):
            return existing
        raise ConflictError(
            f"Transaction id {existing.transaction_id} is already used by another payment",
            {"transaction_id": existing.transaction_id},
        )

    # =========================================================================
    # CHARGE
    # =========================================================================

    async def charge(self, transaction_id: str) -> Payment:
        """
        Charge a recorded attempt through the gateway and confirm it.

        The transaction id doubles as the gateway idempotency key, so a
        retried charge after a timeout cannot capture twice.
        """
        async with unit_of_work(self._session_factory) as repo:
            payment = await self._payment_by_transaction(repo, transaction_id)
            if payment.status not in OPEN_STATUSES:
                return payment
            payment.status = PaymentStatus.PROCESSING
            amount = Decimal(payment.amount)
            order_id = payment.order_id

        result = await self.gateway.charge(
            amount,
            self.currency,
            idempotency_key=transaction_id,
            metadata={"order_id": str(order_id), "transaction_id": transaction_id},
        )
        outcome = PaymentStatus.COMPLETED if result.success else PaymentStatus.FAILED
        return await self.confirm(
            transaction_id, outcome, result.gateway_transaction_id, result.to_dict()
        )

    # =========================================================================
    # CONFIRM
    # =========================================================================

    async def confirm(
        self,
        transaction_id: str,
        gateway_status: Union[str, PaymentStatus],
        gateway_transaction_id: Optional[str] = None,
        gateway_response: Optional[dict] = None,
    ) -> Payment:
        """
        Settle a payment with the gateway's verdict.

        A pending order is confirmed in the same transaction once its
        captured payments cover the order total; until then the order
        payment status stays processing. A payment that completes after
        its order was cancelled is refunded.
        Repeating the same verdict is a no-op.

        Raises:
            NotFoundError: unknown transaction id
            ConflictError: the payment was already settled the other way
        """
        outcome = parse_outcome(gateway_status)

        async def once() -> Payment:
            async with unit_of_work(self._session_factory) as repo:
                payment = await self._payment_by_transaction(repo, transaction_id, for_update=True)
                if payment.status not in OPEN_STATUSES:
                    return self._same_outcome(payment, outcome, gateway_transaction_id)

                order = await repo.get_order(payment.order_id, for_update=True)
                now = self.clock()
                payment.status = outcome
                payment.gateway_transaction_id = gateway_transaction_id or payment.gateway_transaction_id
                if gateway_response is not None:
                    payment.gateway_response = gateway_response

                if outcome == PaymentStatus.COMPLETED:
                    payment.paid_at = now
                    order.payment_method = payment.payment_method
                    paid = await self._paid_total(repo, order.id)
                    fully_paid = paid >= Decimal(order.total_amount)
                    if fully_paid:
                        order.payment_status = PaymentStatus.COMPLETED
                        order.payment_transaction_id = transaction_id
                    else:
                        order.payment_status = PaymentStatus.PROCESSING
                        logger.info(
                            f"Order {order.order_number} paid {paid} of {order.total_amount}; "
                            f"waiting for the balance"
                        )
                    if order.status == OrderStatus.PENDING and fully_paid:
                        await self.state_machine.apply_transition(repo, order, OrderStatus.CONFIRMED)
                    elif order.status == OrderStatus.CANCELLED:
                        amount = str(payment.amount)
                        payment_id = payment.id
                        repo.after_commit(lambda: self.refund_scheduler(payment_id, amount))
                        logger.warning(
                            f"Payment {transaction_id} completed after order "
                            f"{order.order_number} was cancelled; refund queued"
                        )
                else:
                    if order.payment_status != PaymentStatus.COMPLETED:
                        order.payment_status = PaymentStatus.FAILED
                    payload = event_payload(order, transaction_id=transaction_id)
                    repo.after_commit(
                        lambda: self.notifier.notify(order.id, EventKind.PAYMENT_FAILED.value, payload)
                    )
            logger.info(f"Payment {transaction_id} {outcome.value}")
            return payment

        return await retry_on_stale(once, what=f"payment {transaction_id}")

    @staticmethod
    def _same_outcome(
        payment: Payment, outcome: PaymentStatus, gateway_transaction_id: Optional[str]
    ) -> Payment:
        settled_same = (
            payment.status.is_settled if outcome == PaymentStatus.COMPLETED
            else payment.status == PaymentStatus.FAILED
        )
        gateway_mismatch = (
            gateway_transaction_id is not None
            and payment.gateway_transaction_id is not None
            and gateway_transaction_id != payment.gateway_transaction_id
        )
        if settled_same and not gateway_mismatch:
            logger.debug(f"Payment {payment.transaction_id} already {payment.status.value}")
            return payment
        raise ConflictError(
            f"Payment {payment.transaction_id} is already {payment.status.value}; "
            f"refusing to record {outcome.value}",
            {"transaction_id": payment.transaction_id, "current_status": payment.status.value},
        )

    # =========================================================================
    # REFUND
    # =========================================================================

    async def refund(self, payment_id: int, amount: Any) -> Payment:
        """
        Refund ``amount`` of a captured payment.

        The balance is reserved first (and the payment marked refunded or
        partially_refunded), then the gateway is called with no lock held.
        If the gateway refuses or is unreachable the reservation is undone
        and TransientInfraError is raised, so the call can be retried.
        The gateway idempotency key is derived from the payment and the
        refunded total it would reach, so the retry cannot pay out twice.

        Raises:
            ValidationError: non-positive amount or more than the refundable balance
        """
        amount = quantize(to_money(amount))
        if amount <= 0:
            raise ValidationError(f"Refund amount must be positive, got {amount}")

        async def reserve() -> Payment:
            async with unit_of_work(self._session_factory) as repo:
                payment = await repo.get_payment(payment_id, for_update=True)
                refundable = payment.refundable_amount
                if amount > refundable:
                    raise ValidationError(
                        f"Refund of {amount} exceeds the refundable balance {refundable}",
                        {"payment_id": payment_id, "refundable": str(refundable)},
                    )
                order = await repo.get_order(payment.order_id, for_update=True)
                self._apply_refunded(payment, Decimal(payment.refunded_amount or 0) + amount)
                order.payment_status = payment.status
            return payment

        payment = await retry_on_stale(reserve, what=f"payment #{payment_id}")

        refund_id = None
        if payment.payment_method.is_online:
            # Same reservation, same key: a retry after a lost gateway reply
            # is answered with the refund already made.
            key = f"refund-{payment_id}-{quantize(Decimal(payment.refunded_amount))}-{amount}"
            refund_id = await self._refund_at_gateway(payment, amount, key)

        async def record() -> Payment:
            async with unit_of_work(self._session_factory) as repo:
                payment = await repo.get_payment(payment_id, for_update=True)
                order = await repo.get_order(payment.order_id)
                response = dict(payment.gateway_response or {})
                response["refunds"] = [
                    *response.get("refunds", []),
                    {"id": refund_id, "amount": str(amount)},
                ]
                payment.gateway_response = response
                payload = event_payload(order, amount=str(amount), payment_id=payment_id)
                repo.after_commit(
                    lambda: self.notifier.notify(order.id, EventKind.REFUND_ISSUED.value, payload)
                )
            return payment

        payment = await retry_on_stale(record, what=f"payment #{payment_id}")
        logger.info(f"Refunded {amount} of payment #{payment_id} ({payment.status.value})")
        return payment

    async def _refund_at_gateway(
        self, payment: Payment, amount: Decimal, idempotency_key: str
    ) -> Optional[str]:
        if not payment.gateway_transaction_id:
            await self._release_reservation(payment.id, amount)
            raise ValidationError(
                f"Payment #{payment.id} has no gateway transaction to refund",
                {"payment_id": payment.id},
            )

        try:
            result = await self.gateway.refund(
                payment.gateway_transaction_id,
                amount,
                idempotency_key=idempotency_key,
                reason="requested_by_customer",
            )
        except TransientInfraError:
            await self._release_reservation(payment.id, amount)
            raise

        if not result.success:
            await self._release_reservation(payment.id, amount)
            raise TransientInfraError(
                f"Refund was not accepted by the gateway: {result.error_message}",
                {"payment_id": payment.id},
            )
        return result.refund_id

    async def _release_reservation(self, payment_id: int, amount: Decimal) -> None:
        """Give back a reserved refund amount the gateway did not pay out."""

        async def once() -> None:
            async with unit_of_work(self._session_factory) as repo:
                payment = await repo.get_payment(payment_id, for_update=True)
                order = await repo.get_order(payment.order_id, for_update=True)
                self._apply_refunded(payment, Decimal(payment.refunded_amount) - amount)
                order.payment_status = payment.status

        await retry_on_stale(once, what=f"payment #{payment_id}")
        logger.warning(f"Refund of {amount} for payment #{payment_id} rolled back")

    @staticmethod
    def _apply_refunded(payment: Payment, refunded: Decimal) -> None:
        payment.refunded_amount = refunded
        if refunded <= 0:
            payment.status = PaymentStatus.COMPLETED
        elif refunded >= Decimal(payment.amount):
            payment.status = PaymentStatus.REFUNDED
        else:
            payment.status = PaymentStatus.PARTIALLY_REFUNDED

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    async def _paid_total(repo, order_id: int) -> Decimal:
        """Captured money still held for the order (settled minus refunded)."""
        paid = Decimal("0")
        for payment in await repo.payments_for_order(order_id):
            if payment.status.is_settled:
                paid += Decimal(payment.amount) - Decimal(payment.refunded_amount or 0)
        return paid

    @staticmethod
    async def _payment_by_transaction(repo, transaction_id: str, *, for_update: bool = False) -> Payment:
        payment = await repo.get_payment_by_transaction(transaction_id, for_update=for_update)
        if payment is None:
            raise NotFoundError(
                f"Payment {transaction_id} not found", {"transaction_id": transaction_id}
            )
        return payment
