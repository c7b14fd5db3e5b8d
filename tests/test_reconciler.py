import asyncio
from decimal import Decimal

import pytest

from restaurant_engine.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)
from restaurant_engine.models import (
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ensure_utc,
)
from restaurant_engine.services.payment.mock import MockPaymentGateway
from restaurant_engine.services.reconciler import parse_outcome


async def pending_upi_order(seed):
    return await seed.order_in(OrderStatus.PENDING, method=PaymentMethod.UPI)


async def paid_order(seed):
    order = await seed.order_in(OrderStatus.CONFIRMED, method=PaymentMethod.UPI)
    [payment] = await seed.payments(order.id)
    return order, payment


# =============================================================================
# RECORD & CONFIRM
# =============================================================================

async def test_completed_payment_confirms_order(seed, services, notifier):
    order = await pending_upi_order(seed)

    payment = await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")
    assert payment.status == PaymentStatus.PENDING
    assert payment.payment_gateway == "fake"

    confirmed = await services.payments.confirm("txn-A", "completed", "pi_123")
    assert confirmed.status == PaymentStatus.COMPLETED
    assert confirmed.gateway_transaction_id == "pi_123"
    assert confirmed.paid_at is not None

    order = await seed.order(order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.payment_transaction_id == "txn-A"
    assert notifier.kinds(order.id).count("order_confirmed") == 1


async def test_confirm_twice_is_a_no_op(seed, services, notifier):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    first = await services.payments.confirm("txn-A", "completed", "pi_123")
    second = await services.payments.confirm("txn-A", "completed", "pi_123")

    assert second.id == first.id
    assert second.status == first.status == PaymentStatus.COMPLETED
    assert second.gateway_transaction_id == first.gateway_transaction_id
    assert ensure_utc(second.paid_at) == ensure_utc(first.paid_at)
    assert len(await seed.payments(order.id)) == 1
    assert notifier.kinds(order.id).count("order_confirmed") == 1


async def test_concurrent_confirmations(seed, services, notifier):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    results = await asyncio.gather(
        services.payments.confirm("txn-A", "completed", "pi_123"),
        services.payments.confirm("txn-A", "completed", "pi_123"),
    )

    assert {r.status for r in results} == {PaymentStatus.COMPLETED}
    assert (await seed.order(order.id)).status == OrderStatus.CONFIRMED
    assert notifier.kinds(order.id).count("order_confirmed") == 1


async def test_opposite_outcome_conflicts(seed, services):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")
    await services.payments.confirm("txn-A", "completed", "pi_123")

    with pytest.raises(ConflictError):
        await services.payments.confirm("txn-A", "failed")
    with pytest.raises(ConflictError):
        await services.payments.confirm("txn-A", "completed", "pi_999")

    [payment] = await seed.payments(order.id)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.gateway_transaction_id == "pi_123"


async def test_failed_payment_keeps_order_pending(seed, services, notifier):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    failed = await services.payments.confirm("txn-A", "declined")

    assert failed.status == PaymentStatus.FAILED
    order = await seed.order(order.id)
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.FAILED
    assert notifier.kinds(order.id)[-1] == "payment_failed"

    # A fresh attempt can still settle the order.
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-B")
    await services.payments.confirm("txn-B", "completed", "pi_456")
    assert (await seed.order(order.id)).status == OrderStatus.CONFIRMED


async def test_partial_payment_does_not_confirm_order(seed, services, notifier):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", "1.00", "txn-tiny")

    await services.payments.confirm("txn-tiny", "completed", "pi_tiny")

    order = await seed.order(order.id)
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PROCESSING
    assert order.payment_transaction_id is None
    assert "order_confirmed" not in notifier.kinds(order.id)
    with pytest.raises(InvalidTransitionError):
        await services.orders.confirm(order.id)

    # The balance arriving settles the order.
    rest = order.total_amount - Decimal("1.00")
    await services.payments.record_attempt(order.id, "upi", rest, "txn-rest")
    await services.payments.confirm("txn-rest", "completed", "pi_rest")

    order = await seed.order(order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.payment_transaction_id == "txn-rest"


async def test_unknown_transaction(services):
    with pytest.raises(NotFoundError):
        await services.payments.confirm("txn-missing", "completed")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("completed", PaymentStatus.COMPLETED),
        ("SUCCEEDED", PaymentStatus.COMPLETED),
        (PaymentStatus.COMPLETED, PaymentStatus.COMPLETED),
        ("failed", PaymentStatus.FAILED),
        ("canceled", PaymentStatus.FAILED),
    ],
)
def test_parse_outcome(raw, expected):
    assert parse_outcome(raw) == expected


def test_parse_outcome_rejects_other_states():
    with pytest.raises(ValidationError):
        parse_outcome("refunded")


async def test_same_attempt_recorded_twice(seed, services):
    order = await pending_upi_order(seed)
    first = await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")
    again = await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    assert again.id == first.id
    assert len(await seed.payments(order.id)) == 1


async def test_transaction_id_reused_for_different_attempt(seed, services):
    order = await pending_upi_order(seed)
    other = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", "100.00", "txn-A")

    with pytest.raises(ConflictError):
        await services.payments.record_attempt(order.id, "upi", "120.00", "txn-A")
    with pytest.raises(ConflictError):
        await services.payments.record_attempt(other.id, "upi", "100.00", "txn-A")


@pytest.mark.parametrize("amount", ["0", "-5.00"])
async def test_non_positive_amount(seed, services, amount):
    order = await pending_upi_order(seed)
    with pytest.raises(ValidationError):
        await services.payments.record_attempt(order.id, "upi", amount, "txn-A")


async def test_cash_is_not_recorded_upfront(seed, services):
    order = await seed.order_in(OrderStatus.PENDING)
    with pytest.raises(ValidationError):
        await services.payments.record_attempt(order.id, "cod", order.total_amount, "txn-A")


async def test_attempts_cannot_exceed_order_total(seed, services):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    with pytest.raises(ValidationError, match="exceed"):
        await services.payments.record_attempt(order.id, "upi", "1.00", "txn-B")


async def test_no_payments_on_closed_orders(seed, services):
    order = await seed.order_in(OrderStatus.CANCELLED, method=PaymentMethod.UPI)
    with pytest.raises(ValidationError):
        await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")


async def test_payment_completing_after_cancellation_is_refunded(seed, services, refunds):
    order = await pending_upi_order(seed)
    payment = await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")
    await services.orders.cancel(order.id, "customer left")
    assert refunds.calls == []

    await services.payments.confirm("txn-A", "completed", "pi_123")

    assert (await seed.order(order.id)).status == OrderStatus.CANCELLED
    assert [(pid, Decimal(amount)) for pid, amount in refunds.calls] == [
        (payment.id, order.total_amount)
    ]


# =============================================================================
# CHARGE
# =============================================================================

async def test_charge_through_gateway(seed, services, gateway):
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    payment = await services.payments.charge("txn-A")

    assert payment.status == PaymentStatus.COMPLETED
    assert payment.gateway_transaction_id == "pi_fake_1"
    assert payment.gateway_response["success"] is True
    assert gateway.charges == [(order.total_amount, "txn-A")]
    assert (await seed.order(order.id)).status == OrderStatus.CONFIRMED

    # Settled payments are not charged again.
    again = await services.payments.charge("txn-A")
    assert again.status == PaymentStatus.COMPLETED
    assert len(gateway.charges) == 1


async def test_declined_charge(seed, services, gateway):
    gateway.decline = True
    order = await pending_upi_order(seed)
    await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")

    payment = await services.payments.charge("txn-A")

    assert payment.status == PaymentStatus.FAILED
    assert payment.gateway_response["error_code"] == "card_declined"
    assert (await seed.order(order.id)).status == OrderStatus.PENDING


# =============================================================================
# REFUNDS
# =============================================================================

async def test_refund_above_balance_leaves_payment_unchanged(seed, services, gateway):
    order, payment = await paid_order(seed)

    with pytest.raises(ValidationError):
        await services.payments.refund(payment.id, order.total_amount + Decimal("0.01"))

    [after] = await seed.payments(order.id)
    assert after.status == PaymentStatus.COMPLETED
    assert after.refunded_amount == Decimal("0.00")
    assert after.version == payment.version
    assert gateway.refunds == []


async def test_partial_then_full_refund(seed, services, gateway, notifier):
    order, payment = await paid_order(seed)

    partial = await services.payments.refund(payment.id, "100.00")
    assert partial.status == PaymentStatus.PARTIALLY_REFUNDED
    assert partial.refunded_amount == Decimal("100.00")
    assert (await seed.order(order.id)).payment_status == PaymentStatus.PARTIALLY_REFUNDED

    rest = order.total_amount - Decimal("100.00")
    full = await services.payments.refund(payment.id, rest)
    assert full.status == PaymentStatus.REFUNDED
    assert full.refunded_amount == order.total_amount
    assert (await seed.order(order.id)).payment_status == PaymentStatus.REFUNDED

    assert gateway.refunds == [
        (payment.gateway_transaction_id, Decimal("100.00")),
        (payment.gateway_transaction_id, rest),
    ]
    assert len(full.gateway_response["refunds"]) == 2
    assert notifier.kinds(order.id).count("refund_issued") == 2

    with pytest.raises(ValidationError):
        await services.payments.refund(payment.id, "0.01")


@pytest.mark.parametrize("mode", ["down", "refuse"])
async def test_gateway_failure_restores_balance(seed, services, gateway, mode):
    order, payment = await paid_order(seed)
    gateway.refund_mode = mode

    with pytest.raises(TransientInfraError):
        await services.payments.refund(payment.id, "50.00")

    [after] = await seed.payments(order.id)
    assert after.status == PaymentStatus.COMPLETED
    assert after.refunded_amount == Decimal("0.00")
    assert (await seed.order(order.id)).payment_status == PaymentStatus.COMPLETED

    # Retrying once the gateway recovers goes through.
    gateway.refund_mode = "ok"
    retried = await services.payments.refund(payment.id, "50.00")
    assert retried.status == PaymentStatus.PARTIALLY_REFUNDED


async def test_refund_retried_after_lost_reply_pays_out_once(seed, services, gateway):
    order, payment = await paid_order(seed)
    gateway.refund_mode = "lost_reply"

    with pytest.raises(TransientInfraError):
        await services.payments.refund(payment.id, "50.00")
    assert (await seed.payments(order.id))[0].refunded_amount == Decimal("0.00")

    gateway.refund_mode = "ok"
    retried = await services.payments.refund(payment.id, "50.00")

    assert retried.status == PaymentStatus.PARTIALLY_REFUNDED
    assert retried.refunded_amount == Decimal("50.00")
    assert gateway.refunds == [(payment.gateway_transaction_id, Decimal("50.00"))]
    assert gateway.refund_keys[0] == gateway.refund_keys[1]


async def test_successive_refunds_use_distinct_keys(seed, services, gateway):
    _, payment = await paid_order(seed)

    await services.payments.refund(payment.id, "50.00")
    await services.payments.refund(payment.id, "50.00")

    assert len(gateway.refunds) == 2
    assert len(set(gateway.refund_keys)) == 2


async def test_mock_gateway_replays_refund_key():
    gateway = MockPaymentGateway(failure_rate=0.0, min_latency=0, max_latency=0)

    first = await gateway.refund("pi_mock_1", Decimal("10.00"), idempotency_key="refund-1")
    again = await gateway.refund("pi_mock_1", Decimal("10.00"), idempotency_key="refund-1")
    other = await gateway.refund("pi_mock_1", Decimal("10.00"), idempotency_key="refund-2")

    assert again.refund_id == first.refund_id
    assert other.refund_id != first.refund_id


async def test_refund_needs_gateway_reference(seed, services):
    order = await pending_upi_order(seed)
    payment = await services.payments.record_attempt(order.id, "upi", order.total_amount, "txn-A")
    await services.payments.confirm("txn-A", "completed")

    with pytest.raises(ValidationError):
        await services.payments.refund(payment.id, "10.00")

    [after] = await seed.payments(order.id)
    assert after.status == PaymentStatus.COMPLETED
    assert after.refunded_amount == Decimal("0.00")


async def test_cash_refund_skips_gateway(seed, services, gateway):
    order = await seed.order_in(OrderStatus.DELIVERED)
    [cash] = await seed.payments(order.id)

    refunded = await services.payments.refund(cash.id, "60.00")

    assert refunded.status == PaymentStatus.PARTIALLY_REFUNDED
    assert gateway.refunds == []


async def test_refund_amount_must_be_positive(seed, services):
    _, payment = await paid_order(seed)
    with pytest.raises(ValidationError):
        await services.payments.refund(payment.id, "0")


async def test_refund_unknown_payment(services):
    with pytest.raises(NotFoundError):
        await services.payments.refund(999, "10.00")
