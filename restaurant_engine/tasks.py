"""
Celery Tasks
Background work the order engine hands off so it never blocks (or rolls
back) a committed transition:

    deliver_notification     send one order-event message
    issue_refund             refund a captured payment
    redispatch_ready_orders  periodic retry of courier dispatch

Retries use bounded exponential backoff. Each task runs its coroutine in
a fresh event loop with an unpooled engine.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from restaurant_engine.celery_worker import celery_app
from restaurant_engine.core.config import get_settings
from restaurant_engine.core.exceptions import TransientInfraError, ValidationError
from restaurant_engine.database import create_engine, create_session_factory
from restaurant_engine.services import EngineServices, build_services
from restaurant_engine.services.notifications import get_notification_service, render

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def worker_services() -> AsyncIterator[EngineServices]:
    engine = create_engine(settings.database_url, pooled=False)
    try:
        services = build_services(create_session_factory(engine), settings)
        await services.config.refresh()
        yield services
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    autoretry_for=(TransientInfraError,),
    retry_backoff=True,
    retry_backoff_max=settings.retry_backoff_max_seconds,
    retry_jitter=True,
    max_retries=settings.notification_max_retries,
)
def deliver_notification(self, order_id: int, event_kind: str, payload: dict[str, Any]) -> dict:
    """
    Render and send one order-event notification.

    A message with no phone or email is dropped (logged). A channel
    failure raises TransientInfraError so Celery retries with backoff.
    """
    message = render(order_id, event_kind, payload)
    if not message.to_phone and not message.to_email:
        logger.info(f"No contact details for order {order_id}; {event_kind} not sent")
        return {"success": True, "sent": False, "order_id": order_id, "event_kind": event_kind}

    start_time = time.time()
    result = asyncio.run(get_notification_service().deliver(message))
    elapsed = round(time.time() - start_time, 3)

    if not result.success:
        logger.warning(
            f"Task {self.request.id}: {event_kind} for order {order_id} failed "
            f"(attempt {self.request.retries + 1}): {result.error_message}"
        )
        raise TransientInfraError(
            f"Notification delivery failed: {result.error_message}",
            {"order_id": order_id, "event_kind": event_kind},
        )

    logger.info(f"Task {self.request.id}: {event_kind} for order {order_id} sent in {elapsed}s")
    return {
        "success": True,
        "sent": True,
        "order_id": order_id,
        "event_kind": event_kind,
        "message_id": result.message_id,
        "provider": result.provider,
    }


@celery_app.task(
    bind=True,
    autoretry_for=(TransientInfraError,),
    retry_backoff=True,
    retry_backoff_max=settings.retry_backoff_max_seconds,
    retry_jitter=True,
    max_retries=settings.refund_max_retries,
)
def issue_refund(self, payment_id: int, amount: str) -> dict:
    """Refund ``amount`` of payment ``payment_id`` through the reconciler."""

    async def run() -> dict:
        async with worker_services() as services:
            payment = await services.payments.refund(payment_id, amount)
        return {
            "success": True,
            "payment_id": payment_id,
            "amount": amount,
            "status": payment.status.value,
        }

    try:
        return asyncio.run(run())
    except ValidationError as e:
        # Already refunded (e.g. a replayed task) or nothing left to refund.
        logger.warning(f"Task {self.request.id}: refund for payment #{payment_id} skipped - {e.message}")
        return {"success": False, "payment_id": payment_id, "amount": amount, "error": e.error_code}


@celery_app.task
def redispatch_ready_orders() -> dict:
    """Scheduling tick: retry dispatch for ready orders without a courier."""

    async def run() -> dict:
        async with worker_services() as services:
            assigned, waiting = await services.dispatch.redispatch_waiting()
        return {"assigned": assigned, "waiting": waiting}

    return asyncio.run(run())
