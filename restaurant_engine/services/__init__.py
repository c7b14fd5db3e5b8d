"""
Service wiring.

``build_services`` is the composition root: the API lifespan and the
Celery tasks both call it, tests call it with fakes. Nothing below is
reached through a module-level singleton.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_engine.core.config import Settings
from restaurant_engine.models import utcnow
from restaurant_engine.services.configuration import ConfigurationProvider
from restaurant_engine.services.dispatch import DispatchSelector
from restaurant_engine.services.notifications import CeleryNotificationDispatcher, NotificationDispatcher
from restaurant_engine.services.order_machine import OrderStateMachine
from restaurant_engine.services.payment import BasePaymentGateway, get_payment_gateway
from restaurant_engine.services.reconciler import (
    CeleryRefundScheduler,
    PaymentReconciler,
    RefundScheduler,
)


@dataclass
class EngineServices:
    session_factory: async_sessionmaker[AsyncSession]
    config: ConfigurationProvider
    dispatch: DispatchSelector
    orders: OrderStateMachine
    payments: PaymentReconciler
    gateway: BasePaymentGateway


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
    *,
    gateway: Optional[BasePaymentGateway] = None,
    notifier: Optional[NotificationDispatcher] = None,
    refund_scheduler: Optional[RefundScheduler] = None,
    clock: Callable[[], datetime] = utcnow,
    order_number_factory: Optional[Callable[[datetime], str]] = None,
) -> EngineServices:
    """Wire the engine. ``await services.config.initialize()`` before use."""
    gateway = gateway or get_payment_gateway()
    notifier = notifier or CeleryNotificationDispatcher()
    refund_scheduler = refund_scheduler or CeleryRefundScheduler()

    config = ConfigurationProvider(session_factory, settings)
    dispatch = DispatchSelector(
        session_factory,
        config,
        notifier,
        clock=clock,
        claim_attempts=settings.dispatch_claim_attempts,
        staleness_minutes=settings.location_staleness_minutes,
    )
    machine_options = {}
    if order_number_factory is not None:
        machine_options["order_number_factory"] = order_number_factory
    orders = OrderStateMachine(
        session_factory,
        config,
        dispatch,
        notifier,
        refund_scheduler,
        clock=clock,
        order_number_attempts=settings.order_number_attempts,
        **machine_options,
    )
    payments = PaymentReconciler(
        session_factory,
        orders,
        gateway,
        notifier,
        refund_scheduler,
        clock=clock,
        currency=settings.currency_code.lower(),
    )
    return EngineServices(
        session_factory=session_factory,
        config=config,
        dispatch=dispatch,
        orders=orders,
        payments=payments,
        gateway=gateway,
    )


__all__ = ["EngineServices", "build_services"]
