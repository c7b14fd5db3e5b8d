"""
Repository & Unit of Work

Transactional data access for the engine. Every operation that mutates an
order (or the payments, tips and courier rows hanging off it) runs inside
``unit_of_work``: one session, one database transaction, committed or
rolled back as a whole.

Concurrency primitives:
    - ``get_order(..., for_update=True)`` takes a row lock where the
      backend has them (PostgreSQL ``SELECT ... FOR UPDATE``).
    - ``Order.version`` makes every order UPDATE a compare-and-swap; a
      lost race surfaces as ``StaleDataError`` at flush time.
    - ``claim_delivery_person`` is a single conditional UPDATE
      ("claim if still available"), never read-then-write.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from restaurant_engine.core.exceptions import ConflictError, NotFoundError, TransientInfraError
from restaurant_engine.models import (
    DeliveryPersonnel,
    DeliveryStatus,
    MenuItem,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    SystemConfiguration,
    TipTransaction,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderRepository:
    """Data access bound to one session/transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._after_commit: list[Callable[[], None]] = []

    # =========================================================================
    # POST-COMMIT HOOKS
    # =========================================================================

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` only if the surrounding transaction commits."""
        self._after_commit.append(callback)

    def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                callback()
            except Exception:
                # The transaction is already committed; a hook failure
                # must not turn it into a reported failure.
                logger.exception("Post-commit hook failed")
        self._after_commit.clear()

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def find_order(self, order_id: int, *, for_update: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_order(self, order_id: int, *, for_update: bool = False) -> Order:
        order = await self.find_order(order_id, for_update=for_update)
        if order is None:
            raise NotFoundError(f"Order #{order_id} not found", {"order_id": order_id})
        return order

    async def get_order_items(self, order_id: int) -> list[OrderItem]:
        result = await self.session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
        )
        return list(result.scalars().all())

    async def order_number_exists(self, order_number: str) -> bool:
        result = await self.session.execute(
            select(Order.id).where(Order.order_number == order_number)
        )
        return result.first() is not None

    async def save_order(self, order: Order, items: Iterable[OrderItem]) -> Order:
        """Insert an order with its item lines (flushes to assign ids)."""
        self.session.add(order)
        await self.session.flush()
        for item in items:
            item.order_id = order.id
            self.session.add(item)
        await self.session.flush()
        return order

    async def ready_orders_awaiting_dispatch(self, limit: int = 50) -> list[int]:
        result = await self.session.execute(
            select(Order.id)
            .where(
                Order.status == OrderStatus.READY_FOR_PICKUP,
                Order.delivery_person_id.is_(None),
            )
            .order_by(Order.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # =========================================================================
    # MENU
    # =========================================================================

    async def get_menu_items(self, menu_item_ids: Iterable[int]) -> dict[int, MenuItem]:
        ids = set(menu_item_ids)
        if not ids:
            return {}
        result = await self.session.execute(select(MenuItem).where(MenuItem.id.in_(ids)))
        return {item.id: item for item in result.scalars().all()}

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def append_payment(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        stmt = (
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        payment = (await self.session.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise NotFoundError(f"Payment #{payment_id} not found", {"payment_id": payment_id})
        return payment

    async def get_payment_by_transaction(
        self, transaction_id: str, *, for_update: bool = False
    ) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def payments_for_order(self, order_id: int) -> list[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.order_id == order_id).order_by(Payment.id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # TIPS
    # =========================================================================

    async def get_tip(self, order_id: int, *, for_update: bool = False) -> Optional[TipTransaction]:
        stmt = (
            select(TipTransaction)
            .where(TipTransaction.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def add_tip(self, tip: TipTransaction) -> TipTransaction:
        self.session.add(tip)
        await self.session.flush()
        return tip

    # =========================================================================
    # DELIVERY PERSONNEL
    # =========================================================================

    async def get_delivery_person(
        self, personnel_id: int, *, for_update: bool = False
    ) -> DeliveryPersonnel:
        stmt = (
            select(DeliveryPersonnel)
            .where(DeliveryPersonnel.id == personnel_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        person = (await self.session.execute(stmt)).scalar_one_or_none()
        if person is None:
            raise NotFoundError(
                f"Delivery person #{personnel_id} not found", {"delivery_person_id": personnel_id}
            )
        return person

    async def update_delivery_personnel(
        self,
        personnel_id: int,
        mutator: Callable[[DeliveryPersonnel], None],
    ) -> DeliveryPersonnel:
        """Lock the courier row, apply ``mutator`` and flush."""
        person = await self.get_delivery_person(personnel_id, for_update=True)
        mutator(person)
        await self.session.flush()
        return person

    async def available_personnel(self) -> list[DeliveryPersonnel]:
        result = await self.session.execute(
            select(DeliveryPersonnel)
            .where(
                DeliveryPersonnel.status == DeliveryStatus.AVAILABLE,
                DeliveryPersonnel.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def claim_delivery_person(self, personnel_id: int) -> bool:
        """
        Atomically flip a courier from available to busy.

        Returns False when someone else got there first (or the courier
        went offline / was deactivated in the meantime).
        """
        result = await self.session.execute(
            update(DeliveryPersonnel)
            .where(
                DeliveryPersonnel.id == personnel_id,
                DeliveryPersonnel.status == DeliveryStatus.AVAILABLE,
                DeliveryPersonnel.is_active.is_(True),
            )
            .values(status=DeliveryStatus.BUSY)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def release_delivery_person(self, personnel_id: int) -> bool:
        """Flip a busy courier back to available."""
        result = await self.session.execute(
            update(DeliveryPersonnel)
            .where(
                DeliveryPersonnel.id == personnel_id,
                DeliveryPersonnel.status == DeliveryStatus.BUSY,
            )
            .values(status=DeliveryStatus.AVAILABLE)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def change_availability(self, personnel_id: int, status: DeliveryStatus) -> bool:
        """Set available/offline unless the courier is currently busy."""
        result = await self.session.execute(
            update(DeliveryPersonnel)
            .where(
                DeliveryPersonnel.id == personnel_id,
                DeliveryPersonnel.status != DeliveryStatus.BUSY,
            )
            .values(status=status)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def credit_delivery_person(
        self, personnel_id: int, *, earnings: Decimal, deliveries: int = 0
    ) -> None:
        """Increment counters in SQL so concurrent credits never overwrite each other."""
        await self.session.execute(
            update(DeliveryPersonnel)
            .where(DeliveryPersonnel.id == personnel_id)
            .values(
                total_deliveries=DeliveryPersonnel.total_deliveries + deliveries,
                total_earnings=DeliveryPersonnel.total_earnings + earnings,
            )
            .execution_options(synchronize_session=False)
        )

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    async def list_configuration(self) -> list[SystemConfiguration]:
        result = await self.session.execute(
            select(SystemConfiguration).order_by(SystemConfiguration.config_key)
        )
        return list(result.scalars().all())

    async def upsert_configuration(
        self,
        key: str,
        value: str,
        *,
        description: Optional[str] = None,
        is_public: Optional[bool] = None,
    ) -> SystemConfiguration:
        result = await self.session.execute(
            select(SystemConfiguration).where(SystemConfiguration.config_key == key)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = SystemConfiguration(
                config_key=key,
                config_value=value,
                description=description,
                is_public=bool(is_public),
            )
            self.session.add(row)
        else:
            row.config_value = value
            if description is not None:
                row.description = description
            if is_public is not None:
                row.is_public = is_public
        await self.session.flush()
        return row


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[OrderRepository]:
    """
    Open a session and transaction, yield a repository.

    Driver/connection failures are reported as ``TransientInfraError``;
    ``IntegrityError`` is left for the caller (order-number collisions are
    retried there). Post-commit hooks run only after a successful commit.
    """
    async with session_factory() as session:
        repo = OrderRepository(session)
        try:
            async with session.begin():
                yield repo
        except IntegrityError:
            raise
        except DBAPIError as exc:
            logger.exception("Database failure inside unit of work")
            raise TransientInfraError(
                "Database temporarily unavailable",
                {"cause": type(exc.orig).__name__ if exc.orig is not None else type(exc).__name__},
            ) from exc
    repo._run_after_commit()


async def retry_on_stale(operation: Callable[[], Awaitable[T]], *, what: str) -> T:
    """
    Run ``operation`` (which opens its own unit of work) and retry it once
    if it lost an optimistic-lock race.

    The retry re-reads committed state, so a precondition that no longer
    holds fails there with the operation's own error. A second loss is a
    ``ConflictError``.
    """
    try:
        return await operation()
    except StaleDataError:
        logger.warning(f"Concurrent update on {what}; retrying with a fresh read")

    try:
        return await operation()
    except StaleDataError as exc:
        raise ConflictError(
            f"{what} was modified concurrently, please retry", {"resource": what}
        ) from exc
