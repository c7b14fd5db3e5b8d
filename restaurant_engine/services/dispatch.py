"""
Dispatch Selector

Chooses a courier for an order that is ready for pickup and claims them.

Ranking (first key wins):
    1. distance from the courier's tracked location to the restaurant,
       ascending; couriers with no recent fix rank after every tracked one
    2. rating, descending
    3. total_deliveries, ascending (spread the work)
    4. id, for a deterministic order

Claiming is a conditional UPDATE ("busy if still available"), so two
concurrent selections can never end up with the same courier. A lost
claim simply moves on to the next candidate.

Precedence: an admin's manual assignment always wins. Automatic
selection never replaces an existing assignment; a manual assignment
releases whoever was assigned before.
"""

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_engine.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    OrderEngineError,
    ValidationError,
)
from restaurant_engine.models import (
    DeliveryPersonnel,
    DeliveryStatus,
    Order,
    OrderStatus,
    utcnow,
)
from restaurant_engine.repository import OrderRepository, retry_on_stale, unit_of_work
from restaurant_engine.services.configuration import ConfigurationProvider
from restaurant_engine.services.distance import (
    Coordinates,
    haversine_km,
    travel_minutes,
    validate_coordinates,
)
from restaurant_engine.services.notifications.base import EventKind
from restaurant_engine.services.notifications.dispatcher import NotificationDispatcher
from restaurant_engine.services.notifications.messages import event_payload

logger = logging.getLogger(__name__)


def rank_candidates(
    candidates: list[DeliveryPersonnel],
    restaurant: Coordinates,
    now: datetime,
    staleness_minutes: int = 10,
) -> list[DeliveryPersonnel]:
    """Sort couriers best-first."""

    def sort_key(person: DeliveryPersonnel):
        if person.has_recent_location(now, staleness_minutes):
            here = Coordinates(person.current_latitude, person.current_longitude)
            distance = haversine_km(here, restaurant)
        else:
            distance = math.inf
        return (
            distance,
            -Decimal(person.rating or 0),
            person.total_deliveries or 0,
            person.id,
        )

    return sorted(candidates, key=sort_key)


def estimate_delivery_time(
    now: datetime,
    preparation_minutes: int,
    distance_km: float,
    speed_kmph: float,
) -> datetime:
    """now + preparation time + travel time over ``distance_km``."""
    return now + timedelta(minutes=preparation_minutes + travel_minutes(distance_km, speed_kmph))


class DispatchSelector:
    """Courier selection, manual assignment and courier self-service."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: ConfigurationProvider,
        notifier: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = utcnow,
        claim_attempts: int = 5,
        staleness_minutes: int = 10,
    ):
        self._session_factory = session_factory
        self.config = config
        self.notifier = notifier
        self.clock = clock
        self.claim_attempts = claim_attempts
        self.staleness_minutes = staleness_minutes

    # =========================================================================
    # AUTOMATIC SELECTION
    # =========================================================================

    async def select(self, order_id: int) -> Optional[DeliveryPersonnel]:
        """
        Claim the best available courier for a ``ready_for_pickup`` order.

        Returns the assigned courier, or None when nobody could be claimed;
        the order then stays ready_for_pickup and a later call may succeed.
        Candidates are claimed best first, ``claim_attempts`` at a time; when a
        whole batch was taken by concurrent selects the remaining couriers
        are re-read and re-ranked, so a free courier is never skipped.

        Raises:
            InvalidTransitionError: the order is not ready for pickup
        """
        return await retry_on_stale(lambda: self._select_once(order_id), what=f"order {order_id}")

    async def _select_once(self, order_id: int) -> Optional[DeliveryPersonnel]:
        async with unit_of_work(self._session_factory) as repo:
            order = await repo.get_order(order_id, for_update=True)
            self._require_ready(order, "dispatch")

            if order.delivery_person_id is not None:
                logger.debug(f"Order {order.order_number} already assigned, keeping courier")
                return await repo.get_delivery_person(order.delivery_person_id)

            now = self.clock()
            tried: set[int] = set()
            while True:
                ranked = rank_candidates(
                    [p for p in await repo.available_personnel() if p.id not in tried],
                    self.config.restaurant_location,
                    now,
                    self.staleness_minutes,
                )
                if not ranked:
                    break

                for person in ranked[: self.claim_attempts]:
                    tried.add(person.id)
                    if not await repo.claim_delivery_person(person.id):
                        logger.debug(f"Courier #{person.id} was claimed elsewhere, trying next")
                        continue
                    self._assign(repo, order, person, now)
                    logger.info(f"Order {order.order_number} dispatched to courier #{person.id}")
                    return person
                logger.debug(f"Lost {self.claim_attempts} claims for order {order_id}, re-ranking")

        logger.info(f"No courier available for order {order_id}; will retry later")
        return None

    async def redispatch_waiting(self, limit: int = 50) -> tuple[list[int], list[int]]:
        """
        Retry selection for every ready order without a courier.

        Returns (assigned order ids, still waiting order ids).
        """
        async with unit_of_work(self._session_factory) as repo:
            order_ids = await repo.ready_orders_awaiting_dispatch(limit)

        assigned, waiting = [], []
        for order_id in order_ids:
            try:
                person = await self.select(order_id)
            except OrderEngineError as e:
                logger.warning(f"Redispatch of order {order_id} failed: {e.message}")
                waiting.append(order_id)
                continue
            (assigned if person is not None else waiting).append(order_id)

        if order_ids:
            logger.info(f"Redispatch: {len(assigned)} assigned, {len(waiting)} still waiting")
        return assigned, waiting

    # =========================================================================
    # MANUAL ASSIGNMENT
    # =========================================================================

    async def assign_manually(self, order_id: int, personnel_id: int) -> Order:
        """
        Admin override: put ``personnel_id`` on the order.

        Raises:
            InvalidTransitionError: the order is not ready for pickup
            ConflictError: the courier is busy, offline or inactive
        """
        return await retry_on_stale(
            lambda: self._assign_manually_once(order_id, personnel_id),
            what=f"order {order_id}",
        )

    async def _assign_manually_once(self, order_id: int, personnel_id: int) -> Order:
        async with unit_of_work(self._session_factory) as repo:
            order = await repo.get_order(order_id, for_update=True)
            self._require_ready(order, "assign a courier")

            if order.delivery_person_id == personnel_id:
                return order

            person = await repo.get_delivery_person(personnel_id)
            if not await repo.claim_delivery_person(personnel_id):
                raise ConflictError(
                    f"Delivery person #{personnel_id} is not available ({person.status.value})",
                    {"delivery_person_id": personnel_id},
                )

            previous = order.delivery_person_id
            if previous is not None:
                await repo.release_delivery_person(previous)
                logger.info(f"Order {order.order_number}: courier #{previous} replaced by admin")

            self._assign(repo, order, person, self.clock())
            logger.info(f"Order {order.order_number} manually assigned to courier #{personnel_id}")
        return order

    # =========================================================================
    # COURIER SELF-SERVICE
    # =========================================================================

    async def update_location(
        self, personnel_id: int, latitude: float, longitude: float
    ) -> DeliveryPersonnel:
        validate_coordinates(latitude, longitude)
        now = self.clock()

        def apply(person: DeliveryPersonnel) -> None:
            person.current_latitude = float(latitude)
            person.current_longitude = float(longitude)
            person.last_location_update = now

        async with unit_of_work(self._session_factory) as repo:
            person = await repo.update_delivery_personnel(personnel_id, apply)
        logger.debug(f"Courier #{personnel_id} at ({latitude}, {longitude})")
        return person

    async def set_availability(self, personnel_id: int, status: DeliveryStatus) -> DeliveryPersonnel:
        """
        Courier goes available or offline.

        Raises:
            ValidationError: ``busy`` requested, or an inactive courier going available
            ConflictError: the courier is on a delivery
        """
        status = DeliveryStatus(status)
        if status == DeliveryStatus.BUSY:
            raise ValidationError("Couriers become busy only through an assignment")

        async with unit_of_work(self._session_factory) as repo:
            person = await repo.get_delivery_person(personnel_id)
            if status == DeliveryStatus.AVAILABLE and not person.is_active:
                raise ValidationError(
                    f"Delivery person #{personnel_id} is deactivated",
                    {"delivery_person_id": personnel_id},
                )
            if not await repo.change_availability(personnel_id, status):
                raise ConflictError(
                    f"Delivery person #{personnel_id} is on a delivery",
                    {"delivery_person_id": personnel_id},
                )
            person = await repo.get_delivery_person(personnel_id)
        logger.info(f"Courier #{personnel_id} is now {status.value}")
        return person

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _require_ready(order: Order, action: str) -> None:
        if order.status != OrderStatus.READY_FOR_PICKUP:
            logger.warning(f"Cannot {action} order {order.order_number} in status {order.status.value}")
            raise InvalidTransitionError(
                order.id,
                order.status.value,
                OrderStatus.READY_FOR_PICKUP.value,
                f"can only {action} while ready_for_pickup",
            )

    def _assign(
        self,
        repo: OrderRepository,
        order: Order,
        person: DeliveryPersonnel,
        now: datetime,
    ) -> None:
        """Attach the claimed courier and refine the delivery estimate."""
        order.delivery_person_id = person.id
        distance = float(order.delivery_distance or 0)
        if person.has_recent_location(now, self.staleness_minutes):
            here = Coordinates(person.current_latitude, person.current_longitude)
            distance += haversine_km(here, self.config.restaurant_location)
        order.estimated_delivery_time = estimate_delivery_time(
            now,
            self.config.average_preparation_minutes,
            distance,
            self.config.average_delivery_speed_kmph,
        )

        payload = event_payload(order, delivery_person_id=person.id)
        repo.after_commit(
            lambda: self.notifier.notify(order.id, EventKind.DELIVERY_ASSIGNED.value, payload)
        )
