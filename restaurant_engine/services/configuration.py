"""
Configuration Provider

Serves the operational parameters stored in ``system_configurations``
(tax, fees, radius, operating hours...) from an immutable in-process
snapshot. Reads never touch the database or take a lock; an admin write
persists the new value and swaps in a freshly loaded snapshot.

Lifecycle:
    provider = ConfigurationProvider(session_factory, settings)
    await provider.initialize()      # at startup: seed defaults, load
    provider.tax_percentage          # lock-free reads
    await provider.set("tax_percentage", "7.5")   # admin write + refresh
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from restaurant_engine.core.config import Settings
from restaurant_engine.core.exceptions import NotFoundError, ValidationError
from restaurant_engine.repository import unit_of_work
from restaurant_engine.services.distance import Coordinates

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}

# key -> (description, is_public)
CONFIG_KEYS: dict[str, tuple[str, bool]] = {
    "restaurant_name": ("Name of the restaurant", True),
    "restaurant_address": ("Restaurant address", True),
    "restaurant_phone": ("Restaurant contact phone", True),
    "restaurant_latitude": ("Restaurant latitude for delivery calculations", False),
    "restaurant_longitude": ("Restaurant longitude for delivery calculations", False),
    "restaurant_timezone": ("Timezone used for operating hours", True),
    "delivery_radius_km": ("Maximum delivery radius in kilometers", True),
    "min_order_amount": ("Minimum order amount for delivery", True),
    "delivery_fee": ("Standard delivery fee", True),
    "is_accepting_orders": ("Whether the restaurant is accepting new orders", True),
    "currency_code": ("Currency code", True),
    "currency_symbol": ("Currency symbol", True),
    "tax_percentage": ("Tax percentage applied to orders", True),
    "operating_hours_start": ("Restaurant opening time", True),
    "operating_hours_end": ("Restaurant closing time", True),
    "average_preparation_time": ("Average order preparation time in minutes", True),
    "max_delivery_time": ("Maximum delivery time in minutes", True),
    "average_delivery_speed_kmph": ("Average courier speed for travel estimates", False),
    "delivery_fee_share_percentage": ("Share of the delivery fee paid to the courier", False),
}


def parse_bool(value: str) -> bool:
    return value.strip().lower() in TRUTHY


def parse_clock(value: str) -> time:
    try:
        return time.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(f"Invalid time of day: {value!r} (expected HH:MM)")


@dataclass(frozen=True)
class ConfigSnapshot:
    """Parsed, read-only view of every configuration row."""

    values: Mapping[str, str]
    public_keys: frozenset = field(default_factory=frozenset)

    def get(self, key: str) -> str:
        try:
            return self.values[key]
        except KeyError:
            raise NotFoundError(f"Unknown configuration key: {key}", {"key": key})

    def decimal(self, key: str) -> Decimal:
        raw = self.get(key)
        try:
            return Decimal(raw.strip())
        except ArithmeticError:
            raise ValidationError(f"Configuration {key}={raw!r} is not a number")

    def number(self, key: str) -> float:
        return float(self.decimal(key))

    def integer(self, key: str) -> int:
        return int(self.decimal(key))

    def boolean(self, key: str) -> bool:
        return parse_bool(self.get(key))

    def clock(self, key: str) -> time:
        return parse_clock(self.get(key))


def validate_value(key: str, value: str) -> None:
    """Reject a value that would make the snapshot unusable."""
    numeric = {
        "restaurant_latitude", "restaurant_longitude", "delivery_radius_km",
        "min_order_amount", "delivery_fee", "tax_percentage",
        "average_preparation_time", "max_delivery_time",
        "average_delivery_speed_kmph", "delivery_fee_share_percentage",
    }
    if key in numeric:
        try:
            number = Decimal(value.strip())
        except ArithmeticError:
            raise ValidationError(f"{key} must be numeric, got {value!r}")
        if not number.is_finite() or number < 0 and key not in {"restaurant_latitude", "restaurant_longitude"}:
            raise ValidationError(f"{key} must be a non-negative number, got {value!r}")
    elif key in {"operating_hours_start", "operating_hours_end"}:
        parse_clock(value)
    elif key == "restaurant_timezone":
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown timezone: {value!r}")


class ConfigurationProvider:
    """Process-wide cached configuration with explicit refresh."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._snapshot: Optional[ConfigSnapshot] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """Seed missing keys from settings and load the first snapshot."""
        seed = self._settings.configuration_seed()
        async with unit_of_work(self._session_factory) as repo:
            existing = {row.config_key for row in await repo.list_configuration()}
            for key, value in seed.items():
                if key in existing:
                    continue
                description, is_public = CONFIG_KEYS.get(key, (None, False))
                await repo.upsert_configuration(
                    key, value, description=description, is_public=is_public
                )
        await self.refresh()
        logger.info(f"Configuration loaded ({len(self.snapshot.values)} keys)")

    async def refresh(self) -> ConfigSnapshot:
        """Reload every row and atomically replace the snapshot."""
        async with unit_of_work(self._session_factory) as repo:
            rows = await repo.list_configuration()
        values = dict(self._settings.configuration_seed())
        values.update({row.config_key: row.config_value for row in rows})
        public = frozenset(
            [row.config_key for row in rows if row.is_public]
        )
        self._snapshot = ConfigSnapshot(values=MappingProxyType(values), public_keys=public)
        logger.debug("Configuration snapshot refreshed")
        return self._snapshot

    @property
    def snapshot(self) -> ConfigSnapshot:
        if self._snapshot is None:
            raise RuntimeError("ConfigurationProvider.initialize() has not been awaited")
        return self._snapshot

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def get(self, key: str) -> str:
        return self.snapshot.get(key)

    def public_values(self) -> dict[str, str]:
        snapshot = self.snapshot
        return {k: v for k, v in snapshot.values.items() if k in snapshot.public_keys}

    async def set(self, key: str, value: str, *, is_public: Optional[bool] = None) -> ConfigSnapshot:
        """Admin write: validate, persist, then refresh the snapshot."""
        value = str(value)
        validate_value(key, value)
        description, default_public = CONFIG_KEYS.get(key, (None, False))
        async with unit_of_work(self._session_factory) as repo:
            await repo.upsert_configuration(
                key,
                value,
                description=description,
                is_public=default_public if is_public is None else is_public,
            )
        logger.info(f"Configuration updated: {key}={value}")
        return await self.refresh()

    # =========================================================================
    # TYPED ACCESSORS
    # =========================================================================

    @property
    def tax_percentage(self) -> Decimal:
        return self.snapshot.decimal("tax_percentage")

    @property
    def delivery_fee(self) -> Decimal:
        return self.snapshot.decimal("delivery_fee")

    @property
    def min_order_amount(self) -> Decimal:
        return self.snapshot.decimal("min_order_amount")

    @property
    def delivery_radius_km(self) -> float:
        return self.snapshot.number("delivery_radius_km")

    @property
    def is_accepting_orders(self) -> bool:
        return self.snapshot.boolean("is_accepting_orders")

    @property
    def restaurant_location(self) -> Coordinates:
        return Coordinates(
            latitude=self.snapshot.number("restaurant_latitude"),
            longitude=self.snapshot.number("restaurant_longitude"),
        )

    @property
    def average_preparation_minutes(self) -> int:
        return self.snapshot.integer("average_preparation_time")

    @property
    def average_delivery_speed_kmph(self) -> float:
        return self.snapshot.number("average_delivery_speed_kmph")

    @property
    def delivery_fee_share(self) -> Decimal:
        """Fraction (0-1) of the delivery fee credited to the courier."""
        return self.snapshot.decimal("delivery_fee_share_percentage") / Decimal("100")

    def is_open(self, now: datetime) -> bool:
        """
        Whether ``now`` falls inside operating hours.

        A window whose end is before its start wraps past midnight
        (e.g. 18:00-02:00). Equal start and end means open all day.
        """
        start = self.snapshot.clock("operating_hours_start")
        end = self.snapshot.clock("operating_hours_end")
        local = now.astimezone(ZoneInfo(self.snapshot.get("restaurant_timezone"))).time()
        if start == end:
            return True
        if start < end:
            return start <= local < end
        return local >= start or local < end
