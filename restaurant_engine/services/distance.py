"""
Delivery Distance Estimator

Great-circle (haversine) distance between the restaurant and a delivery
point, plus a within-radius flag. The figure is advisory input for
dispatch and travel estimates, not a routed road distance.
"""

import math
from dataclasses import dataclass
from decimal import Decimal

from restaurant_engine.core.exceptions import ValidationError

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def __post_init__(self):
        validate_coordinates(self.latitude, self.longitude)


@dataclass(frozen=True)
class DistanceEstimate:
    distance_km: Decimal
    within_radius: bool


def validate_coordinates(latitude: float, longitude: float) -> None:
    for name, value, bound in (("latitude", latitude, 90.0), ("longitude", longitude, 180.0)):
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise ValidationError(f"{name} must be a number, got {value!r}")
        if not math.isfinite(float(value)) or not -bound <= float(value) <= bound:
            raise ValidationError(f"{name} must be between -{bound:g} and {bound:g}, got {value}")


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    """Calculate distance in kilometers using the Haversine formula."""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    delta_lat = math.radians(destination.latitude - origin.latitude)
    delta_lng = math.radians(destination.longitude - origin.longitude)

    a = (math.sin(delta_lat / 2) ** 2
         + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def estimate_distance(
    restaurant: Coordinates,
    destination: Coordinates,
    radius_km: float,
) -> DistanceEstimate:
    """
    Distance from the restaurant to ``destination`` and whether it is
    inside the configured delivery radius.

    Raises:
        ValidationError: coordinates out of range or a negative radius
    """
    if radius_km < 0:
        raise ValidationError(f"Delivery radius cannot be negative, got {radius_km}")

    distance = haversine_km(restaurant, destination)
    return DistanceEstimate(
        distance_km=Decimal(str(round(distance, 2))),
        within_radius=distance <= radius_km,
    )


def travel_minutes(distance_km: float, speed_kmph: float) -> int:
    """Whole minutes to cover ``distance_km`` at ``speed_kmph`` (rounded up)."""
    if speed_kmph <= 0:
        raise ValidationError(f"Average speed must be positive, got {speed_kmph}")
    return math.ceil(float(distance_km) / speed_kmph * 60)
