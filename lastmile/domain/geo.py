"""
Geo primitives - great-circle distance, travel time estimates and pricing.

Pure functions, no I/O. Invalid coordinates raise GeoInputInvalidError.
"""
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Tuple

from lastmile.core.config import settings
from lastmile.core.exceptions import GeoInputInvalidError

EARTH_RADIUS_KM = 6371.0088

_CENTS = Decimal("0.01")


def _coerce_coordinate(value: Any, field: str, low: float, high: float) -> float:
    if isinstance(value, bool):
        raise GeoInputInvalidError(f"{field} must be a number", field=field, value=value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise GeoInputInvalidError(f"{field} must be a number", field=field, value=value)
    if not math.isfinite(number):
        raise GeoInputInvalidError(f"{field} must be finite", field=field, value=str(value))
    if number < low or number > high:
        raise GeoInputInvalidError(
            f"{field} must be between {low:g} and {high:g}", field=field, value=number
        )
    return number


@dataclass(frozen=True)
class GeoPoint:
    """A validated (latitude, longitude) pair in decimal degrees."""

    latitude: float
    longitude: float

    def __post_init__(self):
        object.__setattr__(
            self, "latitude", _coerce_coordinate(self.latitude, "latitude", -90.0, 90.0)
        )
        object.__setattr__(
            self, "longitude", _coerce_coordinate(self.longitude, "longitude", -180.0, 180.0)
        )

    @classmethod
    def from_optional(cls, latitude: float | None, longitude: float | None) -> "GeoPoint | None":
        """Build a point from nullable columns; None when either part is missing."""
        if latitude is None or longitude is None:
            return None
        return cls(latitude, longitude)

    def to_dict(self) -> dict:
        return {"lat": self.latitude, "lng": self.longitude}


def distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance between two points in kilometers.

    Symmetric and non-negative; ``distance_km(a, a) == 0``.
    """
    lat1, lng1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lng2 = math.radians(b.latitude), math.radians(b.longitude)
    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # rounding can push h marginally outside [0, 1] for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def estimate_minutes(
    distance: float,
    avg_speed_kmh: float = 20.0,
    buffer_min: int = 0,
) -> int:
    """Travel time in whole minutes: ``ceil(distance / speed * 60) + buffer``."""
    if distance is None or not math.isfinite(distance) or distance < 0:
        raise GeoInputInvalidError("distance must be a non-negative number", field="distance", value=distance)
    if avg_speed_kmh is None or not math.isfinite(avg_speed_kmh) or avg_speed_kmh <= 0:
        raise GeoInputInvalidError("average speed must be positive", field="avg_speed_kmh", value=avg_speed_kmh)
    # round before ceil so 15.000000000000002 does not become 16
    travel = math.ceil(round(distance / avg_speed_kmh * 60, 9))
    return travel + int(buffer_min)


def bounding_box(origin: GeoPoint, radius_km: float) -> Tuple[float, float, float, float]:
    """Coarse (min_lat, max_lat, min_lng, max_lng) box containing the radius.

    Used as an index-friendly SQL prefilter; callers still apply the exact
    haversine check. Longitude spans the full range near the poles.
    """
    if radius_km < 0:
        raise GeoInputInvalidError("radius must not be negative", field="radius_km", value=radius_km)

    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)
    min_lat = max(-90.0, origin.latitude - lat_delta)
    max_lat = min(90.0, origin.latitude + lat_delta)

    cos_lat = math.cos(math.radians(origin.latitude))
    if max_lat >= 90.0 or min_lat <= -90.0 or cos_lat < 1e-9:
        return min_lat, max_lat, -180.0, 180.0

    lng_delta = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    if lng_delta >= 180.0:
        return min_lat, max_lat, -180.0, 180.0
    # boxes that wrap the antimeridian fall back to the full longitude range
    min_lng = origin.longitude - lng_delta
    max_lng = origin.longitude + lng_delta
    if min_lng < -180.0 or max_lng > 180.0:
        return min_lat, max_lat, -180.0, 180.0
    return min_lat, max_lat, min_lng, max_lng


def delivery_pricing(distance: float) -> Tuple[Decimal, Decimal]:
    """(delivery_fee, driver_earnings) for a trip of ``distance`` km."""
    if distance is None or not math.isfinite(distance) or distance < 0:
        raise GeoInputInvalidError("distance must be a non-negative number", field="distance", value=distance)

    fee = (
        Decimal(str(settings.DELIVERY_BASE_FEE))
        + Decimal(str(settings.DELIVERY_FEE_PER_KM)) * Decimal(str(distance))
    ).quantize(_CENTS, rounding=ROUND_HALF_UP)
    earnings = (fee * Decimal(str(settings.DRIVER_EARNINGS_SHARE))).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return fee, earnings
