from __future__ import annotations

from dataclasses import dataclass
from math import asin, cos, isfinite, radians, sin, sqrt
from typing import Any

EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True, slots=True)
class GeofenceResult:
    within_fence: bool
    distance_m: int | None

    def to_dict(self) -> dict[str, Any]:
        return {"within_fence": self.within_fence, "distance_m": self.distance_m}


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    lat1_rad = radians(lat1)
    lon1_rad = radians(lon1)
    lat2_rad = radians(lat2)
    lon2_rad = radians(lon2)

    delta_lat = lat2_rad - lat1_rad
    delta_lon = lon2_rad - lon1_rad

    a = sin(delta_lat / 2) ** 2 + cos(lat1_rad) * cos(lat2_rad) * sin(delta_lon / 2) ** 2
    c = 2 * asin(sqrt(min(1.0, a)))
    return EARTH_RADIUS_M * c


def coerce_coordinate(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not isfinite(number):
        return None
    return number


def evaluate_geofence(
    anchor_lat: Any,
    anchor_lon: Any,
    radius_m: Any,
    lat: Any,
    lon: Any,
) -> GeofenceResult:
    """Decide whether (lat, lon) lies inside the circle around the anchor.

    Any non-numeric input is treated as "not present" rather than raised.
    """
    values = [coerce_coordinate(item) for item in (anchor_lat, anchor_lon, radius_m, lat, lon)]
    if any(item is None for item in values):
        return GeofenceResult(within_fence=False, distance_m=None)

    a_lat, a_lon, radius, p_lat, p_lon = values
    distance_value = distance_m(a_lat, a_lon, p_lat, p_lon)  # type: ignore[arg-type]
    return GeofenceResult(
        within_fence=distance_value <= radius,  # type: ignore[operator]
        distance_m=int(round(distance_value)),
    )
