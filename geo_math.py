"""
Distance and walking-time conversions.

All functions are pure.  Coordinates are anything with ``lat`` / ``lng``
attributes (models.Coordinate in practice).
"""

import math

from charger_config import CHARGER_MODEL

EARTH_RADIUS_KM = 6371

_WALK = CHARGER_MODEL.walking


def _round_half_up(x: float) -> int:
    # floor(x + 0.5) instead of round() to avoid banker's rounding at .5
    return int(math.floor(x + 0.5))


def distance_km(a, b) -> float:
    """Great-circle distance between two coordinates (Haversine), in km."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)

    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def walking_minutes(distance: float) -> float:
    """Unrounded walking time in minutes for a distance in km."""
    miles = distance * _WALK.miles_per_km
    return miles / _WALK.speed_mph * 60


def walking_time_label(distance: float) -> str:
    """Human-readable walking time for a distance in km, e.g. "7 min".

    Under a minute reads "<1 min"; an hour or more reads "1 hr" or
    "1 hr 20 min".
    """
    minutes = walking_minutes(distance)

    if minutes < 1:
        return "<1 min"
    if minutes < 60:
        return f"{_round_half_up(minutes)} min"

    hours = int(minutes // 60)
    remaining = _round_half_up(minutes - hours * 60)
    if remaining == 60:
        hours += 1
        remaining = 0
    if remaining == 0:
        return f"{hours} hr"
    return f"{hours} hr {remaining} min"


def walking_minutes_to_km(minutes: float) -> float:
    """Distance in km covered in *minutes* of walking."""
    miles = minutes / 60 * _WALK.speed_mph
    return miles * _WALK.km_per_mile


def format_distance(distance: float) -> str:
    """Short distance label: meters below 1 km, otherwise one-decimal km."""
    if distance < 1:
        return f"{_round_half_up(distance * 1000)}m"
    return f"{distance:.1f}km"
