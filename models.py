"""
Domain model for ChargeCheck search results.

Places come from the place-search collaborator, chargers from the charger
normalizer.  Both are plain dataclasses; the correlation engine and filter
pipeline return new instances instead of mutating caller-owned ones.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# =============================================================================
# ENUMS
# =============================================================================

class PowerTier(Enum):
    LEVEL1 = "level1"
    LEVEL2 = "level2"
    DC_FAST = "dc_fast"
    UNKNOWN = "unknown"


class AccessCategory(Enum):
    PUBLIC = "public"
    RESTRICTED = "restricted"
    PERMIT = "permit"
    PARKING = "parking"
    PRIVATE = "private"
    UNKNOWN = "unknown"


class OperationalStatus(Enum):
    """Three-valued status.  UNKNOWN is not the same as NOT_OPERATIONAL."""
    OPERATIONAL = "operational"
    NOT_OPERATIONAL = "not_operational"
    UNKNOWN = "unknown"

    def as_bool(self) -> Optional[bool]:
        """True / False / None, the wire form used by the JSON API."""
        if self is OperationalStatus.OPERATIONAL:
            return True
        if self is OperationalStatus.NOT_OPERATIONAL:
            return False
        return None

    @classmethod
    def from_bool(cls, value: Optional[bool]) -> "OperationalStatus":
        if value is True:
            return cls.OPERATIONAL
        if value is False:
            return cls.NOT_OPERATIONAL
        return cls.UNKNOWN


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lng: float

    def as_tuple(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class DistanceInfo:
    """Driving distance from the search origin, as reported by Distance Matrix."""
    text: str                        # e.g. "2.4 mi"
    meters: Optional[float] = None
    duration_text: str = ""          # e.g. "8 mins"
    seconds: Optional[float] = None


@dataclass
class Connector:
    type: str
    power_kw: float
    level_label: str
    status: Optional[str] = None
    # Raw upstream flag: True / False / None when not reported
    is_operational_raw: Optional[bool] = None


@dataclass
class Charger:
    """Canonical charger record built from one upstream POI."""
    id: Any
    name: str
    address: str
    coordinate: Optional[Coordinate]
    connectors: List[Connector] = field(default_factory=list)

    max_power_kw: float = 0.0
    min_power_kw: Optional[float] = None
    has_multiple_power_levels: bool = False
    power_tier: PowerTier = PowerTier.LEVEL1
    speed_label: str = "Level 1"

    is_free: bool = False
    cost_label: str = "Paid"

    operational_status: OperationalStatus = OperationalStatus.UNKNOWN
    status_title: str = "Unknown status"
    status_last_updated: Optional[str] = None

    access_category: AccessCategory = AccessCategory.UNKNOWN
    access_title: str = "Unknown access"
    is_membership_required: Optional[bool] = None
    is_pay_at_location: Optional[bool] = None

    number_of_points: Optional[int] = None
    operator: Optional[str] = None
    comments: str = ""
    has_live_status: bool = False

    # Assigned by the correlation engine
    place_id: Optional[str] = None
    distance_from_place_km: Optional[float] = None

    @property
    def connector_types(self) -> List[str]:
        return [c.type for c in self.connectors]


@dataclass
class Place:
    """A place-search result plus the fields the pipeline derives for it."""
    id: str
    name: str
    address: str
    coordinate: Coordinate
    rating: Optional[float] = None
    rating_count: Optional[int] = None
    types: List[str] = field(default_factory=list)

    distance_from_origin: Optional[DistanceInfo] = None
    charger_count: int = 0
    featured_charger: Optional[Charger] = None

    @property
    def distance_meters(self) -> Optional[float]:
        if self.distance_from_origin is None:
            return None
        return self.distance_from_origin.meters


# =============================================================================
# RAW PLACE PARSING
# =============================================================================

def coerce_float(value: Any) -> Optional[float]:
    """Best-effort float conversion; None for missing or non-numeric values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN
        return None
    return result


def parse_coordinate(raw: Any) -> Optional[Coordinate]:
    """Accept {"lat","lng"}, {"latitude","longitude"} or a (lat, lng) pair."""
    if raw is None:
        return None
    if isinstance(raw, Coordinate):
        return raw
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = coerce_float(raw[0]), coerce_float(raw[1])
    elif isinstance(raw, dict):
        lat = coerce_float(raw.get("lat", raw.get("latitude")))
        lng = coerce_float(raw.get("lng", raw.get("longitude")))
    else:
        return None
    if lat is None or lng is None:
        return None
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        return None
    return Coordinate(lat, lng)


def place_from_raw(raw: Dict[str, Any]) -> Optional[Place]:
    """Build a Place from a place-search record.

    Returns None (and logs) when the record has no usable id or coordinate,
    so one malformed result never takes down the whole search.
    """
    place_id = raw.get("id") or raw.get("place_id")
    coordinate = parse_coordinate(raw.get("coordinate") or raw.get("location"))
    if not place_id or coordinate is None:
        logger.warning("Skipping place without id/coordinate: %r", raw.get("name"))
        return None

    rating_count = raw.get("ratingCount", raw.get("rating_count"))
    return Place(
        id=str(place_id),
        name=raw.get("name") or "",
        address=raw.get("address") or "",
        coordinate=coordinate,
        rating=coerce_float(raw.get("rating")),
        rating_count=int(rating_count) if isinstance(rating_count, (int, float)) else None,
        types=list(raw.get("types") or []),
    )
