"""
Filter Pipeline: apply user criteria to a search session's chargers.

apply_filters() is a pure function of (chargers, places, criteria).  It is
re-run on every criteria change and every data change; the same inputs
always produce the same output.

All predicates are ANDed.  The connector predicate is itself an any-of:
a charger passes when it has at least one selected connector type.

After filtering, each place gets its surviving charger count and a
featured charger (operational first, then highest power), and places are
re-sorted by distance from origin.  Both sorts are stable so ties keep
their incoming order.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from charger_config import CHARGER_MODEL, clamp
from correlation import sort_places_by_distance
from geo_math import distance_km, walking_minutes_to_km
from models import AccessCategory, Charger, OperationalStatus, Place, PowerTier

logger = logging.getLogger(__name__)

ALL = "all"
COST_FREE = "free"
COST_PAID = "paid"

ACCESS_VALUES = {c.value for c in AccessCategory}
SPEED_VALUES = {t.value for t in PowerTier}
COST_VALUES = {COST_FREE, COST_PAID}

_DEFAULTS = CHARGER_MODEL.filters


@dataclass(frozen=True)
class FilterCriteria:
    """Immutable snapshot of the user's filter controls.

    access / speed accept either the enum member or its string value;
    connectors accepts any iterable of connector type titles.
    """
    operational_only: bool = False
    access: str = ALL
    cost: str = ALL
    speed: str = ALL
    connectors: FrozenSet[str] = frozenset()
    walking_time_minutes: Optional[float] = _DEFAULTS.walking_time_min
    search_radius_miles: float = _DEFAULTS.search_radius_miles

    def __post_init__(self):
        for name in ("access", "speed"):
            value = getattr(self, name)
            if isinstance(value, Enum):
                object.__setattr__(self, name, value.value)
        if not isinstance(self.connectors, frozenset):
            object.__setattr__(self, "connectors", frozenset(self.connectors or ()))

    @property
    def walking_threshold_km(self) -> Optional[float]:
        """None when the walking predicate is switched off (unset or <= 0)."""
        if not self.walking_time_minutes or self.walking_time_minutes <= 0:
            return None
        return walking_minutes_to_km(self.walking_time_minutes)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FilterCriteria":
        """Build criteria from a UI/API payload (camelCase or snake_case keys).

        Unrecognised choice values fall back to "all"; slider values are
        clamped to their allowed range.  connectors may be one string or a
        list; anything else is treated as no connector filter.
        """
        if not isinstance(data, dict):
            data = {}

        def pick(*keys, default=None):
            for k in keys:
                if k in data and data[k] is not None:
                    return data[k]
            return default

        def choice(value, allowed):
            value = str(value).lower() if value is not None else ALL
            return value if value in allowed else ALL

        def number(value, default, bounds):
            try:
                value = float(value)
            except (TypeError, ValueError):
                return default
            if value != value:
                return default
            return clamp(value, bounds)

        def flag(value):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)

        connectors = pick("connectors", default=[])
        if isinstance(connectors, str):
            connectors = [connectors]
        elif not isinstance(connectors, (list, tuple, set, frozenset)):
            connectors = []

        return cls(
            operational_only=flag(pick("operationalOnly", "operational_only", "operational", default=False)),
            access=choice(pick("access"), ACCESS_VALUES),
            cost=choice(pick("cost"), COST_VALUES),
            speed=choice(pick("speed"), SPEED_VALUES),
            connectors=frozenset(str(c) for c in connectors if c),
            walking_time_minutes=number(
                pick("walkingTimeMinutes", "walking_time_minutes", "walkingTime"),
                _DEFAULTS.walking_time_min,
                _DEFAULTS.walking_time_bounds,
            ),
            search_radius_miles=number(
                pick("searchRadiusMiles", "search_radius_miles", "searchRadius"),
                _DEFAULTS.search_radius_miles,
                _DEFAULTS.search_radius_bounds,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operational_only": self.operational_only,
            "access": self.access,
            "cost": self.cost,
            "speed": self.speed,
            "connectors": sorted(self.connectors),
            "walking_time_minutes": self.walking_time_minutes,
            "search_radius_miles": self.search_radius_miles,
        }


DEFAULT_CRITERIA = FilterCriteria()


@dataclass
class FilterResult:
    filtered_chargers: List[Charger] = field(default_factory=list)
    annotated_places: List[Place] = field(default_factory=list)
    signature: Tuple[Tuple[str, int], ...] = ()
    # False when a FilterSession saw the same signature on the previous pass
    changed: bool = True


# =============================================================================
# Predicates
# =============================================================================

def _within_walking_distance(
    charger: Charger,
    places_by_id: Dict[str, Place],
    threshold_km: float,
) -> bool:
    place = places_by_id.get(charger.place_id)
    if place is None:
        return False
    d = charger.distance_from_place_km
    if d is None:
        if charger.coordinate is None or place.coordinate is None:
            return False
        d = distance_km(place.coordinate, charger.coordinate)
    return d <= threshold_km


def charger_passes(
    charger: Charger,
    criteria: FilterCriteria,
    places_by_id: Dict[str, Place],
) -> bool:
    """True when *charger* survives every active predicate in *criteria*."""
    if criteria.operational_only and charger.operational_status is not OperationalStatus.OPERATIONAL:
        return False
    if criteria.access != ALL and charger.access_category.value != criteria.access:
        return False
    if criteria.cost != ALL and charger.is_free != (criteria.cost == COST_FREE):
        return False
    if criteria.speed != ALL and charger.power_tier.value != criteria.speed:
        return False
    if criteria.connectors and not any(t in criteria.connectors for t in charger.connector_types):
        return False
    threshold = criteria.walking_threshold_km
    if threshold is not None and not _within_walking_distance(charger, places_by_id, threshold):
        return False
    return True


# =============================================================================
# Ranking
# =============================================================================

def _featured_sort_key(charger: Charger):
    operational = 0 if charger.operational_status is OperationalStatus.OPERATIONAL else 1
    return (operational, -(charger.max_power_kw or 0))


def pick_featured_charger(chargers: Sequence[Charger]) -> Optional[Charger]:
    """Operational chargers first, then highest max power; ties keep order."""
    if not chargers:
        return None
    return sorted(chargers, key=_featured_sort_key)[0]


def places_signature(places: Sequence[Place]) -> Tuple[Tuple[str, int], ...]:
    return tuple((p.id, p.charger_count) for p in places)


def apply_filters(
    chargers: Sequence[Charger],
    places: Sequence[Place],
    criteria: FilterCriteria = DEFAULT_CRITERIA,
) -> FilterResult:
    """Filter chargers and annotate/rank places.  Inputs are not mutated."""
    valid_places = [p for p in places if p.coordinate is not None]
    places_by_id = {p.id: p for p in valid_places}

    filtered = [c for c in chargers if charger_passes(c, criteria, places_by_id)]

    by_place: Dict[str, List[Charger]] = {}
    for c in filtered:
        by_place.setdefault(c.place_id, []).append(c)

    annotated = []
    for place in valid_places:
        attached = by_place.get(place.id, [])
        annotated.append(_annotate(place, attached))

    ranked = sort_places_by_distance(annotated)
    return FilterResult(
        filtered_chargers=filtered,
        annotated_places=ranked,
        signature=places_signature(ranked),
    )


def _annotate(place: Place, attached: List[Charger]) -> Place:
    return replace(
        place,
        charger_count=len(attached),
        featured_charger=pick_featured_charger(attached),
    )


def connector_options(chargers: Iterable[Charger]) -> List[str]:
    """Sorted distinct connector types, for building the connector checklist."""
    types = set()
    for c in chargers:
        for conn in c.connectors:
            if conn.type:
                types.add(conn.type)
    return sorted(types)


# =============================================================================
# Session wrapper
# =============================================================================

class FilterSession:
    """Owns one search session's chargers/places and re-filters on demand.

    Every apply() recomputes from scratch; `changed` on the result only
    reports whether the (place_id, charger_count) sequence moved since the
    previous pass, so list views can skip a redraw.
    """

    def __init__(self, chargers: Sequence[Charger], places: Sequence[Place]):
        self.chargers = list(chargers)
        self.places = list(places)
        self._last_signature: Optional[Tuple[Tuple[str, int], ...]] = None

    def replace_data(self, chargers: Sequence[Charger], places: Sequence[Place]):
        """Swap in a new search's data; the next apply() always reports changed."""
        self.chargers = list(chargers)
        self.places = list(places)
        self._last_signature = None

    def apply(self, criteria: FilterCriteria) -> FilterResult:
        result = apply_filters(self.chargers, self.places, criteria)
        result.changed = result.signature != self._last_signature
        self._last_signature = result.signature
        logger.debug(
            "Filter pass: %d/%d chargers, changed=%s",
            len(result.filtered_chargers), len(self.chargers), result.changed,
        )
        return result

    @property
    def connector_options(self) -> List[str]:
        return connector_options(self.chargers)
