"""
Correlation Engine: attach nearby chargers to the places they serve.

Raw charger lists arrive already fetched, one list per place (an empty list
when that place's fetch failed).  Each charger is normalized, measured
against its place, and kept only when it is within walking distance.

A charger near two places is attached to both: each attachment is its own
Charger instance with its own place_id and distance.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from charger_config import CHARGER_MODEL, METERS_PER_MILE
from charger_normalizer import normalize_charger
from geo_math import distance_km, walking_minutes_to_km
from models import Charger, Place

logger = logging.getLogger(__name__)


@dataclass
class CorrelationResult:
    chargers: List[Charger] = field(default_factory=list)
    places: List[Place] = field(default_factory=list)
    walking_threshold_km: float = 0.0
    # Raw records dropped for having no usable coordinate
    skipped_chargers: int = 0


def correlate_chargers(
    places: Sequence[Place],
    raw_chargers_by_place: Mapping[str, Sequence[Any]],
    walking_time_minutes: Optional[float] = None,
) -> CorrelationResult:
    """Normalize raw chargers and gate them by walking distance per place.

    raw_chargers_by_place maps place id -> raw upstream records (dicts or
    RawCharger).  Places missing from the mapping get zero chargers.
    Returned places are copies with charger_count recomputed; place order
    is preserved.
    """
    if walking_time_minutes is None:
        walking_time_minutes = CHARGER_MODEL.filters.walking_time_min
    threshold_km = walking_minutes_to_km(walking_time_minutes)

    result = CorrelationResult(walking_threshold_km=threshold_km)

    for place in places:
        if place.coordinate is None:
            logger.warning("Place %s has no coordinate; excluded from correlation", place.id)
            continue

        attached: List[Charger] = []
        for raw in raw_chargers_by_place.get(place.id) or []:
            charger = normalize_charger(raw)
            if charger.coordinate is None:
                result.skipped_chargers += 1
                continue
            d = distance_km(place.coordinate, charger.coordinate)
            if d > threshold_km:
                continue
            charger.place_id = place.id
            charger.distance_from_place_km = d
            attached.append(charger)

        result.chargers.extend(attached)
        result.places.append(replace(place, charger_count=len(attached), featured_charger=None))

    logger.info(
        "Correlated %d chargers across %d places (walk<=%.3f km, skipped=%d)",
        len(result.chargers), len(result.places), threshold_km, result.skipped_chargers,
    )
    return result


# =============================================================================
# Place-level helpers used before correlation
# =============================================================================

def filter_places_within_radius(places: Sequence[Place], radius_miles: float) -> List[Place]:
    """Drop places whose driving distance exceeds the search radius.

    Text search is only location-biased, so results outside the radius do
    come back.  Places with no distance value are kept.
    """
    radius_m = radius_miles * METERS_PER_MILE
    kept = []
    for place in places:
        meters = place.distance_meters
        if meters is None or meters <= radius_m:
            kept.append(place)
    return kept


def sort_places_by_distance(places: Sequence[Place]) -> List[Place]:
    """Stable ascending sort by distance from origin; unknown distances last."""
    return sorted(
        places,
        key=lambda p: p.distance_meters if p.distance_meters is not None else float("inf"),
    )


def attach_distances(places: Sequence[Place], distances: Dict[str, Any]) -> List[Place]:
    """Copy each place with its DistanceInfo (None when unavailable)."""
    return [replace(p, distance_from_origin=distances.get(p.id)) for p in places]
