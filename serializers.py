"""
JSON shapes for chargers, places and search results.

Used by the HTTP API (app.py) and the CLI's --json output.  The *_from_dict
helpers accept what the *_to_dict helpers produce, so a client can post a
previous search back to /api/filter for re-filtering.
"""

import logging
from typing import Any, Dict, List, Optional

from geo_math import format_distance, walking_time_label
from models import (
    AccessCategory,
    Charger,
    Connector,
    DistanceInfo,
    OperationalStatus,
    Place,
    PowerTier,
    coerce_float,
    parse_coordinate,
    place_from_raw,
)

logger = logging.getLogger(__name__)


def _coordinate_dict(coordinate) -> Optional[Dict[str, float]]:
    if coordinate is None:
        return None
    return {"lat": coordinate.lat, "lng": coordinate.lng}


def _enum_or(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


def _optional_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


# =============================================================================
# Chargers
# =============================================================================

def charger_to_dict(charger: Charger) -> Dict[str, Any]:
    d = charger.distance_from_place_km
    return {
        "id": charger.id,
        "name": charger.name,
        "address": charger.address,
        "coordinate": _coordinate_dict(charger.coordinate),
        "connectors": [
            {
                "type": c.type,
                "power_kw": c.power_kw,
                "level_label": c.level_label,
                "status": c.status,
                "is_operational": c.is_operational_raw,
            }
            for c in charger.connectors
        ],
        "max_power_kw": charger.max_power_kw,
        "min_power_kw": charger.min_power_kw,
        "has_multiple_power_levels": charger.has_multiple_power_levels,
        "power_tier": charger.power_tier.value,
        "speed_label": charger.speed_label,
        "is_free": charger.is_free,
        "cost_label": charger.cost_label,
        # true / false / null
        "is_operational": charger.operational_status.as_bool(),
        "status_title": charger.status_title,
        "status_last_updated": charger.status_last_updated,
        "access_category": charger.access_category.value,
        "access_title": charger.access_title,
        "is_membership_required": charger.is_membership_required,
        "is_pay_at_location": charger.is_pay_at_location,
        "number_of_points": charger.number_of_points,
        "operator": charger.operator,
        "comments": charger.comments,
        "has_live_status": charger.has_live_status,
        "place_id": charger.place_id,
        "distance_from_place_km": d,
        "distance_label": format_distance(d) if d is not None else None,
        "walking_time_label": walking_time_label(d) if d is not None else None,
    }


def charger_from_dict(data: Dict[str, Any]) -> Charger:
    """Rebuild a Charger from charger_to_dict output.  Unknown enum values
    fall back to UNKNOWN rather than failing the whole payload."""
    connectors = []
    for c in data.get("connectors") or []:
        if not isinstance(c, dict):
            continue
        connectors.append(Connector(
            type=c.get("type") or "Unknown",
            power_kw=coerce_float(c.get("power_kw")) or 0.0,
            level_label=c.get("level_label") or "Unknown",
            status=c.get("status"),
            is_operational_raw=_optional_bool(c.get("is_operational")),
        ))

    points = data.get("number_of_points")
    return Charger(
        id=data.get("id"),
        name=data.get("name") or "Unnamed Charger",
        address=data.get("address") or "",
        coordinate=parse_coordinate(data.get("coordinate")),
        connectors=connectors,
        max_power_kw=coerce_float(data.get("max_power_kw")) or 0.0,
        min_power_kw=coerce_float(data.get("min_power_kw")),
        has_multiple_power_levels=bool(data.get("has_multiple_power_levels")),
        power_tier=_enum_or(PowerTier, data.get("power_tier"), PowerTier.UNKNOWN),
        speed_label=data.get("speed_label") or "Unknown",
        is_free=bool(data.get("is_free")),
        cost_label=data.get("cost_label") or "Paid",
        operational_status=OperationalStatus.from_bool(_optional_bool(data.get("is_operational"))),
        status_title=data.get("status_title") or "Unknown status",
        status_last_updated=data.get("status_last_updated"),
        access_category=_enum_or(AccessCategory, data.get("access_category"), AccessCategory.UNKNOWN),
        access_title=data.get("access_title") or "Unknown access",
        is_membership_required=_optional_bool(data.get("is_membership_required")),
        is_pay_at_location=_optional_bool(data.get("is_pay_at_location")),
        number_of_points=int(points) if isinstance(points, (int, float)) and not isinstance(points, bool) else None,
        operator=data.get("operator"),
        comments=data.get("comments") or "",
        has_live_status=bool(data.get("has_live_status")),
        place_id=data.get("place_id"),
        distance_from_place_km=coerce_float(data.get("distance_from_place_km")),
    )


# =============================================================================
# Places
# =============================================================================

def _distance_to_dict(info: Optional[DistanceInfo]) -> Optional[Dict[str, Any]]:
    if info is None:
        return None
    return {
        "text": info.text,
        "meters": info.meters,
        "duration_text": info.duration_text,
        "seconds": info.seconds,
    }


def place_to_dict(place: Place) -> Dict[str, Any]:
    return {
        "id": place.id,
        "name": place.name,
        "address": place.address,
        "coordinate": _coordinate_dict(place.coordinate),
        "rating": place.rating,
        "rating_count": place.rating_count,
        "types": list(place.types),
        "distance_from_origin": _distance_to_dict(place.distance_from_origin),
        "charger_count": place.charger_count,
        "featured_charger": (
            charger_to_dict(place.featured_charger) if place.featured_charger else None
        ),
    }


def place_from_dict(data: Dict[str, Any]) -> Optional[Place]:
    """Rebuild a Place; None when it has no id or usable coordinate.

    charger_count and featured_charger are not read back: the filter
    pipeline recomputes both.
    """
    place = place_from_raw(data)
    if place is None:
        return None
    distance = data.get("distance_from_origin")
    if isinstance(distance, dict):
        place.distance_from_origin = DistanceInfo(
            text=distance.get("text") or "",
            meters=coerce_float(distance.get("meters")),
            duration_text=distance.get("duration_text") or "",
            seconds=coerce_float(distance.get("seconds")),
        )
    return place


# =============================================================================
# Results
# =============================================================================

def filter_result_to_dict(filter_result) -> Dict[str, Any]:
    return {
        "places": [place_to_dict(p) for p in filter_result.annotated_places],
        "filtered_chargers": [charger_to_dict(c) for c in filter_result.filtered_chargers],
        "changed": filter_result.changed,
    }


def search_result_to_dict(result) -> Dict[str, Any]:
    """Serialize a charger_search.SearchResult.

    "chargers" is every correlated charger (the re-filter input);
    "filtered_chargers" is what passed the current criteria.
    """
    output = {
        "query": result.query,
        "origin": _coordinate_dict(result.origin),
        "filters": result.criteria.to_dict(),
        "fetch_walking_minutes": result.fetch_walking_minutes,
        "search_radius_miles": result.search_radius_miles,
        "chargers": [charger_to_dict(c) for c in result.chargers],
        "connector_options": list(result.connector_options),
        "notes": list(result.notes),
        "needs_refetch": result.needs_refetch,
        "model_version": result.model_version,
    }
    output.update(filter_result_to_dict(result.filter_result))
    return output


def parse_list(items: Any, parser) -> List[Any]:
    """Apply *parser* to each dict in *items*, dropping non-dicts and Nones."""
    parsed = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        value = parser(item)
        if value is not None:
            parsed.append(value)
    return parsed
