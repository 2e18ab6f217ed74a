#!/usr/bin/env python3
"""
ChargeCheck search: find places, then the EV chargers within walking
distance of each.

Pipeline (each step is a timed stage in the request trace):
  1. origin     - explicit coordinate, geocoded location, or default center
  2. places     - Google text search around the origin
  3. distances  - driving distance origin -> each place
  4. chargers   - Open Charge Map fetch around every surviving place
  5. correlate  - normalize + walking-distance gate per place
  6. filter     - user criteria, featured charger, ranking

Usage:
    python charger_search.py "coffee" --near "Mission District, SF" --walk 10
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Tuple

import requests
from dotenv import load_dotenv

from cc_trace import get_trace
from charger_config import CHARGER_MODEL, DEFAULT_SEARCH_CENTER, METERS_PER_MILE
from correlation import (
    attach_distances,
    correlate_chargers,
    filter_places_within_radius,
    sort_places_by_distance,
)
from filter_pipeline import (
    ALL,
    DEFAULT_CRITERIA,
    FilterCriteria,
    FilterResult,
    apply_filters,
    connector_options,
)
from geo_math import format_distance, walking_minutes_to_km, walking_time_label
from maps_client import GoogleMapsClient
from models import Charger, Coordinate, OperationalStatus, Place, parse_coordinate, place_from_raw
from open_charge_map import OpenChargeMapClient, get_chargers_for_places
from serializers import search_result_to_dict

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    query: str
    origin: Coordinate
    criteria: FilterCriteria
    # Walking time and radius the upstream fetch was made with
    fetch_walking_minutes: float
    search_radius_miles: float
    places: List[Place] = field(default_factory=list)
    chargers: List[Charger] = field(default_factory=list)
    filter_result: FilterResult = field(default_factory=FilterResult)
    connector_options: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    needs_refetch: bool = False
    model_version: str = CHARGER_MODEL.version


# =============================================================================
# Stage helpers
# =============================================================================

def _count(name: str, value: int):
    trace = get_trace()
    if trace:
        trace.record_count(name, value)


def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise


def _fetch_walking_minutes(criteria: FilterCriteria) -> float:
    minutes = criteria.walking_time_minutes
    if not minutes or minutes <= 0:
        return CHARGER_MODEL.filters.walking_time_min
    return minutes


def resolve_origin(
    maps: GoogleMapsClient,
    location: Optional[str] = None,
    coordinate: Any = None,
) -> Tuple[Coordinate, List[str]]:
    """Work out where to search from.

    An explicit coordinate wins.  A free-text location is geocoded; when
    geocoding fails the default center is used and a note says so.
    Raises ValueError for a coordinate that is out of range or malformed.
    """
    if coordinate is not None:
        parsed = parse_coordinate(coordinate)
        if parsed is None:
            raise ValueError(f"Invalid coordinate: {coordinate!r}")
        return parsed, []

    default = Coordinate(*DEFAULT_SEARCH_CENTER)
    if not location or not location.strip():
        return default, ["No location given; searching around the default center."]

    try:
        lat, lng = maps.geocode(location)
    except (ValueError, requests.exceptions.RequestException) as e:
        logger.warning("Geocoding %r failed, using default center: %s", location, e)
        return default, [f"Could not find \"{location}\"; searching around the default center."]
    return Coordinate(lat, lng), []


# =============================================================================
# Search
# =============================================================================

def search_chargers(
    query: str,
    api_key: str,
    criteria: FilterCriteria = DEFAULT_CRITERIA,
    origin: Any = None,
    location: Optional[str] = None,
    ocm_client: Optional[OpenChargeMapClient] = None,
) -> SearchResult:
    """Run a full search.

    Text-search failures propagate.  Geocoding, driving-distance and
    per-place charger fetch failures degrade (default center, no distances,
    zero chargers) with a note or a logged warning.
    """
    maps = GoogleMapsClient(api_key)
    ocm_client = ocm_client or OpenChargeMapClient()

    origin_coord, notes = _timed_stage("origin", resolve_origin, maps, location, origin)
    fetch_minutes = _fetch_walking_minutes(criteria)
    result = SearchResult(
        query=query,
        origin=origin_coord,
        criteria=criteria,
        fetch_walking_minutes=fetch_minutes,
        search_radius_miles=criteria.search_radius_miles,
        notes=notes,
    )

    radius_m = criteria.search_radius_miles * METERS_PER_MILE
    raw_places = _timed_stage(
        "places", maps.text_search, query, origin_coord.lat, origin_coord.lng, radius_m
    )
    places = [p for p in (place_from_raw(r) for r in raw_places) if p is not None]
    _count("places_found", len(places))
    if not places:
        result.notes.append(f"No places found for \"{query}\".")
        return result

    try:
        distances = _timed_stage(
            "distances",
            maps.driving_distances_batch,
            origin_coord.as_tuple(),
            [p.coordinate.as_tuple() for p in places],
        )
    except (ValueError, requests.exceptions.RequestException) as e:
        logger.warning("Driving distances unavailable: %s", e)
        distances = [None] * len(places)
        result.notes.append("Driving distances unavailable; places are not ranked by distance.")

    places = attach_distances(places, {p.id: d for p, d in zip(places, distances)})
    places = sort_places_by_distance(
        filter_places_within_radius(places, criteria.search_radius_miles)
    )
    _count("places_in_radius", len(places))
    if not places:
        result.notes.append(
            f"No places for \"{query}\" within {criteria.search_radius_miles:g} miles."
        )
        return result

    fetch_km = walking_minutes_to_km(fetch_minutes)
    raw_by_place = _timed_stage(
        "chargers", get_chargers_for_places, ocm_client, places, fetch_km
    )
    _count("chargers_fetched", sum(len(v) for v in raw_by_place.values()))
    correlation = _timed_stage(
        "correlate", correlate_chargers, places, raw_by_place, fetch_minutes
    )

    result.places = correlation.places
    result.chargers = correlation.chargers
    result.filter_result = _timed_stage(
        "filter", apply_filters, result.chargers, result.places, criteria
    )
    _count("chargers_matched", len(result.chargers))
    _count("chargers_shown", len(result.filter_result.filtered_chargers))
    result.connector_options = connector_options(result.chargers)
    logger.info(
        "Search %r: %d places, %d chargers, %d after filters",
        query, len(result.places), len(result.chargers),
        len(result.filter_result.filtered_chargers),
    )
    return result


def needs_refetch(
    criteria: FilterCriteria,
    fetch_walking_minutes: Optional[float],
    search_radius_miles: Optional[float],
) -> bool:
    """True when *criteria* reach past what an earlier fetch covered.

    A longer walk needs chargers the fetch radius did not include; a
    different search radius needs a new place search.  None for either
    fetch value means it is unknown and never triggers a refetch.
    """
    walk = criteria.walking_time_minutes
    if fetch_walking_minutes is not None and walk and walk > fetch_walking_minutes:
        return True
    return (
        search_radius_miles is not None
        and criteria.search_radius_miles != search_radius_miles
    )


def refilter(result: SearchResult, criteria: FilterCriteria) -> SearchResult:
    """Re-apply *criteria* to an existing search without any upstream fetch.

    needs_refetch is set when the new criteria ask for chargers the earlier
    fetch could not have returned (a longer walk) or a different radius.
    """
    return replace(
        result,
        criteria=criteria,
        filter_result=apply_filters(result.chargers, result.places, criteria),
        needs_refetch=needs_refetch(
            criteria, result.fetch_walking_minutes, result.search_radius_miles
        ),
    )


# =============================================================================
# OUTPUT
# =============================================================================

def _status_symbol(charger: Charger) -> str:
    if charger.operational_status is OperationalStatus.OPERATIONAL:
        return "✓"
    if charger.operational_status is OperationalStatus.NOT_OPERATIONAL:
        return "✗"
    return "?"


def format_result(result: SearchResult) -> str:
    """Format a search result as a readable report"""
    lines = []

    lines.append("=" * 70)
    lines.append(f"SEARCH: {result.query}")
    lines.append(f"ORIGIN: {result.origin.lat:.6f}, {result.origin.lng:.6f}")
    c = result.criteria
    active = [
        f"{name}={value}"
        for name, value in (("access", c.access), ("cost", c.cost), ("speed", c.speed))
        if value != ALL
    ]
    if c.operational_only:
        active.append("operational only")
    if c.connectors:
        active.append("connectors=" + ",".join(sorted(c.connectors)))
    lines.append(
        f"WALK: {result.fetch_walking_minutes:g} min   RADIUS: {result.search_radius_miles:g} mi"
        + (f"   FILTERS: {'; '.join(active)}" if active else "")
    )
    lines.append("=" * 70)

    filtered = result.filter_result.filtered_chargers
    by_place = {}
    for charger in filtered:
        by_place.setdefault(charger.place_id, []).append(charger)

    for place in result.filter_result.annotated_places:
        dist = place.distance_from_origin.text if place.distance_from_origin else "distance unknown"
        lines.append(f"\n{place.name} ({dist}) - {place.charger_count} chargers")
        if place.address:
            lines.append(f"  {place.address}")
        for charger in by_place.get(place.id, []):
            featured = " *" if place.featured_charger is charger else ""
            walk = ""
            if charger.distance_from_place_km is not None:
                walk = (
                    f"{format_distance(charger.distance_from_place_km)}, "
                    f"{walking_time_label(charger.distance_from_place_km)} walk, "
                )
            lines.append(
                f"  {_status_symbol(charger)} {charger.name}{featured}: {walk}"
                f"{charger.speed_label} {charger.max_power_kw:g} kW, "
                f"{charger.cost_label}, {charger.access_title}"
            )

    lines.append(f"\n{'=' * 70}")
    lines.append(
        f"CHARGERS: {len(filtered)} of {len(result.chargers)} "
        f"across {len(result.filter_result.annotated_places)} places"
    )
    if result.connector_options:
        lines.append(f"CONNECTORS SEEN: {', '.join(result.connector_options)}")
    lines.append("=" * 70)

    if result.notes:
        lines.append("\nNOTES:")
        for note in result.notes:
            lines.append(f"  • {note}")

    return "\n".join(lines)


# =============================================================================
# CLI
# =============================================================================

def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(
        description="Find places and the EV chargers within walking distance of them"
    )
    parser.add_argument("query", nargs="?", help="What to search for, e.g. \"coffee\"")
    parser.add_argument("--near", help="Address or area to search around")
    parser.add_argument("--lat", type=float, help="Origin latitude (with --lng)")
    parser.add_argument("--lng", type=float, help="Origin longitude (with --lat)")
    parser.add_argument(
        "--walk",
        type=float,
        default=CHARGER_MODEL.filters.walking_time_min,
        help="Maximum walk from place to charger, in minutes",
    )
    parser.add_argument(
        "--radius",
        type=float,
        default=CHARGER_MODEL.filters.search_radius_miles,
        help="Search radius around the origin, in miles",
    )
    parser.add_argument("--operational-only", action="store_true", help="Only operational chargers")
    parser.add_argument("--access", default=ALL, help="public/restricted/permit/parking/private/unknown")
    parser.add_argument("--cost", default=ALL, help="free or paid")
    parser.add_argument("--speed", default=ALL, help="level1/level2/dc_fast/unknown")
    parser.add_argument(
        "--connector",
        action="append",
        default=[],
        help="Connector type to require (repeatable; any one matches)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("GOOGLE_MAPS_API_KEY"),
        help="Google Maps API key (or set GOOGLE_MAPS_API_KEY env var)",
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON instead of formatted text")

    args = parser.parse_args()

    if not args.query:
        parser.print_help()
        sys.exit(1)

    if not args.api_key:
        print("Error: Google Maps API key required. Set GOOGLE_MAPS_API_KEY or use --api-key")
        sys.exit(1)

    if (args.lat is None) != (args.lng is None):
        print("Error: --lat and --lng must be given together")
        sys.exit(1)

    criteria = FilterCriteria.from_dict({
        "operational_only": args.operational_only,
        "access": args.access,
        "cost": args.cost,
        "speed": args.speed,
        "connectors": args.connector,
        "walking_time_minutes": args.walk,
        "search_radius_miles": args.radius,
    })
    origin = (args.lat, args.lng) if args.lat is not None else None

    try:
        result = search_chargers(
            args.query, args.api_key, criteria, origin=origin, location=args.near
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(search_result_to_dict(result), indent=2))
    else:
        print(format_result(result))


if __name__ == "__main__":
    main()
