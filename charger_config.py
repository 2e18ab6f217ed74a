"""
Charger policy configuration for ChargeCheck.

Owns every numeric constant that affects how a charger is classified or
whether it survives a filter pass.  Presentation strings live with the
code that renders them (charger_normalizer.py, charger_search.py).

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

from dataclasses import dataclass
from typing import Tuple


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class PowerTierThresholds:
    """Upper bounds (inclusive, kW) for each charging-speed tier.

    Anything above level2_max_kw is DC fast.
    """
    level1_max_kw: float = 3.7
    level2_max_kw: float = 22.0


@dataclass(frozen=True)
class WalkingModel:
    """Average pedestrian speed and the unit factors used to apply it."""
    speed_mph: float = 3.1
    miles_per_km: float = 0.621371
    km_per_mile: float = 1.60934


@dataclass(frozen=True)
class FilterDefaults:
    """Default and allowed values for the user-facing filter controls."""
    walking_time_min: int = 5
    walking_time_bounds: Tuple[int, int] = (1, 30)
    search_radius_miles: int = 10
    search_radius_bounds: Tuple[int, int] = (1, 50)


@dataclass(frozen=True)
class OpenChargeMapDefaults:
    """Request parameters for the Open Charge Map POI endpoint."""
    max_results: int = 100
    distance_unit: str = "KM"


@dataclass(frozen=True)
class ChargerModel:
    """Top-level container for all charger policy parameters.

    A single module-level instance (CHARGER_MODEL) is the source of truth.
    Bump `version` on every change that alters classification or filtering.
    """
    version: str
    power_tiers: PowerTierThresholds
    walking: WalkingModel
    filters: FilterDefaults
    open_charge_map: OpenChargeMapDefaults
    # Status-title substrings (lowercase) that mark a site as not operational.
    non_operational_keywords: Tuple[str, ...]


# =============================================================================
# CHARGER_MODEL: current production values
# =============================================================================

CHARGER_MODEL = ChargerModel(
    version="1.2.0",
    power_tiers=PowerTierThresholds(),
    walking=WalkingModel(),
    filters=FilterDefaults(),
    open_charge_map=OpenChargeMapDefaults(),
    non_operational_keywords=(
        "unavailable",
        "planned",
        "removed",
        "decommissioned",
    ),
)

# Places API radius conversion
METERS_PER_MILE = 1609.34

# Used when neither a coordinate nor a resolvable location is supplied.
DEFAULT_SEARCH_CENTER = (37.7749, -122.4194)  # San Francisco


def clamp(value: float, bounds: Tuple[int, int]) -> float:
    """Clamp *value* into the inclusive (low, high) slider range."""
    low, high = bounds
    return max(low, min(high, value))
