"""Shared fixtures for the ChargeCheck test suite.

Provides a Flask test client plus factories for raw Open Charge Map POIs
and Place objects positioned at exact distances from a reference point.
"""

import math
import os

import pytest

# Ensure Google Maps key is present (search route checks this) and that no
# real Sentry / Open Charge Map configuration leaks into tests.
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")
os.environ.pop("SENTRY_DSN", None)
os.environ.pop("OPEN_CHARGE_MAP_API_KEY", None)

from app import app, limiter  # noqa: E402
from models import Coordinate, DistanceInfo, Place  # noqa: E402

ORIGIN = Coordinate(37.7749, -122.4194)

# km per degree of latitude on the 6371 km sphere used by geo_math
KM_PER_DEG_LAT = 6371 * math.pi / 180


def offset_north(coord, km):
    """Coordinate exactly *km* due north of *coord* (Haversine-exact)."""
    return Coordinate(coord.lat + km / KM_PER_DEG_LAT, coord.lng)


@pytest.fixture()
def client():
    """Flask test client with rate limits disabled."""
    app.config["TESTING"] = True
    limiter.enabled = False
    with app.test_client() as c:
        yield c
    limiter.enabled = True


@pytest.fixture()
def raw_charger():
    """Factory for raw Open Charge Map POI dicts."""

    def _make(
        id=1,
        coord=ORIGIN,
        title="Test Charger",
        power_kw=(7.2,),
        connection_type="J1772",
        usage_cost=None,
        usage_type=None,
        status_type=None,
        **extra,
    ):
        poi = {
            "ID": id,
            "AddressInfo": {
                "Title": title,
                "AddressLine1": "1 Main St",
                "Latitude": coord.lat if coord else None,
                "Longitude": coord.lng if coord else None,
            },
            "Connections": [
                {
                    "ConnectionType": {"Title": connection_type},
                    "PowerKW": kw,
                    "Level": {"Title": "Level 2 : Medium (Over 2kW)"},
                }
                for kw in power_kw
            ],
            "UsageCost": usage_cost,
            "UsageType": usage_type,
            "StatusType": status_type,
        }
        poi.update(extra)
        return poi

    return _make


@pytest.fixture()
def make_place():
    """Factory for Place objects at *origin_km* north of ORIGIN."""

    def _make(id="p1", origin_km=0.5, name=None, meters=None, with_distance=True):
        coord = offset_north(ORIGIN, origin_km)
        distance = None
        if with_distance:
            m = origin_km * 1000 if meters is None else meters
            distance = DistanceInfo(text=f"{m / 1609.34:.1f} mi", meters=m)
        return Place(
            id=id,
            name=name or f"Place {id}",
            address=f"{id} Test Ave",
            coordinate=coord,
            distance_from_origin=distance,
        )

    return _make
