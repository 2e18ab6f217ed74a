"""
Google Maps Platform client: geocoding, text search, driving distances.

Only what the search flow needs.  Responses are reshaped into the plain
place-record and DistanceInfo forms the correlation engine consumes, so
nothing downstream knows about Google's payload layout.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from cc_trace import get_trace
from models import DistanceInfo

logger = logging.getLogger(__name__)


class GoogleMapsClient:
    """Client for Google Maps APIs"""

    # Per-call timeout in seconds.  Keeps any single request from hanging
    # the whole search.
    DEFAULT_TIMEOUT = 10

    # Distance Matrix allows up to 25 destinations per request.
    DISTANCE_MATRIX_MAX_DESTINATIONS = 25

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with automatic trace recording."""
        t0 = time.time()
        response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
        elapsed_ms = int((time.time() - t0) * 1000)
        data = response.json()
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        return data

    def geocode(self, address: str) -> Tuple[float, float]:
        """Convert address to lat/lng coordinates."""
        url = f"{self.base_url}/geocode/json"
        params = {"address": address, "key": self.api_key}
        data = self._traced_get("geocode", url, params)

        if data.get("status") != "OK" or not data.get("results"):
            raise ValueError(f"Geocoding failed: {data.get('status')}")

        location = data["results"][0]["geometry"]["location"]
        return location["lat"], location["lng"]

    def text_search(
        self,
        query: str,
        lat: float,
        lng: float,
        radius_meters: float = 16093,
    ) -> List[Dict[str, Any]]:
        """Search for places matching *query*, biased toward (lat, lng).

        Returns place records shaped {id, name, address, coordinate, rating,
        ratingCount, types}.  Results without a location are dropped.
        """
        url = f"{self.base_url}/place/textsearch/json"
        params = {
            "query": query,
            "location": f"{lat},{lng}",
            "radius": int(radius_meters),
            "key": self.api_key,
        }
        data = self._traced_get("text_search", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            raise ValueError(f"Text Search API failed: {data.get('status')}")

        places = []
        for result in data.get("results", []):
            record = _place_record(result)
            if record is not None:
                places.append(record)
        logger.info("Text search %r returned %d places", query, len(places))
        return places

    def driving_distances_batch(
        self,
        origin: Tuple[float, float],
        destinations: List[Tuple[float, float]],
    ) -> List[Optional[DistanceInfo]]:
        """
        Driving distance from one origin to many destinations (imperial units).
        Batches into requests of up to 25 destinations per call (API limit).
        Returns one value per destination; None where no route was found.
        """
        if not destinations:
            return []
        results: List[Optional[DistanceInfo]] = []
        for i in range(0, len(destinations), self.DISTANCE_MATRIX_MAX_DESTINATIONS):
            chunk = destinations[i : i + self.DISTANCE_MATRIX_MAX_DESTINATIONS]
            url = f"{self.base_url}/distancematrix/json"
            params = {
                "origins": f"{origin[0]},{origin[1]}",
                "destinations": "|".join(f"{d[0]},{d[1]}" for d in chunk),
                "mode": "driving",
                "units": "imperial",
                "key": self.api_key,
            }
            data = self._traced_get("driving_distances_batch", url, params)
            if data.get("status") != "OK":
                raise ValueError(f"Distance Matrix API failed: {data.get('status')}")
            rows = data.get("rows")
            elements = None
            if isinstance(rows, list) and rows and isinstance(rows[0], dict):
                elements = rows[0].get("elements")
            if not isinstance(elements, list):
                raise ValueError("Distance Matrix API failed: malformed rows in response")
            for j in range(len(chunk)):
                elem = elements[j] if j < len(elements) else {}
                results.append(_distance_info(elem))
        return results


def _place_record(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    location = (result.get("geometry") or {}).get("location") or {}
    lat, lng = location.get("lat"), location.get("lng")
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return None
    return {
        "id": result.get("place_id", ""),
        "name": result.get("name", ""),
        "address": result.get("formatted_address") or result.get("vicinity", ""),
        "coordinate": {"lat": lat, "lng": lng},
        "rating": result.get("rating"),
        "ratingCount": result.get("user_ratings_total"),
        "types": result.get("types") or [],
    }


def _distance_info(elem: Dict[str, Any]) -> Optional[DistanceInfo]:
    if not isinstance(elem, dict) or elem.get("status") != "OK":
        return None
    distance = elem.get("distance") or {}
    duration = elem.get("duration") or {}
    return DistanceInfo(
        text=distance.get("text", ""),
        meters=distance.get("value"),
        duration_text=duration.get("text", ""),
        seconds=duration.get("value"),
    )
