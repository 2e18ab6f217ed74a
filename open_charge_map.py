"""
Open Charge Map HTTP layer.

All charger fetches go through this module.  It provides:
- Optional API key (public access works, with lower rate limits)
- Retry with backoff on 429/5xx/timeouts (2 retries, 2s/4s)
- cc_trace integration for observability
- A per-place concurrent fetch helper that turns a failed place into an
  empty list, so correlation sees "zero chargers" instead of an error

Raw POI dicts are returned untouched; charger_normalizer.py owns parsing.
"""

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence

import requests

from cc_trace import get_trace, set_trace
from charger_config import CHARGER_MODEL
from models import Coordinate, Place

logger = logging.getLogger(__name__)

# Value shipped in .env.example; treated the same as no key.
PLACEHOLDER_KEY = "your_open_charge_map_api_key_here"


class OpenChargeMapError(Exception):
    """Raised when Open Charge Map fails after all retries are exhausted."""

    retryable = False


class OpenChargeMapRateLimitError(OpenChargeMapError):
    """Raised on HTTP 429 after all retries are exhausted."""

    retryable = True


class OpenChargeMapServerError(OpenChargeMapError):
    """5xx, timeouts and connection failures."""

    retryable = True


class OpenChargeMapAuthError(OpenChargeMapError):
    """Raised when the configured API key is rejected (401/403)."""

    pass


class OpenChargeMapClient:
    DEFAULT_TIMEOUT = 15  # seconds
    MAX_RETRIES = 2
    RETRY_BACKOFF = [2, 4]  # seconds

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        if api_key is None:
            api_key = os.environ.get("OPEN_CHARGE_MAP_API_KEY")
        self.api_key = api_key if api_key and api_key != PLACEHOLDER_KEY else None
        self.base_url = base_url or os.environ.get(
            "OPEN_CHARGE_MAP_BASE_URL",
            "https://api.openchargemap.io/v3/poi",
        )

    def get_nearby_chargers(
        self,
        coordinate: Coordinate,
        distance_km: float,
        max_results: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch raw charger POIs within *distance_km* of *coordinate*.

        Raises:
            OpenChargeMapAuthError: the API key was rejected.
            OpenChargeMapRateLimitError / OpenChargeMapServerError: still
                failing after MAX_RETRIES retries.
            OpenChargeMapError: any other non-retryable failure.
        """
        defaults = CHARGER_MODEL.open_charge_map
        params = {
            "latitude": coordinate.lat,
            "longitude": coordinate.lng,
            "distance": distance_km,
            "distanceunit": defaults.distance_unit,
            "maxresults": max_results or defaults.max_results,
        }
        if self.api_key:
            params["key"] = self.api_key

        for attempt in range(1 + self.MAX_RETRIES):
            try:
                chargers = self._do_request(params, retried=attempt > 0)
                logger.info(
                    "Open Charge Map returned %d chargers near (%.5f, %.5f)",
                    len(chargers), coordinate.lat, coordinate.lng,
                )
                return chargers
            except OpenChargeMapError as e:
                if not e.retryable or attempt >= self.MAX_RETRIES:
                    raise
                sleep_time = self.RETRY_BACKOFF[attempt]
                logger.info(
                    "Open Charge Map error (attempt %d/%d), sleeping %ds before retry: %s",
                    attempt + 1,
                    1 + self.MAX_RETRIES,
                    sleep_time,
                    e,
                )
                time.sleep(sleep_time)

        # Should not reach here, but safety net
        raise OpenChargeMapError("Open Charge Map request failed after all retries")

    def _do_request(self, params: Dict[str, Any], retried: bool = False) -> List[Dict[str, Any]]:
        """Make a single HTTP request.  Fresh session per call (thread-safe)."""
        start = time.monotonic()
        trace = get_trace()

        def _record(status_code: int, provider_status: str = ""):
            if trace:
                trace.record_api_call(
                    service="open_charge_map",
                    endpoint="poi",
                    elapsed_ms=int((time.monotonic() - start) * 1000),
                    status_code=status_code,
                    provider_status=provider_status,
                    retried=retried,
                )

        try:
            session = requests.Session()
            session.trust_env = False
            resp = session.get(self.base_url, params=params, timeout=self.DEFAULT_TIMEOUT)
        except requests.exceptions.Timeout:
            _record(0, "timeout")
            raise OpenChargeMapServerError(
                f"Open Charge Map request timeout after {self.DEFAULT_TIMEOUT}s"
            )
        except requests.exceptions.RequestException as e:
            _record(0, "exception")
            raise OpenChargeMapServerError(
                f"Network error: could not reach Open Charge Map: {e}"
            ) from e

        status_code = resp.status_code
        if status_code in (401, 403):
            _record(status_code, "auth_error")
            raise OpenChargeMapAuthError(
                "Open Charge Map API key is invalid. Check OPEN_CHARGE_MAP_API_KEY "
                "or unset it to use public access."
            )
        if status_code == 429:
            _record(status_code, "rate_limit")
            raise OpenChargeMapRateLimitError("Open Charge Map 429 Too Many Requests")
        if status_code >= 500:
            _record(status_code, "server_error")
            raise OpenChargeMapServerError(f"Open Charge Map HTTP {status_code}")
        if status_code >= 400:
            _record(status_code, "http_error")
            raise OpenChargeMapError(f"Open Charge Map HTTP {status_code}")

        try:
            data = resp.json()
        except ValueError:
            _record(status_code, "parse_error")
            raise OpenChargeMapError(
                f"Open Charge Map returned non-JSON response (HTTP {status_code})"
            )

        _record(status_code)
        if not isinstance(data, list):
            logger.warning("Open Charge Map returned %s instead of a list", type(data).__name__)
            return []
        return data


def get_chargers_for_places(
    client: OpenChargeMapClient,
    places: Sequence[Place],
    distance_km: float,
    max_workers: int = 8,
) -> Dict[str, List[Dict[str, Any]]]:
    """Fetch raw chargers around every place concurrently.

    Returns place id -> raw POI list.  A place whose fetch fails maps to an
    empty list (logged), so one bad request never sinks the whole search.
    """
    parent_trace = get_trace()

    def _fetch(place: Place) -> List[Dict[str, Any]]:
        set_trace(parent_trace)
        try:
            return client.get_nearby_chargers(place.coordinate, distance_km)
        except OpenChargeMapError as e:
            logger.warning("Charger fetch failed for place %s (%s): %s", place.id, place.name, e)
            return []

    results: Dict[str, List[Dict[str, Any]]] = {}
    if not places:
        return results
    with ThreadPoolExecutor(max_workers=min(max_workers, len(places))) as pool:
        futures = {place.id: pool.submit(_fetch, place) for place in places}
        for place_id, future in futures.items():
            results[place_id] = future.result()
    return results
