"""Tests for the Flask JSON API: health check, search and re-filter routes."""

from unittest.mock import patch

import app as app_module
from cc_trace import get_trace
from charger_normalizer import normalize_charger
from charger_search import SearchResult
from conftest import ORIGIN, offset_north
from filter_pipeline import FilterCriteria, apply_filters
from models import Coordinate
from open_charge_map import OpenChargeMapAuthError
from serializers import charger_to_dict, place_to_dict


def _search_result(make_place, raw_charger, criteria=None):
    criteria = criteria or FilterCriteria()
    place = make_place("p1")
    charger = normalize_charger(raw_charger(id=1, coord=offset_north(place.coordinate, 0.1), usage_cost="Free"))
    charger.place_id = "p1"
    charger.distance_from_place_km = 0.1
    return SearchResult(
        query="coffee",
        origin=ORIGIN,
        criteria=criteria,
        fetch_walking_minutes=5,
        search_radius_miles=10,
        places=[place],
        chargers=[charger],
        filter_result=apply_filters([charger], [place], criteria),
        connector_options=["J1772"],
    )


# =========================================================================
# Health check
# =========================================================================

class TestHealthz:
    def test_ok(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_degraded_without_key(self, client, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY")
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json() == {
            "status": "degraded",
            "missing_keys": ["GOOGLE_MAPS_API_KEY"],
            "model_version": "1.2.0",
        }


# =========================================================================
# /api/search
# =========================================================================

class TestApiSearch:
    def test_missing_query(self, client):
        resp = client.post("/api/search", json={"location": "Oakland"})
        assert resp.status_code == 400
        assert "request_id" in resp.get_json()

    def test_bad_coordinates(self, client):
        resp = client.post("/api/search", json={"query": "coffee", "lat": 200, "lng": 0})
        assert resp.status_code == 400

    def test_half_coordinate(self, client):
        resp = client.post("/api/search", json={"query": "coffee", "lat": 37.7})
        assert resp.status_code == 400

    def test_missing_config(self, client, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY")
        resp = client.post("/api/search", json={"query": "coffee"})
        assert resp.status_code == 503
        assert resp.get_json()["missing_keys"] == ["GOOGLE_MAPS_API_KEY"]

    @patch("app.search_chargers")
    def test_success(self, mock_search, client, make_place, raw_charger):
        mock_search.return_value = _search_result(make_place, raw_charger)
        resp = client.post("/api/search", json={
            "query": "coffee",
            "lat": 37.7749,
            "lng": -122.4194,
            "filters": {"cost": "free", "walkingTimeMinutes": 10},
        })

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["query"] == "coffee"
        assert body["places"][0]["charger_count"] == 1
        assert body["places"][0]["featured_charger"]["id"] == 1
        assert body["chargers"][0]["is_operational"] is None
        assert body["filtered_chargers"][0]["is_free"] is True
        assert body["request_id"] == resp.headers["X-Request-ID"]

        args, kwargs = mock_search.call_args
        assert args[0] == "coffee"
        assert args[2] == FilterCriteria(cost="free", walking_time_minutes=10)
        assert kwargs["origin"] == Coordinate(37.7749, -122.4194)
        assert kwargs["location"] is None

    @patch("app.search_chargers")
    def test_location_passed_through(self, mock_search, client, make_place, raw_charger):
        mock_search.return_value = _search_result(make_place, raw_charger)
        client.post("/api/search", json={"query": "coffee", "location": "  Oakland, CA "})
        assert mock_search.call_args.kwargs["location"] == "Oakland, CA"
        assert mock_search.call_args.kwargs["origin"] is None

    @patch("app.search_chargers", side_effect=ValueError("Text Search API failed: REQUEST_DENIED"))
    def test_google_failure_is_502(self, mock_search, client):
        resp = client.post("/api/search", json={"query": "coffee"})
        assert resp.status_code == 502
        assert "REQUEST_DENIED" in resp.get_json()["error"]

    @patch("app.search_chargers", side_effect=OpenChargeMapAuthError("bad key"))
    def test_ocm_failure_is_502(self, mock_search, client):
        resp = client.post("/api/search", json={"query": "coffee"})
        assert resp.status_code == 502

    def test_scalar_connectors_filter_is_ignored(self, client, make_place, raw_charger):
        with patch("app.search_chargers") as mock_search:
            mock_search.return_value = _search_result(make_place, raw_charger)
            resp = client.post("/api/search", json={"query": "coffee", "filters": {"connectors": 5}})
        assert resp.status_code == 200
        assert mock_search.call_args[0][2].connectors == frozenset()


class TestApiSearchDebugTrace:
    def _traced_search(self, make_place, raw_charger):
        def _search(*args, **kwargs):
            trace = get_trace()
            trace.start_stage("places")
            trace.record_api_call("google_maps", "text_search", 12, 200, provider_status="OK")
            trace.record_stage("places", 1000.0, 1000.012)
            return _search_result(make_place, raw_charger)
        return _search

    def test_trace_returned_when_enabled(self, client, monkeypatch, make_place, raw_charger):
        monkeypatch.setattr(app_module, "DEBUG_TRACE_ENABLED", True)
        with patch("app.search_chargers", side_effect=self._traced_search(make_place, raw_charger)):
            resp = client.post("/api/search", json={"query": "coffee", "debug_trace": True})
        trace = resp.get_json()["trace"]
        assert trace["trace_id"] == resp.headers["X-Request-ID"]
        assert trace["query"] == "coffee"
        assert trace["stages"][0]["stage"] == "places"
        assert trace["api_calls"][0]["stage"] == "places"

    def test_trace_hidden_when_disabled(self, client, monkeypatch, make_place, raw_charger):
        monkeypatch.setattr(app_module, "DEBUG_TRACE_ENABLED", False)
        with patch("app.search_chargers", side_effect=self._traced_search(make_place, raw_charger)):
            resp = client.post("/api/search", json={"query": "coffee", "debug_trace": True})
        assert "trace" not in resp.get_json()

    def test_trace_not_requested(self, client, monkeypatch, make_place, raw_charger):
        monkeypatch.setattr(app_module, "DEBUG_TRACE_ENABLED", True)
        with patch("app.search_chargers", side_effect=self._traced_search(make_place, raw_charger)):
            resp = client.post("/api/search", json={"query": "coffee"})
        assert "trace" not in resp.get_json()

    def test_trace_on_upstream_failure(self, client, monkeypatch):
        monkeypatch.setattr(app_module, "DEBUG_TRACE_ENABLED", True)
        with patch("app.search_chargers", side_effect=ValueError("Text Search API failed: REQUEST_DENIED")):
            resp = client.post("/api/search", json={"query": "coffee", "debug_trace": True})
        assert resp.status_code == 502
        assert resp.get_json()["trace"]["final_outcome"] == "empty"


# =========================================================================
# /api/filter
# =========================================================================

class TestApiFilter:
    def _payload(self, make_place, raw_charger, **filters):
        place = make_place("p1")
        free = normalize_charger(raw_charger(id=1, coord=offset_north(place.coordinate, 0.1), usage_cost="Free"))
        paid = normalize_charger(raw_charger(id=2, coord=offset_north(place.coordinate, 0.2), power_kw=(50,)))
        for c in (free, paid):
            c.place_id = "p1"
        return {
            "chargers": [charger_to_dict(free), charger_to_dict(paid)],
            "places": [place_to_dict(place)],
            "filters": filters,
            "fetch_walking_minutes": 5,
        }

    def test_refilter(self, client, make_place, raw_charger):
        resp = client.post("/api/filter", json=self._payload(make_place, raw_charger, speed="dc_fast"))
        assert resp.status_code == 200
        body = resp.get_json()
        assert [c["id"] for c in body["filtered_chargers"]] == [2]
        assert body["places"][0]["charger_count"] == 1
        assert body["places"][0]["featured_charger"]["id"] == 2
        assert body["needs_refetch"] is False
        assert body["connector_options"] == ["J1772"]

    def test_longer_walk_flags_refetch(self, client, make_place, raw_charger):
        resp = client.post("/api/filter", json=self._payload(make_place, raw_charger, walkingTimeMinutes=20))
        assert resp.get_json()["needs_refetch"] is True

    def test_radius_change_flags_refetch(self, client, make_place, raw_charger):
        payload = self._payload(make_place, raw_charger, searchRadiusMiles=25)
        payload["search_radius_miles"] = 10
        assert client.post("/api/filter", json=payload).get_json()["needs_refetch"] is True

    def test_same_radius_no_refetch(self, client, make_place, raw_charger):
        payload = self._payload(make_place, raw_charger, searchRadiusMiles=10)
        payload["search_radius_miles"] = 10
        assert client.post("/api/filter", json=payload).get_json()["needs_refetch"] is False

    def test_scalar_connectors_filter_is_ignored(self, client, make_place, raw_charger):
        payload = self._payload(make_place, raw_charger, connectors=5)
        resp = client.post("/api/filter", json=payload)
        assert resp.status_code == 200
        assert len(resp.get_json()["filtered_chargers"]) == 2

    def test_empty_lists_with_scalar_connectors(self, client):
        resp = client.post("/api/filter", json={"chargers": [], "places": [], "filters": {"connectors": 5}})
        assert resp.status_code == 200
        assert resp.get_json()["filters"]["connectors"] == []

    def test_requires_lists(self, client):
        resp = client.post("/api/filter", json={"chargers": "nope"})
        assert resp.status_code == 400

    def test_non_object_body(self, client):
        resp = client.post("/api/filter", json=[1, 2, 3])
        assert resp.status_code == 400


class TestErrorHandlers:
    def test_404_is_json(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Not found"

    def test_405_is_json(self, client):
        resp = client.get("/api/search")
        assert resp.status_code == 405
