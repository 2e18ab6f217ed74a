"""Tests for charger_search: origin resolution, the search pipeline, refilter
and report formatting.  Google and Open Charge Map are mocked."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from cc_trace import TraceContext, clear_trace, set_trace
from charger_search import format_result, refilter, resolve_origin, search_chargers
from conftest import ORIGIN, offset_north
from filter_pipeline import FilterCriteria
from models import Coordinate, DistanceInfo
from open_charge_map import OpenChargeMapRateLimitError


def _place_record(id, coord):
    return {
        "id": id,
        "name": f"Cafe {id}",
        "address": f"{id} Market St",
        "coordinate": {"lat": coord.lat, "lng": coord.lng},
        "rating": 4.2,
        "ratingCount": 10,
        "types": ["cafe"],
    }


def _distance(meters):
    return DistanceInfo(text=f"{meters / 1609.34:.1f} mi", meters=meters, duration_text="4 mins", seconds=240)


@pytest.fixture()
def maps():
    """Patched GoogleMapsClient instance used by search_chargers."""
    with patch("charger_search.GoogleMapsClient") as cls:
        instance = MagicMock()
        cls.return_value = instance
        yield instance


# =========================================================================
# Origin
# =========================================================================

class TestResolveOrigin:
    def test_explicit_coordinate_wins(self):
        maps = MagicMock()
        coord, notes = resolve_origin(maps, "Oakland", (37.8, -122.27))
        assert coord == Coordinate(37.8, -122.27)
        assert notes == []
        maps.geocode.assert_not_called()

    def test_invalid_coordinate_raises(self):
        with pytest.raises(ValueError):
            resolve_origin(MagicMock(), None, (137.8, -122.27))

    def test_geocoded_location(self):
        maps = MagicMock()
        maps.geocode.return_value = (37.8, -122.27)
        assert resolve_origin(maps, "Oakland") == (Coordinate(37.8, -122.27), [])

    def test_geocode_failure_falls_back_to_default(self):
        maps = MagicMock()
        maps.geocode.side_effect = ValueError("Geocoding failed: ZERO_RESULTS")
        coord, notes = resolve_origin(maps, "Atlantis")
        assert coord == Coordinate(37.7749, -122.4194)
        assert "Atlantis" in notes[0]

    def test_geocode_timeout_falls_back_to_default(self):
        maps = MagicMock()
        maps.geocode.side_effect = requests.exceptions.Timeout("read timed out")
        coord, notes = resolve_origin(maps, "Oakland")
        assert coord == Coordinate(37.7749, -122.4194)
        assert "Oakland" in notes[0]

    def test_nothing_given_uses_default(self):
        coord, notes = resolve_origin(MagicMock())
        assert coord == Coordinate(37.7749, -122.4194)
        assert len(notes) == 1


# =========================================================================
# Search pipeline
# =========================================================================

class TestSearchChargers:
    def _setup(self, maps, raw_charger):
        near = offset_north(ORIGIN, 0.5)
        mid = offset_north(ORIGIN, 1.0)
        far = offset_north(ORIGIN, 30.0)
        maps.text_search.return_value = [
            _place_record("mid", mid),
            _place_record("far", far),
            _place_record("near", near),
        ]
        maps.driving_distances_batch.return_value = [_distance(1000), _distance(40000), _distance(500)]

        ocm = MagicMock()
        chargers = {
            near: [raw_charger(id=1, coord=offset_north(near, 0.1), usage_cost="Free")],
            mid: [
                raw_charger(id=2, coord=offset_north(mid, 0.2), power_kw=(50,)),
                raw_charger(id=3, coord=offset_north(mid, 0.9)),
            ],
        }
        ocm.get_nearby_chargers.side_effect = lambda coord, km: chargers.get(coord, [])
        return ocm

    def test_full_pipeline(self, maps, raw_charger):
        ocm = self._setup(maps, raw_charger)
        result = search_chargers("coffee", "key", FilterCriteria(), origin=ORIGIN, ocm_client=ocm)

        # text search radius is miles * 1609.34
        args = maps.text_search.call_args[0]
        assert args[:3] == ("coffee", ORIGIN.lat, ORIGIN.lng)
        assert args[3] == pytest.approx(16093.4)

        # far place dropped by the 10 mile radius, rest sorted by distance
        assert [p.id for p in result.places] == ["near", "mid"]
        assert sorted(c.id for c in result.chargers) == [1, 2]
        assert [p.charger_count for p in result.filter_result.annotated_places] == [1, 1]
        assert result.connector_options == ["J1772"]
        assert result.notes == []

        # chargers fetched with a radius equal to the walking threshold
        km = ocm.get_nearby_chargers.call_args[0][1]
        assert km == pytest.approx(0.4157, abs=1e-3)

    def test_filters_applied(self, maps, raw_charger):
        ocm = self._setup(maps, raw_charger)
        result = search_chargers("coffee", "key", FilterCriteria(cost="free"), origin=ORIGIN, ocm_client=ocm)
        assert [c.id for c in result.filter_result.filtered_chargers] == [1]
        assert [p.charger_count for p in result.filter_result.annotated_places] == [1, 0]

    def test_no_places(self, maps):
        maps.text_search.return_value = []
        result = search_chargers("zzz", "key", origin=ORIGIN, ocm_client=MagicMock())
        assert result.places == []
        assert result.chargers == []
        assert "No places found" in result.notes[0]
        maps.driving_distances_batch.assert_not_called()

    def test_all_places_outside_radius(self, maps):
        maps.text_search.return_value = [_place_record("far", offset_north(ORIGIN, 30))]
        maps.driving_distances_batch.return_value = [_distance(40000)]
        ocm = MagicMock()
        result = search_chargers("coffee", "key", origin=ORIGIN, ocm_client=ocm)
        assert result.places == []
        assert "within 10 miles" in result.notes[0]
        ocm.get_nearby_chargers.assert_not_called()

    def test_distance_failure_degrades(self, maps):
        maps.text_search.return_value = [_place_record("a", offset_north(ORIGIN, 1))]
        maps.driving_distances_batch.side_effect = ValueError("Distance Matrix API failed: OVER_QUERY_LIMIT")
        ocm = MagicMock()
        ocm.get_nearby_chargers.return_value = []
        result = search_chargers("coffee", "key", origin=ORIGIN, ocm_client=ocm)
        assert [p.id for p in result.places] == ["a"]
        assert result.places[0].distance_from_origin is None
        assert any("Driving distances unavailable" in n for n in result.notes)

    @pytest.mark.parametrize("error", [
        requests.exceptions.Timeout("read timed out"),
        requests.exceptions.ConnectionError("connection refused"),
    ])
    def test_distance_network_failure_degrades(self, maps, error):
        maps.text_search.return_value = [
            _place_record("a", offset_north(ORIGIN, 1)),
            _place_record("b", offset_north(ORIGIN, 2)),
        ]
        maps.driving_distances_batch.side_effect = error
        ocm = MagicMock()
        ocm.get_nearby_chargers.return_value = []
        result = search_chargers("coffee", "key", origin=ORIGIN, ocm_client=ocm)
        assert [p.id for p in result.places] == ["a", "b"]
        assert all(p.distance_from_origin is None for p in result.places)
        assert any("Driving distances unavailable" in n for n in result.notes)
        assert ocm.get_nearby_chargers.call_count == 2

    def test_charger_fetch_failure_is_zero_chargers(self, maps, raw_charger):
        maps.text_search.return_value = [_place_record("a", offset_north(ORIGIN, 1))]
        maps.driving_distances_batch.return_value = [_distance(1000)]
        ocm = MagicMock()
        ocm.get_nearby_chargers.side_effect = OpenChargeMapRateLimitError("429")
        result = search_chargers("coffee", "key", origin=ORIGIN, ocm_client=ocm)
        assert result.chargers == []
        assert result.filter_result.annotated_places[0].charger_count == 0

    def test_text_search_failure_propagates(self, maps):
        maps.text_search.side_effect = ValueError("Text Search API failed: REQUEST_DENIED")
        with pytest.raises(ValueError, match="REQUEST_DENIED"):
            search_chargers("coffee", "key", origin=ORIGIN, ocm_client=MagicMock())

    def test_stages_traced(self, maps, raw_charger):
        ocm = self._setup(maps, raw_charger)
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        try:
            search_chargers("coffee", "key", origin=ORIGIN, ocm_client=ocm)
        finally:
            clear_trace()
        assert [s.stage_name for s in ctx.stages] == [
            "origin", "places", "distances", "chargers", "correlate", "filter",
        ]
        assert ctx.summary_dict()["final_outcome"] == "success"
        assert ctx.counts == {
            "places_found": 3,
            "places_in_radius": 2,
            "chargers_fetched": 3,
            "chargers_matched": 2,
            "chargers_shown": 2,
        }


# =========================================================================
# Refilter and output
# =========================================================================

class TestRefilter:
    def _result(self, maps, raw_charger):
        ocm = TestSearchChargers()._setup(maps, raw_charger)
        return search_chargers("coffee", "key", FilterCriteria(walking_time_minutes=5), origin=ORIGIN, ocm_client=ocm)

    def test_narrower_criteria_no_refetch(self, maps, raw_charger):
        result = self._result(maps, raw_charger)
        again = refilter(result, FilterCriteria(speed="dc_fast", walking_time_minutes=3))
        assert [c.id for c in again.filter_result.filtered_chargers] == [2]
        assert again.needs_refetch is False
        assert result.criteria.speed == "all"

    def test_longer_walk_needs_refetch(self, maps, raw_charger):
        result = self._result(maps, raw_charger)
        assert refilter(result, FilterCriteria(walking_time_minutes=15)).needs_refetch is True

    def test_radius_change_needs_refetch(self, maps, raw_charger):
        result = self._result(maps, raw_charger)
        assert refilter(result, FilterCriteria(search_radius_miles=20)).needs_refetch is True


class TestFormatResult:
    def test_report(self, maps, raw_charger):
        ocm = TestSearchChargers()._setup(maps, raw_charger)
        result = search_chargers("coffee", "key", FilterCriteria(cost="free"), origin=ORIGIN, ocm_client=ocm)
        report = format_result(result)
        assert "SEARCH: coffee" in report
        assert "FILTERS: cost=free" in report
        assert "Cafe near" in report
        assert "CHARGERS: 1 of 2 across 2 places" in report

    def test_notes_listed(self, maps):
        maps.text_search.return_value = []
        result = search_chargers("zzz", "key", origin=ORIGIN, ocm_client=MagicMock())
        assert "NOTES:" in format_result(result)
