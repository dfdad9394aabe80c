"""
Tests for Overpass Parser

Key requirements:
- Height: `height` tag (comma decimals), then levels x 3.5 m, then 15 m
- Relations use their first outer way, which is not emitted again
- Places classified eatery/pub/park, unsupported amenities skipped
- Outdoor seating inferred from several tag conventions
"""

import json

import pytest

from geo_models import PlaceType
from overpass_parser import classify_place, estimate_height, infer_outdoor_seating, parse_buildings, parse_places
from providers.fake_providers import FIXTURES_ROOT


def load_fixture(name):
    with (FIXTURES_ROOT / name / "data.json").open("r", encoding="utf-8") as f:
        return json.load(f)


class TestEstimateHeight:
    @pytest.mark.parametrize("tags,expected", [
        ({"height": "30"}, 30.0),
        ({"height": "12,5 m"}, 12.5),
        ({"height": "7.2 m", "building:levels": "9"}, 7.2),
        ({"height": "0", "building:levels": "2"}, 7.0),
        ({"height": "tall", "building:levels": "4"}, 14.0),
        ({"building:levels": "many"}, 15.0),
        ({}, 15.0),
    ])
    def test_height_rules(self, tags, expected):
        """Explicit height, then levels x 3.5 m, then 15 m default."""
        assert estimate_height(tags) == pytest.approx(expected)


class TestParseBuildings:
    def test_fixture(self):
        """Fixture ways and relation parse with their heights."""
        buildings = {b.id: b for b in parse_buildings(load_fixture("buildings"))}

        assert set(buildings) == {"way-1001", "way-1002", "relation-2001"}
        assert buildings["way-1001"].height == pytest.approx(30.0)
        assert buildings["way-1002"].height == pytest.approx(14.0)
        assert buildings["relation-2001"].height == pytest.approx(12.5)

    def test_rings_closed(self):
        """Every footprint ring is closed."""
        for building in parse_buildings(load_fixture("buildings")):
            assert building.polygon[0] == building.polygon[-1]
            assert len(building.polygon) == 5

    def test_unresolved_nodes_dropped(self):
        """Way with a missing node -> skipped."""
        data = {
            "elements": [
                {"type": "node", "id": 1, "lat": 46.0, "lon": 14.0},
                {"type": "node", "id": 2, "lat": 46.0, "lon": 14.001},
                {"type": "way", "id": 10, "nodes": [1, 2, 3], "tags": {"building": "yes"}},
            ]
        }
        assert parse_buildings(data) == []

    def test_empty_response(self):
        """No elements -> no buildings."""
        assert parse_buildings({}) == []


class TestParsePlaces:
    def test_fixture(self):
        """Fixture places parse with types, names and centers."""
        places = {p.id: p for p in parse_places(load_fixture("places"))}

        assert set(places) == {"node/101", "node/102", "way/103", "node/104"}
        assert places["node/101"].type == PlaceType.EATERY
        assert places["node/101"].name == "Kavarna Demo"
        assert places["node/102"].type == PlaceType.PUB
        assert places["way/103"].type == PlaceType.PARK
        assert places["way/103"].location.lat == pytest.approx(46.051)
        assert places["node/104"].name == "Unnamed eatery"

    def test_seating_inference_from_fixture(self):
        """Seating flags and seat counts read from tags."""
        places = {p.id: p for p in parse_places(load_fixture("places"))}

        assert places["node/101"].has_outdoor_seating is True
        assert places["node/102"].outdoor_seats == 24
        assert places["node/102"].has_outdoor_seating is True
        assert places["node/104"].has_outdoor_seating is True
        assert places["node/104"].outdoor_covered is False
        assert places["way/103"].has_outdoor_seating is None

    def test_duplicate_ids_skipped(self):
        """Repeated element id -> one place."""
        element = {"type": "node", "id": 1, "lat": 46.0, "lon": 14.0, "tags": {"amenity": "bar"}}
        assert len(parse_places({"elements": [element, element]})) == 1

    def test_missing_center_skipped(self):
        """Way without a center -> skipped."""
        element = {"type": "way", "id": 1, "tags": {"leisure": "park"}}
        assert parse_places({"elements": [element]}) == []


class TestClassification:
    @pytest.mark.parametrize("tags,expected", [
        ({"amenity": "fast_food"}, PlaceType.EATERY),
        ({"amenity": "biergarten"}, PlaceType.PUB),
        ({"leisure": "park"}, PlaceType.PARK),
        ({"amenity": "bank"}, None),
    ])
    def test_classify(self, tags, expected):
        """Amenity and leisure tags map to place types."""
        assert classify_place(tags) == expected

    def test_explicit_no_wins_over_seat_count(self):
        """outdoor_seating=no beats a seat count."""
        result = infer_outdoor_seating({"outdoor_seating": "no", "seats:outdoor": "12"})
        assert result["has_outdoor_seating"] is False
        assert result["outdoor_seats"] == 12

    def test_zero_seats(self):
        """Zero outdoor seats -> no outdoor seating."""
        assert infer_outdoor_seating({"seats:outside": "0"})["has_outdoor_seating"] is False

    def test_biergarten_always_outdoor(self):
        """Biergarten is outdoor regardless of tags."""
        result = infer_outdoor_seating({"amenity": "biergarten", "outdoor_seating": "no"})
        assert result["has_outdoor_seating"] is True

    def test_covered_flag(self):
        """Covered flag read when present, else None."""
        assert infer_outdoor_seating({"outdoor_seating:covered": "yes"})["outdoor_covered"] is True
        assert infer_outdoor_seating({})["outdoor_covered"] is None
