"""
Tests for the HTTP API in demo mode (fixture-backed providers).
"""

import pytest
from fastapi.testclient import TestClient

from providers.registry import reload_providers
from server import app

DEMO_VIEW = {"south": 46.049, "west": 14.505, "north": 46.051, "east": 14.507}
NOON = "2024-06-21T11:04:00Z"
MIDNIGHT = "2024-06-21T23:00:00Z"


@pytest.fixture(autouse=True)
def _demo_mode(monkeypatch):
    monkeypatch.setenv("SHADECAST_MODE", "demo")
    reload_providers()
    yield
    reload_providers("prod")


@pytest.fixture
def client():
    return TestClient(app)


class TestMeta:
    def test_root(self, client):
        """Root lists the API features."""
        body = client.get("/api/").json()
        assert body["message"] == "Shadecast API"
        assert "building_shadows" in body["features"]

    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"


class TestSunPosition:
    def test_solar_noon(self, client):
        """Solstice noon over Ljubljana."""
        response = client.post("/api/sun-position", json={"latitude": 46.05, "longitude": 14.5, "time": NOON})
        assert response.status_code == 200
        body = response.json()
        assert body["altitude_deg"] == pytest.approx(67.4, abs=0.5)
        assert body["azimuth_deg"] == pytest.approx(180.0, abs=5.0)
        assert body["is_night"] is False

    def test_night(self, client):
        """Midnight -> night."""
        response = client.post("/api/sun-position", json={"latitude": 46.05, "longitude": 14.5, "time": MIDNIGHT})
        assert response.json()["is_night"] is True

    def test_latitude_out_of_range(self, client):
        """Latitude over 90 -> 422."""
        response = client.post("/api/sun-position", json={"latitude": 100, "longitude": 14.5})
        assert response.status_code == 422


class TestShadows:
    def test_demo_buildings_cast_shadows(self, client):
        """Demo buildings cast rings with a footprint hole."""
        response = client.post("/api/shadows", json={**DEMO_VIEW, "zoom": 17, "time": NOON})
        assert response.status_code == 200
        body = response.json()
        assert body["building_count"] == 3
        assert 0.0 < body["base_opacity"] <= 0.20
        assert body["shadows"]
        for shadow in body["shadows"]:
            assert len(shadow["rings"]) == 2    # outline + footprint hole
            assert 0.03 <= shadow["fill_opacity"] <= 0.15

    def test_no_shadows_at_night(self, client):
        """Night -> no shadows, zero opacity."""
        body = client.post("/api/shadows", json={**DEMO_VIEW, "zoom": 17, "time": MIDNIGHT}).json()
        assert body["sun"]["is_night"] is True
        assert body["base_opacity"] == 0.0
        assert body["shadows"] == []

    def test_low_zoom_drops_buildings(self, client):
        """Zoom below the building threshold -> no buildings."""
        body = client.post("/api/shadows", json={**DEMO_VIEW, "zoom": 12, "time": NOON}).json()
        assert body["building_count"] == 0
        assert body["shadows"] == []

    def test_inverted_bounds_rejected(self, client):
        """South above north -> 400."""
        view = {**DEMO_VIEW, "south": 46.06}
        response = client.post("/api/shadows", json={**view, "zoom": 17, "time": NOON})
        assert response.status_code == 400


class TestSunlit:
    def test_default_types(self, client):
        """Eateries and pubs by default, parks off."""
        response = client.post("/api/sunlit", json={**DEMO_VIEW, "zoom": 17, "time": NOON})
        assert response.status_code == 200
        places = {p["id"]: p for p in response.json()["places"]}

        assert {"node/101", "node/102", "node/104"} <= set(places)
        assert "way/103" not in places
        for p in places.values():
            assert p["icon"] == f"{p['type']}_{'sun' if p['sunlit'] else 'moon'}"
        assert places["node/102"]["outdoor_seats"] == 24

    def test_enabled_types(self, client):
        """Requested types only."""
        body = client.post(
            "/api/sunlit", json={**DEMO_VIEW, "east": 14.509, "zoom": 17, "time": NOON, "enabled_types": ["park"]}
        ).json()
        assert [p["id"] for p in body["places"]] == ["way/103"]

    def test_everything_shaded_at_night(self, client):
        """Night -> every place shaded."""
        body = client.post("/api/sunlit", json={**DEMO_VIEW, "zoom": 17, "time": MIDNIGHT}).json()
        assert body["places"]
        assert not any(p["sunlit"] for p in body["places"])
