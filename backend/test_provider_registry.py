import pytest

from geo_models import Bounds
from providers.fake_providers import (
    FIXTURES_ROOT,
    FakeBuildingSource,
    FakeElevationProvider,
    FakePlaceSource,
    FakeTerrainTileSource,
)
from providers.registry import get_providers, reload_providers
from providers.real_providers import (
    MapboxTerrainTileSource,
    OverpassBuildingSource,
    OverpassPlaceSource,
    building_query,
)
from terrain_elevation_service import TerrainElevationService

DEMO_VIEW = Bounds(south=46.049, west=14.505, north=46.051, east=14.507)


@pytest.fixture(autouse=True)
def _demo_mode(monkeypatch):
    monkeypatch.setenv("SHADECAST_MODE", "demo")
    reload_providers()
    yield
    reload_providers("prod")


def test_demo_mode_uses_fakes():
    """Demo mode -> fixture-backed providers."""
    providers = get_providers()
    assert isinstance(providers.buildings, FakeBuildingSource)
    assert isinstance(providers.places, FakePlaceSource)
    assert isinstance(providers.tiles, FakeTerrainTileSource)
    assert isinstance(providers.elevation, FakeElevationProvider)


def test_providers_cached_until_reload():
    """Same provider set until reload."""
    assert get_providers() is get_providers()


@pytest.mark.asyncio
async def test_buildings_filtered_by_bounds():
    """Fake building source honors the query bounds."""
    providers = get_providers()
    inside = await providers.buildings.fetch_buildings(DEMO_VIEW)
    outside = await providers.buildings.fetch_buildings(Bounds(10.0, 10.0, 10.1, 10.1))
    assert {b.id for b in inside} == {"way-1001", "way-1002", "relation-2001"}
    assert outside == []


@pytest.mark.asyncio
async def test_places_deterministic():
    """Fake places are the same on every call."""
    providers = get_providers()
    first = await providers.places.fetch_places(DEMO_VIEW)
    second = await providers.places.fetch_places(DEMO_VIEW)
    assert [p.id for p in first] == [p.id for p in second]
    assert "node/101" in {p.id for p in first}
    assert providers.places.calls == 2


@pytest.mark.asyncio
async def test_fake_elevation_areas():
    """Ridge area returns its elevation, elsewhere the default."""
    providers = get_providers()
    assert await providers.elevation.sample_elevation_m(46.0, 14.5) == 1400
    assert await providers.elevation.sample_elevation_m(46.05, 14.506) == 295


@pytest.mark.asyncio
async def test_fake_tiles_decode_to_flat_elevation():
    """Fake tiles decode to the fixture elevation."""
    tiles = FakeTerrainTileSource()
    service = TerrainElevationService(tiles)
    assert await service.sample_elevation_m(46.05, 14.506) == pytest.approx(295.0, abs=0.05)
    assert len(tiles.requested) == 1
    assert tiles.requested[0].startswith("14/8852/")


def test_prod_mode_switch(monkeypatch):
    """Prod mode -> Overpass and Mapbox providers."""
    monkeypatch.setenv("SHADECAST_MODE", "prod")
    reload_providers()
    providers = get_providers()
    assert isinstance(providers.buildings, OverpassBuildingSource)
    assert isinstance(providers.places, OverpassPlaceSource)
    assert isinstance(providers.tiles, MapboxTerrainTileSource)
    assert providers.elevation is None


def test_building_query_buffers_bbox():
    """Building query widens the bbox by 0.001 deg."""
    query = building_query(Bounds(46.0, 14.0, 46.1, 14.1))
    bbox = f"{46.0 - 0.001},{14.0 - 0.001},{46.1 + 0.001},{14.1 + 0.001}"
    assert f'way["building"]({bbox})' in query
    assert "out body;" in query


@pytest.mark.asyncio
async def test_terrain_tiles_without_token():
    """No access token -> no tile."""
    source = MapboxTerrainTileSource(access_token="")
    assert await source.fetch_tile(14, 1, 2) is None


def test_fixture_root_has_every_dataset():
    """Demo fixtures resolve from the checkout next to the providers package."""
    for name in ("buildings", "places", "elevation", "tiles"):
        assert (FIXTURES_ROOT / name / "data.json").is_file()
