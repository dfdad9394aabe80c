"""
Tests for Map Session and Viewport Change Coordinator

Key requirements:
- Only the newest fetch generation applies its result
- Zoom below 14.5 clears buildings; covered viewports skip fetching
- Debounced requests collapse into one fetch with the latest viewport
- A redraw requested while one runs returns None
- dispose() stops pending work and drops caches
"""

import asyncio
from datetime import datetime, timezone

import pytest

from geo_models import Bounds, Building, Place, PlaceType, Position
from map_session import CameraState, MapSession, ViewportChangeCoordinator
from providers.registry import ProviderSet
from providers.fake_providers import FakeBuildingSource, FakePlaceSource, FakeTerrainTileSource
from shadow_geometry_service import ShadowGeometryService
from terrain_elevation_service import TerrainElevationService

ORIGIN = Position(14.506, 46.05)
VIEW = Bounds(south=46.049, west=14.505, north=46.051, east=14.507)
INNER = Bounds(south=46.0495, west=14.5055, north=46.0505, east=14.5065)
ELSEWHERE = Bounds(south=46.06, west=14.52, north=46.062, east=14.522)
CAMERA = CameraState(center=ORIGIN, zoom=17.0, bounds=VIEW)
WHEN = datetime(2024, 6, 21, 11, 4, tzinfo=timezone.utc)


def at(east_m, north_m):
    return ShadowGeometryService.offset_position(ORIGIN, east_m, north_m)


def building(building_id="way-1", height=20.0):
    ring = (at(0, 0), at(20, 0), at(20, 20), at(0, 20), at(0, 0))
    return Building(id=building_id, polygon=ring, height=height)


def place(east_m, north_m, place_id, place_type=PlaceType.EATERY):
    return Place(id=place_id, name=place_id, location=at(east_m, north_m), type=place_type)


class StaticBuildingSource:
    def __init__(self, buildings=None, error=None):
        self.buildings = list(buildings or [])
        self.error = error
        self.calls = []

    async def fetch_buildings(self, bounds):
        self.calls.append(bounds)
        if self.error is not None:
            raise self.error
        return list(self.buildings)


class StaticPlaceSource:
    def __init__(self, places=None):
        self.places = list(places or [])
        self.calls = []

    async def fetch_places(self, bounds):
        self.calls.append(bounds)
        return list(self.places)


class ScriptedBuildingSource:
    """Returns the n-th response to the n-th call once its gate opens."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.gates = [asyncio.Event() for _ in responses]
        self.calls = 0

    async def fetch_buildings(self, bounds):
        index = self.calls
        self.calls += 1
        await self.gates[index].wait()
        return self.responses[index]


class GatedElevation:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.disposed = False

    async def sample_elevation_m(self, lat, lng):
        self.entered.set()
        await self.release.wait()
        return 0.0

    def dispose(self):
        self.disposed = True


def make_session(buildings=None, places=None, **kwargs):
    kwargs.setdefault("building_debounce_s", 0.01)
    kwargs.setdefault("place_debounce_s", 0.01)
    return MapSession(StaticBuildingSource(buildings), StaticPlaceSource(places), **kwargs)


class TestFetchGenerations:
    @pytest.mark.asyncio
    async def test_stale_fetch_ignored(self):
        """Older fetch finishing last is dropped by its generation."""
        source = ScriptedBuildingSource([building("way-old")], [building("way-new")])
        session = MapSession(source, StaticPlaceSource())

        first = asyncio.create_task(session.perform_building_fetch(VIEW))
        await asyncio.sleep(0)
        second = asyncio.create_task(session.perform_building_fetch(ELSEWHERE))
        await asyncio.sleep(0)

        source.gates[1].set()
        assert await second is True
        source.gates[0].set()
        assert await first is False

        assert [b.id for b in session.buildings] == ["way-new"]
        assert session.building_coverage == ELSEWHERE
        assert not session.is_loading_buildings

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_state(self):
        """Upstream error -> previous buildings and coverage kept."""
        session = MapSession(StaticBuildingSource(error=RuntimeError("boom")), StaticPlaceSource())
        assert await session.perform_building_fetch(VIEW) is False
        assert session.buildings == ()
        assert session.building_coverage is None
        assert not session.is_loading_buildings

    @pytest.mark.asyncio
    async def test_unchanged_merge_keeps_snapshot(self):
        """Same buildings again -> collection identity kept."""
        session = make_session(buildings=[building()])
        await session.perform_building_fetch(VIEW)
        snapshot = session.buildings
        await session.perform_building_fetch(VIEW)
        assert session.buildings is snapshot

    @pytest.mark.asyncio
    async def test_changed_height_replaces_building(self):
        """New height for an id replaces the stored building."""
        source = StaticBuildingSource([building(height=10.0)])
        session = MapSession(source, StaticPlaceSource())
        await session.perform_building_fetch(VIEW)
        source.buildings = [building(height=30.0)]
        await session.perform_building_fetch(VIEW)
        assert [b.height for b in session.buildings] == [30.0]

    @pytest.mark.asyncio
    async def test_places_deduplicated(self):
        """Same place from two viewports is stored once."""
        cafe = place(10, 30, "node/1")
        session = make_session(places=[cafe])
        await session.perform_place_fetch(VIEW)
        await session.perform_place_fetch(ELSEWHERE)
        assert session.places == (cafe,)


class TestRequestScheduling:
    @pytest.mark.asyncio
    async def test_low_zoom_clears_buildings(self):
        """Below the building zoom everything is cleared."""
        session = make_session(buildings=[building()])
        await session.perform_building_fetch(VIEW)
        assert session.request_buildings_for_view(VIEW, 14.0) is False
        assert session.buildings == ()
        assert session.building_coverage is None

    @pytest.mark.asyncio
    async def test_covered_viewport_skipped(self):
        """Viewport inside the last coverage is not refetched."""
        session = make_session(buildings=[building()])
        await session.perform_building_fetch(VIEW)
        assert session.request_buildings_for_view(INNER, 17.0) is False
        assert session.request_buildings_for_view(ELSEWHERE, 17.0) is True
        session.dispose()

    @pytest.mark.asyncio
    async def test_places_requested_at_any_zoom(self):
        """Places load even at low zoom."""
        session = make_session(places=[place(10, 30, "node/1")])
        assert session.request_places_for_view(VIEW, 10.0) is True
        await session.wait_for_fetches()
        assert len(session.places) == 1

    @pytest.mark.asyncio
    async def test_debounce_collapses_requests(self):
        """Burst of requests -> one fetch for the last viewport."""
        session = make_session(buildings=[building()])
        source = session.building_source
        session.request_buildings_for_view(VIEW, 17.0)
        session.request_buildings_for_view(INNER, 17.0)
        session.request_buildings_for_view(ELSEWHERE, 17.0)
        await session.wait_for_fetches()
        assert source.calls == [ELSEWHERE]
        assert session.building_coverage == ELSEWHERE

    @pytest.mark.asyncio
    async def test_load_view_fetches_immediately(self):
        """Initial load skips the debounce."""
        session = make_session(buildings=[building()], places=[place(10, 30, "node/1")])
        await session.load_view(VIEW, 17.0)
        assert len(session.buildings) == 1
        assert len(session.places) == 1
        await session.load_view(INNER, 17.0)
        assert len(session.building_source.calls) == 1
        assert len(session.place_source.calls) == 1


class TestRedraw:
    @pytest.mark.asyncio
    async def test_shadows_and_icons(self):
        """Redraw gives shadows, sun states and icon keys."""
        places = [place(10, 24, "node/shaded"), place(-30, -30, "node/sunny", PlaceType.PUB)]
        session = make_session(buildings=[building("way-tower")], places=places)
        await session.load_view(VIEW, 17.0)

        result = await session.redraw(WHEN, CAMERA)

        assert result.sun.altitude_deg > 60
        assert result.shadows.polygons["way-tower"]
        assert result.sunlit == {"node/shaded": False, "node/sunny": True}
        assert result.icons == {"node/shaded": "eatery_moon", "node/sunny": "pub_sun"}
        assert session.last_redraw_time == WHEN

    @pytest.mark.asyncio
    async def test_disabled_type_not_evaluated(self):
        """Disabled place type -> no state."""
        session = make_session(places=[place(-30, -30, "node/sunny", PlaceType.PUB)])
        await session.load_view(VIEW, 17.0)
        session.set_place_type_enabled(PlaceType.PUB, False)
        result = await session.redraw(WHEN, CAMERA)
        assert result.sunlit == {}

    @pytest.mark.asyncio
    async def test_reentrant_redraw_skipped(self):
        """Redraw while one is running is dropped."""
        elevation = GatedElevation()
        session = make_session(places=[place(-30, -30, "node/sunny", PlaceType.PUB)], elevation=elevation)
        await session.load_view(VIEW, 17.0)

        first = asyncio.create_task(session.redraw(WHEN, CAMERA))
        await elevation.entered.wait()
        assert session.is_redrawing
        assert await session.redraw(WHEN, CAMERA) is None

        elevation.release.set()
        result = await first
        assert result.sunlit == {"node/sunny": True}
        assert not session.is_redrawing


class TestDispose:
    @pytest.mark.asyncio
    async def test_dispose_drops_everything(self):
        """Disposed session holds nothing and ignores requests."""
        elevation = GatedElevation()
        session = make_session(buildings=[building()], places=[place(10, 30, "node/1")], elevation=elevation)
        await session.load_view(VIEW, 17.0)

        session.dispose()

        assert session.disposed
        assert session.buildings == ()
        assert session.places == ()
        assert elevation.disposed
        assert await session.redraw(WHEN, CAMERA) is None
        assert session.request_buildings_for_view(ELSEWHERE, 17.0) is False

    @pytest.mark.asyncio
    async def test_dispose_cancels_pending_fetch(self):
        """Debounced fetch never runs after dispose."""
        session = make_session(buildings=[building()], building_debounce_s=0.05)
        session.request_buildings_for_view(VIEW, 17.0)
        session.dispose()
        await asyncio.sleep(0.1)
        assert session.building_source.calls == []


class TestFromProviders:
    def test_builds_tile_elevation_when_missing(self):
        """No point elevation provider -> terrain tiles back the horizon."""
        providers = ProviderSet(
            buildings=FakeBuildingSource(),
            places=FakePlaceSource(),
            tiles=FakeTerrainTileSource(),
        )
        session = MapSession.from_providers(providers)
        assert isinstance(session.horizon.elevation, TerrainElevationService)
        assert session.horizon.elevation.tile_source is providers.tiles


class TestCoordinator:
    @staticmethod
    def camera(d_lat=0.0, d_lng=0.0, zoom=17.0):
        return CameraState(center=Position(ORIGIN.lng + d_lng, ORIGIN.lat + d_lat), zoom=zoom, bounds=VIEW)

    @pytest.mark.parametrize("d_lat,d_lng,zoom,fetch,redraw", [
        (0.00003, 0.0, 17.0, False, False),
        (0.00007, 0.0, 17.0, True, False),
        (0.0, 0.0002, 17.0, True, True),
        (0.0, 0.0, 17.03, False, False),
        (0.0, 0.0, 17.1, True, True),
    ])
    def test_decide(self, d_lat, d_lng, zoom, fetch, redraw):
        """Small pans and zooms are ignored; larger ones fetch and redraw."""
        decision = ViewportChangeCoordinator.decide(self.camera(), self.camera(d_lat, d_lng, zoom))
        assert decision.fetch is fetch
        assert decision.redraw is redraw

    def test_first_camera_always_acts(self):
        """First camera fetches and redraws."""
        decision = ViewportChangeCoordinator.decide(None, self.camera())
        assert decision.fetch and decision.redraw

    @pytest.mark.asyncio
    async def test_camera_idle_and_time_change(self):
        """Idle camera and time changes redraw only when something moved."""
        session = make_session(places=[place(-30, -30, "node/sunny", PlaceType.PUB)])
        coordinator = ViewportChangeCoordinator(session)

        assert await coordinator.on_time_changed(WHEN) is None    # no camera yet
        assert await coordinator.on_camera_idle(self.camera(), WHEN) is not None
        assert await coordinator.on_camera_idle(self.camera(0.00001), WHEN) is None

        await session.wait_for_fetches()
        later = WHEN.replace(hour=12)
        result = await coordinator.on_time_changed(later)
        assert result.sunlit == {"node/sunny": True}
        assert await coordinator.on_time_changed(later) is None
        session.dispose()
