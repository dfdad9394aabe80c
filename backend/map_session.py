"""
Map Session - Session-Scoped Data, Fetch Scheduling and Redraws

One MapSession owns everything a single map view accumulates: the loaded
buildings and places, their coverage bounds, the shadow reuse cache and the
terrain horizon cache. Nothing is global; create a session when a map opens
and dispose() it when the map closes.

Fetch scheduling:
- Building requests below zoom 14.5 clear all buildings and coverage
- Requests whose viewport lies inside the loaded coverage are skipped
- Otherwise a debounced fetch is scheduled (0.7 s buildings, 0.9 s places);
  a newer request cancels a pending (not yet started) one
- Every fetch takes a new generation number when it starts and only applies
  its result if that number is still current when it completes. In-flight
  fetches are never cancelled; stale ones are ignored.

Redraw:
Sun position at the camera center -> building shadows -> place states.
A single "redraw in progress" flag guards the pipeline; a redraw requested
while one is running returns None instead of queueing.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from building_shadow_service import BuildingShadowService, ShadowResult
from engine_settings import EngineSettings
from geo_models import Bounds, Building, Place, PlaceType, Position, SunPosition
from providers.contracts import BuildingSource, ElevationProvider, PlaceSource
from providers.registry import ProviderSet
from shadow_geometry_service import ShadowGeometryService
from sun_ephemeris_service import SunEphemerisService
from sun_occlusion_service import SunOcclusionService
from terrain_elevation_service import TerrainElevationService
from terrain_horizon_service import TerrainHorizonService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CameraState:
    """Read-only camera snapshot for one redraw."""
    center: Position
    zoom: float
    bounds: Bounds


@dataclass
class RedrawResult:
    """
    Everything a renderer needs after one redraw.

    Attributes:
        when: Instant the sun was computed for
        sun: Sun position at the camera center
        shadows: Shadow polygons and drawables
        sunlit: place id -> sunlit state
        icons: place id -> icon key ("pub_sun", "eatery_moon", ...)
    """
    when: datetime
    sun: SunPosition
    shadows: ShadowResult
    sunlit: Dict[str, bool] = field(default_factory=dict)
    icons: Dict[str, str] = field(default_factory=dict)


class MapSession:
    """
    Owner of one map view's data and caches.
    """

    BUILDING_DEBOUNCE_S = 0.7
    PLACE_DEBOUNCE_S = 0.9

    def __init__(
        self,
        building_source: BuildingSource,
        place_source: PlaceSource,
        elevation: Optional[ElevationProvider] = None,
        settings: Optional[EngineSettings] = None,
        building_debounce_s: float = BUILDING_DEBOUNCE_S,
        place_debounce_s: float = PLACE_DEBOUNCE_S,
    ):
        self.settings = settings or EngineSettings()
        self.building_source = building_source
        self.place_source = place_source
        self.building_debounce_s = building_debounce_s
        self.place_debounce_s = place_debounce_s

        self.shadows = BuildingShadowService(self.settings)
        self.occlusion = SunOcclusionService(self.settings)
        self.horizon: Optional[TerrainHorizonService] = None
        if elevation is not None and self.settings.terrain_enabled:
            self.horizon = TerrainHorizonService(elevation)

        self.enabled_types: Set[PlaceType] = set(SunOcclusionService.DEFAULT_ENABLED_TYPES)

        self._buildings: Dict[str, Building] = {}
        self._building_snapshot: Tuple[Building, ...] = ()
        self._places: List[Place] = []
        self._place_ids: Set[str] = set()

        self.building_coverage: Optional[Bounds] = None
        self.place_coverage: Optional[Bounds] = None
        self._building_epoch = 0
        self._place_epoch = 0
        self.is_loading_buildings = False
        self.is_loading_places = False

        self._debounce: Dict[str, asyncio.Task] = {}
        self._fetches: Set[asyncio.Task] = set()
        self._redrawing = False
        self._disposed = False
        self.last_redraw_time: Optional[datetime] = None

    @classmethod
    def from_providers(cls, providers: ProviderSet, settings: Optional[EngineSettings] = None, **kwargs) -> "MapSession":
        """Session wired to a provider set; builds a tile-backed elevation sampler when none is given."""
        settings = settings or EngineSettings()
        elevation = providers.elevation
        if elevation is None:
            elevation = TerrainElevationService(
                providers.tiles,
                zoom=settings.terrain_zoom,
                use_hidpi=settings.terrain_hidpi,
                max_tiles_in_cache=settings.tile_cache_size,
            )
        return cls(providers.buildings, providers.places, elevation=elevation, settings=settings, **kwargs)

    # ---------- Accessors ----------

    @property
    def buildings(self) -> Tuple[Building, ...]:
        """Loaded buildings; the same tuple object until the collection changes."""
        return self._building_snapshot

    @property
    def places(self) -> Tuple[Place, ...]:
        return tuple(self._places)

    @property
    def is_redrawing(self) -> bool:
        return self._redrawing

    @property
    def disposed(self) -> bool:
        return self._disposed

    def set_place_type_enabled(self, place_type: PlaceType, enabled: bool) -> None:
        if enabled:
            self.enabled_types.add(place_type)
        else:
            self.enabled_types.discard(place_type)

    # ---------- Fetch scheduling ----------

    def _schedule(self, kind: str, delay_s: float, fetch: Callable[[Bounds], Awaitable[bool]], bounds: Bounds) -> None:
        pending = self._debounce.get(kind)
        if pending is not None and not pending.done():
            pending.cancel()
        self._debounce[kind] = asyncio.get_running_loop().create_task(self._debounced(kind, delay_s, fetch, bounds))

    async def _debounced(self, kind: str, delay_s: float, fetch: Callable[[Bounds], Awaitable[bool]], bounds: Bounds) -> None:
        await asyncio.sleep(delay_s)
        if self._disposed:
            return
        if self._debounce.get(kind) is asyncio.current_task():
            del self._debounce[kind]
        # Detach the fetch so a later request cannot cancel it mid-flight
        task = asyncio.get_running_loop().create_task(fetch(bounds))
        self._fetches.add(task)
        task.add_done_callback(self._fetches.discard)
        await asyncio.shield(task)

    def request_buildings_for_view(self, viewport: Bounds, zoom: float) -> bool:
        """
        Schedule a debounced building fetch for the viewport.

        Must be called from a running event loop.

        Returns:
            True if a fetch was scheduled.
        """
        if self._disposed:
            return False
        if zoom < self.settings.min_building_zoom:
            if self._buildings or self.is_loading_buildings or self.building_coverage is not None:
                logger.info(f"[SESSION] Zoom {zoom:.2f} < {self.settings.min_building_zoom}, clearing buildings")
                self.clear_buildings()
            return False
        if self.building_coverage is not None and ShadowGeometryService.bounds_contain_bounds(viewport, self.building_coverage):
            logger.debug("[SESSION] Buildings already cover the viewport")
            return False
        self._schedule("buildings", self.building_debounce_s, self.perform_building_fetch, viewport)
        return True

    def request_places_for_view(self, viewport: Bounds, zoom: float) -> bool:
        """Schedule a debounced place fetch; places are kept at every zoom."""
        if self._disposed:
            return False
        if self.place_coverage is not None and ShadowGeometryService.bounds_contain_bounds(viewport, self.place_coverage):
            logger.debug("[SESSION] Places already cover the viewport")
            return False
        self._schedule("places", self.place_debounce_s, self.perform_place_fetch, viewport)
        return True

    async def wait_for_fetches(self) -> None:
        """Wait for pending debounced fetches and in-flight fetches to finish."""
        while True:
            tasks = [t for t in list(self._debounce.values()) + list(self._fetches) if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---------- Fetch execution ----------

    def _merge_coverage(self, coverage: Optional[Bounds], requested: Bounds) -> Bounds:
        if coverage is None:
            return requested
        return ShadowGeometryService.bounds_union(coverage, requested)

    async def perform_building_fetch(self, requested: Bounds) -> bool:
        """
        Fetch buildings for `requested` and merge them if still current.

        Returns:
            True if the result was applied.
        """
        self._building_epoch += 1
        my_epoch = self._building_epoch
        self.is_loading_buildings = True

        try:
            fetched = await self.building_source.fetch_buildings(requested)
            if self._disposed or my_epoch != self._building_epoch:
                logger.debug(f"[SESSION] Dropping stale building fetch (epoch {my_epoch}, current {self._building_epoch})")
                return False

            changed = False
            for building in fetched:
                existing = self._buildings.get(building.id)
                if existing is None or existing.polygon != building.polygon or existing.height != building.height:
                    self._buildings[building.id] = building
                    changed = True
            if changed:
                self._building_snapshot = tuple(self._buildings.values())

            if changed or self.building_coverage is None:
                self.building_coverage = self._merge_coverage(self.building_coverage, requested)
                logger.info(f"[SESSION] Buildings merged, total {len(self._buildings)} (epoch {my_epoch})")
            return True
        except Exception as e:
            logger.error(f"[SESSION] Building fetch failed (epoch {my_epoch}): {e}", exc_info=True)
            return False
        finally:
            if my_epoch == self._building_epoch:
                self.is_loading_buildings = False

    async def perform_place_fetch(self, requested: Bounds) -> bool:
        """
        Fetch places for `requested` and add the new ones if still current.

        Returns:
            True if the result was applied.
        """
        self._place_epoch += 1
        my_epoch = self._place_epoch
        self.is_loading_places = True

        try:
            fetched = await self.place_source.fetch_places(requested)
            if self._disposed or my_epoch != self._place_epoch:
                logger.debug(f"[SESSION] Dropping stale place fetch (epoch {my_epoch}, current {self._place_epoch})")
                return False

            added = 0
            for place in fetched:
                if place.id not in self._place_ids:
                    self._place_ids.add(place.id)
                    self._places.append(place)
                    added += 1

            if added or self.place_coverage is None:
                self.place_coverage = self._merge_coverage(self.place_coverage, requested)
                logger.info(f"[SESSION] Added {added} places, total {len(self._places)} (epoch {my_epoch})")
            return True
        except Exception as e:
            logger.error(f"[SESSION] Place fetch failed (epoch {my_epoch}): {e}", exc_info=True)
            return False
        finally:
            if my_epoch == self._place_epoch:
                self.is_loading_places = False

    async def load_view(self, viewport: Bounds, zoom: float) -> None:
        """Fetch immediately (no debounce) with the same zoom and coverage rules."""
        if zoom < self.settings.min_building_zoom:
            self.clear_buildings()
        elif self.building_coverage is None or not ShadowGeometryService.bounds_contain_bounds(viewport, self.building_coverage):
            await self.perform_building_fetch(viewport)
        if self.place_coverage is None or not ShadowGeometryService.bounds_contain_bounds(viewport, self.place_coverage):
            await self.perform_place_fetch(viewport)

    def _cancel_pending(self, kind: str) -> None:
        pending = self._debounce.pop(kind, None)
        if pending is not None and not pending.done():
            pending.cancel()

    def clear_buildings(self) -> None:
        self._cancel_pending("buildings")
        self._buildings.clear()
        self._building_snapshot = ()
        self.building_coverage = None
        if self.is_loading_buildings:
            self.is_loading_buildings = False
            self._building_epoch += 1

    def clear_places(self) -> None:
        self._cancel_pending("places")
        self._places.clear()
        self._place_ids.clear()
        self.place_coverage = None
        if self.is_loading_places:
            self.is_loading_places = False
            self._place_epoch += 1

    # ---------- Redraw ----------

    async def redraw(self, when: datetime, camera: CameraState) -> Optional[RedrawResult]:
        """
        Recompute shadows and place states for the camera.

        Returns:
            RedrawResult, or None when a redraw is already running or the
            session is disposed.
        """
        if self._redrawing or self._disposed:
            logger.debug("[SESSION] Redraw skipped (in progress or disposed)")
            return None

        self._redrawing = True
        try:
            buildings = self._building_snapshot
            sun = SunEphemerisService.sun_position(when, camera.center.lat, camera.center.lng)
            shadows = self.shadows.compute_shadows(buildings, sun, camera.bounds, camera.zoom)
            sunlit = await self.occlusion.evaluate_places(
                self._places,
                buildings,
                when,
                camera.bounds,
                shadows.polygons,
                horizon=self.horizon,
                enabled_types=self.enabled_types,
            )
            types = {p.id: p.type for p in self._places}
            icons = {pid: SunOcclusionService.icon_key(types.get(pid), state) for pid, state in sunlit.items()}
            self.last_redraw_time = when
            return RedrawResult(when=when, sun=sun, shadows=shadows, sunlit=sunlit, icons=icons)
        finally:
            self._redrawing = False

    def dispose(self) -> None:
        """End the session: stop pending work and drop every cache."""
        if self._disposed:
            return
        self._disposed = True
        for kind in list(self._debounce):
            self._cancel_pending(kind)
        self.shadows.reset()
        if self.horizon is not None:
            self.horizon.dispose()
        self._buildings.clear()
        self._building_snapshot = ()
        self._places.clear()
        self._place_ids.clear()
        logger.info("[SESSION] Disposed")


@dataclass(frozen=True)
class CameraDecision:
    fetch: bool
    redraw: bool


class ViewportChangeCoordinator:
    """
    Turns camera-idle and time-change events into fetches and redraws.

    Tolerances:
    - Data fetch: center moved > 0.00005 deg or zoom changed > 0.05
    - Redraw: center moved > 0.0001 deg or zoom changed > 0.05
    """

    DATA_POSITION_TOLERANCE_DEG = 0.00005
    ZOOM_TOLERANCE = 0.05
    REDRAW_POSITION_TOLERANCE_DEG = 0.0001

    def __init__(self, session: MapSession):
        self.session = session
        self._previous: Optional[CameraState] = None

    @staticmethod
    def decide(previous: Optional[CameraState], current: CameraState) -> CameraDecision:
        if previous is None:
            return CameraDecision(fetch=True, redraw=True)

        d_lat = abs(previous.center.lat - current.center.lat)
        d_lng = abs(previous.center.lng - current.center.lng)
        zoom_changed = abs(previous.zoom - current.zoom) > ViewportChangeCoordinator.ZOOM_TOLERANCE

        moved_data = d_lat > ViewportChangeCoordinator.DATA_POSITION_TOLERANCE_DEG or d_lng > ViewportChangeCoordinator.DATA_POSITION_TOLERANCE_DEG
        moved_redraw = d_lat > ViewportChangeCoordinator.REDRAW_POSITION_TOLERANCE_DEG or d_lng > ViewportChangeCoordinator.REDRAW_POSITION_TOLERANCE_DEG

        return CameraDecision(fetch=moved_data or zoom_changed, redraw=moved_redraw or zoom_changed)

    async def on_camera_idle(self, camera: CameraState, when: datetime) -> Optional[RedrawResult]:
        """
        Handle the camera settling.

        Returns:
            The redraw result, or None when no redraw ran.
        """
        decision = self.decide(self._previous, camera)
        if decision.fetch:
            self.session.request_buildings_for_view(camera.bounds, camera.zoom)
            self.session.request_places_for_view(camera.bounds, camera.zoom)

        result = None
        if decision.fetch or decision.redraw:
            result = await self.session.redraw(when, camera)
        self._previous = camera
        return result

    async def on_time_changed(self, when: datetime) -> Optional[RedrawResult]:
        """Redraw for a new instant at the last settled camera."""
        if self._previous is None:
            return None
        if self.session.last_redraw_time is not None and self.session.last_redraw_time == when:
            return None
        return await self.session.redraw(when, self._previous)
