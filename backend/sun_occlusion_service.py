"""
Sun Occlusion Service - Is a Place in the Sun Right Now?

Decides, per point of interest, whether it is sunlit. Checks run in order and
stop at the first conclusive answer:

1. Night: apparent altitude at the place <= -0.833 deg -> not sunlit
2. Terrain: if a horizon lookup is available (and has budget), the sun must
   clear the terrain horizon along its azimuth by a margin (0.5 deg)
3. Host building: the footprint containing the place is excluded from
   self-shadowing
4. Direct test: center + sample ring inside another building's shadow ring,
   or, where no usable ring exists, an analytic angular test
5. Edge correction: a sunlit place with >= 3 of 4 shadowed cardinal samples
   (2.5 m out, host still excluded) is flipped to shaded, so boundary places
   do not flicker
6. Local consensus (separate pass): same-type neighbors within 10 m that
   agree by >= 66% override a place's state. Purely a smoothing heuristic
   for clustered icons.

Analytic test:
Building center projected on the sun axis from the place must be sunward
(t > 0), laterally within the footprint allowance, and
atan(height / t) must exceed the sun altitude.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from engine_settings import EngineSettings
from geo_models import Bounds, Building, Place, PlaceType, Position, SunPosition
from shadow_geometry_service import ShadowGeometryService
from sun_ephemeris_service import SunEphemerisService
from terrain_horizon_service import TerrainHorizonService

logger = logging.getLogger(__name__)

HorizonLookup = Callable[[float, float, float], Awaitable[Optional[float]]]


class HorizonQueryBudget:
    """
    Per-redraw gate in front of TerrainHorizonService.

    Cached horizons are always served. New (uncached) queries are allowed
    until the budget runs out; after that lookups return None, which
    callers treat as "terrain does not block". Lookup failures are
    logged and treated the same way.
    """

    def __init__(self, horizon: TerrainHorizonService, budget: int):
        self.horizon = horizon
        self.remaining = budget

    async def __call__(self, lat: float, lng: float, azimuth_rad: float) -> Optional[float]:
        cached = self.horizon.cached_horizon(lat, lng, azimuth_rad)
        if cached is not None:
            return cached
        if self.remaining <= 0:
            return None
        self.remaining -= 1
        try:
            return await self.horizon.horizon_angle(lat, lng, azimuth_rad)
        except Exception as e:
            logger.warning(f"[OCCLUSION] Horizon lookup failed at {lat:.5f},{lng:.5f}: {e}")
            return None


class SunOcclusionService:
    """
    Sunlit/shaded classification for places.
    """

    DEFAULT_CHECK_RADIUS_M = 1.25
    HOST_CHECK_RADIUS_M = 0.1
    SINGLE_POINT_RADIUS_M = 0.05
    SEARCH_DISTANCE_M = ShadowGeometryService.MAX_SHADOW_LENGTH_M + 100.0

    # Analytic fallback
    MIN_LATERAL_ALLOWANCE_M = 6.0
    HALF_DIAGONAL_WEIGHT = 0.15
    MIN_BLOCKER_HEIGHT_M = 0.5
    MAX_BLOCKER_HEIGHT_M = 200.0

    # Edge correction
    EDGE_SAMPLE_DISTANCE_M = 2.5
    EDGE_SAMPLE_RADIUS_M = 0.25
    EDGE_SHADOWED_NEEDED = 3

    DEFAULT_ENABLED_TYPES = frozenset({PlaceType.EATERY, PlaceType.PUB})

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    # ---------- Building checks ----------

    @staticmethod
    def find_host_building(position: Position, buildings: Iterable[Building]) -> Optional[Building]:
        """Building whose footprint contains the position, if any."""
        for building in buildings:
            if len(building.polygon) < 3:
                continue
            if not ShadowGeometryService.bounds_contain_point(building.bounds, position):
                continue
            if ShadowGeometryService.point_in_polygon(position, building.polygon):
                return building
        return None

    @staticmethod
    def _sample_points(position: Position, radius_m: float) -> List[Position]:
        if radius_m < SunOcclusionService.SINGLE_POINT_RADIUS_M:
            return [position]
        d_lat = ShadowGeometryService.meters_to_lat(radius_m)
        d_lng = ShadowGeometryService.meters_to_lng(radius_m, position.lat)
        lng, lat = position.lng, position.lat
        return [
            position,
            Position(lng, lat + d_lat),
            Position(lng, lat - d_lat),
            Position(lng + d_lng, lat),
            Position(lng - d_lng, lat),
            Position(lng + d_lng, lat + d_lat),
            Position(lng - d_lng, lat + d_lat),
            Position(lng + d_lng, lat - d_lat),
            Position(lng - d_lng, lat - d_lat),
        ]

    @staticmethod
    def _analytic_blocks(position: Position, building: Building, sun: SunPosition, east_m: float, north_m: float) -> bool:
        sun_east = math.sin(sun.azimuth_rad)
        sun_north = math.cos(sun.azimuth_rad)

        along = east_m * sun_east + north_m * sun_north
        if along <= 0:
            return False

        lateral = abs(-east_m * sun_north + north_m * sun_east)
        width = abs(building.bounds.east - building.bounds.west) * ShadowGeometryService.meters_per_degree_lng(position.lat)
        depth = abs(building.bounds.north - building.bounds.south) * ShadowGeometryService.METERS_PER_DEGREE_LAT
        half_diagonal = 0.5 * math.hypot(width, depth)
        allowance = max(SunOcclusionService.MIN_LATERAL_ALLOWANCE_M, min(width, depth) * 0.5)
        if lateral > allowance + half_diagonal * SunOcclusionService.HALF_DIAGONAL_WEIGHT:
            return False

        height = max(SunOcclusionService.MIN_BLOCKER_HEIGHT_M, min(SunOcclusionService.MAX_BLOCKER_HEIGHT_M, building.height))
        return math.atan(height / along) > sun.altitude_rad

    @staticmethod
    def is_place_in_shadow(
        position: Position,
        sun: SunPosition,
        blockers: Sequence[Building],
        shadow_polygons: Mapping[str, Sequence[Position]],
        ignore_building_id: Optional[str] = None,
        search_distance_m: float = SEARCH_DISTANCE_M,
        check_radius_m: float = DEFAULT_CHECK_RADIUS_M,
        host_check_radius_m: float = HOST_CHECK_RADIUS_M,
    ) -> bool:
        """
        Building-shadow test for one position.

        Args:
            position: Point to test
            sun: Sun position at the point
            blockers: Candidate buildings
            shadow_polygons: building id -> shadow ring from the shadow engine
            ignore_building_id: Host building, excluded from the test
            search_distance_m: Buildings whose center is farther are skipped
            check_radius_m: Sample ring radius for free-standing places
            host_check_radius_m: Sample ring radius inside a host building

        Returns:
            True when shadowed (always True at night), False when no
            blocker casts shade on the samples.
        """
        if sun.altitude_rad <= SunEphemerisService.NIGHT_THRESHOLD_RAD:
            return True
        if not blockers:
            return False

        radius = host_check_radius_m if ignore_building_id is not None else check_radius_m
        samples = SunOcclusionService._sample_points(position, radius)
        max_d2 = search_distance_m * search_distance_m

        for building in blockers:
            if building.id == ignore_building_id:
                continue

            east_m, north_m = ShadowGeometryService.local_offset_m(position, building.center)
            if east_m * east_m + north_m * north_m > max_d2:
                continue

            ring = shadow_polygons.get(building.id)
            if ring is not None and len(ring) >= 3:
                if any(ShadowGeometryService.point_in_polygon(p, ring) for p in samples):
                    return True
                continue

            if SunOcclusionService._analytic_blocks(position, building, sun, east_m, north_m):
                return True

        return False

    def _edge_shadowed(
        self,
        position: Position,
        sun: SunPosition,
        blockers: Sequence[Building],
        shadow_polygons: Mapping[str, Sequence[Position]],
        ignore_building_id: Optional[str] = None,
    ) -> bool:
        d = self.EDGE_SAMPLE_DISTANCE_M
        samples = [
            ShadowGeometryService.offset_position(position, 0.0, d),
            ShadowGeometryService.offset_position(position, d, 0.0),
            ShadowGeometryService.offset_position(position, 0.0, -d),
            ShadowGeometryService.offset_position(position, -d, 0.0),
        ]
        shadowed = 0
        for sample in samples:
            if self.is_place_in_shadow(
                sample,
                sun,
                blockers,
                shadow_polygons,
                ignore_building_id=ignore_building_id,
                check_radius_m=self.EDGE_SAMPLE_RADIUS_M,
                host_check_radius_m=self.EDGE_SAMPLE_RADIUS_M,
            ):
                shadowed += 1
        return shadowed >= self.EDGE_SHADOWED_NEEDED

    async def is_sunlit(
        self,
        place: Place,
        buildings: Sequence[Building],
        sun: SunPosition,
        shadow_polygons: Mapping[str, Sequence[Position]],
        horizon_lookup: Optional[HorizonLookup] = None,
    ) -> bool:
        """
        Whether a place is in direct sun.

        Args:
            place: Place to classify
            buildings: Buildings near the place (pre-filtered by the caller)
            sun: Sun position at the place's own location
            shadow_polygons: building id -> shadow ring
            horizon_lookup: Optional async (lat, lng, azimuth) -> horizon
                angle; None results never block

        Returns:
            True if sunlit.
        """
        if SunEphemerisService.is_night(sun):
            return False

        position = place.location
        if horizon_lookup is not None:
            horizon = await horizon_lookup(position.lat, position.lng, sun.azimuth_rad)
            if horizon is not None:
                margin = math.radians(self.settings.horizon_margin_deg)
                if sun.altitude_rad < horizon + margin:
                    logger.debug(f"[OCCLUSION] {place.id} blocked by terrain (horizon {math.degrees(horizon):.1f} deg)")
                    return False

        host = self.find_host_building(position, buildings)
        host_id = host.id if host is not None else None
        if self.is_place_in_shadow(position, sun, buildings, shadow_polygons, ignore_building_id=host_id):
            return False

        if self._edge_shadowed(position, sun, buildings, shadow_polygons, ignore_building_id=host_id):
            return False
        return True

    # ---------- Consensus smoothing ----------

    @staticmethod
    def smooth_by_local_consensus(
        places: Sequence[Place],
        initial_state: Mapping[str, bool],
        radius_m: float = 10.0,
        min_neighbors: int = 1,
        required_fraction: float = 0.66,
    ) -> Dict[str, bool]:
        """
        Align clustered same-type places with their neighbors' majority.

        A uniform grid (cell = radius) indexes the places; each place looks at
        same-type neighbors within radius_m in its 3x3 cell block. Votes use
        the initial states only, so the pass is order independent.

        Returns:
            place id -> smoothed state (places missing from initial_state
            are left out).
        """
        result = dict(initial_state)
        if not places or radius_m <= 0:
            return result

        ref_lat = sum(p.location.lat for p in places) / len(places)
        m_per_lng = ShadowGeometryService.meters_per_degree_lng(ref_lat)
        m_per_lat = ShadowGeometryService.METERS_PER_DEGREE_LAT

        def _xy(p: Place) -> Tuple[float, float]:
            return p.location.lng * m_per_lng, p.location.lat * m_per_lat

        grid: Dict[Tuple[PlaceType, int, int], List[Place]] = defaultdict(list)
        for place in places:
            if place.id not in initial_state:
                continue
            x, y = _xy(place)
            grid[(place.type, int(math.floor(x / radius_m)), int(math.floor(y / radius_m)))].append(place)

        r2 = radius_m * radius_m
        for place in places:
            if place.id not in initial_state:
                continue
            x, y = _xy(place)
            cx = int(math.floor(x / radius_m))
            cy = int(math.floor(y / radius_m))

            sunny = 0
            shaded = 0
            for dx in (-1, 0, 1):
                for dy in (-1, 0, 1):
                    for other in grid.get((place.type, cx + dx, cy + dy), ()):
                        if other.id == place.id:
                            continue
                        ox, oy = _xy(other)
                        if (ox - x) ** 2 + (oy - y) ** 2 > r2:
                            continue
                        if initial_state[other.id]:
                            sunny += 1
                        else:
                            shaded += 1

            total = sunny + shaded
            if total < min_neighbors or total == 0:
                continue
            if sunny / total >= required_fraction:
                result[place.id] = True
            elif shaded / total >= required_fraction:
                result[place.id] = False

        return result

    # ---------- Redraw pass ----------

    async def evaluate_places(
        self,
        places: Sequence[Place],
        buildings: Sequence[Building],
        when: datetime,
        viewport: Bounds,
        shadow_polygons: Mapping[str, Sequence[Position]],
        horizon: Optional[TerrainHorizonService] = None,
        enabled_types: Optional[Set[PlaceType]] = None,
    ) -> Dict[str, bool]:
        """
        Sunlit state for every visible place in one redraw.

        Places are limited to enabled types inside the padded viewport. The
        terrain check is skipped once the visible count exceeds the heavy-load
        threshold, and at most `horizon_budget` uncached horizon queries are
        issued.

        Returns:
            place id -> sunlit, after consensus smoothing.
        """
        types = self.DEFAULT_ENABLED_TYPES if enabled_types is None else enabled_types
        padded = ShadowGeometryService.pad_bounds(viewport, self.settings.marker_pad_m)
        relevant = [b for b in buildings if ShadowGeometryService.bounds_intersect(b.bounds, padded)]

        visible = [
            p for p in places
            if p.type in types and ShadowGeometryService.bounds_contain_point(padded, p.location)
        ]

        lookup: Optional[HorizonQueryBudget] = None
        if horizon is not None and self.settings.terrain_enabled:
            if len(visible) <= self.settings.heavy_load_threshold:
                lookup = HorizonQueryBudget(horizon, self.settings.horizon_budget)
            else:
                logger.debug(f"[OCCLUSION] {len(visible)} visible places, skipping terrain checks")

        raw_state: Dict[str, bool] = {}
        for place in visible:
            sun = SunEphemerisService.sun_position(when, place.location.lat, place.location.lng)
            raw_state[place.id] = await self.is_sunlit(place, relevant, sun, shadow_polygons, lookup)

        smoothed = self.smooth_by_local_consensus(
            visible,
            raw_state,
            radius_m=self.settings.consensus_radius_m,
            min_neighbors=self.settings.consensus_min_neighbors,
            required_fraction=self.settings.consensus_fraction,
        )
        logger.debug(
            f"[OCCLUSION] Evaluated {len(visible)} places, "
            f"{sum(1 for v in smoothed.values() if v)} sunlit"
        )
        return smoothed

    @staticmethod
    def icon_key(place_type: Optional[PlaceType], sunlit: bool) -> str:
        """Icon asset name for a place state, e.g. "pub_sun"."""
        base = place_type.value if isinstance(place_type, PlaceType) else "default"
        return f"{base}_{'sun' if sunlit else 'moon'}"
