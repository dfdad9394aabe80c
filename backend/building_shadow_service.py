"""
Building Shadow Service - Per-Building Shadow Polygons for a Viewport

Computes ribbon shadows for the buildings visible in the current viewport,
attaches a fill opacity to each drawable polygon, and reuses the previous
result when nothing relevant has changed.

Pipeline:
1. Night (apparent altitude <= -0.833 deg): every building maps to []
2. Base opacity from a piecewise-linear curve over altitude; ~0 opacity
   short-circuits to an all-empty result
3. Cull buildings whose bounding box misses the viewport (explicit [] entry)
4. Project ribbon shadows with a minimum drawable length derived from the
   ground resolution at the viewport center
5. Density attenuation: a grid over the viewport counts drawn shadows per
   centroid cell; each new shadow's opacity is scaled by 1 / (1 + prior count)
   so overlapping shadows do not saturate to solid black. This is a visual
   heuristic, not an accumulated-shadow model.

Reuse:
The last (sun, viewport, building collection) is remembered. A request whose
sun is within the SunPosition reuse tolerance, whose viewport is within
0.0008 deg on every edge, and whose building collection is the *same object*
returns the previous ShadowResult unchanged.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from engine_settings import EngineSettings
from geo_models import Bounds, Building, Position, SunPosition
from shadow_geometry_service import ShadowGeometryService
from sun_ephemeris_service import SunEphemerisService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShadowDrawable:
    """
    One polygon ready for a renderer.

    Attributes:
        building_id: Building that casts the shadow
        rings: Outer shadow ring, then the footprint reversed as a hole
        fill_opacity: Final opacity after density attenuation
    """
    building_id: str
    rings: List[List[Position]]
    fill_opacity: float


@dataclass
class ShadowResult:
    """
    Output of one shadow computation.

    Attributes:
        polygons: building id -> shadow ring ([] for culled/negligible/night)
        drawables: Polygons with opacity, in building order
        base_opacity: Opacity before attenuation
        sun: Sun position the result was computed for
    """
    polygons: Dict[str, List[Position]]
    drawables: List[ShadowDrawable] = field(default_factory=list)
    base_opacity: float = 0.0
    sun: Optional[SunPosition] = None


class BuildingShadowService:
    """
    Stateful shadow engine owned by one map session.

    The only state is the reuse cache; every computation is synchronous.
    """

    # Opacity curve breakpoints (degrees of apparent altitude)
    HORIZON_FADE_END_DEG = SunEphemerisService.NIGHT_THRESHOLD_DEG + 0.5
    HORIZON_FADE_START_DEG = 5.0
    PEAK_OPACITY_START_DEG = 18.0
    PEAK_OPACITY_END_DEG = 62.0
    ZENITH_END_DEG = 88.0
    HORIZON_ZONE_OPACITY_FRACTION = 0.5

    MIN_OPACITY = 0.005
    DRAWABLE_OPACITY_FLOOR = 0.03
    DRAWABLE_OPACITY_CEILING = 0.15

    DENSITY_GRID_SIZE = 24
    BOUNDS_TOLERANCE_DEG = 0.0008
    MIN_DRAWABLE_FLOOR_M = 0.5
    PIXELS_PER_MIN_SHADOW = 1.2

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()
        self._last_sun: Optional[SunPosition] = None
        self._last_viewport: Optional[Bounds] = None
        self._last_buildings: Optional[Sequence[Building]] = None
        self._last_result: Optional[ShadowResult] = None

    def base_opacity(self, altitude_rad: float) -> float:
        """
        Piecewise-linear shadow opacity over altitude.

        0 below the horizon fade end, ramps to half the maximum through the
        horizon zone (up to 5 deg), reaches the maximum at 18 deg, holds it to
        62 deg, then fades to 0 at 88 deg.
        """
        max_opacity = self.settings.max_shadow_opacity
        horizon_opacity = max_opacity * self.HORIZON_ZONE_OPACITY_FRACTION
        alt_deg = math.degrees(altitude_rad)

        if alt_deg <= self.HORIZON_FADE_END_DEG or alt_deg >= self.ZENITH_END_DEG:
            opacity = 0.0
        elif alt_deg < self.HORIZON_FADE_START_DEG:
            span = self.HORIZON_FADE_START_DEG - self.HORIZON_FADE_END_DEG
            opacity = (alt_deg - self.HORIZON_FADE_END_DEG) / span * horizon_opacity
        elif alt_deg < self.PEAK_OPACITY_START_DEG:
            span = self.PEAK_OPACITY_START_DEG - self.HORIZON_FADE_START_DEG
            opacity = horizon_opacity + (alt_deg - self.HORIZON_FADE_START_DEG) / span * (max_opacity - horizon_opacity)
        elif alt_deg <= self.PEAK_OPACITY_END_DEG:
            opacity = max_opacity
        else:
            span = self.ZENITH_END_DEG - self.PEAK_OPACITY_END_DEG
            opacity = (1.0 - (alt_deg - self.PEAK_OPACITY_END_DEG) / span) * max_opacity

        return max(0.0, min(max_opacity, opacity))

    def min_drawable_length_m(self, viewport: Bounds, zoom: float) -> float:
        mpp = SunEphemerisService.meters_per_pixel(viewport.center.lat, zoom)
        return max(self.MIN_DRAWABLE_FLOOR_M, mpp * self.PIXELS_PER_MIN_SHADOW)

    def can_reuse(self, sun: SunPosition, viewport: Bounds, buildings: Sequence[Building]) -> bool:
        return (
            self._last_result is not None
            and bool(self._last_result.polygons)
            and self._last_sun is not None
            and sun.is_close_to(self._last_sun)
            and self._last_viewport is not None
            and ShadowGeometryService.bounds_close(self._last_viewport, viewport, self.BOUNDS_TOLERANCE_DEG)
            and self._last_buildings is buildings
        )

    def _remember(self, sun: SunPosition, viewport: Bounds, buildings: Sequence[Building], result: ShadowResult) -> ShadowResult:
        self._last_sun = sun
        self._last_viewport = viewport
        self._last_buildings = buildings
        self._last_result = result
        return result

    def reset(self) -> None:
        """Forget the reuse cache (map reload, session dispose)."""
        self._last_sun = None
        self._last_viewport = None
        self._last_buildings = None
        self._last_result = None

    def compute_shadows(
        self,
        buildings: Sequence[Building],
        sun: SunPosition,
        viewport: Bounds,
        zoom: float,
    ) -> ShadowResult:
        """
        Shadow polygons for all buildings.

        Args:
            buildings: Loaded building collection; its identity is part of the
                reuse key, so pass the same object while it is unchanged
            sun: Sun position at the viewport center
            viewport: Current camera bounds
            zoom: Current zoom level (drives the minimum drawable length)

        Returns:
            ShadowResult with an entry for every building id.
        """
        if self.can_reuse(sun, viewport, buildings):
            logger.debug("[SHADOWS] Reusing previous shadow result")
            return self._last_result

        if SunEphemerisService.is_night(sun):
            result = ShadowResult(polygons={b.id: [] for b in buildings}, sun=sun)
            return self._remember(sun, viewport, buildings, result)

        base_opacity = self.base_opacity(sun.altitude_rad)
        if base_opacity <= self.MIN_OPACITY:
            result = ShadowResult(polygons={b.id: [] for b in buildings}, sun=sun)
            return self._remember(sun, viewport, buildings, result)

        min_length = self.min_drawable_length_m(viewport, zoom)
        grid_n = self.DENSITY_GRID_SIZE
        density = [[0] * grid_n for _ in range(grid_n)]

        def _cell(value: float, low: float, high: float) -> int:
            frac = max(0.0, min(0.9999, (value - low) / (high - low + 1e-12)))
            return min(grid_n - 1, int(math.floor(frac * grid_n)))

        polygons: Dict[str, List[Position]] = {}
        drawables: List[ShadowDrawable] = []
        culled = 0

        for building in buildings:
            if not ShadowGeometryService.bounds_intersect(building.bounds, viewport):
                polygons[building.id] = []
                culled += 1
                continue

            ring = ShadowGeometryService.ribbon_shadow(
                building,
                altitude_rad=sun.altitude_rad,
                azimuth_rad=sun.azimuth_rad,
                min_drawable_m=min_length,
            )
            polygons[building.id] = ring
            if len(ring) < 3:
                continue

            centroid = ShadowGeometryService.ring_centroid(ring)
            col = _cell(centroid.lng, viewport.west, viewport.east)
            row = _cell(centroid.lat, viewport.south, viewport.north)
            seen = density[row][col]

            opacity = base_opacity / (1.0 + seen)
            opacity = max(self.DRAWABLE_OPACITY_FLOOR, min(self.DRAWABLE_OPACITY_CEILING, opacity))

            rings = [ring]
            if len(building.polygon) >= 4:
                rings.append(list(reversed(building.polygon)))

            drawables.append(ShadowDrawable(building_id=building.id, rings=rings, fill_opacity=opacity))
            density[row][col] = seen + 1

        logger.debug(
            f"[SHADOWS] Computed {len(drawables)} shadows "
            f"({culled} culled, alt={sun.altitude_deg:.1f}, az={sun.azimuth_deg:.0f})"
        )
        result = ShadowResult(polygons=polygons, drawables=drawables, base_opacity=base_opacity, sun=sun)
        return self._remember(sun, viewport, buildings, result)
