"""
Terrain Horizon Service - Distant-Terrain Sun Blocking

Finds how high the terrain rises above a point along a compass bearing, so a
place behind a ridge can be marked shaded even with no buildings around.

Ray march:
- Sample the origin elevation, then step outward along the bearing
- Step starts at 25 m and grows geometrically (x1.35) up to 400 m per step
- Stop at 12 km, or once the running maximum exceeds 60 deg (no realistic
  terrain adds more past that)
- At each sample: angle = atan((elevation - origin_elevation) / distance)

Horizon angle is the running maximum, floored at 0 (flat horizon). Samples
without data are skipped; a missing origin elevation gives None ("cannot
determine", which never blocks the sun).

Results are cached per session under a quantized key: latitude and longitude
rounded to 0.005 deg, azimuth rounded to 10 deg sectors. The cache grows with
the distinct (place, sector) pairs actually queried and is cleared on dispose.

Constants:
- INITIAL_STEP_M: 25 m first step
- STEP_GROWTH: 1.35 step multiplier
- MAX_STEP_M: 400 m step cap
- MAX_DISTANCE_M: 12000 m search distance
- STEEP_STOP_RAD: 60 deg early-stop bound
"""

import logging
import math
from typing import Dict, Optional

from providers.contracts import ElevationProvider
from shadow_geometry_service import ShadowGeometryService

logger = logging.getLogger(__name__)


class TerrainHorizonService:
    """
    Horizon-angle lookups for one map session.
    """

    INITIAL_STEP_M = 25.0
    STEP_GROWTH = 1.35
    MAX_STEP_M = 400.0
    MAX_DISTANCE_M = 12000.0
    STEEP_STOP_RAD = math.radians(60.0)

    QUANTIZE_PER_DEG = 200      # 0.005 deg
    AZIMUTH_SECTOR_DEG = 10

    def __init__(self, elevation: ElevationProvider):
        self.elevation = elevation
        self._cache: Dict[str, float] = {}

    def dispose(self) -> None:
        self._cache.clear()
        dispose = getattr(self.elevation, "dispose", None)
        if callable(dispose):
            dispose()

    @staticmethod
    def cache_key(lat: float, lng: float, azimuth_rad: float) -> str:
        """Quantized (lat, lng, azimuth sector) key."""
        sector = int(round(math.degrees(azimuth_rad) / TerrainHorizonService.AZIMUTH_SECTOR_DEG)) * TerrainHorizonService.AZIMUTH_SECTOR_DEG
        sector %= 360
        q = TerrainHorizonService.QUANTIZE_PER_DEG
        q_lat = round(lat * q) / q
        q_lng = round(lng * q) / q
        return f"{q_lat},{q_lng},{sector}"

    def cached_horizon(self, lat: float, lng: float, azimuth_rad: float) -> Optional[float]:
        return self._cache.get(self.cache_key(lat, lng, azimuth_rad))

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def horizon_angle(self, lat: float, lng: float, azimuth_rad: float) -> Optional[float]:
        """
        Maximum terrain elevation angle (radians) along a bearing.

        Args:
            lat: Origin latitude
            lng: Origin longitude
            azimuth_rad: Bearing clockwise from north

        Returns:
            Horizon angle in radians (>= 0), or None when the origin
            elevation is unavailable. Determined values are cached.
        """
        key = self.cache_key(lat, lng, azimuth_rad)
        if key in self._cache:
            return self._cache[key]

        origin_elevation = await self.elevation.sample_elevation_m(lat, lng)
        if origin_elevation is None:
            logger.debug(f"[TERRAIN] No origin elevation at {lat:.5f},{lng:.5f}")
            return None

        east_unit = math.sin(azimuth_rad)
        north_unit = math.cos(azimuth_rad)
        lat_scale = ShadowGeometryService.meters_to_lat(1.0)
        lng_scale = ShadowGeometryService.meters_to_lng(1.0, lat)

        best = 0.0
        step = self.INITIAL_STEP_M
        distance = 0.0
        samples = 0

        while True:
            distance += step
            if distance > self.MAX_DISTANCE_M:
                break
            sample_lat = lat + north_unit * distance * lat_scale
            sample_lng = lng + east_unit * distance * lng_scale
            elevation = await self.elevation.sample_elevation_m(sample_lat, sample_lng)
            samples += 1
            if elevation is not None:
                angle = math.atan((elevation - origin_elevation) / distance)
                if angle > best:
                    best = angle
                if best > self.STEEP_STOP_RAD:
                    break
            step = min(step * self.STEP_GROWTH, self.MAX_STEP_M)

        logger.debug(
            f"[TERRAIN] Horizon {math.degrees(best):.2f} deg at {lat:.5f},{lng:.5f} "
            f"az={math.degrees(azimuth_rad):.0f} ({samples} samples)"
        )
        self._cache[key] = best
        return best
