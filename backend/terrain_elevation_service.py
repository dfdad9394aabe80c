"""
Terrain Elevation Service - Elevation Sampling from Terrain-RGB Tiles

Samples ground elevation from RGB-encoded raster tiles:

    elevation_m = -10000 + (R * 65536 + G * 256 + B) * 0.1

Tiles are addressed in the Web Mercator (slippy map) scheme at a fixed
zoom, fetched through a TerrainTileSource, decoded with Pillow and kept in a
bounded in-memory cache. Values are bilinearly interpolated across the four
nearest pixels.

Cache policy:
Eviction is by insertion order: once the cache is full the oldest inserted
tile is dropped, and a cache hit does NOT refresh a tile's position (not
recency-based LRU).

Failures (network errors, non-200 responses, undecodable images) are cached
as an "unavailable" tile so sampling returns None without refetching.
"""

import logging
import math
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from providers.contracts import ElevationProvider, TerrainTileSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElevationTile:
    """
    Decoded tile, or an unavailable marker when image is None.

    Attributes:
        key: Cache key "z/x/y" with "@2x" suffix for hi-dpi tiles
        image: RGB image, or None when the tile could not be loaded
        size: Edge length in pixels (256 or 512)
    """
    key: str
    image: Optional[Image.Image]
    size: int


class TerrainElevationService(ElevationProvider):
    """
    Elevation provider backed by terrain-RGB tiles.

    One instance per map session; call dispose() when the session ends.
    """

    ELEVATION_OFFSET_M = -10000.0
    ELEVATION_SCALE_M = 0.1
    # Web Mercator tiles stop here
    MAX_MERCATOR_LAT = 85.0511

    def __init__(
        self,
        tile_source: TerrainTileSource,
        zoom: int = 14,
        use_hidpi: bool = False,
        max_tiles_in_cache: int = 128,
    ):
        self.tile_source = tile_source
        self.zoom = zoom
        self.use_hidpi = use_hidpi
        self.max_tiles_in_cache = max_tiles_in_cache
        self._cache: Dict[str, ElevationTile] = {}

    @property
    def tile_size(self) -> int:
        return 512 if self.use_hidpi else 256

    def dispose(self) -> None:
        self._cache.clear()

    def cached_tile_keys(self) -> List[str]:
        """Cache keys, oldest inserted first."""
        return list(self._cache)

    @staticmethod
    def tile_coordinates(lat: float, lng: float, zoom: int) -> Tuple[float, float]:
        """Fractional slippy-map tile (x, y) for a point."""
        n = math.pow(2.0, zoom)
        lat_rad = math.radians(lat)
        x = (lng + 180.0) / 360.0 * n
        y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n
        return x, y

    @staticmethod
    def decode_elevation(r: int, g: int, b: int) -> float:
        return TerrainElevationService.ELEVATION_OFFSET_M + (r * 65536.0 + g * 256.0 + b) * TerrainElevationService.ELEVATION_SCALE_M

    @staticmethod
    def bilinear(v00: float, v10: float, v01: float, v11: float, fx: float, fy: float) -> float:
        """Bilinear blend; fx runs v00 -> v10, fy runs v00 -> v01."""
        top = v00 * (1 - fx) + v10 * fx
        bottom = v01 * (1 - fx) + v11 * fx
        return top * (1 - fy) + bottom * fy

    def tile_key(self, x: int, y: int) -> str:
        return f"{self.zoom}/{x}/{y}{'@2x' if self.use_hidpi else ''}"

    async def sample_elevation_m(self, lat: float, lng: float) -> Optional[float]:
        """
        Elevation in meters at a point, or None when no tile data exists.
        """
        if abs(lat) >= self.MAX_MERCATOR_LAT:
            logger.debug(f"[TERRAIN] Latitude {lat:.5f} outside tile coverage")
            return None
        x_float, y_float = self.tile_coordinates(lat, lng, self.zoom)
        x = int(math.floor(x_float))
        y = int(math.floor(y_float))
        key = self.tile_key(x, y)

        tile = self._cache.get(key)
        if tile is None:
            tile = await self._load_tile(x, y, key)
        if tile.image is None:
            return None

        size = tile.size
        px = max(0.0, min(size - 1e-6, (x_float - x) * size))
        py = max(0.0, min(size - 1e-6, (y_float - y) * size))

        x0 = int(math.floor(px))
        y0 = int(math.floor(py))
        x1 = min(x0 + 1, size - 1)
        y1 = min(y0 + 1, size - 1)

        pixels = tile.image
        v00 = self.decode_elevation(*pixels.getpixel((x0, y0))[:3])
        v10 = self.decode_elevation(*pixels.getpixel((x1, y0))[:3])
        v01 = self.decode_elevation(*pixels.getpixel((x0, y1))[:3])
        v11 = self.decode_elevation(*pixels.getpixel((x1, y1))[:3])

        return self.bilinear(v00, v10, v01, v11, px - x0, py - y0)

    def _insert(self, tile: ElevationTile) -> ElevationTile:
        if len(self._cache) >= self.max_tiles_in_cache:
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]
        self._cache[tile.key] = tile
        return tile

    async def _load_tile(self, x: int, y: int, key: str) -> ElevationTile:
        data = await self.tile_source.fetch_tile(self.zoom, x, y, self.use_hidpi)
        if data:
            try:
                with Image.open(BytesIO(data)) as raw:
                    image = raw.convert("RGB")
                return self._insert(ElevationTile(key=key, image=image, size=image.width))
            except (UnidentifiedImageError, OSError) as e:
                logger.warning(f"[TERRAIN] Could not decode tile {key}: {e}")
        else:
            logger.debug(f"[TERRAIN] Tile {key} unavailable")
        return self._insert(ElevationTile(key=key, image=None, size=self.tile_size))
