from __future__ import annotations

from typing import List, Optional, Protocol

from geo_models import Bounds, Building, Place


class BuildingSource(Protocol):
    async def fetch_buildings(self, bounds: Bounds) -> List[Building]:
        ...


class PlaceSource(Protocol):
    async def fetch_places(self, bounds: Bounds) -> List[Place]:
        ...


class TerrainTileSource(Protocol):
    async def fetch_tile(self, zoom: int, x: int, y: int, hidpi: bool = False) -> Optional[bytes]:
        ...


class ElevationProvider(Protocol):
    async def sample_elevation_m(self, lat: float, lng: float) -> Optional[float]:
        ...
