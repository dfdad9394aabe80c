from __future__ import annotations

import json
from io import BytesIO
from pathlib import Path
from typing import List, Optional

from PIL import Image

from geo_models import Bounds, Building, Place
from overpass_parser import parse_buildings, parse_places
from shadow_geometry_service import ShadowGeometryService

from .contracts import BuildingSource, ElevationProvider, PlaceSource, TerrainTileSource

FIXTURES_ROOT = Path(__file__).parent.parent / "fixtures" / "demo"


class _FixtureLoader:
    def __init__(self, fixture_name: str):
        self.path = FIXTURES_ROOT / fixture_name / "data.json"
        with self.path.open("r", encoding="utf-8") as f:
            self.data = json.load(f)


class FakeBuildingSource(BuildingSource, _FixtureLoader):
    def __init__(self) -> None:
        _FixtureLoader.__init__(self, "buildings")
        self.buildings = parse_buildings(self.data)
        self.calls = 0

    async def fetch_buildings(self, bounds: Bounds) -> List[Building]:
        self.calls += 1
        return [b for b in self.buildings if ShadowGeometryService.bounds_intersect(b.bounds, bounds)]


class FakePlaceSource(PlaceSource, _FixtureLoader):
    def __init__(self) -> None:
        _FixtureLoader.__init__(self, "places")
        self.places = parse_places(self.data)
        self.calls = 0

    async def fetch_places(self, bounds: Bounds) -> List[Place]:
        self.calls += 1
        return [p for p in self.places if ShadowGeometryService.bounds_contain_point(bounds, p.location)]


class FakeElevationProvider(ElevationProvider, _FixtureLoader):
    def __init__(self) -> None:
        _FixtureLoader.__init__(self, "elevation")

    async def sample_elevation_m(self, lat: float, lng: float) -> Optional[float]:
        for area in self.data.get("areas", []):
            if area["south"] <= lat <= area["north"] and area["west"] <= lng <= area["east"]:
                return area["elevation_m"]
        return self.data.get("default_m")


class FakeTerrainTileSource(TerrainTileSource, _FixtureLoader):
    """Flat terrain-RGB tiles rendered on the fly."""

    def __init__(self) -> None:
        _FixtureLoader.__init__(self, "tiles")
        self.requested: List[str] = []

    @staticmethod
    def encode_elevation(elevation_m: float):
        value = int(round((elevation_m + 10000.0) / 0.1))
        return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF

    async def fetch_tile(self, zoom: int, x: int, y: int, hidpi: bool = False) -> Optional[bytes]:
        self.requested.append(f"{zoom}/{x}/{y}{'@2x' if hidpi else ''}")
        size = 512 if hidpi else 256
        color = self.encode_elevation(self.data.get("flat_elevation_m", 0.0))
        buffer = BytesIO()
        Image.new("RGB", (size, size), color).save(buffer, format="PNG")
        return buffer.getvalue()
