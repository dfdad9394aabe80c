from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

import httpx

from geo_models import Bounds, Building, Place
from overpass_parser import parse_buildings, parse_places

from .contracts import BuildingSource, PlaceSource, TerrainTileSource

logger = logging.getLogger(__name__)

MAPBOX_ACCESS_TOKEN = os.environ.get("MAPBOX_ACCESS_TOKEN", "")
OVERPASS_URL = os.environ.get("OVERPASS_URL", "https://overpass-api.de/api/interpreter")
OVERPASS_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}
TERRAIN_TILE_URL = "https://api.mapbox.com/v4/mapbox.terrain-rgb/{z}/{x}/{y}{scale}.pngraw"

BUILDING_QUERY_BUFFER_DEG = 0.001


def building_query(bounds: Bounds, buffer_deg: float = BUILDING_QUERY_BUFFER_DEG) -> str:
    bbox = (
        f"{bounds.south - buffer_deg},{bounds.west - buffer_deg},"
        f"{bounds.north + buffer_deg},{bounds.east + buffer_deg}"
    )
    return (
        "[out:json][timeout:30];\n"
        "(\n"
        f'  way["building"]({bbox});\n'
        f'  relation["building"]({bbox});\n'
        ");\n"
        "(._;>;);\n"
        "out body;\n"
    )


def place_query(bbox: str) -> str:
    return (
        "[out:json][timeout:30];\n"
        "(\n"
        f'  nwr["amenity"~"cafe|restaurant|bar|pub|fast_food"]({bbox});\n'
        f'  nwr["amenity"="biergarten"]({bbox});\n'
        f'  nwr["leisure"="park"]({bbox});\n'
        ");\n"
        "out center tags;\n"
    )


def _bbox_key(bounds: Bounds, decimals: int) -> str:
    return (
        f"{bounds.south:.{decimals}f},{bounds.west:.{decimals}f},"
        f"{bounds.north:.{decimals}f},{bounds.east:.{decimals}f}"
    )


class OverpassBuildingSource(BuildingSource):
    def __init__(self, url: str = OVERPASS_URL) -> None:
        self.url = url
        self._cache: Dict[str, List[Building]] = {}

    async def fetch_buildings(self, bounds: Bounds) -> List[Building]:
        key = _bbox_key(bounds, 4)
        if key in self._cache:
            return self._cache[key]
        try:
            async with httpx.AsyncClient(timeout=35.0) as client:
                response = await client.post(
                    self.url, data={"data": building_query(bounds)}, headers=OVERPASS_HEADERS
                )
                response.raise_for_status()
                buildings = parse_buildings(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[OVERPASS] Building fetch failed for {key}: {e}")
            return []
        self._cache[key] = buildings
        logger.info(f"[OVERPASS] Fetched {len(buildings)} buildings for {key}")
        return buildings


class OverpassPlaceSource(PlaceSource):
    def __init__(self, url: str = OVERPASS_URL) -> None:
        self.url = url
        self._cache: Dict[str, List[Place]] = {}

    async def fetch_places(self, bounds: Bounds) -> List[Place]:
        key = _bbox_key(bounds, 6)
        if key in self._cache:
            return self._cache[key]
        try:
            async with httpx.AsyncClient(timeout=35.0) as client:
                response = await client.post(
                    self.url, data={"data": place_query(key)}, headers=OVERPASS_HEADERS
                )
                response.raise_for_status()
                places = parse_places(response.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[OVERPASS] Place fetch failed for {key}: {e}")
            return []
        self._cache[key] = places
        logger.info(f"[OVERPASS] Fetched {len(places)} places for {key}")
        return places


class MapboxTerrainTileSource(TerrainTileSource):
    def __init__(self, access_token: Optional[str] = None) -> None:
        self.access_token = MAPBOX_ACCESS_TOKEN if access_token is None else access_token

    def tile_url(self, zoom: int, x: int, y: int, hidpi: bool = False) -> str:
        return TERRAIN_TILE_URL.format(z=zoom, x=x, y=y, scale="@2x" if hidpi else "")

    async def fetch_tile(self, zoom: int, x: int, y: int, hidpi: bool = False) -> Optional[bytes]:
        if not self.access_token:
            logger.debug("[TERRAIN] No MAPBOX_ACCESS_TOKEN set, terrain disabled")
            return None
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(
                    self.tile_url(zoom, x, y, hidpi), params={"access_token": self.access_token}
                )
                if response.status_code != 200:
                    logger.debug(f"[TERRAIN] Tile {zoom}/{x}/{y} returned {response.status_code}")
                    return None
                return response.content
        except httpx.HTTPError as e:
            logger.warning(f"[TERRAIN] Tile {zoom}/{x}/{y} fetch failed: {e}")
            return None
