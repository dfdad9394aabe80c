from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .contracts import BuildingSource, ElevationProvider, PlaceSource, TerrainTileSource
from .fake_providers import (
    FakeBuildingSource,
    FakeElevationProvider,
    FakePlaceSource,
    FakeTerrainTileSource,
)
from .real_providers import MapboxTerrainTileSource, OverpassBuildingSource, OverpassPlaceSource

logger = logging.getLogger(__name__)

MODE_ENV_VAR = "SHADECAST_MODE"
FIXTURE_MODES = {"demo", "test"}


@dataclass
class ProviderSet:
    buildings: BuildingSource
    places: PlaceSource
    tiles: TerrainTileSource
    # When None, each session samples its own tile-backed elevation
    elevation: Optional[ElevationProvider] = None


def _overpass_and_mapbox() -> ProviderSet:
    return ProviderSet(
        buildings=OverpassBuildingSource(),
        places=OverpassPlaceSource(),
        tiles=MapboxTerrainTileSource(),
    )


def _fixture_backed() -> ProviderSet:
    return ProviderSet(
        buildings=FakeBuildingSource(),
        places=FakePlaceSource(),
        tiles=FakeTerrainTileSource(),
        elevation=FakeElevationProvider(),
    )


_active: Optional[ProviderSet] = None


def load_providers(mode: Optional[str] = None) -> ProviderSet:
    """Provider set for `mode`, or for $SHADECAST_MODE (default prod) when omitted."""
    global _active
    if _active is not None and mode is None:
        return _active
    selected = (mode or os.environ.get(MODE_ENV_VAR, "prod")).lower()
    _active = _fixture_backed() if selected in FIXTURE_MODES else _overpass_and_mapbox()
    logger.info(f"[PROVIDERS] Using {'fixture' if selected in FIXTURE_MODES else 'live'} providers ({selected})")
    return _active


def get_providers() -> ProviderSet:
    return load_providers()


def reload_providers(mode: Optional[str] = None) -> ProviderSet:
    global _active
    _active = None
    return load_providers(mode)
