"""External collaborators: building and place sources, terrain tiles, elevation."""

from .contracts import BuildingSource, ElevationProvider, PlaceSource, TerrainTileSource
from .registry import ProviderSet, get_providers, load_providers, reload_providers

__all__ = [
    "BuildingSource",
    "ElevationProvider",
    "PlaceSource",
    "TerrainTileSource",
    "ProviderSet",
    "get_providers",
    "load_providers",
    "reload_providers",
]
