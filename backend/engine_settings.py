"""
Engine Settings

Tunables for the shadow engine, occlusion checks and terrain sampling.
Defaults match the values the map client ships with; every field can be
overridden with a SHADECAST_* environment variable.
"""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class EngineSettings:
    """
    Attributes:
        max_shadow_opacity: Plateau of the opacity curve
        terrain_enabled: Whether to query terrain horizons at all
        horizon_margin_deg: Sun must clear the horizon by this much
        horizon_budget: New horizon queries allowed per redraw
        heavy_load_threshold: Skip horizon queries past this many visible places
        terrain_zoom: Zoom level of the elevation tiles
        terrain_hidpi: Use 512-px (@2x) elevation tiles
        tile_cache_size: Decoded elevation tiles kept in memory
        min_building_zoom: Below this zoom all buildings are dropped
        marker_pad_m: Viewport padding for place evaluation
        consensus_radius_m: Neighbor radius for icon smoothing
        consensus_fraction: Majority needed to override a place's state
        consensus_min_neighbors: Neighbors needed before smoothing applies
    """
    max_shadow_opacity: float = 0.20
    terrain_enabled: bool = True
    horizon_margin_deg: float = 0.5
    horizon_budget: int = 10
    heavy_load_threshold: int = 600
    terrain_zoom: int = 14
    terrain_hidpi: bool = False
    tile_cache_size: int = 128
    min_building_zoom: float = 14.5
    marker_pad_m: float = 320.0
    consensus_radius_m: float = 10.0
    consensus_fraction: float = 0.66
    consensus_min_neighbors: int = 1

    def __post_init__(self):
        if not 0.0 <= self.max_shadow_opacity <= 1.0:
            raise ValueError(f"max_shadow_opacity must be 0-1, got {self.max_shadow_opacity}")
        if self.tile_cache_size < 1:
            raise ValueError(f"tile_cache_size must be >= 1, got {self.tile_cache_size}")
        if not 0.0 < self.consensus_fraction <= 1.0:
            raise ValueError(f"consensus_fraction must be in (0, 1], got {self.consensus_fraction}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from SHADECAST_<FIELD_NAME> variables."""
        env = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = env.get(f"SHADECAST_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            if f.type in (bool, "bool"):
                overrides[f.name] = _parse_bool(raw)
            elif f.type in (int, "int"):
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = float(raw)
        return cls(**overrides)
