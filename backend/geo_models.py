"""
Geo Models - Value types shared by the shadow engine

Positions, bounding boxes, buildings, places and sun positions.

All types are immutable. Buildings and places compare and hash by id only,
so a re-fetched building with the same id replaces the old one in keyed
collections without duplicating it.

Conventions:
- Position is (lng, lat) in WGS84 degrees
- Bounds is an axis-aligned box in degrees (south, west, north, east)
- Angles on SunPosition are radians; azimuth is clockwise from true north
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple


class PlaceType(str, Enum):
    """Point-of-interest categories"""
    EATERY = "eatery"
    PUB = "pub"
    PARK = "park"


@dataclass(frozen=True)
class Position:
    """Geographic position in degrees (longitude first)."""
    lng: float
    lat: float

    def __post_init__(self):
        if not (math.isfinite(self.lng) and math.isfinite(self.lat)):
            raise ValueError(f"Position must be finite, got ({self.lng}, {self.lat})")


@dataclass(frozen=True)
class Bounds:
    """
    Axis-aligned geographic bounding box.

    Attributes:
        south: Minimum latitude
        west: Minimum longitude (greater than east when crossing the antimeridian)
        north: Maximum latitude
        east: Maximum longitude
    """
    south: float
    west: float
    north: float
    east: float

    @property
    def southwest(self) -> Position:
        return Position(self.west, self.south)

    @property
    def northeast(self) -> Position:
        return Position(self.east, self.north)

    @property
    def center(self) -> Position:
        return Position((self.west + self.east) / 2.0, (self.south + self.north) / 2.0)

    @property
    def crosses_antimeridian(self) -> bool:
        return self.east < self.west

    @classmethod
    def around(cls, lat: float, lng: float, radius_m: float) -> "Bounds":
        """Square box of +/- radius_m around a point (latitude scale on both axes)."""
        delta = radius_m / 111320.0
        return cls(south=lat - delta, west=lng - delta, north=lat + delta, east=lng + delta)


def _ring_bounds(polygon: Sequence[Position]) -> Bounds:
    if not polygon:
        return Bounds(0.0, 0.0, 0.0, 0.0)
    lats = [p.lat for p in polygon]
    lngs = [p.lng for p in polygon]
    return Bounds(south=min(lats), west=min(lngs), north=max(lats), east=max(lngs))


@dataclass(frozen=True, eq=False)
class Building:
    """
    Building footprint with an estimated height.

    Attributes:
        id: Stable upstream feature id (e.g. "way-123")
        polygon: Footprint ring, closed on construction (first == last)
        height: Height in meters
        bounds: Footprint bounding box, computed once at construction
    """
    id: str
    polygon: Tuple[Position, ...]
    height: float
    bounds: Bounds = field(init=False, repr=False)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Building id is required")
        ring = tuple(self.polygon)
        if len(ring) >= 3 and ring[0] != ring[-1]:
            ring = ring + (ring[0],)
        object.__setattr__(self, "polygon", ring)
        object.__setattr__(self, "height", float(self.height))
        object.__setattr__(self, "bounds", _ring_bounds(ring))

    @property
    def center(self) -> Position:
        return self.bounds.center

    def __eq__(self, other):
        if self is other:
            return True
        if not isinstance(other, Building):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


@dataclass(frozen=True, eq=False)
class Place:
    """
    Point of interest that gets a sun/shade state.

    Attributes:
        id: Upstream id ("node/42", "way/7", ...)
        name: Display name
        location: Where the place is
        type: Category
        has_outdoor_seating: True/False, or None when unknown
        outdoor_seats: Outdoor seat count when tagged
        outdoor_covered: Whether the outdoor seating is covered, None when unknown
    """
    id: str
    name: str
    location: Position
    type: PlaceType
    has_outdoor_seating: Optional[bool] = None
    outdoor_seats: Optional[int] = None
    outdoor_covered: Optional[bool] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Place id is required")

    def __eq__(self, other):
        if self is other:
            return True
        if not isinstance(other, Place):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)


@dataclass(frozen=True)
class SunPosition:
    """
    Apparent sun position for one instant and observer.

    Attributes:
        altitude_rad: Refraction-corrected altitude above the horizon
        azimuth_rad: Bearing clockwise from north, in [0, 2*pi)
    """
    altitude_rad: float
    azimuth_rad: float

    # Reuse tolerances for cached shadow work
    ALTITUDE_TOLERANCE_RAD = 0.010   # ~0.57 deg
    AZIMUTH_TOLERANCE_RAD = 0.035    # ~2 deg

    @property
    def altitude_deg(self) -> float:
        return math.degrees(self.altitude_rad)

    @property
    def azimuth_deg(self) -> float:
        return math.degrees(self.azimuth_rad)

    def is_close_to(self, other: "SunPosition") -> bool:
        """True when a shadow computed for `other` can stand in for this one."""
        if abs(self.altitude_rad - other.altitude_rad) >= SunPosition.ALTITUDE_TOLERANCE_RAD:
            return False
        return abs(wrap_angle(self.azimuth_rad - other.azimuth_rad)) < SunPosition.AZIMUTH_TOLERANCE_RAD


def wrap_angle(angle_rad: float) -> float:
    """Normalize an angle to [-pi, pi)."""
    two_pi = 2 * math.pi
    wrapped = (angle_rad + math.pi) % two_pi
    return wrapped - math.pi
