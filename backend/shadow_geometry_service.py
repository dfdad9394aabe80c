"""
Shadow Geometry Service - Polygon, Projection & Bounds Primitives

Pure computational geometry used by the shadow engine and occlusion checks.
All functions are pure and deterministic (no I/O, no random state).

Geometry Model:
- Coordinates are treated as planar (lng = x, lat = y) for polygon tests;
  footprints and shadows are small enough that this is accurate
- Meters <-> degrees use a fixed 111320 m per degree of latitude and
  scale longitude by cos(latitude)
- Shadow projection translates the footprint away from the sun by
  height / tan(altitude), clamped to MAX_SHADOW_LENGTH_M

Shadow methods:
- Ribbon (preferred): footprint ring + translated ring reversed, closed.
  Non-convex, so it does not inflate area for L-shaped or rotated footprints
- Convex hull (fallback): Jarvis march over footprint + translated vertices.
  Simpler, overestimates area for non-convex footprints

Constants:
- METERS_PER_DEGREE_LAT: 111320 m
- MAX_SHADOW_LENGTH_M: 1500 m cap on projected shadow length
- MIN_TAN_ALTITUDE: ~tan(0.1 deg) floor so grazing sun gives a finite length
- EDGE_EPSILON_DEG: points this close to an edge count as inside
"""

import logging
import math
from typing import List, Optional, Sequence

from geo_models import Bounds, Building, Position
from sun_ephemeris_service import SunEphemerisService

logger = logging.getLogger(__name__)


class ShadowGeometryService:
    """
    Pure geometry helpers for shadow casting.

    All methods are static and deterministic.
    """

    METERS_PER_DEGREE_LAT = 111320.0
    MAX_SHADOW_LENGTH_M = 1500.0
    MIN_TAN_ALTITUDE = 0.00175  # ~tan(0.1 deg)
    MIN_HEIGHT_M = 0.1
    DEFAULT_MIN_DRAWABLE_M = 0.5
    EDGE_EPSILON_DEG = 1e-9

    # ---------- Unit conversion ----------

    @staticmethod
    def meters_per_degree_lng(latitude_deg: float) -> float:
        return ShadowGeometryService.METERS_PER_DEGREE_LAT * math.cos(math.radians(latitude_deg))

    @staticmethod
    def meters_to_lat(meters: float) -> float:
        return meters / ShadowGeometryService.METERS_PER_DEGREE_LAT

    @staticmethod
    def meters_to_lng(meters: float, latitude_deg: float) -> float:
        """
        Convert an east-west distance to degrees of longitude.

        Near the poles (cos(lat) ~ 0) the offset collapses to zero instead of
        dividing by a vanishing scale.
        """
        per_degree = ShadowGeometryService.meters_per_degree_lng(latitude_deg)
        if abs(per_degree) < 1e-7:
            return 0.0
        return meters / per_degree

    @staticmethod
    def local_offset_m(origin: Position, target: Position):
        """
        Equirectangular (east, north) offset in meters from origin to target.

        Longitude is scaled at the origin's latitude.
        """
        east = (target.lng - origin.lng) * ShadowGeometryService.meters_per_degree_lng(origin.lat)
        north = (target.lat - origin.lat) * ShadowGeometryService.METERS_PER_DEGREE_LAT
        return east, north

    @staticmethod
    def offset_position(origin: Position, east_m: float, north_m: float) -> Position:
        return Position(
            origin.lng + ShadowGeometryService.meters_to_lng(east_m, origin.lat),
            origin.lat + ShadowGeometryService.meters_to_lat(north_m),
        )

    # ---------- Point in polygon ----------

    @staticmethod
    def _on_segment(p: Position, a: Position, b: Position, eps: float) -> bool:
        min_x, max_x = min(a.lng, b.lng), max(a.lng, b.lng)
        min_y, max_y = min(a.lat, b.lat), max(a.lat, b.lat)
        if p.lng < min_x - eps or p.lng > max_x + eps or p.lat < min_y - eps or p.lat > max_y + eps:
            return False
        dx = b.lng - a.lng
        dy = b.lat - a.lat
        length = math.hypot(dx, dy)
        if length < eps:
            return math.hypot(p.lng - a.lng, p.lat - a.lat) <= eps
        cross = dx * (p.lat - a.lat) - dy * (p.lng - a.lng)
        return abs(cross) / length <= eps

    @staticmethod
    def point_in_polygon(point: Position, polygon: Sequence[Position]) -> bool:
        """
        Ray-casting point-in-polygon test, boundary inclusive.

        Args:
            point: Point to test
            polygon: Ring of vertices, closed or open (open rings are
                auto-closed)

        Returns:
            True if inside or within EDGE_EPSILON_DEG of an edge/vertex.
            Rings with fewer than 3 vertices always return False.
        """
        if polygon is None or len(polygon) < 3:
            return False
        eps = ShadowGeometryService.EDGE_EPSILON_DEG
        x, y = point.lng, point.lat
        inside = False
        n = len(polygon)
        j = n - 1
        for i in range(n):
            a = polygon[i]
            b = polygon[j]
            j = i
            if ShadowGeometryService._on_segment(point, a, b, eps):
                return True
            if (a.lat > y) == (b.lat > y):
                continue
            x_cross = (b.lng - a.lng) * (y - a.lat) / (b.lat - a.lat) + a.lng
            if x < x_cross:
                inside = not inside
        return inside

    # ---------- Shadow projection ----------

    @staticmethod
    def shadow_length_m(height_m: float, altitude_rad: float) -> float:
        """
        Ground shadow length for a height under the given apparent altitude.

        The tangent is floored at MIN_TAN_ALTITUDE and the result is capped
        at MAX_SHADOW_LENGTH_M, so the length never grows with altitude.
        """
        length = ShadowGeometryService._uncapped_length_m(height_m, altitude_rad)
        return min(length, ShadowGeometryService.MAX_SHADOW_LENGTH_M)

    @staticmethod
    def _uncapped_length_m(height_m: float, altitude_rad: float) -> float:
        # Sun at or under the floor (including just below the horizon) uses the floor
        tan_alt = max(ShadowGeometryService.MIN_TAN_ALTITUDE, math.tan(altitude_rad))
        return abs(height_m) / tan_alt

    @staticmethod
    def shadow_displacement_m(length_m: float, azimuth_rad: float):
        """(east, north) displacement pointing away from the sun."""
        return -length_m * math.sin(azimuth_rad), -length_m * math.cos(azimuth_rad)

    @staticmethod
    def open_ring(polygon: Sequence[Position]) -> List[Position]:
        """Vertices without the closing duplicate."""
        ring = list(polygon)
        if len(ring) > 1 and ring[0] == ring[-1]:
            ring = ring[:-1]
        return ring

    @staticmethod
    def _projection_inputs(building: Building, altitude_rad: float, min_drawable_m: float):
        if building is None:
            raise ValueError("building is required for shadow projection")
        if len(building.polygon) < 3 or altitude_rad <= SunEphemerisService.NIGHT_THRESHOLD_RAD:
            return None
        if building.height <= 0:
            return None
        height = max(ShadowGeometryService.MIN_HEIGHT_M, building.height)
        uncapped = ShadowGeometryService._uncapped_length_m(height, altitude_rad)
        if uncapped < min_drawable_m:
            return None
        base = ShadowGeometryService.open_ring(building.polygon)
        if len(base) < 3:
            return None
        return base, min(uncapped, ShadowGeometryService.MAX_SHADOW_LENGTH_M)

    @staticmethod
    def _translate(base: Sequence[Position], length_m: float, azimuth_rad: float) -> List[Position]:
        east, north = ShadowGeometryService.shadow_displacement_m(length_m, azimuth_rad)
        # Convert per vertex so large footprints use their own latitude scale
        return [ShadowGeometryService.offset_position(v, east, north) for v in base]

    @staticmethod
    def ribbon_shadow(
        building: Building,
        altitude_rad: float,
        azimuth_rad: float,
        min_drawable_m: float = DEFAULT_MIN_DRAWABLE_M,
    ) -> List[Position]:
        """
        Ribbon shadow polygon for a building.

        Args:
            building: Footprint and height (None is a programmer error)
            altitude_rad: Apparent sun altitude
            azimuth_rad: Sun azimuth, clockwise from north
            min_drawable_m: Shadows shorter than this are not produced

        Returns:
            Closed ring: footprint vertices followed by the translated
            vertices in reverse order. Empty when the footprint is degenerate,
            the height is not positive, the sun is below the night threshold
            or the shadow is shorter than min_drawable_m.

        Raises:
            ValueError: If building is None
        """
        inputs = ShadowGeometryService._projection_inputs(building, altitude_rad, min_drawable_m)
        if inputs is None:
            return []
        base, length = inputs
        shifted = ShadowGeometryService._translate(base, length, azimuth_rad)

        ring = base + list(reversed(shifted))
        if ring[0] != ring[-1]:
            ring.append(ring[0])
        return ring

    @staticmethod
    def _cross(o: Position, a: Position, b: Position) -> float:
        return (a.lng - o.lng) * (b.lat - o.lat) - (a.lat - o.lat) * (b.lng - o.lng)

    @staticmethod
    def _dist2(a: Position, b: Position) -> float:
        dx = a.lng - b.lng
        dy = a.lat - b.lat
        return dx * dx + dy * dy

    @staticmethod
    def convex_hull(points: Sequence[Position]) -> List[Position]:
        """
        Gift-wrapping (Jarvis march) convex hull.

        Collinear candidates are resolved in favor of the farthest point.
        The walk is capped at 2 x point count iterations; on a degenerate
        input that never closes, the partial hull gathered so far is
        returned.

        Returns:
            Hull vertices counter-clockwise, not closed. Fewer than 3 distinct
            points yields the distinct points themselves.
        """
        unique = list(dict.fromkeys(points))
        if len(unique) < 3:
            return unique

        start = min(unique, key=lambda p: (p.lng, p.lat))
        hull: List[Position] = []
        current = start
        max_iterations = 2 * len(unique)

        for _ in range(max_iterations):
            hull.append(current)
            candidate: Optional[Position] = None
            for p in unique:
                if p == current:
                    continue
                if candidate is None:
                    candidate = p
                    continue
                turn = ShadowGeometryService._cross(current, candidate, p)
                if turn < 0 or (
                    turn == 0
                    and ShadowGeometryService._dist2(current, p) > ShadowGeometryService._dist2(current, candidate)
                ):
                    candidate = p
            if candidate is None or candidate == start:
                return hull
            current = candidate

        logger.warning(f"[GEOMETRY] Convex hull did not close after {max_iterations} steps; returning partial hull")
        return hull

    @staticmethod
    def hull_shadow(
        building: Building,
        altitude_rad: float,
        azimuth_rad: float,
        min_drawable_m: float = DEFAULT_MIN_DRAWABLE_M,
    ) -> List[Position]:
        """
        Convex-hull shadow polygon (footprint + translated footprint).

        Same inputs and empty-result rules as ribbon_shadow. The hull
        overestimates the shaded area for non-convex or rotated footprints.
        """
        inputs = ShadowGeometryService._projection_inputs(building, altitude_rad, min_drawable_m)
        if inputs is None:
            return []
        base, length = inputs
        shifted = ShadowGeometryService._translate(base, length, azimuth_rad)

        hull = ShadowGeometryService.convex_hull(base + shifted)
        if len(hull) < 3:
            return []
        return hull + [hull[0]]

    @staticmethod
    def ring_centroid(ring: Sequence[Position]) -> Position:
        """Vertex average of a ring."""
        lng = sum(p.lng for p in ring) / len(ring)
        lat = sum(p.lat for p in ring) / len(ring)
        return Position(lng, lat)

    # ---------- Bounds ----------

    @staticmethod
    def bounds_intersect(a: Bounds, b: Bounds) -> bool:
        if a.east < b.west or b.east < a.west:
            return False
        if a.north < b.south or b.north < a.south:
            return False
        return True

    @staticmethod
    def bounds_contain_point(bounds: Bounds, point: Position, inclusive: bool = True) -> bool:
        """
        Point containment; a box whose east < west is treated as crossing
        the antimeridian.
        """
        if inclusive:
            lat_ok = bounds.south <= point.lat <= bounds.north
            if bounds.crosses_antimeridian:
                lng_ok = point.lng >= bounds.west or point.lng <= bounds.east
            else:
                lng_ok = bounds.west <= point.lng <= bounds.east
        else:
            lat_ok = bounds.south < point.lat < bounds.north
            if bounds.crosses_antimeridian:
                lng_ok = point.lng > bounds.west or point.lng < bounds.east
            else:
                lng_ok = bounds.west < point.lng < bounds.east
        return lat_ok and lng_ok

    @staticmethod
    def bounds_contain_bounds(inner: Bounds, outer: Bounds) -> bool:
        """All four corners of inner lie inside outer (inclusive)."""
        corners = (
            Position(inner.west, inner.south),
            Position(inner.east, inner.north),
            Position(inner.west, inner.north),
            Position(inner.east, inner.south),
        )
        return all(ShadowGeometryService.bounds_contain_point(outer, c) for c in corners)

    @staticmethod
    def bounds_union(a: Bounds, b: Bounds) -> Bounds:
        """
        Min/max union of two boxes.

        Boxes crossing the antimeridian are unioned with the same min/max,
        which can give an overly wide or wrong longitude span; a warning is
        logged when that happens.
        """
        if a.crosses_antimeridian and b.crosses_antimeridian:
            logger.warning("[GEOMETRY] Union of two bounds that both cross the antimeridian; result may be inaccurate")
        elif a.crosses_antimeridian or b.crosses_antimeridian:
            logger.warning("[GEOMETRY] Union with one bound crossing the antimeridian; result may be inaccurate")
        return Bounds(
            south=min(a.south, b.south),
            west=min(a.west, b.west),
            north=max(a.north, b.north),
            east=max(a.east, b.east),
        )

    @staticmethod
    def bounds_close(a: Bounds, b: Bounds, tolerance_deg: float = 0.0008) -> bool:
        return (
            abs(a.south - b.south) < tolerance_deg
            and abs(a.west - b.west) < tolerance_deg
            and abs(a.north - b.north) < tolerance_deg
            and abs(a.east - b.east) < tolerance_deg
        )

    @staticmethod
    def pad_bounds(bounds: Bounds, pad_m: float) -> Bounds:
        """Grow a box by pad_m on every side (longitude scaled at mid-latitude)."""
        mid_lat = (bounds.south + bounds.north) / 2.0
        d_lat = ShadowGeometryService.meters_to_lat(pad_m)
        d_lng = ShadowGeometryService.meters_to_lng(pad_m, mid_lat)
        return Bounds(
            south=bounds.south - d_lat,
            west=bounds.west - d_lng,
            north=bounds.north + d_lat,
            east=bounds.east + d_lng,
        )
