"""
Overpass Parser - OpenStreetMap JSON to Buildings and Places

Buildings:
- `way` elements tagged `building` become footprints from their node refs
- `relation` elements tagged `building` use their FIRST outer way; that way
  is then consumed so it is not emitted twice
- Rings are closed automatically; fewer than 3 resolved vertices are dropped
- Ids are "<type>-<osm id>", e.g. "way-123"

Height estimation (first match wins):
1. `height` tag: first whitespace token, comma accepted as decimal separator,
   must be > 0 ("12,5 m" -> 12.5)
2. `building:levels` x 3.5 m
3. 15 m default

Places:
- amenity cafe/restaurant/fast_food -> eatery
- amenity pub/bar/biergarten -> pub
- leisure park -> park
- Nodes use lat/lon, ways and relations use their `center`
- Ids are "<type>/<osm id>", deduplicated

Outdoor seating inference:
- `outdoor_seating` yes/only -> True, no -> False
- `seats:outdoor` / `seats:outside` (digits only) -> seat count; a count fills
  an unknown flag with count > 0
- biergarten always has outdoor seating; `terrace=yes` fills an unknown flag
- `outdoor_seating:covered` / `covered` yes/no -> covered flag
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Set

from geo_models import Building, Place, PlaceType, Position

logger = logging.getLogger(__name__)

METERS_PER_LEVEL = 3.5
DEFAULT_BUILDING_HEIGHT_M = 15.0

EATERY_AMENITIES = {"cafe", "restaurant", "fast_food"}
PUB_AMENITIES = {"pub", "bar", "biergarten"}

_NON_DIGITS = re.compile(r"[^0-9]")


def estimate_height(tags: Mapping[str, Any]) -> float:
    """Building height in meters from OSM tags."""
    raw_height = tags.get("height")
    if raw_height is not None:
        token = str(raw_height).strip().split(" ")[0].replace(",", ".")
        try:
            height = float(token)
        except ValueError:
            height = None
        if height is not None and height > 0:
            return height

    raw_levels = tags.get("building:levels")
    if raw_levels is not None:
        try:
            levels = int(str(raw_levels).strip())
        except ValueError:
            levels = None
        if levels is not None and levels > 0:
            return levels * METERS_PER_LEVEL

    return DEFAULT_BUILDING_HEIGHT_M


def _resolve_ring(node_ids: List[int], nodes: Dict[int, Position]) -> List[Position]:
    return [nodes[n] for n in node_ids if n in nodes]


def parse_buildings(data: Mapping[str, Any]) -> List[Building]:
    """
    Buildings from an Overpass `out body` response.

    Args:
        data: Decoded JSON with an `elements` list

    Returns:
        Buildings in element order.
    """
    elements = data.get("elements") or []

    nodes: Dict[int, Position] = {}
    ways: Dict[int, List[int]] = {}
    way_tags: Dict[int, Dict[str, Any]] = {}

    for el in elements:
        el_type = el.get("type")
        el_id = el.get("id")
        if el_id is None:
            continue
        if el_type == "node" and el.get("lat") is not None and el.get("lon") is not None:
            nodes[el_id] = Position(float(el["lon"]), float(el["lat"]))
        elif el_type == "way" and el.get("nodes") is not None:
            ways[el_id] = list(el["nodes"])
            if el.get("tags"):
                way_tags[el_id] = dict(el["tags"])

    buildings: List[Building] = []
    processed: Set[str] = set()

    for el in elements:
        el_type = el.get("type")
        key = f"{el_type}-{el.get('id')}"
        if key in processed:
            continue

        polygon: Optional[List[Position]] = None
        tags: Optional[Mapping[str, Any]] = None

        if el_type == "way" and way_tags.get(el.get("id"), {}).get("building") is not None:
            polygon = _resolve_ring(ways.get(el["id"], []), nodes)
            tags = way_tags[el["id"]]
            processed.add(key)
        elif el_type == "relation" and (el.get("tags") or {}).get("building") is not None:
            outer_ids = [
                m.get("ref")
                for m in el.get("members") or []
                if m.get("type") == "way" and m.get("role") == "outer"
            ]
            if outer_ids:
                way_id = outer_ids[0]
                polygon = _resolve_ring(ways.get(way_id, []), nodes)
                tags = el["tags"]
                processed.add(key)
                processed.add(f"way-{way_id}")

        if polygon is None or tags is None or len(polygon) < 3:
            continue
        buildings.append(Building(id=key, polygon=tuple(polygon), height=estimate_height(tags)))

    logger.debug(f"[OVERPASS] Parsed {len(buildings)} buildings from {len(elements)} elements")
    return buildings


def classify_place(tags: Mapping[str, Any]) -> Optional[PlaceType]:
    amenity = tags.get("amenity")
    if amenity in EATERY_AMENITIES:
        return PlaceType.EATERY
    if amenity in PUB_AMENITIES:
        return PlaceType.PUB
    if tags.get("leisure") == "park":
        return PlaceType.PARK
    return None


def _lower(value: Any) -> Optional[str]:
    return str(value).strip().lower() if value is not None else None


def infer_outdoor_seating(tags: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Outdoor seating attributes from OSM tags.

    Returns:
        Dict with has_outdoor_seating, outdoor_seats, outdoor_covered
        (each None when unknown).
    """
    has_outdoor: Optional[bool] = None
    seats: Optional[int] = None
    covered: Optional[bool] = None

    explicit = _lower(tags.get("outdoor_seating", tags.get("outdoor seating")))
    if explicit in ("yes", "only"):
        has_outdoor = True
    elif explicit == "no":
        has_outdoor = False

    raw_seats = tags.get("seats:outdoor", tags.get("seats:outside"))
    if raw_seats is not None:
        digits = _NON_DIGITS.sub("", str(raw_seats))
        if digits:
            seats = int(digits)
            if has_outdoor is None:
                has_outdoor = seats > 0

    if tags.get("amenity") == "biergarten":
        has_outdoor = True
    if _lower(tags.get("terrace")) == "yes" and has_outdoor is None:
        has_outdoor = True

    raw_covered = _lower(tags.get("outdoor_seating:covered", tags.get("covered")))
    if raw_covered == "yes":
        covered = True
    elif raw_covered == "no":
        covered = False

    return {
        "has_outdoor_seating": has_outdoor,
        "outdoor_seats": seats,
        "outdoor_covered": covered,
    }


def parse_places(data: Mapping[str, Any]) -> List[Place]:
    """
    Places from an Overpass `out center tags` response.

    Elements without a supported type or coordinates are skipped.
    """
    places: List[Place] = []
    seen: Set[str] = set()

    for el in data.get("elements") or []:
        tags = el.get("tags") or {}
        place_type = classify_place(tags)
        if place_type is None:
            continue

        if el.get("type") == "node":
            lat, lon = el.get("lat"), el.get("lon")
        else:
            center = el.get("center") or {}
            lat, lon = center.get("lat"), center.get("lon")
        if lat is None or lon is None:
            continue

        place_id = f"{el.get('type')}/{el.get('id')}"
        if place_id in seen:
            continue
        seen.add(place_id)

        places.append(
            Place(
                id=place_id,
                name=tags.get("name") or f"Unnamed {place_type.value}",
                location=Position(float(lon), float(lat)),
                type=place_type,
                **infer_outdoor_seating(tags),
            )
        )

    logger.debug(f"[OVERPASS] Parsed {len(places)} places")
    return places
