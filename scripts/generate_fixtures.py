#!/usr/bin/env python3
"""
Generate demo fixtures for Shadecast

Writes the fixture files read by the fake providers (SHADECAST_MODE=demo or
test). All fixtures are deterministic and reproducible.

Usage:
    python scripts/generate_fixtures.py
"""

import json
from pathlib import Path
from typing import Any, Dict, List

FIXTURES_ROOT = Path(__file__).parent.parent / "backend" / "fixtures" / "demo"

# Small block in central Ljubljana
DEMO_BUILDINGS = [
    # (way id, corners as (lat, lon), tags)
    (1001, [(46.0499, 14.506), (46.0499, 14.50626), (46.05008, 14.50626), (46.05008, 14.506)],
     {"building": "yes", "height": "30"}),
    (1002, [(46.0503, 14.5065), (46.0503, 14.5068), (46.05045, 14.5068), (46.05045, 14.5065)],
     {"building": "apartments", "building:levels": "4"}),
    # Outer way of a multipolygon relation, untagged itself
    (1003, [(46.0495, 14.5055), (46.0495, 14.5057), (46.04965, 14.5057), (46.04965, 14.5055)],
     None),
]


def _write(name: str, payload: Dict[str, Any]) -> Path:
    target = FIXTURES_ROOT / name / "data.json"
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, 'w', encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return target


def generate_building_fixtures():
    """Overpass `out body` response: nodes, building ways and one relation."""

    elements: List[Dict[str, Any]] = []
    way_elements: List[Dict[str, Any]] = []
    node_id = 1

    for way_id, corners, tags in DEMO_BUILDINGS:
        refs = []
        for lat, lon in corners:
            elements.append({"type": "node", "id": node_id, "lat": lat, "lon": lon})
            refs.append(node_id)
            node_id += 1
        # Leave 1002 open to exercise ring closing
        if way_id != 1002:
            refs.append(refs[0])
        way = {"type": "way", "id": way_id, "nodes": refs}
        if tags:
            way["tags"] = tags
        way_elements.append(way)

    elements.extend(way_elements)
    elements.append({
        "type": "relation",
        "id": 2001,
        "members": [{"type": "way", "ref": 1003, "role": "outer"}],
        "tags": {"type": "multipolygon", "building": "church", "height": "12,5 m"},
    })

    _write("buildings", {"version": 0.6, "generator": "shadecast demo fixtures", "elements": elements})
    print(f"✓ Generated building fixture ({len(DEMO_BUILDINGS)} ways, 1 relation)")


def generate_place_fixtures():
    """Overpass `out center tags` response covering every place rule."""

    elements = [
        {"type": "node", "id": 101, "lat": 46.04985, "lon": 14.50613,
         "tags": {"amenity": "cafe", "name": "Kavarna Demo", "outdoor_seating": "yes"}},
        {"type": "node", "id": 102, "lat": 46.0505, "lon": 14.507,
         "tags": {"amenity": "pub", "name": "Demo Pub", "seats:outdoor": "24"}},
        {"type": "way", "id": 103, "center": {"lat": 46.051, "lon": 14.508},
         "tags": {"leisure": "park", "name": "Demo Park"}},
        {"type": "node", "id": 104, "lat": 46.049, "lon": 14.505,
         "tags": {"amenity": "restaurant", "terrace": "yes", "covered": "no"}},
        # Unsupported amenity, skipped by the parser
        {"type": "node", "id": 105, "lat": 46.0502, "lon": 14.5062,
         "tags": {"amenity": "bank", "name": "Not A Place"}},
    ]

    _write("places", {"version": 0.6, "generator": "shadecast demo fixtures", "elements": elements})
    print(f"✓ Generated place fixture ({len(elements)} elements)")


def generate_terrain_fixtures():
    """Point elevation areas and flat terrain-RGB tile settings."""

    _write("elevation", {
        "version": "1.0",
        "description": "Flat valley floor with a high ridge far to the south",
        "default_m": 295.0,
        "areas": [
            {"south": 45.95, "west": 14.40, "north": 46.03, "east": 14.60, "elevation_m": 1400.0},
        ],
    })
    _write("tiles", {
        "version": "1.0",
        "description": "Flat terrain-RGB tiles",
        "flat_elevation_m": 295.0,
    })
    print("✓ Generated 2 terrain fixtures")


def main():
    """Generate all demo fixtures."""
    print("Generating demo fixtures...")
    print()

    generate_building_fixtures()
    generate_place_fixtures()
    generate_terrain_fixtures()

    print()
    print("✅ All fixtures generated successfully!")
    print()
    print(f"Fixture location: {FIXTURES_ROOT}")


if __name__ == "__main__":
    main()
