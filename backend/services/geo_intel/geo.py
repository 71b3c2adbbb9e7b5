"""Small geodesy helpers shared by the geo-intel components."""

from __future__ import annotations

import math

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LAT = 111.32


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def grid_cell(lat: float, lon: float, cell_degrees: float) -> tuple[int, int]:
    """Quantize lat/lon to integer grid coordinates."""
    return (math.floor(lat / cell_degrees), math.floor(lon / cell_degrees))


def in_box(lat: float, lon: float, south: float, west: float, north: float, east: float) -> bool:
    """Inclusive bounding-box test (no antimeridian wrap)."""
    return south <= lat <= north and west <= lon <= east


def valid_coordinates(lat: object, lon: object) -> bool:
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
