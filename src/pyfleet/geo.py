"""Great-circle helpers shared by the cache geo index and the history store."""

from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_008.8
_METERS_PER_DEGREE_LAT = EARTH_RADIUS_M * math.pi / 180.0


def haversine_m(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Distance in metres between two ``(lon, lat)`` points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = phi2 - phi1
    dlmb = math.radians(lon2 - lon1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def bounding_box(lon: float, lat: float, radius_m: float) -> tuple[float, float, float, float]:
    """Return ``(min_lon, min_lat, max_lon, max_lat)`` enclosing a circle.

    Longitude bounds widen to the full range near the poles or when the
    circle crosses the antimeridian; callers still apply the exact
    distance check.
    """
    dlat = radius_m / _METERS_PER_DEGREE_LAT
    min_lat = max(-90.0, lat - dlat)
    max_lat = min(90.0, lat + dlat)

    cos_lat = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    if cos_lat <= 1e-9:
        return -180.0, min_lat, 180.0, max_lat
    dlon = dlat / cos_lat
    if dlon >= 180.0 or lon - dlon < -180.0 or lon + dlon > 180.0:
        return -180.0, min_lat, 180.0, max_lat
    return lon - dlon, min_lat, lon + dlon, max_lat


def offset_north(lon: float, lat: float, meters: float) -> tuple[float, float]:
    """Return the point *meters* due north of ``(lon, lat)``."""
    return lon, lat + meters / _METERS_PER_DEGREE_LAT
