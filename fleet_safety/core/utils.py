"""
Utility functions for geometry, validation and timestamps.
"""
import math
from datetime import datetime, timezone
from typing import Optional, Sequence

EARTH_RADIUS_M = 6371e3
METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180

Vertex = tuple[float, float]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching the database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(dt: datetime) -> float:
    """Epoch seconds for a naive UTC datetime."""
    return dt.replace(tzinfo=timezone.utc).timestamp()


def is_valid_position(lat: Optional[float], lon: Optional[float]) -> bool:
    """
    Check if a position is valid.

    Rejects missing coordinates, out-of-range values and the (0, 0)
    placeholder some autopilots report before GPS lock.
    """
    if lat is None or lon is None:
        return False
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return False
    if lat == 0 and lon == 0:
        return False
    return True


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (math.sin(dphi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def point_in_polygon(lat: float, lng: float, vertices: Sequence[Vertex]) -> bool:
    """
    Ray-casting point-in-polygon test.

    Latitude and longitude are used directly as plane coordinates, which is
    accurate enough for city-scale zones.
    """
    inside = False
    n = len(vertices)
    j = n - 1
    for i in range(n):
        xi, yi = vertices[i]
        xj, yj = vertices[j]
        if (yi > lng) != (yj > lng) and lat < (xj - xi) * (lng - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def distance_to_segment_m(lat: float, lng: float, start: Vertex, end: Vertex) -> float:
    """
    Approximate distance from a point to a segment in meters.

    Coordinates are projected onto a flat plane anchored at the segment start,
    so the result degrades for long segments far from the equator.
    """
    lat0, lng0 = start
    scale = math.cos(math.radians(lat0))

    px = (lng - lng0) * scale * METERS_PER_DEGREE
    py = (lat - lat0) * METERS_PER_DEGREE
    ex = (end[1] - lng0) * scale * METERS_PER_DEGREE
    ey = (end[0] - lat0) * METERS_PER_DEGREE

    length_sq = ex * ex + ey * ey
    if length_sq == 0:
        return haversine_m(lat, lng, lat0, lng0)

    t = max(0.0, min(1.0, (px * ex + py * ey) / length_sq))
    return math.hypot(px - t * ex, py - t * ey)


def distance_to_polygon_edge_m(lat: float, lng: float, vertices: Sequence[Vertex]) -> float:
    """Minimum distance in meters from a point to any edge of a closed polygon."""
    n = len(vertices)
    return min(
        distance_to_segment_m(lat, lng, vertices[i], vertices[(i + 1) % n])
        for i in range(n)
    )
