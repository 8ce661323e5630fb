"""
Geodesic helpers shared by the discovery, verification, route and customer engines.
Distances are measured on the WGS-84 ellipsoid.
"""

import math
from typing import Iterable, List, Optional, Tuple

from geopy.distance import geodesic

from tripcorrelation.exceptions import InsufficientDataError

METERS_PER_DEGREE_LAT = 111320.0
# shortest degree of latitude (equator), keeps boxes inclusive everywhere
MIN_METERS_PER_DEGREE_LAT = 110574.0

Point = Tuple[float, float]


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return geodesic((lat1, lng1), (lat2, lng2)).meters


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return geodesic((lat1, lng1), (lat2, lng2)).kilometers


def is_valid_coordinate(lat: Optional[float], lng: Optional[float]) -> bool:
    if lat is None or lng is None:
        return False
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def centroid(points: Iterable[Point]) -> Point:
    lat_sum = 0.0
    lng_sum = 0.0
    count = 0
    for lat, lng in points:
        lat_sum += lat
        lng_sum += lng
        count += 1

    if count == 0:
        raise InsufficientDataError("Cannot compute a centroid of zero points")

    return (lat_sum / count, lng_sum / count)


def spread_m(points: List[Point], center: Point) -> float:
    """Root-mean-square distance of the points from center, in metres."""
    if not points:
        raise InsufficientDataError("Cannot compute the spread of zero points")

    total = 0.0
    for lat, lng in points:
        total += distance_m(lat, lng, center[0], center[1]) ** 2
    return math.sqrt(total / len(points))


def bounding_box(lat: float, lng: float, radius_m: float) -> Tuple[float, float, float, float]:
    lat_delta = radius_m / MIN_METERS_PER_DEGREE_LAT
    cos_lat = max(math.cos(math.radians(min(abs(lat) + lat_delta, 90.0))), 0.01)
    lng_delta = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)
    return (lat - lat_delta, lat + lat_delta, lng - lng_delta, lng + lng_delta)


def in_box(lat: float, lng: float, box: Tuple[float, float, float, float]) -> bool:
    min_lat, max_lat, min_lng, max_lng = box
    return min_lat <= lat <= max_lat and min_lng <= lng <= max_lng


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Spherical distance in metres; used where geodesic precision is not needed."""
    R = 6371000
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = math.sin(delta_lat/2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return R * c
