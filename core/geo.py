"""
Distance helpers shared by shop browsing and partner matching.

Haversine over (lat, lng) in decimal degrees is exact enough for last-mile
ranges, so no GIS dependency is pulled in.
"""
from math import atan2, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometers between two points."""
    d_lat = radians(lat2 - lat1)
    d_lng = radians(lng2 - lng1)
    h = sin(d_lat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * atan2(sqrt(h), sqrt(1 - h))


def is_within_radius(origin_lat: float, origin_lng: float, lat: float, lng: float, radius_km: float) -> bool:
    """Inclusive radius check: a point exactly on the boundary is inside."""
    if radius_km < 0:
        raise ValueError(f"radius_km must not be negative, got {radius_km}")
    return distance_km(origin_lat, origin_lng, lat, lng) <= radius_km


def validate_coordinates(lat: float, lng: float) -> None:
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"latitude out of range: {lat}")
    if not -180.0 <= lng <= 180.0:
        raise ValueError(f"longitude out of range: {lng}")
