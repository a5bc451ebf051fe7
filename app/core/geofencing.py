import math
from typing import Any, Dict, List, NamedTuple

from app.config import settings

EARTH_RADIUS_KM = 6371.0
EARTH_RADIUS_M = EARTH_RADIUS_KM * 1000


class GeoPoint(NamedTuple):
    latitude: float
    longitude: float


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points using Haversine formula
    Returns distance in kilometers
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat/2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2)**2
    c = 2 * math.asin(math.sqrt(min(1.0, a)))

    return EARTH_RADIUS_KM * c

def distance(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in kilometers between two (lat, lon) points"""
    return calculate_distance(a[0], a[1], b[0], b[1])

def is_within_geofence(point: GeoPoint, center: GeoPoint, radius_meters: float) -> bool:
    """True when the point lies inside (or on) the circular geofence"""
    return distance(point, center) * 1000 <= radius_meters

def circle_boundary(
    center: GeoPoint,
    radius_meters: float,
    step_degrees: int = 10
) -> List[GeoPoint]:
    """
    Sample points on a circle around center, 0 to 360 degrees inclusive
    so the ring is closed. Used for map display only.
    """
    if step_degrees <= 0:
        raise ValueError("step_degrees must be positive")

    lat, lng = center
    points: List[GeoPoint] = []

    for bearing in range(0, 361, step_degrees):
        angle = math.radians(bearing)
        delta_lat = (radius_meters * math.cos(angle)) / EARTH_RADIUS_M
        delta_lng = (radius_meters * math.sin(angle)) / (EARTH_RADIUS_M * math.cos(math.radians(lat)))
        points.append(GeoPoint(lat + math.degrees(delta_lat), lng + math.degrees(delta_lng)))

    return points

def stop_geofence(
    latitude: float,
    longitude: float,
    radius_meters: float = settings.GEOFENCE_RADIUS_METERS
) -> Dict[str, Any]:
    """Circular geofence descriptor for a bus stop"""
    center = GeoPoint(latitude, longitude)
    return {
        "type": "circle",
        "center": {"lat": latitude, "lng": longitude},
        "radius": radius_meters,
        "coordinates": [
            {"lat": point.latitude, "lng": point.longitude}
            for point in circle_boundary(center, radius_meters)
        ]
    }

def validate_coordinates(latitude: float, longitude: float) -> List[str]:
    """
    Coordinate range validation
    Returns a list of errors, empty when the point is valid
    """
    errors: List[str] = []

    if not math.isfinite(latitude) or not (-90 <= latitude <= 90):
        errors.append("Invalid latitude: must be between -90 and 90")

    if not math.isfinite(longitude) or not (-180 <= longitude <= 180):
        errors.append("Invalid longitude: must be between -180 and 180")

    return errors
