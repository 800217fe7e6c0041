import math

from storage.base import BoundingBox

EARTH_RADIUS_MILES = 3959.0

# Widen the box slightly so it always contains the search circle
BBOX_PADDING = 1.01


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def bounding_box(latitude: float, longitude: float, radius_miles: float) -> BoundingBox:
    """Lat/lng box enclosing the circle; falls back to all longitudes near the poles or the antimeridian."""
    angular = radius_miles / EARTH_RADIUS_MILES * BBOX_PADDING
    delta_lat = math.degrees(angular)
    min_lat = max(-90.0, latitude - delta_lat)
    max_lat = min(90.0, latitude + delta_lat)

    cos_lat = math.cos(math.radians(latitude))
    if min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    # Exact longitude half-width of a spherical cap; no bound once the cap reaches a pole
    if angular >= math.pi / 2 or math.sin(angular) >= cos_lat:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)

    delta_lon = math.degrees(math.asin(math.sin(angular) / cos_lat))
    min_lon = longitude - delta_lon
    max_lon = longitude + delta_lon
    if delta_lon >= 180.0 or min_lon < -180.0 or max_lon > 180.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    return BoundingBox(min_lat, max_lat, min_lon, max_lon)
