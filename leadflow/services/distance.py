# leadflow/services/distance.py
import math
from typing import Dict, Tuple, Union

from leadflow.services.geocoding import Coordinates

# Earth's radius in miles
EARTH_RADIUS_MILES = 3959.0

Point = Union[Coordinates, Tuple[float, float]]


def distance_miles(a: Point, b: Point) -> float:
    """Great-circle distance between two (lat, lng) points, haversine on a sphere."""
    lat1, lng1 = a
    lat2, lng2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    r_lat1 = math.radians(lat1)
    r_lat2 = math.radians(lat2)

    h = math.sin(d_lat / 2) ** 2 + math.cos(r_lat1) * math.cos(r_lat2) * math.sin(d_lng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_MILES * c


def round_miles(distance: float) -> float:
    return round(distance, 1)


def distance_score(distance: float, service_radius: float) -> int:
    """
    0..100: 0 miles -> 100, service_radius -> 50, 2x service_radius -> 0.
    """
    if distance <= 0:
        return 100
    if service_radius <= 0 or distance >= service_radius * 2:
        return 0
    score = 100 - (distance / (service_radius * 2)) * 100
    return max(0, min(100, round(score)))


def within_service_radius(distance: float, service_radius: float) -> bool:
    return distance <= service_radius


def format_distance(distance: float) -> str:
    if distance < 1:
        return "< 1 mi"
    return f"{distance:.1f} mi"


def distance_category(distance: float) -> Dict[str, str]:
    if distance <= 5:
        return {"label": "Very Close", "color": "green"}
    if distance <= 15:
        return {"label": "Close", "color": "blue"}
    if distance <= 30:
        return {"label": "Moderate", "color": "yellow"}
    return {"label": "Far", "color": "red"}
