"""
Geographic helpers.

Great-circle math shared by the route estimator fallback and the
breadcrumb aggregator.
"""

import math
from typing import NamedTuple

EARTH_RADIUS_METERS = 6371000.0


class Coordinates(NamedTuple):
    """A latitude/longitude pair in degrees."""
    lat: float
    lng: float


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in meters
    """
    # Convert degrees to radians
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)

    # Haversine formula
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = math.sin(dlat / 2)**2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def distance_between(origin: Coordinates, destination: Coordinates) -> float:
    """Haversine distance in meters between two ``Coordinates``."""
    return haversine_distance(origin.lat, origin.lng, destination.lat, destination.lng)


def walking_minutes(distance_meters: float, speed_mps: float) -> int:
    """Whole minutes needed to walk ``distance_meters``, rounded up."""
    if distance_meters <= 0:
        return 0
    return math.ceil(distance_meters / speed_mps / 60)
