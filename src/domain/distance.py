"""
Distance calculation using the Haversine formula.

Search radii span several miles, where a planar approximation drifts
noticeably, so every proximity decision goes through the great-circle
distance below.  Route length is the sum of straight hops between stops;
a routing engine would replace it in production.

Complexity: O(1) per call.
"""

import math
from typing import Iterable

EARTH_RADIUS_MILES = 3_958.8
EARTH_RADIUS_KM = 6_371.0
KM_PER_MILE = 1.609344


def haversine_miles(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **miles** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(min(1.0, a)))


def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE


def route_miles(points: Iterable[tuple[float, float]]) -> float:
    """Length of a polyline visiting *points* in order."""
    total = 0.0
    prev = None
    for point in points:
        if prev is not None:
            total += haversine_miles(prev[0], prev[1], point[0], point[1])
        prev = point
    return total


def valid_coordinates(lat: float, lng: float) -> bool:
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
