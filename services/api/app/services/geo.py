from __future__ import annotations

import math

from services.api.app.services.routing_base import Coordinates

EARTH_RADIUS_M = 6_371_000.0
MILES_PER_KM = 0.621371


def haversine_m(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points, in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def km_to_miles(km: float) -> float:
    return km * MILES_PER_KM
