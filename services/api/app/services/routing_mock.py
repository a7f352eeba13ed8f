from __future__ import annotations

from services.api.app.services.geo import haversine_m
from services.api.app.services.routing_base import Coordinates, RouteResult

# Roads are rarely straight; this keeps mock routes a little longer than the crow flies.
_ROAD_FACTOR = 1.25
_AVG_SPEED_KMH = 40.0


class MockRoutingAdapter:
    provider = "MOCK_ROUTING"

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteResult:
        distance_m = haversine_m(origin, destination) * _ROAD_FACTOR
        duration_s = distance_m / (_AVG_SPEED_KMH * 1000 / 3600)
        return RouteResult(distance_m=round(distance_m), duration_s=round(duration_s))
