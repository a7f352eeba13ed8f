from __future__ import annotations

import structlog
from fastapi import APIRouter, HTTPException
from services.api.app.models.distance import DistanceRequest, DistanceResponse
from services.api.app.services.routing_base import (
    Coordinates,
    RoutingAuthError,
    RoutingError,
    RoutingRateLimitedError,
)
from services.api.app.services.routing_factory import get_routing_adapter

logger = structlog.get_logger(__name__)

router = APIRouter()


def _raise_routing_http_error(e: Exception) -> None:
    if isinstance(e, RoutingRateLimitedError):
        raise HTTPException(status_code=429, detail=str(e)) from e

    if isinstance(e, RoutingAuthError):
        raise HTTPException(
            status_code=500,
            detail="API authentication error. Please check your configuration.",
        ) from e

    if isinstance(e, RoutingError):
        raise HTTPException(status_code=500, detail=f"Location service error: {e}") from e

    if isinstance(e, ValueError):
        raise HTTPException(
            status_code=500, detail="Server configuration error. API key is missing."
        ) from e

    raise HTTPException(
        status_code=500,
        detail="An unexpected error occurred while calculating distance.",
    ) from e


def _distance(origin: Coordinates, destination: Coordinates) -> DistanceResponse:
    try:
        adapter = get_routing_adapter()
        route = adapter.route(origin, destination)
    except Exception as e:
        logger.warning("distance.lookup_failed", error=str(e), error_type=type(e).__name__)
        _raise_routing_http_error(e)

    return DistanceResponse(
        success=True,
        distance=route.distance_m,
        duration=route.duration_s,
        distanceInKm=route.distance_m / 1000,
    )


@router.get("/distance", response_model=DistanceResponse)
def get_distance(
    originLat: float | None = None,
    originLon: float | None = None,
    destLat: float | None = None,
    destLon: float | None = None,
) -> DistanceResponse:
    if originLat is None or originLon is None or destLat is None or destLon is None:
        raise HTTPException(
            status_code=400,
            detail="Missing coordinates. Please provide originLat, originLon, destLat, destLon",
        )

    return _distance(Coordinates(originLat, originLon), Coordinates(destLat, destLon))


@router.post("/distance", response_model=DistanceResponse)
def post_distance(payload: DistanceRequest) -> DistanceResponse:
    origin, destination = payload.origin, payload.destination
    if (
        origin is None
        or destination is None
        or origin.lat is None
        or origin.lon is None
        or destination.lat is None
        or destination.lon is None
    ):
        raise HTTPException(
            status_code=400,
            detail=(
                "Invalid coordinates. Please provide valid origin and destination "
                "objects with lat and lon properties."
            ),
        )

    return _distance(
        Coordinates(origin.lat, origin.lon),
        Coordinates(destination.lat, destination.lon),
    )
