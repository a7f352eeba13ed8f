from __future__ import annotations

from pydantic import BaseModel


class LatLon(BaseModel):
    lat: float | None = None
    lon: float | None = None


class DistanceRequest(BaseModel):
    origin: LatLon | None = None
    destination: LatLon | None = None


class DistanceResponse(BaseModel):
    success: bool
    distance: int
    duration: int
    distanceInKm: float
