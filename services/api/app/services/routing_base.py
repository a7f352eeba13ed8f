from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class RoutingError(Exception):
    """Base class for routing adapter errors."""


class RoutingTimeoutError(RoutingError):
    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Routing service did not answer within {timeout_s:g}s")
        self.timeout_s = timeout_s


class RoutingRateLimitedError(RoutingError):
    def __init__(self) -> None:
        super().__init__("Rate limit exceeded for location services. Please try again later.")


class RoutingAuthError(RoutingError):
    def __init__(self, status: int) -> None:
        super().__init__(
            f"API authentication error ({status}). Please check your configuration."
        )
        self.status = status


class RoutingResponseError(RoutingError):
    """The routing service answered, but not with a usable route."""


@dataclass(frozen=True, slots=True)
class Coordinates:
    lat: float
    lon: float

    def as_param(self) -> str:
        return f"{self.lat},{self.lon}"


@dataclass(frozen=True, slots=True)
class RouteResult:
    distance_m: int
    duration_s: int


class RoutingAdapter(Protocol):
    provider: str

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteResult: ...
