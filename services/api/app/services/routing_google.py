from __future__ import annotations

import json
import os
import socket
import urllib.error
import urllib.parse
import urllib.request

from services.api.app.services.routing_base import (
    Coordinates,
    RouteResult,
    RoutingAuthError,
    RoutingError,
    RoutingRateLimitedError,
    RoutingResponseError,
    RoutingTimeoutError,
)

_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


class GoogleDistanceMatrixAdapter:
    """Driving distance and duration via the Google Distance Matrix API.

    Env vars:
    - MARKETLANE_ROUTING_ADAPTER=google
    - GOOGLE_MAPS_API_KEY (required)
    - MARKETLANE_ROUTING_TIMEOUT_S (default: 5)
    """

    provider = "GOOGLE_DISTANCE_MATRIX"

    def __init__(self, *, api_key: str, timeout_s: float = 5.0) -> None:
        self._api_key = api_key
        self._timeout_s = timeout_s

    @classmethod
    def from_env(cls) -> "GoogleDistanceMatrixAdapter":
        api_key = os.getenv("GOOGLE_MAPS_API_KEY", "").strip()
        if not api_key:
            raise ValueError(
                "GOOGLE_MAPS_API_KEY is required when MARKETLANE_ROUTING_ADAPTER=google"
            )
        timeout_s = float(os.getenv("MARKETLANE_ROUTING_TIMEOUT_S", "5"))
        return cls(api_key=api_key, timeout_s=timeout_s)

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteResult:
        query = urllib.parse.urlencode(
            {
                "origins": origin.as_param(),
                "destinations": destination.as_param(),
                "mode": "driving",
                "units": "metric",
                "key": self._api_key,
            }
        )
        req = urllib.request.Request(f"{_DISTANCE_MATRIX_URL}?{query}", method="GET")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            if e.code in (401, 403):
                raise RoutingAuthError(e.code) from e
            if e.code == 429:
                raise RoutingRateLimitedError() from e
            raise RoutingError(f"Location service error: {e.code}") from e
        except (socket.timeout, TimeoutError) as e:
            raise RoutingTimeoutError(self._timeout_s) from e
        except urllib.error.URLError as e:
            if isinstance(e.reason, (socket.timeout, TimeoutError)):
                raise RoutingTimeoutError(self._timeout_s) from e
            raise RoutingError(f"Location service unreachable: {e.reason}") from e

        return _parse_distance_matrix(raw)


def _parse_distance_matrix(raw: str) -> RouteResult:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise RoutingResponseError("Routing service returned invalid JSON") from e

    if data.get("status") != "OK":
        raise RoutingResponseError(
            f"Failed to calculate distance. Status: {data.get('status') or 'UNKNOWN'}"
        )

    try:
        element = data["rows"][0]["elements"][0]
    except (KeyError, IndexError, TypeError) as e:
        raise RoutingResponseError("Routing response has no route elements") from e

    if element.get("status") != "OK":
        raise RoutingResponseError(f"Failed to calculate distance: {element.get('status')}")

    try:
        return RouteResult(
            distance_m=int(element["distance"]["value"]),
            duration_s=int(element["duration"]["value"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RoutingResponseError("Routing response is missing distance or duration") from e
