from __future__ import annotations

import io
import json
import socket
import urllib.error
import urllib.request

import pytest
from services.api.app.services.routing_base import (
    Coordinates,
    RouteResult,
    RoutingAuthError,
    RoutingError,
    RoutingRateLimitedError,
    RoutingResponseError,
    RoutingTimeoutError,
)
from services.api.app.services.routing_factory import get_routing_adapter
from services.api.app.services.routing_google import (
    GoogleDistanceMatrixAdapter,
    _parse_distance_matrix,
)
from services.api.app.services.routing_mock import MockRoutingAdapter


def test_get_routing_adapter_defaults_to_mock(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MARKETLANE_ROUTING_ADAPTER", raising=False)
    assert get_routing_adapter().provider == "MOCK_ROUTING"


def test_get_routing_adapter_rejects_unknown(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKETLANE_ROUTING_ADAPTER", "nope")
    with pytest.raises(ValueError, match="Unknown MARKETLANE_ROUTING_ADAPTER"):
        get_routing_adapter()


def test_google_adapter_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKETLANE_ROUTING_ADAPTER", "google")
    monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
    with pytest.raises(ValueError, match="GOOGLE_MAPS_API_KEY"):
        get_routing_adapter()


def test_google_adapter_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKETLANE_ROUTING_ADAPTER", "google")
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "test-key")
    monkeypatch.setenv("MARKETLANE_ROUTING_TIMEOUT_S", "2.5")

    adapter = get_routing_adapter()

    assert isinstance(adapter, GoogleDistanceMatrixAdapter)
    assert adapter.provider == "GOOGLE_DISTANCE_MATRIX"


def test_mock_routing_is_deterministic_and_longer_than_crow_flies() -> None:
    a = Coordinates(37.7749, -122.4194)
    b = Coordinates(37.8019, -122.4194)
    adapter = MockRoutingAdapter()

    first = adapter.route(a, b)
    assert first == adapter.route(a, b)
    assert first.distance_m == pytest.approx(3002 * 1.25, abs=10)
    assert first.duration_s > 0


def test_parse_distance_matrix_ok() -> None:
    raw = json.dumps(
        {
            "status": "OK",
            "rows": [
                {
                    "elements": [
                        {
                            "status": "OK",
                            "distance": {"text": "4.8 km", "value": 4820},
                            "duration": {"text": "11 mins", "value": 655},
                        }
                    ]
                }
            ],
        }
    )

    route = _parse_distance_matrix(raw)

    assert route.distance_m == 4820
    assert route.duration_s == 655


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("not json", "invalid JSON"),
        (json.dumps({"status": "REQUEST_DENIED"}), "Status: REQUEST_DENIED"),
        (json.dumps({"status": "OK", "rows": []}), "no route elements"),
        (
            json.dumps({"status": "OK", "rows": [{"elements": [{"status": "ZERO_RESULTS"}]}]}),
            "ZERO_RESULTS",
        ),
        (
            json.dumps({"status": "OK", "rows": [{"elements": [{"status": "OK"}]}]}),
            "missing distance",
        ),
    ],
)
def test_parse_distance_matrix_rejects_bad_responses(raw: str, message: str) -> None:
    with pytest.raises(RoutingResponseError, match=message):
        _parse_distance_matrix(raw)


_ORIGIN = Coordinates(37.7749, -122.4194)
_DESTINATION = Coordinates(37.8019, -122.4194)


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError("https://maps.example.test", code, "error", {}, None)


def test_google_route_sends_driving_query(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[tuple[str, float]] = []
    body = {
        "status": "OK",
        "rows": [
            {
                "elements": [
                    {"status": "OK", "distance": {"value": 3100}, "duration": {"value": 540}}
                ]
            }
        ],
    }

    def fake_urlopen(req, timeout):
        seen.append((req.full_url, timeout))
        return io.BytesIO(json.dumps(body).encode("utf-8"))

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    result = GoogleDistanceMatrixAdapter(api_key="k", timeout_s=2.5).route(_ORIGIN, _DESTINATION)

    assert result == RouteResult(distance_m=3100, duration_s=540)
    url, timeout = seen[0]
    assert "mode=driving" in url and "key=k" in url
    assert timeout == 2.5


@pytest.mark.parametrize(
    ("error", "expected", "match"),
    [
        (_http_error(401), RoutingAuthError, None),
        (_http_error(403), RoutingAuthError, None),
        (_http_error(429), RoutingRateLimitedError, None),
        (_http_error(500), RoutingError, "Location service error: 500"),
        (socket.timeout("timed out"), RoutingTimeoutError, None),
        (urllib.error.URLError(socket.timeout("timed out")), RoutingTimeoutError, None),
        (urllib.error.URLError("connection refused"), RoutingError, "unreachable"),
    ],
)
def test_google_route_maps_transport_errors(
    monkeypatch: pytest.MonkeyPatch,
    error: Exception,
    expected: type[RoutingError],
    match: str | None,
) -> None:
    def fake_urlopen(req, timeout):
        raise error

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)

    with pytest.raises(expected, match=match):
        GoogleDistanceMatrixAdapter(api_key="k").route(_ORIGIN, _DESTINATION)
