from __future__ import annotations

import os

from services.api.app.services.routing_base import RoutingAdapter
from services.api.app.services.routing_mock import MockRoutingAdapter


def get_routing_adapter() -> RoutingAdapter:
    """Select a routing adapter based on env vars.

    Defaults to the mock adapter so tests and local dev never call out to Google.
    """

    mode = os.getenv("MARKETLANE_ROUTING_ADAPTER", "mock").strip().lower()

    if mode == "mock":
        return MockRoutingAdapter()

    if mode == "google":
        from services.api.app.services.routing_google import GoogleDistanceMatrixAdapter

        return GoogleDistanceMatrixAdapter.from_env()

    raise ValueError(f"Unknown MARKETLANE_ROUTING_ADAPTER={mode!r}. Expected mock or google.")
