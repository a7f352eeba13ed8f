from __future__ import annotations

import pytest
from services.api.app.services.basket import Basket, CatalogItem
from services.api.app.services.geo import MILES_PER_KM
from services.api.app.services.pricing import (
    DeliveryPricingEngine,
    PricingConfig,
    QuoteCache,
    delivery_fee_cents,
    eta_minutes,
    format_minutes,
    tip_amount_cents,
    tip_option,
)
from services.api.app.services.routing_base import (
    Coordinates,
    RouteResult,
    RoutingRateLimitedError,
    RoutingResponseError,
    RoutingTimeoutError,
)

CUSTOMER = Coordinates(37.7749, -122.4194)
# Due north of CUSTOMER by about 3 km.
VENDOR_3KM = Coordinates(37.8019, -122.4194)


def _meters(miles: float) -> float:
    return miles / MILES_PER_KM * 1000


class _FixedRouting:
    provider = "FIXED"

    def __init__(self, distance_m: int, duration_s: int) -> None:
        self.calls = 0
        self._result = RouteResult(distance_m=distance_m, duration_s=duration_s)

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteResult:
        del origin, destination
        self.calls += 1
        return self._result


class _RaisingRouting:
    provider = "RAISING"

    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    def route(self, origin: Coordinates, destination: Coordinates) -> RouteResult:
        del origin, destination
        raise self._exc


@pytest.mark.parametrize(
    ("miles", "fee"),
    [
        (0, 500),
        (1.0, 500),
        (3.0, 500),
        (4.1, 650),
        (5.0, 750),
        (10.0, 1325),
        (20.0, 2200),
    ],
)
def test_delivery_fee_tiers(miles: float, fee: int) -> None:
    assert delivery_fee_cents(_meters(miles)) == fee


def test_delivery_fee_is_monotonic_and_quarter_rounded() -> None:
    fees = [delivery_fee_cents(m) for m in range(0, 40_000, 137)]
    assert fees == sorted(fees)
    assert all(f % 25 == 0 for f in fees)


def test_delivery_fee_never_below_minimum() -> None:
    config = PricingConfig(base_fee_cents=300, min_fee_cents=500)
    assert delivery_fee_cents(_meters(1.0), config) == 500
    assert delivery_fee_cents(-5, config) == 500


def test_eta_adds_preparation_and_buffer() -> None:
    assert eta_minutes(0) == 25
    assert eta_minutes(61) == 27
    assert eta_minutes(3600) == 85


@pytest.mark.parametrize(
    ("minutes", "text"),
    [
        (0, "0 min"),
        (45, "45 min"),
        (60, "1 hr"),
        (120, "2 hrs"),
        (75, "1 hr 15 min"),
        (135, "2 hrs 15 min"),
    ],
)
def test_format_minutes(minutes: int, text: str) -> None:
    assert format_minutes(minutes) == text


def test_quote_uses_routing_result() -> None:
    engine = DeliveryPricingEngine(_FixedRouting(distance_m=8000, duration_s=600))

    quote = engine.quote(CUSTOMER, VENDOR_3KM)

    assert quote.computed_via_fallback is False
    assert quote.fee_cents == 750
    assert quote.eta_minutes == 35
    assert quote.eta_formatted == "35 min"
    assert quote.distance_miles == pytest.approx(4.971, abs=0.001)


@pytest.mark.parametrize(
    "exc",
    [RoutingTimeoutError(5.0), RoutingRateLimitedError(), RoutingResponseError("bad"), OSError("x")],
)
def test_routing_failure_falls_back_to_great_circle(exc: Exception) -> None:
    engine = DeliveryPricingEngine(_RaisingRouting(exc))

    quote = engine.quote(CUSTOMER, VENDOR_3KM)

    assert quote.computed_via_fallback is True
    assert quote.distance_m == pytest.approx(3002, abs=5)
    assert quote.fee_cents == 500
    # 3 km at 30 km/h is six minutes of driving.
    assert quote.eta_minutes == 31


def test_negative_route_is_treated_as_failure() -> None:
    engine = DeliveryPricingEngine(_FixedRouting(distance_m=-1, duration_s=10))
    assert engine.quote(CUSTOMER, VENDOR_3KM).computed_via_fallback is True


def test_quote_cache_only_recomputes_for_new_coordinates() -> None:
    routing = _FixedRouting(distance_m=1000, duration_s=120)
    cache = QuoteCache(DeliveryPricingEngine(routing))

    first = cache.get("v1", CUSTOMER, VENDOR_3KM)
    assert cache.get("v1", CUSTOMER, VENDOR_3KM) is first
    assert routing.calls == 1

    cache.get("v1", Coordinates(37.70, -122.40), VENDOR_3KM)
    assert routing.calls == 2

    cache.invalidate("v1")
    cache.get("v1", Coordinates(37.70, -122.40), VENDOR_3KM)
    assert routing.calls == 3


def test_quote_cache_refreshes_when_vendor_basket_reappears() -> None:
    routing = _FixedRouting(distance_m=1000, duration_s=120)
    cache = QuoteCache(DeliveryPricingEngine(routing))
    basket = Basket()
    item = CatalogItem(item_id="bread", vendor_id="v1", name="Bread", unit_price_cents=1000)
    cache.watch(basket)

    basket.upsert(item, 1)
    cache.get("v1", CUSTOMER, VENDOR_3KM)
    basket.upsert(item, 2)
    cache.get("v1", CUSTOMER, VENDOR_3KM)
    assert routing.calls == 1

    basket.remove_vendor("v1")
    basket.upsert(item, 1)
    cache.get("v1", CUSTOMER, VENDOR_3KM)
    assert routing.calls == 2


@pytest.mark.parametrize(
    ("option_id", "subtotal", "custom", "expected"),
    [
        ("none", 2000, None, 0),
        ("tip_10", 1005, None, 101),
        ("tip_15", 2000, None, 300),
        ("tip_20", 1999, None, 400),
        ("tip_25", 1000, None, 250),
        ("custom", 2000, 375, 375),
        ("custom", 2000, None, 0),
    ],
)
def test_tip_amounts(option_id: str, subtotal: int, custom: int | None, expected: int) -> None:
    assert tip_amount_cents(tip_option(option_id), subtotal, custom) == expected


def test_unknown_tip_option() -> None:
    with pytest.raises(KeyError):
        tip_option("tip_99")
