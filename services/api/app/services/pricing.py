"""Delivery fee and ETA pricing.

A quote comes from the routing adapter when it answers and from a great-circle
estimate when it does not. Either way the caller gets a quote back; routing
failures stop here.
"""

from __future__ import annotations

import math
import os
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Literal

import structlog

from services.api.app.services.amounts import round_half_up
from services.api.app.services.basket import Basket, BasketSnapshot
from services.api.app.services.geo import haversine_m, km_to_miles
from services.api.app.services.routing_base import Coordinates, RouteResult, RoutingAdapter

logger = structlog.get_logger(__name__)

# Fee tiers in miles: (start, end, cents per mile). The base fee covers [0, 3).
_FEE_TIERS: tuple[tuple[float, float, int], ...] = (
    (3.0, 8.0, 125),
    (8.0, 15.0, 100),
    (15.0, math.inf, 75),
)
_FEE_ROUNDING_CENTS = 25


@dataclass(frozen=True, slots=True)
class PricingConfig:
    base_fee_cents: int = 500
    min_fee_cents: int = 500
    preparation_minutes: int = 15
    buffer_minutes: int = 10
    fallback_speed_kmh: float = 30.0

    @classmethod
    def from_env(cls) -> "PricingConfig":
        return cls(
            base_fee_cents=int(os.getenv("MARKETLANE_BASE_DELIVERY_FEE_CENTS", "500")),
            min_fee_cents=int(os.getenv("MARKETLANE_MIN_DELIVERY_FEE_CENTS", "500")),
            preparation_minutes=int(os.getenv("MARKETLANE_PREPARATION_MINUTES", "15")),
            buffer_minutes=int(os.getenv("MARKETLANE_DELIVERY_BUFFER_MINUTES", "10")),
            fallback_speed_kmh=float(os.getenv("MARKETLANE_FALLBACK_SPEED_KMH", "30")),
        )


@dataclass(frozen=True, slots=True)
class DeliveryQuote:
    distance_m: int
    distance_km: float
    distance_miles: float
    duration_s: int
    eta_minutes: int
    eta_formatted: str
    fee_cents: int
    computed_via_fallback: bool

    def as_dict(self) -> dict:
        return asdict(self)


def delivery_fee_cents(distance_m: float, config: PricingConfig = PricingConfig()) -> int:
    """Map a driving distance to a delivery fee.

    Non-decreasing in distance: flat base fee for the first 3 miles, then
    per-mile increments by tier, rounded up to the next quarter.
    """
    if not distance_m or distance_m <= 0:
        return max(config.base_fee_cents, config.min_fee_cents)

    miles = km_to_miles(distance_m / 1000)
    fee = float(config.base_fee_cents)
    for start, end, cents_per_mile in _FEE_TIERS:
        if miles <= start:
            break
        fee += (min(miles, end) - start) * cents_per_mile

    # round() first so float noise such as 500.0000001 does not bump a quarter.
    rounded = math.ceil(round(fee, 6) / _FEE_ROUNDING_CENTS) * _FEE_ROUNDING_CENTS
    return max(rounded, config.min_fee_cents)


def eta_minutes(duration_s: int, config: PricingConfig = PricingConfig()) -> int:
    driving = math.ceil(duration_s / 60) if duration_s > 0 else 0
    return config.preparation_minutes + driving + config.buffer_minutes


def format_minutes(minutes: int) -> str:
    if not minutes or minutes <= 0:
        return "0 min"

    hours, rest = divmod(int(minutes), 60)
    if hours == 0:
        return f"{rest} min"
    unit = "hr" if hours == 1 else "hrs"
    if rest == 0:
        return f"{hours} {unit}"
    return f"{hours} {unit} {rest} min"


class DeliveryPricingEngine:
    def __init__(self, routing: RoutingAdapter, config: PricingConfig | None = None) -> None:
        self._routing = routing
        self._config = config or PricingConfig()

    @property
    def config(self) -> PricingConfig:
        return self._config

    def quote(self, customer: Coordinates, vendor: Coordinates) -> DeliveryQuote:
        try:
            route = self._routing.route(vendor, customer)
            _check_route(route)
        except Exception as e:
            logger.warning(
                "pricing.fallback_used",
                provider=getattr(self._routing, "provider", "unknown"),
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._fallback_quote(customer, vendor)

        return self._build_quote(route.distance_m, route.duration_s, via_fallback=False)

    def _fallback_quote(self, customer: Coordinates, vendor: Coordinates) -> DeliveryQuote:
        distance_m = haversine_m(vendor, customer)
        duration_s = distance_m / (self._config.fallback_speed_kmh * 1000 / 3600)
        return self._build_quote(round(distance_m), round(duration_s), via_fallback=True)

    def _build_quote(self, distance_m: int, duration_s: int, *, via_fallback: bool) -> DeliveryQuote:
        distance_km = distance_m / 1000
        minutes = eta_minutes(duration_s, self._config)
        return DeliveryQuote(
            distance_m=distance_m,
            distance_km=round(distance_km, 3),
            distance_miles=round(km_to_miles(distance_km), 3),
            duration_s=duration_s,
            eta_minutes=minutes,
            eta_formatted=format_minutes(minutes),
            fee_cents=delivery_fee_cents(distance_m, self._config),
            computed_via_fallback=via_fallback,
        )


def _check_route(route: RouteResult) -> None:
    if not isinstance(route, RouteResult):
        raise ValueError(f"Routing adapter returned {type(route).__name__}, not a route")
    if route.distance_m < 0 or route.duration_s < 0:
        raise ValueError("Routing adapter returned a negative distance or duration")


@dataclass(slots=True)
class _CachedQuote:
    customer: Coordinates
    vendor: Coordinates
    quote: DeliveryQuote


class QuoteCache:
    """Per-vendor quote memo.

    A quote is reused until the customer or vendor coordinates change, or until
    the vendor's basket goes from empty to non-empty. Tip and basket contents
    never trigger a new quote.
    """

    def __init__(self, engine: DeliveryPricingEngine) -> None:
        self._engine = engine
        self._quotes: dict[str, _CachedQuote] = {}
        self._known_vendors: set[str] = set()

    def get(self, vendor_id: str, customer: Coordinates, vendor: Coordinates) -> DeliveryQuote:
        cached = self._quotes.get(vendor_id)
        if cached is not None and cached.customer == customer and cached.vendor == vendor:
            return cached.quote

        quote = self._engine.quote(customer, vendor)
        self._quotes[vendor_id] = _CachedQuote(customer=customer, vendor=vendor, quote=quote)
        return quote

    def invalidate(self, vendor_id: str) -> None:
        self._quotes.pop(vendor_id, None)

    def watch(self, basket: Basket) -> None:
        """Invalidate a vendor's quote whenever its basket reappears."""
        self._known_vendors = set(basket.snapshot())
        basket.subscribe(self._on_basket_change)

    def _on_basket_change(self, snapshot: BasketSnapshot) -> None:
        current = set(snapshot)
        for vendor_id in current - self._known_vendors:
            self.invalidate(vendor_id)
        self._known_vendors = current


@dataclass(frozen=True, slots=True)
class TipOption:
    id: str
    label: str
    value: float | int | None
    type: Literal["none", "percentage", "fixed", "custom"]


DEFAULT_TIP_OPTIONS: tuple[TipOption, ...] = (
    TipOption(id="none", label="No Tip", value=0, type="none"),
    TipOption(id="tip_10", label="10%", value=0.10, type="percentage"),
    TipOption(id="tip_15", label="15%", value=0.15, type="percentage"),
    TipOption(id="tip_20", label="20%", value=0.20, type="percentage"),
    TipOption(id="tip_25", label="25%", value=0.25, type="percentage"),
    TipOption(id="custom", label="Custom", value=None, type="custom"),
)


def tip_option(option_id: str) -> TipOption:
    for option in DEFAULT_TIP_OPTIONS:
        if option.id == option_id:
            return option
    raise KeyError(option_id)


def tip_amount_cents(
    option: TipOption,
    subtotal_cents: int,
    custom_tip_cents: int | None = None,
) -> int:
    if option.type == "none":
        return 0
    if option.type == "custom":
        return max(custom_tip_cents or 0, 0)
    if option.type == "percentage" and option.value is not None:
        return round_half_up(Decimal(subtotal_cents) * Decimal(str(option.value)))
    if option.type == "fixed" and option.value is not None:
        return int(option.value)
    return 0
