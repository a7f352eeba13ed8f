from __future__ import annotations

from pydantic import BaseModel, Field

from packages.shared.schemas.order_v1 import OrderRecordV1


class CoordinatesIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class DeliveryQuoteRequest(BaseModel):
    customer: CoordinatesIn
    vendor: CoordinatesIn


class DeliveryQuoteOut(BaseModel):
    distance_m: int
    distance_km: float
    distance_miles: float
    duration_s: int
    eta_minutes: int
    eta_formatted: str
    fee_cents: int
    computed_via_fallback: bool


class LineItemIn(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class OrderCreateRequest(BaseModel):
    customer_id: str
    vendor_id: str
    line_items: list[LineItemIn] = Field(..., min_length=1)

    tip_option_id: str = "none"
    custom_tip_cents: int | None = Field(default=None, ge=0)
    customer_email: str | None = None


class OrderCreateResponse(BaseModel):
    order: OrderRecordV1
    payment_intent_id: str
    client_secret: str | None


class VendorActionRequest(BaseModel):
    vendor_id: str


class DriverActionRequest(BaseModel):
    driver_id: str


class OrderCancelRequest(BaseModel):
    actor: str = Field(..., pattern="^(customer|vendor)$")
    actor_id: str
    reason: str | None = None


class OrderActionResponse(BaseModel):
    order: OrderRecordV1
    warnings: list[str] = Field(default_factory=list)

