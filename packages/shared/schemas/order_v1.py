"""Shared order schema (v1).

Driver screens show two kinds of delivery record side by side: open orders
and the driver's own transactions. Each record carries an explicit ``kind``
tag set when it is created, and clients must switch on that tag.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class OrderStatusV1(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PREPARING = "preparing"
    WAITING_FOR_DRIVER = "waiting_for_driver"
    DRIVER_COMING_TO_PICKUP = "driver_coming_to_pickup"
    DRIVER_DELIVERING = "driver_delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DriverTransactionStatusV1(str, Enum):
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"


class LineItemV1(BaseModel):
    item_id: str
    name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class OrderAmountsV1(BaseModel):
    subtotal_cents: int
    tax_cents: int
    service_fee_cents: int
    delivery_fee_cents: int
    tip_cents: int
    total_cents: int


class PartySnapshotV1(BaseModel):
    id: str
    display_name: str
    location: str = ""
    latitude: float | None = None
    longitude: float | None = None
    email: str = ""
    phone: str = ""


class OrderRecordV1(BaseModel):
    kind: Literal["ORDER"] = "ORDER"

    id: str
    customer_id: str
    vendor_id: str
    driver_id: str | None = None
    status: OrderStatusV1

    line_items: list[LineItemV1]
    amounts: OrderAmountsV1
    currency: str = "usd"
    delivery_quote: dict = Field(default_factory=dict)

    vendor: PartySnapshotV1
    customer: PartySnapshotV1

    payment_intent_id: str | None = None
    payment_status: str = "none"
    captured_charge_id: str | None = None
    vendor_transfer_id: str | None = None
    driver_transfer_id: str | None = None

    created_at: str
    updated_at: str
    ready_at: str | None = None
    driver_assigned_at: str | None = None
    picked_up_at: str | None = None
    delivered_at: str | None = None
    cancelled_at: str | None = None
    cancelled_reason: str | None = None


class DriverTransactionRecordV1(BaseModel):
    kind: Literal["DRIVER_TRANSACTION"] = "DRIVER_TRANSACTION"

    id: str
    order_id: str
    driver_id: str
    status: DriverTransactionStatusV1

    earned_delivery_fee_cents: int
    earned_tip_cents: int
    earned_total_cents: int

    accepted_at: str
    picked_up_at: str | None = None
    delivered_at: str | None = None
    pickup_duration_s: int | None = None
    delivery_duration_s: int | None = None


DeliveryRecordV1 = Annotated[
    OrderRecordV1 | DriverTransactionRecordV1,
    Field(discriminator="kind"),
]
