"""Order persistence: creation with party snapshots, lookups, and record views."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

import structlog

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import (
    DriverTransactionRecordV1,
    LineItemV1,
    OrderAmountsV1,
    OrderRecordV1,
    OrderStatusV1,
    PartySnapshotV1,
)
from services.api.app.db.models import Customer, DriverTransaction, InventoryItem, Order, Vendor
from services.api.app.errors import NotFoundError, ValidationError
from services.api.app.services.amounts import compute_amounts
from services.api.app.services.events import log_event
from services.api.app.services.pricing import DeliveryPricingEngine, tip_amount_cents, tip_option
from services.api.app.services.routing_base import Coordinates
from sqlalchemy import update
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)


def get_order(db: Session, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_by_hold(db: Session, payment_intent_id: str) -> Order:
    order = db.query(Order).filter(Order.payment_intent_id == payment_intent_id).first()
    if order is None:
        raise NotFoundError("Order not found for payment hold")
    return order


def create_order(
    db: Session,
    *,
    customer_id: str,
    vendor_id: str,
    line_items: list[dict],
    pricing: DeliveryPricingEngine,
    currency: str,
    tip_option_id: str = "none",
    custom_tip_cents: int | None = None,
) -> Order:
    """Price and persist a new order in ``pending_payment``.

    Line items are re-priced from inventory and the delivery fee is quoted
    from the stored customer and vendor coordinates.
    """
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    vendor = db.get(Vendor, vendor_id)
    if vendor is None:
        raise NotFoundError("Vendor not found")

    try:
        tip = tip_option(tip_option_id)
    except KeyError as e:
        raise ValidationError(f"Unknown tip option: {tip_option_id}") from e

    priced = _price_line_items(db, vendor_id, line_items)
    subtotal = sum(li["line_total_cents"] for li in priced)
    quote = pricing.quote(_coordinates(customer, "Customer"), _coordinates(vendor, "Vendor"))
    tip_cents = tip_amount_cents(tip, subtotal, custom_tip_cents)
    amounts = compute_amounts(subtotal, quote.fee_cents, tip_cents)

    now = datetime.utcnow()
    order = Order(
        id=uuid4().hex,
        kind="ORDER",
        customer_id=customer.id,
        vendor_id=vendor.id,
        driver_id=None,
        status=OrderStatusV1.PENDING_PAYMENT.value,
        line_items_json=priced,
        subtotal_cents=amounts.subtotal_cents,
        tax_cents=amounts.tax_cents,
        service_fee_cents=amounts.service_fee_cents,
        delivery_fee_cents=amounts.delivery_fee_cents,
        tip_cents=amounts.tip_cents,
        total_cents=amounts.total_cents,
        currency=currency,
        delivery_quote_json=quote.as_dict(),
        vendor_snapshot_json=_snapshot(vendor),
        customer_snapshot_json=_snapshot(customer),
        payment_status="none",
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    log_event(
        db,
        actor_id=customer.id,
        entity_type=EntityTypeV1.ORDER,
        entity_id=order.id,
        event_type=EventTypeV1.ORDER_CREATED,
        event_payload={"vendor_id": vendor.id, "total_cents": amounts.total_cents},
    )
    db.commit()
    return order


def _price_line_items(db: Session, vendor_id: str, line_items: list[dict]) -> list[dict]:
    """Re-price line items from inventory; client-sent prices are not trusted."""
    if not line_items:
        raise ValidationError("Order must contain at least one line item")

    priced: list[dict] = []
    for li in line_items:
        item = db.get(InventoryItem, li["item_id"])
        if item is None:
            raise ValidationError(f"Unknown item: {li['item_id']}")
        if item.vendor_id != vendor_id:
            raise ValidationError(f"Item {item.id} is not sold by vendor {vendor_id}")

        quantity = int(li["quantity"])
        if quantity <= 0:
            raise ValidationError(f"Quantity for item {item.id} must be positive")
        if item.stock_units is not None and quantity > item.stock_units:
            raise ValidationError(
                f"Only {item.stock_units} unit(s) of {item.name!r} are in stock"
            )

        priced.append(
            {
                "item_id": item.id,
                "name": item.name,
                "quantity": quantity,
                "unit_price_cents": item.unit_price_cents,
                "line_total_cents": item.unit_price_cents * quantity,
            }
        )
    return priced


def deduct_inventory(db: Session, order: Order) -> None:
    """Move the order's quantities from stock to sold. The caller commits.

    Stock never goes negative: a line that would oversell empties the item
    and is logged.
    """
    for li in order.line_items_json:
        item_id, quantity = li["item_id"], int(li["quantity"])
        # NULL stock (untracked) stays NULL; only sold_units moves.
        result = db.execute(
            update(InventoryItem)
            .where(
                InventoryItem.id == item_id,
                (InventoryItem.stock_units.is_(None)) | (InventoryItem.stock_units >= quantity),
            )
            .values(
                stock_units=InventoryItem.stock_units - quantity,
                sold_units=InventoryItem.sold_units + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == item_id)
                .values(stock_units=0, sold_units=InventoryItem.sold_units + quantity)
                .execution_options(synchronize_session=False)
            )
            logger.warning(
                "inventory.oversold", order_id=order.id, item_id=item_id, quantity=quantity
            )

        item = db.get(InventoryItem, item_id)
        if item is not None:
            db.expire(item)


def _coordinates(party: Customer | Vendor, label: str) -> Coordinates:
    if party.latitude is None or party.longitude is None:
        raise ValidationError(f"{label} location is required for delivery pricing")
    return Coordinates(party.latitude, party.longitude)


def _snapshot(party: Customer | Vendor) -> dict:
    return {
        "id": party.id,
        "display_name": party.display_name,
        "location": party.location,
        "latitude": party.latitude,
        "longitude": party.longitude,
        "email": party.email,
        "phone": party.phone,
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def order_to_record(order: Order) -> OrderRecordV1:
    return OrderRecordV1(
        id=order.id,
        customer_id=order.customer_id,
        vendor_id=order.vendor_id,
        driver_id=order.driver_id,
        status=OrderStatusV1(order.status),
        line_items=[LineItemV1(**li) for li in order.line_items_json],
        amounts=OrderAmountsV1(
            subtotal_cents=order.subtotal_cents,
            tax_cents=order.tax_cents,
            service_fee_cents=order.service_fee_cents,
            delivery_fee_cents=order.delivery_fee_cents,
            tip_cents=order.tip_cents,
            total_cents=order.total_cents,
        ),
        currency=order.currency,
        delivery_quote=order.delivery_quote_json,
        vendor=PartySnapshotV1(**order.vendor_snapshot_json),
        customer=PartySnapshotV1(**order.customer_snapshot_json),
        payment_intent_id=order.payment_intent_id,
        payment_status=order.payment_status,
        captured_charge_id=order.captured_charge_id,
        vendor_transfer_id=order.vendor_transfer_id,
        driver_transfer_id=order.driver_transfer_id,
        created_at=order.created_at.isoformat(),
        updated_at=order.updated_at.isoformat(),
        ready_at=_iso(order.ready_at),
        driver_assigned_at=_iso(order.driver_assigned_at),
        picked_up_at=_iso(order.picked_up_at),
        delivered_at=_iso(order.delivered_at),
        cancelled_at=_iso(order.cancelled_at),
        cancelled_reason=order.cancelled_reason,
    )


def driver_transaction_to_record(tx: DriverTransaction) -> DriverTransactionRecordV1:
    return DriverTransactionRecordV1(
        id=tx.id,
        order_id=tx.order_id,
        driver_id=tx.driver_id,
        status=tx.status,
        earned_delivery_fee_cents=tx.earned_delivery_fee_cents,
        earned_tip_cents=tx.earned_tip_cents,
        earned_total_cents=tx.earned_delivery_fee_cents + tx.earned_tip_cents,
        accepted_at=tx.accepted_at.isoformat(),
        picked_up_at=_iso(tx.picked_up_at),
        delivered_at=_iso(tx.delivered_at),
        pickup_duration_s=tx.pickup_duration_s,
        delivery_duration_s=tx.delivery_duration_s,
    )
