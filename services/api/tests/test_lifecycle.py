from __future__ import annotations

import pytest
from packages.shared.schemas.order_v1 import OrderStatusV1
from services.api.app.db.database import db_session
from services.api.app.db.models import DriverTransaction, EventLog, InventoryItem
from services.api.app.errors import (
    AuthorizationError,
    ConcurrencyConflict,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from services.api.app.services.lifecycle import (
    TERMINAL_STATUSES,
    Actor,
    OrderLifecycle,
    allowed_targets,
)
from services.api.app.services.orders import create_order
from services.api.app.services.pricing import DeliveryPricingEngine
from services.api.app.services.routing_mock import MockRoutingAdapter
from sqlalchemy.orm import Session


def _new_order(db: Session) -> str:
    order = create_order(
        db,
        customer_id="cust-1",
        vendor_id="vendor-1",
        line_items=[{"item_id": "item-bread", "quantity": 2}],
        pricing=DeliveryPricingEngine(MockRoutingAdapter()),
        currency="usd",
    )
    return order.id


def _ready_order(db: Session) -> str:
    order_id = _new_order(db)
    lifecycle = OrderLifecycle(db)
    lifecycle.mark_paid(order_id)
    lifecycle.mark_ready(order_id, actor=Actor.VENDOR, actor_id="vendor-1")
    return order_id


def test_happy_path_walks_every_status(db: Session) -> None:
    order_id = _ready_order(db)
    lifecycle = OrderLifecycle(db)

    order = lifecycle.claim(order_id, "driver-1")
    assert order.status == OrderStatusV1.DRIVER_COMING_TO_PICKUP.value
    assert order.driver_id == "driver-1"
    assert order.driver_assigned_at is not None

    order = lifecycle.mark_picked_up(order_id, "driver-1")
    assert order.status == OrderStatusV1.DRIVER_DELIVERING.value
    assert order.picked_up_at is not None

    order = lifecycle.mark_delivered(order_id, "driver-1")
    assert order.status == OrderStatusV1.DELIVERED.value
    assert order.ready_at is not None and order.delivered_at is not None

    tx = db.query(DriverTransaction).filter_by(order_id=order_id).one()
    assert tx.status == "delivered"
    assert tx.earned_delivery_fee_cents == order.delivery_fee_cents
    assert tx.pickup_duration_s is not None and tx.delivery_duration_s is not None

    changes = db.query(EventLog).filter_by(order_id=order_id, event_type="STATUS_CHANGED").count()
    assert changes == 5


def test_only_settlement_may_mark_paid(db: Session) -> None:
    order_id = _new_order(db)
    with pytest.raises(InvalidTransitionError):
        OrderLifecycle(db).mark_ready(order_id, actor=Actor.VENDOR, actor_id="vendor-1")


def test_mark_ready_requires_owning_vendor(db: Session) -> None:
    order_id = _new_order(db)
    lifecycle = OrderLifecycle(db)
    lifecycle.mark_paid(order_id)

    with pytest.raises(AuthorizationError):
        lifecycle.mark_ready(order_id, actor=Actor.VENDOR, actor_id="vendor-2")


def test_second_claim_loses_and_keeps_first_driver(db: Session) -> None:
    order_id = _ready_order(db)

    # A separate session stands in for a second request racing the first.
    other = db_session()
    try:
        OrderLifecycle(db).claim(order_id, "driver-1")
        with pytest.raises(ConcurrencyConflict, match="Order already claimed"):
            OrderLifecycle(other).claim(order_id, "driver-2")
    finally:
        other.close()

    db.expire_all()
    order = OrderLifecycle(db).mark_picked_up(order_id, "driver-1")
    assert order.driver_id == "driver-1"
    assert db.query(DriverTransaction).filter_by(order_id=order_id).count() == 1


def test_claim_before_ready_is_an_invalid_transition(db: Session) -> None:
    order_id = _new_order(db)
    with pytest.raises(InvalidTransitionError):
        OrderLifecycle(db).claim(order_id, "driver-1")


def test_other_driver_cannot_advance(db: Session) -> None:
    order_id = _ready_order(db)
    lifecycle = OrderLifecycle(db)
    lifecycle.claim(order_id, "driver-1")

    with pytest.raises(AuthorizationError):
        lifecycle.mark_picked_up(order_id, "driver-2")


def test_customer_cancel_only_before_capture(db: Session) -> None:
    lifecycle = OrderLifecycle(db)

    pending = _new_order(db)
    with pytest.raises(AuthorizationError):
        lifecycle.cancel(pending, actor=Actor.CUSTOMER, actor_id="cust-2")
    order = lifecycle.cancel(pending, actor=Actor.CUSTOMER, actor_id="cust-1")
    assert order.status == OrderStatusV1.CANCELLED.value
    assert order.cancelled_reason == "Cancelled by customer"

    preparing = _new_order(db)
    lifecycle.mark_paid(preparing)
    with pytest.raises(AuthorizationError):
        lifecycle.cancel(preparing, actor=Actor.CUSTOMER, actor_id="cust-1")


def test_vendor_cannot_cancel_after_pickup(db: Session) -> None:
    order_id = _ready_order(db)
    lifecycle = OrderLifecycle(db)
    lifecycle.claim(order_id, "driver-1")
    lifecycle.mark_picked_up(order_id, "driver-1")

    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel(order_id, actor=Actor.VENDOR, actor_id="vendor-1")


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
def test_terminal_statuses_accept_nothing(terminal: OrderStatusV1) -> None:
    assert allowed_targets(terminal) == []


def test_cancelled_order_rejects_every_transition(db: Session) -> None:
    order_id = _new_order(db)
    lifecycle = OrderLifecycle(db)
    lifecycle.cancel(order_id, actor=Actor.VENDOR, actor_id="vendor-1", reason="Out of bread")

    with pytest.raises(InvalidTransitionError):
        lifecycle.mark_paid(order_id)
    with pytest.raises(InvalidTransitionError):
        lifecycle.claim(order_id, "driver-1")
    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel(order_id, actor=Actor.VENDOR, actor_id="vendor-1")


def test_claim_requires_driver_id(db: Session) -> None:
    with pytest.raises(ValidationError):
        OrderLifecycle(db).claim(_ready_order(db), "")


def test_claim_by_unknown_driver_is_rejected(db: Session) -> None:
    order_id = _ready_order(db)

    with pytest.raises(NotFoundError, match="Driver not found"):
        OrderLifecycle(db).claim(order_id, "ghost")

    order = OrderLifecycle(db).claim(order_id, "driver-2")
    assert order.driver_id == "driver-2"


def test_pickup_moves_stock_to_sold(db: Session) -> None:
    order = create_order(
        db,
        customer_id="cust-1",
        vendor_id="vendor-1",
        line_items=[
            {"item_id": "item-bread", "quantity": 2},
            {"item_id": "item-croissant", "quantity": 3},
        ],
        pricing=DeliveryPricingEngine(MockRoutingAdapter()),
        currency="usd",
    )
    lifecycle = OrderLifecycle(db)
    lifecycle.mark_paid(order.id)
    lifecycle.mark_ready(order.id, actor=Actor.VENDOR, actor_id="vendor-1")
    lifecycle.claim(order.id, "driver-1")

    # Nothing moves until the driver has the food.
    assert db.get(InventoryItem, "item-bread").stock_units == 10

    lifecycle.mark_picked_up(order.id, "driver-1")

    bread = db.get(InventoryItem, "item-bread")
    assert (bread.stock_units, bread.sold_units) == (8, 2)
    croissant = db.get(InventoryItem, "item-croissant")
    assert croissant.stock_units is None
    assert croissant.sold_units == 3


def test_pickup_never_drives_stock_negative(db: Session) -> None:
    order_id = _ready_order(db)
    db.get(InventoryItem, "item-bread").stock_units = 1
    db.commit()
    lifecycle = OrderLifecycle(db)
    lifecycle.claim(order_id, "driver-1")

    lifecycle.mark_picked_up(order_id, "driver-1")

    bread = db.get(InventoryItem, "item-bread")
    assert (bread.stock_units, bread.sold_units) == (0, 2)
