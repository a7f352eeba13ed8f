"""Order lifecycle state machine.

Status moves forward only:

    pending_payment -> preparing -> waiting_for_driver -> driver_coming_to_pickup
        -> driver_delivering -> delivered

with ``cancelled`` reachable before pickup. Every status write is a single
conditional UPDATE that names the status it expects to replace, so two writers
racing on the same order can never both succeed, and nothing leaves a terminal
state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import DriverTransactionStatusV1
from packages.shared.schemas.order_v1 import OrderStatusV1 as OrderStatus
from services.api.app.db.models import Driver, DriverTransaction, Order
from services.api.app.errors import (
    AuthorizationError,
    ConcurrencyConflict,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from services.api.app.services.events import log_event
from services.api.app.services.orders import deduct_inventory, get_order
from sqlalchemy import update
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)


class Actor(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    DRIVER = "driver"
    SETTLEMENT = "settlement"
    SYSTEM = "system"


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Statuses before the driver has the goods.
PRE_PICKUP_STATUSES = frozenset(
    {
        OrderStatus.PENDING_PAYMENT,
        OrderStatus.PREPARING,
        OrderStatus.WAITING_FOR_DRIVER,
        OrderStatus.DRIVER_COMING_TO_PICKUP,
    }
)


@dataclass(frozen=True, slots=True)
class Transition:
    source: OrderStatus
    target: OrderStatus
    actors: frozenset[Actor]


TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Transition] = {
    (t.source, t.target): t
    for t in (
        Transition(
            OrderStatus.PENDING_PAYMENT, OrderStatus.PREPARING, frozenset({Actor.SETTLEMENT})
        ),
        Transition(
            OrderStatus.PREPARING,
            OrderStatus.WAITING_FOR_DRIVER,
            frozenset({Actor.VENDOR, Actor.SYSTEM}),
        ),
        Transition(
            OrderStatus.WAITING_FOR_DRIVER,
            OrderStatus.DRIVER_COMING_TO_PICKUP,
            frozenset({Actor.DRIVER}),
        ),
        Transition(
            OrderStatus.DRIVER_COMING_TO_PICKUP,
            OrderStatus.DRIVER_DELIVERING,
            frozenset({Actor.DRIVER}),
        ),
        Transition(
            OrderStatus.DRIVER_DELIVERING, OrderStatus.DELIVERED, frozenset({Actor.DRIVER})
        ),
        Transition(
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.CANCELLED,
            frozenset({Actor.CUSTOMER, Actor.VENDOR, Actor.SETTLEMENT, Actor.SYSTEM}),
        ),
        *(
            Transition(source, OrderStatus.CANCELLED, frozenset({Actor.VENDOR, Actor.SYSTEM}))
            for source in PRE_PICKUP_STATUSES - {OrderStatus.PENDING_PAYMENT}
        ),
    )
}


def allowed_targets(status: OrderStatus) -> list[OrderStatus]:
    return [target for (source, target) in TRANSITIONS if source == status]


class OrderLifecycle:
    def __init__(self, db: Session) -> None:
        self._db = db

    def mark_paid(self, order_id: str) -> Order:
        """Capture succeeded; only the settlement coordinator calls this."""
        return self._advance(
            order_id,
            OrderStatus.PENDING_PAYMENT,
            OrderStatus.PREPARING,
            actor=Actor.SETTLEMENT,
            actor_id=None,
            values={"payment_status": "captured"},
        )

    def mark_ready(self, order_id: str, *, actor: Actor, actor_id: str | None) -> Order:
        order = get_order(self._db, order_id)
        if actor == Actor.VENDOR and order.vendor_id != actor_id:
            raise AuthorizationError("Only the order's vendor can mark it ready")

        return self._advance(
            order_id,
            OrderStatus.PREPARING,
            OrderStatus.WAITING_FOR_DRIVER,
            actor=actor,
            actor_id=actor_id,
            values={"ready_at": datetime.utcnow()},
        )

    def claim(self, order_id: str, driver_id: str) -> Order:
        """Assign ``driver_id`` if, and only if, nobody holds the order yet.

        driver_id and status are written together in one conditional UPDATE.
        """
        if not driver_id:
            raise ValidationError("driver_id is required")
        if self._db.get(Driver, driver_id) is None:
            raise NotFoundError("Driver not found")

        now = datetime.utcnow()
        claimed = self._compare_and_set(
            order_id,
            OrderStatus.WAITING_FOR_DRIVER,
            OrderStatus.DRIVER_COMING_TO_PICKUP,
            Order.driver_id.is_(None),
            values={"driver_id": driver_id, "driver_assigned_at": now},
        )
        if not claimed:
            self._db.rollback()
            order = get_order(self._db, order_id)
            current = OrderStatus(order.status)
            if order.driver_id is not None:
                logger.info(
                    "lifecycle.claim_lost",
                    order_id=order_id,
                    driver_id=driver_id,
                    holder=order.driver_id,
                    status=order.status,
                )
                raise ConcurrencyConflict("Order already claimed")
            raise InvalidTransitionError(current.value, OrderStatus.DRIVER_COMING_TO_PICKUP.value)

        order = get_order(self._db, order_id)
        self._db.add(
            DriverTransaction(
                id=uuid4().hex,
                kind="DRIVER_TRANSACTION",
                order_id=order_id,
                driver_id=driver_id,
                status=DriverTransactionStatusV1.ACCEPTED.value,
                earned_delivery_fee_cents=order.delivery_fee_cents,
                earned_tip_cents=order.tip_cents,
                accepted_at=now,
            )
        )
        log_event(
            self._db,
            actor_id=driver_id,
            entity_type=EntityTypeV1.ORDER,
            entity_id=order_id,
            event_type=EventTypeV1.DRIVER_CLAIMED,
            event_payload={"driver_id": driver_id},
        )
        self._log_status(order_id, OrderStatus.WAITING_FOR_DRIVER, order, Actor.DRIVER, driver_id)
        self._db.commit()
        logger.info("lifecycle.claimed", order_id=order_id, driver_id=driver_id)
        return get_order(self._db, order_id)

    def mark_picked_up(self, order_id: str, driver_id: str) -> Order:
        now = datetime.utcnow()
        order = self._advance(
            order_id,
            OrderStatus.DRIVER_COMING_TO_PICKUP,
            OrderStatus.DRIVER_DELIVERING,
            actor=Actor.DRIVER,
            actor_id=driver_id,
            values={"picked_up_at": now},
            commit=False,
        )
        tx = self._driver_transaction(order_id, driver_id)
        if tx is not None:
            tx.status = DriverTransactionStatusV1.PICKED_UP.value
            tx.picked_up_at = now
            tx.pickup_duration_s = int((now - tx.accepted_at).total_seconds())
        deduct_inventory(self._db, order)
        self._db.commit()
        return order

    def mark_delivered(self, order_id: str, driver_id: str) -> Order:
        now = datetime.utcnow()
        order = self._advance(
            order_id,
            OrderStatus.DRIVER_DELIVERING,
            OrderStatus.DELIVERED,
            actor=Actor.DRIVER,
            actor_id=driver_id,
            values={"delivered_at": now},
            commit=False,
        )
        tx = self._driver_transaction(order_id, driver_id)
        if tx is not None:
            tx.status = DriverTransactionStatusV1.DELIVERED.value
            tx.delivered_at = now
            if tx.picked_up_at is not None:
                tx.delivery_duration_s = int((now - tx.picked_up_at).total_seconds())
        self._db.commit()
        return order

    def cancel(
        self,
        order_id: str,
        *,
        actor: Actor,
        actor_id: str | None,
        reason: str | None = None,
    ) -> Order:
        order = get_order(self._db, order_id)
        self.check_cancel(order, actor=actor, actor_id=actor_id)

        default_reason = f"Cancelled by {actor.value}"
        return self._advance(
            order_id,
            OrderStatus(order.status),
            OrderStatus.CANCELLED,
            actor=actor,
            actor_id=actor_id,
            values={
                "cancelled_at": datetime.utcnow(),
                "cancelled_reason": reason or default_reason,
            },
        )

    def check_cancel(self, order: Order, *, actor: Actor, actor_id: str | None) -> None:
        """Raise unless ``actor`` may cancel ``order`` right now. No side effects."""
        current = OrderStatus(order.status)
        if actor == Actor.CUSTOMER and order.customer_id != actor_id:
            raise AuthorizationError("Only the customer who placed the order can cancel it")
        if actor == Actor.VENDOR and order.vendor_id != actor_id:
            raise AuthorizationError("Only the order's vendor can cancel it")
        if actor == Actor.CUSTOMER and order.captured_charge_id is not None:
            raise ValidationError("Payment has already been captured; contact the vendor")

        transition = TRANSITIONS.get((current, OrderStatus.CANCELLED))
        if transition is None:
            raise InvalidTransitionError(current.value, OrderStatus.CANCELLED.value)
        if actor not in transition.actors:
            raise AuthorizationError(f"A {actor.value} cannot cancel an order in {current.value}")

    # -- internals -----------------------------------------------------------

    def _advance(
        self,
        order_id: str,
        source: OrderStatus,
        target: OrderStatus,
        *,
        actor: Actor,
        actor_id: str | None,
        values: dict[str, Any],
        commit: bool = True,
    ) -> Order:
        order = get_order(self._db, order_id)
        current = OrderStatus(order.status)
        if current != source:
            raise InvalidTransitionError(current.value, target.value)

        transition = TRANSITIONS.get((source, target))
        if transition is None:
            raise InvalidTransitionError(source.value, target.value)
        if actor not in transition.actors:
            raise AuthorizationError(
                f"A {actor.value} cannot move an order from {source.value} to {target.value}"
            )

        guards = []
        if actor == Actor.DRIVER and source != OrderStatus.WAITING_FOR_DRIVER:
            if order.driver_id != actor_id:
                raise AuthorizationError("Order is assigned to a different driver")
            guards.append(Order.driver_id == actor_id)

        if not self._compare_and_set(order_id, source, target, *guards, values=values):
            self._db.rollback()
            latest = get_order(self._db, order_id)
            raise ConcurrencyConflict(
                f"Order changed to {latest.status} while moving it to {target.value}"
            )

        order = get_order(self._db, order_id)
        self._log_status(order_id, source, order, actor, actor_id)
        if commit:
            self._db.commit()
        logger.info(
            "lifecycle.transition",
            order_id=order_id,
            source=source.value,
            target=target.value,
            actor=actor.value,
            actor_id=actor_id,
        )
        return order

    def _compare_and_set(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        *guards: Any,
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status == expected.value, *guards)
            .values(status=target.value, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self._db.execute(stmt)
        if result.rowcount != 1:
            return False
        # The UPDATE bypassed the identity map; make the next read hit the row.
        order = self._db.get(Order, order_id)
        if order is not None:
            self._db.expire(order)
        return True

    def _driver_transaction(self, order_id: str, driver_id: str) -> DriverTransaction | None:
        return (
            self._db.query(DriverTransaction)
            .filter(
                DriverTransaction.order_id == order_id,
                DriverTransaction.driver_id == driver_id,
            )
            .first()
        )

    def _log_status(
        self,
        order_id: str,
        source: OrderStatus,
        order: Order,
        actor: Actor,
        actor_id: str | None,
    ) -> None:
        log_event(
            self._db,
            actor_id=actor_id,
            entity_type=EntityTypeV1.ORDER,
            entity_id=order_id,
            event_type=EventTypeV1.STATUS_CHANGED,
            event_payload={"from": source.value, "to": order.status, "actor": actor.value},
        )
