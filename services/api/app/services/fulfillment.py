from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import OrderStatusV1 as OrderStatus
from services.api.app.db.models import Order
from services.api.app.errors import NotFoundError, PartialSettlementFailure, ValidationError
from services.api.app.services.events import log_event
from services.api.app.services.lifecycle import Actor, OrderLifecycle
from services.api.app.services.orders import get_order
from services.api.app.services.payments_base import PaymentProcessor
from services.api.app.services.settlement import (
    ROLE_DRIVER,
    ROLE_VENDOR,
    SettlementConfig,
    SettlementCoordinator,
)
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class FulfillmentResult:
    order: Order
    warnings: list[str] = field(default_factory=list)


class FulfillmentService:
    """Status changes that move money.

    Pickup pays the vendor and delivery pays the driver. A payout that cannot
    be made is reported as a warning; the status change itself stands.
    """

    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        *,
        config: SettlementConfig | None = None,
    ) -> None:
        self._db = db
        self.lifecycle = OrderLifecycle(db)
        self.settlement = SettlementCoordinator(
            db, processor, lifecycle=self.lifecycle, config=config
        )

    def confirm_payment(self, order_id: str) -> FulfillmentResult:
        self.settlement.capture(order_id)
        return FulfillmentResult(order=get_order(self._db, order_id))

    def ready(self, order_id: str, vendor_id: str) -> FulfillmentResult:
        order = self.lifecycle.mark_ready(order_id, actor=Actor.VENDOR, actor_id=vendor_id)
        return FulfillmentResult(order=order)

    def claim(self, order_id: str, driver_id: str) -> FulfillmentResult:
        return FulfillmentResult(order=self.lifecycle.claim(order_id, driver_id))

    def pickup(self, order_id: str, driver_id: str) -> FulfillmentResult:
        self.lifecycle.mark_picked_up(order_id, driver_id)
        warnings = self._pay(order_id, ROLE_VENDOR)
        return FulfillmentResult(order=get_order(self._db, order_id), warnings=warnings)

    def deliver(self, order_id: str, driver_id: str) -> FulfillmentResult:
        self.lifecycle.mark_delivered(order_id, driver_id)
        warnings = self._pay(order_id, ROLE_DRIVER)
        return FulfillmentResult(order=get_order(self._db, order_id), warnings=warnings)

    def cancel(
        self,
        order_id: str,
        *,
        actor: Actor,
        actor_id: str | None,
        reason: str | None = None,
    ) -> FulfillmentResult:
        order = get_order(self._db, order_id)
        if order.status == OrderStatus.PENDING_PAYMENT.value:
            order = self.settlement.release(order_id, actor=actor, actor_id=actor_id, reason=reason)
            return FulfillmentResult(order=order)

        order = self.lifecycle.cancel(order_id, actor=actor, actor_id=actor_id, reason=reason)
        warnings: list[str] = []
        if order.captured_charge_id:
            # Captured funds stay with the platform; refunds happen out of band.
            order.payment_status = "capture_retained"
            self._db.commit()
            logger.warning(
                "fulfillment.cancelled_after_capture",
                order_id=order.id,
                charge_id=order.captured_charge_id,
                total_cents=order.total_cents,
            )
            warnings.append("Payment was already captured and has not been refunded")
        return FulfillmentResult(order=order, warnings=warnings)

    def _pay(self, order_id: str, role: str) -> list[str]:
        pay = (
            self.settlement.transfer_vendor
            if role == ROLE_VENDOR
            else self.settlement.transfer_driver
        )
        try:
            pay(order_id)
        except PartialSettlementFailure as e:
            return [str(e)]
        except (ValidationError, NotFoundError) as e:
            logger.warning("fulfillment.payout_skipped", order_id=order_id, role=role, reason=str(e))
            log_event(
                self._db,
                actor_id=None,
                entity_type=EntityTypeV1.TRANSFER,
                entity_id=order_id,
                event_type=EventTypeV1.TRANSFER_FAILED,
                event_payload={"order_id": order_id, "role": role, "error": str(e)},
            )
            self._db.commit()
            return [f"{role.capitalize()} payout skipped: {e}"]
        return []
