from __future__ import annotations

from dataclasses import dataclass, field
from uuid import uuid4

import structlog

from services.api.app.errors import ValidationError
from services.api.app.services.basket import Basket, BasketSnapshot

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class CheckoutSession:
    """Ownership token for the one payment form that may be open at a time.

    The session remembers the order and hold it created, so a retried
    submission resumes them instead of opening a second hold.
    """

    vendor_id: str
    token: str = field(default_factory=lambda: uuid4().hex)
    order_id: str | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None

    def attach_order(self, order_id: str) -> None:
        if self.order_id is not None and self.order_id != order_id:
            raise ValidationError(
                f"Checkout {self.token} already belongs to order {self.order_id}"
            )
        self.order_id = order_id

    def attach_hold(self, payment_intent_id: str, client_secret: str) -> None:
        self.payment_intent_id = payment_intent_id
        self.client_secret = client_secret

    @property
    def resumable(self) -> bool:
        return self.order_id is not None and self.payment_intent_id is not None


class CheckoutDesk:
    def __init__(self, basket: Basket) -> None:
        self._basket = basket
        self._active: CheckoutSession | None = None
        basket.subscribe(self._on_basket_change)

    @property
    def active(self) -> CheckoutSession | None:
        return self._active

    def open(self, vendor_id: str) -> CheckoutSession:
        if self._active is not None:
            if self._active.vendor_id == vendor_id:
                return self._active
            raise ValidationError(
                f"A checkout for vendor {self._active.vendor_id} is already in progress"
            )

        if not self._basket.items_for(vendor_id):
            raise ValidationError(f"Basket for vendor {vendor_id} is empty")

        self._active = CheckoutSession(vendor_id=vendor_id)
        logger.info("checkout.opened", vendor_id=vendor_id, token=self._active.token)
        return self._active

    def line_items(self, session: CheckoutSession) -> list[dict]:
        self._require_owner(session)
        return [
            {
                "item_id": entry.item.item_id,
                "name": entry.item.name,
                "quantity": entry.quantity,
                "unit_price_cents": entry.item.unit_price_cents,
            }
            for entry in self._basket.items_for(session.vendor_id)
        ]

    def complete(self, session: CheckoutSession) -> None:
        """Payment confirmed: drop the vendor's basket and release the token."""
        self._require_owner(session)
        self._basket.remove_vendor(session.vendor_id)
        logger.info(
            "checkout.completed",
            vendor_id=session.vendor_id,
            order_id=session.order_id,
            token=session.token,
        )
        self._active = None

    def abandon(self, session: CheckoutSession) -> None:
        self._require_owner(session)
        self._active = None

    def _on_basket_change(self, snapshot: BasketSnapshot) -> None:
        # Clearing the vendor basket elsewhere also closes its payment form.
        if self._active is not None and self._active.vendor_id not in snapshot:
            self._active = None

    def _require_owner(self, session: CheckoutSession) -> None:
        if self._active is None or self._active.token != session.token:
            raise ValidationError("Checkout session is no longer active")
