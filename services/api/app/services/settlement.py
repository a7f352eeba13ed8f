"""Split-payment settlement: authorize, capture, transfer.

One hold per order for the full total, captured once, then paid out to the
vendor (subtotal less commission) and the driver (delivery fee plus tip) as
transfers sourced from the captured charge. Capture cannot be undone here, so a
payee transfer that fails afterwards is queued as a PendingTransfer instead of
being rolled back.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlencode
from uuid import uuid4

import structlog

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order_v1 import OrderStatusV1 as OrderStatus
from services.api.app.db.models import Driver, Order, PendingTransfer, Vendor
from services.api.app.errors import (
    AuthorizationError,
    ExternalServiceError,
    NotFoundError,
    PartialSettlementFailure,
    ValidationError,
)
from services.api.app.services.amounts import vendor_share_cents
from services.api.app.services.events import log_event
from services.api.app.services.lifecycle import Actor, OrderLifecycle
from services.api.app.services.orders import get_order, get_order_by_hold
from services.api.app.services.payments_base import (
    HOLD_CANCELED,
    RELEASABLE_HOLD_STATUSES,
    AccountNotFoundError,
    Hold,
    HoldNotFoundError,
    HoldStateError,
    PaymentProcessor,
    PaymentProcessorError,
)
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)

ROLE_VENDOR = "vendor"
ROLE_DRIVER = "driver"

PAYEE_MODELS: dict[str, type[Vendor] | type[Driver]] = {
    "vendors": Vendor,
    "drivers": Driver,
}


@dataclass(frozen=True, slots=True)
class SettlementConfig:
    commission_bps: int = 0
    currency: str = "usd"
    app_url: str = "http://localhost:3000"

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        return cls(
            commission_bps=int(os.getenv("MARKETLANE_PLATFORM_COMMISSION_BPS", "0")),
            currency=os.getenv("MARKETLANE_DEFAULT_CURRENCY", "usd").strip().lower(),
            app_url=os.getenv("MARKETLANE_APP_URL", "http://localhost:3000").strip().rstrip("/"),
        )


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    sent: list[str]
    failed: list[str]


def transfer_key(order_id: str, role: str, destination_account_id: str) -> str:
    return f"{order_id}:{role}:{destination_account_id}"


class SettlementCoordinator:
    def __init__(
        self,
        db: Session,
        processor: PaymentProcessor,
        *,
        lifecycle: OrderLifecycle | None = None,
        config: SettlementConfig | None = None,
    ) -> None:
        self._db = db
        self._processor = processor
        self._lifecycle = lifecycle or OrderLifecycle(db)
        self._config = config or SettlementConfig.from_env()

    @property
    def config(self) -> SettlementConfig:
        return self._config

    # -- authorize -----------------------------------------------------------

    def authorize(
        self,
        order_id: str,
        *,
        amount_cents: int | None = None,
        currency: str | None = None,
        customer_email: str | None = None,
    ) -> Hold:
        """Place (or resume) the manual-capture hold for the order total."""
        order = get_order(self._db, order_id)
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise ValidationError(f"Cannot authorize payment for an order in status: {order.status}")
        if amount_cents is not None and amount_cents != order.total_cents:
            raise ValidationError(
                f"Amount {amount_cents} does not match the order total {order.total_cents}"
            )
        currency = (currency or order.currency or self._config.currency).lower()
        if currency != order.currency:
            raise ValidationError(f"Order is priced in {order.currency}, not {currency}")

        if order.payment_intent_id:
            existing = self._retrieve(order.payment_intent_id)
            if existing.status != HOLD_CANCELED:
                logger.info("settlement.hold_resumed", order_id=order.id, hold_id=existing.id)
                return existing
            raise ValidationError("The payment hold for this order was cancelled")

        email = customer_email or (order.customer_snapshot_json or {}).get("email") or None
        try:
            hold = self._processor.create_hold(
                amount_cents=order.total_cents,
                currency=currency,
                order_id=order.id,
                customer_email=email,
                idempotency_key=f"hold:{order.id}",
            )
        except PaymentProcessorError as e:
            logger.error("settlement.hold_failed", order_id=order.id, error=str(e))
            raise ExternalServiceError(str(e)) from e

        order.payment_intent_id = hold.id
        order.payment_status = hold.status
        order.updated_at = datetime.utcnow()
        log_event(
            self._db,
            actor_id=order.customer_id,
            entity_type=EntityTypeV1.HOLD,
            entity_id=hold.id,
            event_type=EventTypeV1.HOLD_CREATED,
            event_payload={"order_id": order.id, "amount_cents": hold.amount_cents},
        )
        self._db.commit()
        logger.info(
            "settlement.hold_created",
            order_id=order.id,
            hold_id=hold.id,
            amount_cents=hold.amount_cents,
        )
        return hold

    # -- capture -------------------------------------------------------------

    def capture(self, order_id: str) -> str:
        """Capture the order's hold and advance it to ``preparing``.

        Idempotent: a second call returns the charge id of the first.
        """
        order = get_order(self._db, order_id)
        if order.captured_charge_id:
            return order.captured_charge_id
        if order.status == OrderStatus.CANCELLED.value:
            raise ValidationError("Cannot capture payment for a cancelled order")
        if not order.payment_intent_id:
            raise ValidationError("Order has no payment hold to capture")

        # Always re-read: a release may have failed halfway on a previous call.
        hold = self._retrieve(order.payment_intent_id)
        if hold.status == HOLD_CANCELED:
            raise ValidationError(f"Cannot capture payment in status: {hold.status}")

        if not hold.captured:
            try:
                hold = self._processor.capture_hold(hold.id)
            except HoldStateError as e:
                raise ValidationError(str(e)) from e
            except PaymentProcessorError as e:
                logger.error(
                    "settlement.capture_failed",
                    order_id=order.id,
                    hold_id=hold.id,
                    error=str(e),
                )
                log_event(
                    self._db,
                    actor_id=None,
                    entity_type=EntityTypeV1.HOLD,
                    entity_id=hold.id,
                    event_type=EventTypeV1.HOLD_CAPTURE_FAILED,
                    event_payload={"order_id": order.id, "error": str(e)},
                )
                self._db.commit()
                raise ExternalServiceError(str(e)) from e

        order.captured_charge_id = hold.captured_charge_id
        order.payment_status = hold.status
        order.updated_at = datetime.utcnow()
        log_event(
            self._db,
            actor_id=None,
            entity_type=EntityTypeV1.HOLD,
            entity_id=hold.id,
            event_type=EventTypeV1.HOLD_CAPTURED,
            event_payload={"order_id": order.id, "charge_id": hold.captured_charge_id},
        )
        self._db.commit()
        logger.info("settlement.captured", order_id=order.id, charge_id=hold.captured_charge_id)

        if order.status == OrderStatus.PENDING_PAYMENT.value:
            self._lifecycle.mark_paid(order.id)
        return hold.captured_charge_id

    def capture_by_hold(self, payment_intent_id: str) -> str:
        return self.capture(get_order_by_hold(self._db, payment_intent_id).id)

    # -- transfers -----------------------------------------------------------

    def vendor_share_cents(self, order: Order) -> int:
        return vendor_share_cents(order.subtotal_cents, self._config.commission_bps)

    def driver_share_cents(self, order: Order) -> int:
        return order.delivery_fee_cents + order.tip_cents

    def transfer_vendor(
        self,
        order_id: str,
        *,
        destination_account_id: str | None = None,
        amount_cents: int | None = None,
    ) -> str:
        order = get_order(self._db, order_id)
        return self._transfer(
            order,
            ROLE_VENDOR,
            destination_account_id,
            amount_cents if amount_cents is not None else self.vendor_share_cents(order),
            limit_cents=self.vendor_share_cents(order),
        )

    def transfer_driver(
        self,
        order_id: str,
        *,
        destination_account_id: str | None = None,
        amount_cents: int | None = None,
    ) -> str:
        order = get_order(self._db, order_id)
        return self._transfer(
            order,
            ROLE_DRIVER,
            destination_account_id,
            amount_cents if amount_cents is not None else self.driver_share_cents(order),
            limit_cents=self.driver_share_cents(order),
        )

    def capture_and_transfer_vendor(
        self,
        order_id: str,
        *,
        destination_account_id: str | None = None,
        amount_cents: int | None = None,
    ) -> tuple[str, str]:
        charge_id = self.capture(order_id)
        transfer_id = self.transfer_vendor(
            order_id,
            destination_account_id=destination_account_id,
            amount_cents=amount_cents,
        )
        return charge_id, transfer_id

    def _transfer(
        self,
        order: Order,
        role: str,
        destination_account_id: str | None,
        amount_cents: int,
        *,
        limit_cents: int,
    ) -> str:
        already = getattr(order, f"{role}_transfer_id")
        if already:
            return already
        if not order.captured_charge_id:
            raise ValidationError("Payment has not been captured for this order")

        account_id = self._payee_account(order, role)
        if destination_account_id and destination_account_id != account_id:
            raise ValidationError(f"{destination_account_id} is not the {role}'s payout account")
        if amount_cents <= 0 or amount_cents > limit_cents:
            raise ValidationError(
                f"{role.capitalize()} transfer must be between 1 and {limit_cents} cents"
            )

        key = transfer_key(order.id, role, account_id)
        try:
            transfer = self._processor.create_transfer(
                amount_cents=amount_cents,
                currency=order.currency,
                destination_account_id=account_id,
                source_charge_id=order.captured_charge_id,
                transfer_group=order.id,
                idempotency_key=key,
            )
        except PaymentProcessorError as e:
            pending = self._enqueue(order, role, account_id, amount_cents, key, e)
            logger.error(
                "settlement.partial_failure",
                order_id=order.id,
                role=role,
                amount_cents=amount_cents,
                pending_transfer_id=pending.id,
                error=str(e),
            )
            raise PartialSettlementFailure(
                order_id=order.id, role=role, pending_transfer_id=pending.id, cause=e
            ) from e

        self._record_transfer(order, role, transfer.id, transfer.amount_cents, account_id)
        self._close_pending(key, transfer.id)
        self._db.commit()
        return transfer.id

    def _payee_account(self, order: Order, role: str) -> str:
        if role == ROLE_VENDOR:
            payee = self._db.get(Vendor, order.vendor_id)
        else:
            if not order.driver_id:
                raise ValidationError("Order has no assigned driver")
            payee = self._db.get(Driver, order.driver_id)

        if payee is None:
            raise NotFoundError(f"{role.capitalize()} not found")
        if not payee.payout_account_id:
            raise ValidationError(f"{role.capitalize()} has no connected payout account")
        if payee.payout_account_status == "onboarding":
            raise ValidationError(
                f"{role.capitalize()} payout account has not finished onboarding"
            )
        return payee.payout_account_id

    def _enqueue(
        self,
        order: Order,
        role: str,
        account_id: str,
        amount_cents: int,
        key: str,
        error: Exception,
    ) -> PendingTransfer:
        now = datetime.utcnow()
        pending = self._db.query(PendingTransfer).filter_by(idempotency_key=key).first()
        if pending is None:
            pending = PendingTransfer(
                id=uuid4().hex,
                order_id=order.id,
                role=role,
                destination_account_id=account_id,
                amount_cents=amount_cents,
                idempotency_key=key,
                status="pending",
                attempts=1,
                created_at=now,
            )
            self._db.add(pending)
        else:
            pending.attempts += 1
        pending.last_error = str(error)
        pending.updated_at = now

        log_event(
            self._db,
            actor_id=None,
            entity_type=EntityTypeV1.TRANSFER,
            entity_id=pending.id,
            event_type=EventTypeV1.TRANSFER_FAILED,
            event_payload={"order_id": order.id, "role": role, "error": str(error)},
        )
        self._db.commit()
        return pending

    def _record_transfer(
        self,
        order: Order,
        role: str,
        transfer_id: str,
        amount_cents: int,
        account_id: str,
    ) -> None:
        setattr(order, f"{role}_transfer_id", transfer_id)
        order.updated_at = datetime.utcnow()
        log_event(
            self._db,
            actor_id=None,
            entity_type=EntityTypeV1.TRANSFER,
            entity_id=transfer_id,
            event_type=EventTypeV1.TRANSFER_CREATED,
            event_payload={
                "order_id": order.id,
                "role": role,
                "amount_cents": amount_cents,
                "destination_account_id": account_id,
            },
        )
        logger.info(
            "settlement.transferred",
            order_id=order.id,
            role=role,
            transfer_id=transfer_id,
            amount_cents=amount_cents,
        )

    # -- reconcile -----------------------------------------------------------

    def retry_pending_transfers(self) -> ReconcileResult:
        """Re-send queued transfers with their original idempotency keys."""
        sent: list[str] = []
        failed: list[str] = []

        pending_rows = (
            self._db.query(PendingTransfer)
            .filter(PendingTransfer.status == "pending")
            .order_by(PendingTransfer.created_at)
            .all()
        )
        for pending in pending_rows:
            order = get_order(self._db, pending.order_id)
            paid = getattr(order, f"{pending.role}_transfer_id")
            if paid:
                # Paid directly after the failure was queued.
                self._mark_sent(pending, paid)
                logger.info(
                    "settlement.pending_already_paid",
                    pending_transfer_id=pending.id,
                    order_id=order.id,
                    transfer_id=paid,
                )
                continue

            try:
                transfer = self._processor.create_transfer(
                    amount_cents=pending.amount_cents,
                    currency=order.currency,
                    destination_account_id=pending.destination_account_id,
                    source_charge_id=order.captured_charge_id,
                    transfer_group=order.id,
                    idempotency_key=pending.idempotency_key,
                )
            except PaymentProcessorError as e:
                pending.attempts += 1
                pending.last_error = str(e)
                pending.updated_at = datetime.utcnow()
                failed.append(pending.id)
                logger.warning(
                    "settlement.retry_failed",
                    pending_transfer_id=pending.id,
                    order_id=order.id,
                    attempts=pending.attempts,
                    error=str(e),
                )
                continue

            self._mark_sent(pending, transfer.id)
            self._record_transfer(
                order,
                pending.role,
                transfer.id,
                transfer.amount_cents,
                pending.destination_account_id,
            )
            sent.append(pending.id)

        self._db.commit()
        if pending_rows:
            logger.info("settlement.reconciled", sent=len(sent), failed=len(failed))
        return ReconcileResult(sent=sent, failed=failed)

    # -- release -------------------------------------------------------------

    def release(
        self,
        order_id: str,
        *,
        actor: Actor,
        actor_id: str | None,
        reason: str | None = None,
    ) -> Order:
        """Cancel the uncaptured hold, then cancel the order.

        If the processor call fails the order stays ``pending_payment``.
        """
        order = get_order(self._db, order_id)

        hold: Hold | None = None
        if order.payment_intent_id:
            hold = self._retrieve(order.payment_intent_id)
            if hold.status != HOLD_CANCELED and hold.status not in RELEASABLE_HOLD_STATUSES:
                raise ValidationError(f"Cannot cancel payment in status: {hold.status}")

        self._lifecycle.check_cancel(order, actor=actor, actor_id=actor_id)
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise ValidationError(
                f"A payment hold can only be released before capture, not in {order.status}"
            )

        if hold is not None and hold.status != HOLD_CANCELED:
            try:
                hold = self._processor.cancel_hold(hold.id)
            except HoldStateError as e:
                raise ValidationError(str(e)) from e
            except PaymentProcessorError as e:
                logger.error(
                    "settlement.release_failed",
                    order_id=order.id,
                    hold_id=hold.id,
                    error=str(e),
                )
                log_event(
                    self._db,
                    actor_id=actor_id,
                    entity_type=EntityTypeV1.HOLD,
                    entity_id=hold.id,
                    event_type=EventTypeV1.HOLD_RELEASE_FAILED,
                    event_payload={"order_id": order.id, "error": str(e)},
                )
                self._db.commit()
                raise ExternalServiceError(str(e)) from e

            order.payment_status = hold.status
            log_event(
                self._db,
                actor_id=actor_id,
                entity_type=EntityTypeV1.HOLD,
                entity_id=hold.id,
                event_type=EventTypeV1.HOLD_RELEASED,
                event_payload={"order_id": order.id},
            )
            self._db.commit()
            logger.info("settlement.hold_released", order_id=order.id, hold_id=hold.id)

        return self._lifecycle.cancel(order.id, actor=actor, actor_id=actor_id, reason=reason)

    def release_by_hold(self, payment_intent_id: str) -> Order:
        order = get_order_by_hold(self._db, payment_intent_id)
        return self.release(
            order.id,
            actor=Actor.SETTLEMENT,
            actor_id=None,
            reason="Payment authorization cancelled",
        )

    # -- payout accounts -----------------------------------------------------

    def connect_account(
        self,
        *,
        entity_id: str | None,
        entity_type: str | None,
        user_id: str | None,
        email: str | None = None,
    ) -> tuple[str, str]:
        """Start (or resume) payout onboarding for a vendor or driver.

        Returns the account id and the hosted onboarding URL. An account that
        was never disconnected is reused so a payee who abandons the form can
        come back to it.
        """
        payee = self._owned_payee(entity_id, entity_type, user_id, verb="connect")
        if payee.payout_account_status == "active":
            raise ValidationError("Payout account is already connected")

        account_id = payee.payout_account_id
        created = account_id is None
        try:
            if created:
                account_id = self._processor.create_account(
                    email=email, entity_id=payee.id, entity_type=entity_type
                ).id
                payee.payout_account_id = account_id
                payee.payout_account_status = "onboarding"
                payee.payout_disconnected_at = None
                log_event(
                    self._db,
                    actor_id=user_id,
                    entity_type=EntityTypeV1.PAYOUT_ACCOUNT,
                    entity_id=payee.id,
                    event_type=EventTypeV1.ACCOUNT_CONNECTED,
                    event_payload={"entity_type": entity_type, "account_id": account_id},
                )
                self._db.commit()
            url = self._processor.create_account_link(
                account_id,
                refresh_url=f"{self._config.app_url}/onboard/refresh",
                return_url=f"{self._config.app_url}/onboard/return?"
                + urlencode({"accountId": account_id, "entityType": entity_type}),
            )
        except PaymentProcessorError as e:
            logger.error(
                "settlement.onboarding_failed",
                entity_type=entity_type,
                entity_id=payee.id,
                error=str(e),
            )
            raise ExternalServiceError(str(e)) from e

        logger.info(
            "settlement.onboarding_started",
            entity_type=entity_type,
            entity_id=payee.id,
            account_id=account_id,
            created=created,
        )
        return account_id, url

    def complete_onboarding(self, *, account_id: str | None, entity_type: str | None) -> bool:
        """Sync a payee's account status after they return from onboarding."""
        if not account_id or not entity_type:
            raise ValidationError("Missing required fields")
        model = PAYEE_MODELS.get(entity_type)
        if model is None:
            raise ValidationError("Invalid entity type")

        try:
            account = self._processor.retrieve_account(account_id)
        except AccountNotFoundError as e:
            raise NotFoundError(str(e)) from e
        except PaymentProcessorError as e:
            raise ExternalServiceError(str(e)) from e

        if not account.entity_id:
            raise ValidationError("Payout account is missing its owner metadata")
        if account.entity_type and PAYEE_MODELS.get(account.entity_type) is not model:
            raise ValidationError("Payout account belongs to a different entity type")
        payee = self._db.get(model, account.entity_id)
        if payee is None:
            raise NotFoundError("Entity not found")
        if payee.payout_account_id != account.id:
            raise ValidationError("Payout account does not belong to this entity")

        complete = account.onboarding_complete
        status = "active" if complete else "onboarding"
        if payee.payout_account_status != status:
            payee.payout_account_status = status
            if complete:
                log_event(
                    self._db,
                    actor_id=payee.id,
                    entity_type=EntityTypeV1.PAYOUT_ACCOUNT,
                    entity_id=payee.id,
                    event_type=EventTypeV1.ACCOUNT_ONBOARDED,
                    event_payload={"entity_type": entity_type, "account_id": account.id},
                )
            self._db.commit()
        logger.info(
            "settlement.onboarding_checked",
            entity_type=entity_type,
            entity_id=payee.id,
            complete=complete,
        )
        return complete

    def disconnect_account(
        self,
        *,
        entity_id: str | None,
        entity_type: str | None,
        user_id: str | None,
    ) -> None:
        """Detach a vendor's or driver's payout account.

        Revoking capabilities at the processor is best effort; the local record
        is cleared either way. Holds and transfers already made are untouched.
        """
        payee = self._owned_payee(entity_id, entity_type, user_id, verb="disconnect")
        if not payee.payout_account_id:
            raise ValidationError("No payout account connected")

        account_id = payee.payout_account_id
        try:
            self._processor.disable_account(account_id)
        except PaymentProcessorError as e:
            logger.warning(
                "settlement.account_deactivation_failed",
                entity_type=entity_type,
                entity_id=entity_id,
                account_id=account_id,
                error=str(e),
            )

        payee.payout_account_id = None
        payee.payout_account_status = "disconnected"
        payee.payout_disconnected_at = datetime.utcnow()
        log_event(
            self._db,
            actor_id=user_id,
            entity_type=EntityTypeV1.PAYOUT_ACCOUNT,
            entity_id=entity_id,
            event_type=EventTypeV1.ACCOUNT_DISCONNECTED,
            event_payload={"entity_type": entity_type, "account_id": account_id},
        )
        self._db.commit()
        logger.info(
            "settlement.account_disconnected",
            entity_type=entity_type,
            entity_id=entity_id,
        )

    # -- internals -----------------------------------------------------------

    def _owned_payee(
        self,
        entity_id: str | None,
        entity_type: str | None,
        user_id: str | None,
        *,
        verb: str,
    ) -> Vendor | Driver:
        if not entity_id or not entity_type or not user_id:
            raise ValidationError("Missing required fields")
        if user_id != entity_id:
            raise AuthorizationError(f"You can only {verb} your own payout account")

        model = PAYEE_MODELS.get(entity_type)
        if model is None:
            raise ValidationError("Invalid entity type")

        payee = self._db.get(model, entity_id)
        if payee is None:
            raise NotFoundError("Entity not found")
        return payee

    def _close_pending(self, key: str, transfer_id: str) -> None:
        pending = self._db.query(PendingTransfer).filter_by(idempotency_key=key).first()
        if pending is not None and pending.status == "pending":
            self._mark_sent(pending, transfer_id)

    def _mark_sent(self, pending: PendingTransfer, transfer_id: str) -> None:
        pending.status = "sent"
        pending.transfer_id = transfer_id
        pending.last_error = None
        pending.updated_at = datetime.utcnow()

    def _retrieve(self, hold_id: str) -> Hold:
        try:
            return self._processor.retrieve_hold(hold_id)
        except HoldNotFoundError as e:
            raise NotFoundError(str(e)) from e
        except PaymentProcessorError as e:
            raise ExternalServiceError(str(e)) from e
