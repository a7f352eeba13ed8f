from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

# Hold statuses follow the processor's payment-intent vocabulary.
HOLD_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
HOLD_REQUIRES_CONFIRMATION = "requires_confirmation"
HOLD_REQUIRES_CAPTURE = "requires_capture"
HOLD_SUCCEEDED = "succeeded"
HOLD_CANCELED = "canceled"

RELEASABLE_HOLD_STATUSES = frozenset(
    {HOLD_REQUIRES_PAYMENT_METHOD, HOLD_REQUIRES_CONFIRMATION, HOLD_REQUIRES_CAPTURE}
)


class PaymentProcessorError(Exception):
    """Base class for payment processor adapter errors."""


class HoldNotFoundError(PaymentProcessorError):
    def __init__(self, hold_id: str) -> None:
        super().__init__(f"Payment hold not found: {hold_id}")
        self.hold_id = hold_id


class HoldStateError(PaymentProcessorError):
    def __init__(self, hold_id: str, status: str, action: str) -> None:
        super().__init__(f"Cannot {action} payment in status: {status}")
        self.hold_id = hold_id
        self.status = status
        self.action = action


class AccountNotFoundError(PaymentProcessorError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Payout account not found: {account_id}")
        self.account_id = account_id


@dataclass(frozen=True, slots=True)
class Hold:
    id: str
    amount_cents: int
    currency: str
    transfer_group: str | None
    status: str
    client_secret: str | None = None
    captured_charge_id: str | None = None

    @property
    def captured(self) -> bool:
        return self.status == HOLD_SUCCEEDED


@dataclass(frozen=True, slots=True)
class Transfer:
    id: str
    destination_account_id: str
    amount_cents: int
    currency: str
    source_charge_id: str | None
    transfer_group: str | None


@dataclass(frozen=True, slots=True)
class PayoutAccount:
    """A connected account that can receive transfers once onboarding is done."""

    id: str
    entity_id: str | None
    entity_type: str | None
    details_submitted: bool = False
    card_payments_active: bool = False
    transfers_active: bool = False

    @property
    def onboarding_complete(self) -> bool:
        return self.details_submitted and self.card_payments_active and self.transfers_active


class PaymentProcessor(Protocol):
    provider: str

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_email: str | None,
        idempotency_key: str,
    ) -> Hold: ...

    def retrieve_hold(self, hold_id: str) -> Hold: ...

    def capture_hold(self, hold_id: str) -> Hold: ...

    def cancel_hold(self, hold_id: str) -> Hold: ...

    def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        source_charge_id: str,
        transfer_group: str | None,
        idempotency_key: str,
    ) -> Transfer: ...

    def create_account(
        self,
        *,
        email: str | None,
        entity_id: str,
        entity_type: str,
    ) -> PayoutAccount: ...

    def create_account_link(
        self,
        account_id: str,
        *,
        refresh_url: str,
        return_url: str,
    ) -> str: ...

    def retrieve_account(self, account_id: str) -> PayoutAccount: ...

    def disable_account(self, account_id: str) -> None: ...
