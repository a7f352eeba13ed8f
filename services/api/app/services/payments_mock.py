from __future__ import annotations

from dataclasses import replace
from uuid import uuid4

from services.api.app.services.payments_base import (
    HOLD_CANCELED,
    HOLD_REQUIRES_CAPTURE,
    HOLD_SUCCEEDED,
    RELEASABLE_HOLD_STATUSES,
    AccountNotFoundError,
    Hold,
    HoldNotFoundError,
    HoldStateError,
    PaymentProcessorError,
    PayoutAccount,
    Transfer,
)


class MockLedger:
    """Process-local processor state shared by every MockPaymentProcessor."""

    def __init__(self) -> None:
        self.holds: dict[str, Hold] = {}
        self.charge_amounts: dict[str, int] = {}
        self.transfers: dict[str, Transfer] = {}
        self.transfers_by_key: dict[str, str] = {}
        self.holds_by_key: dict[str, str] = {}
        self.disabled_accounts: set[str] = set()
        self.accounts: dict[str, PayoutAccount] = {}
        self._failures: dict[str, Exception] = {}

    def inject_failure(self, operation: str, error: Exception) -> None:
        """Make the next call to ``operation`` raise ``error`` (one shot)."""
        self._failures[operation] = error

    def maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def complete_onboarding(self, account_id: str) -> None:
        """Stand-in for the payee finishing the hosted onboarding form."""
        self.accounts[account_id] = replace(
            self.accounts[account_id],
            details_submitted=True,
            card_payments_active=True,
            transfers_active=True,
        )

    def transferred_from(self, charge_id: str) -> int:
        return sum(
            t.amount_cents for t in self.transfers.values() if t.source_charge_id == charge_id
        )


ledger = MockLedger()


class MockPaymentProcessor:
    """Deterministic in-memory processor.

    Holds are created already confirmed (``requires_capture``), which stands in
    for the customer completing card entry on the client.
    """

    provider = "MOCK_PAYMENTS"

    def __init__(self, state: MockLedger | None = None) -> None:
        self._ledger = state if state is not None else ledger

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_email: str | None,
        idempotency_key: str,
    ) -> Hold:
        del customer_email
        self._ledger.maybe_fail("create_hold")

        existing = self._ledger.holds_by_key.get(idempotency_key)
        if existing is not None:
            return self._ledger.holds[existing]

        hold_id = f"pi_{uuid4().hex[:16]}"
        hold = Hold(
            id=hold_id,
            amount_cents=amount_cents,
            currency=currency,
            transfer_group=order_id,
            status=HOLD_REQUIRES_CAPTURE,
            client_secret=f"{hold_id}_secret_{uuid4().hex[:8]}",
        )
        self._ledger.holds[hold_id] = hold
        self._ledger.holds_by_key[idempotency_key] = hold_id
        return hold

    def retrieve_hold(self, hold_id: str) -> Hold:
        self._ledger.maybe_fail("retrieve_hold")
        hold = self._ledger.holds.get(hold_id)
        if hold is None:
            raise HoldNotFoundError(hold_id)
        return hold

    def capture_hold(self, hold_id: str) -> Hold:
        hold = self.retrieve_hold(hold_id)
        self._ledger.maybe_fail("capture_hold")

        if hold.status == HOLD_SUCCEEDED:
            return hold
        if hold.status != HOLD_REQUIRES_CAPTURE:
            raise HoldStateError(hold_id, hold.status, "capture")

        charge_id = f"ch_{uuid4().hex[:16]}"
        captured = replace(hold, status=HOLD_SUCCEEDED, captured_charge_id=charge_id)
        self._ledger.holds[hold_id] = captured
        self._ledger.charge_amounts[charge_id] = hold.amount_cents
        return captured

    def cancel_hold(self, hold_id: str) -> Hold:
        hold = self.retrieve_hold(hold_id)
        self._ledger.maybe_fail("cancel_hold")

        if hold.status == HOLD_CANCELED:
            return hold
        if hold.status not in RELEASABLE_HOLD_STATUSES:
            raise HoldStateError(hold_id, hold.status, "cancel")

        canceled = replace(hold, status=HOLD_CANCELED)
        self._ledger.holds[hold_id] = canceled
        return canceled

    def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination_account_id: str,
        source_charge_id: str,
        transfer_group: str | None,
        idempotency_key: str,
    ) -> Transfer:
        self._ledger.maybe_fail("create_transfer")

        existing = self._ledger.transfers_by_key.get(idempotency_key)
        if existing is not None:
            return self._ledger.transfers[existing]

        if destination_account_id in self._ledger.disabled_accounts:
            raise PaymentProcessorError(
                f"Destination account {destination_account_id} cannot receive transfers"
            )

        available = self._ledger.charge_amounts.get(source_charge_id)
        if available is None:
            raise PaymentProcessorError(f"Unknown source charge: {source_charge_id}")
        if self._ledger.transferred_from(source_charge_id) + amount_cents > available:
            raise PaymentProcessorError("Transfer amount exceeds the captured charge balance")

        transfer = Transfer(
            id=f"tr_{uuid4().hex[:16]}",
            destination_account_id=destination_account_id,
            amount_cents=amount_cents,
            currency=currency,
            source_charge_id=source_charge_id,
            transfer_group=transfer_group,
        )
        self._ledger.transfers[transfer.id] = transfer
        self._ledger.transfers_by_key[idempotency_key] = transfer.id
        return transfer

    def disable_account(self, account_id: str) -> None:
        self._ledger.maybe_fail("disable_account")
        self._ledger.disabled_accounts.add(account_id)

    def create_account(
        self,
        *,
        email: str | None,
        entity_id: str,
        entity_type: str,
    ) -> PayoutAccount:
        del email
        self._ledger.maybe_fail("create_account")

        account = PayoutAccount(
            id=f"acct_{uuid4().hex[:16]}",
            entity_id=entity_id,
            entity_type=entity_type,
        )
        self._ledger.accounts[account.id] = account
        return account

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        del refresh_url
        self._ledger.maybe_fail("create_account_link")
        if account_id not in self._ledger.accounts:
            raise AccountNotFoundError(account_id)
        return f"https://connect.mock.test/setup/{account_id}?return={return_url}"

    def retrieve_account(self, account_id: str) -> PayoutAccount:
        self._ledger.maybe_fail("retrieve_account")
        account = self._ledger.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account
