from __future__ import annotations

import os
from typing import Any

import stripe

from services.api.app.services.payments_base import (
    AccountNotFoundError,
    Hold,
    HoldNotFoundError,
    PaymentProcessorError,
    PayoutAccount,
    Transfer,
)


class StripePaymentProcessor:
    """Payment processor backed by Stripe Connect.

    Holds are manual-capture PaymentIntents grouped by ``transfer_group``; payee
    shares are Transfers sourced from the captured charge.

    Env vars:
    - MARKETLANE_PAYMENTS_ADAPTER=stripe
    - STRIPE_SECRET_KEY (required)
    """

    provider = "STRIPE"

    def __init__(self, *, api_key: str) -> None:
        self._api_key = api_key

    @classmethod
    def from_env(cls) -> "StripePaymentProcessor":
        api_key = os.getenv("STRIPE_SECRET_KEY", "").strip()
        if not api_key:
            raise ValueError("STRIPE_SECRET_KEY is required when MARKETLANE_PAYMENTS_ADAPTER=stripe")
        return cls(api_key=api_key)

    def create_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        order_id: str,
        customer_email: str | None,
        idempotency_key: str,
    ) -> Hold:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "description": f"Order {order_id}",
            "metadata": {"orderId": order_id},
            "transfer_group": order_id,
        }
        if customer_email:
            params["receipt_email"] = customer_email

        try:
            pi = stripe.PaymentIntent.create(
                api_key=self._api_key, idempotency_key=idempotency_key, **params
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to create payment hold: {_message(e)}") from e
        return _to_hold(pi)

    def retrieve_hold(self, hold_id: str) -> Hold:
        try:
            pi = stripe.PaymentIntent.retrieve(hold_id, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise HoldNotFoundError(hold_id) from e
            raise PaymentProcessorError(_message(e)) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(_message(e)) from e
        return _to_hold(pi)

    def capture_hold(self, hold_id: str) -> Hold:
        try:
            pi = stripe.PaymentIntent.capture(
                hold_id, api_key=self._api_key, idempotency_key=f"capture:{hold_id}"
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to capture payment: {_message(e)}") from e
        return _to_hold(pi)

    def cancel_hold(self, hold_id: str) -> Hold:
        try:
            pi = stripe.PaymentIntent.cancel(hold_id, api_key=self._api_key)
        except stripe.StripeError as e:
            raise PaymentProcessorError(
                f"Failed to cancel payment authorization: {_message(e)}"
            ) from e
        return _to_hold(pi)

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
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination_account_id,
            "source_transaction": source_charge_id,
        }
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            tr = stripe.Transfer.create(
                api_key=self._api_key, idempotency_key=idempotency_key, **params
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to create transfer: {_message(e)}") from e

        return Transfer(
            id=tr["id"],
            destination_account_id=destination_account_id,
            amount_cents=int(tr["amount"]),
            currency=tr["currency"],
            source_charge_id=source_charge_id,
            transfer_group=tr.get("transfer_group"),
        )

    def disable_account(self, account_id: str) -> None:
        try:
            stripe.Account.modify(
                account_id,
                api_key=self._api_key,
                capabilities={
                    "card_payments": {"requested": False},
                    "transfers": {"requested": False},
                },
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to deactivate account: {_message(e)}") from e

    def create_account(
        self,
        *,
        email: str | None,
        entity_id: str,
        entity_type: str,
    ) -> PayoutAccount:
        params: dict[str, Any] = {
            "type": "express",
            "country": "US",
            "capabilities": {
                "card_payments": {"requested": True},
                "transfers": {"requested": True},
            },
            "metadata": {"entityId": entity_id, "entityType": entity_type},
        }
        if email:
            params["email"] = email

        try:
            account = stripe.Account.create(api_key=self._api_key, **params)
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to create payout account: {_message(e)}") from e
        return _to_payout_account(account)

    def create_account_link(self, account_id: str, *, refresh_url: str, return_url: str) -> str:
        try:
            link = stripe.AccountLink.create(
                api_key=self._api_key,
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Failed to create onboarding link: {_message(e)}") from e
        return link["url"]

    def retrieve_account(self, account_id: str) -> PayoutAccount:
        try:
            account = stripe.Account.retrieve(account_id, api_key=self._api_key)
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise AccountNotFoundError(account_id) from e
            raise PaymentProcessorError(_message(e)) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(_message(e)) from e
        return _to_payout_account(account)


def _to_hold(pi: Any) -> Hold:
    charge = pi.get("latest_charge")
    if charge is not None and not isinstance(charge, str):
        charge = charge["id"]
    return Hold(
        id=pi["id"],
        amount_cents=int(pi["amount"]),
        currency=pi["currency"],
        transfer_group=pi.get("transfer_group"),
        status=pi["status"],
        client_secret=pi.get("client_secret"),
        captured_charge_id=charge if pi["status"] == "succeeded" else None,
    )


def _message(e: stripe.StripeError) -> str:
    return getattr(e, "user_message", None) or str(e)


def _to_payout_account(account: Any) -> PayoutAccount:
    metadata = account.get("metadata") or {}
    capabilities = account.get("capabilities") or {}
    return PayoutAccount(
        id=account["id"],
        entity_id=metadata.get("entityId"),
        entity_type=metadata.get("entityType"),
        details_submitted=bool(account.get("details_submitted")),
        card_payments_active=capabilities.get("card_payments") == "active",
        transfers_active=capabilities.get("transfers") == "active",
    )
