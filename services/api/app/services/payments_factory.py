from __future__ import annotations

import os

from services.api.app.services.payments_base import PaymentProcessor
from services.api.app.services.payments_mock import MockPaymentProcessor


def get_payment_processor() -> PaymentProcessor:
    """Select a payment processor based on env vars.

    Defaults to the in-memory mock so tests and local dev never move real money.
    """

    mode = os.getenv("MARKETLANE_PAYMENTS_ADAPTER", "mock").strip().lower()

    if mode == "mock":
        return MockPaymentProcessor()

    if mode == "stripe":
        from services.api.app.services.payments_stripe import StripePaymentProcessor

        return StripePaymentProcessor.from_env()

    raise ValueError(f"Unknown MARKETLANE_PAYMENTS_ADAPTER={mode!r}. Expected mock or stripe.")
