from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

TAX_RATE = Decimal("0.07")
SERVICE_FEE_RATE = Decimal("0.05")


def round_half_up(value: Decimal | float | int) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True, slots=True)
class OrderAmounts:
    subtotal_cents: int
    tax_cents: int
    service_fee_cents: int
    delivery_fee_cents: int
    tip_cents: int
    total_cents: int

    @property
    def driver_share_cents(self) -> int:
        return self.delivery_fee_cents + self.tip_cents


def compute_amounts(subtotal_cents: int, delivery_fee_cents: int, tip_cents: int) -> OrderAmounts:
    """Tax and service fee are fixed percentages of the subtotal, rounded half-up to the cent."""
    if min(subtotal_cents, delivery_fee_cents, tip_cents) < 0:
        raise ValueError("Order amounts cannot be negative")

    tax = round_half_up(Decimal(subtotal_cents) * TAX_RATE)
    service_fee = round_half_up(Decimal(subtotal_cents) * SERVICE_FEE_RATE)
    return OrderAmounts(
        subtotal_cents=subtotal_cents,
        tax_cents=tax,
        service_fee_cents=service_fee,
        delivery_fee_cents=delivery_fee_cents,
        tip_cents=tip_cents,
        total_cents=subtotal_cents + tax + service_fee + delivery_fee_cents + tip_cents,
    )


def vendor_share_cents(subtotal_cents: int, commission_bps: int) -> int:
    """Vendor payout: the subtotal less the platform commission (basis points)."""
    commission = round_half_up(Decimal(subtotal_cents) * Decimal(commission_bps) / Decimal(10_000))
    return max(subtotal_cents - commission, 0)
