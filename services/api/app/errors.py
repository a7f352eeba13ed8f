"""Error taxonomy shared by the commerce core and the HTTP routers."""

from __future__ import annotations


class MarketlaneError(Exception):
    """Base class for domain errors raised by the commerce core."""

    status_code = 500


class ValidationError(MarketlaneError):
    """Missing or malformed input, or an operation that is invalid in the current state."""

    status_code = 400


class AuthorizationError(MarketlaneError):
    status_code = 403


class NotFoundError(MarketlaneError):
    status_code = 404


class ConcurrencyConflict(MarketlaneError):
    """Another writer changed the order first (for example a competing driver claim)."""

    status_code = 409


class InvalidTransitionError(MarketlaneError):
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class ExternalServiceError(MarketlaneError):
    """A routing or payment-processor call failed or timed out.

    Payment calls are not retried server-side; the caller decides whether to retry.
    """

    status_code = 502


class PartialSettlementFailure(MarketlaneError):
    """Capture succeeded but a payee transfer did not.

    Funds are already with the platform. The failed transfer is queued for
    reconciliation rather than rolled back.
    """

    status_code = 502

    def __init__(
        self,
        *,
        order_id: str,
        role: str,
        pending_transfer_id: str,
        cause: Exception,
    ) -> None:
        super().__init__(
            f"Payment captured for order {order_id} but the {role} transfer failed: {cause}. "
            f"Queued for retry as {pending_transfer_id}."
        )
        self.order_id = order_id
        self.role = role
        self.pending_transfer_id = pending_transfer_id
        self.cause = cause
