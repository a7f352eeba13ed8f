"""Shared event schema (v1).

The backend stores an append-only event log for every order state change and
money movement. Clients consume these events to render an order timeline.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EntityTypeV1(str, Enum):
    ORDER = "Order"
    HOLD = "Hold"
    TRANSFER = "Transfer"
    DRIVER_TRANSACTION = "DriverTransaction"
    PAYOUT_ACCOUNT = "PayoutAccount"


class EventTypeV1(str, Enum):
    ORDER_CREATED = "ORDER_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    DRIVER_CLAIMED = "DRIVER_CLAIMED"
    HOLD_CREATED = "HOLD_CREATED"
    HOLD_CAPTURED = "HOLD_CAPTURED"
    HOLD_CAPTURE_FAILED = "HOLD_CAPTURE_FAILED"
    HOLD_RELEASED = "HOLD_RELEASED"
    HOLD_RELEASE_FAILED = "HOLD_RELEASE_FAILED"
    TRANSFER_CREATED = "TRANSFER_CREATED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    ACCOUNT_CONNECTED = "ACCOUNT_CONNECTED"
    ACCOUNT_ONBOARDED = "ACCOUNT_ONBOARDED"
    ACCOUNT_DISCONNECTED = "ACCOUNT_DISCONNECTED"


class EventV1(BaseModel):
    id: str
    actor_id: str | None = None

    entity_type: EntityTypeV1
    entity_id: str

    event_type: EventTypeV1
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str
