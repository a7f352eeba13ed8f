"""Request/response models for the payment endpoints.

Field names are camelCase on the wire; the web and mobile clients already
speak this shape.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class CreateHoldRequest(BaseModel):
    amount: int = Field(..., ge=1, description="Order total in cents")
    currency: str = "usd"
    orderId: str = Field(..., min_length=1)
    customerEmail: str | None = None


class CreateHoldResponse(BaseModel):
    clientSecret: str | None
    paymentIntentId: str


class CaptureAndTransferVendorRequest(BaseModel):
    paymentIntentId: str = Field(..., min_length=1)
    vendorAccountId: str = Field(..., min_length=1)
    vendorAmount: int = Field(..., ge=1)


class TransferDriverRequest(BaseModel):
    paymentIntentId: str = Field(..., min_length=1)
    driverAccountId: str = Field(..., min_length=1)
    driverAmount: int = Field(..., ge=1)


class TransferResponse(BaseModel):
    success: bool
    transferId: str


class CancelHoldRequest(BaseModel):
    paymentIntentId: str = Field(..., min_length=1)


class DisconnectAccountRequest(BaseModel):
    # Optional here so a missing field gets the same message as an empty one.
    entityId: str | None = None
    entityType: str | None = None
    userId: str | None = None


class SuccessMessageResponse(BaseModel):
    success: bool
    message: str


class ReconcileResponse(BaseModel):
    sent: list[str]
    failed: list[str]


class OnboardAccountRequest(BaseModel):
    entityId: str | None = None
    entityType: str | None = None
    userId: str | None = None
    email: str | None = None


class OnboardAccountResponse(BaseModel):
    url: str
    accountId: str


class OnboardReturnRequest(BaseModel):
    accountId: str | None = None
    entityType: str | None = None


class OnboardReturnResponse(BaseModel):
    success: bool
    isComplete: bool
    accountId: str
