from __future__ import annotations

from fastapi import APIRouter, Depends
from services.api.app.db.deps import get_db
from services.api.app.log import bind_order_context
from services.api.app.models.payments import (
    CancelHoldRequest,
    CaptureAndTransferVendorRequest,
    CreateHoldRequest,
    CreateHoldResponse,
    DisconnectAccountRequest,
    OnboardAccountRequest,
    OnboardAccountResponse,
    OnboardReturnRequest,
    OnboardReturnResponse,
    ReconcileResponse,
    SuccessMessageResponse,
    TransferDriverRequest,
    TransferResponse,
)
from services.api.app.routers.http_errors import raise_http_error
from services.api.app.services.orders import get_order_by_hold
from services.api.app.services.payments_factory import get_payment_processor
from services.api.app.services.settlement import SettlementCoordinator
from sqlalchemy.orm import Session

router = APIRouter()


def _coordinator(db: Session) -> SettlementCoordinator:
    return SettlementCoordinator(db, get_payment_processor())


@router.post("/create-hold", response_model=CreateHoldResponse)
def create_hold(payload: CreateHoldRequest, db: Session = Depends(get_db)) -> CreateHoldResponse:
    bind_order_context(payload.orderId)
    try:
        hold = _coordinator(db).authorize(
            payload.orderId,
            amount_cents=payload.amount,
            currency=payload.currency,
            customer_email=payload.customerEmail,
        )
    except Exception as e:
        raise_http_error(e)

    return CreateHoldResponse(clientSecret=hold.client_secret, paymentIntentId=hold.id)


@router.post("/capture-and-transfer-vendor", response_model=TransferResponse)
def capture_and_transfer_vendor(
    payload: CaptureAndTransferVendorRequest,
    db: Session = Depends(get_db),
) -> TransferResponse:
    try:
        order = get_order_by_hold(db, payload.paymentIntentId)
        bind_order_context(order.id)
        _charge_id, transfer_id = _coordinator(db).capture_and_transfer_vendor(
            order.id,
            destination_account_id=payload.vendorAccountId,
            amount_cents=payload.vendorAmount,
        )
    except Exception as e:
        raise_http_error(e)

    return TransferResponse(success=True, transferId=transfer_id)


@router.post("/transfer-driver", response_model=TransferResponse)
def transfer_driver(payload: TransferDriverRequest, db: Session = Depends(get_db)) -> TransferResponse:
    try:
        order = get_order_by_hold(db, payload.paymentIntentId)
        bind_order_context(order.id)
        transfer_id = _coordinator(db).transfer_driver(
            order.id,
            destination_account_id=payload.driverAccountId,
            amount_cents=payload.driverAmount,
        )
    except Exception as e:
        raise_http_error(e)

    return TransferResponse(success=True, transferId=transfer_id)


@router.post("/cancel-hold", response_model=SuccessMessageResponse)
def cancel_hold(payload: CancelHoldRequest, db: Session = Depends(get_db)) -> SuccessMessageResponse:
    try:
        _coordinator(db).release_by_hold(payload.paymentIntentId)
    except Exception as e:
        raise_http_error(e)

    return SuccessMessageResponse(success=True, message="Payment authorization cancelled successfully")


@router.post("/onboard-express-account", response_model=OnboardAccountResponse)
def onboard_express_account(
    payload: OnboardAccountRequest,
    db: Session = Depends(get_db),
) -> OnboardAccountResponse:
    try:
        account_id, url = _coordinator(db).connect_account(
            entity_id=payload.entityId,
            entity_type=payload.entityType,
            user_id=payload.userId,
            email=payload.email,
        )
    except Exception as e:
        raise_http_error(e)

    return OnboardAccountResponse(url=url, accountId=account_id)


@router.post("/onboard-return", response_model=OnboardReturnResponse)
def onboard_return(payload: OnboardReturnRequest, db: Session = Depends(get_db)) -> OnboardReturnResponse:
    try:
        complete = _coordinator(db).complete_onboarding(
            account_id=payload.accountId,
            entity_type=payload.entityType,
        )
    except Exception as e:
        raise_http_error(e)

    return OnboardReturnResponse(success=True, isComplete=complete, accountId=payload.accountId)


@router.post("/disconnect-account", response_model=SuccessMessageResponse)
def disconnect_account(
    payload: DisconnectAccountRequest,
    db: Session = Depends(get_db),
) -> SuccessMessageResponse:
    try:
        _coordinator(db).disconnect_account(
            entity_id=payload.entityId,
            entity_type=payload.entityType,
            user_id=payload.userId,
        )
    except Exception as e:
        raise_http_error(e)

    return SuccessMessageResponse(success=True, message="Payout account disconnected successfully")


@router.post("/v1/settlement/reconcile", response_model=ReconcileResponse)
def reconcile(db: Session = Depends(get_db)) -> ReconcileResponse:
    try:
        result = _coordinator(db).retry_pending_transfers()
    except Exception as e:
        raise_http_error(e)

    return ReconcileResponse(sent=result.sent, failed=result.failed)
