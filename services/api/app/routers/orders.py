from __future__ import annotations

from fastapi import APIRouter, Depends
from packages.shared.schemas.events import EventV1
from packages.shared.schemas.order_v1 import DeliveryRecordV1, OrderRecordV1, OrderStatusV1
from services.api.app.db.deps import get_db
from services.api.app.db.models import DriverTransaction, Order
from services.api.app.log import bind_order_context
from services.api.app.models.orders import (
    DeliveryQuoteOut,
    DeliveryQuoteRequest,
    DriverActionRequest,
    OrderActionResponse,
    OrderCancelRequest,
    OrderCreateRequest,
    OrderCreateResponse,
    VendorActionRequest,
)
from services.api.app.routers.http_errors import raise_http_error
from services.api.app.services.events import order_events
from services.api.app.services.fulfillment import FulfillmentResult, FulfillmentService
from services.api.app.services.lifecycle import Actor
from services.api.app.services.orders import (
    create_order,
    driver_transaction_to_record,
    get_order,
    order_to_record,
)
from services.api.app.services.payments_factory import get_payment_processor
from services.api.app.services.pricing import DeliveryPricingEngine, PricingConfig
from services.api.app.services.routing_base import Coordinates
from services.api.app.services.routing_factory import get_routing_adapter
from services.api.app.services.settlement import SettlementConfig, SettlementCoordinator
from sqlalchemy.orm import Session

router = APIRouter()


def _pricing_engine() -> DeliveryPricingEngine:
    return DeliveryPricingEngine(get_routing_adapter(), PricingConfig.from_env())


def _fulfillment(db: Session) -> FulfillmentService:
    return FulfillmentService(db, get_payment_processor())


def _action_response(result: FulfillmentResult) -> OrderActionResponse:
    return OrderActionResponse(order=order_to_record(result.order), warnings=result.warnings)


@router.post("/v1/delivery/quote", response_model=DeliveryQuoteOut)
def delivery_quote(payload: DeliveryQuoteRequest) -> DeliveryQuoteOut:
    try:
        engine = _pricing_engine()
    except Exception as e:
        raise_http_error(e)

    quote = engine.quote(
        Coordinates(payload.customer.lat, payload.customer.lon),
        Coordinates(payload.vendor.lat, payload.vendor.lon),
    )
    return DeliveryQuoteOut(**quote.as_dict())


@router.post("/v1/orders", response_model=OrderCreateResponse)
def place_order(payload: OrderCreateRequest, db: Session = Depends(get_db)) -> OrderCreateResponse:
    try:
        config = SettlementConfig.from_env()
        order = create_order(
            db,
            customer_id=payload.customer_id,
            vendor_id=payload.vendor_id,
            line_items=[li.model_dump() for li in payload.line_items],
            pricing=_pricing_engine(),
            currency=config.currency,
            tip_option_id=payload.tip_option_id,
            custom_tip_cents=payload.custom_tip_cents,
        )
        bind_order_context(order.id)
        hold = SettlementCoordinator(db, get_payment_processor(), config=config).authorize(
            order.id, customer_email=payload.customer_email
        )
    except Exception as e:
        raise_http_error(e)

    return OrderCreateResponse(
        order=order_to_record(get_order(db, order.id)),
        payment_intent_id=hold.id,
        client_secret=hold.client_secret,
    )


@router.get("/v1/orders/{order_id}", response_model=OrderRecordV1)
def read_order(order_id: str, db: Session = Depends(get_db)) -> OrderRecordV1:
    try:
        return order_to_record(get_order(db, order_id))
    except Exception as e:
        raise_http_error(e)


@router.post("/v1/orders/{order_id}/confirm-payment", response_model=OrderActionResponse)
def confirm_payment(order_id: str, db: Session = Depends(get_db)) -> OrderActionResponse:
    bind_order_context(order_id)
    try:
        result = _fulfillment(db).confirm_payment(order_id)
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.post("/v1/orders/{order_id}/ready", response_model=OrderActionResponse)
def mark_ready(
    order_id: str,
    payload: VendorActionRequest,
    db: Session = Depends(get_db),
) -> OrderActionResponse:
    bind_order_context(order_id, vendor_id=payload.vendor_id)
    try:
        result = _fulfillment(db).ready(order_id, payload.vendor_id)
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.post("/v1/orders/{order_id}/claim", response_model=OrderActionResponse)
def claim(
    order_id: str,
    payload: DriverActionRequest,
    db: Session = Depends(get_db),
) -> OrderActionResponse:
    bind_order_context(order_id, driver_id=payload.driver_id)
    try:
        result = _fulfillment(db).claim(order_id, payload.driver_id)
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.post("/v1/orders/{order_id}/pickup", response_model=OrderActionResponse)
def pickup(
    order_id: str,
    payload: DriverActionRequest,
    db: Session = Depends(get_db),
) -> OrderActionResponse:
    bind_order_context(order_id, driver_id=payload.driver_id)
    try:
        result = _fulfillment(db).pickup(order_id, payload.driver_id)
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.post("/v1/orders/{order_id}/deliver", response_model=OrderActionResponse)
def deliver(
    order_id: str,
    payload: DriverActionRequest,
    db: Session = Depends(get_db),
) -> OrderActionResponse:
    bind_order_context(order_id, driver_id=payload.driver_id)
    try:
        result = _fulfillment(db).deliver(order_id, payload.driver_id)
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.post("/v1/orders/{order_id}/cancel", response_model=OrderActionResponse)
def cancel(
    order_id: str,
    payload: OrderCancelRequest,
    db: Session = Depends(get_db),
) -> OrderActionResponse:
    bind_order_context(order_id)
    try:
        result = _fulfillment(db).cancel(
            order_id,
            actor=Actor(payload.actor),
            actor_id=payload.actor_id,
            reason=payload.reason,
        )
    except Exception as e:
        raise_http_error(e)

    return _action_response(result)


@router.get("/v1/orders/{order_id}/events", response_model=list[EventV1])
def list_order_events(order_id: str, db: Session = Depends(get_db)) -> list[EventV1]:
    try:
        get_order(db, order_id)
    except Exception as e:
        raise_http_error(e)

    return order_events(db, order_id)


@router.get("/v1/drivers/{driver_id}/deliveries", response_model=list[DeliveryRecordV1])
def list_driver_deliveries(driver_id: str, db: Session = Depends(get_db)) -> list[DeliveryRecordV1]:
    """Open orders any driver may claim, followed by this driver's own transactions."""
    open_orders = (
        db.query(Order)
        .filter(
            Order.status == OrderStatusV1.WAITING_FOR_DRIVER.value,
            Order.driver_id.is_(None),
        )
        .order_by(Order.ready_at.asc())
        .limit(200)
        .all()
    )
    transactions = (
        db.query(DriverTransaction)
        .filter(DriverTransaction.driver_id == driver_id)
        .order_by(DriverTransaction.accepted_at.desc())
        .limit(200)
        .all()
    )

    out: list[DeliveryRecordV1] = [order_to_record(o) for o in open_orders]
    out.extend(driver_transaction_to_record(tx) for tx in transactions)
    return out
