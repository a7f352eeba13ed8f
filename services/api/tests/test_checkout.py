from __future__ import annotations

import pytest
from services.api.app.errors import ValidationError
from services.api.app.services.basket import Basket, CatalogItem
from services.api.app.services.checkout import CheckoutDesk

BREAD = CatalogItem(item_id="bread", vendor_id="v1", name="Bread", unit_price_cents=1000, stock_units=10)
SOAP = CatalogItem(item_id="soap", vendor_id="v2", name="Soap", unit_price_cents=250)


def _desk() -> tuple[Basket, CheckoutDesk]:
    basket = Basket()
    basket.upsert(BREAD, 2)
    basket.upsert(SOAP, 1)
    return basket, CheckoutDesk(basket)


def test_open_is_single_owner_per_basket() -> None:
    _basket, desk = _desk()

    session = desk.open("v1")
    assert desk.open("v1") is session

    with pytest.raises(ValidationError, match="already in progress"):
        desk.open("v2")


def test_open_rejects_empty_vendor_basket() -> None:
    _basket, desk = _desk()
    with pytest.raises(ValidationError, match="empty"):
        desk.open("v3")


def test_line_items_flatten_the_vendor_basket() -> None:
    _basket, desk = _desk()
    session = desk.open("v1")

    assert desk.line_items(session) == [
        {"item_id": "bread", "name": "Bread", "quantity": 2, "unit_price_cents": 1000}
    ]


def test_retry_resumes_the_same_order_and_hold() -> None:
    _basket, desk = _desk()
    session = desk.open("v1")
    session.attach_order("order-1")
    session.attach_hold("pi_1", "pi_1_secret")

    again = desk.open("v1")
    assert again.resumable
    assert again.payment_intent_id == "pi_1"

    with pytest.raises(ValidationError):
        again.attach_order("order-2")


def test_complete_clears_only_that_vendor_basket() -> None:
    basket, desk = _desk()
    session = desk.open("v1")

    desk.complete(session)

    assert basket.items_for("v1") == ()
    assert basket.count_for(SOAP) == 1
    assert desk.active is None

    with pytest.raises(ValidationError, match="no longer active"):
        desk.complete(session)


def test_clearing_the_basket_elsewhere_closes_the_session() -> None:
    basket, desk = _desk()
    session = desk.open("v1")

    basket.remove_vendor("v1")

    assert desk.active is None
    with pytest.raises(ValidationError):
        desk.line_items(session)
    # Another vendor may now check out.
    assert desk.open("v2").vendor_id == "v2"


def test_abandon_releases_the_token() -> None:
    _basket, desk = _desk()
    session = desk.open("v1")
    desk.abandon(session)

    assert desk.open("v2").vendor_id == "v2"
