from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from services.api.app.db.models import Customer, Driver, InventoryItem, Vendor
from services.api.app.services.payments_mock import MockLedger
from sqlalchemy.orm import Session

# About 750 m of mock road between these two points: well inside the base fee.
CUSTOMER_LAT, CUSTOMER_LON = 37.7749, -122.4194
VENDOR_LAT, VENDOR_LON = 37.7790, -122.4150


def seed_marketplace(db: Session) -> None:
    rows = [
        Customer(
            id="cust-1",
            display_name="Casey Customer",
            email="casey@example.com",
            location="1 Main St",
            latitude=CUSTOMER_LAT,
            longitude=CUSTOMER_LON,
        ),
        Customer(
            id="cust-2",
            display_name="Nowhere Customer",
            email="",
            location="",
            latitude=None,
            longitude=None,
        ),
        Vendor(
            id="vendor-1",
            display_name="Corner Bakery",
            email="bakery@example.com",
            location="9 Market St",
            latitude=VENDOR_LAT,
            longitude=VENDOR_LON,
            payout_account_id="acct_vendor_1",
            payout_account_status="active",
        ),
        Vendor(
            id="vendor-2",
            display_name="Unlinked Deli",
            location="12 Side St",
            latitude=VENDOR_LAT,
            longitude=VENDOR_LON,
        ),
        Driver(
            id="driver-1",
            display_name="Dana Driver",
            payout_account_id="acct_driver_1",
            payout_account_status="active",
        ),
        Driver(
            id="driver-2",
            display_name="Drew Driver",
            payout_account_id="acct_driver_2",
            payout_account_status="active",
        ),
        InventoryItem(
            id="item-bread",
            vendor_id="vendor-1",
            name="Sourdough loaf",
            unit_price_cents=1000,
            stock_units=10,
        ),
        InventoryItem(
            id="item-croissant",
            vendor_id="vendor-1",
            name="Butter croissant",
            unit_price_cents=450,
            stock_units=None,
        ),
        InventoryItem(
            id="item-sandwich",
            vendor_id="vendor-2",
            name="Club sandwich",
            unit_price_cents=1250,
            stock_units=5,
        ),
    ]
    for row in rows:
        if db.get(type(row), row.id) is None:
            db.add(row)
    db.commit()


def use_test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "marketlane_test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("MARKETLANE_DB_AUTO_CREATE", "true")
    monkeypatch.setenv("MARKETLANE_ROUTING_ADAPTER", "mock")
    monkeypatch.setenv("MARKETLANE_PAYMENTS_ADAPTER", "mock")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.delenv("MARKETLANE_PLATFORM_COMMISSION_BPS", raising=False)
    monkeypatch.delenv("MARKETLANE_DEFAULT_CURRENCY", raising=False)


@pytest.fixture()
def ledger(monkeypatch: pytest.MonkeyPatch) -> MockLedger:
    """A fresh mock processor ledger, so injected failures never leak between tests."""
    import services.api.app.services.payments_mock as payments_mock

    fresh = MockLedger()
    monkeypatch.setattr(payments_mock, "ledger", fresh)
    return fresh


@pytest.fixture()
def db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Session]:
    use_test_env(tmp_path, monkeypatch)

    from services.api.app.db.database import db_session
    from services.api.app.db.init_db import init_db

    init_db()
    session = db_session()
    seed_marketplace(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, ledger: MockLedger) -> Iterator[TestClient]:
    use_test_env(tmp_path, monkeypatch)

    from services.api.app.db.database import db_session
    from services.api.app.main import app

    with TestClient(app) as c:
        session = db_session()
        try:
            seed_marketplace(session)
        finally:
            session.close()
        yield c
