from __future__ import annotations

import argparse

from services.api.app.db.database import db_session
from services.api.app.db.init_db import init_db
from services.api.app.db.models import Customer, Driver, InventoryItem, Vendor

# (id, name, unit_price_cents, stock_units)
_INVENTORY = (
    ("item-sourdough", "Sourdough loaf", 1000, 12),
    ("item-croissant", "Butter croissant", 450, 30),
    ("item-coffee", "House coffee beans (12 oz)", 1699, None),
)


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a minimal local marketplace")
    parser.add_argument("--vendor-id", default="vendor-1")
    parser.add_argument("--vendor-name", default="Corner Bakery")
    parser.add_argument("--vendor-account", default="acct_vendor_1")
    parser.add_argument("--customer-id", default="cust-1")
    parser.add_argument("--customer-name", default="Customer 1")
    parser.add_argument("--driver-id", default="driver-1")
    parser.add_argument("--driver-name", default="Driver 1")
    parser.add_argument("--driver-account", default="acct_driver_1")
    args = parser.parse_args()

    init_db()

    db = db_session()
    try:
        if db.get(Vendor, args.vendor_id) is None:
            db.add(
                Vendor(
                    id=args.vendor_id,
                    display_name=args.vendor_name,
                    email="bakery@example.com",
                    location="500 Market St, San Francisco, CA",
                    latitude=37.7897,
                    longitude=-122.4000,
                    payout_account_id=args.vendor_account,
                    payout_account_status="active",
                )
            )

        if db.get(Customer, args.customer_id) is None:
            db.add(
                Customer(
                    id=args.customer_id,
                    display_name=args.customer_name,
                    email="customer@example.com",
                    location="1 Dolores St, San Francisco, CA",
                    latitude=37.7691,
                    longitude=-122.4269,
                )
            )

        if db.get(Driver, args.driver_id) is None:
            db.add(
                Driver(
                    id=args.driver_id,
                    display_name=args.driver_name,
                    payout_account_id=args.driver_account,
                    payout_account_status="active",
                )
            )

        for item_id, name, price, stock in _INVENTORY:
            if db.get(InventoryItem, item_id) is None:
                db.add(
                    InventoryItem(
                        id=item_id,
                        vendor_id=args.vendor_id,
                        name=name,
                        unit_price_cents=price,
                        stock_units=stock,
                    )
                )

        db.commit()
        print(f"Seeded vendor={args.vendor_id} customer={args.customer_id} driver={args.driver_id}")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
