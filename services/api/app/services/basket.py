"""Customer basket, grouped by vendor.

The whole basket lives under one storage key as
``{vendor_id: [{"item": {...}, "quantity": n}, ...]}``. Every mutation reads
the stored mapping, changes it and writes it back in a single call, so another
view of the same session only ever sees complete snapshots. A vendor key is
deleted as soon as its last item goes, so "has any basket" is a key count.
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

BASKET_STORAGE_KEY = "customerBaskets"


@dataclass(frozen=True, slots=True)
class CatalogItem:
    item_id: str
    vendor_id: str
    name: str
    unit_price_cents: int
    stock_units: int | None = None


@dataclass(frozen=True, slots=True)
class BasketItem:
    item: CatalogItem
    quantity: int

    @property
    def line_total_cents(self) -> int:
        return self.item.unit_price_cents * self.quantity


BasketSnapshot = Mapping[str, tuple[BasketItem, ...]]
BasketListener = Callable[[BasketSnapshot], None]


class BasketStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryBasketStorage:
    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class JsonFileBasketStorage:
    """Durable storage: one JSON file per key inside ``directory``.

    Writes go to a temp file and are renamed into place, so readers never see
    a half-written basket.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self._directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._directory, prefix=f".{key}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        os.replace(tmp, self._path(key))


def _encode(baskets: Mapping[str, list[BasketItem]]) -> str:
    return json.dumps(
        {
            vendor_id: [{"item": asdict(e.item), "quantity": e.quantity} for e in entries]
            for vendor_id, entries in baskets.items()
        },
        sort_keys=True,
    )


def _decode(raw: str | None) -> dict[str, list[BasketItem]]:
    if not raw:
        return {}
    data = json.loads(raw)
    return {
        vendor_id: [
            BasketItem(item=CatalogItem(**row["item"]), quantity=int(row["quantity"]))
            for row in rows
        ]
        for vendor_id, rows in data.items()
        if rows
    }


class Basket:
    def __init__(
        self,
        storage: BasketStorage | None = None,
        *,
        key: str = BASKET_STORAGE_KEY,
    ) -> None:
        self._storage = storage if storage is not None else InMemoryBasketStorage()
        self._key = key
        self._listeners: list[BasketListener] = []
        self._raw = self._storage.get(self._key)
        self._baskets = _decode(self._raw)

    # -- observers -----------------------------------------------------------

    def subscribe(self, listener: BasketListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: BasketListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("basket.listener_failed", listener=repr(listener))

    # -- mutations -----------------------------------------------------------

    def upsert(self, item: CatalogItem, quantity: int) -> bool:
        """Set the quantity of ``item``. Returns False when the change is rejected."""
        if not item.vendor_id:
            logger.warning("basket.upsert_rejected", item_id=item.item_id, reason="no vendor id")
            return False
        if quantity < 0 or (item.stock_units is not None and quantity > item.stock_units):
            logger.warning(
                "basket.upsert_rejected",
                item_id=item.item_id,
                quantity=quantity,
                stock_units=item.stock_units,
                reason="quantity out of range",
            )
            return False

        baskets = self._read()
        entries = baskets.get(item.vendor_id, [])
        index = _index_of(entries, item.item_id)

        if quantity == 0:
            if index is None:
                return True
            del entries[index]
        elif index is None:
            entries.append(BasketItem(item=item, quantity=quantity))
        else:
            entries[index] = BasketItem(item=item, quantity=quantity)

        baskets[item.vendor_id] = entries
        self._write(baskets)
        return True

    def decrement(self, item: CatalogItem) -> None:
        baskets = self._read()
        entries = baskets.get(item.vendor_id)
        if not entries:
            return
        index = _index_of(entries, item.item_id)
        if index is None:
            return

        current = entries[index]
        if current.quantity > 1:
            entries[index] = BasketItem(item=current.item, quantity=current.quantity - 1)
        else:
            del entries[index]
        self._write(baskets)

    def remove_item(self, item: CatalogItem) -> None:
        baskets = self._read()
        entries = baskets.get(item.vendor_id)
        if not entries:
            return
        index = _index_of(entries, item.item_id)
        if index is None:
            return
        del entries[index]
        self._write(baskets)

    def remove_vendor(self, vendor_id: str) -> None:
        baskets = self._read()
        if baskets.pop(vendor_id, None) is None:
            return
        self._write(baskets)

    def clear_all(self) -> None:
        self._write({})

    def reload(self) -> bool:
        """Pick up a write made by another view. Returns True if anything changed."""
        raw = self._storage.get(self._key)
        if raw == self._raw:
            return False
        self._raw = raw
        self._baskets = _decode(raw)
        self._publish()
        return True

    def _read(self) -> dict[str, list[BasketItem]]:
        self._raw = self._storage.get(self._key)
        self._baskets = _decode(self._raw)
        return {vendor_id: list(entries) for vendor_id, entries in self._baskets.items()}

    def _write(self, baskets: dict[str, list[BasketItem]]) -> None:
        cleaned = {vendor_id: entries for vendor_id, entries in baskets.items() if entries}
        raw = _encode(cleaned)
        self._storage.set(self._key, raw)
        self._raw = raw
        self._baskets = cleaned
        self._publish()

    # -- queries -------------------------------------------------------------

    def snapshot(self) -> dict[str, tuple[BasketItem, ...]]:
        return {vendor_id: tuple(entries) for vendor_id, entries in self._baskets.items()}

    def items_for(self, vendor_id: str) -> tuple[BasketItem, ...]:
        return tuple(self._baskets.get(vendor_id, ()))

    def count_for(self, item: CatalogItem) -> int:
        for entry in self._baskets.get(item.vendor_id, ()):
            if entry.item.item_id == item.item_id:
                return entry.quantity
        return 0

    def vendor_count(self) -> int:
        return len(self._baskets)

    def vendor_item_count(self, vendor_id: str) -> int:
        return sum(e.quantity for e in self._baskets.get(vendor_id, ()))

    def total_count(self) -> int:
        return sum(self.vendor_item_count(vendor_id) for vendor_id in self._baskets)

    def vendor_price(self, vendor_id: str) -> int:
        return sum(e.line_total_cents for e in self._baskets.get(vendor_id, ()))

    def total_price(self) -> int:
        return sum(self.vendor_price(vendor_id) for vendor_id in self._baskets)


def _index_of(entries: list[BasketItem], item_id: str) -> int | None:
    for i, entry in enumerate(entries):
        if entry.item.item_id == item_id:
            return i
    return None
