"""Order status observation.

``OrderFeed`` polls the order store and pushes fresh records to subscribers.
``StatusWatcher`` turns that stream into at most one "delivered" notice per
order, and ``SnapshotReconciler`` diffs pushed records against optimistic local
edits so a view only re-renders the fields that actually changed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

import structlog

from packages.shared.schemas.order_v1 import OrderRecordV1, OrderStatusV1
from services.api.app.db.models import Order
from services.api.app.services.orders import order_to_record
from sqlalchemy.orm import Session

logger = structlog.get_logger(__name__)

OrderCallback = Callable[[OrderRecordV1], None]
Notifier = Callable[[str, str], None]


class StatusWatcher:
    """One per observer session.

    A delivered notice needs a previously observed, different status: opening
    the app on an order that is already delivered stays silent.
    """

    def __init__(self, notify: Notifier | None = None) -> None:
        self._notify = notify
        self._last_seen: dict[str, str] = {}
        self._notified: set[str] = set()

    def observe(self, record: OrderRecordV1) -> str | None:
        status = OrderStatusV1(record.status).value
        previous = self._last_seen.get(record.id)
        self._last_seen[record.id] = status

        if status != OrderStatusV1.DELIVERED.value:
            return None
        if previous is None or previous == status or record.id in self._notified:
            return None

        self._notified.add(record.id)
        message = f"Your order from {record.vendor.display_name} has been delivered!"
        if self._notify is not None:
            self._notify(record.id, message)
        return message

    def last_seen(self, order_id: str) -> str | None:
        return self._last_seen.get(order_id)


class SnapshotReconciler:
    def __init__(self) -> None:
        self._views: dict[str, dict[str, Any]] = {}

    def apply_local(self, entity_id: str, **fields: Any) -> dict[str, Any]:
        """Record an optimistic edit before the server has confirmed it."""
        view = self._views.setdefault(entity_id, {})
        view.update(fields)
        return dict(view)

    def reconcile(self, snapshots: Iterable[Mapping[str, Any]]) -> dict[str, dict[str, Any]]:
        """Adopt server snapshots; return only the fields that differ per entity id."""
        changes: dict[str, dict[str, Any]] = {}
        for snapshot in snapshots:
            entity_id = snapshot["id"]
            view = self._views.setdefault(entity_id, {})
            diff = {
                k: v
                for k, v in snapshot.items()
                if k != "id" and (k not in view or view[k] != v)
            }
            if diff:
                view.update(diff)
                changes[entity_id] = diff
        return changes

    def view(self, entity_id: str) -> dict[str, Any]:
        return dict(self._views.get(entity_id, {}))

    def forget(self, entity_id: str) -> None:
        self._views.pop(entity_id, None)


class OrderFeed:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._subscribers: dict[str, list[OrderCallback]] = {}
        self._versions: dict[str, tuple[str, str]] = {}

    def subscribe(self, order_id: str, callback: OrderCallback) -> Callable[[], None]:
        callbacks = self._subscribers.setdefault(order_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(order_id, None)
                self._versions.pop(order_id, None)

        return unsubscribe

    def poll(self) -> int:
        """Push every subscribed order that changed since the last poll."""
        if not self._subscribers:
            return 0

        pushed = 0
        db = self._session_factory()
        try:
            orders = db.query(Order).filter(Order.id.in_(list(self._subscribers))).all()
            for order in orders:
                version = (order.status, order.updated_at.isoformat())
                if self._versions.get(order.id) == version:
                    continue
                self._versions[order.id] = version
                record = order_to_record(order)
                for callback in list(self._subscribers.get(order.id, ())):
                    try:
                        callback(record)
                    except Exception:
                        logger.exception("tracking.subscriber_failed", order_id=order.id)
                pushed += 1
        finally:
            db.close()
        return pushed
