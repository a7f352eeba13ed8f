from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from packages.shared.schemas.events import EntityTypeV1, EventTypeV1, EventV1
from services.api.app.db.models import EventLog
from sqlalchemy.orm import Session


def log_event(
    db: Session,
    *,
    actor_id: str | None,
    entity_type: EntityTypeV1,
    entity_id: str,
    event_type: EventTypeV1,
    event_payload: dict,
) -> None:
    order_id = entity_id if entity_type == EntityTypeV1.ORDER else event_payload.get("order_id")
    db.add(
        EventLog(
            id=uuid4().hex,
            actor_id=actor_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            order_id=order_id,
            event_type=event_type.value,
            event_payload_json=event_payload,
            created_at=datetime.utcnow(),
        )
    )


def order_events(db: Session, order_id: str) -> list[EventV1]:
    rows = (
        db.query(EventLog)
        .filter(EventLog.order_id == order_id)
        .order_by(EventLog.created_at.asc())
        .all()
    )
    return [
        EventV1(
            id=r.id,
            actor_id=r.actor_id,
            entity_type=EntityTypeV1(r.entity_type),
            entity_id=r.entity_id,
            event_type=EventTypeV1(r.event_type),
            payload=r.event_payload_json,
            created_at=r.created_at.isoformat(),
        )
        for r in rows
    ]
