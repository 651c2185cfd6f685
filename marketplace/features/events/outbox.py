"""
Domain event outbox.

Ledger changes emit events (earning recorded, payout rejected, ...) for the
notification subsystem. Events are written in the same database transaction
as the change they describe, so an event exists if and only if the change
committed. Delivery is someone else's job: a relay reads undelivered rows
and marks them delivered.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic_core import to_jsonable_python
from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from marketplace.core.database import ensure_utc, ledger_events, utc_now


def emit_event(
    db: Session,
    event_type: str,
    payload: Dict[str, Any],
    vendor_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Persist an event inside the caller's transaction. Returns the event id."""
    result = db.execute(
        insert(ledger_events).values(
            event_type=event_type,
            vendor_id=vendor_id,
            payload=to_jsonable_python(payload),
            created_at=ensure_utc(now) or utc_now(),
        )
    )
    return result.inserted_primary_key[0]


def list_undelivered_events(db: Session, limit: int = 100, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
    query = select(ledger_events).where(ledger_events.c.delivered_at.is_(None))
    if event_type:
        query = query.where(ledger_events.c.event_type == event_type)
    rows = db.execute(query.order_by(ledger_events.c.id).limit(limit)).fetchall()
    return [
        {
            "id": row.id,
            "event_type": row.event_type,
            "vendor_id": row.vendor_id,
            "payload": row.payload,
            "created_at": ensure_utc(row.created_at),
        }
        for row in rows
    ]


def mark_events_delivered(db: Session, event_ids: Sequence[int], now: Optional[datetime] = None) -> int:
    if not event_ids:
        return 0
    result = db.execute(
        update(ledger_events)
        .where(ledger_events.c.id.in_(list(event_ids)))
        .where(ledger_events.c.delivered_at.is_(None))
        .values(delivered_at=ensure_utc(now) or utc_now())
    )
    return result.rowcount or 0
