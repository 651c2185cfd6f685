"""
Tests for the domain event outbox.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from marketplace.core.database import get_db_session
from marketplace.core.errors import InsufficientFundsError
from marketplace.features.events.outbox import emit_event, list_undelivered_events, mark_events_delivered
from marketplace.features.orders.lifecycle import on_order_status_changed
from marketplace.features.payouts.service import mark_rejected, request_payout
from marketplace.features.wallet.ledger import post_adjustment
from marketplace.models.wallet import TransactionType


def _event_types():
    with get_db_session() as db:
        return [e["event_type"] for e in list_undelivered_events(db, limit=500)]


def test_payload_is_json_safe(now):
    with get_db_session() as db:
        event_id = emit_event(
            db,
            "test.event",
            {"rate": Decimal("12.5"), "at": now, "ids": ("a", "b"), "type": TransactionType.REFUND_DEBIT},
            now=now,
        )

    with get_db_session() as db:
        event = list_undelivered_events(db)[0]
    assert event["id"] == event_id
    payload = event["payload"]
    assert (payload["rate"], payload["ids"], payload["type"]) == ("12.5", ["a", "b"], "refund_debit")
    assert datetime.fromisoformat(payload["at"].replace("Z", "+00:00")) == now
    assert event["created_at"] == now


def test_ledger_changes_emit_events(vendor, now):
    on_order_status_changed("order-1", vendor, "delivered", 1000, now=now)
    on_order_status_changed("order-1", vendor, "cancelled", 1000, now=now)
    post_adjustment(vendor, 600, "seed", now=now)
    payout = request_payout(vendor, 500, now=now)
    mark_rejected(payout.id, "duplicate", now=now + timedelta(hours=1))

    assert _event_types() == [
        "order.earning_recorded",
        "order.earning_reversed",
        "wallet.adjusted",
        "payout.requested",
        "payout.rejected",
    ]


def test_failed_change_emits_nothing(vendor, now):
    with pytest.raises(InsufficientFundsError):
        request_payout(vendor, 500, now=now)
    assert _event_types() == []


def test_mark_delivered(vendor, now):
    post_adjustment(vendor, 600, "seed", now=now)
    post_adjustment(vendor, 100, "again", now=now)

    with get_db_session() as db:
        ids = [e["id"] for e in list_undelivered_events(db)]
        assert mark_events_delivered(db, ids[:1], now=now) == 1
        assert mark_events_delivered(db, ids[:1], now=now) == 0
        assert mark_events_delivered(db, []) == 0

    with get_db_session() as db:
        assert [e["id"] for e in list_undelivered_events(db)] == ids[1:]
