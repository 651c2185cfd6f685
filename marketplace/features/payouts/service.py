"""
marketplace/features/payouts/service.py

Payout processor.

Handles:
- Payout requests: minimum, one-in-flight and balance checks plus the debit,
  all inside one serialized vendor unit of work
- Operator transitions requested -> processing -> completed, or -> rejected
- Rejection credits the amount back with an adjustment
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.database import ensure_utc, get_db_session, payout_requests, utc_now, vendor_accounts
from marketplace.core.errors import (
    AccountNotFoundError,
    AppError,
    BelowMinimumPayoutError,
    InvalidPayoutTransitionError,
    NotFoundError,
    PayoutInFlightError,
    ValidationError,
)
from marketplace.core.logging import log_event
from marketplace.core.metrics import payout_requests_total, payout_transitions_total
from marketplace.features.events.outbox import emit_event
from marketplace.features.wallet.ledger import post_transaction, vendor_session
from marketplace.models.payout import IN_FLIGHT_STATUSES, PayoutRequest, PayoutStatus
from marketplace.models.wallet import Reference, ReferenceType, TransactionType

logger = logging.getLogger("marketplace.payouts")

_VALID_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.REQUESTED: frozenset({PayoutStatus.PROCESSING, PayoutStatus.COMPLETED, PayoutStatus.REJECTED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.COMPLETED, PayoutStatus.REJECTED}),
    PayoutStatus.COMPLETED: frozenset(),
    PayoutStatus.REJECTED: frozenset(),
}

_TIMESTAMP_COLUMN = {
    PayoutStatus.PROCESSING: "processing_at",
    PayoutStatus.COMPLETED: "completed_at",
    PayoutStatus.REJECTED: "rejected_at",
}


def _to_payout(row) -> PayoutRequest:
    return PayoutRequest(
        id=row.id,
        vendor_id=row.vendor_id,
        amount=row.amount,
        status=PayoutStatus(row.status),
        note=row.note,
        debit_transaction_id=row.debit_transaction_id,
        reversal_transaction_id=row.reversal_transaction_id,
        requested_at=ensure_utc(row.requested_at),
        processing_at=ensure_utc(row.processing_at),
        completed_at=ensure_utc(row.completed_at),
        rejected_at=ensure_utc(row.rejected_at),
    )


def _load_payout(db: Session, payout_id: str):
    row = db.execute(select(payout_requests).where(payout_requests.c.id == payout_id)).first()
    if row is None:
        raise NotFoundError(f"Payout {payout_id} not found", code="payout_not_found")
    return row


def request_payout(vendor_id: str, amount: int, now: Optional[datetime] = None) -> PayoutRequest:
    """
    Request a withdrawal from the available balance.

    Raises:
        ValidationError: amount is not a positive integer
        AccountNotFoundError: vendor not registered
        BelowMinimumPayoutError: amount under MIN_PAYOUT_AMOUNT
        PayoutInFlightError: another payout is requested or processing
        InsufficientFundsError: amount exceeds the available balance
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    now = ensure_utc(now) or utc_now()
    minimum = settings.MIN_PAYOUT_AMOUNT

    try:
        with vendor_session(vendor_id) as db:
            if amount < minimum:
                raise BelowMinimumPayoutError(
                    f"Minimum payout amount is {minimum}",
                    minimum=minimum,
                )

            in_flight = db.execute(
                select(payout_requests.c.id).where(
                    payout_requests.c.vendor_id == vendor_id,
                    payout_requests.c.status.in_([s.value for s in IN_FLIGHT_STATUSES]),
                )
            ).first()
            if in_flight is not None:
                raise PayoutInFlightError(
                    f"Payout {in_flight.id} is still in progress; wait for it to finish before requesting another"
                )

            payout_id = str(uuid.uuid4())
            tx = post_transaction(
                db,
                vendor_id,
                TransactionType.PAYOUT,
                -amount,
                reference=Reference(type=ReferenceType.PAYOUT, id=payout_id),
                description="Payout requested",
                now=now,
            )
            db.execute(
                insert(payout_requests).values(
                    id=payout_id,
                    vendor_id=vendor_id,
                    amount=amount,
                    status=PayoutStatus.REQUESTED.value,
                    debit_transaction_id=tx.id,
                    requested_at=now,
                    updated_at=now,
                )
            )
            emit_event(
                db,
                "payout.requested",
                {"payout_id": payout_id, "amount": amount},
                vendor_id=vendor_id,
                now=now,
            )
            payout = _to_payout(_load_payout(db, payout_id))
    except AppError as exc:
        payout_requests_total.inc(labels={"outcome": exc.code})
        log_event(
            "info",
            "payout.refused",
            vendor_id=vendor_id,
            error_code=exc.code,
            extra={"amount": amount},
        )
        raise

    payout_requests_total.inc(labels={"outcome": "accepted"})
    log_event("info", "payout.requested", vendor_id=vendor_id, payout_id=payout.id, extra={"amount": amount})
    return payout


def _transition(
    payout_id: str,
    target: PayoutStatus,
    *,
    note: Optional[str] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutRequest:
    now = ensure_utc(now) or utc_now()
    with get_db_session() as db:
        vendor_id = _load_payout(db, payout_id).vendor_id

    with vendor_session(vendor_id) as db:
        row = _load_payout(db, payout_id)
        current = PayoutStatus(row.status)
        if target not in _VALID_TRANSITIONS[current]:
            raise InvalidPayoutTransitionError(
                f"Payout {payout_id} cannot move from {current.value} to {target.value}"
            )

        values = {
            "status": target.value,
            _TIMESTAMP_COLUMN[target]: now,
            "updated_at": now,
        }
        if note is not None:
            values["note"] = note

        if target == PayoutStatus.REJECTED:
            reason = f"Payout {payout_id} rejected" + (f": {note}" if note else "")
            tx = post_transaction(
                db,
                vendor_id,
                TransactionType.ADJUSTMENT,
                row.amount,
                reference=Reference(type=ReferenceType.PAYOUT, id=payout_id),
                description="Payout rejected, amount returned",
                reason=reason,
                now=now,
            )
            values["reversal_transaction_id"] = tx.id

        db.execute(update(payout_requests).where(payout_requests.c.id == payout_id).values(**values))
        emit_event(
            db,
            f"payout.{target.value}",
            {"payout_id": payout_id, "amount": row.amount, "note": note, "actor": actor},
            vendor_id=vendor_id,
            now=now,
        )
        payout = _to_payout(_load_payout(db, payout_id))

    payout_transitions_total.inc(labels={"status": target.value})
    log_event(
        "info",
        f"payout.{target.value}",
        vendor_id=vendor_id,
        payout_id=payout_id,
        extra={"from": current.value, "actor": actor},
    )
    return payout


def mark_processing(payout_id: str, *, actor: Optional[str] = None, now: Optional[datetime] = None) -> PayoutRequest:
    return _transition(payout_id, PayoutStatus.PROCESSING, actor=actor, now=now)


def mark_completed(
    payout_id: str,
    note: Optional[str] = None,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutRequest:
    return _transition(payout_id, PayoutStatus.COMPLETED, note=note, actor=actor, now=now)


def mark_rejected(
    payout_id: str,
    note: Optional[str] = None,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutRequest:
    """Reject a payout and credit the debited amount back to available."""
    return _transition(payout_id, PayoutStatus.REJECTED, note=note, actor=actor, now=now)


def get_payout(payout_id: str) -> PayoutRequest:
    with get_db_session() as db:
        return _to_payout(_load_payout(db, payout_id))


def list_payouts(vendor_id: str, limit: int = 100) -> List[PayoutRequest]:
    """A vendor's payouts, newest first."""
    with get_db_session() as db:
        exists = db.execute(
            select(vendor_accounts.c.vendor_id).where(vendor_accounts.c.vendor_id == vendor_id)
        ).first()
        if exists is None:
            raise AccountNotFoundError(f"No wallet account for vendor {vendor_id}")
        rows = db.execute(
            select(payout_requests)
            .where(payout_requests.c.vendor_id == vendor_id)
            .order_by(payout_requests.c.requested_at.desc())
            .limit(limit)
        ).fetchall()
    return [_to_payout(r) for r in rows]


def list_payouts_by_status(status: Optional[PayoutStatus] = None, limit: int = 100) -> List[PayoutRequest]:
    """Operator queue, oldest first. Without a status, every in-flight payout."""
    statuses = [PayoutStatus(status).value] if status is not None else [s.value for s in IN_FLIGHT_STATUSES]
    with get_db_session() as db:
        rows = db.execute(
            select(payout_requests)
            .where(payout_requests.c.status.in_(statuses))
            .order_by(payout_requests.c.requested_at)
            .limit(limit)
        ).fetchall()
    return [_to_payout(r) for r in rows]
