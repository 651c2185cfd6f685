"""
Order lifecycle trigger.

Turns order status changes from the order service into wallet postings.
State is tracked per (order, vendor) in `vendor_orders`; its flags, not the
ledger, decide whether an event was already processed, so replays are no-ops.

- delivered: the only earning trigger. Net goes to pending, fee is recorded
  as a commission entry.
- cancelled / returned after delivery: the net is reversed from pending if it
  has not matured yet (up to what pending still holds), the rest from
  available, which may go negative and is then flagged for reconciliation.
- maturation: after EARNING_MATURATION_DAYS the net moves pending -> available.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.database import ensure_utc, get_db_session, utc_now, vendor_orders
from marketplace.core.errors import ValidationError
from marketplace.core.logging import log_event
from marketplace.core.metrics import order_transitions_total, sweep_runs_total
from marketplace.features.commission.engine import rate_to_bps, split
from marketplace.features.events.outbox import emit_event
from marketplace.features.subscriptions.service import effective_rate
from marketplace.features.wallet.ledger import get_balance, post_transaction, vendor_session
from marketplace.models.order import OrderStatus, TransitionOutcome, TransitionResult
from marketplace.models.sweep import SweepFailure, SweepReport
from marketplace.models.wallet import BalanceBucket, Reference, ReferenceType, TransactionType

logger = logging.getLogger("marketplace.orders")

S = OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PROCESSING, S.SHIPPED, S.CANCELLED}),
    S.PROCESSING: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED, S.RETURNED}),
    S.DELIVERED: frozenset({S.RETURNED, S.CANCELLED}),
    S.CANCELLED: frozenset(),
    S.RETURNED: frozenset(),
}

REVERSING_STATUSES = frozenset({S.CANCELLED, S.RETURNED})


def is_allowed_transition(previous: Optional[OrderStatus], new: OrderStatus) -> bool:
    """First sighting of an order is accepted at any status."""
    if previous is None:
        return True
    return new in ALLOWED_TRANSITIONS[previous]


def _order_ref(order_id: str) -> Reference:
    return Reference(type=ReferenceType.ORDER, id=order_id)


def _load_state(db: Session, order_id: str, vendor_id: str):
    return db.execute(
        select(vendor_orders).where(
            vendor_orders.c.order_id == order_id,
            vendor_orders.c.vendor_id == vendor_id,
        )
    ).first()


def _record_earning(db: Session, order_id: str, vendor_id: str, subtotal: int, now: datetime) -> List[str]:
    rate = effective_rate(db, vendor_id, now)
    bps = rate_to_bps(rate)
    result = split(subtotal, rate)
    ref = _order_ref(order_id)
    tx_ids: List[str] = []

    if result.vendor_net > 0:
        tx = post_transaction(
            db,
            vendor_id,
            TransactionType.ORDER_EARNING,
            result.vendor_net,
            reference=ref,
            description=f"Earning for order {order_id}",
            commission_bps=bps,
            now=now,
        )
        tx_ids.append(tx.id)
    if result.platform_fee > 0:
        tx = post_transaction(
            db,
            vendor_id,
            TransactionType.COMMISSION,
            -result.platform_fee,
            reference=ref,
            description=f"Platform commission ({rate}%) for order {order_id}",
            commission_bps=bps,
            now=now,
        )
        tx_ids.append(tx.id)

    db.execute(
        update(vendor_orders)
        .where(vendor_orders.c.order_id == order_id, vendor_orders.c.vendor_id == vendor_id)
        .values(
            subtotal=subtotal,
            commission_bps=bps,
            platform_fee=result.platform_fee,
            vendor_net=result.vendor_net,
            earning_posted=True,
            delivered_at=now,
            matures_at=now + timedelta(days=settings.EARNING_MATURATION_DAYS),
            # nothing to move when the vendor keeps nothing
            matured=result.vendor_net == 0,
            updated_at=now,
        )
    )
    emit_event(
        db,
        "order.earning_recorded",
        {
            "order_id": order_id,
            "subtotal": subtotal,
            "commission_rate": rate,
            "platform_fee": result.platform_fee,
            "vendor_net": result.vendor_net,
        },
        vendor_id=vendor_id,
        now=now,
    )
    return tx_ids


def _reverse_earning(db: Session, state, now: datetime) -> tuple:
    """
    Offset a posted earning. Returns (transaction ids, reconciliation_required).

    An unmatured net comes back out of pending, as far as pending still holds
    it; whatever pending no longer covers (an operator debit in between, say)
    is taken from available as a refund debit. A matured net is taken from
    available in full.
    """
    order_id, vendor_id = state.order_id, state.vendor_id
    ref = _order_ref(order_id)
    tx_ids: List[str] = []
    net = state.vendor_net or 0
    fee = state.platform_fee or 0

    from_pending = 0
    if not state.matured and net > 0:
        from_pending = min(net, max(get_balance(vendor_id, db).pending, 0))
    shortfall = net - from_pending
    reversal_type = TransactionType.PENDING_CANCELLED if from_pending > 0 else TransactionType.REFUND_DEBIT
    refund_tx = None

    if from_pending > 0:
        tx = post_transaction(
            db,
            vendor_id,
            TransactionType.PENDING_CANCELLED,
            -from_pending,
            bucket=BalanceBucket.PENDING,
            reference=ref,
            description=f"Earning cancelled for order {order_id}",
            commission_bps=state.commission_bps,
            now=now,
        )
        tx_ids.append(tx.id)
    if shortfall > 0:
        refund_tx = post_transaction(
            db,
            vendor_id,
            TransactionType.REFUND_DEBIT,
            -shortfall,
            bucket=BalanceBucket.AVAILABLE,
            reference=ref,
            description=f"Refund debit for order {order_id}",
            commission_bps=state.commission_bps,
            allow_negative=True,
            now=now,
        )
        tx_ids.append(refund_tx.id)
    needs_reconciliation = refund_tx is not None and refund_tx.needs_reconciliation

    if fee > 0:
        tx = post_transaction(
            db,
            vendor_id,
            TransactionType.COMMISSION,
            fee,
            reference=ref,
            description=f"Commission reversed for order {order_id}",
            commission_bps=state.commission_bps,
            now=now,
        )
        tx_ids.append(tx.id)

    db.execute(
        update(vendor_orders)
        .where(vendor_orders.c.order_id == order_id, vendor_orders.c.vendor_id == vendor_id)
        .values(reversed=True, reversal_type=reversal_type.value, updated_at=now)
    )
    emit_event(
        db,
        "order.earning_reversed",
        {
            "order_id": order_id,
            "reversal_type": reversal_type,
            "vendor_net": net,
            "from_pending": from_pending,
            "from_available": shortfall,
            "platform_fee": fee,
        },
        vendor_id=vendor_id,
        now=now,
    )
    if needs_reconciliation:
        emit_event(
            db,
            "wallet.reconciliation_required",
            {"order_id": order_id, "amount": shortfall, "transaction_id": refund_tx.id},
            vendor_id=vendor_id,
            now=now,
        )
        log_event(
            "warning",
            "wallet.reconciliation_required",
            vendor_id=vendor_id,
            order_id=order_id,
            error_code="reconciliation_required",
            extra={"amount": shortfall},
        )
    return tx_ids, needs_reconciliation


def on_order_status_changed(
    order_id: str,
    vendor_id: str,
    new_status,
    order_subtotal: int,
    now: Optional[datetime] = None,
) -> TransitionOutcome:
    """
    Feed one order status change for one vendor into the wallet.

    Invalid transitions and replays come back as IGNORED outcomes with no
    ledger effect.

    Raises:
        ValidationError: unknown status or a negative/non-integer subtotal
        AccountNotFoundError: vendor not registered
    """
    try:
        status = OrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {new_status}", code="invalid_order_status")
    if isinstance(order_subtotal, bool) or not isinstance(order_subtotal, int) or order_subtotal < 0:
        raise ValidationError("order_subtotal must be a non-negative integer")
    if not order_id:
        raise ValidationError("order_id is required")
    now = ensure_utc(now) or utc_now()

    with vendor_session(vendor_id) as db:
        state = _load_state(db, order_id, vendor_id)
        previous = OrderStatus(state.status) if state is not None else None

        if previous == status:
            outcome = TransitionOutcome(
                order_id=order_id, vendor_id=vendor_id, result=TransitionResult.IGNORED,
                previous_status=previous, status=status, reason="replay",
            )
        elif not is_allowed_transition(previous, status):
            outcome = TransitionOutcome(
                order_id=order_id, vendor_id=vendor_id, result=TransitionResult.IGNORED,
                previous_status=previous, status=status, reason="invalid_transition",
            )
        else:
            if state is None:
                db.execute(
                    insert(vendor_orders).values(
                        order_id=order_id,
                        vendor_id=vendor_id,
                        status=status.value,
                        subtotal=order_subtotal,
                        updated_at=now,
                    )
                )
            else:
                db.execute(
                    update(vendor_orders)
                    .where(vendor_orders.c.order_id == order_id, vendor_orders.c.vendor_id == vendor_id)
                    .values(status=status.value, updated_at=now)
                )

            tx_ids: List[str] = []
            reconciliation = False
            earning_posted = bool(state.earning_posted) if state is not None else False
            already_reversed = bool(state.reversed) if state is not None else False

            if status == S.DELIVERED and not earning_posted:
                tx_ids = _record_earning(db, order_id, vendor_id, order_subtotal, now)
            elif status in REVERSING_STATUSES and earning_posted and not already_reversed:
                tx_ids, reconciliation = _reverse_earning(db, state, now)

            outcome = TransitionOutcome(
                order_id=order_id, vendor_id=vendor_id, result=TransitionResult.APPLIED,
                previous_status=previous, status=status, transaction_ids=tx_ids,
                reconciliation_required=reconciliation,
            )

    order_transitions_total.inc(labels={"outcome": outcome.reason or outcome.result.value})
    log_event(
        "info",
        f"order.transition_{outcome.result.value}",
        vendor_id=vendor_id,
        order_id=order_id,
        extra={
            "from": previous.value if previous else None,
            "to": status.value,
            "reason": outcome.reason,
        },
    )
    return outcome


def _mature(db: Session, state, now: datetime) -> bool:
    matures_at = ensure_utc(state.matures_at)
    if not state.earning_posted or state.matured or state.reversed:
        return False
    if matures_at is None or matures_at > now:
        return False

    order_id, vendor_id = state.order_id, state.vendor_id
    ref = _order_ref(order_id)
    # pending may have been debited by an operator since delivery
    net = min(state.vendor_net or 0, max(get_balance(vendor_id, db).pending, 0))
    if net > 0:
        post_transaction(
            db, vendor_id, TransactionType.EARNING_MATURED, -net,
            bucket=BalanceBucket.PENDING, reference=ref,
            description=f"Earning matured for order {order_id}", now=now,
        )
        post_transaction(
            db, vendor_id, TransactionType.EARNING_MATURED, net,
            bucket=BalanceBucket.AVAILABLE, reference=ref,
            description=f"Earning available for order {order_id}", now=now,
        )
    db.execute(
        update(vendor_orders)
        .where(vendor_orders.c.order_id == order_id, vendor_orders.c.vendor_id == vendor_id)
        .values(matured=True, updated_at=now)
    )
    emit_event(db, "wallet.earning_matured", {"order_id": order_id, "amount": net}, vendor_id=vendor_id, now=now)
    return True


def mature_order_earning(order_id: str, vendor_id: str, now: Optional[datetime] = None) -> bool:
    """Mature one earning if it is due. True when funds moved; safe to repeat."""
    now = ensure_utc(now) or utc_now()
    with vendor_session(vendor_id) as db:
        state = _load_state(db, order_id, vendor_id)
        if state is None:
            return False
        return _mature(db, state, now)


def mature_earnings(now: Optional[datetime] = None, batch_size: Optional[int] = None) -> SweepReport:
    """Sweep: move every due earning from pending to available."""
    now = ensure_utc(now) or utc_now()
    limit = batch_size or settings.SWEEP_BATCH_SIZE
    report = SweepReport(job="maturation")

    with get_db_session() as db:
        due = db.execute(
            select(vendor_orders.c.order_id, vendor_orders.c.vendor_id)
            .where(vendor_orders.c.earning_posted.is_(True))
            .where(vendor_orders.c.matured.is_(False))
            .where(vendor_orders.c.reversed.is_(False))
            .where(vendor_orders.c.matures_at <= now)
            .order_by(vendor_orders.c.matures_at)
            .limit(limit)
        ).fetchall()

    for order_id, vendor_id in due:
        try:
            if mature_order_earning(order_id, vendor_id, now):
                report.processed += 1
                log_event("info", "wallet.earning_matured", vendor_id=vendor_id, order_id=order_id)
            else:
                report.skipped += 1
        except Exception as exc:
            logger.exception("wallet.maturation_failed", extra={"vendor_id": vendor_id, "order_id": order_id})
            report.failures.append(SweepFailure(key=f"{vendor_id}:{order_id}", error=str(exc)))

    sweep_runs_total.inc(labels={"job": report.job, "status": "ok" if report.ok else "partial"})
    return report
