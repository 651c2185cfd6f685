"""
marketplace/features/subscriptions/service.py

Subscription manager.

Handles:
- Vendor onboarding (wallet account + free-tier subscription, created together)
- Plan selection: upgrades and lateral moves apply now, downgrades wait for the cycle end
- Materializing scheduled downgrades (periodic sweep and lazy check on read)
- The cached commission rate every order is charged at
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, NamedTuple, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.core.config import settings
from marketplace.core.database import (
    ensure_utc,
    get_db_session,
    subscription_charges,
    subscriptions,
    utc_now,
    vendor_accounts,
)
from marketplace.core.errors import AccountNotFoundError, ConflictError, ValidationError
from marketplace.core.logging import log_event
from marketplace.core.metrics import plan_changes_total, sweep_runs_total
from marketplace.features.commission.engine import bps_to_rate, rate_to_bps
from marketplace.features.events.outbox import emit_event
from marketplace.features.plans.catalog import get_plan_catalog, validate_billing_cycle
from marketplace.features.wallet.ledger import vendor_session
from marketplace.models.plan import Plan
from marketplace.models.subscription import Subscription, SubscriptionCharge
from marketplace.models.sweep import SweepFailure, SweepReport

logger = logging.getLogger("marketplace.subscriptions")


class _Terms(NamedTuple):
    """Plan terms fixed at the moment a plan is chosen."""
    plan_id: str
    commission_bps: int
    price: int


def _terms_for(plan: Plan, billing_cycle: str) -> _Terms:
    return _Terms(plan.plan_id, rate_to_bps(plan.commission_rate), plan.price_for(billing_cycle))


def _cycle_end(price: int, billing_cycle: str, start: datetime) -> Optional[datetime]:
    """Free plans never expire; paid plans run for one billing cycle."""
    if price == 0:
        return None
    days = settings.YEARLY_CYCLE_DAYS if billing_cycle == "yearly" else settings.MONTHLY_CYCLE_DAYS
    return start + timedelta(days=days)


def _load_subscription_row(db: Session, vendor_id: str):
    row = db.execute(select(subscriptions).where(subscriptions.c.vendor_id == vendor_id)).first()
    if row is None:
        raise AccountNotFoundError(f"No subscription for vendor {vendor_id}")
    return row


def _to_subscription(db: Session, vendor_id: str) -> Subscription:
    row = _load_subscription_row(db, vendor_id)
    bps = db.execute(
        select(vendor_accounts.c.commission_bps).where(vendor_accounts.c.vendor_id == vendor_id)
    ).scalar()
    return Subscription(
        vendor_id=row.vendor_id,
        plan_id=row.plan_id,
        billing_cycle=row.billing_cycle,
        is_active=bool(row.is_active),
        auto_renew=bool(row.auto_renew),
        start_date=ensure_utc(row.start_date),
        end_date=ensure_utc(row.end_date),
        upcoming_plan_id=row.upcoming_plan_id,
        upcoming_plan_date=ensure_utc(row.upcoming_plan_date),
        commission_rate=bps_to_rate(bps),
    )


def _set_cached_rate(db: Session, vendor_id: str, commission_bps: int, now: datetime) -> None:
    db.execute(
        update(vendor_accounts)
        .where(vendor_accounts.c.vendor_id == vendor_id)
        .values(commission_bps=commission_bps, updated_at=now)
    )


def _record_charge(db: Session, vendor_id: str, terms: _Terms, billing_cycle: str, reference: str, now: datetime) -> None:
    if terms.price <= 0:
        return
    db.execute(
        insert(subscription_charges).values(
            id=str(uuid.uuid4()),
            vendor_id=vendor_id,
            plan_id=terms.plan_id,
            billing_cycle=billing_cycle,
            amount=terms.price,
            reference=reference,
            created_at=now,
        )
    )


def _activate(db: Session, vendor_id: str, terms: _Terms, billing_cycle: str, start: datetime, charge_reference: str) -> None:
    """Make the plan in `terms` current from `start`, clear any schedule and refresh the cached rate."""
    db.execute(
        update(subscriptions)
        .where(subscriptions.c.vendor_id == vendor_id)
        .values(
            plan_id=terms.plan_id,
            billing_cycle=billing_cycle,
            is_active=True,
            auto_renew=terms.price > 0,
            start_date=start,
            end_date=_cycle_end(terms.price, billing_cycle, start),
            upcoming_plan_id=None,
            upcoming_plan_date=None,
            upcoming_billing_cycle=None,
            upcoming_commission_bps=None,
            upcoming_price=None,
            updated_at=start,
        )
    )
    _set_cached_rate(db, vendor_id, terms.commission_bps, start)
    _record_charge(db, vendor_id, terms, billing_cycle, charge_reference, start)


def register_vendor(vendor_id: str, now: Optional[datetime] = None) -> Subscription:
    """Onboard a vendor: zero-balance wallet plus a subscription on the default plan."""
    if not vendor_id or not vendor_id.strip():
        raise ValidationError("vendor_id is required")
    now = ensure_utc(now) or utc_now()
    plan = get_plan_catalog().get_plan(settings.DEFAULT_PLAN_ID)
    terms = _terms_for(plan, "monthly")

    try:
        with vendor_session(vendor_id, require_account=False) as db:
            exists = db.execute(
                select(vendor_accounts.c.vendor_id).where(vendor_accounts.c.vendor_id == vendor_id)
            ).first()
            if exists:
                raise ConflictError(f"Vendor {vendor_id} is already registered", code="vendor_exists")

            db.execute(
                insert(vendor_accounts).values(
                    vendor_id=vendor_id,
                    commission_bps=terms.commission_bps,
                    available_balance=0,
                    pending_balance=0,
                    last_sequence=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            db.execute(
                insert(subscriptions).values(
                    vendor_id=vendor_id,
                    plan_id=plan.plan_id,
                    billing_cycle="monthly",
                    is_active=True,
                    auto_renew=terms.price > 0,
                    start_date=now,
                    end_date=_cycle_end(terms.price, "monthly", now),
                    updated_at=now,
                )
            )
            db.flush()
            subscription = _to_subscription(db, vendor_id)
    except IntegrityError as exc:
        raise ConflictError(f"Vendor {vendor_id} is already registered", code="vendor_exists") from exc

    log_event("info", "vendor.registered", vendor_id=vendor_id, extra={"plan_id": plan.plan_id})
    return subscription


def _materialize_due(db: Session, vendor_id: str, now: datetime) -> bool:
    """Promote a due scheduled change. Returns True if one was applied."""
    row = _load_subscription_row(db, vendor_id)
    due_at = ensure_utc(row.upcoming_plan_date)
    if row.upcoming_plan_id is None or due_at is None or due_at > now:
        return False

    billing_cycle = row.upcoming_billing_cycle or row.billing_cycle
    if row.upcoming_commission_bps is not None and row.upcoming_price is not None:
        # terms saved when the change was scheduled
        terms = _Terms(row.upcoming_plan_id, row.upcoming_commission_bps, row.upcoming_price)
    else:
        terms = _terms_for(get_plan_catalog().get_plan(row.upcoming_plan_id), billing_cycle)
    previous_plan_id = row.plan_id
    # The new cycle starts at the boundary, not when the sweep happened to run
    _activate(
        db,
        vendor_id,
        terms,
        billing_cycle,
        due_at,
        charge_reference=f"{vendor_id}:{terms.plan_id}:{due_at.isoformat()}",
    )
    emit_event(
        db,
        "subscription.changed",
        {
            "previous_plan_id": previous_plan_id,
            "plan_id": terms.plan_id,
            "billing_cycle": billing_cycle,
            "commission_rate": bps_to_rate(terms.commission_bps),
            "effective_at": due_at,
            "scheduled": True,
        },
        vendor_id=vendor_id,
        now=now,
    )
    plan_changes_total.inc(labels={"kind": "materialized"})
    log_event(
        "info",
        "subscription.materialized",
        vendor_id=vendor_id,
        extra={"from": previous_plan_id, "to": terms.plan_id, "effective_at": due_at.isoformat()},
    )
    return True


def select_plan(vendor_id: str, plan_id: str, billing_cycle: str = "monthly", now: Optional[datetime] = None) -> Subscription:
    """
    Change a vendor's plan.

    Prices are compared for the requested billing cycle. A plan costing the
    same or more applies immediately; a cheaper plan is scheduled for the end
    of the current cycle when there is an unexpired cycle to finish, and
    applies immediately otherwise.

    Raises:
        ValidationError: unknown billing cycle
        UnknownPlanError: plan id not in the catalog
        AccountNotFoundError: vendor not registered
    """
    validate_billing_cycle(billing_cycle)
    catalog = get_plan_catalog()
    plan = catalog.get_plan(plan_id)
    now = ensure_utc(now) or utc_now()

    with vendor_session(vendor_id) as db:
        _materialize_due(db, vendor_id, now)
        row = _load_subscription_row(db, vendor_id)

        current_price = (
            catalog.get_plan(row.plan_id).price_for(billing_cycle) if catalog.has_plan(row.plan_id) else 0
        )
        terms = _terms_for(plan, billing_cycle)
        new_price = terms.price
        end_date = ensure_utc(row.end_date)

        if new_price < current_price and row.is_active and end_date is not None and end_date > now:
            db.execute(
                update(subscriptions)
                .where(subscriptions.c.vendor_id == vendor_id)
                .values(
                    upcoming_plan_id=plan.plan_id,
                    upcoming_plan_date=end_date,
                    upcoming_billing_cycle=billing_cycle,
                    upcoming_commission_bps=terms.commission_bps,
                    upcoming_price=terms.price,
                    auto_renew=False,
                    updated_at=now,
                )
            )
            emit_event(
                db,
                "subscription.downgrade_scheduled",
                {
                    "current_plan_id": row.plan_id,
                    "upcoming_plan_id": plan.plan_id,
                    "upcoming_plan_date": end_date,
                },
                vendor_id=vendor_id,
                now=now,
            )
            kind = "deferred"
        else:
            _activate(db, vendor_id, terms, billing_cycle, now, charge_reference=f"chg_{uuid.uuid4().hex}")
            emit_event(
                db,
                "subscription.changed",
                {
                    "previous_plan_id": row.plan_id,
                    "plan_id": plan.plan_id,
                    "billing_cycle": billing_cycle,
                    "commission_rate": plan.commission_rate,
                    "effective_at": now,
                    "scheduled": False,
                },
                vendor_id=vendor_id,
                now=now,
            )
            kind = "immediate"

        db.flush()
        subscription = _to_subscription(db, vendor_id)

    plan_changes_total.inc(labels={"kind": kind})
    log_event(
        "info",
        f"subscription.{kind}",
        vendor_id=vendor_id,
        extra={"from": row.plan_id, "to": plan.plan_id, "billing_cycle": billing_cycle},
    )
    return subscription


def materialize_scheduled_changes(now: Optional[datetime] = None, batch_size: Optional[int] = None) -> SweepReport:
    """
    Promote every scheduled change whose date has passed.

    Each vendor is handled in its own unit of work. A failure is logged and
    left in place for the next run; re-running after an interruption is safe
    because the due check is repeated under the vendor lock.
    """
    now = ensure_utc(now) or utc_now()
    limit = batch_size or settings.SWEEP_BATCH_SIZE
    report = SweepReport(job="plan_changes")

    with get_db_session() as db:
        vendor_ids = [
            r.vendor_id
            for r in db.execute(
                select(subscriptions.c.vendor_id)
                .where(subscriptions.c.upcoming_plan_id.is_not(None))
                .where(subscriptions.c.upcoming_plan_date <= now)
                .order_by(subscriptions.c.upcoming_plan_date)
                .limit(limit)
            ).fetchall()
        ]

    for vendor_id in vendor_ids:
        try:
            with vendor_session(vendor_id) as db:
                applied = _materialize_due(db, vendor_id, now)
            if applied:
                report.processed += 1
            else:
                report.skipped += 1
        except Exception as exc:
            logger.exception("subscription.materialize_failed", extra={"vendor_id": vendor_id})
            report.failures.append(SweepFailure(key=vendor_id, error=str(exc)))

    sweep_runs_total.inc(labels={"job": report.job, "status": "ok" if report.ok else "partial"})
    return report


def effective_rate(db: Session, vendor_id: str, now: Optional[datetime] = None) -> Decimal:
    """
    The commission rate in force for `vendor_id` right now.

    Reads the vendor's cached rate, after promoting a scheduled change that
    has come due. Call inside `vendor_session(vendor_id)`.
    """
    now = ensure_utc(now) or utc_now()
    _materialize_due(db, vendor_id, now)
    bps = db.execute(
        select(vendor_accounts.c.commission_bps).where(vendor_accounts.c.vendor_id == vendor_id)
    ).scalar()
    if bps is None:
        raise AccountNotFoundError(f"No wallet account for vendor {vendor_id}")
    return bps_to_rate(bps)


def get_effective_rate(vendor_id: str, now: Optional[datetime] = None) -> Decimal:
    with vendor_session(vendor_id) as db:
        return effective_rate(db, vendor_id, now)


def get_subscription(vendor_id: str, now: Optional[datetime] = None) -> Subscription:
    now = ensure_utc(now) or utc_now()
    with vendor_session(vendor_id) as db:
        _materialize_due(db, vendor_id, now)
        db.flush()
        return _to_subscription(db, vendor_id)


def override_commission_rate(
    vendor_id: str,
    commission_rate,
    *,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Operator override of the cached rate. The next plan change replaces it."""
    bps = rate_to_bps(commission_rate)
    now = ensure_utc(now) or utc_now()
    with vendor_session(vendor_id) as db:
        previous = db.execute(
            select(vendor_accounts.c.commission_bps).where(vendor_accounts.c.vendor_id == vendor_id)
        ).scalar()
        _set_cached_rate(db, vendor_id, bps, now)
        emit_event(
            db,
            "subscription.commission_overridden",
            {"previous_rate": bps_to_rate(previous), "commission_rate": bps_to_rate(bps), "actor": actor},
            vendor_id=vendor_id,
            now=now,
        )
        db.flush()
        subscription = _to_subscription(db, vendor_id)

    log_event(
        "warning",
        "subscription.commission_overridden",
        vendor_id=vendor_id,
        extra={"previous_bps": previous, "bps": bps, "actor": actor},
    )
    return subscription


def list_subscription_charges(vendor_id: str) -> List[SubscriptionCharge]:
    with get_db_session() as db:
        rows = db.execute(
            select(subscription_charges)
            .where(subscription_charges.c.vendor_id == vendor_id)
            .order_by(subscription_charges.c.created_at)
        ).fetchall()
    return [
        SubscriptionCharge(
            id=r.id,
            vendor_id=r.vendor_id,
            plan_id=r.plan_id,
            billing_cycle=r.billing_cycle,
            amount=r.amount,
            reference=r.reference,
            created_at=ensure_utc(r.created_at),
        )
        for r in rows
    ]
