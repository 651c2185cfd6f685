"""
Ledger reconciliation job.

Checks ledger integrity per vendor and reports drift. Read-only: it never
rewrites history or touches cached balances. Operators fix findings with
adjustments.

Checks:
1. Cached available/pending balances vs the sums of the log
2. The balance_after / pending_after chain vs running prefix sums
3. Sequence gaps
4. Negative balances and transactions flagged for reconciliation
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select

from marketplace.core.database import ensure_utc, get_db_session, utc_now, vendor_accounts, wallet_transactions
from marketplace.core.logging import log_event
from marketplace.core.metrics import reconciliation_mismatches, sweep_runs_total
from marketplace.features.events.outbox import emit_event
from marketplace.features.wallet.ledger import vendor_session
from marketplace.models.wallet import BalanceBucket

logger = logging.getLogger("marketplace.reconciliation")

DRIFT_TYPES = frozenset({"balance_mismatch", "snapshot_mismatch", "sequence_gap", "sequence_mismatch"})


def _reconcile_vendor(db, account) -> List[Dict]:
    issues: List[Dict] = []
    vendor_id = account.vendor_id
    rows = db.execute(
        select(wallet_transactions)
        .where(wallet_transactions.c.vendor_id == vendor_id)
        .order_by(wallet_transactions.c.sequence)
    ).fetchall()

    available = 0
    pending = 0
    expected_sequence = 1
    for row in rows:
        if row.sequence != expected_sequence:
            issues.append({
                "type": "sequence_gap",
                "vendor_id": vendor_id,
                "expected_sequence": expected_sequence,
                "sequence": row.sequence,
            })
        expected_sequence = row.sequence + 1

        if row.bucket == BalanceBucket.AVAILABLE.value:
            available += row.amount
        elif row.bucket == BalanceBucket.PENDING.value:
            pending += row.amount

        if row.balance_after != available or row.pending_after != pending:
            issues.append({
                "type": "snapshot_mismatch",
                "vendor_id": vendor_id,
                "transaction_id": row.id,
                "sequence": row.sequence,
                "balance_after": row.balance_after,
                "expected_balance_after": available,
                "pending_after": row.pending_after,
                "expected_pending_after": pending,
            })

        if row.needs_reconciliation:
            issues.append({
                "type": "flagged_transaction",
                "vendor_id": vendor_id,
                "transaction_id": row.id,
                "sequence": row.sequence,
                "amount": row.amount,
                "reference_id": row.reference_id,
            })

    ledger_available = sum(r.amount for r in rows if r.bucket == BalanceBucket.AVAILABLE.value)
    ledger_pending = sum(r.amount for r in rows if r.bucket == BalanceBucket.PENDING.value)
    if ledger_available != account.available_balance or ledger_pending != account.pending_balance:
        issues.append({
            "type": "balance_mismatch",
            "vendor_id": vendor_id,
            "ledger_available": ledger_available,
            "cached_available": account.available_balance,
            "ledger_pending": ledger_pending,
            "cached_pending": account.pending_balance,
        })
    if rows and rows[-1].sequence != account.last_sequence:
        issues.append({
            "type": "sequence_mismatch",
            "vendor_id": vendor_id,
            "last_sequence": account.last_sequence,
            "ledger_last_sequence": rows[-1].sequence,
        })
    if account.available_balance < 0 or account.pending_balance < 0:
        issues.append({
            "type": "negative_balance",
            "vendor_id": vendor_id,
            "available": account.available_balance,
            "pending": account.pending_balance,
        })
    return issues


def run_reconciliation(vendor_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict:
    """
    Run reconciliation over every vendor (or one).

    Each vendor is checked inside its own `vendor_session`, so the account row
    and the log are read together with no posting in between.

    Balance and snapshot mismatches are also written to the outbox as
    `wallet.drift_detected`; flagged refunds and negative balances are
    reported only, they were announced when posted.

    Returns reconciliation report.
    """
    now = ensure_utc(now) or utc_now()
    issues: List[Dict] = []

    with get_db_session() as db:
        query = select(vendor_accounts.c.vendor_id).order_by(vendor_accounts.c.vendor_id)
        if vendor_id is not None:
            query = query.where(vendor_accounts.c.vendor_id == vendor_id)
        vendor_ids = [r.vendor_id for r in db.execute(query).fetchall()]

    for vid in vendor_ids:
        with vendor_session(vid) as db:
            account = db.execute(select(vendor_accounts).where(vendor_accounts.c.vendor_id == vid)).first()
            vendor_issues = _reconcile_vendor(db, account)
            drift = [i for i in vendor_issues if i["type"] in DRIFT_TYPES]
            if drift:
                emit_event(
                    db,
                    "wallet.drift_detected",
                    {"issues": drift, "reconciled_at": now},
                    vendor_id=vid,
                    now=now,
                )
                log_event(
                    "warning",
                    "wallet.drift_detected",
                    vendor_id=vid,
                    error_code="ledger_drift",
                    extra={"issues": len(drift)},
                )
        issues.extend(vendor_issues)

    counts: Dict[str, int] = {}
    for issue in issues:
        counts[issue["type"]] = counts.get(issue["type"], 0) + 1

    reconciliation_mismatches.set(sum(v for k, v in counts.items() if k in DRIFT_TYPES))
    sweep_runs_total.inc(labels={"job": "reconciliation", "status": "ok"})
    logger.info("reconciliation.complete", extra={"status": "ok" if not issues else "issues"})

    return {
        "vendors_checked": len(vendor_ids),
        "issues_found": len(issues),
        "counts": counts,
        "issues": issues,
        "timestamp": now.isoformat(),
    }
