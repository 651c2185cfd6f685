"""camelCase JSON views of domain models for the HTTP layer."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from marketplace.models.payout import PayoutRequest
from marketplace.models.plan import Plan
from marketplace.models.subscription import Subscription
from marketplace.models.wallet import Transaction, WalletSummary


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _rate(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def plan_view(plan: Plan) -> Dict:
    return {
        "planId": plan.plan_id,
        "name": plan.name,
        "commissionRate": _rate(plan.commission_rate),
        "priceMonthly": plan.price_monthly,
        "priceYearly": plan.price_yearly,
        "limits": dict(plan.limits),
        "features": list(plan.features),
    }


def subscription_view(sub: Subscription) -> Dict:
    return {
        "vendorId": sub.vendor_id,
        "currentPlan": sub.plan_id,
        "billingCycle": sub.billing_cycle,
        "isActive": sub.is_active,
        "autoRenew": sub.auto_renew,
        "startDate": _iso(sub.start_date),
        "endDate": _iso(sub.end_date),
        "upcomingPlan": sub.upcoming_plan_id,
        "upcomingPlanDate": _iso(sub.upcoming_plan_date),
        "commissionRate": _rate(sub.commission_rate),
    }


def wallet_view(summary: WalletSummary) -> Dict:
    return {
        "vendorId": summary.vendor_id,
        "available": summary.available,
        "pending": summary.pending,
        "totalEarnings": summary.total_earnings,
        "totalCommissionPaid": summary.total_commission_paid,
        "totalPayouts": summary.total_payouts,
        "lastPayoutDate": _iso(summary.last_payout_date),
        "commissionRate": _rate(summary.commission_rate),
    }


def transaction_view(tx: Transaction) -> Dict:
    return {
        "id": tx.id,
        "sequence": tx.sequence,
        "type": tx.type.value,
        "bucket": tx.bucket.value,
        "amount": tx.amount,
        "balanceAfter": tx.balance_after,
        "pendingAfter": tx.pending_after,
        "reference": {"type": tx.reference.type.value, "id": tx.reference.id} if tx.reference else None,
        "description": tx.description,
        "reason": tx.reason,
        "commissionRate": _rate(tx.commission_rate),
        "needsReconciliation": tx.needs_reconciliation,
        "createdAt": _iso(tx.created_at),
    }


def payout_view(payout: PayoutRequest) -> Dict:
    return {
        "payoutId": payout.id,
        "vendorId": payout.vendor_id,
        "amount": payout.amount,
        "status": payout.status.value,
        "note": payout.note,
        "requestedAt": _iso(payout.requested_at),
        "processingAt": _iso(payout.processing_at),
        "completedAt": _iso(payout.completed_at),
        "rejectedAt": _iso(payout.rejected_at),
    }
