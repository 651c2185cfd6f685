"""
Operator endpoints: payout queue and transitions, manual adjustments,
commission overrides, reconciliation and on-demand sweeps.
All require the X-Admin-Key header.
"""

import logging
from decimal import Decimal
from typing import Dict, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from marketplace.api.serializers import payout_view, subscription_view, transaction_view
from marketplace.core.admin_auth import AdminActor, require_admin
from marketplace.features.orders.lifecycle import mature_earnings
from marketplace.features.payouts.service import (
    list_payouts_by_status,
    mark_completed,
    mark_processing,
    mark_rejected,
)
from marketplace.features.subscriptions.service import materialize_scheduled_changes, override_commission_rate
from marketplace.features.wallet.ledger import post_adjustment
from marketplace.features.wallet.reconciliation import run_reconciliation
from marketplace.models.payout import PayoutStatus

logger = logging.getLogger("marketplace.admin")

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class PayoutNoteIn(BaseModel):
    note: Optional[str] = None


class AdjustmentIn(BaseModel):
    amount: int
    reason: str = Field(..., min_length=1)
    bucket: Literal["available", "pending"] = "available"

    @field_validator("reason")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class CommissionOverrideIn(BaseModel):
    commissionRate: Decimal = Field(..., ge=0, le=100)


@router.get("/payouts")
def payout_queue(status: Optional[PayoutStatus] = None, actor: AdminActor = Depends(require_admin)) -> Dict:
    payouts = list_payouts_by_status(status)
    return {"payouts": [payout_view(p) for p in payouts], "count": len(payouts)}


@router.post("/payouts/{payout_id}/processing")
def payout_processing(payout_id: str, actor: AdminActor = Depends(require_admin)) -> Dict:
    return payout_view(mark_processing(payout_id, actor=actor.actor_id))


@router.post("/payouts/{payout_id}/complete")
def payout_complete(payout_id: str, body: Optional[PayoutNoteIn] = None, actor: AdminActor = Depends(require_admin)) -> Dict:
    note = body.note if body else None
    return payout_view(mark_completed(payout_id, note, actor=actor.actor_id))


@router.post("/payouts/{payout_id}/reject")
def payout_reject(payout_id: str, body: Optional[PayoutNoteIn] = None, actor: AdminActor = Depends(require_admin)) -> Dict:
    note = body.note if body else None
    return payout_view(mark_rejected(payout_id, note, actor=actor.actor_id))


@router.post("/vendors/{vendor_id}/adjustments", status_code=201)
def create_adjustment(vendor_id: str, body: AdjustmentIn, actor: AdminActor = Depends(require_admin)) -> Dict:
    tx = post_adjustment(vendor_id, body.amount, body.reason, bucket=body.bucket, actor=actor.actor_id)
    logger.info("admin.adjustment", extra={"vendor_id": vendor_id, "status": "posted"})
    return transaction_view(tx)


@router.put("/vendors/{vendor_id}/commission")
def set_commission(vendor_id: str, body: CommissionOverrideIn, actor: AdminActor = Depends(require_admin)) -> Dict:
    return subscription_view(override_commission_rate(vendor_id, body.commissionRate, actor=actor.actor_id))


@router.post("/reconcile")
def reconcile(vendor_id: Optional[str] = None, actor: AdminActor = Depends(require_admin)) -> Dict:
    return run_reconciliation(vendor_id)


@router.post("/sweeps")
def run_sweeps(actor: AdminActor = Depends(require_admin)) -> Dict:
    """Run both background sweeps once, scheduled plan changes first."""
    plan_report = materialize_scheduled_changes()
    maturation_report = mature_earnings()
    return {
        "planChanges": plan_report.model_dump(),
        "maturation": maturation_report.model_dump(),
    }
