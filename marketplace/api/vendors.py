"""
Vendor-facing wallet, payout and subscription endpoints.

Vendor identity is verified upstream; the path vendor_id is trusted here.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from marketplace.api.serializers import payout_view, subscription_view, transaction_view, wallet_view
from marketplace.core.database import get_db
from marketplace.features.payouts.service import list_payouts, request_payout
from marketplace.features.subscriptions.service import get_subscription, register_vendor, select_plan
from marketplace.features.wallet.ledger import get_wallet_summary, list_transactions

router = APIRouter(prefix="/v1/vendors", tags=["vendors"])


class RegisterVendorIn(BaseModel):
    vendorId: str

    @field_validator("vendorId")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class PayoutIn(BaseModel):
    amount: int


class SelectPlanIn(BaseModel):
    planId: str
    billingCycle: str = "monthly"

    @field_validator("planId", "billingCycle")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


@router.post("", status_code=201)
def register(body: RegisterVendorIn) -> Dict:
    """Onboard a vendor: wallet account plus free-tier subscription."""
    subscription = register_vendor(body.vendorId)
    return {"vendorId": body.vendorId, "subscription": subscription_view(subscription)}


@router.get("/{vendor_id}/wallet")
def wallet_summary(vendor_id: str, db: Session = Depends(get_db)) -> Dict:
    return wallet_view(get_wallet_summary(vendor_id, db))


@router.get("/{vendor_id}/wallet/transactions")
def wallet_transactions(
    vendor_id: str,
    type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    page_token: Optional[str] = None,
    db: Session = Depends(get_db),
) -> Dict:
    """Newest-first transaction feed; pass nextPageToken back as page_token."""
    page = list_transactions(db, vendor_id, tx_type=type or None, limit=limit, page_token=page_token)
    return {
        "vendorId": vendor_id,
        "transactions": [transaction_view(t) for t in page.items],
        "count": len(page.items),
        "nextPageToken": page.next_page_token,
    }


@router.post("/{vendor_id}/payouts", status_code=201)
def create_payout(vendor_id: str, body: PayoutIn) -> Dict:
    payout = request_payout(vendor_id, body.amount)
    return {"payoutId": payout.id, "status": payout.status.value, "amount": payout.amount}


@router.get("/{vendor_id}/payouts")
def vendor_payouts(vendor_id: str) -> Dict:
    payouts = list_payouts(vendor_id)
    return {"vendorId": vendor_id, "payouts": [payout_view(p) for p in payouts], "count": len(payouts)}


@router.get("/{vendor_id}/subscription")
def subscription(vendor_id: str) -> Dict:
    return subscription_view(get_subscription(vendor_id))


@router.post("/{vendor_id}/subscription")
def change_subscription(vendor_id: str, body: SelectPlanIn) -> Dict:
    return subscription_view(select_plan(vendor_id, body.planId, body.billingCycle))
