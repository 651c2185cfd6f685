"""
Internal hook for the order service.

The order service calls this on every status change of an order, once per
vendor in the order. Delivery is at least once; replays come back as
`ignored` with HTTP 200.
"""
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from marketplace.core.admin_auth import AdminActor, require_admin
from marketplace.features.orders.lifecycle import on_order_status_changed

router = APIRouter(prefix="/v1/internal/orders", tags=["internal"])


class OrderStatusChangedIn(BaseModel):
    orderId: str
    vendorId: str
    status: str
    subtotal: int

    @field_validator("orderId", "vendorId", "status")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


@router.post("/status")
def order_status_changed(body: OrderStatusChangedIn, actor: AdminActor = Depends(require_admin)) -> Dict:
    outcome = on_order_status_changed(body.orderId, body.vendorId, body.status, body.subtotal)
    return {
        "orderId": outcome.order_id,
        "vendorId": outcome.vendor_id,
        "result": outcome.result.value,
        "previousStatus": outcome.previous_status.value if outcome.previous_status else None,
        "status": outcome.status.value,
        "reason": outcome.reason,
        "transactionIds": outcome.transaction_ids,
        "reconciliationRequired": outcome.reconciliation_required,
    }
