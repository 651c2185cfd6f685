"""
marketplace/models/order.py

Order statuses as observed from the order service, and the typed result of
feeding one status change into the wallet.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class TransitionResult(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"


class TransitionOutcome(BaseModel):
    """
    Outcome of one order status change.

    An invalid or replayed transition is reported as IGNORED with a reason
    (``invalid_transition`` or ``replay``); it is never raised, since the
    order service delivers status events at least once.
    """
    order_id: str
    vendor_id: str
    result: TransitionResult
    previous_status: Optional[OrderStatus] = None
    status: OrderStatus
    reason: Optional[str] = None
    transaction_ids: List[str] = Field(default_factory=list)
    reconciliation_required: bool = False

    @property
    def applied(self) -> bool:
        return self.result == TransitionResult.APPLIED
