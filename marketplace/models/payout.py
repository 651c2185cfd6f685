"""
marketplace/models/payout.py

Payout requests and their short administrative state machine.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


IN_FLIGHT_STATUSES = (PayoutStatus.REQUESTED, PayoutStatus.PROCESSING)


class PayoutRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    vendor_id: str
    amount: int
    status: PayoutStatus
    note: Optional[str] = None
    debit_transaction_id: Optional[str] = None
    reversal_transaction_id: Optional[str] = None
    requested_at: datetime
    processing_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
