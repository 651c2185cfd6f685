"""
marketplace/models/wallet.py

Wallet ledger types: transaction kinds, balance buckets and the read models
served to vendors.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    ORDER_EARNING = "order_earning"
    EARNING_MATURED = "earning_matured"
    COMMISSION = "commission"
    PAYOUT = "payout"
    REFUND_DEBIT = "refund_debit"
    PENDING_CANCELLED = "pending_cancelled"
    ADJUSTMENT = "adjustment"


class BalanceBucket(str, Enum):
    """Which running balance a transaction moves. NONE is reporting only."""
    AVAILABLE = "available"
    PENDING = "pending"
    NONE = "none"


class ReferenceType(str, Enum):
    ORDER = "order"
    PAYOUT = "payout"


class Reference(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ReferenceType
    id: str


class Transaction(BaseModel):
    """Immutable ledger entry. Corrections are new offsetting entries."""
    model_config = ConfigDict(frozen=True)

    id: str
    vendor_id: str
    sequence: int
    type: TransactionType
    bucket: BalanceBucket
    amount: int
    balance_after: int
    pending_after: int
    reference: Optional[Reference] = None
    description: Optional[str] = None
    reason: Optional[str] = None
    commission_rate: Optional[Decimal] = None
    needs_reconciliation: bool = False
    created_at: datetime


class Balance(BaseModel):
    model_config = ConfigDict(frozen=True)

    available: int
    pending: int


class TransactionPage(BaseModel):
    items: List[Transaction] = Field(default_factory=list)
    next_page_token: Optional[str] = None


class WalletSummary(BaseModel):
    vendor_id: str
    available: int
    pending: int
    total_earnings: int
    total_commission_paid: int
    total_payouts: int
    last_payout_date: Optional[datetime] = None
    commission_rate: Decimal
