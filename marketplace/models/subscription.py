"""
marketplace/models/subscription.py

A vendor's subscription: the plan in force plus an optional scheduled change.

Constraint: each vendor has exactly one subscription, created at onboarding.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Subscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    vendor_id: str
    plan_id: str
    billing_cycle: str
    is_active: bool
    auto_renew: bool
    start_date: datetime
    end_date: Optional[datetime] = None
    upcoming_plan_id: Optional[str] = None
    upcoming_plan_date: Optional[datetime] = None
    commission_rate: Decimal

    @property
    def has_scheduled_change(self) -> bool:
        return self.upcoming_plan_id is not None


class SubscriptionCharge(BaseModel):
    """Recorded when a paid plan is activated immediately."""
    model_config = ConfigDict(frozen=True)

    id: str
    vendor_id: str
    plan_id: str
    billing_cycle: str
    amount: int
    reference: str
    created_at: datetime
