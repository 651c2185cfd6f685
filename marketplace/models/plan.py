"""
marketplace/models/plan.py

Subscription plan tiers.

A plan carries the commission rate the platform keeps on each sale, its
price per billing cycle and the feature limits it grants. Plans are frozen:
history is explained by the rate recorded on each transaction, never by
re-reading the catalog.
"""

from decimal import Decimal
from typing import Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

BillingCycle = Literal["monthly", "yearly"]
BILLING_CYCLES = ("monthly", "yearly")

UNLIMITED = -1


class Plan(BaseModel):
    """
    Plan represents a subscription tier.

    Examples:
    - starter (free, 15% commission)
    - professional
    - enterprise
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    commission_rate: Decimal = Field(ge=0, le=100, decimal_places=2)
    price_monthly: int = Field(ge=0)
    price_yearly: int = Field(ge=0)
    limits: Dict[str, Union[bool, int]] = Field(default_factory=dict)
    features: List[str] = Field(default_factory=list)

    def price_for(self, billing_cycle: str) -> int:
        return self.price_yearly if billing_cycle == "yearly" else self.price_monthly

    @property
    def is_free(self) -> bool:
        return self.price_monthly == 0 and self.price_yearly == 0
