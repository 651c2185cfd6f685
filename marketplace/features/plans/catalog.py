"""
marketplace/features/plans/catalog.py

Plan catalog.

Handles:
- The built-in plan table (starter, professional, enterprise)
- Loading an operator-supplied table from PLAN_CATALOG_PATH
- Plan lookup, per-cycle pricing and product-limit entitlement checks
"""

import json
import logging
import threading
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from marketplace.core.config import settings
from marketplace.core.errors import UnknownPlanError, ValidationError
from marketplace.models.plan import BILLING_CYCLES, UNLIMITED, Plan

logger = logging.getLogger("marketplace.plans")


# Default plan configurations
DEFAULT_PLANS = {
    "starter": {
        "name": "Starter",
        "commission_rate": "15",
        "price_monthly": 0,
        "price_yearly": 0,
        "limits": {
            "max_products": 10,
            "max_images": 3,
            "priority_support": False,
            "featured_listing": False,
            "custom_shop_page": False,
            "auto_payouts": False,
        },
        "features": [
            "List up to 10 products",
            "Basic analytics dashboard",
            "Standard support",
            "Manual payout (weekly)",
        ],
    },
    "professional": {
        "name": "Professional",
        "commission_rate": "10",
        "price_monthly": 1999,
        "price_yearly": 19990,
        "limits": {
            "max_products": 100,
            "max_images": 5,
            "priority_support": True,
            "featured_listing": True,
            "featured_slots": 3,
            "custom_shop_page": True,
            "auto_payouts": True,
            "bulk_upload": True,
        },
        "features": [
            "List up to 100 products",
            "Advanced analytics & reports",
            "Priority support",
            "Featured product slots (3)",
            "Auto payouts (bi-weekly)",
        ],
    },
    "enterprise": {
        "name": "Enterprise",
        "commission_rate": "5",
        "price_monthly": 4999,
        "price_yearly": 49990,
        "limits": {
            "max_products": UNLIMITED,
            "max_images": 10,
            "priority_support": True,
            "dedicated_manager": True,
            "featured_listing": True,
            "featured_slots": 10,
            "custom_shop_page": True,
            "auto_payouts": True,
            "bulk_upload": True,
            "api_access": True,
        },
        "features": [
            "Unlimited products",
            "Real-time analytics",
            "Dedicated account manager",
            "Featured product slots (10)",
            "Auto payouts (weekly)",
        ],
    },
}


def _build_plans(config: Dict[str, dict]) -> List[Plan]:
    return [
        Plan(
            plan_id=plan_id,
            name=entry.get("name", plan_id),
            commission_rate=Decimal(str(entry["commission_rate"])),
            price_monthly=entry.get("price_monthly", 0),
            price_yearly=entry.get("price_yearly", 0),
            limits=entry.get("limits", {}),
            features=entry.get("features", []),
        )
        for plan_id, entry in config.items()
    ]


class PlanCatalog:
    """Read-only mapping of plan id to Plan."""

    def __init__(self, plans: Iterable[Plan]):
        self._plans: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in self._plans:
                raise ValueError(f"Duplicate plan id: {plan.plan_id}")
            self._plans[plan.plan_id] = plan

    def get_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise UnknownPlanError(f"Unknown plan: {plan_id}")
        return plan

    def has_plan(self, plan_id: str) -> bool:
        return plan_id in self._plans

    def list_plans(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: (p.price_monthly, p.plan_id))

    def price_for(self, plan_id: str, billing_cycle: str) -> int:
        validate_billing_cycle(billing_cycle)
        return self.get_plan(plan_id).price_for(billing_cycle)


def validate_billing_cycle(billing_cycle: str) -> str:
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(
            f"billing_cycle must be one of {', '.join(BILLING_CYCLES)}",
            code="invalid_billing_cycle",
        )
    return billing_cycle


def can_add_product(plan: Plan, current_product_count: int) -> bool:
    """Entitlement check: may a vendor on `plan` list one more product?"""
    max_products = plan.limits.get("max_products")
    if max_products is None:
        return False
    if max_products == UNLIMITED:
        return True
    return current_product_count < max_products


def load_plan_catalog(path: str) -> PlanCatalog:
    """Load a catalog from a JSON file shaped like DEFAULT_PLANS."""
    with open(path, "r", encoding="utf-8") as fh:
        config = json.load(fh)
    catalog = PlanCatalog(_build_plans(config))
    logger.info(f"[plans] loaded {len(config)} plans from {path}")
    return catalog


_catalog: Optional[PlanCatalog] = None
_catalog_lock = threading.Lock()


def get_plan_catalog() -> PlanCatalog:
    """Return the process-wide catalog, built on first use."""
    global _catalog
    with _catalog_lock:
        if _catalog is None:
            if settings.PLAN_CATALOG_PATH:
                _catalog = load_plan_catalog(settings.PLAN_CATALOG_PATH)
            else:
                _catalog = PlanCatalog(_build_plans(DEFAULT_PLANS))
        return _catalog


def configure_plan_catalog(plans: Optional[Iterable[Plan]] = None) -> PlanCatalog:
    """Replace the process-wide catalog. ``None`` restores the built-in table."""
    global _catalog
    with _catalog_lock:
        _catalog = PlanCatalog(plans) if plans is not None else PlanCatalog(_build_plans(DEFAULT_PLANS))
        return _catalog


def reset_plan_catalog() -> None:
    global _catalog
    with _catalog_lock:
        _catalog = None
