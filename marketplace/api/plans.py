from typing import Dict

from fastapi import APIRouter

from marketplace.api.serializers import plan_view
from marketplace.features.plans.catalog import get_plan_catalog

router = APIRouter(prefix="/v1/plans", tags=["plans"])


@router.get("")
def list_plans() -> Dict:
    plans = get_plan_catalog().list_plans()
    return {"plans": [plan_view(p) for p in plans], "count": len(plans)}
