"""
Plan Catalog - Static credit packs and feature costs

Rules:
- Plans are loaded once at import and never change at runtime
- A plan maps to exactly one credit amount and one price
- Unknown plans are rejected, never defaulted
"""

import logging
from typing import List, Optional

from .config import CREDIT_PLANS, FEATURE_CREDIT_COSTS
from .exceptions import InvalidPlan, UnknownFeature
from .models import CreditPlan

logger = logging.getLogger(__name__)

_CATALOG = {
    plan_id: CreditPlan(plan_id=plan_id, **plan)
    for plan_id, plan in CREDIT_PLANS.items()
}


def get_plan(plan_id: Optional[str]) -> Optional[CreditPlan]:
    """Return the plan for plan_id, or None if it is not in the catalog."""
    if not plan_id:
        return None
    return _CATALOG.get(plan_id)


def require_plan(plan_id: Optional[str]) -> CreditPlan:
    """Return the plan for plan_id or raise InvalidPlan."""
    plan = get_plan(plan_id)
    if plan is None:
        logger.info(f"Rejected unknown credit plan: {plan_id}")
        raise InvalidPlan(plan_id)
    return plan


def list_plans() -> List[CreditPlan]:
    return list(_CATALOG.values())


def feature_cost(feature: str) -> int:
    """Credits charged for one successful call of a feature."""
    if feature not in FEATURE_CREDIT_COSTS:
        raise UnknownFeature(feature)
    return FEATURE_CREDIT_COSTS[feature]
