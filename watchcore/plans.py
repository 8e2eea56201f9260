"""
Plan entitlements and the default entitlement provider.
"""

from typing import Dict, Mapping, Optional

from .interfaces import EntitlementProvider
from .models import Plan, PlanEntitlements


PLAN_LIMITS: Dict[Plan, PlanEntitlements] = {
    Plan.FREE: PlanEntitlements(
        plan=Plan.FREE,
        max_targets=1,
        max_contexts_per_target=1,
        daily_manual_check_cap=1,
        daily_crawl_cap=1,
    ),
    Plan.PRO: PlanEntitlements(
        plan=Plan.PRO,
        max_targets=5,
        max_contexts_per_target=4,
        daily_manual_check_cap=5,
        daily_crawl_cap=50,
        can_geo_aware=True,
        can_evidence_capture=True,
        can_enrich=True,
    ),
    Plan.ENTERPRISE: PlanEntitlements(
        plan=Plan.ENTERPRISE,
        max_targets=50,
        max_contexts_per_target=4,
        daily_manual_check_cap=50,
        daily_crawl_cap=500,
        can_geo_aware=True,
        can_evidence_capture=True,
        can_enrich=True,
    ),
}

LOWEST_PLAN = Plan.FREE


class StaticEntitlements(EntitlementProvider):
    """Entitlements from the built-in table, optionally overridden per plan."""

    def __init__(self, overrides: Optional[Mapping[str, Mapping[str, object]]] = None):
        self._limits = dict(PLAN_LIMITS)
        for plan_name, values in (overrides or {}).items():
            plan = Plan(plan_name)
            self._limits[plan] = self._limits[plan].model_copy(update=dict(values))

    def get(self, plan: Plan) -> PlanEntitlements:
        # unknown plans fall back to the most restrictive tier
        return self._limits.get(plan, self._limits[LOWEST_PLAN])
