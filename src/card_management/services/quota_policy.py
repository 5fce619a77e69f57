from __future__ import annotations

from typing import Optional, Union

from ..models.limits import PlanLimits
from ..models.usage import Plan


# Used when the plan is unknown or no limits record is available.
FALLBACK_CARD_LIMIT = 2


def resolve_limit(plan: Union[Plan, str], limits: Optional[PlanLimits]) -> int:
    plan_name = plan.value if isinstance(plan, Plan) else str(plan)
    if limits is None:
        return FALLBACK_CARD_LIMIT
    limit = limits.limit_for(plan_name)
    return FALLBACK_CARD_LIMIT if limit is None else limit


def can_admit(plan: Union[Plan, str], limits: Optional[PlanLimits], current_usage: int) -> bool:
    """A user may create another card only while strictly under the plan quota."""
    return current_usage < resolve_limit(plan, limits)
