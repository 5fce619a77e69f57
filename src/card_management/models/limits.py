from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow
from .usage import Plan


CARD_LIMITS_DOC_ID = "card_limits"

DEFAULT_PLAN_LIMITS: Dict[str, int] = {
    Plan.FREE.value: 2,
    Plan.PRO.value: 999,
}


class PlanLimits(DBSerializableModel):
    """
    Singleton mapping of plan name to card quota.

    This record is the single source of truth for quotas.
    """

    collection_name: ClassVar[str] = "system_config"

    id: str = CARD_LIMITS_DOC_ID
    limits: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_PLAN_LIMITS))
    updated_at: datetime = Field(default_factory=utcnow)

    def limit_for(self, plan: str) -> Optional[int]:
        return self.limits.get(plan)
