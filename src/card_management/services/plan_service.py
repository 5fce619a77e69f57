from __future__ import annotations

import logging
from typing import Mapping, Optional

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseCardStore
from ..errors import CardValidationError, TransientStoreError
from ..logging.audit_logger import AuditLogger
from ..models.limits import PlanLimits
from ..models.usage import IdentityHints, Plan, UserLimits, UserUsage
from .quota_policy import resolve_limit


logger = logging.getLogger(__name__)


class PlanService:
    """
    Plan limits configuration and per-user plan state.

    The limits record is cached here for read paths only; admission always
    re-reads it inside its own transaction.
    """

    LIMITS_CACHE_KEY = "card:limits"

    def __init__(
        self,
        store: BaseCardStore,
        audit: AuditLogger,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self._store = store
        self._audit = audit
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds

    async def get_limits_config(self) -> PlanLimits:
        if self._cache is None:
            return await self._store.get_limits_config()
        limits = await self._cache.get_or_load(
            self.LIMITS_CACHE_KEY,
            PlanLimits,
            self._store.get_limits_config,
            ttl_seconds=self._cache_ttl_seconds,
        )
        # Callers may mutate the result; the cached instance stays untouched.
        return limits.model_copy(deep=True)

    async def configure_limits(self, limits: Mapping[str, int]) -> PlanLimits:
        """Replace the plan-to-quota mapping. Quotas must be non-negative integers."""
        if not limits:
            raise CardValidationError("At least one plan limit is required")
        cleaned = {}
        for plan, limit in limits.items():
            if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
                raise CardValidationError(
                    f"Limit for plan '{plan}' must be a non-negative integer",
                    details={"plan": plan, "limit": limit},
                )
            cleaned[str(plan)] = limit

        saved = await self._store.save_limits_config(PlanLimits(limits=cleaned))
        if self._cache:
            await self._cache.delete(self.LIMITS_CACHE_KEY)

        logger.info("Plan limits set to %s", cleaned)
        await self._audit.log_system(
            message="Plan limits configured",
            details={"limits": cleaned},
        )
        return saved

    async def get_user_limits(self, user_id: str) -> UserLimits:
        """
        Current plan, usage and remaining quota of a user.

        A user without a usage record reads as a fresh free-plan user; no
        record is written on this path.
        """
        usage = await self._store.get_usage(user_id)
        if usage is None:
            usage = UserUsage.default_for(user_id)
        limits = await self.get_limits_config()
        limit = resolve_limit(usage.plan, limits)
        return UserLimits(
            plan=usage.plan,
            cards_created=usage.cards_created,
            card_limit=limit,
            cards_remaining=max(0, limit - usage.cards_created),
        )

    async def upgrade_plan(
        self,
        user_id: str,
        plan: Plan = Plan.PRO,
        identity: Optional[IdentityHints] = None,
    ) -> UserLimits:
        # Payment is handled elsewhere; this only records the new plan.
        current = await self._store.get_usage(user_id)
        if current is None:
            current = await self._store.create_default_usage(user_id, identity)

        limits = await self._store.get_limits_config()
        limit = resolve_limit(plan, limits)
        usage = await self._store.set_usage_plan(user_id, plan, limit)

        await self._audit.log_event(
            message="Plan upgraded",
            details={"from": current.plan.value, "to": plan.value, "card_limit": limit},
            user_id=user_id,
        )
        return UserLimits(
            plan=usage.plan,
            cards_created=usage.cards_created,
            card_limit=limit,
            cards_remaining=max(0, limit - usage.cards_created),
        )

    async def reconcile_usage(self, user_id: str) -> UserLimits:
        """
        Recount the user's live cards and repair `cards_created` if it drifted.
        """
        if await self._store.get_usage(user_id) is None:
            await self._store.create_default_usage(user_id)

        async with self._store.transaction():
            usage = await self._store.get_usage(user_id)
            if usage is None:
                raise TransientStoreError(f"Usage record for {user_id} is not visible yet")
            live = await self._store.count_cards(user_id)
            previous = usage.cards_created
            if previous != live:
                await self._store.set_cards_created(user_id, live)

        if previous != live:
            logger.warning(
                "Repaired card counter of %s from %d to %d", user_id, previous, live
            )
            await self._audit.log_system(
                message="Usage reconciled",
                details={"user_id": user_id, "previous": previous, "actual": live},
            )
        return await self.get_user_limits(user_id)
