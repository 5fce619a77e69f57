from __future__ import annotations

import logging
import random
from typing import Optional

from ..db.base import BaseCardStore
from ..errors import (
    CardValidationError,
    QuotaExceededError,
    SlugGenerationError,
    TransientStoreError,
)
from ..logging.audit_logger import AuditLogger
from ..models.card import Card, CardCreated, CardProfile, SlugAvailability
from ..models.usage import IdentityHints
from .quota_policy import can_admit, resolve_limit
from .retrying import retry_transient
from .slug import disambiguate, generate_slug, validate_slug


logger = logging.getLogger(__name__)


class CardAdmissionService:
    """
    Card creation under per-plan quotas.

    The quota decision, the slug probe and the card/usage write all run in
    one store transaction that re-reads the usage record and the plan limits,
    so two concurrent creations for the same user can never both pass a
    check against the same counter value. Transient store failures restart
    the whole read-decide-write sequence a bounded number of times.
    """

    def __init__(
        self,
        store: BaseCardStore,
        audit: AuditLogger,
        max_attempts: int = 3,
        max_slug_attempts: int = 5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._max_attempts = max_attempts
        self._max_slug_attempts = max_slug_attempts
        self._rng = rng

    async def create_card(
        self,
        user_id: str,
        profile: CardProfile,
        identity: Optional[IdentityHints] = None,
        requested_slug: Optional[str] = None,
        correlation_id: str | None = None,
    ) -> CardCreated:
        if not user_id:
            raise CardValidationError("user_id is required")
        slug_hint = validate_slug(requested_slug) if requested_slug else None

        try:
            created = await retry_transient(
                lambda: self._attempt(user_id, profile, identity, slug_hint),
                attempts=self._max_attempts,
                description=f"Card creation for user {user_id}",
            )
        except QuotaExceededError as exc:
            logger.info(
                "Rejected card creation for %s: %s/%s cards on plan %s",
                user_id,
                exc.used,
                exc.limit,
                exc.plan,
            )
            await self._audit.log_error(
                message="Card creation rejected: quota exceeded",
                details=exc.details,
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise
        except SlugGenerationError as exc:
            logger.error("No free slug for %s: %s", user_id, exc.message)
            await self._audit.log_error(
                message="Card creation failed: slug space exhausted",
                details=exc.details,
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise

        logger.info("Created card %s (%s) for %s", created.card_id, created.slug, user_id)
        await self._audit.log_event(
            message="Card created",
            details={"slug": created.slug},
            user_id=user_id,
            card_id=created.card_id,
            correlation_id=correlation_id,
        )
        return created

    async def check_slug(
        self,
        slug: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> SlugAvailability:
        """
        Report whether `slug` (or the slug a name would produce) is free.

        Read-only; a free answer is not a reservation, so creation may still
        land on a different slug.
        """
        if slug:
            candidate = validate_slug(slug)
        else:
            candidate = generate_slug(first_name, last_name, self._rng)

        if not await self._store.slug_exists(candidate):
            return SlugAvailability(slug=candidate, available=True, suggestion=candidate)
        try:
            suggestion = await self._find_free_slug(candidate)
        except SlugGenerationError:
            suggestion = None
        return SlugAvailability(slug=candidate, available=False, suggestion=suggestion)

    async def _attempt(
        self,
        user_id: str,
        profile: CardProfile,
        identity: Optional[IdentityHints],
        requested_slug: Optional[str],
    ) -> CardCreated:
        # First use: provision the usage record and the limits defaults.
        # Both tolerate a concurrent creation, so they stay outside the
        # transaction.
        if await self._store.get_usage(user_id) is None:
            await self._store.create_default_usage(user_id, identity)
        await self._store.get_limits_config()

        async with self._store.transaction():
            usage = await self._store.get_usage(user_id)
            if usage is None:
                raise TransientStoreError(f"Usage record for {user_id} is not visible yet")
            limits = await self._store.get_limits_config()
            limit = resolve_limit(usage.plan, limits)
            if not can_admit(usage.plan, limits, usage.cards_created):
                raise QuotaExceededError(
                    plan=usage.plan.value, limit=limit, used=usage.cards_created
                )

            base = requested_slug or generate_slug(
                profile.first_name, profile.last_name, self._rng
            )
            slug = await self._find_free_slug(base)
            card = Card.from_profile(profile, owner_id=user_id, slug=slug)
            card_id = await self._store.write_card_and_increment_usage(
                card, user_id, card_limit=limit
            )

        return CardCreated(card_id=card_id, slug=slug)

    async def _find_free_slug(self, base: str) -> str:
        candidate = base
        for _ in range(self._max_slug_attempts):
            if not await self._store.slug_exists(candidate):
                return candidate
            logger.debug("Slug %s is taken", candidate)
            candidate = disambiguate(base, self._rng)
        raise SlugGenerationError(base, self._max_slug_attempts)
