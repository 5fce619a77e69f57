from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..db.base import BaseCardStore
from ..errors import CardValidationError, NotFoundError, PermissionDeniedError, TransientStoreError
from ..logging.audit_logger import AuditLogger
from ..models.card import Card, CardProfile
from .retrying import retry_transient
from .stats_service import StatsCounter


logger = logging.getLogger(__name__)


class CardLifecycleService:
    """
    Owner operations on existing cards.

    Only deletion touches the usage counter, and it does so in the same
    store transaction that removes the card. Slugs never change after
    creation.
    """

    def __init__(
        self,
        store: BaseCardStore,
        audit: AuditLogger,
        stats: Optional[StatsCounter] = None,
        max_attempts: int = 3,
    ) -> None:
        self._store = store
        self._audit = audit
        self._stats = stats
        self._max_attempts = max_attempts

    async def update_card(
        self,
        card_id: str,
        owner_id: str,
        patch: Union[CardProfile, Mapping[str, Any]],
    ) -> Card:
        """Apply the explicitly set profile fields of `patch`; refreshes `updated_at`."""
        if not isinstance(patch, CardProfile):
            try:
                patch = CardProfile.model_validate(patch)
            except ValidationError as exc:
                errors = exc.errors(include_url=False, include_context=False, include_input=False)
                raise CardValidationError("Invalid card update", details={"errors": errors}) from exc
        changes = patch.model_dump(exclude_unset=True)
        if "theme" in changes and changes["theme"] is None:
            # Clearing the theme resets it.
            changes["theme"] = Card.model_fields["theme"].default

        card = await retry_transient(
            lambda: self._store.update_card(card_id, owner_id, changes),
            attempts=self._max_attempts,
            description=f"Update of card {card_id}",
        )
        logger.info("Updated card %s fields %s", card_id, sorted(changes))
        return card

    async def set_active(self, card_id: str, owner_id: str, active: bool) -> Card:
        card = await retry_transient(
            lambda: self._store.update_card(card_id, owner_id, {"active": active}),
            attempts=self._max_attempts,
            description=f"Visibility change of card {card_id}",
        )
        await self._audit.log_event(
            message="Card published" if active else "Card unpublished",
            details={"slug": card.slug, "active": active},
            user_id=owner_id,
            card_id=card_id,
        )
        return card

    async def delete_card(self, card_id: str, owner_id: str) -> None:
        card = await retry_transient(
            lambda: self._store.delete_card_and_decrement_usage(card_id, owner_id),
            attempts=self._max_attempts,
            description=f"Deletion of card {card_id}",
        )

        # Stats cleanup is best-effort; an orphaned stats record is harmless.
        try:
            await self._store.delete_stats(card_id)
        except TransientStoreError as exc:
            logger.warning("Could not delete stats of card %s: %s", card_id, exc.message)

        logger.info("Deleted card %s (%s) of %s", card_id, card.slug, owner_id)
        await self._audit.log_event(
            message="Card deleted",
            details={"slug": card.slug},
            user_id=owner_id,
            card_id=card_id,
        )

    async def get_card(self, card_id: str, owner_id: str) -> Card:
        card = await self._store.get_card(card_id)
        if card is None:
            raise NotFoundError(f"Card {card_id} not found")
        if card.owner_id != owner_id:
            raise PermissionDeniedError(f"User {owner_id} does not own card {card_id}")
        return card

    async def list_cards(self, owner_id: str) -> List[Card]:
        return list(await self._store.list_cards(owner_id))

    async def get_public_card(self, slug: str, viewer_id: Optional[str] = None) -> Card:
        """
        Resolve a published card by slug.

        Unpublished cards are only visible to their owner. A view is counted
        for every visitor other than the owner.
        """
        card = await self._store.get_card_by_slug(slug)
        if card is None:
            raise NotFoundError(f"No card published at '{slug}'")

        is_owner = viewer_id is not None and viewer_id == card.owner_id
        if not card.active and not is_owner:
            raise PermissionDeniedError(f"Card '{slug}' is not published")

        if not is_owner and self._stats is not None and card.id:
            await self._stats.record_activity(card.id, "view")
        return card
