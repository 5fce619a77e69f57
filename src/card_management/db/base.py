from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, Mapping, Optional

from ..models.audit import AuditEntry
from ..models.card import Card
from ..models.limits import PlanLimits
from ..models.stats import ActivityKind, CardStats
from ..models.usage import IdentityHints, Plan, UserUsage


class BaseCardStore(ABC):
    """
    DB-agnostic async card store interface.

    Concrete implementations (MongoDB, in-memory) implement these methods.
    Multi-document atomicity is provided by the `transaction()` context
    manager; every store method called while a transaction is open on the
    current task joins it instead of starting its own.

    Ownership-checked mutations raise `NotFoundError` for a missing card and
    `PermissionDeniedError` when `owner_id` is not the card's owner. Store
    conflicts surface as `TransientStoreError`.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Provide an atomic, isolated unit of work.
        Rolls back on exception (including cancellation) and commits on success.
        """
        yield

    # Usage records
    @abstractmethod
    async def get_usage(self, user_id: str) -> Optional[UserUsage]: ...

    @abstractmethod
    async def create_default_usage(
        self, user_id: str, identity: Optional[IdentityHints] = None
    ) -> UserUsage:
        """
        Create a free-plan usage record with zero cards.

        Tolerates a concurrent creation: if the record already exists the
        stored one is returned unchanged.
        """
        ...

    @abstractmethod
    async def set_usage_plan(self, user_id: str, plan: Plan, card_limit: int) -> UserUsage: ...

    @abstractmethod
    async def set_cards_created(self, user_id: str, cards_created: int) -> UserUsage: ...

    # Plan limits
    @abstractmethod
    async def get_limits_config(self) -> PlanLimits:
        """Return the plan limits record, persisting the defaults if absent."""
        ...

    @abstractmethod
    async def save_limits_config(self, limits: PlanLimits) -> PlanLimits: ...

    # Cards
    @abstractmethod
    async def slug_exists(self, slug: str) -> bool: ...

    @abstractmethod
    async def write_card_and_increment_usage(
        self, card: Card, user_id: str, card_limit: Optional[int] = None
    ) -> str:
        """
        Atomically insert the card, its zeroed stats record and bump the
        owner's `cards_created` by one. `card_limit`, when given, refreshes
        the usage record's cached quota in the same write.
        Returns the new card id.
        """
        ...

    @abstractmethod
    async def delete_card_and_decrement_usage(self, card_id: str, owner_id: str) -> Card:
        """
        Atomically delete the card and decrement the owner's `cards_created`
        (never below zero). Returns the deleted card.
        """
        ...

    @abstractmethod
    async def update_card(
        self, card_id: str, owner_id: str, changes: Mapping[str, Any]
    ) -> Card:
        """Apply `changes` to an owned card, refresh `updated_at`, return the card."""
        ...

    @abstractmethod
    async def get_card(self, card_id: str) -> Optional[Card]: ...

    @abstractmethod
    async def get_card_by_slug(self, slug: str) -> Optional[Card]: ...

    @abstractmethod
    async def list_cards(self, owner_id: str) -> Iterable[Card]: ...

    @abstractmethod
    async def count_cards(self, owner_id: str) -> int: ...

    # Stats
    @abstractmethod
    async def get_stats(self, card_id: str) -> Optional[CardStats]: ...

    @abstractmethod
    async def increment_stat(self, card_id: str, kind: ActivityKind, at: datetime) -> None:
        """Increment one counter (creating the record if needed); views also set `last_viewed`."""
        ...

    @abstractmethod
    async def delete_stats(self, card_id: str) -> None: ...

    # Audit trail
    @abstractmethod
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry: ...


def card_changes(changes: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip keys a card update may never touch."""
    return {
        key: value
        for key, value in changes.items()
        if key not in {"id", "slug", "owner_id", "created_at", "updated_at"}
    }
