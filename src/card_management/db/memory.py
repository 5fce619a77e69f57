from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

from .base import BaseCardStore, card_changes
from ..errors import NotFoundError, PermissionDeniedError, TransientStoreError
from ..models.audit import AuditEntry
from ..models.base import utcnow
from ..models.card import Card
from ..models.limits import DEFAULT_PLAN_LIMITS, PlanLimits
from ..models.stats import ActivityKind, CardStats
from ..models.usage import IdentityHints, Plan, UserUsage


# Store whose transaction is open on the current task, if any.
_active_store: ContextVar[Optional["InMemoryCardStore"]] = ContextVar(
    "in_memory_card_store_transaction", default=None
)


class InMemoryCardStore(BaseCardStore):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Transactions are serialised by a lock and rolled back from a snapshot
    on any exception. Every operation yields to the event loop once so that
    concurrent callers really interleave between reads and writes.
    """

    def __init__(
        self,
        default_limits: Optional[Mapping[str, int]] = None,
        latency_seconds: float = 0.0,
    ) -> None:
        self._usage: Dict[str, UserUsage] = {}
        self._cards: Dict[str, Card] = {}
        self._stats: Dict[str, CardStats] = {}
        self._limits: Optional[PlanLimits] = None
        self._audit: List[AuditEntry] = []
        self._id_counter: int = 0
        self._lock = asyncio.Lock()
        self._latency = latency_seconds
        self._default_limits = dict(default_limits or DEFAULT_PLAN_LIMITS)
        self._pending_conflicts = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    async def _tick(self) -> None:
        await asyncio.sleep(self._latency)

    def inject_conflicts(self, count: int) -> None:
        """Make the next `count` transaction commits fail with a write conflict."""
        self._pending_conflicts = count

    @property
    def audit_entries(self) -> List[AuditEntry]:
        return list(self._audit)

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "usage": {k: v.model_copy(deep=True) for k, v in self._usage.items()},
            "cards": {k: v.model_copy(deep=True) for k, v in self._cards.items()},
            "stats": {k: v.model_copy(deep=True) for k, v in self._stats.items()},
            "limits": self._limits.model_copy(deep=True) if self._limits else None,
            "audit": list(self._audit),
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._usage = snapshot["usage"]
        self._cards = snapshot["cards"]
        self._stats = snapshot["stats"]
        self._limits = snapshot["limits"]
        self._audit = snapshot["audit"]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _active_store.get() is self:
            # Join the transaction already open on this task.
            yield
            return

        async with self._lock:
            snapshot = self._snapshot()
            token = _active_store.set(self)
            try:
                yield
                await self._tick()
                if self._pending_conflicts > 0:
                    self._pending_conflicts -= 1
                    raise TransientStoreError("Simulated write conflict on commit")
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                _active_store.reset(token)

    # Usage records
    async def get_usage(self, user_id: str) -> Optional[UserUsage]:
        await self._tick()
        usage = self._usage.get(user_id)
        return usage.model_copy(deep=True) if usage else None

    async def create_default_usage(
        self, user_id: str, identity: Optional[IdentityHints] = None
    ) -> UserUsage:
        async with self.transaction():
            await self._tick()
            existing = self._usage.get(user_id)
            if existing is None:
                existing = UserUsage.default_for(user_id, identity)
                self._usage[user_id] = existing
            return existing.model_copy(deep=True)

    async def set_usage_plan(self, user_id: str, plan: Plan, card_limit: int) -> UserUsage:
        async with self.transaction():
            usage = self._require_usage(user_id)
            usage.plan = plan
            usage.card_limit = card_limit
            usage.updated_at = utcnow()
            return usage.model_copy(deep=True)

    async def set_cards_created(self, user_id: str, cards_created: int) -> UserUsage:
        async with self.transaction():
            usage = self._require_usage(user_id)
            usage.cards_created = max(cards_created, 0)
            usage.updated_at = utcnow()
            return usage.model_copy(deep=True)

    def _require_usage(self, user_id: str) -> UserUsage:
        usage = self._usage.get(user_id)
        if usage is None:
            raise NotFoundError(f"No usage record for user {user_id}")
        return usage

    # Plan limits
    async def get_limits_config(self) -> PlanLimits:
        await self._tick()
        if self._limits is None:
            async with self.transaction():
                if self._limits is None:
                    self._limits = PlanLimits(limits=dict(self._default_limits))
        return self._limits.model_copy(deep=True)

    async def save_limits_config(self, limits: PlanLimits) -> PlanLimits:
        async with self.transaction():
            await self._tick()
            limits.updated_at = utcnow()
            self._limits = limits.model_copy(deep=True)
            return limits

    # Cards
    async def slug_exists(self, slug: str) -> bool:
        await self._tick()
        return any(card.slug == slug for card in self._cards.values())

    async def write_card_and_increment_usage(
        self, card: Card, user_id: str, card_limit: Optional[int] = None
    ) -> str:
        async with self.transaction():
            await self._tick()
            if any(existing.slug == card.slug for existing in self._cards.values()):
                raise TransientStoreError(f"Slug '{card.slug}' was taken concurrently")
            usage = self._require_usage(user_id)

            card_id = card.id or self._next_id()
            stored = card.model_copy(deep=True, update={"id": card_id})
            self._cards[card_id] = stored
            self._stats[card_id] = CardStats(id=card_id, owner_id=user_id)

            usage.cards_created += 1
            if card_limit is not None:
                usage.card_limit = card_limit
            usage.updated_at = utcnow()

            card.id = card_id
            return card_id

    async def delete_card_and_decrement_usage(self, card_id: str, owner_id: str) -> Card:
        async with self.transaction():
            card = self._require_owned_card(card_id, owner_id)
            await self._tick()
            del self._cards[card_id]
            usage = self._usage.get(owner_id)
            if usage is not None:
                usage.cards_created = max(usage.cards_created - 1, 0)
                usage.updated_at = utcnow()
            return card.model_copy(deep=True)

    async def update_card(
        self, card_id: str, owner_id: str, changes: Mapping[str, Any]
    ) -> Card:
        async with self.transaction():
            card = self._require_owned_card(card_id, owner_id)
            await self._tick()
            data = card.model_dump()
            data.update(card_changes(changes))
            data["updated_at"] = utcnow()
            updated = Card.model_validate(data)
            self._cards[card_id] = updated
            return updated.model_copy(deep=True)

    def _require_owned_card(self, card_id: str, owner_id: str) -> Card:
        card = self._cards.get(card_id)
        if card is None:
            raise NotFoundError(f"Card {card_id} not found")
        if card.owner_id != owner_id:
            raise PermissionDeniedError(f"User {owner_id} does not own card {card_id}")
        return card

    async def get_card(self, card_id: str) -> Optional[Card]:
        await self._tick()
        card = self._cards.get(card_id)
        return card.model_copy(deep=True) if card else None

    async def get_card_by_slug(self, slug: str) -> Optional[Card]:
        await self._tick()
        for card in self._cards.values():
            if card.slug == slug:
                return card.model_copy(deep=True)
        return None

    async def list_cards(self, owner_id: str) -> Iterable[Card]:
        await self._tick()
        cards = [c for c in self._cards.values() if c.owner_id == owner_id]
        cards.sort(key=lambda c: c.created_at)
        return [c.model_copy(deep=True) for c in cards]

    async def count_cards(self, owner_id: str) -> int:
        await self._tick()
        return sum(1 for c in self._cards.values() if c.owner_id == owner_id)

    # Stats
    async def get_stats(self, card_id: str) -> Optional[CardStats]:
        await self._tick()
        stats = self._stats.get(card_id)
        return stats.model_copy(deep=True) if stats else None

    async def increment_stat(self, card_id: str, kind: ActivityKind, at: datetime) -> None:
        async with self.transaction():
            await self._tick()
            stats = self._stats.get(card_id)
            if stats is None:
                stats = CardStats(id=card_id)
                self._stats[card_id] = stats
            field = kind.counter_field
            setattr(stats, field, getattr(stats, field) + 1)
            if kind is ActivityKind.VIEW:
                stats.last_viewed = at
            stats.updated_at = at

    async def delete_stats(self, card_id: str) -> None:
        async with self.transaction():
            await self._tick()
            self._stats.pop(card_id, None)

    # Audit trail
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        async with self.transaction():
            if entry.id is None:
                entry.id = self._next_id()
            self._audit.append(entry)
            return entry
