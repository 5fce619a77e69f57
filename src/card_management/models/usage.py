from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"


class IdentityHints(BaseModel):
    """
    Profile hints supplied by the identity provider.

    Opaque to card management; only used to seed a new usage record.
    """

    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class UserUsage(DBSerializableModel):
    """
    Per-user plan and card counter. The document id is the identity
    provider's subject id.

    `cards_created` must always equal the number of live cards owned by the
    user; only the admission and lifecycle paths mutate it. `card_limit` is
    a cache of the plan quota at the last admission check or plan change,
    never the authoritative quota.
    """

    collection_name: ClassVar[str] = "card_usage"

    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    plan: Plan = Plan.FREE
    cards_created: int = Field(default=0, ge=0)
    card_limit: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def user_id(self) -> str:
        return self.id

    @classmethod
    def default_for(cls, user_id: str, identity: Optional[IdentityHints] = None) -> "UserUsage":
        identity = identity or IdentityHints()
        return cls(
            id=user_id,
            email=identity.email,
            display_name=identity.display_name,
            photo_url=identity.photo_url,
        )


class UserLimits(BaseModel):
    plan: Plan
    cards_created: int
    card_limit: int
    cards_remaining: int
