from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .base import DBSerializableModel, IndexSpec, utcnow


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class CardProfile(BaseModel):
    """
    Owner-editable card fields.

    Also used as the patch type for updates: only explicitly set fields are
    applied. Unknown keys are rejected so that a patch can never reach the
    slug, owner or visibility of a card.
    """

    model_config = ConfigDict(extra="forbid")

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[Address] = None
    notes: Optional[str] = None
    theme: Optional[str] = None
    photo: Optional[str] = None


class Card(DBSerializableModel):
    collection_name: ClassVar[str] = "cards"
    indexes: ClassVar[List[IndexSpec]] = [
        IndexSpec(keys=["slug"], unique=True),
        IndexSpec(keys=["owner_id", "created_at"]),
    ]

    id: Optional[str] = Field(default=None)
    slug: str
    owner_id: str
    active: bool = True

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[Address] = None
    notes: Optional[str] = None
    theme: str = "default"
    photo: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_profile(cls, profile: CardProfile, owner_id: str, slug: str) -> "Card":
        fields = profile.model_dump(exclude_none=True)
        return cls(owner_id=owner_id, slug=slug, active=True, **fields)


class CardCreated(BaseModel):
    card_id: str
    slug: str


class SlugAvailability(BaseModel):
    """Result of a slug pre-check; `suggestion` is a currently free alternative, if any."""

    slug: str
    available: bool
    suggestion: Optional[str] = None
