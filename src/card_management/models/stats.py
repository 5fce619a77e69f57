from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class ActivityKind(str, Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    SHARE = "share"

    @property
    def counter_field(self) -> str:
        return {
            ActivityKind.VIEW: "views",
            ActivityKind.DOWNLOAD: "downloads",
            ActivityKind.SHARE: "shares",
        }[self]


class CardStats(DBSerializableModel):
    """
    Activity counters for a card. The document id is the card id.

    Updated by plain atomic increments outside of any admission transaction;
    losing an occasional increment is acceptable.
    """

    collection_name: ClassVar[str] = "card_stats"

    id: str
    owner_id: Optional[str] = None
    views: int = Field(default=0, ge=0)
    downloads: int = Field(default=0, ge=0)
    shares: int = Field(default=0, ge=0)
    last_viewed: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CardStatsView(BaseModel):
    views: int = 0
    downloads: int = 0
    shares: int = 0
    last_viewed: Optional[datetime] = None
