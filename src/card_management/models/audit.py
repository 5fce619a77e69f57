from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec, utcnow


class AuditEventType(str, Enum):
    EVENT = "event"
    ERROR = "error"
    SYSTEM = "system"


class AuditEntry(DBSerializableModel):
    """
    Structured audit entry persisted to DB and optionally mirrored to file log.
    """

    collection_name: ClassVar[str] = "card_audit_log"
    indexes: ClassVar[List[IndexSpec]] = [IndexSpec(keys=["user_id", "created_at"])]

    id: Optional[str] = Field(default=None)
    event_type: AuditEventType
    user_id: Optional[str] = None
    card_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
