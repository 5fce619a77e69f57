from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..db.base import BaseCardStore
from ..errors import TransientStoreError
from ..models.audit import AuditEntry, AuditEventType


logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit logger for card lifecycle events.

    Entries are persisted through the card store and mirrored to an
    append-only, line-delimited JSON file for log aggregators.
    """

    def __init__(self, store: BaseCardStore, file_path: Path) -> None:
        self._store = store
        self._file_path = file_path
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def log_event(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        card_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEntry:
        return await self._log(
            AuditEventType.EVENT,
            message=message,
            details=details,
            user_id=user_id,
            card_id=card_id,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        card_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEntry:
        return await self._log(
            AuditEventType.ERROR,
            message=message,
            details=details,
            user_id=user_id,
            card_id=card_id,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> AuditEntry:
        return await self._log(
            AuditEventType.SYSTEM,
            message=message,
            details=details,
            user_id=None,
            card_id=None,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str],
        card_id: Optional[str],
        correlation_id: Optional[str],
    ) -> AuditEntry:
        entry = AuditEntry(
            event_type=event_type,
            user_id=user_id,
            card_id=card_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )
        # Audit writes follow an already committed change; reporting their
        # failure would invite the caller to repeat that change.
        try:
            entry = await self._store.add_audit_entry(entry)
        except TransientStoreError as exc:
            logger.warning(
                "Could not persist audit entry '%s' for user %s: %s",
                message,
                user_id,
                exc.message,
            )

        # The file mirror never fails the calling operation.
        try:
            line = json.dumps(entry.serialize_for_db(), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning("Could not mirror audit entry to %s: %s", self._file_path, exc)
        return entry
