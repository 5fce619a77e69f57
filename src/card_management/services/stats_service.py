from __future__ import annotations

import logging
from typing import Union

from ..db.base import BaseCardStore
from ..errors import CardValidationError, TransientStoreError
from ..models.base import utcnow
from ..models.stats import ActivityKind, CardStatsView


logger = logging.getLogger(__name__)


class StatsCounter:
    """
    View/download/share counters for public cards.

    Increments are single atomic updates and never take part in the
    admission transaction. A failed increment is logged and dropped.
    """

    def __init__(self, store: BaseCardStore) -> None:
        self._store = store

    async def record_activity(self, card_id: str, kind: Union[ActivityKind, str]) -> None:
        try:
            kind = ActivityKind(kind)
        except ValueError as exc:
            raise CardValidationError(
                f"Unknown activity kind '{kind}'",
                details={"allowed": [k.value for k in ActivityKind]},
            ) from exc

        if await self._store.get_card(card_id) is None:
            logger.debug("Ignoring %s for unknown card %s", kind.value, card_id)
            return

        try:
            await self._store.increment_stat(card_id, kind, utcnow())
        except TransientStoreError as exc:
            logger.warning("Dropped %s count for card %s: %s", kind.value, card_id, exc.message)

    async def get_stats(self, card_id: str) -> CardStatsView:
        stats = await self._store.get_stats(card_id)
        if stats is None:
            return CardStatsView()
        return CardStatsView(
            views=stats.views,
            downloads=stats.downloads,
            shares=stats.shares,
            last_viewed=stats.last_viewed,
        )
