from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import TransientStoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    attempts: int,
    description: str,
) -> T:
    """
    Run `operation` until it succeeds or `attempts` transient failures occurred.

    Only `TransientStoreError` is retried; every other error propagates on
    first occurrence. Once the bound is exhausted a `TransientStoreError`
    chained to the last failure is raised.
    """
    attempts = max(attempts, 1)
    last_error: Optional[TransientStoreError] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientStoreError as exc:
            last_error = exc
            logger.warning(
                "%s hit a transient store error (attempt %d/%d): %s",
                description,
                attempt,
                attempts,
                exc.message,
            )
    raise TransientStoreError(
        f"{description} failed after {attempts} attempts",
        details={"attempts": attempts, "last_error": last_error.message},
    ) from last_error
