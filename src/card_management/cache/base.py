from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar


T = TypeVar("T")


class AsyncCacheBackend(ABC):
    """
    Async cache for read-mostly records such as the plan limits.
    Never consulted on the admission path.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def get_or_load(
        self,
        key: str,
        expected_type: Type[T],
        loader: Callable[[], Awaitable[T]],
        ttl_seconds: int | None = None,
    ) -> T:
        """
        Cache-aside read: return the cached value if it has `expected_type`,
        otherwise load, store and return it. Loader errors are not cached.
        """
        cached = await self.get(key)
        if isinstance(cached, expected_type):
            return cached
        value = await loader()
        await self.set(key, value, ttl_seconds=ttl_seconds)
        return value
