from __future__ import annotations

import pytest

from card_management.cache.memory import InMemoryAsyncCache
from card_management.models.limits import PlanLimits


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = InMemoryAsyncCache(clock=clock)

    await cache.set("k", "v", ttl_seconds=10)
    clock.now += 9
    assert await cache.get("k") == "v"
    clock.now += 1
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_get_or_load_loads_once_until_deleted():
    cache = InMemoryAsyncCache()
    calls = []

    async def loader() -> PlanLimits:
        calls.append(1)
        return PlanLimits(limits={"free": len(calls)})

    first = await cache.get_or_load("limits", PlanLimits, loader, ttl_seconds=60)
    second = await cache.get_or_load("limits", PlanLimits, loader, ttl_seconds=60)
    assert first.limits == second.limits == {"free": 1}

    await cache.delete("limits")
    third = await cache.get_or_load("limits", PlanLimits, loader)
    assert third.limits == {"free": 2}


@pytest.mark.asyncio
async def test_get_or_load_ignores_values_of_other_types():
    cache = InMemoryAsyncCache()
    await cache.set("limits", {"free": 9})

    async def loader() -> PlanLimits:
        return PlanLimits()

    loaded = await cache.get_or_load("limits", PlanLimits, loader)
    assert loaded.limits == {"free": 2, "pro": 999}
