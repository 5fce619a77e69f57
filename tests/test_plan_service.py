from __future__ import annotations

import pytest

from card_management.cache.memory import InMemoryAsyncCache
from card_management.db.memory import InMemoryCardStore
from card_management.errors import CardValidationError, QuotaExceededError
from card_management.logging.audit_logger import AuditLogger
from card_management.models.audit import AuditEventType
from card_management.models.card import CardProfile
from card_management.models.usage import Plan
from card_management.services.admission_service import CardAdmissionService
from card_management.services.plan_service import PlanService


def _services(store: InMemoryCardStore, tmp_path, cache=None):
    audit = AuditLogger(store=store, file_path=tmp_path / "audit.log")
    plans = PlanService(store=store, audit=audit, cache=cache)
    admission = CardAdmissionService(store=store, audit=audit)
    return plans, admission


@pytest.mark.asyncio
async def test_limits_for_brand_new_user_self_heal(tmp_path):
    store = InMemoryCardStore()
    plans, _ = _services(store, tmp_path)

    limits = await plans.get_user_limits("new-user")

    assert limits.plan is Plan.FREE
    assert limits.cards_created == 0
    assert limits.card_limit == 2
    assert limits.cards_remaining == 2
    assert await store.get_usage("new-user") is None


@pytest.mark.asyncio
async def test_limits_reflect_created_cards(tmp_path):
    store = InMemoryCardStore()
    plans, admission = _services(store, tmp_path)

    await admission.create_card("user-1", CardProfile(first_name="Jane"))
    limits = await plans.get_user_limits("user-1")

    assert limits.cards_created == 1
    assert limits.cards_remaining == 1


@pytest.mark.asyncio
async def test_upgrade_lifts_quota(tmp_path):
    store = InMemoryCardStore()
    plans, admission = _services(store, tmp_path)
    profile = CardProfile(first_name="Jane", last_name="Doe")

    await admission.create_card("user-1", profile)
    await admission.create_card("user-1", profile)
    with pytest.raises(QuotaExceededError):
        await admission.create_card("user-1", profile)

    limits = await plans.upgrade_plan("user-1")
    assert limits.plan is Plan.PRO
    assert limits.card_limit == 999
    assert limits.cards_remaining == 997

    usage = await store.get_usage("user-1")
    assert usage.plan is Plan.PRO
    assert usage.card_limit == 999

    await admission.create_card("user-1", profile)
    assert (await store.get_usage("user-1")).cards_created == 3


@pytest.mark.asyncio
async def test_upgrade_provisions_missing_usage(tmp_path):
    store = InMemoryCardStore()
    plans, _ = _services(store, tmp_path)

    limits = await plans.upgrade_plan("user-1", Plan.PRO)

    assert limits.plan is Plan.PRO
    assert limits.cards_created == 0
    upgrades = [e for e in store.audit_entries if e.message == "Plan upgraded"]
    assert upgrades[0].details == {"from": "free", "to": "pro", "card_limit": 999}


@pytest.mark.asyncio
async def test_configure_limits_applies_to_admission(tmp_path):
    store = InMemoryCardStore()
    plans, admission = _services(store, tmp_path, cache=InMemoryAsyncCache())

    assert (await plans.get_limits_config()).limits == {"free": 2, "pro": 999}
    await plans.configure_limits({"free": 1, "pro": 50})

    assert (await plans.get_limits_config()).limits == {"free": 1, "pro": 50}
    await admission.create_card("user-1", CardProfile(first_name="Jane"))
    with pytest.raises(QuotaExceededError) as exc_info:
        await admission.create_card("user-1", CardProfile(first_name="Jane"))
    assert exc_info.value.limit == 1

    system = [e for e in store.audit_entries if e.event_type is AuditEventType.SYSTEM]
    assert system[0].details == {"limits": {"free": 1, "pro": 50}}


@pytest.mark.asyncio
@pytest.mark.parametrize("limits", [{}, {"free": -1}, {"free": "10"}, {"free": True}, {"pro": 1.5}])
async def test_configure_limits_rejects_invalid_values(tmp_path, limits):
    store = InMemoryCardStore()
    plans, _ = _services(store, tmp_path)

    with pytest.raises(CardValidationError):
        await plans.configure_limits(limits)
    assert (await store.get_limits_config()).limits == {"free": 2, "pro": 999}


@pytest.mark.asyncio
async def test_limits_cache_is_served_until_invalidated(tmp_path):
    store = InMemoryCardStore()
    plans, _ = _services(store, tmp_path, cache=InMemoryAsyncCache())

    await plans.get_limits_config()
    # Written behind the service's back: the cached copy is still served.
    await store.save_limits_config((await store.get_limits_config()).model_copy(update={"limits": {"free": 7}}))
    assert (await plans.get_limits_config()).limits == {"free": 2, "pro": 999}

    await plans.configure_limits({"free": 3, "pro": 999})
    assert (await plans.get_limits_config()).limits == {"free": 3, "pro": 999}


@pytest.mark.asyncio
async def test_reconcile_repairs_drift(tmp_path):
    store = InMemoryCardStore(default_limits={"free": 5, "pro": 999})
    plans, admission = _services(store, tmp_path)
    await admission.create_card("user-1", CardProfile(first_name="Jane"))
    await admission.create_card("user-1", CardProfile(first_name="Jane"))

    await store.set_cards_created("user-1", 4)
    limits = await plans.reconcile_usage("user-1")

    assert limits.cards_created == 2
    assert limits.cards_remaining == 3
    assert (await store.get_usage("user-1")).cards_created == 2
    reconciled = [e for e in store.audit_entries if e.message == "Usage reconciled"]
    assert reconciled[0].details == {"user_id": "user-1", "previous": 4, "actual": 2}


@pytest.mark.asyncio
async def test_reconcile_without_drift_is_quiet(tmp_path):
    store = InMemoryCardStore()
    plans, admission = _services(store, tmp_path)
    await admission.create_card("user-1", CardProfile(first_name="Jane"))

    before = len(store.audit_entries)
    limits = await plans.reconcile_usage("user-1")

    assert limits.cards_created == 1
    assert len(store.audit_entries) == before


@pytest.mark.asyncio
async def test_reconcile_provisions_missing_usage_record(tmp_path):
    store = InMemoryCardStore()
    plans, _ = _services(store, tmp_path)

    limits = await plans.reconcile_usage("new-user")

    assert limits.cards_created == 0
    assert limits.plan is Plan.FREE
    usage = await store.get_usage("new-user")
    assert usage is not None
    assert usage.cards_created == 0
    assert not [e for e in store.audit_entries if e.message == "Usage reconciled"]
