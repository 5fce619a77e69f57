from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseCardStore
from ..db.memory import InMemoryCardStore
from ..db.mongo import MongoCardStore
from ..logging.audit_logger import AuditLogger
from ..models.api_models import (
    ActivityRequest,
    CardResponse,
    CreateCardRequest,
    CreateCardResponse,
    SetActiveRequest,
    UpgradePlanRequest,
)
from ..models.card import Card, CardProfile, SlugAvailability
from ..models.stats import CardStatsView
from ..models.usage import UserLimits
from ..services.admission_service import CardAdmissionService
from ..services.lifecycle_service import CardLifecycleService
from ..services.plan_service import PlanService
from ..services.slug import share_url
from ..services.stats_service import StatsCounter
from .middleware import RequestIdentity


logger = logging.getLogger(__name__)


@dataclass
class CardServices:
    store: BaseCardStore
    audit: AuditLogger
    admission: CardAdmissionService
    lifecycle: CardLifecycleService
    plans: PlanService
    stats: StatsCounter
    public_base_url: str


def _create_card_store(settings: Settings) -> BaseCardStore:
    default_limits = {
        "free": settings.default_free_limit,
        "pro": settings.default_pro_limit,
    }
    if settings.mongo_uri:
        logger.info("Using MongoDB card store (database %s)", settings.mongo_db)
        return MongoCardStore.from_client_uri(
            settings.mongo_uri, settings.mongo_db, default_limits=default_limits
        )
    logger.warning("CARD_MONGO_URI not set; using the in-memory card store")
    return InMemoryCardStore(default_limits=default_limits)


def build_services(settings: Settings, store: BaseCardStore | None = None) -> CardServices:
    store = store or _create_card_store(settings)
    audit = AuditLogger(store=store, file_path=Path(settings.audit_log_path))
    stats = StatsCounter(store=store)
    return CardServices(
        store=store,
        audit=audit,
        admission=CardAdmissionService(
            store=store,
            audit=audit,
            max_attempts=settings.max_admission_attempts,
            max_slug_attempts=settings.max_slug_attempts,
        ),
        lifecycle=CardLifecycleService(
            store=store,
            audit=audit,
            stats=stats,
            max_attempts=settings.max_admission_attempts,
        ),
        plans=PlanService(
            store=store,
            audit=audit,
            cache=InMemoryAsyncCache(),
            cache_ttl_seconds=settings.limits_cache_ttl_seconds,
        ),
        stats=stats,
        public_base_url=settings.public_base_url,
    )


def get_services(request: Request) -> CardServices:
    return request.app.state.card_services


def get_identity(request: Request) -> RequestIdentity:
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user identification",
        )
    return identity


def _card_response(card: Card, services: CardServices) -> CardResponse:
    return CardResponse(
        share_url=share_url(services.public_base_url, card.slug),
        **card.model_dump(exclude={"owner_id"}),
    )


router = APIRouter(prefix="/cards", tags=["cards"])
public_router = APIRouter(prefix="/public", tags=["public"])


@router.post("", response_model=CreateCardResponse, status_code=status.HTTP_201_CREATED)
async def create_card(
    payload: CreateCardRequest,
    request: Request,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> CreateCardResponse:
    created = await services.admission.create_card(
        user_id=identity.user_id,
        profile=payload.profile(),
        identity=identity.hints,
        requested_slug=payload.slug,
        correlation_id=request.headers.get("X-Request-Id"),
    )
    return CreateCardResponse(
        card_id=created.card_id,
        slug=created.slug,
        share_url=share_url(services.public_base_url, created.slug),
    )


@router.get("", response_model=List[CardResponse])
async def list_cards(
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> List[CardResponse]:
    cards = await services.lifecycle.list_cards(identity.user_id)
    return [_card_response(card, services) for card in cards]


@router.get("/limits", response_model=UserLimits)
async def get_limits(
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> UserLimits:
    return await services.plans.get_user_limits(identity.user_id)


@router.post("/plan/upgrade", response_model=UserLimits)
async def upgrade_plan(
    payload: UpgradePlanRequest,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> UserLimits:
    return await services.plans.upgrade_plan(
        identity.user_id, plan=payload.plan, identity=identity.hints
    )


@router.post("/usage/reconcile", response_model=UserLimits)
async def reconcile_usage(
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> UserLimits:
    return await services.plans.reconcile_usage(identity.user_id)


@router.get("/{card_id}", response_model=CardResponse)
async def get_card(
    card_id: str,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> CardResponse:
    card = await services.lifecycle.get_card(card_id, identity.user_id)
    return _card_response(card, services)


@router.get("/{card_id}/stats", response_model=CardStatsView)
async def get_stats(
    card_id: str,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> CardStatsView:
    # Ownership check; counters are private to the card owner.
    await services.lifecycle.get_card(card_id, identity.user_id)
    return await services.stats.get_stats(card_id)


@router.patch("/{card_id}", response_model=CardResponse)
async def update_card(
    card_id: str,
    patch: CardProfile,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> CardResponse:
    card = await services.lifecycle.update_card(card_id, identity.user_id, patch)
    return _card_response(card, services)


@router.put("/{card_id}/active", response_model=CardResponse)
async def set_active(
    card_id: str,
    payload: SetActiveRequest,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> CardResponse:
    card = await services.lifecycle.set_active(card_id, identity.user_id, payload.active)
    return _card_response(card, services)


@router.delete("/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_card(
    card_id: str,
    identity: RequestIdentity = Depends(get_identity),
    services: CardServices = Depends(get_services),
) -> Response:
    await services.lifecycle.delete_card(card_id, identity.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@public_router.get("/cards/{slug}", response_model=CardResponse)
async def get_public_card(
    slug: str,
    request: Request,
    services: CardServices = Depends(get_services),
) -> CardResponse:
    identity = getattr(request.state, "identity", None)
    viewer_id = identity.user_id if identity else None
    card = await services.lifecycle.get_public_card(slug, viewer_id=viewer_id)
    return _card_response(card, services)


@public_router.post("/cards/{card_id}/activity", status_code=status.HTTP_202_ACCEPTED)
async def record_activity(
    card_id: str,
    payload: ActivityRequest,
    services: CardServices = Depends(get_services),
) -> Response:
    await services.stats.record_activity(card_id, payload.kind)
    return Response(status_code=status.HTTP_202_ACCEPTED)


@public_router.get("/slugs/check", response_model=SlugAvailability)
async def check_slug(
    slug: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    services: CardServices = Depends(get_services),
) -> SlugAvailability:
    return await services.admission.check_slug(
        slug=slug, first_name=first_name, last_name=last_name
    )
