from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .card import Address, CardProfile
from .stats import ActivityKind
from .usage import Plan


class CreateCardRequest(CardProfile):
    slug: Optional[str] = None

    def profile(self) -> CardProfile:
        return CardProfile.model_validate(self.model_dump(exclude={"slug"}, exclude_unset=True))


class CreateCardResponse(BaseModel):
    card_id: str
    slug: str
    share_url: str


class SetActiveRequest(BaseModel):
    active: bool


class UpgradePlanRequest(BaseModel):
    plan: Plan = Plan.PRO


class ActivityRequest(BaseModel):
    kind: ActivityKind


class CardResponse(BaseModel):
    id: str
    slug: str
    active: bool
    share_url: str
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
    created_at: datetime
    updated_at: datetime
