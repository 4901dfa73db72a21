"""Resource ledger schemas."""

from datetime import datetime
from enum import Enum

from pydantic import AwareDatetime, BaseModel, Field

from app.schemas.job import ResourceKind


class Plan(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    EXECUTIVE = "executive"


class LedgerBalance(BaseModel):
    plan: Plan | None = None
    credits_remaining: int
    model_slots_remaining: int
    has_credits: bool
    subscription_active: bool
    expired: bool = False
    period_end: datetime | None = None


class CreditLedgerRequest(BaseModel):
    amount: int = Field(gt=0)
    resource: ResourceKind = ResourceKind.CREDITS


class ResetLedgerRequest(BaseModel):
    plan: Plan
    period_start: AwareDatetime
    period_end: AwareDatetime
