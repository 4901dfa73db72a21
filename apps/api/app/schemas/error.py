"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel

from app.schemas.job import JobStatus


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class TransitionErrorDetails(BaseModel):
    current_status: JobStatus
    attempted_status: JobStatus
    allowed_next_statuses: list[JobStatus] | None = None


class FsmTransitionError(BaseModel):
    code: Literal["FSM_TRANSITION_INVALID", "FSM_TERMINAL_IMMUTABLE"]
    message: str
    details: TransitionErrorDetails


class InsufficientResourcesErrorDetails(BaseModel):
    reason: Literal[
        "no_active_subscription",
        "subscription_expired",
        "credits_exhausted",
        "model_slots_exhausted",
        "ledger_contention",
    ]
    resource: Literal["credits", "model_slots"]


class InsufficientResourcesError(BaseModel):
    code: Literal["INSUFFICIENT_RESOURCES"]
    message: str
    details: InsufficientResourcesErrorDetails


class ProviderUnavailableErrorDetails(BaseModel):
    retryable: bool
    reason: str


class ProviderUnavailableError(BaseModel):
    code: Literal["PROVIDER_UNAVAILABLE"]
    message: str
    details: ProviderUnavailableErrorDetails


class SignatureInvalidError(BaseModel):
    code: Literal["SIGNATURE_INVALID"]
    message: str


class NoLeakNotFoundError(BaseModel):
    code: Literal["RESOURCE_NOT_FOUND"]
    message: str
