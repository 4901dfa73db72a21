"""Provider webhook schemas.

Raw deliveries are parsed into ``ProviderPayload`` and then narrowed into one
of the closed event variants below before any state is touched.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from app.schemas.job import JobKind, JobStatus


class ProviderPayload(BaseModel):
    """Loosely typed provider body; only the fields the decoder inspects are declared."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    status: str | None = None
    output: Any = None
    error: Any = None
    input: dict[str, Any] | None = None
    destination: str | None = None
    model: str | None = None
    version: str | None = None


class TrainingEvent(BaseModel):
    variant: Literal["training"] = "training"
    external_id: str
    reported_status: JobStatus
    provider_status: str
    outputs: list[str] = []
    error: str | None = None

    @property
    def job_kinds(self) -> frozenset[JobKind]:
        return frozenset({JobKind.TRAINING})


class PredictionEvent(BaseModel):
    variant: Literal["prediction"] = "prediction"
    external_id: str
    reported_status: JobStatus
    provider_status: str
    outputs: list[str] = []
    error: str | None = None

    @property
    def job_kinds(self) -> frozenset[JobKind]:
        return frozenset({JobKind.GENERATION, JobKind.EDIT})


class UnrecognizedEvent(BaseModel):
    variant: Literal["unrecognized"] = "unrecognized"
    external_id: str | None = None
    reason: str


WebhookEvent = TrainingEvent | PredictionEvent | UnrecognizedEvent
JobEvent = TrainingEvent | PredictionEvent


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_JOB = "unknown_job"
    KIND_MISMATCH = "kind_mismatch"
    UNRECOGNIZED = "unrecognized"


class WebhookAck(BaseModel):
    acknowledged: bool = True
    outcome: WebhookOutcome
    job_id: str | None = None
    current_status: JobStatus | None = None
