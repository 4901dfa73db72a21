"""Job API schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    GENERATION = "GENERATION"
    EDIT = "EDIT"
    TRAINING = "TRAINING"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class ResourceKind(str, Enum):
    CREDITS = "credits"
    MODEL_SLOTS = "model_slots"


class ResourceCost(BaseModel):
    resource: ResourceKind
    amount: int = Field(ge=0)


class GenerationJobRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    kind: Literal["GENERATION"]
    prompt: str = Field(min_length=1)
    aspect_ratio: str = "1:1"
    output_format: Literal["webp", "jpg", "png"] = "webp"
    num_outputs: int = Field(default=4, ge=1, le=4)
    model_name: str | None = None
    model_version: str | None = None


class EditJobRequest(BaseModel):
    kind: Literal["EDIT"]
    prompt: str = Field(min_length=1)
    image_url: str = Field(min_length=1)
    aspect_ratio: str = "match_input_image"
    output_format: Literal["webp", "jpg", "png"] = "jpg"


class TrainingJobRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    kind: Literal["TRAINING"]
    model_name: str = Field(min_length=1)
    training_data_url: str = Field(min_length=1)
    trigger_word: str = "TOK"
    steps: int = Field(default=1000, ge=1, le=6000)


SubmitJobRequest = GenerationJobRequest | EditJobRequest | TrainingJobRequest


class Job(BaseModel):
    id: str
    external_id: str
    kind: JobKind
    status: JobStatus
    outputs: list[str]
    error_message: str | None = None
    resource_cost: ResourceCost
    refunded: bool = False
    params: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class PendingJobsResponse(BaseModel):
    pending: list[Job]
    resolved: list[Job]
