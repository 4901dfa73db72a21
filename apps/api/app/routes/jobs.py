"""Job routes."""

from typing import Annotated

from fastapi import APIRouter, Body, Depends, Path, Query, status

from app.routes.dependencies import get_authenticated_principal, get_job_service, get_job_submitter, get_poller
from app.schemas.auth import AuthPrincipal
from app.schemas.error import (
    ErrorResponse,
    FsmTransitionError,
    InsufficientResourcesError,
    NoLeakNotFoundError,
    ProviderUnavailableError,
)
from app.schemas.job import (
    EditJobRequest,
    GenerationJobRequest,
    Job,
    PendingJobsResponse,
    TrainingJobRequest,
)
from app.services.jobs import JobService, to_job
from app.services.poller import ReconciliationPoller
from app.services.submitter import JobSubmitter

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=Job,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse},
        402: {"model": InsufficientResourcesError},
        403: {"model": InsufficientResourcesError},
        502: {"model": ProviderUnavailableError},
    },
)
def submit_job(
    payload: Annotated[
        GenerationJobRequest | EditJobRequest | TrainingJobRequest,
        Body(discriminator="kind"),
    ],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    submitter: Annotated[JobSubmitter, Depends(get_job_submitter)],
) -> Job:
    # Sync handler: runs in the threadpool while blocked on the provider call.
    return to_job(submitter.submit(owner_id=principal.user_id, request=payload))


@router.get(
    "/pending",
    response_model=PendingJobsResponse,
    responses={401: {"model": ErrorResponse}},
)
async def list_pending_jobs(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    poller: Annotated[ReconciliationPoller, Depends(get_poller)],
    known: Annotated[list[str] | None, Query()] = None,
) -> PendingJobsResponse:
    result = poller.reconcile(owner_id=principal.user_id, known_pending_ids=known or [])
    return PendingJobsResponse(
        pending=[to_job(record) for record in result.pending],
        resolved=[to_job(record) for record in result.resolved],
    )


@router.get(
    "/{jobId}",
    response_model=Job,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.get_job(principal=principal, job_id=job_id)


@router.post(
    "/{jobId}/cancel",
    response_model=Job,
    responses={
        404: {"model": NoLeakNotFoundError},
        409: {"model": FsmTransitionError},
        502: {"model": ProviderUnavailableError},
    },
)
def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.cancel_job(principal=principal, job_id=job_id)
