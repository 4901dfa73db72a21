"""Job read and cancellation service layer."""

from __future__ import annotations

import logging

from app.adapters.provider import ComputeProvider, ProviderError, ProviderTimeout
from app.core.logging_safety import safe_log_identifier
from app.domain.job_fsm import ensure_transition
from app.errors import not_found, provider_unavailable
from app.repositories.memory import InMemoryStore, JobRecord
from app.schemas.auth import AuthPrincipal
from app.schemas.job import Job, JobStatus
from app.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


def to_job(record: JobRecord) -> Job:
    return Job(
        id=record.id,
        external_id=record.external_id,
        kind=record.kind,
        status=record.status,
        outputs=list(record.outputs),
        error_message=record.error_message,
        resource_cost=record.resource_cost,
        refunded=record.refunded,
        params=dict(record.params),
        created_at=record.created_at,
        updated_at=record.updated_at,
        completed_at=record.completed_at,
    )


class JobService:
    def __init__(self, store: InMemoryStore, provider: ComputeProvider, engine: ReconciliationEngine) -> None:
        self._store = store
        self._provider = provider
        self._engine = engine

    def get_job(self, *, principal: AuthPrincipal, job_id: str) -> Job:
        return to_job(self._visible_job(principal, job_id))

    def cancel_job(self, *, principal: AuthPrincipal, job_id: str) -> Job:
        record = self._visible_job(principal, job_id)
        # Terminal jobs are rejected before the provider is contacted.
        ensure_transition(record.status, JobStatus.CANCELED)

        safe_job_id = safe_log_identifier(record.id, prefix="jid")
        try:
            self._provider.cancel_job(record.kind, record.external_id)
        except ProviderError as exc:
            logger.warning(
                "cancel.provider_failed job_id=%s code=PROVIDER_UNAVAILABLE reason=%s",
                safe_job_id,
                type(exc).__name__,
            )
            raise provider_unavailable(
                "The compute provider could not cancel the job. Please try again.",
                reason="timeout" if isinstance(exc, ProviderTimeout) else "provider_error",
            ) from exc

        canceled = self._engine.cancel(record.id)
        logger.info(
            "cancel.applied job_id=%s actor_role=%s status=%s",
            safe_job_id,
            principal.role,
            canceled.status,
        )
        return to_job(canceled)

    def _visible_job(self, principal: AuthPrincipal, job_id: str) -> JobRecord:
        if principal.is_admin:
            record = self._store.get_job(job_id)
        else:
            record = self._store.get_job_for_owner(owner_id=principal.user_id, job_id=job_id)
        if record is None:
            raise not_found()
        return record
