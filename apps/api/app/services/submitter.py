"""Job submission: admission, provider dispatch, registry insert."""

from __future__ import annotations

import logging

from app.adapters.provider import RETRYABLE_PROVIDER_ERRORS, ComputeProvider, ProviderError, ProviderTimeout
from app.core.logging_safety import safe_log_identifier
from app.core.retry import RetryPolicy
from app.errors import ApiError, provider_unavailable
from app.repositories.memory import InMemoryStore, JobRecord
from app.schemas.job import JobKind, SubmitJobRequest
from app.services.ledger import DebitResult, LedgerService

logger = logging.getLogger(__name__)

_SUBSCRIPTION_REASONS = frozenset({"no_active_subscription", "subscription_expired"})


class JobSubmitter:
    def __init__(
        self,
        store: InMemoryStore,
        ledger: LedgerService,
        provider: ComputeProvider,
        *,
        retry_policy: RetryPolicy,
        webhook_url: str | None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._provider = provider
        self._retry_policy = retry_policy
        self._webhook_url = webhook_url

    def submit(
        self,
        *,
        owner_id: str,
        request: SubmitJobRequest,
    ) -> JobRecord:
        safe_owner_id = safe_log_identifier(owner_id, prefix="uid")
        kind = JobKind(request.kind)
        debit = self._ledger.try_debit(user_id=owner_id, kind=kind)
        if not debit.ok:
            raise self._insufficient_resources(debit)

        params = request.model_dump(mode="json", exclude={"kind"})
        if not self._webhook_url:
            logger.warning("submit.no_webhook_url kind=%s", kind.value)

        try:
            handle = self._retry_policy.call(
                lambda: self._provider.create_job(kind, params, webhook_url=self._webhook_url),
                retry_on=RETRYABLE_PROVIDER_ERRORS,
                operation_name="provider.create_job",
            )
        except ProviderError as exc:
            self._compensate(owner_id=owner_id, debit=debit, reason=type(exc).__name__)
            logger.warning(
                "submit.provider_failed user_id=%s kind=%s code=PROVIDER_UNAVAILABLE reason=%s",
                safe_owner_id,
                kind.value,
                type(exc).__name__,
            )
            raise provider_unavailable(
                "The compute provider could not accept the job. Please try again.",
                reason="timeout" if isinstance(exc, ProviderTimeout) else "provider_error",
            ) from exc
        except Exception:
            self._compensate(owner_id=owner_id, debit=debit, reason="provider_adapter_error")
            logger.exception("submit.provider_adapter_error user_id=%s kind=%s", safe_owner_id, kind.value)
            raise

        try:
            job = self._store.insert_job(
                owner_id=owner_id,
                external_id=handle.external_id,
                kind=kind,
                resource_cost=debit.cost,
                params=params,
            )
        except (RuntimeError, ValueError) as exc:
            self._compensate(owner_id=owner_id, debit=debit, reason="registry_insert_failed")
            logger.error(
                "submit.registry_insert_failed user_id=%s external_id=%s reason=%s",
                safe_owner_id,
                safe_log_identifier(handle.external_id, prefix="xid"),
                type(exc).__name__,
            )
            raise ApiError(
                status_code=500,
                code="JOB_REGISTRATION_FAILED",
                message="The job could not be recorded.",
            ) from exc

        logger.info(
            "submit.accepted user_id=%s job_id=%s external_id=%s kind=%s",
            safe_owner_id,
            safe_log_identifier(job.id, prefix="jid"),
            safe_log_identifier(job.external_id, prefix="xid"),
            job.kind.value,
        )
        return job

    def _compensate(self, *, owner_id: str, debit: DebitResult, reason: str) -> None:
        self._ledger.credit(user_id=owner_id, amount=debit.cost.amount, resource=debit.cost.resource)
        logger.info(
            "submit.compensated user_id=%s resource=%s amount=%s reason=%s",
            safe_log_identifier(owner_id, prefix="uid"),
            debit.cost.resource.value,
            debit.cost.amount,
            reason,
        )

    @staticmethod
    def _insufficient_resources(debit: DebitResult) -> ApiError:
        subscription_problem = debit.reason in _SUBSCRIPTION_REASONS
        return ApiError(
            status_code=403 if subscription_problem else 402,
            code="INSUFFICIENT_RESOURCES",
            message=(
                "An active subscription is required to submit jobs."
                if subscription_problem
                else "Not enough resources remain for this job."
            ),
            details={"reason": debit.reason, "resource": debit.cost.resource.value},
        )
