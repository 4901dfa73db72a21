"""Reconciliation merge engine: the only writer of job state after submission."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging

from app.core.logging_safety import safe_log_identifier, safe_output_summary
from app.domain.job_fsm import ensure_transition
from app.domain.reconciliation import MergeDecision, MergeOutcome, plan_merge, plan_transition
from app.errors import not_found
from app.repositories.memory import InMemoryStore, JobRecord
from app.schemas.job import JobStatus
from app.schemas.webhook import JobEvent, WebhookOutcome
from app.services.ledger import LedgerService

logger = logging.getLogger(__name__)

_WEBHOOK_OUTCOMES: dict[MergeOutcome, WebhookOutcome] = {
    MergeOutcome.APPLIED: WebhookOutcome.APPLIED,
    MergeOutcome.DUPLICATE: WebhookOutcome.DUPLICATE,
    MergeOutcome.STALE: WebhookOutcome.STALE,
}


@dataclass(frozen=True, slots=True)
class ApplyResult:
    outcome: WebhookOutcome
    job: JobRecord | None = None


class ReconciliationEngine:
    def __init__(self, store: InMemoryStore, ledger: LedgerService, *, refund_on_failure: bool) -> None:
        self._store = store
        self._ledger = ledger
        self._refund_on_failure = refund_on_failure

    def apply(self, event: JobEvent) -> ApplyResult:
        safe_external_id = safe_log_identifier(event.external_id, prefix="xid")
        located = self._store.get_job_by_external_id(event.external_id)
        if located is None:
            logger.info(
                "reconcile.unknown_job external_id=%s reported_status=%s",
                safe_external_id,
                event.reported_status,
            )
            return ApplyResult(outcome=WebhookOutcome.UNKNOWN_JOB)

        with self._store.job_row_lock(located.id):
            job = self._store.get_job(located.id)
            if job is None:
                return ApplyResult(outcome=WebhookOutcome.UNKNOWN_JOB)
            decision = plan_merge(
                job,
                event,
                now=datetime.now(UTC),
                refund_on_failure=self._refund_on_failure,
            )
            self._commit(previous=job, decision=decision, source="webhook")

        return ApplyResult(outcome=_WEBHOOK_OUTCOMES[decision.outcome], job=decision.job)

    def cancel(self, job_id: str) -> JobRecord:
        """Move a pre-terminal job to CANCELED through the same terminal guard as webhooks."""
        with self._store.job_row_lock(job_id):
            job = self._store.get_job(job_id)
            if job is None:
                raise not_found()
            ensure_transition(job.status, JobStatus.CANCELED)
            decision = plan_transition(
                job,
                reported_status=JobStatus.CANCELED,
                outputs=(),
                error=None,
                now=datetime.now(UTC),
                refund_on_failure=self._refund_on_failure,
            )
            self._commit(previous=job, decision=decision, source="cancel")
        return decision.job

    def _commit(self, *, previous: JobRecord, decision: MergeDecision, source: str) -> None:
        """Persist a decision; caller holds the row lock."""
        safe_job_id = safe_log_identifier(previous.id, prefix="jid")
        if decision.outcome is not MergeOutcome.APPLIED:
            log = logger.debug if decision.outcome is MergeOutcome.STALE else logger.info
            log(
                "reconcile.noop source=%s job_id=%s outcome=%s current_status=%s",
                source,
                safe_job_id,
                decision.outcome.value,
                previous.status,
            )
            return

        if decision.refund_due:
            self._ledger.refund(previous)
        self._store.replace_job(decision.job)

        logger.info(
            "reconcile.applied source=%s job_id=%s prev_status=%s new_status=%s outputs=%s",
            source,
            safe_job_id,
            previous.status,
            decision.job.status,
            safe_output_summary(decision.job.outputs),
        )
        if decision.refund_due:
            logger.info(
                "reconcile.refunded job_id=%s resource=%s amount=%s",
                safe_job_id,
                previous.resource_cost.resource.value,
                previous.resource_cost.amount,
            )
        if decision.job.slot_committed and not previous.slot_committed:
            logger.info("reconcile.slot_committed job_id=%s", safe_job_id)
