"""Pure merge rules for applying provider-reported state to a job row."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from app.domain.job_fsm import can_transition, is_terminal
from app.repositories.memory import JobRecord
from app.schemas.job import JobKind, JobStatus
from app.schemas.webhook import JobEvent

_REFUNDABLE_STATES = frozenset({JobStatus.FAILED, JobStatus.CANCELED})


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class MergeDecision:
    outcome: MergeOutcome
    job: JobRecord
    entered_terminal: bool = False
    refund_due: bool = False


def merge_outputs(existing: Sequence[str], incoming: Sequence[str]) -> list[str]:
    """Union by value; stored entries keep their position, new ones append in delivery order."""
    merged = list(existing)
    seen = set(merged)
    for reference in incoming:
        if reference in seen:
            continue
        merged.append(reference)
        seen.add(reference)
    return merged


def plan_transition(
    job: JobRecord,
    *,
    reported_status: JobStatus,
    outputs: Sequence[str],
    error: str | None,
    now: datetime,
    refund_on_failure: bool,
) -> MergeDecision:
    if is_terminal(job.status):
        # Absorbing: the same terminal status is a re-delivery, anything else arrived late.
        outcome = MergeOutcome.DUPLICATE if reported_status is job.status else MergeOutcome.STALE
        return MergeDecision(outcome=outcome, job=job)

    if reported_status is not job.status and not can_transition(job.status, reported_status):
        return MergeDecision(outcome=MergeOutcome.STALE, job=job)

    merged_outputs = merge_outputs(job.outputs, outputs)
    error_message = error or job.error_message
    if (
        reported_status is job.status
        and merged_outputs == job.outputs
        and error_message == job.error_message
    ):
        return MergeDecision(outcome=MergeOutcome.DUPLICATE, job=job)

    entered_terminal = is_terminal(reported_status)
    refund_due = (
        entered_terminal
        and refund_on_failure
        and reported_status in _REFUNDABLE_STATES
        and not job.refunded
        and job.resource_cost.amount > 0
    )
    updated = replace(
        job,
        status=reported_status,
        outputs=merged_outputs,
        error_message=error_message,
        updated_at=now,
        completed_at=now if entered_terminal else job.completed_at,
        refunded=job.refunded or refund_due,
        slot_committed=job.slot_committed
        or (job.kind is JobKind.TRAINING and reported_status is JobStatus.SUCCEEDED),
    )
    return MergeDecision(
        outcome=MergeOutcome.APPLIED,
        job=updated,
        entered_terminal=entered_terminal,
        refund_due=refund_due,
    )


def plan_merge(job: JobRecord, event: JobEvent, *, now: datetime, refund_on_failure: bool) -> MergeDecision:
    """Apply one provider event; applying the same event twice yields the same row."""
    return plan_transition(
        job,
        reported_status=event.reported_status,
        outputs=event.outputs,
        error=event.error,
        now=now,
        refund_on_failure=refund_on_failure,
    )
