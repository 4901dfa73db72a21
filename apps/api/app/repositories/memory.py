"""In-memory repositories used by the API and tests.

Rows are never mutated in place once stored: writers build a replacement
record and swap it in, so readers always observe a complete row. Jobs are
serialised per row through ``job_row_lock``; ledger rows are versioned and only
replaced through ``compare_and_swap_ledger``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
import threading
from typing import Any
from uuid import uuid4

from app.domain.job_fsm import is_terminal
from app.schemas.job import JobKind, JobStatus, ResourceCost, ResourceKind
from app.schemas.ledger import Plan


@dataclass(slots=True)
class JobRecord:
    id: str
    external_id: str
    owner_id: str
    kind: JobKind
    status: JobStatus
    resource_cost: ResourceCost
    params: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    outputs: list[str] = field(default_factory=list)
    error_message: str | None = None
    completed_at: datetime | None = None
    refunded: bool = False
    slot_committed: bool = False


@dataclass(frozen=True, slots=True)
class LedgerRecord:
    user_id: str
    plan: Plan | None
    credits_remaining: int
    model_slots_remaining: int
    period_start: datetime
    period_end: datetime
    is_active: bool
    version: int = 0

    def remaining(self, resource: ResourceKind) -> int:
        if resource is ResourceKind.MODEL_SLOTS:
            return self.model_slots_remaining
        return self.credits_remaining

    def with_remaining(self, resource: ResourceKind, value: int) -> LedgerRecord:
        if resource is ResourceKind.MODEL_SLOTS:
            return replace(self, model_slots_remaining=value)
        return replace(self, credits_remaining=value)


@dataclass(slots=True)
class InMemoryStore:
    """Deterministic persistence layer with row-level atomic operations."""

    jobs: dict[str, JobRecord] = field(default_factory=dict)
    job_ids_by_external_id: dict[str, str] = field(default_factory=dict)
    ledgers: dict[str, LedgerRecord] = field(default_factory=dict)
    job_write_count: int = 0
    ledger_write_count: int = 0
    job_insert_failure_message: str | None = None
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _job_locks: dict[str, threading.Lock] = field(default_factory=dict, repr=False)

    def insert_job(
        self,
        *,
        owner_id: str,
        external_id: str,
        kind: JobKind,
        resource_cost: ResourceCost,
        params: dict[str, Any],
    ) -> JobRecord:
        now = datetime.now(UTC)
        job = JobRecord(
            id=str(uuid4()),
            external_id=external_id,
            owner_id=owner_id,
            kind=kind,
            status=JobStatus.QUEUED,
            resource_cost=resource_cost,
            params=dict(params),
            created_at=now,
            updated_at=now,
        )
        with self._guard:
            if self.job_insert_failure_message is not None:
                message = self.job_insert_failure_message
                self.job_insert_failure_message = None
                raise RuntimeError(message)
            if not external_id or external_id in self.job_ids_by_external_id:
                raise ValueError("external_id must be present and unique")
            self.jobs[job.id] = job
            self.job_ids_by_external_id[external_id] = job.id
            self.job_write_count += 1
        return job

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.jobs.get(job_id)

    def get_job_for_owner(self, owner_id: str, job_id: str) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def get_job_by_external_id(self, external_id: str) -> JobRecord | None:
        job_id = self.job_ids_by_external_id.get(external_id)
        if job_id is None:
            return None
        return self.jobs.get(job_id)

    def list_jobs_for_owner(self, owner_id: str, *, pending_only: bool = False) -> list[JobRecord]:
        with self._guard:
            snapshot = list(self.jobs.values())
        jobs = [
            job
            for job in snapshot
            if job.owner_id == owner_id and not (pending_only and is_terminal(job.status))
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs

    @contextmanager
    def job_row_lock(self, job_id: str) -> Iterator[None]:
        """Hold the row lock for ``job_id``; the equivalent of ``SELECT ... FOR UPDATE``."""
        with self._guard:
            lock = self._job_locks.setdefault(job_id, threading.Lock())
        with lock:
            yield

    def replace_job(self, job: JobRecord) -> None:
        with self._guard:
            current = self.jobs.get(job.id)
            if current is None:
                raise LookupError(f"job {job.id} does not exist")
            if current.external_id != job.external_id or current.owner_id != job.owner_id:
                raise ValueError("external_id and owner_id are immutable")
            self.jobs[job.id] = job
            self.job_write_count += 1

    def get_ledger(self, user_id: str) -> LedgerRecord | None:
        return self.ledgers.get(user_id)

    def compare_and_swap_ledger(self, *, expected: LedgerRecord | None, replacement: LedgerRecord) -> bool:
        """Store ``replacement`` only if the row still has ``expected``'s version."""
        if replacement.credits_remaining < 0 or replacement.model_slots_remaining < 0:
            raise ValueError("ledger balances cannot be negative")

        with self._guard:
            current = self.ledgers.get(replacement.user_id)
            current_version = current.version if current is not None else None
            expected_version = expected.version if expected is not None else None
            if current_version != expected_version:
                return False
            next_version = (current_version or 0) + 1
            self.ledgers[replacement.user_id] = replace(replacement, version=next_version)
            self.ledger_write_count += 1
            return True
