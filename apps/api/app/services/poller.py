"""Client reconciliation poller: a read-only drain of the job registry."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import logging

from app.core.logging_safety import safe_log_identifier
from app.domain.job_fsm import is_terminal
from app.repositories.memory import InMemoryStore, JobRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    pending: list[JobRecord]
    resolved: list[JobRecord]


class ReconciliationPoller:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def reconcile(self, *, owner_id: str, known_pending_ids: Iterable[str] = ()) -> ReconcileResult:
        """Return the owner's non-terminal jobs plus corrections for ids the client still shows as pending.

        Never writes; the registry is authoritative and any client-side cache is overridden by this result.
        """
        pending = self._store.list_jobs_for_owner(owner_id, pending_only=True)

        resolved: list[JobRecord] = []
        seen: set[str] = set()
        for job_id in known_pending_ids:
            if job_id in seen:
                continue
            seen.add(job_id)
            job = self._store.get_job_for_owner(owner_id=owner_id, job_id=job_id)
            if job is not None and is_terminal(job.status):
                resolved.append(job)

        logger.info(
            "poller.reconciled user_id=%s pending=%s resolved=%s",
            safe_log_identifier(owner_id, prefix="uid"),
            len(pending),
            len(resolved),
        )
        return ReconcileResult(pending=pending, resolved=resolved)
