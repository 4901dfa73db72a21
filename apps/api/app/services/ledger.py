"""Resource ledger service layer."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
import logging

from app.core.logging_safety import safe_log_identifier
from app.domain.ledger_rules import PLAN_ALLOWANCES, cost_for
from app.repositories.memory import InMemoryStore, JobRecord, LedgerRecord
from app.schemas.job import JobKind, ResourceCost, ResourceKind
from app.schemas.ledger import LedgerBalance, Plan

logger = logging.getLogger(__name__)

# A lost compare-and-swap means another writer touched the row; re-evaluate a bounded number of times.
_CAS_MAX_ATTEMPTS = 32

_EXHAUSTED_REASONS: dict[ResourceKind, str] = {
    ResourceKind.CREDITS: "credits_exhausted",
    ResourceKind.MODEL_SLOTS: "model_slots_exhausted",
}


@dataclass(frozen=True, slots=True)
class DebitResult:
    ok: bool
    cost: ResourceCost
    reason: str | None = None


class LedgerService:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def try_debit(self, *, user_id: str, kind: JobKind, now: datetime | None = None) -> DebitResult:
        """Conditionally take one job's cost from the user's ledger; never goes negative."""
        cost = cost_for(kind)
        safe_user_id = safe_log_identifier(user_id, prefix="uid")
        for _ in range(_CAS_MAX_ATTEMPTS):
            current_time = now or datetime.now(UTC)
            ledger = self._store.get_ledger(user_id)
            if ledger is None or not ledger.is_active:
                return self._denied(cost, "no_active_subscription", safe_user_id)
            if not self._within_period(ledger, current_time):
                self._deactivate(ledger)
                return self._denied(cost, "subscription_expired", safe_user_id)

            remaining = ledger.remaining(cost.resource)
            if remaining < cost.amount:
                return self._denied(cost, _EXHAUSTED_REASONS[cost.resource], safe_user_id)

            replacement = ledger.with_remaining(cost.resource, remaining - cost.amount)
            if self._store.compare_and_swap_ledger(expected=ledger, replacement=replacement):
                logger.info(
                    "ledger.debited user_id=%s resource=%s amount=%s remaining=%s",
                    safe_user_id,
                    cost.resource.value,
                    cost.amount,
                    remaining - cost.amount,
                )
                return DebitResult(ok=True, cost=cost)

        logger.warning("ledger.debit_contention user_id=%s resource=%s", safe_user_id, cost.resource.value)
        return DebitResult(ok=False, cost=cost, reason="ledger_contention")

    def credit(self, *, user_id: str, amount: int, resource: ResourceKind = ResourceKind.CREDITS) -> LedgerRecord:
        """Atomically add ``amount`` units; used by billing and by compensation."""
        if amount <= 0:
            raise ValueError("credit amount must be positive")

        for _ in range(_CAS_MAX_ATTEMPTS):
            ledger = self._store.get_ledger(user_id)
            if ledger is None:
                raise LookupError(f"no ledger for user {safe_log_identifier(user_id, prefix='uid')}")
            replacement = ledger.with_remaining(resource, ledger.remaining(resource) + amount)
            if self._store.compare_and_swap_ledger(expected=ledger, replacement=replacement):
                logger.info(
                    "ledger.credited user_id=%s resource=%s amount=%s",
                    safe_log_identifier(user_id, prefix="uid"),
                    resource.value,
                    amount,
                )
                return self._store.get_ledger(user_id) or replacement
        raise RuntimeError("ledger credit lost every compare-and-swap attempt")

    def refund(self, job: JobRecord) -> None:
        self.credit(
            user_id=job.owner_id,
            amount=job.resource_cost.amount,
            resource=job.resource_cost.resource,
        )

    def reset_for_new_period(
        self,
        *,
        user_id: str,
        plan: Plan,
        period_start: datetime,
        period_end: datetime,
    ) -> LedgerRecord:
        # Period bounds are compared against aware UTC clocks on every debit.
        if period_start.tzinfo is None or period_end.tzinfo is None:
            raise ValueError("period bounds must carry a timezone")
        if period_end <= period_start:
            raise ValueError("period_end must be after period_start")

        allowances = PLAN_ALLOWANCES[plan]
        for _ in range(_CAS_MAX_ATTEMPTS):
            current = self._store.get_ledger(user_id)
            replacement = LedgerRecord(
                user_id=user_id,
                plan=plan,
                credits_remaining=allowances[ResourceKind.CREDITS],
                model_slots_remaining=allowances[ResourceKind.MODEL_SLOTS],
                period_start=period_start,
                period_end=period_end,
                is_active=True,
            )
            if self._store.compare_and_swap_ledger(expected=current, replacement=replacement):
                logger.info(
                    "ledger.reset user_id=%s plan=%s period_end=%s",
                    safe_log_identifier(user_id, prefix="uid"),
                    plan.value,
                    period_end.isoformat(),
                )
                return self._store.get_ledger(user_id) or replacement
        raise RuntimeError("ledger reset lost every compare-and-swap attempt")

    def get_balance(self, *, user_id: str, now: datetime | None = None) -> LedgerBalance:
        ledger = self._store.get_ledger(user_id)
        if ledger is None:
            return LedgerBalance(
                credits_remaining=0,
                model_slots_remaining=0,
                has_credits=False,
                subscription_active=False,
            )

        expired = ledger.is_active and not self._within_period(ledger, now or datetime.now(UTC))
        if expired:
            self._deactivate(ledger)
        active = ledger.is_active and not expired
        return LedgerBalance(
            plan=ledger.plan,
            credits_remaining=ledger.credits_remaining if active else 0,
            model_slots_remaining=ledger.model_slots_remaining if active else 0,
            has_credits=active and ledger.credits_remaining > 0,
            subscription_active=active,
            expired=expired,
            period_end=ledger.period_end,
        )

    @staticmethod
    def _within_period(ledger: LedgerRecord, now: datetime) -> bool:
        return ledger.period_start <= now <= ledger.period_end

    def _deactivate(self, ledger: LedgerRecord) -> None:
        # A lost swap means another writer already deactivated or reset the row.
        if self._store.compare_and_swap_ledger(expected=ledger, replacement=replace(ledger, is_active=False)):
            logger.info(
                "ledger.expired user_id=%s period_end=%s",
                safe_log_identifier(ledger.user_id, prefix="uid"),
                ledger.period_end.isoformat(),
            )

    @staticmethod
    def _denied(cost: ResourceCost, reason: str, safe_user_id: str) -> DebitResult:
        logger.info(
            "ledger.debit_denied user_id=%s resource=%s reason=%s",
            safe_user_id,
            cost.resource.value,
            reason,
        )
        return DebitResult(ok=False, cost=cost, reason=reason)
