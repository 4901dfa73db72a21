"""Plan allowances and per-job resource pricing."""

from app.schemas.job import JobKind, ResourceCost, ResourceKind
from app.schemas.ledger import Plan

PLAN_ALLOWANCES: dict[Plan, dict[ResourceKind, int]] = {
    Plan.BASIC: {ResourceKind.CREDITS: 50, ResourceKind.MODEL_SLOTS: 1},
    Plan.PROFESSIONAL: {ResourceKind.CREDITS: 1000, ResourceKind.MODEL_SLOTS: 3},
    Plan.EXECUTIVE: {ResourceKind.CREDITS: 3000, ResourceKind.MODEL_SLOTS: 10},
}

_JOB_COSTS: dict[JobKind, ResourceCost] = {
    JobKind.GENERATION: ResourceCost(resource=ResourceKind.CREDITS, amount=1),
    JobKind.EDIT: ResourceCost(resource=ResourceKind.CREDITS, amount=1),
    JobKind.TRAINING: ResourceCost(resource=ResourceKind.MODEL_SLOTS, amount=1),
}


def cost_for(kind: JobKind) -> ResourceCost:
    return _JOB_COSTS[kind].model_copy()
