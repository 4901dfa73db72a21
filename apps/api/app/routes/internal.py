"""Internal billing routes consumed by the payment collaborator."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from app.errors import ApiError
from app.routes.dependencies import get_ledger_service, require_billing_secret
from app.schemas.error import ErrorResponse
from app.schemas.ledger import CreditLedgerRequest, LedgerBalance, ResetLedgerRequest
from app.services.ledger import LedgerService

router = APIRouter(prefix="/internal/ledger", tags=["Internal"])


@router.post(
    "/{userId}/credit",
    response_model=LedgerBalance,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def credit_ledger(
    user_id: Annotated[str, Path(alias="userId")],
    payload: CreditLedgerRequest,
    __: Annotated[None, Depends(require_billing_secret)],
    service: Annotated[LedgerService, Depends(get_ledger_service)],
) -> LedgerBalance:
    try:
        service.credit(user_id=user_id, amount=payload.amount, resource=payload.resource)
    except LookupError as exc:
        raise ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found") from exc
    return service.get_balance(user_id=user_id)


@router.post(
    "/{userId}/reset",
    response_model=LedgerBalance,
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def reset_ledger(
    user_id: Annotated[str, Path(alias="userId")],
    payload: ResetLedgerRequest,
    __: Annotated[None, Depends(require_billing_secret)],
    service: Annotated[LedgerService, Depends(get_ledger_service)],
) -> LedgerBalance:
    try:
        service.reset_for_new_period(
            user_id=user_id,
            plan=payload.plan,
            period_start=payload.period_start,
            period_end=payload.period_end,
        )
    except ValueError as exc:
        raise ApiError(status_code=409, code="VALIDATION_ERROR", message=str(exc)) from exc
    return service.get_balance(user_id=user_id)
