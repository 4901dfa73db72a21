"""Ledger balance routes."""

from typing import Annotated

from fastapi import APIRouter, Depends

from app.routes.dependencies import get_authenticated_principal, get_ledger_service
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse
from app.schemas.ledger import LedgerBalance
from app.services.ledger import LedgerService

router = APIRouter(prefix="/ledger", tags=["Ledger"])


@router.get(
    "",
    response_model=LedgerBalance,
    responses={401: {"model": ErrorResponse}},
)
async def get_balance(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[LedgerService, Depends(get_ledger_service)],
) -> LedgerBalance:
    return service.get_balance(user_id=principal.user_id)
