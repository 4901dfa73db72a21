"""Provider webhook routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from app.routes.dependencies import get_webhook_ingestor
from app.schemas.error import SignatureInvalidError
from app.schemas.webhook import WebhookAck
from app.services.webhooks import WebhookIngestor

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/provider",
    response_model=WebhookAck,
    responses={401: {"model": SignatureInvalidError}},
)
async def receive_provider_webhook(
    request: Request,
    ingestor: Annotated[WebhookIngestor, Depends(get_webhook_ingestor)],
) -> WebhookAck:
    # The signature covers the exact bytes, so the body is read raw rather than parsed by FastAPI.
    raw_body = await request.body()
    return ingestor.ingest(raw_body, request.headers)
