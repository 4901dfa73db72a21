"""Dependency wiring for routes."""

from __future__ import annotations

import logging
from secrets import compare_digest
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from app.adapters.auth import (
    AuthVerificationError,
    FirebaseTokenVerifier,
    MockTokenVerifier,
    TokenVerifier,
)
from app.adapters.provider import ComputeProvider, ReplicateComputeProvider
from app.core.config import Settings, get_settings
from app.core.logging_safety import safe_log_identifier
from app.core.retry import RetryPolicy
from app.errors import ApiError
from app.repositories.memory import InMemoryStore
from app.schemas.auth import AuthPrincipal
from app.services.jobs import JobService
from app.services.ledger import LedgerService
from app.services.poller import ReconciliationPoller
from app.services.reconciliation import ReconciliationEngine
from app.services.submitter import JobSubmitter
from app.services.webhooks import WebhookIngestor

bearer_scheme = HTTPBearer(auto_error=False, scheme_name="bearerAuth")
billing_secret_scheme = APIKeyHeader(
    name="X-Billing-Secret",
    auto_error=False,
    scheme_name="internalBillingSecret",
)
logger = logging.getLogger(__name__)


def _auth_error(message: str) -> ApiError:
    return ApiError(status_code=401, code="UNAUTHORIZED", message=message)


def _request_correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    if isinstance(existing, str) and existing:
        return existing

    correlation_id = request.headers.get("X-Correlation-Id")
    if correlation_id:
        request.state.correlation_id = correlation_id
        return correlation_id

    generated = f"req-{uuid4()}"
    request.state.correlation_id = generated
    return generated


def get_token_verifier(settings: Annotated[Settings, Depends(get_settings)]) -> TokenVerifier:
    """Resolve provider adapter from configuration."""
    if settings.auth_provider == "firebase":
        return FirebaseTokenVerifier(
            project_id=settings.firebase_project_id,
            audience=settings.firebase_audience,
        )
    return MockTokenVerifier()


async def get_authenticated_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> AuthPrincipal:
    """Validate bearer token and attach normalized principal to request context."""
    safe_correlation_id = safe_log_identifier(_request_correlation_id(request), prefix="cid")
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=invalid_or_missing_bearer",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid or missing bearer token")

    try:
        principal = verifier.verify_token(credentials.credentials)
    except AuthVerificationError as exc:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=token_verification_failed",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error(str(exc) or "Invalid bearer token") from exc

    request.state.auth_principal = principal
    return principal


async def require_billing_secret(
    request: Request,
    billing_secret: Annotated[str | None, Security(billing_secret_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Validate the shared secret presented by the billing collaborator."""
    if billing_secret is None or not compare_digest(billing_secret, settings.billing_secret):
        logger.warning(
            "billing.auth_rejected correlation_id=%s method=%s path=%s reason=invalid_billing_secret",
            safe_log_identifier(_request_correlation_id(request), prefix="cid"),
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid billing authentication")


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_compute_provider(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> ComputeProvider:
    if settings.provider_backend == "mock":
        return request.app.state.mock_provider
    return ReplicateComputeProvider(
        api_token=settings.provider_api_token,
        base_url=settings.provider_base_url,
        timeout_seconds=settings.provider_timeout_seconds,
        generation_model_version=settings.generation_model_version,
        edit_model=settings.edit_model,
        training_model_owner=settings.training_model_owner,
        training_model_name=settings.training_model_name,
        training_model_version=settings.training_model_version,
        model_owner=settings.model_owner,
    )


def get_ledger_service(store: Annotated[InMemoryStore, Depends(get_store)]) -> LedgerService:
    return LedgerService(store)


def get_reconciliation_engine(
    store: Annotated[InMemoryStore, Depends(get_store)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ReconciliationEngine:
    return ReconciliationEngine(store, ledger, refund_on_failure=settings.refund_policy == "refund")


def get_job_submitter(
    store: Annotated[InMemoryStore, Depends(get_store)],
    ledger: Annotated[LedgerService, Depends(get_ledger_service)],
    provider: Annotated[ComputeProvider, Depends(get_compute_provider)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> JobSubmitter:
    retry_policy = RetryPolicy(
        max_attempts=settings.submit_retry_max_attempts,
        initial_backoff_seconds=settings.submit_retry_initial_backoff_seconds,
        backoff_multiplier=settings.submit_retry_backoff_multiplier,
    )
    return JobSubmitter(store, ledger, provider, retry_policy=retry_policy, webhook_url=settings.webhook_url())


def get_job_service(
    store: Annotated[InMemoryStore, Depends(get_store)],
    provider: Annotated[ComputeProvider, Depends(get_compute_provider)],
    engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)],
) -> JobService:
    return JobService(store, provider, engine)


def get_webhook_ingestor(
    store: Annotated[InMemoryStore, Depends(get_store)],
    engine: Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> WebhookIngestor:
    return WebhookIngestor(
        store,
        engine,
        secret=settings.provider_webhook_secret,
        strict=settings.webhook_verification_mode == "strict",
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )


def get_poller(store: Annotated[InMemoryStore, Depends(get_store)]) -> ReconciliationPoller:
    return ReconciliationPoller(store)
