"""Provider webhook ingestion: verification, decoding and routing."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
import json
import logging
from typing import Any, Literal

from pydantic import ValidationError

from app.core.logging_safety import safe_log_identifier
from app.core.webhook_signature import verify_signature
from app.errors import ApiError
from app.repositories.memory import InMemoryStore
from app.schemas.job import JobKind, JobStatus
from app.schemas.webhook import (
    PredictionEvent,
    ProviderPayload,
    TrainingEvent,
    UnrecognizedEvent,
    WebhookAck,
    WebhookEvent,
    WebhookOutcome,
)
from app.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000

PROVIDER_STATUS_MAP: dict[str, JobStatus] = {
    "starting": JobStatus.PROCESSING,
    "queued": JobStatus.PROCESSING,
    "processing": JobStatus.PROCESSING,
    "succeeded": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.CANCELED,
    "cancelled": JobStatus.CANCELED,
}

Shape = Literal["training", "prediction"]


def _infer_shape(payload: ProviderPayload) -> Shape | None:
    if payload.destination or (isinstance(payload.output, dict) and "weights" in payload.output):
        return "training"
    if isinstance(payload.output, (list, str)):
        return "prediction"
    return None


def _training_outputs(output: Any) -> list[str]:
    if not isinstance(output, dict):
        return []
    return [str(output[key]) for key in ("weights", "version") if output.get(key)]


def _prediction_outputs(output: Any) -> list[str]:
    if isinstance(output, str):
        return [output] if output else []
    if isinstance(output, list):
        return [item for item in output if isinstance(item, str) and item]
    return []


def _error_text(error: Any) -> str | None:
    if error in (None, "", {}, []):
        return None
    text = error if isinstance(error, str) else json.dumps(error, sort_keys=True)
    return text[:_MAX_ERROR_LENGTH]


def decode_event(body: bytes, *, lookup_kind: Callable[[str], JobKind | None]) -> WebhookEvent:
    """Narrow a raw delivery into a closed event variant.

    Wrapper keys (``training``/``prediction``) win, then the payload's own shape;
    shapeless payloads are resolved by looking up the registry row's kind.
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        return UnrecognizedEvent(reason="malformed_json")
    if not isinstance(data, dict):
        return UnrecognizedEvent(reason="not_an_object")

    shape: Shape | None = None
    raw: Any = data
    if isinstance(data.get("training"), dict):
        shape, raw = "training", data["training"]
    elif isinstance(data.get("prediction"), dict):
        shape, raw = "prediction", data["prediction"]

    try:
        payload = ProviderPayload.model_validate(raw)
    except ValidationError:
        return UnrecognizedEvent(reason="invalid_shape")

    if not payload.id or not payload.status:
        return UnrecognizedEvent(external_id=payload.id, reason="missing_id_or_status")

    reported_status = PROVIDER_STATUS_MAP.get(payload.status.strip().lower())
    if reported_status is None:
        return UnrecognizedEvent(external_id=payload.id, reason="unknown_status")

    if shape is None:
        shape = _infer_shape(payload)
    if shape is None:
        kind = lookup_kind(payload.id)
        if kind is None:
            return UnrecognizedEvent(external_id=payload.id, reason="ambiguous_shape_unknown_job")
        shape = "training" if kind is JobKind.TRAINING else "prediction"

    if shape == "training":
        return TrainingEvent(
            external_id=payload.id,
            reported_status=reported_status,
            provider_status=payload.status,
            outputs=_training_outputs(payload.output),
            error=_error_text(payload.error),
        )
    return PredictionEvent(
        external_id=payload.id,
        reported_status=reported_status,
        provider_status=payload.status,
        outputs=_prediction_outputs(payload.output),
        error=_error_text(payload.error),
    )


class WebhookIngestor:
    def __init__(
        self,
        store: InMemoryStore,
        engine: ReconciliationEngine,
        *,
        secret: str,
        strict: bool,
        tolerance_seconds: int,
    ) -> None:
        self._store = store
        self._engine = engine
        self._secret = secret
        self._strict = strict
        self._tolerance_seconds = tolerance_seconds

    def ingest(self, raw_body: bytes, headers: Mapping[str, str], *, now: datetime | None = None) -> WebhookAck:
        normalized = {key.lower(): value for key, value in headers.items()}
        delivery_id = normalized.get("webhook-id")
        safe_delivery_id = safe_log_identifier(delivery_id, prefix="did")

        check = verify_signature(
            secret=self._secret,
            delivery_id=delivery_id,
            timestamp=normalized.get("webhook-timestamp"),
            signature_header=normalized.get("webhook-signature"),
            body=raw_body,
            tolerance_seconds=self._tolerance_seconds,
            now=now,
        )
        if not check.valid:
            if self._strict:
                logger.warning(
                    "webhook.rejected delivery_id=%s code=SIGNATURE_INVALID reason=%s",
                    safe_delivery_id,
                    check.reason,
                )
                raise ApiError(status_code=401, code="SIGNATURE_INVALID", message="Invalid webhook signature")
            logger.warning(
                "webhook.unverified delivery_id=%s mode=permissive reason=%s",
                safe_delivery_id,
                check.reason,
            )

        event = decode_event(raw_body, lookup_kind=self._lookup_kind)
        if isinstance(event, UnrecognizedEvent):
            logger.info(
                "webhook.dropped delivery_id=%s external_id=%s reason=%s",
                safe_delivery_id,
                safe_log_identifier(event.external_id, prefix="xid"),
                event.reason,
            )
            return WebhookAck(outcome=WebhookOutcome.UNRECOGNIZED)

        job = self._store.get_job_by_external_id(event.external_id)
        if job is not None and job.kind not in event.job_kinds:
            logger.warning(
                "webhook.dropped delivery_id=%s job_id=%s reason=kind_mismatch event_variant=%s job_kind=%s",
                safe_delivery_id,
                safe_log_identifier(job.id, prefix="jid"),
                event.variant,
                job.kind.value,
            )
            return WebhookAck(outcome=WebhookOutcome.KIND_MISMATCH, job_id=job.id, current_status=job.status)

        result = self._engine.apply(event)
        logger.info(
            "webhook.processed delivery_id=%s external_id=%s variant=%s provider_status=%s outcome=%s",
            safe_delivery_id,
            safe_log_identifier(event.external_id, prefix="xid"),
            event.variant,
            event.provider_status,
            result.outcome.value,
        )
        return WebhookAck(
            outcome=result.outcome,
            job_id=result.job.id if result.job is not None else None,
            current_status=result.job.status if result.job is not None else None,
        )

    def _lookup_kind(self, external_id: str) -> JobKind | None:
        job = self._store.get_job_by_external_id(external_id)
        return job.kind if job is not None else None
