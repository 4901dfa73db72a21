"""Replicate HTTP API adapter."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from app.adapters.provider.base import (
    ComputeProvider,
    ProviderConnectionError,
    ProviderError,
    ProviderJobHandle,
    ProviderRateLimited,
    ProviderTimeout,
)
from app.core.logging_safety import safe_log_identifier
from app.schemas.job import JobKind

logger = logging.getLogger(__name__)

_TRAINING_PARAMS: dict[str, Any] = {
    "lora_rank": 16,
    "optimizer": "adamw8bit",
    "batch_size": 1,
    "resolution": "512,768,1024",
    "autocaption": True,
    "learning_rate": 0.0004,
    "caption_dropout_rate": 0.05,
    "cache_latents_to_disk": False,
    "gradient_checkpointing": False,
}

_GENERATION_DEFAULTS: dict[str, Any] = {
    "model": "dev",
    "go_fast": False,
    "lora_scale": 1,
    "megapixels": "1",
    "guidance_scale": 3,
    "output_quality": 100,
    "prompt_strength": 0.8,
    "extra_lora_scale": 1,
    "num_inference_steps": 28,
}

_WEBHOOK_EVENTS: dict[JobKind, list[str]] = {
    JobKind.GENERATION: ["start", "output", "completed"],
    JobKind.EDIT: ["start", "output", "completed"],
    JobKind.TRAINING: ["start", "output", "logs", "completed"],
}


class ReplicateComputeProvider(ComputeProvider):
    """Creates predictions and trainings over the Replicate REST API."""

    def __init__(
        self,
        *,
        api_token: str | None,
        base_url: str,
        timeout_seconds: float,
        generation_model_version: str | None = None,
        edit_model: str = "black-forest-labs/flux-kontext-max",
        training_model_owner: str = "ostris",
        training_model_name: str = "flux-dev-lora-trainer",
        training_model_version: str | None = None,
        model_owner: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds)
        self._generation_model_version = generation_model_version
        self._edit_model = edit_model
        self._training_model_owner = training_model_owner
        self._training_model_name = training_model_name
        self._training_model_version = training_model_version
        self._model_owner = model_owner
        self._transport = transport

    def create_job(self, kind: JobKind, params: dict[str, Any], *, webhook_url: str | None) -> ProviderJobHandle:
        path, body = self._build_create_request(kind, params)
        if webhook_url:
            body["webhook"] = webhook_url
            body["webhook_events_filter"] = _WEBHOOK_EVENTS[kind]

        payload = self._post(path, body)
        external_id = str(payload.get("id") or "").strip()
        if not external_id:
            raise ProviderError("Provider response is missing the job id")
        return ProviderJobHandle(external_id=external_id, status=str(payload.get("status") or "starting"))

    def cancel_job(self, kind: JobKind, external_id: str) -> None:
        collection = "trainings" if kind is JobKind.TRAINING else "predictions"
        self._post(f"/{collection}/{external_id}/cancel", None)

    def _build_create_request(self, kind: JobKind, params: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        if kind is JobKind.TRAINING:
            if not self._training_model_version:
                raise ProviderError("Training model version is not configured")
            if not self._model_owner:
                raise ProviderError("Destination model owner is not configured")
            training_input = {
                **_TRAINING_PARAMS,
                "steps": params["steps"],
                "trigger_word": params["trigger_word"],
                "input_images": params["training_data_url"],
            }
            path = (
                f"/models/{self._training_model_owner}/{self._training_model_name}"
                f"/versions/{self._training_model_version}/trainings"
            )
            return path, {
                "destination": f"{self._model_owner}/{params['model_name']}",
                "input": training_input,
            }

        if kind is JobKind.EDIT:
            edit_input = {
                "prompt": params["prompt"].strip(),
                "input_image": params["image_url"],
                "aspect_ratio": params["aspect_ratio"],
                "output_format": params["output_format"],
            }
            return f"/models/{self._edit_model}/predictions", {"input": edit_input}

        generation_input = {
            **_GENERATION_DEFAULTS,
            "prompt": params["prompt"],
            "num_outputs": params["num_outputs"],
            "aspect_ratio": params["aspect_ratio"],
            "output_format": params["output_format"],
        }
        version = params.get("model_version") or self._generation_model_version
        if version:
            return "/predictions", {"version": version, "input": generation_input}
        if params.get("model_name") and self._model_owner:
            return f"/models/{self._model_owner}/{params['model_name']}/predictions", {"input": generation_input}
        raise ProviderError("No generation model version is configured")

    def _post(self, path: str, body: dict[str, Any] | None) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"

        try:
            with httpx.Client(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = client.post(path, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout("Provider request timed out") from exc
        except httpx.ConnectError as exc:
            raise ProviderConnectionError("Provider is unreachable") from exc
        except httpx.HTTPError as exc:
            raise ProviderError("Provider request failed") from exc

        if response.status_code == 429:
            raise ProviderRateLimited("Provider rate limit exceeded")
        if response.status_code >= 300:
            logger.warning(
                "provider.request_failed path=%s status_code=%s",
                path.split("/")[1],
                response.status_code,
            )
            raise ProviderError(f"Provider returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        logger.info(
            "provider.request_succeeded path=%s external_id=%s",
            path.split("/")[1],
            safe_log_identifier(payload.get("id"), prefix="xid"),
        )
        return payload


__all__ = ["ReplicateComputeProvider"]
