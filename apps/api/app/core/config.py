"""Application configuration."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    auth_provider: Literal["mock", "firebase"] = "firebase"
    firebase_project_id: str | None = None
    firebase_audience: str | None = None
    billing_secret: str

    provider_backend: Literal["mock", "replicate"] = "replicate"
    provider_api_token: str | None = None
    provider_base_url: str = "https://api.replicate.com/v1"
    provider_timeout_seconds: float = 15.0
    provider_webhook_secret: str
    webhook_verification_mode: Literal["strict", "permissive"] = "strict"
    webhook_tolerance_seconds: int = 300
    public_base_url: str | None = None

    generation_model_version: str | None = None
    edit_model: str = "black-forest-labs/flux-kontext-max"
    training_model_owner: str = "ostris"
    training_model_name: str = "flux-dev-lora-trainer"
    training_model_version: str | None = None
    model_owner: str | None = None

    submit_retry_max_attempts: int = 3
    submit_retry_initial_backoff_seconds: float = 0.5
    submit_retry_backoff_multiplier: float = 2.0

    refund_policy: Literal["refund", "none"] = "refund"

    model_config = SettingsConfigDict(env_prefix="ATELIER_", extra="ignore")

    def webhook_url(self) -> str | None:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/api/v1/webhooks/provider"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
