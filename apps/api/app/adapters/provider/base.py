"""Compute provider interfaces."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from app.schemas.job import JobKind


class ProviderError(Exception):
    """Raised when the provider rejects or fails a request."""


class ProviderTimeout(ProviderError):
    """The provider did not answer within the configured bound; the job may exist."""


class ProviderConnectionError(ProviderError):
    """The request never reached the provider; safe to retry."""


class ProviderRateLimited(ProviderError):
    """The provider refused the request with 429; safe to retry."""


RETRYABLE_PROVIDER_ERRORS: tuple[type[ProviderError], ...] = (ProviderConnectionError, ProviderRateLimited)


@dataclass(frozen=True, slots=True)
class ProviderJobHandle:
    external_id: str
    status: str


class ComputeProvider(ABC):
    """Provider-neutral job execution interface."""

    @abstractmethod
    def create_job(self, kind: JobKind, params: dict[str, Any], *, webhook_url: str | None) -> ProviderJobHandle:
        """Create a job and return the provider correlation handle."""

    @abstractmethod
    def cancel_job(self, kind: JobKind, external_id: str) -> None:
        """Request cancellation of a running job."""


__all__ = [
    "ComputeProvider",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderJobHandle",
    "ProviderRateLimited",
    "ProviderTimeout",
    "RETRYABLE_PROVIDER_ERRORS",
]
