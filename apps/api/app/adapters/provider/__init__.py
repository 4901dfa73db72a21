"""Compute provider adapters."""

from .base import (
    ComputeProvider,
    ProviderConnectionError,
    ProviderError,
    ProviderJobHandle,
    ProviderRateLimited,
    ProviderTimeout,
    RETRYABLE_PROVIDER_ERRORS,
)
from .mock_provider import MockComputeProvider
from .replicate import ReplicateComputeProvider

__all__ = [
    "ComputeProvider",
    "MockComputeProvider",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderJobHandle",
    "ProviderRateLimited",
    "ProviderTimeout",
    "ReplicateComputeProvider",
    "RETRYABLE_PROVIDER_ERRORS",
]
