"""In-process compute provider for local development and tests."""

from __future__ import annotations

import threading
from typing import Any

from app.adapters.provider.base import ComputeProvider, ProviderError, ProviderJobHandle
from app.schemas.job import JobKind


class MockComputeProvider(ComputeProvider):
    """Accepts every request and hands out sequential ids (``mock-<kind>-<n>``).

    Failures can be scripted with ``queue_create_failure``; each queued
    exception is raised by one subsequent ``create_job`` call, in order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = 0
        self._create_failures: list[ProviderError] = []
        self.created: list[tuple[JobKind, dict[str, Any], str | None]] = []
        self.canceled: list[str] = []

    def queue_create_failure(self, error: ProviderError) -> None:
        with self._lock:
            self._create_failures.append(error)

    @property
    def create_attempts(self) -> int:
        return self._counter

    def create_job(self, kind: JobKind, params: dict[str, Any], *, webhook_url: str | None) -> ProviderJobHandle:
        with self._lock:
            self._counter += 1
            if self._create_failures:
                raise self._create_failures.pop(0)
            external_id = f"mock-{kind.value.lower()}-{self._counter}"
            self.created.append((kind, dict(params), webhook_url))
        return ProviderJobHandle(external_id=external_id, status="starting")

    def cancel_job(self, kind: JobKind, external_id: str) -> None:
        with self._lock:
            self.canceled.append(external_id)


__all__ = ["MockComputeProvider"]
