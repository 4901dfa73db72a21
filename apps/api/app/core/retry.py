"""Bounded retry policy for provider calls."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with a hard attempt cap.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` disables retries.
    """

    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff_seconds < 0 or self.backoff_multiplier < 1:
            raise ValueError("backoff must be non-negative and non-decreasing")

    def backoff_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        delay = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_backoff_seconds)

    def call(
        self,
        operation: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...],
        operation_name: str,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "retry.exhausted operation=%s attempts=%s reason=%s",
                        operation_name,
                        attempt,
                        type(exc).__name__,
                    )
                    raise
                delay = self.backoff_for(attempt)
                logger.info(
                    "retry.scheduled operation=%s attempt=%s delay_seconds=%.2f reason=%s",
                    operation_name,
                    attempt,
                    delay,
                    type(exc).__name__,
                )
                sleep(delay)
                attempt += 1
