"""
Retry helper with exponential backoff and jitter for outbound calls.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from brainbits.observability.telemetry import counter, log_event

T = TypeVar("T")


class AdapterError(RuntimeError):
    """Failure from an external adapter, carrying the upstream HTTP status if any."""

    def __init__(self, message: str, status_code: int | None = None, name: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.name = name or "adapter_error"


@dataclass
class RetryPolicy:
    """
    Bounded retry loop.

    With retryable_statuses unset, AdapterErrors are retried on 429, 5xx or an
    unknown status. With it set, only those exact statuses are retried.
    """

    stage: str
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: float = 0.1
    retryable_statuses: tuple[int, ...] | None = None
    sleep_fn: Callable[[float], None] = time.sleep

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call func until it succeeds, a non-retryable error occurs, or attempts run out."""
        attempt = 0
        last_error: Exception | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except AdapterError as exc:
                if not self._should_retry(exc):
                    log_event(
                        "stage_error",
                        stage=self.stage,
                        error=str(exc),
                        status=exc.status_code,
                        attempt=attempt,
                    )
                    raise
                last_error = exc
            except Exception as exc:
                last_error = exc
                log_event("stage_error", stage=self.stage, error=str(exc), attempt=attempt)

            if attempt >= self.max_attempts:
                break

            self._backoff(attempt)

        assert last_error is not None
        raise last_error

    def _should_retry(self, exc: AdapterError) -> bool:
        status = exc.status_code
        if self.retryable_statuses is not None:
            return status in self.retryable_statuses
        if status is None:
            return True
        return bool(status == 429 or 500 <= status < 600)

    def _backoff(self, attempt: int) -> None:
        counter("retry_count")
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        if self.sleep_fn is not None:
            self.sleep_fn(delay)
