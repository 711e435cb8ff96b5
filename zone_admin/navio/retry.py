"""
Retry orchestration for pipeline steps.

Every step driver and outbound client call goes through ``call_with_retry`` so
transient failures (network drops, upstream 5xx, rate limits, a dropped
database connection) are retried with exponential backoff and jitter while
validation and integrity failures surface immediately.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

import requests
from sqlalchemy.exc import OperationalError
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from .errors import DataIntegrityError, NetworkTransient, PartialBatchFailure, UpstreamRateLimited, ValidationError

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

OnRetry = Callable[[int, int], None]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters; delay = base_delay * 2^(attempt-1) + uniform(0, jitter)."""

    max_attempts: int = 5
    base_delay: float = 1.5
    jitter: float = 0.5
    max_delay: float = 60.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, int(config.get("NAVIO_RETRY_MAX_ATTEMPTS", cls.max_attempts))),
            base_delay=max(0.0, float(config.get("NAVIO_RETRY_BASE_DELAY", cls.base_delay))),
            jitter=max(0.0, float(config.get("NAVIO_RETRY_JITTER", cls.jitter))),
            max_delay=max(0.0, float(config.get("NAVIO_RETRY_MAX_DELAY", cls.max_delay))),
        )

    def compute_delay(self, attempt: int, *, random_fn: Callable[[], float] = random.random) -> float:
        delay = self.base_delay * (2 ** max(0, attempt - 1)) + self.jitter * random_fn()
        return min(delay, self.max_delay)


@dataclass
class RetryCounter:
    """Callable ``on_retry`` hook that remembers every reported retry."""

    attempts: list[tuple[int, int]] = field(default_factory=list)

    def __call__(self, attempt: int, max_attempts: int) -> None:
        self.attempts.append((attempt, max_attempts))

    @property
    def retries(self) -> int:
        return len(self.attempts)


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception as transient (retry) or permanent (surface)."""

    if isinstance(exc, (ValidationError, DataIntegrityError, PartialBatchFailure)):
        return False
    if isinstance(exc, (NetworkTransient, UpstreamRateLimited)):
        return True
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return response is not None and response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, OperationalError):
        return True
    return False


def classify_http_status(status_code: int, *, message: str, retry_after: float | None = None) -> Exception:
    """Map an unsuccessful HTTP status to the pipeline error taxonomy."""

    if status_code == 429:
        return UpstreamRateLimited(message, retry_after=retry_after)
    if status_code in RETRYABLE_STATUS_CODES:
        return NetworkTransient(message, status_code=status_code)
    return ValidationError(message)


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    on_retry: OnRetry | None = None,
    sleep: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
    operation: str | None = None,
    **kwargs: Any,
) -> T:
    """
    Invoke ``fn`` and retry transient failures according to ``policy``.

    ``on_retry(attempt, max_attempts)`` is called before each backoff sleep with
    the 1-based number of the attempt that just failed. After the final attempt
    the original exception is re-raised unchanged.
    """

    policy = policy or RetryPolicy()
    label = operation or getattr(fn, "__name__", "operation")

    def _wait(retry_state: RetryCallState) -> float:
        delay = policy.compute_delay(retry_state.attempt_number, random_fn=random_fn)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, UpstreamRateLimited) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return delay

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying %s after attempt %s/%s: %s",
            label,
            retry_state.attempt_number,
            policy.max_attempts,
            exc,
            extra={
                "navio_operation": label,
                "navio_retry_attempt": retry_state.attempt_number,
                "navio_retry_max_attempts": policy.max_attempts,
                "navio_retry_delay": retry_state.next_action.sleep if retry_state.next_action else None,
            },
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, policy.max_attempts)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait,
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
