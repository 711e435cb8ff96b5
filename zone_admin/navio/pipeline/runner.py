"""
Resumable step driver.

A pipeline loop is a plain ``while`` over an idempotent step whose state lives
in the database, so the cursor is simply "whatever the database says is
next". Each step goes through the retry orchestrator; once retries are
exhausted the loop stops with a ``paused`` outcome carrying exact
completed/remaining counts, and re-running the same loop finishes the rest.
"""

from __future__ import annotations

import enum
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from flask import current_app, has_app_context
from sqlalchemy.exc import SQLAlchemyError

from ..errors import NavioPipelineError, PartialBatchFailure
from ..retry import OnRetry, RetryCounter, RetryPolicy, call_with_retry, is_retryable

T = TypeVar("T")


class CancellationToken:
    """Abort flag checked between steps; an in-flight step is allowed to finish."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class LoopStatus(str, enum.Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


@dataclass
class LoopOutcome(Generic[T]):
    status: LoopStatus
    results: list[T] = field(default_factory=list)
    completed: int = 0
    remaining: int = 0
    retries: int = 0
    error: BaseException | None = None

    @property
    def steps(self) -> int:
        return len(self.results)

    def raise_for_status(self) -> "LoopOutcome[T]":
        if self.status == LoopStatus.PAUSED:
            raise PartialBatchFailure(
                f"Paused after {self.completed} completed units; {self.remaining} remaining.",
                completed=self.completed,
                remaining=self.remaining,
                cause=self.error,
            )
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "steps": self.steps,
            "completed": self.completed,
            "remaining": self.remaining,
            "retries": self.retries,
            "error": str(self.error) if self.error else None,
        }


def _attach_counts(exc: BaseException, counts: Callable[[], tuple[int, int]]) -> None:
    if not isinstance(exc, NavioPipelineError) or exc.completed is not None:
        return
    try:
        exc.completed, exc.remaining = counts()
    except SQLAlchemyError:
        if has_app_context():
            current_app.logger.warning("Could not read loop progress after a failed step", exc_info=True)


def drive_steps(
    step: Callable[[], T],
    *,
    is_done: Callable[[T], bool],
    counts: Callable[[], tuple[int, int]],
    policy: RetryPolicy | None = None,
    on_retry: OnRetry | None = None,
    on_step: Callable[[T], None] | None = None,
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
    max_steps: int | None = None,
    operation: str | None = None,
) -> LoopOutcome[T]:
    """
    Repeat ``step`` until ``is_done`` says so.

    ``counts()`` reports ``(completed, remaining)`` units from persisted state
    and is consulted whenever the loop stops. Non-retryable errors propagate
    with those counts attached; ``max_steps`` bounds a single invocation and
    yields ``paused``.
    """

    counter = RetryCounter()

    def _on_retry(attempt: int, max_attempts: int) -> None:
        counter(attempt, max_attempts)
        if on_retry is not None:
            on_retry(attempt, max_attempts)

    results: list[T] = []

    def _outcome(status: LoopStatus, error: BaseException | None = None) -> LoopOutcome[T]:
        completed, remaining = counts()
        return LoopOutcome(
            status=status,
            results=results,
            completed=completed,
            remaining=remaining,
            retries=counter.retries,
            error=error,
        )

    while True:
        if cancel_token is not None and cancel_token.cancelled:
            return _outcome(LoopStatus.CANCELLED)
        if max_steps is not None and len(results) >= max_steps:
            return _outcome(LoopStatus.PAUSED)
        try:
            result = call_with_retry(
                step,
                policy=policy,
                on_retry=_on_retry,
                sleep=sleep,
                random_fn=random_fn,
                operation=operation,
            )
        except Exception as exc:
            if not is_retryable(exc):
                _attach_counts(exc, counts)
                raise
            if has_app_context():
                current_app.logger.warning(
                    "Navio %s paused after exhausting retries: %s",
                    operation or "loop",
                    exc,
                    extra={"navio_operation": operation, "navio_retries": counter.retries},
                )
            return _outcome(LoopStatus.PAUSED, exc)

        results.append(result)
        if on_step is not None:
            on_step(result)
        if is_done(result):
            return _outcome(LoopStatus.COMPLETED)
