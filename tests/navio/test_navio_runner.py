from __future__ import annotations

import pytest

from zone_admin.navio.errors import NetworkTransient, PartialBatchFailure, ValidationError
from zone_admin.navio.pipeline.runner import CancellationToken, LoopStatus, drive_steps
from zone_admin.navio.retry import RetryPolicy

POLICY = RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0)


class Units:
    """Persistent-looking work list: each step finishes the next unit."""

    def __init__(self, total: int, failures: dict[int, list[Exception]] | None = None) -> None:
        self.total = total
        self.done = 0
        self.failures = failures or {}
        self.calls = 0

    def step(self) -> int:
        self.calls += 1
        pending = self.failures.get(self.done)
        if pending:
            raise pending.pop(0)
        self.done += 1
        return self.done

    def counts(self) -> tuple[int, int]:
        return self.done, self.total - self.done


def drive(units: Units, **kwargs):
    return drive_steps(
        units.step,
        is_done=lambda done: done >= units.total,
        counts=units.counts,
        policy=POLICY,
        sleep=lambda _: None,
        **kwargs,
    )


def test_loop_runs_to_completion():
    units = Units(3)
    seen = []

    outcome = drive(units, on_step=seen.append)

    assert outcome.status == LoopStatus.COMPLETED
    assert outcome.results == [1, 2, 3]
    assert seen == [1, 2, 3]
    assert (outcome.completed, outcome.remaining, outcome.retries) == (3, 0, 0)
    assert outcome.raise_for_status() is outcome


def test_transient_failure_is_retried_within_the_loop():
    units = Units(3, failures={1: [NetworkTransient("blip")]})
    retries = []

    outcome = drive(units, on_retry=lambda attempt, max_attempts: retries.append(attempt))

    assert outcome.status == LoopStatus.COMPLETED
    assert outcome.retries == 1
    assert retries == [1]
    assert units.done == 3


def test_exhausted_retries_pause_with_exact_counts_and_resume_finishes():
    units = Units(4, failures={2: [NetworkTransient("down")] * 3})

    outcome = drive(units)

    assert outcome.status == LoopStatus.PAUSED
    assert (outcome.completed, outcome.remaining) == (2, 2)
    assert isinstance(outcome.error, NetworkTransient)
    with pytest.raises(PartialBatchFailure) as excinfo:
        outcome.raise_for_status()
    assert (excinfo.value.completed, excinfo.value.remaining) == (2, 2)

    resumed = drive(units)
    assert resumed.status == LoopStatus.COMPLETED
    assert resumed.results == [3, 4]


def test_non_retryable_error_propagates():
    units = Units(2, failures={0: [ValidationError("bad input")]})

    with pytest.raises(ValidationError):
        drive(units)
    assert units.calls == 1


def test_cancellation_is_checked_between_steps():
    units = Units(5)
    token = CancellationToken()

    def cancel_after_two(done):
        if done == 2:
            token.cancel()

    outcome = drive(units, on_step=cancel_after_two, cancel_token=token)

    assert outcome.status == LoopStatus.CANCELLED
    assert (outcome.completed, outcome.remaining) == (2, 3)
    assert outcome.raise_for_status() is outcome


def test_max_steps_pauses_the_invocation():
    units = Units(5)

    outcome = drive(units, max_steps=2)

    assert outcome.status == LoopStatus.PAUSED
    assert outcome.error is None
    assert outcome.as_dict() == {
        "status": "paused",
        "steps": 2,
        "completed": 2,
        "remaining": 3,
        "retries": 0,
        "error": None,
    }
