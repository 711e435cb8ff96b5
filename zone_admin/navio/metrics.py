"""Prometheus metrics helpers for the Navio pipeline."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from prometheus_client import Counter, Gauge, Histogram

_operation_counter = Counter(
    "navio_operations_total",
    "Navio pipeline operations by type and outcome.",
    ["operation", "status"],
)
_operation_duration = Histogram(
    "navio_operation_duration_seconds",
    "Duration of Navio pipeline operations in seconds.",
    ["operation"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_retry_counter = Counter(
    "navio_step_retries_total",
    "Retries issued by the Navio retry orchestrator.",
    ["operation"],
)
_delta_gauge = Gauge(
    "navio_last_delta_zones",
    "Zone counts per bucket from the most recent delta check.",
    ["bucket"],
)
_coverage_gauge = Gauge(
    "navio_coverage_alignment",
    "Alignment counts from the most recent coverage check.",
    ["metric"],
)
_loop_outcomes = Counter(
    "navio_loop_outcomes_total",
    "Terminal outcomes of driven pipeline loops.",
    ["operation", "outcome"],
)


def record_operation(operation: str, *, status: Literal["success", "failed"], duration_seconds: float) -> None:
    _operation_counter.labels(operation=operation, status=status).inc()
    _operation_duration.labels(operation=operation).observe(max(0.0, duration_seconds))


def record_retry(operation: str) -> None:
    _retry_counter.labels(operation=operation).inc()


def record_loop_outcome(operation: str, outcome: str) -> None:
    _loop_outcomes.labels(operation=operation, outcome=outcome).inc()


def record_delta(summary: Mapping[str, int]) -> None:
    for bucket, count in summary.items():
        _delta_gauge.labels(bucket=bucket).set(count)


def record_coverage(result: Mapping[str, Any]) -> None:
    for metric, value in (result.get("alignment") or {}).items():
        _coverage_gauge.labels(metric=metric).set(value)
