"""Prometheus metrics helpers for directory sync."""

from __future__ import annotations

from typing import Literal, Mapping

from prometheus_client import Counter, Histogram

_run_counter = Counter(
    "directory_sync_runs_total",
    "Directory source runs by final status and reason.",
    ["status", "reason"],
)
_run_duration = Histogram(
    "directory_sync_run_duration_seconds",
    "Duration of directory source runs in seconds.",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 900),
)
_approval_decisions = Counter(
    "directory_approval_decisions_total",
    "Deactivation approval transitions by resulting status.",
    ["status"],
)
_apply_counter = Counter(
    "directory_apply_total",
    "Apply executions by outcome.",
    ["outcome"],
)
_apply_items = Counter(
    "directory_apply_items_total",
    "Directory records touched by apply, by operation.",
    ["operation"],
)


def record_run(
    *,
    status: Literal["succeeded", "failed"],
    duration_seconds: float,
    reason: str | None = None,
) -> None:
    """Capture the final status and duration of a source run."""

    _run_counter.labels(status=status, reason=reason or "none").inc()
    _run_duration.observe(max(duration_seconds, 0.0))


def record_approval_decision(status: str) -> None:
    _approval_decisions.labels(status=status).inc()


def record_apply(*, outcome: Literal["ok", "partial", "replayed", "failed"], counts: Mapping[str, int] | None = None) -> None:
    """Increment apply outcome and per-operation item counters."""

    _apply_counter.labels(outcome=outcome).inc()
    for operation, value in (counts or {}).items():
        if value:
            _apply_items.labels(operation=operation).inc(value)
