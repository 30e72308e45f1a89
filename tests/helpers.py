"""Shared test helpers for hooklearn tests."""

from typing import Any

from hooklearn.learning.store import LearningStore


def record_runs(
    store: LearningStore,
    rule_name: str,
    count: int,
    *,
    success_rate: float = 1.0,
    duration_ms: float = 100.0,
    **fields: Any,
) -> None:
    """Record ``count`` executions with an exact success ratio.

    Failures are spread evenly through the run and carry an error message.
    """
    failures = round(count * (1 - success_rate))
    step = count / failures if failures else 0
    failing = {int(i * step) for i in range(failures)}
    for i in range(count):
        success = i not in failing
        store.record_execution(
            rule_name,
            duration_ms=duration_ms,
            success=success,
            error_message=None if success else "rule failed",
            **fields,
        )
