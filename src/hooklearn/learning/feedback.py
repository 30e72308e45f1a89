"""Feedback loop monitor.

Supervises every applied optimization until it is accepted or rolled back.

For each optimization the monitor keeps the pre-change baseline, takes a
checkpoint every ``check_interval_seconds`` over the executions recorded
since the change, and runs a final evaluation once
``evaluation_window_seconds`` have elapsed:

- Regression beyond ``rollback_threshold`` in success rate, average
  duration or error rate rolls the change back at once.
- Enough checkpoints that each show a clear improvement accept it early.
- At the deadline, non-regressive metrics accept it; otherwise an upward
  success-rate trend over enough checkpoints still accepts it, and anything
  else rolls it back.

Conclusion is one-way and guarded in the store, so a change can never be
accepted or rolled back twice. Checkpoints run on asyncio timers when an
event loop is running; callers without a loop drive them through ``poll``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from hooklearn.core.config import LearningConfig
from hooklearn.core.errors import LearningError
from hooklearn.core.logging import get_logger
from hooklearn.learning.analyzer import linear_slope
from hooklearn.learning.scheduling import ScheduledTask, Scheduler, has_running_loop
from hooklearn.learning.store.models import (
    ChangeType,
    Checkpoint,
    MetricsSnapshot,
    OptimizationKind,
    OptimizationRecord,
    OptimizationStatus,
)

if TYPE_CHECKING:
    from hooklearn.learning.store import LearningStore

_logger = get_logger("learning.feedback")

EARLY_SUCCESS_GAIN = 0.1
EARLY_DURATION_GAIN = 0.2
FINAL_DURATION_TOLERANCE = 0.1
FINAL_ERROR_TOLERANCE = 0.05

RollbackHandler = Callable[[OptimizationRecord, str], Any]


class CheckpointAction(str, Enum):
    CONTINUE = "continue"
    ACCEPTED = "accepted"
    ROLLED_BACK = "rolled_back"
    NOT_ACTIVE = "not_active"


@dataclass(frozen=True)
class MetricChanges:
    """Movement of the monitored metrics relative to the baseline.

    ``duration_change`` is relative (0.2 means 20% slower); success and error
    changes are absolute rate differences.
    """

    success_change: float
    duration_change: float
    error_change: float

    @classmethod
    def between(cls, baseline: MetricsSnapshot, current: MetricsSnapshot) -> MetricChanges:
        if baseline.avg_duration_ms > 0:
            duration_change = (
                current.avg_duration_ms - baseline.avg_duration_ms
            ) / baseline.avg_duration_ms
        else:
            duration_change = 0.0
        return cls(
            success_change=current.success_rate - baseline.success_rate,
            duration_change=duration_change,
            error_change=current.error_rate - baseline.error_rate,
        )

    def regressed(self, threshold: float) -> bool:
        return (
            self.success_change < -threshold
            or self.duration_change > threshold
            or self.error_change > threshold
        )

    def clearly_improved(self) -> bool:
        return (
            self.success_change > EARLY_SUCCESS_GAIN
            and self.duration_change < -EARLY_DURATION_GAIN
            and self.error_change <= 0
        )

    def acceptable(self) -> bool:
        return (
            self.success_change >= 0
            and self.duration_change <= FINAL_DURATION_TOLERANCE
            and self.error_change <= FINAL_ERROR_TOLERANCE
        )


@dataclass(frozen=True)
class CheckpointResult:
    optimization_id: str
    action: CheckpointAction
    changes: MetricChanges | None = None
    checkpoint_count: int = 0
    reason: str | None = None


@dataclass
class MonitoredOptimization:
    """In-memory supervision state of one active optimization."""

    optimization: OptimizationRecord
    baseline: MetricsSnapshot
    next_check_at: float
    evaluate_at: float
    checkpoints: list[Checkpoint] = field(default_factory=list)
    periodic: ScheduledTask | None = None
    final: ScheduledTask | None = None

    def cancel_timers(self) -> None:
        for handle in (self.periodic, self.final):
            if handle is not None:
                handle.cancel()


@dataclass(frozen=True)
class MonitoringStatus:
    optimization_id: str
    parameter: str
    old_value: Any
    new_value: Any
    applied_at: datetime
    checkpoint_count: int
    latest_changes: MetricChanges | None
    seconds_remaining: float


class FeedbackLoopMonitor:
    """Accepts or rolls back applied optimizations of one rule.

    Args:
        store: Store holding executions and optimization records.
        rule_name: Rule whose optimizations are supervised.
        config: Learning configuration; the ``monitor`` section sets timing
            and windows, ``adaptive.rollback_threshold`` the regression bound.
        scheduler: Scheduler for checkpoint timers. A private one is created
            when omitted.
        rollback_handler: Restores a parameter after rollback. Without one,
            the monitor writes the pre-change value back itself.
        clock: Monotonic clock used for ``poll`` deadlines.
    """

    def __init__(
        self,
        store: LearningStore,
        rule_name: str,
        config: LearningConfig | None = None,
        scheduler: Scheduler | None = None,
        *,
        rollback_handler: RollbackHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.rule_name = rule_name
        self.config = config or LearningConfig()
        self._settings = self.config.monitor
        self.rollback_threshold = self.config.adaptive.rollback_threshold
        self._scheduler = scheduler or Scheduler()
        self._rollback_handler = rollback_handler
        self._clock = clock
        self._active: dict[str, MonitoredOptimization] = {}
        self.baseline: MetricsSnapshot | None = None

    def set_rollback_handler(self, handler: RollbackHandler | None) -> None:
        self._rollback_handler = handler

    @property
    def active_count(self) -> int:
        return len(self._active)

    def capture_baseline(self) -> MetricsSnapshot:
        """Metrics over the most recent ``metrics_window`` executions."""
        return self._store.get_window_metrics(self.rule_name, self._settings.metrics_window)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def monitor_optimization(self, optimization: OptimizationRecord) -> str:
        """Start supervising an applied optimization.

        Uses ``optimization.baseline`` when set (it should be captured before
        the change was applied), otherwise captures one now. Persists the
        optimization and, when an event loop is running, schedules its
        checkpoints and final evaluation.

        Returns:
            The optimization id.
        """
        baseline = optimization.baseline or self.capture_baseline()
        optimization.baseline = baseline
        if optimization.success_rate_before is None:
            optimization.success_rate_before = baseline.success_rate
        self._store.save_optimization(optimization)
        self._track(optimization, elapsed=0.0)

        _logger.info(
            "optimization_monitoring_started",
            rule_name=self.rule_name,
            optimization_id=optimization.id,
            parameter=optimization.parameter,
            baseline_success_rate=round(baseline.success_rate, 3),
            baseline_avg_duration_ms=round(baseline.avg_duration_ms, 1),
            baseline_executions=baseline.execution_count,
        )
        return optimization.id

    def _track(self, optimization: OptimizationRecord, *, elapsed: float) -> MonitoredOptimization:
        now = self._clock()
        interval = self._settings.check_interval_seconds
        remaining = max(0.0, self._settings.evaluation_window_seconds - elapsed)
        monitored = MonitoredOptimization(
            optimization=optimization,
            baseline=optimization.baseline or self.capture_baseline(),
            next_check_at=now + interval,
            evaluate_at=now + remaining,
            checkpoints=list(optimization.checkpoints),
        )
        self._active[optimization.id] = monitored

        if has_running_loop():
            optimization_id = optimization.id
            monitored.periodic = self._scheduler.call_every(
                interval,
                lambda: self.check_optimization(optimization_id),
                name=f"checkpoint:{optimization_id}",
                stop_after=remaining,
            )
            monitored.final = self._scheduler.call_later(
                remaining,
                lambda: self.evaluate_optimization(optimization_id),
                name=f"evaluate:{optimization_id}",
            )
        return monitored

    def _resume(self, optimization_id: str) -> MonitoredOptimization | None:
        """Pick up an active optimization persisted by an earlier process."""
        optimization = self._store.get_optimization(optimization_id)
        if optimization is None or not optimization.is_active:
            return None
        elapsed = (datetime.now() - optimization.applied_at).total_seconds()
        _logger.info(
            "optimization_monitoring_resumed",
            rule_name=self.rule_name,
            optimization_id=optimization_id,
            checkpoints=len(optimization.checkpoints),
        )
        return self._track(optimization, elapsed=elapsed)

    def resume_active(self) -> int:
        """Resume supervision of every gradual optimization still active in the store."""
        resumed = 0
        for optimization in self._store.get_optimizations(
            self.rule_name, status=OptimizationStatus.ACTIVE
        ):
            if optimization.kind != OptimizationKind.GRADUAL or optimization.id in self._active:
                continue
            if self._resume(optimization.id) is not None:
                resumed += 1
        return resumed

    def _lookup(self, optimization_id: str) -> MonitoredOptimization | None:
        monitored = self._active.get(optimization_id)
        if monitored is None:
            monitored = self._resume(optimization_id)
        return monitored

    def _post_change_metrics(self, monitored: MonitoredOptimization) -> MetricsSnapshot:
        return self._store.get_window_metrics(
            self.rule_name,
            self._settings.metrics_window,
            after_id=monitored.baseline.latest_execution_id,
        )

    # -------------------------------------------------------------------------
    # Checkpoints and evaluation
    # -------------------------------------------------------------------------

    def check_optimization(self, optimization_id: str) -> CheckpointResult:
        """Take one checkpoint and roll back or accept early if warranted."""
        monitored = self._lookup(optimization_id)
        if monitored is None:
            return CheckpointResult(optimization_id, CheckpointAction.NOT_ACTIVE)

        current = self._post_change_metrics(monitored)
        if current.execution_count < self._settings.min_checkpoint_executions:
            _logger.debug(
                "checkpoint_insufficient_data",
                rule_name=self.rule_name,
                optimization_id=optimization_id,
                executions=current.execution_count,
            )
            return CheckpointResult(
                optimization_id,
                CheckpointAction.CONTINUE,
                checkpoint_count=len(monitored.checkpoints),
                reason="insufficient_data",
            )

        changes = MetricChanges.between(monitored.baseline, current)
        checkpoint = Checkpoint(
            metrics=current,
            success_change=changes.success_change,
            duration_change=changes.duration_change,
            error_change=changes.error_change,
        )
        monitored.checkpoints.append(checkpoint)
        self._store.append_checkpoint(optimization_id, checkpoint)

        _logger.debug(
            "checkpoint_recorded",
            rule_name=self.rule_name,
            optimization_id=optimization_id,
            checkpoint=len(monitored.checkpoints),
            success_change=round(changes.success_change, 4),
            duration_change=round(changes.duration_change, 4),
            error_change=round(changes.error_change, 4),
        )

        if changes.regressed(self.rollback_threshold):
            return self._rollback(monitored, "performance_degradation", changes, current)

        improving = sum(
            1
            for c in monitored.checkpoints
            if MetricChanges(c.success_change, c.duration_change, c.error_change).clearly_improved()
        )
        if improving >= self._settings.early_accept_checkpoints:
            return self._accept(monitored, "early_success", changes, current)

        return CheckpointResult(
            optimization_id,
            CheckpointAction.CONTINUE,
            changes=changes,
            checkpoint_count=len(monitored.checkpoints),
        )

    def evaluate_optimization(self, optimization_id: str) -> CheckpointResult:
        """Final decision at the end of the evaluation window."""
        monitored = self._lookup(optimization_id)
        if monitored is None:
            return CheckpointResult(optimization_id, CheckpointAction.NOT_ACTIVE)

        current = self._post_change_metrics(monitored)
        if current.execution_count < self._settings.min_checkpoint_executions:
            return self._rollback(monitored, "insufficient_data", None, current)

        changes = MetricChanges.between(monitored.baseline, current)
        if changes.acceptable():
            return self._accept(monitored, "evaluation_complete", changes, current)

        if len(monitored.checkpoints) >= self._settings.trend_min_checkpoints:
            slope = linear_slope([c.success_change for c in monitored.checkpoints])
            if slope > 0:
                return self._accept(monitored, "positive_trend", changes, current)

        return self._rollback(monitored, "evaluation_failed", changes, current)

    def poll(self) -> list[CheckpointResult]:
        """Run every checkpoint or evaluation that is due.

        Optimizations whose event-loop timers are still pending are left to
        those timers. Everything else is polled: optimizations registered
        without a running loop, and those whose loop has since gone away.
        """
        now = self._clock()
        results = []
        for optimization_id, monitored in list(self._active.items()):
            if monitored.final is not None and not monitored.final.done:
                continue
            if now >= monitored.evaluate_at:
                results.append(self.evaluate_optimization(optimization_id))
            elif now >= monitored.next_check_at:
                monitored.next_check_at = now + self._settings.check_interval_seconds
                results.append(self.check_optimization(optimization_id))
        return results

    # -------------------------------------------------------------------------
    # Conclusions
    # -------------------------------------------------------------------------

    def _finish(self, monitored: MonitoredOptimization) -> None:
        self._active.pop(monitored.optimization.id, None)
        monitored.cancel_timers()

    def _accept(
        self,
        monitored: MonitoredOptimization,
        reason: str,
        changes: MetricChanges,
        current: MetricsSnapshot,
    ) -> CheckpointResult:
        optimization = monitored.optimization
        self._finish(monitored)
        concluded = self._store.conclude_optimization(
            optimization.id,
            OptimizationStatus.ACCEPTED,
            success_rate_after=current.success_rate,
            performance_impact=changes.duration_change,
        )
        if not concluded:
            return CheckpointResult(optimization.id, CheckpointAction.NOT_ACTIVE)

        self._store.record_parameter_change(
            self.rule_name,
            optimization.parameter,
            optimization.old_value,
            optimization.new_value,
            confidence=optimization.confidence,
            reason=reason,
            change_type=ChangeType.ACCEPTED,
            optimization_id=optimization.id,
        )
        self.baseline = self.capture_baseline()

        _logger.info(
            "optimization_accepted",
            rule_name=self.rule_name,
            optimization_id=optimization.id,
            parameter=optimization.parameter,
            new_value=optimization.new_value,
            reason=reason,
            checkpoints=len(monitored.checkpoints),
            success_change=round(changes.success_change, 4),
            duration_change=round(changes.duration_change, 4),
        )
        return CheckpointResult(
            optimization.id,
            CheckpointAction.ACCEPTED,
            changes=changes,
            checkpoint_count=len(monitored.checkpoints),
            reason=reason,
        )

    def _rollback(
        self,
        monitored: MonitoredOptimization,
        reason: str,
        changes: MetricChanges | None,
        current: MetricsSnapshot,
    ) -> CheckpointResult:
        optimization = monitored.optimization
        self._finish(monitored)
        concluded = self._store.conclude_optimization(
            optimization.id,
            OptimizationStatus.ROLLED_BACK,
            success_rate_after=current.success_rate if current.execution_count else None,
            performance_impact=changes.duration_change if changes is not None else None,
            rollback_reason=reason,
        )
        if not concluded:
            return CheckpointResult(optimization.id, CheckpointAction.NOT_ACTIVE)

        _logger.warning(
            "optimization_rolled_back",
            rule_name=self.rule_name,
            optimization_id=optimization.id,
            parameter=optimization.parameter,
            restored_value=optimization.old_value,
            reason=reason,
            success_change=round(changes.success_change, 4) if changes else None,
            duration_change=round(changes.duration_change, 4) if changes else None,
            error_change=round(changes.error_change, 4) if changes else None,
        )
        try:
            if self._rollback_handler is not None:
                self._rollback_handler(optimization, reason)
            else:
                self._store.apply_parameter_change(
                    self.rule_name,
                    optimization.parameter,
                    optimization.new_value,
                    optimization.old_value,
                    confidence=optimization.confidence,
                    reason=reason,
                    change_type=ChangeType.ROLLED_BACK,
                    optimization_id=optimization.id,
                )
        except LearningError as e:
            _logger.critical(
                "parameter_restore_failed",
                rule_name=self.rule_name,
                optimization_id=optimization.id,
                parameter=optimization.parameter,
                error=str(e),
            )
        return CheckpointResult(
            optimization.id,
            CheckpointAction.ROLLED_BACK,
            changes=changes,
            checkpoint_count=len(monitored.checkpoints),
            reason=reason,
        )

    # -------------------------------------------------------------------------
    # Status and shutdown
    # -------------------------------------------------------------------------

    def get_monitoring_status(self) -> list[MonitoringStatus]:
        now = self._clock()
        statuses = []
        for monitored in self._active.values():
            latest = monitored.checkpoints[-1] if monitored.checkpoints else None
            statuses.append(MonitoringStatus(
                optimization_id=monitored.optimization.id,
                parameter=monitored.optimization.parameter,
                old_value=monitored.optimization.old_value,
                new_value=monitored.optimization.new_value,
                applied_at=monitored.optimization.applied_at,
                checkpoint_count=len(monitored.checkpoints),
                latest_changes=(
                    MetricChanges(latest.success_change, latest.duration_change, latest.error_change)
                    if latest is not None else None
                ),
                seconds_remaining=max(0.0, monitored.evaluate_at - now),
            ))
        return statuses

    async def shutdown(self) -> None:
        """Cancel all timers. Active optimizations stay active in the store."""
        active = len(self._active)
        self._active.clear()
        await self._scheduler.shutdown()
        _logger.debug("feedback_monitor_shutdown", rule_name=self.rule_name, active=active)


__all__ = [
    "CheckpointAction",
    "CheckpointResult",
    "FeedbackLoopMonitor",
    "MetricChanges",
    "MonitoredOptimization",
    "MonitoringStatus",
]
