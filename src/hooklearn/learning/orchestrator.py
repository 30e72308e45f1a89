"""Learning orchestrator: the single entry point around a rule's execution.

``LearningOrchestrator.execute_with_learning`` captures the invocation
context, resolves the rule's parameters (including A/B arm assignment), runs
the rule, and hands the outcome to the learning path:

    record execution -> update pattern stats -> cache the decision
        -> feed A/B tests -> every N executions: analyze + optimize

The learning path runs inline or as a background asyncio task. Failures
anywhere in it are logged and dropped; the rule's own result (or exception)
always reaches the caller unchanged.

Example:
    async with LearningOrchestrator("no-secrets") as learning:
        result = await learning.execute_with_learning(check_secrets, payload)
"""

from __future__ import annotations

import asyncio
import inspect
import sqlite3
import time
from collections.abc import Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any

from hooklearn.core.config import LearningConfig
from hooklearn.core.errors import LearningError
from hooklearn.core.logging import LearningContext, configure_logging, get_logger, with_context
from hooklearn.learning.adaptive import (
    TIMEOUT_PARAMETER,
    AdaptiveParameterSystem,
    OptimizationCycleResult,
    ResolvedParameters,
)
from hooklearn.learning.analyzer import PatternAnalyzer, generate_insights
from hooklearn.learning.context import ExecutionFacts, capture_context, extract_patterns
from hooklearn.learning.effectiveness import PatternEffectivenessTracker
from hooklearn.learning.feedback import FeedbackLoopMonitor
from hooklearn.learning.scheduling import Scheduler, has_running_loop, log_task_exception
from hooklearn.learning.store import LearningStore
from hooklearn.learning.store.models import (
    Insight,
    OptimizationRecord,
    PatternDegradationPayload,
    PatternEffectivenessStats,
    PatternStatRecord,
    SuccessCorrelationPayload,
)

_logger = get_logger("learning.orchestrator")

_EMPTY_PARAMETERS: Mapping[str, Any] = MappingProxyType({})
_current_parameters: ContextVar[Mapping[str, Any]] = ContextVar(
    "hooklearn_parameters", default=_EMPTY_PARAMETERS
)

RuleFn = Callable[[Any], Any]


def current_parameters() -> Mapping[str, Any]:
    """Parameters in effect for the rule invocation running in this context.

    Empty outside ``execute_with_learning`` or when learning is disabled.
    """
    return _current_parameters.get()


def interpret_decision(result: Any) -> bool:
    """Whether a rule result means "block".

    A bool is the decision itself; a mapping or object with a ``blocked``
    attribute uses it; a ``decision`` of ``"block"`` blocks. Anything else
    allows.
    """
    if isinstance(result, bool):
        return result
    if isinstance(result, Mapping):
        if "blocked" in result:
            return bool(result["blocked"])
        return str(result.get("decision", "")).lower() == "block"
    blocked = getattr(result, "blocked", None)
    if blocked is not None:
        return bool(blocked)
    return str(getattr(result, "decision", "")).lower() == "block"


@dataclass(frozen=True)
class LearningStatistics:
    """Aggregate view of what has been learned about one rule."""

    rule_name: str
    enabled: bool
    execution_count: int = 0
    avg_duration_ms: float = 0.0
    success_rate: float = 0.0
    patterns_learned: int = 0
    insights_generated: int = 0
    active_parameters: int = 0

    @classmethod
    def from_store(
        cls, store: LearningStore, rule_name: str, *, pattern_expiration_days: int = 30
    ) -> LearningStatistics:
        stats = store.get_execution_stats(rule_name)
        return cls(
            rule_name=rule_name,
            enabled=True,
            execution_count=stats.execution_count,
            avg_duration_ms=stats.avg_duration_ms,
            success_rate=stats.success_rate,
            patterns_learned=store.count_patterns(rule_name, max_age_days=pattern_expiration_days),
            insights_generated=store.count_insights(rule_name),
            active_parameters=len(store.get_parameters(rule_name)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_name": self.rule_name,
            "enabled": self.enabled,
            "execution_count": self.execution_count,
            "avg_duration_ms": round(self.avg_duration_ms, 3),
            "success_rate": round(self.success_rate, 4),
            "patterns_learned": self.patterns_learned,
            "insights_generated": self.insights_generated,
            "active_parameters": self.active_parameters,
        }


@dataclass(frozen=True)
class OptimizationHistoryEntry:
    optimization_id: str
    parameter: str
    kind: str
    status: str
    old_value: Any
    new_value: Any
    applied_at: datetime
    success_rate_before: float | None
    success_rate_after: float | None
    rolled_back: bool
    rollback_reason: str | None

    @classmethod
    def from_record(cls, record: OptimizationRecord) -> OptimizationHistoryEntry:
        return cls(
            optimization_id=record.id,
            parameter=record.parameter,
            kind=record.kind.value,
            status=record.status.value,
            old_value=record.old_value,
            new_value=record.new_value,
            applied_at=record.applied_at,
            success_rate_before=record.success_rate_before,
            success_rate_after=record.success_rate_after,
            rolled_back=record.rolled_back,
            rollback_reason=record.rollback_reason,
        )


def _insight_key(insight: Insight) -> tuple[str, ...]:
    """Identity used to keep at most one pending insight per subject."""
    payload = insight.payload
    if isinstance(payload, SuccessCorrelationPayload):
        return (insight.kind.value, payload.dimension, payload.group)
    if isinstance(payload, PatternDegradationPayload):
        return (insight.kind.value, payload.pattern_type, payload.pattern_key)
    return (insight.kind.value,)


class LearningOrchestrator:
    """Wraps rule execution with context capture, recording and adaptive tuning.

    Args:
        rule_name: Rule whose invocations are learned from.
        config: Learning configuration; defaults to ``LearningConfig()``.
        store: Store to use. When omitted, one is opened from
            ``config.store`` during ``initialize`` and closed by ``aclose``.
    """

    def __init__(
        self,
        rule_name: str,
        config: LearningConfig | None = None,
        store: LearningStore | None = None,
    ) -> None:
        self.rule_name = rule_name
        self.config = config or LearningConfig()
        self._store = store
        self._owns_store = store is None
        self._enabled = self.config.enabled
        self._initialized = False
        self._scheduler = Scheduler()
        self._background: set[asyncio.Task[None]] = set()
        self._executions = 0
        self._analyzer: PatternAnalyzer | None = None
        self._tracker: PatternEffectivenessTracker | None = None
        self._monitor: FeedbackLoopMonitor | None = None
        self._adaptive: AdaptiveParameterSystem | None = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def store(self) -> LearningStore | None:
        return self._store

    @property
    def adaptive(self) -> AdaptiveParameterSystem | None:
        return self._adaptive

    @property
    def monitor(self) -> FeedbackLoopMonitor | None:
        return self._monitor

    @property
    def tracker(self) -> PatternEffectivenessTracker | None:
        return self._tracker

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> bool:
        """Open the store and build the learning components.

        When ``logging.configure`` is set, process-wide logging is configured
        from the ``logging`` section first.

        On failure learning is disabled for the lifetime of this instance;
        rules keep running unobserved.

        Returns:
            True if learning is active.
        """
        if self._initialized or not self._enabled:
            return self._enabled
        log_config = self.config.logging
        try:
            if log_config.configure:
                configure_logging(
                    level=log_config.level,
                    format=log_config.format,
                    file_path=log_config.file_path,
                )
            if self._store is None:
                self._store = LearningStore.from_config(self.config.store)
            self._analyzer = PatternAnalyzer(
                self._store,
                self.rule_name,
                min_executions=self.config.min_executions_for_patterns,
                window=self.config.analysis_window,
                default_timeout_ms=self.config.adaptive.default_timeout_ms,
            )
            self._tracker = PatternEffectivenessTracker(
                self._store,
                self.rule_name,
                cache_size=self.config.decision_cache.max_size,
                cache_ttl_seconds=self.config.decision_cache.ttl_seconds,
                effectiveness_threshold=self.config.adaptive.pattern_effectiveness_threshold,
            )
            self._monitor = FeedbackLoopMonitor(
                self._store, self.rule_name, self.config, self._scheduler
            )
            self._adaptive = AdaptiveParameterSystem(
                self._store, self.rule_name, self.config, self._monitor
            )
            self._monitor.resume_active()
        except (LearningError, sqlite3.Error, OSError) as e:
            self._disable("initialization_failed", e)
            return False

        self._initialized = True
        _logger.info(
            "learning_initialized",
            rule_name=self.rule_name,
            db_path=str(self._store.db_path),
            adaptive=self.config.adaptive.enabled,
            async_operations=self.config.async_operations,
        )
        return True

    def _disable(self, event: str, error: BaseException) -> None:
        self._enabled = False
        _logger.error(
            event,
            rule_name=self.rule_name,
            error_type=type(error).__name__,
            error=str(error),
        )

    async def drain(self) -> None:
        """Wait for every in-flight background learning task."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Finish background work, cancel monitor timers and release the store.

        Optimizations still under supervision stay active in the store and
        are resumed by the next instance.
        """
        await self.drain()
        if self._monitor is not None:
            await self._monitor.shutdown()
        await self._scheduler.shutdown()
        if self._owns_store and self._store is not None:
            self._store.close()
        _logger.debug("learning_closed", rule_name=self.rule_name)

    async def __aenter__(self) -> LearningOrchestrator:
        self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # =========================================================================
    # Execution
    # =========================================================================

    def _resolve_parameters(self) -> ResolvedParameters:
        if self._adaptive is None:
            return ResolvedParameters(values={})
        try:
            return self._adaptive.resolve_parameters()
        except (LearningError, sqlite3.Error) as e:
            _logger.warning(
                "parameter_resolution_failed", rule_name=self.rule_name, error=str(e)
            )
            return ResolvedParameters(values={})

    async def _run_rule(self, rule_fn: RuleFn, payload: Any, resolved: ResolvedParameters) -> Any:
        result = rule_fn(payload)
        if not inspect.isawaitable(result):
            return result
        timeout_ms = resolved.values.get(TIMEOUT_PARAMETER)
        if self.config.enforce_timeout and timeout_ms:
            return await asyncio.wait_for(result, timeout=float(timeout_ms) / 1000)
        return await result

    async def execute_with_learning(
        self,
        rule_fn: RuleFn,
        payload: Any,
        *,
        decision_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run ``rule_fn(payload)`` and learn from the outcome.

        Args:
            rule_fn: The rule, sync or async. Inside it,
                ``current_parameters()`` returns the resolved parameters.
            payload: The rule input.
            decision_id: Id under which the decision is cached for a later
                ``report_outcome``. Without it, no decision is tracked.
            metadata: Extra string metadata for context capture.

        Returns:
            Whatever the rule returned.

        Raises:
            Exception: Whatever the rule raised, after it has been recorded.
        """
        if not self.initialize():
            result = rule_fn(payload)
            return await result if inspect.isawaitable(result) else result

        facts = capture_context(payload, self.rule_name, metadata=metadata)
        resolved = self._resolve_parameters()
        token = _current_parameters.set(MappingProxyType(dict(resolved.values)))
        ctx = LearningContext(rule_name=self.rule_name)
        if decision_id is not None:
            ctx = ctx.with_decision(decision_id)
        started = time.perf_counter()
        try:
            with with_context(ctx):
                result = await self._run_rule(rule_fn, payload, resolved)
        except Exception as e:
            duration_ms = (time.perf_counter() - started) * 1000
            self._dispatch(ctx, facts, resolved, duration_ms, False, False, e)
            raise
        finally:
            _current_parameters.reset(token)

        duration_ms = (time.perf_counter() - started) * 1000
        self._dispatch(ctx, facts, resolved, duration_ms, True, interpret_decision(result), None)
        return result

    def _dispatch(
        self,
        ctx: LearningContext,
        facts: ExecutionFacts,
        resolved: ResolvedParameters,
        duration_ms: float,
        success: bool,
        blocked: bool,
        error: BaseException | None,
    ) -> None:
        error_message = None
        if error is not None:
            error_message = f"{type(error).__name__}: {error}"[:500]

        def _work() -> None:
            with with_context(ctx):
                self._learn(
                    facts, resolved, duration_ms, success, blocked, error_message, ctx.decision_id
                )

        if self.config.async_operations and has_running_loop():
            task = asyncio.get_running_loop().create_task(self._learn_later(_work))
            task.set_name(f"learn:{self.rule_name}")
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
        else:
            _work()

    @staticmethod
    async def _learn_later(work: Callable[[], None]) -> None:
        # Yield once so the caller gets the rule's result first
        await asyncio.sleep(0)
        work()

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        log_task_exception(task, _logger, "background_learning_failed")

    def _learn(
        self,
        facts: ExecutionFacts,
        resolved: ResolvedParameters,
        duration_ms: float,
        success: bool,
        blocked: bool,
        error_message: str | None,
        decision_id: str | None,
    ) -> None:
        store = self._store
        if store is None:
            return
        try:
            patterns = extract_patterns(facts, duration_ms)
            store.record_execution(
                self.rule_name,
                duration_ms=duration_ms,
                success=success,
                blocked=blocked,
                file_path=facts.file_path,
                file_extension=facts.file_extension,
                file_type=facts.file_type,
                content_hash=facts.content_hash,
                content_size=facts.content_size,
                error_message=error_message,
                parameters=dict(resolved.values),
                ab_test_id=resolved.ab_test_id,
                ab_arm=resolved.ab_arm,
                recorded_at=facts.captured_at,
            )
            store.update_pattern_stats(
                self.rule_name,
                patterns,
                success=success,
                blocked=blocked,
                duration_ms=duration_ms,
            )
            if decision_id is not None and success and self._tracker is not None:
                self._tracker.record_decision(facts, blocked, patterns, decision_id)
        except Exception as e:
            _logger.warning(
                "recording_failed",
                rule_name=self.rule_name,
                error_type=type(e).__name__,
                error=str(e),
            )
            return

        self._executions += 1
        try:
            if self._adaptive is not None and resolved.ab_test_id is not None:
                self._adaptive.record_ab_result(resolved)
            if self._monitor is not None:
                self._monitor.poll()
            if self._executions % self.config.optimization_interval == 0:
                if store.count_executions(self.rule_name) >= (
                    self.config.adaptive.min_executions_for_optimization
                ):
                    self._run_cycle()
        except Exception as e:
            _logger.error(
                "learning_cycle_failed",
                rule_name=self.rule_name,
                error_type=type(e).__name__,
                error=str(e),
            )

    def _save_insights(self, insights: list[Insight]) -> int:
        if self._store is None:
            return 0
        pending = {
            _insight_key(i)
            for i in self._store.get_insights(self.rule_name, applied=False, limit=1000)
        }
        saved = 0
        for insight in insights:
            key = _insight_key(insight)
            if insight.confidence < self.config.min_confidence_for_insights or key in pending:
                continue
            self._store.save_insight(insight)
            pending.add(key)
            saved += 1
        return saved

    def _run_cycle(self) -> OptimizationCycleResult | None:
        """Analyze recent executions, persist insights and run adaptive tuning."""
        if self._analyzer is None or self._adaptive is None:
            return None
        try:
            report = self._analyzer.analyze()
            saved = self._save_insights(generate_insights(report))
            if saved:
                _logger.info("insights_generated", rule_name=self.rule_name, count=saved)
        except (LearningError, sqlite3.Error) as e:
            _logger.warning("analysis_failed", rule_name=self.rule_name, error=str(e))

        if self._tracker is not None:
            self._tracker.purge_expired()
        if not self.config.adaptive.enabled:
            return None

        result = self._adaptive.run_optimization_cycle()
        _logger.debug(
            "optimization_cycle_complete",
            rule_name=self.rule_name,
            insights_consumed=result.insights_consumed,
            timeout_value=result.timeout_value,
            refinements=len(result.refinements_applied),
            ab_results=len(result.ab_results),
            skipped=result.skipped,
        )
        return result

    # =========================================================================
    # Feedback and queries
    # =========================================================================

    def report_outcome(self, decision_id: str, should_block: bool, source: str = "external") -> bool:
        """Report the ground truth of an earlier decision.

        Args:
            decision_id: Id passed to ``execute_with_learning``.
            should_block: Whether the action should have been blocked.
            source: Free-form label of where the truth came from.

        Returns:
            True if the decision was still cached and has been applied.
        """
        if not self.initialize() or self._tracker is None:
            return False
        try:
            applied = self._tracker.validate_decision(decision_id, should_block)
        except (LearningError, sqlite3.Error) as e:
            _logger.warning(
                "outcome_report_failed",
                rule_name=self.rule_name,
                decision_id=decision_id,
                error=str(e),
            )
            return False
        _logger.debug(
            "outcome_reported",
            rule_name=self.rule_name,
            decision_id=decision_id,
            source=source,
            applied=applied,
        )
        return applied

    def get_statistics(self) -> LearningStatistics:
        """Aggregate statistics of the rule. Reads only; repeated calls agree."""
        if not self.initialize() or self._store is None:
            return LearningStatistics(rule_name=self.rule_name, enabled=False)
        return LearningStatistics.from_store(
            self._store,
            self.rule_name,
            pattern_expiration_days=self.config.pattern_expiration_days,
        )

    def get_pattern_stats(self, pattern_type: str | None = None) -> list[PatternEffectivenessStats]:
        if not self.initialize() or self._tracker is None:
            return []
        return self._tracker.get_pattern_stats(pattern_type)

    def get_learned_patterns(self, pattern_type: str | None = None) -> list[PatternStatRecord]:
        """Unexpired pattern counters, most frequent first, capped per rule."""
        if not self.initialize() or self._store is None:
            return []
        return self._store.get_pattern_stat_records(
            self.rule_name,
            pattern_type,
            max_age_days=self.config.pattern_expiration_days,
            limit=self.config.max_patterns_per_rule,
        )

    def get_optimization_history(self, limit: int = 10) -> list[OptimizationHistoryEntry]:
        if not self.initialize() or self._store is None:
            return []
        return [
            OptimizationHistoryEntry.from_record(record)
            for record in self._store.get_optimizations(self.rule_name, limit=limit)
        ]

    def start_ab_test(
        self,
        parameter: str,
        candidate_value: Any,
        *,
        duration_seconds: float | None = None,
        sample_size: float = 0.5,
        min_executions: int | None = None,
    ) -> str | None:
        """Start an A/B test. Returns None when learning is disabled.

        Raises:
            ExperimentError: If the test request is invalid.
            ParameterValidationError: If the candidate value is invalid.
        """
        if not self.initialize() or self._adaptive is None:
            return None
        return self._adaptive.start_ab_test(
            parameter,
            candidate_value,
            duration_seconds=duration_seconds,
            sample_size=sample_size,
            min_executions=min_executions,
        )

    def force_optimization(self) -> OptimizationCycleResult | None:
        """Run an analysis and optimization cycle now. Cooldowns still apply."""
        if not self.initialize():
            return None
        return self._run_cycle()

    def prune(self, retention_days: int | None = None) -> int:
        """Delete execution records older than the retention period."""
        if not self.initialize() or self._store is None:
            return 0
        return self._store.prune_executions(retention_days or self.config.retention_days)


__all__ = [
    "LearningOrchestrator",
    "LearningStatistics",
    "OptimizationHistoryEntry",
    "current_parameters",
    "interpret_decision",
]
