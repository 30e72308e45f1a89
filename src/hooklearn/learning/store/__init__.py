"""Learning store with modular mixins.

This package provides the LearningStore class, which is composed from
multiple mixins, each handling a specific domain of functionality:

- ExecutionMixin: Execution records, window metrics, A/B arm metrics, pruning
- PatternStatsMixin: Aggregate pattern counters with expiry filtering
- EffectivenessMixin: Confusion-matrix counters per pattern key
- ParameterMixin: Live parameter values and the change audit log
- OptimizationMixin: Monitored tuning attempts and their conclusions
- InsightMixin: Generated insights with claim-once consumption

The base class (LearningStoreBase) provides:
- SQLite connection management with WAL mode
- Serialized writes with bounded retry on lock contention
- Schema creation, version detection and migration

Usage:
    from hooklearn.learning.store import LearningStore

    store = LearningStore(db_path=Path("/custom/learning.db"))
    orchestrator = LearningOrchestrator("no-secrets", store=store)

There is no process-wide store: every component receives the store handle
it should use at construction time.
"""

from hooklearn.learning.store.base import LearningStoreBase, WhereBuilder
from hooklearn.learning.store.effectiveness import EffectivenessMixin
from hooklearn.learning.store.executions import ExecutionMixin
from hooklearn.learning.store.insights import InsightMixin
from hooklearn.learning.store.models import (
    AnomalyPayload,
    ArmMetrics,
    ChangeType,
    Checkpoint,
    DecisionOutcome,
    ExecutionRecord,
    ExecutionStats,
    Insight,
    InsightKind,
    InsightPayload,
    MetricsSnapshot,
    OptimizationKind,
    OptimizationRecord,
    OptimizationStatus,
    OutlierInvestigationPayload,
    ParameterChangeRecord,
    ParameterRecord,
    PatternDegradationPayload,
    PatternEffectivenessStats,
    PatternRefinementPayload,
    PatternStatRecord,
    SuccessCorrelationPayload,
    TimeoutOptimizationPayload,
)
from hooklearn.learning.store.optimizations import OptimizationMixin
from hooklearn.learning.store.parameters import ParameterMixin
from hooklearn.learning.store.patterns import PatternStatsMixin


class LearningStore(
    ExecutionMixin,
    PatternStatsMixin,
    EffectivenessMixin,
    ParameterMixin,
    OptimizationMixin,
    InsightMixin,
    LearningStoreBase,
):
    """Learning store combining all mixins.

    The single owner of durable learning state. Every other component holds
    only bounded in-memory views derived from it.

    The base class is listed last in the MRO so that mixins can rely on
    ``_get_connection()``, ``_execute_write()`` and ``_logger``.
    """


__all__ = [
    "AnomalyPayload",
    "ArmMetrics",
    "ChangeType",
    "Checkpoint",
    "DecisionOutcome",
    "EffectivenessMixin",
    "ExecutionMixin",
    "ExecutionRecord",
    "ExecutionStats",
    "Insight",
    "InsightKind",
    "InsightMixin",
    "InsightPayload",
    "LearningStore",
    "LearningStoreBase",
    "MetricsSnapshot",
    "OptimizationKind",
    "OptimizationMixin",
    "OptimizationRecord",
    "OptimizationStatus",
    "OutlierInvestigationPayload",
    "ParameterChangeRecord",
    "ParameterMixin",
    "ParameterRecord",
    "PatternDegradationPayload",
    "PatternEffectivenessStats",
    "PatternRefinementPayload",
    "PatternStatRecord",
    "PatternStatsMixin",
    "SuccessCorrelationPayload",
    "TimeoutOptimizationPayload",
    "WhereBuilder",
]
