"""Data models for the learning store.

This module contains the dataclasses and enums used by the LearningStore.
They represent the records persisted in the SQLite database: execution facts,
aggregate pattern counters, confusion matrices, parameter history, monitored
optimizations and generated insights.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union


class DecisionOutcome(str, Enum):
    """Confusion-matrix cell for one validated decision."""

    TRUE_POSITIVE = "true_positive"
    """Blocked, and should have been blocked."""

    FALSE_POSITIVE = "false_positive"
    """Blocked, but should have been allowed."""

    TRUE_NEGATIVE = "true_negative"
    """Allowed, and should have been allowed."""

    FALSE_NEGATIVE = "false_negative"
    """Allowed, but should have been blocked."""

    @classmethod
    def classify(cls, predicted_blocked: bool, should_block: bool) -> "DecisionOutcome":
        if predicted_blocked:
            return cls.TRUE_POSITIVE if should_block else cls.FALSE_POSITIVE
        return cls.FALSE_NEGATIVE if should_block else cls.TRUE_NEGATIVE


class OptimizationStatus(str, Enum):
    """Lifecycle of a tuning attempt. Transitions are one-way out of ACTIVE."""

    ACTIVE = "active"
    ACCEPTED = "accepted"
    ROLLED_BACK = "rolled_back"


class OptimizationKind(str, Enum):
    GRADUAL = "gradual"
    AB_TEST = "ab_test"


class ChangeType(str, Enum):
    """Kind of entry in the parameter change audit log."""

    APPLIED = "applied"
    """A new value went live and is being monitored."""

    ACCEPTED = "accepted"
    """A monitored value was confirmed."""

    ROLLED_BACK = "rolled_back"
    """A monitored value was reverted to its pre-change value."""

    RESTORED = "restored"
    """A failed rollback fell back to the last known-good value."""


@dataclass
class ExecutionRecord:
    """One recorded rule invocation. Immutable once written."""

    id: int
    rule_name: str
    recorded_at: datetime
    duration_ms: float
    success: bool
    blocked: bool
    file_path: str | None = None
    file_extension: str | None = None
    file_type: str | None = None
    content_hash: str | None = None
    content_size: int = 0
    hour_of_day: int = 0
    day_of_week: int = 0
    error_message: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    ab_test_id: str | None = None
    ab_arm: str | None = None


@dataclass
class ExecutionStats:
    """Aggregate view of all executions recorded for a rule."""

    execution_count: int = 0
    avg_duration_ms: float = 0.0
    success_rate: float = 0.0
    block_rate: float = 0.0
    error_count: int = 0


@dataclass(frozen=True)
class MetricsSnapshot:
    """Aggregate metrics over the most recent executions of a rule.

    Used as a monitoring baseline and as checkpoint measurements.
    """

    success_rate: float
    avg_duration_ms: float
    error_rate: float
    execution_count: int
    latest_execution_id: int = 0
    captured_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "avg_duration_ms": self.avg_duration_ms,
            "error_rate": self.error_rate,
            "execution_count": self.execution_count,
            "latest_execution_id": self.latest_execution_id,
            "captured_at": self.captured_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetricsSnapshot":
        return cls(
            success_rate=data["success_rate"],
            avg_duration_ms=data["avg_duration_ms"],
            error_rate=data["error_rate"],
            execution_count=data["execution_count"],
            latest_execution_id=data.get("latest_execution_id", 0),
            captured_at=datetime.fromisoformat(data["captured_at"]),
        )


@dataclass(frozen=True)
class Checkpoint:
    """One periodic comparison of live metrics against the baseline.

    Changes are signed: success_change and error_change are absolute rate
    differences, duration_change is the relative change of average duration.
    """

    metrics: MetricsSnapshot
    success_change: float
    duration_change: float
    error_change: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "metrics": self.metrics.to_dict(),
            "success_change": self.success_change,
            "duration_change": self.duration_change,
            "error_change": self.error_change,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        return cls(
            metrics=MetricsSnapshot.from_dict(data["metrics"]),
            success_change=data["success_change"],
            duration_change=data["duration_change"],
            error_change=data["error_change"],
        )


@dataclass
class ArmMetrics:
    """Per-arm accumulated results of an A/B test."""

    arm: str
    executions: int = 0
    successes: int = 0
    total_duration_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.executions if self.executions else 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.executions if self.executions else 0.0


@dataclass
class PatternStatRecord:
    """Aggregate counters for one (rule, pattern type, pattern value) triple."""

    rule_name: str
    pattern_type: str
    pattern_value: str
    total_count: int = 0
    success_count: int = 0
    block_count: int = 0
    total_duration_ms: float = 0.0
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_count if self.total_count else 0.0

    @property
    def block_rate(self) -> float:
        return self.block_count / self.total_count if self.total_count else 0.0

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.total_count if self.total_count else 0.0

    @property
    def confidence(self) -> float:
        """Grows linearly with observations and saturates at 50."""
        return min(self.total_count / 50, 1.0)


@dataclass
class PatternEffectivenessStats:
    """Confusion matrix for one (rule, pattern type, pattern key) triple.

    Only the four counters are persisted. Every rate is derived from them on
    access, so repeated reads can never drift from the raw counts.
    """

    rule_name: str
    pattern_type: str
    pattern_key: str
    true_positives: int = 0
    false_positives: int = 0
    true_negatives: int = 0
    false_negatives: int = 0
    last_updated: datetime | None = None

    @property
    def pattern_id(self) -> str:
        return f"{self.pattern_type}:{self.pattern_key}"

    @property
    def total(self) -> int:
        return (
            self.true_positives
            + self.false_positives
            + self.true_negatives
            + self.false_negatives
        )

    @property
    def precision(self) -> float:
        denominator = self.true_positives + self.false_positives
        return self.true_positives / denominator if denominator else 0.0

    @property
    def recall(self) -> float:
        denominator = self.true_positives + self.false_negatives
        return self.true_positives / denominator if denominator else 0.0

    @property
    def false_positive_rate(self) -> float:
        denominator = self.false_positives + self.true_negatives
        return self.false_positives / denominator if denominator else 0.0

    @property
    def false_negative_rate(self) -> float:
        denominator = self.false_negatives + self.true_positives
        return self.false_negatives / denominator if denominator else 0.0

    @property
    def accuracy(self) -> float:
        total = self.total
        return (self.true_positives + self.true_negatives) / total if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern_type": self.pattern_type,
            "pattern_key": self.pattern_key,
            "tp": self.true_positives,
            "fp": self.false_positives,
            "tn": self.true_negatives,
            "fn": self.false_negatives,
            "total": self.total,
            "precision": self.precision,
            "recall": self.recall,
            "false_positive_rate": self.false_positive_rate,
        }


@dataclass
class ParameterRecord:
    rule_name: str
    name: str
    value: Any
    last_updated: datetime | None = None


@dataclass
class ParameterChangeRecord:
    """One audited transition of a parameter value."""

    id: int
    rule_name: str
    parameter: str
    old_value: Any
    new_value: Any
    confidence: float
    reason: str
    change_type: ChangeType
    changed_at: datetime
    optimization_id: str | None = None


@dataclass
class OptimizationRecord:
    """An in-flight or concluded tuning attempt for one parameter."""

    rule_name: str
    parameter: str
    old_value: Any
    new_value: Any
    confidence: float
    reason: str
    kind: OptimizationKind = OptimizationKind.GRADUAL
    status: OptimizationStatus = OptimizationStatus.ACTIVE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    baseline: MetricsSnapshot | None = None
    checkpoints: list[Checkpoint] = field(default_factory=list)
    applied_at: datetime = field(default_factory=datetime.now)
    concluded_at: datetime | None = None
    success_rate_before: float | None = None
    success_rate_after: float | None = None
    performance_impact: float | None = None
    rollback_reason: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    """Kind-specific options, such as the sample size and duration of an A/B test."""

    @property
    def rolled_back(self) -> bool:
        return self.status == OptimizationStatus.ROLLED_BACK

    @property
    def is_active(self) -> bool:
        return self.status == OptimizationStatus.ACTIVE


# =============================================================================
# Insights
# =============================================================================


class InsightKind(str, Enum):
    """Tag of an insight. Each kind carries exactly one payload type."""

    TIMEOUT_OPTIMIZATION = "timeout_optimization"
    PATTERN_DEGRADATION = "pattern_degradation"
    PATTERN_REFINEMENT = "pattern_refinement"
    SUCCESS_CORRELATION = "success_correlation"
    OUTLIER_INVESTIGATION = "outlier_investigation"
    ANOMALY = "anomaly"


@dataclass(frozen=True)
class TimeoutOptimizationPayload:
    current_timeout_ms: float
    recommended_timeout_ms: float
    p99_ms: float
    mean_ms: float
    stddev_ms: float
    sample_size: int


@dataclass(frozen=True)
class PatternDegradationPayload:
    pattern_type: str
    pattern_key: str
    precision: float
    recall: float
    false_positive_rate: float
    total: int


@dataclass(frozen=True)
class PatternRefinementPayload:
    pattern_type: str
    pattern_key: str
    parameter: str
    current_value: str
    proposed_value: str
    reason: str


@dataclass(frozen=True)
class SuccessCorrelationPayload:
    dimension: str
    group: str
    success_rate: float
    overall_rate: float
    deviation: float
    count: int
    direction: str


@dataclass(frozen=True)
class OutlierInvestigationPayload:
    outlier_count: int
    sample_size: int
    outlier_ratio: float
    max_outlier_ms: float


@dataclass(frozen=True)
class AnomalyPayload:
    anomaly_type: str
    severity: str
    description: str
    value: float


InsightPayload = Union[
    TimeoutOptimizationPayload,
    PatternDegradationPayload,
    PatternRefinementPayload,
    SuccessCorrelationPayload,
    OutlierInvestigationPayload,
    AnomalyPayload,
]

PAYLOAD_TYPES: dict[InsightKind, type] = {
    InsightKind.TIMEOUT_OPTIMIZATION: TimeoutOptimizationPayload,
    InsightKind.PATTERN_DEGRADATION: PatternDegradationPayload,
    InsightKind.PATTERN_REFINEMENT: PatternRefinementPayload,
    InsightKind.SUCCESS_CORRELATION: SuccessCorrelationPayload,
    InsightKind.OUTLIER_INVESTIGATION: OutlierInvestigationPayload,
    InsightKind.ANOMALY: AnomalyPayload,
}


@dataclass(frozen=True)
class Insight:
    """A generated recommendation, consumed at most once.

    Raises:
        ValueError: If confidence is outside [0, 1] or the payload type does
            not match the kind.
    """

    rule_name: str
    kind: InsightKind
    payload: InsightPayload
    confidence: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    applied: bool = False
    applied_at: datetime | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"insight confidence must be in [0, 1], got {self.confidence}")
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"{self.kind.value} insight requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    def payload_dict(self) -> dict[str, Any]:
        return asdict(self.payload)

    @staticmethod
    def payload_from_dict(kind: InsightKind, data: dict[str, Any]) -> InsightPayload:
        payload: InsightPayload = PAYLOAD_TYPES[kind](**data)
        return payload
