"""Batch statistical analysis of execution records.

The analyzer reads the most recent executions of a rule and produces an
AnalysisReport: duration statistics, outliers, grouped success-rate
correlations, temporal profiles, file-pattern statistics, anomalies and
recommendations. It never mutates state; turning a report into persisted
insights is the caller's decision (see ``generate_insights``).
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from hooklearn.core.logging import get_logger
from hooklearn.learning.store.models import (
    AnomalyPayload,
    ExecutionRecord,
    Insight,
    InsightKind,
    OutlierInvestigationPayload,
    SuccessCorrelationPayload,
    TimeoutOptimizationPayload,
)

if TYPE_CHECKING:
    from hooklearn.learning.store import LearningStore

_logger = get_logger("learning.analyzer")

Z_SCORE_THRESHOLD = 2.5
IQR_MULTIPLIER = 1.5
MIN_GROUP_SIZE = 5
SIGNIFICANCE_THRESHOLD = 0.15
TIMEOUT_REDUCTION_RATIO = 0.7
OUTLIER_RATIO_THRESHOLD = 0.05
RECENT_WINDOW = 20
SUCCESS_SHIFT_THRESHOLD = 0.2


# =============================================================================
# Descriptive statistics
# =============================================================================


@dataclass(frozen=True)
class DurationStatistics:
    """Descriptive statistics over a sample of durations (ms)."""

    count: int = 0
    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    stddev: float = 0.0
    median: float = 0.0
    p25: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0

    @property
    def iqr(self) -> float:
        return self.p75 - self.p25

    @property
    def coefficient_of_variation(self) -> float:
        return self.stddev / self.mean if self.mean else 0.0


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linearly interpolated percentile of an ascending sequence.

    Args:
        sorted_values: Values sorted ascending.
        p: Fraction in [0, 1].
    """
    if not sorted_values:
        return 0.0
    position = (len(sorted_values) - 1) * p
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    weight = position - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def describe(values: Iterable[float]) -> DurationStatistics:
    """Compute DurationStatistics. The standard deviation is the population one."""
    ordered = sorted(values)
    n = len(ordered)
    if n == 0:
        return DurationStatistics()
    mean = sum(ordered) / n
    variance = sum((v - mean) ** 2 for v in ordered) / n
    return DurationStatistics(
        count=n,
        min=ordered[0],
        max=ordered[-1],
        mean=mean,
        stddev=math.sqrt(variance),
        median=percentile(ordered, 0.5),
        p25=percentile(ordered, 0.25),
        p75=percentile(ordered, 0.75),
        p90=percentile(ordered, 0.90),
        p95=percentile(ordered, 0.95),
        p99=percentile(ordered, 0.99),
    )


@dataclass(frozen=True)
class Outlier:
    index: int
    value: float
    z_score: float
    method: str
    """"z_score", "iqr" or "both"."""


def detect_outliers(values: Sequence[float], stats: DurationStatistics | None = None) -> list[Outlier]:
    """Flag values with |z| > 2.5 or outside the 1.5 x IQR fences."""
    stats = stats or describe(values)
    if stats.count == 0:
        return []
    lower_fence = stats.p25 - IQR_MULTIPLIER * stats.iqr
    upper_fence = stats.p75 + IQR_MULTIPLIER * stats.iqr

    outliers = []
    for index, value in enumerate(values):
        z = (value - stats.mean) / stats.stddev if stats.stddev else 0.0
        by_z = abs(z) > Z_SCORE_THRESHOLD
        by_iqr = value < lower_fence or value > upper_fence
        if by_z or by_iqr:
            method = "both" if by_z and by_iqr else ("z_score" if by_z else "iqr")
            outliers.append(Outlier(index=index, value=value, z_score=z, method=method))
    return outliers


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    numerator = sum((i - mean_x) * (y - mean_y) for i, y in enumerate(values))
    denominator = sum((i - mean_x) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


# =============================================================================
# Grouped correlation
# =============================================================================


@dataclass(frozen=True)
class GroupStats:
    """Success-rate statistics of one group along one dimension."""

    dimension: str
    group: str
    count: int
    success_rate: float
    avg_duration_ms: float
    deviation: float
    significant: bool
    direction: str
    """"positive" or "negative" relative to the overall rate."""


def correlate(
    records: Sequence[ExecutionRecord],
    dimension: str,
    key: Callable[[ExecutionRecord], str | None],
    *,
    min_group_size: int = MIN_GROUP_SIZE,
    threshold: float = SIGNIFICANCE_THRESHOLD,
) -> list[GroupStats]:
    """Partition records by ``key`` and compare each group's success rate.

    The reference is the count-weighted success rate over all groups. Only
    groups with at least ``min_group_size`` records are reported.
    """
    groups: dict[str, list[ExecutionRecord]] = defaultdict(list)
    for record in records:
        group = key(record)
        if group is not None:
            groups[group].append(record)
    if not groups:
        return []

    total = sum(len(members) for members in groups.values())
    overall = sum(sum(r.success for r in members) for members in groups.values()) / total

    results = []
    for group, members in groups.items():
        count = len(members)
        if count < min_group_size:
            continue
        rate = sum(r.success for r in members) / count
        deviation = rate - overall
        results.append(GroupStats(
            dimension=dimension,
            group=group,
            count=count,
            success_rate=rate,
            avg_duration_ms=sum(r.duration_ms for r in members) / count,
            deviation=deviation,
            significant=abs(deviation) > threshold,
            direction="positive" if deviation > 0 else "negative",
        ))
    results.sort(key=lambda g: (-abs(g.deviation), g.group))
    return results


_DIMENSIONS: dict[str, Callable[[ExecutionRecord], str | None]] = {
    "file_extension": lambda r: r.file_extension,
    "hour_of_day": lambda r: str(r.hour_of_day),
    "day_of_week": lambda r: str(r.day_of_week),
}


@dataclass(frozen=True)
class TemporalBucket:
    bucket: int
    count: int = 0
    avg_duration_ms: float = 0.0
    success_rate: float = 0.0


def temporal_profile(
    records: Sequence[ExecutionRecord],
    key: Callable[[ExecutionRecord], int],
    buckets: int,
) -> list[TemporalBucket]:
    grouped: dict[int, list[ExecutionRecord]] = defaultdict(list)
    for record in records:
        grouped[key(record)].append(record)
    profile = []
    for bucket in range(buckets):
        members = grouped.get(bucket, [])
        if not members:
            profile.append(TemporalBucket(bucket=bucket))
            continue
        profile.append(TemporalBucket(
            bucket=bucket,
            count=len(members),
            avg_duration_ms=sum(r.duration_ms for r in members) / len(members),
            success_rate=sum(r.success for r in members) / len(members),
        ))
    return profile


@dataclass(frozen=True)
class FilePatternStats:
    pattern: str
    count: int
    success_rate: float
    avg_duration_ms: float


def file_pattern_keys(file_path: str | None, file_extension: str | None, file_type: str | None) -> list[str]:
    """Path-derived keys: ``dir:`` prefixes (up to 3 levels), ``ext:`` and ``type:``."""
    keys = []
    if file_path:
        parts = PurePosixPath(file_path.replace("\\", "/")).parts[:-1]
        for depth in range(1, min(len(parts), 3) + 1):
            keys.append("dir:" + "/".join(parts[:depth]))
    if file_extension:
        keys.append(f"ext:{file_extension}")
    if file_type and file_type != "unknown":
        keys.append(f"type:{file_type}")
    return keys


def analyze_file_patterns(records: Sequence[ExecutionRecord], top: int = 20) -> list[FilePatternStats]:
    grouped: dict[str, list[ExecutionRecord]] = defaultdict(list)
    for record in records:
        for key in file_pattern_keys(record.file_path, record.file_extension, record.file_type):
            grouped[key].append(record)
    stats = [
        FilePatternStats(
            pattern=key,
            count=len(members),
            success_rate=sum(r.success for r in members) / len(members),
            avg_duration_ms=sum(r.duration_ms for r in members) / len(members),
        )
        for key, members in grouped.items()
    ]
    stats.sort(key=lambda s: (-s.count, s.pattern))
    return stats[:top]


# =============================================================================
# Report
# =============================================================================


class RecommendationType(str, Enum):
    TIMEOUT_REDUCTION = "timeout_reduction"
    OUTLIER_INVESTIGATION = "outlier_investigation"
    PATTERN_ADJUSTMENT = "pattern_adjustment"
    TEMPORAL_ADJUSTMENT = "temporal_adjustment"
    FILE_PATTERN_REVIEW = "file_pattern_review"
    PERFORMANCE_REVIEW = "performance_review"


@dataclass(frozen=True)
class Recommendation:
    type: RecommendationType
    description: str
    confidence: float
    current_value: float | None = None
    recommended_value: float | None = None
    subject: str | None = None


@dataclass(frozen=True)
class Anomaly:
    anomaly_type: str
    severity: str
    description: str
    value: float


@dataclass
class AnalysisReport:
    """Result of one analysis pass over a rule's recent executions."""

    rule_name: str
    record_count: int
    insufficient_data: bool = False
    current_timeout_ms: float = 0.0
    duration_stats: DurationStatistics = field(default_factory=DurationStatistics)
    timeout_candidate_ms: float | None = None
    outliers: list[Outlier] = field(default_factory=list)
    correlations: dict[str, list[GroupStats]] = field(default_factory=dict)
    hourly_profile: list[TemporalBucket] = field(default_factory=list)
    weekday_profile: list[TemporalBucket] = field(default_factory=list)
    file_patterns: list[FilePatternStats] = field(default_factory=list)
    anomalies: list[Anomaly] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)

    @property
    def significant_correlations(self) -> list[GroupStats]:
        return [g for groups in self.correlations.values() for g in groups if g.significant]


def timeout_candidate(stats: DurationStatistics) -> float:
    """``max(p99 x 1.2, mean + 3 x stddev)``."""
    return max(stats.p99 * 1.2, stats.mean + 3 * stats.stddev)


def _detect_anomalies(
    chronological: Sequence[ExecutionRecord],
    outliers: Sequence[Outlier],
    stats: DurationStatistics,
) -> list[Anomaly]:
    anomalies = []
    extreme = sorted(
        (o for o in outliers if abs(o.z_score) > 3),
        key=lambda o: -abs(o.z_score),
    )
    for outlier in extreme[:5]:
        anomalies.append(Anomaly(
            anomaly_type="execution_time",
            severity="high",
            description=(
                f"execution took {outlier.value:.0f}ms, {outlier.z_score:.1f} standard "
                f"deviations from the mean of {stats.mean:.0f}ms"
            ),
            value=outlier.value,
        ))

    if len(chronological) >= 2 * RECENT_WINDOW:
        recent = chronological[-RECENT_WINDOW:]
        older = chronological[:-RECENT_WINDOW]
        recent_rate = sum(r.success for r in recent) / len(recent)
        older_rate = sum(r.success for r in older) / len(older)
        shift = recent_rate - older_rate
        if abs(shift) > SUCCESS_SHIFT_THRESHOLD:
            anomalies.append(Anomaly(
                anomaly_type="success_rate_change",
                severity="high" if abs(shift) > 0.4 else "medium",
                description=(
                    f"success rate of the last {len(recent)} executions is "
                    f"{recent_rate:.0%} versus {older_rate:.0%} before"
                ),
                value=shift,
            ))
    return anomalies


def _recommend(report: AnalysisReport) -> list[Recommendation]:
    stats = report.duration_stats
    recommendations = []

    candidate = report.timeout_candidate_ms
    if candidate is not None and candidate < TIMEOUT_REDUCTION_RATIO * report.current_timeout_ms:
        recommendations.append(Recommendation(
            type=RecommendationType.TIMEOUT_REDUCTION,
            description=(
                f"timeout of {report.current_timeout_ms:.0f}ms is far above observed "
                f"durations (p99 {stats.p99:.0f}ms); {candidate:.0f}ms would suffice"
            ),
            confidence=min(stats.count / 100, 0.95),
            current_value=report.current_timeout_ms,
            recommended_value=candidate,
        ))

    if stats.count and len(report.outliers) / stats.count > OUTLIER_RATIO_THRESHOLD:
        recommendations.append(Recommendation(
            type=RecommendationType.OUTLIER_INVESTIGATION,
            description=(
                f"{len(report.outliers)} of {stats.count} executions are duration outliers"
            ),
            confidence=0.6,
        ))

    for group in report.correlations.get("file_extension", []):
        if group.significant and group.direction == "negative" and group.count > 10:
            recommendations.append(Recommendation(
                type=RecommendationType.PATTERN_ADJUSTMENT,
                description=(
                    f"files with extension {group.group} succeed {group.success_rate:.0%} "
                    f"of the time, {abs(group.deviation):.0%} below average"
                ),
                confidence=min(group.count / 50, 0.9),
                subject=group.group,
            ))

    for group in report.correlations.get("hour_of_day", []):
        if group.significant and group.direction == "negative":
            recommendations.append(Recommendation(
                type=RecommendationType.TEMPORAL_ADJUSTMENT,
                description=(
                    f"executions at hour {group.group} succeed {group.success_rate:.0%} "
                    f"of the time, {abs(group.deviation):.0%} below average"
                ),
                confidence=min(group.count / 20, 0.8),
                subject=group.group,
            ))

    for pattern in report.file_patterns:
        if pattern.count > 20 and pattern.success_rate < 0.5:
            recommendations.append(Recommendation(
                type=RecommendationType.FILE_PATTERN_REVIEW,
                description=f"{pattern.pattern} succeeds only {pattern.success_rate:.0%} of the time",
                confidence=min(pattern.count / 50, 0.9),
                subject=pattern.pattern,
            ))
        if pattern.count > 10 and pattern.avg_duration_ms > 1000:
            recommendations.append(Recommendation(
                type=RecommendationType.PERFORMANCE_REVIEW,
                description=f"{pattern.pattern} averages {pattern.avg_duration_ms:.0f}ms",
                confidence=min(pattern.count / 50, 0.9),
                subject=pattern.pattern,
            ))

    return recommendations


def analyze_records(
    rule_name: str,
    records: Sequence[ExecutionRecord],
    *,
    current_timeout_ms: float = 3000.0,
    min_executions: int = 10,
) -> AnalysisReport:
    """Analyze execution records (any order) into an AnalysisReport.

    Below ``min_executions`` records the report only carries the record
    count and ``insufficient_data=True``.
    """
    report = AnalysisReport(
        rule_name=rule_name,
        record_count=len(records),
        current_timeout_ms=current_timeout_ms,
    )
    if len(records) < min_executions:
        report.insufficient_data = True
        return report

    chronological = sorted(records, key=lambda r: r.id)
    durations = [r.duration_ms for r in chronological]
    stats = describe(durations)

    report.duration_stats = stats
    report.timeout_candidate_ms = timeout_candidate(stats)
    report.outliers = detect_outliers(durations, stats)
    report.correlations = {
        dimension: correlate(chronological, dimension, key)
        for dimension, key in _DIMENSIONS.items()
    }
    report.hourly_profile = temporal_profile(chronological, lambda r: r.hour_of_day, 24)
    report.weekday_profile = temporal_profile(chronological, lambda r: r.day_of_week, 7)
    report.file_patterns = analyze_file_patterns(chronological)
    report.anomalies = _detect_anomalies(chronological, report.outliers, stats)
    report.recommendations = _recommend(report)
    return report


def generate_insights(report: AnalysisReport) -> list[Insight]:
    """Translate a report into typed insights ready to be persisted."""
    if report.insufficient_data:
        return []
    stats = report.duration_stats
    insights = []

    for rec in report.recommendations:
        if rec.type == RecommendationType.TIMEOUT_REDUCTION and rec.recommended_value is not None:
            insights.append(Insight(
                rule_name=report.rule_name,
                kind=InsightKind.TIMEOUT_OPTIMIZATION,
                payload=TimeoutOptimizationPayload(
                    current_timeout_ms=report.current_timeout_ms,
                    recommended_timeout_ms=rec.recommended_value,
                    p99_ms=stats.p99,
                    mean_ms=stats.mean,
                    stddev_ms=stats.stddev,
                    sample_size=stats.count,
                ),
                confidence=rec.confidence,
            ))
        elif rec.type == RecommendationType.OUTLIER_INVESTIGATION:
            insights.append(Insight(
                rule_name=report.rule_name,
                kind=InsightKind.OUTLIER_INVESTIGATION,
                payload=OutlierInvestigationPayload(
                    outlier_count=len(report.outliers),
                    sample_size=stats.count,
                    outlier_ratio=len(report.outliers) / stats.count,
                    max_outlier_ms=max(o.value for o in report.outliers),
                ),
                confidence=rec.confidence,
            ))

    for group in report.significant_correlations:
        insights.append(Insight(
            rule_name=report.rule_name,
            kind=InsightKind.SUCCESS_CORRELATION,
            payload=SuccessCorrelationPayload(
                dimension=group.dimension,
                group=group.group,
                success_rate=group.success_rate,
                overall_rate=group.success_rate - group.deviation,
                deviation=group.deviation,
                count=group.count,
                direction=group.direction,
            ),
            confidence=min(group.count / 50, 0.9),
        ))

    for anomaly in report.anomalies:
        insights.append(Insight(
            rule_name=report.rule_name,
            kind=InsightKind.ANOMALY,
            payload=AnomalyPayload(
                anomaly_type=anomaly.anomaly_type,
                severity=anomaly.severity,
                description=anomaly.description,
                value=anomaly.value,
            ),
            confidence=0.8 if anomaly.severity == "high" else 0.6,
        ))
    return insights


class PatternAnalyzer:
    """Reads recent executions of one rule from the store and analyzes them."""

    def __init__(
        self,
        store: LearningStore,
        rule_name: str,
        *,
        min_executions: int = 10,
        window: int = 1000,
        default_timeout_ms: float = 3000.0,
    ) -> None:
        self._store = store
        self.rule_name = rule_name
        self.min_executions = min_executions
        self.window = window
        self.default_timeout_ms = default_timeout_ms

    def analyze(self, current_timeout_ms: float | None = None) -> AnalysisReport:
        """Analyze the last ``window`` executions.

        Args:
            current_timeout_ms: Timeout to judge recommendations against.
                Defaults to the rule's stored ``timeout_ms`` parameter.
        """
        if current_timeout_ms is None:
            stored = self._store.get_parameter(self.rule_name, "timeout_ms")
            current_timeout_ms = (
                float(stored.value) if stored is not None else self.default_timeout_ms
            )
        records = self._store.get_recent_executions(self.rule_name, self.window)
        report = analyze_records(
            self.rule_name,
            records,
            current_timeout_ms=current_timeout_ms,
            min_executions=self.min_executions,
        )
        if report.insufficient_data:
            _logger.debug(
                "analysis_skipped",
                rule_name=self.rule_name,
                record_count=report.record_count,
                min_executions=self.min_executions,
            )
        else:
            _logger.info(
                "analysis_complete",
                rule_name=self.rule_name,
                record_count=report.record_count,
                outliers=len(report.outliers),
                recommendations=len(report.recommendations),
                anomalies=len(report.anomalies),
            )
        return report


__all__ = [
    "AnalysisReport",
    "Anomaly",
    "DurationStatistics",
    "FilePatternStats",
    "GroupStats",
    "Outlier",
    "PatternAnalyzer",
    "Recommendation",
    "RecommendationType",
    "TemporalBucket",
    "analyze_records",
    "correlate",
    "describe",
    "detect_outliers",
    "file_pattern_keys",
    "generate_insights",
    "linear_slope",
    "percentile",
    "timeout_candidate",
]
