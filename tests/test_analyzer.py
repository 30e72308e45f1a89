"""Tests for the batch pattern analyzer."""

from datetime import datetime

import pytest

from hooklearn.learning.analyzer import (
    PatternAnalyzer,
    RecommendationType,
    analyze_records,
    correlate,
    describe,
    detect_outliers,
    file_pattern_keys,
    generate_insights,
    linear_slope,
    percentile,
    timeout_candidate,
)
from hooklearn.learning.store import ExecutionRecord, InsightKind, LearningStore


def _record(
    index: int,
    duration_ms: float = 100.0,
    success: bool = True,
    file_extension: str | None = None,
) -> ExecutionRecord:
    return ExecutionRecord(
        id=index,
        rule_name="r",
        recorded_at=datetime(2026, 1, 5, 10),
        duration_ms=duration_ms,
        success=success,
        blocked=False,
        file_extension=file_extension,
        hour_of_day=10,
        day_of_week=0,
    )


def _uniform_durations(count: int = 60) -> list[float]:
    return [400 + i * 200 / (count - 1) for i in range(count)]


class TestStatistics:
    """Tests for the descriptive statistics helpers."""

    def test_percentile_interpolates(self) -> None:
        assert percentile([1, 2, 3, 4], 0.5) == 2.5
        assert percentile([7], 0.99) == 7
        assert percentile([], 0.5) == 0.0

    def test_describe_uses_population_stddev(self) -> None:
        stats = describe([2, 4, 4, 4, 5, 5, 7, 9])
        assert stats.mean == 5
        assert stats.stddev == 2
        assert stats.min == 2
        assert stats.max == 9

    def test_detect_outliers(self) -> None:
        values = [10.0] * 20 + [1000.0]
        outliers = detect_outliers(values)
        assert len(outliers) == 1
        assert outliers[0].index == 20
        assert outliers[0].method == "both"

    def test_linear_slope(self) -> None:
        assert linear_slope([1, 2, 3]) == pytest.approx(1.0)
        assert linear_slope([3, 3]) == 0.0
        assert linear_slope([1]) == 0.0

    def test_timeout_candidate_for_uniform_durations(self) -> None:
        stats = describe(_uniform_durations())
        candidate = timeout_candidate(stats)
        assert candidate == pytest.approx(stats.p99 * 1.2)
        assert 700 < candidate < 730


class TestCorrelation:
    """Tests for grouped success-rate correlation."""

    def test_significant_groups(self) -> None:
        records = [_record(i, file_extension=".py") for i in range(10)]
        records += [_record(i + 10, success=False, file_extension=".js") for i in range(10)]
        groups = correlate(records, "file_extension", lambda r: r.file_extension)
        by_group = {g.group: g for g in groups}
        assert by_group[".py"].deviation == pytest.approx(0.5)
        assert by_group[".py"].direction == "positive"
        assert by_group[".js"].direction == "negative"
        assert all(g.significant for g in groups)

    def test_small_groups_are_dropped(self) -> None:
        records = [_record(i, file_extension=".py") for i in range(4)]
        assert correlate(records, "file_extension", lambda r: r.file_extension) == []

    def test_file_pattern_keys(self) -> None:
        assert file_pattern_keys("a/b/c/d/e.py", ".py", "source") == [
            "dir:a", "dir:a/b", "dir:a/b/c", "ext:.py", "type:source",
        ]
        assert file_pattern_keys(None, None, "unknown") == []


class TestAnalyzeRecords:
    """Tests for analyze_records and generate_insights."""

    def test_insufficient_data(self) -> None:
        report = analyze_records("r", [_record(i) for i in range(5)], min_executions=10)
        assert report.insufficient_data is True
        assert report.record_count == 5
        assert generate_insights(report) == []

    def test_recommends_timeout_reduction(self) -> None:
        records = [_record(i, d) for i, d in enumerate(_uniform_durations())]
        report = analyze_records("r", records, current_timeout_ms=3000.0)

        assert report.outliers == []
        assert [r.type for r in report.recommendations] == [RecommendationType.TIMEOUT_REDUCTION]
        recommendation = report.recommendations[0]
        assert recommendation.confidence == pytest.approx(0.6)
        assert recommendation.recommended_value == report.timeout_candidate_ms

        insights = generate_insights(report)
        assert [i.kind for i in insights] == [InsightKind.TIMEOUT_OPTIMIZATION]
        assert insights[0].payload.sample_size == 60

    def test_no_reduction_when_timeout_is_tight(self) -> None:
        records = [_record(i, d) for i, d in enumerate(_uniform_durations())]
        report = analyze_records("r", records, current_timeout_ms=800.0)
        assert report.recommendations == []

    def test_success_rate_shift_is_an_anomaly(self) -> None:
        records = [_record(i, success=i < 20) for i in range(40)]
        report = analyze_records("r", records)
        shifts = [a for a in report.anomalies if a.anomaly_type == "success_rate_change"]
        assert len(shifts) == 1
        assert shifts[0].severity == "high"
        assert shifts[0].value == pytest.approx(-1.0)


class TestPatternAnalyzer:
    """Tests for PatternAnalyzer against a real store."""

    def test_uses_stored_timeout(self, store: LearningStore) -> None:
        for duration in _uniform_durations():
            store.record_execution("r", duration_ms=duration, success=True)
        store.ensure_parameter("r", "timeout_ms", 5000.0)

        report = PatternAnalyzer(store, "r").analyze()
        assert report.current_timeout_ms == 5000.0
        assert report.record_count == 60

    def test_skips_small_samples(self, store: LearningStore) -> None:
        store.record_execution("r", duration_ms=1.0, success=True)
        assert PatternAnalyzer(store, "r").analyze().insufficient_data is True
