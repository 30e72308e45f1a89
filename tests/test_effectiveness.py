"""Tests for pattern effectiveness tracking."""

import pytest

from hooklearn.learning.context import capture_context
from hooklearn.learning.effectiveness import (
    CachedDecision,
    DecisionCache,
    PatternEffectivenessTracker,
)
from hooklearn.learning.store import (
    DecisionOutcome,
    InsightKind,
    LearningStore,
    PatternEffectivenessStats,
)

ENV_PATTERN = [("file_extension", ".env")]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _feed(tracker: PatternEffectivenessTracker, tp: int, fp: int, tn: int, fn: int) -> None:
    for predicted, actual, count in (
        (True, True, tp),
        (True, False, fp),
        (False, False, tn),
        (False, True, fn),
    ):
        for _ in range(count):
            tracker.record_pattern_result(ENV_PATTERN, predicted, actual)


class TestDecisionCache:
    """Tests for the bounded decision cache."""

    def _entry(self, decision_id: str, at: float = 0.0) -> CachedDecision:
        return CachedDecision(
            decision_id=decision_id,
            predicted_blocked=True,
            patterns=(),
            fingerprint=None,
            cached_at=at,
        )

    def test_evicts_oldest_insertion(self) -> None:
        cache = DecisionCache(max_size=2)
        for decision_id in ("a", "b", "c"):
            cache.put(self._entry(decision_id))
        assert len(cache) == 2
        assert "a" not in cache
        assert cache.evictions == 1

    def test_expired_entries_are_absent(self) -> None:
        clock = FakeClock()
        cache = DecisionCache(max_size=10, ttl_seconds=60, clock=clock)
        cache.put(self._entry("a", at=0.0))
        cache.put(self._entry("b", at=50.0))
        clock.now = 100.0
        assert cache.pop("a") is None
        assert cache.purge_expired() == 0
        assert cache.pop("b") is not None

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        cache = DecisionCache(ttl_seconds=10, clock=clock)
        cache.put(self._entry("a", at=0.0))
        clock.now = 11.0
        assert cache.purge_expired() == 1
        assert len(cache) == 0

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            DecisionCache(max_size=0)


class TestDecisionValidation:
    """Decisions are validated at most once, against cached state."""

    def test_validate_increments_every_pattern(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        facts = capture_context({"file_path": "app/.env"}, "r")
        decision_id = tracker.record_decision(
            facts, True, [("file_extension", ".env"), ("file_type", "config")]
        )
        assert tracker.pending_decisions == 1

        assert tracker.validate_decision(decision_id, actual_outcome=False) is True
        assert tracker.validate_decision(decision_id, actual_outcome=False) is False

        for pattern_type, key in (("file_extension", ".env"), ("file_type", "config")):
            stats = store.get_pattern_effectiveness("r", pattern_type, key)
            assert stats is not None
            assert stats.false_positives == 1
        assert tracker.pending_decisions == 0

    def test_unknown_decision_is_a_noop(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        assert tracker.validate_decision("missing", actual_outcome=True) is False
        assert store.get_effectiveness("r") == []

    def test_expired_decision_is_a_noop(self, store: LearningStore) -> None:
        clock = FakeClock()
        tracker = PatternEffectivenessTracker(store, "r", cache_ttl_seconds=5, clock=clock)
        decision_id = tracker.record_decision(None, True, ENV_PATTERN, decision_id="d-1")
        assert decision_id == "d-1"
        clock.now = 6.0
        assert tracker.validate_decision("d-1", actual_outcome=True) is False


class TestMetrics:
    """Confusion-matrix rates are exact ratios of the stored counters."""

    def test_rates_for_known_matrix(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        _feed(tracker, tp=10, fp=90, tn=5, fn=5)

        stats = store.get_pattern_effectiveness("r", "file_extension", ".env")
        assert stats is not None
        assert stats.total == 110
        assert stats.precision == 10 / 100
        assert stats.recall == pytest.approx(0.667, abs=1e-3)
        assert stats.false_positive_rate == pytest.approx(0.947, abs=1e-3)

    def test_one_more_false_positive_never_raises_precision(self) -> None:
        for tp, fp in ((0, 0), (1, 0), (3, 2), (10, 90)):
            before = PatternEffectivenessStats("r", "t", "k", true_positives=tp, false_positives=fp)
            after = PatternEffectivenessStats("r", "t", "k", true_positives=tp, false_positives=fp + 1)
            assert after.precision <= before.precision

    def test_empty_matrix_rates_are_zero(self) -> None:
        stats = PatternEffectivenessStats("r", "t", "k")
        assert (stats.precision, stats.recall, stats.false_positive_rate) == (0.0, 0.0, 0.0)


class TestPatternHealth:
    """Tests for degradation detection."""

    def test_degradation_insight_emitted_once(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        _feed(tracker, tp=10, fp=90, tn=5, fn=5)

        insights = store.get_insights("r", kind=InsightKind.PATTERN_DEGRADATION)
        assert len(insights) == 1
        assert insights[0].payload.pattern_key == ".env"

    def test_no_verdict_below_minimum_observations(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        _feed(tracker, tp=0, fp=19, tn=0, fn=0)
        assert tracker.check_pattern_health("file_extension", ".env") is None
        assert store.get_insights("r") == []

    def test_healthy_pattern(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        _feed(tracker, tp=18, fp=2, tn=10, fn=0)
        health = tracker.check_pattern_health("file_extension", ".env")
        assert health is not None
        assert health.degraded is False
        assert tracker.get_problematic_patterns() == []

    def test_problematic_patterns(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r", effectiveness_threshold=0.7)
        _feed(tracker, tp=15, fp=5, tn=20, fn=10)
        problematic = tracker.get_problematic_patterns()
        assert [p.pattern_id for p in problematic] == ["file_extension:.env"]
        assert tracker.get_problematic_patterns(threshold=0.5) == []

    def test_outcome_is_returned(self, store: LearningStore) -> None:
        tracker = PatternEffectivenessTracker(store, "r")
        outcome = tracker.record_pattern_result(ENV_PATTERN, False, True)
        assert outcome is DecisionOutcome.FALSE_NEGATIVE
