"""Tests for the adaptive parameter system."""

import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any

import pytest

from hooklearn.core.config import LearningConfig
from hooklearn.core.errors import ExperimentError, ParameterValidationError, RollbackError
from hooklearn.learning.adaptive import (
    PARAMETER_SPECS,
    TIMEOUT_PARAMETER,
    AdaptiveParameterSystem,
    Proposal,
    ResolvedParameters,
    assign_variant,
    pattern_sensitivity_name,
    spec_for,
)
from hooklearn.learning.store import (
    ChangeType,
    DecisionOutcome,
    Insight,
    InsightKind,
    LearningStore,
    OptimizationRecord,
    OptimizationStatus,
    TimeoutOptimizationPayload,
)
from tests.helpers import record_runs


class ShiftableClock:
    """Wall clock that can be moved forward."""

    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self) -> datetime:
        return datetime.now() + self.offset


def _timeout_proposal(value: float, current: float = 3000.0) -> Proposal:
    return Proposal(
        parameter=TIMEOUT_PARAMETER,
        current_value=current,
        proposed_value=value,
        target_value=value,
        confidence=0.8,
        reason="test",
    )


def _record_uniform_durations(store: LearningStore, rule: str, count: int = 60) -> None:
    for i in range(count):
        store.record_execution(rule, duration_ms=400 + i * 200 / (count - 1), success=True)


def _timeout_insight(recommended: float, confidence: float = 0.8) -> Insight:
    return Insight(
        rule_name="r",
        kind=InsightKind.TIMEOUT_OPTIMIZATION,
        payload=TimeoutOptimizationPayload(
            current_timeout_ms=3000.0,
            recommended_timeout_ms=recommended,
            p99_ms=600.0,
            mean_ms=500.0,
            stddev_ms=50.0,
            sample_size=200,
        ),
        confidence=confidence,
    )


# =============================================================================
# Parameter catalogue
# =============================================================================


class TestParameterSpec:
    """Tests for parameter validation and bounded steps."""

    @pytest.mark.parametrize("value", [True, "fast", math.nan, math.inf, 50.0, 700000])
    def test_timeout_rejects_invalid_values(self, value: Any) -> None:
        with pytest.raises(ParameterValidationError):
            PARAMETER_SPECS[TIMEOUT_PARAMETER].validate(value)

    def test_timeout_normalizes_to_float(self) -> None:
        assert PARAMETER_SPECS[TIMEOUT_PARAMETER].validate(2000) == 2000.0

    def test_categorical_choices(self) -> None:
        spec = PARAMETER_SPECS["sensitivity"]
        assert spec.validate("reduced") == "reduced"
        with pytest.raises(ParameterValidationError):
            spec.validate("maximum")

    def test_numeric_step_is_bounded(self) -> None:
        spec = PARAMETER_SPECS[TIMEOUT_PARAMETER]
        assert spec.step_toward(3000.0, 1000.0, 0.2) == pytest.approx(2400.0)
        assert spec.step_toward(3000.0, 3100.0, 0.2) == pytest.approx(3100.0)
        assert spec.step_toward(3000.0, 10000.0, 0.2) == pytest.approx(3600.0)

    def test_categorical_step_moves_one_level(self) -> None:
        spec = PARAMETER_SPECS["enforcement_strictness"]
        assert spec.step_toward("relaxed", "strict", 0.2) == "standard"
        assert spec.step_toward("standard", "standard", 0.2) == "standard"

    def test_pattern_scoped_spec(self) -> None:
        name = pattern_sensitivity_name("file_extension", ".env")
        assert name == "pattern_sensitivity:file_extension:.env"
        assert spec_for(name).default == "standard"
        with pytest.raises(ParameterValidationError):
            spec_for("retries")


class TestAssignVariant:
    """Arm assignment is deterministic and close to the sample size."""

    @pytest.mark.parametrize("sample_size", [0.2, 0.5, 0.8])
    def test_split_tracks_sample_size(self, sample_size: float) -> None:
        variants = sum(assign_variant(n, sample_size) for n in range(1000))
        assert abs(variants - 1000 * sample_size) < 20

    def test_is_pure(self) -> None:
        assert [assign_variant(n, 0.5) for n in range(10)] == [
            assign_variant(n, 0.5) for n in range(10)
        ]


# =============================================================================
# Applying changes
# =============================================================================


class TestApplyProposal:
    """Tests for bounded, cooled-down application of changes."""

    def test_defaults_are_created(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.get_parameters() == {
            "enforcement_strictness": "standard",
            "sensitivity": "standard",
            "timeout_ms": 3000.0,
        }

    def test_change_is_rebounded(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        optimization = system.apply_proposal(_timeout_proposal(100.0))

        assert optimization is not None
        assert optimization.new_value == pytest.approx(2400.0)
        assert system.get_parameter(TIMEOUT_PARAMETER) == pytest.approx(2400.0)
        change = store.get_parameter_changes("r")[0]
        assert change.change_type is ChangeType.APPLIED
        assert change.optimization_id == optimization.id

    def test_cooldown_skips_second_change(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        clock = ShiftableClock()
        system = AdaptiveParameterSystem(store, "r", config, clock=clock)
        first = system.apply_proposal(_timeout_proposal(2000.0))
        assert first is not None
        store.conclude_optimization(first.id, OptimizationStatus.ACCEPTED)

        assert system.apply_proposal(_timeout_proposal(1800.0, current=2400.0)) is None
        assert system.skip_count > 0
        assert system.get_parameter(TIMEOUT_PARAMETER) == pytest.approx(2400.0)

        clock.offset = timedelta(hours=2)
        assert system.apply_proposal(_timeout_proposal(1800.0, current=2400.0)) is not None

    def test_active_optimization_blocks_parameter(self, store: LearningStore) -> None:
        config = LearningConfig.model_validate(
            {"store": {"path": str(store.db_path)}, "adaptive": {"optimization_cooldown_seconds": 0}}
        )
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.apply_proposal(_timeout_proposal(2000.0)) is not None
        assert system.apply_proposal(_timeout_proposal(2000.0)) is None
        assert system.skip_count == 1

    def test_disabled_adaptation_only_observes(self, store: LearningStore) -> None:
        config = LearningConfig.model_validate({"adaptive": {"enabled": False}})
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.apply_proposal(_timeout_proposal(2000.0)) is None
        assert system.optimize_timeout() is None
        assert store.get_optimizations("r") == []

    def test_invalid_proposal_raises(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        with pytest.raises(ParameterValidationError):
            system.apply_proposal(_timeout_proposal(-1.0))


class TestTimeoutOptimization:
    """Tests for timeout tuning from recent durations."""

    def test_first_step_from_default(self, store: LearningStore, config: LearningConfig) -> None:
        _record_uniform_durations(store, "r")
        system = AdaptiveParameterSystem(store, "r", config)

        proposal = system.propose_timeout()
        assert proposal is not None
        assert proposal.target_value == pytest.approx(1000.0)
        assert 0.75 < proposal.confidence < 0.8

        assert system.optimize_timeout() == pytest.approx(2400.0)

    def test_needs_enough_samples(self, store: LearningStore, config: LearningConfig) -> None:
        _record_uniform_durations(store, "r", count=20)
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.propose_timeout() is None

    def test_small_steps_are_rejected(self, store: LearningStore) -> None:
        config = LearningConfig.model_validate({"adaptive": {"default_timeout_ms": 1020.0}})
        _record_uniform_durations(store, "r")
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.propose_timeout() is None


# =============================================================================
# Pattern refinement and insights
# =============================================================================


class TestRefinePatterns:
    """Tests for per-pattern sensitivity refinement."""

    def _feed(self, store: LearningStore, outcome: DecisionOutcome, count: int) -> None:
        for _ in range(count):
            store.increment_effectiveness("r", [("file_extension", ".env")], outcome)

    def test_low_precision_reduces_sensitivity(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        self._feed(store, DecisionOutcome.TRUE_POSITIVE, 2)
        self._feed(store, DecisionOutcome.FALSE_POSITIVE, 18)
        system = AdaptiveParameterSystem(store, "r", config)

        proposals = system.refine_patterns()
        assert len(proposals) == 1
        assert proposals[0].parameter == "pattern_sensitivity:file_extension:.env"
        assert proposals[0].proposed_value == "reduced"
        assert proposals[0].reason == "low_precision"

    def test_low_recall_increases_sensitivity(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        self._feed(store, DecisionOutcome.TRUE_POSITIVE, 2)
        self._feed(store, DecisionOutcome.FALSE_NEGATIVE, 18)
        self._feed(store, DecisionOutcome.TRUE_NEGATIVE, 5)
        system = AdaptiveParameterSystem(store, "r", config)

        applied = system.apply_refinements()
        assert applied == ["pattern_sensitivity:file_extension:.env"]
        assert system.get_parameter(applied[0]) == "increased"
        refinement = store.get_insights("r", kind=InsightKind.PATTERN_REFINEMENT)[0]
        assert refinement.applied is True
        assert refinement.payload.proposed_value == "increased"

    def test_needs_enough_observations(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        self._feed(store, DecisionOutcome.FALSE_POSITIVE, 19)
        assert AdaptiveParameterSystem(store, "r", config).refine_patterns() == []


class TestConsumeInsights:
    """Insights are acted on at most once."""

    def test_insight_consumed_once(self, store: LearningStore, config: LearningConfig) -> None:
        store.save_insight(_timeout_insight(1000.0))
        system = AdaptiveParameterSystem(store, "r", config)

        assert system.consume_insights() == 1
        assert system.consume_insights() == 0
        assert system.get_parameter(TIMEOUT_PARAMETER) == pytest.approx(2400.0)
        assert store.get_insights("r", applied=False) == []

    def test_low_confidence_insights_are_ignored(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        store.save_insight(_timeout_insight(1000.0, confidence=0.5))
        system = AdaptiveParameterSystem(store, "r", config)
        assert system.consume_insights() == 0
        assert len(store.get_insights("r", applied=False)) == 1

    def test_blocked_insight_stays_pending(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        store.save_insight(_timeout_insight(1000.0, confidence=0.9))
        store.save_insight(_timeout_insight(1500.0, confidence=0.8))
        system = AdaptiveParameterSystem(store, "r", config)

        assert system.consume_insights() == 1
        pending = store.get_insights("r", applied=False)
        assert len(pending) == 1
        assert pending[0].confidence == 0.8


# =============================================================================
# A/B tests
# =============================================================================


class TestABTests:
    """Tests for A/B testing of candidate values."""

    def test_split_of_one_hundred_invocations(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        test_id = system.start_ab_test(TIMEOUT_PARAMETER, 2000.0, sample_size=0.5)

        arms = [system.resolve_parameters() for _ in range(100)]
        variants = [a for a in arms if a.ab_arm == "variant"]
        assert 35 <= len(variants) <= 65
        assert all(a.ab_test_id == test_id for a in arms)
        assert all(a.values[TIMEOUT_PARAMETER] == 2000.0 for a in variants)
        assert store.get_parameters("r")[TIMEOUT_PARAMETER] == 3000.0

    def test_invalid_requests(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        for sample_size in (0.0, 1.0):
            with pytest.raises(ExperimentError):
                system.start_ab_test(TIMEOUT_PARAMETER, 2000.0, sample_size=sample_size)
        system.start_ab_test(TIMEOUT_PARAMETER, 2000.0)
        with pytest.raises(ExperimentError):
            system.start_ab_test("sensitivity", "reduced")

    def test_variant_wins_and_is_applied_gradually(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        test_id = system.start_ab_test(TIMEOUT_PARAMETER, 2000.0, min_executions=20)
        record_runs(store, "r", 20, success_rate=0.8, ab_test_id=test_id, ab_arm="control")
        record_runs(store, "r", 20, success_rate=1.0, ab_test_id=test_id, ab_arm="variant")

        result = system.record_ab_result(
            ResolvedParameters(values={}, ab_test_id=test_id, ab_arm="variant")
        )

        assert result is not None
        assert result.winner == "variant"
        assert result.applied_value == pytest.approx(2400.0)
        assert result.confidence == pytest.approx(0.6)
        assert system.active_ab_tests == []
        concluded = store.get_optimization(test_id)
        assert concluded is not None
        assert concluded.status is OptimizationStatus.ACCEPTED

    def test_tie_keeps_control(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        test_id = system.start_ab_test(TIMEOUT_PARAMETER, 2000.0, min_executions=10)
        record_runs(store, "r", 10, ab_test_id=test_id, ab_arm="control")
        record_runs(store, "r", 10, ab_test_id=test_id, ab_arm="variant")

        [result] = system.check_ab_tests()
        assert result.winner == "control"
        assert result.applied_value is None
        concluded = store.get_optimization(test_id)
        assert concluded is not None
        assert concluded.rollback_reason == "control_preferred"
        assert system.get_parameter(TIMEOUT_PARAMETER) == 3000.0

    def test_expired_test_concludes(self, store: LearningStore, config: LearningConfig) -> None:
        clock = ShiftableClock()
        system = AdaptiveParameterSystem(store, "r", config, clock=clock)
        system.start_ab_test(TIMEOUT_PARAMETER, 2000.0, duration_seconds=60)
        assert system.check_ab_tests() == []
        clock.offset = timedelta(minutes=2)
        assert len(system.check_ab_tests()) == 1

    def test_running_test_survives_restart(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        test_id = AdaptiveParameterSystem(store, "r", config).start_ab_test(
            TIMEOUT_PARAMETER, 2000.0, duration_seconds=30, sample_size=0.3, min_executions=5
        )
        restarted = AdaptiveParameterSystem(store, "r", config)
        [test] = restarted.active_ab_tests
        assert test.id == test_id
        assert test.sample_size == 0.3
        assert test.duration_seconds == 30
        assert test.min_executions == 5
        assert test.variant_value == 2000.0

    def test_concluded_confidence_is_not_sample_size(
        self, store: LearningStore, config: LearningConfig
    ) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        test_id = system.start_ab_test(
            TIMEOUT_PARAMETER, 2000.0, sample_size=0.3, min_executions=10
        )
        record_runs(store, "r", 10, ab_test_id=test_id, ab_arm="control")
        record_runs(store, "r", 10, ab_test_id=test_id, ab_arm="variant")

        [result] = system.check_ab_tests()
        concluded = store.get_optimization(test_id)
        assert concluded is not None
        assert concluded.confidence == pytest.approx(result.confidence)
        assert concluded.settings["sample_size"] == 0.3


# =============================================================================
# Rollback and cycles
# =============================================================================


class TestRollback:
    """Tests for restoring parameters."""

    def test_restores_pre_change_value(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        optimization = system.apply_proposal(_timeout_proposal(2000.0))
        assert optimization is not None

        restored = system.rollback_optimization(optimization, "performance_degradation")

        assert restored == 3000.0
        assert system.get_parameter(TIMEOUT_PARAMETER) == 3000.0
        assert store.get_parameter_changes("r")[0].change_type is ChangeType.ROLLED_BACK

    def test_falls_back_to_default(self, store: LearningStore, config: LearningConfig) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        broken = OptimizationRecord(
            rule_name="r",
            parameter=TIMEOUT_PARAMETER,
            old_value="not-a-number",
            new_value=2400.0,
            confidence=0.8,
            reason="test",
        )

        restored = system.rollback_optimization(broken, "performance_degradation")

        assert restored == 3000.0
        assert store.get_parameter_changes("r")[0].change_type is ChangeType.RESTORED

    def test_raises_when_nothing_can_be_written(
        self, store: LearningStore, config: LearningConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        system = AdaptiveParameterSystem(store, "r", config)
        optimization = system.apply_proposal(_timeout_proposal(2000.0))
        assert optimization is not None

        def fail(*args: Any, **kwargs: Any) -> None:
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "apply_parameter_change", fail)
        with pytest.raises(RollbackError):
            system.rollback_optimization(optimization, "performance_degradation")


class TestOptimizationCycle:
    """Tests for run_optimization_cycle."""

    def test_cycle_tunes_timeout(self, store: LearningStore, config: LearningConfig) -> None:
        _record_uniform_durations(store, "r")
        system = AdaptiveParameterSystem(store, "r", config)

        result = system.run_optimization_cycle()

        assert result.timeout_value == pytest.approx(2400.0)
        assert result.insights_consumed == 0
        assert result.refinements_applied == []

    def test_failing_step_does_not_stop_others(
        self,
        store: LearningStore,
        config: LearningConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        _record_uniform_durations(store, "r")
        system = AdaptiveParameterSystem(store, "r", config)

        def boom() -> list[Any]:
            raise RuntimeError("boom")

        monkeypatch.setattr(system, "check_ab_tests", boom)

        result = system.run_optimization_cycle()

        assert result.ab_results == []
        assert result.timeout_value == pytest.approx(2400.0)
