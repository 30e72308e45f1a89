"""Adaptive parameter system.

Owns the live parameter set of one rule and changes it only through bounded,
monitored steps:

- Every parameter is declared by a ParameterSpec and validated on write.
- A numeric change moves at most ``max_parameter_change_rate`` of the
  current value per application; a categorical change moves one step along
  its ordered choices.
- At most one change per parameter is applied per cooldown window, judged
  from the persisted change history so the window survives restarts.
- Every applied change becomes an active optimization handed to the
  feedback loop monitor, which accepts it or rolls it back.

A/B tests split invocations between the current value (control) and a
candidate (variant). Arm assignment is a pure function of an invocation
counter, so concurrent invocations never contend on shared state.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from hooklearn.core.config import LearningConfig
from hooklearn.core.errors import (
    ExperimentError,
    LearningError,
    ParameterValidationError,
    RollbackError,
)
from hooklearn.core.logging import get_logger
from hooklearn.learning.analyzer import describe
from hooklearn.learning.store.models import (
    ArmMetrics,
    ChangeType,
    Insight,
    InsightKind,
    OptimizationKind,
    OptimizationRecord,
    OptimizationStatus,
    PatternDegradationPayload,
    PatternRefinementPayload,
    TimeoutOptimizationPayload,
)

if TYPE_CHECKING:
    from hooklearn.learning.feedback import FeedbackLoopMonitor
    from hooklearn.learning.store import LearningStore

_logger = get_logger("learning.adaptive")

TIMEOUT_PARAMETER = "timeout_ms"
PATTERN_SENSITIVITY_PREFIX = "pattern_sensitivity"
SENSITIVITY_LEVELS = ("reduced", "standard", "increased")
STRICTNESS_LEVELS = ("relaxed", "standard", "strict")
TIMEOUT_SAMPLE_WINDOW = 100
REFINE_MIN_OBSERVATIONS = 20
REFINE_PRECISION_FLOOR = 0.5
REFINE_RECALL_FLOOR = 0.5
REFINE_MISS_RATE_CEILING = 0.2

# Conjugate of the golden ratio: frac(n * phi) is equidistributed in [0, 1)
_PHI = (math.sqrt(5) - 1) / 2


# =============================================================================
# Parameter catalogue
# =============================================================================


class ParameterKind(str, Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"


@dataclass(frozen=True)
class ParameterSpec:
    """Type, range and default of one tunable parameter."""

    name: str
    kind: ParameterKind
    default: Any
    minimum: float | None = None
    maximum: float | None = None
    choices: tuple[str, ...] = ()
    description: str = ""

    def validate(self, value: Any) -> Any:
        """Return ``value`` normalized to this spec.

        Raises:
            ParameterValidationError: If the value has the wrong type, is out
                of range, or is not one of the choices.
        """
        if self.kind == ParameterKind.NUMERIC:
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ParameterValidationError(self.name, value, "expected a number")
            number = float(value)
            if not math.isfinite(number):
                raise ParameterValidationError(self.name, value, "expected a finite number")
            if self.minimum is not None and number < self.minimum:
                raise ParameterValidationError(self.name, value, f"below minimum {self.minimum}")
            if self.maximum is not None and number > self.maximum:
                raise ParameterValidationError(self.name, value, f"above maximum {self.maximum}")
            return number
        if value not in self.choices:
            raise ParameterValidationError(
                self.name, value, f"expected one of {', '.join(self.choices)}"
            )
        return value

    def step_toward(self, current: Any, target: Any, max_rate: float) -> Any:
        """The value one bounded step from ``current`` toward ``target``."""
        if self.kind == ParameterKind.NUMERIC:
            current_value = float(current)
            max_step = abs(current_value) * max_rate
            delta = max(-max_step, min(max_step, float(target) - current_value))
            stepped = current_value + delta
            if self.minimum is not None:
                stepped = max(self.minimum, stepped)
            if self.maximum is not None:
                stepped = min(self.maximum, stepped)
            return stepped
        index = self.choices.index(current)
        target_index = self.choices.index(target)
        if target_index > index:
            return self.choices[index + 1]
        if target_index < index:
            return self.choices[index - 1]
        return current


PARAMETER_SPECS: dict[str, ParameterSpec] = {
    TIMEOUT_PARAMETER: ParameterSpec(
        name=TIMEOUT_PARAMETER,
        kind=ParameterKind.NUMERIC,
        default=3000.0,
        minimum=100.0,
        maximum=600000.0,
        description="Time budget of one rule invocation (ms)",
    ),
    "sensitivity": ParameterSpec(
        name="sensitivity",
        kind=ParameterKind.CATEGORICAL,
        default="standard",
        choices=SENSITIVITY_LEVELS,
        description="Rule-wide matching sensitivity",
    ),
    "enforcement_strictness": ParameterSpec(
        name="enforcement_strictness",
        kind=ParameterKind.CATEGORICAL,
        default="standard",
        choices=STRICTNESS_LEVELS,
        description="How strictly violations are enforced",
    ),
}


def pattern_sensitivity_name(pattern_type: str, pattern_key: str) -> str:
    """Name of the sensitivity parameter scoped to one pattern key."""
    return f"{PATTERN_SENSITIVITY_PREFIX}:{pattern_type}:{pattern_key}"


def spec_for(name: str) -> ParameterSpec:
    """Look up the spec of a parameter, including pattern-scoped sensitivities.

    Raises:
        ParameterValidationError: If the parameter is unknown.
    """
    spec = PARAMETER_SPECS.get(name)
    if spec is not None:
        return spec
    if name.startswith(PATTERN_SENSITIVITY_PREFIX + ":"):
        return ParameterSpec(
            name=name,
            kind=ParameterKind.CATEGORICAL,
            default="standard",
            choices=SENSITIVITY_LEVELS,
            description="Matching sensitivity for one pattern key",
        )
    raise ParameterValidationError(name, None, "unknown parameter")


def assign_variant(counter: int, sample_size: float) -> bool:
    """Whether invocation number ``counter`` falls in the variant arm.

    Uses the golden-ratio low-discrepancy sequence, so any run of n
    consecutive invocations puts close to ``n * sample_size`` in the variant.
    """
    return ((counter + 1) * _PHI) % 1.0 < sample_size


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Proposal:
    """A candidate parameter change, already reduced to one bounded step."""

    parameter: str
    current_value: Any
    proposed_value: Any
    target_value: Any
    confidence: float
    reason: str


@dataclass(frozen=True)
class ResolvedParameters:
    """Parameter values in effect for one invocation."""

    values: Mapping[str, Any]
    ab_test_id: str | None = None
    ab_arm: str | None = None


@dataclass
class ABTest:
    id: str
    parameter: str
    control_value: Any
    variant_value: Any
    sample_size: float
    duration_seconds: float
    min_executions: int
    started_at: datetime


@dataclass(frozen=True)
class ABTestResult:
    test_id: str
    parameter: str
    winner: str
    control: ArmMetrics
    variant: ArmMetrics
    confidence: float
    applied_value: Any = None


@dataclass
class OptimizationCycleResult:
    """Summary of one optimization cycle."""

    insights_consumed: int = 0
    timeout_value: float | None = None
    refinements_applied: list[str] = field(default_factory=list)
    ab_results: list[ABTestResult] = field(default_factory=list)
    skipped: int = 0


# =============================================================================
# Adaptive parameter system
# =============================================================================


class AdaptiveParameterSystem:
    """Bounded, monitored tuning of one rule's parameters.

    Args:
        store: Store holding parameters, history and optimizations.
        rule_name: Rule whose parameters are tuned.
        config: Learning configuration; the ``adaptive`` section governs
            change rate, cooldown and A/B defaults.
        monitor: Feedback monitor that supervises each applied change. When
            given, this system registers itself as the monitor's rollback
            handler.
        clock: Source of the current time.
    """

    def __init__(
        self,
        store: LearningStore,
        rule_name: str,
        config: LearningConfig | None = None,
        monitor: FeedbackLoopMonitor | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self.rule_name = rule_name
        self.config = config or LearningConfig()
        self._settings = self.config.adaptive
        self._monitor = monitor
        self._clock = clock
        self._counter = itertools.count()
        self._ab_tests: dict[str, ABTest] = {}
        self.skip_count = 0
        if monitor is not None:
            monitor.set_rollback_handler(self.rollback_optimization)
        self._load()

    def _load(self) -> None:
        """Create missing parameters with their defaults and resume running A/B tests."""
        for name, spec in PARAMETER_SPECS.items():
            default = (
                self._settings.default_timeout_ms if name == TIMEOUT_PARAMETER else spec.default
            )
            self._store.ensure_parameter(self.rule_name, name, default)

        for record in self._store.get_optimizations(
            self.rule_name,
            status=OptimizationStatus.ACTIVE,
            kind=OptimizationKind.AB_TEST,
        ):
            self._ab_tests[record.parameter] = ABTest(
                id=record.id,
                parameter=record.parameter,
                control_value=record.old_value,
                variant_value=record.new_value,
                sample_size=float(record.settings.get("sample_size", 0.5)),
                duration_seconds=float(
                    record.settings.get(
                        "duration_seconds", self._settings.ab_test_duration_seconds
                    )
                ),
                min_executions=int(
                    record.settings.get("min_executions", self._settings.ab_test_min_executions)
                ),
                started_at=record.applied_at,
            )

    # -------------------------------------------------------------------------
    # Parameter access
    # -------------------------------------------------------------------------

    def get_parameter(self, name: str) -> Any:
        """Current value of a parameter, created with its default on first use."""
        spec = spec_for(name)
        return self._store.ensure_parameter(self.rule_name, name, spec.default)

    def get_parameters(self) -> dict[str, Any]:
        return self._store.get_parameters(self.rule_name)

    def in_cooldown(self, parameter: str) -> bool:
        last = self._store.get_last_change_at(self.rule_name, parameter, ChangeType.APPLIED)
        if last is None:
            return False
        cooldown = timedelta(seconds=self._settings.optimization_cooldown_seconds)
        return self._clock() - last < cooldown

    def has_active_optimization(self, parameter: str) -> bool:
        return parameter in self._ab_tests or bool(self._store.get_optimizations(
            self.rule_name,
            status=OptimizationStatus.ACTIVE,
            parameter=parameter,
            limit=1,
        ))

    def _skip(self, parameter: str, reason: str) -> None:
        self.skip_count += 1
        _logger.info(
            "optimization_skipped",
            rule_name=self.rule_name,
            parameter=parameter,
            reason=reason,
            skip_count=self.skip_count,
        )

    def _blocked(self, parameter: str) -> bool:
        """True (and counted as a skip) if the parameter may not change right now."""
        if self.in_cooldown(parameter):
            self._skip(parameter, "cooldown")
            return True
        if self.has_active_optimization(parameter):
            self._skip(parameter, "optimization_in_progress")
            return True
        return False

    # -------------------------------------------------------------------------
    # Applying changes
    # -------------------------------------------------------------------------

    def apply_proposal(
        self,
        proposal: Proposal,
        *,
        kind: OptimizationKind = OptimizationKind.GRADUAL,
    ) -> OptimizationRecord | None:
        """Apply one proposal as a monitored optimization.

        The proposed value is re-bounded against the live value, so callers
        can never push a change larger than one gradual step.

        Returns:
            The active optimization, or None when adaptation is disabled, the
            parameter is cooling down or busy, or the step is a no-op.
        """
        if not self._settings.enabled:
            return None
        if self._blocked(proposal.parameter):
            return None

        spec = spec_for(proposal.parameter)
        current = self.get_parameter(proposal.parameter)
        new_value = spec.validate(
            spec.step_toward(
                current, spec.validate(proposal.proposed_value),
                self._settings.max_parameter_change_rate,
            )
        )
        if new_value == current:
            return None

        baseline = self._monitor.capture_baseline() if self._monitor is not None else None
        optimization = OptimizationRecord(
            rule_name=self.rule_name,
            parameter=proposal.parameter,
            old_value=current,
            new_value=new_value,
            confidence=proposal.confidence,
            reason=proposal.reason,
            kind=kind,
            baseline=baseline,
            success_rate_before=baseline.success_rate if baseline is not None else None,
            applied_at=self._clock(),
        )
        self._store.save_optimization(optimization)
        self._store.apply_parameter_change(
            self.rule_name,
            proposal.parameter,
            current,
            new_value,
            confidence=proposal.confidence,
            reason=proposal.reason,
            change_type=ChangeType.APPLIED,
            optimization_id=optimization.id,
        )
        if self._monitor is not None:
            self._monitor.monitor_optimization(optimization)

        _logger.info(
            "optimization_applied",
            rule_name=self.rule_name,
            parameter=proposal.parameter,
            old_value=current,
            new_value=new_value,
            target_value=proposal.target_value,
            confidence=round(proposal.confidence, 3),
            reason=proposal.reason,
            optimization_id=optimization.id,
        )
        return optimization

    # -------------------------------------------------------------------------
    # Timeout optimization
    # -------------------------------------------------------------------------

    def propose_timeout(self) -> Proposal | None:
        """Compute a bounded timeout change from recent durations.

        The candidate is ``max(p99 x 1.2, mean + 3 x stddev, min_timeout_ms)``.
        The step toward it is clamped to ``max_parameter_change_rate`` of the
        current value, and steps under ``min_timeout_change_ms`` are rejected.
        """
        records = self._store.get_recent_executions(self.rule_name, TIMEOUT_SAMPLE_WINDOW)
        needed = min(self._settings.min_executions_for_optimization, TIMEOUT_SAMPLE_WINDOW)
        if len(records) < needed:
            _logger.debug(
                "timeout_optimization_insufficient_data",
                rule_name=self.rule_name,
                samples=len(records),
                needed=needed,
            )
            return None

        stats = describe(r.duration_ms for r in records)
        candidate = max(
            stats.p99 * 1.2,
            stats.mean + 3 * stats.stddev,
            self._settings.min_timeout_ms,
        )
        return self._timeout_proposal(candidate, stats.count, stats.coefficient_of_variation)

    def _timeout_proposal(
        self,
        target: float,
        sample_size: int,
        variation: float,
        reason: str = "timeout_optimization",
    ) -> Proposal | None:
        spec = PARAMETER_SPECS[TIMEOUT_PARAMETER]
        current = float(self.get_parameter(TIMEOUT_PARAMETER))
        target = min(max(target, spec.minimum or 0.0), spec.maximum or target)
        stepped = spec.step_toward(current, target, self._settings.max_parameter_change_rate)
        if abs(stepped - current) < self._settings.min_timeout_change_ms:
            return None

        consistency = 1 - min(variation, 1.0)
        confidence = 0.5
        if sample_size > 50:
            confidence += 0.2
        if sample_size > 100:
            confidence += 0.1
        if sample_size > 500:
            confidence += 0.1
        confidence = min(confidence + consistency * 0.1, 0.95)

        return Proposal(
            parameter=TIMEOUT_PARAMETER,
            current_value=current,
            proposed_value=stepped,
            target_value=target,
            confidence=confidence,
            reason=reason,
        )

    def optimize_timeout(self) -> float | None:
        """Apply one bounded timeout step if the data supports it.

        Returns:
            The new timeout, or None if nothing was applied.
        """
        if not self._settings.enabled or self._blocked(TIMEOUT_PARAMETER):
            return None
        proposal = self.propose_timeout()
        if proposal is None:
            return None
        optimization = self.apply_proposal(proposal)
        return float(optimization.new_value) if optimization is not None else None

    # -------------------------------------------------------------------------
    # Pattern refinement
    # -------------------------------------------------------------------------

    def _refinement_for(
        self,
        pattern_type: str,
        pattern_key: str,
        target: str,
        confidence: float,
        reason: str,
    ) -> Proposal | None:
        name = pattern_sensitivity_name(pattern_type, pattern_key)
        spec = spec_for(name)
        current = self.get_parameter(name)
        proposed = spec.step_toward(current, target, self._settings.max_parameter_change_rate)
        if proposed == current:
            return None
        return Proposal(
            parameter=name,
            current_value=current,
            proposed_value=proposed,
            target_value=target,
            confidence=confidence,
            reason=reason,
        )

    def refine_patterns(self) -> list[Proposal]:
        """Propose per-pattern sensitivity steps from confusion matrices.

        Patterns with at least 20 observations and precision below 0.5 step
        toward ``reduced``; patterns with recall below 0.5 and a miss rate
        above 0.2 step toward ``increased``. Each proposal is scoped to one
        pattern key.
        """
        proposals = []
        for stats in self._store.get_effectiveness(
            self.rule_name, min_total=REFINE_MIN_OBSERVATIONS
        ):
            confidence = min(stats.total / 50, 0.9)
            proposal = None
            if (
                stats.true_positives + stats.false_positives > 0
                and stats.precision < REFINE_PRECISION_FLOOR
            ):
                proposal = self._refinement_for(
                    stats.pattern_type, stats.pattern_key, "reduced", confidence,
                    "low_precision",
                )
            elif (
                stats.recall < REFINE_RECALL_FLOOR
                and stats.false_negative_rate > REFINE_MISS_RATE_CEILING
            ):
                proposal = self._refinement_for(
                    stats.pattern_type, stats.pattern_key, "increased", confidence,
                    "low_recall",
                )
            if proposal is not None:
                proposals.append(proposal)
        return proposals

    def _record_refinement(self, proposal: Proposal, optimization: OptimizationRecord) -> None:
        _, pattern_type, pattern_key = proposal.parameter.split(":", 2)
        now = self._clock()
        self._store.save_insight(Insight(
            rule_name=self.rule_name,
            kind=InsightKind.PATTERN_REFINEMENT,
            payload=PatternRefinementPayload(
                pattern_type=pattern_type,
                pattern_key=pattern_key,
                parameter=proposal.parameter,
                current_value=str(optimization.old_value),
                proposed_value=str(optimization.new_value),
                reason=proposal.reason,
            ),
            confidence=proposal.confidence,
            created_at=now,
            applied=True,
            applied_at=now,
        ))

    def apply_refinements(self) -> list[str]:
        """Apply every refinement proposal. Returns the changed parameter names."""
        applied = []
        for proposal in self.refine_patterns():
            optimization = self.apply_proposal(proposal)
            if optimization is not None:
                self._record_refinement(proposal, optimization)
                applied.append(proposal.parameter)
        return applied

    # -------------------------------------------------------------------------
    # Insight consumption
    # -------------------------------------------------------------------------

    def _proposal_from_insight(self, insight: Insight) -> Proposal | None:
        payload = insight.payload
        if isinstance(payload, TimeoutOptimizationPayload):
            variation = payload.stddev_ms / payload.mean_ms if payload.mean_ms else 1.0
            return self._timeout_proposal(
                payload.recommended_timeout_ms,
                payload.sample_size,
                variation,
                reason="timeout_insight",
            )
        if isinstance(payload, PatternDegradationPayload):
            return self._refinement_for(
                payload.pattern_type,
                payload.pattern_key,
                "reduced",
                insight.confidence,
                "pattern_degradation",
            )
        return None

    def consume_insights(self) -> int:
        """Act on pending timeout and degradation insights.

        Only insights at or above ``min_confidence_for_insights`` are
        considered. An insight is claimed atomically before it is acted on,
        so it is never applied twice; insights whose parameter is cooling
        down stay pending.

        Returns:
            Number of insights consumed.
        """
        if not self._settings.enabled:
            return 0
        consumed = 0
        for kind in (InsightKind.TIMEOUT_OPTIMIZATION, InsightKind.PATTERN_DEGRADATION):
            for insight in self._store.get_insights(
                self.rule_name,
                kind=kind,
                applied=False,
                min_confidence=self.config.min_confidence_for_insights,
            ):
                proposal = self._proposal_from_insight(insight)
                if proposal is None:
                    self._store.claim_insight(insight.id)
                    continue
                if self._blocked(proposal.parameter):
                    continue
                if not self._store.claim_insight(insight.id):
                    continue
                optimization = self.apply_proposal(proposal)
                consumed += 1
                _logger.info(
                    "insight_consumed",
                    rule_name=self.rule_name,
                    insight_id=insight.id,
                    kind=insight.kind.value,
                    applied=optimization is not None,
                )
        return consumed

    # -------------------------------------------------------------------------
    # A/B tests
    # -------------------------------------------------------------------------

    def start_ab_test(
        self,
        parameter: str,
        candidate_value: Any,
        *,
        duration_seconds: float | None = None,
        sample_size: float = 0.5,
        min_executions: int | None = None,
    ) -> str:
        """Start splitting invocations between the current value and a candidate.

        Args:
            parameter: Parameter under test.
            candidate_value: Value served to the variant arm.
            duration_seconds: Conclude after this long even without enough data.
            sample_size: Fraction of invocations assigned to the variant.
            min_executions: Executions each arm needs to conclude early.

        Returns:
            The test id.

        Raises:
            ExperimentError: If the sample size is not in (0, 1) or a test is
                already running for this rule.
            ParameterValidationError: If the candidate is invalid.
        """
        if not 0.0 < sample_size < 1.0:
            raise ExperimentError(f"sample_size must be in (0, 1), got {sample_size}")
        if self._ab_tests:
            running = next(iter(self._ab_tests))
            raise ExperimentError(f"an A/B test for {running!r} is already running")

        spec = spec_for(parameter)
        candidate = spec.validate(candidate_value)
        current = self.get_parameter(parameter)
        duration_seconds = duration_seconds or self._settings.ab_test_duration_seconds
        min_executions = min_executions or self._settings.ab_test_min_executions
        # Confidence is set when the test concludes
        record = OptimizationRecord(
            rule_name=self.rule_name,
            parameter=parameter,
            old_value=current,
            new_value=candidate,
            confidence=0.0,
            reason="ab_test",
            kind=OptimizationKind.AB_TEST,
            applied_at=self._clock(),
            settings={
                "sample_size": sample_size,
                "duration_seconds": duration_seconds,
                "min_executions": min_executions,
            },
        )
        self._store.save_optimization(record)
        self._ab_tests[parameter] = ABTest(
            id=record.id,
            parameter=parameter,
            control_value=current,
            variant_value=candidate,
            sample_size=sample_size,
            duration_seconds=duration_seconds,
            min_executions=min_executions,
            started_at=record.applied_at,
        )
        _logger.info(
            "ab_test_started",
            rule_name=self.rule_name,
            test_id=record.id,
            parameter=parameter,
            control=current,
            variant=candidate,
            sample_size=sample_size,
        )
        return record.id

    @property
    def active_ab_tests(self) -> list[ABTest]:
        return list(self._ab_tests.values())

    def resolve_parameters(self) -> ResolvedParameters:
        """Parameter values for the next invocation, with A/B arm assignment."""
        values = dict(self._store.get_parameters(self.rule_name))
        if not self._ab_tests:
            return ResolvedParameters(values=values)
        test = next(iter(self._ab_tests.values()))
        arm = "variant" if assign_variant(next(self._counter), test.sample_size) else "control"
        values[test.parameter] = test.variant_value if arm == "variant" else test.control_value
        return ResolvedParameters(values=values, ab_test_id=test.id, ab_arm=arm)

    def _maybe_conclude(self, test: ABTest) -> ABTestResult | None:
        # Arm metrics accumulate in the execution records tagged with the test id
        arms = self._store.get_ab_arm_metrics(test.id)
        control, variant = arms["control"], arms["variant"]
        enough = (
            control.executions >= test.min_executions
            and variant.executions >= test.min_executions
        )
        expired = self._clock() - test.started_at >= timedelta(seconds=test.duration_seconds)
        if enough or expired:
            return self._conclude_ab_test(test, control, variant)
        return None

    def record_ab_result(self, resolved: ResolvedParameters) -> ABTestResult | None:
        """Account for one finished invocation of an A/B test.

        Call after the invocation's execution record (carrying
        ``resolved.ab_test_id`` and ``resolved.ab_arm``) has been written.
        Concludes the test once both arms have enough executions or its
        duration has elapsed.
        """
        if resolved.ab_test_id is None:
            return None
        for test in list(self._ab_tests.values()):
            if test.id == resolved.ab_test_id:
                return self._maybe_conclude(test)
        return None

    def check_ab_tests(self) -> list[ABTestResult]:
        """Conclude every A/B test that has enough data or has run out of time."""
        results = []
        for test in list(self._ab_tests.values()):
            result = self._maybe_conclude(test)
            if result is not None:
                results.append(result)
        return results

    @staticmethod
    def _ab_confidence(control: ArmMetrics, variant: ArmMetrics) -> float:
        total = control.executions + variant.executions
        larger = max(control.executions, variant.executions)
        balance = min(control.executions, variant.executions) / larger if larger else 0.0
        confidence = 0.5
        if total > 100:
            confidence += 0.2
        if total > 500:
            confidence += 0.2
        return min(confidence + balance * 0.1, 1.0)

    def _conclude_ab_test(
        self, test: ABTest, control: ArmMetrics, variant: ArmMetrics
    ) -> ABTestResult:
        # Ties keep the current value
        variant_won = variant.executions > 0 and variant.success_rate > control.success_rate
        confidence = self._ab_confidence(control, variant)
        impact = (
            (variant.avg_duration_ms - control.avg_duration_ms) / control.avg_duration_ms
            if control.avg_duration_ms else None
        )
        self._store.conclude_optimization(
            test.id,
            OptimizationStatus.ACCEPTED if variant_won else OptimizationStatus.ROLLED_BACK,
            success_rate_after=variant.success_rate,
            performance_impact=impact,
            rollback_reason=None if variant_won else "control_preferred",
            confidence=confidence,
        )
        del self._ab_tests[test.parameter]

        applied_value = None
        if variant_won:
            optimization = self.apply_proposal(
                Proposal(
                    parameter=test.parameter,
                    current_value=test.control_value,
                    proposed_value=test.variant_value,
                    target_value=test.variant_value,
                    confidence=confidence,
                    reason="ab_test_winner",
                ),
            )
            applied_value = optimization.new_value if optimization is not None else None

        _logger.info(
            "ab_test_concluded",
            rule_name=self.rule_name,
            test_id=test.id,
            parameter=test.parameter,
            winner="variant" if variant_won else "control",
            control_success=round(control.success_rate, 3),
            variant_success=round(variant.success_rate, 3),
            control_executions=control.executions,
            variant_executions=variant.executions,
            applied_value=applied_value,
        )
        return ABTestResult(
            test_id=test.id,
            parameter=test.parameter,
            winner="variant" if variant_won else "control",
            control=control,
            variant=variant,
            confidence=confidence,
            applied_value=applied_value,
        )

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def rollback_optimization(self, optimization: OptimizationRecord, reason: str) -> Any:
        """Restore the value a parameter held before ``optimization``.

        If the pre-change value cannot be restored, falls back to the last
        known-good value (latest accepted value, else the value before any
        tuning, else the parameter default).

        Returns:
            The value now in effect.

        Raises:
            RollbackError: If neither value could be written.
        """
        spec = spec_for(optimization.parameter)
        try:
            restored = spec.validate(optimization.old_value)
            self._store.apply_parameter_change(
                self.rule_name,
                optimization.parameter,
                optimization.new_value,
                restored,
                confidence=optimization.confidence,
                reason=reason,
                change_type=ChangeType.ROLLED_BACK,
                optimization_id=optimization.id,
            )
            return restored
        except Exception as e:
            _logger.critical(
                "rollback_failed",
                rule_name=self.rule_name,
                parameter=optimization.parameter,
                optimization_id=optimization.id,
                error=str(e),
            )
            failure = e

        try:
            fallback = self._store.get_last_known_good(self.rule_name, optimization.parameter)
            try:
                fallback = spec.validate(fallback)
            except ParameterValidationError:
                fallback = spec.default
            self._store.apply_parameter_change(
                self.rule_name,
                optimization.parameter,
                optimization.new_value,
                fallback,
                confidence=0.0,
                reason=f"restore_after_failed_rollback:{reason}",
                change_type=ChangeType.RESTORED,
                optimization_id=optimization.id,
            )
        except Exception as e:
            _logger.critical(
                "rollback_fallback_failed",
                rule_name=self.rule_name,
                parameter=optimization.parameter,
                optimization_id=optimization.id,
                error=str(e),
            )
            raise RollbackError(
                f"could not restore {optimization.parameter!r} for {self.rule_name!r}: {e}"
            ) from failure
        _logger.critical(
            "parameter_restored_to_last_known_good",
            rule_name=self.rule_name,
            parameter=optimization.parameter,
            value=fallback,
        )
        return fallback

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run_optimization_cycle(self) -> OptimizationCycleResult:
        """Consume insights, conclude A/B tests, tune the timeout and refine patterns.

        Each step is isolated: a failing step is logged and the others still run.
        """
        result = OptimizationCycleResult()
        skipped_before = self.skip_count
        steps: list[tuple[str, Callable[[], None]]] = [
            ("ab_tests", lambda: result.ab_results.extend(self.check_ab_tests())),
            ("insights", lambda: setattr(result, "insights_consumed", self.consume_insights())),
            ("timeout", lambda: setattr(result, "timeout_value", self.optimize_timeout())),
            ("refinement", lambda: result.refinements_applied.extend(self.apply_refinements())),
        ]
        for name, step in steps:
            try:
                step()
            except LearningError as e:
                _logger.warning(
                    "optimization_step_failed", rule_name=self.rule_name, step=name, error=str(e)
                )
            except Exception as e:
                _logger.error(
                    "optimization_step_failed",
                    rule_name=self.rule_name,
                    step=name,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        result.skipped = self.skip_count - skipped_before
        return result


__all__ = [
    "ABTest",
    "ABTestResult",
    "AdaptiveParameterSystem",
    "OptimizationCycleResult",
    "PARAMETER_SPECS",
    "ParameterKind",
    "ParameterSpec",
    "Proposal",
    "ResolvedParameters",
    "TIMEOUT_PARAMETER",
    "assign_variant",
    "pattern_sensitivity_name",
    "spec_for",
]
