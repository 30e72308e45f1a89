"""Pattern effectiveness tracking.

Turns (predicted decision, ground-truth outcome) pairs into confusion-matrix
increments for every pattern that was active when the decision was made.

Decisions are cached in memory between the moment a rule decides and the
moment ground truth arrives through an external feedback channel. The cache
is a bounded, insertion-ordered LRU with a time-to-live; validation of an
evicted or expired decision is a no-op. Counters live in the store, and
every derived rate is recomputed from them on read.
"""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from hooklearn.core.logging import get_logger
from hooklearn.learning.store.models import (
    DecisionOutcome,
    Insight,
    InsightKind,
    PatternDegradationPayload,
    PatternEffectivenessStats,
)

if TYPE_CHECKING:
    from hooklearn.learning.context import ExecutionFacts
    from hooklearn.learning.store import LearningStore

_logger = get_logger("learning.effectiveness")

HEALTH_MIN_OBSERVATIONS = 20
DEGRADATION_PRECISION = 0.5


@dataclass(frozen=True)
class CachedDecision:
    decision_id: str
    predicted_blocked: bool
    patterns: tuple[tuple[str, str], ...]
    fingerprint: str | None
    cached_at: float


class DecisionCache:
    """Fixed-capacity decision cache.

    Eviction policy: when full, the least recently inserted entry is
    dropped. Entries older than ``ttl_seconds`` are treated as absent and
    removed lazily on access and by ``purge_expired``.
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, CachedDecision] = OrderedDict()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, decision_id: object) -> bool:
        return decision_id in self._entries

    def now(self) -> float:
        return self._clock()

    def put(self, entry: CachedDecision) -> None:
        self._entries.pop(entry.decision_id, None)
        self._entries[entry.decision_id] = entry
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
            self.evictions += 1

    def pop(self, decision_id: str) -> CachedDecision | None:
        """Remove and return an entry, or None if unknown or expired."""
        entry = self._entries.pop(decision_id, None)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self.ttl_seconds:
            return None
        return entry

    def purge_expired(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, entry in self._entries.items() if entry.cached_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)


@dataclass(frozen=True)
class PatternHealth:
    """Outcome of one pattern health check."""

    pattern_type: str
    pattern_key: str
    total: int
    precision: float
    recall: float
    false_positive_rate: float
    degraded: bool
    insight_id: str | None = None


class PatternEffectivenessTracker:
    """Confusion-matrix bookkeeping for the patterns of one rule.

    Args:
        store: Store holding the counters and receiving degradation insights.
        rule_name: Rule whose decisions are tracked.
        cache_size: Capacity of the in-flight decision cache.
        cache_ttl_seconds: How long a decision can wait for its ground truth.
        effectiveness_threshold: Default threshold for problematic patterns.
    """

    def __init__(
        self,
        store: LearningStore,
        rule_name: str,
        *,
        cache_size: int = 1000,
        cache_ttl_seconds: float = 3600.0,
        effectiveness_threshold: float = 0.7,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.rule_name = rule_name
        self.effectiveness_threshold = effectiveness_threshold
        self._cache = DecisionCache(cache_size, cache_ttl_seconds, clock)

    @property
    def pending_decisions(self) -> int:
        return len(self._cache)

    def record_decision(
        self,
        context: ExecutionFacts | None,
        decision: bool,
        patterns: Sequence[tuple[str, str]],
        decision_id: str | None = None,
    ) -> str:
        """Cache an in-flight decision until its ground truth is reported.

        Args:
            context: Captured facts of the invocation, if available.
            decision: True if the rule blocked.
            patterns: Pattern keys active at decision time.
            decision_id: Caller-chosen id; generated when omitted.

        Returns:
            The decision id to pass to ``validate_decision``.
        """
        decision_id = decision_id or str(uuid.uuid4())
        self._cache.put(CachedDecision(
            decision_id=decision_id,
            predicted_blocked=bool(decision),
            patterns=tuple((str(t), str(k)) for t, k in patterns),
            fingerprint=context.fingerprint if context is not None else None,
            cached_at=self._cache.now(),
        ))
        return decision_id

    def validate_decision(self, decision_id: str, actual_outcome: bool) -> bool:
        """Apply ground truth to a cached decision.

        Args:
            decision_id: Id returned by ``record_decision``.
            actual_outcome: True if the action should have been blocked.

        Returns:
            False (and does nothing) if the id is unknown, evicted or expired.
        """
        entry = self._cache.pop(decision_id)
        if entry is None:
            _logger.debug(
                "decision_not_found", rule_name=self.rule_name, decision_id=decision_id
            )
            return False
        outcome = self.record_pattern_result(
            entry.patterns, entry.predicted_blocked, actual_outcome
        )
        _logger.debug(
            "decision_validated",
            rule_name=self.rule_name,
            decision_id=decision_id,
            outcome=outcome.value,
            patterns=len(entry.patterns),
        )
        return True

    def record_pattern_result(
        self,
        patterns: Sequence[tuple[str, str]],
        predicted_blocked: bool,
        should_block: bool,
    ) -> DecisionOutcome:
        """Increment counters for ``patterns`` directly and run health checks."""
        outcome = DecisionOutcome.classify(predicted_blocked, should_block)
        self._store.increment_effectiveness(self.rule_name, patterns, outcome)
        for pattern_type, pattern_key in dict.fromkeys(patterns):
            self.check_pattern_health(pattern_type, pattern_key)
        return outcome

    def check_pattern_health(self, pattern_type: str, pattern_key: str) -> PatternHealth | None:
        """Evaluate one pattern and emit a degradation insight when precision collapses.

        Returns None until the pattern has enough observations. At most one
        unconsumed degradation insight exists per pattern at any time.
        """
        stats = self._store.get_pattern_effectiveness(self.rule_name, pattern_type, pattern_key)
        if stats is None or stats.total < HEALTH_MIN_OBSERVATIONS:
            return None

        predicted_positive = stats.true_positives + stats.false_positives
        degraded = predicted_positive > 0 and stats.precision < DEGRADATION_PRECISION
        insight_id = None
        if degraded and not self._has_pending_degradation(pattern_type, pattern_key):
            insight = Insight(
                rule_name=self.rule_name,
                kind=InsightKind.PATTERN_DEGRADATION,
                payload=PatternDegradationPayload(
                    pattern_type=pattern_type,
                    pattern_key=pattern_key,
                    precision=stats.precision,
                    recall=stats.recall,
                    false_positive_rate=stats.false_positive_rate,
                    total=stats.total,
                ),
                confidence=min(stats.total / 50, 1.0),
            )
            insight_id = self._store.save_insight(insight)
            _logger.warning(
                "pattern_degraded",
                rule_name=self.rule_name,
                pattern=f"{pattern_type}:{pattern_key}",
                precision=round(stats.precision, 3),
                recall=round(stats.recall, 3),
                total=stats.total,
            )

        return PatternHealth(
            pattern_type=pattern_type,
            pattern_key=pattern_key,
            total=stats.total,
            precision=stats.precision,
            recall=stats.recall,
            false_positive_rate=stats.false_positive_rate,
            degraded=degraded,
            insight_id=insight_id,
        )

    def _has_pending_degradation(self, pattern_type: str, pattern_key: str) -> bool:
        pending = self._store.get_insights(
            self.rule_name,
            kind=InsightKind.PATTERN_DEGRADATION,
            applied=False,
            limit=1000,
        )
        return any(
            isinstance(i.payload, PatternDegradationPayload)
            and i.payload.pattern_type == pattern_type
            and i.payload.pattern_key == pattern_key
            for i in pending
        )

    def get_pattern_stats(self, pattern_type: str | None = None) -> list[PatternEffectivenessStats]:
        return self._store.get_effectiveness(self.rule_name, pattern_type)

    def get_problematic_patterns(
        self, threshold: float | None = None
    ) -> list[PatternEffectivenessStats]:
        """Patterns with enough observations whose precision, recall or FPR is poor.

        A pattern is problematic when precision < threshold, recall < threshold,
        or false-positive rate > 1 - threshold.
        """
        t = self.effectiveness_threshold if threshold is None else threshold
        return [
            stats
            for stats in self._store.get_effectiveness(
                self.rule_name, min_total=HEALTH_MIN_OBSERVATIONS
            )
            if stats.precision < t or stats.recall < t or stats.false_positive_rate > 1 - t
        ]

    def purge_expired(self) -> int:
        """Drop cached decisions whose ground truth can no longer arrive in time."""
        removed = self._cache.purge_expired()
        if removed:
            _logger.debug("decisions_expired", rule_name=self.rule_name, count=removed)
        return removed


__all__ = [
    "CachedDecision",
    "DecisionCache",
    "PatternEffectivenessTracker",
    "PatternHealth",
]
