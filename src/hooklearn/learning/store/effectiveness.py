"""Confusion-matrix mixin for LearningStore.

Only the four raw counters are stored. Precision, recall and the
false-positive rate are derived by PatternEffectivenessStats on every read.
"""

import sqlite3
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder
from hooklearn.learning.store.models import DecisionOutcome, PatternEffectivenessStats

_OUTCOME_COLUMNS = {
    DecisionOutcome.TRUE_POSITIVE: "true_positives",
    DecisionOutcome.FALSE_POSITIVE: "false_positives",
    DecisionOutcome.TRUE_NEGATIVE: "true_negatives",
    DecisionOutcome.FALSE_NEGATIVE: "false_negatives",
}


class EffectivenessMixin:
    """Mixin providing confusion-matrix counters for LearningStore."""

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def increment_effectiveness(
        self,
        rule_name: str,
        patterns: Sequence[tuple[str, str]],
        outcome: DecisionOutcome,
    ) -> None:
        """Add one observation of ``outcome`` to each pattern's confusion matrix."""
        if not patterns:
            return
        column = _OUTCOME_COLUMNS[outcome]
        now = datetime.now().isoformat()
        rows = [
            (rule_name, pattern_type, pattern_key, now, now)
            for pattern_type, pattern_key in dict.fromkeys(patterns)
        ]

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.executemany(
                f"""
                INSERT INTO pattern_effectiveness (
                    rule_name, pattern_type, pattern_key, {column},
                    first_seen, last_updated
                ) VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(rule_name, pattern_type, pattern_key) DO UPDATE SET
                    {column} = {column} + 1,
                    last_updated = excluded.last_updated
                """,
                rows,
            )

        self._execute_write(_upsert)

    @staticmethod
    def _row_to_effectiveness(row: sqlite3.Row) -> PatternEffectivenessStats:
        return PatternEffectivenessStats(
            rule_name=row["rule_name"],
            pattern_type=row["pattern_type"],
            pattern_key=row["pattern_key"],
            true_positives=row["true_positives"],
            false_positives=row["false_positives"],
            true_negatives=row["true_negatives"],
            false_negatives=row["false_negatives"],
            last_updated=(
                datetime.fromisoformat(row["last_updated"]) if row["last_updated"] else None
            ),
        )

    def get_effectiveness(
        self,
        rule_name: str,
        pattern_type: str | None = None,
        *,
        min_total: int = 0,
    ) -> list[PatternEffectivenessStats]:
        """Confusion matrices for a rule, ordered by observation count.

        Args:
            rule_name: Rule to query.
            pattern_type: Restrict to one pattern type.
            min_total: Only include patterns with at least this many observations.
        """
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        wb.add(
            "(true_positives + false_positives + true_negatives + false_negatives) >= ?",
            min_total,
        )
        if pattern_type is not None:
            wb.add("pattern_type = ?", pattern_type)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM pattern_effectiveness
                WHERE {where_sql}
                ORDER BY
                    (true_positives + false_positives + true_negatives + false_negatives) DESC,
                    pattern_type, pattern_key
                """,
                params,
            )
            return [self._row_to_effectiveness(row) for row in cursor.fetchall()]

    def get_pattern_effectiveness(
        self, rule_name: str, pattern_type: str, pattern_key: str
    ) -> PatternEffectivenessStats | None:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM pattern_effectiveness
                WHERE rule_name = ? AND pattern_type = ? AND pattern_key = ?
                """,
                (rule_name, pattern_type, pattern_key),
            ).fetchone()
        return self._row_to_effectiveness(row) if row else None
