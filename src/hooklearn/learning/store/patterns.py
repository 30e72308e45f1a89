"""Pattern statistics mixin for LearningStore.

Aggregate counters per (rule, pattern type, pattern value). Rows are
upserted on every matching execution and never deleted; rows that have not
been seen within the expiration window are filtered out of queries instead.
"""

import sqlite3
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder, cutoff_timestamp
from hooklearn.learning.store.models import PatternStatRecord


class PatternStatsMixin:
    """Mixin providing pattern counter methods for LearningStore."""

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def update_pattern_stats(
        self,
        rule_name: str,
        patterns: Sequence[tuple[str, str]],
        *,
        success: bool,
        blocked: bool,
        duration_ms: float,
    ) -> None:
        """Increment counters for every (pattern_type, pattern_value) observed.

        All patterns of one execution are updated in a single transaction.
        """
        if not patterns:
            return
        now = datetime.now().isoformat()
        rows = [
            (
                rule_name,
                pattern_type,
                pattern_value,
                1 if success else 0,
                1 if blocked else 0,
                max(0.0, float(duration_ms)),
                now,
                now,
            )
            for pattern_type, pattern_value in dict.fromkeys(patterns)
        ]

        def _upsert(conn: sqlite3.Connection) -> None:
            conn.executemany(
                """
                INSERT INTO pattern_stats (
                    rule_name, pattern_type, pattern_value, total_count,
                    success_count, block_count, total_duration_ms,
                    first_seen, last_seen
                ) VALUES (?, ?, ?, 1, ?, ?, ?, ?, ?)
                ON CONFLICT(rule_name, pattern_type, pattern_value) DO UPDATE SET
                    total_count = total_count + 1,
                    success_count = success_count + excluded.success_count,
                    block_count = block_count + excluded.block_count,
                    total_duration_ms = total_duration_ms + excluded.total_duration_ms,
                    last_seen = excluded.last_seen
                """,
                rows,
            )

        self._execute_write(_upsert)

    def get_pattern_stat_records(
        self,
        rule_name: str,
        pattern_type: str | None = None,
        *,
        max_age_days: int | None = None,
        min_count: int = 1,
        limit: int = 100,
    ) -> list[PatternStatRecord]:
        """Pattern counters for a rule, most frequently seen first.

        Args:
            rule_name: Rule to query.
            pattern_type: Restrict to one pattern type.
            max_age_days: Exclude patterns not seen within this many days.
            min_count: Exclude patterns observed fewer times than this.
            limit: Maximum number of rows.
        """
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        wb.add("total_count >= ?", min_count)
        if pattern_type is not None:
            wb.add("pattern_type = ?", pattern_type)
        if max_age_days is not None:
            wb.add("last_seen >= ?", cutoff_timestamp(max_age_days))
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM pattern_stats
                WHERE {where_sql}
                ORDER BY total_count DESC, pattern_type, pattern_value
                LIMIT ?
                """,
                (*params, limit),
            )
            return [
                PatternStatRecord(
                    rule_name=row["rule_name"],
                    pattern_type=row["pattern_type"],
                    pattern_value=row["pattern_value"],
                    total_count=row["total_count"],
                    success_count=row["success_count"],
                    block_count=row["block_count"],
                    total_duration_ms=row["total_duration_ms"],
                    first_seen=(
                        datetime.fromisoformat(row["first_seen"])
                        if row["first_seen"] else None
                    ),
                    last_seen=(
                        datetime.fromisoformat(row["last_seen"])
                        if row["last_seen"] else None
                    ),
                )
                for row in cursor.fetchall()
            ]

    def count_patterns(self, rule_name: str, *, max_age_days: int | None = None) -> int:
        """Number of distinct, non-expired patterns learned for a rule."""
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        if max_age_days is not None:
            wb.add("last_seen >= ?", cutoff_timestamp(max_age_days))
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT COUNT(*) AS count FROM pattern_stats WHERE {where_sql}",
                params,
            )
            count: int = cursor.fetchone()["count"]
            return count
