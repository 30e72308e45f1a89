"""Execution-record mixin for LearningStore.

Provides recording of rule invocations and the aggregate queries built on
them: recent-window metrics for the feedback monitor, per-arm A/B metrics,
overall statistics, and retention pruning.
"""

import json
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder, cutoff_timestamp
from hooklearn.learning.store.models import (
    ArmMetrics,
    ExecutionRecord,
    ExecutionStats,
    MetricsSnapshot,
)


class ExecutionMixin:
    """Mixin providing execution-record methods for LearningStore.

    Requires from the composed class:
    - _get_connection(): Context manager yielding sqlite3.Connection
    - _execute_write(fn): Serialized write transaction
    - _logger: Logger instance
    """

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def record_execution(
        self,
        rule_name: str,
        *,
        duration_ms: float,
        success: bool,
        blocked: bool = False,
        file_path: str | None = None,
        file_extension: str | None = None,
        file_type: str | None = None,
        content_hash: str | None = None,
        content_size: int = 0,
        error_message: str | None = None,
        parameters: dict[str, Any] | None = None,
        ab_test_id: str | None = None,
        ab_arm: str | None = None,
        recorded_at: datetime | None = None,
    ) -> int:
        """Append one execution record.

        Args:
            rule_name: Rule that was executed.
            duration_ms: Wall time of the rule, clamped to be non-negative.
            success: Whether the rule completed without raising.
            blocked: Whether the rule decided to block.
            recorded_at: Override for the record timestamp (defaults to now).

        Returns:
            The new record id. Ids increase monotonically per database.
        """
        when = recorded_at or datetime.now()

        def _insert(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                """
                INSERT INTO execution_records (
                    rule_name, recorded_at, duration_ms, success, blocked,
                    file_path, file_extension, file_type, content_hash,
                    content_size, hour_of_day, day_of_week, error_message,
                    parameters, ab_test_id, ab_arm
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule_name,
                    when.isoformat(),
                    max(0.0, float(duration_ms)),
                    success,
                    blocked,
                    file_path,
                    file_extension,
                    file_type,
                    content_hash,
                    content_size,
                    when.hour,
                    when.weekday(),
                    error_message,
                    json.dumps(parameters or {}, default=str),
                    ab_test_id,
                    ab_arm,
                ),
            )
            return int(cursor.lastrowid or 0)

        record_id: int = self._execute_write(_insert)
        return record_id

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> ExecutionRecord:
        return ExecutionRecord(
            id=row["id"],
            rule_name=row["rule_name"],
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
            duration_ms=row["duration_ms"],
            success=bool(row["success"]),
            blocked=bool(row["blocked"]),
            file_path=row["file_path"],
            file_extension=row["file_extension"],
            file_type=row["file_type"],
            content_hash=row["content_hash"],
            content_size=row["content_size"] or 0,
            hour_of_day=row["hour_of_day"] or 0,
            day_of_week=row["day_of_week"] or 0,
            error_message=row["error_message"],
            parameters=json.loads(row["parameters"]) if row["parameters"] else {},
            ab_test_id=row["ab_test_id"],
            ab_arm=row["ab_arm"],
        )

    def get_recent_executions(
        self,
        rule_name: str,
        limit: int = 100,
        *,
        after_id: int | None = None,
    ) -> list[ExecutionRecord]:
        """Most recent execution records for a rule, newest first.

        Args:
            rule_name: Rule to query.
            limit: Maximum number of records.
            after_id: Only return records with an id greater than this.
        """
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        if after_id is not None:
            wb.add("id > ?", after_id)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM execution_records
                WHERE {where_sql}
                ORDER BY id DESC
                LIMIT ?
                """,
                (*params, limit),
            )
            return [self._row_to_execution(row) for row in cursor.fetchall()]

    def count_executions(self, rule_name: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) AS count FROM execution_records WHERE rule_name = ?",
                (rule_name,),
            )
            count: int = cursor.fetchone()["count"]
            return count

    def get_execution_stats(self, rule_name: str) -> ExecutionStats:
        """Aggregate statistics over every recorded execution of a rule."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    AVG(duration_ms) AS avg_duration,
                    SUM(CASE WHEN success THEN 1 ELSE 0 END) AS successes,
                    SUM(CASE WHEN blocked THEN 1 ELSE 0 END) AS blocks,
                    SUM(CASE WHEN error_message IS NOT NULL THEN 1 ELSE 0 END) AS errors
                FROM execution_records
                WHERE rule_name = ?
                """,
                (rule_name,),
            ).fetchone()

        total = row["total"] or 0
        if total == 0:
            return ExecutionStats()
        return ExecutionStats(
            execution_count=total,
            avg_duration_ms=row["avg_duration"] or 0.0,
            success_rate=(row["successes"] or 0) / total,
            block_rate=(row["blocks"] or 0) / total,
            error_count=row["errors"] or 0,
        )

    def get_window_metrics(
        self,
        rule_name: str,
        window: int = 100,
        *,
        after_id: int | None = None,
    ) -> MetricsSnapshot:
        """Success rate, average duration and error rate of the last ``window`` executions.

        An execution counts as an error when it carries an error message.
        With ``after_id``, only executions recorded after that id are counted.
        """
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        if after_id is not None:
            wb.add("id > ?", after_id)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total,
                    AVG(duration_ms) AS avg_duration,
                    SUM(CASE WHEN success THEN 1 ELSE 0 END) AS successes,
                    SUM(CASE WHEN error_message IS NOT NULL THEN 1 ELSE 0 END) AS errors,
                    MAX(id) AS latest_id
                FROM (
                    SELECT * FROM execution_records
                    WHERE {where_sql}
                    ORDER BY id DESC
                    LIMIT ?
                )
                """,
                (*params, window),
            ).fetchone()

        total = row["total"] or 0
        if total == 0:
            return MetricsSnapshot(
                success_rate=0.0, avg_duration_ms=0.0, error_rate=0.0, execution_count=0
            )
        return MetricsSnapshot(
            success_rate=(row["successes"] or 0) / total,
            avg_duration_ms=row["avg_duration"] or 0.0,
            error_rate=(row["errors"] or 0) / total,
            execution_count=total,
            latest_execution_id=row["latest_id"] or 0,
        )

    def get_ab_arm_metrics(self, ab_test_id: str) -> dict[str, ArmMetrics]:
        """Per-arm execution count, successes and duration for an A/B test."""
        arms = {"control": ArmMetrics(arm="control"), "variant": ArmMetrics(arm="variant")}
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT
                    ab_arm,
                    COUNT(*) AS total,
                    SUM(CASE WHEN success THEN 1 ELSE 0 END) AS successes,
                    SUM(duration_ms) AS total_duration
                FROM execution_records
                WHERE ab_test_id = ?
                GROUP BY ab_arm
                """,
                (ab_test_id,),
            )
            for row in cursor.fetchall():
                arm = row["ab_arm"]
                if arm not in arms:
                    continue
                arms[arm] = ArmMetrics(
                    arm=arm,
                    executions=row["total"],
                    successes=row["successes"] or 0,
                    total_duration_ms=row["total_duration"] or 0.0,
                )
        return arms

    def list_rules(self) -> list[str]:
        """Names of every rule with at least one recorded execution."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT DISTINCT rule_name FROM execution_records ORDER BY rule_name"
            )
            return [row["rule_name"] for row in cursor.fetchall()]

    def prune_executions(self, retention_days: int) -> int:
        """Delete execution records older than ``retention_days``.

        Aggregate counters are untouched, so pruning never loses learned state.

        Returns:
            Number of deleted records.
        """
        cutoff = cutoff_timestamp(retention_days)

        def _delete(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "DELETE FROM execution_records WHERE recorded_at < ?",
                (cutoff,),
            )
            return cursor.rowcount

        deleted: int = self._execute_write(_delete)
        if deleted:
            self._logger.info(
                "executions_pruned", deleted=deleted, retention_days=retention_days
            )
        return deleted
