"""Optimization mixin for LearningStore.

Persists monitored tuning attempts (gradual changes and A/B tests). The
status column only ever moves out of ``active``: every conclusion is a
conditional update, so a second accept or rollback of the same attempt is a
no-op reported back to the caller.
"""

import json
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder
from hooklearn.learning.store.models import (
    Checkpoint,
    MetricsSnapshot,
    OptimizationKind,
    OptimizationRecord,
    OptimizationStatus,
)


class OptimizationMixin:
    """Mixin providing optimization lifecycle persistence for LearningStore."""

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def save_optimization(self, optimization: OptimizationRecord) -> None:
        """Insert or fully replace an optimization row."""
        baseline = (
            json.dumps(optimization.baseline.to_dict()) if optimization.baseline else None
        )

        def _save(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT OR REPLACE INTO optimizations (
                    id, rule_name, parameter, kind, old_value, new_value,
                    confidence, reason, status, baseline, checkpoints,
                    applied_at, concluded_at, success_rate_before,
                    success_rate_after, performance_impact, rollback_reason,
                    settings
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    optimization.id,
                    optimization.rule_name,
                    optimization.parameter,
                    optimization.kind.value,
                    json.dumps(optimization.old_value),
                    json.dumps(optimization.new_value),
                    optimization.confidence,
                    optimization.reason,
                    optimization.status.value,
                    baseline,
                    json.dumps([cp.to_dict() for cp in optimization.checkpoints]),
                    optimization.applied_at.isoformat(),
                    (
                        optimization.concluded_at.isoformat()
                        if optimization.concluded_at else None
                    ),
                    optimization.success_rate_before,
                    optimization.success_rate_after,
                    optimization.performance_impact,
                    optimization.rollback_reason,
                    json.dumps(optimization.settings),
                ),
            )

        self._execute_write(_save)

    def append_checkpoint(self, optimization_id: str, checkpoint: Checkpoint) -> int:
        """Append a checkpoint to an active optimization.

        Returns:
            The number of checkpoints after appending, or 0 if the
            optimization is no longer active.
        """
        def _append(conn: sqlite3.Connection) -> int:
            row = conn.execute(
                "SELECT checkpoints FROM optimizations WHERE id = ? AND status = ?",
                (optimization_id, OptimizationStatus.ACTIVE.value),
            ).fetchone()
            if row is None:
                return 0
            checkpoints = json.loads(row["checkpoints"] or "[]")
            checkpoints.append(checkpoint.to_dict())
            conn.execute(
                "UPDATE optimizations SET checkpoints = ? WHERE id = ?",
                (json.dumps(checkpoints), optimization_id),
            )
            return len(checkpoints)

        count: int = self._execute_write(_append)
        return count

    def conclude_optimization(
        self,
        optimization_id: str,
        status: OptimizationStatus,
        *,
        success_rate_after: float | None = None,
        performance_impact: float | None = None,
        rollback_reason: str | None = None,
        confidence: float | None = None,
    ) -> bool:
        """Move an active optimization to a terminal status.

        Args:
            optimization_id: Optimization to conclude.
            status: Terminal status.
            success_rate_after: Success rate measured after the change.
            performance_impact: Relative duration change.
            rollback_reason: Why the change was rolled back.
            confidence: Replaces the stored confidence when given.

        Returns:
            True if this call concluded it, False if it was already concluded.
        """
        if status == OptimizationStatus.ACTIVE:
            raise ValueError("cannot conclude an optimization into the active status")

        def _conclude(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                """
                UPDATE optimizations SET
                    status = ?,
                    concluded_at = ?,
                    success_rate_after = ?,
                    performance_impact = ?,
                    rollback_reason = ?,
                    confidence = COALESCE(?, confidence)
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    datetime.now().isoformat(),
                    success_rate_after,
                    performance_impact,
                    rollback_reason,
                    confidence,
                    optimization_id,
                    OptimizationStatus.ACTIVE.value,
                ),
            )
            return cursor.rowcount == 1

        concluded: bool = self._execute_write(_conclude)
        return concluded

    @staticmethod
    def _row_to_optimization(row: sqlite3.Row) -> OptimizationRecord:
        return OptimizationRecord(
            id=row["id"],
            rule_name=row["rule_name"],
            parameter=row["parameter"],
            kind=OptimizationKind(row["kind"]),
            old_value=json.loads(row["old_value"]) if row["old_value"] else None,
            new_value=json.loads(row["new_value"]) if row["new_value"] else None,
            confidence=row["confidence"] or 0.0,
            reason=row["reason"] or "",
            status=OptimizationStatus(row["status"]),
            baseline=(
                MetricsSnapshot.from_dict(json.loads(row["baseline"]))
                if row["baseline"] else None
            ),
            checkpoints=[
                Checkpoint.from_dict(cp) for cp in json.loads(row["checkpoints"] or "[]")
            ],
            applied_at=datetime.fromisoformat(row["applied_at"]),
            concluded_at=(
                datetime.fromisoformat(row["concluded_at"]) if row["concluded_at"] else None
            ),
            success_rate_before=row["success_rate_before"],
            success_rate_after=row["success_rate_after"],
            performance_impact=row["performance_impact"],
            rollback_reason=row["rollback_reason"],
            settings=json.loads(row["settings"]) if row["settings"] else {},
        )

    def get_optimization(self, optimization_id: str) -> OptimizationRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM optimizations WHERE id = ?", (optimization_id,)
            ).fetchone()
        return self._row_to_optimization(row) if row else None

    def get_optimizations(
        self,
        rule_name: str,
        *,
        status: OptimizationStatus | None = None,
        kind: OptimizationKind | None = None,
        parameter: str | None = None,
        limit: int = 50,
    ) -> list[OptimizationRecord]:
        """Optimizations for a rule, most recently applied first."""
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        if status is not None:
            wb.add("status = ?", status.value)
        if kind is not None:
            wb.add("kind = ?", kind.value)
        if parameter is not None:
            wb.add("parameter = ?", parameter)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM optimizations
                WHERE {where_sql}
                ORDER BY applied_at DESC, rowid DESC
                LIMIT ?
                """,
                (*params, limit),
            )
            return [self._row_to_optimization(row) for row in cursor.fetchall()]
