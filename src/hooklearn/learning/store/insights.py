"""Insight mixin for LearningStore.

Insights are written by the analyzer and the effectiveness tracker and
consumed by the adaptive parameter system. Consumption is an atomic claim,
so each insight is acted on at most once even with concurrent consumers.
"""

import json
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder
from hooklearn.learning.store.models import Insight, InsightKind


class InsightMixin:
    """Mixin providing insight persistence for LearningStore."""

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def save_insight(self, insight: Insight) -> str:
        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO insights (
                    id, rule_name, kind, payload, confidence, applied,
                    created_at, applied_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    insight.id,
                    insight.rule_name,
                    insight.kind.value,
                    json.dumps(insight.payload_dict()),
                    insight.confidence,
                    insight.applied,
                    insight.created_at.isoformat(),
                    insight.applied_at.isoformat() if insight.applied_at else None,
                ),
            )

        self._execute_write(_insert)
        self._logger.debug(
            "insight_saved",
            rule_name=insight.rule_name,
            kind=insight.kind.value,
            confidence=round(insight.confidence, 3),
        )
        return insight.id

    @staticmethod
    def _row_to_insight(row: sqlite3.Row) -> Insight:
        kind = InsightKind(row["kind"])
        return Insight(
            id=row["id"],
            rule_name=row["rule_name"],
            kind=kind,
            payload=Insight.payload_from_dict(kind, json.loads(row["payload"])),
            confidence=row["confidence"],
            applied=bool(row["applied"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            applied_at=(
                datetime.fromisoformat(row["applied_at"]) if row["applied_at"] else None
            ),
        )

    def get_insights(
        self,
        rule_name: str,
        *,
        kind: InsightKind | None = None,
        applied: bool | None = None,
        min_confidence: float = 0.0,
        limit: int = 50,
    ) -> list[Insight]:
        """Insights for a rule, highest confidence first, then newest."""
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        wb.add("confidence >= ?", min_confidence)
        if kind is not None:
            wb.add("kind = ?", kind.value)
        if applied is not None:
            wb.add("applied = ?", 1 if applied else 0)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM insights
                WHERE {where_sql}
                ORDER BY confidence DESC, created_at DESC
                LIMIT ?
                """,
                (*params, limit),
            )
            return [self._row_to_insight(row) for row in cursor.fetchall()]

    def claim_insight(self, insight_id: str) -> bool:
        """Mark an insight as applied.

        Returns:
            True for exactly one caller; False if it was already claimed.
        """
        def _claim(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE insights SET applied = 1, applied_at = ? WHERE id = ? AND applied = 0",
                (datetime.now().isoformat(), insight_id),
            )
            return cursor.rowcount == 1

        claimed: bool = self._execute_write(_claim)
        return claimed

    def count_insights(self, rule_name: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT COUNT(*) AS count FROM insights WHERE rule_name = ?",
                (rule_name,),
            )
            count: int = cursor.fetchone()["count"]
            return count
