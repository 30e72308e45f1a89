"""Parameter mixin for LearningStore.

Holds the live parameter values per rule together with the append-only
audit log of every transition. A value write and its audit entry always
commit in the same transaction.
"""

import json
import sqlite3
from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any

from hooklearn.core.logging import HookLearnLogger
from hooklearn.learning.store.base import WhereBuilder
from hooklearn.learning.store.models import (
    ChangeType,
    ParameterChangeRecord,
    ParameterRecord,
)


class ParameterMixin:
    """Mixin providing parameter storage and change history for LearningStore.

    Parameter Methods:
    - ensure_parameter: Create a parameter with its default on first use
    - get_parameter / get_parameters: Read live values
    - apply_parameter_change: Write a value and its audit entry atomically
    - record_parameter_change: Audit entry only (e.g. acceptance)

    History Methods:
    - get_parameter_changes: Audit log, newest first
    - get_last_change_at: Cooldown support
    - get_last_known_good: Rollback fallback support
    """

    _logger: HookLearnLogger
    _get_connection: Callable[[], AbstractContextManager[sqlite3.Connection]]
    _execute_write: Callable[[Callable[[sqlite3.Connection], Any]], Any]

    def ensure_parameter(self, rule_name: str, name: str, default: Any) -> Any:
        """Return the stored value, inserting ``default`` if the parameter is new."""
        now = datetime.now().isoformat()

        def _insert_default(conn: sqlite3.Connection) -> Any:
            conn.execute(
                """
                INSERT OR IGNORE INTO parameters (rule_name, name, value, last_updated)
                VALUES (?, ?, ?, ?)
                """,
                (rule_name, name, json.dumps(default), now),
            )
            row = conn.execute(
                "SELECT value FROM parameters WHERE rule_name = ? AND name = ?",
                (rule_name, name),
            ).fetchone()
            return json.loads(row["value"])

        return self._execute_write(_insert_default)

    def get_parameter(self, rule_name: str, name: str) -> ParameterRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM parameters WHERE rule_name = ? AND name = ?",
                (rule_name, name),
            ).fetchone()
        if row is None:
            return None
        return ParameterRecord(
            rule_name=row["rule_name"],
            name=row["name"],
            value=json.loads(row["value"]),
            last_updated=(
                datetime.fromisoformat(row["last_updated"]) if row["last_updated"] else None
            ),
        )

    def get_parameters(self, rule_name: str) -> dict[str, Any]:
        """All live parameter values of a rule."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT name, value FROM parameters WHERE rule_name = ? ORDER BY name",
                (rule_name,),
            )
            return {row["name"]: json.loads(row["value"]) for row in cursor.fetchall()}

    @staticmethod
    def _insert_change(
        conn: sqlite3.Connection,
        rule_name: str,
        parameter: str,
        old_value: Any,
        new_value: Any,
        confidence: float,
        reason: str,
        change_type: ChangeType,
        optimization_id: str | None,
        changed_at: datetime,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO parameter_changes (
                rule_name, parameter, old_value, new_value, confidence,
                reason, change_type, optimization_id, changed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule_name,
                parameter,
                json.dumps(old_value),
                json.dumps(new_value),
                confidence,
                reason,
                change_type.value,
                optimization_id,
                changed_at.isoformat(),
            ),
        )
        return int(cursor.lastrowid or 0)

    def apply_parameter_change(
        self,
        rule_name: str,
        parameter: str,
        old_value: Any,
        new_value: Any,
        *,
        confidence: float,
        reason: str,
        change_type: ChangeType = ChangeType.APPLIED,
        optimization_id: str | None = None,
    ) -> ParameterChangeRecord:
        """Set a parameter value and append the audit entry in one transaction."""
        changed_at = datetime.now()

        def _apply(conn: sqlite3.Connection) -> int:
            conn.execute(
                """
                INSERT INTO parameters (rule_name, name, value, last_updated)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(rule_name, name) DO UPDATE SET
                    value = excluded.value,
                    last_updated = excluded.last_updated
                """,
                (rule_name, parameter, json.dumps(new_value), changed_at.isoformat()),
            )
            return self._insert_change(
                conn, rule_name, parameter, old_value, new_value, confidence,
                reason, change_type, optimization_id, changed_at,
            )

        change_id: int = self._execute_write(_apply)
        self._logger.info(
            "parameter_changed",
            rule_name=rule_name,
            parameter=parameter,
            old_value=old_value,
            new_value=new_value,
            change_type=change_type.value,
            reason=reason,
        )
        return ParameterChangeRecord(
            id=change_id,
            rule_name=rule_name,
            parameter=parameter,
            old_value=old_value,
            new_value=new_value,
            confidence=confidence,
            reason=reason,
            change_type=change_type,
            changed_at=changed_at,
            optimization_id=optimization_id,
        )

    def record_parameter_change(
        self,
        rule_name: str,
        parameter: str,
        old_value: Any,
        new_value: Any,
        *,
        confidence: float,
        reason: str,
        change_type: ChangeType,
        optimization_id: str | None = None,
    ) -> int:
        """Append an audit entry without touching the live value."""
        changed_at = datetime.now()

        def _record(conn: sqlite3.Connection) -> int:
            return self._insert_change(
                conn, rule_name, parameter, old_value, new_value, confidence,
                reason, change_type, optimization_id, changed_at,
            )

        change_id: int = self._execute_write(_record)
        return change_id

    def get_parameter_changes(
        self,
        rule_name: str,
        parameter: str | None = None,
        *,
        change_types: Iterable[ChangeType] | None = None,
        limit: int = 50,
    ) -> list[ParameterChangeRecord]:
        """Audit entries for a rule, newest first."""
        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        if parameter is not None:
            wb.add("parameter = ?", parameter)
        if change_types is not None:
            types = [ct.value for ct in change_types]
            wb.add(f"change_type IN ({', '.join('?' * len(types))})", *types)
        where_sql, params = wb.build()

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"""
                SELECT * FROM parameter_changes
                WHERE {where_sql}
                ORDER BY id DESC
                LIMIT ?
                """,
                (*params, limit),
            )
            return [
                ParameterChangeRecord(
                    id=row["id"],
                    rule_name=row["rule_name"],
                    parameter=row["parameter"],
                    old_value=json.loads(row["old_value"]) if row["old_value"] else None,
                    new_value=json.loads(row["new_value"]) if row["new_value"] else None,
                    confidence=row["confidence"] or 0.0,
                    reason=row["reason"] or "",
                    change_type=ChangeType(row["change_type"]),
                    changed_at=datetime.fromisoformat(row["changed_at"]),
                    optimization_id=row["optimization_id"],
                )
                for row in cursor.fetchall()
            ]

    def get_last_change_at(
        self,
        rule_name: str,
        parameter: str,
        change_type: ChangeType = ChangeType.APPLIED,
    ) -> datetime | None:
        """Timestamp of the most recent change of the given type."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT MAX(changed_at) AS last_change FROM parameter_changes
                WHERE rule_name = ? AND parameter = ? AND change_type = ?
                """,
                (rule_name, parameter, change_type.value),
            ).fetchone()
        if row is None or row["last_change"] is None:
            return None
        return datetime.fromisoformat(row["last_change"])

    def get_last_known_good(self, rule_name: str, parameter: str) -> Any | None:
        """Most recently confirmed value of a parameter.

        That is the value of the latest accepted change, or failing that the
        value the parameter held before it was ever tuned. Returns None when
        the parameter has no history at all.
        """
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT new_value FROM parameter_changes
                WHERE rule_name = ? AND parameter = ? AND change_type = ?
                ORDER BY id DESC LIMIT 1
                """,
                (rule_name, parameter, ChangeType.ACCEPTED.value),
            ).fetchone()
            if row is not None and row["new_value"] is not None:
                return json.loads(row["new_value"])

            row = conn.execute(
                """
                SELECT old_value FROM parameter_changes
                WHERE rule_name = ? AND parameter = ? AND change_type = ?
                ORDER BY id ASC LIMIT 1
                """,
                (rule_name, parameter, ChangeType.APPLIED.value),
            ).fetchone()
        if row is not None and row["old_value"] is not None:
            return json.loads(row["old_value"])
        return None
