"""Base class for LearningStore with connection and schema management.

This module provides the foundational `LearningStoreBase` class that handles:
- SQLite connection management with WAL mode
- Serialized writes with a bounded retry on lock contention
- Schema creation, version detection and forward migration

Mixins inherit from this base to add domain-specific functionality.
"""

import sqlite3
import threading
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import TypeVar

from hooklearn.core.config import DEFAULT_DB_PATH, StoreConfig
from hooklearn.core.errors import (
    RecordingError,
    SchemaVersionError,
    StoreInitializationError,
)
from hooklearn.core.logging import get_logger

_logger = get_logger("learning.store")

# SQLite accepts str, int, float, bytes, and None as bind parameters.
SQLParam = str | int | float | bytes | None

T = TypeVar("T")


class WhereBuilder:
    """Accumulates SQL WHERE clauses and their bound parameters.

    Clauses are joined with AND::

        wb = WhereBuilder()
        wb.add("rule_name = ?", rule_name)
        wb.add("pattern_type = ?", pattern_type)
        where_sql, params = wb.build()
        conn.execute(f"SELECT * FROM t WHERE {where_sql}", params)
    """

    __slots__ = ("_clauses", "_params")

    def __init__(self) -> None:
        self._clauses: list[str] = []
        self._params: list[SQLParam] = []

    def add(self, clause: str, *params: SQLParam) -> None:
        self._clauses.append(clause)
        self._params.extend(params)

    def build(self) -> tuple[str, tuple[SQLParam, ...]]:
        """Return the combined WHERE fragment and parameter tuple.

        Returns ``("1=1", ())`` when no clauses have been added.
        """
        if not self._clauses:
            return "1=1", ()
        return " AND ".join(self._clauses), tuple(self._params)


def _is_busy_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def cutoff_timestamp(days: int | float) -> str:
    """ISO timestamp ``days`` before now, comparable with stored timestamps."""
    return (datetime.now() - timedelta(days=days)).isoformat()


class LearningStoreBase:
    """SQLite-based learning store base class.

    Provides persistent storage infrastructure shared by every learning
    component. Uses WAL mode so readers never block on the single writer.

    This base class handles:
    - Database connection lifecycle
    - Write serialization (in-process lock plus ``BEGIN IMMEDIATE``)
    - Schema version management and migration

    Attributes:
        db_path: Path to the SQLite database file.
        _logger: Module logger instance for consistent logging.
    """

    # Schema version - increment when schema changes
    # v2: A/B arm columns on execution_records
    # v3: optimization_id on parameter_changes, performance_impact on optimizations
    # v4: settings on optimizations
    SCHEMA_VERSION = 4

    # Columns added after initial table creation.
    # Format: {table_name: [(column_name, column_definition), ...]}
    _COLUMN_MIGRATIONS: dict[str, list[tuple[str, str]]] = {
        "execution_records": [
            ("ab_test_id", "TEXT"),
            ("ab_arm", "TEXT"),
        ],
        "parameter_changes": [
            ("optimization_id", "TEXT"),
        ],
        "optimizations": [
            ("performance_impact", "REAL"),
            ("settings", "TEXT"),
        ],
    }

    _TABLES = (
        "execution_records",
        "pattern_stats",
        "pattern_effectiveness",
        "parameters",
        "parameter_changes",
        "optimizations",
        "insights",
    )

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        busy_timeout_ms: int = 10000,
        max_retries: int = 3,
        retry_backoff_ms: int = 50,
    ) -> None:
        """Open (creating or migrating if needed) the learning database.

        Args:
            db_path: Path to the SQLite database file.
                    Defaults to ~/.hooklearn/learning.db
            busy_timeout_ms: SQLite busy timeout for every connection.
            max_retries: Retries for writes that hit a locked database.
            retry_backoff_ms: Linear backoff step between write retries.

        Raises:
            SchemaVersionError: If the database was written by a newer version.
            StoreInitializationError: If the database cannot be opened or migrated.
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self._logger = _logger
        self._busy_timeout_ms = busy_timeout_ms
        self._max_retries = max_retries
        self._retry_backoff_ms = retry_backoff_ms
        self._write_lock = threading.RLock()
        try:
            self._ensure_db_exists()
            self._migrate_if_needed()
        except SchemaVersionError:
            raise
        except (sqlite3.Error, OSError) as e:
            raise StoreInitializationError(
                f"cannot initialize learning store at {self.db_path}: {e}"
            ) from e

    @classmethod
    def from_config(cls: type[T], config: StoreConfig) -> T:
        """Construct a store from a StoreConfig."""
        return cls(  # type: ignore[call-arg]
            config.path,
            busy_timeout_ms=config.busy_timeout_ms,
            max_retries=config.max_retries,
            retry_backoff_ms=config.retry_backoff_ms,
        )

    def _ensure_db_exists(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper configuration.

        Commits on success, rolls back on error. A fresh connection is
        created per call.

        Yields:
            A configured sqlite3.Connection instance.
        """
        conn = sqlite3.connect(
            str(self.db_path), timeout=self._busy_timeout_ms / 1000
        )
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            conn.row_factory = sqlite3.Row
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            _logger.warning(
                "database_operation_failed",
                db_path=str(self.db_path),
                error_type=type(e).__name__,
                error=str(e),
            )
            raise
        finally:
            conn.close()

    def _execute_write(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``operation`` inside a serialized write transaction.

        Writers are serialized in-process by a lock and across processes by
        ``BEGIN IMMEDIATE``. A write that still hits a locked database is
        retried ``max_retries`` times with linear backoff.

        Raises:
            RecordingError: If the database stays locked through every retry.
        """
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._write_lock, self._get_connection() as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    return operation(conn)
            except sqlite3.OperationalError as e:
                if not _is_busy_error(e):
                    raise
                if attempt == attempts:
                    raise RecordingError(
                        f"database still locked after {attempts} attempts: {e}"
                    ) from e
                _logger.debug("write_retry", attempt=attempt, error=str(e))
                time.sleep(self._retry_backoff_ms * attempt / 1000)
        raise AssertionError("unreachable")

    def close(self) -> None:  # noqa: B027
        """Close any persistent resources.

        No-op: connections are managed per-operation via _get_connection().
        Exists so owners can unconditionally call ``store.close()``.
        """

    def get_schema_version(self) -> int:
        with self._get_connection() as conn:
            return self._read_schema_version(conn)

    @staticmethod
    def _read_schema_version(conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        except sqlite3.OperationalError:
            return 0
        return row["version"] if row else 0

    def _migrate_if_needed(self) -> None:
        """Create or migrate the database schema.

        Older databases are migrated forward in place; running the migration
        on an up-to-date database is a no-op.

        Raises:
            SchemaVersionError: If the on-disk version is newer than SCHEMA_VERSION.
        """
        with self._write_lock, self._get_connection() as conn:
            current_version = self._read_schema_version(conn)
            if current_version > self.SCHEMA_VERSION:
                raise SchemaVersionError(current_version, self.SCHEMA_VERSION)
            if current_version < self.SCHEMA_VERSION:
                # Columns first (for existing tables), then tables and indexes
                self._migrate_columns(conn)
                self._create_schema(conn)
                self._logger.info(
                    "schema_migrated",
                    from_version=current_version,
                    to_version=self.SCHEMA_VERSION,
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create all tables and indexes. Uses IF NOT EXISTS throughout."""
        self._create_schema_version_table(conn)
        self._create_execution_records_table(conn)
        self._create_pattern_stats_table(conn)
        self._create_pattern_effectiveness_table(conn)
        self._create_parameters_table(conn)
        self._create_parameter_changes_table(conn)
        self._create_optimizations_table(conn)
        self._create_insights_table(conn)

        conn.execute("DELETE FROM schema_version")
        conn.execute(
            "INSERT INTO schema_version (version, updated_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, datetime.now().isoformat()),
        )

    @staticmethod
    def _create_schema_version_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                updated_at TIMESTAMP
            )
        """)

    @staticmethod
    def _create_execution_records_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS execution_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_name TEXT NOT NULL,
                recorded_at TIMESTAMP NOT NULL,
                duration_ms REAL NOT NULL CHECK (duration_ms >= 0),
                success BOOLEAN NOT NULL,
                blocked BOOLEAN NOT NULL DEFAULT 0,
                file_path TEXT,
                file_extension TEXT,
                file_type TEXT,
                content_hash TEXT,
                content_size INTEGER DEFAULT 0,
                hour_of_day INTEGER,
                day_of_week INTEGER,
                error_message TEXT,
                parameters TEXT,
                ab_test_id TEXT,
                ab_arm TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_exec_rule "
            "ON execution_records(rule_name, id DESC)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_exec_recorded "
            "ON execution_records(recorded_at)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_exec_ab_test "
            "ON execution_records(ab_test_id)"
        )

    @staticmethod
    def _create_pattern_stats_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_stats (
                rule_name TEXT NOT NULL,
                pattern_type TEXT NOT NULL,
                pattern_value TEXT NOT NULL,
                total_count INTEGER NOT NULL DEFAULT 0,
                success_count INTEGER NOT NULL DEFAULT 0,
                block_count INTEGER NOT NULL DEFAULT 0,
                total_duration_ms REAL NOT NULL DEFAULT 0,
                first_seen TIMESTAMP,
                last_seen TIMESTAMP,
                PRIMARY KEY (rule_name, pattern_type, pattern_value)
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_pattern_stats_seen "
            "ON pattern_stats(rule_name, last_seen)"
        )

    @staticmethod
    def _create_pattern_effectiveness_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pattern_effectiveness (
                rule_name TEXT NOT NULL,
                pattern_type TEXT NOT NULL,
                pattern_key TEXT NOT NULL,
                true_positives INTEGER NOT NULL DEFAULT 0,
                false_positives INTEGER NOT NULL DEFAULT 0,
                true_negatives INTEGER NOT NULL DEFAULT 0,
                false_negatives INTEGER NOT NULL DEFAULT 0,
                first_seen TIMESTAMP,
                last_updated TIMESTAMP,
                PRIMARY KEY (rule_name, pattern_type, pattern_key)
            )
        """)

    @staticmethod
    def _create_parameters_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS parameters (
                rule_name TEXT NOT NULL,
                name TEXT NOT NULL,
                value TEXT NOT NULL,
                last_updated TIMESTAMP,
                PRIMARY KEY (rule_name, name)
            )
        """)

    @staticmethod
    def _create_parameter_changes_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS parameter_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                rule_name TEXT NOT NULL,
                parameter TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT,
                confidence REAL,
                reason TEXT,
                change_type TEXT NOT NULL,
                optimization_id TEXT,
                changed_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_changes_param "
            "ON parameter_changes(rule_name, parameter, changed_at)"
        )

    @staticmethod
    def _create_optimizations_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS optimizations (
                id TEXT PRIMARY KEY,
                rule_name TEXT NOT NULL,
                parameter TEXT NOT NULL,
                kind TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT,
                confidence REAL,
                reason TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                baseline TEXT,
                checkpoints TEXT,
                applied_at TIMESTAMP NOT NULL,
                concluded_at TIMESTAMP,
                success_rate_before REAL,
                success_rate_after REAL,
                performance_impact REAL,
                rollback_reason TEXT,
                settings TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_optimizations_status "
            "ON optimizations(rule_name, status)"
        )

    @staticmethod
    def _create_insights_table(conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS insights (
                id TEXT PRIMARY KEY,
                rule_name TEXT NOT NULL,
                kind TEXT NOT NULL,
                payload TEXT NOT NULL,
                confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
                applied BOOLEAN NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                applied_at TIMESTAMP
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_insights_pending "
            "ON insights(rule_name, applied, confidence)"
        )

    @staticmethod
    def _get_existing_columns(
        conn: sqlite3.Connection, table_name: str,
    ) -> set[str] | None:
        """Column names of a table, or None if the table does not exist yet."""
        cursor = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (table_name,),
        )
        if not cursor.fetchone():
            return None
        cursor = conn.execute(f"PRAGMA table_info({table_name})")
        return {row["name"] for row in cursor.fetchall()}

    def _migrate_columns(self, conn: sqlite3.Connection) -> None:
        """Add columns missing from tables created by an older schema.

        Only touches tables that already exist; new tables are handled by
        _create_schema which runs after this method.
        """
        for table_name, columns in self._COLUMN_MIGRATIONS.items():
            existing = self._get_existing_columns(conn, table_name)
            if existing is None:
                continue

            for column_name, column_def in columns:
                if column_name in existing:
                    continue
                try:
                    conn.execute(
                        f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}"
                    )
                    self._logger.info(
                        "column_added", table=table_name, column=column_name
                    )
                except sqlite3.OperationalError as e:
                    if "duplicate column name" not in str(e).lower():
                        raise

    def clear_all(self) -> None:
        """Delete every row from every table.

        WARNING: This is destructive and should only be used for testing.
        """
        def _clear(conn: sqlite3.Connection) -> None:
            for table in self._TABLES:
                conn.execute(f"DELETE FROM {table}")

        self._execute_write(_clear)
        _logger.warning("store_cleared", db_path=str(self.db_path))


__all__ = [
    "LearningStoreBase",
    "SQLParam",
    "WhereBuilder",
    "_logger",
    "cutoff_timestamp",
]
