"""Tests for the hooklearn CLI."""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from typer.testing import CliRunner

from hooklearn import __version__
from hooklearn.cli import app
from hooklearn.learning.store import (
    ChangeType,
    DecisionOutcome,
    Insight,
    InsightKind,
    LearningStore,
    TimeoutOptimizationPayload,
)
from tests.helpers import record_runs

runner = CliRunner()


@pytest.fixture
def populated_db(db_path: Path) -> Path:
    """A database with executions, patterns, a parameter change and an insight."""
    store = LearningStore(db_path)
    record_runs(store, "no-secrets", 8, success_rate=0.75, duration_ms=120.0, blocked=True)
    record_runs(store, "no-console", 2)
    store.ensure_parameter("no-secrets", "timeout_ms", 3000.0)
    store.apply_parameter_change(
        "no-secrets", "timeout_ms", 3000.0, 2400.0, confidence=0.8, reason="timeout_optimization"
    )
    patterns = [("file_extension", ".py")]
    for _ in range(3):
        store.increment_effectiveness("no-secrets", patterns, DecisionOutcome.TRUE_POSITIVE)
    store.increment_effectiveness("no-secrets", patterns, DecisionOutcome.FALSE_POSITIVE)
    store.save_insight(
        Insight(
            rule_name="no-secrets",
            kind=InsightKind.TIMEOUT_OPTIMIZATION,
            payload=TimeoutOptimizationPayload(
                current_timeout_ms=3000.0,
                recommended_timeout_ms=2400.0,
                p99_ms=600.0,
                mean_ms=500.0,
                stddev_ms=50.0,
                sample_size=60,
            ),
            confidence=0.8,
        )
    )
    store.close()
    return db_path


# =============================================================================
# App-level options
# =============================================================================


class TestAppOptions:
    """Tests for global options."""

    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_invalid_log_level(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["--log-level", "loud", "rules", "--db", str(populated_db)])
        assert result.exit_code != 0

    def test_log_settings_from_environment(self, populated_db: Path, tmp_path: Path) -> None:
        log_file = tmp_path / "cli.log"
        result = runner.invoke(
            app,
            ["rules", "--db", str(populated_db)],
            env={
                "LEARNING_LOG_LEVEL": "debug",
                "LEARNING_LOG_FORMAT": "json",
                "LEARNING_LOG_FILE": str(log_file),
            },
        )
        assert result.exit_code == 0
        assert logging.getLogger().level == logging.DEBUG
        assert log_file.exists()

    def test_invalid_log_format(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["--log-format", "xml", "rules", "--db", str(populated_db)])
        assert result.exit_code != 0

    def test_missing_database(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["stats", "no-secrets", "--db", str(tmp_path / "none.db")])
        assert result.exit_code == 1
        assert "No learning database" in result.stdout

    def test_missing_database_json(self, tmp_path: Path) -> None:
        result = runner.invoke(
            app, ["stats", "no-secrets", "--db", str(tmp_path / "none.db"), "--json"]
        )
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is False
        assert data["hints"]


# =============================================================================
# stats / history / parameters
# =============================================================================


class TestStats:
    """Tests for the stats command."""

    def test_json(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["stats", "no-secrets", "--db", str(populated_db), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["rule_name"] == "no-secrets"
        assert data["execution_count"] == 8
        assert data["success_rate"] == 0.75
        assert data["block_rate"] == 1.0
        assert data["error_count"] == 2
        assert data["active_parameters"] == 1

    def test_table(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["stats", "no-secrets", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "Learning Statistics: no-secrets" in result.stdout
        assert "75.0%" in result.stdout

    def test_unknown_rule(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["stats", "ghost", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "No executions recorded for ghost" in result.stdout


class TestParameters:
    """Tests for the parameters command."""

    def test_json(self, populated_db: Path) -> None:
        result = runner.invoke(
            app, ["parameters", "no-secrets", "--db", str(populated_db), "--json"]
        )

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["parameters"] == {"timeout_ms": 2400.0}
        change = data["recent_changes"][0]
        assert change["change_type"] == ChangeType.APPLIED.value
        assert change["old_value"] == 3000.0
        assert change["new_value"] == 2400.0

    def test_table(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["parameters", "no-secrets", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "timeout_ms" in result.stdout
        assert "2400" in result.stdout


class TestHistory:
    """Tests for the history command."""

    def test_empty(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["history", "no-secrets", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "No optimizations recorded" in result.stdout

    def test_empty_json(self, populated_db: Path) -> None:
        result = runner.invoke(
            app, ["history", "no-secrets", "--db", str(populated_db), "--json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == []


# =============================================================================
# patterns / insights
# =============================================================================


class TestPatterns:
    """Tests for the patterns command."""

    def test_json(self, populated_db: Path) -> None:
        result = runner.invoke(
            app, ["patterns", "no-secrets", "--db", str(populated_db), "--json"]
        )

        assert result.exit_code == 0
        [row] = json.loads(result.stdout)
        assert row["pattern_key"] == ".py"
        assert row["tp"] == 3
        assert row["fp"] == 1
        assert row["precision"] == 0.75

    def test_type_filter(self, populated_db: Path) -> None:
        result = runner.invoke(
            app,
            ["patterns", "no-secrets", "--type", "directory", "--db", str(populated_db), "--json"],
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_problematic_needs_enough_observations(self, populated_db: Path) -> None:
        result = runner.invoke(
            app, ["patterns", "no-secrets", "--problematic", "--db", str(populated_db), "--json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_table(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["patterns", "no-secrets", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "Pattern Effectiveness: no-secrets" in result.stdout


class TestInsights:
    """Tests for the insights command."""

    def test_json(self, populated_db: Path) -> None:
        result = runner.invoke(
            app, ["insights", "no-secrets", "--pending", "--db", str(populated_db), "--json"]
        )

        assert result.exit_code == 0
        [insight] = json.loads(result.stdout)
        assert insight["kind"] == "timeout_optimization"
        assert insight["applied"] is False
        assert insight["payload"]["recommended_timeout_ms"] == 2400.0

    def test_none_for_other_rule(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["insights", "no-console", "--db", str(populated_db)])

        assert result.exit_code == 0
        assert "No insights for no-console" in result.stdout


# =============================================================================
# rules / prune
# =============================================================================


class TestMaintenance:
    """Tests for rules and prune."""

    def test_rules_json(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["rules", "--db", str(populated_db), "--json"])

        assert result.exit_code == 0
        data = {row["rule_name"]: row["executions"] for row in json.loads(result.stdout)}
        assert data == {"no-secrets": 8, "no-console": 2}

    def test_prune(self, db_path: Path) -> None:
        store = LearningStore(db_path)
        store.record_execution(
            "no-secrets",
            duration_ms=10.0,
            success=True,
            recorded_at=datetime.now() - timedelta(days=40),
        )
        store.record_execution("no-secrets", duration_ms=10.0, success=True)
        store.close()

        result = runner.invoke(app, ["prune", "--days", "7", "--db", str(db_path), "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"deleted": 1, "retention_days": 7}
        reopened = LearningStore(db_path)
        assert reopened.count_executions("no-secrets") == 1

    def test_prune_rejects_zero_days(self, populated_db: Path) -> None:
        result = runner.invoke(app, ["prune", "--days", "0", "--db", str(populated_db)])
        assert result.exit_code != 0
