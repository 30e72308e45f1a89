"""Tests for hooklearn.core.config."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from hooklearn.core.config import (
    AdaptiveConfig,
    LearningConfig,
    LogConfig,
    MonitorConfig,
    parse_duration,
)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (90, 90.0),
            (1.5, 1.5),
            ("3600", 3600.0),
            ("500ms", 0.5),
            ("30s", 30.0),
            ("90m", 5400.0),
            ("1h", 3600.0),
            ("7d", 604800.0),
            (" 2H ", 7200.0),
        ],
    )
    def test_accepted_forms(self, value: object, expected: float) -> None:
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["soon", "1w", "", "-5s", True])
    def test_rejected_forms(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestDefaults:
    """The documented defaults."""

    def test_learning_defaults(self) -> None:
        config = LearningConfig()
        assert config.enabled is True
        assert config.min_executions_for_patterns == 10
        assert config.min_confidence_for_insights == 0.7
        assert config.optimization_interval == 50
        assert config.async_operations is True
        assert config.store.path.name == "learning.db"

    def test_adaptive_defaults(self) -> None:
        adaptive = AdaptiveConfig()
        assert adaptive.max_parameter_change_rate == 0.2
        assert adaptive.optimization_cooldown_seconds == 3600.0
        assert adaptive.rollback_threshold == 0.15
        assert adaptive.pattern_effectiveness_threshold == 0.7
        assert adaptive.min_timeout_change_ms == 50.0

    def test_monitor_defaults(self) -> None:
        monitor = MonitorConfig()
        assert monitor.check_interval_seconds == 60.0
        assert monitor.evaluation_window_seconds == 3600.0
        assert monitor.metrics_window == 100


class TestValidation:
    """Field constraints and cross-field checks."""

    def test_change_rate_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            AdaptiveConfig(max_parameter_change_rate=0)

    def test_change_rate_capped_at_one(self) -> None:
        with pytest.raises(ValidationError):
            AdaptiveConfig(max_parameter_change_rate=1.5)

    def test_confidence_bounds(self) -> None:
        with pytest.raises(ValidationError):
            LearningConfig(min_confidence_for_insights=1.2)

    def test_cooldown_accepts_duration_strings(self) -> None:
        assert AdaptiveConfig(optimization_cooldown_seconds="90m").optimization_cooldown_seconds == 5400.0

    def test_check_interval_cannot_exceed_window(self) -> None:
        with pytest.raises(ValidationError, match="check_interval_seconds"):
            LearningConfig(monitor={"check_interval_seconds": 7200, "evaluation_window_seconds": 3600})

    def test_log_level_normalized(self) -> None:
        assert LogConfig(level="debug").level == "DEBUG"


class TestFromEnv:
    """Tests for LearningConfig.from_env."""

    def test_empty_environment_gives_defaults(self) -> None:
        assert LearningConfig.from_env({}) == LearningConfig()

    def test_reads_recognized_variables(self, tmp_path: Path) -> None:
        config = LearningConfig.from_env({
            "LEARNING_ENABLED": "false",
            "LEARNING_DB_PATH": str(tmp_path / "x.db"),
            "LEARNING_MIN_EXECUTIONS": "25",
            "LEARNING_MIN_CONFIDENCE": "0.8",
            "MAX_PARAMETER_CHANGE_RATE": "0.1",
            "OPTIMIZATION_COOLDOWN": "30m",
            "ROLLBACK_THRESHOLD": "0.25",
            "PATTERN_EFFECTIVENESS_THRESHOLD": "0.6",
            "LEARNING_LOG_LEVEL": "info",
            "LEARNING_LOG_CONFIGURE": "true",
        })
        assert config.enabled is False
        assert config.store.path == tmp_path / "x.db"
        assert config.min_executions_for_patterns == 25
        assert config.min_confidence_for_insights == 0.8
        assert config.adaptive.max_parameter_change_rate == 0.1
        assert config.adaptive.optimization_cooldown_seconds == 1800.0
        assert config.adaptive.rollback_threshold == 0.25
        assert config.adaptive.pattern_effectiveness_threshold == 0.6
        assert config.logging.level == "INFO"
        assert config.logging.configure is True

    def test_bare_cooldown_number_means_seconds(self) -> None:
        config = LearningConfig.from_env({"OPTIMIZATION_COOLDOWN": "120"})
        assert config.adaptive.optimization_cooldown_seconds == 120.0

    def test_blank_values_are_ignored(self) -> None:
        config = LearningConfig.from_env({"ROLLBACK_THRESHOLD": ""})
        assert config.adaptive.rollback_threshold == 0.15

    def test_invalid_value_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LearningConfig.from_env({"MAX_PARAMETER_CHANGE_RATE": "lots"})


class TestFromYaml:
    """Tests for LearningConfig.from_yaml."""

    def test_nested_sections(self, tmp_path: Path) -> None:
        path = tmp_path / "learning.yaml"
        path.write_text(
            "optimization_interval: 20\n"
            "adaptive:\n"
            "  optimization_cooldown_seconds: 2h\n"
            "monitor:\n"
            "  check_interval_seconds: 30s\n"
        )
        config = LearningConfig.from_yaml(path)
        assert config.optimization_interval == 20
        assert config.adaptive.optimization_cooldown_seconds == 7200.0
        assert config.monitor.check_interval_seconds == 30.0

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert LearningConfig.from_yaml(path) == LearningConfig()
