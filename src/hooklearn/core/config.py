"""Configuration models for the learning subsystem.

All settings are pydantic models with validated ranges. A configuration can
be built from defaults, a YAML file, or the process environment:

    config = LearningConfig()                         # defaults
    config = LearningConfig.from_yaml(Path("learning.yaml"))
    config = LearningConfig.from_env()                # LEARNING_* variables
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_DB_PATH = Path.home() / ".hooklearn" / "learning.db"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: Any) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and strings such as ``"90"``, ``"500ms"``,
    ``"30m"``, ``"1h"`` or ``"7d"``.

    Raises:
        ValueError: If the value cannot be interpreted as a duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if match is None:
        raise ValueError(f"not a duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[(unit or "s").lower()]


class StoreConfig(BaseModel):
    """SQLite store location and write-contention handling."""

    path: Path = Field(
        default=DEFAULT_DB_PATH,
        description="Path to the SQLite learning database",
    )
    busy_timeout_ms: int = Field(
        default=10000,
        ge=0,
        description="SQLite busy timeout applied to every connection (ms)",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Retries for a write that fails with 'database is locked'",
    )
    retry_backoff_ms: int = Field(
        default=50,
        ge=0,
        description="Linear backoff step between write retries (ms)",
    )


class DecisionCacheConfig(BaseModel):
    """Bounds for the in-flight decision cache of the effectiveness tracker."""

    max_size: int = Field(
        default=1000,
        ge=1,
        description="Maximum cached decisions. The oldest entry is evicted first.",
    )
    ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Cached decisions older than this can no longer be validated",
    )


class AdaptiveConfig(BaseModel):
    """Settings for the adaptive parameter system."""

    enabled: bool = Field(
        default=True,
        description="Allow the system to change parameters. When disabled, only observes.",
    )
    max_parameter_change_rate: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="Largest fraction of the current value a single change may move",
    )
    optimization_cooldown_seconds: float = Field(
        default=3600.0,
        ge=0.0,
        description="Minimum time between two applied changes of the same parameter",
    )
    min_executions_for_optimization: int = Field(
        default=50,
        ge=1,
        description="Executions required before any optimization is attempted",
    )
    rollback_threshold: float = Field(
        default=0.15,
        gt=0.0,
        le=1.0,
        description="Regression beyond this fraction triggers an automatic rollback",
    )
    pattern_effectiveness_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Precision/recall below this marks a pattern as problematic",
    )
    default_timeout_ms: float = Field(
        default=3000.0,
        gt=0,
        description="Initial timeout for a rule that has never been tuned",
    )
    min_timeout_ms: float = Field(
        default=1000.0,
        gt=0,
        description="Timeout candidates are never computed below this floor",
    )
    min_timeout_change_ms: float = Field(
        default=50.0,
        ge=0,
        description="Timeout steps smaller than this are rejected as churn",
    )
    ab_test_min_executions: int = Field(
        default=50,
        ge=1,
        description="Executions each A/B arm needs before the test can conclude",
    )
    ab_test_duration_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="A/B tests conclude once this much time has elapsed",
    )

    @field_validator("optimization_cooldown_seconds", "ab_test_duration_seconds", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)


class MonitorConfig(BaseModel):
    """Settings for the feedback loop monitor."""

    check_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Interval between checkpoint evaluations of a monitored change",
    )
    evaluation_window_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Time after which a monitored change receives its final evaluation",
    )
    metrics_window: int = Field(
        default=100,
        ge=1,
        description="Number of most recent executions used for baseline and checkpoints",
    )
    early_accept_checkpoints: int = Field(
        default=3,
        ge=1,
        description="Improving checkpoints required before accepting early",
    )
    trend_min_checkpoints: int = Field(
        default=5,
        ge=2,
        description="Checkpoints required before the success trend can rescue a change",
    )
    min_checkpoint_executions: int = Field(
        default=10,
        ge=1,
        description="Post-change executions required before a checkpoint is judged",
    )

    @field_validator("check_interval_seconds", "evaluation_window_seconds", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console"] = Field(
        default="console",
        description="Output format: json for structured, console for human-readable",
    )
    file_path: Path | None = Field(
        default=None,
        description="Optional rotating log file",
    )
    configure: bool = Field(
        default=False,
        description=(
            "Apply these settings to process-wide logging when an orchestrator "
            "initializes. Off by default because the host usually owns logging."
        ),
    )

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class LearningConfig(BaseModel):
    """Top-level configuration for a learning orchestrator."""

    enabled: bool = Field(
        default=True,
        description="Master switch. When disabled, rules run without any recording.",
    )
    store: StoreConfig = Field(default_factory=StoreConfig)
    min_executions_for_patterns: int = Field(
        default=10,
        ge=1,
        description="Executions required before the analyzer produces a report",
    )
    min_confidence_for_insights: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Insights below this confidence are stored but never acted on",
    )
    max_patterns_per_rule: int = Field(
        default=100,
        ge=1,
        description="Upper bound on pattern rows returned per query",
    )
    pattern_expiration_days: int = Field(
        default=30,
        ge=1,
        description="Pattern stats not seen for this long are treated as expired",
    )
    retention_days: int = Field(
        default=30,
        ge=1,
        description="Execution records older than this are eligible for pruning",
    )
    analysis_window: int = Field(
        default=1000,
        ge=10,
        description="Number of most recent executions read by the analyzer",
    )
    async_operations: bool = Field(
        default=True,
        description="Run learning work in background tasks instead of inline",
    )
    optimization_interval: int = Field(
        default=50,
        ge=1,
        description="Run an optimization cycle once every N executions",
    )
    enforce_timeout: bool = Field(
        default=False,
        description="Cancel async rules that exceed the tuned timeout_ms parameter",
    )
    decision_cache: DecisionCacheConfig = Field(default_factory=DecisionCacheConfig)
    adaptive: AdaptiveConfig = Field(default_factory=AdaptiveConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    logging: LogConfig = Field(default_factory=LogConfig)

    @model_validator(mode="after")
    def _check_windows(self) -> LearningConfig:
        if self.monitor.check_interval_seconds > self.monitor.evaluation_window_seconds:
            raise ValueError(
                f"monitor.check_interval_seconds ({self.monitor.check_interval_seconds}) "
                f"must not exceed evaluation_window_seconds "
                f"({self.monitor.evaluation_window_seconds})"
            )
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> LearningConfig:
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> LearningConfig:
        """Build configuration from environment variables.

        Unset variables keep their defaults. Values are validated by the
        same field constraints as YAML input.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for var, dotted in ENV_VARS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            target = data
            *parents, leaf = dotted.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = raw
        return cls.model_validate(data)


# Environment variable -> dotted config field
ENV_VARS: dict[str, str] = {
    "LEARNING_ENABLED": "enabled",
    "LEARNING_DB_PATH": "store.path",
    "LEARNING_DB_BUSY_TIMEOUT": "store.busy_timeout_ms",
    "LEARNING_DB_RETRIES": "store.max_retries",
    "LEARNING_MIN_EXECUTIONS": "min_executions_for_patterns",
    "LEARNING_MIN_CONFIDENCE": "min_confidence_for_insights",
    "LEARNING_MAX_PATTERNS": "max_patterns_per_rule",
    "LEARNING_PATTERN_EXPIRATION": "pattern_expiration_days",
    "LEARNING_RETENTION_DAYS": "retention_days",
    "LEARNING_ASYNC": "async_operations",
    "LEARNING_OPTIMIZATION_INTERVAL": "optimization_interval",
    "LEARNING_DECISION_CACHE_SIZE": "decision_cache.max_size",
    "ADAPTIVE_LEARNING_ENABLED": "adaptive.enabled",
    "MAX_PARAMETER_CHANGE_RATE": "adaptive.max_parameter_change_rate",
    "OPTIMIZATION_COOLDOWN": "adaptive.optimization_cooldown_seconds",
    "MIN_EXECUTIONS_FOR_OPTIMIZATION": "adaptive.min_executions_for_optimization",
    "ROLLBACK_THRESHOLD": "adaptive.rollback_threshold",
    "PATTERN_EFFECTIVENESS_THRESHOLD": "adaptive.pattern_effectiveness_threshold",
    "LEARNING_CHECK_INTERVAL": "monitor.check_interval_seconds",
    "LEARNING_EVALUATION_WINDOW": "monitor.evaluation_window_seconds",
    "LEARNING_LOG_LEVEL": "logging.level",
    "LEARNING_LOG_FORMAT": "logging.format",
    "LEARNING_LOG_FILE": "logging.file_path",
    "LEARNING_LOG_CONFIGURE": "logging.configure",
}


__all__ = [
    "AdaptiveConfig",
    "DEFAULT_DB_PATH",
    "DecisionCacheConfig",
    "ENV_VARS",
    "LearningConfig",
    "LogConfig",
    "MonitorConfig",
    "StoreConfig",
    "parse_duration",
]
