"""Core configuration, logging and error types."""

from hooklearn.core.config import (
    AdaptiveConfig,
    DecisionCacheConfig,
    LearningConfig,
    LogConfig,
    MonitorConfig,
    StoreConfig,
)
from hooklearn.core.errors import (
    ExperimentError,
    LearningError,
    ParameterValidationError,
    RecordingError,
    RollbackError,
    SchemaVersionError,
    StoreError,
    StoreInitializationError,
)

__all__ = [
    "AdaptiveConfig",
    "DecisionCacheConfig",
    "ExperimentError",
    "LearningConfig",
    "LearningError",
    "LogConfig",
    "MonitorConfig",
    "ParameterValidationError",
    "RecordingError",
    "RollbackError",
    "SchemaVersionError",
    "StoreConfig",
    "StoreError",
    "StoreInitializationError",
]
