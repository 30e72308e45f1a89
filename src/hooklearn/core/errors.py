"""Exception hierarchy for hooklearn.

All learning-subsystem exceptions inherit from LearningError, so the
orchestrator can contain every learning failure with a single except clause
while letting the wrapped rule's own exceptions through untouched.
"""

from __future__ import annotations


class LearningError(Exception):
    """Base exception for all learning-subsystem errors."""


class StoreError(LearningError):
    """Raised when the persistent store cannot complete an operation."""


class StoreInitializationError(StoreError):
    """Raised when the store cannot be opened, created or migrated.

    The orchestrator reacts by disabling learning for its lifetime.
    """


class SchemaVersionError(StoreInitializationError):
    """Raised when the on-disk schema is newer than this code understands."""

    def __init__(self, found: int, supported: int) -> None:
        self.found = found
        self.supported = supported
        super().__init__(
            f"database schema version {found} is newer than supported version {supported}"
        )


class RecordingError(StoreError):
    """Raised when a write keeps failing after the bounded retry budget."""


class ParameterValidationError(LearningError, ValueError):
    """Raised when a parameter value violates its declared type, range or choices."""

    def __init__(self, parameter: str, value: object, reason: str) -> None:
        self.parameter = parameter
        self.value = value
        self.reason = reason
        super().__init__(f"invalid value {value!r} for parameter {parameter!r}: {reason}")


class RollbackError(LearningError):
    """Raised when neither the pre-change nor the last known-good value can be restored.

    Leaves a live parameter in an unvalidated state.
    """


class ExperimentError(LearningError):
    """Raised for invalid A/B test requests, e.g. a test already running for a parameter."""


__all__ = [
    "ExperimentError",
    "LearningError",
    "ParameterValidationError",
    "RecordingError",
    "RollbackError",
    "SchemaVersionError",
    "StoreError",
    "StoreInitializationError",
]
