"""Pytest fixtures for hooklearn tests."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from hooklearn.core.config import LearningConfig
from hooklearn.learning.store import LearningStore


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog and root handlers around each test."""
    structlog.reset_defaults()
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "learning.db"


@pytest.fixture
def store(db_path: Path) -> LearningStore:
    """A LearningStore on a fresh temporary database."""
    return LearningStore(db_path)


@pytest.fixture
def config(db_path: Path) -> LearningConfig:
    """Configuration with the production defaults, pointed at the temp database."""
    return LearningConfig.model_validate({"store": {"path": str(db_path)}})
