"""Shared helpers for CLI commands: store access and option types."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from hooklearn.core.config import LearningConfig
from hooklearn.core.errors import StoreError
from hooklearn.learning.store import LearningStore

from .output import output_error

DbOption = Annotated[
    Path | None,
    typer.Option(
        "--db",
        help="Learning database path (default: LEARNING_DB_PATH or ~/.hooklearn/learning.db)",
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", "-j", help="Output as JSON for machine parsing"),
]


def load_config() -> LearningConfig:
    """Configuration from the process environment."""
    return LearningConfig.from_env()


def open_store(db: Path | None, *, json_output: bool = False) -> LearningStore:
    """Open the learning store, exiting with status 1 if it is unusable."""
    config = load_config().store
    if db is not None:
        config = config.model_copy(update={"path": db})
    if not config.path.exists():
        output_error(
            f"No learning database at {config.path}",
            hints=["Pass --db or set LEARNING_DB_PATH"],
            json_output=json_output,
        )
        raise typer.Exit(1)
    try:
        return LearningStore.from_config(config)
    except StoreError as e:
        output_error(str(e), json_output=json_output)
        raise typer.Exit(1) from e
