"""hooklearn CLI - inspect what the learning system has recorded and tuned.

Package structure:
    cli/
    ├── __init__.py           # This file - app assembly
    ├── helpers.py            # Store access and shared options
    ├── output.py             # Rich formatting
    └── commands/
        ├── _stats.py         # stats, history, parameters
        ├── _patterns.py      # patterns, insights
        └── _maintenance.py   # rules, prune
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from pydantic import ValidationError

from hooklearn import __version__
from hooklearn.core.config import LogConfig
from hooklearn.core.logging import configure_logging

from .commands import history, insights, parameters, patterns, prune, rules, stats
from .output import console

# =============================================================================
# Typer app definition
# =============================================================================

app = typer.Typer(
    name="hooklearn",
    help="Inspect and maintain the hook learning store",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"hooklearn v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-L",
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="LEARNING_LOG_LEVEL",
        ),
    ] = "WARNING",
    log_format: Annotated[
        str,
        typer.Option(
            "--log-format",
            help="Log output format (console, json)",
            envvar="LEARNING_LOG_FORMAT",
        ),
    ] = "console",
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Path for log file output", envvar="LEARNING_LOG_FILE"),
    ] = None,
) -> None:
    """hooklearn - adaptive tuning for rule hooks."""
    try:
        log_config = LogConfig.model_validate(
            {"level": log_level, "format": log_format, "file_path": log_file}
        )
    except ValidationError as e:
        error = e.errors()[0]
        raise typer.BadParameter(f"log {error['loc'][0]}: {error['msg']}") from e
    configure_logging(
        level=log_config.level, format=log_config.format, file_path=log_config.file_path
    )


# =============================================================================
# Command registration
# =============================================================================

app.command()(stats)
app.command()(patterns)
app.command()(history)
app.command()(parameters)
app.command()(insights)
app.command()(rules)
app.command()(prune)


__all__ = ["app"]
