"""Rich output formatting for the hooklearn CLI.

Centralizes the console, table builders and value formatters so every
command renders rates, timestamps and errors the same way.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal

from rich.console import Console
from rich.table import Table

# =============================================================================
# Shared console instance
# =============================================================================

console = Console()


# =============================================================================
# Formatters
# =============================================================================


def format_rate(rate: float | None) -> str:
    """Format a 0-1 rate as a percentage, or "-" when unknown."""
    if rate is None:
        return "-"
    return f"{rate * 100:.1f}%"


def rate_color(rate: float, good: float = 0.7, bad: float = 0.5) -> str:
    if rate >= good:
        return "green"
    if rate >= bad:
        return "yellow"
    return "red"


def format_timestamp(dt: datetime | None) -> str:
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def format_value(value: Any) -> str:
    """Format a parameter value; floats drop a trailing ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


# =============================================================================
# Table builders
# =============================================================================


def create_patterns_table(title: str = "Pattern Effectiveness") -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Pattern", style="cyan", no_wrap=False)
    table.add_column("Total", justify="right", width=7)
    table.add_column("Precision", justify="right", width=10)
    table.add_column("Recall", justify="right", width=8)
    table.add_column("FPR", justify="right", width=8)
    table.add_column("TP/FP/TN/FN", justify="right")
    return table


def create_history_table(title: str = "Optimization History") -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Applied", style="dim")
    table.add_column("Parameter", style="cyan")
    table.add_column("Kind")
    table.add_column("Change", justify="right")
    table.add_column("Status")
    table.add_column("Success", justify="right")
    table.add_column("Reason", style="dim")
    return table


def create_simple_table(show_header: bool = False) -> Table:
    """A table without box styling, for key-value listings."""
    return Table(show_header=show_header, box=None)


STATUS_COLORS: dict[str, str] = {
    "active": "blue",
    "accepted": "green",
    "rolled_back": "red",
}


# =============================================================================
# Output helpers
# =============================================================================


def print_json(data: Any, *, console_instance: Console | None = None) -> None:
    out = console_instance or console
    out.print_json(json.dumps(data, default=str))


def output_error(
    message: str,
    *,
    hints: list[str] | None = None,
    severity: Literal["error", "warning"] = "error",
    json_output: bool = False,
    console_instance: Console | None = None,
) -> None:
    """Output an error or warning with optional hints, or as JSON.

    Args:
        message: The message to display.
        hints: Suggestions for the user.
        severity: "error" (red) or "warning" (yellow).
        json_output: Print a structured dict instead of Rich markup.
        console_instance: Console to print to. Defaults to the module console.
    """
    out = console_instance or console
    if json_output:
        result: dict[str, Any] = {"success": False, "message": message}
        if hints:
            result["hints"] = hints
        print_json(result, console_instance=out)
        return

    color = "red" if severity == "error" else "yellow"
    label = "Error" if severity == "error" else "Warning"
    out.print(f"[{color}]{label}:[/{color}] {message}")
    if hints:
        out.print()
        out.print("[dim]Hints:[/dim]")
        for hint in hints:
            out.print(f"  - {hint}")


__all__ = [
    "STATUS_COLORS",
    "console",
    "create_history_table",
    "create_patterns_table",
    "create_simple_table",
    "format_rate",
    "format_timestamp",
    "format_value",
    "output_error",
    "print_json",
    "rate_color",
]
