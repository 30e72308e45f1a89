"""Rule statistics, optimization history and live parameters.

Commands:
- stats: Aggregate execution and learning statistics of a rule
- history: Recent optimizations and how they concluded
- parameters: Current parameter values and recent changes
"""

from __future__ import annotations

from typing import Annotated

import typer

from hooklearn.core.config import LearningConfig
from hooklearn.learning.orchestrator import LearningStatistics, OptimizationHistoryEntry

from ..helpers import DbOption, JsonOption, open_store
from ..output import (
    STATUS_COLORS,
    console,
    create_history_table,
    create_simple_table,
    format_rate,
    format_timestamp,
    format_value,
    print_json,
    rate_color,
)


def stats(
    rule: Annotated[str, typer.Argument(help="Rule name")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show execution and learning statistics for a rule.

    Examples:
        hooklearn stats no-secrets
        hooklearn stats no-secrets --json
    """
    store = open_store(db, json_output=json_output)
    expiration = LearningConfig.from_env().pattern_expiration_days
    summary = LearningStatistics.from_store(store, rule, pattern_expiration_days=expiration)
    execution_stats = store.get_execution_stats(rule)

    if json_output:
        data = summary.to_dict()
        data["block_rate"] = round(execution_stats.block_rate, 4)
        data["error_count"] = execution_stats.error_count
        print_json(data)
        return

    if summary.execution_count == 0:
        console.print(f"[dim]No executions recorded for {rule}.[/dim]")
        return

    console.print(f"[bold]Learning Statistics: {rule}[/bold]\n")
    table = create_simple_table()
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Executions", str(summary.execution_count))
    color = rate_color(summary.success_rate)
    table.add_row("Success rate", f"[{color}]{format_rate(summary.success_rate)}[/]")
    table.add_row("Block rate", format_rate(execution_stats.block_rate))
    table.add_row("Errors", str(execution_stats.error_count))
    table.add_row("Avg duration", f"{summary.avg_duration_ms:.1f}ms")
    table.add_row("Patterns learned", str(summary.patterns_learned))
    table.add_row("Insights", str(summary.insights_generated))
    table.add_row("Parameters", str(summary.active_parameters))
    console.print(table)


def history(
    rule: Annotated[str, typer.Argument(help="Rule name")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max optimizations to show")] = 10,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show recent optimizations of a rule and their outcome.

    Examples:
        hooklearn history no-secrets
        hooklearn history no-secrets --limit 25 --json
    """
    store = open_store(db, json_output=json_output)
    entries = [
        OptimizationHistoryEntry.from_record(record)
        for record in store.get_optimizations(rule, limit=limit)
    ]

    if json_output:
        print_json([
            {
                "id": e.optimization_id,
                "parameter": e.parameter,
                "kind": e.kind,
                "status": e.status,
                "old_value": e.old_value,
                "new_value": e.new_value,
                "applied_at": e.applied_at.isoformat(),
                "success_rate_before": e.success_rate_before,
                "success_rate_after": e.success_rate_after,
                "rollback_reason": e.rollback_reason,
            }
            for e in entries
        ])
        return

    if not entries:
        console.print(f"[dim]No optimizations recorded for {rule}.[/dim]")
        return

    table = create_history_table(f"Optimization History: {rule}")
    for e in entries:
        color = STATUS_COLORS.get(e.status, "white")
        table.add_row(
            format_timestamp(e.applied_at),
            e.parameter,
            e.kind,
            f"{format_value(e.old_value)} → {format_value(e.new_value)}",
            f"[{color}]{e.status}[/]",
            f"{format_rate(e.success_rate_before)} → {format_rate(e.success_rate_after)}",
            e.rollback_reason or "",
        )
    console.print(table)


def parameters(
    rule: Annotated[str, typer.Argument(help="Rule name")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the live parameter values of a rule and recent changes.

    Examples:
        hooklearn parameters no-secrets
    """
    store = open_store(db, json_output=json_output)
    values = store.get_parameters(rule)
    changes = store.get_parameter_changes(rule, limit=10)

    if json_output:
        print_json({
            "parameters": values,
            "recent_changes": [
                {
                    "parameter": c.parameter,
                    "old_value": c.old_value,
                    "new_value": c.new_value,
                    "change_type": c.change_type.value,
                    "reason": c.reason,
                    "changed_at": c.changed_at.isoformat(),
                }
                for c in changes
            ],
        })
        return

    if not values:
        console.print(f"[dim]No parameters stored for {rule}.[/dim]")
        return

    console.print(f"[bold]Parameters: {rule}[/bold]\n")
    table = create_simple_table(show_header=True)
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in values.items():
        table.add_row(name, format_value(value))
    console.print(table)

    if changes:
        console.print("\n[bold cyan]Recent changes[/bold cyan]")
        for c in changes:
            console.print(
                f"  {format_timestamp(c.changed_at)}  {c.parameter}: "
                f"{format_value(c.old_value)} → {format_value(c.new_value)} "
                f"[dim]({c.change_type.value}, {c.reason})[/dim]"
            )
