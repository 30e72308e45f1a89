"""Pattern effectiveness and insight commands.

Commands:
- patterns: Confusion-matrix statistics per pattern key
- insights: Generated insights and whether they were applied
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from hooklearn.core.config import LearningConfig
from hooklearn.learning.effectiveness import PatternEffectivenessTracker

from ..helpers import DbOption, JsonOption, open_store
from ..output import (
    console,
    create_patterns_table,
    format_rate,
    format_timestamp,
    print_json,
    rate_color,
)


def patterns(
    rule: Annotated[str, typer.Argument(help="Rule name")],
    pattern_type: Annotated[
        str | None, typer.Option("--type", "-t", help="Only this pattern type")
    ] = None,
    problematic: Annotated[
        bool,
        typer.Option(
            "--problematic",
            "-p",
            help="Only patterns below the effectiveness threshold",
        ),
    ] = False,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show how often each pattern's decisions were correct.

    Examples:
        hooklearn patterns no-secrets
        hooklearn patterns no-secrets --type file_extension
        hooklearn patterns no-secrets --problematic --json
    """
    store = open_store(db, json_output=json_output)
    threshold = LearningConfig.from_env().adaptive.pattern_effectiveness_threshold
    tracker = PatternEffectivenessTracker(
        store, rule, effectiveness_threshold=threshold
    )
    rows = tracker.get_problematic_patterns() if problematic else tracker.get_pattern_stats()
    if pattern_type is not None:
        rows = [r for r in rows if r.pattern_type == pattern_type]

    if json_output:
        print_json([r.to_dict() for r in rows])
        return

    if not rows:
        console.print(f"[dim]No pattern effectiveness data for {rule}.[/dim]")
        return

    title = "Problematic Patterns" if problematic else "Pattern Effectiveness"
    table = create_patterns_table(f"{title}: {rule}")
    for r in rows:
        color = rate_color(r.precision)
        table.add_row(
            r.pattern_id,
            str(r.total),
            f"[{color}]{format_rate(r.precision)}[/]",
            format_rate(r.recall),
            format_rate(r.false_positive_rate),
            f"{r.true_positives}/{r.false_positives}/{r.true_negatives}/{r.false_negatives}",
        )
    console.print(table)
    if problematic:
        console.print(f"\n[dim]Threshold: {threshold:.2f}[/dim]")


def insights(
    rule: Annotated[str, typer.Argument(help="Rule name")],
    pending: Annotated[
        bool, typer.Option("--pending", help="Only insights not yet applied")
    ] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max insights to show")] = 20,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show insights generated from a rule's executions.

    Examples:
        hooklearn insights no-secrets
        hooklearn insights no-secrets --pending
    """
    store = open_store(db, json_output=json_output)
    found = store.get_insights(rule, applied=False if pending else None, limit=limit)

    if json_output:
        print_json([
            {
                "id": i.id,
                "kind": i.kind.value,
                "confidence": round(i.confidence, 3),
                "applied": i.applied,
                "created_at": i.created_at.isoformat(),
                "payload": i.payload_dict(),
            }
            for i in found
        ])
        return

    if not found:
        console.print(f"[dim]No insights for {rule}.[/dim]")
        return

    table = Table(title=f"Insights: {rule}", show_header=True, header_style="bold")
    table.add_column("Created", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Confidence", justify="right")
    table.add_column("Applied", justify="center")
    table.add_column("Details")
    for i in found:
        details = ", ".join(f"{k}={v}" for k, v in i.payload_dict().items())
        table.add_row(
            format_timestamp(i.created_at),
            i.kind.value,
            f"{i.confidence:.2f}",
            "[green]yes[/green]" if i.applied else "[yellow]no[/yellow]",
            details[:80] + "..." if len(details) > 80 else details,
        )
    console.print(table)
