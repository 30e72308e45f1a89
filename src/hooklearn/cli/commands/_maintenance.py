"""Store maintenance commands.

Commands:
- rules: List every rule with recorded executions
- prune: Delete execution records past the retention period
"""

from __future__ import annotations

from typing import Annotated

import typer

from ..helpers import DbOption, JsonOption, load_config, open_store
from ..output import console, print_json


def rules(
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """List rules with recorded executions."""
    store = open_store(db, json_output=json_output)
    names = store.list_rules()

    if json_output:
        print_json([
            {"rule_name": name, "executions": store.count_executions(name)}
            for name in names
        ])
        return

    if not names:
        console.print("[dim]No rules recorded yet.[/dim]")
        return
    for name in names:
        console.print(f"  [cyan]{name}[/cyan] [dim]({store.count_executions(name)} executions)[/dim]")


def prune(
    days: Annotated[
        int | None,
        typer.Option("--days", "-d", min=1, help="Retention period (default: LEARNING_RETENTION_DAYS)"),
    ] = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Delete execution records older than the retention period.

    Pattern counters, parameters and optimization history are kept.

    Examples:
        hooklearn prune
        hooklearn prune --days 7
    """
    retention = days or load_config().retention_days
    store = open_store(db, json_output=json_output)
    deleted = store.prune_executions(retention)

    if json_output:
        print_json({"deleted": deleted, "retention_days": retention})
        return
    console.print(
        f"Pruned [yellow]{deleted}[/yellow] execution records older than {retention} days."
    )
