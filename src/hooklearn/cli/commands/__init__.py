"""Command implementations for the hooklearn CLI.

- _stats: stats, history, parameters
- _patterns: patterns, insights
- _maintenance: rules, prune
"""

from hooklearn.cli.commands._maintenance import prune, rules
from hooklearn.cli.commands._patterns import insights, patterns
from hooklearn.cli.commands._stats import history, parameters, stats

__all__ = [
    "history",
    "insights",
    "parameters",
    "patterns",
    "prune",
    "rules",
    "stats",
]
