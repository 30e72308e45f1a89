"""hooklearn - adaptive parameter tuning and pattern-effectiveness feedback for rule hooks."""

__version__ = "0.4.0"

__all__ = ["__version__"]
