"""On-demand image resize proxy with a SQLite-backed cache."""

__version__ = "1.0.0"
