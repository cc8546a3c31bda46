"""AI-gated task automation pipeline for a coach hire booking marketplace."""

__version__ = "0.1.0"
