"""Snippet execution with runtime tracing and performance metrics."""

__version__ = "0.1.0"
