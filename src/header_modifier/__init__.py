"""Declarative HTTP request-header overrides with rule synchronization."""

__version__ = "0.1.0"
