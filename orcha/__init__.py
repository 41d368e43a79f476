"""Workflow orchestration: command steps, placeholders, parallel levels, rollback and logging."""

__version__ = "2.0.0"