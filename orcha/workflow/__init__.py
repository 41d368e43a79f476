"""Workflow model, sequential engine, parallel executor and rollback orchestration."""

__all__ = ["model", "engine", "rollback", "parallel"]