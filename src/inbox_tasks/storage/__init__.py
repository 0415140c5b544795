"""Persistence backends for emails and extracted tasks."""

from .sqlite import SqliteTaskStore

__all__ = ["SqliteTaskStore"]
