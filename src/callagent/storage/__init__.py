"""Persistence for calls, participant links and availability submissions."""

from callagent.storage.calls import CallStore, PostgresCallStore, TokenConflictError

__all__ = ["CallStore", "PostgresCallStore", "TokenConflictError"]
