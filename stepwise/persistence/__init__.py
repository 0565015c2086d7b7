"""Persistence layer for the action log."""

from __future__ import annotations

from typing import Optional

from ..config import StepwiseConfig, load_config
from .inmemory import InMemoryActionLogStore
from .postgres import PostgresActionLogStore
from .sqlite import SQLiteActionLogStore
from .store import ANY_TOKEN, ActionLogStore, BaseActionLogStore

_store_instance: ActionLogStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[StepwiseConfig] = None
) -> ActionLogStore:
    """Factory function to obtain an action log store.

    The backend is selected based on ``database_url`` when given, otherwise
    on the configuration's ``database_url`` (which ``load_config`` already
    overrides from ``STEPWISE_DATABASE_URL`` / ``DATABASE_URL``). When no
    database is configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _store_instance = InMemoryActionLogStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteActionLogStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresActionLogStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "ANY_TOKEN",
    "ActionLogStore",
    "BaseActionLogStore",
    "InMemoryActionLogStore",
    "SQLiteActionLogStore",
    "PostgresActionLogStore",
    "get_store",
]
