"""Persistence layer for flowledger definitions, runs and events."""

from __future__ import annotations

import os
from typing import Optional, Union

from ..config import FlowLedgerConfig, load_config
from ..errors import ConfigurationError
from .inmemory import InMemoryWorkflowStore
from .postgres import PostgresWorkflowStore
from .repository import (
    DefinitionLifecycleMixin,
    DefinitionRepository,
    EventRepository,
    RunRepository,
)
from .sqlite import SQLiteWorkflowStore

WorkflowStore = Union[InMemoryWorkflowStore, SQLiteWorkflowStore, PostgresWorkflowStore]

_repository_instance: WorkflowStore | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowLedgerConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWLEDGER_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWLEDGER_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowStore()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteWorkflowStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        _repository_instance = PostgresWorkflowStore(database_url)
    else:
        raise ConfigurationError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "DefinitionLifecycleMixin",
    "DefinitionRepository",
    "EventRepository",
    "RunRepository",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "WorkflowStore",
    "get_repository",
]
