"""Persistence layer for nodeflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NodeflowConfig, load_config
from .base import RecordStore
from .inmemory import InMemoryWorkflowStore
from .sql import SQLWorkflowStore
from .store import WorkflowStore

_SQL_PREFIXES = (
    "sqlite://",
    "sqlite+aiosqlite://",
    "postgres://",
    "postgresql://",
    "postgresql+asyncpg://",
)

_store_instance: WorkflowStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[NodeflowConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``NODEFLOW_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("NODEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStore()
        return _store_instance

    if database_url.startswith(_SQL_PREFIXES):
        _store_instance = SQLWorkflowStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "InMemoryWorkflowStore",
    "RecordStore",
    "SQLWorkflowStore",
    "WorkflowStore",
    "get_store",
]
