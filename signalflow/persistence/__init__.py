"""Persistence layer for signalflow workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SignalflowConfig, load_config
from .inmemory import InMemoryWorkflowStore
from .models import (
    NIL_UUID,
    TRIGGER_STEP_INDEX,
    ExecutionRecord,
    ExecutionSummary,
    WorkflowRecord,
    WorkflowStateRecord,
)
from .postgres import PostgresWorkflowStore
from .repository import WorkflowStore
from .sqlite import SQLiteWorkflowStore

_store_instance: WorkflowStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[SignalflowConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``SIGNALFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SIGNALFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStore()
        return _store_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _store_instance = SQLiteWorkflowStore(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _store_instance = PostgresWorkflowStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "NIL_UUID",
    "TRIGGER_STEP_INDEX",
    "ExecutionRecord",
    "ExecutionSummary",
    "WorkflowRecord",
    "WorkflowStateRecord",
    "WorkflowStore",
    "InMemoryWorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "get_store",
]
