"""Persistence layer for sagaflow workflow instances."""

from __future__ import annotations

from typing import Optional

from ..config import SagaflowConfig, load_config
from .inmemory import InMemoryWorkflowStateRepository
from .models import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    WAITING_STATUSES,
    PersistentWorkflowResult,
    WorkflowInstanceState,
    WorkflowStateInfo,
    WorkflowStatus,
    can_transition,
)
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowStateRepository
from .sqlite import SQLiteWorkflowRepository

SQLITE_SCHEME = "sqlite://"
POSTGRES_SCHEMES = ("postgres://", "postgresql://")

_repository_instance: WorkflowStateRepository | None = None


def create_repository(database_url: Optional[str]) -> WorkflowStateRepository:
    """Build a repository for ``database_url``; in-memory when it is empty."""
    if not database_url:
        return InMemoryWorkflowStateRepository()
    if database_url.startswith(SQLITE_SCHEME):
        return SQLiteWorkflowRepository(database_url[len(SQLITE_SCHEME):])
    if database_url.startswith(POSTGRES_SCHEMES):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[SagaflowConfig] = None
) -> WorkflowStateRepository:
    """Return the process-wide repository, creating it on first use.

    Without arguments the URL comes from :func:`load_config`, which already
    honours ``SAGAFLOW_DATABASE_URL`` and ``DATABASE_URL``. Passing either
    argument replaces the cached repository.
    """
    global _repository_instance
    if _repository_instance is None or database_url is not None or config is not None:
        url = database_url or (config or load_config()).database_url
        _repository_instance = create_repository(url)
    return _repository_instance


__all__ = [
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "WAITING_STATUSES",
    "InMemoryWorkflowStateRepository",
    "PersistentWorkflowResult",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "WorkflowInstanceState",
    "WorkflowStateInfo",
    "WorkflowStateRepository",
    "WorkflowStatus",
    "can_transition",
    "create_repository",
    "get_repository",
]
