"""Persistence layer for opsflow definitions, runs and inbound events."""

from __future__ import annotations

from typing import Optional

from ..config import OpsflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import RunClaimMixin, WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[OpsflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a workflow repository.

    The backend is selected from ``database_url`` when given, otherwise from
    the loaded configuration (which already honours ``OPSFLOW_DATABASE_URL``
    and ``DATABASE_URL``). Without a database an in-memory repository is
    returned.
    """
    if database_url is None:
        config = config or load_config()
        database_url = config.database_url

    if not database_url:
        return InMemoryWorkflowRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteWorkflowRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith("postgresql://"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "InMemoryWorkflowRepository",
    "RunClaimMixin",
    "SQLiteWorkflowRepository",
    "WorkflowRepository",
    "get_repository",
]
