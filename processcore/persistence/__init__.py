"""Persistence layer for process instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ProcessCoreConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .repository import ExecutionRepository, ExecutionTransaction
from .sql import SQLExecutionRepository, normalize_database_url


def get_repository(
    database_url: Optional[str] = None, config: Optional[ProcessCoreConfig] = None
) -> ExecutionRepository:
    """Factory function to build an execution repository.

    The backend is selected from ``database_url`` which can be provided
    explicitly, via environment variable ``PROCESSCORE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned. Every call builds a new
    handle; callers inject it where it is needed.
    """

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("PROCESSCORE_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )

    if not database_url:
        return InMemoryExecutionRepository()

    url = normalize_database_url(database_url)
    if url.startswith("sqlite+aiosqlite://") or url.startswith("postgresql+asyncpg://"):
        return SQLExecutionRepository(url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ExecutionRepository",
    "ExecutionTransaction",
    "InMemoryExecutionRepository",
    "SQLExecutionRepository",
    "get_repository",
]
